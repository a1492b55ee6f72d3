"""
Project Store
=============

Explicit state container for a ComicProject.

The store is the only place a project changes. Callers read whole-document
snapshots and submit merge updates; every update is validated (stage
transitions, id uniqueness, append-only logs, undeletable system tasks),
recorded in a journal, and pushed to subscribers. The journal can be
replayed onto the starting document to rebuild the current one.
"""

import copy
import logging
from dataclasses import dataclass, fields, replace
from typing import Optional, List, Dict, Any, Callable, Iterable

from ..core.exceptions import BusyError, ValidationError, ResourceNotFoundError, TransitionError
from .models import ComicProject, WorkflowStage, TaskType, now_ms
from .stages import TransitionKind, classify_transition

logger = logging.getLogger(__name__)

_PROJECT_FIELDS = {f.name for f in fields(ComicProject)}
_READ_ONLY_FIELDS = {"id"}


@dataclass(frozen=True)
class JournalEntry:
    """
    A single applied mutation.

    Subscribers also receive an entry with ``replaced`` set when the whole
    document is swapped; those entries are not journaled.
    """

    sequence: int
    source: str
    changes: Dict[str, Any]
    timestamp: int
    replaced: bool = False


Subscriber = Callable[[ComicProject, JournalEntry], None]


class ProjectStore:
    """
    Whole-document state container with validated merge-apply.

    Example:
        store = ProjectStore(ComicProject.new(theme="haunted lighthouse"))
        store.apply({"title": "The Keeper"}, source="manual")
        project = store.snapshot()
    """

    def __init__(self, project: ComicProject):
        self._project = copy.deepcopy(project)
        self._initial = copy.deepcopy(project)
        self._journal: List[JournalEntry] = []
        self._subscribers: List[Subscriber] = []
        self._running_action: Optional[str] = None
        self._action_origin: Optional[WorkflowStage] = None

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def snapshot(self) -> ComicProject:
        """Return a detached copy of the current document."""
        return copy.deepcopy(self._project)

    @property
    def stage(self) -> WorkflowStage:
        return self._project.workflow_stage

    @property
    def project_id(self) -> str:
        return self._project.id

    @property
    def journal(self) -> List[JournalEntry]:
        return list(self._journal)

    @property
    def initial(self) -> ComicProject:
        """The document the journal starts from."""
        return copy.deepcopy(self._initial)

    # -------------------------------------------------------------------------
    # Busy flag
    # -------------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._running_action is not None

    @property
    def running_action(self) -> Optional[str]:
        return self._running_action

    @property
    def action_origin(self) -> Optional[WorkflowStage]:
        return self._action_origin

    def begin_action(self, name: str) -> WorkflowStage:
        """
        Mark the store busy for the duration of an action.

        Returns:
            The stage the action starts from

        Raises:
            BusyError: If another action is still running
        """
        if self._running_action is not None:
            raise BusyError(
                f"Cannot start '{name}' while '{self._running_action}' is running",
                running_action=self._running_action,
            )
        self._running_action = name
        self._action_origin = self._project.workflow_stage
        logger.debug(f"Action started: {name} at {self._action_origin.value}")
        return self._action_origin

    def end_action(self) -> None:
        if self._running_action is not None:
            logger.debug(f"Action finished: {self._running_action}")
        self._running_action = None
        self._action_origin = None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def apply(self, changes: Dict[str, Any], source: str = "update") -> ComicProject:
        """
        Validate and merge top-level field updates into the document.

        Args:
            changes: Mapping of ComicProject field names to new values
            source: Label recorded in the journal

        Returns:
            Snapshot of the updated document

        Raises:
            ValidationError: On unknown fields, duplicate ids, log rewrites,
                or removed system tasks
            TransitionError: On a stage change off the transition table
        """
        if not changes:
            return self.snapshot()

        self._validate(changes)

        entry = JournalEntry(
            sequence=len(self._journal) + 1,
            source=source,
            changes=copy.deepcopy(changes),
            timestamp=now_ms(),
        )
        self._commit(entry)
        return self.snapshot()

    def update_character(self, character_id: str, source: str = "character", **updates) -> ComicProject:
        """Merge field updates into one character."""
        characters = self._project.characters
        index = self._index_of(characters, character_id, "character")
        patched = list(characters)
        patched[index] = replace(characters[index], **updates)
        return self.apply({"characters": patched}, source=source)

    def update_panel(self, panel_id: str, source: str = "panel", **updates) -> ComicProject:
        """Merge field updates into one panel."""
        panels = self._project.panels
        index = self._index_of(panels, panel_id, "panel")
        patched = list(panels)
        patched[index] = replace(panels[index], **updates)
        return self.apply({"panels": patched}, source=source)

    def replace_document(self, project: ComicProject, source: str = "load") -> ComicProject:
        """
        Swap in a different project (new session or loaded from storage).

        The journal restarts from the new document, so it only ever holds
        the history of the project currently in the store.

        Raises:
            BusyError: If an action is running against the current document
        """
        if self.busy:
            raise BusyError(
                f"Cannot replace project while '{self._running_action}' is running",
                running_action=self._running_action,
            )
        discarded = len(self._journal)
        self._initial = copy.deepcopy(project)
        self._project = copy.deepcopy(project)
        self._journal = []
        entry = JournalEntry(
            sequence=0,
            source=source,
            changes={},
            timestamp=now_ms(),
            replaced=True,
        )
        self._notify(entry)
        logger.info(f"Project replaced: {project.id} ({source}), {discarded} journal entries dropped")
        return self.snapshot()

    # -------------------------------------------------------------------------
    # Subscribers
    # -------------------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback invoked after every applied mutation."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Replay
    # -------------------------------------------------------------------------

    @classmethod
    def replay(cls, initial: ComicProject, entries: Iterable[JournalEntry]) -> ComicProject:
        """
        Rebuild a document by re-applying journal entries to a starting point.

        Entries were validated when first applied, so they are not validated
        again here.
        """
        project = copy.deepcopy(initial)
        for entry in entries:
            for name, value in entry.changes.items():
                setattr(project, name, copy.deepcopy(value))
            project.last_modified = entry.timestamp
        return project

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _commit(self, entry: JournalEntry) -> None:
        for name, value in entry.changes.items():
            setattr(self._project, name, copy.deepcopy(value))
        self._project.last_modified = entry.timestamp
        self._journal.append(entry)
        self._notify(entry)

    def _notify(self, entry: JournalEntry) -> None:
        if self._subscribers:
            view = self.snapshot()
            for callback in list(self._subscribers):
                callback(view, entry)

    def _validate(self, changes: Dict[str, Any]) -> None:
        unknown = set(changes) - _PROJECT_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown project fields: {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        for name in _READ_ONLY_FIELDS & set(changes):
            if changes[name] != getattr(self._project, name):
                raise ValidationError(f"Field '{name}' is read-only", field=name)

        if "workflow_stage" in changes:
            target = changes["workflow_stage"]
            if not isinstance(target, WorkflowStage):
                raise ValidationError("workflow_stage must be a WorkflowStage", field="workflow_stage", value=target)
            if target != self._project.workflow_stage:
                kind = classify_transition(self._project.workflow_stage, target, origin=self._action_origin)
                if kind == TransitionKind.CHAPTER and not self._project.is_long_form:
                    raise TransitionError(
                        "Only long-form projects continue to another chapter",
                        current=self._project.workflow_stage.value,
                        target=target.value,
                    )

        for name in ("characters", "panels"):
            if name in changes:
                self._check_unique_ids(name, changes[name])

        if "logs" in changes:
            self._check_logs_appended(changes["logs"])

        if "agent_tasks" in changes:
            self._check_system_tasks_kept(changes["agent_tasks"])

    @staticmethod
    def _check_unique_ids(name: str, items: List[Any]) -> None:
        seen = set()
        for item in items:
            if item.id in seen:
                raise ValidationError(
                    f"Duplicate id in {name}: {item.id}",
                    field=name,
                    value=item.id,
                    constraint="unique",
                )
            seen.add(item.id)

    def _check_logs_appended(self, logs: List[Any]) -> None:
        current = self._project.logs
        if len(logs) < len(current) or any(a.id != b.id for a, b in zip(current, logs)):
            raise ValidationError(
                "Logs are append-only",
                field="logs",
                constraint="append-only",
            )

    def _check_system_tasks_kept(self, tasks: List[Any]) -> None:
        remaining = {t.id for t in tasks}
        for task in self._project.agent_tasks:
            if task.type == TaskType.SYSTEM and task.id not in remaining:
                raise ValidationError(
                    f"System task cannot be deleted: {task.id}",
                    field="agent_tasks",
                    value=task.id,
                )

    @staticmethod
    def _index_of(items: List[Any], item_id: str, kind: str) -> int:
        for index, item in enumerate(items):
            if item.id == item_id:
                return index
        raise ResourceNotFoundError(
            f"No {kind} with id {item_id}",
            resource_type=kind,
            resource_id=item_id,
        )
