"""
Asset Generation Loop
=====================

Sequential per-item generation over a project's characters or panels.

Jobs go through a single-worker queue, so at most one item of a collection
is ever generating. Each item's outcome is emitted as a progress event and
applied to the store by one applier before the next item starts. A failing
item is logged and skipped; it never aborts the batch.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Awaitable

from ..core.exceptions import StudioError
from ..context.task_log import TaskLog
from ..project.models import AgentRole
from ..project.store import ProjectStore

logger = logging.getLogger(__name__)


class Collection(Enum):
    CHARACTERS = "characters"
    PANELS = "panels"


class ProgressKind(Enum):
    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ProgressEvent:
    kind: ProgressKind
    collection: Collection
    item_id: str
    label: str
    fields: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


GenerateFn = Callable[[Any], Awaitable[Dict[str, Any]]]
AfterFn = Callable[[str], Awaitable[None]]
Predicate = Callable[[Any], bool]
Listener = Callable[[ProgressEvent], None]


@dataclass
class GenerationJob:
    """
    One queued item.

    ``generate`` receives the item as it is when dequeued and returns the
    fields to merge on success. ``after`` runs once the success has been
    merged, before the next item starts.
    """

    item_id: str
    label: str
    generate: GenerateFn
    after: Optional[AfterFn] = None


@dataclass
class LoopReport:
    """Outcome of one loop invocation."""

    collection: Collection
    attempted: List[str] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    def summary(self) -> str:
        return (
            f"{len(self.succeeded)} generated, {len(self.failed)} failed, "
            f"{len(self.skipped)} skipped"
        )


class AssetGenerationLoop:
    """
    Single-worker job queue over one collection.

    Example:
        loop = AssetGenerationLoop(store, task_log)
        report = await loop.run(
            Collection.PANELS,
            jobs,
            needs_generation=lambda panel: not panel.image_url,
            role=AgentRole.PANEL_ARTIST,
        )
    """

    def __init__(self, store: ProjectStore, task_log: TaskLog, item_delay: float = 0.0):
        self.store = store
        self.task_log = task_log
        self.item_delay = item_delay
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Observe progress events after they are applied."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def run(
        self,
        collection: Collection,
        jobs: List[GenerationJob],
        needs_generation: Predicate,
        role: AgentRole,
    ) -> LoopReport:
        """
        Process jobs strictly in order.

        Args:
            collection: Which project list the jobs target
            jobs: Queued items
            needs_generation: Evaluated against the current item at dequeue
                time; items for which it is false are skipped
            role: Role credited in log entries

        Returns:
            LoopReport listing attempted, succeeded, failed, skipped ids
        """
        queue: asyncio.Queue = asyncio.Queue()
        for job in jobs:
            queue.put_nowait(job)

        report = LoopReport(collection=collection)
        started_any = False

        while not queue.empty():
            job = queue.get_nowait()
            try:
                item = self._current_item(collection, job.item_id)
                if item is None or not needs_generation(item):
                    report.skipped.append(job.item_id)
                    self._emit(ProgressEvent(ProgressKind.SKIPPED, collection, job.item_id, job.label))
                    continue

                if started_any and self.item_delay > 0:
                    await asyncio.sleep(self.item_delay)
                started_any = True

                await self._process(collection, job, item, role, report)
            finally:
                queue.task_done()

        logger.info(f"{collection.value} loop finished: {report.summary()}")
        return report

    async def _process(
        self,
        collection: Collection,
        job: GenerationJob,
        item: Any,
        role: AgentRole,
        report: LoopReport,
    ) -> None:
        report.attempted.append(job.item_id)
        self._emit(ProgressEvent(
            ProgressKind.STARTED, collection, job.item_id, job.label,
            fields={"is_generating": True},
        ))

        settled = False
        try:
            fields = await job.generate(item)
            self._emit(ProgressEvent(
                ProgressKind.SUCCEEDED, collection, job.item_id, job.label,
                fields={**fields, "is_generating": False},
            ))
            settled = True
        except Exception as e:
            message = e.message if isinstance(e, StudioError) else f"{type(e).__name__}: {e}"
            if not isinstance(e, StudioError):
                logger.exception(f"Unexpected error generating {job.label}")
            self._emit(ProgressEvent(
                ProgressKind.FAILED, collection, job.item_id, job.label,
                fields={"is_generating": False},
                error=message,
            ))
            settled = True
            report.failed.append(job.item_id)
            self.task_log.error(role, f"Failed to generate {job.label} ({job.item_id}): {message}")
            return
        finally:
            if not settled:
                # Cancelled: never leave the item generating
                self._emit(ProgressEvent(
                    ProgressKind.FAILED, collection, job.item_id, job.label,
                    fields={"is_generating": False},
                    error="cancelled",
                ))

        report.succeeded.append(job.item_id)
        self.task_log.success(role, f"Generated {job.label}")

        if job.after is not None:
            await job.after(job.item_id)

    # -------------------------------------------------------------------------
    # Event Application
    # -------------------------------------------------------------------------

    def _emit(self, event: ProgressEvent) -> None:
        self._apply(event)
        for listener in list(self._listeners):
            listener(event)

    def _apply(self, event: ProgressEvent) -> None:
        """The single subscriber that turns progress events into store updates."""
        if not event.fields:
            return
        source = f"loop:{event.kind.value}"
        if event.collection == Collection.CHARACTERS:
            self.store.update_character(event.item_id, source=source, **event.fields)
        else:
            self.store.update_panel(event.item_id, source=source, **event.fields)

    def _current_item(self, collection: Collection, item_id: str) -> Any:
        project = self.store.snapshot()
        if collection == Collection.CHARACTERS:
            return project.find_character(item_id)
        return project.find_panel(item_id)
