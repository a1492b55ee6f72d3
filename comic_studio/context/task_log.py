"""
Task Log
========

Append-only audit trail and per-role agent checklists.

Both live inside the project document and are written through the
ProjectStore, so every entry is journaled with the rest of the state.
"""

import logging
from typing import Optional, List

from ..core.exceptions import ValidationError, ResourceNotFoundError
from ..project.models import (
    AgentRole,
    AgentTask,
    LogType,
    SystemLog,
    TaskType,
    new_id,
    now_ms,
)
from ..project.store import ProjectStore

logger = logging.getLogger(__name__)

_LEVELS = {
    LogType.INFO: logging.INFO,
    LogType.SUCCESS: logging.INFO,
    LogType.WARNING: logging.WARNING,
    LogType.ERROR: logging.ERROR,
}

RESEARCH_TASKS = [
    "Analyze market trends for the theme",
    "Identify target audience",
    "Propose visual style and color palette",
]


class TaskLog:
    """
    Append-only SystemLog writer.

    Timestamps are strictly increasing in insertion order, even when several
    entries land within the same millisecond.
    """

    def __init__(self, store: ProjectStore):
        self.store = store

    def add(
        self,
        role: AgentRole,
        message: str,
        type: LogType = LogType.INFO,
    ) -> SystemLog:
        """
        Append a log entry.

        Args:
            role: Originating agent role
            message: Human-readable description
            type: Entry severity

        Returns:
            The appended entry
        """
        logs = self.store.snapshot().logs
        timestamp = now_ms()
        if logs and timestamp <= logs[-1].timestamp:
            timestamp = logs[-1].timestamp + 1

        entry = SystemLog(
            id=new_id("log"),
            agent_id=role,
            message=message,
            timestamp=timestamp,
            type=type,
        )
        self.store.apply({"logs": logs + [entry]}, source="log")
        logger.log(_LEVELS[type], f"[{role.value}] {message}")
        return entry

    def info(self, role: AgentRole, message: str) -> SystemLog:
        return self.add(role, message, LogType.INFO)

    def success(self, role: AgentRole, message: str) -> SystemLog:
        return self.add(role, message, LogType.SUCCESS)

    def warning(self, role: AgentRole, message: str) -> SystemLog:
        return self.add(role, message, LogType.WARNING)

    def error(self, role: AgentRole, message: str) -> SystemLog:
        return self.add(role, message, LogType.ERROR)

    def entries(
        self,
        role: Optional[AgentRole] = None,
        type: Optional[LogType] = None,
    ) -> List[SystemLog]:
        """Return entries in insertion order, optionally filtered."""
        return [
            entry
            for entry in self.store.snapshot().logs
            if (role is None or entry.agent_id == role) and (type is None or entry.type == type)
        ]


class TaskBoard:
    """Per-role checklist of system- and user-created tasks."""

    def __init__(self, store: ProjectStore):
        self.store = store

    def checklist(self, role: AgentRole) -> List[AgentTask]:
        """Tasks for one role, in creation order."""
        return [t for t in self.store.snapshot().agent_tasks if t.role == role]

    def has_tasks(self, role: AgentRole) -> bool:
        return bool(self.checklist(role))

    def create_system_task(
        self,
        role: AgentRole,
        description: str,
        target_chapter: Optional[int] = None,
    ) -> AgentTask:
        task = AgentTask(
            id=new_id("task"),
            role=role,
            description=description,
            type=TaskType.SYSTEM,
            target_chapter=target_chapter,
        )
        self._append([task])
        return task

    def add_user_task(self, role: AgentRole, description: str) -> AgentTask:
        """Add a user-created task."""
        description = description.strip()
        if not description:
            raise ValidationError("Task description cannot be empty", field="description")
        task = AgentTask(
            id=new_id("task"),
            role=role,
            description=description,
            type=TaskType.USER,
        )
        self._append([task])
        return task

    def toggle(self, task_id: str) -> AgentTask:
        """Flip completion of one task without reordering the list."""
        tasks = self.store.snapshot().agent_tasks
        for task in tasks:
            if task.id == task_id:
                task.is_completed = not task.is_completed
                self.store.apply({"agent_tasks": tasks}, source="task")
                return task
        raise ResourceNotFoundError(f"No task with id {task_id}", resource_type="task", resource_id=task_id)

    def delete(self, task_id: str) -> None:
        """
        Remove a user task.

        Raises:
            ValidationError: If the task is a system task
            ResourceNotFoundError: If no task has this id
        """
        tasks = self.store.snapshot().agent_tasks
        target = next((t for t in tasks if t.id == task_id), None)
        if target is None:
            raise ResourceNotFoundError(f"No task with id {task_id}", resource_type="task", resource_id=task_id)
        if target.type == TaskType.SYSTEM:
            raise ValidationError(
                "System tasks can only be completed, not deleted",
                field="type",
                value=target.type.value,
            )
        self.store.apply({"agent_tasks": [t for t in tasks if t.id != task_id]}, source="task")

    def complete_system_task(self, role: AgentRole, description: str) -> Optional[AgentTask]:
        """Mark the first open system task matching ``description`` as done."""
        tasks = self.store.snapshot().agent_tasks
        for task in tasks:
            if (
                task.role == role
                and task.type == TaskType.SYSTEM
                and not task.is_completed
                and task.description == description
            ):
                task.is_completed = True
                self.store.apply({"agent_tasks": tasks}, source="task")
                return task
        return None

    def complete_chapter_tasks(self, chapter: int) -> List[AgentTask]:
        """Mark every open system task targeting ``chapter`` as done."""
        tasks = self.store.snapshot().agent_tasks
        closed = []
        for task in tasks:
            if task.type == TaskType.SYSTEM and task.target_chapter == chapter and not task.is_completed:
                task.is_completed = True
                closed.append(task)
        if closed:
            self.store.apply({"agent_tasks": tasks}, source="task")
        return closed

    def seed_research_tasks(self) -> List[AgentTask]:
        """Create the researcher's checklist if that role has none yet."""
        if self.has_tasks(AgentRole.MARKET_RESEARCHER):
            return []
        tasks = [
            AgentTask(id=new_id("task"), role=AgentRole.MARKET_RESEARCHER, description=d, type=TaskType.SYSTEM)
            for d in RESEARCH_TASKS
        ]
        self._append(tasks)
        return tasks

    def seed_production_tasks(self, total_chapters: int) -> List[AgentTask]:
        """
        Create the system checklist for a production of ``total_chapters``.

        Skipped if the project manager already has tasks.
        """
        if self.has_tasks(AgentRole.PROJECT_MANAGER):
            return []

        total_chapters = max(1, total_chapters)
        chapters = range(1, total_chapters + 1)

        def system(role, description, chapter=None):
            return AgentTask(
                id=new_id("task"),
                role=role,
                description=description,
                type=TaskType.SYSTEM,
                target_chapter=chapter,
            )

        tasks = [system(AgentRole.PROJECT_MANAGER, "Review & Approve Strategy")]
        tasks += [system(AgentRole.PROJECT_MANAGER, f"Supervise production of Chapter {i}", i) for i in chapters]
        tasks.append(system(AgentRole.PROJECT_MANAGER, "Final Series Review"))

        tasks.append(system(AgentRole.SCRIPTWRITER, "Develop Story Concepts"))
        tasks.append(system(AgentRole.SCRIPTWRITER, "Define Character Cast"))
        tasks += [system(AgentRole.SCRIPTWRITER, f"Write Script for Chapter {i}", i) for i in chapters]

        tasks.append(system(AgentRole.CHARACTER_DESIGNER, "Create Character Sheets"))
        tasks += [system(AgentRole.PANEL_ARTIST, f"Draw Panels for Chapter {i}", i) for i in chapters]

        self._append(tasks)
        return tasks

    def _append(self, new_tasks: List[AgentTask]) -> None:
        tasks = self.store.snapshot().agent_tasks
        self.store.apply({"agent_tasks": tasks + new_tasks}, source="task")
