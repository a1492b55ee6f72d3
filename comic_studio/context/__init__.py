"""
Context Module
==============

Audit log, agent checklists, and project persistence.
"""

from .task_log import TaskLog, TaskBoard
from .persistence import (
    PersistenceStore,
    SQLitePersistenceStore,
    SaveResult,
    SaveStatus,
)

__all__ = [
    "TaskLog",
    "TaskBoard",
    "PersistenceStore",
    "SQLitePersistenceStore",
    "SaveResult",
    "SaveStatus",
]
