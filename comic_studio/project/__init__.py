"""
Project Module
==============

The project document, its state container, and the workflow stage table.
"""

from .models import (
    ComicProject,
    Character,
    CharacterVariant,
    ComicPanel,
    SystemLog,
    AgentTask,
    ResearchData,
    StoryConcept,
    SeriesBible,
    ChapterArchive,
    Message,
    WorkflowStage,
    StoryFormat,
    ModelTier,
    AgentRole,
    CharacterRole,
    ConsistencyStatus,
    LogType,
    TaskType,
)
from .stages import (
    PipelineAction,
    FORWARD_TRANSITIONS,
    ROLLBACK_TRANSITIONS,
    CHAPTER_TRANSITIONS,
    ENABLED_ACTIONS,
    STAGE_LABELS,
    enabled_actions,
    rollback_target,
)
from .store import ProjectStore, JournalEntry

__all__ = [
    "ComicProject",
    "Character",
    "CharacterVariant",
    "ComicPanel",
    "SystemLog",
    "AgentTask",
    "ResearchData",
    "StoryConcept",
    "SeriesBible",
    "ChapterArchive",
    "Message",
    "WorkflowStage",
    "StoryFormat",
    "ModelTier",
    "AgentRole",
    "CharacterRole",
    "ConsistencyStatus",
    "LogType",
    "TaskType",
    "PipelineAction",
    "FORWARD_TRANSITIONS",
    "ROLLBACK_TRANSITIONS",
    "CHAPTER_TRANSITIONS",
    "ENABLED_ACTIONS",
    "STAGE_LABELS",
    "enabled_actions",
    "rollback_target",
    "ProjectStore",
    "JournalEntry",
]
