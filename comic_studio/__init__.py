"""
Comic Studio
============

A production pipeline for AI-generated comics: market research, scripting,
content review, character design, panel art, voice-over, and animation,
with consistent characters across chapters.

Features:
- Stage-gated workflow with guarded transitions and rollback
- Sequential character and panel generation that survives per-item failures
- Character locking and style consistency checks
- Audit log and per-role checklists stored in the project document
- Gemini text, image, speech, and video generation
- SQLite project slots, library archive, and zip backups

Quick Start:
    import asyncio
    from comic_studio import ProductionPipeline, ComicProject, StoryFormat

    async def main():
        project = ComicProject.new(theme="a lighthouse keeper who talks to storms",
                                   story_format=StoryFormat.SHORT_STORY)
        async with ProductionPipeline(project) as pipeline:
            await pipeline.start_research()
            await pipeline.finalize_strategy()
            await pipeline.approve_research_and_script()
            await pipeline.approve_script_and_visualize()
            await pipeline.finalize_production()

    asyncio.run(main())
"""

__version__ = "0.3.0"
__author__ = "Comic Studio"

# =============================================================================
# Project Model
# =============================================================================

from .project import (
    ComicProject,
    Character,
    ComicPanel,
    SystemLog,
    AgentTask,
    WorkflowStage,
    StoryFormat,
    ModelTier,
    AgentRole,
    ConsistencyStatus,
    PipelineAction,
    ProjectStore,
)

# =============================================================================
# Orchestration
# =============================================================================

from .workflow import ProductionPipeline, AssetGenerationLoop, ConsistencyVerifier
from .context import TaskLog, TaskBoard, SQLitePersistenceStore, SaveResult, SaveStatus

# =============================================================================
# Services and Core
# =============================================================================

from .api import get_service, list_services, GeminiService
from .core.config import Config, get_config
from .core.exceptions import (
    StudioError,
    ConfigurationError,
    ServiceError,
    ValidationError,
    StageCallError,
    TransitionError,
    PreconditionError,
    BusyError,
    PersistenceError,
)

__all__ = [
    # Version
    "__version__",

    # Project
    "ComicProject",
    "Character",
    "ComicPanel",
    "SystemLog",
    "AgentTask",
    "WorkflowStage",
    "StoryFormat",
    "ModelTier",
    "AgentRole",
    "ConsistencyStatus",
    "PipelineAction",
    "ProjectStore",

    # Orchestration
    "ProductionPipeline",
    "AssetGenerationLoop",
    "ConsistencyVerifier",
    "TaskLog",
    "TaskBoard",
    "SQLitePersistenceStore",
    "SaveResult",
    "SaveStatus",

    # Services
    "get_service",
    "list_services",
    "GeminiService",

    # Core
    "Config",
    "get_config",

    # Exceptions
    "StudioError",
    "ConfigurationError",
    "ServiceError",
    "ValidationError",
    "StageCallError",
    "TransitionError",
    "PreconditionError",
    "BusyError",
    "PersistenceError",
]
