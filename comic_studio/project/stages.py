"""
Workflow State Machine
======================

Pipeline stages, the legal transitions between them, and the actions each
stage enables. Transitions are validated here and enforced by the
ProjectStore, so no caller can move a project off the table.
"""

from enum import Enum
from typing import Optional, Dict, FrozenSet, List

from ..core.exceptions import TransitionError
from .models import WorkflowStage


class PipelineAction(Enum):
    """User-triggered operations on a project."""

    START_RESEARCH = "start_research"
    SEND_RESEARCH_MESSAGE = "send_research_message"
    FINALIZE_STRATEGY = "finalize_strategy"
    APPROVE_RESEARCH_AND_SCRIPT = "approve_research_and_script"
    RUN_CENSOR_CHECK = "run_censor_check"
    RUN_CONTINUITY_CHECK = "run_continuity_check"
    APPROVE_SCRIPT_AND_VISUALIZE = "approve_script_and_visualize"
    REGENERATE_PANEL = "regenerate_panel"
    GENERATE_PANEL_VIDEO = "generate_panel_video"
    FINALIZE_PRODUCTION = "finalize_production"
    COMPLETE_CHAPTER = "complete_chapter"
    REJECT = "reject"


class TransitionKind(Enum):
    FORWARD = "forward"
    ROLLBACK = "rollback"
    RESTORE = "restore"
    CHAPTER = "chapter"


STAGE_ORDER: List[WorkflowStage] = [
    WorkflowStage.IDLE,
    WorkflowStage.RESEARCHING,
    WorkflowStage.SCRIPTING,
    WorkflowStage.CENSORING_SCRIPT,
    WorkflowStage.DESIGNING_CHARACTERS,
    WorkflowStage.VISUALIZING_PANELS,
    WorkflowStage.POST_PRODUCTION,
    WorkflowStage.COMPLETED,
]

FORWARD_TRANSITIONS: Dict[WorkflowStage, WorkflowStage] = {
    current: following for current, following in zip(STAGE_ORDER, STAGE_ORDER[1:])
}

ROLLBACK_TRANSITIONS: Dict[WorkflowStage, WorkflowStage] = {
    WorkflowStage.RESEARCHING: WorkflowStage.IDLE,
    WorkflowStage.CENSORING_SCRIPT: WorkflowStage.RESEARCHING,
    WorkflowStage.POST_PRODUCTION: WorkflowStage.CENSORING_SCRIPT,
    WorkflowStage.COMPLETED: WorkflowStage.POST_PRODUCTION,
}

# Long-form projects start the next chapter from a completed one
CHAPTER_TRANSITIONS: Dict[WorkflowStage, WorkflowStage] = {
    WorkflowStage.COMPLETED: WorkflowStage.SCRIPTING,
}

# Entered and left within a single advancing action
TRANSIENT_STAGES: FrozenSet[WorkflowStage] = frozenset({
    WorkflowStage.SCRIPTING,
    WorkflowStage.DESIGNING_CHARACTERS,
    WorkflowStage.VISUALIZING_PANELS,
})

ENABLED_ACTIONS: Dict[WorkflowStage, FrozenSet[PipelineAction]] = {
    WorkflowStage.IDLE: frozenset({PipelineAction.START_RESEARCH}),
    WorkflowStage.RESEARCHING: frozenset({
        PipelineAction.SEND_RESEARCH_MESSAGE,
        PipelineAction.FINALIZE_STRATEGY,
        PipelineAction.APPROVE_RESEARCH_AND_SCRIPT,
        PipelineAction.REJECT,
    }),
    WorkflowStage.SCRIPTING: frozenset(),
    WorkflowStage.CENSORING_SCRIPT: frozenset({
        PipelineAction.RUN_CENSOR_CHECK,
        PipelineAction.RUN_CONTINUITY_CHECK,
        PipelineAction.APPROVE_SCRIPT_AND_VISUALIZE,
        PipelineAction.REJECT,
    }),
    WorkflowStage.DESIGNING_CHARACTERS: frozenset(),
    WorkflowStage.VISUALIZING_PANELS: frozenset(),
    WorkflowStage.POST_PRODUCTION: frozenset({
        PipelineAction.REGENERATE_PANEL,
        PipelineAction.GENERATE_PANEL_VIDEO,
        PipelineAction.FINALIZE_PRODUCTION,
        PipelineAction.REJECT,
    }),
    WorkflowStage.COMPLETED: frozenset({PipelineAction.COMPLETE_CHAPTER, PipelineAction.REJECT}),
}

STAGE_LABELS: Dict[WorkflowStage, str] = {
    WorkflowStage.IDLE: "Idle",
    WorkflowStage.RESEARCHING: "Research",
    WorkflowStage.SCRIPTING: "Scripting",
    WorkflowStage.CENSORING_SCRIPT: "Censorship",
    WorkflowStage.DESIGNING_CHARACTERS: "Character Design",
    WorkflowStage.VISUALIZING_PANELS: "Visualizing",
    WorkflowStage.POST_PRODUCTION: "Post Production",
    WorkflowStage.COMPLETED: "Completed",
}


def next_stage(stage: WorkflowStage) -> Optional[WorkflowStage]:
    """Forward successor of a stage, or None at the end of the pipeline."""
    return FORWARD_TRANSITIONS.get(stage)


def rollback_target(stage: WorkflowStage) -> Optional[WorkflowStage]:
    """Stage a rejection at ``stage`` returns to, or None if rejection is not allowed."""
    return ROLLBACK_TRANSITIONS.get(stage)


def enabled_actions(stage: WorkflowStage) -> FrozenSet[PipelineAction]:
    return ENABLED_ACTIONS.get(stage, frozenset())


def is_enabled(stage: WorkflowStage, action: PipelineAction) -> bool:
    return action in enabled_actions(stage)


def classify_transition(
    current: WorkflowStage,
    target: WorkflowStage,
    origin: Optional[WorkflowStage] = None,
) -> TransitionKind:
    """
    Validate a stage change against the transition table.

    Args:
        current: Stage the project is in now
        target: Requested stage
        origin: Stage the running action started from; an aborted action may
            return there directly

    Returns:
        The kind of transition

    Raises:
        TransitionError: If the move is not on the table
    """
    if FORWARD_TRANSITIONS.get(current) == target:
        return TransitionKind.FORWARD
    if ROLLBACK_TRANSITIONS.get(current) == target:
        return TransitionKind.ROLLBACK
    if CHAPTER_TRANSITIONS.get(current) == target:
        return TransitionKind.CHAPTER
    if origin is not None and target == origin and _precedes(origin, current):
        return TransitionKind.RESTORE

    raise TransitionError(
        f"Illegal stage transition {current.value} -> {target.value}",
        current=current.value,
        target=target.value,
    )


def _precedes(earlier: WorkflowStage, later: WorkflowStage) -> bool:
    return STAGE_ORDER.index(earlier) < STAGE_ORDER.index(later)
