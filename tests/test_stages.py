"""
Tests for the workflow stage table.
"""

import pytest

from comic_studio.core.exceptions import TransitionError
from comic_studio.project.models import WorkflowStage
from comic_studio.project.stages import (
    CHAPTER_TRANSITIONS,
    ENABLED_ACTIONS,
    PipelineAction,
    STAGE_ORDER,
    TRANSIENT_STAGES,
    TransitionKind,
    classify_transition,
    is_enabled,
    next_stage,
    rollback_target,
)


class TestForwardTransitions:
    """Tests for forward movement through the pipeline."""

    def test_every_stage_has_one_successor_except_completed(self):
        for current, following in zip(STAGE_ORDER, STAGE_ORDER[1:]):
            assert next_stage(current) == following
        assert next_stage(WorkflowStage.COMPLETED) is None

    def test_forward_classified(self):
        kind = classify_transition(WorkflowStage.IDLE, WorkflowStage.RESEARCHING)
        assert kind == TransitionKind.FORWARD

    def test_skipping_a_stage_is_illegal(self):
        with pytest.raises(TransitionError) as exc:
            classify_transition(WorkflowStage.IDLE, WorkflowStage.SCRIPTING)
        assert exc.value.details["current"] == "IDLE"
        assert exc.value.details["target"] == "SCRIPTING"


class TestRollbackTransitions:
    """Tests for rejection targets."""

    @pytest.mark.parametrize("current,target", [
        (WorkflowStage.RESEARCHING, WorkflowStage.IDLE),
        (WorkflowStage.CENSORING_SCRIPT, WorkflowStage.RESEARCHING),
        (WorkflowStage.POST_PRODUCTION, WorkflowStage.CENSORING_SCRIPT),
        (WorkflowStage.COMPLETED, WorkflowStage.POST_PRODUCTION),
    ])
    def test_rollback_targets(self, current, target):
        assert rollback_target(current) == target
        assert classify_transition(current, target) == TransitionKind.ROLLBACK

    def test_transient_stages_cannot_be_rejected(self):
        for stage in TRANSIENT_STAGES:
            assert rollback_target(stage) is None
            assert not is_enabled(stage, PipelineAction.REJECT)

    def test_idle_has_no_rollback(self):
        assert rollback_target(WorkflowStage.IDLE) is None


class TestRestoreTransitions:
    """Tests for returning to the origin of an aborted action."""

    def test_restore_to_origin(self):
        kind = classify_transition(
            WorkflowStage.VISUALIZING_PANELS,
            WorkflowStage.CENSORING_SCRIPT,
            origin=WorkflowStage.CENSORING_SCRIPT,
        )
        assert kind == TransitionKind.RESTORE

    def test_restore_requires_origin(self):
        with pytest.raises(TransitionError):
            classify_transition(WorkflowStage.VISUALIZING_PANELS, WorkflowStage.CENSORING_SCRIPT)

    def test_restore_cannot_move_forward(self):
        with pytest.raises(TransitionError):
            classify_transition(
                WorkflowStage.RESEARCHING,
                WorkflowStage.POST_PRODUCTION,
                origin=WorkflowStage.POST_PRODUCTION,
            )


class TestEnabledActions:
    """Tests for which actions each stage allows."""

    def test_idle_only_starts_research(self):
        assert ENABLED_ACTIONS[WorkflowStage.IDLE] == frozenset({PipelineAction.START_RESEARCH})

    def test_transient_stages_enable_nothing(self):
        for stage in TRANSIENT_STAGES:
            assert ENABLED_ACTIONS[stage] == frozenset()

    def test_post_production_actions(self):
        stage = WorkflowStage.POST_PRODUCTION
        assert is_enabled(stage, PipelineAction.REGENERATE_PANEL)
        assert is_enabled(stage, PipelineAction.GENERATE_PANEL_VIDEO)
        assert is_enabled(stage, PipelineAction.FINALIZE_PRODUCTION)
        assert not is_enabled(stage, PipelineAction.APPROVE_SCRIPT_AND_VISUALIZE)

    def test_every_stage_listed(self):
        assert set(ENABLED_ACTIONS) == set(WorkflowStage)

    def test_completed_can_start_next_chapter(self):
        assert is_enabled(WorkflowStage.COMPLETED, PipelineAction.COMPLETE_CHAPTER)
        assert is_enabled(WorkflowStage.COMPLETED, PipelineAction.REJECT)


class TestChapterTransitions:
    """Tests for moving from a finished chapter to the next script."""

    def test_completed_to_scripting(self):
        assert CHAPTER_TRANSITIONS == {WorkflowStage.COMPLETED: WorkflowStage.SCRIPTING}
        kind = classify_transition(WorkflowStage.COMPLETED, WorkflowStage.SCRIPTING)
        assert kind == TransitionKind.CHAPTER

    def test_no_other_stage_jumps_back_to_scripting(self):
        with pytest.raises(TransitionError):
            classify_transition(WorkflowStage.POST_PRODUCTION, WorkflowStage.SCRIPTING)
