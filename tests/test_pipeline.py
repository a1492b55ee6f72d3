"""
Tests for ProductionPipeline

Drives projects through the stage table with a scripted generation service.
"""

import asyncio

import httpx
import pytest

from conftest import drive_to_censoring, drive_to_completed, drive_to_post_production

from comic_studio.api.base import ConsistencyVerdict
from comic_studio.api.schemas import CensorSchema, VoiceCheckSchema
from comic_studio.core.exceptions import (
    BusyError,
    PreconditionError,
    ResourceNotFoundError,
    ServiceError,
    StageCallError,
    ValidationError,
)
from comic_studio.project.models import (
    AgentRole,
    ComicProject,
    ConsistencyStatus,
    LogType,
    ResearchData,
    TaskType,
    WorkflowStage,
)
from comic_studio.project.stages import PipelineAction
from comic_studio.workflow.pipeline import ProductionPipeline


def messages(pipeline, type=None):
    return [entry.message for entry in pipeline.task_log.entries(type=type)]


class TestHappyPath:
    """Tests for a complete short-story production."""

    @pytest.mark.asyncio
    async def test_full_production(self, pipeline, fake_service):
        await drive_to_post_production(pipeline)
        project = await pipeline.finalize_production()

        assert project.workflow_stage == WorkflowStage.COMPLETED
        assert project.title == "Storm Keeper"
        assert project.style == "ink wash"
        assert all(p.image_url for p in project.panels)
        assert all(c.image_url for c in project.characters)

        lamp, storm, faceoff = project.panels
        assert lamp.audio_url and faceoff.audio_url
        assert storm.audio_url is None
        assert storm.caption_audio_url
        assert storm.video_url
        assert lamp.video_url is None
        assert any(m.startswith("Production complete") for m in messages(pipeline, LogType.SUCCESS))

    @pytest.mark.asyncio
    async def test_research_seeds_checklist(self, pipeline):
        await pipeline.start_research()

        tasks = pipeline.tasks.checklist(AgentRole.MARKET_RESEARCHER)
        assert len(tasks) == 3
        assert all(t.type == TaskType.SYSTEM for t in tasks)

    @pytest.mark.asyncio
    async def test_strategy_completes_research_and_seeds_production(self, pipeline):
        await pipeline.start_research()
        await pipeline.finalize_strategy()

        research = pipeline.tasks.checklist(AgentRole.MARKET_RESEARCHER)
        assert all(t.is_completed for t in research)
        pm_tasks = [t.description for t in pipeline.tasks.checklist(AgentRole.PROJECT_MANAGER)]
        assert pm_tasks == [
            "Review & Approve Strategy",
            "Supervise production of Chapter 1",
            "Final Series Review",
        ]

    @pytest.mark.asyncio
    async def test_manual_strategy_edit(self, pipeline):
        await pipeline.start_research()
        await pipeline.finalize_strategy()

        project = pipeline.update_market_analysis(
            ResearchData(suggested_title="Other Title", visual_style="woodcut", color_palette=["black", "red"])
        )

        assert project.market_analysis.visual_style == "woodcut"
        assert project.title == "Storm Keeper"
        assert project.style == "ink wash"
        assert project.art_style_guide == "woodcut. Palette: black, red"

    @pytest.mark.asyncio
    async def test_research_chat_history(self, pipeline, fake_service):
        await pipeline.start_research()
        reply = await pipeline.send_research_message("Who is this for?")

        history = pipeline.project.research_chat_history
        assert reply == fake_service.text_responses["text"]
        assert [m.role for m in history] == ["user", "model"]
        assert history[0].content == "Who is this for?"

    @pytest.mark.asyncio
    async def test_voices_assigned_in_rotation(self, pipeline, config):
        await drive_to_censoring(pipeline)

        voices = [c.voice for c in pipeline.project.characters]
        assert voices == config.voices.available[:2]

    @pytest.mark.asyncio
    async def test_dialogue_uses_speaker_voice(self, pipeline, fake_service, config):
        await drive_to_post_production(pipeline)
        await pipeline.finalize_production()

        by_text = {c["text"]: c["voice"] for c in fake_service.calls_of("audio")}
        mara = pipeline.project.character_by_name("Mara")
        assert by_text["Not tonight."] == mara.voice
        assert by_text["The sea answered."] == config.voices.narrator_voice

    @pytest.mark.asyncio
    async def test_panel_references_put_involved_characters_first(self, pipeline, fake_service):
        await drive_to_post_production(pipeline)

        project = pipeline.project
        tempest = project.character_by_name("Tempest")
        storm_call = next(c for c in fake_service.calls_of("image") if "storm rises" in c["prompt"])
        assert storm_call["references"][0] == tempest.image_url

    @pytest.mark.asyncio
    async def test_model_tier_forwarded(self, pipeline, fake_service):
        await pipeline.start_research()
        assert fake_service.tiers == ["STANDARD"]

    @pytest.mark.asyncio
    async def test_available_actions(self, pipeline):
        assert pipeline.available_actions() == [PipelineAction.START_RESEARCH]


class TestGuards:
    """Tests for stage and precondition guards."""

    @pytest.mark.asyncio
    async def test_action_outside_stage_refused(self, pipeline):
        with pytest.raises(PreconditionError):
            await pipeline.finalize_production()

        assert pipeline.project.workflow_stage == WorkflowStage.IDLE
        assert messages(pipeline, LogType.WARNING)

    @pytest.mark.asyncio
    async def test_empty_theme_refused(self, fake_service, config):
        pipeline = ProductionPipeline(ComicProject.new(theme="  "), service=fake_service, config=config)
        with pytest.raises(PreconditionError):
            await pipeline.start_research()
        assert pipeline.project.workflow_stage == WorkflowStage.IDLE

    @pytest.mark.asyncio
    async def test_script_requires_strategy(self, pipeline):
        await pipeline.start_research()
        with pytest.raises(PreconditionError):
            await pipeline.approve_research_and_script()

    @pytest.mark.asyncio
    async def test_busy_pipeline_refuses_second_action(self, pipeline, fake_service):
        await pipeline.start_research()
        fake_service.gate = asyncio.Event()

        running = asyncio.create_task(pipeline.finalize_strategy())
        while not pipeline.busy:
            await asyncio.sleep(0)

        with pytest.raises(BusyError):
            await pipeline.send_research_message("hello?")
        with pytest.raises(BusyError):
            pipeline.reject("too slow")
        assert pipeline.available_actions() == []

        fake_service.gate.set()
        await running

        assert not pipeline.busy
        assert pipeline.project.market_analysis is not None
        assert any("still running" in m for m in messages(pipeline, LogType.WARNING))


class TestRejection:
    """Tests for rollback."""

    @pytest.mark.asyncio
    async def test_reject_research_clears_strategy(self, pipeline):
        await pipeline.start_research()
        await pipeline.finalize_strategy()

        project = pipeline.reject("wrong audience")

        assert project.workflow_stage == WorkflowStage.IDLE
        assert project.market_analysis is None
        assert any("wrong audience" in m for m in messages(pipeline, LogType.ERROR))

    @pytest.mark.asyncio
    async def test_reject_script_returns_to_research(self, pipeline):
        await drive_to_censoring(pipeline)

        project = pipeline.reject("too dark")

        assert project.workflow_stage == WorkflowStage.RESEARCHING
        assert project.market_analysis is not None

    @pytest.mark.asyncio
    async def test_reject_completed_returns_to_post_production(self, pipeline):
        await drive_to_post_production(pipeline)
        await pipeline.finalize_production()

        project = pipeline.reject("needs another pass")
        assert project.workflow_stage == WorkflowStage.POST_PRODUCTION

    @pytest.mark.asyncio
    async def test_reject_post_production_returns_to_censoring(self, pipeline):
        await drive_to_post_production(pipeline)
        panels = pipeline.project.panels

        project = pipeline.reject("panels are too busy")

        assert project.workflow_stage == WorkflowStage.CENSORING_SCRIPT
        assert project.panels == panels
        errors = messages(pipeline, LogType.ERROR)
        assert len(errors) == 1
        assert "panels are too busy" in errors[0]

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, pipeline):
        await pipeline.start_research()
        with pytest.raises(ValidationError):
            pipeline.reject("   ")
        assert pipeline.project.workflow_stage == WorkflowStage.RESEARCHING

    def test_reject_refused_at_idle(self, pipeline):
        with pytest.raises(PreconditionError):
            pipeline.reject("nothing to reject")


class TestStageFailures:
    """Tests for failed stage-level calls."""

    @pytest.mark.asyncio
    async def test_failed_script_restores_origin_stage(self, pipeline, fake_service):
        await pipeline.start_research()
        await pipeline.finalize_strategy()
        fake_service.text_responses["ScriptSchema"] = ServiceError("model overloaded")

        with pytest.raises(StageCallError) as exc:
            await pipeline.approve_research_and_script()

        project = pipeline.project
        assert project.workflow_stage == WorkflowStage.RESEARCHING
        assert project.story_concept is not None
        assert [c.name for c in project.characters] == ["Mara", "Tempest"]
        assert project.panels == []
        assert not pipeline.busy
        assert isinstance(exc.value.__cause__, ServiceError)
        assert any("model overloaded" in m for m in messages(pipeline, LogType.ERROR))

    @pytest.mark.asyncio
    async def test_unexpected_error_logged_and_stage_restored(self, pipeline, fake_service):
        await pipeline.start_research()
        await pipeline.finalize_strategy()
        fake_service.text_responses["StoryConceptSchema"] = RuntimeError("malformed reply")

        with pytest.raises(RuntimeError):
            await pipeline.approve_research_and_script()

        assert pipeline.project.workflow_stage == WorkflowStage.RESEARCHING
        assert not pipeline.busy
        assert any("malformed reply" in m for m in messages(pipeline, LogType.ERROR))

    @pytest.mark.asyncio
    async def test_retry_after_failure_succeeds(self, pipeline, fake_service):
        await pipeline.start_research()
        await pipeline.finalize_strategy()
        script = fake_service.text_responses["ScriptSchema"]
        fake_service.text_responses["ScriptSchema"] = ServiceError("model overloaded")

        with pytest.raises(StageCallError):
            await pipeline.approve_research_and_script()

        fake_service.text_responses["ScriptSchema"] = script
        project = await pipeline.approve_research_and_script()

        assert project.workflow_stage == WorkflowStage.CENSORING_SCRIPT
        assert len(project.characters) == 2

    @pytest.mark.asyncio
    async def test_censor_failure_holds_script(self, pipeline, fake_service):
        fake_service.text_responses["CensorSchema"] = ServiceError("censor unavailable")
        await drive_to_censoring(pipeline)

        project = pipeline.project
        assert project.workflow_stage == WorkflowStage.CENSORING_SCRIPT
        assert project.is_censored is True

        with pytest.raises(PreconditionError):
            await pipeline.approve_script_and_visualize()

    @pytest.mark.asyncio
    async def test_flagged_script_can_be_rechecked(self, pipeline, fake_service):
        fake_service.text_responses["CensorSchema"] = CensorSchema(passed=False, report="graphic violence")
        await drive_to_censoring(pipeline)
        assert pipeline.project.censor_report == "graphic violence"

        fake_service.text_responses["CensorSchema"] = CensorSchema(passed=True)
        is_censored, report = await pipeline.run_censor_check()

        assert is_censored is False
        assert report is None

    @pytest.mark.asyncio
    async def test_panel_failure_does_not_abort_visualization(self, pipeline, fake_service):
        fake_service.image_failures.add("storm rises")
        await drive_to_post_production(pipeline)

        project = pipeline.project
        assert project.workflow_stage == WorkflowStage.POST_PRODUCTION
        assert [bool(p.image_url) for p in project.panels] == [True, False, True]
        assert fake_service.max_in_flight == 1
        assert any(m.startswith("Visuals ready") and "1 failed" in m for m in messages(pipeline, LogType.WARNING))


class TestCharacterLocking:
    """Tests for auto-lock and manual locking."""

    @pytest.mark.asyncio
    async def test_short_story_designs_stay_unlocked(self, pipeline):
        await drive_to_post_production(pipeline)
        assert not any(c.is_locked for c in pipeline.project.characters)

    @pytest.mark.asyncio
    async def test_long_form_designs_auto_lock(self, long_project, fake_service, config):
        pipeline = ProductionPipeline(long_project, service=fake_service, config=config)
        await drive_to_post_production(pipeline)

        project = pipeline.project
        assert project.series_bible is not None
        assert all(c.is_locked for c in project.characters)
        assert any("drift" in m for m in messages(pipeline, LogType.WARNING))

    @pytest.mark.asyncio
    async def test_long_form_seeds_chapter_tasks(self, long_project, fake_service, config):
        pipeline = ProductionPipeline(long_project, service=fake_service, config=config)
        await pipeline.start_research()
        await pipeline.finalize_strategy()

        artist = [t.description for t in pipeline.tasks.checklist(AgentRole.PANEL_ARTIST)]
        assert artist == [f"Draw Panels for Chapter {i}" for i in (1, 2, 3)]

    @pytest.mark.asyncio
    async def test_locked_character_not_regenerated(self, pipeline, fake_service):
        await drive_to_censoring(pipeline)
        mara = pipeline.project.character_by_name("Mara")
        await pipeline.upload_character_image(mara.id, "data:image/png;base64,VVBMT0FE")
        fake_service.calls.clear()

        await pipeline.approve_script_and_visualize()

        prompts = [c["prompt"] for c in fake_service.calls_of("image")]
        assert not any("of Mara" in p for p in prompts)
        assert pipeline.project.find_character(mara.id).image_url == "data:image/png;base64,VVBMT0FE"

    @pytest.mark.asyncio
    async def test_locked_character_survives_recasting(self, pipeline):
        await drive_to_censoring(pipeline)
        mara = pipeline.project.character_by_name("Mara")
        pipeline.toggle_character_lock(mara.id)
        pipeline.update_character(mara.id, description="custom description")
        pipeline.reject("try again")

        await pipeline.approve_research_and_script()

        kept = pipeline.project.find_character(mara.id)
        assert kept is not None
        assert kept.description == "custom description"

    @pytest.mark.asyncio
    async def test_regenerate_locked_character_refused(self, pipeline):
        await drive_to_post_production(pipeline)
        mara = pipeline.project.character_by_name("Mara")
        pipeline.toggle_character_lock(mara.id)

        with pytest.raises(PreconditionError):
            await pipeline.regenerate_character(mara.id)

    @pytest.mark.asyncio
    async def test_regenerate_adds_variant(self, pipeline):
        await drive_to_post_production(pipeline)
        mara = pipeline.project.character_by_name("Mara")

        report = await pipeline.regenerate_character(mara.id, style="watercolor")

        updated = pipeline.project.find_character(mara.id)
        assert report.succeeded == [mara.id]
        assert len(updated.variants) == 2
        assert updated.variants[-1].style == "watercolor"
        assert updated.image_url != mara.image_url

    @pytest.mark.asyncio
    async def test_select_variant(self, pipeline):
        await drive_to_post_production(pipeline)
        mara = pipeline.project.character_by_name("Mara")
        first = mara.variants[0]
        await pipeline.regenerate_character(mara.id)

        updated = pipeline.select_character_variant(mara.id, first.id)
        assert updated.image_url == first.image_url

        with pytest.raises(ResourceNotFoundError):
            pipeline.select_character_variant(mara.id, "var_missing")

    @pytest.mark.asyncio
    async def test_unknown_voice_rejected(self, pipeline):
        await drive_to_censoring(pipeline)
        mara = pipeline.project.character_by_name("Mara")

        with pytest.raises(ValidationError):
            pipeline.update_character(mara.id, voice="Robot")
        assert pipeline.update_character(mara.id, voice="Kore").voice == "Kore"

    def test_update_missing_character(self, pipeline):
        with pytest.raises(ResourceNotFoundError):
            pipeline.update_character("char_missing", voice="Puck")


class TestConsistency:
    """Tests for consistency verification and the gate policy."""

    @pytest.mark.asyncio
    async def test_generated_designs_verified(self, pipeline):
        await drive_to_post_production(pipeline)
        statuses = {c.consistency_status for c in pipeline.project.characters}
        assert statuses == {ConsistencyStatus.PASS}

    @pytest.mark.asyncio
    async def test_upload_locks_and_verifies(self, pipeline, fake_service):
        await drive_to_censoring(pipeline)
        mara = pipeline.project.character_by_name("Mara")
        fake_service.verdicts["Mara"] = ConsistencyVerdict(is_consistent=False, critique="wrong palette")

        updated = await pipeline.upload_character_image(mara.id, "data:image/png;base64,VVBMT0FE")

        assert updated.is_locked is True
        assert updated.consistency_status == ConsistencyStatus.FAIL
        assert updated.consistency_report == "wrong palette"
        assert updated.variants[-1].style == "upload"

    @pytest.mark.asyncio
    async def test_empty_critique_gets_fallback(self, pipeline, fake_service):
        await drive_to_censoring(pipeline)
        mara = pipeline.project.character_by_name("Mara")
        fake_service.verdicts["Mara"] = ConsistencyVerdict(is_consistent=False, critique="")

        updated = await pipeline.upload_character_image(mara.id, "data:image/png;base64,VVBMT0FE")
        assert updated.consistency_report

    @pytest.mark.asyncio
    async def test_check_failure_restores_status(self, pipeline, fake_service):
        await drive_to_post_production(pipeline)
        mara = pipeline.project.character_by_name("Mara")
        fake_service.verdicts["Mara"] = ServiceError("vision model down")

        updated = await pipeline.check_character_consistency(mara.id)

        assert updated.consistency_status == ConsistencyStatus.PASS
        assert any("vision model down" in m for m in messages(pipeline, LogType.ERROR))

    @pytest.mark.asyncio
    async def test_upload_rejects_non_image(self, pipeline):
        await drive_to_censoring(pipeline)
        mara = pipeline.project.character_by_name("Mara")
        with pytest.raises(ValidationError):
            await pipeline.upload_character_image(mara.id, "file:///etc/passwd")

    @pytest.mark.asyncio
    async def test_advisory_gate_lets_failures_through(self, pipeline, fake_service):
        fake_service.verdicts["Tempest"] = ConsistencyVerdict(is_consistent=False, critique="too bright")
        await drive_to_post_production(pipeline)

        project = pipeline.project
        assert project.workflow_stage == WorkflowStage.POST_PRODUCTION
        assert project.character_by_name("Tempest").consistency_status == ConsistencyStatus.FAIL
        assert any("too bright" in m for m in messages(pipeline, LogType.WARNING))

    @pytest.mark.asyncio
    async def test_blocking_gate_stops_visualization(self, project, fake_service, blocking_config):
        pipeline = ProductionPipeline(project, service=fake_service, config=blocking_config)
        fake_service.verdicts["Tempest"] = ConsistencyVerdict(is_consistent=False, critique="too bright")
        await drive_to_censoring(pipeline)

        with pytest.raises(StageCallError):
            await pipeline.approve_script_and_visualize()

        project = pipeline.project
        assert project.workflow_stage == WorkflowStage.CENSORING_SCRIPT
        assert not any(p.image_url for p in project.panels)
        assert project.character_by_name("Mara").image_url


class TestPostProduction:
    """Tests for per-panel post-production actions."""

    @pytest.mark.asyncio
    async def test_regenerate_panel_discards_video(self, pipeline):
        await drive_to_post_production(pipeline)
        storm = pipeline.project.panels[1]
        await pipeline.generate_panel_video(storm.id)
        assert pipeline.project.find_panel(storm.id).video_url

        await pipeline.regenerate_panel(storm.id)

        updated = pipeline.project.find_panel(storm.id)
        assert updated.image_url != storm.image_url
        assert updated.video_url is None

    @pytest.mark.asyncio
    async def test_generate_video_marks_panel_animated(self, pipeline):
        await drive_to_post_production(pipeline)
        lamp = pipeline.project.panels[0]

        await pipeline.generate_panel_video(lamp.id)

        updated = pipeline.project.find_panel(lamp.id)
        assert updated.should_animate is True
        assert updated.video_url

    @pytest.mark.asyncio
    async def test_connection_error_on_one_video_does_not_stop_others(self, pipeline, fake_service):
        await drive_to_post_production(pipeline)
        for panel in pipeline.project.panels:
            pipeline.store.update_panel(panel.id, should_animate=True)
        fake_service.video_errors.append(httpx.ConnectError("connection reset"))

        project = await pipeline.finalize_production()

        assert project.workflow_stage == WorkflowStage.COMPLETED
        assert [bool(p.video_url) for p in project.panels] == [False, True, True]
        assert len(fake_service.calls_of("video")) == 3
        assert not any(p.is_generating for p in project.panels)
        assert any("connection reset" in m for m in messages(pipeline, LogType.ERROR))
        assert any("retried individually" in m for m in messages(pipeline, LogType.WARNING))

    @pytest.mark.asyncio
    async def test_finalize_requires_artwork(self, pipeline, fake_service):
        fake_service.image_failures.update({"lights the lamp", "storm rises", "faces the storm"})
        await drive_to_post_production(pipeline)

        with pytest.raises(PreconditionError):
            await pipeline.finalize_production()

    @pytest.mark.asyncio
    async def test_continuity_report(self, pipeline, fake_service):
        await drive_to_censoring(pipeline)
        report = await pipeline.run_continuity_check()
        assert report == fake_service.text_responses["text"]
        assert pipeline.project.continuity_report == report


class TestChapters:
    """Tests for moving a long-form series from one chapter to the next."""

    @pytest.fixture
    def series(self, long_project, fake_service, config):
        return ProductionPipeline(long_project, service=fake_service, config=config)

    @pytest.mark.asyncio
    async def test_complete_chapter_scripts_next(self, series, fake_service):
        await drive_to_completed(series)
        finished = series.project.panels
        fake_service.calls.clear()

        project = await series.complete_chapter_and_next()

        assert project.workflow_stage == WorkflowStage.CENSORING_SCRIPT
        assert project.current_chapter == 2
        [archive] = project.completed_chapters
        assert archive.chapter_number == 1
        assert archive.title == "Chapter 1"
        assert archive.summary == fake_service.text_responses["text"]
        assert [p.id for p in archive.panels] == [p.id for p in finished]
        assert all(p.image_url for p in archive.panels)
        assert project.panels
        assert not {p.id for p in project.panels} & {p.id for p in finished}
        assert not any(p.image_url for p in project.panels)

        script_prompt = next(c["prompt"] for c in fake_service.calls_of("text") if c["schema"] == "ScriptSchema")
        assert "Write chapter 2" in script_prompt
        assert f"Chapter 1: {archive.summary}" in script_prompt

    @pytest.mark.asyncio
    async def test_chapter_tasks_closed(self, series):
        await drive_to_completed(series)
        review = next(t for t in series.project.agent_tasks if t.description == "Final Series Review")
        assert not review.is_completed

        await series.complete_chapter_and_next()

        tasks = series.project.agent_tasks
        chapter_one = [t for t in tasks if t.target_chapter == 1]
        assert chapter_one and all(t.is_completed for t in chapter_one)
        done = {t.description for t in tasks if t.is_completed}
        assert "Write Script for Chapter 2" in done
        assert "Draw Panels for Chapter 2" not in done
        assert "Final Series Review" not in done

    @pytest.mark.asyncio
    async def test_next_chapter_reuses_locked_cast(self, series, fake_service):
        await drive_to_completed(series)
        await series.complete_chapter_and_next()
        fake_service.calls.clear()

        project = await series.approve_script_and_visualize()

        assert project.workflow_stage == WorkflowStage.POST_PRODUCTION
        assert all(p.image_url for p in project.panels)
        assert len(fake_service.calls_of("image")) == len(project.panels)

    @pytest.mark.asyncio
    async def test_short_story_cannot_continue(self, pipeline):
        await drive_to_completed(pipeline)

        with pytest.raises(PreconditionError):
            await pipeline.complete_chapter_and_next()

        project = pipeline.project
        assert project.workflow_stage == WorkflowStage.COMPLETED
        assert project.current_chapter == 1
        assert project.completed_chapters == []

    @pytest.mark.asyncio
    async def test_short_story_completion_closes_checklist(self, pipeline):
        await drive_to_completed(pipeline)

        pm_tasks = pipeline.tasks.checklist(AgentRole.PROJECT_MANAGER)
        assert [t.description for t in pm_tasks if not t.is_completed] == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failing", ["text", "ScriptSchema"])
    async def test_failed_call_leaves_chapter_untouched(self, series, fake_service, failing):
        await drive_to_completed(series)
        before = series.project
        fake_service.text_responses[failing] = ServiceError("model overloaded", recoverable=False)

        with pytest.raises(StageCallError):
            await series.complete_chapter_and_next()

        project = series.project
        assert project.workflow_stage == WorkflowStage.COMPLETED
        assert project.current_chapter == 1
        assert project.completed_chapters == []
        assert [p.id for p in project.panels] == [p.id for p in before.panels]
        assert not series.busy
        assert any("model overloaded" in m for m in messages(series, LogType.ERROR))

    @pytest.mark.asyncio
    async def test_only_from_completed(self, series):
        await drive_to_post_production(series)

        with pytest.raises(PreconditionError):
            await series.complete_chapter_and_next()
        assert PipelineAction.COMPLETE_CHAPTER not in series.available_actions()


class TestVoices:
    """Tests for the voice suitability check."""

    @pytest.mark.asyncio
    async def test_suitable_voice(self, pipeline, fake_service):
        await drive_to_censoring(pipeline)
        mara = pipeline.project.character_by_name("Mara")

        verdict = await pipeline.verify_voice(mara.id)

        assert verdict.is_suitable is True
        prompt = fake_service.calls_of("text")[-1]["prompt"]
        assert mara.voice in prompt
        assert "Charon: Male, low pitch" in prompt
        assert any(mara.name in m for m in messages(pipeline, LogType.SUCCESS))

    @pytest.mark.asyncio
    async def test_mismatch_suggests_voice_without_changing_it(self, pipeline, fake_service):
        await drive_to_censoring(pipeline)
        tempest = pipeline.project.character_by_name("Tempest")
        fake_service.text_responses["VoiceCheckSchema"] = VoiceCheckSchema(
            is_suitable=False, suggestion="Fenrir", reason="too cheerful for a storm",
        )

        verdict = await pipeline.verify_voice(tempest.id)

        assert verdict.suggestion == "Fenrir"
        assert pipeline.project.find_character(tempest.id).voice == tempest.voice
        warning = messages(pipeline, LogType.WARNING)[-1]
        assert "Fenrir" in warning and "too cheerful" in warning

        pipeline.update_character(tempest.id, voice=verdict.suggestion)
        assert pipeline.project.find_character(tempest.id).voice == "Fenrir"

    @pytest.mark.asyncio
    async def test_check_failure_logged(self, pipeline, fake_service):
        await drive_to_censoring(pipeline)
        mara = pipeline.project.character_by_name("Mara")
        fake_service.text_responses["VoiceCheckSchema"] = ServiceError("quota exceeded", recoverable=False)

        with pytest.raises(StageCallError):
            await pipeline.verify_voice(mara.id)

        assert not pipeline.busy
        assert any("quota exceeded" in m for m in messages(pipeline, LogType.ERROR))


class TestProjectManagement:
    """Tests for save, load, archive, and backups."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, project, fake_service, config, persistence):
        pipeline = ProductionPipeline(project, service=fake_service, config=config, persistence=persistence)
        await drive_to_censoring(pipeline)
        result = await pipeline.save_work_in_progress()
        assert result.ok

        pipeline.new_project(theme="something else")
        loaded = await pipeline.load_project(project.id)

        assert loaded.id == project.id
        assert loaded.workflow_stage == WorkflowStage.CENSORING_SCRIPT

    @pytest.mark.asyncio
    async def test_archive_moves_to_library(self, project, fake_service, config, persistence):
        pipeline = ProductionPipeline(project, service=fake_service, config=config, persistence=persistence)
        await pipeline.save_work_in_progress()

        result = await pipeline.archive_to_library()

        assert result.ok
        assert await persistence.load_active_projects("local") == []
        assert [p.id for p in await persistence.load_library("local")] == [project.id]

    @pytest.mark.asyncio
    async def test_load_missing_project(self, pipeline, persistence):
        pipeline.persistence = persistence
        with pytest.raises(ResourceNotFoundError):
            await pipeline.load_project("proj_missing")

    @pytest.mark.asyncio
    async def test_zip_round_trip_gets_new_id(self, pipeline, tmp_path):
        await drive_to_censoring(pipeline)
        original = pipeline.project
        path = pipeline.export_zip(tmp_path)

        imported = pipeline.import_zip(path)

        assert imported.id != original.id
        assert imported.title == original.title
        assert len(imported.panels) == len(original.panels)

    @pytest.mark.asyncio
    async def test_close_closes_service(self, pipeline, fake_service):
        async with pipeline:
            pass
        assert fake_service.closed
