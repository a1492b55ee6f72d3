"""
Production Pipeline
===================

Main orchestration class that takes a theme through research, scripting,
censorship, character design, panel art, and post-production.

Every action reads the project from the ProjectStore, calls the generation
service, and merges results back through the store. Only one action runs at
a time per project; a second action started while one is running is refused.
"""

import logging
import re
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple, Union

from ..api import get_service
from ..api.base import GenerationService, ConsistencyService
from ..api.schemas import (
    ResearchDataSchema,
    StoryConceptSchema,
    SeriesBibleSchema,
    CastSchema,
    ScriptSchema,
    CensorSchema,
    CharacterDesignSchema,
    VoiceCheckSchema,
)
from ..context.persistence import PersistenceStore, SaveResult
from ..context.task_log import TaskLog, TaskBoard, RESEARCH_TASKS
from ..core.config import Config, get_config
from ..core.exceptions import (
    StudioError,
    BusyError,
    ConfigurationError,
    PreconditionError,
    ResourceNotFoundError,
    StageCallError,
    ValidationError,
)
from ..project.models import (
    AgentRole,
    ChapterArchive,
    Character,
    CharacterRole,
    CharacterVariant,
    ComicPanel,
    ComicProject,
    ConsistencyStatus,
    Message,
    ModelTier,
    ResearchData,
    SeriesBible,
    StoryConcept,
    StoryFormat,
    TaskType,
    WorkflowStage,
    new_id,
)
from ..project.stages import (
    PipelineAction,
    STAGE_LABELS,
    enabled_actions,
    is_enabled,
    rollback_target,
)
from ..project.store import ProjectStore
from ..utils.storage import export_project_zip, import_project_zip
from . import prompts
from .generation_loop import AssetGenerationLoop, Collection, GenerationJob, LoopReport
from .verifier import ConsistencyVerifier, failing_characters

logger = logging.getLogger(__name__)


class ProductionPipeline:
    """
    Main class for producing an AI-generated comic.

    Handles:
    - Stage transitions with precondition guards
    - Sequential character and panel generation
    - Consistency verification of character designs
    - Rejection and rollback
    - Chapter-by-chapter progression of long-form series
    - Saving, loading, and archiving projects

    Example:
        async with ProductionPipeline(ComicProject.new(theme="lighthouse ghosts")) as pipeline:
            await pipeline.start_research()
            await pipeline.finalize_strategy()
            await pipeline.approve_research_and_script()
            await pipeline.approve_script_and_visualize()
            await pipeline.finalize_production()
    """

    def __init__(
        self,
        project: Optional[ComicProject] = None,
        service: Optional[GenerationService] = None,
        consistency_service: Optional[ConsistencyService] = None,
        persistence: Optional[PersistenceStore] = None,
        config: Optional[Config] = None,
        store: Optional[ProjectStore] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            project: Project to work on (a blank one if omitted)
            service: Generation service (built from config if omitted)
            consistency_service: Consistency checker (defaults to ``service``)
            persistence: Project storage for save/load/archive
            config: Configuration (global config if omitted)
            store: Existing store to operate on instead of ``project``
        """
        self.config = config or get_config()
        self.service = service or get_service(self.config.generation.provider, config=self.config)

        consistency_service = consistency_service or self.service
        if not isinstance(consistency_service, ConsistencyService):
            raise ConfigurationError(
                "No consistency service available; pass consistency_service",
                config_key="consistency",
            )

        self.store = store or ProjectStore(project or ComicProject.new())
        self.task_log = TaskLog(self.store)
        self.tasks = TaskBoard(self.store)
        self.loop = AssetGenerationLoop(self.store, self.task_log, item_delay=self.config.pipeline.item_delay)
        self.verifier = ConsistencyVerifier(consistency_service, self.store, self.task_log)
        self.persistence = persistence

        logger.info("ProductionPipeline initialized")
        logger.info(f"  Project: {self.store.project_id}")
        logger.info(f"  Service: {self.service.provider_name}")

    # -------------------------------------------------------------------------
    # State Access
    # -------------------------------------------------------------------------

    @property
    def project(self) -> ComicProject:
        return self.store.snapshot()

    @property
    def busy(self) -> bool:
        return self.store.busy

    def available_actions(self) -> List[PipelineAction]:
        """Actions enabled at the current stage (none while busy)."""
        if self.store.busy:
            return []
        return sorted(enabled_actions(self.store.stage), key=lambda a: a.value)

    # -------------------------------------------------------------------------
    # Research
    # -------------------------------------------------------------------------

    async def start_research(self) -> ComicProject:
        """Move from IDLE to RESEARCHING, discarding any earlier strategy."""
        role = AgentRole.MARKET_RESEARCHER
        project = self._guard(PipelineAction.START_RESEARCH, role)
        self._require(bool(project.theme.strip()), role, "start_research", "A theme is required to start research")

        async with self._stage_call("start_research", role):
            self.store.apply(
                {"workflow_stage": WorkflowStage.RESEARCHING, "market_analysis": None},
                source="start_research",
            )
            self.tasks.seed_research_tasks()
            self.task_log.info(role, f"Research started for theme: {project.theme}")

        return self.store.snapshot()

    async def send_research_message(self, text: str) -> str:
        """Discuss the strategy with the researcher. Returns the reply."""
        role = AgentRole.MARKET_RESEARCHER
        project = self._guard(PipelineAction.SEND_RESEARCH_MESSAGE, role)
        self._require(bool(text.strip()), role, "send_research_message", "Message cannot be empty")

        async with self._stage_call("send_research_message", role):
            history = project.research_chat_history
            reply = await self.service.generate_text(prompts.research_reply(project, history, text))
            self.store.apply(
                {
                    "research_chat_history": history + [
                        Message(role="user", content=text),
                        Message(role="model", content=reply, sender_id=role.value),
                    ]
                },
                source="research_chat",
            )
            self.task_log.info(role, "Replied to research discussion")

        return reply

    async def finalize_strategy(self) -> ComicProject:
        """Extract the market strategy from the research discussion."""
        role = AgentRole.MARKET_RESEARCHER
        project = self._guard(PipelineAction.FINALIZE_STRATEGY, role)

        async with self._stage_call("finalize_strategy", role):
            self.task_log.info(role, "Extracting strategy from research")
            strategy = await self.service.generate_text(prompts.extract_strategy(project), schema=ResearchDataSchema)
            analysis = ResearchData.from_dict(strategy.model_dump())
            self._merge_strategy(project, analysis)

            for description in RESEARCH_TASKS:
                self.tasks.complete_system_task(role, description)
            chapters = 1 if project.story_format == StoryFormat.SHORT_STORY else _parse_chapters(analysis.estimated_chapters)
            self.tasks.seed_production_tasks(chapters)
            self.task_log.success(role, f"Strategy ready: {analysis.suggested_title}")

        return self.store.snapshot()

    def update_market_analysis(self, analysis: ResearchData) -> ComicProject:
        """Replace the strategy with a manually edited one."""
        role = AgentRole.MARKET_RESEARCHER
        project = self._guard(PipelineAction.FINALIZE_STRATEGY, role)
        self._merge_strategy(project, analysis)
        self.task_log.info(role, "Strategy updated manually")
        return self.store.snapshot()

    def _merge_strategy(self, project: ComicProject, analysis: ResearchData) -> None:
        changes: Dict[str, Any] = {"market_analysis": analysis}
        if not project.title and analysis.suggested_title:
            changes["title"] = analysis.suggested_title
        if analysis.visual_style:
            if not project.style:
                changes["style"] = analysis.visual_style
            palette = ", ".join(analysis.color_palette)
            changes["art_style_guide"] = f"{analysis.visual_style}. Palette: {palette}" if palette else analysis.visual_style
        self.store.apply(changes, source="strategy")

    # -------------------------------------------------------------------------
    # Scripting
    # -------------------------------------------------------------------------

    async def approve_research_and_script(self) -> ComicProject:
        """
        Approve the strategy and write the script.

        Generates a series bible first for long-form projects that lack one,
        then the story concept, cast, and panel script, and finally runs the
        censor check on the result.
        """
        role = AgentRole.SCRIPTWRITER
        project = self._guard(PipelineAction.APPROVE_RESEARCH_AND_SCRIPT, role)
        self._require(
            project.market_analysis is not None, role, "approve_research_and_script",
            "Finalize the research strategy before scripting",
        )

        async with self._stage_call("approve_research_and_script", role):
            if project.is_long_form and project.series_bible is None:
                self.task_log.info(AgentRole.CONTINUITY_EDITOR, "Writing series bible")
                bible = await self.service.generate_text(prompts.series_bible(project), schema=SeriesBibleSchema)
                self.store.apply({"series_bible": SeriesBible.from_dict(bible.model_dump())}, source="series_bible")
                self.task_log.success(AgentRole.CONTINUITY_EDITOR, "Series bible created")

            self.store.apply({"workflow_stage": WorkflowStage.SCRIPTING}, source="approve_research_and_script")
            self.tasks.complete_system_task(AgentRole.PROJECT_MANAGER, "Review & Approve Strategy")

            project = self.store.snapshot()
            self.task_log.info(role, "Developing story concept")
            concept = await self.service.generate_text(prompts.story_concept(project), schema=StoryConceptSchema)
            self.store.apply({"story_concept": StoryConcept.from_dict(concept.model_dump())}, source="story_concept")
            self.tasks.complete_system_task(role, "Develop Story Concepts")

            project = self.store.snapshot()
            self.task_log.info(role, "Casting characters")
            cast = await self.service.generate_text(prompts.cast(project), schema=CastSchema)
            self.store.apply({"characters": self._merge_cast(project.characters, cast)}, source="cast")
            self.tasks.complete_system_task(role, "Define Character Cast")

            project = self.store.snapshot()
            self.store.apply(await self._write_script(project), source="script")
            self._script_written(project.current_chapter)

            self.store.apply({"workflow_stage": WorkflowStage.CENSORING_SCRIPT}, source="approve_research_and_script")
            await self._censor()

        return self.store.snapshot()

    async def _write_script(self, project: ComicProject) -> Dict[str, Any]:
        """Generate the current chapter's panels. Returns the changes to merge."""
        role = AgentRole.SCRIPTWRITER
        panel_count = project.target_panel_count or self.config.pipeline.default_panel_count
        self.task_log.info(role, f"Writing chapter {project.current_chapter} ({panel_count} panels)")
        script = await self.service.generate_text(prompts.script(project, panel_count), schema=ScriptSchema)
        changes: Dict[str, Any] = {
            "panels": [
                ComicPanel(
                    id=new_id("panel"),
                    description=p.description,
                    dialogue=p.dialogue,
                    caption=p.caption or None,
                    characters_involved=list(p.characters_involved),
                    should_animate=p.should_animate,
                )
                for p in script.panels
            ],
            "is_censored": False,
            "censor_report": None,
            "continuity_report": None,
        }
        if script.title and not project.title:
            changes["title"] = script.title
        return changes

    def _script_written(self, chapter: int) -> None:
        role = AgentRole.SCRIPTWRITER
        panels = self.store.snapshot().panels
        self.tasks.complete_system_task(role, f"Write Script for Chapter {chapter}")
        self.task_log.success(role, f"Script written: {len(panels)} panels")

    def _merge_cast(self, existing: List[Character], cast: CastSchema) -> List[Character]:
        """
        Combine a generated cast with the current one.

        Characters are matched by name. Locked characters are kept as they are
        whether or not the new cast mentions them; unlocked ones are refreshed
        or dropped. New characters get voices in a fixed rotation.
        """
        voices = self.config.voices.available
        by_name = {c.name.strip().lower(): c for c in existing}
        merged: List[Character] = [c for c in existing if c.is_locked]
        kept = {c.id for c in merged}

        for member in cast.characters:
            current = by_name.get(member.name.strip().lower())
            if current is not None and current.id in kept:
                continue
            if current is not None:
                current.description = member.description
                current.role = _character_role(member.role)
                current.personality = member.personality or current.personality
                merged.append(current)
            else:
                merged.append(Character(
                    id=new_id("char"),
                    name=member.name.strip(),
                    description=member.description,
                    role=_character_role(member.role),
                    personality=member.personality or None,
                    voice=voices[len(merged) % len(voices)],
                ))
            kept.add(merged[-1].id)

        return merged

    # -------------------------------------------------------------------------
    # Censorship and Continuity
    # -------------------------------------------------------------------------

    async def run_censor_check(self) -> Tuple[bool, Optional[str]]:
        """Re-run the content-safety check. Returns (is_censored, report)."""
        role = AgentRole.CENSOR
        self._guard(PipelineAction.RUN_CENSOR_CHECK, role)
        async with self._stage_call("run_censor_check", role):
            await self._censor()
        project = self.store.snapshot()
        return project.is_censored, project.censor_report

    async def _censor(self) -> None:
        """Content-safety check that fails closed when the check itself fails."""
        role = AgentRole.CENSOR
        project = self.store.snapshot()
        self.task_log.info(role, "Reviewing script for unsafe content")
        try:
            verdict = await self.service.generate_text(prompts.censor(project), schema=CensorSchema)
        except StudioError as e:
            self.store.apply({"is_censored": True, "censor_report": None}, source="censor")
            self.task_log.error(role, f"Censor check failed, script held for review: {e.message}")
            return

        self.store.apply(
            {"is_censored": not verdict.passed, "censor_report": verdict.report or None},
            source="censor",
        )
        if verdict.passed:
            self.task_log.success(role, "Script approved by censor")
        else:
            self.task_log.warning(role, f"Script flagged by censor: {verdict.report or 'no details'}")

    async def run_continuity_check(self) -> str:
        """Check the script against the series canon. Returns the report."""
        role = AgentRole.CONTINUITY_EDITOR
        project = self._guard(PipelineAction.RUN_CONTINUITY_CHECK, role)
        async with self._stage_call("run_continuity_check", role):
            report = await self.service.generate_text(prompts.continuity(project))
            self.store.apply({"continuity_report": report.strip()}, source="continuity")
            self.task_log.success(role, "Continuity check complete")
        return report.strip()

    # -------------------------------------------------------------------------
    # Visualization
    # -------------------------------------------------------------------------

    async def approve_script_and_visualize(self) -> ComicProject:
        """Design characters, then draw panels, then enter post-production."""
        role = AgentRole.CHARACTER_DESIGNER
        project = self._guard(PipelineAction.APPROVE_SCRIPT_AND_VISUALIZE, role)
        self._require(not project.is_censored, role, "approve_script_and_visualize", "Script is flagged by the censor")
        self._require(bool(project.panels), role, "approve_script_and_visualize", "Script has no panels")

        if project.is_long_form:
            unlocked = [c.name for c in project.characters if not c.is_locked]
            if unlocked:
                self.task_log.warning(
                    role,
                    f"Unlocked characters may drift between chapters: {', '.join(unlocked)}",
                )

        async with self._stage_call("approve_script_and_visualize", role):
            self.store.apply({"workflow_stage": WorkflowStage.DESIGNING_CHARACTERS}, source="approve_script_and_visualize")
            self.task_log.info(role, f"Designing {len(project.characters)} characters")
            characters = await self._design_characters([c.id for c in project.characters])
            self._enforce_consistency_gate(role)
            self.tasks.complete_system_task(role, "Create Character Sheets")

            self.store.apply({"workflow_stage": WorkflowStage.VISUALIZING_PANELS}, source="approve_script_and_visualize")
            self.task_log.info(AgentRole.PANEL_ARTIST, f"Drawing {len(project.panels)} panels")
            panels = await self._draw_panels([p.id for p in project.panels])
            self.tasks.complete_system_task(
                AgentRole.PANEL_ARTIST, f"Draw Panels for Chapter {project.current_chapter}"
            )

            self.store.apply({"workflow_stage": WorkflowStage.POST_PRODUCTION}, source="approve_script_and_visualize")
            message = f"Visuals ready. Characters: {characters.summary()}. Panels: {panels.summary()}"
            if characters.has_failures or panels.has_failures:
                self.task_log.warning(AgentRole.PROJECT_MANAGER, f"{message}. Regenerate the failed items before finalizing.")
            else:
                self.task_log.success(AgentRole.PROJECT_MANAGER, message)

        return self.store.snapshot()

    async def _design_characters(self, character_ids: List[str], style: Optional[str] = None, force: bool = False) -> LoopReport:
        after = self.verifier.verify_character if self.config.consistency.verify_generated else None
        project = self.store.snapshot()
        jobs = [
            GenerationJob(
                item_id=c.id,
                label=f"character {c.name}",
                generate=self._character_generator(style),
                after=after,
            )
            for c in project.characters
            if c.id in character_ids
        ]
        if force:
            def needs_generation(character: Character) -> bool:
                return not character.is_locked
        else:
            def needs_generation(character: Character) -> bool:
                return not character.has_locked_design

        return await self.loop.run(Collection.CHARACTERS, jobs, needs_generation, AgentRole.CHARACTER_DESIGNER)

    def _character_generator(self, style: Optional[str]):
        async def generate(character: Character) -> Dict[str, Any]:
            project = self.store.snapshot()
            design = await self.service.generate_text(
                prompts.character_design(project, character),
                schema=CharacterDesignSchema,
            )
            image = await self.service.generate_image(
                prompts.character_image(project, character.name, design.description, style),
                reference_images=[],
            )
            variant = CharacterVariant(id=new_id("var"), image_url=image.url, style=style or project.style)
            return {
                "description": design.description,
                "image_url": image.url,
                "is_locked": character.is_locked or project.is_long_form,
                "variants": character.variants + [variant],
                "consistency_status": None,
                "consistency_report": None,
            }

        return generate

    async def _draw_panels(self, panel_ids: List[str], force: bool = False) -> LoopReport:
        project = self.store.snapshot()
        jobs = [
            GenerationJob(item_id=p.id, label=f"panel {index + 1}", generate=self._panel_generator())
            for index, p in enumerate(project.panels)
            if p.id in panel_ids
        ]
        if force:
            def needs_generation(panel: ComicPanel) -> bool:
                return True
        else:
            def needs_generation(panel: ComicPanel) -> bool:
                return not panel.image_url

        return await self.loop.run(Collection.PANELS, jobs, needs_generation, AgentRole.PANEL_ARTIST)

    def _panel_generator(self):
        async def generate(panel: ComicPanel) -> Dict[str, Any]:
            project = self.store.snapshot()
            image = await self.service.generate_image(
                prompts.panel_image(project, panel, project.characters),
                reference_images=self._reference_images(project, panel),
            )
            return {"image_url": image.url, "video_url": None}

        return generate

    def _reference_images(self, project: ComicProject, panel: ComicPanel) -> List[str]:
        """Character images for a panel, involved characters first."""
        involved = {name.strip().lower() for name in panel.characters_involved}
        ordered = sorted(
            (c for c in project.characters if c.image_url),
            key=lambda c: c.name.strip().lower() not in involved,
        )
        return [c.image_url for c in ordered][: self.config.generation.max_reference_images]

    def _enforce_consistency_gate(self, role: AgentRole) -> None:
        if not self.config.consistency.is_blocking:
            return
        failing = failing_characters(self.store.snapshot().characters)
        if failing:
            names = ", ".join(c.name for c in failing)
            raise PreconditionError(
                f"Consistency gate: fix or replace {names}",
                action="consistency_gate",
            )

    # -------------------------------------------------------------------------
    # Post-Production
    # -------------------------------------------------------------------------

    async def finalize_production(self) -> ComicProject:
        """Voice dialogue and captions, animate flagged panels, and complete."""
        role = AgentRole.VOICE_ACTOR
        project = self._guard(PipelineAction.FINALIZE_PRODUCTION, role)
        self._require(
            any(p.image_url for p in project.panels), role, "finalize_production",
            "At least one panel needs artwork before finalizing",
        )
        if self.config.consistency.is_blocking:
            failing = failing_characters(project.characters)
            self._require(
                not failing, role, "finalize_production",
                f"Consistency gate: {', '.join(c.name for c in failing)} failed the style check",
            )

        async with self._stage_call("finalize_production", role):
            dialogue = await self.loop.run(
                Collection.PANELS,
                self._panel_jobs(project, "dialogue audio", self._dialogue_generator()),
                lambda p: bool(p.dialogue.strip()) and not p.audio_url,
                role,
            )
            captions = await self.loop.run(
                Collection.PANELS,
                self._panel_jobs(project, "caption audio", self._caption_generator()),
                lambda p: bool((p.caption or "").strip()) and not p.caption_audio_url,
                role,
            )
            videos = await self.loop.run(
                Collection.PANELS,
                self._panel_jobs(project, "video", self._video_generator()),
                lambda p: p.needs_video,
                AgentRole.CINEMATOGRAPHER,
            )

            self.store.apply({"workflow_stage": WorkflowStage.COMPLETED}, source="finalize_production")
            self.tasks.complete_chapter_tasks(project.current_chapter)
            if not self._chapters_ahead():
                self.tasks.complete_system_task(AgentRole.PROJECT_MANAGER, "Final Series Review")

            message = (
                f"Production complete. Dialogue: {dialogue.summary()}. "
                f"Captions: {captions.summary()}. Video: {videos.summary()}"
            )
            if any(report.has_failures for report in (dialogue, captions, videos)):
                self.task_log.warning(AgentRole.PUBLISHER, f"{message}. Failed items can be retried individually.")
            else:
                self.task_log.success(AgentRole.PUBLISHER, message)

        return self.store.snapshot()

    def _chapters_ahead(self) -> bool:
        """True while system tasks for a later chapter are still open."""
        project = self.store.snapshot()
        return any(
            t.type == TaskType.SYSTEM and not t.is_completed and (t.target_chapter or 0) > project.current_chapter
            for t in project.agent_tasks
        )

    @staticmethod
    def _panel_jobs(project: ComicProject, kind: str, generate) -> List[GenerationJob]:
        return [
            GenerationJob(item_id=p.id, label=f"{kind} for panel {index + 1}", generate=generate)
            for index, p in enumerate(project.panels)
        ]

    def _dialogue_generator(self):
        async def generate(panel: ComicPanel) -> Dict[str, Any]:
            project = self.store.snapshot()
            voice = self.config.voices.default_voice
            if panel.characters_involved:
                speaker = project.character_by_name(panel.characters_involved[0])
                if speaker is not None and speaker.voice:
                    voice = speaker.voice
            audio = await self.service.generate_audio(panel.dialogue, voice)
            return {"audio_url": audio.url}

        return generate

    def _caption_generator(self):
        async def generate(panel: ComicPanel) -> Dict[str, Any]:
            audio = await self.service.generate_audio(panel.caption, self.config.voices.narrator_voice)
            return {"caption_audio_url": audio.url}

        return generate

    def _video_generator(self):
        async def generate(panel: ComicPanel) -> Dict[str, Any]:
            video = await self.service.generate_video(panel.image_url, prompts.panel_motion(panel))
            return {"video_url": video.url}

        return generate

    async def regenerate_panel(self, panel_id: str) -> LoopReport:
        """Redraw one panel; its old video is discarded."""
        role = AgentRole.PANEL_ARTIST
        project = self._guard(PipelineAction.REGENERATE_PANEL, role)
        self._panel(project, panel_id)
        async with self._stage_call("regenerate_panel", role):
            return await self._draw_panels([panel_id], force=True)

    async def generate_panel_video(self, panel_id: str) -> LoopReport:
        """Animate one panel that already has artwork."""
        role = AgentRole.CINEMATOGRAPHER
        project = self._guard(PipelineAction.GENERATE_PANEL_VIDEO, role)
        panel = self._panel(project, panel_id)
        self._require(bool(panel.image_url), role, "generate_panel_video", "Panel has no artwork to animate")

        async with self._stage_call("generate_panel_video", role):
            if not panel.should_animate:
                self.store.update_panel(panel_id, source="generate_panel_video", should_animate=True)
            jobs = [GenerationJob(item_id=panel_id, label="video for panel", generate=self._video_generator())]
            return await self.loop.run(Collection.PANELS, jobs, lambda p: p.needs_video, role)

    # -------------------------------------------------------------------------
    # Chapters
    # -------------------------------------------------------------------------

    async def complete_chapter_and_next(self) -> ComicProject:
        """
        Archive the finished chapter and script the next one.

        Long-form projects only. The chapter's panels and a three-sentence
        summary move to ``completed_chapters``, the chapter's system tasks are
        closed, and the next chapter is written and sent to the censor. The
        summary and the new script are both generated before anything is
        merged, so a failed call leaves the completed chapter untouched.
        """
        role = AgentRole.PROJECT_MANAGER
        project = self._guard(PipelineAction.COMPLETE_CHAPTER, role)
        self._require(
            project.is_long_form, role, "complete_chapter_and_next",
            "Only long-form projects continue to another chapter",
        )
        self._require(
            bool(project.panels), role, "complete_chapter_and_next",
            "The finished chapter has no panels to archive",
        )

        async with self._stage_call("complete_chapter_and_next", role):
            chapter = project.current_chapter
            self.task_log.info(AgentRole.CONTINUITY_EDITOR, f"Summarizing chapter {chapter}")
            summary = await self.service.generate_text(prompts.chapter_summary(project))
            archived = project.completed_chapters + [
                ChapterArchive(
                    chapter_number=chapter,
                    title=f"Chapter {chapter}",
                    panels=project.panels,
                    summary=summary.strip(),
                )
            ]
            upcoming = replace(project, current_chapter=chapter + 1, completed_chapters=archived, panels=[])
            script = await self._write_script(upcoming)

            self.store.apply(
                {
                    "workflow_stage": WorkflowStage.SCRIPTING,
                    "completed_chapters": archived,
                    "current_chapter": chapter + 1,
                    **script,
                },
                source="complete_chapter_and_next",
            )
            self.tasks.complete_chapter_tasks(chapter)
            self.task_log.success(role, f"Chapter {chapter} finished. Proceeding to chapter {chapter + 1}.")
            self._script_written(chapter + 1)

            self.store.apply({"workflow_stage": WorkflowStage.CENSORING_SCRIPT}, source="complete_chapter_and_next")
            await self._censor()

        return self.store.snapshot()

    # -------------------------------------------------------------------------
    # Rejection
    # -------------------------------------------------------------------------

    def reject(self, reason: str) -> ComicProject:
        """
        Roll the project back one checkpoint.

        RESEARCHING returns to IDLE and drops the strategy; CENSORING_SCRIPT
        returns to RESEARCHING; POST_PRODUCTION returns to CENSORING_SCRIPT;
        COMPLETED returns to POST_PRODUCTION.
        """
        role = AgentRole.PROJECT_MANAGER
        project = self._guard(PipelineAction.REJECT, role)
        if not reason or not reason.strip():
            self.task_log.warning(role, "Rejection refused: a reason is required")
            raise ValidationError("A rejection reason is required", field="reason")

        current = project.workflow_stage
        target = rollback_target(current)
        changes: Dict[str, Any] = {"workflow_stage": target}
        if current == WorkflowStage.RESEARCHING:
            changes["market_analysis"] = None

        self.store.apply(changes, source="reject")
        self.task_log.error(
            role,
            f"Rejected at {STAGE_LABELS[current]}: {reason.strip()}. Returned to {STAGE_LABELS[target]}.",
        )
        return self.store.snapshot()

    # -------------------------------------------------------------------------
    # Character Operations
    # -------------------------------------------------------------------------

    async def regenerate_character(self, character_id: str, style: Optional[str] = None) -> LoopReport:
        """Generate a new design for an unlocked character."""
        role = AgentRole.CHARACTER_DESIGNER
        project = self._guard(None, role)
        character = self._character(project, character_id)
        self._require(
            not character.is_locked, role, "regenerate_character",
            f"{character.name} is locked; unlock before regenerating",
        )
        async with self._stage_call("regenerate_character", role):
            return await self._design_characters([character_id], style=style, force=True)

    def toggle_character_lock(self, character_id: str) -> Character:
        role = AgentRole.CHARACTER_DESIGNER
        project = self._guard(None, role)
        character = self._character(project, character_id)
        locked = not character.is_locked
        self.store.update_character(character_id, source="lock", is_locked=locked)
        self.task_log.info(role, f"{character.name} {'locked' if locked else 'unlocked'}")
        return self.store.snapshot().find_character(character_id)

    def update_character(
        self,
        character_id: str,
        description: Optional[str] = None,
        voice: Optional[str] = None,
    ) -> Character:
        """Edit a character's description or voice."""
        role = AgentRole.CHARACTER_DESIGNER
        project = self._guard(None, role)
        character = self._character(project, character_id)

        updates: Dict[str, Any] = {}
        if description is not None:
            updates["description"] = description.strip()
        if voice is not None:
            if voice not in self.config.voices.available:
                raise ValidationError(f"Unknown voice: {voice}", field="voice", value=voice)
            updates["voice"] = voice
        if updates:
            self.store.update_character(character_id, source="edit", **updates)
            self.task_log.info(role, f"Updated {character.name}: {', '.join(sorted(updates))}")
        return self.store.snapshot().find_character(character_id)

    def select_character_variant(self, character_id: str, variant_id: str) -> Character:
        """Restore an earlier generated design."""
        role = AgentRole.CHARACTER_DESIGNER
        project = self._guard(None, role)
        character = self._character(project, character_id)
        self._require(
            not character.is_locked, role, "select_character_variant",
            f"{character.name} is locked; unlock before changing the design",
        )
        variant = next((v for v in character.variants if v.id == variant_id), None)
        if variant is None:
            raise ResourceNotFoundError(
                f"No variant {variant_id} for {character.name}",
                resource_type="variant",
                resource_id=variant_id,
            )
        self.store.update_character(
            character_id,
            source="variant",
            image_url=variant.image_url,
            consistency_status=None,
            consistency_report=None,
        )
        self.task_log.info(role, f"{character.name} switched to an earlier design")
        return self.store.snapshot().find_character(character_id)

    async def upload_character_image(self, character_id: str, image_url: str) -> Character:
        """
        Use a user-supplied image as the character design.

        The character is locked and marked PENDING immediately; the
        consistency check then settles it to PASS or FAIL.
        """
        role = AgentRole.CHARACTER_DESIGNER
        project = self._guard(None, role)
        character = self._character(project, character_id)
        if not image_url or not image_url.startswith(("data:image/", "http://", "https://")):
            raise ValidationError("Upload must be an image data URL or http(s) URL", field="image_url")

        async with self._stage_call("upload_character_image", role):
            self.store.update_character(
                character_id,
                source="upload",
                image_url=image_url,
                is_locked=True,
                consistency_status=ConsistencyStatus.PENDING,
                consistency_report=None,
                variants=character.variants + [
                    CharacterVariant(id=new_id("var"), image_url=image_url, style="upload")
                ],
            )
            self.task_log.info(role, f"Uploaded a design for {character.name}; locked")

            if self.config.consistency.auto_verify_uploads:
                await self.verifier.verify_character(character_id)

        return self.store.snapshot().find_character(character_id)

    async def check_character_consistency(self, character_id: str) -> Character:
        """Run the consistency check on demand."""
        role = AgentRole.CONTINUITY_EDITOR
        project = self._guard(None, role)
        character = self._character(project, character_id)
        self._require(bool(character.image_url), role, "check_character_consistency", f"{character.name} has no design yet")
        async with self._stage_call("check_character_consistency", role):
            await self.verifier.verify_character(character_id)
        return self.store.snapshot().find_character(character_id)

    async def verify_voice(self, character_id: str) -> VoiceCheckSchema:
        """
        Ask whether a character's voice suits them.

        The verdict is advisory: the character is not changed. Apply a
        suggestion with ``update_character(character_id, voice=...)``.
        """
        role = AgentRole.VOICE_ACTOR
        project = self._guard(None, role)
        character = self._character(project, character_id)
        voice = character.voice or self.config.voices.default_voice

        async with self._stage_call("verify_voice", role):
            descriptions = {
                name: self.config.voices.descriptions.get(name, "")
                for name in self.config.voices.available
            }
            verdict = await self.service.generate_text(
                prompts.voice_check(character, voice, descriptions),
                schema=VoiceCheckSchema,
            )

        if verdict.is_suitable:
            self.task_log.success(role, f"Voice {voice} suits {character.name}")
        else:
            suggestion = f", try {verdict.suggestion}" if verdict.suggestion else ""
            self.task_log.warning(
                role,
                f"Voice {voice} does not suit {character.name}{suggestion}: {verdict.reason or 'no reason given'}",
            )
        return verdict

    # -------------------------------------------------------------------------
    # Project Management
    # -------------------------------------------------------------------------

    def new_project(
        self,
        theme: str = "",
        story_format: StoryFormat = StoryFormat.SHORT_STORY,
        language: str = "English",
        model_tier: ModelTier = ModelTier.STANDARD,
    ) -> ComicProject:
        """Replace the current project with a blank one for the same owner."""
        self._guard(None, AgentRole.PROJECT_MANAGER)
        owner_id = self.store.snapshot().owner_id
        project = ComicProject.new(
            theme=theme,
            story_format=story_format,
            owner_id=owner_id,
            language=language,
            model_tier=model_tier,
        )
        self.store.replace_document(project, source="new_project")
        self.task_log.info(AgentRole.PROJECT_MANAGER, "New project started")
        return self.store.snapshot()

    async def save_work_in_progress(self) -> SaveResult:
        """Save to an active slot. Refusals come back as a typed result."""
        role = AgentRole.ARCHIVIST
        persistence = self._require_persistence()
        project = self._guard(None, role)

        result = await persistence.save_active(project)
        if result.ok:
            self.task_log.success(role, "Project saved")
        else:
            self.task_log.error(role, f"Save failed ({result.status.value}): {result.message}")
        return result

    async def load_project(self, project_id: str, owner_id: Optional[str] = None) -> ComicProject:
        """Load a project from the active slots, falling back to the library."""
        role = AgentRole.ARCHIVIST
        persistence = self._require_persistence()
        self._guard(None, role)
        owner = owner_id or self.store.snapshot().owner_id or "local"

        for source in (persistence.load_active_projects, persistence.load_library):
            for candidate in await source(owner):
                if candidate.id == project_id:
                    self.store.replace_document(_settled(candidate), source="load")
                    self.task_log.info(role, f"Loaded project {candidate.title or candidate.id}")
                    return self.store.snapshot()

        raise ResourceNotFoundError(
            f"No project {project_id} for owner {owner}",
            resource_type="project",
            resource_id=project_id,
        )

    async def archive_to_library(self) -> SaveResult:
        """Move the project from its active slot into the library."""
        role = AgentRole.ARCHIVIST
        persistence = self._require_persistence()
        project = self._guard(None, role)

        result = await persistence.save_to_library(project)
        if not result.ok:
            self.task_log.error(role, f"Archive failed ({result.status.value}): {result.message}")
            return result

        await persistence.delete_active(project.id)
        self.task_log.success(role, "Project archived to library")
        return result

    def export_zip(self, output_dir: Union[str, Path]) -> str:
        self._guard(None, AgentRole.ARCHIVIST)
        return export_project_zip(self.store.snapshot(), output_dir)

    def import_zip(self, path: Union[str, Path]) -> ComicProject:
        """Replace the current project with one from a backup archive."""
        role = AgentRole.ARCHIVIST
        self._guard(None, role)
        project = _settled(import_project_zip(path))
        project.owner_id = self.store.snapshot().owner_id
        self.store.replace_document(project, source="import")
        self.task_log.info(role, f"Imported project {project.title}")
        return self.store.snapshot()

    async def close(self) -> None:
        """Close the generation service connection."""
        await self.service.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # -------------------------------------------------------------------------
    # Guards
    # -------------------------------------------------------------------------

    def _guard(self, action: Optional[PipelineAction], role: AgentRole) -> ComicProject:
        """
        Refuse an action while busy or outside its enabling stage.

        Returns:
            Snapshot of the project the action will start from
        """
        name = action.value if action else "request"
        if self.store.busy:
            running = self.store.running_action
            self.task_log.warning(role, f"Ignored {name}: {running} is still running")
            raise BusyError(f"Cannot run {name} while {running} is running", running_action=running)

        project = self.store.snapshot()
        if action is not None and not is_enabled(project.workflow_stage, action):
            label = STAGE_LABELS[project.workflow_stage]
            self.task_log.warning(role, f"Ignored {name}: not available during {label}")
            raise PreconditionError(
                f"{name} is not available at stage {project.workflow_stage.value}",
                action=name,
                current=project.workflow_stage.value,
            )
        return project

    def _require(self, condition: bool, role: AgentRole, action: str, message: str) -> None:
        if not condition:
            self.task_log.warning(role, f"Cannot {action.replace('_', ' ')}: {message}")
            raise PreconditionError(message, action=action)

    @asynccontextmanager
    async def _stage_call(self, name: str, role: AgentRole):
        """
        Run the body as the project's single active action.

        A failing stage call is logged, the stage goes back to where the action
        started, and StageCallError is raised. Results merged before the
        failure are kept.
        """
        origin = self.store.begin_action(name)
        self.service.set_model_tier(self.store.snapshot().model_tier.value)
        try:
            yield origin
        except StudioError as e:
            self.task_log.error(role, f"{name.replace('_', ' ').capitalize()} failed: {e.message}")
            self._restore_stage(origin)
            raise StageCallError(
                f"{name} failed: {e.message}",
                action=name,
                stage=origin.value,
                details={"cause": e.to_dict()},
            ) from e
        except Exception as e:
            self.task_log.error(role, f"{name.replace('_', ' ').capitalize()} failed unexpectedly: {type(e).__name__}: {e}")
            self._restore_stage(origin)
            raise
        finally:
            self.store.end_action()

    def _restore_stage(self, origin: WorkflowStage) -> None:
        if self.store.stage != origin:
            logger.info(f"Restoring stage {self.store.stage.value} -> {origin.value}")
            self.store.apply({"workflow_stage": origin}, source="abort")

    def _require_persistence(self) -> PersistenceStore:
        if self.persistence is None:
            raise ConfigurationError("No persistence store configured", config_key="storage")
        return self.persistence

    @staticmethod
    def _character(project: ComicProject, character_id: str) -> Character:
        character = project.find_character(character_id)
        if character is None:
            raise ResourceNotFoundError(
                f"No character with id {character_id}",
                resource_type="character",
                resource_id=character_id,
            )
        return character

    @staticmethod
    def _panel(project: ComicProject, panel_id: str) -> ComicPanel:
        panel = project.find_panel(panel_id)
        if panel is None:
            raise ResourceNotFoundError(
                f"No panel with id {panel_id}",
                resource_type="panel",
                resource_id=panel_id,
            )
        return panel


# =============================================================================
# Helpers
# =============================================================================


def _parse_chapters(value: str) -> int:
    """First integer in a free-text chapter estimate, at least 1."""
    match = re.search(r"\d+", value or "")
    return max(1, int(match.group())) if match else 1


def _character_role(value: str) -> CharacterRole:
    try:
        return CharacterRole(value.strip().upper())
    except ValueError:
        return CharacterRole.SUPPORTING


def _settled(project: ComicProject) -> ComicProject:
    """Clear in-flight flags left over from an interrupted session."""
    for character in project.characters:
        character.is_generating = False
    for panel in project.panels:
        panel.is_generating = False
    return project
