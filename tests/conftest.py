"""
Pytest Configuration and Fixtures

Shared fixtures for all tests: a scripted generation service, a default
configuration, and a pipeline wired to both.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set

import pytest

from comic_studio.api.base import (
    Artifact,
    ConsistencyService,
    ConsistencyVerdict,
    GenerationService,
)
from comic_studio.api.schemas import (
    CastMemberSchema,
    CastSchema,
    CensorSchema,
    CharacterDesignSchema,
    PanelSchema,
    ResearchDataSchema,
    ScriptSchema,
    SeriesBibleSchema,
    StoryConceptSchema,
    VoiceCheckSchema,
)
from comic_studio.context.persistence import SQLitePersistenceStore
from comic_studio.core.config import Config
from comic_studio.core.exceptions import ServiceError
from comic_studio.project.models import ComicProject, StoryFormat
from comic_studio.workflow.pipeline import ProductionPipeline


def default_text_responses() -> Dict[str, Any]:
    """Structured responses keyed by schema name ("text" for plain text)."""
    return {
        "text": "Lean into the quiet horror of the sea.",
        "ResearchDataSchema": ResearchDataSchema(
            suggested_title="Storm Keeper",
            target_audience="young adults",
            visual_style="ink wash",
            narrative_structure="three acts",
            estimated_chapters="3 chapters",
            world_setting="a rocky northern coast",
            color_palette=["slate", "amber"],
            key_themes=["duty", "loneliness"],
        ),
        "StoryConceptSchema": StoryConceptSchema(
            premise="A lighthouse keeper bargains with a storm spirit",
            unique_twist="The storm is her mother",
        ),
        "SeriesBibleSchema": SeriesBibleSchema(
            world_setting="A coast where storms have names",
            main_conflict="The keeper against the tide",
        ),
        "CastSchema": CastSchema(characters=[
            CastMemberSchema(name="Mara", description="a weathered keeper", role="MAIN"),
            CastMemberSchema(name="Tempest", description="a storm spirit", role="ANTAGONIST"),
        ]),
        "ScriptSchema": ScriptSchema(panels=[
            PanelSchema(
                description="Mara lights the lamp",
                dialogue="Not tonight.",
                characters_involved=["Mara"],
            ),
            PanelSchema(
                description="The storm rises over the cliffs",
                caption="The sea answered.",
                characters_involved=["Tempest"],
                should_animate=True,
            ),
            PanelSchema(
                description="Mara faces the storm",
                dialogue="Leave this place!",
                characters_involved=["Mara", "Tempest"],
            ),
        ]),
        "CensorSchema": CensorSchema(passed=True),
        "CharacterDesignSchema": CharacterDesignSchema(description="refined design"),
        "VoiceCheckSchema": VoiceCheckSchema(is_suitable=True),
    }


class FakeGenerationService(GenerationService, ConsistencyService):
    """
    Scripted generation service.

    Text responses come from ``text_responses`` keyed by schema name; a value
    that is an exception is raised instead. Image prompts containing any
    string in ``image_failures`` fail. Queued ``video_errors`` are raised by
    the next video calls, one each. Consistency verdicts are looked up by
    subject name.
    """

    def __init__(self):
        self.text_responses = default_text_responses()
        self.image_failures: Set[str] = set()
        self.video_errors: List[Exception] = []
        self.verdicts: Dict[str, Any] = {}
        self.default_verdict = ConsistencyVerdict(is_consistent=True)
        self.gate: Optional[asyncio.Event] = None

        self.calls: List[Dict[str, Any]] = []
        self.tiers: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False
        self._counter = 0

    @property
    def provider_name(self) -> str:
        return "Fake"

    def calls_of(self, kind: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["kind"] == kind]

    async def _enter(self, kind: str, **details) -> int:
        self.calls.append({"kind": kind, **details})
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(0)
        finally:
            self.in_flight -= 1
        self._counter += 1
        return self._counter

    async def generate_text(self, prompt, schema=None, images=None):
        key = schema.__name__ if schema else "text"
        await self._enter("text", schema=key, prompt=prompt)
        response = self.text_responses[key]
        if isinstance(response, Exception):
            raise response
        return response

    async def generate_image(self, prompt, reference_images=None):
        n = await self._enter("image", prompt=prompt, references=list(reference_images or []))
        for marker in self.image_failures:
            if marker in prompt:
                raise ServiceError(f"Image refused: {marker}", provider="Fake", recoverable=False)
        return Artifact(url=f"data:image/png;base64,SU1H{n}", mime_type="image/png")

    async def generate_audio(self, text, voice):
        n = await self._enter("audio", text=text, voice=voice)
        return Artifact(url=f"data:audio/wav;base64,QVVE{n}", mime_type="audio/wav")

    async def generate_video(self, image, motion_prompt):
        n = await self._enter("video", image=image, prompt=motion_prompt)
        if self.video_errors:
            raise self.video_errors.pop(0)
        return Artifact(url=f"https://videos.example.com/{n}.mp4", mime_type="video/mp4")

    async def check_consistency(self, image, style, subject):
        await self._enter("consistency", image=image, style=style, subject=subject)
        verdict = self.verdicts.get(subject, self.default_verdict)
        if isinstance(verdict, Exception):
            raise verdict
        return verdict

    def set_model_tier(self, tier):
        self.tiers.append(tier)

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_service() -> FakeGenerationService:
    return FakeGenerationService()


@pytest.fixture
def config() -> Config:
    """Default configuration with no inter-item delay."""
    return Config.from_dict({})


@pytest.fixture
def blocking_config() -> Config:
    return Config.from_dict({"consistency": {"gate_policy": "blocking"}})


@pytest.fixture
def project() -> ComicProject:
    return ComicProject.new(theme="a lighthouse keeper who talks to storms")


@pytest.fixture
def long_project() -> ComicProject:
    return ComicProject.new(
        theme="a lighthouse keeper who talks to storms",
        story_format=StoryFormat.LONG_SERIES,
    )


@pytest.fixture
def pipeline(project, fake_service, config) -> ProductionPipeline:
    return ProductionPipeline(project=project, service=fake_service, config=config)


@pytest.fixture
def persistence(tmp_path) -> SQLitePersistenceStore:
    return SQLitePersistenceStore(tmp_path / "studio.db", max_active_slots=3)


async def drive_to_censoring(pipeline: ProductionPipeline) -> None:
    """Run research and scripting so the project waits at CENSORING_SCRIPT."""
    await pipeline.start_research()
    await pipeline.finalize_strategy()
    await pipeline.approve_research_and_script()


async def drive_to_post_production(pipeline: ProductionPipeline) -> None:
    await drive_to_censoring(pipeline)
    await pipeline.approve_script_and_visualize()


async def drive_to_completed(pipeline: ProductionPipeline) -> None:
    await drive_to_post_production(pipeline)
    await pipeline.finalize_production()
