"""
Response Schemas
================

Pydantic models for every structured response requested from the
generation service. A response that does not validate is rejected before it
reaches the project document.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class ResearchDataSchema(BaseModel):
    """Market strategy extracted from the research conversation."""

    suggested_title: str
    target_audience: str = ""
    visual_style: str = ""
    narrative_structure: str = ""
    estimated_chapters: str = "1"
    world_setting: str = ""
    cultural_context: str = ""
    color_palette: List[str] = Field(default_factory=list)
    key_themes: List[str] = Field(default_factory=list)


class StoryConceptSchema(BaseModel):
    premise: str
    similar_stories: List[str] = Field(default_factory=list)
    unique_twist: str = ""
    genre_trends: str = ""


class SeriesBibleSchema(BaseModel):
    world_setting: str
    main_conflict: str
    character_arcs: str = ""


class CastMemberSchema(BaseModel):
    name: str = Field(min_length=1)
    description: str
    role: str = "SUPPORTING"
    personality: str = ""


class CastSchema(BaseModel):
    characters: List[CastMemberSchema] = Field(min_length=1)


class PanelSchema(BaseModel):
    description: str = Field(min_length=1)
    dialogue: str = ""
    caption: Optional[str] = None
    characters_involved: List[str] = Field(default_factory=list)
    should_animate: bool = False


class ScriptSchema(BaseModel):
    """Panel-by-panel script for one chapter."""

    title: Optional[str] = None
    panels: List[PanelSchema] = Field(min_length=1)


class CensorSchema(BaseModel):
    passed: bool
    report: str = ""


class ConsistencySchema(BaseModel):
    is_consistent: bool
    critique: str = ""


class CharacterDesignSchema(BaseModel):
    """Refined visual description used as the image prompt."""

    description: str = Field(min_length=1)


class VoiceCheckSchema(BaseModel):
    """Whether a character's assigned voice fits them, with a suggested alternative."""

    is_suitable: bool
    suggestion: str = ""
    reason: str = ""
