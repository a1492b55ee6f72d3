"""
Project Models
==============

Data structures for a comic production project: the project document itself,
its characters, panels, audit log, and per-role agent tasks.

Every model serializes to a plain dictionary (``to_dict``) and can be rebuilt
from one (``from_dict``). Older documents missing optional keys load with
defaults.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any


def new_id(prefix: str = "") -> str:
    """Generate a short unique identifier."""
    token = uuid.uuid4().hex[:12]
    return f"{prefix}_{token}" if prefix else token


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# Enums
# =============================================================================


class WorkflowStage(Enum):
    """Pipeline stage of a project, in pipeline order."""

    IDLE = "IDLE"
    RESEARCHING = "RESEARCHING"
    SCRIPTING = "SCRIPTING"
    CENSORING_SCRIPT = "CENSORING_SCRIPT"
    DESIGNING_CHARACTERS = "DESIGNING_CHARACTERS"
    VISUALIZING_PANELS = "VISUALIZING_PANELS"
    POST_PRODUCTION = "POST_PRODUCTION"
    COMPLETED = "COMPLETED"


class StoryFormat(Enum):
    SHORT_STORY = "SHORT_STORY"
    LONG_SERIES = "LONG_SERIES"
    EPISODIC = "EPISODIC"


class ModelTier(Enum):
    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"


class AgentRole(Enum):
    """Roles that originate log entries and own checklist tasks."""

    PROJECT_MANAGER = "PROJECT_MANAGER"
    MARKET_RESEARCHER = "MARKET_RESEARCHER"
    CONTINUITY_EDITOR = "CONTINUITY_EDITOR"
    SCRIPTWRITER = "SCRIPTWRITER"
    CENSOR = "CENSOR"
    TRANSLATOR = "TRANSLATOR"
    CHARACTER_DESIGNER = "CHARACTER_DESIGNER"
    PANEL_ARTIST = "PANEL_ARTIST"
    TYPESETTER = "TYPESETTER"
    CINEMATOGRAPHER = "CINEMATOGRAPHER"
    VOICE_ACTOR = "VOICE_ACTOR"
    PUBLISHER = "PUBLISHER"
    ARCHIVIST = "ARCHIVIST"


class CharacterRole(Enum):
    MAIN = "MAIN"
    SUPPORTING = "SUPPORTING"
    ANTAGONIST = "ANTAGONIST"


class ConsistencyStatus(Enum):
    PENDING = "PENDING"
    PASS = "PASS"
    FAIL = "FAIL"


class LogType(Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"


class TaskType(Enum):
    SYSTEM = "SYSTEM"
    USER = "USER"


def _enum(enum_cls, value, default=None):
    if value is None:
        return default
    if isinstance(value, enum_cls):
        return value
    return enum_cls(value)


def _value(member) -> Optional[str]:
    return member.value if member is not None else None


# =============================================================================
# Characters and Panels
# =============================================================================


@dataclass
class CharacterVariant:
    """One generated design for a character."""

    id: str
    image_url: str
    style: str = ""
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "image_url": self.image_url,
            "style": self.style,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CharacterVariant":
        return cls(
            id=data["id"],
            image_url=data["image_url"],
            style=data.get("style", ""),
            timestamp=data.get("timestamp", 0),
        )


@dataclass
class Character:
    """A cast member and the state of their visual design."""

    id: str
    name: str
    description: str = ""
    role: Optional[CharacterRole] = None
    personality: Optional[str] = None
    voice: Optional[str] = None
    image_url: Optional[str] = None
    variants: List[CharacterVariant] = field(default_factory=list)
    is_generating: bool = False
    is_locked: bool = False
    consistency_status: Optional[ConsistencyStatus] = None
    consistency_report: Optional[str] = None

    @property
    def has_locked_design(self) -> bool:
        """True when the loop must never overwrite this character's image."""
        return self.is_locked and bool(self.image_url)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "role": _value(self.role),
            "personality": self.personality,
            "voice": self.voice,
            "image_url": self.image_url,
            "variants": [v.to_dict() for v in self.variants],
            "is_generating": self.is_generating,
            "is_locked": self.is_locked,
            "consistency_status": _value(self.consistency_status),
            "consistency_report": self.consistency_report,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Character":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            description=data.get("description", ""),
            role=_enum(CharacterRole, data.get("role")),
            personality=data.get("personality"),
            voice=data.get("voice"),
            image_url=data.get("image_url"),
            variants=[CharacterVariant.from_dict(v) for v in data.get("variants", [])],
            is_generating=data.get("is_generating", False),
            is_locked=data.get("is_locked", False),
            consistency_status=_enum(ConsistencyStatus, data.get("consistency_status")),
            consistency_report=data.get("consistency_report"),
        )


@dataclass
class ComicPanel:
    """A single panel of the script and its generated assets."""

    id: str
    description: str
    dialogue: str = ""
    caption: Optional[str] = None
    characters_involved: List[str] = field(default_factory=list)
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    audio_url: Optional[str] = None
    caption_audio_url: Optional[str] = None
    is_generating: bool = False
    should_animate: bool = False

    @property
    def needs_video(self) -> bool:
        return self.should_animate and bool(self.image_url) and not self.video_url

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "dialogue": self.dialogue,
            "caption": self.caption,
            "characters_involved": list(self.characters_involved),
            "image_url": self.image_url,
            "video_url": self.video_url,
            "audio_url": self.audio_url,
            "caption_audio_url": self.caption_audio_url,
            "is_generating": self.is_generating,
            "should_animate": self.should_animate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ComicPanel":
        return cls(
            id=data["id"],
            description=data.get("description", ""),
            dialogue=data.get("dialogue", ""),
            caption=data.get("caption"),
            characters_involved=list(data.get("characters_involved", [])),
            image_url=data.get("image_url"),
            video_url=data.get("video_url"),
            audio_url=data.get("audio_url"),
            caption_audio_url=data.get("caption_audio_url"),
            is_generating=data.get("is_generating", False),
            should_animate=data.get("should_animate", False),
        )


# =============================================================================
# Audit Log and Tasks
# =============================================================================


@dataclass(frozen=True)
class SystemLog:
    """An append-only audit entry."""

    id: str
    agent_id: AgentRole
    message: str
    timestamp: int
    type: LogType = LogType.INFO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "type": self.type.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SystemLog":
        return cls(
            id=data["id"],
            agent_id=AgentRole(data["agent_id"]),
            message=data.get("message", ""),
            timestamp=data.get("timestamp", 0),
            type=LogType(data.get("type", "info")),
        )


@dataclass
class AgentTask:
    """A per-role checklist item."""

    id: str
    role: AgentRole
    description: str
    is_completed: bool = False
    created_at: int = field(default_factory=now_ms)
    type: TaskType = TaskType.USER
    target_chapter: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "description": self.description,
            "is_completed": self.is_completed,
            "created_at": self.created_at,
            "type": self.type.value,
            "target_chapter": self.target_chapter,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentTask":
        return cls(
            id=data["id"],
            role=AgentRole(data["role"]),
            description=data.get("description", ""),
            is_completed=data.get("is_completed", False),
            created_at=data.get("created_at", 0),
            type=TaskType(data.get("type", "USER")),
            target_chapter=data.get("target_chapter"),
        )


# =============================================================================
# Research and Story Documents
# =============================================================================


@dataclass
class ResearchData:
    """Market strategy produced by the research stage."""

    suggested_title: str
    target_audience: str = ""
    visual_style: str = ""
    narrative_structure: str = ""
    estimated_chapters: str = ""
    world_setting: str = ""
    cultural_context: str = ""
    color_palette: List[str] = field(default_factory=list)
    key_themes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggested_title": self.suggested_title,
            "target_audience": self.target_audience,
            "visual_style": self.visual_style,
            "narrative_structure": self.narrative_structure,
            "estimated_chapters": self.estimated_chapters,
            "world_setting": self.world_setting,
            "cultural_context": self.cultural_context,
            "color_palette": list(self.color_palette),
            "key_themes": list(self.key_themes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResearchData":
        return cls(
            suggested_title=data.get("suggested_title", ""),
            target_audience=data.get("target_audience", ""),
            visual_style=data.get("visual_style", ""),
            narrative_structure=data.get("narrative_structure", ""),
            estimated_chapters=str(data.get("estimated_chapters", "")),
            world_setting=data.get("world_setting", ""),
            cultural_context=data.get("cultural_context", ""),
            color_palette=list(data.get("color_palette", [])),
            key_themes=list(data.get("key_themes", [])),
        )


@dataclass
class StoryConcept:
    premise: str
    similar_stories: List[str] = field(default_factory=list)
    unique_twist: str = ""
    genre_trends: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "premise": self.premise,
            "similar_stories": list(self.similar_stories),
            "unique_twist": self.unique_twist,
            "genre_trends": self.genre_trends,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoryConcept":
        return cls(
            premise=data.get("premise", ""),
            similar_stories=list(data.get("similar_stories", [])),
            unique_twist=data.get("unique_twist", ""),
            genre_trends=data.get("genre_trends", ""),
        )


@dataclass
class SeriesBible:
    """World document generated once for long-form projects."""

    world_setting: str
    main_conflict: str
    character_arcs: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "world_setting": self.world_setting,
            "main_conflict": self.main_conflict,
            "character_arcs": self.character_arcs,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SeriesBible":
        return cls(
            world_setting=data.get("world_setting", ""),
            main_conflict=data.get("main_conflict", ""),
            character_arcs=data.get("character_arcs", ""),
        )


@dataclass
class ChapterArchive:
    """A finished chapter of a long-form project, kept after its panels are cleared."""

    chapter_number: int
    title: str
    panels: List[ComicPanel] = field(default_factory=list)
    summary: str = ""
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chapter_number": self.chapter_number,
            "title": self.title,
            "panels": [p.to_dict() for p in self.panels],
            "summary": self.summary,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChapterArchive":
        number = data.get("chapter_number", 1)
        return cls(
            chapter_number=number,
            title=data.get("title", f"Chapter {number}"),
            panels=[ComicPanel.from_dict(p) for p in data.get("panels", [])],
            summary=data.get("summary", ""),
            timestamp=data.get("timestamp", 0),
        )


@dataclass
class Message:
    """One turn of the research chat."""

    role: str
    content: str
    sender_id: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "sender_id": self.sender_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            role=data.get("role", "user"),
            content=data.get("content", ""),
            sender_id=data.get("sender_id"),
            timestamp=data.get("timestamp", 0),
        )


# =============================================================================
# Project Aggregate
# =============================================================================


LONG_FORM_FORMATS = {StoryFormat.LONG_SERIES, StoryFormat.EPISODIC}


@dataclass
class ComicProject:
    """
    The single mutable document holding all pipeline state.

    Components never mutate a project in place: they read snapshots from the
    ProjectStore and submit whole-field merge updates back to it.
    """

    id: str
    title: str = ""
    theme: str = ""
    style: str = ""
    language: str = "English"
    story_format: StoryFormat = StoryFormat.SHORT_STORY
    model_tier: ModelTier = ModelTier.STANDARD
    workflow_stage: WorkflowStage = WorkflowStage.IDLE
    owner_id: Optional[str] = None
    last_modified: int = field(default_factory=now_ms)
    art_style_guide: Optional[str] = None

    series_bible: Optional[SeriesBible] = None
    market_analysis: Optional[ResearchData] = None
    story_concept: Optional[StoryConcept] = None
    research_chat_history: List[Message] = field(default_factory=list)

    characters: List[Character] = field(default_factory=list)
    panels: List[ComicPanel] = field(default_factory=list)
    logs: List[SystemLog] = field(default_factory=list)
    agent_tasks: List[AgentTask] = field(default_factory=list)

    is_censored: bool = False
    censor_report: Optional[str] = None
    continuity_report: Optional[str] = None

    current_chapter: int = 1
    completed_chapters: List[ChapterArchive] = field(default_factory=list)
    target_panel_count: Optional[int] = None

    @classmethod
    def new(
        cls,
        theme: str = "",
        title: str = "",
        story_format: StoryFormat = StoryFormat.SHORT_STORY,
        owner_id: Optional[str] = None,
        **kwargs,
    ) -> "ComicProject":
        """Start a fresh project at the IDLE stage."""
        return cls(
            id=new_id("proj"),
            theme=theme,
            title=title,
            story_format=story_format,
            owner_id=owner_id,
            **kwargs,
        )

    @property
    def is_long_form(self) -> bool:
        return self.story_format in LONG_FORM_FORMATS

    def find_character(self, character_id: str) -> Optional[Character]:
        return next((c for c in self.characters if c.id == character_id), None)

    def find_panel(self, panel_id: str) -> Optional[ComicPanel]:
        return next((p for p in self.panels if p.id == panel_id), None)

    def character_by_name(self, name: str) -> Optional[Character]:
        wanted = name.strip().lower()
        return next((c for c in self.characters if c.name.strip().lower() == wanted), None)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "title": self.title,
            "theme": self.theme,
            "style": self.style,
            "language": self.language,
            "story_format": self.story_format.value,
            "model_tier": self.model_tier.value,
            "workflow_stage": self.workflow_stage.value,
            "owner_id": self.owner_id,
            "last_modified": self.last_modified,
            "art_style_guide": self.art_style_guide,
            "series_bible": self.series_bible.to_dict() if self.series_bible else None,
            "market_analysis": self.market_analysis.to_dict() if self.market_analysis else None,
            "story_concept": self.story_concept.to_dict() if self.story_concept else None,
            "research_chat_history": [m.to_dict() for m in self.research_chat_history],
            "characters": [c.to_dict() for c in self.characters],
            "panels": [p.to_dict() for p in self.panels],
            "logs": [entry.to_dict() for entry in self.logs],
            "agent_tasks": [t.to_dict() for t in self.agent_tasks],
            "is_censored": self.is_censored,
            "censor_report": self.censor_report,
            "continuity_report": self.continuity_report,
            "current_chapter": self.current_chapter,
            "completed_chapters": [c.to_dict() for c in self.completed_chapters],
            "target_panel_count": self.target_panel_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ComicProject":
        """Create from dictionary."""
        bible = data.get("series_bible")
        analysis = data.get("market_analysis")
        concept = data.get("story_concept")
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            theme=data.get("theme", ""),
            style=data.get("style", ""),
            language=data.get("language", "English"),
            story_format=_enum(StoryFormat, data.get("story_format"), StoryFormat.SHORT_STORY),
            model_tier=_enum(ModelTier, data.get("model_tier"), ModelTier.STANDARD),
            workflow_stage=_enum(WorkflowStage, data.get("workflow_stage"), WorkflowStage.IDLE),
            owner_id=data.get("owner_id"),
            last_modified=data.get("last_modified", 0),
            art_style_guide=data.get("art_style_guide"),
            series_bible=SeriesBible.from_dict(bible) if bible else None,
            market_analysis=ResearchData.from_dict(analysis) if analysis else None,
            story_concept=StoryConcept.from_dict(concept) if concept else None,
            research_chat_history=[Message.from_dict(m) for m in data.get("research_chat_history", [])],
            characters=[Character.from_dict(c) for c in data.get("characters", [])],
            panels=[ComicPanel.from_dict(p) for p in data.get("panels", [])],
            logs=[SystemLog.from_dict(entry) for entry in data.get("logs", [])],
            agent_tasks=[AgentTask.from_dict(t) for t in data.get("agent_tasks", [])],
            is_censored=data.get("is_censored", False),
            censor_report=data.get("censor_report"),
            continuity_report=data.get("continuity_report"),
            current_chapter=data.get("current_chapter", 1),
            completed_chapters=[ChapterArchive.from_dict(c) for c in data.get("completed_chapters", [])],
            target_panel_count=data.get("target_panel_count"),
        )
