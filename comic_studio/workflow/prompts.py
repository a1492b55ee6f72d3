"""
Prompt Builders
===============

Request text for each generation call. Wording here is deliberately plain;
the pipeline only depends on which project fields each prompt draws from.
"""

from typing import Dict, List, Optional

from ..project.models import Character, ComicPanel, ComicProject, Message


def _setting(project: ComicProject) -> str:
    if project.series_bible:
        return project.series_bible.world_setting
    if project.market_analysis:
        return project.market_analysis.world_setting
    return ""


def _style(project: ComicProject) -> str:
    return project.art_style_guide or project.style or "clean comic illustration"


def research_reply(project: ComicProject, history: List[Message], message: str) -> str:
    turns = "\n".join(f"{m.role}: {m.content}" for m in history[-12:])
    return (
        f"You are a market researcher for serialized comics. Respond in {project.language}.\n"
        f"Theme: {project.theme}\nFormat: {project.story_format.value}\n"
        f"Conversation so far:\n{turns}\n"
        f"user: {message}\n"
        "Give concise, concrete advice about audience, style, and structure."
    )


def extract_strategy(project: ComicProject) -> str:
    turns = "\n".join(f"{m.role}: {m.content}" for m in project.research_chat_history)
    return (
        "Summarize the agreed comic strategy as JSON.\n"
        f"Theme: {project.theme}\nFormat: {project.story_format.value}\n"
        f"Language: {project.language}\nDiscussion:\n{turns or '(none)'}"
    )


def series_bible(project: ComicProject) -> str:
    return (
        f"Write a series bible for a {project.story_format.value} comic in {project.language}.\n"
        f"Theme: {project.theme}\nStyle: {_style(project)}\n"
        "Return JSON with world_setting, main_conflict, character_arcs."
    )


def story_concept(project: ComicProject) -> str:
    return (
        f"Propose a story concept in {project.language}.\n"
        f"Theme: {project.theme}\nStyle: {_style(project)}\nSetting: {_setting(project)}\n"
        "Return JSON with premise, similar_stories, unique_twist, genre_trends."
    )


def cast(project: ComicProject) -> str:
    premise = project.story_concept.premise if project.story_concept else project.theme
    locked = ", ".join(c.name for c in project.characters if c.is_locked)
    return (
        f"Define the main cast for this comic in {project.language}.\n"
        f"Premise: {premise}\nSetting: {_setting(project)}\n"
        + (f"Keep these existing characters: {locked}\n" if locked else "")
        + "Return JSON: characters[] with name, description, role (MAIN, SUPPORTING, ANTAGONIST), personality."
    )


def script(project: ComicProject, panel_count: int) -> str:
    premise = project.story_concept.premise if project.story_concept else project.theme
    names = ", ".join(c.name for c in project.characters)
    earlier = "\n".join(f"Chapter {c.chapter_number}: {c.summary}" for c in project.completed_chapters)
    return (
        f"Write chapter {project.current_chapter} of a {project.story_format.value} comic "
        f"as exactly {panel_count} panels in {project.language}.\n"
        f"Premise: {premise}\nCharacters: {names}\nSetting: {_setting(project)}\n"
        + (f"Story so far:\n{earlier}\n" if earlier else "")
        + "Return JSON: panels[] with description, dialogue, caption, characters_involved, should_animate."
    )


def censor(project: ComicProject) -> str:
    lines = "\n".join(
        f"{i + 1}. {p.description} | {p.dialogue} | {p.caption or ''}"
        for i, p in enumerate(project.panels)
    )
    return (
        "Review this comic script for content that is unsafe for a general audience.\n"
        f"{lines}\nReturn JSON: passed (boolean) and report."
    )


def continuity(project: ComicProject) -> str:
    lines = "\n".join(f"{i + 1}. {p.description} | {p.dialogue}" for i, p in enumerate(project.panels))
    bible = project.series_bible
    canon = f"World: {bible.world_setting}\nConflict: {bible.main_conflict}\n" if bible else ""
    return (
        "Check this script for continuity errors against the established canon.\n"
        f"{canon}Script:\n{lines}\nReply with a short plain-text report."
    )


def chapter_summary(project: ComicProject) -> str:
    events = " ".join(p.description for p in project.panels)
    return (
        f"Summarize chapter {project.current_chapter} of this comic in 3 sentences, in {project.language}.\n"
        f"Panels: {events}"
    )


def voice_check(character: Character, voice: str, voice_descriptions: Dict[str, str]) -> str:
    catalog = "\n".join(f"- {name}: {text}" for name, text in voice_descriptions.items())
    role = character.role.value if character.role else "Unknown"
    return (
        f"Is the voice '{voice}' a good fit for the character {character.name}?\n"
        f"Role: {role}\nPersonality: {character.personality or character.description}\n"
        f"Available voices:\n{catalog}\n"
        "Return JSON: is_suitable (boolean), suggestion (best voice name), reason."
    )


def character_design(project: ComicProject, character: Character) -> str:
    return (
        f"Refine a visual description for the character '{character.name}' "
        f"({character.description}). Language: {project.language}. "
        f"Style: {_style(project)}. Setting: {_setting(project)}.\n"
        "Return JSON with a single field: description."
    )


def character_image(project: ComicProject, name: str, description: str, style: Optional[str] = None) -> str:
    look = style or _style(project)
    if project.is_long_form:
        return (
            f"{look}. Character reference sheet for {name}: front, side, and back views, "
            f"neutral expression and two emotions. {description}. Plain white background."
        )
    return f"{look}. Full-body portrait of {name} in a dynamic pose. {description}. Plain background."


def panel_image(project: ComicProject, panel: ComicPanel, roster: List[Character]) -> str:
    cast_lines = "; ".join(f"{c.name}: {c.description}" for c in roster)
    return (
        f"{_style(project)}. Comic panel. {panel.description}. "
        f"Setting: {_setting(project)}. Characters: {cast_lines or 'none'}. "
        "Match the attached character references exactly."
    )


def panel_motion(panel: ComicPanel) -> str:
    return f"Subtle cinematic motion: {panel.description}"
