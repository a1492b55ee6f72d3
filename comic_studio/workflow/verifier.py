"""
Consistency Verifier
====================

Checks a character's design against the project's art style and records a
PASS/FAIL verdict with critique text.

Verdicts are advisory: a FAIL only produces a warning and a visible critique.
Whether it should gate the pipeline is decided by the caller's gate policy.
"""

import logging
from typing import Optional, List

from ..api.base import ConsistencyService, ConsistencyVerdict
from ..context.task_log import TaskLog
from ..core.exceptions import StudioError, ResourceNotFoundError
from ..project.models import AgentRole, Character, ConsistencyStatus
from ..project.store import ProjectStore

logger = logging.getLogger(__name__)

FALLBACK_CRITIQUE = "Design does not match the target style."


class ConsistencyVerifier:
    """Runs consistency checks and merges the verdict into the character."""

    def __init__(self, service: ConsistencyService, store: ProjectStore, task_log: TaskLog):
        self.service = service
        self.store = store
        self.task_log = task_log

    async def verify(self, image: str, style: str, name: str) -> ConsistencyVerdict:
        """Raw check without touching the project."""
        verdict = await self.service.check_consistency(image, style, name)
        if not verdict.is_consistent and not verdict.critique.strip():
            verdict = ConsistencyVerdict(is_consistent=False, critique=FALLBACK_CRITIQUE)
        return verdict

    async def verify_character(self, character_id: str) -> Optional[ConsistencyStatus]:
        """
        Check one character's current image and record the outcome.

        The status is PENDING while the check runs. If the check itself fails
        the status goes back to what it was before the call.

        Returns:
            The resulting status, or None if the character has no image
        """
        project = self.store.snapshot()
        character = project.find_character(character_id)
        if character is None:
            raise ResourceNotFoundError(
                f"No character with id {character_id}",
                resource_type="character",
                resource_id=character_id,
            )
        if not character.image_url:
            logger.debug(f"Skipping consistency check for {character.name}: no image")
            return None

        previous_status = character.consistency_status
        style = project.art_style_guide or project.style
        self.store.update_character(
            character_id,
            source="verifier",
            consistency_status=ConsistencyStatus.PENDING,
        )

        try:
            verdict = await self.verify(character.image_url, style, character.name)
        except StudioError as e:
            self.store.update_character(character_id, source="verifier", consistency_status=previous_status)
            self.task_log.error(
                AgentRole.CONTINUITY_EDITOR,
                f"Consistency check for {character.name} failed: {e.message}",
            )
            return previous_status

        if verdict.is_consistent:
            self.store.update_character(
                character_id,
                source="verifier",
                consistency_status=ConsistencyStatus.PASS,
                consistency_report=None,
            )
            self.task_log.success(AgentRole.CONTINUITY_EDITOR, f"{character.name} matches the art style")
            return ConsistencyStatus.PASS

        self.store.update_character(
            character_id,
            source="verifier",
            consistency_status=ConsistencyStatus.FAIL,
            consistency_report=verdict.critique,
        )
        self.task_log.warning(
            AgentRole.CONTINUITY_EDITOR,
            f"{character.name} is inconsistent with the art style: {verdict.critique}",
        )
        return ConsistencyStatus.FAIL


def failing_characters(characters: List[Character]) -> List[Character]:
    return [c for c in characters if c.consistency_status == ConsistencyStatus.FAIL]
