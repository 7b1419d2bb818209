"""Preference-based score adjustment.

Multipliers compound and are not clamped here (the final ranker clamps):

  category in preferences.categories          x 1.2
  any interest keyword in the content         x 1.1
  content complexity == preferred complexity  x 1.15
"""

from __future__ import annotations

import logging

from formulary.errors import PersonalizationFailure
from formulary.rag.models import Candidate, Complexity, UserPreferences

logger = logging.getLogger(__name__)

CATEGORY_BOOST = 1.2
INTEREST_BOOST = 1.1
COMPLEXITY_BOOST = 1.15

TECHNICAL_TERMS: tuple[str, ...] = (
    "mechanism",
    "synthesis",
    "molecular",
    "chemical",
    "biological",
    "formulation",
    "compound",
    "extraction",
    "toxicity",
    "efficacy",
)


def assess_complexity(content: str) -> Complexity:
    """0 technical terms -> basic, 1-2 -> intermediate, 3+ -> advanced."""
    lowered = content.lower()
    count = sum(1 for term in TECHNICAL_TERMS if term in lowered)
    if count == 0:
        return Complexity.BASIC
    if count <= 2:
        return Complexity.INTERMEDIATE
    return Complexity.ADVANCED


class PersonalizationAdjuster:
    """Boost candidate scores using caller-supplied preferences."""

    def apply(
        self, candidates: list[Candidate], preferences: UserPreferences
    ) -> list[Candidate]:
        """Return candidates with adjusted ``score``; unchanged on any failure."""
        try:
            return [self._adjust(c, preferences) for c in candidates]
        except Exception as exc:
            logger.warning("Personalization failed, scores left unchanged: %s", exc)
            return candidates

    def _adjust(self, candidate: Candidate, prefs: UserPreferences) -> Candidate:
        try:
            wanted = {c.lower() for c in prefs.categories}
            interests = [i.lower() for i in prefs.interests if i]
        except (TypeError, AttributeError) as exc:
            raise PersonalizationFailure(f"invalid preferences: {exc}") from exc

        score = candidate.score
        category = str(candidate.metadata.get("category") or "").lower()
        if category and category in wanted:
            score *= CATEGORY_BOOST

        content = candidate.content.lower()
        if any(i in content for i in interests):
            score *= INTEREST_BOOST

        if prefs.complexity is not None:
            if assess_complexity(candidate.content) is Complexity(prefs.complexity):
                score *= COMPLEXITY_BOOST

        return candidate.evolve(score=score) if score != candidate.score else candidate
