"""Cross-strategy deduplication.

Merge key: backend document id, else the record code in the metadata, else a
SHA-256 of the content. For every key the highest-scoring candidate survives
(ties go to the stronger strategy, then to the lexically smaller content), and
strategy tags and matched fields are unioned. The result does not depend on
the order in which strategy results arrive.
"""

from __future__ import annotations

import hashlib
from typing import Iterable

from formulary.rag.models import Candidate, Strategy


def merge_key(candidate: Candidate) -> str:
    if candidate.document_id:
        return candidate.document_id
    code = candidate.metadata.get("code") or candidate.metadata.get("record_code")
    if code:
        return str(code)
    return "sha256:" + hashlib.sha256(candidate.content.encode("utf-8")).hexdigest()


def _beats(challenger: Candidate, current: Candidate) -> bool:
    """Higher score wins, then the stronger strategy, then the smaller content."""
    a = (challenger.score, -challenger.best_strategy_rank)
    b = (current.score, -current.best_strategy_rank)
    if a != b:
        return a > b
    return challenger.content < current.content


class ResultMerger:
    """Deduplicate candidates from several strategies into one list."""

    def merge(self, *result_lists: Iterable[Candidate]) -> list[Candidate]:
        """Merge candidate lists. Output is sorted by score descending, then key."""
        winners: dict[str, Candidate] = {}
        tags: dict[str, set[Strategy]] = {}
        fields: dict[str, set[str]] = {}

        for results in result_lists:
            for candidate in results:
                key = merge_key(candidate)
                tags.setdefault(key, set()).update(candidate.strategy_tags)
                fields.setdefault(key, set()).update(candidate.matched_fields)
                current = winners.get(key)
                if current is None or _beats(candidate, current):
                    winners[key] = candidate

        merged = [
            winner.evolve(
                document_id=winner.document_id or key,
                strategy_tags=frozenset(tags[key]),
                matched_fields=frozenset(fields[key]),
            )
            for key, winner in winners.items()
        ]
        merged.sort(key=lambda c: (-c.score, c.best_strategy_rank, c.document_id))
        return merged
