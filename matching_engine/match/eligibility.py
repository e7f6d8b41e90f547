"""Hard eligibility gates applied before scoring.

Pure functions, no I/O. Output keeps the retrieval order.
"""
from __future__ import annotations

import dataclasses
from typing import Iterable

from matching_engine.shared.schemas import Availability, Brief, Candidate

UNAVAILABLE = "unavailable"
ALREADY_MATCHED = "already_matched"
CATEGORY_MISMATCH = "category_mismatch"
BUDGET_MISMATCH = "budget_mismatch"


def rejection_reason(brief: Brief, candidate: Candidate, matched_designer_ids: Iterable[str] = ()) -> str | None:
    """Return the first gate ``candidate`` fails, or ``None`` if it passes all of them."""
    profile = candidate.profile
    if profile.availability == Availability.UNAVAILABLE:
        return UNAVAILABLE
    if profile.id in set(matched_designer_ids):
        return ALREADY_MATCHED
    if not (profile.categories & brief.categories):
        return CATEGORY_MISMATCH
    # A missing rate on either side means no budget constraint.
    if brief.budget is not None and profile.rate is not None and not brief.budget.overlaps(profile.rate):
        return BUDGET_MISMATCH
    return None


def filter_candidates(
    brief: Brief,
    candidates: Iterable[Candidate],
    matched_designer_ids: Iterable[str] = (),
) -> list[Candidate]:
    matched = frozenset(matched_designer_ids)
    return [
        dataclasses.replace(candidate, eligible=True)
        for candidate in candidates
        if rejection_reason(brief, candidate, matched) is None
    ]
