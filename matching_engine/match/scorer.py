"""Weighted scoring of eligible candidates.

final = 100 * (w_similarity * similarity
               + w_experience * experience_fit
               + w_style * jaccard(brief.styles, designer.styles)
               + w_industry * jaccard(brief.industries, designer.industries))

Every term is clamped to [0, 1] before weighting. Ranking is a total order:
score desc, raw similarity desc, designer id asc.
"""
from __future__ import annotations

from typing import Iterable

from matching_engine.shared.config import MatchingConfig
from matching_engine.shared.schemas import (
    Availability,
    BudgetBand,
    Brief,
    Candidate,
    ReasonTag,
    ScoredCandidate,
    Seniority,
    tag_overlap,
)

# Years-of-experience band each seniority level targets.
SENIORITY_BANDS: dict[Seniority, tuple[float, float]] = {
    Seniority.JUNIOR: (0.0, 3.0),
    Seniority.MID: (3.0, 6.0),
    Seniority.SENIOR: (5.0, 10.0),
    Seniority.LEAD: (8.0, 40.0),
}

UNKNOWN_EXPERIENCE_FIT = 0.5


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def jaccard(left: Iterable[str], right: Iterable[str]) -> float:
    a, b = set(left), set(right)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def seniority_from_budget(budget: BudgetBand | None) -> Seniority | None:
    if budget is None or budget.midpoint is None:
        return None
    rate = budget.midpoint
    if rate < 50:
        return Seniority.JUNIOR
    if rate < 100:
        return Seniority.MID
    if rate < 200:
        return Seniority.SENIOR
    return Seniority.LEAD


def target_experience_band(brief: Brief) -> tuple[float, float] | None:
    seniority = brief.seniority or seniority_from_budget(brief.budget)
    if seniority is None:
        return None
    return SENIORITY_BANDS[seniority]


def experience_fit(years: float | None, band: tuple[float, float] | None, decay_years: float) -> float:
    """1.0 inside the band, decaying linearly to 0 over ``decay_years`` outside it."""
    if band is None:
        return 1.0
    if years is None:
        return UNKNOWN_EXPERIENCE_FIT
    low, high = band
    if low <= years <= high:
        return 1.0
    distance = low - years if years < low else years - high
    return _clamp(1.0 - distance / decay_years)


def _ranking_key(scored: ScoredCandidate) -> tuple[float, float, str]:
    return (-scored.score, -scored.similarity, scored.designer_id)


class Scorer:
    def __init__(self, config: MatchingConfig | None = None):
        self.config = config or MatchingConfig()

    def score_one(self, brief: Brief, candidate: Candidate) -> ScoredCandidate:
        cfg = self.config
        profile = candidate.profile
        band = target_experience_band(brief)

        terms = {
            "similarity": _clamp(candidate.similarity),
            "experience_fit": experience_fit(profile.years_experience, band, cfg.experience_decay_years),
            "style_overlap": jaccard(brief.styles, profile.styles),
            "industry_overlap": jaccard(brief.industries, profile.industries),
        }
        weighted = {
            "similarity": cfg.w_similarity * terms["similarity"],
            "experience_fit": cfg.w_experience * terms["experience_fit"],
            "style_overlap": cfg.w_style * terms["style_overlap"],
            "industry_overlap": cfg.w_industry * terms["industry_overlap"],
        }
        score = round(100.0 * _clamp(sum(weighted.values())), 2)

        return ScoredCandidate(
            candidate=candidate,
            score=score,
            breakdown=terms,
            reason_tags=self._reason_tags(brief, candidate, weighted),
        )

    def score(self, brief: Brief, candidates: Iterable[Candidate]) -> list[ScoredCandidate]:
        return sorted((self.score_one(brief, candidate) for candidate in candidates), key=_ranking_key)

    def best(self, brief: Brief, candidates: Iterable[Candidate]) -> ScoredCandidate | None:
        ranked = self.score(brief, candidates)
        return ranked[0] if ranked else None

    def _reason_tags(self, brief: Brief, candidate: Candidate, weighted: dict[str, float]) -> tuple[ReasonTag, ...]:
        profile = candidate.profile
        tags: list[ReasonTag] = []

        styles = tag_overlap(brief.styles, profile.styles)
        if styles:
            tags.append(ReasonTag("style_match", ", ".join(styles), weighted["style_overlap"]))
        industries = tag_overlap(brief.industries, profile.industries)
        if industries:
            tags.append(ReasonTag("industry_match", ", ".join(industries), weighted["industry_overlap"]))
        if weighted["similarity"] > 0:
            tags.append(ReasonTag("semantic_fit", f"{candidate.similarity:.2f}", weighted["similarity"]))
        if weighted["experience_fit"] > 0 and profile.years_experience is not None:
            tags.append(ReasonTag("experience_fit", f"{profile.years_experience:g}", weighted["experience_fit"]))

        # Informational tags, they do not contribute to the score.
        if profile.availability == Availability.IMMEDIATE:
            tags.append(ReasonTag("available_now"))
        if brief.budget is not None and profile.rate is not None and brief.budget.overlaps(profile.rate):
            tags.append(ReasonTag("budget_fit", _format_rate(profile.rate)))

        tags.sort(key=lambda tag: (-tag.weight, tag.code))
        return tuple(tags)


def _format_rate(rate: BudgetBand) -> str:
    if rate.min_rate is not None and rate.max_rate is not None and rate.min_rate != rate.max_rate:
        return f"${rate.min_rate:g}-{rate.max_rate:g}/hr"
    value = rate.min_rate if rate.min_rate is not None else rate.max_rate
    if value is None:
        return "flexible rate"
    return f"${value:g}/hr"
