"""API-facing Pydantic models."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from matching_engine.shared.schemas import Match, MatchOutcome


class MatchResponse(BaseModel):
    match_id: str
    designer_id: str
    score: float
    reasons: list[str]
    degraded: bool
    status: str
    cached: bool = False

    @classmethod
    def from_outcome(cls, outcome: MatchOutcome) -> "MatchResponse":
        return cls(**outcome.to_response(), cached=outcome.cached)


class MatchRead(BaseModel):
    match_id: str
    brief_id: str
    designer_id: str
    score: float
    reasons: list[str] = Field(default_factory=list)
    status: str
    degraded: bool
    created_at: datetime

    @classmethod
    def from_match(cls, match: Match) -> "MatchRead":
        return cls(
            match_id=match.id,
            brief_id=match.brief_id,
            designer_id=match.designer_id,
            score=match.score,
            reasons=list(match.reasons),
            status=match.status.value,
            degraded=match.degraded,
            created_at=match.created_at,
        )


class ErrorResponse(BaseModel):
    code: str
    detail: str
    stage: str | None = None
    match_id: str | None = None
