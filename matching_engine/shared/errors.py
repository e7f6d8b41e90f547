"""Error taxonomy for the matching engine.

Only ``ValidationError`` (and ``BriefNotFound``), ``AlreadyMatched``,
``RetrievalUnavailable``, ``NoEligibleDesigners`` and ``MatchTimeout`` leave
``MatchOrchestrator.find_match``. AI and persistence errors are handled inside
the pipeline.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .schemas import Match


class MatchingError(Exception):
    kind = "matching_error"

    def __init__(self, message: str = "", *, stage: str | None = None):
        super().__init__(message or self.kind)
        self.stage = stage


class ValidationError(MatchingError):
    kind = "validation_error"


class BriefNotFound(ValidationError):
    kind = "not_found"

    def __init__(self, brief_id: str, *, stage: str | None = None):
        super().__init__(f"Brief {brief_id} not found", stage=stage)
        self.brief_id = brief_id


class AlreadyMatched(MatchingError):
    kind = "already_matched"

    def __init__(self, match: "Match", *, stage: str | None = None):
        super().__init__(f"Brief {match.brief_id} already has match {match.id}", stage=stage)
        self.match = match


class RetrievalUnavailable(MatchingError):
    kind = "retrieval_unavailable"


class NoEligibleDesigners(MatchingError):
    kind = "no_eligible_designers"


class MatchTimeout(MatchingError):
    kind = "timeout"


class PersistenceConflict(MatchingError):
    """Another request already persisted a match for the brief."""

    kind = "persistence_conflict"


class AIError(MatchingError):
    kind = "ai_error"


class TransientAIError(AIError):
    kind = "ai_transient"


class AITimeoutError(TransientAIError):
    kind = "ai_timeout"


class QuotaExceededError(AIError):
    kind = "ai_quota_exceeded"


class AIRequestError(AIError):
    """Authentication or malformed-request failure. Never retried."""

    kind = "ai_request_error"


class MalformedResponseError(AIError):
    kind = "ai_malformed_response"
