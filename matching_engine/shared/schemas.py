"""Typed records shared across services.

Everything that enters the engine from a collaborator (briefs, designer
profiles, persisted matches) is validated here; tag sets are normalized once at
this boundary so the filter and scorer can compare them directly.
"""
from __future__ import annotations

import enum
import hashlib
import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_tags(values: Any) -> frozenset[str]:
    """Lowercase, strip and de-duplicate a tag collection.

    Accepts ``None``, a comma separated string or any iterable of strings.
    """
    if values is None:
        return frozenset()
    if isinstance(values, str):
        values = values.split(",")
    tags = set()
    for value in values:
        if value is None:
            continue
        cleaned = re.sub(r"\s+", " ", str(value)).strip().lower()
        if cleaned:
            tags.add(cleaned)
    return frozenset(tags)


def stable_hash(payload: Any) -> str:
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


class Availability(str, enum.Enum):
    IMMEDIATE = "immediate"
    ONE_TO_TWO_WEEKS = "1-2weeks"
    TWO_TO_FOUR_WEEKS = "2-4weeks"
    ONE_TO_TWO_MONTHS = "1-2months"
    UNAVAILABLE = "unavailable"


# Older profile rows use a coarser vocabulary.
_LEGACY_AVAILABILITY = {
    "available": Availability.IMMEDIATE.value,
    "busy": Availability.ONE_TO_TWO_WEEKS.value,
}


class Seniority(str, enum.Enum):
    JUNIOR = "junior"
    MID = "mid"
    SENIOR = "senior"
    LEAD = "lead"


class MatchStatus(str, enum.Enum):
    PENDING = "pending"
    UNLOCKED = "unlocked"
    EXPIRED = "expired"


class BudgetBand(BaseModel):
    """Hourly rate band. Either end may be open."""

    model_config = ConfigDict(frozen=True)

    min_rate: float | None = Field(default=None, ge=0)
    max_rate: float | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_order(self) -> "BudgetBand":
        if self.min_rate is not None and self.max_rate is not None and self.min_rate > self.max_rate:
            raise ValueError(f"min_rate {self.min_rate} is greater than max_rate {self.max_rate}")
        return self

    @classmethod
    def parse(cls, value: Any) -> "BudgetBand | None":
        """Build a band from the shapes seen upstream.

        ``"$100-200/hr"`` -> 100..200, ``"$200+"`` -> 200..open,
        ``"under $50"`` -> open..50, ``"150"`` -> 150..150.
        """
        if value is None or isinstance(value, BudgetBand):
            return value
        if isinstance(value, dict):
            band = cls(**value)
            return None if band.is_open else band
        if isinstance(value, (int, float)):
            return cls(min_rate=float(value), max_rate=float(value))
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return cls(min_rate=value[0], max_rate=value[1])

        text = str(value).replace(",", "").lower()
        numbers = [float(n) for n in _NUMBER_RE.findall(text)]
        if not numbers:
            return None
        if len(numbers) >= 2:
            low, high = sorted(numbers[:2])
            return cls(min_rate=low, max_rate=high)
        if "+" in text or "over" in text or "from" in text:
            return cls(min_rate=numbers[0])
        if "under" in text or "<" in text or "up to" in text:
            return cls(max_rate=numbers[0])
        return cls(min_rate=numbers[0], max_rate=numbers[0])

    @property
    def is_open(self) -> bool:
        return self.min_rate is None and self.max_rate is None

    @property
    def midpoint(self) -> float | None:
        if self.min_rate is not None and self.max_rate is not None:
            return (self.min_rate + self.max_rate) / 2
        if self.min_rate is not None:
            return self.min_rate
        return self.max_rate

    def overlaps(self, other: "BudgetBand") -> bool:
        low_ok = self.min_rate is None or other.max_rate is None or self.min_rate <= other.max_rate
        high_ok = self.max_rate is None or other.min_rate is None or other.min_rate <= self.max_rate
        return low_ok and high_ok


class Brief(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    client_id: str | None = None
    categories: frozenset[str] = Field(validation_alias=AliasChoices("categories", "category", "project_type"))
    budget: BudgetBand | None = Field(default=None, validation_alias=AliasChoices("budget", "budget_range"))
    timeline: str | None = Field(default=None, validation_alias=AliasChoices("timeline", "timeline_type"))
    styles: frozenset[str] = frozenset()
    industries: frozenset[str] = Field(default=frozenset(), validation_alias=AliasChoices("industries", "industry"))
    description: str = Field(default="", validation_alias=AliasChoices("description", "requirements"))
    seniority: Seniority | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("id", "client_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return None if value is None else str(value)

    @field_validator("categories", "styles", "industries", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> frozenset[str]:
        return normalize_tags(value)

    @field_validator("categories")
    @classmethod
    def _require_category(cls, value: frozenset[str]) -> frozenset[str]:
        if not value:
            raise ValueError("A brief needs at least one category")
        return value

    @field_validator("budget", mode="before")
    @classmethod
    def _parse_budget(cls, value: Any) -> Any:
        return BudgetBand.parse(value)

    @field_validator("timeline", mode="before")
    @classmethod
    def _strip_timeline(cls, value: Any) -> Any:
        if value is None:
            return value
        return re.sub(r"\s+", " ", str(value)).strip() or None

    @field_validator("description", mode="before")
    @classmethod
    def _strip_description(cls, value: Any) -> str:
        if value is None:
            return ""
        return re.sub(r"\s+", " ", str(value)).strip()

    def content_fields(self) -> dict[str, Any]:
        """Fields that affect matching. Ids and timestamps are left out."""
        return {
            "categories": sorted(self.categories),
            "budget": None if self.budget is None else [self.budget.min_rate, self.budget.max_rate],
            "timeline": (self.timeline or "").lower(),
            "styles": sorted(self.styles),
            "industries": sorted(self.industries),
            "description": self.description.lower(),
            "seniority": None if self.seniority is None else self.seniority.value,
        }

    def embedding_text(self) -> str:
        lines = [
            f"{', '.join(sorted(self.categories))} project",
            f"{', '.join(sorted(self.industries))} industry" if self.industries else "",
            f"{', '.join(sorted(self.styles))} styles" if self.styles else "",
            self.description,
        ]
        return "\n".join(line for line in lines if line)


class DesignerProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    categories: frozenset[str] = frozenset()
    years_experience: float | None = Field(default=None, ge=0)
    availability: Availability = Availability.IMMEDIATE
    rate: BudgetBand | None = None
    styles: frozenset[str] = frozenset()
    industries: frozenset[str] = frozenset()
    bio: str = ""
    embedding_version: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return str(value)

    @field_validator("categories", "styles", "industries", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> frozenset[str]:
        return normalize_tags(value)

    @field_validator("availability", mode="before")
    @classmethod
    def _legacy_availability(cls, value: Any) -> Any:
        if value is None:
            return Availability.UNAVAILABLE.value
        if isinstance(value, str):
            key = value.strip().lower()
            return _LEGACY_AVAILABILITY.get(key, key)
        return value

    @field_validator("rate", mode="before")
    @classmethod
    def _parse_rate(cls, value: Any) -> Any:
        return BudgetBand.parse(value)

    def content_hash(self) -> str:
        """Hash of the fields the embedding is derived from."""
        return stable_hash(
            {
                "bio": self.bio,
                "styles": sorted(self.styles),
                "industries": sorted(self.industries),
                "categories": sorted(self.categories),
            }
        )

    @property
    def embedding_is_current(self) -> bool:
        return self.embedding_version is not None and self.embedding_version == self.content_hash()

    def with_current_embedding(self) -> "DesignerProfile":
        return self.model_copy(update={"embedding_version": self.content_hash()})

    def embedding_text(self) -> str:
        lines = [
            f"Designer for {', '.join(sorted(self.categories))}" if self.categories else "",
            f"Styles: {', '.join(sorted(self.styles))}" if self.styles else "",
            f"Industries: {', '.join(sorted(self.industries))}" if self.industries else "",
            self.bio,
        ]
        return "\n".join(line for line in lines if line)


class Match(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    brief_id: str
    designer_id: str
    score: float = Field(ge=0, le=100)
    reasons: list[str] = Field(default_factory=list)
    status: MatchStatus = MatchStatus.PENDING
    degraded: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("id", "brief_id", "designer_id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return str(value)


class CachedOutcome(BaseModel):
    """What the match cache stores: the decision, not the per-brief record."""

    model_config = ConfigDict(frozen=True)

    designer_id: str
    score: float
    reasons: tuple[str, ...]
    degraded: bool = False

    @classmethod
    def from_match(cls, match: Match) -> "CachedOutcome":
        return cls(
            designer_id=match.designer_id,
            score=match.score,
            reasons=tuple(match.reasons),
            degraded=match.degraded,
        )


class MatchOutcome(BaseModel):
    match: Match
    degraded: bool
    cached: bool = False

    def to_response(self) -> dict[str, Any]:
        return {
            "match_id": self.match.id,
            "designer_id": self.match.designer_id,
            "score": self.match.score,
            "reasons": list(self.match.reasons),
            "degraded": self.degraded,
            "status": self.match.status.value,
        }


@dataclass(frozen=True)
class Candidate:
    """A designer under consideration for one request. Never persisted."""

    profile: DesignerProfile
    similarity: float
    eligible: bool = False

    @property
    def designer_id(self) -> str:
        return self.profile.id


@dataclass(frozen=True)
class ReasonTag:
    code: str
    detail: str = ""
    weight: float = 0.0


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: Candidate
    score: float
    breakdown: dict[str, float] = field(default_factory=dict)
    reason_tags: tuple[ReasonTag, ...] = ()

    @property
    def designer_id(self) -> str:
        return self.candidate.designer_id

    @property
    def profile(self) -> DesignerProfile:
        return self.candidate.profile

    @property
    def similarity(self) -> float:
        return self.candidate.similarity


def tag_overlap(left: Iterable[str], right: Iterable[str]) -> list[str]:
    return sorted(set(left) & set(right))
