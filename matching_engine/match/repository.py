"""Collaborator adapters: brief source, designer pool, match persistence, pool version.

Each collaborator has an in-memory implementation (used by tests and local
runs) and a SQLAlchemy implementation.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Iterable, Iterator

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from matching_engine.shared.db import session_scope
from matching_engine.shared.errors import BriefNotFound, NoEligibleDesigners, PersistenceConflict, ValidationError
from matching_engine.shared.models import BriefRecord, DesignerRecord, MatchRecord, PoolStateRecord
from matching_engine.shared.schemas import Brief, DesignerProfile, Match, MatchStatus

logger = logging.getLogger(__name__)

# Allowed status transitions after a match is created. Matches are never re-scored.
TRANSITIONS: dict[MatchStatus, frozenset[MatchStatus]] = {
    MatchStatus.PENDING: frozenset({MatchStatus.UNLOCKED, MatchStatus.EXPIRED}),
    MatchStatus.UNLOCKED: frozenset({MatchStatus.EXPIRED}),
    MatchStatus.EXPIRED: frozenset(),
}


def check_transition(current: MatchStatus, target: MatchStatus) -> None:
    if target not in TRANSITIONS[current]:
        raise ValueError(f"Cannot move match from {current.value} to {target.value}")


class BriefSource(ABC):
    @abstractmethod
    def get_brief(self, brief_id: str) -> Brief:
        """Raises ``BriefNotFound`` when no such brief exists."""


class DesignerSource(ABC):
    @abstractmethod
    def get_designer_profile(self, designer_id: str) -> DesignerProfile | None: ...

    @abstractmethod
    def iter_profiles(self) -> Iterator[DesignerProfile]: ...

    def record_embedding_version(self, designer_id: str, version: str) -> None:
        """Note that the stored embedding now matches ``version``.

        Sources that read the version from the embedding store itself need no
        extra bookkeeping.
        """

    def get_designer_profiles(self, designer_ids: Iterable[str]) -> dict[str, DesignerProfile]:
        profiles = {}
        for designer_id in designer_ids:
            profile = self.get_designer_profile(designer_id)
            if profile is not None:
                profiles[designer_id] = profile
        return profiles


class MatchRepository(ABC):
    @abstractmethod
    def create_match_if_absent(self, brief_id: str, match: Match) -> tuple[Match, bool]:
        """Atomically insert ``match`` unless a live match exists for the brief.

        Returns the stored record and whether this call created it.
        """

    @abstractmethod
    def get_match_for_brief(self, brief_id: str) -> Match | None:
        """The live (non-expired) match for a brief, if any."""

    @abstractmethod
    def get_match(self, match_id: str) -> Match | None: ...

    @abstractmethod
    def previous_designer_ids(self, brief_id: str) -> set[str]:
        """Designers of expired matches for the brief."""

    @abstractmethod
    def update_status(self, match_id: str, status: MatchStatus) -> Match: ...

    @abstractmethod
    def count_for_brief(self, brief_id: str) -> int: ...


class PoolVersion(ABC):
    @abstractmethod
    def current(self) -> int: ...

    @abstractmethod
    def bump(self) -> int: ...


class InMemoryBriefSource(BriefSource):
    def __init__(self, briefs: Iterable[Brief] = ()):
        self._briefs = {brief.id: brief for brief in briefs}

    def add(self, brief: Brief) -> None:
        self._briefs[brief.id] = brief

    def get_brief(self, brief_id: str) -> Brief:
        try:
            return self._briefs[brief_id]
        except KeyError:
            raise BriefNotFound(brief_id) from None


class InMemoryDesignerSource(DesignerSource):
    def __init__(self, profiles: Iterable[DesignerProfile] = ()):
        self._profiles = {profile.id: profile for profile in profiles}
        self._lock = threading.Lock()

    def upsert(self, profile: DesignerProfile) -> None:
        with self._lock:
            self._profiles[profile.id] = profile

    def get_designer_profile(self, designer_id: str) -> DesignerProfile | None:
        return self._profiles.get(designer_id)

    def iter_profiles(self) -> Iterator[DesignerProfile]:
        with self._lock:
            profiles = list(self._profiles.values())
        return iter(profiles)

    def record_embedding_version(self, designer_id: str, version: str) -> None:
        with self._lock:
            profile = self._profiles.get(designer_id)
            if profile is not None:
                self._profiles[designer_id] = profile.model_copy(update={"embedding_version": version})


class InMemoryMatchRepository(MatchRepository):
    def __init__(self):
        self._matches: dict[str, Match] = {}
        self._lock = threading.Lock()

    def _live_for(self, brief_id: str) -> Match | None:
        for match in self._matches.values():
            if match.brief_id == brief_id and match.status != MatchStatus.EXPIRED:
                return match
        return None

    def create_match_if_absent(self, brief_id: str, match: Match) -> tuple[Match, bool]:
        if match.brief_id != brief_id:
            raise ValueError(f"Match is for brief {match.brief_id}, not {brief_id}")
        with self._lock:
            existing = self._live_for(brief_id)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self._matches[match.id] = match.model_copy(deep=True)
            return match, True

    def get_match_for_brief(self, brief_id: str) -> Match | None:
        with self._lock:
            match = self._live_for(brief_id)
            return None if match is None else match.model_copy(deep=True)

    def get_match(self, match_id: str) -> Match | None:
        with self._lock:
            match = self._matches.get(match_id)
            return None if match is None else match.model_copy(deep=True)

    def previous_designer_ids(self, brief_id: str) -> set[str]:
        with self._lock:
            return {
                m.designer_id
                for m in self._matches.values()
                if m.brief_id == brief_id and m.status == MatchStatus.EXPIRED
            }

    def update_status(self, match_id: str, status: MatchStatus) -> Match:
        with self._lock:
            match = self._matches.get(match_id)
            if match is None:
                raise KeyError(match_id)
            check_transition(match.status, status)
            updated = match.model_copy(update={"status": status})
            self._matches[match_id] = updated
            return updated.model_copy(deep=True)

    def count_for_brief(self, brief_id: str) -> int:
        with self._lock:
            return sum(1 for m in self._matches.values() if m.brief_id == brief_id)


class InMemoryPoolVersion(PoolVersion):
    def __init__(self, start: int = 0):
        self._version = start
        self._lock = threading.Lock()

    def current(self) -> int:
        return self._version

    def bump(self) -> int:
        with self._lock:
            self._version += 1
            return self._version


def brief_from_record(record: BriefRecord) -> Brief:
    try:
        return Brief(
            id=record.id,
            client_id=record.client_id,
            categories=record.categories,
            budget={"min_rate": record.budget_min, "max_rate": record.budget_max},
            timeline=record.timeline,
            styles=record.styles,
            industries=record.industries,
            description=record.description,
            seniority=record.seniority,
            created_at=record.created_at,
        )
    except SchemaValidationError as exc:
        raise ValidationError(f"Brief {record.id} is invalid: {exc}") from exc


def profile_from_record(record: DesignerRecord) -> DesignerProfile:
    return DesignerProfile(
        id=record.id,
        name=record.name or "",
        categories=record.categories,
        years_experience=record.years_experience,
        availability=record.availability,
        rate={"min_rate": record.rate_min, "max_rate": record.rate_max},
        styles=record.styles,
        industries=record.industries,
        bio=record.bio or "",
        embedding_version=record.embedding_hash if record.embedding is not None else None,
    )


class SqlBriefSource(BriefSource):
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get_brief(self, brief_id: str) -> Brief:
        with session_scope(self.session_factory) as session:
            record = session.get(BriefRecord, brief_id)
            if record is None:
                raise BriefNotFound(brief_id)
            return brief_from_record(record)


class SqlDesignerSource(DesignerSource):
    """Designer pool backed by the ``designers`` table.

    Rows that fail profile validation are logged and left out, so one bad row
    never takes the rest of the pool down with it.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def _valid_profiles(records: Iterable[DesignerRecord]) -> Iterator[DesignerProfile]:
        for record in records:
            try:
                yield profile_from_record(record)
            except SchemaValidationError as exc:
                logger.warning(f"Skipping designer {record.id} with an invalid profile: {exc}")

    def get_designer_profile(self, designer_id: str) -> DesignerProfile | None:
        with session_scope(self.session_factory) as session:
            record = session.get(DesignerRecord, designer_id)
            if record is None:
                return None
            return next(self._valid_profiles([record]), None)

    def get_designer_profiles(self, designer_ids: Iterable[str]) -> dict[str, DesignerProfile]:
        ids = list(designer_ids)
        if not ids:
            return {}
        with session_scope(self.session_factory) as session:
            records = session.scalars(select(DesignerRecord).where(DesignerRecord.id.in_(ids))).all()
            return {profile.id: profile for profile in self._valid_profiles(records)}

    def iter_profiles(self) -> Iterator[DesignerProfile]:
        with session_scope(self.session_factory) as session:
            records = session.scalars(select(DesignerRecord).order_by(DesignerRecord.id)).all()
            profiles = list(self._valid_profiles(records))
        return iter(profiles)


class SqlMatchRepository(MatchRepository):
    """Persistence backed by the ``matches`` table.

    Uniqueness comes from the partial unique index on live matches, so two
    concurrent inserts for one brief cannot both succeed.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def _to_match(record: MatchRecord) -> Match:
        return Match.model_validate(record)

    def _insert(self, match: Match) -> None:
        try:
            with session_scope(self.session_factory) as session:
                session.add(
                    MatchRecord(
                        id=match.id,
                        brief_id=match.brief_id,
                        designer_id=match.designer_id,
                        score=match.score,
                        reasons=list(match.reasons),
                        status=match.status.value,
                        degraded=match.degraded,
                        created_at=match.created_at,
                    )
                )
        except IntegrityError as exc:
            raise PersistenceConflict(f"Brief {match.brief_id} already has a live match", stage="persisting") from exc

    def create_match_if_absent(self, brief_id: str, match: Match) -> tuple[Match, bool]:
        if match.brief_id != brief_id:
            raise ValueError(f"Match is for brief {match.brief_id}, not {brief_id}")
        try:
            self._insert(match)
            return match, True
        except PersistenceConflict as conflict:
            existing = self.get_match_for_brief(brief_id)
            if existing is None:
                # Foreign key violation: the designer or brief was deleted after retrieval.
                raise NoEligibleDesigners(
                    f"Designer {match.designer_id} or brief {brief_id} no longer exists",
                    stage="persisting",
                ) from conflict.__cause__
            logger.info(f"{conflict}; returning stored match {existing.id}")
            return existing, False

    def get_match_for_brief(self, brief_id: str) -> Match | None:
        with session_scope(self.session_factory) as session:
            record = session.scalars(
                select(MatchRecord).where(
                    MatchRecord.brief_id == brief_id,
                    MatchRecord.status != MatchStatus.EXPIRED.value,
                )
            ).first()
            return None if record is None else self._to_match(record)

    def get_match(self, match_id: str) -> Match | None:
        with session_scope(self.session_factory) as session:
            record = session.get(MatchRecord, match_id)
            return None if record is None else self._to_match(record)

    def previous_designer_ids(self, brief_id: str) -> set[str]:
        with session_scope(self.session_factory) as session:
            rows = session.scalars(
                select(MatchRecord.designer_id).where(
                    MatchRecord.brief_id == brief_id,
                    MatchRecord.status == MatchStatus.EXPIRED.value,
                )
            ).all()
            return set(rows)

    def update_status(self, match_id: str, status: MatchStatus) -> Match:
        with session_scope(self.session_factory) as session:
            record = session.get(MatchRecord, match_id, with_for_update=True)
            if record is None:
                raise KeyError(match_id)
            check_transition(MatchStatus(record.status), status)
            record.status = status.value
            session.flush()
            return self._to_match(record)

    def count_for_brief(self, brief_id: str) -> int:
        with session_scope(self.session_factory) as session:
            return session.scalar(select(func.count()).select_from(MatchRecord).where(MatchRecord.brief_id == brief_id))


class SqlPoolVersion(PoolVersion):
    _ROW_ID = 1

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def current(self) -> int:
        with session_scope(self.session_factory) as session:
            record = session.get(PoolStateRecord, self._ROW_ID)
            return 0 if record is None else record.version

    def bump(self) -> int:
        with session_scope(self.session_factory) as session:
            record = session.get(PoolStateRecord, self._ROW_ID, with_for_update=True)
            if record is None:
                record = PoolStateRecord(id=self._ROW_ID, version=0)
                session.add(record)
            record.version += 1
            session.flush()
            return record.version
