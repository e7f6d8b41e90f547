"""Tests for match persistence and the SQL collaborator adapters.

The SQL adapters run against a SQLite file; the partial unique index on live
matches behaves the same there as on Postgres.
"""
from __future__ import annotations

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from matching_engine.match.repository import (
    InMemoryMatchRepository,
    SqlBriefSource,
    SqlDesignerSource,
    SqlMatchRepository,
    SqlPoolVersion,
    check_transition,
)
from matching_engine.shared.db import init_schema
from matching_engine.shared.errors import BriefNotFound, NoEligibleDesigners, ValidationError
from matching_engine.shared.models import BriefRecord, DesignerRecord
from matching_engine.shared.schemas import Match, MatchStatus


def _match(brief_id: str = "brief-1", designer_id: str = "d1", score: float = 80.0) -> Match:
    return Match(brief_id=brief_id, designer_id=designer_id, score=score, reasons=["Good fit."])


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'matching.db'}", future=True)

    @event.listens_for(engine, "connect")
    def _enforce_foreign_keys(dbapi_connection, connection_record):
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    init_schema(engine)
    factory = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)
    with factory() as session:
        session.add(
            BriefRecord(
                id="brief-1",
                client_id="client-1",
                categories=["Branding"],
                budget_min=100,
                budget_max=200,
                styles=["minimal"],
                industries=["fintech"],
                description="Brand identity for a payments startup",
            )
        )
        session.add(BriefRecord(id="broken", categories=[]))
        session.add_all(
            [
                DesignerRecord(id="d1", name="Ada", categories=["branding"], availability="immediate", rate_min=150),
                DesignerRecord(id="d2", name="Grace", categories=["web"], availability="busy"),
            ]
        )
        session.commit()
    yield factory
    engine.dispose()


class TestTransitions:
    @pytest.mark.parametrize(
        "current, target",
        [
            (MatchStatus.PENDING, MatchStatus.UNLOCKED),
            (MatchStatus.PENDING, MatchStatus.EXPIRED),
            (MatchStatus.UNLOCKED, MatchStatus.EXPIRED),
        ],
    )
    def test_allowed(self, current, target):
        check_transition(current, target)

    @pytest.mark.parametrize(
        "current, target",
        [
            (MatchStatus.UNLOCKED, MatchStatus.PENDING),
            (MatchStatus.EXPIRED, MatchStatus.PENDING),
            (MatchStatus.EXPIRED, MatchStatus.UNLOCKED),
            (MatchStatus.PENDING, MatchStatus.PENDING),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(ValueError):
            check_transition(current, target)


class TestInMemoryMatchRepository:
    def test_create_if_absent_only_once(self):
        repo = InMemoryMatchRepository()
        first, created = repo.create_match_if_absent("brief-1", _match(designer_id="d1"))
        second, created_again = repo.create_match_if_absent("brief-1", _match(designer_id="d2"))

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert repo.count_for_brief("brief-1") == 1

    def test_brief_id_must_agree(self):
        with pytest.raises(ValueError):
            InMemoryMatchRepository().create_match_if_absent("other", _match())

    def test_expired_match_frees_the_brief(self):
        repo = InMemoryMatchRepository()
        first, _ = repo.create_match_if_absent("brief-1", _match(designer_id="d1"))
        repo.update_status(first.id, MatchStatus.EXPIRED)

        _, created = repo.create_match_if_absent("brief-1", _match(designer_id="d2"))

        assert created is True
        assert repo.previous_designer_ids("brief-1") == {"d1"}
        assert repo.get_match_for_brief("brief-1").designer_id == "d2"

    def test_update_unknown_match(self):
        with pytest.raises(KeyError):
            InMemoryMatchRepository().update_status("missing", MatchStatus.UNLOCKED)

    def test_stored_record_is_not_aliased(self):
        repo = InMemoryMatchRepository()
        match, _ = repo.create_match_if_absent("brief-1", _match())
        match.reasons.append("mutated")
        assert repo.get_match(match.id).reasons == ["Good fit."]


class TestSqlMatchRepository:
    def test_create_if_absent(self, session_factory):
        repo = SqlMatchRepository(session_factory)
        first, created = repo.create_match_if_absent("brief-1", _match(designer_id="d1"))
        second, created_again = repo.create_match_if_absent("brief-1", _match(designer_id="d2", score=95))

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert second.designer_id == "d1"
        assert repo.count_for_brief("brief-1") == 1

    def test_round_trip(self, session_factory):
        repo = SqlMatchRepository(session_factory)
        match, _ = repo.create_match_if_absent("brief-1", _match())

        stored = repo.get_match(match.id)
        assert stored.reasons == ["Good fit."]
        assert stored.status == MatchStatus.PENDING
        assert stored.score == pytest.approx(80.0)

    def test_status_transitions(self, session_factory):
        repo = SqlMatchRepository(session_factory)
        match, _ = repo.create_match_if_absent("brief-1", _match())

        assert repo.update_status(match.id, MatchStatus.UNLOCKED).status == MatchStatus.UNLOCKED
        with pytest.raises(ValueError):
            repo.update_status(match.id, MatchStatus.PENDING)
        with pytest.raises(KeyError):
            repo.update_status("missing", MatchStatus.UNLOCKED)

    def test_expired_match_allows_a_new_one(self, session_factory):
        repo = SqlMatchRepository(session_factory)
        first, _ = repo.create_match_if_absent("brief-1", _match(designer_id="d1"))
        repo.update_status(first.id, MatchStatus.EXPIRED)

        second, created = repo.create_match_if_absent("brief-1", _match(designer_id="d2"))

        assert created is True
        assert repo.get_match_for_brief("brief-1").id == second.id
        assert repo.previous_designer_ids("brief-1") == {"d1"}
        assert repo.count_for_brief("brief-1") == 2

    def test_deleted_designer_is_no_eligible_designers(self, session_factory):
        with session_factory() as session:
            session.delete(session.get(DesignerRecord, "d1"))
            session.commit()
        repo = SqlMatchRepository(session_factory)

        with pytest.raises(NoEligibleDesigners) as exc_info:
            repo.create_match_if_absent("brief-1", _match(designer_id="d1"))

        assert exc_info.value.stage == "persisting"
        assert repo.count_for_brief("brief-1") == 0


class TestSqlSources:
    def test_get_brief(self, session_factory):
        brief = SqlBriefSource(session_factory).get_brief("brief-1")

        assert brief.categories == frozenset({"branding"})
        assert brief.budget.min_rate == 100
        assert brief.budget.max_rate == 200

    def test_missing_brief(self, session_factory):
        with pytest.raises(BriefNotFound):
            SqlBriefSource(session_factory).get_brief("nope")

    def test_invalid_brief_is_validation_error(self, session_factory):
        with pytest.raises(ValidationError):
            SqlBriefSource(session_factory).get_brief("broken")

    def test_designer_profiles(self, session_factory):
        source = SqlDesignerSource(session_factory)
        profiles = source.get_designer_profiles(["d1", "d2", "ghost"])

        assert set(profiles) == {"d1", "d2"}
        assert profiles["d1"].rate.min_rate == 150
        assert profiles["d2"].availability.value == "1-2weeks"
        assert profiles["d1"].embedding_version is None
        assert [p.id for p in source.iter_profiles()] == ["d1", "d2"]

    def test_invalid_designer_rows_are_skipped(self, session_factory):
        with session_factory() as session:
            session.add_all(
                [
                    DesignerRecord(id="d3", name="Linus", categories=["branding"], availability="part-time"),
                    DesignerRecord(id="d4", name="Edsger", categories=["branding"], rate_min=300, rate_max=100),
                    DesignerRecord(id="d5", name="Barbara", categories=["branding"], years_experience=-2),
                ]
            )
            session.commit()
        source = SqlDesignerSource(session_factory)

        profiles = source.get_designer_profiles(["d1", "d3", "d4", "d5"])

        assert set(profiles) == {"d1"}
        assert source.get_designer_profile("d3") is None
        assert [p.id for p in source.iter_profiles()] == ["d1", "d2"]

    def test_pool_version(self, session_factory):
        pool = SqlPoolVersion(session_factory)
        assert pool.current() == 0
        assert pool.bump() == 1
        assert pool.bump() == 2
        assert pool.current() == 2
