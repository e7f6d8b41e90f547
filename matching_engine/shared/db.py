"""Engine, sessions and schema bootstrap for the matching tables."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import LOCAL_DATABASE_URL, get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


_engine: Engine | None = None
_session_factory: sessionmaker | None = None


def get_engine() -> Engine:
    global _engine, _session_factory
    if _engine is None:
        url = get_settings().database_url
        if url == LOCAL_DATABASE_URL:
            logger.warning("Neither DATABASE_URL nor PGHOST is set, using the local development database")
        # pool_pre_ping: serverless Postgres drops idle connections between invocations.
        _engine = create_engine(url, echo=False, future=True, pool_pre_ping=True)
        _session_factory = sessionmaker(bind=_engine, class_=Session, expire_on_commit=False)
    return _engine


def get_session_factory() -> sessionmaker:
    if _session_factory is None:
        get_engine()
    return _session_factory


def init_schema(engine: Engine | None = None) -> None:
    """Create the pgvector extension (Postgres only) and any missing tables."""
    from . import models  # noqa: F401  registers the tables on Base.metadata

    engine = engine or get_engine()
    if engine.dialect.name == "postgresql":
        with engine.begin() as connection:
            connection.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
    Base.metadata.create_all(bind=engine)
    logger.info(f"Schema ready on {engine.dialect.name}")


@contextmanager
def session_scope(factory: sessionmaker | None = None) -> Iterator[Session]:
    """One unit of work: commit on success, roll back on any error."""
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
