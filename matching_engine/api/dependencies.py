"""FastAPI dependency helpers."""
from __future__ import annotations

from functools import lru_cache

from matching_engine.explain.service import GeminiReasoningProvider, ReasoningGenerator
from matching_engine.match.cache import MatchCache
from matching_engine.match.repository import SqlBriefSource, SqlDesignerSource, SqlMatchRepository, SqlPoolVersion
from matching_engine.match.service import MatchOrchestrator
from matching_engine.match.store import PgVectorEmbeddingStore
from matching_engine.shared.config import MatchingConfig, get_settings
from matching_engine.shared.db import get_session_factory
from matching_engine.shared.embeddings import Embedder


@lru_cache(maxsize=1)
def get_orchestrator() -> MatchOrchestrator:
    """Process-wide orchestrator backed by Postgres, pgvector and Gemini.

    Matching knobs are re-read from the environment at the start of every
    request so weights can be tuned without a restart.
    """
    settings = get_settings()
    factory = get_session_factory()
    embedder = Embedder(settings)
    return MatchOrchestrator(
        briefs=SqlBriefSource(factory),
        designers=SqlDesignerSource(factory),
        store=PgVectorEmbeddingStore(factory, embedder),
        repository=SqlMatchRepository(factory),
        cache=MatchCache(max_entries=settings.cache_max_entries),
        generator=ReasoningGenerator(
            GeminiReasoningProvider(settings),
            config=settings.matching,
            max_workers=settings.ai_workers,
        ),
        pool=SqlPoolVersion(factory),
        config=MatchingConfig.from_env,
    )
