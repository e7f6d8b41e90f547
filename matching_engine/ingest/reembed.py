"""Nightly designer re-embedding run.

Re-embeds every designer whose embedding is missing or older than the profile
content, then bumps the pool version so cached match outcomes computed against
the old vectors are never served again.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from matching_engine.match.cache import MatchCache
from matching_engine.match.repository import DesignerSource, PoolVersion
from matching_engine.match.store import EmbeddingStore, QueryEmbedder

logger = logging.getLogger(__name__)

BATCH_SIZE = 50


@dataclass
class ReembedSummary:
    scanned: int = 0
    embeddings_updated: int = 0
    failed: int = 0
    pool_version: int = 0
    cache_entries_purged: int = 0

    def as_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "embeddings_updated": self.embeddings_updated,
            "failed": self.failed,
            "pool_version": self.pool_version,
            "cache_entries_purged": self.cache_entries_purged,
        }


def refresh_designer_embeddings(
    designers: DesignerSource,
    store: EmbeddingStore,
    embedder: QueryEmbedder,
    pool: PoolVersion,
    cache: MatchCache | None = None,
    batch_size: int = BATCH_SIZE,
) -> ReembedSummary:
    summary = ReembedSummary()
    stale = []
    for profile in designers.iter_profiles():
        summary.scanned += 1
        if not profile.embedding_is_current:
            stale.append(profile)

    logger.info(f"{len(stale)} of {summary.scanned} designer embeddings need refreshing")

    for i in range(0, len(stale), batch_size):
        batch = stale[i : i + batch_size]
        try:
            vectors = embedder.embed_texts([profile.embedding_text() for profile in batch])
        except Exception as e:
            logger.error(f"Embedding batch starting at {i} failed: {e}", exc_info=True)
            summary.failed += len(batch)
            continue

        for profile, vector in zip(batch, vectors, strict=True):
            try:
                store.upsert(profile, vector)
                designers.record_embedding_version(profile.id, profile.content_hash())
                summary.embeddings_updated += 1
            except Exception as e:
                logger.error(f"Failed to store embedding for designer {profile.id}: {e}", exc_info=True)
                summary.failed += 1

    if summary.embeddings_updated:
        summary.pool_version = pool.bump()
        if cache is not None:
            cache.clear()
        logger.info(f"Designer pool version bumped to {summary.pool_version}")
    else:
        summary.pool_version = pool.current()

    if cache is not None:
        summary.cache_entries_purged = cache.purge_expired()

    logger.info(f"Re-embedding complete: {summary.as_dict()}")
    return summary


def run_once() -> ReembedSummary:
    from matching_engine.shared.db import get_session_factory
    from matching_engine.shared.embeddings import Embedder
    from matching_engine.match.repository import SqlDesignerSource, SqlPoolVersion
    from matching_engine.match.store import PgVectorEmbeddingStore

    factory = get_session_factory()
    embedder = Embedder()
    return refresh_designer_embeddings(
        designers=SqlDesignerSource(factory),
        store=PgVectorEmbeddingStore(factory, embedder),
        embedder=embedder,
        pool=SqlPoolVersion(factory),
    )


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    result = run_once()
    print(f"Re-embedded {result.embeddings_updated} designers (pool version {result.pool_version})")
