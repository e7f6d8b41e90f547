"""Tests for the designer re-embedding job."""
from __future__ import annotations

from matching_engine.ingest.reembed import refresh_designer_embeddings
from matching_engine.match.cache import MatchCache
from matching_engine.match.repository import InMemoryDesignerSource, InMemoryPoolVersion
from matching_engine.match.store import InMemoryEmbeddingStore
from matching_engine.shared.schemas import CachedOutcome


def _warm_cache(clock) -> MatchCache:
    cache = MatchCache(clock=clock)
    cache.put("fp", CachedOutcome(designer_id="d1", score=90.0, reasons=("Fit.",)), ttl=60)
    return cache


class TestRefreshDesignerEmbeddings:
    def test_stale_profiles_reembedded(self, embedder, make_designer, fake_clock):
        fresh = make_designer("d1").with_current_embedding()
        stale = make_designer("d2")
        edited = make_designer("d3").with_current_embedding().model_copy(update={"bio": "Rewritten bio"})
        designers = InMemoryDesignerSource([fresh, stale, edited])
        store = InMemoryEmbeddingStore(embedder)
        pool = InMemoryPoolVersion()
        cache = _warm_cache(fake_clock)

        summary = refresh_designer_embeddings(designers, store, embedder, pool, cache=cache)

        assert summary.scanned == 3
        assert summary.embeddings_updated == 2
        assert summary.failed == 0
        assert summary.pool_version == 1
        assert len(cache) == 0
        assert len(store) == 2
        assert all(profile.embedding_is_current for profile in designers.iter_profiles())
        assert store.version_of("d3") == designers.get_designer_profile("d3").content_hash()

    def test_batches(self, embedder, make_designer):
        designers = InMemoryDesignerSource([make_designer(f"d{i}") for i in range(5)])

        refresh_designer_embeddings(
            designers, InMemoryEmbeddingStore(embedder), embedder, InMemoryPoolVersion(), batch_size=2
        )

        assert [len(batch) for batch in embedder.batches] == [2, 2, 1]

    def test_nothing_stale_keeps_pool_version(self, embedder, make_designer, fake_clock):
        designers = InMemoryDesignerSource([make_designer("d1").with_current_embedding()])
        pool = InMemoryPoolVersion(start=4)
        cache = _warm_cache(fake_clock)

        summary = refresh_designer_embeddings(designers, InMemoryEmbeddingStore(embedder), embedder, pool, cache=cache)

        assert summary.embeddings_updated == 0
        assert summary.pool_version == 4
        assert len(cache) == 1
        assert embedder.batches == []

    def test_failed_batch_is_counted(self, embedder, make_designer):
        def fail(texts, task_type="RETRIEVAL_DOCUMENT"):
            raise ConnectionError("embedding API down")

        embedder.embed_texts = fail
        designers = InMemoryDesignerSource([make_designer("d1"), make_designer("d2")])
        pool = InMemoryPoolVersion()

        summary = refresh_designer_embeddings(designers, InMemoryEmbeddingStore(embedder), embedder, pool)

        assert summary.failed == 2
        assert summary.embeddings_updated == 0
        assert pool.current() == 0

    def test_expired_cache_entries_purged(self, embedder, make_designer, fake_clock):
        designers = InMemoryDesignerSource([make_designer("d1").with_current_embedding()])
        cache = _warm_cache(fake_clock)
        fake_clock.advance(120)

        summary = refresh_designer_embeddings(
            designers, InMemoryEmbeddingStore(embedder), embedder, InMemoryPoolVersion(), cache=cache
        )

        assert summary.cache_entries_purged == 1
