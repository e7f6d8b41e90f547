"""Shared fixtures for the matching engine tests.

Nothing here touches the network: embeddings come from ``FakeEmbedder``,
AI responses from ``ScriptedProvider`` and retry sleeps are no-ops.
"""
from __future__ import annotations

import hashlib
import math
import threading

import pytest

from matching_engine.explain.service import ReasoningGenerator
from matching_engine.match.cache import MatchCache
from matching_engine.match.repository import (
    InMemoryBriefSource,
    InMemoryDesignerSource,
    InMemoryMatchRepository,
    InMemoryPoolVersion,
)
from matching_engine.match.service import MatchOrchestrator
from matching_engine.match.store import InMemoryEmbeddingStore
from matching_engine.shared.config import MatchingConfig
from matching_engine.shared.schemas import Brief, DesignerProfile

DIM = 8

DEFAULT_REASONS = [
    "Their minimal branding work lines up with the identity you described.",
    "They have launched brands for fintech companies like yours.",
]


def vector_with_similarity(similarity: float, dim: int = DIM) -> list[float]:
    """Unit vector whose cosine similarity to the fake query vector is ``similarity``."""
    vector = [0.0] * dim
    vector[0] = similarity
    vector[1] = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return vector


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEmbedder:
    """Deterministic embedder. Queries always map to the first basis vector."""

    def __init__(self, dim: int = DIM, on_query=None):
        self.dim = dim
        self.on_query = on_query
        self.query_calls = 0
        self.batches: list[list[str]] = []

    def embed_query(self, text: str) -> list[float]:
        self.query_calls += 1
        if self.on_query is not None:
            self.on_query(text)
        return [1.0] + [0.0] * (self.dim - 1)

    def embed_texts(self, texts, task_type: str = "RETRIEVAL_DOCUMENT") -> list[list[float]]:
        texts = list(texts)
        self.batches.append(texts)
        vectors = []
        for text in texts:
            digest = hashlib.sha256(text.encode("utf-8")).digest()
            vectors.append([b / 255 + 0.01 for b in digest[: self.dim]])
        return vectors


class ScriptedProvider:
    """Replays a script of reason lists and exceptions; the last entry repeats."""

    def __init__(self, *script):
        self.script = list(script) or [DEFAULT_REASONS]
        self.prompts: list[str] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def complete(self, prompt: str, timeout: float) -> list[str]:
        with self._lock:
            self.prompts.append(prompt)
            step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, BaseException):
            raise step
        return list(step)


@pytest.fixture
def make_brief():
    def _make(**overrides) -> Brief:
        data = {
            "id": "brief-1",
            "client_id": "client-1",
            "categories": ["branding"],
            "budget": "$100-200/hr",
            "timeline": "2-4 weeks",
            "styles": ["minimal"],
            "industries": ["fintech"],
            "description": "Brand identity for a payments startup",
        }
        data.update(overrides)
        return Brief(**data)

    return _make


@pytest.fixture
def make_designer():
    def _make(designer_id: str = "d1", **overrides) -> DesignerProfile:
        data = {
            "id": designer_id,
            "name": "Ada",
            "categories": ["branding"],
            "years_experience": 7,
            "availability": "immediate",
            "rate": 150,
            "styles": ["minimal"],
            "industries": ["fintech"],
            "bio": "Brand designer for fintech startups",
        }
        data.update(overrides)
        return DesignerProfile(**data)

    return _make


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def build_orchestrator():
    """Factory for an in-memory orchestrator.

    ``designers`` is a list of (profile, similarity to the brief) pairs.
    """
    created: list[MatchOrchestrator] = []

    def _build(
        briefs,
        designers,
        provider=None,
        config: MatchingConfig | None = None,
        embedder: FakeEmbedder | None = None,
        clock=None,
    ) -> MatchOrchestrator:
        embedder = embedder or FakeEmbedder()
        store = InMemoryEmbeddingStore(embedder)
        profiles = []
        for profile, similarity in designers:
            profile = profile.with_current_embedding()
            store.upsert(profile, vector_with_similarity(similarity, embedder.dim))
            profiles.append(profile)

        cfg = config or MatchingConfig()
        kwargs = {} if clock is None else {"clock": clock}
        orchestrator = MatchOrchestrator(
            briefs=InMemoryBriefSource(briefs),
            designers=InMemoryDesignerSource(profiles),
            store=store,
            repository=InMemoryMatchRepository(),
            cache=MatchCache(**kwargs),
            generator=ReasoningGenerator(provider or ScriptedProvider(), config=cfg, sleep=lambda s: None),
            pool=InMemoryPoolVersion(),
            config=cfg,
            **kwargs,
        )
        created.append(orchestrator)
        return orchestrator

    yield _build
    for orchestrator in created:
        orchestrator.close()
