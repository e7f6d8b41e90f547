"""Designer embedding store: query embedding and nearest-neighbour retrieval."""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Iterable, Protocol, Sequence

import numpy as np
from sqlalchemy import cast, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from pgvector.sqlalchemy import Vector

from matching_engine.shared.db import session_scope
from matching_engine.shared.errors import RetrievalUnavailable
from matching_engine.shared.models import DesignerRecord
from matching_engine.shared.schemas import Brief, DesignerProfile

logger = logging.getLogger(__name__)


class QueryEmbedder(Protocol):
    dim: int

    def embed_query(self, text: str) -> list[float]: ...

    def embed_texts(self, texts: Iterable[str], task_type: str = ...) -> list[list[float]]: ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        return 0.0
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def rank_by_similarity(pairs: Iterable[tuple[str, float]], k: int) -> list[tuple[str, float]]:
    """Order by similarity descending, designer id ascending on ties."""
    return sorted(pairs, key=lambda pair: (-pair[1], pair[0]))[: max(k, 0)]


class EmbeddingStore(ABC):
    """Holds one vector per designer and answers similarity queries.

    Implementations raise ``RetrievalUnavailable`` when the backing store or
    the embedding API cannot be reached. Callers must not fall back to an
    unranked pool.
    """

    def __init__(self, embedder: QueryEmbedder):
        self.embedder = embedder

    def embed_query(self, brief: Brief) -> list[float]:
        try:
            return list(self.embedder.embed_query(brief.embedding_text()))
        except Exception as exc:
            raise RetrievalUnavailable(f"Could not embed brief {brief.id}: {exc}") from exc

    @abstractmethod
    def top_k(self, vector: Sequence[float], k: int, exclude_ids: Iterable[str] = ()) -> list[tuple[str, float]]:
        """Return up to ``k`` (designer_id, similarity) pairs, best first."""

    @abstractmethod
    def upsert(self, profile: DesignerProfile, vector: Sequence[float]) -> None:
        """Store ``vector`` for ``profile`` tagged with its current content hash."""


class InMemoryEmbeddingStore(EmbeddingStore):
    def __init__(self, embedder: QueryEmbedder, dim: int | None = None):
        super().__init__(embedder)
        self.dim = dim or embedder.dim
        self._vectors: dict[str, np.ndarray] = {}
        self._versions: dict[str, str] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._vectors)

    def upsert(self, profile: DesignerProfile, vector: Sequence[float]) -> None:
        array = np.asarray(vector, dtype=float)
        if array.shape != (self.dim,):
            raise ValueError(f"Expected a vector of dimension {self.dim}, got {array.shape}")
        with self._lock:
            self._vectors[profile.id] = array
            self._versions[profile.id] = profile.content_hash()

    def remove(self, designer_id: str) -> None:
        with self._lock:
            self._vectors.pop(designer_id, None)
            self._versions.pop(designer_id, None)

    def version_of(self, designer_id: str) -> str | None:
        return self._versions.get(designer_id)

    def top_k(self, vector: Sequence[float], k: int, exclude_ids: Iterable[str] = ()) -> list[tuple[str, float]]:
        if k <= 0:
            return []
        excluded = set(exclude_ids)
        with self._lock:
            snapshot = [(designer_id, vec) for designer_id, vec in self._vectors.items() if designer_id not in excluded]
        if not snapshot:
            return []

        query = np.asarray(vector, dtype=float)
        if query.shape != (self.dim,):
            raise ValueError(f"Expected a query vector of dimension {self.dim}, got {query.shape}")

        ids = [designer_id for designer_id, _ in snapshot]
        matrix = np.vstack([vec for _, vec in snapshot])
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(norms > 0, dots / norms, 0.0)
        return rank_by_similarity(zip(ids, (float(s) for s in sims)), k)


class PgVectorEmbeddingStore(EmbeddingStore):
    def __init__(self, session_factory: sessionmaker, embedder: QueryEmbedder, dim: int | None = None):
        super().__init__(embedder)
        self.session_factory = session_factory
        self.dim = dim or embedder.dim

    def top_k(self, vector: Sequence[float], k: int, exclude_ids: Iterable[str] = ()) -> list[tuple[str, float]]:
        if k <= 0:
            return []
        vector = vector.tolist() if hasattr(vector, "tolist") else list(vector)
        distance = func.cosine_distance(DesignerRecord.embedding, cast(vector, Vector(self.dim)))
        stmt = (
            select(DesignerRecord.id, (1 - distance).label("similarity"))
            .where(DesignerRecord.embedding.is_not(None))
            .where(DesignerRecord.embedding_hash == DesignerRecord.content_hash)
            .order_by(distance.asc(), DesignerRecord.id.asc())
            .limit(k)
        )
        excluded = list(exclude_ids)
        if excluded:
            stmt = stmt.where(DesignerRecord.id.not_in(excluded))

        try:
            with session_scope(self.session_factory) as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError as exc:
            logger.error(f"Embedding store query failed: {exc}", exc_info=True)
            raise RetrievalUnavailable(f"Embedding store unavailable: {exc}") from exc

        # Re-sort in Python so float ties resolve by id even if the database rounds differently.
        return rank_by_similarity(((str(designer_id), float(sim)) for designer_id, sim in rows), k)

    def upsert(self, profile: DesignerProfile, vector: Sequence[float]) -> None:
        content_hash = profile.content_hash()
        with session_scope(self.session_factory) as session:
            session.execute(
                update(DesignerRecord)
                .where(DesignerRecord.id == profile.id)
                .values(embedding=list(vector), embedding_hash=content_hash, content_hash=content_hash)
            )
