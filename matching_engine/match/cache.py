"""In-process match cache keyed by brief fingerprint and pool version."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from matching_engine.shared.schemas import Brief, CachedOutcome, stable_hash

logger = logging.getLogger(__name__)

_LOCK_STRIPES = 64


def fingerprint(brief: Brief, pool_version: int) -> str:
    """Stable key for a brief's matching-relevant content at a given pool version."""
    return stable_hash({"brief": brief.content_fields(), "pool_version": pool_version})


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    outcome: CachedOutcome
    expires_at: float


class MatchCache:
    """TTL cache of match outcomes.

    Reads take no lock. Writes lock only the stripe owning the fingerprint, so
    requests for different briefs never wait on each other. A write replaces a
    live entry only when it carries a strictly higher score.
    """

    def __init__(self, max_entries: int = 500, clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._stripes = [threading.Lock() for _ in range(_LOCK_STRIPES)]
        self._evict_lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _stripe(self, fp: str) -> threading.Lock:
        return self._stripes[hash(fp) % _LOCK_STRIPES]

    def _is_live(self, entry: CacheEntry) -> bool:
        return self._clock() < entry.expires_at

    def get(self, fp: str) -> CacheEntry | None:
        entry = self._entries.get(fp)
        if entry is None or not self._is_live(entry):
            self.misses += 1
            return None
        self.hits += 1
        return entry

    def put(self, fp: str, outcome: CachedOutcome, ttl: float) -> bool:
        """Insert ``outcome``; returns False when a live, better-or-equal entry is kept."""
        if ttl <= 0:
            return False
        with self._stripe(fp):
            current = self._entries.get(fp)
            if current is not None and self._is_live(current) and outcome.score <= current.outcome.score:
                logger.debug(f"Keeping cached outcome for {fp[:12]} (score {current.outcome.score} >= {outcome.score})")
                return False
            self._entries[fp] = CacheEntry(fingerprint=fp, outcome=outcome, expires_at=self._clock() + ttl)
        self._evict_overflow()
        return True

    def invalidate(self, fp: str) -> None:
        with self._stripe(fp):
            self._entries.pop(fp, None)

    def clear(self) -> None:
        """Drop everything, used when the designer pool is re-embedded."""
        for fp in list(self._entries):
            self.invalidate(fp)
        logger.info("Match cache cleared")

    def purge_expired(self) -> int:
        removed = 0
        for fp, entry in list(self._entries.items()):
            if not self._is_live(entry):
                with self._stripe(fp):
                    current = self._entries.get(fp)
                    if current is entry:
                        del self._entries[fp]
                        removed += 1
        return removed

    def _evict_overflow(self) -> None:
        if len(self._entries) <= self.max_entries:
            return
        # Best effort: if another writer is already evicting, let it finish the job.
        if not self._evict_lock.acquire(blocking=False):
            return
        try:
            self.purge_expired()
            overflow = len(self._entries) - self.max_entries
            if overflow <= 0:
                return
            oldest = sorted(list(self._entries.items()), key=lambda item: item[1].expires_at)[:overflow]
            for fp, _ in oldest:
                self.invalidate(fp)
        finally:
            self._evict_lock.release()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        return {"size": len(self._entries), "hits": self.hits, "misses": self.misses}
