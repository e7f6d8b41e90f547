"""Brief/designer matching pipeline."""
from __future__ import annotations

import enum
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Callable, Iterable

from matching_engine.explain.service import ReasoningGenerator
from matching_engine.match.cache import MatchCache, fingerprint
from matching_engine.match.eligibility import filter_candidates, rejection_reason
from matching_engine.match.repository import BriefSource, DesignerSource, MatchRepository, PoolVersion
from matching_engine.match.scorer import Scorer
from matching_engine.match.store import EmbeddingStore
from matching_engine.shared.config import MatchingConfig
from matching_engine.shared.deadline import Deadline
from matching_engine.shared.errors import (
    AlreadyMatched,
    MatchingError,
    MatchTimeout,
    NoEligibleDesigners,
    RetrievalUnavailable,
)
from matching_engine.shared.schemas import Brief, CachedOutcome, Candidate, Match, MatchOutcome, MatchStatus

logger = logging.getLogger(__name__)


class MatchStage(str, enum.Enum):
    VALIDATING = "validating"
    CACHE_CHECK = "cache_check"
    RETRIEVING = "retrieving"
    FILTERING = "filtering"
    SCORING = "scoring"
    REASONING = "reasoning"
    PERSISTING = "persisting"
    DONE = "done"


class MatchOrchestrator:
    """Public entry point of the matching engine.

    ``find_match`` drives one brief through
    validating -> cache check -> retrieving -> filtering -> scoring ->
    reasoning -> persisting -> done. Any stage may fail; the error carries the
    stage it failed in. Nothing is written before the persisting stage, and
    the write is a single create-if-absent.
    """

    def __init__(
        self,
        briefs: BriefSource,
        designers: DesignerSource,
        store: EmbeddingStore,
        repository: MatchRepository,
        cache: MatchCache,
        generator: ReasoningGenerator,
        pool: PoolVersion,
        config: MatchingConfig | Callable[[], MatchingConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_workers: int = 8,
    ):
        self.briefs = briefs
        self.designers = designers
        self.store = store
        self.repository = repository
        self.cache = cache
        self.generator = generator
        self.pool = pool
        self._config = config
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="match")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.generator.close()

    def resolve_config(self) -> MatchingConfig:
        """Matching strategy for one request."""
        if self._config is None:
            return MatchingConfig.from_env()
        if isinstance(self._config, MatchingConfig):
            return self._config
        return self._config()

    def find_match(self, brief_id: str, deadline_s: float | None = None) -> MatchOutcome:
        cfg = self.resolve_config()
        deadline = Deadline(cfg.deadline_s if deadline_s is None else deadline_s, clock=self._clock)
        brief_id = str(brief_id)
        stage = MatchStage.VALIDATING
        t0 = self._clock()

        try:
            self._enter(brief_id, stage)
            brief = self.briefs.get_brief(brief_id)
            # Lookups that do not need candidates overlap the cache check.
            live_future = self._executor.submit(self.repository.get_match_for_brief, brief.id)
            history_future = self._executor.submit(self.repository.previous_designer_ids, brief.id)

            stage = MatchStage.CACHE_CHECK
            self._enter(brief_id, stage, deadline)
            fp = fingerprint(brief, self.pool.current())
            entry = self.cache.get(fp)
            if entry is not None:
                self._ensure_not_matched(live_future, deadline, stage)
                excluded = self._join(history_future, deadline, stage)
                if entry.outcome.designer_id not in excluded:
                    logger.info(f"Cache hit for brief {brief_id} ({fp[:12]})")
                    stage = MatchStage.PERSISTING
                    self._enter(brief_id, stage, deadline)
                    outcome = self._persist(brief, entry.outcome, fp, cfg, cached=True)
                    self._done(brief_id, outcome, t0)
                    return outcome
                logger.info(f"Cached designer {entry.outcome.designer_id} was already tried for brief {brief_id}")

            stage = MatchStage.RETRIEVING
            self._enter(brief_id, stage, deadline)
            candidates = self._retrieve(brief, cfg, deadline, live_future, history_future)

            stage = MatchStage.FILTERING
            self._enter(brief_id, stage, deadline)
            eligible = self._filter(brief, candidates)
            if not eligible:
                raise NoEligibleDesigners(f"No eligible designers for brief {brief_id} ({len(candidates)} retrieved)")

            stage = MatchStage.SCORING
            self._enter(brief_id, stage, deadline)
            top = Scorer(cfg).best(brief, eligible)
            logger.info(f"Top candidate for brief {brief_id}: {top.designer_id} score={top.score}")

            stage = MatchStage.REASONING
            self._enter(brief_id, stage, deadline)
            reasoning = self.generator.generate_reasons(brief, top, deadline, cfg)
            if reasoning.degraded:
                logger.warning(f"Brief {brief_id} matched with {reasoning.source} reasoning")

            stage = MatchStage.PERSISTING
            self._enter(brief_id, stage, deadline)
            computed = CachedOutcome(
                designer_id=top.designer_id,
                score=top.score,
                reasons=reasoning.reasons,
                degraded=reasoning.degraded,
            )
            outcome = self._persist(brief, computed, fp, cfg, cached=False)
            self._done(brief_id, outcome, t0)
            return outcome
        except MatchingError as exc:
            if exc.stage is None:
                exc.stage = stage.value
            logger.info(f"Matching failed for brief {brief_id} in {exc.stage}: {exc.kind} ({exc})")
            raise
        except Exception as e:
            logger.error(f"Error matching brief {brief_id} in {stage.value}: {e}", exc_info=True)
            raise

    def _enter(self, brief_id: str, stage: MatchStage, deadline: Deadline | None = None) -> None:
        if deadline is not None:
            deadline.check(stage.value)
        logger.debug(f"Brief {brief_id}: {stage.value}")

    def _done(self, brief_id: str, outcome: MatchOutcome, t0: float) -> None:
        logger.info(
            f"Brief {brief_id}: {MatchStage.DONE.value} match={outcome.match.id} "
            f"designer={outcome.match.designer_id} degraded={outcome.degraded} "
            f"cached={outcome.cached} in {self._clock() - t0:.2f}s"
        )

    def _join(self, future: Future, deadline: Deadline, stage: MatchStage):
        try:
            return future.result(timeout=deadline.remaining())
        except FuturesTimeout as exc:
            raise MatchTimeout(f"Deadline exceeded waiting on {stage.value}", stage=stage.value) from exc

    def _ensure_not_matched(self, live_future: Future, deadline: Deadline, stage: MatchStage) -> None:
        existing = self._join(live_future, deadline, stage)
        if existing is not None:
            raise AlreadyMatched(existing, stage=MatchStage.VALIDATING.value)

    def _retrieve(
        self,
        brief: Brief,
        cfg: MatchingConfig,
        deadline: Deadline,
        live_future: Future,
        history_future: Future,
    ) -> list[Candidate]:
        # Join point: a brief that is already matched never pays for a query embedding.
        self._ensure_not_matched(live_future, deadline, MatchStage.RETRIEVING)
        vector = self.store.embed_query(brief)
        excluded = self._join(history_future, deadline, MatchStage.RETRIEVING)
        deadline.check(MatchStage.RETRIEVING.value)

        pairs = self.store.top_k(vector, cfg.top_k, exclude_ids=excluded)
        try:
            profiles = self.designers.get_designer_profiles(designer_id for designer_id, _ in pairs)
        except Exception as exc:
            raise RetrievalUnavailable(f"Designer pool unavailable: {exc}") from exc

        candidates = []
        for designer_id, similarity in pairs:
            profile = profiles.get(designer_id)
            if profile is None:
                logger.warning(f"Designer {designer_id} has an embedding but no profile, skipping")
                continue
            if not profile.embedding_is_current:
                logger.warning(f"Designer {designer_id} has a stale embedding, skipping until re-embedded")
                continue
            candidates.append(Candidate(profile=profile, similarity=similarity))
        logger.info(f"Retrieved {len(candidates)} candidates for brief {brief.id}")
        return candidates

    def _filter(self, brief: Brief, candidates: list[Candidate], matched: Iterable[str] = ()) -> list[Candidate]:
        """Apply the hard gates in retrieval order.

        ``find_match`` leaves ``matched`` empty: the live-match join in
        ``_retrieve`` has already raised ``AlreadyMatched`` if any designer
        holds a non-expired match for the brief, and a match created after
        that join is caught by ``create_match_if_absent`` at persist time.
        """
        matched = frozenset(matched)
        if logger.isEnabledFor(logging.DEBUG):
            for candidate in candidates:
                reason = rejection_reason(brief, candidate, matched)
                if reason:
                    logger.debug(f"Brief {brief.id}: designer {candidate.designer_id} rejected ({reason})")
        return filter_candidates(brief, candidates, matched)

    def _persist(
        self,
        brief: Brief,
        outcome: CachedOutcome,
        fp: str,
        cfg: MatchingConfig,
        cached: bool,
    ) -> MatchOutcome:
        match = Match(
            brief_id=brief.id,
            designer_id=outcome.designer_id,
            score=outcome.score,
            reasons=list(outcome.reasons),
            degraded=outcome.degraded,
        )
        stored, created = self.repository.create_match_if_absent(brief.id, match)
        if not created:
            logger.info(f"Brief {brief.id} was matched concurrently, returning match {stored.id}")
            return MatchOutcome(match=stored, degraded=stored.degraded, cached=False)
        if not cached:
            # The match is committed at this point; a cache failure only costs a future recompute.
            try:
                self.cache.put(fp, CachedOutcome.from_match(stored), cfg.cache_ttl_s)
            except Exception as e:
                logger.error(f"Could not cache outcome for brief {brief.id}: {e}", exc_info=True)
        return MatchOutcome(match=stored, degraded=stored.degraded, cached=cached)

    def get_match_for_brief(self, brief_id: str) -> Match | None:
        return self.repository.get_match_for_brief(str(brief_id))

    def unlock_match(self, match_id: str) -> Match:
        return self.repository.update_status(str(match_id), MatchStatus.UNLOCKED)

    def expire_match(self, match_id: str) -> Match:
        return self.repository.update_status(str(match_id), MatchStatus.EXPIRED)

    def invalidate_pool(self) -> int:
        """Bump the pool version and drop cached outcomes."""
        version = self.pool.bump()
        self.cache.clear()
        logger.info(f"Designer pool version bumped to {version}")
        return version
