"""
Engine facade — the operations callers (API routes, the worker) use.

Write side:
  record_interaction / remove_save  → append to the log, refresh affinities
                                       in the background
  recalculate_affinities            → background full rebuild
  recalculate_similarities          → background similarity job(s)

Read side:
  get_recommendations  — bounded by a timeout; any failure or timeout is
                         answered from the popularity strategy instead
  get_similar_users, get_affinities, get_author_affinities, get_user_stats
"""
import asyncio
import enum
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recengine import interactions
from recengine.affinity import TopicAffinityCache
from recengine.config import EngineParams
from recengine.jobs import JobRunner
from recengine.maintenance import (
    MaintenanceScheduler,
    cleanup_old_affinity_data,
    cleanup_old_similarity_data,
)
from recengine.recommender import Kinds, RecommendationGenerator
from recengine.scoring import InteractionType, as_naive_utc, utcnow
from recengine.similarity import BatchResult, SimilarityCalculator
from recengine.telemetry import RECOMMENDATION_FALLBACKS_TOTAL, RECOMMENDATION_LATENCY

logger = logging.getLogger(__name__)


class Strategy(str, enum.Enum):
    CONTENT = "content"
    COLLABORATIVE = "collaborative"
    HYBRID = "hybrid"
    POPULARITY = "popularity"
    HYBRID_WITH_FALLBACK = "hybridWithFallback"
    AUTHOR = "author"
    TOPICS = "topics"


class EventPublisher(Protocol):
    async def publish(self, event: dict) -> None: ...


@dataclass
class RecommendationResult:
    account_id: int
    strategy: Strategy
    pub_ids: list[int]
    fallback: bool = False


class RecommendationEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        params: EngineParams = EngineParams(),
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
        runner: Optional[JobRunner] = None,
        publisher: Optional[EventPublisher] = None,
        timeout: float = 2.0,
        max_limit: int = 100,
    ) -> None:
        self.session_factory = session_factory
        self.params = params
        self.clock = clock
        self.runner = runner or JobRunner()
        self.publisher = publisher
        self.timeout = timeout
        self.max_limit = max_limit

        self.affinities = TopicAffinityCache(session_factory, params, clock)
        self.similarities = SimilarityCalculator(session_factory, params, clock)
        self.recommender = RecommendationGenerator(session_factory, params, clock, rng)

    # ─────────────────────── Write side ──────────────────────────────────

    async def record_interaction(
        self,
        account_id: int,
        pub_id: int,
        itype: InteractionType,
        at: Optional[datetime] = None,
    ) -> None:
        at = as_naive_utc(at) if at is not None else self.clock()
        async with self.session_factory() as db:
            async with db.begin():
                await interactions.append_interaction(
                    db, account_id, pub_id, InteractionType(itype), at
                )
        await self._dispatch({"kind": "interaction", "account_id": account_id, "pub_id": pub_id})

    async def remove_save(self, account_id: int, pub_id: int) -> bool:
        async with self.session_factory() as db:
            async with db.begin():
                removed = await interactions.remove_save(db, account_id, pub_id)
        if removed:
            await self._dispatch(
                {"kind": "interaction", "account_id": account_id, "pub_id": pub_id}
            )
        return removed

    async def recalculate_affinities(self, account_id: int) -> None:
        await self._dispatch({"kind": "recalculate", "account_id": account_id, "pub_id": None})

    def recalculate_similarities(self, account_id: Optional[int] = None) -> asyncio.Task:
        if account_id is None:
            return self.runner.submit(None, "similarity_batch", self.run_similarity_batch)
        return self.runner.submit(
            account_id,
            "similarity",
            lambda: self.similarities.calculate_similarities(account_id),
        )

    async def run_similarity_batch(self, stop_event: Optional[asyncio.Event] = None) -> BatchResult:
        """All-accounts similarity pass; each account takes its lock in turn."""
        return await self.similarities.calculate_all_similarities(
            stop_event=stop_event,
            run=lambda aid: self.runner.run_locked(
                aid, lambda: self.similarities.calculate_similarities(aid)
            ),
        )

    async def apply_interaction(self, account_id: int, pub_id: int) -> None:
        """Refresh one publication's topics and authors; rebuild if the account overflowed."""
        rows = await self.affinities.refresh(account_id, pub_id)
        if self.affinities.needs_rebuild(rows):
            logger.info(
                "Account %s holds %d affinity rows after refresh — rebuilding",
                account_id, rows,
            )
            await self.affinities.rebuild(account_id)

    def handle_event(self, event: dict) -> Optional[asyncio.Task]:
        """Schedule the job an affinity event asks for."""
        kind = event.get("kind")
        account_id = event.get("account_id")
        pub_id = event.get("pub_id")

        if account_id is None:
            logger.warning("Malformed affinity event: %s", event)
            return None
        if kind == "interaction" and pub_id is not None:
            return self.runner.submit(
                account_id, "affinity_refresh", lambda: self.apply_interaction(account_id, pub_id)
            )
        if kind == "recalculate":
            return self.runner.submit(
                account_id, "affinity_rebuild", lambda: self.affinities.rebuild(account_id)
            )
        logger.warning("Unknown affinity event kind %r: %s", kind, event)
        return None

    async def _dispatch(self, event: dict) -> None:
        if self.publisher is not None:
            try:
                await self.publisher.publish(event)
                return
            except Exception as exc:
                logger.warning(
                    "Publishing affinity event failed (%s) — running job locally", exc
                )
        self.handle_event(event)

    # ─────────────────────── Read side ───────────────────────────────────

    def clamp(self, limit: int, offset: int) -> tuple[int, int]:
        return max(1, min(limit, self.max_limit)), max(0, offset)

    async def get_recommendations(
        self,
        account_id: int,
        strategy: Strategy = Strategy.HYBRID_WITH_FALLBACK,
        limit: int = 20,
        offset: int = 0,
        kinds: Kinds = None,
        topic_ids: Optional[Sequence[int]] = None,
    ) -> RecommendationResult:
        """
        ``kinds`` narrows every strategy (the popularity fallback included) to
        those publication kinds. ``topic_ids`` is read by the ``topics``
        strategy only.
        """
        strategy = Strategy(strategy)
        kinds = list(kinds or ())
        limit, offset = self.clamp(limit, offset)
        start = time.perf_counter()
        try:
            pub_ids = await asyncio.wait_for(
                self._run_strategy(account_id, strategy, limit, offset, kinds, topic_ids),
                timeout=self.timeout,
            )
            return RecommendationResult(account_id, strategy, pub_ids)
        except asyncio.TimeoutError:
            reason = "timeout"
            logger.warning(
                "%s recommendations for account %s timed out after %.2fs — using popularity",
                strategy.value, account_id, self.timeout,
            )
        except Exception as exc:
            reason = "error"
            logger.warning(
                "%s recommendations failed for account %s: %s — using popularity",
                strategy.value, account_id, exc,
            )
        finally:
            RECOMMENDATION_LATENCY.labels(strategy=strategy.value).observe(
                time.perf_counter() - start
            )

        RECOMMENDATION_FALLBACKS_TOTAL.labels(reason=reason).inc()
        try:
            pub_ids = await self.recommender.popularity(account_id, limit, offset, kinds)
        except Exception:
            logger.exception("Popularity fallback failed for account %s", account_id)
            pub_ids = []
        return RecommendationResult(account_id, strategy, pub_ids, fallback=True)

    async def _run_strategy(
        self,
        account_id: int,
        strategy: Strategy,
        limit: int,
        offset: int,
        kinds: Kinds,
        topic_ids: Optional[Sequence[int]],
    ) -> list[int]:
        rec = self.recommender
        if strategy is Strategy.CONTENT:
            return await rec.content_based(account_id, limit, offset, kinds)
        if strategy is Strategy.COLLABORATIVE:
            return await rec.collaborative(account_id, limit, offset, kinds)
        if strategy is Strategy.POPULARITY:
            return await rec.popularity(account_id, limit, offset, kinds)
        if strategy is Strategy.AUTHOR:
            return await rec.author_based(account_id, limit, offset, kinds)
        if strategy is Strategy.TOPICS:
            return await rec.by_topics(account_id, topic_ids or (), limit, offset, kinds)
        # Blends have no native offset: build enough to cover the page, then slice
        if strategy is Strategy.HYBRID:
            pool = await rec.hybrid(account_id, offset + limit, kinds)
        else:
            pool = await rec.hybrid_with_fallback(account_id, offset + limit, kinds)
        return pool[offset : offset + limit]

    async def get_similar_users(self, account_id: int, limit: int = 10) -> list[int]:
        limit, _ = self.clamp(limit, 0)
        return await self.similarities.get_similar_users(account_id, limit)

    async def get_affinities(self, account_id: int) -> dict[int, float]:
        return await self.affinities.get_vector(account_id)

    async def get_author_affinities(self, account_id: int) -> dict[int, float]:
        return await self.affinities.get_author_vector(account_id)

    async def get_user_stats(self, account_id: int) -> dict[str, int]:
        async with self.session_factory() as db:
            return await interactions.interaction_counts(db, account_id)

    # ─────────────────────── Maintenance ─────────────────────────────────

    async def run_cleanup(self) -> dict[str, int]:
        now = self.clock()
        return {
            "affinity_rows": await cleanup_old_affinity_data(
                self.session_factory, now, self.params.affinity_retention_days
            ),
            "similarity_rows": await cleanup_old_similarity_data(
                self.session_factory, now, self.params.similarity_retention_days
            ),
        }

    def maintenance_scheduler(
        self, cleanup_interval: float, similarity_interval: float
    ) -> MaintenanceScheduler:
        return MaintenanceScheduler(
            self.run_cleanup,
            self.run_similarity_batch,
            cleanup_interval=cleanup_interval,
            similarity_interval=similarity_interval,
        )
