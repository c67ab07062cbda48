"""
User → user similarity over strong topic interests.

Only topics scored above ``strong_interest_threshold`` take part, on both
sides. A candidate must share at least ``min_shared_topics`` of them and
score above ``min_similarity`` to be kept; the strongest
``max_similar_users`` edges per account are stored.

Edges are directional: A's row for B is written when A is processed, B's row
for A when B is processed, and the two are not reconciled.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from opentelemetry import trace
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recengine.affinity import load_vector
from recengine.config import EngineParams
from recengine.models import TopicAffinity, UserSimilarity
from recengine.scoring import overlap_cosine, qualifying, utcnow
from recengine.telemetry import JOB_FAILURES_TOTAL, SIMILARITY_ROWS_WRITTEN_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class BatchResult:
    processed: int = 0
    failed: int = 0
    cancelled: bool = False


class SimilarityCalculator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        params: EngineParams = EngineParams(),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.params = params
        self.clock = clock

    async def calculate_similarities(self, account_id: int) -> list[tuple[int, float]]:
        """Recompute and store the account's top similarity edges."""
        threshold = self.params.strong_interest_threshold
        with tracer.start_as_current_span("similarity.calculate") as span:
            span.set_attribute("account.id", account_id)
            now = self.clock()

            async with self.session_factory() as db:
                async with db.begin():
                    target = qualifying(await load_vector(db, account_id), threshold)
                    candidates = await self._candidate_vectors(db, account_id, target)

                    scored: list[tuple[int, float]] = []
                    for other_id, vector in candidates.items():
                        sim, shared = overlap_cosine(target, vector)
                        if shared >= self.params.min_shared_topics and sim > self.params.min_similarity:
                            scored.append((other_id, sim))
                    scored.sort(key=lambda e: (-e[1], e[0]))
                    top = scored[: self.params.max_similar_users]

                    await self._store(db, account_id, top, now)

            SIMILARITY_ROWS_WRITTEN_TOTAL.inc(len(top))
            span.set_attribute("similarity.candidates", len(candidates))
            span.set_attribute("similarity.kept", len(top))
            logger.info(
                "Similarity for account %s: %d candidates, %d kept",
                account_id, len(candidates), len(top),
            )
            return top

    async def calculate_all_similarities(
        self,
        stop_event: Optional[asyncio.Event] = None,
        run: Optional[Callable[[int], object]] = None,
    ) -> BatchResult:
        """
        Recompute similarities for every account with a strong interest.

        Each account is handled independently: a failure is logged and the
        batch moves on. ``stop_event`` is checked between accounts, so a stop
        never interrupts an account mid-write. ``run`` wraps the per-account
        call (the engine passes one that takes the account lock).
        """
        result = BatchResult()
        account_ids = await self.accounts_with_strong_interest()
        logger.info("Similarity batch starting for %d accounts", len(account_ids))

        for account_id in account_ids:
            if stop_event is not None and stop_event.is_set():
                result.cancelled = True
                logger.info(
                    "Similarity batch stopped after %d accounts", result.processed + result.failed
                )
                break
            try:
                if run is not None:
                    await run(account_id)
                else:
                    await self.calculate_similarities(account_id)
                result.processed += 1
            except Exception:
                result.failed += 1
                JOB_FAILURES_TOTAL.labels(job="similarity").inc()
                logger.exception("Similarity calculation failed for account %s", account_id)

        logger.info(
            "Similarity batch done: %d processed, %d failed", result.processed, result.failed
        )
        return result

    async def accounts_with_strong_interest(self) -> list[int]:
        async with self.session_factory() as db:
            rows = await db.execute(
                select(TopicAffinity.account_id)
                .where(TopicAffinity.score > self.params.strong_interest_threshold)
                .distinct()
                .order_by(TopicAffinity.account_id)
            )
            return list(rows.scalars().all())

    async def get_similar_users(self, account_id: int, limit: int) -> list[int]:
        """Neighbours from edges inside the freshness window, strongest first."""
        fresh_after = self.clock() - timedelta(days=self.params.similarity_freshness_days)
        async with self.session_factory() as db:
            rows = await db.execute(
                select(UserSimilarity.other_account_id)
                .where(
                    UserSimilarity.account_id == account_id,
                    UserSimilarity.calculated_at > fresh_after,
                )
                .order_by(
                    UserSimilarity.similarity_score.desc(),
                    UserSimilarity.other_account_id,
                )
                .limit(limit)
            )
            return list(rows.scalars().all())

    async def _candidate_vectors(
        self, db: AsyncSession, account_id: int, target: dict[int, float]
    ) -> dict[int, dict[int, float]]:
        """Strong-interest vectors of every other account touching the target's topics."""
        if not target:
            return {}
        threshold = self.params.strong_interest_threshold
        overlapping = (
            select(TopicAffinity.account_id)
            .where(
                TopicAffinity.topic_id.in_(list(target)),
                TopicAffinity.score > threshold,
                TopicAffinity.account_id != account_id,
            )
            .distinct()
        )
        rows = await db.execute(
            select(TopicAffinity.account_id, TopicAffinity.topic_id, TopicAffinity.score).where(
                TopicAffinity.account_id.in_(overlapping),
                TopicAffinity.score > threshold,
            )
        )
        vectors: dict[int, dict[int, float]] = defaultdict(dict)
        for other_id, topic_id, score in rows.all():
            vectors[other_id][topic_id] = score
        return dict(vectors)

    async def _store(
        self,
        db: AsyncSession,
        account_id: int,
        edges: list[tuple[int, float]],
        now: datetime,
    ) -> None:
        keep = [other for other, _ in edges]
        stale = delete(UserSimilarity).where(UserSimilarity.account_id == account_id)
        if keep:
            stale = stale.where(UserSimilarity.other_account_id.not_in(keep))
        await db.execute(stale)

        for other_id, score in edges:
            row = await db.get(UserSimilarity, (account_id, other_id))
            if row is None:
                db.add(
                    UserSimilarity(
                        account_id=account_id,
                        other_account_id=other_id,
                        similarity_score=score,
                        calculated_at=now,
                    )
                )
            else:
                row.similarity_score = score
                row.calculated_at = now
