"""
Storage hygiene for the engine-owned tables.

  topic_affinity   — rows untouched for ``affinity_retention_days`` (180d)
  author_affinity  — same retention as topic_affinity
  user_similarity  — rows older than ``similarity_retention_days`` (14d)

Ranking already ignores similarity rows past the 7-day freshness window, so
these deletes only bound storage. Cutoffs compare immutable timestamps, so a
row written after the cutoff is computed is never removed by that pass.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recengine.models import AuthorAffinity, TopicAffinity, UserSimilarity
from recengine.scoring import utcnow
from recengine.telemetry import JOB_FAILURES_TOTAL, ROWS_PURGED_TOTAL

logger = logging.getLogger(__name__)


async def cleanup_old_affinity_data(
    session_factory: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
    retention_days: int = 180,
) -> int:
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    purged = 0
    async with session_factory() as db:
        async with db.begin():
            for model in (TopicAffinity, AuthorAffinity):
                result = await db.execute(delete(model).where(model.last_updated < cutoff))
                rows = result.rowcount or 0
                ROWS_PURGED_TOTAL.labels(table=model.__tablename__).inc(rows)
                purged += rows
    logger.info("Purged %d affinity rows last updated before %s", purged, cutoff)
    return purged


async def cleanup_old_similarity_data(
    session_factory: async_sessionmaker[AsyncSession],
    now: Optional[datetime] = None,
    retention_days: int = 14,
) -> int:
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    async with session_factory() as db:
        async with db.begin():
            result = await db.execute(
                delete(UserSimilarity).where(UserSimilarity.calculated_at < cutoff)
            )
    purged = result.rowcount or 0
    ROWS_PURGED_TOTAL.labels(table="user_similarity").inc(purged)
    logger.info("Purged %d similarity rows calculated before %s", purged, cutoff)
    return purged


class MaintenanceScheduler:
    """
    Periodic loop: cleanups every ``cleanup_interval`` seconds and the
    all-accounts similarity batch every ``similarity_interval`` seconds.

    ``stop()`` sets an event the similarity batch checks between accounts,
    then cancels the loop.
    """

    def __init__(
        self,
        cleanup: Callable[[], Awaitable[object]],
        similarity_batch: Callable[[asyncio.Event], Awaitable[object]],
        cleanup_interval: float = 6 * 3600,
        similarity_interval: float = 3600,
    ) -> None:
        self.cleanup = cleanup
        self.similarity_batch = similarity_batch
        self.cleanup_interval = cleanup_interval
        self.similarity_interval = similarity_interval
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._stop.clear()
            self._task = asyncio.create_task(self._loop(), name="maintenance")
            logger.info(
                "Maintenance scheduler started (cleanup=%ss, similarity=%ss)",
                self.cleanup_interval, self.similarity_interval,
            )

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_cleanup = loop.time()
        next_similarity = loop.time()
        while not self._stop.is_set():
            now = loop.time()
            if now >= next_cleanup:
                try:
                    await self.cleanup()
                except Exception:
                    JOB_FAILURES_TOTAL.labels(job="cleanup").inc()
                    logger.exception("Maintenance cleanup failed")
                next_cleanup = now + self.cleanup_interval
            if now >= next_similarity:
                try:
                    await self.similarity_batch(self._stop)
                except Exception:
                    JOB_FAILURES_TOTAL.labels(job="similarity_batch").inc()
                    logger.exception("Similarity batch failed")
                next_similarity = now + self.similarity_interval

            wake_in = max(0.0, min(next_cleanup, next_similarity) - loop.time())
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=wake_in)
            except asyncio.TimeoutError:
                pass
