"""
Fire-and-forget job runner with per-account serialization.

Recompute jobs replace an account's rows with a delete-then-insert, so two of
them racing on the same account could lose an update. Every job therefore
runs under that account's ``asyncio.Lock``; jobs for different accounts run
concurrently on the event loop.

Submitting never blocks the caller and never raises on job failure: errors
are logged and counted at the account granularity.
"""
import asyncio
import logging
import weakref
from typing import Awaitable, Callable, Optional

from recengine.telemetry import JOB_FAILURES_TOTAL

logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[object]]


class AccountLocks:
    """One lock per account id, released for GC once no job holds it."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def get(self, account_id: int) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock


class JobRunner:
    def __init__(self, locks: Optional[AccountLocks] = None) -> None:
        self.locks = locks or AccountLocks()
        self._tasks: set[asyncio.Task] = set()

    def submit(self, account_id: Optional[int], name: str, fn: JobFn) -> asyncio.Task:
        """
        Schedule ``fn`` in the background.

        ``account_id=None`` marks a job that spans accounts (the similarity
        batch); it takes no lock and relies on the per-account jobs it issues.
        """
        task = asyncio.create_task(self._run(account_id, name, fn), name=f"{name}:{account_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run_locked(self, account_id: int, fn: JobFn):
        """Run ``fn`` inline under the account lock and return its result."""
        async with self.locks.get(account_id):
            return await fn()

    async def _run(self, account_id: Optional[int], name: str, fn: JobFn) -> None:
        try:
            if account_id is None:
                await fn()
            else:
                await self.run_locked(account_id, fn)
        except asyncio.CancelledError:
            logger.info("Job %s for account %s cancelled", name, account_id)
            raise
        except Exception:
            JOB_FAILURES_TOTAL.labels(job=name).inc()
            logger.exception("Job %s failed for account %s", name, account_id)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight job, including ones submitted meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
