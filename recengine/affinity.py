"""
Affinity caches — materialized views over the interaction log.

Two vectors are kept per account, both scored with the same formula:

  topic_affinity    │ keyed by topic, through publication_topic
  author_affinity   │ keyed by author, through publication_author

Two ways to bring them up to date:

  rebuild(account)        │ full recompute. Scores every key in the
                          │ lookback window, applies the noise floor and the
                          │ top-N cap, and swaps the account's rows in one
                          │ transaction.
  refresh(account, pub)   │ incremental. Rescores only the keys of ``pub``
                          │ and upserts them. A key that falls to the noise
                          │ floor is deleted; the top-N cap is *not* applied
                          │ here, the job layer schedules a rebuild when an
                          │ account overflows (see ``needs_rebuild``).
"""
import logging
from datetime import datetime
from typing import Any, Callable, NamedTuple, Optional

from opentelemetry import trace
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recengine import interactions
from recengine.config import EngineParams
from recengine.models import AuthorAffinity, TopicAffinity
from recengine.scoring import build_affinity_vector, clears_floor, topic_score, utcnow
from recengine.telemetry import AFFINITY_UPDATES_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class AffinityStore(NamedTuple):
    name: str
    link: interactions.Link
    model: Any
    key: str

    @property
    def key_column(self):
        return getattr(self.model, self.key)

    def row(self, account_id: int, key: int, score: float, now: datetime):
        return self.model(account_id=account_id, score=score, last_updated=now, **{self.key: key})


TOPIC_STORE = AffinityStore("topic", interactions.TOPICS, TopicAffinity, "topic_id")
AUTHOR_STORE = AffinityStore("author", interactions.AUTHORS, AuthorAffinity, "author_id")
STORES = (TOPIC_STORE, AUTHOR_STORE)


class TopicAffinityCache:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        params: EngineParams = EngineParams(),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.params = params
        self.clock = clock

    async def rebuild(self, account_id: int) -> dict[int, float]:
        """
        Recompute the account's topic and author vectors and replace their
        rows atomically. Returns the topic vector.
        """
        with tracer.start_as_current_span("affinity.rebuild") as span:
            span.set_attribute("account.id", account_id)
            now = self.clock()
            since = interactions.lookback_start(now, self.params.lookback_days)
            vectors = {}

            async with self.session_factory() as db:
                async with db.begin():
                    history = await interactions.load_interactions(db, account_id, since)
                    touched = {i.pub_id for i in history}
                    for store in STORES:
                        mapping = await interactions.link_map(db, store.link, touched)
                        vector = build_affinity_vector(history, mapping, now, self.params)
                        await db.execute(
                            delete(store.model).where(store.model.account_id == account_id)
                        )
                        db.add_all(
                            store.row(account_id, ts.topic_id, ts.score, now) for ts in vector
                        )
                        vectors[store.name] = vector

            AFFINITY_UPDATES_TOTAL.labels(mode="rebuild").inc()
            span.set_attribute("affinity.topics", len(vectors["topic"]))
            span.set_attribute("affinity.authors", len(vectors["author"]))
            logger.info(
                "Rebuilt affinities for account %s: %d topics, %d authors from %d interactions",
                account_id, len(vectors["topic"]), len(vectors["author"]), len(history),
            )
            return {ts.topic_id: ts.score for ts in vectors["topic"]}

    async def refresh(self, account_id: int, pub_id: int) -> int:
        """
        Rescore the topics and authors linked to ``pub_id`` for one account.

        Returns the larger of the account's topic and author row counts after
        the write so the caller can decide whether a rebuild is due.
        """
        with tracer.start_as_current_span("affinity.refresh") as span:
            span.set_attribute("account.id", account_id)
            span.set_attribute("publication.id", pub_id)
            now = self.clock()
            since = interactions.lookback_start(now, self.params.lookback_days)
            counts = []

            async with self.session_factory() as db:
                async with db.begin():
                    for store in STORES:
                        keys = await interactions.keys_for_publication(db, store.link, pub_id)
                        if keys:
                            await self._refresh_keys(db, store, account_id, keys, since, now)
                        else:
                            logger.debug(
                                "Publication %s has no %s links — nothing to refresh",
                                pub_id, store.name,
                            )
                        counts.append(await self._row_count(db, store, account_id))

            AFFINITY_UPDATES_TOTAL.labels(mode="refresh").inc()
            logger.debug("Refreshed affinities for account %s (pub %s)", account_id, pub_id)
            return max(counts)

    async def _refresh_keys(
        self,
        db: AsyncSession,
        store: AffinityStore,
        account_id: int,
        keys: list[int],
        since: datetime,
        now: datetime,
    ) -> None:
        grouped = await interactions.load_linked_interactions(
            db, account_id, since, store.link, keys
        )
        for key in keys:
            history = grouped.get(key, [])
            mapping = {i.pub_id: [key] for i in history}
            ts = topic_score(history, mapping, key, now, self.params)
            if clears_floor(ts, self.params.noise_floor):
                await self._upsert(db, store, account_id, key, ts.score, now)
            else:
                await db.execute(
                    delete(store.model).where(
                        store.model.account_id == account_id, store.key_column == key
                    )
                )

    def needs_rebuild(self, row_count: int) -> bool:
        return row_count > self.params.max_topics_per_user

    async def get_vector(self, account_id: int, min_score: Optional[float] = None) -> dict[int, float]:
        async with self.session_factory() as db:
            return await load_vector(db, account_id, min_score)

    async def get_author_vector(
        self, account_id: int, min_score: Optional[float] = None
    ) -> dict[int, float]:
        async with self.session_factory() as db:
            return await load_vector(db, account_id, min_score, store=AUTHOR_STORE)

    @staticmethod
    async def _upsert(
        db: AsyncSession,
        store: AffinityStore,
        account_id: int,
        key: int,
        score: float,
        now: datetime,
    ) -> None:
        row = await db.get(store.model, (account_id, key))
        if row is None:
            db.add(store.row(account_id, key, score, now))
        else:
            row.score = score
            row.last_updated = now
        await db.flush()

    @staticmethod
    async def _row_count(db: AsyncSession, store: AffinityStore, account_id: int) -> int:
        return await db.scalar(
            select(func.count()).select_from(store.model).where(
                store.model.account_id == account_id
            )
        ) or 0


async def load_vector(
    db: AsyncSession,
    account_id: int,
    min_score: Optional[float] = None,
    store: AffinityStore = TOPIC_STORE,
) -> dict[int, float]:
    """Stored affinity vector; ``min_score`` keeps only scores strictly above it."""
    stmt = select(store.key_column, store.model.score).where(
        store.model.account_id == account_id
    )
    if min_score is not None:
        stmt = stmt.where(store.model.score > min_score)
    rows = await db.execute(stmt)
    return {key: score for key, score in rows.all()}
