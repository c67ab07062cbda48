"""
Recommendation strategies.

  content        │ published items whose topics match the user's strong
                 │ affinities; score = Σ matching affinities
  collaborative  │ items liked / saved recently by similar users;
                 │ score = Σ contributing neighbours' similarity
  hybrid         │ ~60% content first, collaborative fills the rest
  popularity     │ recent items by distinct likers + savers (fallback only)
  author         │ published items by authors the user strongly follows;
                 │ score = Σ matching author affinities
  by_topics      │ restricted to caller-chosen topics: affinity matches
                 │ first, then items carrying ALL chosen topics, newest first

Every strategy drops publications the requester has already viewed, liked
or saved. That set is read at query time, inside the same session as the
candidates.
Every strategy also takes an optional set of publication kinds; when given,
only publications of those kinds are candidates.
"""
import logging
import math
import random
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Sequence

from opentelemetry import trace
from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from recengine import interactions
from recengine.affinity import AUTHOR_STORE, load_vector
from recengine.config import EngineParams
from recengine.models import (
    Publication,
    PublicationAuthor,
    PublicationKind,
    PublicationLike,
    PublicationStatus,
    PublicationTopic,
    SavedPublication,
    UserSimilarity,
)
from recengine.scoring import (
    RankedCandidate,
    merge_unique,
    paginate,
    rank_deterministic,
    rank_shuffled,
    utcnow,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Kinds = Optional[Iterable[PublicationKind]]


def with_kinds(stmt, kinds: Kinds):
    """Restrict a statement over ``Publication`` to the given kinds, if any."""
    wanted = list(kinds or ())
    if not wanted:
        return stmt
    return stmt.where(Publication.kind.in_(wanted))


def score_matches(rows, affinities: dict[int, float], seen: set[int]) -> list[int]:
    """Σ matching affinities per publication, ranked; ``seen`` items are dropped."""
    scores: dict[int, float] = defaultdict(float)
    published: dict[int, Optional[datetime]] = {}
    for pub_id, published_at, key in rows:
        if pub_id in seen:
            continue
        scores[pub_id] += affinities.get(key, 0.0)
        published[pub_id] = published_at
    return rank_deterministic(
        RankedCandidate(pid, score, published[pid]) for pid, score in scores.items()
    )


async def _affinity_matches(db: AsyncSession, link_model, key_col, affinities, kinds: Kinds):
    """(pub_id, published_at, key) for published items linked to any affinity key."""
    stmt = (
        select(Publication.pub_id, Publication.published_at, key_col)
        .join(link_model, link_model.pub_id == Publication.pub_id)
        .where(
            Publication.status == PublicationStatus.PUBLISHED,
            key_col.in_(list(affinities)),
        )
    )
    result = await db.execute(with_kinds(stmt, kinds))
    return result.all()


class RecommendationGenerator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        params: EngineParams = EngineParams(),
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.session_factory = session_factory
        self.params = params
        self.clock = clock
        self.rng = rng or random.Random()

    # ─────────────────────── Content-based ───────────────────────────────

    async def content_based(
        self, account_id: int, limit: int, offset: int = 0, kinds: Kinds = None
    ) -> list[int]:
        with tracer.start_as_current_span("recommend.content"):
            async with self.session_factory() as db:
                affinities = await load_vector(
                    db, account_id, min_score=self.params.strong_interest_threshold
                )
                if not affinities:
                    return []
                seen = await interactions.seen_publication_ids(db, account_id)

                rows = await _affinity_matches(
                    db, PublicationTopic, PublicationTopic.topic_id, affinities, kinds
                )

            return paginate(score_matches(rows, affinities, seen), limit, offset)

    # ─────────────────────── Collaborative ───────────────────────────────

    async def collaborative(
        self, account_id: int, limit: int, offset: int = 0, kinds: Kinds = None
    ) -> list[int]:
        now = self.clock()
        fresh_after = now - timedelta(days=self.params.similarity_freshness_days)
        active_after = now - timedelta(days=self.params.collaborative_window_days)

        with tracer.start_as_current_span("recommend.collaborative"):
            async with self.session_factory() as db:
                rows = await db.execute(
                    select(UserSimilarity.other_account_id, UserSimilarity.similarity_score).where(
                        UserSimilarity.account_id == account_id,
                        UserSimilarity.calculated_at > fresh_after,
                    )
                )
                neighbours = {other: score for other, score in rows.all()}
                if not neighbours:
                    return []
                seen = await interactions.seen_publication_ids(db, account_id)

                contributors: dict[int, set[int]] = defaultdict(set)
                for model, ts_col in (
                    (PublicationLike, PublicationLike.liked_at),
                    (SavedPublication, SavedPublication.saved_at),
                ):
                    stmt = (
                        select(model.pub_id, model.account_id)
                        .join(Publication, Publication.pub_id == model.pub_id)
                        .where(
                            model.account_id.in_(list(neighbours)),
                            ts_col > active_after,
                            Publication.status == PublicationStatus.PUBLISHED,
                        )
                    )
                    engaged = await db.execute(with_kinds(stmt, kinds))
                    for pub_id, other_id in engaged.all():
                        if pub_id not in seen:
                            contributors[pub_id].add(other_id)

            # A neighbour who both liked and saved an item counts once
            candidates = [
                RankedCandidate(pid, sum(neighbours[o] for o in others))
                for pid, others in contributors.items()
            ]
            return paginate(rank_shuffled(candidates, self.rng), limit, offset)

    # ─────────────────────── Popularity ──────────────────────────────────

    async def popularity(
        self, account_id: Optional[int], limit: int, offset: int = 0, kinds: Kinds = None
    ) -> list[int]:
        """Recent published items by engagement; ``account_id=None`` skips the anti-join."""
        published_after = self.clock() - timedelta(days=self.params.popularity_window_days)

        with tracer.start_as_current_span("recommend.popularity"):
            async with self.session_factory() as db:
                stmt = select(Publication.pub_id, Publication.published_at).where(
                    Publication.status == PublicationStatus.PUBLISHED,
                    Publication.published_at > published_after,
                )
                rows = await db.execute(with_kinds(stmt, kinds))
                recent = {pid: published_at for pid, published_at in rows.all()}
                if account_id is not None:
                    for pid in await interactions.seen_publication_ids(db, account_id):
                        recent.pop(pid, None)
                if not recent:
                    return []

                engagement: dict[int, int] = defaultdict(int)
                for model in (PublicationLike, SavedPublication):
                    counts = await db.execute(
                        select(model.pub_id, func.count(distinct(model.account_id)))
                        .where(model.pub_id.in_(list(recent)))
                        .group_by(model.pub_id)
                    )
                    for pid, n in counts.all():
                        engagement[pid] += n

            ranked = rank_deterministic(
                RankedCandidate(pid, float(engagement[pid]), published_at)
                for pid, published_at in recent.items()
            )
            return paginate(ranked, limit, offset)

    # ─────────────────────── Author-based ────────────────────────────────

    async def author_based(
        self, account_id: int, limit: int, offset: int = 0, kinds: Kinds = None
    ) -> list[int]:
        with tracer.start_as_current_span("recommend.author"):
            async with self.session_factory() as db:
                affinities = await load_vector(
                    db,
                    account_id,
                    min_score=self.params.strong_interest_threshold,
                    store=AUTHOR_STORE,
                )
                if not affinities:
                    return []
                seen = await interactions.seen_publication_ids(db, account_id)
                rows = await _affinity_matches(
                    db, PublicationAuthor, PublicationAuthor.author_id, affinities, kinds
                )

            return paginate(score_matches(rows, affinities, seen), limit, offset)

    # ─────────────────────── Topic-restricted ────────────────────────────

    async def by_topics(
        self,
        account_id: int,
        topic_ids: Sequence[int],
        limit: int,
        offset: int = 0,
        kinds: Kinds = None,
    ) -> list[int]:
        """
        Recommendations inside ``topic_ids`` only.

        Items matching the user's strong affinities among the chosen topics
        come first. When those run short, published items tagged with *all*
        chosen topics fill the rest, newest first. Pages are cut from one
        pool of ``offset + limit`` so the two halves never overlap across
        pages.
        """
        wanted = sorted(set(topic_ids))
        if not wanted or limit <= 0:
            return []
        pool_size = offset + limit

        with tracer.start_as_current_span("recommend.by_topics") as span:
            span.set_attribute("topics.count", len(wanted))
            async with self.session_factory() as db:
                affinities = await load_vector(
                    db, account_id, min_score=self.params.strong_interest_threshold
                )
                chosen = {tid: s for tid, s in affinities.items() if tid in wanted}
                seen = await interactions.seen_publication_ids(db, account_id)

                recommended: list[int] = []
                if chosen:
                    rows = await _affinity_matches(
                        db, PublicationTopic, PublicationTopic.topic_id, chosen, kinds
                    )
                    recommended = score_matches(rows, chosen, seen)[:pool_size]

                pool = recommended
                if len(recommended) < pool_size:
                    stmt = (
                        select(Publication.pub_id)
                        .join(PublicationTopic, PublicationTopic.pub_id == Publication.pub_id)
                        .where(
                            Publication.status == PublicationStatus.PUBLISHED,
                            PublicationTopic.topic_id.in_(wanted),
                        )
                    )
                    stmt = (
                        with_kinds(stmt, kinds)
                        .group_by(Publication.pub_id, Publication.published_at)
                        .having(func.count(distinct(PublicationTopic.topic_id)) == len(wanted))
                        .order_by(Publication.published_at.desc(), Publication.pub_id)
                    )
                    rows = await db.execute(stmt)
                    tagged = [pid for pid in rows.scalars().all() if pid not in seen]
                    pool = merge_unique(recommended, tagged, pool_size)

            logger.debug(
                "Topic recommendations for account %s: %d matched, %d in pool",
                account_id, len(recommended), len(pool),
            )
            return paginate(pool, limit, offset)

    # ─────────────────────── Blends ──────────────────────────────────────

    async def hybrid(self, account_id: int, limit: int, kinds: Kinds = None) -> list[int]:
        if limit <= 0:
            return []
        content_n = math.ceil(limit * self.params.hybrid_content_ratio)
        collab_n = limit - content_n + self.params.hybrid_buffer

        content = await self.content_based(account_id, content_n, 0, kinds)
        collab = await self.collaborative(account_id, collab_n, 0, kinds)
        return merge_unique(content, collab, limit)

    async def hybrid_with_fallback(
        self, account_id: int, limit: int, kinds: Kinds = None
    ) -> list[int]:
        combined = await self.hybrid(account_id, limit, kinds)
        if len(combined) >= limit:
            return combined

        needed = limit - len(combined)
        popular = await self.popularity(account_id, needed + self.params.hybrid_buffer, 0, kinds)
        logger.debug(
            "Hybrid short by %d for account %s — filling from %d popular items",
            needed, account_id, len(popular),
        )
        return merge_unique(combined, popular, limit)
