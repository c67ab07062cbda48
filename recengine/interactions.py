"""
Interaction log access.

The log itself belongs to the surrounding application; the engine appends to
it on the recording path and otherwise only reads:

  • per-account interaction history inside the lookback window
  • the publication → topic and publication → author mappings
  • the requester's seen set (viewed ∪ liked ∪ saved) for the anti-join

Every function takes an open ``AsyncSession`` so callers decide the
transaction boundary.
"""
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Iterable, NamedTuple

from sqlalchemy import delete, distinct, func, select, union
from sqlalchemy.ext.asyncio import AsyncSession

from recengine.models import (
    Publication,
    PublicationAuthor,
    PublicationLike,
    PublicationTopic,
    PublicationView,
    SavedPublication,
)
from recengine.scoring import Interaction, InteractionType

logger = logging.getLogger(__name__)


class Link(NamedTuple):
    """A publication → key mapping table and its key column."""

    model: Any
    key: Any


TOPICS = Link(PublicationTopic, PublicationTopic.topic_id)
AUTHORS = Link(PublicationAuthor, PublicationAuthor.author_id)

_SOURCES = (
    (PublicationView, PublicationView.viewed_at, InteractionType.VIEW),
    (PublicationLike, PublicationLike.liked_at, InteractionType.LIKE),
    (SavedPublication, SavedPublication.saved_at, InteractionType.SAVE),
)


# ─────────────────────────── Writes ──────────────────────────────────────

async def append_interaction(
    db: AsyncSession,
    account_id: int,
    pub_id: int,
    itype: InteractionType,
    at: datetime,
) -> None:
    """
    Record an interaction.

    VIEW appends a new row every time. LIKE and SAVE are keyed by
    (account, publication); repeating one refreshes its timestamp and leaves
    the publication counters alone.
    """
    itype = InteractionType(itype)
    if itype is InteractionType.VIEW:
        db.add(PublicationView(account_id=account_id, pub_id=pub_id, viewed_at=at))
        return

    model, ts_field, counter = {
        InteractionType.LIKE: (PublicationLike, "liked_at", "like_count"),
        InteractionType.SAVE: (SavedPublication, "saved_at", "save_count"),
    }[itype]

    existing = await db.get(model, (account_id, pub_id))
    if existing is not None:
        setattr(existing, ts_field, at)
        return

    db.add(model(account_id=account_id, pub_id=pub_id, **{ts_field: at}))
    pub = await db.get(Publication, pub_id)
    if pub is not None:
        setattr(pub, counter, getattr(pub, counter) + 1)


async def remove_save(db: AsyncSession, account_id: int, pub_id: int) -> bool:
    """Drop a publication from the user's default collection."""
    result = await db.execute(
        delete(SavedPublication).where(
            SavedPublication.account_id == account_id,
            SavedPublication.pub_id == pub_id,
        )
    )
    if not result.rowcount:
        return False
    pub = await db.get(Publication, pub_id)
    if pub is not None and pub.save_count > 0:
        pub.save_count -= 1
    return True


# ─────────────────────────── Reads ───────────────────────────────────────

async def load_interactions(
    db: AsyncSession,
    account_id: int,
    since: datetime,
) -> list[Interaction]:
    """All VIEW / LIKE / SAVE records for the account newer than ``since``."""
    out: list[Interaction] = []
    for model, ts_col, itype in _SOURCES:
        rows = await db.execute(
            select(model.pub_id, ts_col).where(model.account_id == account_id, ts_col > since)
        )
        out.extend(Interaction(account_id, pid, itype, ts) for pid, ts in rows.all())
    return out


async def link_map(
    db: AsyncSession, link: Link, pub_ids: Iterable[int]
) -> dict[int, list[int]]:
    """publication → linked keys (topics or authors) for the given publications."""
    ids = set(pub_ids)
    if not ids:
        return {}
    rows = await db.execute(
        select(link.model.pub_id, link.key).where(link.model.pub_id.in_(ids))
    )
    mapping: dict[int, list[int]] = defaultdict(list)
    for pid, key in rows.all():
        mapping[pid].append(key)
    return dict(mapping)


async def keys_for_publication(db: AsyncSession, link: Link, pub_id: int) -> list[int]:
    rows = await db.execute(
        select(link.key).where(link.model.pub_id == pub_id).order_by(link.key)
    )
    return list(rows.scalars().all())


async def load_linked_interactions(
    db: AsyncSession,
    account_id: int,
    since: datetime,
    link: Link,
    keys: Iterable[int],
) -> dict[int, list[Interaction]]:
    """
    The account's interactions newer than ``since`` on publications linked to
    any of ``keys``, grouped by key. One joined query per interaction source,
    so the cost follows the account's history rather than the catalog.
    """
    wanted = list(keys)
    grouped: dict[int, list[Interaction]] = defaultdict(list)
    if not wanted:
        return {}
    for model, ts_col, itype in _SOURCES:
        rows = await db.execute(
            select(model.pub_id, ts_col, link.key)
            .join(link.model, link.model.pub_id == model.pub_id)
            .where(
                model.account_id == account_id,
                ts_col > since,
                link.key.in_(wanted),
            )
        )
        for pid, ts, key in rows.all():
            grouped[key].append(Interaction(account_id, pid, itype, ts))
    return dict(grouped)


async def seen_publication_ids(db: AsyncSession, account_id: int) -> set[int]:
    """viewed ∪ liked ∪ saved — the anti-join set for every strategy."""
    stmt = union(
        select(PublicationView.pub_id).where(PublicationView.account_id == account_id),
        select(PublicationLike.pub_id).where(PublicationLike.account_id == account_id),
        select(SavedPublication.pub_id).where(SavedPublication.account_id == account_id),
    )
    rows = await db.execute(stmt)
    return {r[0] for r in rows.all()}


async def interaction_counts(db: AsyncSession, account_id: int) -> dict[str, int]:
    """Distinct publications read, liked and saved by the account."""
    read = await db.scalar(
        select(func.count(distinct(PublicationView.pub_id))).where(
            PublicationView.account_id == account_id
        )
    )
    liked = await db.scalar(
        select(func.count()).select_from(PublicationLike).where(
            PublicationLike.account_id == account_id
        )
    )
    saved = await db.scalar(
        select(func.count()).select_from(SavedPublication).where(
            SavedPublication.account_id == account_id
        )
    )
    return {"read": read or 0, "liked": liked or 0, "saved": saved or 0}


def lookback_start(now: datetime, days: int) -> datetime:
    return now - timedelta(days=days)
