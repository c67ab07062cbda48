"""
Pure scoring math for the affinity engine.

Nothing in this module touches the database. The calculators fetch
interaction / affinity records and hand them here, so every formula can be
tested against plain Python data.

  weight(i)      = TYPE_WEIGHT[i.type] * exp(-hours_since(i) / decay_hours)
  topic score    = clamp(Σ weight / log(n + 1), 0, max_score)
  similarity     = dot(a, b) / (‖a‖ * ‖b‖)   over the shared topics only
"""
import enum
import math
import random
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional, Sequence

from recengine.config import EngineParams


class InteractionType(str, enum.Enum):
    VIEW = "VIEW"
    LIKE = "LIKE"
    SAVE = "SAVE"


# LIKE is the strongest signal, VIEW the weakest
TYPE_WEIGHTS: dict[InteractionType, float] = {
    InteractionType.LIKE: 3.0,
    InteractionType.SAVE: 2.5,
    InteractionType.VIEW: 0.5,
}


@dataclass(frozen=True)
class Interaction:
    account_id: int
    pub_id: int
    type: InteractionType
    at: datetime


@dataclass(frozen=True)
class TopicScore:
    topic_id: int
    score: float
    raw: float
    count: int


@dataclass(frozen=True)
class RankedCandidate:
    pub_id: int
    score: float
    published_at: Optional[datetime] = None


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(at: datetime) -> datetime:
    """Offset-aware timestamps are shifted to UTC; naive ones are taken as UTC already."""
    if at.tzinfo is None:
        return at
    return at.astimezone(timezone.utc).replace(tzinfo=None)


def hours_between(earlier: datetime, now: datetime) -> float:
    return max(0.0, (now - earlier).total_seconds() / 3600.0)


def interaction_weight(
    itype: InteractionType,
    interacted_at: datetime,
    now: datetime,
    decay_hours: float = 168.0,
) -> float:
    base = TYPE_WEIGHTS.get(InteractionType(itype), 0.0)
    return base * math.exp(-hours_between(interacted_at, now) / decay_hours)


def normalize_topic_score(raw_sum: float, count: int, max_score: float = 100.0) -> float:
    """
    Divide the summed weight by log(count + 1) so a topic cannot dominate
    purely on interaction volume, then clamp into [0, max_score].
    """
    if count <= 0:
        return 0.0
    score = raw_sum / math.log(count + 1)
    return max(0.0, min(max_score, score))


def _accumulate(
    interactions: Iterable[Interaction],
    topic_map: Mapping[int, Sequence[int]],
    now: datetime,
    params: EngineParams,
    only_topic: Optional[int] = None,
) -> dict[int, tuple[float, int]]:
    sums: dict[int, float] = defaultdict(float)
    counts: dict[int, int] = defaultdict(int)
    for it in interactions:
        # Publications without a topic mapping contribute nothing
        topics = topic_map.get(it.pub_id) or ()
        if not topics:
            continue
        w = interaction_weight(it.type, it.at, now, params.decay_hours)
        for topic_id in topics:
            if only_topic is not None and topic_id != only_topic:
                continue
            sums[topic_id] += w
            counts[topic_id] += 1
    return {t: (sums[t], counts[t]) for t in sums}


def topic_score(
    interactions: Iterable[Interaction],
    topic_map: Mapping[int, Sequence[int]],
    topic_id: int,
    now: datetime,
    params: EngineParams = EngineParams(),
) -> TopicScore:
    """Score a single topic with the same formula as the full recompute."""
    acc = _accumulate(interactions, topic_map, now, params, only_topic=topic_id)
    raw, count = acc.get(topic_id, (0.0, 0))
    return TopicScore(
        topic_id=topic_id,
        score=normalize_topic_score(raw, count, params.max_score),
        raw=raw,
        count=count,
    )


def clears_floor(ts: TopicScore, floor: float) -> bool:
    return ts.raw > floor and ts.score > floor


def build_affinity_vector(
    interactions: Iterable[Interaction],
    topic_map: Mapping[int, Sequence[int]],
    now: datetime,
    params: EngineParams = EngineParams(),
) -> list[TopicScore]:
    """
    Full-recompute vector: every topic is scored, anything at or below the
    noise floor is dropped, and the strongest ``max_topics_per_user`` survive.
    Ties are broken by topic id so repeated runs write identical rows.
    """
    scored = []
    for topic_id, (raw, count) in _accumulate(interactions, topic_map, now, params).items():
        ts = TopicScore(topic_id, normalize_topic_score(raw, count, params.max_score), raw, count)
        if clears_floor(ts, params.noise_floor):
            scored.append(ts)
    scored.sort(key=lambda ts: (-ts.score, ts.topic_id))
    return scored[: params.max_topics_per_user]


def qualifying(vector: Mapping[int, float], threshold: float = 0.5) -> dict[int, float]:
    return {t: s for t, s in vector.items() if s > threshold}


def overlap_cosine(a: Mapping[int, float], b: Mapping[int, float]) -> tuple[float, int]:
    """
    Cosine similarity restricted to the topics both vectors carry.

    Returns (similarity, shared_topic_count). Norms are taken over the shared
    topics only, not over each vector's full dimension set.
    """
    shared = a.keys() & b.keys()
    if not shared:
        return 0.0, 0
    dot = sum(a[t] * b[t] for t in shared)
    norm_a = math.sqrt(sum(a[t] ** 2 for t in shared))
    norm_b = math.sqrt(sum(b[t] ** 2 for t in shared))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0, len(shared)
    return min(1.0, dot / (norm_a * norm_b)), len(shared)


def rank_deterministic(candidates: Iterable[RankedCandidate]) -> list[int]:
    """Order by score desc, publish date desc, then pub id asc."""
    def key(c: RankedCandidate):
        ts = c.published_at.timestamp() if c.published_at else float("-inf")
        return (-c.score, -ts, c.pub_id)

    return [c.pub_id for c in sorted(candidates, key=key)]


def rank_shuffled(candidates: Iterable[RankedCandidate], rng: random.Random) -> list[int]:
    """Order by score desc; equal scores are shuffled with ``rng``."""
    keyed = [(-c.score, rng.random(), c.pub_id) for c in candidates]
    keyed.sort()
    return [pub_id for _, _, pub_id in keyed]


def paginate(items: Sequence[int], limit: int, offset: int) -> list[int]:
    if limit <= 0 or offset >= len(items):
        return []
    return list(items[offset : offset + limit])


def merge_unique(primary: Iterable[int], secondary: Iterable[int], limit: int) -> list[int]:
    """Insertion-ordered union of two id lists, capped at ``limit``."""
    merged: dict[int, None] = {}
    for pub_id in primary:
        if len(merged) >= limit:
            break
        merged.setdefault(pub_id, None)
    for pub_id in secondary:
        if len(merged) >= limit:
            break
        merged.setdefault(pub_id, None)
    return list(merged)
