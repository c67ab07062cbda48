import asyncio
import math
import random
from datetime import datetime, timedelta, timezone

import pytest

from recengine.config import EngineParams
from recengine.engine import RecommendationEngine, Strategy
from recengine.jobs import JobRunner
from recengine.models import Publication, PublicationKind, PublicationLike

from conftest import NOW, fixed_clock


class RecordingPublisher:
    def __init__(self):
        self.events = []

    async def publish(self, event):
        self.events.append(event)


class BrokenPublisher:
    async def publish(self, event):
        raise ConnectionError("broker unreachable")


def make_engine(session_factory, **kwargs):
    kwargs.setdefault("params", EngineParams())
    return RecommendationEngine(
        session_factory, clock=fixed_clock, rng=random.Random(7), **kwargs
    )


# ─────────────────────────── Write side ──────────────────────────────────

class TestRecording:
    async def test_like_updates_affinities_in_background(self, engine, seed, session_factory):
        await seed.publication(10, topics=[100])

        await engine.record_interaction(1, 10, "LIKE")
        await engine.runner.drain()

        assert await engine.get_affinities(1) == {100: pytest.approx(3.0 / math.log(2))}
        async with session_factory() as db:
            assert (await db.get(Publication, 10)).like_count == 1

    async def test_repeated_like_counts_once(self, engine, seed, session_factory):
        await seed.publication(10, topics=[100])

        await engine.record_interaction(1, 10, "LIKE")
        await engine.record_interaction(1, 10, "LIKE", at=NOW + timedelta(minutes=5))
        await engine.runner.drain()

        async with session_factory() as db:
            assert (await db.get(Publication, 10)).like_count == 1

    async def test_offset_timestamp_is_stored_as_utc(self, engine, seed, session_factory):
        await seed.publication(10, topics=[100])
        at = datetime(2026, 3, 1, 9, 30, tzinfo=timezone(timedelta(hours=-2)))

        await engine.record_interaction(1, 10, "LIKE", at=at)
        await engine.runner.drain()

        async with session_factory() as db:
            like = await db.get(PublicationLike, (1, 10))
        assert like.liked_at == datetime(2026, 3, 1, 11, 30)

    async def test_refresh_updates_author_affinities(self, engine, seed):
        await seed.publication(10, topics=[100], authors=[7])

        await engine.record_interaction(1, 10, "SAVE")
        await engine.runner.drain()

        assert await engine.get_author_affinities(1) == {7: pytest.approx(2.5 / math.log(2))}

    async def test_remove_save_refreshes_topics(self, engine, seed, session_factory):
        await seed.publication(10, topics=[100])
        await engine.record_interaction(1, 10, "SAVE")
        await engine.runner.drain()
        assert 100 in await engine.get_affinities(1)

        assert await engine.remove_save(1, 10) is True
        await engine.runner.drain()

        assert await engine.get_affinities(1) == {}
        async with session_factory() as db:
            assert (await db.get(Publication, 10)).save_count == 0

    async def test_remove_missing_save(self, engine, seed):
        await seed.publication(10, topics=[100])

        assert await engine.remove_save(1, 10) is False
        assert engine.runner.pending == 0

    async def test_recalculate_affinities(self, engine, seed):
        await seed.publication(10, topics=[100])
        await seed.like(1, 10)

        await engine.recalculate_affinities(1)
        await engine.runner.drain()

        assert set(await engine.get_affinities(1)) == {100}

    async def test_refresh_overflow_triggers_rebuild(self, session_factory, seed):
        engine = make_engine(session_factory, params=EngineParams(max_topics_per_user=2))
        await seed.affinity(1, 1, 5.0)
        await seed.affinity(1, 2, 5.0)
        await seed.publication(10, topics=[3])
        await seed.like(1, 10)

        await engine.apply_interaction(1, 10)

        # stored rows 1 and 2 have no interactions behind them
        assert set(await engine.get_affinities(1)) == {3}


class TestDispatch:
    async def test_publisher_receives_events(self, session_factory, seed):
        publisher = RecordingPublisher()
        engine = make_engine(session_factory, publisher=publisher)
        await seed.publication(10, topics=[100])

        await engine.record_interaction(1, 10, "VIEW")
        await engine.recalculate_affinities(1)

        assert publisher.events == [
            {"kind": "interaction", "account_id": 1, "pub_id": 10},
            {"kind": "recalculate", "account_id": 1, "pub_id": None},
        ]
        assert engine.runner.pending == 0

    async def test_publisher_failure_runs_locally(self, session_factory, seed):
        engine = make_engine(session_factory, publisher=BrokenPublisher())
        await seed.publication(10, topics=[100])

        await engine.record_interaction(1, 10, "LIKE")
        await engine.runner.drain()

        assert set(await engine.get_affinities(1)) == {100}

    @pytest.mark.parametrize(
        "event",
        [
            {"kind": "interaction", "pub_id": 10},
            {"kind": "interaction", "account_id": 1},
            {"kind": "purge", "account_id": 1},
        ],
    )
    async def test_malformed_events_are_ignored(self, engine, event):
        assert engine.handle_event(event) is None


class TestSimilarityJobs:
    async def test_single_account(self, engine, seed):
        for account in (1, 2):
            await seed.affinity(account, 1, 0.8)
            await seed.affinity(account, 2, 0.8)

        await engine.recalculate_similarities(1)

        assert await engine.get_similar_users(1) == [2]
        assert await engine.get_similar_users(2) == []

    async def test_batch(self, engine, seed):
        for account in (1, 2):
            await seed.affinity(account, 1, 0.8)
            await seed.affinity(account, 2, 0.8)

        await engine.recalculate_similarities()

        assert await engine.get_similar_users(1) == [2]
        assert await engine.get_similar_users(2) == [1]


# ─────────────────────────── Read side ───────────────────────────────────

class TestRecommendations:
    async def test_strategy_result(self, engine, seed):
        await seed.affinity(1, 1, 5.0)
        await seed.publication(10, topics=[1])

        result = await engine.get_recommendations(1, Strategy.CONTENT, limit=5)

        assert result.pub_ids == [10]
        assert result.strategy is Strategy.CONTENT
        assert not result.fallback

    async def test_strategy_by_name(self, engine, seed):
        await seed.publication(30)

        result = await engine.get_recommendations(1, "hybridWithFallback")

        assert result.strategy is Strategy.HYBRID_WITH_FALLBACK
        assert result.pub_ids == [30]

    async def test_error_falls_back_to_popularity(self, engine, seed, monkeypatch):
        await seed.publication(30)
        await seed.like(5, 30)

        async def broken(*args):
            raise RuntimeError("affinity store down")

        monkeypatch.setattr(engine.recommender, "content_based", broken)

        result = await engine.get_recommendations(1, Strategy.CONTENT)

        assert result.fallback
        assert result.pub_ids == [30]

    async def test_timeout_falls_back_to_popularity(self, session_factory, seed, monkeypatch):
        engine = make_engine(session_factory, timeout=0.05)
        await seed.publication(30)

        async def slow(*args):
            await asyncio.sleep(5)
            return [999]

        monkeypatch.setattr(engine.recommender, "collaborative", slow)

        result = await engine.get_recommendations(1, Strategy.COLLABORATIVE)

        assert result.fallback
        assert result.pub_ids == [30]

    async def test_fallback_failure_returns_empty(self, engine, monkeypatch):
        async def broken(*args):
            raise RuntimeError("database gone")

        monkeypatch.setattr(engine.recommender, "content_based", broken)
        monkeypatch.setattr(engine.recommender, "popularity", broken)

        result = await engine.get_recommendations(1, Strategy.CONTENT)

        assert result.fallback
        assert result.pub_ids == []

    async def test_kinds_reach_the_strategy(self, engine, seed):
        await seed.affinity(1, 1, 5.0)
        await seed.publication(10, topics=[1], kind=PublicationKind.PAPER)
        await seed.publication(11, topics=[1], kind=PublicationKind.BLOG)

        result = await engine.get_recommendations(
            1, Strategy.CONTENT, kinds=[PublicationKind.BLOG]
        )

        assert result.pub_ids == [11]

    async def test_fallback_keeps_the_kind_filter(self, engine, seed, monkeypatch):
        await seed.publication(30, kind=PublicationKind.PAPER)
        await seed.publication(31, kind=PublicationKind.BLOG)

        async def broken(*args):
            raise RuntimeError("affinity store down")

        monkeypatch.setattr(engine.recommender, "content_based", broken)

        result = await engine.get_recommendations(
            1, Strategy.CONTENT, kinds=[PublicationKind.PAPER]
        )

        assert result.fallback
        assert result.pub_ids == [30]

    async def test_author_strategy(self, engine, seed):
        await seed.author_affinity(1, 7, 3.0)
        await seed.publication(10, authors=[7])

        result = await engine.get_recommendations(1, "author")

        assert result.strategy is Strategy.AUTHOR
        assert result.pub_ids == [10]

    async def test_topics_strategy(self, engine, seed):
        await seed.publication(10, topics=[4])
        await seed.publication(11, topics=[5])

        result = await engine.get_recommendations(1, Strategy.TOPICS, topic_ids=[4])

        assert result.pub_ids == [10]

    async def test_topics_strategy_without_topics_is_empty(self, engine, seed):
        await seed.publication(10, topics=[4])

        result = await engine.get_recommendations(1, Strategy.TOPICS)

        assert result.pub_ids == []
        assert not result.fallback

    @pytest.mark.parametrize(
        "limit, offset, expected",
        [(0, -5, (1, 0)), (500, 3, (100, 3)), (20, 0, (20, 0))],
    )
    def test_clamp(self, limit, offset, expected):
        engine = make_engine(None, max_limit=100)
        assert engine.clamp(limit, offset) == expected

    async def test_hybrid_pages_slice_a_larger_blend(self, engine, seed):
        await seed.affinity(1, 1, 5.0)
        for pid in range(10, 22):
            await seed.publication(pid, topics=[1], published_at=NOW - timedelta(hours=pid))

        page = await engine.get_recommendations(1, Strategy.HYBRID_WITH_FALLBACK, limit=4, offset=4)
        pool = await engine.recommender.hybrid_with_fallback(1, 8)

        assert page.pub_ids == pool[4:8]

    async def test_user_stats(self, engine, seed):
        for pid in (10, 11):
            await seed.publication(pid)
        await seed.view(1, 10)
        await seed.view(1, 10, at=NOW - timedelta(hours=1))
        await seed.view(1, 11)
        await seed.like(1, 10)

        assert await engine.get_user_stats(1) == {"read": 2, "liked": 1, "saved": 0}


# ─────────────────────────── Maintenance ─────────────────────────────────

async def test_run_cleanup(engine, seed):
    await seed.affinity(1, 1, 5.0, updated=NOW - timedelta(days=181))
    await seed.affinity(1, 2, 5.0, updated=NOW - timedelta(days=10))
    await seed.similarity(1, 2, 0.5, at=NOW - timedelta(days=15))
    await seed.similarity(1, 3, 0.5, at=NOW - timedelta(days=1))
    await seed.author_affinity(1, 7, 5.0, updated=NOW - timedelta(days=200))

    assert await engine.run_cleanup() == {"affinity_rows": 2, "similarity_rows": 1}
    assert await engine.get_author_affinities(1) == {}
    assert set(await engine.get_affinities(1)) == {2}


# ─────────────────────────── Job runner ──────────────────────────────────

def tracked(log, tag):
    async def job():
        log.append(f"{tag}:start")
        await asyncio.sleep(0.01)
        log.append(f"{tag}:end")
    return job


class TestJobRunner:
    async def test_same_account_jobs_run_one_at_a_time(self):
        runner, log = JobRunner(), []
        runner.submit(1, "a", tracked(log, "a"))
        runner.submit(1, "b", tracked(log, "b"))

        await runner.drain()

        assert log == ["a:start", "a:end", "b:start", "b:end"]

    async def test_different_accounts_overlap(self):
        runner, log = JobRunner(), []
        runner.submit(1, "a", tracked(log, "a"))
        runner.submit(2, "b", tracked(log, "b"))

        await runner.drain()

        assert log[:2] == ["a:start", "b:start"]

    async def test_failure_is_contained(self):
        runner = JobRunner()

        async def boom():
            raise ValueError("bad row")

        task = runner.submit(1, "boom", boom)
        await task

        assert task.exception() is None
        assert runner.pending == 0

    async def test_shutdown_cancels_pending_jobs(self):
        runner = JobRunner()
        task = runner.submit(1, "slow", lambda: asyncio.sleep(10))
        await asyncio.sleep(0)

        await runner.shutdown()

        assert task.cancelled()
