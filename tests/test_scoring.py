import math
import random
from datetime import datetime, timedelta, timezone

import pytest

from recengine.config import EngineParams
from recengine.scoring import (
    Interaction,
    InteractionType,
    RankedCandidate,
    as_naive_utc,
    build_affinity_vector,
    interaction_weight,
    merge_unique,
    normalize_topic_score,
    overlap_cosine,
    paginate,
    qualifying,
    rank_deterministic,
    rank_shuffled,
    topic_score,
)

from conftest import NOW

LIKE, SAVE, VIEW = InteractionType.LIKE, InteractionType.SAVE, InteractionType.VIEW


def it(pub_id, itype=LIKE, age=timedelta(0)):
    return Interaction(account_id=1, pub_id=pub_id, type=itype, at=NOW - age)


class TestDecay:
    @pytest.mark.parametrize("itype, weight", [(LIKE, 3.0), (SAVE, 2.5), (VIEW, 0.5)])
    def test_fresh_interaction_has_full_type_weight(self, itype, weight):
        assert interaction_weight(itype, NOW, NOW) == pytest.approx(weight)

    def test_one_decay_constant_old(self):
        w = interaction_weight(LIKE, NOW - timedelta(hours=168), NOW, decay_hours=168)
        assert w == pytest.approx(3.0 / math.e)

    def test_lookback_boundary_is_negligible(self):
        w = interaction_weight(LIKE, NOW - timedelta(days=90), NOW, decay_hours=168)
        assert 0.0 < w < 1e-4

    def test_future_timestamp_does_not_amplify(self):
        assert interaction_weight(VIEW, NOW + timedelta(hours=5), NOW) == pytest.approx(0.5)

    def test_type_ordering(self):
        assert interaction_weight(LIKE, NOW, NOW) > interaction_weight(SAVE, NOW, NOW)
        assert interaction_weight(SAVE, NOW, NOW) > interaction_weight(VIEW, NOW, NOW)


class TestNormalization:
    def test_single_interaction(self):
        assert normalize_topic_score(3.0, 1) == pytest.approx(3.0 / math.log(2))

    def test_volume_is_damped(self):
        # ten equal contributions do not score ten times one contribution
        one = normalize_topic_score(0.5, 1)
        ten = normalize_topic_score(5.0, 10)
        assert ten < 10 * one

    def test_zero_count(self):
        assert normalize_topic_score(4.0, 0) == 0.0

    def test_clamped_to_max_score(self):
        assert normalize_topic_score(1_000.0, 1, max_score=100.0) == 100.0


class TestAffinityVector:
    def test_expands_through_topic_mapping(self):
        vector = build_affinity_vector([it(10)], {10: [1, 2]}, NOW)
        assert {ts.topic_id for ts in vector} == {1, 2}
        assert all(ts.score == pytest.approx(3.0 / math.log(2)) for ts in vector)

    def test_unmapped_publication_contributes_nothing(self):
        vector = build_affinity_vector([it(10), it(99)], {10: [1]}, NOW)
        assert [ts.topic_id for ts in vector] == [1]

    def test_noise_floor_drops_faint_topics(self):
        old_view = it(20, VIEW, age=timedelta(days=60))
        vector = build_affinity_vector([it(10), old_view], {10: [1], 20: [2]}, NOW)
        assert [ts.topic_id for ts in vector] == [1]

    def test_top_n_cap_with_topic_id_tiebreak(self):
        params = EngineParams(max_topics_per_user=3)
        interactions = [it(p) for p in range(5)]
        mapping = {p: [100 - p] for p in range(5)}
        vector = build_affinity_vector(interactions, mapping, NOW, params)
        assert [ts.topic_id for ts in vector] == [96, 97, 98]

    def test_ordered_by_score(self):
        interactions = [it(10, VIEW), it(20, LIKE)]
        vector = build_affinity_vector(interactions, {10: [1], 20: [2]}, NOW)
        assert [ts.topic_id for ts in vector] == [2, 1]

    def test_scores_bounded(self):
        params = EngineParams(max_score=5.0)
        interactions = [it(10) for _ in range(50)]
        vector = build_affinity_vector(interactions, {10: [1]}, NOW, params)
        assert all(0.0 <= ts.score <= 5.0 for ts in vector)

    def test_single_topic_matches_full_vector(self):
        interactions = [it(10), it(11, SAVE, timedelta(days=3)), it(12, VIEW)]
        mapping = {10: [1, 2], 11: [1], 12: [2]}
        full = {ts.topic_id: ts.score for ts in build_affinity_vector(interactions, mapping, NOW)}
        assert topic_score(interactions, mapping, 1, NOW).score == pytest.approx(full[1])
        assert topic_score(interactions, mapping, 2, NOW).score == pytest.approx(full[2])

    def test_single_topic_without_interactions(self):
        ts = topic_score([], {}, 7, NOW)
        assert (ts.score, ts.count) == (0.0, 0)


class TestSimilarity:
    def test_identical_overlap(self):
        sim, shared = overlap_cosine({1: 0.8, 2: 0.8}, {1: 0.8, 2: 0.8})
        assert sim == pytest.approx(1.0)
        assert shared == 2

    def test_norms_restricted_to_shared_topics(self):
        sim, shared = overlap_cosine({1: 0.8, 2: 0.8, 3: 50.0}, {1: 0.8, 2: 0.8, 4: 9.0})
        assert sim == pytest.approx(1.0)
        assert shared == 2

    def test_disjoint(self):
        assert overlap_cosine({1: 1.0}, {2: 1.0}) == (0.0, 0)

    def test_partial_alignment(self):
        sim, _ = overlap_cosine({1: 1.0, 2: 3.0}, {1: 3.0, 2: 1.0})
        assert sim == pytest.approx(6.0 / 10.0)

    def test_qualifying_is_strict(self):
        assert qualifying({1: 0.5, 2: 0.51, 3: 10.0}) == {2: 0.51, 3: 10.0}


class TestRanking:
    def test_deterministic_order(self):
        candidates = [
            RankedCandidate(3, 1.0, NOW - timedelta(days=2)),
            RankedCandidate(1, 1.0, NOW - timedelta(days=2)),
            RankedCandidate(2, 1.0, NOW - timedelta(days=1)),
            RankedCandidate(4, 2.0, NOW - timedelta(days=9)),
        ]
        assert rank_deterministic(candidates) == [4, 2, 1, 3]

    def test_shuffled_is_reproducible_with_seed(self):
        candidates = [RankedCandidate(i, 1.0) for i in range(20)] + [RankedCandidate(99, 5.0)]
        first = rank_shuffled(candidates, random.Random(42))
        second = rank_shuffled(candidates, random.Random(42))
        assert first == second
        assert first[0] == 99
        assert sorted(first) == sorted(c.pub_id for c in candidates)

    def test_shuffled_ties_vary_across_seeds(self):
        candidates = [RankedCandidate(i, 1.0) for i in range(20)]
        orders = {tuple(rank_shuffled(candidates, random.Random(s))) for s in range(5)}
        assert len(orders) > 1

    def test_paginate(self):
        items = list(range(10))
        assert paginate(items, 3, 2) == [2, 3, 4]
        assert paginate(items, 3, 10) == []
        assert paginate(items, 0, 0) == []

    def test_merge_unique_keeps_primary_first(self):
        assert merge_unique([1, 2, 3], [3, 4, 5], 4) == [1, 2, 3, 4]
        assert merge_unique([1, 1, 2], [], 10) == [1, 2]
        assert merge_unique([1, 2, 3], [4], 2) == [1, 2]


class TestTimestamps:
    def test_offset_is_shifted_to_utc(self):
        at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone(timedelta(hours=5)))
        assert as_naive_utc(at) == datetime(2026, 3, 1, 7, 0)

    def test_naive_is_taken_as_utc(self):
        assert as_naive_utc(NOW) is NOW

    def test_result_is_naive(self):
        assert as_naive_utc(datetime(2026, 3, 1, tzinfo=timezone.utc)).tzinfo is None
