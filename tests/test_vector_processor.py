import asyncio
import random

import numpy as np
import pytest

from conftest import FakeStore, make_record
from marketplace.vector_processor import (
    NO_DATA_MESSAGE,
    RankingTier,
    SimilarityRanker,
    cosine_similarity,
    rank,
)


def test_identical_vectors_score_one():
    assert cosine_similarity([1, 0, 0, 0, 0], [1, 0, 0, 0, 0]) == 1.0


def test_positive_scalar_multiple_scores_one():
    assert cosine_similarity([1.0, 2.0, 3.0], [2.5, 5.0, 7.5]) == pytest.approx(1.0)


def test_negative_multiple_scores_minus_one():
    assert cosine_similarity([1.0, -2.0], [-3.0, 6.0]) == pytest.approx(-1.0)


def test_orthogonal_vectors_score_zero():
    assert cosine_similarity([1, 0, 0], [0, 1, 0]) == 0.0


def test_scores_stay_within_unit_range():
    rng = np.random.default_rng(7)
    for _ in range(200):
        a = rng.normal(size=16).tolist()
        b = rng.normal(size=16).tolist()
        assert -1.0 <= cosine_similarity(a, b) <= 1.0


def test_trailing_components_on_longer_vector_are_ignored():
    query = [0.3, -0.2, 0.9]
    candidate = [0.1, 0.4, 0.5]
    base = cosine_similarity(query, candidate)

    assert cosine_similarity(query, candidate + [100.0, -42.0]) == base
    assert cosine_similarity(query + [7.0, 7.0, 7.0], candidate) == base


def test_empty_and_zero_vectors_score_zero():
    assert cosine_similarity([], [1.0, 2.0]) == 0.0
    assert cosine_similarity([1.0, 2.0], []) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0
    # Non-zero tail is cut off, leaving a zero prefix
    assert cosine_similarity([0.0], [0.0, 5.0]) == 0.0


def test_rank_sorts_descending_and_keeps_ties_in_input_order():
    query = [1.0, 0.0]
    records = [
        make_record(1, [0.0, 1.0]),
        make_record(2, [1.0, 0.0]),
        make_record(3, [2.0, 0.0]),
        make_record(4, [1.0, 1.0]),
    ]

    outcome = rank(query, records)

    assert outcome.tier == RankingTier.PRIMARY
    assert [m.record.embedding_id for m in outcome.results] == [2, 3, 4, 1]
    scores = [m.score for m in outcome.results]
    assert scores == sorted(scores, reverse=True)


def test_rank_excludes_orphaned_records():
    records = [
        make_record(1, [1.0, 0.0], with_product=False),
        make_record(2, [0.5, 0.5]),
    ]

    outcome = rank([1.0, 0.0], records)

    assert [m.record.embedding_id for m in outcome.results] == [2]


def test_rank_returns_at_most_k_results():
    records = [make_record(i, [1.0, float(i)]) for i in range(1, 16)]

    outcome = rank([1.0, 0.0], records, k=10)

    assert len(outcome.results) == 10


def test_rank_over_empty_candidates_signals_no_data():
    outcome = rank([1.0, 0.0], [])

    assert outcome.tier == RankingTier.EMPTY
    assert outcome.is_empty
    assert outcome.results == []
    assert outcome.message == NO_DATA_MESSAGE


def test_non_array_embedding_scores_zero():
    broken = make_record(1, [1.0])
    broken.embedding = "not-a-vector"
    good = make_record(2, [1.0, 0.0])

    outcome = rank([1.0, 0.0], [broken, good])

    assert outcome.results[0].record.embedding_id == 2
    assert outcome.results[1].score == 0.0


def test_ranker_primary_tier():
    store = FakeStore([make_record(1, [1, 0, 0, 0, 0]), make_record(2, [0, 1, 0, 0, 0])])

    outcome = asyncio.run(SimilarityRanker(store).rank([1, 0, 0, 0, 0]))

    assert outcome.tier == RankingTier.PRIMARY
    assert not outcome.degraded
    assert [m.score for m in outcome.results] == [1.0, 0.0]
    assert store.approx_calls == []


def test_ranker_falls_back_to_database_approximation():
    store = FakeStore(
        [make_record(1, [0, 1, 0, 0, 0]), make_record(2, [1, 0, 0, 0, 0])],
        fail_all=True,
    )

    outcome = asyncio.run(SimilarityRanker(store, k=10).rank([1, 0, 0, 0, 0, 9, 9]))

    assert outcome.tier == RankingTier.DEGRADED_APPROX
    assert outcome.degraded
    assert outcome.results[0].record.embedding_id == 2
    assert outcome.results[0].score == pytest.approx(1.0)
    assert store.approx_calls == [([1, 0, 0, 0, 0, 9, 9], 10)]


def test_ranker_falls_back_to_synthetic_scores():
    store = FakeStore(
        [make_record(i, [1.0, 0.0]) for i in range(1, 13)],
        fail_all=True,
        fail_approx=True,
    )

    ranker = SimilarityRanker(store, k=10, rng=random.Random(3))
    outcome = asyncio.run(ranker.rank([1.0, 0.0]))

    assert outcome.tier == RankingTier.DEGRADED_RANDOM
    assert outcome.degraded
    assert len(outcome.results) == 10
    assert all(0.5 <= m.score < 1.0 for m in outcome.results)


def test_ranker_raises_when_every_tier_fails():
    store = FakeStore([make_record(1, [1.0])], fail_all=True, fail_approx=True, fail_sample=True)

    with pytest.raises(RuntimeError):
        asyncio.run(SimilarityRanker(store).rank([1.0]))


def test_ranker_empty_store_is_not_degraded():
    outcome = asyncio.run(SimilarityRanker(FakeStore()).rank([1.0, 0.0]))

    assert outcome.tier == RankingTier.EMPTY
    assert not outcome.degraded
