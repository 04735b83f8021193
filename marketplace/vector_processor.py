"""
Vector similarity ranking for visual search.
Scores stored embeddings against a query vector and degrades through
cheaper strategies when the full in-memory scan cannot run.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .database import EmbeddingRecord, EmbeddingStore

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 10
NO_DATA_MESSAGE = "No images in database to compare against. Please add some images first."


class RankingTier(str, Enum):
    PRIMARY = "primary"
    DEGRADED_APPROX = "degraded_approx"
    DEGRADED_RANDOM = "degraded_random"
    EMPTY = "empty"


@dataclass
class RankedMatch:
    record: EmbeddingRecord
    score: float

    @property
    def product(self) -> Optional[Dict[str, Any]]:
        return self.record.product


@dataclass
class RankingOutcome:
    tier: RankingTier
    results: List[RankedMatch] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.tier in (RankingTier.DEGRADED_APPROX, RankingTier.DEGRADED_RANDOM)

    @property
    def is_empty(self) -> bool:
        return self.tier == RankingTier.EMPTY


def cosine_similarity(query: Sequence[float], candidate: Sequence[float]) -> float:
    """
    Cosine similarity over the overlapping prefix of two vectors.

    The longer vector's tail is ignored. Empty vectors and zero norms
    score 0.
    """
    n = min(len(query), len(candidate))
    if n == 0:
        return 0.0

    q = np.asarray(query[:n], dtype=np.float64)
    c = np.asarray(candidate[:n], dtype=np.float64)

    norm_query = np.linalg.norm(q)
    norm_candidate = np.linalg.norm(c)
    if norm_query == 0 or norm_candidate == 0:
        return 0.0

    similarity = np.dot(q, c) / (norm_query * norm_candidate)
    return float(np.clip(similarity, -1.0, 1.0))


def _score_record(query: Sequence[float], record: EmbeddingRecord) -> float:
    embedding = record.embedding
    if not isinstance(embedding, (list, tuple, np.ndarray)):
        logger.warning(f"Embedding {record.embedding_id} is not an array, scoring 0")
        return 0.0
    try:
        return cosine_similarity(query, embedding)
    except (TypeError, ValueError) as e:
        logger.warning(f"Could not score embedding {record.embedding_id}: {e}")
        return 0.0


def rank(query: Sequence[float],
         candidates: Sequence[EmbeddingRecord],
         k: int = DEFAULT_TOP_K) -> RankingOutcome:
    """
    Brute-force cosine ranking of candidates against the query.

    Orphaned records (no joined product) are dropped after scoring. Results
    are sorted by score descending; ties keep their input order.

    Returns:
        RankingOutcome tagged PRIMARY, or EMPTY when there are no candidates.
    """
    if not candidates:
        return RankingOutcome(tier=RankingTier.EMPTY, message=NO_DATA_MESSAGE)

    scored = [RankedMatch(record=record, score=_score_record(query, record)) for record in candidates]
    valid = [match for match in scored if match.record.has_product]
    logger.info(f"Scored {len(scored)} embeddings, {len(valid)} linked to products")

    # sorted() is stable, also with reverse=True
    ranked = sorted(valid, key=lambda match: match.score, reverse=True)[:k]
    return RankingOutcome(tier=RankingTier.PRIMARY, results=ranked)


class SimilarityRanker:
    """
    Ranks the embedding store against a query vector with tiered fallbacks:

        1. full scan with cosine similarity (PRIMARY / EMPTY)
        2. database-side distance over the first few components (DEGRADED_APPROX)
        3. arbitrary records with synthetic scores in [0.5, 1.0) (DEGRADED_RANDOM)

    Each tier only runs after the previous one raised.
    """

    def __init__(self, store: EmbeddingStore, k: int = DEFAULT_TOP_K, rng: Optional[random.Random] = None):
        self.store = store
        self.k = k
        self.rng = rng or random.Random()

    async def rank(self, query: Sequence[float]) -> RankingOutcome:
        try:
            candidates = await asyncio.to_thread(self.store.all)
            logger.info(f"Found {len(candidates)} existing embeddings in database")
            return rank(query, candidates, self.k)
        except Exception as e:
            logger.warning(f"In-memory similarity calculation failed, trying database approximation: {e}")

        try:
            approx = await asyncio.to_thread(self.store.approximate_rank, query, self.k)
            return RankingOutcome(
                tier=RankingTier.DEGRADED_APPROX,
                results=[RankedMatch(record=record, score=score) for record, score in approx],
            )
        except Exception as e:
            logger.warning(f"Database approximation failed, returning unranked results: {e}")

        records = await asyncio.to_thread(self.store.sample, self.k)
        return RankingOutcome(
            tier=RankingTier.DEGRADED_RANDOM,
            results=[RankedMatch(record=record, score=0.5 + self.rng.random() * 0.5) for record in records],
        )
