"""
Confidence scoring for retrieved chunks and answers.

Raw cosine similarities from embedding models cluster in a narrow band, so
they are mapped through piecewise-linear tiers before being blended with
rank position. Keyword matches add a small boost.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from rag_tenant_qa.config import (
    CONFIDENCE_LABEL_HIGH_THRESHOLD,
    CONFIDENCE_LABEL_MEDIUM_THRESHOLD,
    CONFIDENCE_RANK_HIGH_THRESHOLD,
    CONFIDENCE_RANK_MEDIUM_THRESHOLD,
    CONFIDENCE_SCORE_HIGH,
    CONFIDENCE_SCORE_LOW,
    CONFIDENCE_SCORE_MEDIUM,
    KEYWORD_BOOST_HIGH,
    KEYWORD_BOOST_LOW,
    KEYWORD_RANK_HIGH_THRESHOLD,
    RANK_WEIGHT,
    SIMILARITY_LOW_MULTIPLIER,
    SIMILARITY_TIERS,
    SIMILARITY_WEIGHT,
)

logger = logging.getLogger(__name__)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass
class ConfidenceScore:
    value: float
    label: str

    def to_dict(self):
        return {"value": self.value, "label": self.label}


class ConfidenceScorer:
    """Maps similarity and rank signals onto a 0..1 confidence."""

    def __init__(self,
                 similarity_weight: float = SIMILARITY_WEIGHT,
                 rank_weight: float = RANK_WEIGHT):
        self.similarity_weight = similarity_weight
        self.rank_weight = rank_weight

    @staticmethod
    def similarity_confidence(similarity: float) -> float:
        """Tiered mapping of raw cosine similarity, monotone non-decreasing."""
        for threshold, base, multiplier in SIMILARITY_TIERS:
            if similarity >= threshold:
                return base + (similarity - threshold) * multiplier
        return max(0.0, similarity * SIMILARITY_LOW_MULTIPLIER)

    @staticmethod
    def rank_confidence(rank: int) -> float:
        if rank <= CONFIDENCE_RANK_HIGH_THRESHOLD:
            return CONFIDENCE_SCORE_HIGH
        if rank <= CONFIDENCE_RANK_MEDIUM_THRESHOLD:
            return CONFIDENCE_SCORE_MEDIUM
        return CONFIDENCE_SCORE_LOW

    @staticmethod
    def keyword_boost(keyword_rank: Optional[int]) -> float:
        if keyword_rank is None:
            return 0.0
        if keyword_rank <= KEYWORD_RANK_HIGH_THRESHOLD:
            return KEYWORD_BOOST_HIGH
        return KEYWORD_BOOST_LOW

    def candidate_confidence(self,
                             similarity: float,
                             fused_rank: int,
                             keyword_rank: Optional[int] = None) -> float:
        blended = (
            self.similarity_weight * self.similarity_confidence(similarity)
            + self.rank_weight * self.rank_confidence(fused_rank)
            + self.keyword_boost(keyword_rank)
        )
        return clamp(blended)

    @staticmethod
    def label(value: float) -> str:
        if value >= CONFIDENCE_LABEL_HIGH_THRESHOLD:
            return "high"
        if value >= CONFIDENCE_LABEL_MEDIUM_THRESHOLD:
            return "medium"
        return "low"

    def score(self, candidates: Sequence) -> ConfidenceScore:
        """
        Confidence of a retrieval result set.

        Uses the candidate with the highest raw similarity; ties go to the
        better fused rank. An empty set scores 0.0 ("low").
        """
        if not candidates:
            return ConfidenceScore(value=0.0, label="low")

        best = min(candidates, key=lambda c: (-c.vector_score, c.fused_rank))
        value = self.candidate_confidence(best.vector_score, best.fused_rank, best.keyword_rank)
        return ConfidenceScore(value=value, label=self.label(value))

    def overall(self, citations: Sequence, candidates: Sequence) -> ConfidenceScore:
        """Mean confidence of the cited sources, else the retrieval score."""
        cited: List[float] = [c.confidence for c in citations if c.confidence is not None]
        if not cited:
            return self.score(candidates)

        value = clamp(sum(cited) / len(cited))
        return ConfidenceScore(value=value, label=self.label(value))
