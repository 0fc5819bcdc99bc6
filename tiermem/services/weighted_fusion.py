"""
Weighted Fusion of the three memory tiers.

final_score = min(1, (w_L1*R_L1 + w_L2*R_L2 + w_L3*R_L3) * importance * decay)
"""

import math
from datetime import datetime
from typing import Optional

from ..models.core import FusionWeights, L1RetrievalResult, L2RetrievalResult, L3RetrievalResult, MemoryRetrievalResult
from ..utils.config import MemoryControllerConfig
from ..utils.timestamp_utils import DAY_SECONDS, age_seconds

QUERY_TYPES = ('recent', 'factual', 'semantic')

RECENT_KEYWORDS = ['just', 'recently', 'earlier', 'before', 'said', 'told', 'mentioned']
FACTUAL_PREFIXES = ['what', 'who', 'when', 'where', 'how', 'is', 'are', 'does', 'did']
SEMANTIC_KEYWORDS = ['like', 'similar', 'related', 'about', 'regarding', 'concerning']

# Typical tokens per item, used for estimates without retrieval
L1_TOKENS_PER_TURN = 50
L2_TOKENS_PER_ITEM = 35
L3_TOKENS_PER_FRAGMENT = 100


class WeightedFusion:
    """Blends per-tier retrieval results into one bounded score."""

    def __init__(self, config: MemoryControllerConfig):
        self.config = config

    def combine_results(self,
                        l1: L1RetrievalResult,
                        l2: L2RetrievalResult,
                        l3: L3RetrievalResult,
                        weights: FusionWeights,
                        now: Optional[datetime] = None) -> MemoryRetrievalResult:
        """Fuse three tier results.

        Args:
            l1: Working memory result
            l2: Graph memory result
            l3: Vector memory result
            weights: Tier weights
            now: Reference time for decay (defaults to the current time)

        Returns:
            MemoryRetrievalResult with final_score in [0, 1]
        """
        weighted = l1.relevance_score * weights.w_L1 + l2.relevance_score * weights.w_L2 + l3.relevance_score * weights.w_L3
        importance = self.calculate_importance_factor(l1, l2, l3)
        decay = self.calculate_decay_factor(l1, l2, l3, now)

        return MemoryRetrievalResult(l1=l1,
                                     l2=l2,
                                     l3=l3,
                                     fusion_weights=weights,
                                     final_score=max(0.0, min(1.0, weighted * importance * decay)),
                                     total_tokens=l1.token_count + l2.token_count + l3.token_count)

    @staticmethod
    def calculate_importance_factor(l1: L1RetrievalResult, l2: L2RetrievalResult, l3: L3RetrievalResult) -> float:
        scores = []
        if l1.turns:
            scores.append(0.8)
        scores.extend(min(1.0, fact.importance_score / 10) for fact in l2.facts)
        scores.extend(min(1.0, fragment.metadata.importance_score / 10) for fragment in l3.fragments)

        if not scores:
            return 0.3
        return max(0.3, sum(scores) / len(scores))

    def calculate_decay_factor(self,
                               l1: L1RetrievalResult,
                               l2: L2RetrievalResult,
                               l3: L3RetrievalResult,
                               now: Optional[datetime] = None) -> float:
        """Average per-item age decay with tier-specific floors.

        L1 decays over days, L2 over weeks and L3 over months; L3 items get an
        access-count boost and a bonus when accessed in the last week.
        """
        now = now or datetime.now()
        rate = self.config.importance_decay_rate
        scores = []

        for turn in l1.turns:
            age = age_seconds(turn.timestamp, now)
            scores.append(max(0.5, math.exp(-age / (DAY_SECONDS * rate))))

        for item in list(l2.characters) + list(l2.facts) + list(l2.relationships):
            age = age_seconds(item.last_updated, now)
            scores.append(max(0.2, math.exp(-age / (7 * DAY_SECONDS * rate))))

        for fragment in l3.fragments:
            metadata = fragment.metadata
            creation_decay = math.exp(-age_seconds(metadata.created_at, now) / (30 * DAY_SECONDS * rate))
            access_boost = min(self.config.access_boost_factor, 1 + math.log(metadata.access_count + 1) * 0.1)
            recently_accessed = age_seconds(metadata.last_accessed, now) < 7 * DAY_SECONDS
            recency_boost = self.config.recency_boost_factor if recently_accessed else 1.0
            scores.append(max(0.1, min(1.0, creation_decay * access_boost * recency_boost)))

        if not scores:
            return 0.5
        return max(0.2, sum(scores) / len(scores))

    @staticmethod
    def estimate_token_cost(l1_count: int, l2_count: int, l3_count: int, weights: FusionWeights) -> int:
        """Token estimate for item counts without running retrieval."""
        return math.ceil(l1_count * L1_TOKENS_PER_TURN * weights.w_L1 + l2_count * L2_TOKENS_PER_ITEM * weights.w_L2 +
                         l3_count * L3_TOKENS_PER_FRAGMENT * weights.w_L3)

    @staticmethod
    def optimize_weights(query_type: str, base: FusionWeights) -> FusionWeights:
        """Re-bias weights towards the tier that suits a query archetype."""
        if query_type == 'recent':
            return FusionWeights(w_L1=min(1.0, base.w_L1 * 1.5), w_L2=base.w_L2 * 0.8, w_L3=base.w_L3 * 0.7)
        if query_type == 'factual':
            return FusionWeights(w_L1=base.w_L1 * 0.7, w_L2=min(1.0, base.w_L2 * 1.4), w_L3=base.w_L3 * 0.9)
        if query_type == 'semantic':
            return FusionWeights(w_L1=base.w_L1 * 0.6, w_L2=base.w_L2 * 0.9, w_L3=min(1.0, base.w_L3 * 1.6))
        return base

    @staticmethod
    def analyze_query(query_text: str) -> str:
        """Classify a query as recent, factual or semantic; factual when nothing matches."""
        lower_query = query_text.lower()
        if any(keyword in lower_query for keyword in RECENT_KEYWORDS):
            return 'recent'
        if any(lower_query.startswith(prefix) for prefix in FACTUAL_PREFIXES):
            return 'factual'
        if any(keyword in lower_query for keyword in SEMANTIC_KEYWORDS):
            return 'semantic'
        return 'factual'
