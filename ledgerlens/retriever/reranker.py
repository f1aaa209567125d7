"""
Reranker

Scopes retrieval candidates to a tenant/workbook and re-orders them by a
weighted linear boost over exact facet matches:

    score = base + metric + dimension * matches + year + quarter + month

Dimension matches compound additively and are not capped. Weights are
policy, not contract, and come from RankingConfig.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .normalizer import month_name
from .query_processor import EnhancedQuery
from .searcher import RetrievalCandidate

logger = logging.getLogger("ledgerlens.retriever.reranker")

# Candidate fields compared against query dimensions
DIMENSION_FIELDS = ("region", "product", "department", "channel", "category", "customer_name")


@dataclass(frozen=True)
class RankingWeights:
    metric: float = 0.3
    dimension: float = 0.2
    year: float = 0.2
    quarter: float = 0.15
    month: float = 0.10

    @classmethod
    def from_config(cls, ranking_config) -> "RankingWeights":
        return cls(
            metric=ranking_config.metric_boost,
            dimension=ranking_config.dimension_boost,
            year=ranking_config.year_boost,
            quarter=ranking_config.quarter_boost,
            month=ranking_config.month_boost,
        )


@dataclass
class RankedResult:
    """A candidate with its composite score"""
    candidate: RetrievalCandidate
    base_score: float
    score: float
    boosts: Dict[str, float] = field(default_factory=dict)

    @property
    def record_id(self) -> str:
        return self.candidate.record_id

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self.candidate)
        data.pop("metadata", None)
        data["base_score"] = self.base_score
        data["score"] = self.score
        data["boosts"] = dict(self.boosts)
        return data


def _same_text(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return False
    return str(a).strip().lower() == str(b).strip().lower()


def _same_year(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return False
    return str(a).strip() == str(b).strip()


def _same_month(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return False
    return (month_name(str(a)) or str(a).lower()) == (month_name(str(b)) or str(b).lower())


class Reranker:
    """
    Deterministic re-ranking. Pure with respect to its inputs: candidates
    are never modified and ties keep arrival order.
    """

    def __init__(self, weights: Optional[RankingWeights] = None):
        self.weights = weights or RankingWeights()

    def score(self, candidate: RetrievalCandidate, enhanced: EnhancedQuery) -> RankedResult:
        """Composite score for one candidate"""
        w = self.weights
        boosts: Dict[str, float] = {}

        if any(_same_text(candidate.normalized_metric, m) for m in enhanced.metrics):
            boosts["metric"] = w.metric

        matches = sum(
            1 for name in DIMENSION_FIELDS
            if any(_same_text(getattr(candidate, name), d) for d in enhanced.dimensions)
        )
        if matches:
            boosts["dimension"] = w.dimension * matches

        tf = enhanced.time_filters
        if tf.year is not None and _same_year(candidate.year, tf.year):
            boosts["year"] = w.year
        if tf.quarter and _same_text(candidate.quarter, tf.quarter):
            boosts["quarter"] = w.quarter
        if tf.month and _same_month(candidate.month, tf.month):
            boosts["month"] = w.month

        base = candidate.score
        return RankedResult(
            candidate=candidate,
            base_score=base,
            score=base + sum(boosts.values()),
            boosts=boosts,
        )

    def rerank(
        self,
        candidates: Sequence[RetrievalCandidate],
        enhanced: EnhancedQuery,
        tenant_id: Optional[str] = None,
        workbook_id: Optional[str] = None,
        limit: int = 10,
        min_score: Optional[float] = None,
    ) -> List[RankedResult]:
        """
        Scope, score, sort and truncate.

        Args:
            candidates: Output of one retrieval run
            enhanced: Query facets
            tenant_id: Drop candidates from other tenants (if given)
            workbook_id: Drop candidates from other workbooks (if given)
            limit: Maximum results
            min_score: Drop results whose composite score is below this

        Returns:
            RankedResult list, highest composite score first
        """
        scoped = [c for c in candidates if c.in_scope(tenant_id, workbook_id)]
        dropped = len(candidates) - len(scoped)
        if dropped:
            logger.debug("Dropped %d out-of-scope candidates", dropped)

        ranked = [self.score(c, enhanced) for c in scoped]
        if min_score is not None:
            ranked = [r for r in ranked if r.score >= min_score]

        # list.sort is stable, so equal scores keep retrieval order
        ranked.sort(key=lambda r: r.score, reverse=True)
        return ranked[:limit] if limit is not None else ranked
