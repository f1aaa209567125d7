"""
Searcher

Retrieves candidate rows for a canonical query from the vector index.

Retrieval runs an ordered cascade of named strategies:
1. pure_vector: large candidate pool, no pre-filter, scoped in memory
2. minimal_vector: small fixed pool/limit, scoped in memory
3. direct_scan: equality scan on tenant/workbook with synthetic scores

A strategy only falls through on error. An empty result is a valid
answer and stops the cascade.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..common.embedding_service import EmbeddingService
from ..common.vector_index import DEFAULT_SCAN_SORT, VectorIndex

logger = logging.getLogger("ledgerlens.retriever.searcher")


def _field(record: Dict[str, Any], *names: str, default=None):
    """First present key among camelCase/snake_case spellings"""
    for name in names:
        value = record.get(name)
        if value is not None:
            return value
    return default


@dataclass
class RetrievalCandidate:
    """A scored row from the vector index or a fallback scan"""
    record_id: str
    tenant_id: str
    workbook_id: str
    sheet_id: Optional[str] = None
    semantic_string: str = ""
    metric: str = ""
    normalized_metric: str = ""
    value: Any = None
    year: Optional[int] = None
    quarter: Optional[str] = None
    month: Optional[str] = None
    region: Optional[str] = None
    product: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    department: Optional[str] = None
    channel: Optional[str] = None
    category: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    score: float = 0.0
    strategy: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Dict[str, Any], score: float, strategy: str) -> "RetrievalCandidate":
        """Build from a stored document; normalized_metric falls back to metric"""
        metric = _field(record, "metric", default="") or ""
        year = _field(record, "year")
        if isinstance(year, str) and year.isdigit():
            year = int(year)

        return cls(
            record_id=str(_field(record, "_id", "id", "record_id", default="unknown")),
            tenant_id=_field(record, "tenantId", "tenant_id", default=""),
            workbook_id=_field(record, "workbookId", "workbook_id", default=""),
            sheet_id=_field(record, "sheetId", "sheet_id"),
            semantic_string=_field(record, "semanticString", "semantic_string", default="") or "",
            metric=metric,
            normalized_metric=_field(record, "normalizedMetric", "normalized_metric") or metric,
            value=record.get("value"),
            year=year,
            quarter=record.get("quarter"),
            month=record.get("month"),
            region=record.get("region"),
            product=record.get("product"),
            customer_id=_field(record, "customerId", "customer_id"),
            customer_name=_field(record, "customerName", "customer_name"),
            department=record.get("department"),
            channel=record.get("channel"),
            category=record.get("category"),
            status=record.get("status"),
            priority=record.get("priority"),
            score=float(score or 0.0),
            strategy=strategy,
            metadata=dict(record),
        )

    def in_scope(self, tenant_id: Optional[str], workbook_id: Optional[str]) -> bool:
        if tenant_id is not None and self.tenant_id != tenant_id:
            return False
        if workbook_id is not None and self.workbook_id != workbook_id:
            return False
        return True


@dataclass(frozen=True)
class StrategyResult:
    """Tagged outcome of one strategy attempt"""
    ok: bool
    candidates: List[RetrievalCandidate] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def success(cls, candidates: List[RetrievalCandidate]) -> "StrategyResult":
        return cls(ok=True, candidates=candidates)

    @classmethod
    def failure(cls, error: str) -> "StrategyResult":
        return cls(ok=False, error=error)


@dataclass
class RetrievalAttempt:
    """Log entry for one strategy attempt"""
    strategy: str
    ok: bool
    candidate_count: int = 0
    error: Optional[str] = None
    elapsed_ms: float = 0.0


@dataclass
class RetrievalOutcome:
    """Candidates plus which strategy produced them"""
    candidates: List[RetrievalCandidate]
    strategy: str
    attempts: List[RetrievalAttempt] = field(default_factory=list)


class RetrievalError(RuntimeError):
    """Every retrieval strategy failed"""

    def __init__(self, message: str, attempts: Optional[List[RetrievalAttempt]] = None):
        super().__init__(message)
        self.attempts = attempts or []


class RetrievalRequest:
    """
    One retrieve() call.

    The query embedding is computed on first use and shared by the
    vector strategies, so a retry with a smaller pool does not embed again.
    """

    def __init__(
        self,
        canonical_query: str,
        tenant_id: str,
        workbook_id: str,
        top_k: int,
        embedding_service: EmbeddingService,
    ):
        self.canonical_query = canonical_query
        self.tenant_id = tenant_id
        self.workbook_id = workbook_id
        self.top_k = top_k
        self._embedding = embedding_service
        self._vector: Optional[List[float]] = None

    def query_vector(self) -> List[float]:
        if self._vector is None:
            if not self._embedding.is_available:
                raise RuntimeError("Embedding service is not available")
            self._vector = self._embedding.embed_single(self.canonical_query)
        return self._vector


class RetrievalStrategy:
    """Base class: subclasses implement _execute and may raise freely"""

    name = "strategy"

    def run(self, request: RetrievalRequest, index: VectorIndex) -> StrategyResult:
        try:
            return StrategyResult.success(self._execute(request, index))
        except Exception as e:
            return StrategyResult.failure(f"{type(e).__name__}: {e}")

    def _execute(self, request: RetrievalRequest, index: VectorIndex) -> List[RetrievalCandidate]:
        raise NotImplementedError


class _VectorStrategy(RetrievalStrategy):
    """Unfiltered $vectorSearch, scoped to tenant/workbook in memory"""

    def _pool_and_limit(self, request: RetrievalRequest):
        raise NotImplementedError

    def _execute(self, request: RetrievalRequest, index: VectorIndex) -> List[RetrievalCandidate]:
        num_candidates, limit = self._pool_and_limit(request)
        hits = index.vector_search(request.query_vector(), num_candidates=num_candidates, limit=limit)

        candidates = [
            RetrievalCandidate.from_record(record, score, self.name)
            for record, score in hits
        ]
        scoped = [c for c in candidates if c.in_scope(request.tenant_id, request.workbook_id)]
        logger.debug(
            "%s: %d hits, %d in tenant/workbook scope", self.name, len(candidates), len(scoped)
        )
        return scoped[:request.top_k]


class PureVectorStrategy(_VectorStrategy):
    """No pre-filter: some indexes reject a filter combined with the similarity stage"""

    name = "pure_vector"

    def __init__(self, num_candidates: int = 1000, candidate_multiplier: int = 5):
        self.num_candidates = num_candidates
        self.candidate_multiplier = candidate_multiplier

    def _pool_and_limit(self, request: RetrievalRequest):
        return self.num_candidates, request.top_k * self.candidate_multiplier


class MinimalVectorStrategy(_VectorStrategy):
    name = "minimal_vector"

    def __init__(self, num_candidates: int = 100, limit: int = 50):
        self.num_candidates = num_candidates
        self.limit = limit

    def _pool_and_limit(self, request: RetrievalRequest):
        return self.num_candidates, self.limit


class DirectScanStrategy(RetrievalStrategy):
    """
    Deterministic scan of the tenant/workbook, newest year first.

    Rows get synthetic scores 1.0, 1.0 - step, ... (floored at 0) so the
    re-ranker still sees a monotonic base ordering.
    """

    name = "direct_scan"

    def __init__(self, score_step: float = 0.01, sort=DEFAULT_SCAN_SORT):
        self.score_step = score_step
        self.sort = sort

    def _execute(self, request: RetrievalRequest, index: VectorIndex) -> List[RetrievalCandidate]:
        filters = {"workbookId": request.workbook_id, "tenantId": request.tenant_id}
        rows = index.find(filters, sort=self.sort, limit=request.top_k)
        return [
            RetrievalCandidate.from_record(row, self.synthetic_score(i), self.name)
            for i, row in enumerate(rows)
        ]

    def synthetic_score(self, rank: int) -> float:
        return max(0.0, round(1.0 - rank * self.score_step, 6))


def default_strategies(retrieval_config=None) -> List[RetrievalStrategy]:
    """The standard cascade, tuned from RetrievalConfig when given"""
    if retrieval_config is None:
        return [PureVectorStrategy(), MinimalVectorStrategy(), DirectScanStrategy()]

    return [
        PureVectorStrategy(
            num_candidates=retrieval_config.pure_num_candidates,
            candidate_multiplier=retrieval_config.candidate_multiplier,
        ),
        MinimalVectorStrategy(
            num_candidates=retrieval_config.minimal_num_candidates,
            limit=retrieval_config.minimal_limit,
        ),
        DirectScanStrategy(score_step=retrieval_config.synthetic_score_step),
    ]


class Searcher:
    """
    Retrieves candidates for a canonical query.

    Strategies are tried strictly in order, one at a time. Errors are
    logged per attempt and trigger the next strategy; only exhaustion
    raises RetrievalError.
    """

    def __init__(
        self,
        vector_index: VectorIndex,
        embedding_service: EmbeddingService,
        strategies: Optional[Sequence[RetrievalStrategy]] = None,
    ):
        """
        Initialize searcher.

        Args:
            vector_index: Index supporting vector_search and find
            embedding_service: For embedding canonical queries
            strategies: Ordered cascade (default: pure, minimal, scan)
        """
        self._index = vector_index
        self._embedding = embedding_service
        self._strategies = list(strategies) if strategies is not None else default_strategies()

    @property
    def strategy_names(self) -> List[str]:
        return [s.name for s in self._strategies]

    def retrieve(
        self,
        canonical_query: str,
        tenant_id: str,
        workbook_id: str,
        top_k: int = 50,
    ) -> RetrievalOutcome:
        """
        Retrieve candidates scoped to one tenant and workbook.

        Args:
            canonical_query: Text to embed (EnhancedQuery.canonical_query)
            tenant_id: Tenant scope
            workbook_id: Workbook scope
            top_k: Maximum candidates

        Returns:
            RetrievalOutcome from the first strategy that did not error

        Raises:
            RetrievalError: All strategies failed
        """
        request = RetrievalRequest(canonical_query, tenant_id, workbook_id, top_k, self._embedding)
        attempts: List[RetrievalAttempt] = []

        for strategy in self._strategies:
            start = time.perf_counter()
            result = strategy.run(request, self._index)
            elapsed_ms = (time.perf_counter() - start) * 1000

            attempts.append(RetrievalAttempt(
                strategy=strategy.name,
                ok=result.ok,
                candidate_count=len(result.candidates),
                error=result.error,
                elapsed_ms=elapsed_ms,
            ))

            if result.ok:
                logger.info(
                    "Retrieval strategy %s returned %d candidates in %.1fms",
                    strategy.name, len(result.candidates), elapsed_ms,
                )
                return RetrievalOutcome(result.candidates, strategy.name, attempts)

            logger.warning("Retrieval strategy %s failed: %s", strategy.name, result.error)

        raise RetrievalError(
            f"All retrieval strategies failed ({', '.join(a.strategy for a in attempts)})",
            attempts,
        )

    def search_by_filters(self, filters: Dict[str, Any], limit: int = 100) -> List[RetrievalCandidate]:
        """
        Structured equality search with no semantic component.

        Args:
            filters: Field -> value equality constraints (stored field names)
            limit: Maximum rows

        Returns:
            Candidates with score 1.0, newest year first
        """
        rows = self._index.find(dict(filters), sort=DEFAULT_SCAN_SORT, limit=limit)
        return [RetrievalCandidate.from_record(row, 1.0, "filters") for row in rows]
