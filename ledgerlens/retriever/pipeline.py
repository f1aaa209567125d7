"""
Search Pipeline

The public search operation:

    enhance -> retrieve -> rerank -> synthesize

Stages run sequentially per request; each one's output is the next
one's input. Input errors are the only errors raised. Retrieval and
synthesis failures degrade into empty results and low-confidence
answers. Per-stage timings are reported in milliseconds.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..common.config import LedgerLensConfig, load_config
from ..common.embedding_service import EmbeddingService
from ..common.llm_client import create_llm_client
from ..common.semantic_dictionary import SemanticDictionary
from ..common.vector_index import AtlasVectorIndex, InMemoryVectorIndex
from .normalizer import SemanticNormalizer
from .query_processor import EnhancedQuery, QueryProcessor
from .reranker import RankedResult, Reranker, RankingWeights
from .searcher import RetrievalError, Searcher, default_strategies
from .synthesizer import SynthesizedAnswer, Synthesizer

logger = logging.getLogger("ledgerlens.retriever.pipeline")

STAGES = ("query_enhancement", "retrieval", "reranking", "synthesis", "total")


class SearchInputError(ValueError):
    """Missing or malformed search arguments"""


@dataclass
class SearchResponse:
    """Combined result of one search"""
    enhanced_query: EnhancedQuery
    ranked_results: List[RankedResult]
    synthesized_answer: SynthesizedAnswer
    timings: Dict[str, float] = field(default_factory=dict)
    strategy: Optional[str] = None
    candidate_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        eq = self.enhanced_query
        return {
            "enhanced_query": {
                "original_query": eq.original_query,
                "canonical_query": eq.canonical_query,
                "metrics": list(eq.metrics),
                "dimensions": list(eq.dimensions),
                "time_filters": eq.time_filters.to_dict(),
                "operations": list(eq.operations),
                "performance": list(eq.performance),
                "business_context": eq.business_context,
            },
            "ranked_results": [r.to_dict() for r in self.ranked_results],
            "synthesized_answer": self.synthesized_answer.to_dict(),
            "timings": dict(self.timings),
            "strategy": self.strategy,
            "candidate_count": self.candidate_count,
        }


def _require_text(name: str, value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise SearchInputError(f"{name} is required")
    return value.strip()


class SearchPipeline:
    """
    Wires the five stages together.

    Holds no per-request state; one instance serves concurrent requests.
    """

    def __init__(
        self,
        query_processor: QueryProcessor,
        searcher: Searcher,
        reranker: Reranker,
        synthesizer: Synthesizer,
        config: Optional[LedgerLensConfig] = None,
    ):
        self._query_processor = query_processor
        self._searcher = searcher
        self._reranker = reranker
        self._synthesizer = synthesizer
        self._config = config or LedgerLensConfig()

    @property
    def synthesizer(self) -> Synthesizer:
        return self._synthesizer

    def validate(self, tenant_id, workbook_id, query, top_k) -> Tuple[str, str, str, int]:
        """
        Check arguments before any collaborator is touched.

        Returns:
            (tenant_id, workbook_id, query, top_k) with text stripped and
            top_k defaulted from config
        """
        tenant_id = _require_text("tenant_id", tenant_id)
        workbook_id = _require_text("workbook_id", workbook_id)
        query = _require_text("query", query)

        if top_k is None:
            top_k = self._config.retrieval.top_k
        elif isinstance(top_k, bool) or not isinstance(top_k, int) or top_k <= 0:
            raise SearchInputError(f"top_k must be a positive integer, got {top_k!r}")
        return tenant_id, workbook_id, query, top_k

    async def search(
        self,
        tenant_id: str,
        workbook_id: str,
        query: str,
        top_k: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> SearchResponse:
        """
        Answer a question against one tenant's workbook.

        Args:
            tenant_id: Tenant scope
            workbook_id: Workbook scope
            query: Free-text question
            top_k: Retrieval depth (default from config)
            timeout: Seconds allowed for retrieval (default from config,
                unbounded when unset). Synthesis keeps its own timeout.

        Returns:
            SearchResponse; always returned once inputs are valid

        Raises:
            SearchInputError: Missing tenant/workbook/query, bad top_k or timeout
        """
        tenant_id, workbook_id, query, top_k = self.validate(tenant_id, workbook_id, query, top_k)
        if timeout is None:
            timeout = self._config.retrieval.timeout
        if timeout is not None and (isinstance(timeout, bool) or timeout <= 0):
            raise SearchInputError(f"timeout must be positive, got {timeout!r}")
        timings: Dict[str, float] = {}
        started = time.perf_counter()

        # 1. Query enhancement
        stage = time.perf_counter()
        enhanced = self._query_processor.enhance(query)
        search_text = self._query_processor.format_for_search(enhanced)
        timings["query_enhancement"] = _elapsed_ms(stage)

        # 2. Retrieval
        stage = time.perf_counter()
        strategy = None
        try:
            # A timed-out worker thread finishes in the background; its result is dropped
            outcome = await asyncio.wait_for(
                asyncio.to_thread(self._searcher.retrieve, search_text, tenant_id, workbook_id, top_k),
                timeout=timeout,
            )
            candidates = outcome.candidates
            strategy = outcome.strategy
        except RetrievalError as e:
            logger.error("Retrieval failed for tenant=%s workbook=%s: %s", tenant_id, workbook_id, e)
            candidates = []
        except asyncio.TimeoutError:
            logger.warning(
                "Retrieval timed out after %.1fs for tenant=%s workbook=%s", timeout, tenant_id, workbook_id
            )
            candidates = []
        timings["retrieval"] = _elapsed_ms(stage)

        # 3. Re-ranking
        stage = time.perf_counter()
        ranking = self._config.ranking
        ranked = self._reranker.rerank(
            candidates,
            enhanced,
            tenant_id=tenant_id,
            workbook_id=workbook_id,
            limit=ranking.result_limit,
            min_score=ranking.min_score,
        )
        timings["reranking"] = _elapsed_ms(stage)

        # 4. Synthesis (bounded by its own timeout)
        stage = time.perf_counter()
        answer = await self._synthesizer.synthesize_async(enhanced, ranked, query)
        timings["synthesis"] = _elapsed_ms(stage)

        timings["total"] = _elapsed_ms(started)

        logger.info(
            "Search tenant=%s workbook=%s strategy=%s candidates=%d results=%d total=%.1fms",
            tenant_id, workbook_id, strategy, len(candidates), len(ranked), timings["total"],
        )

        return SearchResponse(
            enhanced_query=enhanced,
            ranked_results=ranked,
            synthesized_answer=answer,
            timings=timings,
            strategy=strategy,
            candidate_count=len(candidates),
        )


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


def build_vector_index(config: LedgerLensConfig):
    """Vector index for the configured backend"""
    index = config.index
    backend = (index.backend or "atlas").lower()

    if backend == "memory":
        if index.records_path:
            return InMemoryVectorIndex.from_json(index.records_path, embedding_path=index.embedding_path)
        logger.warning("Memory index backend configured without records_path, index is empty")
        return InMemoryVectorIndex([], embedding_path=index.embedding_path)

    if backend != "atlas":
        raise ValueError(f"Unsupported index backend: {index.backend}")

    return AtlasVectorIndex(
        mongo_url=index.mongo_url,
        database=index.database,
        collection=index.collection,
        index_name=index.index_name,
        embedding_path=index.embedding_path,
    )


def build_pipeline(config: Optional[LedgerLensConfig] = None) -> SearchPipeline:
    """Construct a SearchPipeline with concrete collaborators from configuration"""
    config = config or load_config()

    dictionary = SemanticDictionary.load(config.dictionary_path or None)
    normalizer = SemanticNormalizer(dictionary)

    embedding_service = EmbeddingService(
        mode=config.embedding.mode,
        model=config.embedding.model,
        dimension=config.embedding.dimension,
        api_key=config.llm.google_api_key or None,
    )

    searcher = Searcher(
        vector_index=build_vector_index(config),
        embedding_service=embedding_service,
        strategies=default_strategies(config.retrieval),
    )

    synthesizer = Synthesizer(
        llm_client=create_llm_client(config.llm),
        timeout=config.synthesis.timeout,
        max_tokens=config.llm.max_tokens,
        max_context_rows=config.synthesis.max_context_rows,
    )

    return SearchPipeline(
        query_processor=QueryProcessor(normalizer),
        searcher=searcher,
        reranker=Reranker(RankingWeights.from_config(config.ranking)),
        synthesizer=synthesizer,
        config=config,
    )
