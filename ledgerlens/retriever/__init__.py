"""
Retriever - Financial Question Answering

Key Components:
- SemanticNormalizer: Maps tokens to canonical business vocabulary
- QueryProcessor: Decomposes queries into facets and a canonical string
- Searcher: Vector retrieval with a fallback cascade
- Reranker: Tenant/workbook scoping and facet-match boosts
- Synthesizer: LLM answer synthesis from grouped rows

Pipeline:
1. Enhance the user query (metrics, dimensions, time filters)
2. Retrieve candidates for the canonical query
3. Re-rank candidates by exact facet matches
4. Synthesize an answer with confidence and reasoning
"""

from .normalizer import NormalizedTerm, SemanticNormalizer, TimeFilters
from .query_processor import EnhancedQuery, QueryProcessor
from .searcher import (
    DirectScanStrategy,
    MinimalVectorStrategy,
    PureVectorStrategy,
    RetrievalCandidate,
    RetrievalError,
    RetrievalOutcome,
    RetrievalStrategy,
    Searcher,
    StrategyResult,
)
from .reranker import RankedResult, Reranker, RankingWeights
from .synthesizer import (
    AnswerParser,
    JsonAnswerParser,
    LabeledTextParser,
    SynthesizedAnswer,
    Synthesizer,
)
from .pipeline import SearchInputError, SearchPipeline, SearchResponse, build_pipeline

__all__ = [
    "NormalizedTerm",
    "SemanticNormalizer",
    "TimeFilters",
    "EnhancedQuery",
    "QueryProcessor",
    "DirectScanStrategy",
    "MinimalVectorStrategy",
    "PureVectorStrategy",
    "RetrievalCandidate",
    "RetrievalError",
    "RetrievalOutcome",
    "RetrievalStrategy",
    "Searcher",
    "StrategyResult",
    "RankedResult",
    "Reranker",
    "RankingWeights",
    "AnswerParser",
    "JsonAnswerParser",
    "LabeledTextParser",
    "SynthesizedAnswer",
    "Synthesizer",
    "SearchInputError",
    "SearchPipeline",
    "SearchResponse",
    "build_pipeline",
]
