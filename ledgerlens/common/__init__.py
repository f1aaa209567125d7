"""
LedgerLens Common Module

Shared infrastructure for the retriever: configuration, vocabulary and
the external collaborators (embeddings, vector index, LLM).
"""

from .config import LedgerLensConfig, load_config
from .embedding_service import EmbeddingService
from .llm_client import LLMClient, create_llm_client
from .semantic_dictionary import CanonicalTerm, SemanticDictionary, TermCategory
from .vector_index import (
    AtlasVectorIndex,
    InMemoryVectorIndex,
    UnsupportedPipelineError,
    VectorIndex,
)

__all__ = [
    "LedgerLensConfig",
    "load_config",
    "EmbeddingService",
    "LLMClient",
    "create_llm_client",
    "CanonicalTerm",
    "SemanticDictionary",
    "TermCategory",
    "AtlasVectorIndex",
    "InMemoryVectorIndex",
    "UnsupportedPipelineError",
    "VectorIndex",
]
