"""
LedgerLens

Question answering over a tenant's tabular financial data.

Pipeline:
- Semantic normalization of business vocabulary
- Query enhancement into canonical facets
- Vector retrieval with a fallback cascade
- Structured re-ranking by facet matches
- Grounded answer synthesis with an LLM

Usage:
    from ledgerlens.common import load_config
    from ledgerlens.retriever import build_pipeline

    pipeline = build_pipeline(load_config())
    response = await pipeline.search(tenant_id, workbook_id, "Revenue in Q1 2021?")
"""

__version__ = "0.1.0"
