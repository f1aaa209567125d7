"""
Query Processor

Decomposes a free-text business question into canonical facets
(metrics, dimensions, time filters) and builds the canonical query
string that gets embedded. Two phrasings of the same question converge
on the same string, and therefore on near-identical vectors.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Tuple

from ..common.semantic_dictionary import TermCategory
from .normalizer import (
    CONFIDENCE_SUBSTRING,
    NormalizedTerm,
    SemanticNormalizer,
    TimeFilters,
    tokenize,
)

logger = logging.getLogger("ledgerlens.retriever.query_processor")

CANONICAL_DELIMITER = " | "


@dataclass(frozen=True)
class EnhancedQuery:
    """Canonical decomposition of a user query"""
    original_query: str
    canonical_query: str
    metrics: Tuple[str, ...] = ()
    dimensions: Tuple[str, ...] = ()
    time_filters: TimeFilters = TimeFilters()
    operations: Tuple[str, ...] = ()
    performance: Tuple[str, ...] = ()
    business_context: str = ""

    @property
    def has_facets(self) -> bool:
        return bool(self.metrics or self.dimensions or not self.time_filters.is_empty)


class QueryProcessor:
    """
    Turns user queries into EnhancedQuery objects.

    Responsibilities:
    1. Tokenize, consuming known multi-word phrases longest-first
    2. Normalize remaining tokens, skipping stop words
    3. Collect metric/dimension facets (confidence >= 0.7), first-seen order
    4. Merge time hints, first match wins per field
    5. Build the canonical query string
    """

    # Stop words never normalized on their own
    STOP_WORDS = {
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "shall", "can", "need", "to", "of",
        "in", "for", "on", "with", "at", "by", "from", "up", "about", "into",
        "over", "after", "we", "our", "us", "i", "me", "my", "you", "your",
        "it", "its", "they", "them", "their", "this", "that", "these", "those",
        "what", "which", "who", "whom", "when", "where", "why", "how", "and",
        "or", "but", "if", "as", "vs", "versus", "than", "all", "any", "there",
        "during", "between", "against", "across", "within", "please",
    }

    # Question scaffolding that would otherwise substring-match vocabulary
    FILLER_WORDS = {
        "total", "top", "per", "each", "show", "list", "give", "tell",
        "compare", "sum", "overall", "much", "many", "value", "values",
        "number", "data",
    }

    FACET_CATEGORIES = (
        TermCategory.METRIC,
        TermCategory.DIMENSION,
        TermCategory.OPERATION,
        TermCategory.PERFORMANCE,
    )

    def __init__(self, normalizer: SemanticNormalizer):
        """
        Args:
            normalizer: Shared read-only normalizer
        """
        self._normalizer = normalizer

        self._phrases: Dict[Tuple[str, ...], str] = {}
        for phrase in normalizer.multi_word_phrases():
            self._phrases.setdefault(tuple(tokenize(phrase)), phrase)
        self._max_phrase_len = max((len(k) for k in self._phrases), default=1)

    @property
    def normalizer(self) -> SemanticNormalizer:
        return self._normalizer

    def enhance(self, query: str) -> EnhancedQuery:
        """
        Decompose a query into canonical facets.

        Args:
            query: Raw user question

        Returns:
            EnhancedQuery with canonical_query set
        """
        facets: Dict[TermCategory, List[str]] = {c: [] for c in self.FACET_CATEGORIES}
        time_filters = TimeFilters()

        for segment in self._segment(tokenize(query)):
            term = self._normalizer.normalize(segment)
            self._collect_facet(term, facets)
            time_filters = time_filters.merge(
                self._normalizer.extract_time_hints(segment, infer_quarter=False)
            )

        time_filters = time_filters.with_inferred_quarter()

        metrics = tuple(dict.fromkeys(facets[TermCategory.METRIC]))
        dimensions = tuple(dict.fromkeys(facets[TermCategory.DIMENSION]))
        operations = tuple(dict.fromkeys(facets[TermCategory.OPERATION]))
        performance = tuple(dict.fromkeys(facets[TermCategory.PERFORMANCE]))

        enhanced = EnhancedQuery(
            original_query=query,
            canonical_query=self._build_canonical(metrics, dimensions, time_filters),
            metrics=metrics,
            dimensions=dimensions,
            time_filters=time_filters,
            operations=operations,
            performance=performance,
            business_context=self._build_business_context(
                metrics, dimensions, operations, performance, time_filters
            ),
        )

        logger.debug("Enhanced %r -> %r", query, enhanced.canonical_query)
        return enhanced

    def format_for_search(self, enhanced: EnhancedQuery) -> str:
        """Text to embed: the canonical query, or the cleaned query when no facet was found"""
        if enhanced.canonical_query:
            return enhanced.canonical_query
        return self._clean_query(enhanced.original_query)

    def _segment(self, tokens: List[str]) -> List[str]:
        """Group tokens into phrases and single words, dropping stop words.

        A stop word directly next to a year is kept so that "May 2021"
        still yields a month.
        """
        segments = []
        i = 0
        while i < len(tokens):
            phrase = self._match_phrase(tokens, i)
            if phrase is not None:
                segments.append(phrase[0])
                i += phrase[1]
                continue

            token = tokens[i]
            if token == "%" or token in self.FILLER_WORDS:
                pass
            elif token in self.STOP_WORDS:
                if token == "may" and self._next_is_year(tokens, i):
                    segments.append(token)
            else:
                segments.append(token)
            i += 1
        return segments

    def _match_phrase(self, tokens: List[str], start: int):
        """Longest known phrase starting at start, as (phrase, token_count)"""
        longest = min(self._max_phrase_len, len(tokens) - start)
        for n in range(longest, 1, -1):
            phrase = self._phrases.get(tuple(tokens[start:start + n]))
            if phrase is not None:
                return phrase, n
        return None

    @staticmethod
    def _next_is_year(tokens: List[str], i: int) -> bool:
        return i + 1 < len(tokens) and re.fullmatch(r"(19|20)\d{2}", tokens[i + 1]) is not None

    def _collect_facet(self, term: NormalizedTerm, facets: Dict[TermCategory, List[str]]) -> None:
        if term.confidence < CONFIDENCE_SUBSTRING:
            return
        if term.category in facets:
            facets[term.category].append(term.normalized)

    def _build_canonical(
        self,
        metrics: Tuple[str, ...],
        dimensions: Tuple[str, ...],
        time_filters: TimeFilters,
    ) -> str:
        """dimensions -> metrics -> year -> quarter -> month"""
        parts: List[str] = []
        parts.extend(dimensions)
        parts.extend(metrics)
        if time_filters.year is not None:
            parts.append(str(time_filters.year))
        if time_filters.quarter:
            parts.append(time_filters.quarter)
        if time_filters.month:
            parts.append(time_filters.month)
        return CANONICAL_DELIMITER.join(parts)

    def _build_business_context(
        self,
        metrics: Tuple[str, ...],
        dimensions: Tuple[str, ...],
        operations: Tuple[str, ...],
        performance: Tuple[str, ...],
        time_filters: TimeFilters,
    ) -> str:
        """Human-readable facet summary for the synthesis prompt"""
        context_parts = []
        if metrics:
            context_parts.append(f"Metrics: {', '.join(metrics)}")
        if dimensions:
            context_parts.append(f"Dimensions: {', '.join(dimensions)}")
        if operations:
            context_parts.append(f"Operations: {', '.join(operations)}")
        if performance:
            context_parts.append(f"Performance: {', '.join(performance)}")
        if not time_filters.is_empty:
            labels = [f"{k.capitalize()}: {v}" for k, v in time_filters.to_dict().items()]
            context_parts.append(f"Time: {', '.join(labels)}")
        return " | ".join(context_parts) if context_parts else "Business analysis query"

    def _clean_query(self, query: str) -> str:
        """Clean and normalize query text"""
        cleaned = (query or "").lower().strip()
        cleaned = re.sub(r"\s+", " ", cleaned)
        cleaned = re.sub(r"[.!?,;:]+$", "", cleaned)
        return cleaned
