"""
Synthesizer

Grounded answer generation from ranked rows.

Rows are grouped by (semantic string or metric, year, quarter) so the
prompt does not repeat near-identical rows. One LLM call per request, no
retries at this layer. The LLM's free text is parsed by an AnswerParser.

Degraded answers instead of errors:
- no rows: no LLM call, confidence 0.3
- LLM unavailable: confidence 0.1
- LLM error, timeout or empty reply: confidence 0.3
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple

from ..common.llm_client import LLMClient
from ..common.llm_utils import extract_labeled_fields, parse_llm_json
from .query_processor import EnhancedQuery
from .reranker import RankedResult

logger = logging.getLogger("ledgerlens.retriever.synthesizer")

NO_DATA_CONTEXT = "No structured data available for analysis."
DEFAULT_REASONING = "Analysis based on available data"
NO_RESPONSE = "No response generated"

CONFIDENCE_HIGH = 0.9
CONFIDENCE_MEDIUM = 0.6
CONFIDENCE_LOW = 0.3
CONFIDENCE_DEFAULT = 0.5
CONFIDENCE_LLM_UNAVAILABLE = 0.1
CONFIDENCE_LLM_FAILED = 0.3

RESPONSE_LABELS = ("ANSWER", "CONFIDENCE", "REASONING", "DATA_POINTS_USED", "KEY_INSIGHTS")


@dataclass(frozen=True)
class SynthesizedAnswer:
    """Answer parsed from the LLM response"""
    answer: str
    confidence: float  # 0.0 to 1.0
    reasoning: str
    data_point_count: int
    sources: Tuple[str, ...] = ()
    key_insights: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "answer": self.answer,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "data_point_count": self.data_point_count,
            "sources": list(self.sources),
            "key_insights": list(self.key_insights),
        }


SYNTHESIS_PROMPT = """You are a financial data analyst assistant. You have access to structured financial data and need to provide accurate, insightful answers based on the available data.

ORIGINAL USER QUERY: "{original_query}"
SEMANTIC NORMALIZATION: "{canonical_query}"
EXTRACTED METRICS: {metrics}
EXTRACTED DIMENSIONS: {dimensions}
TIME FILTERS: {time_filters}
BUSINESS CONTEXT: {business_context}

{context}

INSTRUCTIONS:
1. Analyze the available data to answer the user's question
2. Provide specific numbers and insights when possible
3. If the data is insufficient, clearly state what's missing
4. Use business-friendly language
5. Include relevant context about time periods, regions, or other dimensions
6. If calculations are needed, show your reasoning
7. Reference specific data points and values from the context
8. If you see patterns in the data, highlight them

Please provide your answer in the following format:
ANSWER: [Your detailed answer here]
CONFIDENCE: [High/Medium/Low based on data completeness]
REASONING: [Brief explanation of how you arrived at the answer]
DATA_POINTS_USED: [Number of relevant data points]
KEY_INSIGHTS: [2-3 key takeaways from the data]"""


def confidence_from_label(label) -> float:
    """Map a High/Medium/Low label (or a number) to a confidence score"""
    if label is None:
        return CONFIDENCE_DEFAULT
    if isinstance(label, (int, float)) and not isinstance(label, bool):
        return max(0.0, min(1.0, float(label)))

    text = str(label).strip().lower()
    if not text:
        return CONFIDENCE_DEFAULT
    if "high" in text:
        return CONFIDENCE_HIGH
    if "medium" in text:
        return CONFIDENCE_MEDIUM
    return CONFIDENCE_LOW


def split_insights(text: str) -> Tuple[str, ...]:
    """Break a KEY_INSIGHTS block into individual items"""
    if not text:
        return ()
    items = []
    for line in text.splitlines():
        item = re.sub(r"^\s*(?:[-*•]|\d+[.)])\s*", "", line).strip()
        if item:
            items.append(item)
    return tuple(items)


class AnswerParser(Protocol):
    """Turns raw LLM output into a SynthesizedAnswer"""

    def parse(self, raw: str, data_point_count: int) -> SynthesizedAnswer:
        ...


class LabeledTextParser:
    """
    Tolerant parser for ``LABEL: value`` responses.

    Fields may span several lines and may be wrapped in markdown bold.
    Missing fields fall back to defaults; without an ANSWER label the
    whole response is the answer.
    """

    def parse(self, raw: str, data_point_count: int) -> SynthesizedAnswer:
        fields = extract_labeled_fields(raw or "", RESPONSE_LABELS)
        insights = split_insights(fields.get("KEY_INSIGHTS", ""))

        return SynthesizedAnswer(
            answer=fields.get("ANSWER") or (raw or "").strip() or NO_RESPONSE,
            confidence=confidence_from_label(fields.get("CONFIDENCE")),
            reasoning=fields.get("REASONING") or DEFAULT_REASONING,
            data_point_count=data_point_count,
            sources=insights,
            key_insights=insights,
        )


class JsonAnswerParser:
    """
    Parser for LLMs asked to reply with a JSON object:
    {"answer", "confidence", "reasoning", "key_insights"}.

    Falls back to labeled-text parsing when no JSON object is found.
    """

    def __init__(self, fallback: Optional[AnswerParser] = None):
        self._fallback = fallback or LabeledTextParser()

    def parse(self, raw: str, data_point_count: int) -> SynthesizedAnswer:
        data = parse_llm_json(raw)
        if not data or "answer" not in data:
            return self._fallback.parse(raw, data_point_count)

        insights = data.get("key_insights") or []
        if isinstance(insights, str):
            insights = split_insights(insights)
        insights = tuple(str(i).strip() for i in insights if str(i).strip())

        sources = data.get("sources")
        if isinstance(sources, list):
            sources = tuple(str(s) for s in sources)
        else:
            sources = insights

        return SynthesizedAnswer(
            answer=str(data.get("answer") or "").strip() or (raw or "").strip() or NO_RESPONSE,
            confidence=confidence_from_label(data.get("confidence")),
            reasoning=str(data.get("reasoning") or "").strip() or DEFAULT_REASONING,
            data_point_count=data_point_count,
            sources=sources,
            key_insights=insights,
        )


def build_context(results: Sequence[RankedResult], max_rows: Optional[int] = None) -> str:
    """
    Render ranked rows as grouped bullet lines.

    Groups keep first-seen order; rows inside a group keep rank order.
    """
    if not results:
        return NO_DATA_CONTEXT

    rows = list(results)
    if max_rows:
        rows = rows[:max_rows]

    groups = {}
    for result in rows:
        c = result.candidate
        key = (c.semantic_string or c.metric or "unknown", c.year or "unknown", c.quarter or "unknown")
        groups.setdefault(key, []).append(c)

    lines = [f"Available data points ({len(rows)} total):"]
    for (label, year, quarter), members in groups.items():
        lines.append("")
        lines.append(f"\U0001F4CA {label} ({year} {quarter}):")
        for c in members:
            line = f"  - Value: {c.value}"
            if c.region:
                line += f" | Region: {c.region}"
            if c.product:
                line += f" | Product: {c.product}"
            if c.customer_name:
                line += f" | Customer: {c.customer_name}"
            if c.month:
                line += f" | Month: {c.month}"
            if c.sheet_id:
                line += f" | Sheet: {c.sheet_id}"
            lines.append(line)

    return "\n".join(lines)


def build_prompt(enhanced: EnhancedQuery, context: str, original_query: str) -> str:
    return SYNTHESIS_PROMPT.format(
        original_query=original_query,
        canonical_query=enhanced.canonical_query,
        metrics=", ".join(enhanced.metrics) or "None detected",
        dimensions=", ".join(enhanced.dimensions) or "None detected",
        time_filters=json.dumps(enhanced.time_filters.to_dict()),
        business_context=enhanced.business_context or "Business analysis query",
        context=context,
    )


class Synthesizer:
    """
    Synthesizes answers from ranked rows using an LLM.

    Never raises for collaborator problems; the confidence of the
    returned answer tells the caller how degraded it is.
    """

    def __init__(
        self,
        llm_client: Optional[LLMClient] = None,
        parser: Optional[AnswerParser] = None,
        timeout: float = 30.0,
        max_tokens: int = 2000,
        max_context_rows: Optional[int] = 200,
    ):
        """
        Initialize synthesizer.

        Args:
            llm_client: Text generation client (optional)
            parser: Response parser (default: LabeledTextParser)
            timeout: Seconds allowed for the LLM call
            max_tokens: Generation limit
            max_context_rows: Cap on rows rendered into the prompt
        """
        self._llm = llm_client
        self._parser = parser or LabeledTextParser()
        self.timeout = timeout
        self._max_tokens = max_tokens
        self._max_context_rows = max_context_rows

    @property
    def has_llm(self) -> bool:
        """Check if LLM is available"""
        return self._llm is not None and self._llm.is_available

    def synthesize(
        self,
        enhanced: EnhancedQuery,
        results: Sequence[RankedResult],
        original_query: Optional[str] = None,
    ) -> SynthesizedAnswer:
        """
        Synthesize an answer from ranked rows.

        Args:
            enhanced: Query facets
            results: Ranked rows from the Reranker
            original_query: User's wording (defaults to enhanced.original_query)

        Returns:
            SynthesizedAnswer
        """
        original_query = original_query or enhanced.original_query

        if not results:
            return self._no_data_answer()

        if not self.has_llm:
            logger.info("LLM not available, returning unsynthesized answer")
            return SynthesizedAnswer(
                answer="LLM model not available. Please check configuration.",
                confidence=CONFIDENCE_LLM_UNAVAILABLE,
                reasoning="LLM client not initialized",
                data_point_count=len(results),
            )

        prompt = build_prompt(enhanced, build_context(results, self._max_context_rows), original_query)

        try:
            raw = self._llm.generate(prompt, max_tokens=self._max_tokens, timeout=self.timeout)
        except Exception as e:
            logger.warning("LLM synthesis failed: %s", e)
            return self._failed_answer(f"LLM generation failed: {e}", len(results))

        if not (raw or "").strip():
            logger.warning("LLM returned an empty response")
            return SynthesizedAnswer(
                answer=NO_RESPONSE,
                confidence=CONFIDENCE_LLM_FAILED,
                reasoning="LLM returned an empty response",
                data_point_count=len(results),
            )

        return self._parser.parse(raw, len(results))

    async def synthesize_async(
        self,
        enhanced: EnhancedQuery,
        results: Sequence[RankedResult],
        original_query: Optional[str] = None,
    ) -> SynthesizedAnswer:
        """
        synthesize() in a worker thread, bounded by self.timeout.

        The timeout is independent of any deadline the caller holds.
        """
        if not results or not self.has_llm:
            return self.synthesize(enhanced, results, original_query)

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.synthesize, enhanced, results, original_query),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("LLM synthesis timed out after %.1fs", self.timeout)
            return self._failed_answer(
                f"LLM generation timed out after {self.timeout:g}s", len(results)
            )

    def _no_data_answer(self) -> SynthesizedAnswer:
        return SynthesizedAnswer(
            answer=f"{NO_DATA_CONTEXT} No matching rows were found for this query.",
            confidence=CONFIDENCE_LOW,
            reasoning="Retrieval returned no rows for this tenant and workbook",
            data_point_count=0,
        )

    def _failed_answer(self, reasoning: str, count: int) -> SynthesizedAnswer:
        return SynthesizedAnswer(
            answer="I'm unable to generate a complete answer at the moment. Please try rephrasing your question.",
            confidence=CONFIDENCE_LLM_FAILED,
            reasoning=reasoning,
            data_point_count=count,
        )
