"""
Tests for Synthesizer

Degraded answers, response parsing and context rendering.
"""

import time

import pytest
from unittest.mock import Mock

from ledgerlens.retriever.normalizer import TimeFilters
from ledgerlens.retriever.query_processor import EnhancedQuery
from ledgerlens.retriever.reranker import RankedResult
from ledgerlens.retriever.searcher import RetrievalCandidate
from ledgerlens.retriever.synthesizer import (
    DEFAULT_REASONING,
    NO_DATA_CONTEXT,
    NO_RESPONSE,
    JsonAnswerParser,
    LabeledTextParser,
    Synthesizer,
    build_context,
    build_prompt,
    confidence_from_label,
    split_insights,
)


LABELED_RESPONSE = """ANSWER: Revenue in 2021 was 1,200 across all regions.
North contributed the largest share.
CONFIDENCE: High
REASONING: Summed the four quarterly rows.
DATA_POINTS_USED: 4
KEY_INSIGHTS:
- North leads revenue
- Q4 was the strongest quarter"""


def make_result(record_id, value=100, **fields):
    defaults = {
        "semantic_string": "Sales | Revenue | 2021 | Q1",
        "metric": "Revenue",
        "year": 2021,
        "quarter": "Q1",
    }
    defaults.update(fields)
    candidate = RetrievalCandidate(
        record_id=record_id, tenant_id="t1", workbook_id="wb1", value=value, score=0.5, **defaults
    )
    return RankedResult(candidate=candidate, base_score=0.5, score=0.5)


@pytest.fixture
def enhanced():
    return EnhancedQuery(
        original_query="What was revenue in 2021?",
        canonical_query="Revenue | 2021",
        metrics=("Revenue",),
        time_filters=TimeFilters(year=2021),
        business_context="Metrics: Revenue; Time: Year: 2021",
    )


@pytest.fixture
def llm():
    client = Mock()
    client.is_available = True
    client.generate.return_value = LABELED_RESPONSE
    return client


class TestSynthesize:
    """Synthesizer.synthesize"""

    def test_no_results_skips_llm(self, enhanced, llm):
        synthesizer = Synthesizer(llm_client=llm)

        answer = synthesizer.synthesize(enhanced, [])

        llm.generate.assert_not_called()
        assert answer.answer.startswith(NO_DATA_CONTEXT)
        assert answer.confidence == 0.3
        assert answer.data_point_count == 0

    def test_parses_labeled_response(self, enhanced, llm):
        synthesizer = Synthesizer(llm_client=llm, timeout=12, max_tokens=500)
        results = [make_result("a"), make_result("b")]

        answer = synthesizer.synthesize(enhanced, results)

        assert answer.answer.startswith("Revenue in 2021 was 1,200")
        assert "North contributed" in answer.answer
        assert answer.confidence == 0.9
        assert answer.reasoning == "Summed the four quarterly rows."
        assert answer.data_point_count == 2
        assert answer.key_insights == ("North leads revenue", "Q4 was the strongest quarter")
        assert answer.sources == answer.key_insights
        llm.generate.assert_called_once()
        assert llm.generate.call_args.kwargs == {"max_tokens": 500, "timeout": 12}

    def test_llm_unavailable(self, enhanced, llm):
        llm.is_available = False
        synthesizer = Synthesizer(llm_client=llm)

        answer = synthesizer.synthesize(enhanced, [make_result("a")])

        assert answer.confidence == 0.1
        assert answer.reasoning == "LLM client not initialized"
        llm.generate.assert_not_called()

    def test_no_llm_client(self, enhanced):
        synthesizer = Synthesizer()

        assert not synthesizer.has_llm
        assert synthesizer.synthesize(enhanced, [make_result("a")]).confidence == 0.1

    def test_llm_error(self, enhanced, llm):
        llm.generate.side_effect = RuntimeError("quota exceeded")
        synthesizer = Synthesizer(llm_client=llm)

        answer = synthesizer.synthesize(enhanced, [make_result("a")])

        assert answer.confidence == 0.3
        assert "quota exceeded" in answer.reasoning
        assert answer.data_point_count == 1

    @pytest.mark.parametrize("reply", ["", "   \n", None])
    def test_empty_reply(self, enhanced, llm, reply, caplog):
        llm.generate.return_value = reply
        synthesizer = Synthesizer(llm_client=llm)

        answer = synthesizer.synthesize(enhanced, [make_result("a"), make_result("b")])

        assert answer.answer == NO_RESPONSE
        assert answer.confidence == 0.3
        assert answer.reasoning == "LLM returned an empty response"
        assert answer.data_point_count == 2
        assert "empty response" in caplog.text

    def test_custom_parser(self, enhanced, llm):
        llm.generate.return_value = '{"answer": "1,200", "confidence": "medium"}'
        synthesizer = Synthesizer(llm_client=llm, parser=JsonAnswerParser())

        answer = synthesizer.synthesize(enhanced, [make_result("a")])

        assert answer.answer == "1,200"
        assert answer.confidence == 0.6

    def test_context_rows_capped(self, enhanced, llm):
        synthesizer = Synthesizer(llm_client=llm, max_context_rows=2)
        results = [make_result(str(i), value=i) for i in range(5)]

        synthesizer.synthesize(enhanced, results)

        prompt = llm.generate.call_args.args[0]
        assert "Available data points (2 total):" in prompt


class TestSynthesizeAsync:
    """Synthesizer.synthesize_async"""

    @pytest.mark.asyncio
    async def test_success(self, enhanced, llm):
        synthesizer = Synthesizer(llm_client=llm)

        answer = await synthesizer.synthesize_async(enhanced, [make_result("a")])

        assert answer.confidence == 0.9

    @pytest.mark.asyncio
    async def test_timeout(self, enhanced, llm):
        def slow_generate(*args, **kwargs):
            time.sleep(0.5)
            return LABELED_RESPONSE

        llm.generate.side_effect = slow_generate
        synthesizer = Synthesizer(llm_client=llm, timeout=0.05)

        answer = await synthesizer.synthesize_async(enhanced, [make_result("a")])

        assert answer.confidence == 0.3
        assert "timed out" in answer.reasoning

    @pytest.mark.asyncio
    async def test_no_results(self, enhanced, llm):
        synthesizer = Synthesizer(llm_client=llm)

        answer = await synthesizer.synthesize_async(enhanced, [])

        assert answer.confidence == 0.3
        llm.generate.assert_not_called()


class TestLabeledTextParser:
    def test_bold_labels(self):
        raw = "**ANSWER:** Revenue grew 10%.\n**CONFIDENCE:** Medium\n**REASONING:** Two years compared."

        answer = LabeledTextParser().parse(raw, 3)

        assert answer.answer == "Revenue grew 10%."
        assert answer.confidence == 0.6
        assert answer.reasoning == "Two years compared."

    def test_missing_fields_use_defaults(self):
        answer = LabeledTextParser().parse("ANSWER: Not enough data.", 1)

        assert answer.confidence == 0.5
        assert answer.reasoning == DEFAULT_REASONING
        assert answer.key_insights == ()

    def test_no_labels_uses_raw_text(self):
        answer = LabeledTextParser().parse("  Revenue was flat.  ", 1)

        assert answer.answer == "Revenue was flat."

    def test_empty_text_uses_placeholder(self):
        assert LabeledTextParser().parse("", 1).answer == NO_RESPONSE
        assert LabeledTextParser().parse("ANSWER:\nCONFIDENCE: High", 1).answer != ""

    def test_first_occurrence_wins(self):
        raw = "ANSWER: first\nCONFIDENCE: Low\nANSWER: second"

        answer = LabeledTextParser().parse(raw, 1)

        assert answer.answer == "first"
        assert answer.confidence == 0.3


class TestJsonAnswerParser:
    def test_json_in_code_fence(self):
        raw = '```json\n{"answer": "Up 5%", "confidence": 0.8, "reasoning": "YoY", "key_insights": ["a", "b"]}\n```'

        answer = JsonAnswerParser().parse(raw, 2)

        assert answer.answer == "Up 5%"
        assert answer.confidence == 0.8
        assert answer.reasoning == "YoY"
        assert answer.key_insights == ("a", "b")

    def test_falls_back_to_labels(self):
        answer = JsonAnswerParser().parse("ANSWER: plain text\nCONFIDENCE: High", 1)

        assert answer.answer == "plain text"
        assert answer.confidence == 0.9


class TestHelpers:
    @pytest.mark.parametrize("label,expected", [
        ("High", 0.9),
        ("medium - partial data", 0.6),
        ("Low", 0.3),
        ("unclear", 0.3),
        ("", 0.5),
        (None, 0.5),
        (0.75, 0.75),
        (7, 1.0),
    ])
    def test_confidence_from_label(self, label, expected):
        assert confidence_from_label(label) == expected

    def test_split_insights(self):
        assert split_insights("1. one\n2) two\n* three\n\n") == ("one", "two", "three")
        assert split_insights("") == ()

    def test_build_context_groups_rows(self):
        results = [
            make_result("a", value=10, region="North", month="January"),
            make_result("b", value=20, semantic_string="Sales | Expenses | 2021 | Q1"),
            make_result("c", value=30, region="South", sheet_id="Sales"),
        ]

        context = build_context(results)
        lines = context.splitlines()

        assert lines[0] == "Available data points (3 total):"
        assert "\U0001F4CA Sales | Revenue | 2021 | Q1 (2021 Q1):" in lines
        assert "  - Value: 10 | Region: North | Month: January" in lines
        assert "  - Value: 30 | Region: South | Sheet: Sales" in lines
        # Rows from the same group are rendered together
        revenue_header = lines.index("\U0001F4CA Sales | Revenue | 2021 | Q1 (2021 Q1):")
        assert lines[revenue_header + 2] == "  - Value: 30 | Region: South | Sheet: Sales"

    def test_build_context_empty(self):
        assert build_context([]) == NO_DATA_CONTEXT

    def test_build_context_missing_group_fields(self):
        result = make_result("a", semantic_string="", metric="", year=None, quarter=None)

        assert "\U0001F4CA unknown (unknown unknown):" in build_context([result])

    def test_build_prompt(self, enhanced):
        prompt = build_prompt(enhanced, "CONTEXT BLOCK", "What was revenue in 2021?")

        assert 'ORIGINAL USER QUERY: "What was revenue in 2021?"' in prompt
        assert 'SEMANTIC NORMALIZATION: "Revenue | 2021"' in prompt
        assert "EXTRACTED METRICS: Revenue" in prompt
        assert "EXTRACTED DIMENSIONS: None detected" in prompt
        assert 'TIME FILTERS: {"year": 2021}' in prompt
        assert "CONTEXT BLOCK" in prompt
        assert "KEY_INSIGHTS:" in prompt
