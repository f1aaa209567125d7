"""
Tests for QueryProcessor

Facet extraction, phrase handling and the canonical query string.
"""

import pytest

from ledgerlens.common.semantic_dictionary import SemanticDictionary
from ledgerlens.retriever.normalizer import SemanticNormalizer, TimeFilters
from ledgerlens.retriever.query_processor import EnhancedQuery, QueryProcessor


@pytest.fixture(scope="module")
def processor():
    return QueryProcessor(SemanticNormalizer(SemanticDictionary.load()))


class TestEnhance:
    """Tests for QueryProcessor.enhance"""

    def test_bottom_line_scenario(self, processor):
        result = processor.enhance("What was the average bottom line performance in 2021?")

        assert list(result.metrics) == ["Net Profit"]
        assert result.time_filters.year == 2021

    def test_phrase_is_not_split(self, processor):
        result = processor.enhance("What is gross profit for Q2?")

        assert result.metrics == ("Gross Profit",)
        assert result.time_filters.quarter == "Q2"

    def test_plural_metrics(self, processor):
        assert processor.enhance("total costs in 2021").metrics == ("Expenses",)
        assert processor.enhance("profits by region").metrics == ("Net Profit",)
        assert processor.enhance("What were our costs?").metrics == ("Expenses",)

    def test_canonical_order(self, processor):
        result = processor.enhance("Show revenue by region for Q1 2021")

        assert result.dimensions == ("Region",)
        assert result.metrics == ("Revenue",)
        assert result.canonical_query == "Region | Revenue | 2021 | Q1"

    def test_canonical_stable_across_word_order(self, processor):
        a = processor.enhance("Show revenue by region for Q1 2021")
        b = processor.enhance("region revenue 2021 q1")

        assert a.canonical_query == b.canonical_query

    def test_facets_deduplicated_in_first_seen_order(self, processor):
        result = processor.enhance("revenue and sales and expenses by region")

        assert result.metrics == ("Revenue", "Expenses")
        assert result.dimensions == ("Region",)

    def test_time_filters_first_match_wins(self, processor):
        result = processor.enhance("revenue in 2021 compared to 2022")

        assert result.time_filters.year == 2021

    def test_month_infers_quarter(self, processor):
        result = processor.enhance("expenses in March 2021")

        assert result.time_filters == TimeFilters(year=2021, quarter="Q1", month="March")
        assert result.canonical_query == "Expenses | 2021 | Q1 | March"

    def test_explicit_quarter_kept_over_month(self, processor):
        result = processor.enhance("revenue Q2 March")

        assert result.time_filters.quarter == "Q2"
        assert result.time_filters.month == "March"

    def test_may_as_verb_is_not_a_month(self, processor):
        assert processor.enhance("What may revenue be in 2021").time_filters.month is None

    def test_may_before_year_is_a_month(self, processor):
        result = processor.enhance("Revenue for May 2021")

        assert result.time_filters.month == "May"
        assert result.time_filters.quarter == "Q2"

    def test_low_confidence_terms_are_not_facets(self, processor):
        result = processor.enhance("2021")

        assert result.metrics == ()
        assert result.dimensions == ()
        assert result.canonical_query == "2021"

    def test_operations_and_performance_carried(self, processor):
        result = processor.enhance("marketing efficiency")

        assert result.operations == ("Marketing",)
        assert result.performance == ("Efficiency",)
        assert result.canonical_query == ""

    def test_business_context(self, processor):
        result = processor.enhance("What was the average bottom line performance in 2021?")

        assert "Metrics: Net Profit" in result.business_context
        assert "Time: Year: 2021" in result.business_context

    def test_business_context_default(self, processor):
        assert processor.enhance("hello").business_context == "Business analysis query"


class TestFormatForSearch:
    """Tests for QueryProcessor.format_for_search"""

    def test_uses_canonical_query(self, processor):
        enhanced = processor.enhance("Show revenue by region for Q1 2021")

        assert processor.format_for_search(enhanced) == "Region | Revenue | 2021 | Q1"

    def test_falls_back_to_cleaned_query(self, processor):
        enhanced = processor.enhance("  Hello   there? ")

        assert enhanced.canonical_query == ""
        assert processor.format_for_search(enhanced) == "hello there"

    def test_manual_enhanced_query(self, processor):
        enhanced = EnhancedQuery(original_query="Anything", canonical_query="")

        assert processor.format_for_search(enhanced) == "anything"
        assert not enhanced.has_facets
