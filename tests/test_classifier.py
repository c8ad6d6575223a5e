# =============================================================================
# Unit Tests — Query Classifier
# =============================================================================
#
# Pure keyword rules: no API keys, no database.
# =============================================================================

import pytest

from app.services.classifier import (
    QueryType,
    SortKey,
    classify,
    classify_query,
    query_type_to_column,
    query_type_to_sort_key,
)


class TestClassify:
    """Priority: Amount > Date > Category > Content."""

    def test_amount_keyword(self):
        assert classify("show me the largest transactions") == QueryType.AMOUNT

    def test_plural_amount_keyword(self):
        assert classify("what were my costs") == QueryType.AMOUNT

    def test_amount_beats_date(self):
        assert classify("highest payment in March") == QueryType.AMOUNT

    def test_month_is_date(self):
        assert classify("transactions in march") == QueryType.DATE

    def test_date_beats_category(self):
        assert classify("marketing spend last month") == QueryType.DATE

    def test_category_keyword(self):
        assert classify("marketing invoices") == QueryType.CATEGORY

    def test_multiword_category_keyword(self):
        assert classify("garage bills for car repair") == QueryType.CATEGORY

    def test_fallback_is_content(self):
        assert classify("coffee at the airport") == QueryType.CONTENT

    def test_empty_query_is_content(self):
        assert classify("") == QueryType.CONTENT

    def test_case_insensitive(self):
        assert classify("HIGHEST Payments") == QueryType.AMOUNT

    def test_keywords_match_whole_words_only(self):
        # "today" must not hit "day", "maybe" must not hit "may"
        assert classify("anything paid today maybe") == QueryType.CONTENT


class TestColumnMapping:
    @pytest.mark.parametrize(
        "query_type, column",
        [
            (QueryType.CONTENT, "content_embedding"),
            (QueryType.AMOUNT, "amount_embedding"),
            (QueryType.DATE, "date_embedding"),
            (QueryType.CATEGORY, "category_embedding"),
            (QueryType.COMBINED, "combined_embedding"),
        ],
    )
    def test_every_type_has_a_column(self, query_type, column):
        assert query_type_to_column(query_type) == column

    def test_sort_keys(self):
        assert query_type_to_sort_key(QueryType.AMOUNT) == SortKey.AMOUNT
        assert query_type_to_sort_key(QueryType.DATE) == SortKey.DATE
        assert query_type_to_sort_key(QueryType.CATEGORY) == SortKey.DISTANCE
        assert query_type_to_sort_key(QueryType.CONTENT) == SortKey.DISTANCE


class TestClassifyQuery:
    def test_resolves_column_and_sort_key(self):
        result = classify_query("most expensive purchases")
        assert result.text == "most expensive purchases"
        assert result.query_type == QueryType.AMOUNT
        assert result.column == "amount_embedding"
        assert result.sort_key == SortKey.AMOUNT
