# =============================================================================
# Query Classifier — Which Embedding Column, Which Ranking Rule
# =============================================================================
#
# Maps a free-text query to one of five query types. The type selects both
# the embedding column the similarity search ranks against and the primary
# sort key of the result:
#
#   QueryType   Column               Ordering
#   ─────────   ──────────────────   ───────────────────────────────
#   AMOUNT      amount_embedding     amount DESC, then distance ASC
#   DATE        date_embedding       date DESC, then distance ASC
#   CATEGORY    category_embedding   distance ASC
#   CONTENT     content_embedding    distance ASC
#   COMBINED    combined_embedding   distance ASC
#
# DESIGN DECISION: Rule-based over LLM classification.
# Zero latency, zero cost, deterministic and unit-testable. The keyword
# tables below ARE the classifier; there is no hidden prompt.
#
# Priority is fixed: Amount > Date > Category > Content (fallback).
# "highest payment in March" is an AMOUNT query even though it names a
# month, because the user wants the largest payment first.
# =============================================================================

from __future__ import annotations

import enum
import re
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class QueryType(str, enum.Enum):
    CONTENT = "content"
    AMOUNT = "amount"
    DATE = "date"
    CATEGORY = "category"
    COMBINED = "combined"


class SortKey(str, enum.Enum):
    """Primary ordering applied before the distance tie-break."""

    AMOUNT = "amount"
    DATE = "date"
    DISTANCE = "distance"


@dataclass(frozen=True)
class ClassifiedQuery:
    """Ephemeral classification result. Never persisted."""

    text: str
    query_type: QueryType
    column: str
    sort_key: SortKey


# ---------------------------------------------------------------------------
# Keyword Tables
# ---------------------------------------------------------------------------

AMOUNT_KEYWORDS = (
    "amount", "highest", "largest", "money", "payment", "value",
    "expensive", "cheap", "cost",
)

MONTH_NAMES = (
    "january", "february", "march", "april", "may", "june", "july",
    "august", "september", "october", "november", "december",
)

DATE_KEYWORDS = MONTH_NAMES + ("month", "year", "date", "when", "week", "day")

# Generic category words plus the category names users most often ask
# about in bookkeeping data.
CATEGORY_KEYWORDS = (
    "category", "type", "classification", "group",
    "marketing", "advertising", "travel", "office", "utilities", "rent",
    "insurance", "salary", "salaries", "wages", "car repair", "fuel",
    "food", "drink", "restaurant", "software", "subscription",
    "telephone", "internet", "consultancy", "accounting", "legal",
)

_COLUMN_BY_TYPE = {
    QueryType.AMOUNT: "amount_embedding",
    QueryType.DATE: "date_embedding",
    QueryType.CATEGORY: "category_embedding",
    QueryType.CONTENT: "content_embedding",
}

_SORT_KEY_BY_TYPE = {
    QueryType.AMOUNT: SortKey.AMOUNT,
    QueryType.DATE: SortKey.DATE,
}


def _compile(keywords: tuple[str, ...]) -> re.Pattern[str]:
    # Whole words, tolerating a plural suffix ("costs", "payments", "days")
    # without matching inside other words ("today", "maybe").
    alternatives = "|".join(re.escape(kw) for kw in keywords)
    return re.compile(rf"\b(?:{alternatives})(?:s|es)?\b")


_AMOUNT_RE = _compile(AMOUNT_KEYWORDS)
_DATE_RE = _compile(DATE_KEYWORDS)
_CATEGORY_RE = _compile(CATEGORY_KEYWORDS)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def classify(text: str) -> QueryType:
    """
    Classify a query by keyword membership, in fixed priority order.

    Never fails: queries with no signal keyword are CONTENT queries.
    """
    lowered = text.lower()
    if _AMOUNT_RE.search(lowered):
        return QueryType.AMOUNT
    if _DATE_RE.search(lowered):
        return QueryType.DATE
    if _CATEGORY_RE.search(lowered):
        return QueryType.CATEGORY
    return QueryType.CONTENT


def query_type_to_column(query_type: QueryType) -> str:
    """Total mapping from query type to embedding column name."""
    return _COLUMN_BY_TYPE.get(query_type, "combined_embedding")


def query_type_to_sort_key(query_type: QueryType) -> SortKey:
    return _SORT_KEY_BY_TYPE.get(query_type, SortKey.DISTANCE)


def classify_query(text: str) -> ClassifiedQuery:
    """Classify `text` and resolve its column and sort key in one step."""
    query_type = classify(text)
    return ClassifiedQuery(
        text=text,
        query_type=query_type,
        column=query_type_to_column(query_type),
        sort_key=query_type_to_sort_key(query_type),
    )
