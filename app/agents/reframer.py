# =============================================================================
# Question Reframer — Completing Under-Specified Follow-Ups
# =============================================================================
#
# Turns "2025" or "what about travel?" into a self-contained question by
# borrowing entities from the conversation's FinancialContext.
#
#   bare time token   → "can you get <query type> related to <category>
#                        for <customer> in <token>?"
#   other follow-up   → missing fields appended as " for <value>"
#   anything else     → returned unchanged
#
# A field is "missing" when the question neither contains its value nor
# a word that addresses that field ("customer", "category", "year", ...).
# =============================================================================

from __future__ import annotations

import logging
import re

from app.agents.context_extractor import FinancialContext

logger = logging.getLogger(__name__)

GENERAL_FOLLOW_UP_PATTERNS = (
    "can you recommend", "what about", "how about", "tell me more",
    "explain", "describe", "what is", "who is", "where is", "when is",
    "why is", "how is", "recommend", "suggest", "provide", "give me",
    "show me",
)

FINANCIAL_FOLLOW_UP_PATTERNS = (
    "check in", "try", "search in", "look in", "find in", "get in",
    "show in", "list in", "transactions in", "categories in", "expenses in",
    "costs in", "spending in", "can you check", "can you search",
)

CATEGORY_CHANGE_PATTERNS = (
    "for category", "category", "transactions for", "expenses for",
    "costs for", "spending for",
)

_MONTH_NAMES = (
    "january|february|march|april|may|june|july|august|september|october|"
    "november|december|jan|feb|mar|apr|jun|jul|aug|sep|sept|oct|nov|dec"
)
STANDALONE_TIME_TOKEN = re.compile(
    r"(?:20(?:1[5-9]|2\d)|q[1-4](?:\s+20\d\d)?|quarter\s+[1-4](?:\s+20\d\d)?|"
    r"(?:" + _MONTH_NAMES + r")(?:\s+20\d\d)?)",
    re.IGNORECASE,
)

# Words that show a field is already addressed in the question
_FIELD_WORDS = {
    "customer": (
        "customer", "client", "company", "business", "organization",
        "klant", "bedrijf",
    ),
    "category": ("category", "categorie", "type", "soort", "group", "groep"),
    "query_type": (
        "transaction", "transactie", "expense", "uitgave", "cost", "kosten",
        "spending", "uitgaven",
    ),
    "time_period": (
        "year", "jaar", "month", "maand", "quarter", "kwartaal", "week",
    ),
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def is_standalone_time_token(query: str) -> bool:
    """True when the whole query is just a year, quarter or month."""
    cleaned = query.strip().rstrip("?.!").strip()
    return STANDALONE_TIME_TOKEN.fullmatch(cleaned) is not None


def is_follow_up(query: str) -> bool:
    lowered = query.lower()
    if is_standalone_time_token(query):
        return True
    return any(
        _contains_phrase(lowered, pattern)
        for pattern in (
            GENERAL_FOLLOW_UP_PATTERNS
            + FINANCIAL_FOLLOW_UP_PATTERNS
            + CATEGORY_CHANGE_PATTERNS
        )
    )


def reframe(query: str, context: FinancialContext) -> str:
    """
    Complete a follow-up question from conversation context.

    Non-follow-up questions are returned unchanged.
    """
    if not is_follow_up(query):
        return query

    if is_standalone_time_token(query):
        reframed = build_complete_question(query, context)
    else:
        reframed = query
        for field_name, values in (
            ("customer", context.customers),
            ("category", context.categories),
            ("query_type", context.query_types),
            ("time_period", context.time_periods),
        ):
            if values and not _addresses(reframed, field_name):
                reframed = append_context(reframed, values[0])

    if reframed != query:
        logger.info("Reframed '%s' → '%s'", query, reframed)
    return reframed


def build_complete_question(token: str, context: FinancialContext) -> str:
    """Synthesize a full request around a bare time token."""
    query_type = context.query_types[0] if context.query_types else "transactions"
    category = context.categories[0] if context.categories else "all categories"
    parts = [f"can you get {query_type} related to {category}"]
    if context.customers:
        parts.append(f"for {context.customers[0]}")
    parts.append(f"in {token.strip().rstrip('?.!').strip()}")
    return " ".join(parts) + "?"


def append_context(query: str, value: str) -> str:
    """Append ' for <value>' (before a trailing '?') unless already present."""
    if value.lower() in query.lower():
        return query
    stripped = query.rstrip()
    if stripped.endswith("?"):
        return f"{stripped.rstrip('?').rstrip()} for {value}?"
    return f"{stripped} for {value}"


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _addresses(query: str, field_name: str) -> bool:
    lowered = query.lower()
    return any(word in lowered for word in _FIELD_WORDS[field_name])


def _contains_phrase(text: str, phrase: str) -> bool:
    # Whole words only: "try" must not match "industry"
    return re.search(r"\b" + re.escape(phrase) + r"\b", text) is not None
