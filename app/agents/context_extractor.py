# =============================================================================
# Context Extractor — Rule-Based Entity Signals from Conversation Turns
# =============================================================================
#
# Pulls four kinds of signal out of free text with explicit rule tables
# (no model calls):
#
#   counterparties  text after "customer " / "for customer ", or a
#                   capitalised name after "for "
#   categories      text after "category " / "related to " / "about " / "for "
#   time periods    years 2010-2029, Q1-Q4, "quarter N", month names,
#                   relative terms ("last month", "this year", ...)
#   query types     domain nouns (English and Dutch) → transactions,
#                   categories, expenses, costs, spending
#
# CAPTURE RULE: after a trigger phrase, collect the run of consecutive
# eligible words (longer than 2 characters, not a common/question/domain
# word, not a time token). Leading articles are skipped; any other
# ineligible word ends the run. A run shorter than 4 characters is
# discarded.
#
# DESIGN DECISION: Assistant turns are scanned before user turns, so the
# entities an answer already established come first and are what a
# follow-up inherits. Customer names taken from assistant text must be
# capitalised, since answers contain far more incidental prose than
# questions do.
# =============================================================================

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.agents.context_manager import Turn

COMMON_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "are", "was", "were", "be", "been",
    "being", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "can", "must", "shall", "this",
    "that", "these", "those", "i", "you", "he", "she", "it", "we", "they",
    "me", "him", "her", "us", "them", "my", "your", "his", "its", "our",
    "their", "what", "when", "where", "who", "whom", "which", "whose",
    "why", "how", "all", "any", "both", "each", "few", "more", "most",
    "other", "some", "such", "no", "nor", "not", "only", "own", "same",
    "so", "than", "too", "very", "last", "next", "previous", "current",
    "please", "show", "give", "get", "list", "find", "there", "here",
})

QUESTION_WORDS = frozenset({
    "what", "when", "where", "who", "whom", "which", "whose", "why", "how",
    "can", "could", "would", "should", "will", "may", "might", "must",
    "shall",
})

# Domain words that describe the question rather than name an entity
DOMAIN_WORDS = frozenset({
    "transaction", "transactions", "category", "categories", "expense",
    "expenses", "cost", "costs", "spending", "code", "codes", "description",
    "amount", "amounts", "date", "total", "result", "results", "year",
    "month", "week", "quarter", "day", "customer", "customers", "client",
    "klant",
})

_ARTICLES = frozenset({"the", "a", "an"})

_MONTHS = (
    "january|february|march|april|june|july|august|september|october|"
    "november|december|jan|feb|mar|apr|jun|jul|aug|sep|sept|oct|nov|dec"
)

# "May" only counts when capitalised; lower-case "may" is the modal verb.
TIME_PERIOD_PATTERN = re.compile(
    r"\b(?:(?i:20[12]\d|q[1-4]|quarter\s+[1-4]|" + _MONTHS + r"|today|"
    r"yesterday|tomorrow|(?:this|last|next)\s+(?:week|month|year))|May)\b"
)

QUERY_TYPE_WORDS: dict[str, str] = {
    "transaction": "transactions",
    "transactions": "transactions",
    "transactie": "transactions",
    "transacties": "transactions",
    "category": "categories",
    "categories": "categories",
    "categorie": "categories",
    "categorieën": "categories",
    "expense": "expenses",
    "expenses": "expenses",
    "uitgave": "expenses",
    "kosten": "costs",
    "cost": "costs",
    "costs": "costs",
    "spending": "spending",
    "uitgaven": "spending",
}

_CUSTOMER_TRIGGERS = (
    re.compile(r"\bfor\s+customer\s+", re.IGNORECASE),
    re.compile(r"\bcustomer\s+", re.IGNORECASE),
)
# A bare "for" also introduces categories, so only proper nouns count here
_CUSTOMER_NAME_TRIGGERS = (
    re.compile(r"\bfor\s+", re.IGNORECASE),
)
_CATEGORY_TRIGGERS = (
    re.compile(r"\bcategory\s+", re.IGNORECASE),
    re.compile(r"\brelated\s+to\s+", re.IGNORECASE),
    re.compile(r"\babout\s+", re.IGNORECASE),
    re.compile(r"\bfor\s+", re.IGNORECASE),
)
_RESPONSE_CATEGORY_TRIGGERS = (
    re.compile(r"\bcategories\s+", re.IGNORECASE),
) + _CATEGORY_TRIGGERS

_WORD_SPLIT = re.compile(r"[\s,.?!:;]+")
_WORD_STRIP = "\"'()[]*`"


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class FinancialContext:
    """Entities seen in the recent conversation, oldest-established first."""

    customers: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    time_periods: list[str] = field(default_factory=list)
    query_types: list[str] = field(default_factory=list)

    def extend(self, other: FinancialContext) -> None:
        """Append the other context's values, keeping first occurrences."""
        self.customers = dedupe(self.customers + other.customers)
        self.categories = dedupe(self.categories + other.categories)
        self.time_periods = dedupe(self.time_periods + other.time_periods)
        self.query_types = dedupe(self.query_types + other.query_types)

    @property
    def is_empty(self) -> bool:
        return not (
            self.customers or self.categories
            or self.time_periods or self.query_types
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def extract_customers(text: str, from_response: bool = False) -> list[str]:
    """
    Customer names after "customer " (any case in questions) or after a
    bare "for " (capitalised only).
    """
    return dedupe(
        _capture(
            text,
            _CUSTOMER_TRIGGERS,
            from_response=from_response,
            require_capital=from_response,
        )
        + _capture(
            text,
            _CUSTOMER_NAME_TRIGGERS,
            from_response=from_response,
            require_capital=True,
        )
    )


def extract_categories(
    text: str,
    from_response: bool = False,
    exclude: Iterable[str] = (),
) -> list[str]:
    """Category phrases, minus anything already claimed as a customer."""
    excluded = {value.lower() for value in exclude}
    triggers = _RESPONSE_CATEGORY_TRIGGERS if from_response else _CATEGORY_TRIGGERS
    return [
        value
        for value in _capture(text, triggers, from_response=from_response)
        if value.lower() not in excluded
    ]


def extract_time_periods(text: str) -> list[str]:
    return dedupe(
        re.sub(r"\s+", " ", m.group(0)) for m in TIME_PERIOD_PATTERN.finditer(text)
    )


def extract_query_types(text: str) -> list[str]:
    found = []
    for word in _WORD_SPLIT.split(text.lower()):
        label = QUERY_TYPE_WORDS.get(word.strip(_WORD_STRIP))
        if label:
            found.append(label)
    return dedupe(found)


def extract_from_text(text: str, from_response: bool = False) -> FinancialContext:
    """All four signals from one piece of text."""
    customers = extract_customers(text, from_response)
    return FinancialContext(
        customers=customers,
        categories=extract_categories(text, from_response, exclude=customers),
        time_periods=extract_time_periods(text),
        query_types=extract_query_types(text),
    )


def extract_context(turns: Sequence[Turn], window: int = 6) -> FinancialContext:
    """
    Build a FinancialContext from the last `window` turns.

    Assistant turns are processed first, then user turns, each in
    chronological order.
    """
    recent = list(turns)[-window:] if window > 0 else []
    context = FinancialContext()
    for turn in recent:
        if turn.role == "assistant":
            context.extend(extract_from_text(turn.content, from_response=True))
    for turn in recent:
        if turn.role == "user":
            context.extend(extract_from_text(turn.content))
    return context


def dedupe(values: Iterable[str]) -> list[str]:
    """Case-insensitive de-duplication keeping the first spelling and order."""
    seen: set[str] = set()
    result = []
    for value in values:
        key = value.lower()
        if value and key not in seen:
            seen.add(key)
            result.append(value)
    return result


def is_time_token(word: str) -> bool:
    return TIME_PERIOD_PATTERN.fullmatch(word) is not None


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _capture(
    text: str,
    triggers: Sequence[re.Pattern],
    from_response: bool,
    require_capital: bool = False,
) -> list[str]:
    found: list[str] = []
    for trigger in triggers:
        for match in trigger.finditer(text):
            captured: list[str] = []
            for raw in _WORD_SPLIT.split(text[match.end():]):
                word = raw.strip(_WORD_STRIP)
                if not word:
                    continue
                if _eligible(word, from_response, require_capital):
                    captured.append(word)
                    continue
                if not captured and word.lower() in _ARTICLES:
                    continue
                break
            phrase = " ".join(captured)
            if len(phrase) > 3:
                found.append(phrase)
    return dedupe(found)


def _eligible(word: str, from_response: bool, require_capital: bool) -> bool:
    lowered = word.lower()
    if len(word) <= 2:
        return False
    if lowered in COMMON_WORDS or lowered in DOMAIN_WORDS:
        return False
    if from_response and lowered in QUESTION_WORDS:
        return False
    if lowered in QUERY_TYPE_WORDS or is_time_token(word):
        return False
    if word.isdigit():
        return False
    if require_capital and not (word[0].isupper() or word[0].isdigit()):
        return False
    return True
