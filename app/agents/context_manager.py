# =============================================================================
# Conversational Context Manager — Per-Session Turns and Context Summary
# =============================================================================
#
# Owns every conversation's state: the ordered turn list and a bounded
# context summary ("Customers: ... | Categories: ... | Time Periods: ... |
# Query Type: ...") that is folded forward after each answered question.
#
# CONCURRENCY MODEL:
#   - One in-process map keyed by session id (an OrderedDict used as an
#     LRU list).
#   - Each session carries its own asyncio.Lock. The orchestration loop
#     holds it for a whole request, so overlapping requests for the SAME
#     session serialise while different sessions never contend.
#   - Store methods are synchronous (no await inside), so each one is
#     atomic with respect to the event loop.
#
# EVICTION:
#   - Idle TTL: a session untouched for `session_ttl_seconds` is dropped
#     lazily, the next time the store is accessed.
#   - Capacity: past `session_max_count`, the least recently used
#     unlocked sessions are dropped.
#
# SUMMARY RULES:
#   build  caps: customers 2, categories 3, time periods 2
#   merge  caps: customers 3, categories 5, time periods 3; old values
#          first, then new, de-duplicated; the newer query type wins
#   render capped at `summary_max_chars` with a "..." marker
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from app.agents.context_extractor import (
    FinancialContext,
    dedupe,
    extract_context,
    extract_from_text,
)
from app.config import settings

logger = logging.getLogger(__name__)

BUILD_CAPS = {"customers": 2, "categories": 3, "time_periods": 2}
MERGE_CAPS = {"customers": 3, "categories": 5, "time_periods": 3}

_QUERY_TYPE_LABELS = (
    ("transaction", "Transaction Analysis"),
    ("category", "Category Analysis"),
    ("expense", "Expense Analysis"),
)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class Turn:
    role: str                  # "user" | "assistant"
    content: str
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


@dataclass
class ContextSummary:
    customers: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    time_periods: list[str] = field(default_factory=list)
    query_type: str | None = None

    def render(self) -> str:
        parts = []
        if self.customers:
            parts.append("Customers: " + ", ".join(self.customers))
        if self.categories:
            parts.append("Categories: " + ", ".join(self.categories))
        if self.time_periods:
            parts.append("Time Periods: " + ", ".join(self.time_periods))
        if self.query_type:
            parts.append(f"Query Type: {self.query_type}")
        return " | ".join(parts)


@dataclass
class ConversationSession:
    session_id: str
    turns: list[Turn] = field(default_factory=list)
    summary: ContextSummary | None = None
    last_access: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


# ---------------------------------------------------------------------------
# Summary Rules
# ---------------------------------------------------------------------------


def build_summary(query: str, response: str) -> ContextSummary:
    """Summarise one question/answer pair, query signals first."""
    from_query = extract_from_text(query)
    from_response = extract_from_text(response, from_response=True)

    def take(name: str) -> list[str]:
        values = getattr(from_query, name) + getattr(from_response, name)
        return dedupe(values)[: BUILD_CAPS[name]]

    return ContextSummary(
        customers=take("customers"),
        categories=take("categories"),
        time_periods=take("time_periods"),
        query_type=_query_type_label(query, response),
    )


def merge_summaries(
    existing: ContextSummary | None,
    new: ContextSummary,
) -> ContextSummary:
    """Old values first, then new ones, each list capped; newer type wins."""
    if existing is None:
        return new

    def merged(name: str) -> list[str]:
        values = getattr(existing, name) + getattr(new, name)
        return dedupe(values)[: MERGE_CAPS[name]]

    return ContextSummary(
        customers=merged("customers"),
        categories=merged("categories"),
        time_periods=merged("time_periods"),
        query_type=new.query_type or existing.query_type,
    )


def truncate_summary(text: str, max_chars: int) -> str:
    """Cut to `max_chars` characters, marking the cut with '...'."""
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 3)] + "..."


# ---------------------------------------------------------------------------
# Session Store
# ---------------------------------------------------------------------------


class ContextManager:
    """
    Process-wide conversation store.

    Args:
        ttl_seconds: Idle time after which a session is evicted.
        max_sessions: Capacity before least-recently-used eviction.
        window_turns: How many recent turns feed context extraction.
        clock: Monotonic time source (injectable for tests).
    """

    def __init__(
        self,
        ttl_seconds: float | None = None,
        max_sessions: int | None = None,
        window_turns: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sessions: OrderedDict[str, ConversationSession] = OrderedDict()
        self._ttl = ttl_seconds or settings.session_ttl_seconds
        self._max_sessions = max_sessions or settings.session_max_count
        self._window = window_turns or settings.context_window_turns
        self._clock = clock

    # --- session access ---

    def lock(self, session_id: str) -> asyncio.Lock:
        """The session's mutual-exclusion lock (creates the session)."""
        return self._session(session_id).lock

    def exists(self, session_id: str) -> bool:
        self._evict_expired()
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # --- turns ---

    def append_turn(self, session_id: str, role: str, text: str) -> Turn:
        turn = Turn(role=role, content=text)
        self._session(session_id).turns.append(turn)
        return turn

    def get_turns(self, session_id: str) -> list[Turn]:
        if not self.exists(session_id):
            return []
        return list(self._session(session_id).turns)

    def get_context(self, session_id: str) -> FinancialContext:
        """Entities extracted from the session's recent turns."""
        return extract_context(self.get_turns(session_id), self._window)

    # --- summary ---

    def get_summary(self, session_id: str) -> str:
        if not self.exists(session_id):
            return ""
        summary = self._session(session_id).summary
        if summary is None:
            return ""
        return truncate_summary(summary.render(), settings.summary_max_chars)

    def get_condensed_summary(self, session_id: str) -> str:
        return truncate_summary(
            self.get_summary(session_id),
            settings.condensed_summary_max_chars,
        )

    def update_summary(self, session_id: str, query: str, response: str) -> str:
        """Fold one question/answer pair into the session summary."""
        session = self._session(session_id)
        session.summary = merge_summaries(
            session.summary, build_summary(query, response),
        )
        rendered = self.get_summary(session_id)
        logger.debug("Context summary for %s: %s", session_id, rendered)
        return rendered

    def clear(self, session_id: str) -> bool:
        """Forget a session. Returns whether it existed."""
        removed = self._sessions.pop(session_id, None)
        if removed is not None:
            logger.info("Cleared session %s", session_id)
        return removed is not None

    # --- internals ---

    def _session(self, session_id: str) -> ConversationSession:
        self._evict_expired()
        now = self._clock()
        session = self._sessions.get(session_id)
        if session is None:
            session = ConversationSession(session_id=session_id)
            self._sessions[session_id] = session
        session.last_access = now
        self._sessions.move_to_end(session_id)
        self._evict_overflow(keep=session_id)
        return session

    def _evict_expired(self) -> None:
        # Sessions are kept in access order, so the scan stops at the
        # first one still inside the TTL
        cutoff = self._clock() - self._ttl
        expired = []
        for sid, session in self._sessions.items():
            if session.last_access >= cutoff:
                break
            if not session.lock.locked():
                expired.append(sid)
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("Evicted %d idle sessions", len(expired))

    def _evict_overflow(self, keep: str) -> None:
        excess = len(self._sessions) - self._max_sessions
        if excess <= 0:
            return
        victims = []
        # Oldest first
        for sid, session in self._sessions.items():
            if len(victims) == excess:
                break
            if sid == keep or session.lock.locked():
                continue
            victims.append(sid)
        for sid in victims:
            del self._sessions[sid]
            logger.info("Evicted least recently used session %s", sid)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _query_type_label(query: str, response: str) -> str | None:
    text = f"{query}\n{response}".lower()
    for needle, label in _QUERY_TYPE_LABELS:
        if needle in text:
            return label
    return None


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_store: ContextManager | None = None


def get_context_manager() -> ContextManager:
    """Process-wide singleton used by the API."""
    global _store
    if _store is None:
        _store = ContextManager()
    return _store
