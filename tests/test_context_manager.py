# =============================================================================
# Unit Tests — Conversation Context (extraction, summaries, session store)
# =============================================================================

import asyncio

from app.agents.context_extractor import (
    FinancialContext,
    extract_categories,
    extract_context,
    extract_customers,
    extract_from_text,
    extract_query_types,
    extract_time_periods,
)
from app.agents.context_manager import (
    ContextManager,
    ContextSummary,
    Turn,
    build_summary,
    merge_summaries,
    truncate_summary,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    try:
        loop = asyncio.get_event_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Test: Entity extraction
# ---------------------------------------------------------------------------


class TestExtraction:
    QUERY = "show transactions related to marketing for Nova Creations"

    def test_customer_after_for(self):
        assert extract_customers(self.QUERY) == ["Nova Creations"]

    def test_customer_keyword(self):
        assert extract_customers("costs of customer Acme Holding in 2024") == [
            "Acme Holding",
        ]

    def test_category_excludes_customer(self):
        assert extract_categories(
            self.QUERY, exclude=["Nova Creations"],
        ) == ["marketing"]

    def test_capture_skips_leading_article(self):
        assert extract_categories("what about the travel budget") == [
            "travel budget",
        ]

    def test_short_phrases_are_dropped(self):
        assert extract_customers("for ABC") == []

    def test_time_periods(self):
        assert extract_time_periods(
            "spending in Q3 2024 versus last month and May"
        ) == ["Q3", "2024", "last month", "May"]

    def test_lowercase_may_is_not_a_month(self):
        assert extract_time_periods("may I see the costs") == []

    def test_query_types_including_dutch(self):
        assert extract_query_types("Toon kosten en transacties") == [
            "costs", "transactions",
        ]

    def test_response_customers_must_be_capitalised(self):
        text = "These payments for office supplies were made for Nova Creations."
        assert extract_customers(text, from_response=True) == ["Nova Creations"]

    def test_extract_from_text(self):
        context = extract_from_text(self.QUERY + " in 2025")
        assert context.customers == ["Nova Creations"]
        assert context.categories == ["marketing"]
        assert context.time_periods == ["2025"]
        assert context.query_types == ["transactions"]


class TestExtractContext:
    def test_assistant_turns_come_first(self):
        turns = [
            Turn("user", "expenses for Bright Labs"),
            Turn("assistant", "Here are the expenses for Nova Creations."),
        ]
        context = extract_context(turns)
        assert context.customers == ["Nova Creations", "Bright Labs"]

    def test_window_limits_turns(self):
        turns = [Turn("user", "transactions for Old Customer")] + [
            Turn("user", "hello there") for _ in range(6)
        ]
        assert extract_context(turns, window=6).customers == []

    def test_lowercase_for_phrase_is_a_category(self):
        context = extract_context([Turn("user", "show transactions for marketing")])
        assert context.customers == []
        assert context.categories == ["marketing"]

    def test_customer_keyword_accepts_lowercase_names(self):
        context = extract_context([
            Turn("user", "costs for customer nova creations"),
        ])
        assert context.customers == ["nova creations"]
        assert context.categories == []

    def test_empty(self):
        assert extract_context([]).is_empty

    def test_extend_dedupes_case_insensitively(self):
        context = FinancialContext(customers=["Nova Creations"])
        context.extend(FinancialContext(customers=["nova creations", "Acme"]))
        assert context.customers == ["Nova Creations", "Acme"]


# ---------------------------------------------------------------------------
# Test: Summary rules
# ---------------------------------------------------------------------------


class TestSummaries:
    def test_build_and_render(self):
        summary = build_summary(
            "show transactions related to marketing for Nova Creations",
            "I found 3 transactions.",
        )
        assert summary.render() == (
            "Customers: Nova Creations | Categories: marketing | "
            "Query Type: Transaction Analysis"
        )

    def test_build_caps(self):
        summary = build_summary(
            "costs for Alpha Corp, for Beta Corp, for Gamma Corp in 2022 "
            "2023 2024",
            "",
        )
        assert summary.customers == ["Alpha Corp", "Beta Corp"]
        assert summary.time_periods == ["2022", "2023"]

    def test_merge_keeps_old_first_and_caps(self):
        existing = ContextSummary(
            customers=["A Co", "B Co"],
            categories=["rent"],
            query_type="Category Analysis",
        )
        new = ContextSummary(
            customers=["b co", "C Co", "D Co"],
            categories=["travel"],
            query_type="Expense Analysis",
        )
        merged = merge_summaries(existing, new)
        assert merged.customers == ["A Co", "B Co", "C Co"]
        assert merged.categories == ["rent", "travel"]
        assert merged.query_type == "Expense Analysis"

    def test_merge_keeps_old_query_type_when_new_has_none(self):
        merged = merge_summaries(
            ContextSummary(query_type="Category Analysis"), ContextSummary(),
        )
        assert merged.query_type == "Category Analysis"

    def test_truncate(self):
        assert truncate_summary("abcdefghij", 5) == "ab..."
        assert truncate_summary("abc", 5) == "abc"


# ---------------------------------------------------------------------------
# Test: Session store
# ---------------------------------------------------------------------------


class TestContextManager:
    def test_turns_in_order(self):
        store = ContextManager()
        store.append_turn("s1", "user", "hello")
        store.append_turn("s1", "assistant", "hi")
        assert [t.role for t in store.get_turns("s1")] == ["user", "assistant"]

    def test_unknown_session_is_empty_and_not_created(self):
        store = ContextManager()
        assert store.get_turns("missing") == []
        assert store.get_summary("missing") == ""
        assert store.get_context("missing").is_empty
        assert not store.exists("missing")

    def test_update_summary(self):
        store = ContextManager()
        store.update_summary(
            "s1", "expenses for Nova Creations in 2025", "Total: 1,200.00",
        )
        rendered = store.update_summary(
            "s1", "what about category travel", "Travel costs were low.",
        )
        assert rendered.startswith("Customers: Nova Creations")
        assert "Categories: travel" in rendered
        assert "Time Periods: 2025" in rendered
        assert store.get_summary("s1") == rendered

    def test_summary_is_capped(self):
        store = ContextManager()
        long_name = "Abcdefghij " * 150
        store.update_summary("s1", f"expenses for {long_name}", "")
        assert len(store.get_summary("s1")) <= 1000
        assert store.get_summary("s1").endswith("...")
        assert len(store.get_condensed_summary("s1")) <= 300

    def test_ttl_eviction(self):
        clock = FakeClock()
        store = ContextManager(ttl_seconds=60, clock=clock)
        store.append_turn("s1", "user", "hello")
        clock.now += 61
        assert not store.exists("s1")
        assert len(store) == 0

    def test_access_refreshes_ttl(self):
        clock = FakeClock()
        store = ContextManager(ttl_seconds=60, clock=clock)
        store.append_turn("s1", "user", "hello")
        clock.now += 50
        store.append_turn("s1", "user", "again")
        clock.now += 50
        assert store.exists("s1")

    def test_expiry_follows_access_order(self):
        clock = FakeClock()
        store = ContextManager(ttl_seconds=60, clock=clock)
        store.append_turn("a", "user", "1")
        store.append_turn("b", "user", "2")
        clock.now += 50
        store.append_turn("c", "user", "3")
        store.append_turn("a", "user", "4")
        clock.now += 20
        assert not store.exists("b")
        assert store.exists("a")
        assert store.exists("c")
        assert len(store) == 2

    def test_locked_idle_session_does_not_shield_later_ones(self):
        clock = FakeClock()
        store = ContextManager(ttl_seconds=60, clock=clock)
        lock = store.lock("busy")
        store.append_turn("idle", "user", "hi")
        _run(lock.acquire())
        try:
            clock.now += 120
            store.append_turn("new", "user", "hello")
            assert store.exists("busy")
            assert not store.exists("idle")
            assert store.exists("new")
        finally:
            lock.release()

    def test_lru_eviction(self):
        store = ContextManager(max_sessions=2)
        store.append_turn("a", "user", "1")
        store.append_turn("b", "user", "2")
        store.append_turn("a", "user", "3")
        store.append_turn("c", "user", "4")
        assert store.exists("a")
        assert not store.exists("b")
        assert store.exists("c")

    def test_locked_session_survives_eviction(self):
        clock = FakeClock()
        store = ContextManager(ttl_seconds=60, max_sessions=1, clock=clock)
        lock = store.lock("busy")
        _run(lock.acquire())
        try:
            clock.now += 120
            store.append_turn("other", "user", "hi")
            assert store.exists("busy")
        finally:
            lock.release()

    def test_clear(self):
        store = ContextManager()
        store.append_turn("s1", "user", "hello")
        assert store.clear("s1") is True
        assert store.clear("s1") is False
        assert store.get_turns("s1") == []
