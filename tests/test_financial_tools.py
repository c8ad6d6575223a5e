# =============================================================================
# Unit Tests — Financial Function Catalog
# =============================================================================
#
# Argument adapters, date windows, SQL screening and catalog dispatch.
# Database access goes through a small fake session; no PostgreSQL needed.
# =============================================================================

import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError

from app.errors import (
    FunctionNotFoundError,
    ReadOnlyQueryError,
    StoreError,
    ToolTimeoutError,
)
from app.services.financial_tools import (
    CATALOG,
    ToolContext,
    classify_anomaly,
    get_tool,
    invoke_tool,
    parse_date_argument,
    parse_decimal_argument,
    parse_float_argument,
    parse_int_argument,
    parse_str_argument,
    resolve_customer_name,
    resolve_date_window,
    search_categories,
    tool_definitions,
    validate_readonly_sql,
)
from app.services.result_formatting import ResultKind


def _run(coro):
    """Helper to run async functions in sync tests."""
    try:
        loop = asyncio.get_event_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


class FakeResult:
    def __init__(self, rows=(), scalars=()):
        self._rows = list(rows)
        self._scalars = list(scalars)

    def all(self):
        return self._rows

    def scalars(self):
        return iter(self._scalars)


class FakeSession:
    """Records executed statements and replays canned results."""

    def __init__(self, results=(), error: Exception | None = None):
        self.statements = []
        self._results = list(results)
        self._error = error

    async def execute(self, stmt):
        self.statements.append(stmt)
        if self._error is not None:
            raise self._error
        return self._results.pop(0) if self._results else FakeResult()

    @asynccontextmanager
    async def begin(self):
        yield self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def _context(session: FakeSession) -> ToolContext:
    embedder = AsyncMock()
    embedder.embed.return_value = [0.1, 0.2]
    return ToolContext(session_factory=lambda: session, embedder=embedder)


# ---------------------------------------------------------------------------
# Test: Argument Adapters
# ---------------------------------------------------------------------------


class TestParseDateArgument:
    def test_iso_string(self):
        assert parse_date_argument("2025-04-01") == date(2025, 4, 1)

    def test_iso_datetime_string(self):
        assert parse_date_argument("2025-04-01T13:45:00") == date(2025, 4, 1)

    def test_free_form(self):
        assert parse_date_argument("1 April 2025") == date(2025, 4, 1)

    def test_date_and_datetime_objects(self):
        assert parse_date_argument(date(2025, 1, 2)) == date(2025, 1, 2)
        assert parse_date_argument(datetime(2025, 1, 2, 9)) == date(2025, 1, 2)

    def test_malformed_is_absent(self):
        assert parse_date_argument("not a date at all") is None

    def test_empty_and_none(self):
        assert parse_date_argument("") is None
        assert parse_date_argument(None) is None

    def test_non_string_is_absent(self):
        assert parse_date_argument(20250401) is None


class TestParseIntArgument:
    def test_numeric_string(self):
        assert parse_int_argument("7", 5) == 7

    def test_float_string_truncates(self):
        assert parse_int_argument("7.9", 5) == 7

    def test_garbage_falls_back(self):
        assert parse_int_argument("seven", 5) == 5

    def test_below_minimum_falls_back(self):
        assert parse_int_argument(0, 5) == 5

    def test_above_maximum_is_clamped(self):
        assert parse_int_argument(500, 5, maximum=100) == 100

    def test_bool_is_rejected(self):
        assert parse_int_argument(True, 5) == 5

    def test_none_default(self):
        assert parse_int_argument(None, None) is None

    @pytest.mark.parametrize("value", ["1e400", "inf", "-inf", "nan"])
    def test_non_finite_falls_back(self, value):
        assert parse_int_argument(value, 10) == 10

    def test_huge_integer_is_clamped(self):
        assert parse_int_argument(10 ** 400, 10, maximum=100) == 100


class TestOtherAdapters:
    def test_decimal(self):
        assert parse_decimal_argument("12.50") == Decimal("12.50")
        assert parse_decimal_argument(3) == Decimal("3")
        assert parse_decimal_argument("twelve") is None
        assert parse_decimal_argument(None) is None

    def test_float_non_positive_uses_default(self):
        assert parse_float_argument("3", 2.0) == 3.0
        assert parse_float_argument(0, 2.0) == 2.0
        assert parse_float_argument("x", 2.0) == 2.0

    def test_non_finite_numbers_use_default(self):
        assert parse_float_argument("1e400", 2.0) == 2.0
        assert parse_float_argument("nan", 2.0) == 2.0
        assert parse_float_argument(10 ** 400, 2.0) == 2.0
        assert parse_decimal_argument("NaN") is None
        assert parse_decimal_argument("Infinity") is None

    def test_str(self):
        assert parse_str_argument("  Nova  ") == "Nova"
        assert parse_str_argument("   ") is None
        assert parse_str_argument(None) is None


class TestResolveDateWindow:
    def test_explicit_range(self):
        assert resolve_date_window(
            date(2025, 1, 1), date(2025, 3, 31), 2024,
        ) == (date(2025, 1, 1), date(2025, 3, 31))

    def test_reversed_range_is_swapped(self):
        assert resolve_date_window(
            date(2025, 3, 31), date(2025, 1, 1), None,
        ) == (date(2025, 1, 1), date(2025, 3, 31))

    def test_year(self):
        assert resolve_date_window(None, None, 2024) == (
            date(2024, 1, 1), date(2024, 12, 31),
        )

    def test_half_open_range_uses_year(self):
        assert resolve_date_window(date(2025, 5, 1), None, 2023) == (
            date(2023, 1, 1), date(2023, 12, 31),
        )

    def test_defaults_to_current_year(self):
        assert resolve_date_window(None, None, None, today=date(2026, 6, 15)) == (
            date(2026, 1, 1), date(2026, 12, 31),
        )


# ---------------------------------------------------------------------------
# Test: Read-only SQL screening
# ---------------------------------------------------------------------------


class TestValidateReadonlySql:
    def test_select_passes(self):
        assert validate_readonly_sql(
            "SELECT count(*) FROM bank_transactions;"
        ) == "SELECT count(*) FROM bank_transactions"

    def test_with_passes(self):
        sql = "WITH t AS (SELECT 1 AS n) SELECT n FROM t"
        assert validate_readonly_sql(sql) == sql

    @pytest.mark.parametrize(
        "sql",
        [
            "DELETE FROM bank_transactions",
            "UPDATE bank_transactions SET amount = 0",
            "SELECT 1; DROP TABLE bank_transactions",
            "WITH x AS (DELETE FROM bank_transactions RETURNING *) SELECT * FROM x",
            "",
            "   ;  ",
        ],
    )
    def test_rejected(self, sql):
        with pytest.raises(ReadOnlyQueryError):
            validate_readonly_sql(sql)

    def test_column_names_containing_keywords_pass(self):
        sql = "SELECT created_at, updated_at FROM embedding_runs"
        assert validate_readonly_sql(sql) == sql


# ---------------------------------------------------------------------------
# Test: Anomaly labels
# ---------------------------------------------------------------------------


class TestClassifyAnomaly:
    MAX = Decimal("100")
    MIN = Decimal("10")

    def test_high(self):
        assert classify_anomaly(Decimal("250"), self.MAX, self.MIN, 2.0) == "HIGH"

    def test_low(self):
        assert classify_anomaly(Decimal("4"), self.MAX, self.MIN, 2.0) == "LOW"

    def test_above(self):
        assert classify_anomaly(Decimal("150"), self.MAX, self.MIN, 2.0) == "Above"

    def test_below(self):
        assert classify_anomaly(Decimal("6"), self.MAX, self.MIN, 2.0) == "Below"

    def test_normal(self):
        assert classify_anomaly(Decimal("50"), self.MAX, self.MIN, 2.0) == "Normal"

    def test_missing_history(self):
        assert classify_anomaly(Decimal("50"), None, None, 2.0) == "Normal"


# ---------------------------------------------------------------------------
# Test: Customer resolution
# ---------------------------------------------------------------------------


class TestResolveCustomerName:
    CANDIDATES = ["Nova Creations", "Nova Creations BV", "Supernova Ltd"]

    def _resolve(self, name, candidates=None):
        session = FakeSession([
            FakeResult(scalars=self.CANDIDATES if candidates is None else candidates)
        ])
        return _run(resolve_customer_name(session, name))

    def test_exact_match_case_insensitive(self):
        assert self._resolve("nova creations") == "Nova Creations"

    def test_prefix_match(self):
        assert self._resolve("Nova Creations B") == "Nova Creations BV"

    def test_substring_match(self):
        assert self._resolve("pernova", ["Supernova Ltd"]) == "Supernova Ltd"

    def test_no_match_keeps_input(self):
        assert self._resolve("Acme", []) == "Acme"

    def test_empty_name(self):
        assert _run(resolve_customer_name(FakeSession(), None)) is None


# ---------------------------------------------------------------------------
# Test: Category search
# ---------------------------------------------------------------------------


class TestSearchCategories:
    def test_empty_query_lists_at_least_fifty(self):
        session = FakeSession()
        embedder = AsyncMock()

        result = _run(search_categories(session, embedder, "", top_categories=5))

        embedder.embed.assert_not_called()
        assert result.kind is ResultKind.CATEGORIES
        compiled = session.statements[-1].compile(dialect=postgresql.dialect())
        assert "FROM category_mappings" in str(compiled)
        assert 50 in compiled.params.values()

    def test_all_in_query_raises_limit(self):
        session = FakeSession()
        embedder = AsyncMock()
        embedder.embed.return_value = [0.1, 0.2]

        _run(search_categories(session, embedder, "all travel", top_categories=5))

        embedder.embed.assert_awaited_once_with("all travel")
        compiled = session.statements[-1].compile(dialect=postgresql.dialect())
        assert 50 in compiled.params.values()


# ---------------------------------------------------------------------------
# Test: Catalog
# ---------------------------------------------------------------------------


class TestCatalog:
    def test_expected_functions(self):
        assert set(CATALOG) == {
            "get_top_expense_categories",
            "get_top_transactions_for_category",
            "search_categories",
            "get_category_spending",
            "run_readonly_query",
            "analyze_counterparty_activity",
            "analyze_transaction_anomalies",
            "search_transactions",
        }

    def test_unknown_function(self):
        with pytest.raises(FunctionNotFoundError) as exc_info:
            get_tool("transfer_money")
        assert exc_info.value.name == "transfer_money"

    def test_definitions_are_json_schemas(self):
        for definition in tool_definitions():
            assert definition["parameters"]["type"] == "object"
            assert definition["description"]

    def test_invoke_unknown_function(self):
        with pytest.raises(FunctionNotFoundError):
            _run(invoke_tool(_context(FakeSession()), "nope", {}))

    def test_invoke_wraps_database_errors(self):
        session = FakeSession(error=SQLAlchemyError("connection reset"))
        with pytest.raises(StoreError):
            _run(invoke_tool(
                _context(session), "get_top_expense_categories", {"year": 2024},
            ))

    def test_invoke_tolerates_bad_arguments(self):
        session = FakeSession()
        result = _run(invoke_tool(
            _context(session),
            "get_top_expense_categories",
            {"start_date": "garbage", "top_n": "lots", "year": "2024"},
        ))
        assert result.kind is ResultKind.CATEGORIES
        assert "2024-01-01" in result.title

    def test_invoke_tolerates_overflowing_counts(self):
        session = FakeSession()
        result = _run(invoke_tool(
            _context(session),
            "get_top_expense_categories",
            {"top_n": "1e400", "year": 2024},
        ))
        assert result.kind is ResultKind.CATEGORIES

    def test_readonly_rejects_writes(self):
        with pytest.raises(ReadOnlyQueryError):
            _run(invoke_tool(
                _context(FakeSession()),
                "run_readonly_query",
                {"sql": "DELETE FROM bank_transactions"},
            ))

    def test_readonly_statement_timeout(self):
        session = FakeSession(
            error=SQLAlchemyError("canceling statement due to statement timeout")
        )
        with pytest.raises(ToolTimeoutError):
            _run(invoke_tool(
                _context(session),
                "run_readonly_query",
                {"sql": "SELECT * FROM bank_transactions"},
            ))
