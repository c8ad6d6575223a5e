# =============================================================================
# Financial Function Catalog — Structured Tools for the Orchestration Loop
# =============================================================================
#
# The model can call exactly the functions registered in CATALOG. Each
# entry pairs a JSON-schema argument description (sent to the model) with
# an async handler that:
#
#   1. normalises the loosely-typed argument bag through the parse-or-
#      default adapters below (dates may arrive as "2025-04-01", "April 1
#      2025", a datetime, or garbage),
#   2. calls a strictly typed analysis function,
#   3. returns one of the four tagged result shapes from
#      result_formatting.py.
#
# ARCHITECTURE:
#   Argument adapters   parse_date_argument / parse_int_argument / ...
#   Typed functions     get_top_expense_categories, search_categories, ...
#   Catalog             ToolSpec(name, description, parameters, handler)
#   Lookup              get_tool(name) → ToolSpec | FunctionNotFoundError
#
# DESIGN DECISION: A malformed date is treated as absent (logged, never
# raised). Date windows then fall back to the current calendar year, so
# one bad argument never fails the whole request.
#
# DESIGN DECISION: Each tool opens its own short session from the
# factory in ToolContext. The free-form query tool needs a fresh
# transaction to switch it to READ ONLY before its first statement.
# =============================================================================

from __future__ import annotations

import logging
import math
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta
from sqlalchemy import distinct, extract, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.db.models import CategoryMapping, Transaction
from app.errors import (
    FunctionNotFoundError,
    ReadOnlyQueryError,
    StoreError,
    ToolTimeoutError,
)
from app.services.embedder import EmbeddingProvider
from app.services.result_formatting import (
    CategoryHit,
    CategoryListResult,
    SpendingBreakdownResult,
    SpendingLine,
    TabularResult,
    ToolResult,
    TransactionListResult,
    TransactionRow,
)
from app.services.similarity_search import (
    SearchFilters,
    distance_to_similarity,
    search_by_text,
)

logger = logging.getLogger(__name__)

# Direction marker for money leaving the account
DEBIT = "Af"


# ---------------------------------------------------------------------------
# Argument Adapters — parse-or-default at the catalog boundary
# ---------------------------------------------------------------------------


def parse_date_argument(value, name: str = "date") -> date | None:
    """
    Leniently parse a date argument. Unparsable input becomes None.

    Accepts date/datetime objects, ISO strings and the free-form formats
    python-dateutil understands ("1 April 2025", "2025/04/01", ...).
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        if value not in ("", None):
            logger.warning("Ignoring malformed %s argument: %r", name, value)
        return None
    raw = value.strip()
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        pass
    try:
        return date_parser.parse(raw).date()
    except (ValueError, OverflowError):
        logger.warning("Ignoring malformed %s argument: %r", name, value)
        return None


def parse_int_argument(
    value,
    default: int | None,
    minimum: int | None = 1,
    maximum: int | None = None,
) -> int | None:
    """Parse an integer argument; fall back to `default` when invalid."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return default
    try:
        parsed = int(float(value)) if isinstance(value, (str, float)) else int(value)
    except (TypeError, ValueError, OverflowError):
        logger.warning("Ignoring malformed integer argument: %r", value)
        return default
    if minimum is not None and parsed < minimum:
        return default
    if maximum is not None and parsed > maximum:
        return maximum
    return parsed


def parse_decimal_argument(value) -> Decimal | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning("Ignoring malformed amount argument: %r", value)
        return None
    if not parsed.is_finite():
        logger.warning("Ignoring non-finite amount argument: %r", value)
        return None
    return parsed


def parse_float_argument(value, default: float) -> float:
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError, OverflowError):
        logger.warning("Ignoring malformed number argument: %r", value)
        return default
    return parsed if math.isfinite(parsed) and parsed > 0 else default


def parse_str_argument(value) -> str | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def resolve_date_window(
    start_date: date | None,
    end_date: date | None,
    year: int | None,
    today: date | None = None,
) -> tuple[date, date]:
    """
    Inclusive date window: explicit range, else the given year, else the
    current calendar year.
    """
    if start_date is not None and end_date is not None:
        if start_date > end_date:
            start_date, end_date = end_date, start_date
        return start_date, end_date
    if year is not None:
        return date(year, 1, 1), date(year, 12, 31)
    current = (today or date.today()).year
    return date(current, 1, 1), date(current, 12, 31)


# ---------------------------------------------------------------------------
# Customer Name Resolution
# ---------------------------------------------------------------------------


async def resolve_customer_name(
    session: AsyncSession,
    customer_name: str | None,
) -> str | None:
    """
    Map a user-typed customer name to a stored one.

    Preference: exact (case-insensitive) → prefix → substring. Returns the
    input unchanged when nothing matches, so the filter yields no rows
    rather than silently widening to all customers.
    """
    if not customer_name:
        return None
    needle = customer_name.strip()
    pattern = "%" + _escape_like(needle) + "%"
    stmt = (
        select(distinct(Transaction.customer_name))
        .where(Transaction.customer_name.ilike(pattern, escape="\\"))
        .order_by(Transaction.customer_name)
        .limit(50)
    )
    candidates = [c for c in (await session.execute(stmt)).scalars() if c]
    lowered = needle.lower()
    for candidate in candidates:
        if candidate.lower() == lowered:
            return candidate
    for candidate in candidates:
        if candidate.lower().startswith(lowered):
            return candidate
    if candidates:
        return candidates[0]
    logger.info("No stored customer matches '%s'", needle)
    return needle


# ---------------------------------------------------------------------------
# Typed Analysis Functions
# ---------------------------------------------------------------------------


async def get_top_expense_categories(
    session: AsyncSession,
    start_date: date | None = None,
    end_date: date | None = None,
    year: int | None = None,
    customer_name: str | None = None,
    top_n: int = 5,
) -> CategoryListResult:
    """Rank categories by total debit spending within a date window."""
    start, end = resolve_date_window(start_date, end_date, year)
    customer = await resolve_customer_name(session, customer_name)

    total = func.sum(func.abs(Transaction.amount)).label("total_amount")
    count = func.count().label("transaction_count")
    stmt = (
        select(
            Transaction.category_code,
            CategoryMapping.description,
            CategoryMapping.short_description,
            total,
            count,
        )
        .outerjoin(
            CategoryMapping,
            CategoryMapping.code == Transaction.category_code,
        )
        .where(
            Transaction.debit_credit == DEBIT,
            Transaction.category_code.is_not(None),
            Transaction.transaction_date >= start,
            Transaction.transaction_date <= end,
        )
        .group_by(
            Transaction.category_code,
            CategoryMapping.description,
            CategoryMapping.short_description,
        )
        .order_by(total.desc())
        .limit(top_n)
    )
    if customer:
        stmt = stmt.where(Transaction.customer_name == customer)

    rows = (await session.execute(stmt)).all()
    return CategoryListResult(
        title=(
            f"Top expense categories {start.isoformat()} to {end.isoformat()}"
            + (f" for {customer}" if customer else "")
        ),
        categories=[
            CategoryHit(
                code=row.category_code,
                description=row.description,
                short_description=row.short_description,
                total_amount=row.total_amount,
                transaction_count=row.transaction_count,
            )
            for row in rows
        ],
    )


async def search_categories(
    session: AsyncSession,
    embedder: EmbeddingProvider,
    category_query: str | None,
    top_categories: int = 5,
    customer_name: str | None = None,
) -> CategoryListResult:
    """
    Find the categories closest to `category_query` by category embedding.

    An empty query lists categories instead of searching, and a query
    asking for "all" categories raises the limit to at least 50.
    """
    query = (category_query or "").strip()
    if not query or re.search(r"\ball\b", query.lower()):
        top_categories = max(top_categories, 50)
    customer = await resolve_customer_name(session, customer_name)

    if not query:
        return await _list_categories(session, top_categories, customer)

    vector = await embedder.embed(query)
    distance = func.min(
        Transaction.category_embedding.cosine_distance(vector)
    ).label("distance")
    stmt = (
        select(
            Transaction.category_code,
            CategoryMapping.description,
            CategoryMapping.short_description,
            distance,
        )
        .outerjoin(
            CategoryMapping,
            CategoryMapping.code == Transaction.category_code,
        )
        .where(
            Transaction.category_embedding.is_not(None),
            Transaction.category_code.is_not(None),
        )
        .group_by(
            Transaction.category_code,
            CategoryMapping.description,
            CategoryMapping.short_description,
        )
        .order_by(distance.asc())
        .limit(top_categories)
    )
    if customer:
        stmt = stmt.where(Transaction.customer_name == customer)

    rows = (await session.execute(stmt)).all()
    return CategoryListResult(
        title=f"Categories matching '{query}'"
        + (f" for {customer}" if customer else ""),
        categories=[
            CategoryHit(
                code=row.category_code,
                description=row.description,
                short_description=row.short_description,
                similarity=distance_to_similarity(float(row.distance)),
            )
            for row in rows
        ],
    )


async def get_top_transactions_for_category(
    session: AsyncSession,
    embedder: EmbeddingProvider,
    category_query: str,
    start_date: date | None = None,
    end_date: date | None = None,
    year: int | None = None,
    top_n: int = 10,
    customer_name: str | None = None,
    top_categories: int = 3,
) -> TransactionListResult:
    """Discover the closest categories, then list their latest transactions."""
    categories = await search_categories(
        session, embedder, category_query, top_categories, customer_name,
    )
    title = f"Transactions for '{category_query}'"
    codes = [hit.code for hit in categories.categories]
    if not codes:
        return TransactionListResult(title=title, transactions=[])

    customer = await resolve_customer_name(session, customer_name)
    stmt = (
        select(
            Transaction.description,
            Transaction.amount,
            Transaction.transaction_date,
            Transaction.category_code,
            CategoryMapping.description.label("category_description"),
            Transaction.customer_name,
            Transaction.bank_account_name,
        )
        .outerjoin(
            CategoryMapping,
            CategoryMapping.code == Transaction.category_code,
        )
        .where(Transaction.category_code.in_(codes))
        .order_by(Transaction.transaction_date.desc().nulls_last())
        .limit(top_n)
    )
    if start_date is not None and end_date is not None:
        stmt = stmt.where(
            Transaction.transaction_date >= start_date,
            Transaction.transaction_date <= end_date,
        )
    elif year is not None:
        stmt = stmt.where(extract("year", Transaction.transaction_date) == year)
    if customer:
        stmt = stmt.where(Transaction.customer_name == customer)

    rows = (await session.execute(stmt)).all()
    return TransactionListResult(
        title=title + (f" for {customer}" if customer else ""),
        transactions=[
            TransactionRow(
                description=row.description,
                amount=row.amount,
                transaction_date=row.transaction_date,
                category_code=row.category_code,
                category_description=row.category_description,
                customer_name=row.customer_name,
                bank_account_name=row.bank_account_name,
            )
            for row in rows
        ],
    )


async def get_category_spending(
    session: AsyncSession,
    embedder: EmbeddingProvider,
    category_query: str,
    start_date: date | None = None,
    end_date: date | None = None,
    year: int | None = None,
    customer_name: str | None = None,
) -> SpendingBreakdownResult:
    """Total debit spending for the categories closest to `category_query`."""
    start, end = resolve_date_window(start_date, end_date, year)
    customer = await resolve_customer_name(session, customer_name)
    categories = await search_categories(
        session, embedder, category_query, 5, customer_name,
    )
    codes = [hit.code for hit in categories.categories]
    result = SpendingBreakdownResult(
        category_query=category_query,
        start_date=start,
        end_date=end,
        customer_name=customer,
        lines=[],
    )
    if not codes:
        return result

    amount = func.sum(func.abs(Transaction.amount)).label("amount")
    stmt = (
        select(
            Transaction.category_code,
            CategoryMapping.description,
            CategoryMapping.short_description,
            amount,
            func.count().label("transaction_count"),
        )
        .outerjoin(
            CategoryMapping,
            CategoryMapping.code == Transaction.category_code,
        )
        .where(
            Transaction.debit_credit == DEBIT,
            Transaction.category_code.in_(codes),
            Transaction.transaction_date >= start,
            Transaction.transaction_date <= end,
        )
        .group_by(
            Transaction.category_code,
            CategoryMapping.description,
            CategoryMapping.short_description,
        )
        .order_by(amount.desc())
    )
    if customer:
        stmt = stmt.where(Transaction.customer_name == customer)

    for row in (await session.execute(stmt)).all():
        result.lines.append(SpendingLine(
            code=row.category_code,
            description=row.description,
            short_description=row.short_description,
            amount=row.amount or Decimal("0"),
            transaction_count=row.transaction_count,
        ))
    return result


_FORBIDDEN_SQL = re.compile(
    r"\b(insert|update|delete|drop|alter|create|truncate|grant|revoke|"
    r"copy|merge|call|vacuum|comment|lock|refresh|reindex|cluster|do)\b",
    re.IGNORECASE,
)


def validate_readonly_sql(sql: str) -> str:
    """
    Return the normalised statement, or raise ReadOnlyQueryError.

    Only one SELECT (or WITH ... SELECT) statement is allowed. The
    keyword screen is a first line; the READ ONLY transaction is the
    enforcement.
    """
    statement = (sql or "").strip().rstrip(";").strip()
    if not statement:
        raise ReadOnlyQueryError("Empty query")
    if ";" in statement:
        raise ReadOnlyQueryError("Only a single statement is allowed")
    first_word = statement.split(None, 1)[0].lower()
    if first_word not in ("select", "with"):
        raise ReadOnlyQueryError("Only SELECT queries are allowed")
    match = _FORBIDDEN_SQL.search(statement)
    if match:
        raise ReadOnlyQueryError(
            f"Keyword '{match.group(1).upper()}' is not allowed"
        )
    return statement


async def run_readonly_query(session: AsyncSession, sql: str) -> TabularResult:
    """
    Execute one SELECT in a READ ONLY transaction with a statement timeout.

    `session` must not have started a transaction yet.
    """
    statement = validate_readonly_sql(sql)
    timeout_ms = int(settings.tool_timeout_seconds * 1000)
    async with session.begin():
        await session.execute(text("SET TRANSACTION READ ONLY"))
        await session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))
        result = await session.execute(text(statement))
        columns = list(result.keys())
        rows = [tuple(row) for row in result.all()]
    return TabularResult(title="Query Results", columns=columns, rows=rows)


async def analyze_counterparty_activity(
    session: AsyncSession,
    current_period_days: int = 30,
    historical_period_days: int = 365,
    customer_name: str | None = None,
    min_amount: Decimal | None = None,
    max_amount: Decimal | None = None,
    transaction_type: str | None = None,
    today: date | None = None,
) -> TabularResult:
    """Counterparties active in the current period but not historically."""
    current_end = today or date.today()
    current_start = current_end - timedelta(days=current_period_days)
    historical_start = current_start - timedelta(days=historical_period_days)
    customer = await resolve_customer_name(session, customer_name)

    def scoped(stmt, start: date, end: date):
        stmt = stmt.where(
            Transaction.transaction_date > start,
            Transaction.transaction_date <= end,
        )
        if customer:
            stmt = stmt.where(Transaction.customer_name == customer)
        if min_amount is not None:
            stmt = stmt.where(Transaction.amount >= min_amount)
        if max_amount is not None:
            stmt = stmt.where(Transaction.amount <= max_amount)
        if transaction_type:
            stmt = stmt.where(Transaction.debit_credit == transaction_type)
        return stmt

    historical_accounts = scoped(
        select(Transaction.bank_account_number)
        .where(Transaction.bank_account_number.is_not(None))
        .distinct(),
        historical_start,
        current_start,
    )
    stmt = scoped(
        select(
            Transaction.bank_account_number,
            Transaction.bank_account_name,
            Transaction.customer_name,
            Transaction.transaction_date,
            Transaction.amount,
            Transaction.description,
            Transaction.debit_credit,
        ).where(
            Transaction.bank_account_number.is_not(None),
            Transaction.bank_account_number.not_in(historical_accounts),
        ),
        current_start,
        current_end,
    ).order_by(
        Transaction.transaction_date.desc(), Transaction.amount.desc(),
    )

    rows = [tuple(row) for row in (await session.execute(stmt)).all()]
    return TabularResult(
        title="Counterparty Activity Analysis",
        columns=[
            "BankAccountNumber", "BankAccountName", "CustomerName",
            "TransactionDate", "Amount", "Description", "TransactionType",
        ],
        rows=rows,
        notes=[
            f"Periods: current {current_period_days} days, "
            f"historical {historical_period_days} days",
            f"Customer: {customer or 'All'}",
        ],
        footer=(
            "These counterparties appeared in the current period but were "
            "not active in the historical period."
        ),
    )


async def analyze_transaction_anomalies(
    session: AsyncSession,
    period_days: int = 30,
    customer_name: str | None = None,
    threshold_multiplier: float = 2.0,
    transaction_type: str | None = None,
    today: date | None = None,
) -> TabularResult:
    """
    Compare current-period amounts against each counterparty's history.

    History is the 15 months before the current period; counterparties
    need at least 3 historical transactions to be profiled.
    """
    current_end = today or date.today()
    current_start = current_end - timedelta(days=period_days)
    historical_start = current_start - relativedelta(months=15)
    customer = await resolve_customer_name(session, customer_name)

    profile_stmt = (
        select(
            Transaction.bank_account_number.label("account"),
            func.max(Transaction.amount).label("historical_max"),
            func.min(Transaction.amount).label("historical_min"),
            func.avg(Transaction.amount).label("historical_avg"),
        )
        .where(
            Transaction.bank_account_number.is_not(None),
            Transaction.transaction_date > historical_start,
            Transaction.transaction_date <= current_start,
        )
        .group_by(Transaction.bank_account_number)
        .having(func.count() >= 3)
    )
    if customer:
        profile_stmt = profile_stmt.where(Transaction.customer_name == customer)
    if transaction_type:
        profile_stmt = profile_stmt.where(
            Transaction.debit_credit == transaction_type
        )
    profiles = profile_stmt.subquery("profiles")

    stmt = (
        select(
            Transaction.bank_account_number,
            Transaction.customer_name,
            Transaction.transaction_date,
            Transaction.amount,
            Transaction.description,
            Transaction.debit_credit,
            profiles.c.historical_max,
            profiles.c.historical_min,
            profiles.c.historical_avg,
        )
        .join(profiles, profiles.c.account == Transaction.bank_account_number)
        .where(
            Transaction.transaction_date > current_start,
            Transaction.transaction_date <= current_end,
        )
        .order_by(
            Transaction.transaction_date.desc(), Transaction.amount.desc(),
        )
    )
    if customer:
        stmt = stmt.where(Transaction.customer_name == customer)
    if transaction_type:
        stmt = stmt.where(Transaction.debit_credit == transaction_type)

    rows = []
    for row in (await session.execute(stmt)).all():
        label = classify_anomaly(
            row.amount, row.historical_max, row.historical_min,
            threshold_multiplier,
        )
        rows.append((
            row.bank_account_number, row.customer_name, row.transaction_date,
            row.amount, row.description, row.debit_credit,
            row.historical_max, row.historical_min,
            _round_money(row.historical_avg), label,
        ))

    return TabularResult(
        title="Transaction Anomaly Analysis",
        columns=[
            "BankAccountNumber", "CustomerName", "TransactionDate", "Amount",
            "Description", "TransactionType", "HistoricalMax",
            "HistoricalMin", "HistoricalAvg", "AnomalyType",
        ],
        rows=rows,
        notes=[
            f"Period: {period_days} days",
            f"Customer: {customer or 'All'}",
            f"Threshold: {threshold_multiplier:g}x",
        ],
        footer=(
            "HIGH/LOW: beyond the threshold multiple of the historical "
            "max/min. Above/Below: outside the historical range but within "
            "the threshold. Normal: within the historical range."
        ),
    )


def classify_anomaly(
    amount: Decimal | None,
    historical_max: Decimal | None,
    historical_min: Decimal | None,
    threshold_multiplier: float,
) -> str:
    """Label one amount against a counterparty's historical range."""
    if amount is None or historical_max is None or historical_min is None:
        return "Normal"
    factor = Decimal(str(threshold_multiplier))
    if amount > historical_max * factor:
        return "HIGH"
    if amount < historical_min / factor:
        return "LOW"
    if amount > historical_max:
        return "Above"
    if amount < historical_min:
        return "Below"
    return "Normal"


async def search_transactions(
    session: AsyncSession,
    embedder: EmbeddingProvider,
    query: str,
    top_n: int = 10,
    customer_name: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    year: int | None = None,
) -> TransactionListResult:
    """Semantic transaction search using the query classifier."""
    customer = await resolve_customer_name(session, customer_name)
    classified, matches = await search_by_text(
        session,
        query,
        embedder,
        top_n,
        SearchFilters(
            customer_name=customer,
            start_date=start_date,
            end_date=end_date,
            year=year,
        ),
    )
    return TransactionListResult(
        title=(
            f"Transactions matching '{query}' "
            f"(ranked by {classified.query_type.value})"
        ),
        transactions=[
            TransactionRow(
                description=m.description,
                amount=m.amount,
                transaction_date=m.transaction_date,
                category_code=m.category_code,
                category_description=m.category_description,
                customer_name=m.customer_name,
                bank_account_name=m.bank_account_name,
                similarity=m.similarity,
            )
            for m in matches
        ],
    )


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@dataclass
class ToolContext:
    """What a handler needs besides its arguments."""

    session_factory: async_sessionmaker
    embedder: EmbeddingProvider


ToolHandler = Callable[[ToolContext, dict], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict          # JSON schema sent to the model
    handler: ToolHandler


def _dates(args: dict) -> dict:
    return {
        "start_date": parse_date_argument(args.get("start_date"), "start_date"),
        "end_date": parse_date_argument(args.get("end_date"), "end_date"),
        "year": parse_int_argument(
            args.get("year"), None, minimum=1900, maximum=2100,
        ),
    }


async def _handle_top_expense_categories(ctx: ToolContext, args: dict):
    async with ctx.session_factory() as session:
        return await get_top_expense_categories(
            session,
            customer_name=parse_str_argument(args.get("customer_name")),
            top_n=parse_int_argument(args.get("top_n"), 5, maximum=100),
            **_dates(args),
        )


async def _handle_top_transactions_for_category(ctx: ToolContext, args: dict):
    async with ctx.session_factory() as session:
        return await get_top_transactions_for_category(
            session,
            ctx.embedder,
            category_query=parse_str_argument(args.get("category_query")) or "",
            top_n=parse_int_argument(args.get("top_n"), 10, maximum=200),
            customer_name=parse_str_argument(args.get("customer_name")),
            top_categories=parse_int_argument(
                args.get("top_categories"), 3, maximum=50,
            ),
            **_dates(args),
        )


async def _handle_search_categories(ctx: ToolContext, args: dict):
    async with ctx.session_factory() as session:
        return await search_categories(
            session,
            ctx.embedder,
            category_query=parse_str_argument(args.get("category_query")),
            top_categories=parse_int_argument(
                args.get("top_categories"), 5, maximum=200,
            ),
            customer_name=parse_str_argument(args.get("customer_name")),
        )


async def _handle_category_spending(ctx: ToolContext, args: dict):
    async with ctx.session_factory() as session:
        return await get_category_spending(
            session,
            ctx.embedder,
            category_query=parse_str_argument(args.get("category_query")) or "",
            customer_name=parse_str_argument(args.get("customer_name")),
            **_dates(args),
        )


async def _handle_readonly_query(ctx: ToolContext, args: dict):
    async with ctx.session_factory() as session:
        try:
            return await run_readonly_query(session, args.get("sql") or "")
        except SQLAlchemyError as exc:
            if "statement timeout" in str(exc):
                raise ToolTimeoutError(
                    "run_readonly_query", settings.tool_timeout_seconds,
                ) from exc
            raise StoreError(f"Query failed: {exc}") from exc


async def _handle_counterparty_activity(ctx: ToolContext, args: dict):
    async with ctx.session_factory() as session:
        return await analyze_counterparty_activity(
            session,
            current_period_days=parse_int_argument(
                args.get("current_period_days"), 30, maximum=3650,
            ),
            historical_period_days=parse_int_argument(
                args.get("historical_period_days"), 365, maximum=3650,
            ),
            customer_name=parse_str_argument(args.get("customer_name")),
            min_amount=parse_decimal_argument(args.get("min_amount")),
            max_amount=parse_decimal_argument(args.get("max_amount")),
            transaction_type=parse_str_argument(args.get("transaction_type")),
        )


async def _handle_transaction_anomalies(ctx: ToolContext, args: dict):
    async with ctx.session_factory() as session:
        return await analyze_transaction_anomalies(
            session,
            period_days=parse_int_argument(
                args.get("period_days"), 30, maximum=3650,
            ),
            customer_name=parse_str_argument(args.get("customer_name")),
            threshold_multiplier=parse_float_argument(
                args.get("threshold_multiplier"), 2.0,
            ),
            transaction_type=parse_str_argument(args.get("transaction_type")),
        )


async def _handle_search_transactions(ctx: ToolContext, args: dict):
    async with ctx.session_factory() as session:
        return await search_transactions(
            session,
            ctx.embedder,
            query=parse_str_argument(args.get("query")) or "",
            top_n=parse_int_argument(args.get("top_n"), 10, maximum=200),
            customer_name=parse_str_argument(args.get("customer_name")),
            **_dates(args),
        )


_DATE_PROPERTIES = {
    "start_date": {
        "type": "string",
        "description": "Inclusive start date, YYYY-MM-DD",
    },
    "end_date": {
        "type": "string",
        "description": "Inclusive end date, YYYY-MM-DD",
    },
    "year": {
        "type": "integer",
        "description": "Calendar year; only when explicitly mentioned",
    },
}

_CUSTOMER_PROPERTY = {
    "customer_name": {
        "type": "string",
        "description": "Business whose books to search",
    },
}


CATALOG: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            name="get_top_expense_categories",
            description=(
                "Ranks expense categories by total spending for a date range "
                "or year (defaults to the current year). Use for 'top "
                "expenses', 'biggest cost categories'."
            ),
            parameters={
                "type": "object",
                "properties": {
                    **_DATE_PROPERTIES,
                    **_CUSTOMER_PROPERTY,
                    "top_n": {"type": "integer", "description": "Default 5"},
                },
            },
            handler=_handle_top_expense_categories,
        ),
        ToolSpec(
            name="get_top_transactions_for_category",
            description=(
                "Lists transactions for any category described in natural "
                "language ('marketing', 'car repair', 'staff drinks'). First "
                "finds the closest categories, then returns their latest "
                "transactions. Use 10 when no number is given."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "category_query": {"type": "string"},
                    **_DATE_PROPERTIES,
                    **_CUSTOMER_PROPERTY,
                    "top_n": {"type": "integer", "description": "Default 10"},
                    "top_categories": {
                        "type": "integer", "description": "Default 3",
                    },
                },
                "required": ["category_query"],
            },
            handler=_handle_top_transactions_for_category,
        ),
        ToolSpec(
            name="search_categories",
            description=(
                "Explores which categories exist ('what categories are "
                "available', 'travel categories'). For 'all categories' pass "
                "an empty category_query and put the customer in "
                "customer_name."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "category_query": {"type": "string"},
                    "top_categories": {
                        "type": "integer", "description": "Default 5",
                    },
                    **_CUSTOMER_PROPERTY,
                },
            },
            handler=_handle_search_categories,
        ),
        ToolSpec(
            name="get_category_spending",
            description=(
                "Total spending for a category ('how much did we spend on "
                "X', 'costs for X') with a per-category breakdown. Defaults "
                "to the current year."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "category_query": {"type": "string"},
                    **_DATE_PROPERTIES,
                    **_CUSTOMER_PROPERTY,
                },
                "required": ["category_query"],
            },
            handler=_handle_category_spending,
        ),
        ToolSpec(
            name="run_readonly_query",
            description=(
                "Runs one read-only SQL SELECT against bank_transactions "
                "(columns: id, description, amount, transaction_date, "
                "customer_name, bank_account_name, bank_account_number, "
                "transaction_type, debit_credit, category_code) and "
                "category_mappings (code, description, short_description). "
                "Only for questions no other function answers."
            ),
            parameters={
                "type": "object",
                "properties": {"sql": {"type": "string"}},
                "required": ["sql"],
            },
            handler=_handle_readonly_query,
        ),
        ToolSpec(
            name="analyze_counterparty_activity",
            description=(
                "Finds new or unknown counterparties: accounts active in the "
                "recent period that were not seen in the historical period."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "current_period_days": {"type": "integer"},
                    "historical_period_days": {"type": "integer"},
                    **_CUSTOMER_PROPERTY,
                    "min_amount": {"type": "number"},
                    "max_amount": {"type": "number"},
                    "transaction_type": {
                        "type": "string", "description": "'Af' or 'Bij'",
                    },
                },
            },
            handler=_handle_counterparty_activity,
        ),
        ToolSpec(
            name="analyze_transaction_anomalies",
            description=(
                "Flags recent transactions whose amount is unusual compared "
                "with the counterparty's historical minimum and maximum."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "period_days": {"type": "integer"},
                    **_CUSTOMER_PROPERTY,
                    "threshold_multiplier": {"type": "number"},
                    "transaction_type": {"type": "string"},
                },
            },
            handler=_handle_transaction_anomalies,
        ),
        ToolSpec(
            name="search_transactions",
            description=(
                "Semantic search over transactions by description, amount, "
                "date or category wording ('largest payments in March', "
                "'coffee purchases')."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "top_n": {"type": "integer"},
                    **_CUSTOMER_PROPERTY,
                    **_DATE_PROPERTIES,
                },
                "required": ["query"],
            },
            handler=_handle_search_transactions,
        ),
    )
}


def get_tool(name: str) -> ToolSpec:
    """Resolve a catalog entry by name."""
    try:
        return CATALOG[name]
    except KeyError:
        raise FunctionNotFoundError(name) from None


async def invoke_tool(ctx: ToolContext, name: str, arguments: dict) -> ToolResult:
    """
    Resolve and run one catalog function.

    Raises:
        FunctionNotFoundError: `name` is not in the catalog.
        StoreError: The database call failed.
        ToolTimeoutError: The database cancelled the statement.
    """
    spec = get_tool(name)
    logger.info("Invoking %s with %s", name, arguments)
    try:
        return await spec.handler(ctx, arguments or {})
    except SQLAlchemyError as exc:
        raise StoreError(f"{name} failed: {exc}") from exc


def tool_definitions() -> list[dict]:
    """Provider-neutral tool definitions for the LLM layer."""
    return [
        {
            "name": spec.name,
            "description": spec.description,
            "parameters": spec.parameters,
        }
        for spec in CATALOG.values()
    ]


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


async def _list_categories(
    session: AsyncSession,
    limit: int,
    customer_name: str | None,
) -> CategoryListResult:
    """Categories in code order, optionally only those a customer used."""
    if customer_name:
        stmt = (
            select(
                Transaction.category_code.label("code"),
                CategoryMapping.description,
                CategoryMapping.short_description,
            )
            .outerjoin(
                CategoryMapping,
                CategoryMapping.code == Transaction.category_code,
            )
            .where(
                Transaction.customer_name == customer_name,
                Transaction.category_code.is_not(None),
            )
            .distinct()
            .order_by(Transaction.category_code)
            .limit(limit)
        )
        title = f"Categories used by {customer_name}"
    else:
        stmt = (
            select(
                CategoryMapping.code,
                CategoryMapping.description,
                CategoryMapping.short_description,
            )
            .order_by(CategoryMapping.code)
            .limit(limit)
        )
        title = "Available categories"

    rows = (await session.execute(stmt)).all()
    return CategoryListResult(
        title=title,
        categories=[
            CategoryHit(
                code=row.code,
                description=row.description,
                short_description=row.short_description,
            )
            for row in rows
        ],
    )


def _escape_like(value: str) -> str:
    return (
        value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )


def _round_money(value) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value)).quantize(Decimal("0.01"))
