# =============================================================================
# Tool Result Shapes & Deterministic Text Reports
# =============================================================================
#
# Every catalog function returns exactly one of four result shapes:
#
#   CategoryListResult       → list of categories (codes + labels)
#   TransactionListResult    → list of transactions
#   SpendingBreakdownResult  → per-category totals for one category query
#   TabularResult            → raw rows + column names (free-form SQL,
#                              counterparty and anomaly analytics)
#
# Each shape carries a `kind` tag, and `format_result()` dispatches on the
# tag to one formatter per kind. The reports are explicit field-by-field
# templates, so the model receives the same text for the same data and
# is told exactly which fields to show the user.
# =============================================================================

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Union

from app.config import settings


class ResultKind(str, enum.Enum):
    CATEGORIES = "categories"
    TRANSACTIONS = "transactions"
    SPENDING = "spending"
    TABLE = "table"


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class CategoryHit:
    code: str
    description: str | None = None
    short_description: str | None = None
    total_amount: Decimal | None = None
    transaction_count: int | None = None
    similarity: float | None = None


@dataclass
class TransactionRow:
    description: str | None
    amount: Decimal | None
    transaction_date: date | None
    category_code: str | None
    category_description: str | None
    customer_name: str | None = None
    bank_account_name: str | None = None
    similarity: float | None = None


@dataclass
class SpendingLine:
    code: str
    description: str | None
    short_description: str | None
    amount: Decimal
    transaction_count: int


@dataclass
class CategoryListResult:
    title: str
    categories: list[CategoryHit]
    kind: ResultKind = field(default=ResultKind.CATEGORIES, init=False)


@dataclass
class TransactionListResult:
    title: str
    transactions: list[TransactionRow]
    kind: ResultKind = field(default=ResultKind.TRANSACTIONS, init=False)


@dataclass
class SpendingBreakdownResult:
    category_query: str
    start_date: date
    end_date: date
    customer_name: str | None
    lines: list[SpendingLine]
    kind: ResultKind = field(default=ResultKind.SPENDING, init=False)

    @property
    def total(self) -> Decimal:
        return sum((line.amount for line in self.lines), Decimal("0"))

    @property
    def transaction_count(self) -> int:
        return sum(line.transaction_count for line in self.lines)


@dataclass
class TabularResult:
    title: str
    columns: list[str]
    rows: list[tuple]
    notes: list[str] = field(default_factory=list)   # lines above the table
    footer: str | None = None                        # text below the table
    kind: ResultKind = field(default=ResultKind.TABLE, init=False)


ToolResult = Union[
    CategoryListResult,
    TransactionListResult,
    SpendingBreakdownResult,
    TabularResult,
]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def row_count(result: ToolResult) -> int:
    """Number of data rows in a result, whatever its shape."""
    if result.kind is ResultKind.CATEGORIES:
        return len(result.categories)
    if result.kind is ResultKind.TRANSACTIONS:
        return len(result.transactions)
    if result.kind is ResultKind.SPENDING:
        return len(result.lines)
    return len(result.rows)


def format_result(result: ToolResult) -> str:
    """Render any tool result as its deterministic text report."""
    return _FORMATTERS[result.kind](result)


def format_amount(amount: Decimal | float | None) -> str:
    if amount is None:
        return "n/a"
    return f"{Decimal(str(amount)):,.2f}"


def format_markdown_table(
    columns: list[str],
    rows: list[tuple],
    row_cap: int | None = None,
) -> str:
    """Markdown table with at most `row_cap` rows and an overflow note."""
    cap = row_cap or settings.sql_result_row_cap
    lines = [
        "| " + " | ".join(columns) + " |",
        "|" + "|".join("---" for _ in columns) + "|",
    ]
    for row in rows[:cap]:
        lines.append(
            "| " + " | ".join(_cell(value) for value in row) + " |"
        )
    if len(rows) > cap:
        lines.append("")
        lines.append(
            f"... and {len(rows) - cap} more rows "
            f"(showing first {cap})"
        )
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Formatters — one per result kind
# ---------------------------------------------------------------------------


def _format_categories(result: CategoryListResult) -> str:
    lines = [f"**{result.title}** ({len(result.categories)} categories)", ""]
    for i, hit in enumerate(result.categories, start=1):
        line = f"{i}. Category Code: {hit.code} - {hit.description or 'n/a'}"
        if hit.short_description:
            line += f" ({hit.short_description})"
        if hit.total_amount is not None:
            line += f" | Total: {format_amount(hit.total_amount)}"
        if hit.transaction_count is not None:
            line += f" | Transactions: {hit.transaction_count}"
        if hit.similarity is not None:
            line += f" | Similarity: {hit.similarity:.3f}"
        lines.append(line)
    return "\n".join(lines)


def _format_transactions(result: TransactionListResult) -> str:
    lines = [
        f"**{result.title}** ({len(result.transactions)} transactions)", "",
    ]
    for i, tx in enumerate(result.transactions, start=1):
        lines.append(f"{i}. Description: {tx.description or 'n/a'}")
        lines.append(f"   Amount: {format_amount(tx.amount)}")
        lines.append(
            "   Date: "
            + (tx.transaction_date.isoformat() if tx.transaction_date else "n/a")
        )
        lines.append(
            f"   Category Code: {tx.category_code or 'n/a'} - "
            f"{tx.category_description or 'n/a'}"
        )
        if tx.bank_account_name:
            lines.append(f"   Counterparty: {tx.bank_account_name}")
        if tx.customer_name:
            lines.append(f"   Customer: {tx.customer_name}")
        if tx.similarity is not None:
            lines.append(f"   Similarity: {tx.similarity:.3f}")
    return "\n".join(lines)


def _format_spending(result: SpendingBreakdownResult) -> str:
    lines = [
        f"**Spending for '{result.category_query}'**",
        f"Period: {result.start_date.isoformat()} to {result.end_date.isoformat()}",
        f"Customer: {result.customer_name or 'All'}",
        f"Total Spending: {format_amount(result.total)}",
        f"Transactions: {result.transaction_count}",
        "",
        "Breakdown:",
    ]
    for line in result.lines:
        label = line.description or "n/a"
        if line.short_description:
            label += f" ({line.short_description})"
        lines.append(
            f"- Category Code: {line.code} - {label}: "
            f"{format_amount(line.amount)} "
            f"({line.transaction_count} transactions)"
        )
    return "\n".join(lines)


def _format_table(result: TabularResult) -> str:
    parts = [f"**{result.title}**"]
    parts.extend(result.notes)
    parts.append(f"Rows: {len(result.rows)}")
    parts.append("")
    parts.append(format_markdown_table(result.columns, result.rows))
    if result.footer:
        parts.append("")
        parts.append(result.footer)
    return "\n".join(parts)


_FORMATTERS = {
    ResultKind.CATEGORIES: _format_categories,
    ResultKind.TRANSACTIONS: _format_transactions,
    ResultKind.SPENDING: _format_spending,
    ResultKind.TABLE: _format_table,
}


def _cell(value) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, Decimal):
        return format_amount(value)
    if isinstance(value, date):
        return value.isoformat()
    return str(value).replace("|", "\\|")
