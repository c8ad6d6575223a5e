# =============================================================================
# Unit Tests — Similarity Search
# =============================================================================
#
# Ranking statements are compiled for PostgreSQL and inspected as SQL text;
# execution is tested against a fake session, so no database is required.
# =============================================================================

import asyncio
import uuid
from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import SQLAlchemyError

from app.errors import StoreError
from app.services.classifier import QueryType
from app.services.similarity_search import (
    SearchFilters,
    SimilaritySearchExecutor,
    build_search_statement,
    distance_to_similarity,
    search_by_text,
)

VECTOR = [0.1, 0.2, 0.3]


def _run(coro):
    """Helper to run async functions in sync tests."""
    try:
        loop = asyncio.get_event_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _order_by(sql: str) -> str:
    return sql.split("ORDER BY", 1)[1]


class FakeResult:
    def __init__(self, rows):
        self._rows = rows

    def all(self):
        return self._rows


def _row(n: int, distance: float):
    return SimpleNamespace(
        id=uuid.UUID(int=n),
        description=f"row {n}",
        amount=Decimal("10.00") * n,
        transaction_date=date(2025, 1, n),
        category_code="4600",
        category_description="Marketing",
        category_short_description="Mkt",
        customer_name="Nova Creations",
        bank_account_name="Meta Platforms",
        distance=distance,
    )


class TestDistanceToSimilarity:
    def test_identical(self):
        assert distance_to_similarity(0.0) == 1.0

    def test_clamped_to_unit_interval(self):
        assert distance_to_similarity(1.7) == 0.0
        assert distance_to_similarity(-0.2) == 1.0

    def test_rounding(self):
        assert distance_to_similarity(0.123456) == 0.8765


class TestBuildSearchStatement:
    def test_content_ranks_by_distance_only(self):
        sql = _sql(build_search_statement(QueryType.CONTENT, VECTOR, 10))
        assert "bank_transactions.content_embedding <=>" in sql
        assert "bank_transactions.content_embedding IS NOT NULL" in sql
        order = _order_by(sql)
        assert "distance ASC" in order
        assert "amount" not in order

    def test_amount_orders_by_amount_first(self):
        sql = _sql(build_search_statement(QueryType.AMOUNT, VECTOR, 10))
        assert "bank_transactions.amount_embedding <=>" in sql
        order = _order_by(sql)
        assert order.index("bank_transactions.amount DESC") < order.index(
            "distance"
        )

    def test_date_orders_by_date_first(self):
        sql = _sql(build_search_statement(QueryType.DATE, VECTOR, 10))
        assert "bank_transactions.date_embedding <=>" in sql
        order = _order_by(sql)
        assert order.index("bank_transactions.transaction_date DESC") < (
            order.index("distance")
        )

    def test_category_uses_category_column(self):
        sql = _sql(build_search_statement(QueryType.CATEGORY, VECTOR, 10))
        assert "bank_transactions.category_embedding <=>" in sql

    def test_filters(self):
        sql = _sql(build_search_statement(
            QueryType.CONTENT,
            VECTOR,
            5,
            SearchFilters(
                customer_name="Nova Creations",
                start_date=date(2025, 1, 1),
                end_date=date(2025, 3, 31),
                year=2025,
            ),
        ))
        assert "bank_transactions.customer_name =" in sql
        assert "bank_transactions.transaction_date >=" in sql
        assert "bank_transactions.transaction_date <=" in sql
        assert "EXTRACT(year FROM bank_transactions.transaction_date)" in sql

    def test_joins_category_labels(self):
        sql = _sql(build_search_statement(QueryType.CONTENT, VECTOR, 10))
        assert "LEFT OUTER JOIN category_mappings" in sql


class TestSimilaritySearchExecutor:
    def test_maps_rows(self):
        session = AsyncMock()
        session.execute.return_value = FakeResult([_row(1, 0.1), _row(2, 0.4)])

        matches = _run(SimilaritySearchExecutor().search(
            session, QueryType.CONTENT, VECTOR, top_n=10,
        ))

        assert [m.id for m in matches] == [uuid.UUID(int=1), uuid.UUID(int=2)]
        assert matches[0].similarity == 0.9
        assert matches[1].distance == 0.4
        assert matches[0].category_description == "Marketing"

    def test_never_returns_more_than_top_n(self):
        session = AsyncMock()
        session.execute.return_value = FakeResult(
            [_row(n, 0.1 * n) for n in range(1, 6)]
        )
        matches = _run(SimilaritySearchExecutor().search(
            session, QueryType.CONTENT, VECTOR, top_n=2,
        ))
        assert len(matches) == 2

    def test_non_positive_top_n_is_clamped_to_one(self):
        session = AsyncMock()
        session.execute.return_value = FakeResult(
            [_row(n, 0.1 * n) for n in range(1, 4)]
        )

        matches = _run(SimilaritySearchExecutor().search(
            session, QueryType.CONTENT, VECTOR, top_n=-2,
        ))

        assert [m.id for m in matches] == [uuid.UUID(int=1)]
        stmt = session.execute.await_args.args[0]
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert -2 not in params.values()
        assert 1 in params.values()

    def test_database_failure_is_store_error(self):
        session = AsyncMock()
        session.execute.side_effect = SQLAlchemyError("connection refused")
        with pytest.raises(StoreError):
            _run(SimilaritySearchExecutor().search(
                session, QueryType.CONTENT, VECTOR, top_n=2,
            ))


class TestSearchByText:
    def test_embeds_query_once_and_classifies(self):
        session = AsyncMock()
        session.execute.return_value = FakeResult([_row(1, 0.2)])
        provider = AsyncMock()
        provider.embed.return_value = VECTOR

        classified, matches = _run(search_by_text(
            session, "largest payments to Meta", provider, top_n=3,
        ))

        provider.embed.assert_awaited_once_with("largest payments to Meta")
        assert classified.query_type == QueryType.AMOUNT
        assert classified.column == "amount_embedding"
        assert len(matches) == 1
