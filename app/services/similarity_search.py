# =============================================================================
# Similarity Search Executor — Ranked Retrieval over One Embedding Column
# =============================================================================
#
# Builds a parameterised pgvector query against the embedding column that
# the query classifier selected, applies the optional filters and the
# query-type-specific ordering, and maps rows to TransactionMatch records.
#
# ORDERING:
#   AMOUNT → amount DESC, distance ASC   (largest payments first)
#   DATE   → date DESC, distance ASC     (most recent first)
#   others → distance ASC                (pure semantic ranking)
#
# DESIGN DECISION: The query vector is bound as a parameter through
# pgvector's SQLAlchemy comparator (`.cosine_distance()`), never
# interpolated into SQL text.
#
# DESIGN DECISION: Rows whose selected column is NULL are excluded in SQL.
# If nothing has been embedded yet the result is simply empty.
#
# cosine_distance() returns values in [0, 2]. For display we convert with
# similarity = 1 − min(distance, 1), which is monotonic and lands in [0, 1].
# =============================================================================

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import extract, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import CategoryMapping, Transaction
from app.errors import StoreError
from app.services.classifier import (
    ClassifiedQuery,
    QueryType,
    SortKey,
    classify_query,
    query_type_to_column,
    query_type_to_sort_key,
)
from app.services.embedder import EmbeddingProvider

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class SearchFilters:
    """Optional equality/range filters applied before ranking."""

    customer_name: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    year: int | None = None


@dataclass
class TransactionMatch:
    """A ranked transaction with its distance to the query."""

    id: uuid.UUID
    description: str | None
    amount: Decimal | None
    transaction_date: date | None
    category_code: str | None
    category_description: str | None
    category_short_description: str | None
    customer_name: str | None
    bank_account_name: str | None
    distance: float
    similarity: float


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def distance_to_similarity(distance: float) -> float:
    """Convert cosine distance to a display similarity in [0, 1]."""
    return round(1.0 - min(max(distance, 0.0), 1.0), 4)


def build_search_statement(
    query_type: QueryType,
    query_vector: list[float],
    top_n: int,
    filters: SearchFilters | None = None,
):
    """
    Build the ranking query for `query_type`.

    Returns a SQLAlchemy Select yielding the projected columns plus a
    `distance` label.
    """
    filters = filters or SearchFilters()
    column = getattr(Transaction, query_type_to_column(query_type))
    distance = column.cosine_distance(query_vector).label("distance")

    stmt = (
        select(
            Transaction.id,
            Transaction.description,
            Transaction.amount,
            Transaction.transaction_date,
            Transaction.category_code,
            CategoryMapping.description.label("category_description"),
            CategoryMapping.short_description.label(
                "category_short_description"
            ),
            Transaction.customer_name,
            Transaction.bank_account_name,
            distance,
        )
        .outerjoin(
            CategoryMapping,
            CategoryMapping.code == Transaction.category_code,
        )
        .where(column.is_not(None))
    )

    if filters.customer_name:
        stmt = stmt.where(Transaction.customer_name == filters.customer_name)
    if filters.start_date is not None:
        stmt = stmt.where(Transaction.transaction_date >= filters.start_date)
    if filters.end_date is not None:
        stmt = stmt.where(Transaction.transaction_date <= filters.end_date)
    if filters.year is not None:
        stmt = stmt.where(
            extract("year", Transaction.transaction_date) == filters.year
        )

    sort_key = query_type_to_sort_key(query_type)
    if sort_key is SortKey.AMOUNT:
        stmt = stmt.order_by(
            Transaction.amount.desc().nulls_last(), distance.asc(),
        )
    elif sort_key is SortKey.DATE:
        stmt = stmt.order_by(
            Transaction.transaction_date.desc().nulls_last(), distance.asc(),
        )
    else:
        stmt = stmt.order_by(distance.asc())

    return stmt.limit(max(1, top_n))


class SimilaritySearchExecutor:
    """Executes ranking queries and maps rows to TransactionMatch."""

    async def search(
        self,
        session: AsyncSession,
        query_type: QueryType,
        query_vector: list[float],
        top_n: int | None = None,
        filters: SearchFilters | None = None,
    ) -> list[TransactionMatch]:
        """
        Rank transactions by distance to `query_vector`.

        Raises:
            StoreError: If the database call fails.
        """
        top_n = max(1, top_n or settings.search_default_top_n)
        stmt = build_search_statement(query_type, query_vector, top_n, filters)

        try:
            rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Similarity search failed: {exc}") from exc

        matches = [
            TransactionMatch(
                id=row.id,
                description=row.description,
                amount=row.amount,
                transaction_date=row.transaction_date,
                category_code=row.category_code,
                category_description=row.category_description,
                category_short_description=row.category_short_description,
                customer_name=row.customer_name,
                bank_account_name=row.bank_account_name,
                distance=float(row.distance),
                similarity=distance_to_similarity(float(row.distance)),
            )
            for row in rows[:top_n]
        ]

        logger.info(
            "Similarity search (type=%s, column=%s): %d results",
            query_type.value, query_type_to_column(query_type), len(matches),
        )
        return matches


async def search_by_text(
    session: AsyncSession,
    text: str,
    provider: EmbeddingProvider,
    top_n: int | None = None,
    filters: SearchFilters | None = None,
) -> tuple[ClassifiedQuery, list[TransactionMatch]]:
    """
    Classify `text`, embed it once, and run the matching ranked search.

    The query is embedded as-is; the classification only decides which
    stored projection it is compared against.

    Raises:
        ProviderError: If embedding the query fails (not retried).
        StoreError: If the database call fails.
    """
    classified = classify_query(text)
    vector = await provider.embed(text)
    matches = await SimilaritySearchExecutor().search(
        session, classified.query_type, vector, top_n, filters,
    )
    return classified, matches
