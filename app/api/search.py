# =============================================================================
# Search API — Direct Retrieval Without the Model
# =============================================================================
#
# GET /search/transactions             → classified similarity search
# GET /search/categories               → closest categories to a phrase
# GET /search/categories/transactions  → latest transactions of the
#                                        closest categories
#
# These endpoints expose the same retrieval functions the orchestration
# loop calls, so ranking can be inspected without an LLM in the way.
# The query text is embedded once per request and never retried.
# =============================================================================

import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.engine import get_async_session
from app.errors import ProviderError, StoreError
from app.models.responses import (
    CategoryResponse,
    CategorySearchResponse,
    CategoryTransactionResponse,
    CategoryTransactionsResponse,
    TransactionMatchResponse,
    TransactionSearchResponse,
)
from app.services.classifier import query_type_to_column
from app.services.embedder import get_embedding_provider
from app.services.financial_tools import (
    get_top_transactions_for_category,
    resolve_customer_name,
    search_categories,
)
from app.services.similarity_search import SearchFilters, search_by_text

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Search"])

_UPSTREAM_ERRORS = (ValueError, ProviderError, StoreError, SQLAlchemyError)


def _upstream_error(e: Exception) -> HTTPException:
    """Map a retrieval failure to the HTTP error returned to the client."""
    if isinstance(e, ValueError):
        logger.error("Configuration error: %s", e)
        return HTTPException(
            status_code=503,
            detail=f"Service configuration error: {e}",
        )
    if isinstance(e, ProviderError):
        logger.warning("Embedding provider failed: %s", e)
        return HTTPException(
            status_code=502,
            detail=f"Embedding service error: {e}",
        )
    logger.error("Store query failed: %s", e)
    return HTTPException(
        status_code=502,
        detail=f"Database error: {e}",
    )


# ---------------------------------------------------------------------------
# GET /search/transactions
# ---------------------------------------------------------------------------


@router.get(
    "/search/transactions",
    response_model=TransactionSearchResponse,
    summary="Semantic transaction search",
    description=(
        "Classifies the query as content, amount, date or category, embeds "
        "it once, and ranks transactions by cosine distance on the matching "
        "embedding column. Amount and date queries are ordered by that "
        "field first."
    ),
)
async def search_transactions_endpoint(
    q: str = Query(..., min_length=1, max_length=500),
    top_n: int | None = Query(default=None, ge=1, le=200),
    customer_name: str | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    year: int | None = Query(default=None, ge=1900, le=2100),
    session: AsyncSession = Depends(get_async_session),
) -> TransactionSearchResponse:
    try:
        customer = await resolve_customer_name(session, customer_name)
        classified, matches = await search_by_text(
            session,
            q,
            get_embedding_provider(),
            top_n or settings.search_default_top_n,
            SearchFilters(
                customer_name=customer,
                start_date=start_date,
                end_date=end_date,
                year=year,
            ),
        )
    except _UPSTREAM_ERRORS as e:
        raise _upstream_error(e) from e

    return TransactionSearchResponse(
        query=q,
        query_type=classified.query_type.value,
        column=query_type_to_column(classified.query_type),
        results=[TransactionMatchResponse.model_validate(m) for m in matches],
    )


# ---------------------------------------------------------------------------
# GET /search/categories
# ---------------------------------------------------------------------------


@router.get(
    "/search/categories",
    response_model=CategorySearchResponse,
    summary="Find categories closest to a phrase",
    description=(
        "An empty query lists the available categories. A query containing "
        "'all' returns at least 50 categories."
    ),
)
async def search_categories_endpoint(
    q: str = Query(default="", max_length=500),
    top_categories: int = Query(default=5, ge=1, le=200),
    customer_name: str | None = Query(default=None),
    session: AsyncSession = Depends(get_async_session),
) -> CategorySearchResponse:
    try:
        result = await search_categories(
            session, get_embedding_provider(), q, top_categories, customer_name,
        )
    except _UPSTREAM_ERRORS as e:
        raise _upstream_error(e) from e

    return CategorySearchResponse(
        query=q,
        categories=[
            CategoryResponse.model_validate(hit) for hit in result.categories
        ],
    )


# ---------------------------------------------------------------------------
# GET /search/categories/transactions
# ---------------------------------------------------------------------------


@router.get(
    "/search/categories/transactions",
    response_model=CategoryTransactionsResponse,
    summary="Latest transactions for a category described in words",
)
async def category_transactions_endpoint(
    q: str = Query(..., min_length=1, max_length=500),
    top_n: int = Query(default=10, ge=1, le=200),
    top_categories: int = Query(default=3, ge=1, le=50),
    customer_name: str | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    year: int | None = Query(default=None, ge=1900, le=2100),
    session: AsyncSession = Depends(get_async_session),
) -> CategoryTransactionsResponse:
    try:
        result = await get_top_transactions_for_category(
            session,
            get_embedding_provider(),
            category_query=q,
            start_date=start_date,
            end_date=end_date,
            year=year,
            top_n=top_n,
            customer_name=customer_name,
            top_categories=top_categories,
        )
    except _UPSTREAM_ERRORS as e:
        raise _upstream_error(e) from e

    return CategoryTransactionsResponse(
        query=q,
        transactions=[
            CategoryTransactionResponse.model_validate(row)
            for row in result.transactions
        ],
    )
