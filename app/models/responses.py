# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API. They are
# the contract with clients and keep internal fields (the five 1536-
# dimensional embedding vectors per transaction in particular) off the
# wire.
# =============================================================================

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class ChatQueryResponse(BaseModel):
    """
    Response for POST /chat/query.

    Timeouts, empty results and capped loops are normal outcomes: they come
    back with status 200, an explanatory `response` and the loop `state`.
    """

    response: str = Field(description="Answer text shown to the user")
    session_id: str
    state: str = Field(
        description=(
            "Terminal loop state: responding, timed_out, capped_out or errored"
        ),
    )
    reframed_query: str = Field(
        description="The question after follow-up completion",
    )
    iterations: int = Field(description="Model decisions made")
    route: str = Field(description="'tools' or 'knowledge'")
    tools_called: list[str] = Field(default_factory=list)
    model: str | None = None


class ChatTurnResponse(BaseModel):
    role: str
    content: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ChatHistoryResponse(BaseModel):
    session_id: str
    turns: list[ChatTurnResponse]


class ChatContextResponse(BaseModel):
    session_id: str
    summary: str
    condensed_summary: str


class ClearSessionResponse(BaseModel):
    session_id: str
    cleared: bool


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class TransactionMatchResponse(BaseModel):
    id: uuid.UUID
    description: str | None
    amount: Decimal | None
    transaction_date: date | None
    category_code: str | None
    category_description: str | None
    customer_name: str | None
    bank_account_name: str | None
    distance: float
    similarity: float

    model_config = ConfigDict(from_attributes=True)


class TransactionSearchResponse(BaseModel):
    """Response for GET /search/transactions."""

    query: str
    query_type: str = Field(description="content, amount, date or category")
    column: str = Field(description="Embedding column that was searched")
    results: list[TransactionMatchResponse]


class CategoryResponse(BaseModel):
    code: str
    description: str | None = None
    short_description: str | None = None
    similarity: float | None = None

    model_config = ConfigDict(from_attributes=True)


class CategorySearchResponse(BaseModel):
    query: str
    categories: list[CategoryResponse]


class CategoryTransactionResponse(BaseModel):
    description: str | None
    amount: Decimal | None
    transaction_date: date | None
    category_code: str | None
    category_description: str | None
    customer_name: str | None = None
    bank_account_name: str | None = None

    model_config = ConfigDict(from_attributes=True)


class CategoryTransactionsResponse(BaseModel):
    query: str
    transactions: list[CategoryTransactionResponse]


# ---------------------------------------------------------------------------
# Embedding Runs
# ---------------------------------------------------------------------------


class EmbeddingRunResponse(BaseModel):
    id: int
    mode: str
    since: date | None = None
    bank_account_number: str | None = None
    status: str
    pages: int
    processed: int
    failed: int
    error_message: str | None = None
    celery_task_id: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RecomputeAcceptedResponse(BaseModel):
    """
    Response for the recompute triggers.

    Poll GET /admin/embeddings/runs/{run_id} until the status is
    completed or failed.
    """

    run_id: int
    task_id: str
    status: str = "pending"
    message: str
