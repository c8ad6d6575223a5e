# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API. FastAPI uses
# them for body validation (automatic 422 errors), OpenAPI docs and editor
# hints in route handlers.
#
# Search filters travel as query parameters, so only the chat and admin
# bodies are modelled here.
# =============================================================================

from datetime import date

from pydantic import BaseModel, ConfigDict, Field


class ChatQueryRequest(BaseModel):
    """
    Request body for POST /chat/query.

    Omit `session_id` to start a new conversation; the response carries
    the generated id to send with follow-up messages.

    Example:
        {
            "query": "show transactions related to marketing for Nova Creations",
            "session_id": "session_1735689600000_1a2b3c4d"
        }
    """

    query: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="The user's message",
        examples=["What were our top expense categories in 2024?"],
    )

    session_id: str | None = Field(
        default=None,
        max_length=128,
        description="Conversation id returned by an earlier call",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "query": (
                        "show transactions related to marketing for "
                        "Nova Creations"
                    ),
                },
                {
                    "query": "2025",
                    "session_id": "session_1735689600000_1a2b3c4d",
                },
            ]
        }
    )


class RecomputeEmbeddingsRequest(BaseModel):
    """Request body for POST /admin/embeddings/recompute."""

    bank_account_number: str | None = Field(
        default=None,
        max_length=64,
        description="Limit the run to one counterparty account",
    )


class RecomputeSinceRequest(BaseModel):
    """Request body for POST /admin/embeddings/recompute-since."""

    since: date = Field(
        ...,
        description="Only transactions dated on or after this day",
        examples=["2025-01-01"],
    )

    bank_account_number: str | None = Field(
        default=None,
        max_length=64,
        description="Limit the run to one counterparty account",
    )
