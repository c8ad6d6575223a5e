# =============================================================================
# Chat API — Conversational Retrieval Endpoints
# =============================================================================
#
# POST   /chat/query              → run one message through the tool loop
# GET    /chat/history/{id}       → turns recorded for a session
# GET    /chat/context/{id}       → rolling summary used to build prompts
# DELETE /chat/history/{id}       → forget a session
#
# FLOW (POST /chat/query):
#   1. Validate body (query + optional session_id)
#   2. Orchestrator.process(): reframe → decide ⇄ invoke → finalize
#   3. Map OrchestrationResult to ChatQueryResponse
#
# Timeouts, empty results and capped loops are answers, not HTTP errors:
# the loop's terminal state is returned alongside the explanatory text.
# Only configuration problems (503) and unexpected failures (502) surface
# as error statuses.
# =============================================================================

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.agents.context_manager import ContextManager, get_context_manager
from app.agents.orchestrator import Orchestrator
from app.models.requests import ChatQueryRequest
from app.models.responses import (
    ChatContextResponse,
    ChatHistoryResponse,
    ChatQueryResponse,
    ChatTurnResponse,
    ClearSessionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chat"])

NO_CONTEXT_MESSAGE = "No context available for this session."

_orchestrator: Orchestrator | None = None


def get_orchestrator() -> Orchestrator:
    """Return the shared orchestrator (graph compiled once per process)."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator()
    return _orchestrator


# ---------------------------------------------------------------------------
# POST /chat/query — Answer one message
# ---------------------------------------------------------------------------


@router.post(
    "/chat/query",
    response_model=ChatQueryResponse,
    summary="Send a message to the retrieval assistant",
    description=(
        "Completes follow-up questions from the session's context, lets the "
        "model call catalog functions over the transaction store, and "
        "returns the final answer together with the loop's terminal state."
    ),
)
async def chat_query(
    request: ChatQueryRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ChatQueryResponse:
    logger.info(
        "Chat query: session=%s, query='%s'",
        request.session_id, request.query[:80],
    )

    try:
        result = await orchestrator.process(request.query, request.session_id)
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise HTTPException(
            status_code=503,
            detail=f"Service configuration error: {e}",
        ) from e
    except Exception as e:
        logger.exception("Chat orchestration failed: %s", e)
        raise HTTPException(
            status_code=502,
            detail=f"LLM service error: {e}",
        ) from e

    return ChatQueryResponse(
        response=result.response,
        session_id=result.session_id,
        state=result.state.value,
        reframed_query=result.reframed_query,
        iterations=result.iterations,
        route=result.route,
        tools_called=[entry["tool"] for entry in result.trace],
        model=result.model,
    )


# ---------------------------------------------------------------------------
# Session inspection
# ---------------------------------------------------------------------------


@router.get(
    "/chat/history/{session_id}",
    response_model=ChatHistoryResponse,
    summary="List the turns of a conversation",
)
async def get_history(
    session_id: str,
    store: ContextManager = Depends(get_context_manager),
) -> ChatHistoryResponse:
    if not store.exists(session_id):
        raise HTTPException(
            status_code=404,
            detail=f"Session '{session_id}' not found",
        )
    return ChatHistoryResponse(
        session_id=session_id,
        turns=[
            ChatTurnResponse.model_validate(turn)
            for turn in store.get_turns(session_id)
        ],
    )


@router.get(
    "/chat/context/{session_id}",
    response_model=ChatContextResponse,
    summary="Show the rolling context summary of a conversation",
)
async def get_context(
    session_id: str,
    store: ContextManager = Depends(get_context_manager),
) -> ChatContextResponse:
    # Unknown sessions are not created just by looking at them
    if not store.exists(session_id):
        return ChatContextResponse(
            session_id=session_id,
            summary=NO_CONTEXT_MESSAGE,
            condensed_summary=NO_CONTEXT_MESSAGE,
        )
    summary = store.get_summary(session_id)
    return ChatContextResponse(
        session_id=session_id,
        summary=summary or NO_CONTEXT_MESSAGE,
        condensed_summary=(
            store.get_condensed_summary(session_id) or NO_CONTEXT_MESSAGE
        ),
    )


@router.delete(
    "/chat/history/{session_id}",
    response_model=ClearSessionResponse,
    summary="Forget a conversation",
)
async def clear_history(
    session_id: str,
    store: ContextManager = Depends(get_context_manager),
) -> ClearSessionResponse:
    return ClearSessionResponse(
        session_id=session_id,
        cleared=store.clear(session_id),
    )
