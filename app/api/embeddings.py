# =============================================================================
# Embeddings Admin API — Recompute Triggers and Run Status
# =============================================================================
#
# POST /admin/embeddings/recompute        — full backfill (202 + run_id)
# POST /admin/embeddings/recompute-since  — incremental backfill from a date
# GET  /admin/embeddings/runs/{run_id}    — poll a run's counters and status
#
# DESIGN DECISION: 202 Accepted, processing in Celery. A full run issues
# five provider calls per incomplete transaction; it would time out any
# HTTP request. The embedding_runs row is the durable handle: it exists
# before the task is queued and the worker writes its counters back to it.
#
# The row is committed BEFORE dispatch so a fast worker never looks up a
# run that the API transaction has not made visible yet.
# =============================================================================

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.engine import get_async_session
from app.db.models import EmbeddingRun, EmbeddingRunMode, EmbeddingRunStatus
from app.models.requests import RecomputeEmbeddingsRequest, RecomputeSinceRequest
from app.models.responses import EmbeddingRunResponse, RecomputeAcceptedResponse
from app.workers.tasks import recompute_embeddings, recompute_embeddings_since

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Embeddings Admin"])


async def _create_run(
    session: AsyncSession,
    mode: EmbeddingRunMode,
    request: RecomputeEmbeddingsRequest | RecomputeSinceRequest,
) -> EmbeddingRun:
    run = EmbeddingRun(
        mode=mode,
        since=getattr(request, "since", None),
        bank_account_number=request.bank_account_number,
        status=EmbeddingRunStatus.PENDING,
    )
    session.add(run)
    await session.commit()
    return run


# ---------------------------------------------------------------------------
# POST /admin/embeddings/recompute — Full backfill
# ---------------------------------------------------------------------------


@router.post(
    "/admin/embeddings/recompute",
    response_model=RecomputeAcceptedResponse,
    status_code=202,
    summary="Recompute missing embeddings for all transactions",
    description=(
        "Pages through every transaction that is missing any of its five "
        "embeddings and fills them in. Optionally limited to one bank "
        "account. Returns immediately with a run_id for polling."
    ),
)
async def recompute_all(
    request: RecomputeEmbeddingsRequest | None = None,
    session: AsyncSession = Depends(get_async_session),
) -> RecomputeAcceptedResponse:
    request = request or RecomputeEmbeddingsRequest()
    run = await _create_run(session, EmbeddingRunMode.FULL, request)

    task = recompute_embeddings.delay(run_id=run.id)
    run.celery_task_id = task.id

    # The session commits the task id via the get_async_session dependency
    logger.info(
        "Dispatched full embedding run: run_id=%d, task_id=%s, account=%s",
        run.id, task.id, request.bank_account_number,
    )

    return RecomputeAcceptedResponse(
        run_id=run.id,
        task_id=task.id,
        message="Full embedding recompute queued.",
    )


# ---------------------------------------------------------------------------
# POST /admin/embeddings/recompute-since — Incremental backfill
# ---------------------------------------------------------------------------


@router.post(
    "/admin/embeddings/recompute-since",
    response_model=RecomputeAcceptedResponse,
    status_code=202,
    summary="Recompute missing embeddings for recent transactions",
    description=(
        "Like /recompute, but only for transactions dated on or after "
        "`since`. Uses larger pages and a wider concurrency gate."
    ),
)
async def recompute_since(
    request: RecomputeSinceRequest,
    session: AsyncSession = Depends(get_async_session),
) -> RecomputeAcceptedResponse:
    run = await _create_run(session, EmbeddingRunMode.INCREMENTAL, request)

    task = recompute_embeddings_since.delay(
        run_id=run.id,
        since_iso=request.since.isoformat(),
    )
    run.celery_task_id = task.id

    logger.info(
        "Dispatched incremental embedding run: run_id=%d, task_id=%s, since=%s",
        run.id, task.id, request.since,
    )

    return RecomputeAcceptedResponse(
        run_id=run.id,
        task_id=task.id,
        message=f"Embedding recompute since {request.since} queued.",
    )


# ---------------------------------------------------------------------------
# GET /admin/embeddings/runs/{run_id} — Poll run status
# ---------------------------------------------------------------------------


@router.get(
    "/admin/embeddings/runs/{run_id}",
    response_model=EmbeddingRunResponse,
    summary="Check an embedding run",
)
async def get_run(
    run_id: int,
    session: AsyncSession = Depends(get_async_session),
) -> EmbeddingRunResponse:
    run = await session.get(EmbeddingRun, run_id)
    if run is None:
        raise HTTPException(
            status_code=404,
            detail=f"Embedding run {run_id} not found",
        )
    return EmbeddingRunResponse.model_validate(run)
