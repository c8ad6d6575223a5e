# =============================================================================
# Celery Task Definitions — Embedding Recompute Runs
# =============================================================================
#
# Two administrative triggers map onto the pipeline's two modes:
#
#   recompute_embeddings(run_id)                    → full backfill
#   recompute_embeddings_since(run_id, since_iso)   → incremental backfill
#
# Both read their scope (optional bank account) from the embedding_runs
# row the API created, then:
#   1. mark the run PROCESSING
#   2. execute the async pipeline with asyncio.run() on a NullPool engine
#   3. store the report counters and mark the run COMPLETED
#      (or FAILED with the error message, then retry)
#
# IMPORTANT: Celery workers are SYNCHRONOUS. Run bookkeeping goes through
# the sync engine; only the pipeline itself runs on an event loop, owned
# entirely by this task invocation.
#
# RETRY STRATEGY:
# max_retries=3 with a 60 s base delay. Per-record failures never fail the
# run (the pipeline counts and skips them); only run-level failures such
# as a lost database connection trigger a Celery retry.
# =============================================================================

import asyncio
import logging
from datetime import date

from sqlalchemy import update

from app.db.engine import create_worker_session_factory, get_sync_session
from app.db.models import EmbeddingRun, EmbeddingRunStatus
from app.services.embedder import get_embedding_provider
from app.services.embedding_pipeline import (
    EmbeddingPipeline,
    PgEmbeddingRepository,
    PipelineReport,
)
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _update_run(run_id: int, **values) -> None:
    """Update an embedding_runs row in its own committed session."""
    with get_sync_session() as session:
        session.execute(
            update(EmbeddingRun)
            .where(EmbeddingRun.id == run_id)
            .values(**values)
        )


def _load_account_scope(run_id: int) -> str | None:
    with get_sync_session() as session:
        run = session.get(EmbeddingRun, run_id)
        if run is None:
            raise ValueError(f"Embedding run {run_id} does not exist")
        return run.bank_account_number


async def _run_pipeline(
    run_label: str,
    since: date | None,
    bank_account_number: str | None,
) -> PipelineReport:
    engine, factory = create_worker_session_factory()
    try:
        pipeline = EmbeddingPipeline(
            PgEmbeddingRepository(factory),
            get_embedding_provider(),
            run_label=run_label,
        )
        if since is None:
            return await pipeline.run_full(bank_account_number)
        return await pipeline.run_incremental(since, bank_account_number)
    finally:
        await engine.dispose()


def _execute(task, run_id: int, since: date | None) -> dict:
    task_id = task.request.id
    label = task_id or f"run-{run_id}"

    try:
        account = _load_account_scope(run_id)
        _update_run(
            run_id,
            status=EmbeddingRunStatus.PROCESSING,
            celery_task_id=task_id,
        )

        report = asyncio.run(_run_pipeline(label, since, account))

        _update_run(
            run_id,
            status=EmbeddingRunStatus.COMPLETED,
            pages=report.pages,
            processed=report.processed,
            failed=report.failed,
            error_message=None,
        )

        summary = {
            "run_id": run_id,
            "status": "completed",
            "mode": report.mode,
            "pages": report.pages,
            "processed": report.processed,
            "failed": report.failed,
            "failed_ids": report.failed_ids,
        }
        logger.info("[%s] Embedding run complete: %s", label, summary)
        return summary

    except Exception as exc:
        logger.exception(
            "[%s] Embedding run %d failed: %s", label, run_id, exc,
        )
        # Truncate to keep error rows readable
        _update_run(
            run_id,
            status=EmbeddingRunStatus.FAILED,
            error_message=str(exc)[:1000],
        )
        raise task.retry(exc=exc)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@celery_app.task(
    bind=True,
    name="recompute_embeddings",
    max_retries=3,
    default_retry_delay=60,
)
def recompute_embeddings(self, run_id: int) -> dict:
    """Backfill every transaction that is missing any embedding."""
    logger.info("Starting full embedding run %d (task %s)", run_id, self.request.id)
    return _execute(self, run_id, since=None)


@celery_app.task(
    bind=True,
    name="recompute_embeddings_since",
    max_retries=3,
    default_retry_delay=60,
)
def recompute_embeddings_since(self, run_id: int, since_iso: str) -> dict:
    """Backfill incomplete transactions dated on or after `since_iso`."""
    since = date.fromisoformat(since_iso)
    logger.info(
        "Starting incremental embedding run %d since %s (task %s)",
        run_id, since, self.request.id,
    )
    return _execute(self, run_id, since=since)
