# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs the batch embedding pipeline outside the API process:
#   POST /admin/embeddings/recompute → embedding_runs row → Celery task
#   → pipeline pages through incomplete transactions → run row updated
#
# A full backfill over a large ledger issues five provider calls per
# transaction and can run for a long time, so it must not share the API's
# event loop and must survive API restarts.
#
# ARCHITECTURE:
# ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌────────────┐
# │ FastAPI  │────▶│ Redis │────▶│ Celery Worker│────▶│ PostgreSQL │
# │(producer)│     │(broker)│    │  (pipeline)  │     │ (pgvector) │
# └──────────┘     └───────┘     └──────────────┘     └────────────┘
#
# The broker (Redis db 0) queues tasks; results live in Redis db 1. Run
# progress is tracked in the embedding_runs table for the API to poll.
# =============================================================================

from celery import Celery

from app.config import settings

celery_app = Celery(
    "app.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON only: pickle can execute arbitrary code during deserialization.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Acknowledge after completion so a crashed worker's run is re-queued.
    # Re-running is safe: the pipeline only selects incomplete records.
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # One long run per worker slot at a time.
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    # Backfills are long; allow an hour soft, ninety minutes hard.
    task_soft_time_limit=3600,
    task_time_limit=5400,

    # --- Results ---
    result_expires=3600,

    # --- Task Discovery ---
    include=["app.workers.tasks"],
)
