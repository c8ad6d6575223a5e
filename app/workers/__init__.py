# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
# Handles long-running embedding backfills:
#   - celery_app.py: Celery application configuration
#   - tasks.py: Full and incremental recompute tasks
#
# A full backfill issues five provider calls per incomplete transaction and
# can run for an hour or more, so it runs outside the API process and
# reports progress through the embedding_runs table.
# =============================================================================
