# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Defines request/response schemas for the API.
# These are SEPARATE from the database models (app/db/models.py), so the
# five embedding vectors stored per transaction never reach a response.
# =============================================================================
