# =============================================================================
# Database Package
# =============================================================================
# Provides async SQLAlchemy engine, session management, and ORM models.
#
# Key exports:
#   - get_async_session: FastAPI dependency for database sessions
#   - Base: SQLAlchemy declarative base for ORM models
#   - Transaction, CategoryMapping, EmbeddingRun: ORM models for bank
#     transactions, their category labels and recompute runs
# =============================================================================
