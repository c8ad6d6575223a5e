# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌────────────────────────────────────┐      ┌───────────────────────────┐
# │  bank_transactions                 │      │  category_mappings        │
# ├────────────────────────────────────┤      ├───────────────────────────┤
# │ id (PK, uuid)                      │      │ code (PK)                 │
# │ description, amount                │ N:1  │ description               │
# │ transaction_date                   │─────▶│ short_description         │
# │ customer_name                      │      └───────────────────────────┘
# │ bank_account_name / _number        │
# │ transaction_type, debit_credit     │      ┌───────────────────────────┐
# │ category_code                      │      │  embedding_runs           │
# │ content_embedding   vector(1536)   │      ├───────────────────────────┤
# │ amount_embedding    vector(1536)   │      │ id, mode, since, status   │
# │ date_embedding      vector(1536)   │      │ pages, processed, failed  │
# │ category_embedding  vector(1536)   │      │ error_message, task id    │
# │ combined_embedding  vector(1536)   │      └───────────────────────────┘
# └────────────────────────────────────┘
#
# DESIGN DECISIONS:
#
# 1. Five embedding columns per transaction, one per textual projection
#    (description, amount, date, category, everything). The query
#    classifier picks the column at search time.
#
# 2. Embedding columns are nullable: rows arrive from an external import
#    without vectors and the batch pipeline fills them in. A column is
#    either NULL or a complete vector(1536); pgvector rejects partial
#    vectors at the type level.
#
# 3. Rows are never created or deleted here. The engine only reads them
#    and writes the embedding columns.
# =============================================================================

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Date,
    DateTime,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class shared by all ORM models."""

    pass


# Ordered tuple of the five embedding column names. The order matches
# SpecializedEmbeddings in services/embedding_generator.py.
EMBEDDING_COLUMNS = (
    "content_embedding",
    "amount_embedding",
    "date_embedding",
    "category_embedding",
    "combined_embedding",
)


class CategoryMapping(Base):
    """
    Maps a category code to its human-readable descriptions.

    Read-only for this engine: joined against transactions to build the
    embedding source texts and to present results.
    """

    __tablename__ = "category_mappings"

    code: Mapped[str] = mapped_column(String(50), primary_key=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    short_description: Mapped[str | None] = mapped_column(
        String(500), nullable=True,
    )

    def __repr__(self) -> str:
        return f"<CategoryMapping(code='{self.code}')>"


class Transaction(Base):
    """
    A financial ledger entry with its five specialised embeddings.

    `debit_credit` carries the bank's direction marker: "Af" for money
    leaving the account (expenses), "Bij" for money coming in.
    """

    __tablename__ = "bank_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4,
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(
        Numeric(18, 2), nullable=True,
    )
    transaction_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # The business whose books this row belongs to
    customer_name: Mapped[str | None] = mapped_column(
        String(255), nullable=True,
    )

    # The counterparty on the other side of the payment
    bank_account_name: Mapped[str | None] = mapped_column(
        String(255), nullable=True,
    )
    bank_account_number: Mapped[str | None] = mapped_column(
        String(64), nullable=True,
    )

    transaction_type: Mapped[str | None] = mapped_column(
        String(100), nullable=True,
    )
    debit_credit: Mapped[str | None] = mapped_column(String(8), nullable=True)

    # Soft reference to category_mappings.code (imported data is not
    # guaranteed to reference a known code, so no FK constraint)
    category_code: Mapped[str | None] = mapped_column(
        String(50), nullable=True,
    )

    # ---------------------------------------------------------------------------
    # Specialised embeddings — NULL until the batch pipeline computes them
    # ---------------------------------------------------------------------------
    content_embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions), nullable=True,
    )
    amount_embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions), nullable=True,
    )
    date_embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions), nullable=True,
    )
    category_embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions), nullable=True,
    )
    combined_embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions), nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, date={self.transaction_date}, "
            f"amount={self.amount}, category='{self.category_code}')>"
        )


# =============================================================================
# Database Indexes
# =============================================================================
# One HNSW index per embedding column, all with `vector_cosine_ops` since
# every search ranks by cosine distance. B-tree indexes back the filters
# used by the analysis functions and the pipeline's incremental mode.
# =============================================================================

embedding_indexes = [
    Index(
        f"idx_bank_transactions_{column}_hnsw",
        getattr(Transaction, column),
        postgresql_using="hnsw",
        postgresql_with={"m": 16, "ef_construction": 64},
        postgresql_ops={column: "vector_cosine_ops"},
    )
    for column in EMBEDDING_COLUMNS
]

transaction_date_idx = Index(
    "idx_bank_transactions_date", Transaction.transaction_date,
)
transaction_customer_idx = Index(
    "idx_bank_transactions_customer", Transaction.customer_name,
)
transaction_category_idx = Index(
    "idx_bank_transactions_category", Transaction.category_code,
)


# =============================================================================
# Embedding Runs — Bookkeeping for Administrative Recompute Triggers
# =============================================================================


class EmbeddingRunStatus(str, enum.Enum):
    """
    Tracks a batch pipeline run.

    State machine:
        PENDING → PROCESSING → COMPLETED
                             → FAILED
    """

    PENDING = "pending"          # Queued, waiting for a Celery worker
    PROCESSING = "processing"    # Pipeline is paging through records
    COMPLETED = "completed"      # Pipeline finished (per-record failures allowed)
    FAILED = "failed"            # The run itself aborted (see error_message)


class EmbeddingRunMode(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class EmbeddingRun(Base):
    """One invocation of the batch embedding pipeline."""

    __tablename__ = "embedding_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    mode: Mapped[EmbeddingRunMode] = mapped_column(
        Enum(EmbeddingRunMode), nullable=False,
    )

    # Lower bound on transaction_date (incremental mode only)
    since: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Optional scope to one counterparty account
    bank_account_number: Mapped[str | None] = mapped_column(
        String(64), nullable=True,
    )

    status: Mapped[EmbeddingRunStatus] = mapped_column(
        Enum(EmbeddingRunStatus),
        nullable=False,
        default=EmbeddingRunStatus.PENDING,
    )

    pages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<EmbeddingRun(id={self.id}, mode={self.mode}, "
            f"status={self.status})>"
        )
