# =============================================================================
# Batch Embedding Pipeline — Paged, Bounded-Concurrency Backfill
# =============================================================================
#
# Finds transactions with at least one missing embedding column, computes
# all five embeddings per record and writes them back.
#
# ALGORITHM (per run):
#   1. Fetch one page of incomplete records, ordered by id, starting
#      strictly after the last id seen (keyset pagination).
#   2. Fan out one task per record behind an asyncio.Semaphore gate.
#   3. Await the whole page, then fetch the next one. Pages never overlap.
#   4. Stop on an empty page, or (full mode) on a short page.
#
# DESIGN DECISION: Keyset pagination (`id > last_id`) instead of OFFSET.
# Records drop out of the "incomplete" set as soon as they are written, so
# OFFSET paging over that set would skip rows. Keyset paging never skips
# or repeats a row as long as ids do not change, and a record that failed
# all its attempts is not re-fetched within the same run.
#
# DESIGN DECISION: Any-null reselection. A record is selected while ANY of
# its five columns is NULL, so a record left partially written by an
# earlier crash is picked up again by the next run.
#
# DESIGN DECISION: All five columns of one record are written in a single
# UPDATE inside one transaction. A record is either fully updated or not
# touched at all.
#
# RETRY STRATEGY:
# Up to `pipeline_max_attempts` (3) attempts per record, sleeping
# `pipeline_retry_base_delay × attempt` seconds between attempts. A record
# that exhausts its attempts is logged, counted as failed and skipped;
# the rest of the page carries on.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import settings
from app.db.models import EMBEDDING_COLUMNS, CategoryMapping, Transaction
from app.errors import StoreError
from app.services.embedder import EmbeddingProvider
from app.services.embedding_generator import (
    CategoryLabel,
    SourceRecord,
    SpecializedEmbeddings,
    generate,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class PipelineReport:
    """Outcome of one pipeline run."""

    mode: str
    pages: int = 0
    page_sizes: list[int] = field(default_factory=list)
    processed: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)


PageItem = tuple[SourceRecord, CategoryLabel | None]


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class EmbeddingRepository(Protocol):
    """Storage operations the pipeline needs."""

    async def fetch_incomplete_page(
        self,
        after_id: uuid.UUID | None,
        limit: int,
        since: date | None = None,
        bank_account_number: str | None = None,
    ) -> list[PageItem]:
        """Return up to `limit` incomplete records with id > after_id, by id."""
        ...

    async def save_embeddings(
        self,
        record_id: uuid.UUID,
        embeddings: SpecializedEmbeddings,
    ) -> None:
        """Write all five columns of one record atomically."""
        ...


# ---------------------------------------------------------------------------
# Implementation: PostgreSQL
# ---------------------------------------------------------------------------


class PgEmbeddingRepository:
    """
    EmbeddingRepository over bank_transactions + category_mappings.

    Opens a short-lived session per page read and per record write so that
    concurrent record tasks never share a session (AsyncSession is not
    safe for concurrent use).
    """

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def fetch_incomplete_page(
        self,
        after_id: uuid.UUID | None,
        limit: int,
        since: date | None = None,
        bank_account_number: str | None = None,
    ) -> list[PageItem]:
        stmt = build_incomplete_page_statement(
            after_id, limit, since, bank_account_number,
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to fetch records: {exc}") from exc

        page: list[PageItem] = []
        for row in rows:
            record = SourceRecord(
                id=row.id,
                description=row.description,
                amount=row.amount,
                transaction_date=row.transaction_date,
                transaction_type=row.transaction_type,
                category_code=row.category_code,
            )
            label = None
            if row.mapping_code is not None:
                label = CategoryLabel(
                    code=row.mapping_code,
                    description=row.mapping_description,
                    short_description=row.mapping_short_description,
                )
            page.append((record, label))
        return page

    async def save_embeddings(
        self,
        record_id: uuid.UUID,
        embeddings: SpecializedEmbeddings,
    ) -> None:
        stmt = (
            update(Transaction)
            .where(Transaction.id == record_id)
            .values(**embeddings.as_columns())
        )
        try:
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(
                f"Failed to write embeddings for {record_id}: {exc}"
            ) from exc


def build_incomplete_page_statement(
    after_id: uuid.UUID | None,
    limit: int,
    since: date | None = None,
    bank_account_number: str | None = None,
):
    """Select one keyset page of records with any NULL embedding column."""
    stmt = (
        select(
            Transaction.id,
            Transaction.description,
            Transaction.amount,
            Transaction.transaction_date,
            Transaction.transaction_type,
            Transaction.category_code,
            CategoryMapping.code.label("mapping_code"),
            CategoryMapping.description.label("mapping_description"),
            CategoryMapping.short_description.label(
                "mapping_short_description"
            ),
        )
        .outerjoin(
            CategoryMapping,
            CategoryMapping.code == Transaction.category_code,
        )
        .where(
            or_(*(
                getattr(Transaction, column).is_(None)
                for column in EMBEDDING_COLUMNS
            ))
        )
    )
    if after_id is not None:
        stmt = stmt.where(Transaction.id > after_id)
    if since is not None:
        stmt = stmt.where(Transaction.transaction_date >= since)
    if bank_account_number:
        stmt = stmt.where(
            Transaction.bank_account_number == bank_account_number
        )
    return stmt.order_by(Transaction.id).limit(limit)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class EmbeddingPipeline:
    """
    Computes and persists missing embeddings in full or incremental mode.

    Args:
        repository: Where records are read from and written to.
        provider: Embedding provider shared by all record tasks.
        run_label: Prefix for log lines (e.g. the Celery task id).
        max_attempts: Attempts per record (default from settings).
        retry_base_delay: Seconds × attempt between attempts.
    """

    def __init__(
        self,
        repository: EmbeddingRepository,
        provider: EmbeddingProvider,
        run_label: str = "pipeline",
        max_attempts: int | None = None,
        retry_base_delay: float | None = None,
    ) -> None:
        self._repository = repository
        self._provider = provider
        self._label = run_label
        self._max_attempts = max_attempts or settings.pipeline_max_attempts
        self._retry_base_delay = (
            settings.pipeline_retry_base_delay
            if retry_base_delay is None
            else retry_base_delay
        )

    async def run_full(
        self,
        bank_account_number: str | None = None,
        page_size: int | None = None,
        concurrency: int | None = None,
    ) -> PipelineReport:
        """Backfill every record that is missing any embedding."""
        return await self._run(
            mode="full",
            page_size=page_size or settings.pipeline_full_page_size,
            concurrency=concurrency or settings.pipeline_full_concurrency,
            since=None,
            bank_account_number=bank_account_number,
            stop_on_short_page=True,
        )

    async def run_incremental(
        self,
        since: date,
        bank_account_number: str | None = None,
        page_size: int | None = None,
        concurrency: int | None = None,
    ) -> PipelineReport:
        """Backfill incomplete records dated on or after `since`."""
        return await self._run(
            mode="incremental",
            page_size=page_size or settings.pipeline_incremental_page_size,
            concurrency=(
                concurrency or settings.pipeline_incremental_concurrency
            ),
            since=since,
            bank_account_number=bank_account_number,
            stop_on_short_page=False,
        )

    async def _run(
        self,
        mode: str,
        page_size: int,
        concurrency: int,
        since: date | None,
        bank_account_number: str | None,
        stop_on_short_page: bool,
    ) -> PipelineReport:
        report = PipelineReport(mode=mode)
        gate = asyncio.Semaphore(concurrency)
        last_id: uuid.UUID | None = None

        logger.info(
            "[%s] Starting %s embedding run (page_size=%d, concurrency=%d, "
            "since=%s, account=%s)",
            self._label, mode, page_size, concurrency, since,
            bank_account_number,
        )

        while True:
            page = await self._repository.fetch_incomplete_page(
                after_id=last_id,
                limit=page_size,
                since=since,
                bank_account_number=bank_account_number,
            )
            if not page:
                break

            report.pages += 1
            report.page_sizes.append(len(page))
            logger.info(
                "[%s] Page %d: %d records", self._label, report.pages, len(page),
            )

            outcomes = await asyncio.gather(*(
                self._process_record(record, label, gate)
                for record, label in page
            ))

            for (record, _), ok in zip(page, outcomes, strict=True):
                if ok:
                    report.processed += 1
                else:
                    report.failed += 1
                    report.failed_ids.append(str(record.id))

            last_id = page[-1][0].id

            if stop_on_short_page and len(page) < page_size:
                break

        logger.info(
            "[%s] %s run complete: pages=%d, processed=%d, failed=%d",
            self._label, mode, report.pages, report.processed, report.failed,
        )
        return report

    async def _process_record(
        self,
        record: SourceRecord,
        label: CategoryLabel | None,
        gate: asyncio.Semaphore,
    ) -> bool:
        """Generate and save one record, retrying. Returns success."""
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with gate:
                    embeddings = await generate(record, label, self._provider)
                    await self._repository.save_embeddings(
                        record.id, embeddings,
                    )
                return True
            except Exception as exc:
                if attempt >= self._max_attempts:
                    logger.error(
                        "[%s] Giving up on transaction %s after %d attempts: %s",
                        self._label, record.id, attempt, exc,
                    )
                    return False
                logger.warning(
                    "[%s] Attempt %d/%d failed for transaction %s: %s",
                    self._label, attempt, self._max_attempts, record.id, exc,
                )
            # Back off outside the gate so waiting records don't hold slots
            await asyncio.sleep(self._retry_base_delay * attempt)
        return False
