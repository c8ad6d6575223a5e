# =============================================================================
# Unit Tests — Batch Embedding Pipeline
# =============================================================================
#
# Runs the pipeline against an in-memory repository and a fake provider.
# The SQL statement builder is checked by compiling it for PostgreSQL.
# =============================================================================

import asyncio
import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy.dialects import postgresql

from app.errors import ProviderError
from app.services.embedding_generator import SourceRecord
from app.services.embedding_pipeline import (
    EmbeddingPipeline,
    build_incomplete_page_statement,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    try:
        loop = asyncio.get_event_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


class InMemoryRepository:
    """Keyset-paged view over a dict of records, like PgEmbeddingRepository."""

    def __init__(self, count: int, start: date = date(2025, 1, 1)):
        self.records = {
            uuid.UUID(int=i + 1): SourceRecord(
                id=uuid.UUID(int=i + 1),
                description=f"payment {i + 1}",
                amount=Decimal(i + 1),
                transaction_date=date.fromordinal(start.toordinal() + i),
                transaction_type="Af",
                category_code=None,
            )
            for i in range(count)
        }
        self.saved: dict[uuid.UUID, dict] = {}
        self.fetches: list[uuid.UUID | None] = []

    async def fetch_incomplete_page(
        self, after_id, limit, since=None, bank_account_number=None,
    ):
        self.fetches.append(after_id)
        ids = sorted(
            rid for rid, record in self.records.items()
            if rid not in self.saved
            and (after_id is None or rid > after_id)
            and (since is None or record.transaction_date >= since)
        )
        return [(self.records[rid], None) for rid in ids[:limit]]

    async def save_embeddings(self, record_id, embeddings):
        self.saved[record_id] = embeddings.as_columns()


class CountingProvider:
    """Counts calls and tracks how many records embed at the same time."""

    def __init__(self, poison: str | None = None, flaky: str | None = None):
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._poison = poison
        self._flaky = flaky
        self._flaky_failed = False

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self._poison and self._poison in text.split():
            raise ProviderError("rejected input")
        if self._flaky and text == self._flaky and not self._flaky_failed:
            self._flaky_failed = True
            raise ProviderError("temporary outage")
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0)
        self.in_flight -= 1
        return [0.5, 0.5]


class TestFullRun:
    def test_pages_and_call_count(self):
        repo = InMemoryRepository(450)
        provider = CountingProvider()
        pipeline = EmbeddingPipeline(repo, provider, retry_base_delay=0)

        report = _run(pipeline.run_full(page_size=200, concurrency=8))

        assert report.mode == "full"
        assert report.page_sizes == [200, 200, 50]
        assert report.pages == 3
        assert report.processed == 450
        assert report.failed == 0
        assert provider.calls == 450 * 5
        assert len(repo.saved) == 450

    def test_stops_after_short_page(self):
        repo = InMemoryRepository(450)
        pipeline = EmbeddingPipeline(repo, CountingProvider(), retry_base_delay=0)
        _run(pipeline.run_full(page_size=200, concurrency=8))
        # No fourth fetch after the 50-record page
        assert len(repo.fetches) == 3

    def test_keyset_pages_never_overlap(self):
        repo = InMemoryRepository(450)
        pipeline = EmbeddingPipeline(repo, CountingProvider(), retry_base_delay=0)
        _run(pipeline.run_full(page_size=200, concurrency=8))
        assert repo.fetches[0] is None
        assert repo.fetches[1] == uuid.UUID(int=200)
        assert repo.fetches[2] == uuid.UUID(int=400)

    def test_concurrency_gate_bounds_in_flight_records(self):
        repo = InMemoryRepository(60)
        provider = CountingProvider()
        pipeline = EmbeddingPipeline(repo, provider, retry_base_delay=0)
        _run(pipeline.run_full(page_size=60, concurrency=4))
        assert 1 <= provider.max_in_flight <= 4

    def test_empty_store(self):
        repo = InMemoryRepository(0)
        report = _run(
            EmbeddingPipeline(repo, CountingProvider()).run_full(page_size=200)
        )
        assert report.pages == 0
        assert report.processed == 0


class TestRetries:
    def test_transient_failure_is_retried(self):
        repo = InMemoryRepository(3)
        provider = CountingProvider(flaky="payment 2")
        pipeline = EmbeddingPipeline(
            repo, provider, max_attempts=3, retry_base_delay=0,
        )

        report = _run(pipeline.run_full(page_size=10))

        assert report.processed == 3
        assert report.failed == 0
        # One failed content call, then a full retry of five calls
        assert provider.calls == 3 * 5 + 1

    def test_exhausted_record_is_skipped_not_fatal(self):
        repo = InMemoryRepository(5)
        provider = CountingProvider(poison="3")
        pipeline = EmbeddingPipeline(
            repo, provider, max_attempts=3, retry_base_delay=0,
        )

        report = _run(pipeline.run_full(page_size=10))

        assert report.processed == 4
        assert report.failed == 1
        assert report.failed_ids == [str(uuid.UUID(int=3))]
        assert uuid.UUID(int=3) not in repo.saved
        # The content text fails first, on each of the three attempts
        assert provider.calls == 4 * 5 + 3


class TestIncrementalRun:
    def test_only_records_since_date(self):
        repo = InMemoryRepository(30, start=date(2025, 1, 1))
        provider = CountingProvider()
        pipeline = EmbeddingPipeline(repo, provider, retry_base_delay=0)

        report = _run(pipeline.run_incremental(date(2025, 1, 21), page_size=1000))

        assert report.mode == "incremental"
        assert report.processed == 10
        assert provider.calls == 50

    def test_continues_until_empty_page(self):
        repo = InMemoryRepository(25)
        pipeline = EmbeddingPipeline(repo, CountingProvider(), retry_base_delay=0)

        report = _run(
            pipeline.run_incremental(date(2000, 1, 1), page_size=10, concurrency=5)
        )

        assert report.page_sizes == [10, 10, 5]
        # Short pages do not stop incremental runs; the empty fetch does
        assert len(repo.fetches) == 4


class TestIncompletePageStatement:
    def _sql(self, stmt) -> str:
        return str(stmt.compile(dialect=postgresql.dialect()))

    def test_selects_rows_with_any_missing_column(self):
        sql = self._sql(build_incomplete_page_statement(None, 200))
        for column in (
            "content_embedding", "amount_embedding", "date_embedding",
            "category_embedding", "combined_embedding",
        ):
            assert f"bank_transactions.{column} IS NULL" in sql
        assert " OR " in sql
        assert "ORDER BY bank_transactions.id" in sql
        assert "LIMIT" in sql

    def test_keyset_and_filters(self):
        sql = self._sql(build_incomplete_page_statement(
            uuid.UUID(int=7), 50, date(2025, 1, 1), "NL01BANK0123456789",
        ))
        assert "bank_transactions.id >" in sql
        assert "bank_transactions.transaction_date >=" in sql
        assert "bank_transactions.bank_account_number =" in sql
