# =============================================================================
# Specialised Embedding Generator — Five Projections per Transaction
# =============================================================================
#
# Each transaction gets five embeddings, each computed from a different
# textual projection of the same record:
#
#   content   → what the payment was for (description + category labels)
#   amount    → the amount, padded with money vocabulary
#   date      → ISO date plus month, year, day and weekday words
#   category  → category code, labels and transaction type
#   combined  → all four projections concatenated
#
# DESIGN DECISION: Projections are built by plain string concatenation of
# record fields (no truncation, no hashing, no locale-dependent
# formatting) so regenerating the texts for an unchanged record is
# byte-identical. The vectors themselves may still differ between runs if
# the provider is non-deterministic.
#
# DESIGN DECISION: No retries here. Any failed provider call aborts the
# whole record by propagating ProviderError; the batch pipeline decides
# whether to retry.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from app.services.embedder import EmbeddingProvider

logger = logging.getLogger(__name__)

# Fixed English names so the date projection never depends on the process
# locale.
_MONTHS = (
    "January", "February", "March", "April", "May", "June", "July",
    "August", "September", "October", "November", "December",
)
_WEEKDAYS = (
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday",
    "Sunday",
)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceRecord:
    """The transaction fields that feed the embedding projections."""

    id: uuid.UUID
    description: str | None
    amount: Decimal | None
    transaction_date: date | None
    transaction_type: str | None
    category_code: str | None


@dataclass(frozen=True)
class CategoryLabel:
    """Human-readable labels for a category code."""

    code: str
    description: str | None = None
    short_description: str | None = None


@dataclass(frozen=True)
class EmbeddingSourceTexts:
    content: str
    amount: str
    date: str
    category: str
    combined: str


@dataclass
class SpecializedEmbeddings:
    content: list[float]
    amount: list[float]
    date: list[float]
    category: list[float]
    combined: list[float]

    def as_columns(self) -> dict[str, list[float]]:
        """Map each vector to its column on bank_transactions."""
        return {
            "content_embedding": self.content,
            "amount_embedding": self.amount,
            "date_embedding": self.date,
            "category_embedding": self.category,
            "combined_embedding": self.combined,
        }


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def build_source_texts(
    record: SourceRecord,
    category: CategoryLabel | None,
) -> EmbeddingSourceTexts:
    """Build the five deterministic projections of one record."""
    category_description = category.description if category else None
    category_short = category.short_description if category else None

    content = _join(record.description, category_description, category_short)

    amount = _join(
        "amount",
        str(record.amount) if record.amount is not None else None,
        "currency money payment transaction value financial",
    )

    if record.transaction_date is not None:
        d = record.transaction_date
        date_text = (
            f"date {d.isoformat()} month {_MONTHS[d.month - 1]} "
            f"year {d.year:04d} day {d.day:02d} "
            f"weekday {_WEEKDAYS[d.weekday()]}"
        )
    else:
        date_text = "date unknown"

    category_text = _join(
        "category",
        record.category_code,
        category_description,
        category_short,
        "type",
        record.transaction_type,
    )

    combined = _join(content, amount, date_text, category_text)

    return EmbeddingSourceTexts(
        content=content,
        amount=amount,
        date=date_text,
        category=category_text,
        combined=combined,
    )


async def generate(
    record: SourceRecord,
    category: CategoryLabel | None,
    provider: EmbeddingProvider,
) -> SpecializedEmbeddings:
    """
    Compute all five embeddings for one record.

    Calls are issued one after another so that a record occupies exactly
    one slot of the pipeline's concurrency gate.

    Raises:
        ProviderError: From the first failing provider call. No partial
            result is returned.
    """
    texts = build_source_texts(record, category)

    content = await provider.embed(texts.content)
    amount = await provider.embed(texts.amount)
    date_vector = await provider.embed(texts.date)
    category_vector = await provider.embed(texts.category)
    combined = await provider.embed(texts.combined)

    logger.debug("Generated 5 embeddings for transaction %s", record.id)

    return SpecializedEmbeddings(
        content=content,
        amount=amount,
        date=date_vector,
        category=category_vector,
        combined=combined,
    )


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _join(*parts: str | None) -> str:
    """Space-join the non-empty parts, collapsing internal whitespace."""
    words: list[str] = []
    for part in parts:
        if part:
            words.extend(part.split())
    return " ".join(words)
