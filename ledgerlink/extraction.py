"""Bounded worker pool for OCR extraction and categorization.

Both external providers are black boxes passed in by the caller. Work is cut
into fixed-size slices; each slice runs on a thread pool no wider than the
slice, with a short pause between slices to respect provider rate limits. A
failing item never aborts the batch.
"""

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Protocol, TypeVar

from ledgerlink.models import Document, Transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

OCR_BATCH_SIZE = 10
OCR_PAUSE_SECONDS = 1.0
CATEGORIZE_BATCH_SIZE = 20


@dataclass
class CategoryLabel:
    """Category assigned to one transaction by a categorizer."""

    category: str
    subcategory: str | None = None
    confidence: float | None = None


class DocumentExtractor(Protocol):
    """OCR provider contract: one uploaded file in, one structured document out."""

    def extract(self, source: str) -> Document | None: ...


class Categorizer(Protocol):
    """Categorization provider contract: one label (or None) per transaction, in order."""

    def categorize(self, transactions: list[Transaction]) -> list[CategoryLabel | None]: ...


def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], R],
    batch_size: int,
    pause_seconds: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> list[R | None]:
    """Run ``worker`` over ``items`` in slices of ``batch_size``.

    Args:
        items: Work items, results keep their order
        worker: Function applied to each item
        batch_size: Slice size and thread pool width
        pause_seconds: Pause between slices
        sleep: Sleep function (injectable for tests)

    Returns:
        One result per item; None where the worker raised

    Raises:
        ValueError: If batch_size is not positive
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    results: list[R | None] = []
    for start in range(0, len(items), batch_size):
        chunk = items[start : start + batch_size]
        with ThreadPoolExecutor(max_workers=len(chunk)) as pool:
            futures = [pool.submit(worker, item) for item in chunk]
            for offset, future in enumerate(futures):
                try:
                    results.append(future.result())
                except Exception:
                    logger.exception("Worker failed on item %d", start + offset)
                    results.append(None)
        if pause_seconds and start + batch_size < len(items):
            sleep(pause_seconds)
    return results


def extract_documents(
    sources: Sequence[str],
    extractor: DocumentExtractor,
    batch_size: int = OCR_BATCH_SIZE,
    pause_seconds: float = OCR_PAUSE_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> list[Document]:
    """Extract documents from uploaded files, dropping files that failed."""
    extracted = run_bounded(sources, extractor.extract, batch_size, pause_seconds, sleep)
    documents = [doc for doc in extracted if doc is not None]
    if len(documents) < len(sources):
        logger.warning("%d of %d documents could not be extracted", len(sources) - len(documents), len(sources))
    return documents


def categorize_in_batches(
    transactions: list[Transaction],
    categorizer: Categorizer,
    batch_size: int = CATEGORIZE_BATCH_SIZE,
) -> list[Transaction]:
    """Fill in category fields for rows that have none.

    Rows that already carry a category are passed through. A slice the
    categorizer fails on stays uncategorized.
    """
    pending = [tx for tx in transactions if not tx.category]
    if not pending:
        return list(transactions)

    slices = [pending[start : start + batch_size] for start in range(0, len(pending), batch_size)]
    labelled = run_bounded(slices, categorizer.categorize, batch_size=1)

    labels: dict[int, CategoryLabel] = {}
    for rows, row_labels in zip(slices, labelled):
        if row_labels is None:
            continue
        for tx, label in zip(rows, row_labels):
            if label is not None:
                labels[id(tx)] = label

    categorized = []
    for tx in transactions:
        label = labels.get(id(tx))
        if label is None:
            categorized.append(tx)
        else:
            categorized.append(
                replace(tx, category=label.category, subcategory=label.subcategory, confidence=label.confidence)
            )
    return categorized


__all__ = [
    "CategoryLabel",
    "Categorizer",
    "DocumentExtractor",
    "categorize_in_batches",
    "extract_documents",
    "run_bounded",
]
