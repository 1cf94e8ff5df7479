"""Tests for the bounded extraction/categorization pool."""

import threading
from datetime import date
from decimal import Decimal

import pytest

from ledgerlink.extraction import CategoryLabel, categorize_in_batches, extract_documents, run_bounded
from ledgerlink.models import Document
from tests.factories import TestDataFactory


class FakeExtractor:
    """Returns a document per file name; names starting with "bad" fail."""

    def extract(self, source):
        if source.startswith("bad"):
            raise OSError(f"cannot read {source}")
        return Document(id=source, vendor_name="Acme", document_date=date(2024, 2, 1), total_amount=Decimal("10"))


class KeywordCategorizer:
    """Labels coffee rows; fails on any slice containing "Broken"."""

    def __init__(self):
        self.calls = 0

    def categorize(self, transactions):
        self.calls += 1
        if any(tx.description == "Broken" for tx in transactions):
            raise RuntimeError("provider error")
        return [
            CategoryLabel("Food", "Coffee", 0.8) if "Coffee" in tx.description else None for tx in transactions
        ]


class TestRunBounded:
    """Test slicing, ordering and failure isolation."""

    def test_results_keep_input_order(self):
        assert run_bounded([3, 1, 2], lambda n: n * 10, batch_size=2) == [30, 10, 20]

    def test_failure_becomes_none(self):
        def worker(n):
            if n == 2:
                raise ValueError("boom")
            return n

        assert run_bounded([1, 2, 3], worker, batch_size=3) == [1, None, 3]

    def test_pauses_between_slices_only(self):
        sleeps = []

        run_bounded(list(range(5)), lambda n: n, batch_size=2, pause_seconds=1.0, sleep=sleeps.append)

        assert sleeps == [1.0, 1.0]

    def test_concurrency_bounded_by_slice(self):
        active = 0
        peak = 0
        lock = threading.Lock()

        def worker(n):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            with lock:
                active -= 1
            return n

        run_bounded(list(range(9)), worker, batch_size=3)

        assert peak <= 3

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            run_bounded([1], lambda n: n, batch_size=0)


class TestExtractDocuments:
    def test_failed_files_dropped(self):
        documents = extract_documents(["a.pdf", "bad.pdf", "c.pdf"], FakeExtractor(), sleep=lambda _: None)

        assert [doc.id for doc in documents] == ["a.pdf", "c.pdf"]


class TestCategorizeInBatches:
    def test_labels_applied(self):
        rows = [TestDataFactory.create_transaction("Coffee Shop"), TestDataFactory.create_transaction("Books")]

        labelled = categorize_in_batches(rows, KeywordCategorizer())

        assert labelled[0].category == "Food"
        assert labelled[0].subcategory == "Coffee"
        assert labelled[1].category is None
        assert rows[0].category is None

    def test_already_categorized_rows_untouched(self):
        categorizer = KeywordCategorizer()
        rows = [TestDataFactory.create_transaction("Coffee Shop", category="Dining")]

        labelled = categorize_in_batches(rows, categorizer)

        assert labelled[0].category == "Dining"
        assert categorizer.calls == 0

    def test_failed_slice_stays_uncategorized(self):
        rows = [
            TestDataFactory.create_transaction("Broken"),
            TestDataFactory.create_transaction("Coffee Shop", "-3.00"),
            TestDataFactory.create_transaction("Coffee Bar", "-2.00"),
        ]

        labelled = categorize_in_batches(rows, KeywordCategorizer(), batch_size=2)

        assert [tx.category for tx in labelled] == [None, None, "Food"]
