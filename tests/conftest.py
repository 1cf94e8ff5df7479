"""Pytest configuration and fixtures for ledgerlink tests."""

from datetime import datetime, timezone

import pytest

from ledgerlink.duplicates import DuplicateDetector
from ledgerlink.merge import MergeEngine
from ledgerlink.store import SqliteStore
from tests.factories import TestDataFactory


@pytest.fixture
def owner_id() -> str:
    return "owner-1"


@pytest.fixture
def store():
    """Provide an empty in-memory store."""
    db = SqliteStore(":memory:")
    yield db
    db.close()


@pytest.fixture
def detector(store) -> DuplicateDetector:
    return DuplicateDetector(store)


@pytest.fixture
def sleeps() -> list[float]:
    """Collects the delays a component asked to sleep for."""
    return []


@pytest.fixture
def engine(store, sleeps) -> MergeEngine:
    """Provide a merge engine that never actually sleeps."""
    return MergeEngine(store, sleep=sleeps.append)


@pytest.fixture
def seeded_store(store, owner_id):
    """A store holding one committed "Coffee Shop" row for the owner."""
    job_id = store.create_job(owner_id, "upload", "january.csv")
    store.insert_transactions(owner_id, job_id, [TestDataFactory.create_transaction()])
    return store


class FakeClock:
    """Clock returning whatever time the test sets."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))
