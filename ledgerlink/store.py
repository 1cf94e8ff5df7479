"""Authoritative transaction store.

``TransactionStore`` is the storage contract the detector, merge engine,
matcher and sync code depend on; ``SqliteStore`` implements it on SQLite.
The transactions table enforces UNIQUE(owner_id, fingerprint) so two racing
ingestions of the same row cannot both commit it.
"""

import logging
import sqlite3
import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Protocol

from ledgerlink.errors import BackendError, LookupUnavailableError
from ledgerlink.fingerprint import fingerprint as compute_fingerprint
from ledgerlink.models import (
    Document,
    FingerprintHit,
    InsertOutcome,
    LinkOutcome,
    NearMatchType,
    ReconciliationStatus,
    SourceType,
    SyncConflict,
    Transaction,
)

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's host parameter limit
LOOKUP_CHUNK = 500

MUTABLE_FIELDS = frozenset(
    {
        "description",
        "amount",
        "date",
        "category",
        "subcategory",
        "confidence",
        "fingerprint",
        "last_modified_source",
        "external_row_id",
    }
)


@dataclass
class JobRecord:
    """A batch/job row with its cached item counters."""

    id: str
    owner_id: str
    source_type: str
    source_identifier: str | None
    status: str
    total_items: int
    inserted_items: int
    skipped_items: int
    created_at: str
    completed_at: str | None


class TransactionStore(Protocol):
    """Storage operations the core depends on."""

    def create_job(
        self, owner_id: str, source_type: SourceType, source_identifier: str | None = None
    ) -> str: ...

    def get_job(self, job_id: str) -> JobRecord | None: ...

    def find_fingerprints(self, owner_id: str, fingerprints: list[str]) -> list[FingerprintHit]: ...

    def iter_history(self, owner_id: str, page_size: int, limit: int) -> Iterator[list[Transaction]]: ...

    def recent_transactions(self, owner_id: str, since: date, limit: int) -> list[Transaction]: ...

    def insert_transactions(
        self, owner_id: str, job_id: str, transactions: list[Transaction]
    ) -> InsertOutcome: ...

    def update_transaction(
        self, owner_id: str, transaction_id: str, changes: dict[str, Any]
    ) -> Transaction | None: ...

    def record_conflict(
        self, owner_id: str, transaction_id: str, incoming: Transaction, match_type: NearMatchType
    ) -> SyncConflict: ...

    def count_job_transactions(self, job_id: str) -> int: ...

    def update_job_counters(self, job_id: str, total: int, inserted: int, skipped: int) -> None: ...

    def link_document(self, transaction_id: str, document_id: str) -> LinkOutcome: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _chunks(items: list[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class SqliteStore:
    """SQLite implementation of ``TransactionStore``.

    Also carries the read helpers the CLI and sync code use (documents,
    listings, conflicts).
    """

    def __init__(self, db_path: str | Path) -> None:
        """Open (and create if needed) the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = str(db_path)
        self.conn: sqlite3.Connection = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._create_tables()

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                source_type TEXT NOT NULL,
                source_identifier TEXT,
                status TEXT NOT NULL DEFAULT 'processing',
                total_items INTEGER NOT NULL DEFAULT 0,
                inserted_items INTEGER NOT NULL DEFAULT 0,
                skipped_items INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                completed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS transactions (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                job_id TEXT REFERENCES jobs(id),
                description TEXT NOT NULL,
                amount TEXT NOT NULL,
                date TEXT NOT NULL,
                category TEXT,
                subcategory TEXT,
                confidence REAL,
                fingerprint TEXT NOT NULL,
                source_type TEXT NOT NULL,
                source_identifier TEXT,
                external_row_id TEXT,
                last_modified_source TEXT,
                sync_version INTEGER NOT NULL DEFAULT 1,
                reconciliation_status TEXT NOT NULL DEFAULT 'unreconciled',
                matched_document_id TEXT,
                bank_account_id TEXT,
                updated_at TEXT NOT NULL,
                UNIQUE (owner_id, fingerprint)
            );

            CREATE INDEX IF NOT EXISTS idx_transactions_owner_date
                ON transactions (owner_id, date);

            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                vendor_name TEXT,
                document_date TEXT,
                total_amount TEXT,
                bank_account_id TEXT,
                matched_transaction_id TEXT
            );

            CREATE TABLE IF NOT EXISTS sync_conflicts (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                transaction_id TEXT NOT NULL REFERENCES transactions(id),
                match_type TEXT NOT NULL,
                incoming_description TEXT NOT NULL,
                incoming_amount TEXT NOT NULL,
                incoming_date TEXT NOT NULL,
                resolution_status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL
            );
        """)
        self.conn.commit()

    def _execute_query(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        """Execute a SELECT query and return results.

        Raises:
            BackendError: If SQLite reports an operational failure
        """
        try:
            cursor = self.conn.execute(query, params)
            return cursor.fetchall()
        except sqlite3.OperationalError as exc:
            raise BackendError(str(exc)) from exc

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"],
            job_id=row["job_id"],
            description=row["description"],
            amount=Decimal(row["amount"]),
            date=date.fromisoformat(row["date"]),
            category=row["category"],
            subcategory=row["subcategory"],
            confidence=row["confidence"],
            fingerprint=row["fingerprint"],
            source_type=SourceType(row["source_type"]),
            source_identifier=row["source_identifier"],
            external_row_id=row["external_row_id"],
            last_modified_source=row["last_modified_source"],
            sync_version=row["sync_version"],
            reconciliation_status=ReconciliationStatus(row["reconciliation_status"]),
            matched_document_id=row["matched_document_id"],
            bank_account_id=row["bank_account_id"],
        )

    # Jobs

    def create_job(
        self, owner_id: str, source_type: SourceType, source_identifier: str | None = None
    ) -> str:
        """Create a processing job and return its id."""
        job_id = str(uuid.uuid4())
        try:
            with self.conn:
                self.conn.execute(
                    """INSERT INTO jobs (id, owner_id, source_type, source_identifier, created_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (job_id, owner_id, SourceType(source_type).value, source_identifier, _now()),
                )
        except sqlite3.OperationalError as exc:
            raise BackendError(str(exc)) from exc
        return job_id

    def get_job(self, job_id: str) -> JobRecord | None:
        rows = self._execute_query("SELECT * FROM jobs WHERE id = ?", (job_id,))
        if not rows:
            return None
        return JobRecord(**{key: rows[0][key] for key in rows[0].keys()})

    def count_job_transactions(self, job_id: str) -> int:
        """Count transactions currently stored under a job."""
        rows = self._execute_query("SELECT COUNT(*) FROM transactions WHERE job_id = ?", (job_id,))
        return rows[0][0]

    def update_job_counters(self, job_id: str, total: int, inserted: int, skipped: int) -> None:
        """Overwrite the cached item counters and mark the job completed."""
        try:
            with self.conn:
                self.conn.execute(
                    """UPDATE jobs
                       SET total_items = ?, inserted_items = ?, skipped_items = ?,
                           status = 'completed', completed_at = ?
                       WHERE id = ?""",
                    (total, inserted, skipped, _now(), job_id),
                )
        except sqlite3.OperationalError as exc:
            raise BackendError(str(exc)) from exc

    # Fingerprint lookups

    def find_fingerprints(self, owner_id: str, fingerprints: list[str]) -> list[FingerprintHit]:
        """Find existing transactions carrying any of the given fingerprints.

        Raises:
            LookupUnavailableError: If the indexed lookup cannot run
        """
        hits: list[FingerprintHit] = []
        unique = sorted(set(fingerprints))
        try:
            for chunk in _chunks(unique, LOOKUP_CHUNK):
                placeholders = ", ".join("?" for _ in chunk)
                cursor = self.conn.execute(
                    f"""SELECT id, fingerprint, job_id FROM transactions
                        WHERE owner_id = ? AND fingerprint IN ({placeholders})""",
                    (owner_id, *chunk),
                )
                hits.extend(
                    FingerprintHit(
                        fingerprint=row["fingerprint"],
                        transaction_id=row["id"],
                        job_id=row["job_id"],
                    )
                    for row in cursor.fetchall()
                )
        except sqlite3.OperationalError as exc:
            raise LookupUnavailableError(str(exc)) from exc
        return hits

    def iter_history(self, owner_id: str, page_size: int, limit: int) -> Iterator[list[Transaction]]:
        """Yield the owner's transactions page by page, reading at most ``limit`` rows."""
        offset = 0
        while offset < limit:
            size = min(page_size, limit - offset)
            rows = self._execute_query(
                """SELECT * FROM transactions WHERE owner_id = ?
                   ORDER BY date DESC, id LIMIT ? OFFSET ?""",
                (owner_id, size, offset),
            )
            if not rows:
                return
            yield [self._row_to_transaction(row) for row in rows]
            if len(rows) < size:
                return
            offset += len(rows)

    def recent_transactions(self, owner_id: str, since: date, limit: int) -> list[Transaction]:
        """Transactions dated on or after ``since``, newest first."""
        rows = self._execute_query(
            """SELECT * FROM transactions WHERE owner_id = ? AND date >= ?
               ORDER BY date DESC, id LIMIT ?""",
            (owner_id, since.isoformat(), limit),
        )
        return [self._row_to_transaction(row) for row in rows]

    # Writes

    def insert_transactions(
        self, owner_id: str, job_id: str, transactions: list[Transaction]
    ) -> InsertOutcome:
        """Insert a chunk of transactions atomically.

        Rows rejected by the (owner, fingerprint) constraint are reported as
        duplicates; the rest of the chunk still commits.

        Raises:
            BackendError: If the chunk could not be written; nothing was committed
        """
        outcome = InsertOutcome()
        now = _now()
        try:
            with self.conn:
                for tx in transactions:
                    tx_id = tx.id or str(uuid.uuid4())
                    fp = tx.fingerprint or compute_fingerprint(tx.description, tx.amount, tx.date)
                    try:
                        self.conn.execute(
                            """INSERT INTO transactions (
                                   id, owner_id, job_id, description, amount, date, category,
                                   subcategory, confidence, fingerprint, source_type,
                                   source_identifier, external_row_id, last_modified_source,
                                   sync_version, reconciliation_status, matched_document_id,
                                   bank_account_id, updated_at
                               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                            (
                                tx_id,
                                owner_id,
                                job_id,
                                tx.description,
                                str(tx.amount),
                                tx.date.isoformat(),
                                tx.category,
                                tx.subcategory,
                                tx.confidence,
                                fp,
                                SourceType(tx.source_type).value,
                                tx.source_identifier,
                                tx.external_row_id,
                                tx.last_modified_source or SourceType(tx.source_type).value,
                                tx.sync_version,
                                ReconciliationStatus(tx.reconciliation_status).value,
                                tx.matched_document_id,
                                tx.bank_account_id,
                                now,
                            ),
                        )
                    except sqlite3.IntegrityError:
                        logger.debug("Fingerprint %s already stored for %s", fp, owner_id)
                        outcome.duplicates.append(tx)
                        continue
                    inserted = self.get_transaction(tx_id)
                    if inserted is not None:
                        outcome.inserted.append(inserted)
        except sqlite3.OperationalError as exc:
            raise BackendError(str(exc)) from exc
        return outcome

    def update_transaction(
        self, owner_id: str, transaction_id: str, changes: dict[str, Any]
    ) -> Transaction | None:
        """Overwrite mutable fields of an owner's transaction and bump its sync version.

        The fingerprint is recomputed when description, amount or date change.

        Returns:
            The updated transaction, or None if the owner has no such row or the
            new fingerprint collides with another stored row

        Raises:
            ValueError: If ``changes`` names a field that cannot be updated
        """
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        rows = self._execute_query(
            "SELECT * FROM transactions WHERE id = ? AND owner_id = ?", (transaction_id, owner_id)
        )
        if not rows:
            return None
        current = self._row_to_transaction(rows[0])

        values = dict(changes)
        if {"description", "amount", "date"} & set(values) and "fingerprint" not in values:
            values["fingerprint"] = compute_fingerprint(
                values.get("description", current.description),
                values.get("amount", current.amount),
                values.get("date", current.date),
            )
        if "amount" in values:
            values["amount"] = str(values["amount"])
        if "date" in values:
            values["date"] = values["date"].isoformat()

        assignments = ", ".join(f"{column} = ?" for column in values)
        try:
            with self.conn:
                self.conn.execute(
                    f"""UPDATE transactions
                        SET {assignments}, sync_version = sync_version + 1, updated_at = ?
                        WHERE id = ? AND owner_id = ?""",
                    (*values.values(), _now(), transaction_id, owner_id),
                )
        except sqlite3.IntegrityError:
            logger.info("Update of %s would duplicate another fingerprint; left unchanged", transaction_id)
            return None
        except sqlite3.OperationalError as exc:
            raise BackendError(str(exc)) from exc
        return self.get_transaction(transaction_id)

    def record_conflict(
        self, owner_id: str, transaction_id: str, incoming: Transaction, match_type: NearMatchType
    ) -> SyncConflict:
        """Store a near-match for manual adjudication. Neither row is modified."""
        conflict_id = str(uuid.uuid4())
        created_at = datetime.now(timezone.utc)
        try:
            with self.conn:
                self.conn.execute(
                    """INSERT INTO sync_conflicts (
                           id, owner_id, transaction_id, match_type, incoming_description,
                           incoming_amount, incoming_date, created_at
                       ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        conflict_id,
                        owner_id,
                        transaction_id,
                        NearMatchType(match_type).value,
                        incoming.description,
                        str(incoming.amount),
                        incoming.date.isoformat(),
                        created_at.isoformat(),
                    ),
                )
        except sqlite3.OperationalError as exc:
            raise BackendError(str(exc)) from exc
        return SyncConflict(
            id=conflict_id,
            owner_id=owner_id,
            transaction_id=transaction_id,
            match_type=NearMatchType(match_type),
            incoming={
                "description": incoming.description,
                "amount": str(incoming.amount),
                "date": incoming.date.isoformat(),
            },
            created_at=created_at,
        )

    def list_conflicts(self, owner_id: str) -> list[SyncConflict]:
        rows = self._execute_query(
            "SELECT * FROM sync_conflicts WHERE owner_id = ? ORDER BY created_at", (owner_id,)
        )
        return [
            SyncConflict(
                id=row["id"],
                owner_id=row["owner_id"],
                transaction_id=row["transaction_id"],
                match_type=NearMatchType(row["match_type"]),
                incoming={
                    "description": row["incoming_description"],
                    "amount": row["incoming_amount"],
                    "date": row["incoming_date"],
                },
                resolution_status=row["resolution_status"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    # Reads

    def get_transaction(self, transaction_id: str) -> Transaction | None:
        rows = self._execute_query("SELECT * FROM transactions WHERE id = ?", (transaction_id,))
        return self._row_to_transaction(rows[0]) if rows else None

    def list_transactions(self, owner_id: str, job_id: str | None = None) -> list[Transaction]:
        """List an owner's transactions, optionally for one job, oldest first."""
        if job_id is None:
            rows = self._execute_query(
                "SELECT * FROM transactions WHERE owner_id = ? ORDER BY date, id", (owner_id,)
            )
        else:
            rows = self._execute_query(
                "SELECT * FROM transactions WHERE owner_id = ? AND job_id = ? ORDER BY date, id",
                (owner_id, job_id),
            )
        return [self._row_to_transaction(row) for row in rows]

    def unreconciled_transactions(self, owner_id: str) -> list[Transaction]:
        rows = self._execute_query(
            """SELECT * FROM transactions
               WHERE owner_id = ? AND reconciliation_status = 'unreconciled'
                 AND matched_document_id IS NULL
               ORDER BY date DESC, id""",
            (owner_id,),
        )
        return [self._row_to_transaction(row) for row in rows]

    # Documents and reconciliation

    def add_document(self, owner_id: str, document: Document) -> None:
        """Store a document; an id already on file is left as it is."""
        try:
            with self.conn:
                self.conn.execute(
                    """INSERT OR IGNORE INTO documents (
                           id, owner_id, vendor_name, document_date, total_amount,
                           bank_account_id, matched_transaction_id
                       ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        document.id,
                        owner_id,
                        document.vendor_name,
                        document.document_date.isoformat() if document.document_date else None,
                        str(document.total_amount) if document.total_amount is not None else None,
                        document.bank_account_id,
                        document.matched_transaction_id,
                    ),
                )
        except sqlite3.OperationalError as exc:
            raise BackendError(str(exc)) from exc

    def unreconciled_documents(self, owner_id: str) -> list[Document]:
        rows = self._execute_query(
            """SELECT * FROM documents
               WHERE owner_id = ? AND matched_transaction_id IS NULL
               ORDER BY document_date DESC, id""",
            (owner_id,),
        )
        return [
            Document(
                id=row["id"],
                vendor_name=row["vendor_name"],
                document_date=date.fromisoformat(row["document_date"]) if row["document_date"] else None,
                total_amount=Decimal(row["total_amount"]) if row["total_amount"] is not None else None,
                bank_account_id=row["bank_account_id"],
                matched_transaction_id=row["matched_transaction_id"],
            )
            for row in rows
        ]

    def link_document(self, transaction_id: str, document_id: str) -> LinkOutcome:
        """Link a document to a transaction only if both are still unlinked.

        Returns:
            ``LINKED`` when the link was written, otherwise the side that was
            already claimed (nothing is written in that case)
        """
        try:
            with self.conn:
                cursor = self.conn.execute(
                    """UPDATE documents SET matched_transaction_id = ?
                       WHERE id = ? AND matched_transaction_id IS NULL""",
                    (transaction_id, document_id),
                )
                if cursor.rowcount == 0:
                    return LinkOutcome.DOCUMENT_TAKEN
                cursor = self.conn.execute(
                    """UPDATE transactions
                       SET matched_document_id = ?, reconciliation_status = 'matched', updated_at = ?
                       WHERE id = ? AND matched_document_id IS NULL""",
                    (document_id, _now(), transaction_id),
                )
                if cursor.rowcount == 0:
                    raise _LinkLost()
        except _LinkLost:
            return LinkOutcome.TRANSACTION_TAKEN
        except sqlite3.OperationalError as exc:
            raise BackendError(str(exc)) from exc
        return LinkOutcome.LINKED

    def close(self) -> None:
        """Close the database connection."""
        if self.conn:
            self.conn.close()

    def __enter__(self) -> "SqliteStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class _LinkLost(Exception):
    """Rolls back a half-written link when the transaction was claimed meanwhile."""


__all__ = ["JobRecord", "SqliteStore", "TransactionStore"]
