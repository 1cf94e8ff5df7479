"""Spreadsheet sync with last-write-wins conflict resolution.

Every synced row carries two independent timestamps: when the application
last wrote it and when a human last edited it in the spreadsheet. A push
overwrites a row unless the human edit is newer, in which case the whole
row's push is suppressed. The human-edit stamp is cleared whenever the
application writes the row, so a fresh stamp always means an unsynced edit.

The grid itself is a contract (``SheetGrid``); ``MemoryGrid`` and the
pandas-backed ``CsvGrid`` implement it.
"""

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Protocol

import pandas as pd
from dateutil import parser as date_parser

from ledgerlink.errors import BackendError, SchemaError
from ledgerlink.fingerprint import fingerprint as compute_fingerprint
from ledgerlink.ingest import parse_amount, standardize_date
from ledgerlink.models import (
    PullResult,
    SourceType,
    SyncConfig,
    SyncRow,
    Transaction,
    UpsertResult,
)
from ledgerlink.store import TransactionStore

logger = logging.getLogger(__name__)

SHEET_HEADERS = [
    "Date",
    "Description",
    "Amount",
    "Category",
    "Subcategory",
    "Confidence",
    "Status",
    "Source",
    "Fingerprint",
    "Transaction ID",
    "App Modified At",
    "Sheet Modified At",
    "Sheet Modified By",
]

# Older sheets used these names for the same columns
HEADER_ALIASES = {
    "portal modified at": "App Modified At",
    "app modified": "App Modified At",
    "sheet modified": "Sheet Modified At",
    "modified by": "Sheet Modified By",
    "transaction fingerprint": "Fingerprint",
    "id": "Transaction ID",
    "transaction_id": "Transaction ID",
}

EDITABLE_FIELDS = frozenset(
    {"date", "description", "amount", "category", "subcategory", "confidence", "status"}
)


class SheetGrid(Protocol):
    """A rectangular grid addressed by 1-based row numbers; row 1 is the header."""

    def read(self) -> list[list[str]]: ...

    def write_header(self, header: list[str]) -> None: ...

    def update_rows(self, rows: dict[int, list[str]]) -> None: ...

    def append_rows(self, rows: list[list[str]]) -> None: ...


class MemoryGrid:
    """In-memory grid, used for tests and dry runs."""

    def __init__(self, rows: list[list[str]] | None = None) -> None:
        self.rows = [list(row) for row in rows or []]

    def read(self) -> list[list[str]]:
        return [list(row) for row in self.rows]

    def write_header(self, header: list[str]) -> None:
        if self.rows:
            self.rows[0] = list(header)
        else:
            self.rows.append(list(header))

    def update_rows(self, rows: dict[int, list[str]]) -> None:
        for row_number, cells in rows.items():
            current = self.rows[row_number - 1]
            self.rows[row_number - 1] = list(cells) + current[len(cells) :]

    def append_rows(self, rows: list[list[str]]) -> None:
        self.rows.extend(list(row) for row in rows)


class CsvGrid:
    """A grid persisted as a CSV file, read and written with pandas.

    Every write rewrites the file.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def read(self) -> list[list[str]]:
        if not self.path.exists():
            return []
        try:
            df = pd.read_csv(self.path, dtype=str, keep_default_na=False)
        except pd.errors.EmptyDataError:
            return []
        except OSError as exc:
            raise BackendError(f"Cannot read {self.path}: {exc}") from exc
        return [list(df.columns), *df.values.tolist()]

    def _save(self, rows: list[list[str]]) -> None:
        header, *body = rows
        width = len(header)
        padded = [list(row) + [""] * (width - len(row)) for row in body]
        try:
            pd.DataFrame(padded, columns=header).to_csv(self.path, index=False)
        except OSError as exc:
            raise BackendError(f"Cannot write {self.path}: {exc}") from exc

    def write_header(self, header: list[str]) -> None:
        rows = self.read()
        if rows:
            rows[0] = list(header)
        else:
            rows = [list(header)]
        self._save(rows)

    def update_rows(self, rows: dict[int, list[str]]) -> None:
        current = self.read()
        for row_number, cells in rows.items():
            current[row_number - 1] = list(cells) + current[row_number - 1][len(cells) :]
        self._save(current)

    def append_rows(self, rows: list[list[str]]) -> None:
        current = self.read()
        current.extend(list(row) for row in rows)
        self._save(current)


def _canonical_header(name: str) -> str | None:
    key = str(name).strip().lower()
    for header in SHEET_HEADERS:
        if header.lower() == key:
            return header
    return HEADER_ALIASES.get(key)


def ensure_schema(grid: SheetGrid) -> bool:
    """Bring the grid's header to the fixed column contract.

    Known columns are moved to their canonical position, missing ones are
    added empty, unknown ones are kept after the last canonical column.

    Returns:
        True if the grid was rewritten

    Raises:
        SchemaError: If a grid with data rows has no identity column
    """
    rows = grid.read()
    if not rows:
        grid.write_header(list(SHEET_HEADERS))
        return True

    header, body = rows[0], rows[1:]
    if header[: len(SHEET_HEADERS)] == SHEET_HEADERS:
        return False

    positions: dict[str, int] = {}
    extras: list[int] = []
    for index, name in enumerate(header):
        canonical = _canonical_header(name)
        if canonical is not None and canonical not in positions:
            positions[canonical] = index
        elif str(name).strip():
            extras.append(index)

    if body and "Fingerprint" not in positions and "Transaction ID" not in positions:
        raise SchemaError("Sheet has neither a Fingerprint nor a Transaction ID column")

    def reorder(row: list[str]) -> list[str]:
        padded = list(row) + [""] * (len(header) - len(row))
        cells = [padded[positions[name]] if name in positions else "" for name in SHEET_HEADERS]
        return cells + [padded[index] for index in extras]

    grid.write_header(list(SHEET_HEADERS) + [header[index] for index in extras])
    if body:
        grid.update_rows({number: reorder(row) for number, row in enumerate(body, start=2)})
    logger.info("Normalized sheet header (%d columns)", len(header))
    return True


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO timestamp cell; naive values are taken as UTC."""
    text = str(value or "").strip()
    if not text:
        return None
    try:
        parsed = date_parser.isoparse(text)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_confidence(value: Any) -> float | None:
    """Accept "85%", "0.85" or 85 and clamp to 0-1."""
    text = str(value if value is not None else "").strip()
    if not text:
        return None
    percent = text.endswith("%")
    try:
        number = float(text.rstrip("%"))
    except ValueError:
        return None
    if percent or number > 1:
        number /= 100
    return max(0.0, min(1.0, number))


def row_from_transaction(tx: Transaction) -> SyncRow:
    """Project a persisted transaction onto a sheet row."""
    return SyncRow(
        date=tx.date,
        description=tx.description,
        amount=tx.amount,
        category=tx.category,
        subcategory=tx.subcategory,
        confidence=tx.confidence,
        status=tx.reconciliation_status.value,
        source=tx.source_type.value,
        fingerprint=tx.fingerprint or compute_fingerprint(tx.description, tx.amount, tx.date),
        transaction_id=tx.id,
    )


def row_to_cells(row: SyncRow) -> list[str]:
    """Render a sheet row in header order."""
    return [
        row.date.isoformat() if row.date else "",
        row.description,
        str(row.amount) if row.amount is not None else "",
        row.category or "",
        row.subcategory or "",
        f"{round(row.confidence * 100)}%" if row.confidence is not None else "",
        row.status or "",
        row.source or "",
        row.fingerprint or "",
        row.transaction_id or "",
        row.app_modified_at.isoformat() if row.app_modified_at else "",
        row.sheet_modified_at.isoformat() if row.sheet_modified_at else "",
        row.sheet_modified_by or "",
    ]


def row_from_cells(cells: Sequence[Any], row_number: int | None = None) -> SyncRow:
    """Parse a grid row laid out in header order. Short rows are padded."""
    cells = [str(cell) if cell is not None else "" for cell in cells]
    cells += [""] * (len(SHEET_HEADERS) - len(cells))
    return SyncRow(
        date=standardize_date(cells[0].strip(), {"yearfirst": True}),
        description=cells[1].strip(),
        amount=parse_amount(cells[2]),
        category=cells[3].strip() or None,
        subcategory=cells[4].strip() or None,
        confidence=parse_confidence(cells[5]),
        status=cells[6].strip(),
        source=cells[7].strip() or None,
        fingerprint=cells[8].strip() or None,
        transaction_id=cells[9].strip() or None,
        app_modified_at=parse_timestamp(cells[10]),
        sheet_modified_at=parse_timestamp(cells[11]),
        sheet_modified_by=cells[12].strip() or None,
        row_number=row_number,
    )


def has_newer_external_edit(row: SyncRow) -> bool:
    """True if a human edit on the row postdates the application's last write."""
    if row.sheet_modified_at is None:
        return False
    return row.app_modified_at is None or row.sheet_modified_at > row.app_modified_at


@dataclass
class UpsertPlan:
    """Decisions of one push, before anything is written."""

    appends: list[SyncRow] = field(default_factory=list)
    updates: list[SyncRow] = field(default_factory=list)
    skipped: list[SyncRow] = field(default_factory=list)


def resolve_upsert(sheet_rows: list[SyncRow], incoming_rows: list[SyncRow], now: datetime) -> UpsertPlan:
    """Decide, row by row, what a push does to the sheet.

    Rows are located by transaction id, then by fingerprint. Unknown rows are
    appended. A known row is overwritten (application stamp refreshed, sheet
    stamp cleared) unless it carries a newer external edit, in which case the
    push of that row is suppressed and the sheet row left untouched.

    Args:
        sheet_rows: Current grid rows (with row numbers)
        incoming_rows: Rows the application wants to push
        now: Application write timestamp

    Returns:
        UpsertPlan with appends, updates and suppressed rows
    """
    by_id = {row.transaction_id: row for row in sheet_rows if row.transaction_id}
    by_fingerprint = {row.fingerprint: row for row in sheet_rows if row.fingerprint}

    updates: dict[int, SyncRow] = {}
    appends: dict[str, SyncRow] = {}
    skipped: list[SyncRow] = []
    for incoming in incoming_rows:
        existing = None
        if incoming.transaction_id:
            existing = by_id.get(incoming.transaction_id)
        if existing is None and incoming.fingerprint:
            existing = by_fingerprint.get(incoming.fingerprint)

        stamped = replace(incoming, app_modified_at=now, sheet_modified_at=None, sheet_modified_by=None)
        if existing is None:
            key = incoming.transaction_id or incoming.fingerprint or f"row-{len(appends)}"
            appends[key] = replace(stamped, row_number=None)
        elif has_newer_external_edit(existing):
            logger.debug("Row %s has a newer sheet edit; push suppressed", existing.row_number)
            skipped.append(incoming)
        else:
            updates[existing.row_number] = replace(stamped, row_number=existing.row_number)

    return UpsertPlan(appends=list(appends.values()), updates=list(updates.values()), skipped=skipped)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SheetSyncer:
    """Pushes to and pulls from one spreadsheet grid."""

    def __init__(
        self,
        grid: SheetGrid,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.grid = grid
        self.config = config or SyncConfig()
        self.clock = clock
        self.sleep = sleep

    def read_rows(self) -> list[SyncRow]:
        """Normalize the schema, then parse every data row."""
        ensure_schema(self.grid)
        rows = self.grid.read()
        return [row_from_cells(cells, number) for number, cells in enumerate(rows[1:], start=2)]

    def _with_retry(self, action: Callable[[], None], label: str) -> bool:
        for attempt in range(1, self.config.max_attempts + 1):
            try:
                action()
                return True
            except BackendError as exc:
                if attempt == self.config.max_attempts:
                    logger.error("Sheet %s failed after %d attempts: %s", label, attempt, exc)
                    return False
                delay = self.config.backoff_seconds * 2 ** (attempt - 1)
                logger.warning("Sheet %s failed (attempt %d), retrying in %.2fs", label, attempt, delay)
                self.sleep(delay)
        return False

    def _write_updates(self, rows: list[SyncRow]) -> tuple[int, int]:
        written = failed = 0
        size = self.config.chunk_size
        for start in range(0, len(rows), size):
            chunk = rows[start : start + size]
            payload = {row.row_number: row_to_cells(row) for row in chunk}
            if self._with_retry(lambda: self.grid.update_rows(payload), "row update"):
                written += len(chunk)
            else:
                failed += len(chunk)
        return written, failed

    def _write_appends(self, rows: list[SyncRow]) -> tuple[int, int]:
        written = failed = 0
        size = self.config.chunk_size
        for start in range(0, len(rows), size):
            chunk = [row_to_cells(row) for row in rows[start : start + size]]
            if self._with_retry(lambda: self.grid.append_rows(chunk), "row append"):
                written += len(chunk)
            else:
                failed += len(chunk)
        return written, failed

    def push(self, transactions: list[Transaction]) -> UpsertResult:
        """Push transactions to the sheet.

        Returns:
            UpsertResult; rows whose chunk could not be written count as failed
        """
        sheet_rows = self.read_rows()
        plan = resolve_upsert(sheet_rows, [row_from_transaction(tx) for tx in transactions], self.clock())

        updated, update_failed = self._write_updates(plan.updates)
        inserted, append_failed = self._write_appends(plan.appends)
        result = UpsertResult(
            inserted=inserted,
            updated=updated,
            skipped_due_to_newer_external_edit=len(plan.skipped),
            failed=update_failed + append_failed,
        )
        logger.info(
            "Sheet push: %d appended, %d updated, %d suppressed, %d failed",
            result.inserted,
            result.updated,
            result.skipped_due_to_newer_external_edit,
            result.failed,
        )
        return result

    def pull(
        self,
        store: TransactionStore,
        owner_id: str,
        job_id: str,
        source_identifier: str | None = None,
    ) -> PullResult:
        """Apply sheet-side edits back to the store.

        Only rows whose sheet stamp is newer than the application stamp are
        applied. Rows with an id update that transaction if ``owner_id`` owns
        it and are skipped otherwise. Rows without an id are inserted under
        ``job_id``. Incomplete rows keep their stamp so the editor can fix
        them. Applied rows get their fingerprint and id refreshed, the
        application stamp set and the sheet stamp cleared.
        """
        result = PullResult()
        now = self.clock()
        stamped: list[SyncRow] = []

        for row in self.read_rows():
            if row.sheet_modified_at is None:
                continue
            result.rows_processed += 1
            if not has_newer_external_edit(row):
                result.rows_skipped += 1
                continue
            if row.date is None or not row.description or row.amount is None:
                logger.debug("Row %s is incomplete; left for the editor", row.row_number)
                result.rows_skipped += 1
                continue

            try:
                applied = self._apply_row(store, owner_id, job_id, row, source_identifier)
            except BackendError as exc:
                logger.warning("Could not apply sheet row %s: %s", row.row_number, exc)
                result.rows_skipped += 1
                continue

            if applied is None:
                result.rows_skipped += 1
                continue
            if row.transaction_id:
                result.rows_updated += 1
            else:
                result.rows_inserted += 1
            stamped.append(
                replace(
                    row,
                    fingerprint=applied.fingerprint,
                    transaction_id=applied.id,
                    app_modified_at=now,
                    sheet_modified_at=None,
                    sheet_modified_by=None,
                )
            )

        self._write_updates(stamped)
        logger.info(
            "Sheet pull for job %s: %d processed, %d updated, %d inserted, %d skipped",
            job_id,
            result.rows_processed,
            result.rows_updated,
            result.rows_inserted,
            result.rows_skipped,
        )
        return result

    @staticmethod
    def _apply_row(
        store: TransactionStore,
        owner_id: str,
        job_id: str,
        row: SyncRow,
        source_identifier: str | None,
    ) -> Transaction | None:
        if row.transaction_id:
            return store.update_transaction(
                owner_id,
                row.transaction_id,
                {
                    "description": row.description,
                    "amount": row.amount,
                    "date": row.date,
                    "category": row.category,
                    "subcategory": row.subcategory,
                    "confidence": row.confidence,
                    "last_modified_source": SourceType.SPREADSHEET_SYNC.value,
                },
            )

        outcome = store.insert_transactions(
            owner_id,
            job_id,
            [
                Transaction(
                    description=row.description,
                    amount=row.amount,
                    date=row.date,
                    category=row.category,
                    subcategory=row.subcategory,
                    confidence=row.confidence,
                    source_type=SourceType.SPREADSHEET_SYNC,
                    source_identifier=source_identifier,
                    external_row_id=str(row.row_number),
                    last_modified_source=SourceType.SPREADSHEET_SYNC.value,
                )
            ],
        )
        return outcome.inserted[0] if outcome.inserted else None

    def record_external_edit(
        self, row_number: int, editor: str, at: datetime | None = None, **changes: Any
    ) -> SyncRow:
        """Edit a row as a human would, stamping the sheet-side columns.

        Args:
            row_number: 1-based grid row (data starts at 2)
            editor: Who made the edit
            at: Edit time (defaults to the clock)
            **changes: New values for editable fields

        Returns:
            The edited row

        Raises:
            ValueError: If the row does not exist or a field is not editable
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot edit fields: {', '.join(sorted(unknown))}")

        rows = {row.row_number: row for row in self.read_rows()}
        if row_number not in rows:
            raise ValueError(f"No data row {row_number}")

        if changes.get("amount") is not None:
            changes["amount"] = Decimal(str(changes["amount"]))
        if isinstance(changes.get("date"), str):
            changes["date"] = standardize_date(changes["date"], {"yearfirst": True})
        at = at or self.clock()
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        edited = replace(
            rows[row_number],
            **changes,
            sheet_modified_at=at,
            sheet_modified_by=editor,
        )
        self.grid.update_rows({row_number: row_to_cells(edited)})
        return edited


__all__ = [
    "CsvGrid",
    "MemoryGrid",
    "SHEET_HEADERS",
    "SheetGrid",
    "SheetSyncer",
    "UpsertPlan",
    "ensure_schema",
    "has_newer_external_edit",
    "resolve_upsert",
    "row_from_cells",
    "row_from_transaction",
    "row_to_cells",
]
