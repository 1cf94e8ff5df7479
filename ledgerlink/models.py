"""Data structures for ledgerlink."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal


class SourceType(str, Enum):
    """Where a transaction row came from."""

    UPLOAD = "upload"
    SPREADSHEET_SYNC = "spreadsheet_sync"
    MANUAL = "manual"
    API = "api"


class ReconciliationStatus(str, Enum):
    """Reconciliation state of a bank transaction."""

    UNRECONCILED = "unreconciled"
    MATCHED = "matched"


class NearMatchType(str, Enum):
    """Which recorded field differs between two near-matching transactions."""

    AMOUNT_DIFF = "amount_diff"
    DATE_DIFF = "date_diff"
    DESCRIPTION_DIFF = "description_diff"


class BatchAction(str, Enum):
    """Batch-level recommendation produced by duplicate detection."""

    REJECT = "reject"
    MERGE = "merge"
    PROCEED = "proceed"


class MergeMode(str, Enum):
    """How a batch was finally written."""

    INSERT = "insert"
    MERGE = "merge"
    REJECT = "reject"


class NearMatchStrategy(str, Enum):
    """What the merge engine does with a near-matched incoming row."""

    SKIP = "skip"
    UPDATE = "update"
    INSERT = "insert"
    FLAG = "flag"


class ConfidenceLevel(str, Enum):
    """Confidence label for an invoice-to-transaction match."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


CONFIDENCE_RANK = {
    ConfidenceLevel.LOW: 0,
    ConfidenceLevel.MEDIUM: 1,
    ConfidenceLevel.HIGH: 2,
}


class LinkOutcome(str, Enum):
    """Result of a conditional document-to-transaction link write."""

    LINKED = "linked"
    TRANSACTION_TAKEN = "transaction_taken"
    DOCUMENT_TAKEN = "document_taken"


@dataclass
class ColumnMapping:
    """Detected column mappings for an uploaded statement.

    Attributes:
        date: Name of the date column
        amount: Name of the amount column
        description: Name of the description column
        debit: Name of the debit column (split debit/credit statements)
        credit: Name of the credit column (split debit/credit statements)
        format_type: Detected statement layout
    """

    date: str | None
    amount: str | None
    description: str | None
    debit: str | None
    credit: str | None
    format_type: Literal["debit_credit", "signed"]


@dataclass
class Transaction:
    """A financial ledger line.

    Attributes:
        description: Description text as recorded by the source
        amount: Signed amount (negative = money out)
        date: Calendar date, no time component
        id: Stable identifier, assigned on persistence
        job_id: Batch/job that inserted the row
        category: Optional category label
        subcategory: Optional subcategory label
        confidence: Optional categorization confidence (0-1)
        fingerprint: Deduplication key, see ``ledgerlink.fingerprint``
        source_type: Origin of the row
        source_identifier: Originating filename or spreadsheet id
        external_row_id: Row reference in an external spreadsheet
        last_modified_source: Source tag of the last writer
        sync_version: Monotonically increasing version counter
        reconciliation_status: Whether a document has been linked
        matched_document_id: Linked document, if any
        bank_account_id: Bank account the row belongs to
    """

    description: str
    amount: Decimal
    date: date
    id: str | None = None
    job_id: str | None = None
    category: str | None = None
    subcategory: str | None = None
    confidence: float | None = None
    fingerprint: str | None = None
    source_type: SourceType = SourceType.UPLOAD
    source_identifier: str | None = None
    external_row_id: str | None = None
    last_modified_source: str | None = None
    sync_version: int = 1
    reconciliation_status: ReconciliationStatus = ReconciliationStatus.UNRECONCILED
    matched_document_id: str | None = None
    bank_account_id: str | None = None


@dataclass
class Document:
    """An invoice or receipt produced by upload + OCR.

    Attributes:
        id: Stable identifier
        vendor_name: Vendor as extracted from the document
        document_date: Date printed on the document
        total_amount: Document total (positive)
        bank_account_id: Bank account the document was filed against
        matched_transaction_id: Transaction linked by reconciliation
    """

    id: str
    vendor_name: str | None
    document_date: date | None
    total_amount: Decimal | None
    bank_account_id: str | None = None
    matched_transaction_id: str | None = None


@dataclass
class NearMatch:
    """An incoming transaction that probably records the same event as an existing one."""

    incoming: Transaction
    existing: Transaction
    match_type: NearMatchType
    difference: Decimal | int


@dataclass
class NearMatchCheck:
    """Outcome of comparing two transactions with the near-match classifier."""

    is_near_match: bool
    match_type: NearMatchType | None = None
    difference: Decimal | int | None = None


@dataclass
class SimilarityResult:
    """Outcome of comparing one incoming batch against a user's history.

    Attributes:
        similarity_score: Share of incoming rows already on file (0-100)
        total_new_transactions: Size of the incoming batch
        matching_count: Incoming rows with a fingerprint hit
        new_transactions: Rows with no fingerprint hit (near-matches included)
        duplicate_transactions: Rows with a fingerprint hit
        near_match_transactions: Near-matches among the new rows
        existing_job_id: Prior batch with the most overlap
        existing_job_ids: All prior batches with overlap, most overlapping first
        action: Batch-level recommendation
        message: Human-readable summary
        likely_resubmission: Score reached the high threshold
        degraded: The fallback history scan was used
    """

    similarity_score: float
    total_new_transactions: int
    matching_count: int
    new_transactions: list[Transaction]
    duplicate_transactions: list[Transaction]
    near_match_transactions: list[NearMatch] = field(default_factory=list)
    existing_job_id: str | None = None
    existing_job_ids: list[str] = field(default_factory=list)
    action: BatchAction = BatchAction.PROCEED
    message: str = ""
    likely_resubmission: bool = False
    degraded: bool = False

    @property
    def new_count(self) -> int:
        return len(self.new_transactions)

    @property
    def duplicate_count(self) -> int:
        return len(self.duplicate_transactions)

    @property
    def near_match_count(self) -> int:
        return len(self.near_match_transactions)


@dataclass
class MergeResult:
    """Outcome of applying a merge decision to a batch.

    Attributes:
        mode: How the batch was written
        inserted: Rows committed as new transactions
        skipped: Rows not written (duplicates, skipped or flagged near-matches)
        updated: Existing rows overwritten by a near-match
        similarity_score: Score that drove the decision
        message: Human-readable summary
        job_id: Job the rows were written under
        matched_job_id: Prior job with the most overlap
        flagged: Near-matches recorded as conflicts for manual review
        failed: Rows whose chunk could not be committed
    """

    mode: MergeMode
    inserted: int
    skipped: int
    updated: int
    similarity_score: float
    message: str
    job_id: str | None = None
    matched_job_id: str | None = None
    flagged: int = 0
    failed: int = 0


@dataclass
class InsertOutcome:
    """What a storage insert actually committed."""

    inserted: list[Transaction] = field(default_factory=list)
    duplicates: list[Transaction] = field(default_factory=list)


@dataclass
class FingerprintHit:
    """An existing transaction that carries one of the looked-up fingerprints."""

    fingerprint: str
    transaction_id: str
    job_id: str | None


@dataclass
class SyncConflict:
    """A flagged near-match awaiting manual adjudication."""

    id: str
    owner_id: str
    transaction_id: str
    match_type: NearMatchType
    incoming: dict[str, Any]
    resolution_status: str = "pending"
    created_at: datetime | None = None


@dataclass
class InvoiceMatch:
    """A candidate bank transaction for a document.

    Attributes:
        transaction_id: Candidate transaction
        score: Weighted match score (0-100)
        confidence_level: Gated confidence label
        amount_diff: Absolute amount difference
        date_diff_days: Days between document and transaction (None if undated)
        vendor_similarity: Vendor-to-description similarity (0-1)
    """

    transaction_id: str
    score: float
    confidence_level: ConfidenceLevel
    amount_diff: Decimal
    date_diff_days: int | None
    vendor_similarity: float


@dataclass
class ReconciliationLink:
    """A committed one-to-one document-to-transaction link."""

    document_id: str
    transaction_id: str
    score: float
    confidence_level: ConfidenceLevel


@dataclass
class SyncRow:
    """A transaction projected onto a spreadsheet row.

    Attributes:
        date: ISO date
        description: Description text
        amount: Signed amount
        category: Category label
        subcategory: Subcategory label
        confidence: Categorization confidence (0-1)
        status: Reconciliation status
        source: Source type
        fingerprint: Identity key
        transaction_id: Persisted id, preferred identity key
        app_modified_at: Last time the application wrote the row
        sheet_modified_at: Last observed human edit in the spreadsheet
        sheet_modified_by: Who made that edit
        row_number: 1-based row in the grid (header is row 1)
    """

    date: date | None
    description: str
    amount: Decimal | None
    category: str | None = None
    subcategory: str | None = None
    confidence: float | None = None
    status: str = ReconciliationStatus.UNRECONCILED.value
    source: str | None = None
    fingerprint: str | None = None
    transaction_id: str | None = None
    app_modified_at: datetime | None = None
    sheet_modified_at: datetime | None = None
    sheet_modified_by: str | None = None
    row_number: int | None = None


@dataclass
class UpsertResult:
    """Counts of a spreadsheet push."""

    inserted: int = 0
    updated: int = 0
    skipped_due_to_newer_external_edit: int = 0
    failed: int = 0


@dataclass
class PullResult:
    """Counts of a spreadsheet pull-and-diff pass."""

    rows_processed: int = 0
    rows_updated: int = 0
    rows_inserted: int = 0
    rows_skipped: int = 0


@dataclass
class NearMatchThresholds:
    """Thresholds for the near-match classifier.

    Attributes:
        amount_diff_percent: Max amount drift, percent of the larger amount
        date_diff_days: Max date drift in days
        description_similarity: Min description similarity (0-100)
    """

    amount_diff_percent: Decimal = Decimal("1")
    date_diff_days: int = 3
    description_similarity: int = 80


@dataclass
class DetectorConfig:
    """Configuration for duplicate detection.

    Attributes:
        partial_threshold: Score at or above which a batch is merged row by row
        high_threshold: Score at or above which a batch looks like a resubmission
        check_near_matches: Run the near-match classifier on new rows
        near_match_window_days: How far back near-matches are searched
        near_match_window_limit: Max history rows in the near-match window
        fallback_scan_cap: Hard cap on rows read by the fallback scan
        fallback_page_size: Page size of the fallback scan
        thresholds: Near-match thresholds
    """

    partial_threshold: float = 50.0
    high_threshold: float = 95.0
    check_near_matches: bool = True
    near_match_window_days: int = 90
    near_match_window_limit: int = 5000
    fallback_scan_cap: int = 10_000
    fallback_page_size: int = 1000
    thresholds: NearMatchThresholds = field(default_factory=NearMatchThresholds)


@dataclass
class MergePolicy:
    """Configuration for the merge/insert engine.

    Attributes:
        near_match_strategy: Default handling of near-matched rows
        chunk_size: Rows per storage write
        max_attempts: Attempts per chunk on transient errors
        backoff_seconds: Base delay between attempts (doubles each retry)
        reject_at_or_above: Caller policy; reject the whole batch at this score
    """

    near_match_strategy: NearMatchStrategy = NearMatchStrategy.INSERT
    chunk_size: int = 100
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    reject_at_or_above: float | None = None


@dataclass
class MatcherConfig:
    """Configuration for invoice-to-transaction matching.

    Attributes:
        min_score: Minimum score for a candidate to be returned
        limit: Max candidates returned per document
    """

    min_score: float = 50.0
    limit: int = 5


@dataclass
class SyncConfig:
    """Configuration for spreadsheet sync writes."""

    chunk_size: int = 200
    max_attempts: int = 4
    backoff_seconds: float = 0.5
