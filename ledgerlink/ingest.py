"""Statement loading and row validation.

Everything entering the pipeline passes through here once: columns are
detected, dates and amounts normalized, and rows missing a required field are
dropped and counted. Downstream code only ever sees ``Transaction`` objects.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Literal

import pandas as pd
from dateutil import parser as date_parser
from rapidfuzz import fuzz, process

from ledgerlink.models import ColumnMapping, Document, SourceType, Transaction

logger = logging.getLogger(__name__)

EXCEL_SUFFIXES = {".xlsx", ".xlsm"}
CURRENCY_SYMBOLS = "$€£¥"

DATE_KEYWORDS = ["post date", "posting date", "transaction date", "trans date", "date", "dt"]
AMOUNT_KEYWORDS = ["amount", "amt", "value", "usd"]
DEBIT_KEYWORDS = ["debit", "withdrawal", "money out", "paid out"]
CREDIT_KEYWORDS = ["credit", "deposit", "money in", "paid in"]
DESCRIPTION_KEYWORDS = ["description", "desc", "details", "narrative", "memo", "merchant", "payee"]


@dataclass
class IngestResult:
    """Validated rows of one uploaded statement.

    Attributes:
        transactions: Rows that passed validation, in file order
        mapping: Detected column mapping
        dropped: Rows dropped for a missing or unparseable field
        date_hints: dayfirst/yearfirst hints used to parse the date column
    """

    transactions: list[Transaction]
    mapping: ColumnMapping | None = None
    dropped: int = 0
    date_hints: dict = field(default_factory=dict)


def detect_column_mapping(df: pd.DataFrame) -> ColumnMapping:
    """Detect column mappings and statement layout.

    Exact header names win; otherwise the closest fuzzy match is taken.

    Args:
        df: DataFrame to analyze

    Returns:
        ColumnMapping with detected layout and column names
    """
    columns = [str(col) for col in df.columns]
    column_lower = [col.strip().lower() for col in columns]

    def find_column(keywords: list[str]) -> str | None:
        for keyword in keywords:
            if keyword in column_lower:
                return columns[column_lower.index(keyword)]
        for keyword in keywords:
            match = process.extractOne(keyword, column_lower, scorer=fuzz.WRatio, score_cutoff=85)
            if match:
                return columns[match[2]]
        return None

    date_col = find_column(DATE_KEYWORDS)
    amount_col = find_column(AMOUNT_KEYWORDS)
    debit_col = find_column(DEBIT_KEYWORDS)
    credit_col = find_column(CREDIT_KEYWORDS)
    desc_col = find_column(DESCRIPTION_KEYWORDS)

    format_type: Literal["debit_credit", "signed"]
    if debit_col and credit_col and debit_col != credit_col:
        format_type = "debit_credit"
    else:
        format_type = "signed"
        debit_col = credit_col = None

    return ColumnMapping(
        date=date_col,
        amount=amount_col,
        description=desc_col,
        debit=debit_col,
        credit=credit_col,
        format_type=format_type,
    )


def infer_date_format(dates: pd.Series) -> dict:
    """Infer day-first/year-first hints from a sample of dates.

    Args:
        dates: Series of raw date values

    Returns:
        Dict with dayfirst and yearfirst hints for dateutil.parser
    """
    hints = {"dayfirst": False, "yearfirst": False}

    sample = dates.dropna().head(10)
    for raw in sample:
        text = str(raw).strip()

        # ISO (YYYY-MM-DD)
        if text.startswith(("20", "19")) and "-" in text:
            parts = text.split("-")
            if len(parts) >= 3 and len(parts[0]) == 4:
                hints["yearfirst"] = True
                return hints

        if "/" in text:
            parts = text.split("/")
            if len(parts) >= 2:
                try:
                    first, second = int(parts[0]), int(parts[1])
                except ValueError:
                    continue
                if first > 12 and second <= 12:
                    hints["dayfirst"] = True
                    return hints

    return hints


def standardize_date(value: Any, format_hints: dict | None = None) -> date | None:
    """Parse a raw date value to a calendar date, dropping any time of day.

    Returns:
        Parsed date or None if parsing fails
    """
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None
    try:
        return date_parser.parse(text, **(format_hints or {})).date()
    except (ValueError, TypeError, OverflowError):
        return None


def parse_amount(value: Any) -> Decimal | None:
    """Parse a raw amount cell.

    Strips currency symbols and thousands separators; accounting parentheses
    mean a negative amount.

    Returns:
        Decimal or None if the cell is empty or unparseable
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        if pd.isna(value):
            return None
        return Decimal(str(value))

    text = str(value).strip()
    for symbol in CURRENCY_SYMBOLS:
        text = text.replace(symbol, "")
    text = text.replace(",", "").replace(" ", "")
    negative = text.startswith("(") and text.endswith(")")
    if negative:
        text = text[1:-1]
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return -amount if negative else amount


def standardize_amount(row: pd.Series, mapping: ColumnMapping) -> Decimal | None:
    """Normalize a row's amount to a signed Decimal (negative = money out).

    Args:
        row: Pandas Series representing a single row
        mapping: Column mapping for the statement layout

    Returns:
        Signed Decimal or None if parsing fails
    """
    if mapping.format_type == "debit_credit":
        debit = parse_amount(row.get(mapping.debit))
        credit = parse_amount(row.get(mapping.credit))
        if debit is None and credit is None:
            return None
        return abs(credit or Decimal(0)) - abs(debit or Decimal(0))

    if mapping.amount is None:
        return None
    return parse_amount(row.get(mapping.amount))


def normalize_dataframe(df: pd.DataFrame, mapping: ColumnMapping, date_hints: dict) -> pd.DataFrame:
    """Apply normalization to a DataFrame.

    Args:
        df: Raw DataFrame
        mapping: Detected column mapping
        date_hints: Date format hints

    Returns:
        DataFrame with date_clean, amount_clean, description_clean columns;
        rows where any of them failed are removed
    """
    if df.empty:
        return df.assign(date_clean=[], amount_clean=[], description_clean=[])

    df = df.copy()

    if mapping.date in df.columns:
        df["date_clean"] = df[mapping.date].apply(lambda x: standardize_date(x, date_hints))
    else:
        df["date_clean"] = None

    df["amount_clean"] = df.apply(lambda row: standardize_amount(row, mapping), axis=1)

    if mapping.description in df.columns:
        df["description_clean"] = df[mapping.description].fillna("").astype(str).str.strip()
    else:
        df["description_clean"] = ""

    df = df.dropna(subset=["date_clean", "amount_clean"])
    return df[df["description_clean"] != ""]


def read_statement(path: Path) -> pd.DataFrame:
    """Read a CSV or Excel statement into a DataFrame."""
    if path.suffix.lower() in EXCEL_SUFFIXES:
        return pd.read_excel(path, engine="openpyxl")
    try:
        return pd.read_csv(path, dtype=str)
    except UnicodeDecodeError:
        return pd.read_csv(path, dtype=str, encoding="latin-1")


def load_batch(path: Path | str, source_type: SourceType = SourceType.UPLOAD) -> IngestResult:
    """Load, normalize and validate a statement file.

    Args:
        path: Path to a CSV or Excel file
        source_type: Source tag for the produced rows

    Returns:
        IngestResult with validated transactions

    Raises:
        ValueError: If no date, description or amount column can be found
    """
    path = Path(path)
    df = read_statement(path)

    mapping = detect_column_mapping(df)
    missing = [
        name
        for name, column in (("date", mapping.date), ("description", mapping.description))
        if column is None
    ]
    if mapping.format_type == "signed" and mapping.amount is None:
        missing.append("amount")
    if missing:
        raise ValueError(f"Could not detect {', '.join(missing)} column(s) in {path.name}")

    date_hints = infer_date_format(df[mapping.date])
    normalized = normalize_dataframe(df, mapping, date_hints)

    transactions = [
        Transaction(
            description=row["description_clean"],
            amount=row["amount_clean"],
            date=row["date_clean"],
            source_type=source_type,
            source_identifier=path.name,
            external_row_id=str(index),
        )
        for index, row in normalized.iterrows()
    ]
    dropped = len(df) - len(transactions)
    if dropped:
        logger.warning("Dropped %d of %d rows from %s with missing or invalid fields", dropped, len(df), path.name)
    logger.info("Loaded %d transactions from %s", len(transactions), path.name)
    return IngestResult(transactions=transactions, mapping=mapping, dropped=dropped, date_hints=date_hints)


def load_documents(path: Path | str) -> list[Document]:
    """Load extracted invoices/receipts from a CSV export.

    Expects ``id``, ``vendor_name``, ``document_date`` and ``total_amount``
    columns; ``bank_account_id`` is optional. Rows without an id are dropped.
    """
    path = Path(path)
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    missing = {"id", "vendor_name", "document_date", "total_amount"} - set(df.columns)
    if missing:
        raise ValueError(f"{path.name} is missing column(s): {', '.join(sorted(missing))}")

    documents = []
    for _, row in df.iterrows():
        if not row["id"].strip():
            continue
        documents.append(
            Document(
                id=row["id"].strip(),
                vendor_name=row["vendor_name"].strip() or None,
                document_date=standardize_date(row["document_date"], {"yearfirst": True}),
                total_amount=parse_amount(row["total_amount"]),
                bank_account_id=(row.get("bank_account_id") or "").strip() or None,
            )
        )
    return documents


def validate_rows(
    rows: Iterable[Mapping[str, Any]], source_type: SourceType = SourceType.UPLOAD
) -> IngestResult:
    """Validate already-extracted rows (e.g. OCR output).

    Each row needs ``description``, ``amount`` and ``date``; optional
    ``category``, ``subcategory``, ``confidence`` and ``bank_account_id`` are
    carried over.
    """
    transactions: list[Transaction] = []
    dropped = 0
    for row in rows:
        description = str(row.get("description") or "").strip()
        amount = parse_amount(row.get("amount"))
        txn_date = standardize_date(row.get("date"), {"yearfirst": True})
        if not description or amount is None or txn_date is None:
            dropped += 1
            continue
        transactions.append(
            Transaction(
                description=description,
                amount=amount,
                date=txn_date,
                category=row.get("category") or None,
                subcategory=row.get("subcategory") or None,
                confidence=row.get("confidence"),
                bank_account_id=row.get("bank_account_id") or None,
                source_type=source_type,
            )
        )
    if dropped:
        logger.warning("Dropped %d invalid rows", dropped)
    return IngestResult(transactions=transactions, dropped=dropped)


__all__ = [
    "IngestResult",
    "detect_column_mapping",
    "infer_date_format",
    "load_batch",
    "load_documents",
    "normalize_dataframe",
    "parse_amount",
    "standardize_amount",
    "standardize_date",
    "validate_rows",
]
