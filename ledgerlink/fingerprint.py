"""Transaction fingerprinting for deduplication.

Generates stable SHA-256 hashes from (description, amount, date) so that any
importer, in any process, derives the same identity key for the same
transaction.
"""

import hashlib
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal

from rapidfuzz.distance import Levenshtein

from ledgerlink.models import Transaction

FIELD_DELIMITER = "|"
CENT = Decimal("0.01")


def normalize_description(description: str | None) -> str:
    """Lower-case and trim a description."""
    return (description or "").strip().lower()


def normalize_amount(amount: Decimal | int | float | str) -> str:
    """Serialize an amount as its canonical decimal string.

    Trailing zeros beyond the cents place are dropped, so ``4.5``,
    ``Decimal("4.50")`` and ``"4.500"`` agree. Sub-cent digits are kept:
    ``-0.005`` and ``-0.014`` stay distinct. Floats go through ``str`` first.

    Args:
        amount: Amount in any numeric form

    Returns:
        Plain decimal string with at least two places, such as ``"-4.50"``
        (never exponent notation)

    Raises:
        ValueError: If the amount is not a finite number
    """
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))
    if not amount.is_finite():
        raise ValueError(f"Amount must be finite: {amount}")
    if amount == 0:
        return "0.00"
    canonical = amount.normalize()
    if canonical.as_tuple().exponent > CENT.as_tuple().exponent:
        canonical = canonical.quantize(CENT)
    return format(canonical, "f")


def normalize_date(value: date | datetime | str) -> str:
    """Normalize a date to ``YYYY-MM-DD``, discarding any time of day."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    return date.fromisoformat(text[:10]).isoformat()


def fingerprint(description: str | None, amount: Decimal | int | float | str, txn_date: date | datetime | str) -> str:
    """Generate a stable transaction fingerprint.

    Args:
        description: Raw description (normalized here)
        amount: Signed amount
        txn_date: Transaction date

    Returns:
        SHA-256 hex digest string
    """
    parts = FIELD_DELIMITER.join(
        (normalize_description(description), normalize_amount(amount), normalize_date(txn_date))
    )
    return hashlib.sha256(parts.encode("utf-8")).hexdigest()


def fingerprint_transaction(transaction: Transaction) -> Transaction:
    """Return a copy of the transaction carrying its fingerprint."""
    return replace(
        transaction,
        fingerprint=fingerprint(transaction.description, transaction.amount, transaction.date),
    )


def description_similarity(first: str | None, second: str | None) -> int:
    """Similarity of two descriptions on a 0-100 scale.

    Normalized edit distance: ``100 * (max_len - levenshtein) / max_len``,
    rounded to the nearest integer.
    """
    a = normalize_description(first)
    b = normalize_description(second)
    if a == b:
        return 100
    if not a or not b:
        return 0
    max_len = max(len(a), len(b))
    distance = Levenshtein.distance(a, b)
    return round((max_len - distance) / max_len * 100)


__all__ = [
    "description_similarity",
    "fingerprint",
    "fingerprint_transaction",
    "normalize_amount",
    "normalize_date",
    "normalize_description",
]
