"""Invoice-to-transaction matching.

Ranks candidate bank transactions against a supporting document using four
signals, each capped at a maximum contribution:

- amount proximity, up to 40 points
- date proximity, up to 30 points
- vendor-to-description similarity, up to 20 points
- shared bank account, 10 points

Confidence is a separate gate on top of the score: a candidate needs both a
high score and per-factor floors before it is labelled ``high``.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

from rapidfuzz.distance import Levenshtein

from ledgerlink.models import (
    CONFIDENCE_RANK,
    ConfidenceLevel,
    Document,
    InvoiceMatch,
    LinkOutcome,
    MatcherConfig,
    ReconciliationLink,
    Transaction,
)

logger = logging.getLogger(__name__)

AMOUNT_TIERS = ((Decimal("0.01"), 40.0), (Decimal("1.00"), 30.0), (Decimal("100.00"), 20.0))
DATE_TIERS = ((7, 30.0), (30, 20.0), (60, 10.0))
VENDOR_TIERS = ((0.8, 20.0), (0.6, 15.0), (0.4, 10.0))
ACCOUNT_POINTS = 10.0


@dataclass
class ScoreBreakdown:
    """Score of one document/transaction pair and the factors behind it."""

    score: float
    amount_diff: Decimal
    date_diff_days: int | None
    vendor_similarity: float


def _tier(value, tiers) -> float:
    for bound, points in tiers:
        if value <= bound:
            return points
    return 0.0


def vendor_similarity(vendor: str | None, description: str | None) -> float:
    """Similarity (0-1) between a vendor name and a bank description.

    A vendor name contained in the description counts as a perfect match.
    """
    if not vendor or not description:
        return 0.0
    vendor_text = vendor.lower()
    description_text = description.lower()
    if vendor_text in description_text:
        return 1.0
    return Levenshtein.normalized_similarity(description_text, vendor_text)


def calculate_match_score(document: Document, transaction: Transaction) -> ScoreBreakdown:
    """Score a transaction as the payment for a document.

    Amounts are compared in absolute value since bank debits are negative
    while document totals are positive.

    Args:
        document: Invoice or receipt
        transaction: Candidate bank transaction

    Returns:
        ScoreBreakdown with the total and each factor
    """
    amount_diff = abs(abs(transaction.amount) - abs(document.total_amount or Decimal(0)))
    amount_score = 0.0
    for bound, points in AMOUNT_TIERS:
        if amount_diff < bound:
            amount_score = points
            break

    date_diff_days = None
    date_score = 0.0
    if document.document_date is not None:
        date_diff_days = abs((transaction.date - document.document_date).days)
        date_score = _tier(date_diff_days, DATE_TIERS)

    similarity = vendor_similarity(document.vendor_name, transaction.description)
    vendor_score = 0.0
    for floor, points in VENDOR_TIERS:
        if similarity >= floor:
            vendor_score = points
            break

    account_score = 0.0
    if document.bank_account_id and document.bank_account_id == transaction.bank_account_id:
        account_score = ACCOUNT_POINTS

    return ScoreBreakdown(
        score=amount_score + date_score + vendor_score + account_score,
        amount_diff=amount_diff,
        date_diff_days=date_diff_days,
        vendor_similarity=similarity,
    )


def classify_confidence(breakdown: ScoreBreakdown) -> ConfidenceLevel:
    """Label a scored pair.

    ``high`` and ``medium`` each require the score and every factor to clear
    their floors; anything else is ``low``. An undated document does not fail
    the date floor.
    """
    days = breakdown.date_diff_days
    if (
        breakdown.score >= 85
        and breakdown.amount_diff < Decimal("0.01")
        and (days is None or days <= 7)
        and breakdown.vendor_similarity >= 0.8
    ):
        return ConfidenceLevel.HIGH
    if (
        breakdown.score >= 70
        and breakdown.amount_diff < Decimal("1.00")
        and (days is None or days <= 30)
        and breakdown.vendor_similarity >= 0.6
    ):
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def find_matches(
    document: Document,
    candidates: list[Transaction],
    limit: int | None = None,
    config: MatcherConfig | None = None,
) -> list[InvoiceMatch]:
    """Rank candidate transactions for a document.

    Read-only; the caller pre-filters candidates to the owner's unreconciled
    transactions and enforces one-to-one linking.

    Args:
        document: Invoice or receipt to match
        candidates: Persisted transactions (must carry ids)
        limit: Max results (defaults to the config limit, 5)
        config: Matcher configuration

    Returns:
        Matches scoring at least the minimum, best first
    """
    config = config or MatcherConfig()
    limit = config.limit if limit is None else limit

    matches: list[InvoiceMatch] = []
    for transaction in candidates:
        if transaction.id is None:
            continue
        breakdown = calculate_match_score(document, transaction)
        if breakdown.score < config.min_score:
            continue
        matches.append(
            InvoiceMatch(
                transaction_id=transaction.id,
                score=breakdown.score,
                confidence_level=classify_confidence(breakdown),
                amount_diff=breakdown.amount_diff,
                date_diff_days=breakdown.date_diff_days,
                vendor_similarity=breakdown.vendor_similarity,
            )
        )

    matches.sort(key=lambda m: m.score, reverse=True)
    return matches[:limit]


def reconcile_documents(
    documents: list[Document],
    candidates: list[Transaction],
    linker: Callable[[str, str], LinkOutcome],
    min_confidence: ConfidenceLevel = ConfidenceLevel.HIGH,
    config: MatcherConfig | None = None,
) -> list[ReconciliationLink]:
    """Link documents to transactions one-to-one.

    Pairs are committed greedily, highest score first. A transaction leaves
    the pool as soon as it is linked. ``linker(transaction_id, document_id)``
    must write the link only if both sides are still unlinked and otherwise
    report which side was already claimed. A claimed transaction is dropped
    from the pass and the document's next-ranked candidate is tried. A claimed
    document is dropped and its candidates stay available to the others.
    Documents that already carry a link are never paired.

    Args:
        documents: Unreconciled documents
        candidates: Unreconciled transactions shared by all documents
        linker: Atomic conditional link write
        min_confidence: Lowest confidence level that may be linked
        config: Matcher configuration

    Returns:
        Links that were committed
    """
    config = config or MatcherConfig()
    floor = CONFIDENCE_RANK[ConfidenceLevel(min_confidence)]

    pairs: list[tuple[InvoiceMatch, Document]] = []
    for document in documents:
        if document.matched_transaction_id:
            continue
        for match in find_matches(document, candidates, limit=len(candidates), config=config):
            if CONFIDENCE_RANK[match.confidence_level] >= floor:
                pairs.append((match, document))
    pairs.sort(key=lambda pair: pair[0].score, reverse=True)

    claimed: set[str] = set()
    linked_documents: set[str] = set()
    links: list[ReconciliationLink] = []
    for match, document in pairs:
        if document.id in linked_documents or match.transaction_id in claimed:
            continue
        outcome = LinkOutcome(linker(match.transaction_id, document.id))
        if outcome == LinkOutcome.DOCUMENT_TAKEN:
            logger.info("Document %s was linked elsewhere; skipping it", document.id)
            linked_documents.add(document.id)
            continue
        if outcome == LinkOutcome.TRANSACTION_TAKEN:
            logger.info(
                "Transaction %s was claimed elsewhere; skipping it for document %s",
                match.transaction_id,
                document.id,
            )
            claimed.add(match.transaction_id)
            continue
        claimed.add(match.transaction_id)
        linked_documents.add(document.id)
        links.append(
            ReconciliationLink(
                document_id=document.id,
                transaction_id=match.transaction_id,
                score=match.score,
                confidence_level=match.confidence_level,
            )
        )

    logger.info("Linked %d of %d documents", len(links), len(documents))
    return links


__all__ = [
    "ScoreBreakdown",
    "calculate_match_score",
    "classify_confidence",
    "find_matches",
    "reconcile_documents",
    "vendor_similarity",
]
