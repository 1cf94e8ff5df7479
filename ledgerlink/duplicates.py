"""Duplicate detection for incoming transaction batches.

Partitions a batch into exact duplicates (fingerprint already on file for the
owner) and new rows, surfaces near-matches among the new rows against a
recent window of history, and recommends a batch-level action:

- ``merge`` when the share of duplicates reaches the partial threshold, so
  only the new rows should be written
- ``proceed`` below that, the batch is overwhelmingly new

``reject`` is never chosen here; it is left to caller policy.
"""

import logging
from collections import Counter
from dataclasses import replace
from datetime import date, timedelta

from ledgerlink.errors import BackendError, BackendUnavailableError
from ledgerlink.fingerprint import fingerprint as compute_fingerprint
from ledgerlink.models import (
    BatchAction,
    DetectorConfig,
    FingerprintHit,
    NearMatch,
    SimilarityResult,
    Transaction,
)
from ledgerlink.near_match import is_near_match
from ledgerlink.store import TransactionStore

logger = logging.getLogger(__name__)


def _fingerprinted(batch: list[Transaction]) -> list[Transaction]:
    return [
        replace(tx, fingerprint=compute_fingerprint(tx.description, tx.amount, tx.date))
        for tx in batch
    ]


class DuplicateDetector:
    """Compares incoming batches against an owner's stored history.

    Holds no state between calls; every call re-reads what it needs from the
    store, so one detector can serve concurrent batches.
    """

    def __init__(self, store: TransactionStore, config: DetectorConfig | None = None) -> None:
        self.store = store
        self.config = config or DetectorConfig()

    def detect_similarity(
        self, batch: list[Transaction], owner_id: str, today: date | None = None
    ) -> SimilarityResult:
        """Detect how much of a batch is already on file.

        Args:
            batch: Validated incoming transactions
            owner_id: Owner whose history is searched
            today: Reference date for the near-match window (defaults to today)

        Returns:
            SimilarityResult partitioning the batch

        Raises:
            BackendUnavailableError: If neither the fast lookup nor the
                fallback scan can read the owner's history
        """
        if not batch:
            return SimilarityResult(
                similarity_score=0.0,
                total_new_transactions=0,
                matching_count=0,
                new_transactions=[],
                duplicate_transactions=[],
                action=BatchAction.PROCEED,
                message="No transactions to process",
            )

        incoming = _fingerprinted(batch)
        degraded = False
        try:
            hits = self.store.find_fingerprints(owner_id, [tx.fingerprint for tx in incoming])
        except BackendError as exc:
            logger.warning("Fingerprint lookup failed for %s, falling back to history scan: %s", owner_id, exc)
            hits = self._scan_history(owner_id, {tx.fingerprint for tx in incoming})
            degraded = True

        jobs_by_fingerprint: dict[str, list[str | None]] = {}
        for hit in hits:
            jobs_by_fingerprint.setdefault(hit.fingerprint, []).append(hit.job_id)

        duplicates: list[Transaction] = []
        new_rows: list[Transaction] = []
        job_counts: Counter[str] = Counter()
        for tx in incoming:
            if tx.fingerprint in jobs_by_fingerprint:
                duplicates.append(tx)
                job_counts.update(job for job in jobs_by_fingerprint[tx.fingerprint] if job)
            else:
                new_rows.append(tx)

        near_matches: list[NearMatch] = []
        if self.config.check_near_matches and new_rows:
            near_matches = self.find_near_matches(new_rows, owner_id, today)

        matching_count = len(duplicates)
        total = len(incoming)
        score = round(matching_count / total * 100, 1)
        existing_job_ids = [job for job, _ in job_counts.most_common()]

        action, message = self._classify(score, total, len(new_rows), matching_count)
        logger.info(
            "Batch for %s: %d rows, %d duplicate, %d near-match, score %.1f -> %s",
            owner_id,
            total,
            matching_count,
            len(near_matches),
            score,
            action.value,
        )
        return SimilarityResult(
            similarity_score=score,
            total_new_transactions=total,
            matching_count=matching_count,
            new_transactions=new_rows,
            duplicate_transactions=duplicates,
            near_match_transactions=near_matches,
            existing_job_id=existing_job_ids[0] if existing_job_ids else None,
            existing_job_ids=existing_job_ids,
            action=action,
            message=message,
            likely_resubmission=score >= self.config.high_threshold,
            degraded=degraded,
        )

    def _classify(self, score: float, total: int, new_count: int, duplicate_count: int) -> tuple[BatchAction, str]:
        if score >= self.config.high_threshold:
            return (
                BatchAction.MERGE,
                f"{score:.1f}% of transactions already exist. "
                f"{new_count} new transaction(s) will be added.",
            )
        if score >= self.config.partial_threshold:
            return (
                BatchAction.MERGE,
                f"{score:.1f}% overlap detected. "
                f"{new_count} new and {duplicate_count} duplicate transaction(s).",
            )
        return (
            BatchAction.PROCEED,
            f"Low similarity ({score:.1f}%). {new_count} of {total} transaction(s) are new.",
        )

    def _scan_history(self, owner_id: str, wanted: set[str]) -> list[FingerprintHit]:
        """Slow path: page through history comparing fingerprints in memory.

        Stops at ``fallback_scan_cap`` rows. Fingerprints missing on stored rows
        are recomputed.
        """
        hits: list[FingerprintHit] = []
        scanned = 0
        try:
            for page in self.store.iter_history(
                owner_id, self.config.fallback_page_size, self.config.fallback_scan_cap
            ):
                for tx in page:
                    fp = tx.fingerprint or compute_fingerprint(tx.description, tx.amount, tx.date)
                    if fp in wanted and tx.id is not None:
                        hits.append(FingerprintHit(fingerprint=fp, transaction_id=tx.id, job_id=tx.job_id))
                scanned += len(page)
        except BackendError as exc:
            raise BackendUnavailableError(f"History for {owner_id} is unavailable: {exc}") from exc

        if scanned >= self.config.fallback_scan_cap:
            logger.warning(
                "History scan for %s stopped at the %d row cap; older duplicates may be missed",
                owner_id,
                self.config.fallback_scan_cap,
            )
        return hits

    def find_near_matches(
        self, transactions: list[Transaction], owner_id: str, today: date | None = None
    ) -> list[NearMatch]:
        """Find the first near-match in recent history for each transaction.

        A history lookup failure yields no near-matches rather than an error.
        """
        since = (today or date.today()) - timedelta(days=self.config.near_match_window_days)
        try:
            recent = self.store.recent_transactions(owner_id, since, self.config.near_match_window_limit)
        except BackendError as exc:
            logger.warning("Near-match window unavailable for %s: %s", owner_id, exc)
            return []

        near_matches: list[NearMatch] = []
        for tx in transactions:
            for existing in recent:
                check = is_near_match(tx, existing, self.config.thresholds)
                if check.is_near_match:
                    near_matches.append(
                        NearMatch(
                            incoming=tx,
                            existing=existing,
                            match_type=check.match_type,
                            difference=check.difference,
                        )
                    )
                    break
        return near_matches

    def is_likely_duplicate(self, sample: list[Transaction], owner_id: str) -> tuple[bool, float]:
        """Quick check on a sample of rows.

        Returns:
            Tuple of (score reached the high threshold, score)
        """
        if not sample:
            return False, 0.0
        fingerprints = [compute_fingerprint(tx.description, tx.amount, tx.date) for tx in sample]
        try:
            hits = self.store.find_fingerprints(owner_id, fingerprints)
        except BackendError as exc:
            logger.warning("Sample lookup failed for %s: %s", owner_id, exc)
            return False, 0.0
        found = {hit.fingerprint for hit in hits}
        score = round(sum(1 for fp in fingerprints if fp in found) / len(fingerprints) * 100, 1)
        return score >= self.config.high_threshold, score


__all__ = ["DuplicateDetector"]
