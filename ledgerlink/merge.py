"""Merge/insert engine.

Turns a parsed batch into the right set of writes:

- new rows are inserted
- exact duplicates are skipped, never rewritten
- near-matches follow the configured strategy (skip, update, insert, flag)

Writes go out in chunks. A chunk is retried on transient errors and, if it
still fails, is counted as failed without undoing the chunks already
committed. Reported counts are what the store committed, not what was
attempted.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import date

from ledgerlink.duplicates import DuplicateDetector
from ledgerlink.errors import BackendError
from ledgerlink.extraction import Categorizer, categorize_in_batches
from ledgerlink.fingerprint import fingerprint_transaction
from ledgerlink.models import (
    BatchAction,
    InsertOutcome,
    MergeMode,
    MergePolicy,
    MergeResult,
    NearMatch,
    NearMatchStrategy,
    SimilarityResult,
    SourceType,
    Transaction,
)
from ledgerlink.store import TransactionStore

logger = logging.getLogger(__name__)


class MergeEngine:
    """Applies duplicate detection results to the store."""

    def __init__(
        self,
        store: TransactionStore,
        detector: DuplicateDetector | None = None,
        policy: MergePolicy | None = None,
        categorizer: Categorizer | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.detector = detector or DuplicateDetector(store)
        self.policy = policy or MergePolicy()
        self.categorizer = categorizer
        self.sleep = sleep

    def preview(self, batch: list[Transaction], owner_id: str, today: date | None = None) -> SimilarityResult:
        """Run duplicate detection without writing anything."""
        return self.detector.detect_similarity(batch, owner_id, today)

    def process_batch(
        self,
        batch: list[Transaction],
        owner_id: str,
        *,
        job_id: str | None = None,
        source_type: SourceType = SourceType.UPLOAD,
        source_identifier: str | None = None,
        skip_duplicate_check: bool = False,
        near_match_strategy: NearMatchStrategy | str | None = None,
        today: date | None = None,
    ) -> MergeResult:
        """Write a batch for an owner.

        Args:
            batch: Validated transactions
            owner_id: Owner of the batch
            job_id: Job to write under; created when omitted
            source_type: Source tag stamped on inserted rows
            source_identifier: Filename or spreadsheet id stamped on inserted rows
            skip_duplicate_check: Insert everything; the caller guarantees uniqueness
                (e.g. it already deleted the statement period being replaced)
            near_match_strategy: Overrides the policy's near-match strategy
            today: Reference date for the near-match window (defaults to today)

        Returns:
            MergeResult with committed counts

        Raises:
            ValueError: If near_match_strategy is not a known strategy
            BackendUnavailableError: If the owner's history cannot be read at all
        """
        strategy = NearMatchStrategy(near_match_strategy or self.policy.near_match_strategy)
        rows = [self._stamp(tx, source_type, source_identifier) for tx in batch]

        if skip_duplicate_check:
            if rows:
                logger.warning(
                    "Duplicate check bypassed for %d rows (%s to %s); caller must have cleared that period",
                    len(rows),
                    min(tx.date for tx in rows).isoformat(),
                    max(tx.date for tx in rows).isoformat(),
                )
            job_id = job_id or self.store.create_job(owner_id, source_type, source_identifier)
            outcome, failed = self._insert_chunked(owner_id, job_id, [fingerprint_transaction(tx) for tx in rows])
            skipped = len(outcome.duplicates)
            self._finish_job(job_id, len(rows), skipped)
            return MergeResult(
                mode=MergeMode.INSERT,
                inserted=len(outcome.inserted),
                skipped=skipped,
                updated=0,
                similarity_score=0.0,
                message=f"Inserted {len(outcome.inserted)} transaction(s)",
                job_id=job_id,
                failed=failed,
            )

        similarity = self.detector.detect_similarity(rows, owner_id, today)

        if (
            self.policy.reject_at_or_above is not None
            and rows
            and similarity.similarity_score >= self.policy.reject_at_or_above
        ):
            logger.info("Rejected batch for %s at %.1f%% similarity", owner_id, similarity.similarity_score)
            return MergeResult(
                mode=MergeMode.REJECT,
                inserted=0,
                skipped=len(rows),
                updated=0,
                similarity_score=similarity.similarity_score,
                message=f"Rejected: {similarity.similarity_score:.1f}% of transactions already exist.",
                job_id=job_id,
                matched_job_id=similarity.existing_job_id,
            )

        return self._merge(similarity, owner_id, job_id, source_type, source_identifier, strategy)

    def _merge(
        self,
        similarity: SimilarityResult,
        owner_id: str,
        job_id: str | None,
        source_type: SourceType,
        source_identifier: str | None,
        strategy: NearMatchStrategy,
    ) -> MergeResult:
        mode = MergeMode.MERGE if similarity.action == BatchAction.MERGE else MergeMode.INSERT
        total = similarity.total_new_transactions

        # NearMatch.incoming is the same object as its entry in new_transactions
        near_by_row = {id(nm.incoming): nm for nm in similarity.near_match_transactions}
        to_insert = [tx for tx in similarity.new_transactions if id(tx) not in near_by_row]

        if total == 0:
            return MergeResult(
                mode=mode,
                inserted=0,
                skipped=0,
                updated=0,
                similarity_score=similarity.similarity_score,
                message=similarity.message,
                job_id=job_id,
            )

        job_id = job_id or self.store.create_job(owner_id, source_type, source_identifier)

        skipped = similarity.duplicate_count
        updated = 0
        flagged = 0
        failed = 0
        for near in similarity.near_match_transactions:
            if strategy == NearMatchStrategy.INSERT:
                to_insert.append(near.incoming)
            elif strategy == NearMatchStrategy.SKIP:
                skipped += 1
            elif strategy == NearMatchStrategy.UPDATE:
                outcome = self._update_existing(owner_id, near)
                if outcome is None:
                    failed += 1
                elif outcome:
                    updated += 1
                else:
                    skipped += 1
            else:
                if self._flag(owner_id, near):
                    flagged += 1
                    skipped += 1
                else:
                    failed += 1

        outcome, insert_failed = self._insert_chunked(owner_id, job_id, to_insert)
        failed += insert_failed
        skipped += len(outcome.duplicates)
        inserted = len(outcome.inserted)

        self._finish_job(job_id, total, skipped)

        if mode == MergeMode.MERGE:
            message = f"Merged: {inserted} new, {skipped} skipped, {updated} updated"
        else:
            message = f"Inserted {inserted} transaction(s), {skipped} skipped"
        if flagged:
            message += f", {flagged} flagged for review"
        if failed:
            message += f", {failed} failed"

        logger.info("Job %s for %s: %s", job_id, owner_id, message)
        return MergeResult(
            mode=mode,
            inserted=inserted,
            skipped=skipped,
            updated=updated,
            similarity_score=similarity.similarity_score,
            message=message,
            job_id=job_id,
            matched_job_id=similarity.existing_job_id,
            flagged=flagged,
            failed=failed,
        )

    @staticmethod
    def _stamp(tx: Transaction, source_type: SourceType, source_identifier: str | None) -> Transaction:
        return replace(
            tx,
            source_type=source_type,
            source_identifier=tx.source_identifier or source_identifier,
            last_modified_source=source_type.value,
        )

    def _insert_chunked(
        self, owner_id: str, job_id: str, rows: list[Transaction]
    ) -> tuple[InsertOutcome, int]:
        """Insert rows chunk by chunk.

        Returns:
            Tuple of (combined outcome of committed chunks, rows in failed chunks)
        """
        if self.categorizer is not None and rows:
            rows = categorize_in_batches(rows, self.categorizer)

        combined = InsertOutcome()
        failed = 0
        size = self.policy.chunk_size
        for start in range(0, len(rows), size):
            chunk = rows[start : start + size]
            outcome = self._write_chunk(owner_id, job_id, chunk)
            if outcome is None:
                failed += len(chunk)
                continue
            combined.inserted.extend(outcome.inserted)
            combined.duplicates.extend(outcome.duplicates)
        return combined, failed

    def _write_chunk(self, owner_id: str, job_id: str, chunk: list[Transaction]) -> InsertOutcome | None:
        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                return self.store.insert_transactions(owner_id, job_id, chunk)
            except BackendError as exc:
                if attempt == self.policy.max_attempts:
                    logger.error(
                        "Giving up on chunk of %d rows for job %s after %d attempts: %s",
                        len(chunk),
                        job_id,
                        attempt,
                        exc,
                    )
                    return None
                delay = self.policy.backoff_seconds * 2 ** (attempt - 1)
                logger.warning("Chunk write failed (attempt %d), retrying in %.2fs: %s", attempt, delay, exc)
                self.sleep(delay)
        return None

    def _update_existing(self, owner_id: str, near: NearMatch) -> bool | None:
        """Overwrite the existing row with the incoming values.

        Returns:
            True if updated, False if the store declined, None on backend failure
        """
        incoming = near.incoming
        changes = {
            "description": incoming.description,
            "amount": incoming.amount,
            "date": incoming.date,
            "last_modified_source": incoming.last_modified_source,
        }
        if incoming.category:
            changes["category"] = incoming.category
            changes["subcategory"] = incoming.subcategory
            changes["confidence"] = incoming.confidence
        try:
            updated = self.store.update_transaction(owner_id, near.existing.id, changes)
        except BackendError as exc:
            logger.error("Could not update %s from near-match: %s", near.existing.id, exc)
            return None
        return updated is not None

    def _flag(self, owner_id: str, near: NearMatch) -> bool:
        try:
            self.store.record_conflict(owner_id, near.existing.id, near.incoming, near.match_type)
        except BackendError as exc:
            logger.error("Could not flag near-match of %s: %s", near.existing.id, exc)
            return False
        return True

    def _finish_job(self, job_id: str, total: int, skipped: int) -> None:
        """Refresh the job's cached counters.

        ``total`` and ``skipped`` accumulate across batches written under the
        same job; ``inserted`` is recounted from the transaction table.
        """
        try:
            job = self.store.get_job(job_id)
            if job is not None:
                total += job.total_items
                skipped += job.skipped_items
            inserted = self.store.count_job_transactions(job_id)
            self.store.update_job_counters(job_id, total=total, inserted=inserted, skipped=skipped)
        except BackendError as exc:
            logger.warning("Job %s counters not refreshed: %s", job_id, exc)


__all__ = ["MergeEngine"]
