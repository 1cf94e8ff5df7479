"""CLI entry point for ledgerlink.

Ingests statements with duplicate detection, proposes and commits
invoice-to-transaction links, and syncs transactions with a spreadsheet
exported as CSV.
"""

import logging
from pathlib import Path
from typing import NoReturn

import typer

from ledgerlink.duplicates import DuplicateDetector
from ledgerlink.errors import LedgerLinkError
from ledgerlink.ingest import load_batch, load_documents
from ledgerlink.invoice_matcher import find_matches, reconcile_documents
from ledgerlink.merge import MergeEngine
from ledgerlink.models import (
    ConfidenceLevel,
    MatcherConfig,
    MergePolicy,
    NearMatchStrategy,
)
from ledgerlink.sheet_sync import CsvGrid, SheetSyncer
from ledgerlink.store import SqliteStore

app = typer.Typer(add_completion=False, help="Transaction deduplication, reconciliation and sheet sync.")


def _fail(message: str) -> NoReturn:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


def _require_file(path: Path, label: str) -> None:
    if not path.exists():
        _fail(f"{label} file not found: {path}")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output to stderr")) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def ingest(
    file: Path = typer.Argument(..., help="Bank statement (CSV or Excel)"),
    owner: str = typer.Option(..., "--owner", "-o", help="Owner of the transactions"),
    db: Path = typer.Option(Path("ledgerlink.db"), "--db", help="SQLite database path"),
    job: str | None = typer.Option(None, "--job", help="Existing job id to write under"),
    strategy: NearMatchStrategy = typer.Option(
        NearMatchStrategy.INSERT, "--strategy", "-s", help="What to do with near-matched rows"
    ),
    reject_at: float | None = typer.Option(
        None, "--reject-at", help="Reject the whole batch at or above this similarity score"
    ),
    skip_duplicate_check: bool = typer.Option(
        False,
        "--skip-duplicate-check",
        help="Insert every row; only when the statement period was deleted first",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report duplicates without writing"),
) -> None:
    """Ingest a statement, skipping rows already on file."""
    _require_file(file, "Statement")

    try:
        loaded = load_batch(file)
    except ValueError as exc:
        _fail(str(exc))

    typer.echo(f"Loaded {len(loaded.transactions)} transactions from {file.name}")
    if loaded.dropped:
        typer.echo(f"  Dropped {loaded.dropped} row(s) with missing or invalid fields")

    with SqliteStore(db) as store:
        engine = MergeEngine(
            store,
            detector=DuplicateDetector(store),
            policy=MergePolicy(near_match_strategy=strategy, reject_at_or_above=reject_at),
        )
        try:
            if dry_run:
                similarity = engine.preview(loaded.transactions, owner)
                typer.echo(f"\nSimilarity: {similarity.similarity_score:.1f}% -> {similarity.action.value}")
                typer.echo(f"  New: {similarity.new_count}")
                typer.echo(f"  Duplicates: {similarity.duplicate_count}")
                typer.echo(f"  Near-matches: {similarity.near_match_count}")
                for near in similarity.near_match_transactions:
                    typer.echo(
                        f"    [{near.match_type.value}] {near.incoming.description} ~ {near.existing.description}"
                    )
                if similarity.likely_resubmission:
                    typer.echo("  This looks like a statement that was already uploaded.")
                typer.echo(f"\n{similarity.message}")
                typer.echo("Dry run complete. Nothing was written.")
                return

            result = engine.process_batch(
                loaded.transactions,
                owner,
                job_id=job,
                source_identifier=file.name,
                skip_duplicate_check=skip_duplicate_check,
            )
        except LedgerLinkError as exc:
            _fail(str(exc))

    typer.echo(f"\nMode: {result.mode.value} (similarity {result.similarity_score:.1f}%)")
    typer.echo(f"  Inserted: {result.inserted}")
    typer.echo(f"  Skipped: {result.skipped}")
    typer.echo(f"  Updated: {result.updated}")
    if result.flagged:
        typer.echo(f"  Flagged for review: {result.flagged}")
    if result.failed:
        typer.echo(f"  Failed: {result.failed}")
    if result.job_id:
        typer.echo(f"  Job: {result.job_id}")
    typer.echo(f"\n{result.message}")


@app.command()
def match(
    documents_csv: Path = typer.Argument(..., help="Extracted invoices/receipts as CSV"),
    owner: str = typer.Option(..., "--owner", "-o", help="Owner of the documents"),
    db: Path = typer.Option(Path("ledgerlink.db"), "--db", help="SQLite database path"),
    limit: int = typer.Option(5, "--limit", "-n", help="Candidates shown per document"),
    min_confidence: ConfidenceLevel = typer.Option(
        ConfidenceLevel.HIGH, "--min-confidence", help="Lowest confidence linked with --commit"
    ),
    commit: bool = typer.Option(False, "--commit", help="Link documents one-to-one"),
) -> None:
    """Rank unreconciled transactions for each document."""
    _require_file(documents_csv, "Documents")

    try:
        documents = load_documents(documents_csv)
    except ValueError as exc:
        _fail(str(exc))

    config = MatcherConfig(limit=limit)
    with SqliteStore(db) as store:
        try:
            candidates = store.unreconciled_transactions(owner)
            typer.echo(f"{len(documents)} document(s), {len(candidates)} unreconciled transaction(s)")

            for document in documents:
                matches = find_matches(document, candidates, config=config)
                typer.echo(f"\n{document.id} | {document.vendor_name or '?'} | {document.total_amount}")
                if not matches:
                    typer.echo("  (no candidates)")
                for candidate in matches:
                    days = "-" if candidate.date_diff_days is None else f"{candidate.date_diff_days}d"
                    typer.echo(
                        f"  [{candidate.confidence_level.value}] {candidate.score:.0f} "
                        f"{candidate.transaction_id} (amount diff {candidate.amount_diff}, {days})"
                    )

            if not commit:
                return

            for document in documents:
                store.add_document(owner, document)
            links = reconcile_documents(
                documents, candidates, store.link_document, min_confidence=min_confidence, config=config
            )
        except LedgerLinkError as exc:
            _fail(str(exc))

    typer.echo(f"\nLinked {len(links)} of {len(documents)} document(s)")
    for link in links:
        typer.echo(f"  {link.document_id} -> {link.transaction_id} ({link.confidence_level.value})")


@app.command()
def push(
    sheet_csv: Path = typer.Argument(..., help="Spreadsheet exported as CSV (created if missing)"),
    owner: str = typer.Option(..., "--owner", "-o", help="Owner of the transactions"),
    db: Path = typer.Option(Path("ledgerlink.db"), "--db", help="SQLite database path"),
    job: str | None = typer.Option(None, "--job", help="Only push this job's transactions"),
) -> None:
    """Push transactions to the sheet without clobbering newer sheet edits."""
    with SqliteStore(db) as store:
        try:
            transactions = store.list_transactions(owner, job)
            result = SheetSyncer(CsvGrid(sheet_csv)).push(transactions)
        except LedgerLinkError as exc:
            _fail(str(exc))

    typer.echo(f"Pushed {len(transactions)} transaction(s) to {sheet_csv.name}")
    typer.echo(f"  Appended: {result.inserted}")
    typer.echo(f"  Updated: {result.updated}")
    typer.echo(f"  Skipped (newer sheet edit): {result.skipped_due_to_newer_external_edit}")
    if result.failed:
        typer.echo(f"  Failed: {result.failed}")


@app.command()
def pull(
    sheet_csv: Path = typer.Argument(..., help="Spreadsheet exported as CSV"),
    owner: str = typer.Option(..., "--owner", "-o", help="Owner of the transactions"),
    db: Path = typer.Option(Path("ledgerlink.db"), "--db", help="SQLite database path"),
    job: str = typer.Option(..., "--job", help="Job that new sheet rows are filed under"),
) -> None:
    """Apply edits made in the sheet back to the store."""
    _require_file(sheet_csv, "Sheet")

    with SqliteStore(db) as store:
        record = store.get_job(job)
        if record is None or record.owner_id != owner:
            _fail(f"Job not found: {job}")
        try:
            result = SheetSyncer(CsvGrid(sheet_csv)).pull(store, owner, job, source_identifier=sheet_csv.name)
        except LedgerLinkError as exc:
            _fail(str(exc))

    typer.echo(f"Processed {result.rows_processed} edited row(s) from {sheet_csv.name}")
    typer.echo(f"  Updated: {result.rows_updated}")
    typer.echo(f"  Inserted: {result.rows_inserted}")
    typer.echo(f"  Skipped: {result.rows_skipped}")


if __name__ == "__main__":
    app()
