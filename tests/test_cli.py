"""Tests for the CLI entry point."""

from pathlib import Path

import pandas as pd
import pytest
from typer.testing import CliRunner

from ledgerlink.main import app
from ledgerlink.store import SqliteStore
from tests.factories import TestDataFactory

runner = CliRunner()


@pytest.fixture
def statement(tmp_path: Path) -> Path:
    path = tmp_path / "january.csv"
    path.write_text(
        TestDataFactory.create_statement_csv(
            [("2024-01-05", "Coffee Shop", "-4.50"), ("2024-02-03", "ACME SUPPLIES INC", "-120.00")]
        )
    )
    return path


@pytest.fixture
def db(tmp_path: Path) -> Path:
    return tmp_path / "ledger.db"


def ingest(statement: Path, db: Path, *extra: str):
    return runner.invoke(app, ["ingest", str(statement), "--owner", "owner-1", "--db", str(db), *extra])


class TestIngestCommand:
    """Test the ingest command."""

    def test_missing_file(self, tmp_path, db) -> None:
        result = ingest(tmp_path / "nonexistent.csv", db)

        assert result.exit_code == 1
        assert "Error: Statement file not found" in result.stderr

    def test_ingest_then_reingest(self, statement, db) -> None:
        first = ingest(statement, db)
        second = ingest(statement, db)

        assert first.exit_code == 0
        assert "Inserted: 2" in first.stdout
        assert second.exit_code == 0
        assert "Inserted: 0" in second.stdout
        assert "Skipped: 2" in second.stdout
        assert "Mode: merge" in second.stdout

    def test_dry_run_writes_nothing(self, statement, db) -> None:
        result = ingest(statement, db, "--dry-run")

        assert result.exit_code == 0
        assert "New: 2" in result.stdout
        assert "Dry run complete" in result.stdout
        with SqliteStore(db) as store:
            assert store.list_transactions("owner-1") == []

    def test_reject_threshold(self, statement, db) -> None:
        ingest(statement, db)

        result = ingest(statement, db, "--reject-at", "90")

        assert result.exit_code == 0
        assert "Mode: reject" in result.stdout
        assert "Rejected: 100.0% of transactions already exist." in result.stdout

    def test_unreadable_layout(self, tmp_path, db) -> None:
        path = tmp_path / "odd.csv"
        path.write_text("Foo,Bar\n1,2\n")

        result = ingest(path, db)

        assert result.exit_code == 1
        assert "Could not detect" in result.stderr

    def test_unknown_strategy_rejected(self, statement, db) -> None:
        result = ingest(statement, db, "--strategy", "overwrite")

        assert result.exit_code == 2


class TestMatchCommand:
    """Test the match command."""

    @pytest.fixture
    def documents(self, tmp_path: Path) -> Path:
        path = tmp_path / "documents.csv"
        path.write_text("id,vendor_name,document_date,total_amount\ndoc-1,Acme Supplies,2024-02-01,120.00\n")
        return path

    def test_lists_candidates(self, statement, documents, db) -> None:
        ingest(statement, db)

        result = runner.invoke(app, ["match", str(documents), "--owner", "owner-1", "--db", str(db)])

        assert result.exit_code == 0
        assert "[high] 90" in result.stdout
        assert "Linked" not in result.stdout

    def test_commit_links(self, statement, documents, db) -> None:
        ingest(statement, db)

        result = runner.invoke(app, ["match", str(documents), "--owner", "owner-1", "--db", str(db), "--commit"])

        assert result.exit_code == 0
        assert "Linked 1 of 1 document(s)" in result.stdout
        with SqliteStore(db) as store:
            assert [tx.description for tx in store.unreconciled_transactions("owner-1")] == ["Coffee Shop"]

    def test_missing_documents_file(self, tmp_path, db) -> None:
        result = runner.invoke(app, ["match", str(tmp_path / "none.csv"), "--owner", "owner-1", "--db", str(db)])

        assert result.exit_code == 1
        assert "Error: Documents file not found" in result.stderr


class TestSheetCommands:
    """Test push and pull against a CSV sheet."""

    def test_push_then_pull_edit(self, statement, db, tmp_path) -> None:
        sheet = tmp_path / "sheet.csv"
        ingest(statement, db)

        pushed = runner.invoke(app, ["push", str(sheet), "--owner", "owner-1", "--db", str(db)])

        assert pushed.exit_code == 0
        assert "Appended: 2" in pushed.stdout

        df = pd.read_csv(sheet, dtype=str, keep_default_na=False)
        df.loc[0, "Category"] = "Coffee"
        df.loc[0, "Sheet Modified At"] = "2099-01-01T00:00:00+00:00"
        df.loc[0, "Sheet Modified By"] = "alice"
        df.to_csv(sheet, index=False)
        with SqliteStore(db) as store:
            job_id = store.list_transactions("owner-1")[0].job_id

        pulled = runner.invoke(app, ["pull", str(sheet), "--owner", "owner-1", "--db", str(db), "--job", job_id])

        assert pulled.exit_code == 0
        assert "Processed 1 edited row(s)" in pulled.stdout
        assert "Updated: 1" in pulled.stdout
        with SqliteStore(db) as store:
            coffee = store.list_transactions("owner-1")[0]
            assert coffee.category == "Coffee"
            assert coffee.last_modified_source == "spreadsheet_sync"

        repushed = runner.invoke(app, ["push", str(sheet), "--owner", "owner-1", "--db", str(db)])
        assert "Updated: 2" in repushed.stdout

    def test_pull_unknown_job(self, tmp_path, db) -> None:
        sheet = tmp_path / "sheet.csv"
        sheet.write_text("Date,Description,Amount\n")

        result = runner.invoke(app, ["pull", str(sheet), "--owner", "owner-1", "--db", str(db), "--job", "nope"])

        assert result.exit_code == 1
        assert "Job not found: nope" in result.stderr

    def test_pull_with_other_owners_job(self, statement, db, tmp_path) -> None:
        sheet = tmp_path / "sheet.csv"
        ingest(statement, db)
        runner.invoke(app, ["push", str(sheet), "--owner", "owner-1", "--db", str(db)])
        with SqliteStore(db) as store:
            job_id = store.list_transactions("owner-1")[0].job_id

        result = runner.invoke(app, ["pull", str(sheet), "--owner", "owner-2", "--db", str(db), "--job", job_id])

        assert result.exit_code == 1
        assert f"Job not found: {job_id}" in result.stderr
