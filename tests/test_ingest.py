"""Tests for statement loading and row validation."""

from datetime import date
from decimal import Decimal
from pathlib import Path

import pandas as pd
import pytest

from ledgerlink.ingest import (
    detect_column_mapping,
    infer_date_format,
    load_batch,
    load_documents,
    parse_amount,
    standardize_date,
    validate_rows,
)
from ledgerlink.models import SourceType
from tests.factories import TestDataFactory


def write_csv(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text)
    return path


class TestColumnMappingDetection:
    """Tests for automatic column mapping detection."""

    def test_signed_layout(self):
        df = pd.DataFrame(columns=["Posting Date", "Description", "Amount"])

        mapping = detect_column_mapping(df)

        assert mapping.format_type == "signed"
        assert (mapping.date, mapping.description, mapping.amount) == ("Posting Date", "Description", "Amount")

    def test_debit_credit_layout(self):
        df = pd.DataFrame(columns=["Date", "Details", "Debit", "Credit", "Balance"])

        mapping = detect_column_mapping(df)

        assert mapping.format_type == "debit_credit"
        assert (mapping.debit, mapping.credit) == ("Debit", "Credit")
        assert mapping.description == "Details"

    def test_fuzzy_header(self):
        """Headers with stray punctuation still map."""
        df = pd.DataFrame(columns=["Date:", "Descriptions", "Amount ($)"])

        mapping = detect_column_mapping(df)

        assert mapping.description == "Descriptions"
        assert mapping.amount == "Amount ($)"


class TestDateParsing:
    """Tests for date format inference and parsing."""

    def test_infer_day_first(self):
        hints = infer_date_format(pd.Series(["25/01/2024", "02/02/2024"]))

        assert hints["dayfirst"] is True

    def test_infer_iso(self):
        assert infer_date_format(pd.Series(["2024-01-25"]))["yearfirst"] is True

    def test_us_dates_by_default(self):
        hints = infer_date_format(pd.Series(["01/02/2024"]))

        assert standardize_date("01/02/2024", hints) == date(2024, 1, 2)

    def test_time_of_day_dropped(self):
        assert standardize_date("2024-01-05 23:59:00", {"yearfirst": True}) == date(2024, 1, 5)

    @pytest.mark.parametrize("value", [None, "", "not a date", float("nan")])
    def test_unparseable(self, value):
        assert standardize_date(value) is None


class TestParseAmount:
    """Tests for amount cell parsing."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("-4.50", Decimal("-4.50")),
            ("$1,234.56", Decimal("1234.56")),
            ("(12.00)", Decimal("-12.00")),
            ("€ 7", Decimal("7")),
            (3.25, Decimal("3.25")),
        ],
    )
    def test_forms(self, raw, expected):
        assert parse_amount(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "n/a", float("nan"), "Infinity"])
    def test_unparseable(self, raw):
        assert parse_amount(raw) is None


class TestLoadBatch:
    """Tests for loading whole statement files."""

    def test_signed_csv(self, tmp_path):
        path = write_csv(
            tmp_path,
            "january.csv",
            TestDataFactory.create_statement_csv(
                [("2024-01-05", "Coffee Shop", "-4.50"), ("2024-01-06", "Salary", "2500.00")]
            ),
        )

        result = load_batch(path)

        assert result.dropped == 0
        first, second = result.transactions
        assert (first.description, first.amount, first.date) == ("Coffee Shop", Decimal("-4.50"), date(2024, 1, 5))
        assert second.amount == Decimal("2500.00")
        assert first.source_identifier == "january.csv"
        assert first.external_row_id == "0"
        assert first.source_type == SourceType.UPLOAD

    def test_debit_credit_csv(self, tmp_path):
        path = write_csv(
            tmp_path,
            "bank.csv",
            "Date,Description,Debit,Credit\n01/05/2024,Coffee Shop,4.50,\n01/06/2024,Salary,,2500.00\n",
        )

        result = load_batch(path)

        assert [tx.amount for tx in result.transactions] == [Decimal("-4.50"), Decimal("2500.00")]

    def test_day_first_csv(self, tmp_path):
        path = write_csv(
            tmp_path,
            "uk.csv",
            TestDataFactory.create_statement_csv([("25/01/2024", "Tesco", "-12.00"), ("03/02/2024", "Boots", "-3.00")]),
        )

        result = load_batch(path)

        assert [tx.date for tx in result.transactions] == [date(2024, 1, 25), date(2024, 2, 3)]

    def test_invalid_rows_dropped(self, tmp_path):
        path = write_csv(
            tmp_path,
            "messy.csv",
            TestDataFactory.create_statement_csv(
                [
                    ("2024-01-05", "Coffee Shop", "-4.50"),
                    ("", "No date", "-1.00"),
                    ("2024-01-07", "", "-2.00"),
                    ("2024-01-08", "Bad amount", "abc"),
                ]
            ),
        )

        result = load_batch(path)

        assert len(result.transactions) == 1
        assert result.dropped == 3

    def test_missing_columns(self, tmp_path):
        path = write_csv(tmp_path, "odd.csv", "Foo,Bar\n1,2\n")

        with pytest.raises(ValueError, match="Could not detect"):
            load_batch(path)

    def test_excel_statement(self, tmp_path):
        path = tmp_path / "statement.xlsx"
        pd.DataFrame(
            {"Date": ["2024-01-05", "2024-01-06"], "Description": ["Coffee Shop", "Books"], "Amount": [-4.5, -20.0]}
        ).to_excel(path, index=False, engine="openpyxl")

        result = load_batch(path, SourceType.API)

        assert [tx.amount for tx in result.transactions] == [Decimal("-4.5"), Decimal("-20.0")]
        assert result.transactions[0].source_type == SourceType.API


class TestLoadDocuments:
    def test_documents(self, tmp_path):
        path = write_csv(
            tmp_path,
            "docs.csv",
            "id,vendor_name,document_date,total_amount,bank_account_id\n"
            "doc-1,Acme Supplies,2024-02-01,120.00,acct-1\n"
            ",Nobody,2024-02-02,5.00,\n"
            "doc-2,,,,\n",
        )

        documents = load_documents(path)

        assert [doc.id for doc in documents] == ["doc-1", "doc-2"]
        assert documents[0].total_amount == Decimal("120.00")
        assert documents[0].bank_account_id == "acct-1"
        assert documents[1].vendor_name is None
        assert documents[1].document_date is None

    def test_missing_columns(self, tmp_path):
        path = write_csv(tmp_path, "docs.csv", "id,vendor_name\ndoc-1,Acme\n")

        with pytest.raises(ValueError, match="document_date"):
            load_documents(path)


class TestValidateRows:
    def test_valid_and_invalid_rows(self):
        result = validate_rows(
            [
                {"description": " Coffee Shop ", "amount": "-4.50", "date": "2024-01-05", "category": "Food"},
                {"description": "No amount", "amount": None, "date": "2024-01-05"},
                {"description": "", "amount": "1.00", "date": "2024-01-05"},
            ],
            SourceType.MANUAL,
        )

        assert result.dropped == 2
        [tx] = result.transactions
        assert tx.description == "Coffee Shop"
        assert tx.category == "Food"
        assert tx.source_type == SourceType.MANUAL
