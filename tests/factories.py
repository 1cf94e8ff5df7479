"""Test data factories for ledgerlink.

Provides factory methods to create transactions, documents and sheet rows
without depending on external fixture files.
"""

from datetime import date, timedelta
from decimal import Decimal

from ledgerlink.models import Document, Transaction


class TestDataFactory:
    """Factory for creating test data across different scenarios."""

    @staticmethod
    def create_transaction(
        description: str = "Coffee Shop",
        amount: Decimal | str = "-4.50",
        txn_date: date = date(2024, 1, 5),
        **overrides,
    ) -> Transaction:
        """Create an in-flight transaction.

        Args:
            description: Transaction description
            amount: Signed amount (strings are converted to Decimal)
            txn_date: Transaction date
            **overrides: Any other Transaction field

        Returns:
            Transaction with no id or fingerprint unless overridden
        """
        return Transaction(
            description=description,
            amount=Decimal(str(amount)),
            date=txn_date,
            **overrides,
        )

    @staticmethod
    def create_batch(count: int, start: date = date(2024, 1, 1), prefix: str = "Vendor") -> list[Transaction]:
        """Create ``count`` clearly distinct transactions on consecutive days.

        Descriptions and amounts differ enough that no two rows are near-matches.
        """
        return [
            Transaction(
                description=f"{prefix} {index:03d}",
                amount=Decimal(-10 * (index + 1)) - Decimal("0.25"),
                date=start + timedelta(days=index),
            )
            for index in range(count)
        ]

    @staticmethod
    def create_document(
        doc_id: str = "doc-1",
        vendor_name: str | None = "Acme Supplies",
        total_amount: Decimal | str | None = "120.00",
        document_date: date | None = date(2024, 2, 1),
        bank_account_id: str | None = None,
    ) -> Document:
        """Create an invoice/receipt document."""
        return Document(
            id=doc_id,
            vendor_name=vendor_name,
            document_date=document_date,
            total_amount=Decimal(str(total_amount)) if total_amount is not None else None,
            bank_account_id=bank_account_id,
        )

    @staticmethod
    def create_statement_csv(rows: list[tuple[str, str, str]], header: str = "Date,Description,Amount") -> str:
        """Render statement rows as CSV text."""
        lines = [header]
        lines.extend(",".join(row) for row in rows)
        return "\n".join(lines) + "\n"
