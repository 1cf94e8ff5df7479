"""ledgerlink - transaction deduplication, reconciliation matching and sheet sync."""

__version__ = "0.1.0"
