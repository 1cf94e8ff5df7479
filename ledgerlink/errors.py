"""Exception types shared by the ledgerlink core.

Row-level problems never surface as exceptions: bad rows are dropped at the
ingestion boundary, uniqueness violations become skips and lost link races
become "already claimed". Only backend failures are raised.
"""


class LedgerLinkError(Exception):
    """Base class for ledgerlink errors."""


class BackendError(LedgerLinkError):
    """A transient storage or spreadsheet failure. Safe to retry."""


class LookupUnavailableError(BackendError):
    """The fast fingerprint lookup is unavailable; a slower scan can replace it."""


class BackendUnavailableError(LedgerLinkError):
    """The backend cannot be reached at all. Propagated to the caller."""


class SchemaError(LedgerLinkError):
    """A spreadsheet header cannot be normalized to the sync column contract."""


__all__ = [
    "LedgerLinkError",
    "BackendError",
    "LookupUnavailableError",
    "BackendUnavailableError",
    "SchemaError",
]
