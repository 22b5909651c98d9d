"""Exception hierarchy for the loan ledger."""


class LedgerError(Exception):
    """Base exception for all ledger errors."""


class ValidationError(LedgerError):
    """Raised when input is malformed or out of range."""


class NotFoundError(LedgerError):
    """Raised when a referenced loan does not exist."""


class InvalidStateError(LedgerError):
    """Raised when an operation is attempted on a loan in the wrong state."""


class PersistenceError(LedgerError):
    """Raised when the underlying store fails. The driver error is chained as __cause__."""


class ConfigurationError(LedgerError):
    """Raised when configuration is invalid or missing."""
