from typing import Optional


class LedgerError(Exception):
    pass


class ValidationError(LedgerError):
    """Non-numeric, non-finite or out-of-range amount or ratio."""


class TransferError(LedgerError):
    pass


class TransferVerificationError(LedgerError):
    def __init__(self, message: str, expected=None, actual=None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class NetworkSyncError(LedgerError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConcurrencyRejection(LedgerError):
    pass


class ReconciliationFatalError(LedgerError):
    """Rollback after a failed transfer check could not restore the ledgers."""
