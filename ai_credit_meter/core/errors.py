"""
Error taxonomy for the metering core.

Faults (storage, upstream) are raised. Business outcomes such as
insufficient credit or an unknown payment reference are returned as
typed results by the components that produce them.
"""

from typing import Optional


class MeterError(Exception):
    """Base class for all metering errors."""


class LedgerStorageError(MeterError):
    """Raised when the balance store cannot be read or written.

    This is a retryable fault and must never be reported as
    insufficient credit.
    """
    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class AccountNotFoundError(MeterError):
    """Raised when an operation references an account that does not exist."""
    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class AccountInactiveError(MeterError):
    """Raised when a deactivated account attempts a metered operation."""
    def __init__(self, account_id: str):
        super().__init__(f"Account is inactive: {account_id}")
        self.account_id = account_id


class UpstreamError(MeterError):
    """Transport failure, timeout or non-success reply from the AI provider."""
    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class EstimationError(MeterError):
    """Raised when a cost estimate cannot be produced."""
