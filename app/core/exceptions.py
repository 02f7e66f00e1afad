"""
Exception hierarchy for the Salesforce client and the sync engine.

Exception Hierarchy:
    SalesforceError (base)
    ├── SalesforceConnectionError  - Network/timeout issues (recoverable)
    ├── SalesforceAPIError         - Query API returned an error response
    └── SalesforceAuthError        - Token endpoint rejected the request

    OrderRecordError (base, per record)
    ├── UnknownStatusError         - Status outside the known vocabulary
    └── InvalidExternalOrderError  - Record is missing or has bad fields

    SyncFailedError                - Every sync attempt failed
    SyncAbandonedError             - Write attempted after a run timed out
"""
from typing import Optional


class SalesforceError(Exception):
    """Base exception for all Salesforce-related errors."""

    retryable = True

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class SalesforceConnectionError(SalesforceError):
    """Network-related errors (timeout, connection refused, DNS)."""


class SalesforceAPIError(SalesforceError):
    """Salesforce returned a non-success response to a data request."""

    def __init__(self, message: str, details: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, details)
        self.status_code = status_code


class SalesforceAuthError(SalesforceError):
    """
    OAuth token request failed.

    Rejected credentials (invalid_grant, invalid_client) will not succeed on
    a retry and are flagged non-retryable.
    """

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        retryable: bool = True,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.error_code = error_code
        self.retryable = retryable


class OrderRecordError(Exception):
    """A single external order could not be reconciled."""


class UnknownStatusError(OrderRecordError):
    def __init__(self, value):
        self.value = value
        super().__init__(f"Unknown order status: {value!r}")


class InvalidExternalOrderError(OrderRecordError):
    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class SyncFailedError(Exception):
    """Raised once every sync attempt has failed."""

    def __init__(self, last_error: Optional[str], attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"Sync failed after {attempts} attempt(s): {last_error}")


class SyncAbandonedError(Exception):
    """A timed-out run tried to touch the store after it was abandoned."""

    retryable = True
