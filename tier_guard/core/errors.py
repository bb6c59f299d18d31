"""
Error taxonomy of the proxy.

Each error knows how it is reported to an HTTP client, if at all.
"""

from typing import Optional


class TierGuardError(Exception):
    """Base class for all proxy errors."""
    status_code = 500
    error_type = "server_error"
    error_code: Optional[str] = None

    def to_response_body(self) -> dict:
        """OpenAI style error payload."""
        error = {"message": str(self), "type": self.error_type}
        if self.error_code:
            error["code"] = self.error_code
        return {"error": error}


class NotInitializedError(TierGuardError):
    """Raised when the ledger is used before its records exist."""

    def __init__(self, message: str = "Usage tracking not initialized"):
        super().__init__(message)


class ClientInputError(TierGuardError):
    """Raised for malformed client input; the request is never forwarded."""
    status_code = 400
    error_type = "invalid_request_error"


class QuotaExceededError(TierGuardError):
    """Raised when a tier's daily budget is exhausted."""
    status_code = 429
    error_type = "rate_limit_error"
    error_code = "daily_token_limit_exceeded"

    def __init__(self, message: str, decision=None):
        super().__init__(message)
        self.decision = decision


class UpstreamForwardError(TierGuardError):
    """Raised when the upstream API could not be reached or read."""

    def __init__(self, message: str = "Failed to proxy request to OpenAI API"):
        super().__init__(message)


class AccountingError(TierGuardError):
    """Raised when usage of a completed request could not be recorded.

    The client's request already succeeded, so this is reported to operators
    and never turned into a failed response.
    """


class AccountingInconsistencyError(AccountingError):
    """Raised when the ledger was updated but the history append failed."""

    def __init__(self, message: str, tier=None, tokens: int = 0):
        super().__init__(message)
        self.tier = tier
        self.tokens = tokens


class ReconciliationError(TierGuardError):
    """Raised when a reconciliation run is abandoned; nothing was applied."""
