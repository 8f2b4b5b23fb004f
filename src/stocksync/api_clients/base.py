"""Commerce API error types."""

from typing import Any, Optional


class CommerceAPIError(Exception):
    """Raised when a commerce API call fails."""

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class RateLimitError(CommerceAPIError):
    """Raised when API rate limit is exceeded."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, status=kwargs.pop("status", 429), **kwargs)
        self.retry_after = retry_after


class AuthenticationError(CommerceAPIError):
    """Raised when API authentication fails."""
    pass


class APIConnectionError(CommerceAPIError):
    """Raised when API connection fails."""
    pass


class RetryExhaustedError(CommerceAPIError):
    """Raised when a retryable failure persists past the retry bound."""

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None, attempts: int = 0):
        super().__init__(message, status=status, body=body)
        self.attempts = attempts


class CommerceNotConfiguredError(CommerceAPIError):
    """Raised when store or token settings are missing."""
    pass
