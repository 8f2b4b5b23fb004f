"""API clients package for external service integrations."""

from .base import (
    CommerceAPIError,
    RateLimitError,
    AuthenticationError,
    APIConnectionError,
    RetryExhaustedError,
    CommerceNotConfiguredError
)
from .rate_limiter import RequestPacer, compute_backoff, parse_retry_after
from .shopify import ShopifyClient, extract_next_page_info

__all__ = [
    # Exceptions
    "CommerceAPIError",
    "RateLimitError",
    "AuthenticationError",
    "APIConnectionError",
    "RetryExhaustedError",
    "CommerceNotConfiguredError",

    # Pacing
    "RequestPacer",
    "compute_backoff",
    "parse_retry_after",

    # Client
    "ShopifyClient",
    "extract_next_page_info",
]
