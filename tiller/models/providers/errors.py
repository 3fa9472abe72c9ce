# ==============================
# Provider Errors
# ==============================
"""
Provider error taxonomy.

Every provider maps its transport failures onto these classes. The `retryable` flag is
what tiller/utils/retry.py classifies on; nothing upstream inspects status codes.
"""

from __future__ import annotations

from typing import Optional


class ProviderError(Exception):
    retryable: bool = False

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ProviderAuthError(ProviderError):
    pass


class ProviderMalformedRequestError(ProviderError):
    pass


class ProviderNotFoundError(ProviderError):
    pass


class ProviderClientError(ProviderError):
    """Any other 4xx."""


class ProviderRateLimitError(ProviderError):
    retryable = True

    def __init__(self, message: str, *, retry_after: Optional[float] = None, status: Optional[int] = 429) -> None:
        super().__init__(message, status=status)
        self.retry_after = retry_after


class ProviderTimeoutError(ProviderError):
    retryable = True


class ProviderNetworkError(ProviderError):
    retryable = True


class ProviderServerError(ProviderError):
    retryable = True


class ProviderStreamError(ProviderError):
    """The stream broke or carried an undecodable event."""
    retryable = True


def error_for_status(status: int, message: str, *, retry_after: Optional[float] = None) -> ProviderError:
    """Map an HTTP status to the matching ProviderError."""
    if status in (401, 403):
        return ProviderAuthError(message, status=status)
    if status == 404:
        return ProviderNotFoundError(message, status=status)
    if status == 429:
        return ProviderRateLimitError(message, retry_after=retry_after, status=status)
    if status in (408, 504):
        return ProviderTimeoutError(message, status=status)
    if status >= 500:
        return ProviderServerError(message, status=status)
    if status in (400, 413, 422):
        return ProviderMalformedRequestError(message, status=status)
    return ProviderClientError(message, status=status)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header (seconds form). HTTP-date values are ignored.
    """
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None
