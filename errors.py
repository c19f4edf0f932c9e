"""
Exception hierarchy for InvestMate.

Provider adapters translate transport failures into these types so the
synchronizer and ingestion pipeline can decide between retrying, aborting
and marking a record failed.
"""

from typing import Any, Optional


class InvestMateError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class ProviderUnavailable(InvestMateError):
    """Network failure, auth failure, 5xx or malformed payload from a provider. Retryable."""

    def __init__(self, provider: str, message: str, details: Optional[dict[str, Any]] = None):
        self.provider = provider
        super().__init__(f"{provider}: {message}", details)


class RateLimited(ProviderUnavailable):
    """Provider throttled the request. Retryable after backoff."""

    def __init__(self, provider: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        message = "rate limited"
        if retry_after is not None:
            message = f"rate limited, retry after {retry_after:g}s"
        super().__init__(provider, message, {"retry_after": retry_after})


class NoData(InvestMateError):
    """Provider returned no quote for the symbol."""

    def __init__(self, symbol: str, provider: Optional[str] = None):
        self.symbol = symbol
        self.provider = provider
        source = f" from {provider}" if provider else ""
        super().__init__(f"No data for {symbol}{source}", {"symbol": symbol})


class ValidationError(InvestMateError):
    """Bad caller input. Not retryable."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message, {"field": field} if field else None)


class NotFoundError(InvestMateError):
    """Referenced record does not exist."""

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} '{identifier}' not found", {"id": identifier})


class AnalysisFailure(InvestMateError):
    """The analyzer could not produce a usable result for a piece of content."""


class SyncInProgress(InvestMateError):
    """Another sync holds the lock for this symbol and the caller asked not to wait."""

    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"Sync already in progress for {symbol}", {"symbol": symbol})
