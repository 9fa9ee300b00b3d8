from __future__ import annotations

from typing import Optional


class MemoryEngineError(Exception):
    """Base class for everything the engine raises on purpose."""


class ValidationError(MemoryEngineError):
    """Bad configuration or empty input. Never retried."""


class InvalidTransition(ValidationError):
    pass


class ProviderError(MemoryEngineError):
    """Embedding / text-generation provider refused or failed a request."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderRateLimited(ProviderError):
    """HTTP 429 from the provider: the only retryable provider error."""

    def __init__(self, message: str = "provider rate limit", *, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ProviderExhaustedError(ProviderError):
    def __init__(self, message: str, *, last_error: Optional[BaseException] = None):
        super().__init__(message, status_code=getattr(last_error, "status_code", None))
        self.last_error = last_error


class ProviderContractError(ProviderError):
    """Response shape does not match the contract. Integration bug, not retried."""


class QuotaExceededError(MemoryEngineError):
    reason = "quota"

    def __init__(self, message: str, *, limit: Optional[int] = None, used: Optional[int] = None):
        super().__init__(message)
        self.limit = limit
        self.used = used


class DocumentLimitExceeded(QuotaExceededError):
    reason = "document_count"


class StorageLimitExceeded(QuotaExceededError):
    reason = "storage_bytes"


class DailyUploadLimitExceeded(QuotaExceededError):
    reason = "daily_uploads"


class CapacityExceededError(QuotaExceededError):
    reason = "memory_count"


class NotFoundError(MemoryEngineError):
    """Entity absent or not owned by the caller."""
