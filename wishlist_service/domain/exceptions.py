"""Domain-specific exceptions.

Every error carries a machine-readable ``code`` next to its message so the
presentation layer can render it without string matching.
"""

from datetime import datetime
from typing import Any


class DomainError(Exception):
    """Base exception for domain errors."""

    code = "domain_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = {k: v for k, v in extra.items() if v is not None}


class ValidationError(DomainError):
    """Raised when caller input is malformed or missing required fields."""

    code = "validation_failed"


class NotFoundError(DomainError):
    """Raised when a wishlist or QR token does not exist."""

    code = "not_found"


class ForbiddenError(DomainError):
    """Raised when a QR token does not belong to the wishlist it was presented for."""

    code = "forbidden"


class ConflictError(DomainError):
    """Raised for an in-flight idempotency key or an already redeemed QR token."""

    code = "conflict"

    def __init__(self, message: str, used_at: datetime | None = None, **extra: Any):
        super().__init__(message, used_at=used_at, **extra)
        self.used_at = used_at


class InvalidStateError(DomainError):
    """Raised when an operation is not legal in the wishlist's current status."""

    code = "invalid_state"


class ExpiredError(DomainError):
    """Raised when a wishlist is past its expiry time."""

    code = "expired"

    def __init__(self, message: str, expired_at: datetime | None = None, **extra: Any):
        super().__init__(message, expired_at=expired_at, **extra)
        self.expired_at = expired_at


class CatalogUnavailableError(DomainError):
    """Raised when the product catalog is not configured or cannot be reached."""

    code = "catalog_unavailable"
