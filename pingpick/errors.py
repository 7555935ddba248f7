"""Error hierarchy for the ping lifecycle.

Invariants:
    - Every error carries a code (str), category (ErrorCategory) and http_status
    - InvalidRequest and NotFound are never retried
    - StaleState means "lost the race": callers re-read, never retry blindly
    - StoreUnavailable is transient and retried by the calling component
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    RESOURCE_NOT_FOUND = "resource_not_found"
    STORE = "store"


@dataclass
class ErrorContext:
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    ping_id: str | None = None
    retry_after_ms: int | None = None
    field: str | None = None


class PingPickError(Exception):
    """Base exception for all ping lifecycle errors."""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        context: ErrorContext | None = None,
        http_status: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.context = context or ErrorContext()
        self.http_status = http_status

    @property
    def retryable(self) -> bool:
        return False

    def to_response(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category.value,
                "retryable": self.retryable,
                "timestamp": self.context.timestamp.isoformat(),
                "context": {
                    "ping_id": self.context.ping_id,
                    "retry_after_ms": self.context.retry_after_ms,
                    "field": self.context.field,
                },
            }
        }


class InvalidRequest(PingPickError):
    """Malformed input. Rejected immediately."""

    def __init__(
        self, message: str, field: str | None = None, ping_id: str | None = None
    ):
        super().__init__(
            message,
            "INVALID_REQUEST",
            ErrorCategory.VALIDATION,
            ErrorContext(ping_id=ping_id, field=field),
            400,
        )
        self.field = field


class StaleState(PingPickError):
    """A precondition on the stored record no longer holds."""

    def __init__(self, message: str, ping_id: str | None = None):
        super().__init__(
            message,
            "STALE_STATE",
            ErrorCategory.CONFLICT,
            ErrorContext(ping_id=ping_id),
            409,
        )


class NotFound(PingPickError):
    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            "NOT_FOUND",
            ErrorCategory.RESOURCE_NOT_FOUND,
            ErrorContext(ping_id=resource_id if resource_type == "Ping" else None),
            404,
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class StoreUnavailable(PingPickError):
    """Transient record store fault."""

    def __init__(self, operation: str, retry_after_ms: int | None = None):
        super().__init__(
            f"Record store unavailable during {operation}. Please try again.",
            "STORE_UNAVAILABLE",
            ErrorCategory.STORE,
            ErrorContext(retry_after_ms=retry_after_ms),
            503,
        )
        self.operation = operation

    @property
    def retryable(self) -> bool:
        return True
