from datetime import UTC, datetime
from typing import Any


class BookingEngineError(Exception):
    """Base for every failure the engine reports to callers.

    `kind` is the taxonomy class, `code` the machine-readable reason
    (e.g. SLOT_OVERLAP). Both are safe to expose; internal detail is not.
    """

    kind = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.kind
        self.details = details or {}
        self.timestamp = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "error": self.message,
            "type": self.code,
            "kind": self.kind,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(BookingEngineError):
    kind = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(BookingEngineError):
    kind = "NOT_FOUND"
    status_code = 404


class ConflictError(BookingEngineError):
    kind = "CONFLICT"
    status_code = 409


class ConfigError(BookingEngineError):
    kind = "CONFIG_ERROR"
    status_code = 500


class TransientStoreError(BookingEngineError):
    """Retryable store failure (timeout, dropped connection). Never surfaced as-is."""

    kind = "TRANSIENT_STORE_ERROR"
    status_code = 503

    def __init__(self, message: str, code: str = "ETIMEDOUT", operation: str = "unknown"):
        super().__init__(message, code=code)
        self.operation = operation


class DatabaseError(BookingEngineError):
    kind = "DATABASE_ERROR"
    status_code = 500

    def __init__(self, message: str, operation: str = "unknown", attempts: int = 1):
        super().__init__(message, code="DATABASE_ERROR")
        self.operation = operation
        self.attempts = attempts

    def to_dict(self) -> dict[str, Any]:
        # Store messages can leak schema detail; callers only see the operation.
        body = super().to_dict()
        body["error"] = "Database operation failed"
        body["details"] = {"operation": self.operation, "attempts": self.attempts}
        return body
