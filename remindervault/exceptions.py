"""Exception classes for the storage contract.

Every error a caller of the storage contract can see derives from
StorageError and carries a stable ``code`` so outer layers can map it to
a user-facing message without caring which tier raised it.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes exposed by the storage contract."""

    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    CONFLICT = "CONFLICT"


class StorageError(Exception):
    """Base exception for storage-related errors."""

    code = ErrorCode.STORAGE_UNAVAILABLE

    def __init__(self, message: str, details: Any = None):
        """Initialize with message and optional details."""
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Describe the error for logs and diagnostics output."""
        return {
            "type": type(self).__name__,
            "code": self.code.value,
            "message": str(self),
            "details": self.details,
        }


class StorageUnavailableError(StorageError):
    """Raised when the underlying store cannot be reached or refuses work."""

    code = ErrorCode.STORAGE_UNAVAILABLE


class QuotaExceededError(StorageError):
    """Raised when a write does not fit even after eviction."""

    code = ErrorCode.QUOTA_EXCEEDED

    def __init__(self, required_bytes: int, limit_bytes: int):
        """Initialize with the attempted size and the configured cap."""
        self.required_bytes = required_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            f"Storage quota exceeded: {required_bytes} bytes needed, "
            f"limit is {limit_bytes} bytes",
            details={"required": required_bytes, "limit": limit_bytes},
        )


class ValidationError(StorageError, ValueError):
    """Raised when a record or argument has the wrong shape."""

    code = ErrorCode.VALIDATION_ERROR

    def __init__(self, issues: list, prefix: str = "Validation failed"):
        """Initialize with the list of failed field checks."""
        self.issues = list(issues)
        self.fields = [getattr(issue, "field", None) for issue in self.issues]
        message = f"{prefix}: " + "; ".join(str(issue) for issue in self.issues)
        super().__init__(message, details=[str(issue) for issue in self.issues])


class NotFoundError(StorageError, LookupError):
    """Raised when an identity-based operation targets a missing record."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, reminder_id: str):
        """Initialize with the missing id."""
        self.reminder_id = reminder_id
        super().__init__(f"Reminder not found: {reminder_id}")


class StorageTimeoutError(StorageError, TimeoutError):
    """Raised by the bounded-wait wrapper when an operation takes too long."""

    code = ErrorCode.TIMEOUT

    def __init__(self, operation: str, timeout: float):
        """Initialize with the operation name and the limit in seconds."""
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"Operation timed out after {timeout:g}s: {operation}")


class ConcurrentModificationError(StorageError):
    """Raised when optimistic locking detects a concurrent write."""

    code = ErrorCode.CONFLICT

    def __init__(self, expected_revision: int, actual_revision: int):
        """Initialize with revision conflict details."""
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision
        super().__init__(
            f"Document changed concurrently: "
            f"expected r{expected_revision}, found r{actual_revision}"
        )
