"""Error taxonomy with stable reason codes.

Every rejection and processing failure carries a ``code`` that callers and gates
match on, separate from the free-text ``message``. The category decides whether
a failure is retried, dead-lettered immediately, or rejected synchronously.
"""
from __future__ import annotations

import enum
from typing import Optional


class ErrorCategory(str, enum.Enum):
    AUTHENTICATION = "AUTHENTICATION"
    REPLAY = "REPLAY"
    VALIDATION = "VALIDATION"
    TRANSIENT = "TRANSIENT"
    FATAL = "FATAL"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    UNAVAILABLE = "UNAVAILABLE"


class OpsBridgeError(Exception):
    category: ErrorCategory = ErrorCategory.FATAL
    status_code: int = 500

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code
        self.message = message or code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "category": self.category.value}


class AuthenticationError(OpsBridgeError):
    category = ErrorCategory.AUTHENTICATION
    status_code = 401


class ReplayRejectedError(OpsBridgeError):
    category = ErrorCategory.REPLAY
    status_code = 401


class ValidationError(OpsBridgeError):
    category = ErrorCategory.VALIDATION
    status_code = 400


class NotFoundError(OpsBridgeError):
    category = ErrorCategory.NOT_FOUND
    status_code = 404


class ConflictError(OpsBridgeError):
    category = ErrorCategory.CONFLICT
    status_code = 409


class ServiceUnavailableError(OpsBridgeError):
    category = ErrorCategory.UNAVAILABLE
    status_code = 503


class TransientProcessingError(OpsBridgeError):
    category = ErrorCategory.TRANSIENT
    status_code = 500


class FatalProcessingError(OpsBridgeError):
    category = ErrorCategory.FATAL
    status_code = 422


class SyncConflictError(ConflictError):
    """A unique constraint fired mid-batch; the whole batch was rolled back."""

    def __init__(self, message: Optional[str] = None):
        super().__init__("SYNC_UNIQUE_CONFLICT", message)


__all__ = [
    "ErrorCategory",
    "OpsBridgeError",
    "AuthenticationError",
    "ReplayRejectedError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ServiceUnavailableError",
    "TransientProcessingError",
    "FatalProcessingError",
    "SyncConflictError",
]
