"""
Speichr - Operation Failures
============================

Single failure type raised by every core operation.

The code decides how callers react:
- VALIDATION_ERROR: not found / malformed input, never retryable
- UNAUTHORIZED: read-only, guardrail or governance denial, never retryable
- TIMEOUT: the unit of work did not finish in time, retryable
- CONNECTION_FAILED: transport failure, retryable unless aborted by policy
- NOT_SUPPORTED: the backend cannot do this
- CONFLICT: state does not allow the request (e.g. nothing to resume)
- INTERNAL_ERROR: unexpected
"""

import enum
from typing import Any


class ErrorCode(str, enum.Enum):
    """Failure taxonomy shared by the core and the API layer."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    TIMEOUT = "TIMEOUT"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    NOT_SUPPORTED = "NOT_SUPPORTED"
    CONFLICT = "CONFLICT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class OperationFailure(Exception):
    """Typed failure carrying structured diagnostic details."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = ErrorCode(code)
        self.message = message
        self.retryable = retryable
        self.details: dict[str, Any] = dict(details or {})

    def with_attempts(self, attempts: int) -> "OperationFailure":
        """Copy of this failure with the attempt count merged into details."""
        return OperationFailure(
            self.code,
            self.message,
            self.retryable,
            {**self.details, "attempts": attempts},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"OperationFailure({self.code.value}, {self.message!r})"


def to_operation_failure(error: BaseException) -> OperationFailure:
    """Normalize any exception raised by a unit of work."""
    if isinstance(error, OperationFailure):
        return error

    message = str(error) or error.__class__.__name__
    if "timed out" in message.lower():
        return OperationFailure(ErrorCode.TIMEOUT, message, True)

    if isinstance(error, Exception):
        return OperationFailure(ErrorCode.CONNECTION_FAILED, message, True)

    return OperationFailure(
        ErrorCode.INTERNAL_ERROR,
        "Unexpected operation failure.",
        False,
    )


def not_found(entity: str, **details: Any) -> OperationFailure:
    """VALIDATION_ERROR for a missing entity."""
    return OperationFailure(
        ErrorCode.VALIDATION_ERROR,
        f"{entity} was not found.",
        False,
        details,
    )
