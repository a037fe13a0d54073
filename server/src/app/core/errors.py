"""Custom exception hierarchy for the query telemetry engine."""

from __future__ import annotations

from typing import Any, Mapping

ErrorDetails = Mapping[str, Any] | None


class ApplicationError(Exception):
    """Base exception carrying a taxonomy kind and optional structured details."""

    kind = "ApplicationError"

    def __init__(self, message: str, *, details: ErrorDetails = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def __str__(self) -> str:  # pragma: no cover - mirrors Exception.__str__
        return self.message


class SourceUnavailableError(ApplicationError):
    """Raised when a telemetry source call fails or times out."""

    kind = "SourceUnavailable"


class ConflictingCanonicalError(ApplicationError):
    """Raised when more than one canonical row claims the same query shape."""

    kind = "ConflictingCanonical"


class InvalidClassificationError(ApplicationError):
    """Raised when a classification references a missing canonical query or group."""

    kind = "InvalidClassification"


class StoreWriteFailureError(ApplicationError):
    """Raised when persisting a single row fails."""

    kind = "StoreWriteFailure"


class SessionStateConflictError(ApplicationError):
    """Raised on ``start`` of a running target or ``stop`` of a never-started one."""

    kind = "SessionStateConflict"


class UnknownTargetError(ApplicationError):
    """Raised when a target identifier is not declared in the targets manifest."""

    kind = "UnknownTarget"


class ValidationError(ApplicationError):
    """Raised when a control-surface request carries invalid input."""

    kind = "ValidationError"


class NotFoundError(ApplicationError):
    """Raised when a control-surface request references a missing record."""

    kind = "NotFound"


def error_response(error: Exception, *, details: ErrorDetails = None) -> dict[str, Any]:
    """Normalize errors into the public API response format."""

    payload: dict[str, Any]
    if isinstance(error, ApplicationError):
        payload = dict(error.details)
        if details:
            payload.update(details)
        kind = error.kind
    else:
        payload = dict(details or {})
        kind = "InternalError"

    return {
        "error": {
            "type": error.__class__.__name__,
            "kind": kind,
            "message": str(error),
            "details": payload,
        }
    }


__all__ = [
    "ApplicationError",
    "SourceUnavailableError",
    "ConflictingCanonicalError",
    "InvalidClassificationError",
    "StoreWriteFailureError",
    "SessionStateConflictError",
    "UnknownTargetError",
    "error_response",
]
