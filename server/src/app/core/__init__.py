"""Core utilities shared by the query telemetry engine."""

from .settings import Settings, get_settings, reload_settings
from .logging import configure_logging, get_logger
from .errors import (
    ApplicationError,
    ConflictingCanonicalError,
    InvalidClassificationError,
    SessionStateConflictError,
    SourceUnavailableError,
    StoreWriteFailureError,
    UnknownTargetError,
    error_response,
)
from .request_context import RequestIdMiddleware, bind_loop_context, get_request_id

__all__ = [
    "Settings",
    "get_settings",
    "reload_settings",
    "configure_logging",
    "get_logger",
    "ApplicationError",
    "ConflictingCanonicalError",
    "InvalidClassificationError",
    "SessionStateConflictError",
    "SourceUnavailableError",
    "StoreWriteFailureError",
    "UnknownTargetError",
    "error_response",
    "RequestIdMiddleware",
    "bind_loop_context",
    "get_request_id",
]
