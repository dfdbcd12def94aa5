from __future__ import annotations


class CoordinatorError(Exception):
    """Base class for coordination failures surfaced in results."""

    error_type = "internal_error"


class ValidationError(CoordinatorError):
    error_type = "validation_error"


class OverloadError(CoordinatorError):
    """Too many distinct contacts are registered; the caller should back off."""

    error_type = "overload"


class QueueFullError(CoordinatorError):
    error_type = "queue_full"


class ProcessingTimeoutError(CoordinatorError):
    """Handler exceeded its processing budget. It may still be running."""

    error_type = "timeout"


class TransportError(CoordinatorError):
    error_type = "transport_error"


def error_type_of(exc: BaseException) -> str:
    if isinstance(exc, CoordinatorError):
        return exc.error_type
    return "handler_error"
