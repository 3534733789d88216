"""
Error types for the Resource Status service.

This module defines the ResourceStatusError base class and subclasses for
domain-specific errors. Domain errors should be expressed using these classes
instead of returning ad-hoc status codes; the HTTP layer maps ``error_code`` to
a status code and the worker maps any failure to a queue nack.

It also provides ErrorRecord, which normalizes arbitrary exceptions into a
single structured record before they are logged or stored on a queued request.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass
from typing import Any


class ResourceStatusError(Exception):
    """
    Base exception class for Resource Status errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "not_found", "unavailable", "failed_precondition", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., parameter values, context).

    Example:
        >>> raise ResourceStatusError(
        ...     error_code="invalid_argument",
        ...     message="limit must be between 1 and 1000",
        ...     details={"limit": 5000},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(ResourceStatusError):
    """Error raised for invalid input (query parameters, payloads, config)."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class UnauthenticatedError(ResourceStatusError):
    """Error raised when a request lacks valid credentials."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            error_code="unauthenticated", message=message, details=details
        )


class NotFoundError(ResourceStatusError):
    """Error raised when requested data does not exist."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="not_found", message=message, details=details)


class UnavailableError(ResourceStatusError):
    """
    Error raised when a required backing resource is unavailable.

    Used for queue and store connection failures that could not be recovered.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="unavailable", message=message, details=details)


class FailedPreconditionError(ResourceStatusError):
    """
    Error raised when a precondition for the operation is not met.

    Used when a component is in the wrong state (e.g. scheduler already
    running) or a storage operation fails.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class InternalError(ResourceStatusError):
    """Error raised for unexpected internal errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="internal", message=message, details=details)


class MetricsSourceError(ResourceStatusError):
    """
    Error raised when host metrics cannot be read.

    Covers introspection failures, permission problems and unsupported
    platforms. A collection request failing with this error is retried by the
    queue's backoff policy.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            error_code="metrics_source", message=message, details=details
        )


class QueueError(ResourceStatusError):
    """Error raised for work queue failures that are not connection loss."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error_code="queue", message=message, details=details)


class LeaseLostError(QueueError):
    """
    Error raised when acking or nacking with a handle whose claim has expired.

    Another worker may already have reclaimed the request, so the stale
    handle must not transition it.
    """


# =============================================================================
# Structured error records
# =============================================================================


@dataclass(frozen=True)
class ErrorRecord:
    """
    Normalized description of an exception.

    Attributes:
        name: Exception class name.
        message: Exception message (``str(exc)``, or the class name if empty).
        stack: Formatted traceback, or an empty string when unavailable.
        cause: Normalized description of the cause chain, or None.
    """

    name: str
    message: str
    stack: str
    cause: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorRecord:
        """
        Build an ErrorRecord from any exception.

        The cause is taken from ``__cause__`` (explicit chaining) or, failing
        that, ``__context__``, and rendered as ``"Name: message"`` links
        joined by ``" <- "``.
        """
        message = exc.message if isinstance(exc, ResourceStatusError) else str(exc)
        stack = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
        return cls(
            name=type(exc).__name__,
            message=message or type(exc).__name__,
            stack=stack,
            cause=_describe_cause(exc),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging and persistence."""
        return {
            "name": self.name,
            "message": self.message,
            "stack": self.stack,
            "cause": self.cause,
        }


def _describe_cause(exc: BaseException) -> str | None:
    links: list[str] = []
    seen: set[int] = {id(exc)}
    current = exc.__cause__ or exc.__context__
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        links.append(f"{type(current).__name__}: {current}")
        current = current.__cause__ or current.__context__
    return " <- ".join(links) if links else None
