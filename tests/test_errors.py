"""
Tests for the errors module.

This test module validates:
- ResourceStatusError base class functionality
- Error subclasses and their codes
- ErrorRecord normalization of arbitrary exceptions
"""

from __future__ import annotations

import pytest

from resource_status.errors import (
    ErrorRecord,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    LeaseLostError,
    MetricsSourceError,
    NotFoundError,
    QueueError,
    ResourceStatusError,
    UnauthenticatedError,
    UnavailableError,
)

# =============================================================================
# Tests for ResourceStatusError Base Class
# =============================================================================


class TestResourceStatusError:
    """Tests for ResourceStatusError base class."""

    def test_init_with_all_args(self) -> None:
        error = ResourceStatusError(
            error_code="test_error",
            message="Test error message",
            details={"key": "value"},
        )

        assert error.error_code == "test_error"
        assert error.message == "Test error message"
        assert error.details == {"key": "value"}

    def test_details_default_to_empty(self) -> None:
        error = ResourceStatusError(error_code="test_error", message="Test message")
        assert error.details == {}

    def test_str_is_message(self) -> None:
        error = ResourceStatusError(error_code="test_error", message="Boom")
        assert str(error) == "Boom"

    def test_repr_includes_fields(self) -> None:
        error = ResourceStatusError(
            error_code="test_error", message="Boom", details={"a": 1}
        )
        assert repr(error) == (
            "ResourceStatusError(error_code='test_error', "
            "message='Boom', details={'a': 1})"
        )

    def test_to_dict(self) -> None:
        error = ResourceStatusError(
            error_code="test_error", message="Boom", details={"a": 1}
        )
        assert error.to_dict() == {
            "error_code": "test_error",
            "message": "Boom",
            "details": {"a": 1},
        }


# =============================================================================
# Tests for Error Subclasses
# =============================================================================


class TestErrorSubclasses:
    """Tests for the domain error subclasses."""

    @pytest.mark.parametrize(
        ("error_class", "code"),
        [
            (InvalidArgumentError, "invalid_argument"),
            (UnauthenticatedError, "unauthenticated"),
            (NotFoundError, "not_found"),
            (UnavailableError, "unavailable"),
            (FailedPreconditionError, "failed_precondition"),
            (InternalError, "internal"),
            (MetricsSourceError, "metrics_source"),
            (QueueError, "queue"),
            (LeaseLostError, "queue"),
        ],
    )
    def test_error_codes(self, error_class: type[ResourceStatusError], code: str) -> None:
        error = error_class("message", details={"x": 1})
        assert error.error_code == code
        assert error.details == {"x": 1}
        assert isinstance(error, ResourceStatusError)

    def test_lease_lost_is_queue_error(self) -> None:
        with pytest.raises(QueueError):
            raise LeaseLostError("lease expired")


# =============================================================================
# Tests for ErrorRecord
# =============================================================================


class TestErrorRecord:
    """Tests for ErrorRecord.from_exception."""

    def test_plain_exception(self) -> None:
        try:
            raise ValueError("bad value")
        except ValueError as e:
            record = ErrorRecord.from_exception(e)

        assert record.name == "ValueError"
        assert record.message == "bad value"
        assert "ValueError: bad value" in record.stack
        assert record.cause is None

    def test_domain_error_uses_message_attribute(self) -> None:
        record = ErrorRecord.from_exception(
            MetricsSourceError("psutil failed", details={"x": 1})
        )
        assert record.name == "MetricsSourceError"
        assert record.message == "psutil failed"

    def test_empty_message_falls_back_to_class_name(self) -> None:
        record = ErrorRecord.from_exception(RuntimeError())
        assert record.message == "RuntimeError"

    def test_unraised_exception_has_stack(self) -> None:
        record = ErrorRecord.from_exception(KeyError("k"))
        assert isinstance(record.stack, str)
        assert "KeyError" in record.stack

    def test_explicit_cause_chain(self) -> None:
        try:
            try:
                try:
                    raise OSError("disk gone")
                except OSError as inner:
                    raise RuntimeError("read failed") from inner
            except RuntimeError as middle:
                raise MetricsSourceError("collect failed") from middle
        except MetricsSourceError as e:
            record = ErrorRecord.from_exception(e)

        assert record.cause == "RuntimeError: read failed <- OSError: disk gone"

    def test_implicit_context_is_cause(self) -> None:
        try:
            try:
                raise KeyError("missing")
            except KeyError:
                raise ValueError("while handling")  # noqa: B904
        except ValueError as e:
            record = ErrorRecord.from_exception(e)

        assert record.cause == "KeyError: 'missing'"

    def test_to_dict_has_all_fields(self) -> None:
        record = ErrorRecord(name="E", message="m", stack="s", cause=None)
        assert record.to_dict() == {
            "name": "E",
            "message": "m",
            "stack": "s",
            "cause": None,
        }
