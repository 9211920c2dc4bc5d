"""Complete exception hierarchy tests."""
from __future__ import annotations

import pytest

from progress_cascade.core.exceptions import (
    CascadeFailureError,
    ConcurrencyConflictError,
    ConfigurationError,
    EntityNotFoundError,
    ProgressEngineError,
    SequenceConflictError,
    StorageError,
    ValidationError,
)


class TestProgressEngineError:

    def test_basic_message(self) -> None:
        exc = ProgressEngineError("base error")
        assert str(exc) == "base error"
        assert exc.details == {}

    def test_with_details(self) -> None:
        exc = ProgressEngineError("error", details={"key": "val"})
        assert "key" in str(exc)
        assert exc.details == {"key": "val"}

    def test_repr(self) -> None:
        assert repr(ProgressEngineError("x")) == "ProgressEngineError(message='x')"


class TestSequenceConflictError:

    def test_attributes(self) -> None:
        exc = SequenceConflictError(parent_id="task-1", sequence=2, conflicting_id="sub-9")
        assert exc.parent_id == "task-1"
        assert exc.sequence == 2
        assert exc.conflicting_id == "sub-9"
        assert "Sequence 2" in str(exc)
        assert "task-1" in str(exc)


class TestValidationError:

    def test_without_allowed(self) -> None:
        exc = ValidationError("title", "is required")
        assert exc.field == "title"
        assert exc.allowed is None
        assert "is required" in str(exc)

    def test_allowed_sorted(self) -> None:
        exc = ValidationError("status", "bad", allowed=["pending", "completed"])
        assert exc.allowed == ["completed", "pending"]
        assert "allowed: completed, pending" in str(exc)


class TestEntityNotFoundError:

    def test_with_id(self) -> None:
        exc = EntityNotFoundError("task", "t-1")
        assert str(exc) == "Task not found: 't-1'"
        assert exc.entity_id == "t-1"

    def test_without_id(self) -> None:
        exc = EntityNotFoundError("customer")
        assert "not found" in str(exc).lower()
        assert exc.entity_id is None


class TestConcurrencyConflictError:

    def test_versions(self) -> None:
        exc = ConcurrencyConflictError("task", "t-1", expected_version=2, actual_version=3)
        assert exc.expected_version == 2
        assert exc.actual_version == 3
        assert "expected version 2, found 3" in str(exc)


class TestCascadeFailureError:

    def test_message(self) -> None:
        exc = CascadeFailureError(step="customer", entity_id="c-1", reason="timeout")
        assert str(exc) == "Cascade step 'customer' failed for 'c-1': timeout"
        assert exc.step == "customer"


class TestOtherErrors:

    def test_storage(self) -> None:
        exc = StorageError("save", "disk full")
        assert exc.operation == "save"
        assert "disk full" in str(exc)

    def test_configuration(self) -> None:
        exc = ConfigurationError("database_url", "missing")
        assert exc.parameter == "database_url"


@pytest.mark.parametrize(
    "cls",
    [
        SequenceConflictError,
        ValidationError,
        EntityNotFoundError,
        ConcurrencyConflictError,
        CascadeFailureError,
        StorageError,
        ConfigurationError,
    ],
)
def test_all_inherit_from_base(cls) -> None:
    assert issubclass(cls, ProgressEngineError)
