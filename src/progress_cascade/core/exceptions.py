"""Custom exceptions for progress-cascade.

All exceptions derive from :class:`ProgressEngineError` so callers can catch
the entire family with a single ``except ProgressEngineError`` clause.

Hierarchy::

    ProgressEngineError
    ├── SequenceConflictError
    ├── ValidationError
    ├── EntityNotFoundError
    ├── ConcurrencyConflictError
    ├── CascadeFailureError
    ├── StorageError
    └── ConfigurationError

Only the first four are surfaced to callers of a write.  A
:class:`CascadeFailureError` is built and logged by the cascade trigger but
never propagated out of a write: progress is derived and can be repaired.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any


class ProgressEngineError(Exception):
    """Base exception for all progress-cascade errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details: dict[str, Any] = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | details={self.details}"
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}(message={self.message!r})"


class SequenceConflictError(ProgressEngineError):
    """Raised when a sibling under the same parent already holds a sequence."""

    def __init__(
        self,
        parent_id: str,
        sequence: int,
        conflicting_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            f"Sequence {sequence} already exists under parent {parent_id!r}",
            details,
        )
        self.parent_id = parent_id
        self.sequence = sequence
        self.conflicting_id = conflicting_id


class ValidationError(ProgressEngineError):
    """Raised when a write carries an invalid or missing field value."""

    def __init__(
        self,
        field: str,
        reason: str,
        allowed: Iterable[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        allowed_values = sorted(allowed) if allowed is not None else None
        message = f"Invalid value for {field!r}: {reason}"
        if allowed_values:
            message += f" (allowed: {', '.join(allowed_values)})"
        super().__init__(message, details)
        self.field = field
        self.reason = reason
        self.allowed = allowed_values


class EntityNotFoundError(ProgressEngineError):
    """Raised when an entity is missing or not owned by the expected parent."""

    def __init__(
        self,
        kind: str,
        entity_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        message = f"{kind.capitalize()} not found"
        if entity_id:
            message += f": {entity_id!r}"
        super().__init__(message, details)
        self.kind = kind
        self.entity_id = entity_id


class ConcurrencyConflictError(ProgressEngineError):
    """Raised when a save carries a stale ``version`` token."""

    def __init__(
        self,
        kind: str,
        entity_id: str,
        expected_version: int,
        actual_version: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            f"{kind.capitalize()} {entity_id!r} was modified concurrently: "
            f"expected version {expected_version}, found {actual_version}",
            details,
        )
        self.kind = kind
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class CascadeFailureError(ProgressEngineError):
    """A progress recomputation step failed after the primary write succeeded."""

    def __init__(
        self,
        step: str,
        entity_id: str | None,
        reason: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        message = f"Cascade step {step!r} failed"
        if entity_id:
            message += f" for {entity_id!r}"
        message += f": {reason}"
        super().__init__(message, details)
        self.step = step
        self.entity_id = entity_id
        self.reason = reason


class StorageError(ProgressEngineError):
    """Raised when a storage backend fails for reasons other than a missing row."""

    def __init__(
        self,
        operation: str,
        reason: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(f"Storage operation {operation!r} failed: {reason}", details)
        self.operation = operation
        self.reason = reason


class ConfigurationError(ProgressEngineError):
    """Raised when :class:`~progress_cascade.core.config.ProgressConfig` is invalid."""

    def __init__(
        self,
        parameter: str,
        reason: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(f"Invalid configuration for {parameter!r}: {reason}", details)
        self.parameter = parameter
        self.reason = reason


__all__ = [
    "CascadeFailureError",
    "ConcurrencyConflictError",
    "ConfigurationError",
    "EntityNotFoundError",
    "ProgressEngineError",
    "SequenceConflictError",
    "StorageError",
    "ValidationError",
]
