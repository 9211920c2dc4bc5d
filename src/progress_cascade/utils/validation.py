"""Validation utilities shared by the write path.

Every raw value that reaches an entity (status strings, sequence numbers,
caller-supplied field dicts) passes through these helpers before anything is
persisted.  They translate bad input into
:class:`~progress_cascade.core.exceptions.ValidationError`.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import StrEnum
from typing import Any, TypeVar

from pydantic import ValidationError as PydanticValidationError

from progress_cascade.core.exceptions import ValidationError
from progress_cascade.core.types import HierarchyEntity

E = TypeVar("E", bound=StrEnum)
M = TypeVar("M", bound=HierarchyEntity)

# Fields owned by the engine; callers may never write them directly.
ENGINE_OWNED_FIELDS = frozenset(
    {"id", "progress", "version", "completed_at", "completed_by", "created_at", "updated_at"}
)


def is_valid_sequence(value: Any) -> bool:
    """Return True if value is a positive integer (bools excluded)."""
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def assert_valid_sequence(value: Any, field: str = "sequence") -> int:
    """Return *value* unchanged or raise ValidationError."""
    if not is_valid_sequence(value):
        raise ValidationError(field, f"must be a positive integer, got {value!r}")
    return value


def assert_valid_progress(value: Any, field: str = "progress") -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 100:
        raise ValidationError(field, f"must be an integer between 0 and 100, got {value!r}")
    return value


def parse_enum(enum_cls: type[E], value: Any, field: str = "status") -> E:
    """Coerce *value* into a member of *enum_cls*.

    Raises:
        ValidationError: naming the allowed values when *value* is not one of them
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(  # noqa: B904
            field,
            f"{value!r} is not a recognised value",
            allowed=[m.value for m in enum_cls],
        )


def require_fields(data: Mapping[str, Any], fields: Iterable[str]) -> None:
    """Raise ValidationError for the first field that is missing or blank."""
    for name in fields:
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(name, "is required")


def reject_engine_owned(changes: Mapping[str, Any]) -> None:
    """Refuse caller writes to fields only the engine may set."""
    owned = sorted(ENGINE_OWNED_FIELDS.intersection(changes))
    if owned:
        raise ValidationError(owned[0], "is maintained by the engine and cannot be set directly")


def build_entity(model_cls: type[M], data: Mapping[str, Any]) -> M:
    """Construct *model_cls* from *data*, reporting pydantic errors as ValidationError."""
    try:
        return model_cls(**data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or model_cls.__name__
        raise ValidationError(field, first.get("msg", "invalid value")) from exc


__all__ = [
    "ENGINE_OWNED_FIELDS",
    "assert_valid_progress",
    "assert_valid_sequence",
    "build_entity",
    "is_valid_sequence",
    "parse_enum",
    "reject_engine_owned",
    "require_fields",
]
