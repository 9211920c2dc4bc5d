"""Completion state machine for Task, Subtask and Customer status fields.

Every status may move to every other status.  Only entry into and exit from
``completed`` has side effects:

- entering ``completed`` stamps ``completed_at`` (and ``completed_by`` where
  the entity has one);
- leaving ``completed`` clears both;
- re-applying the current status changes nothing.

Applying the same target twice therefore yields the same completion fields as
applying it once.
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, TypeVar

from progress_cascade.core.types import (
    COMPLETED,
    Customer,
    CustomerStatus,
    HierarchyEntity,
    WorkStatus,
)
from progress_cascade.utils.validation import parse_enum

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=HierarchyEntity)


def status_type_for(entity: HierarchyEntity | type[HierarchyEntity]) -> type[WorkStatus] | type[CustomerStatus]:
    cls = entity if isinstance(entity, type) else type(entity)
    return CustomerStatus if issubclass(cls, Customer) else WorkStatus


def parse_status(entity: HierarchyEntity | type[HierarchyEntity], value: Any) -> Any:
    """Coerce raw input to the status type of *entity*.

    Raises:
        ValidationError: naming the allowed set when *value* is unknown
    """
    return parse_enum(status_type_for(entity), value, field="status")


def completion_fields(
    entity: HierarchyEntity,
    new_status: Any,
    actor_id: str | None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Return the field updates a move to *new_status* implies (status included)."""
    target = parse_status(entity, new_status)
    previous = entity.status  # type: ignore[attr-defined]
    updates: dict[str, Any] = {"status": target}
    has_actor = "completed_by" in type(entity).model_fields

    if target == previous:
        return updates
    if target == COMPLETED:
        updates["completed_at"] = now or datetime.now(UTC)
        if has_actor:
            updates["completed_by"] = actor_id
    elif previous == COMPLETED:
        updates["completed_at"] = None
        if has_actor:
            updates["completed_by"] = None
    return updates


def apply_status_transition(
    entity: M,
    new_status: Any,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> M:
    """Return a copy of *entity* moved to *new_status* with consistent completion fields.

    Example:
        ```python
        done = apply_status_transition(subtask, "completed", actor_id="u-7")
        assert done.completed_at is not None and done.completed_by == "u-7"

        reopened = apply_status_transition(done, "in-progress")
        assert reopened.completed_at is None and reopened.completed_by is None
        ```

    Raises:
        ValidationError: If *new_status* is not a valid status for the entity
    """
    updates = completion_fields(entity, new_status, actor_id, now)
    if updates["status"] != entity.status:  # type: ignore[attr-defined]
        logger.debug(
            "%s %s status %s -> %s",
            entity.kind, entity.id, entity.status, updates["status"],  # type: ignore[attr-defined]
        )
    return entity.model_copy(update=updates)


def normalise_completion(entity: M, actor_id: str | None = None, now: datetime | None = None) -> M:
    """Make ``completed_at``/``completed_by`` agree with the current status.

    Used on create, where there is no previous status to transition from.
    """
    has_actor = "completed_by" in type(entity).model_fields
    if entity.status == COMPLETED:  # type: ignore[attr-defined]
        if entity.completed_at is not None:
            return entity
        updates: dict[str, Any] = {"completed_at": now or datetime.now(UTC)}
        if has_actor:
            updates["completed_by"] = actor_id
        return entity.model_copy(update=updates)
    if entity.completed_at is None and not getattr(entity, "completed_by", None):
        return entity
    updates = {"completed_at": None}
    if has_actor:
        updates["completed_by"] = None
    return entity.model_copy(update=updates)


__all__ = [
    "apply_status_transition",
    "completion_fields",
    "normalise_completion",
    "parse_status",
    "status_type_for",
]
