"""Core types, protocols, and data models for progress-cascade.

Entities are frozen pydantic models.  Every change produces a new instance via
``model_copy(update={...})``; repositories persist whole instances.

Status values are closed ``StrEnum`` types so an unknown status can only exist
as raw input, never on a constructed entity.
"""
from __future__ import annotations

import math
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, ClassVar, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class EntityKind(StrEnum):
    """Level of an entity within the hierarchy."""
    CUSTOMER = "customer"
    TASK = "task"
    SUBTASK = "subtask"


class WorkStatus(StrEnum):
    """Lifecycle status of a Task or Subtask."""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CustomerStatus(StrEnum):
    """Lifecycle status of a Customer."""
    PLANNING = "planning"
    ACTIVE = "active"
    ON_HOLD = "on-hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Priority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class ChangeAction(StrEnum):
    """Kinds of state change reported to change listeners."""
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    MOVED = "moved"
    DELETED = "deleted"
    PROGRESS_RECALCULATED = "progress_recalculated"


COMPLETED = "completed"
TERMINAL_STATUSES = ("completed", "cancelled")


class HierarchyEntity(BaseModel):
    """Fields and helpers shared by Customer, Task and Subtask.

    ``version`` is the optimistic-concurrency token for non-progress fields.
    Repositories bump it on every full save; progress-only writes leave it
    untouched so a cascade never invalidates an editor's token.
    """

    model_config = ConfigDict(frozen=True)

    kind: ClassVar[EntityKind]

    id: str = Field(default_factory=_new_id, min_length=1, max_length=255)
    priority: Priority = Field(default=Priority.NORMAL)
    due_date: datetime = Field(..., description="Due date (required)")
    completed_at: datetime | None = Field(default=None)
    created_by: str | None = Field(default=None, description="Actor that created the entity")
    version: int = Field(default=1, ge=1, description="Optimistic concurrency token")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("due_date", "completed_at", "created_at", "updated_at")
    @classmethod
    def _normalise_timezone(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HierarchyEntity):
            return NotImplemented
        return type(self) is type(other) and self.id == other.id

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.id))

    def is_completed(self) -> bool:
        return self.status == COMPLETED  # type: ignore[attr-defined]

    def is_overdue(self, now: datetime | None = None) -> bool:
        """Return True if the due date has passed and the entity is still open."""
        if self.status in TERMINAL_STATUSES:  # type: ignore[attr-defined]
            return False
        return (_as_utc(now) or _utcnow()) > self.due_date

    def days_remaining(self, now: datetime | None = None) -> int:
        """Whole days until the due date (negative once overdue, 0 once closed)."""
        if self.status in TERMINAL_STATUSES:  # type: ignore[attr-defined]
            return 0
        delta = self.due_date - (_as_utc(now) or _utcnow())
        return math.ceil(delta.total_seconds() / 86400)


class Customer(HierarchyEntity):
    """Top-level work container.

    ``progress`` is owned by the cascade trigger; callers never write it.

    Example
    -------
    .. code-block:: python

        customer = Customer(name="Acme rollout", due_date=datetime(2026, 12, 1, tzinfo=UTC))
        paused = customer.model_copy(update={"status": CustomerStatus.ON_HOLD})
    """

    kind: ClassVar[EntityKind] = EntityKind.CUSTOMER

    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    status: CustomerStatus = Field(default=CustomerStatus.PLANNING)
    start_date: datetime = Field(default_factory=_utcnow)
    progress: int = Field(default=0, ge=0, le=100)
    task_ids: list[str] = Field(default_factory=list, description="Ordered child Task ids")
    tags: list[str] = Field(default_factory=list)

    @field_validator("start_date")
    @classmethod
    def _normalise_start(cls, v: datetime) -> datetime:
        return _as_utc(v)  # type: ignore[return-value]

    def days_remaining(self, now: datetime | None = None) -> int:
        return max(0, super().days_remaining(now))


class Task(HierarchyEntity):
    """Mid-level unit of work owned by exactly one Customer."""

    kind: ClassVar[EntityKind] = EntityKind.TASK

    customer_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=1000)
    status: WorkStatus = Field(default=WorkStatus.PENDING)
    sequence: int = Field(..., ge=1)
    progress: int = Field(default=0, ge=0, le=100)
    completed_by: str | None = Field(default=None)
    assigned_to: list[str] = Field(default_factory=list)
    attachments: list[dict[str, Any]] = Field(
        default_factory=list, description="Opaque attachment metadata"
    )

    @property
    def parent_id(self) -> str:
        return self.customer_id


class Subtask(HierarchyEntity):
    """Leaf unit of work owned by exactly one Task.

    ``customer_id`` is a denormalised back-reference kept equal to the owning
    Task's ``customer_id``; cascades never route through it.
    """

    kind: ClassVar[EntityKind] = EntityKind.SUBTASK

    task_id: str = Field(..., min_length=1)
    customer_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=1000)
    status: WorkStatus = Field(default=WorkStatus.PENDING)
    sequence: int = Field(..., ge=1)
    completed_by: str | None = Field(default=None)
    assigned_to: list[str] = Field(default_factory=list)
    attachments: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def parent_id(self) -> str:
        return self.task_id


ENTITY_TYPES: dict[EntityKind, type[HierarchyEntity]] = {
    EntityKind.CUSTOMER: Customer,
    EntityKind.TASK: Task,
    EntityKind.SUBTASK: Subtask,
}

CHILD_KIND: dict[EntityKind, EntityKind] = {
    EntityKind.CUSTOMER: EntityKind.TASK,
    EntityKind.TASK: EntityKind.SUBTASK,
}


class ChangeEvent(BaseModel):
    """Immutable record of a state change, handed to change listeners."""

    model_config = ConfigDict(frozen=True)

    entity_kind: EntityKind
    entity_id: str = Field(..., min_length=1)
    action: ChangeAction
    actor_id: str | None = Field(default=None)
    changes: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


@runtime_checkable
class ChangeListener(Protocol):
    """Anything awaitable with a :class:`ChangeEvent` (e.g. an activity log writer)."""

    async def __call__(self, event: ChangeEvent) -> None:
        ...


class SequenceCheck(BaseModel):
    """Outcome of a sequence uniqueness check."""

    model_config = ConfigDict(frozen=True)

    parent_id: str
    sequence: int
    ok: bool
    conflicting_id: str | None = None


class CascadeResult(BaseModel):
    """What a single cascade run recomputed, and whether it finished."""

    model_config = ConfigDict(frozen=True)

    child_kind: EntityKind
    child_id: str
    task_id: str | None = None
    task_progress: int | None = None
    customer_id: str | None = None
    customer_progress: int | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class RecalculationResult(BaseModel):
    """Result of a full resync of a subtree."""

    model_config = ConfigDict(frozen=True)

    root_kind: EntityKind
    root_id: str
    total_recalculated: int = Field(default=0, ge=0)
    changed: int = Field(default=0, ge=0)
    updated_progress: dict[str, int] = Field(default_factory=dict)


class DriftReport(BaseModel):
    """A stored progress value that no longer matches its children."""

    model_config = ConfigDict(frozen=True)

    entity_kind: EntityKind
    entity_id: str
    stored_progress: int
    expected_progress: int
    total_children: int
    completed_children: int


class StatusBreakdown(BaseModel):
    """Children of one parent counted by status."""

    model_config = ConfigDict(frozen=True)

    parent_kind: EntityKind
    parent_id: str
    total: int = Field(default=0, ge=0)
    by_status: dict[str, int] = Field(default_factory=dict)
    progress: int = Field(default=0, ge=0, le=100)


__all__ = [
    "CHILD_KIND",
    "COMPLETED",
    "ENTITY_TYPES",
    "TERMINAL_STATUSES",
    "CascadeResult",
    "ChangeAction",
    "ChangeEvent",
    "ChangeListener",
    "Customer",
    "CustomerStatus",
    "DriftReport",
    "EntityKind",
    "HierarchyEntity",
    "Priority",
    "RecalculationResult",
    "SequenceCheck",
    "StatusBreakdown",
    "Subtask",
    "Task",
    "WorkStatus",
]
