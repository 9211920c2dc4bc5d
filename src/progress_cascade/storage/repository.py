"""Abstract repository interfaces for the Customer → Task → Subtask store.

Each level gets its own repository so the engine receives exactly the
collaborators it needs, injected explicitly, instead of looking entity
classes up by name at runtime.

The interface mirrors a document store keyed by entity id with filterable
secondary fields (parent id, status, sequence):

- ``get_by_id`` / ``find`` / ``count`` - reads
- ``create`` / ``save`` - full writes, guarded by the ``version`` token
- ``set_progress`` - progress-only write used by the cascade trigger
- ``delete`` - find-one-and-delete, returns the removed entity

``save`` never writes ``ENGINE_OWNED_COLUMNS``: ``progress`` belongs to the
cascade trigger and ``task_ids`` to ``attach_task``/``detach_task``, and
neither bumps ``version``, so a full save keeps the stored values.

Implementations:
- InMemory*Repository: testing and development
- SQLAlchemy*Repository: PostgreSQL / SQLite / MySQL via async SQLAlchemy
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from progress_cascade.core.types import (
    Customer,
    EntityKind,
    HierarchyEntity,
    Subtask,
    Task,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

M = TypeVar("M", bound=HierarchyEntity)

ENGINE_OWNED_COLUMNS = ("progress", "task_ids")


class EntityRepository(ABC, Generic[M]):
    """Abstract base class for one level of the hierarchy.

    Example:
        ```python
        repo = InMemorySubtaskRepository()

        subtask = await repo.create(Subtask(task_id="t1", customer_id="c1",
                                            title="Wire up", sequence=1,
                                            due_date=due))
        siblings = await repo.find(task_id="t1")
        done = await repo.count(task_id="t1", status=WorkStatus.COMPLETED)

        # Full save: bumps version, raises ConcurrencyConflictError when stale
        edited = await repo.save(subtask.model_copy(update={"title": "Wire up API"}))

        # Progress-only write (no version bump) is only offered where progress exists
        removed = await repo.delete(subtask.id)
        ```
    """

    kind: ClassVar[EntityKind]
    parent_field: ClassVar[str | None] = None

    def __init__(self, enforce_versioning: bool = True) -> None:
        self.enforce_versioning = enforce_versioning

    @abstractmethod
    async def get_by_id(self, entity_id: str) -> M:
        """Return the entity with *entity_id*.

        Raises:
            EntityNotFoundError: If no such entity exists
        """

    @abstractmethod
    async def exists(self, entity_id: str) -> bool:
        """Return True if an entity with *entity_id* exists."""

    @abstractmethod
    async def find(
        self,
        *,
        skip: int = 0,
        limit: int | None = None,
        order_by: str | None = None,
        **filters: Any,
    ) -> list[M]:
        """Return entities whose fields equal every value in *filters*.

        Args:
            skip: Number of matches to skip
            limit: Maximum number of matches (None = all)
            order_by: Field to sort by; defaults to ``sequence`` for child
                levels and ``created_at`` for customers
            **filters: Field-equality filters, e.g. ``task_id="t1"``
        """

    @abstractmethod
    async def count(self, **filters: Any) -> int:
        """Count entities matching the field-equality *filters*."""

    @abstractmethod
    async def create(self, entity: M) -> M:
        """Insert a new entity.

        Raises:
            SequenceConflictError: If a sibling already holds the sequence
            StorageError: If an entity with the same id exists or the backend fails
        """

    @abstractmethod
    async def save(self, entity: M, expected_version: int | None = None) -> M:
        """Persist the caller-owned fields of an existing entity.

        ``progress`` and ``task_ids`` keep their stored values and are
        returned as stored.

        The stored version must equal *expected_version* (or ``entity.version``
        when omitted); the saved copy carries ``version + 1``.

        Raises:
            EntityNotFoundError: If the entity does not exist
            ConcurrencyConflictError: If the stored version differs
            SequenceConflictError: If the new sequence collides with a sibling
        """

    @abstractmethod
    async def delete(self, entity_id: str) -> M:
        """Remove and return the entity.

        Raises:
            EntityNotFoundError: If the entity does not exist
        """

    async def delete_where(self, **filters: Any) -> list[M]:
        """Remove every entity matching *filters* and return them.

        Default implementation deletes one at a time.
        """
        removed = []
        for entity in await self.find(**filters):
            removed.append(await self.delete(entity.id))
        return removed

    async def max_sequence(self, parent_id: str) -> int:
        """Return the highest sequence under *parent_id* (0 when there are none)."""
        if self.parent_field is None:
            raise NotImplementedError(f"{self.kind} entities have no sequence")
        siblings = await self.find(**{self.parent_field: parent_id})
        return max((s.sequence for s in siblings), default=0)  # type: ignore[attr-defined]

    async def get_by_ids(self, entity_ids: Iterable[str]) -> list[M]:
        """Return the entities that exist among *entity_ids* (missing ids skipped)."""
        found = []
        for entity_id in entity_ids:
            if await self.exists(entity_id):
                found.append(await self.get_by_id(entity_id))
        return found


class ProgressRepository(EntityRepository[M]):
    """Repository for levels that carry a derived ``progress`` field."""

    @abstractmethod
    async def set_progress(self, entity_id: str, progress: int) -> M:
        """Write ``progress`` only, bypassing version and field validation.

        Last writer wins; ``version`` is left unchanged.

        Raises:
            EntityNotFoundError: If the entity does not exist
        """


class CustomerRepository(ProgressRepository[Customer]):
    kind: ClassVar[EntityKind] = EntityKind.CUSTOMER

    @abstractmethod
    async def attach_task(self, customer_id: str, task_id: str) -> Customer:
        """Append *task_id* to the customer's ordered task list (no-op if present)."""

    @abstractmethod
    async def detach_task(self, customer_id: str, task_id: str) -> Customer:
        """Remove *task_id* from the customer's task list (no-op if absent)."""


class TaskRepository(ProgressRepository[Task]):
    kind: ClassVar[EntityKind] = EntityKind.TASK
    parent_field: ClassVar[str | None] = "customer_id"


class SubtaskRepository(EntityRepository[Subtask]):
    kind: ClassVar[EntityKind] = EntityKind.SUBTASK
    parent_field: ClassVar[str | None] = "task_id"


@dataclass(frozen=True)
class RepositoryBundle:
    """The three repositories the engine works against."""

    customers: CustomerRepository
    tasks: TaskRepository
    subtasks: SubtaskRepository

    def for_kind(self, kind: EntityKind | str) -> EntityRepository[Any]:
        kind = EntityKind(kind)
        if kind == EntityKind.CUSTOMER:
            return self.customers
        if kind == EntityKind.TASK:
            return self.tasks
        return self.subtasks


__all__ = [
    "ENGINE_OWNED_COLUMNS",
    "CustomerRepository",
    "EntityRepository",
    "ProgressRepository",
    "RepositoryBundle",
    "SubtaskRepository",
    "TaskRepository",
]
