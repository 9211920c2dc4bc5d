"""In-memory repositories for testing and development.

WARNING: data lives in process memory only and is lost on restart.

Each coroutine runs its dict operations without awaiting in between, so a
single write is atomic with respect to other tasks on the same event loop.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from progress_cascade.core.exceptions import (
    ConcurrencyConflictError,
    EntityNotFoundError,
    SequenceConflictError,
    StorageError,
)
from progress_cascade.core.types import Customer, HierarchyEntity, Subtask, Task
from progress_cascade.storage.repository import (
    ENGINE_OWNED_COLUMNS,
    CustomerRepository,
    RepositoryBundle,
    SubtaskRepository,
    TaskRepository,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=HierarchyEntity)


def _matches(entity: HierarchyEntity, filters: dict[str, Any]) -> bool:
    return all(getattr(entity, field) == value for field, value in filters.items())


class _InMemoryStore(Generic[M]):
    """Dictionary-backed implementation shared by the three levels.

    Attributes:
        _items: Dictionary mapping entity id to entity
    """

    def __init__(self, enforce_versioning: bool = True) -> None:
        super().__init__(enforce_versioning=enforce_versioning)  # type: ignore[call-arg]
        self._items: dict[str, M] = {}
        logger.info("Initialized in-memory %s repository", self.kind)  # type: ignore[attr-defined]

    def _check_sequence(self, entity: M) -> None:
        parent_field = self.parent_field  # type: ignore[attr-defined]
        if parent_field is None:
            return
        parent_id = getattr(entity, parent_field)
        for other in self._items.values():
            if (
                other.id != entity.id
                and getattr(other, parent_field) == parent_id
                and other.sequence == entity.sequence  # type: ignore[attr-defined]
            ):
                raise SequenceConflictError(
                    parent_id=parent_id,
                    sequence=entity.sequence,  # type: ignore[attr-defined]
                    conflicting_id=other.id,
                )

    async def get_by_id(self, entity_id: str) -> M:
        if entity_id not in self._items:
            logger.debug("%s not found: %s", self.kind, entity_id)  # type: ignore[attr-defined]
            raise EntityNotFoundError(self.kind, entity_id)  # type: ignore[attr-defined]
        return self._items[entity_id]

    async def exists(self, entity_id: str) -> bool:
        return entity_id in self._items

    async def find(
        self,
        *,
        skip: int = 0,
        limit: int | None = None,
        order_by: str | None = None,
        **filters: Any,
    ) -> list[M]:
        matches = [e for e in self._items.values() if _matches(e, filters)]
        key = order_by or ("sequence" if self.parent_field else "created_at")  # type: ignore[attr-defined]
        matches.sort(key=lambda e: (getattr(e, key), e.created_at))
        end = None if limit is None else skip + limit
        result = matches[skip:end]
        logger.debug("Found %d %s rows for %s", len(result), self.kind, filters)  # type: ignore[attr-defined]
        return result

    async def count(self, **filters: Any) -> int:
        return sum(1 for e in self._items.values() if _matches(e, filters))

    async def create(self, entity: M) -> M:
        if entity.id in self._items:
            raise StorageError("create", f"{self.kind} id {entity.id!r} already exists")  # type: ignore[attr-defined]
        self._check_sequence(entity)
        self._items[entity.id] = entity
        logger.info("Created %s: %s", self.kind, entity.id)  # type: ignore[attr-defined]
        return entity

    async def save(self, entity: M, expected_version: int | None = None) -> M:
        current = await self.get_by_id(entity.id)
        expected = entity.version if expected_version is None else expected_version
        if self.enforce_versioning and current.version != expected:  # type: ignore[attr-defined]
            raise ConcurrencyConflictError(
                self.kind, entity.id, expected, current.version  # type: ignore[attr-defined]
            )
        self._check_sequence(entity)
        kept = {
            name: getattr(current, name)
            for name in ENGINE_OWNED_COLUMNS
            if name in type(entity).model_fields
        }
        stored = entity.model_copy(
            update={**kept, "version": current.version + 1, "updated_at": datetime.now(UTC)}
        )
        self._items[entity.id] = stored
        logger.info("Saved %s %s (version %d)", self.kind, entity.id, stored.version)  # type: ignore[attr-defined]
        return stored

    async def delete(self, entity_id: str) -> M:
        entity = await self.get_by_id(entity_id)
        del self._items[entity_id]
        logger.info("Deleted %s: %s", self.kind, entity_id)  # type: ignore[attr-defined]
        return entity

    async def _set_progress(self, entity_id: str, progress: int) -> M:
        entity = await self.get_by_id(entity_id)
        updated = entity.model_copy(update={"progress": progress})
        self._items[entity_id] = updated
        logger.debug("Set %s %s progress to %d", self.kind, entity_id, progress)  # type: ignore[attr-defined]
        return updated

    def clear(self) -> None:
        """Remove every entity (for tests)."""
        self._items.clear()

    def get_all(self) -> dict[str, M]:
        """Return a copy of the backing dictionary (for tests and debugging)."""
        return self._items.copy()


class InMemoryCustomerRepository(_InMemoryStore[Customer], CustomerRepository):
    async def set_progress(self, entity_id: str, progress: int) -> Customer:
        return await self._set_progress(entity_id, progress)

    async def attach_task(self, customer_id: str, task_id: str) -> Customer:
        customer = await self.get_by_id(customer_id)
        if task_id in customer.task_ids:
            return customer
        updated = customer.model_copy(update={"task_ids": [*customer.task_ids, task_id]})
        self._items[customer_id] = updated
        return updated

    async def detach_task(self, customer_id: str, task_id: str) -> Customer:
        customer = await self.get_by_id(customer_id)
        if task_id not in customer.task_ids:
            return customer
        updated = customer.model_copy(
            update={"task_ids": [t for t in customer.task_ids if t != task_id]}
        )
        self._items[customer_id] = updated
        return updated


class InMemoryTaskRepository(_InMemoryStore[Task], TaskRepository):
    async def set_progress(self, entity_id: str, progress: int) -> Task:
        return await self._set_progress(entity_id, progress)


class InMemorySubtaskRepository(_InMemoryStore[Subtask], SubtaskRepository):
    pass


def create_memory_repositories(enforce_versioning: bool = True) -> RepositoryBundle:
    """Build a :class:`RepositoryBundle` of fresh in-memory repositories."""
    return RepositoryBundle(
        customers=InMemoryCustomerRepository(enforce_versioning=enforce_versioning),
        tasks=InMemoryTaskRepository(enforce_versioning=enforce_versioning),
        subtasks=InMemorySubtaskRepository(enforce_versioning=enforce_versioning),
    )


__all__ = [
    "InMemoryCustomerRepository",
    "InMemorySubtaskRepository",
    "InMemoryTaskRepository",
    "create_memory_repositories",
]
