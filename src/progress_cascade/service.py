"""Write path for the Customer → Task → Subtask hierarchy.

Design decisions
----------------
* ``HierarchyService`` is what controllers call.  It owns the ordering of a
  write: normalise status fields → check sequence uniqueness → persist →
  cascade.  Nothing happens implicitly inside the repositories.

* **Errors.**  Validation, sequence, not-found and version errors are raised
  before anything is persisted.  Once the primary write has succeeded, every
  follow-up (cascade, the Customer's ordered task list, change listeners) is
  best-effort: failures are logged and the write stands.

* **Repositories are injected.**  Use :meth:`HierarchyService.in_memory` for
  tests and :meth:`HierarchyService.open` for a database-backed service::

      async with HierarchyService.open(ProgressConfig()) as service:
          task = await service.create_child("customer", customer.id, {...})
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from progress_cascade.core.config import ProgressConfig
from progress_cascade.core.exceptions import (
    ConcurrencyConflictError,
    EntityNotFoundError,
    ValidationError,
)
from progress_cascade.core.types import (
    CHILD_KIND,
    CascadeResult,
    ChangeAction,
    ChangeEvent,
    Customer,
    DriftReport,
    EntityKind,
    HierarchyEntity,
    RecalculationResult,
    StatusBreakdown,
    Subtask,
    Task,
    WorkStatus,
)
from progress_cascade.engine.cascade import CascadeTrigger
from progress_cascade.engine.progress import compute_progress
from progress_cascade.engine.sequence import SequenceGuard
from progress_cascade.engine.status import (
    apply_status_transition,
    normalise_completion,
    parse_status,
)
from progress_cascade.storage.memory import create_memory_repositories
from progress_cascade.utils.logging import configure_logging
from progress_cascade.utils.validation import (
    assert_valid_progress,
    assert_valid_sequence,
    build_entity,
    parse_enum,
    reject_engine_owned,
    require_fields,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from progress_cascade.core.types import ChangeListener
    from progress_cascade.storage.repository import RepositoryBundle

logger = logging.getLogger(__name__)

_REQUIRED_CHILD_FIELDS = ("title", "due_date")
_IMMUTABLE_FIELDS = frozenset({"id", "created_by", "task_ids"})
# Fields copied onto a duplicate; status, completion data, progress and
# attachments start fresh.
_COPIED_FIELDS = ("title", "description", "priority", "assigned_to", "due_date")


class HierarchyService:
    """Orchestrates writes and progress propagation across the hierarchy.

    Parameters
    ----------
    repositories:
        The Customer/Task/Subtask repositories.
    config:
        Engine settings; defaults to ``ProgressConfig()``.
    listeners:
        Awaitables receiving a :class:`ChangeEvent` after each successful
        write (e.g. an activity-log writer).
    """

    def __init__(
        self,
        repositories: RepositoryBundle,
        config: ProgressConfig | None = None,
        listeners: Iterable[ChangeListener] | None = None,
    ) -> None:
        self.config = config or ProgressConfig()
        self.repositories = repositories
        self.listeners: list[ChangeListener] = list(listeners or [])
        self.cascade = CascadeTrigger(
            repositories, retain_when_empty=self.config.retain_empty_progress
        )
        self.task_sequences = SequenceGuard(repositories.tasks)
        self.subtask_sequences = SequenceGuard(repositories.subtasks)
        logger.info(
            "HierarchyService ready (zero_children_policy=%s auto_sequence=%s cascade=%s)",
            self.config.zero_children_policy,
            self.config.auto_sequence,
            self.config.cascade_enabled,
        )

    @classmethod
    def in_memory(
        cls,
        config: ProgressConfig | None = None,
        listeners: Iterable[ChangeListener] | None = None,
    ) -> HierarchyService:
        """Service backed by fresh in-memory repositories."""
        config = config or ProgressConfig()
        repos = create_memory_repositories(enforce_versioning=config.enforce_versioning)
        return cls(repos, config=config, listeners=listeners)

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        config: ProgressConfig,
        listeners: Iterable[ChangeListener] | None = None,
    ) -> AsyncIterator[HierarchyService]:
        """Yield a service backed by ``config.database_url``; dispose the engine on exit."""
        from progress_cascade.storage.sql import SQLAlchemyDatabase

        configure_logging(config.log_level)
        db = SQLAlchemyDatabase.from_config(config)
        await db.initialize()
        try:
            yield cls(db.repositories(), config=config, listeners=listeners)
        finally:
            await db.close()

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _emit(
        self,
        kind: EntityKind,
        entity_id: str,
        action: ChangeAction,
        actor_id: str | None = None,
        changes: Mapping[str, Any] | None = None,
    ) -> None:
        if not self.listeners:
            return
        event = ChangeEvent(
            entity_kind=kind,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            changes=dict(changes or {}),
        )
        for listener in self.listeners:
            try:
                await listener(event)
            except Exception:
                logger.warning(
                    "Change listener %r failed for %s %s %s",
                    listener, action, kind, entity_id, exc_info=True,
                )

    async def _propagate(self, kind: EntityKind, child: str | HierarchyEntity) -> CascadeResult | None:
        if not self.config.cascade_enabled:
            return None
        return await self.cascade.on_child_written(kind, child)

    async def _link_task(self, customer_id: str, task_id: str, attach: bool) -> None:
        customers = self.repositories.customers
        try:
            if attach:
                await customers.attach_task(customer_id, task_id)
            else:
                await customers.detach_task(customer_id, task_id)
        except Exception:
            logger.warning(
                "Could not %s task %s %s customer %s",
                "attach" if attach else "detach", task_id,
                "to" if attach else "from", customer_id, exc_info=True,
            )

    def _guard(self, kind: EntityKind) -> SequenceGuard:
        return self.task_sequences if kind == EntityKind.TASK else self.subtask_sequences

    async def _resolve_sequence(
        self,
        kind: EntityKind,
        parent_id: str,
        raw: Any,
        exclude_entity_id: str | None = None,
    ) -> int:
        guard = self._guard(kind)
        if raw is None:
            if not self.config.auto_sequence:
                raise ValidationError("sequence", "is required")
            return await guard.next_sequence(parent_id)
        sequence = assert_valid_sequence(raw)
        await guard.validate_sequence(parent_id, sequence, exclude_entity_id)
        return sequence

    @staticmethod
    def _child_kind(kind: Any) -> EntityKind:
        child = parse_enum(EntityKind, kind, field="child_kind")
        if child == EntityKind.CUSTOMER:
            raise ValidationError(
                "child_kind", "must be a task or subtask", allowed=["task", "subtask"]
            )
        return child

    @staticmethod
    def _reject_unknown(model: type[HierarchyEntity], changes: Mapping[str, Any]) -> None:
        for name in changes:
            if name not in model.model_fields:
                raise ValidationError(name, f"is not a {model.__name__} field")

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get(self, kind: EntityKind | str, entity_id: str) -> Any:
        """Return the entity of *kind* with *entity_id* (EntityNotFoundError if missing)."""
        kind = parse_enum(EntityKind, kind, field="kind")
        return await self.repositories.for_kind(kind).get_by_id(entity_id)

    async def list_children(
        self,
        parent_kind: EntityKind | str,
        parent_id: str,
        status: WorkStatus | str | None = None,
    ) -> list[Any]:
        """Return a parent's children ordered by sequence, optionally filtered by status."""
        parent_kind = parse_enum(EntityKind, parent_kind, field="parent_kind")
        if parent_kind not in CHILD_KIND:
            raise ValidationError("parent_kind", "subtasks have no children")
        await self.get(parent_kind, parent_id)

        child_kind = CHILD_KIND[parent_kind]
        repo = self.repositories.for_kind(child_kind)
        filters: dict[str, Any] = {repo.parent_field: parent_id}  # type: ignore[dict-item]
        if status is not None:
            filters["status"] = parse_enum(WorkStatus, status)
        return await repo.find(order_by="sequence", **filters)

    async def status_breakdown(self, parent_kind: EntityKind | str, parent_id: str) -> StatusBreakdown:
        """Count a parent's children per status and derive the progress they imply."""
        parent_kind = parse_enum(EntityKind, parent_kind, field="parent_kind")
        if parent_kind not in CHILD_KIND:
            raise ValidationError("parent_kind", "subtasks have no children")
        parent = await self.get(parent_kind, parent_id)

        repo = self.repositories.for_kind(CHILD_KIND[parent_kind])
        by_status = {}
        for status in WorkStatus:
            by_status[status.value] = await repo.count(
                **{repo.parent_field: parent_id, "status": status}  # type: ignore[dict-item]
            )
        total = sum(by_status.values())
        progress = compute_progress(
            total,
            by_status[WorkStatus.COMPLETED.value],
            stored_progress=parent.progress,
            retain_when_empty=self.config.retain_empty_progress,
        )
        return StatusBreakdown(
            parent_kind=parent_kind,
            parent_id=parent_id,
            total=total,
            by_status=by_status,
            progress=progress,
        )

    # ── Customers ─────────────────────────────────────────────────────────────

    async def create_customer(self, data: Mapping[str, Any], actor_id: str | None = None) -> Customer:
        """Create a Customer.  ``progress`` and ``task_ids`` are engine-owned."""
        data = dict(data)
        reject_engine_owned(data)
        if "task_ids" in data:
            raise ValidationError("task_ids", "is maintained by the engine and cannot be set directly")
        self._reject_unknown(Customer, data)
        require_fields(data, ("name", "due_date"))
        if "status" in data:
            data["status"] = parse_status(Customer, data["status"])
        data.setdefault("created_by", actor_id)

        customer = normalise_completion(build_entity(Customer, data))
        customer = await self.repositories.customers.create(customer)
        await self._emit(EntityKind.CUSTOMER, customer.id, ChangeAction.CREATED, actor_id)
        return customer

    async def update_customer_status(
        self,
        customer_id: str,
        new_status: Any,
        actor_id: str | None = None,
        expected_version: int | None = None,
    ) -> Customer:
        """Move a Customer to *new_status*, keeping ``completed_at`` consistent."""
        customers = self.repositories.customers
        customer = await customers.get_by_id(customer_id)
        previous = customer.status
        updated = apply_status_transition(customer, new_status, actor_id)
        saved = await customers.save(updated, expected_version=expected_version)
        if saved.status != previous:
            await self._emit(
                EntityKind.CUSTOMER, customer_id, ChangeAction.STATUS_CHANGED, actor_id,
                {"status": [previous.value, saved.status.value]},
            )
        return saved

    # ── Child creation ────────────────────────────────────────────────────────

    async def create_child(
        self,
        parent_kind: EntityKind | str,
        parent_id: str,
        child_data: Mapping[str, Any],
        actor_id: str | None = None,
    ) -> Task | Subtask:
        """Create a Task under a Customer or a Subtask under a Task.

        Raises:
            ValidationError: Missing title/due date, bad status or sequence
            SequenceConflictError: The sequence is taken among siblings
            EntityNotFoundError: The parent is missing, or a supplied
                ``customer_id`` does not own the parent Task
        """
        kind = parse_enum(EntityKind, parent_kind, field="parent_kind")
        if kind == EntityKind.CUSTOMER:
            return await self._create_task(parent_id, child_data, actor_id)
        if kind == EntityKind.TASK:
            return await self._create_subtask(parent_id, child_data, actor_id)
        raise ValidationError("parent_kind", "subtasks cannot have children", allowed=["customer", "task"])

    def _prepare_child_data(self, model: type[HierarchyEntity], child_data: Mapping[str, Any]) -> dict[str, Any]:
        data = dict(child_data)
        reject_engine_owned(data)
        self._reject_unknown(model, data)
        require_fields(data, _REQUIRED_CHILD_FIELDS)
        data["status"] = parse_status(model, data.get("status", WorkStatus.PENDING))
        return data

    async def _create_task(self, customer_id: str, child_data: Mapping[str, Any], actor_id: str | None) -> Task:
        data = self._prepare_child_data(Task, child_data)
        supplied = data.pop("customer_id", None)
        if supplied is not None and supplied != customer_id:
            raise EntityNotFoundError(
                "customer", customer_id, details={"reason": "does not match customer_id", "customer_id": supplied}
            )
        await self.repositories.customers.get_by_id(customer_id)

        data["sequence"] = await self._resolve_sequence(EntityKind.TASK, customer_id, data.get("sequence"))
        data["customer_id"] = customer_id
        data.setdefault("created_by", actor_id)
        task = normalise_completion(build_entity(Task, data), actor_id)

        task = await self.repositories.tasks.create(task)
        await self._link_task(customer_id, task.id, attach=True)
        await self._emit(EntityKind.TASK, task.id, ChangeAction.CREATED, actor_id)
        await self._propagate(EntityKind.TASK, task)
        return task

    async def _create_subtask(self, task_id: str, child_data: Mapping[str, Any], actor_id: str | None) -> Subtask:
        data = self._prepare_child_data(Subtask, child_data)
        task = await self.repositories.tasks.get_by_id(task_id)
        supplied = data.pop("customer_id", None)
        if supplied is not None and supplied != task.customer_id:
            raise EntityNotFoundError(
                "task", task_id, details={"reason": "does not belong to customer", "customer_id": supplied}
            )
        data.pop("task_id", None)

        data["sequence"] = await self._resolve_sequence(EntityKind.SUBTASK, task_id, data.get("sequence"))
        data["task_id"] = task_id
        data["customer_id"] = task.customer_id
        data.setdefault("created_by", actor_id)
        subtask = normalise_completion(build_entity(Subtask, data), actor_id)

        subtask = await self.repositories.subtasks.create(subtask)
        await self._emit(EntityKind.SUBTASK, subtask.id, ChangeAction.CREATED, actor_id)
        await self._propagate(EntityKind.SUBTASK, subtask)
        return subtask

    # ── Child updates ─────────────────────────────────────────────────────────

    async def update_child(
        self,
        child_kind: EntityKind | str,
        child_id: str,
        changes: Mapping[str, Any],
        actor_id: str | None = None,
        expected_version: int | None = None,
    ) -> Task | Subtask:
        """Apply field *changes* to a Task or Subtask.

        Changing the parent reference (``customer_id`` for a Task, ``task_id``
        for a Subtask) moves the entity; its sequence is then checked against
        the new parent's children.  A move without an explicit ``sequence``
        appends at the end when ``auto_sequence`` is on.

        Raises:
            ValidationError: Engine-owned or unknown fields, bad values
            SequenceConflictError: The sequence is taken under the (new) parent
            EntityNotFoundError: The entity or the new parent is missing
            ConcurrencyConflictError: *expected_version* is stale
        """
        kind = self._child_kind(child_kind)
        model: type[HierarchyEntity] = Task if kind == EntityKind.TASK else Subtask
        repo = self.repositories.for_kind(kind)
        parent_field = repo.parent_field

        changes = dict(changes)
        reject_engine_owned(changes)
        self._reject_unknown(model, changes)
        blocked = sorted(_IMMUTABLE_FIELDS.intersection(changes))
        if blocked:
            raise ValidationError(blocked[0], "cannot be changed")
        if kind == EntityKind.SUBTASK and "customer_id" in changes:
            raise ValidationError("customer_id", "follows the owning task; move the subtask instead")

        entity = await repo.get_by_id(child_id)
        if expected_version is not None and entity.version != expected_version:
            raise ConcurrencyConflictError(kind, child_id, expected_version, entity.version)

        old_parent = getattr(entity, parent_field)
        new_parent = changes.pop(parent_field, None)
        moved = new_parent is not None and new_parent != old_parent
        updates: dict[str, Any] = {}

        if moved:
            if kind == EntityKind.SUBTASK:
                target = await self.repositories.tasks.get_by_id(new_parent)
                updates["task_id"] = new_parent
                updates["customer_id"] = target.customer_id
            else:
                await self.repositories.customers.get_by_id(new_parent)
                updates["customer_id"] = new_parent
        parent_id = new_parent if moved else old_parent

        raw_sequence = changes.pop("sequence", None)
        if raw_sequence is not None:
            sequence = assert_valid_sequence(raw_sequence)
            if moved or sequence != entity.sequence:
                await self._guard(kind).validate_sequence(parent_id, sequence, entity.id)
                updates["sequence"] = sequence
        elif moved:
            if self.config.auto_sequence:
                updates["sequence"] = await self._guard(kind).next_sequence(parent_id)
            else:
                await self._guard(kind).validate_sequence(parent_id, entity.sequence, entity.id)

        status_requested = "status" in changes
        raw_status = changes.pop("status", None)
        updates.update(changes)
        candidate = build_entity(model, {**entity.model_dump(), **updates})
        if status_requested:
            candidate = apply_status_transition(candidate, raw_status, actor_id)

        saved = await repo.save(candidate, expected_version=expected_version)
        status_changed = saved.status != entity.status
        sequence_changed = saved.sequence != entity.sequence
        logger.info("Updated %s %s (moved=%s status_changed=%s)", kind, child_id, moved, status_changed)

        diff = {
            name: [getattr(entity, name), getattr(saved, name)]
            for name in (*updates, "status")
            if getattr(entity, name) != getattr(saved, name)
        }
        if moved:
            action = ChangeAction.MOVED
        elif status_changed and len(diff) == 1:
            action = ChangeAction.STATUS_CHANGED
        else:
            action = ChangeAction.UPDATED
        await self._emit(kind, child_id, action, actor_id, {k: [str(v) for v in pair] for k, pair in diff.items()})

        if kind == EntityKind.TASK and moved:
            await self._link_task(old_parent, child_id, attach=False)
            await self._link_task(new_parent, child_id, attach=True)
            await self._resync_subtask_customers(child_id, new_parent)
            if self.config.cascade_enabled:
                await self.cascade.propagate_from_customer(old_parent, kind, child_id)
        elif kind == EntityKind.SUBTASK and moved and self.config.cascade_enabled:
            await self.cascade.propagate_from_task(old_parent, kind, child_id)

        if moved or status_changed or sequence_changed:
            await self._propagate(kind, saved)
        return saved

    async def _resync_subtask_customers(self, task_id: str, customer_id: str) -> None:
        subtasks = self.repositories.subtasks
        for subtask in await subtasks.find(task_id=task_id):
            if subtask.customer_id == customer_id:
                continue
            try:
                await subtasks.save(subtask.model_copy(update={"customer_id": customer_id}))
            except Exception:
                logger.warning(
                    "Could not update customer reference of subtask %s", subtask.id, exc_info=True
                )

    async def update_child_status(
        self,
        child_kind: EntityKind | str,
        child_id: str,
        new_status: Any,
        actor_id: str | None = None,
        expected_version: int | None = None,
    ) -> Task | Subtask:
        """Move a Task or Subtask to *new_status* and propagate progress.

        Raises:
            ValidationError: *new_status* is not pending, in-progress,
                completed or cancelled
            EntityNotFoundError: The entity does not exist
        """
        return await self.update_child(
            child_kind, child_id, {"status": new_status},
            actor_id=actor_id, expected_version=expected_version,
        )

    async def move_subtask(
        self,
        subtask_id: str,
        new_task_id: str,
        sequence: int | None = None,
        actor_id: str | None = None,
    ) -> Subtask:
        """Re-parent a Subtask under *new_task_id* (possibly of another Customer)."""
        changes: dict[str, Any] = {"task_id": new_task_id}
        if sequence is not None:
            changes["sequence"] = sequence
        return await self.update_child(EntityKind.SUBTASK, subtask_id, changes, actor_id)  # type: ignore[return-value]

    async def move_task(
        self,
        task_id: str,
        new_customer_id: str,
        sequence: int | None = None,
        actor_id: str | None = None,
    ) -> Task:
        """Re-parent a Task (and, by composition, its Subtasks) under another Customer."""
        changes: dict[str, Any] = {"customer_id": new_customer_id}
        if sequence is not None:
            changes["sequence"] = sequence
        return await self.update_child(EntityKind.TASK, task_id, changes, actor_id)  # type: ignore[return-value]

    async def set_manual_progress(self, task_id: str, progress: int, actor_id: str | None = None) -> Task:
        """Set the progress of a Task that has no Subtasks.

        Raises:
            ValidationError: *progress* is out of range, or the Task has
                Subtasks (its progress is derived from them)
        """
        assert_valid_progress(progress)
        task = await self.repositories.tasks.get_by_id(task_id)
        if await self.repositories.subtasks.count(task_id=task_id):
            raise ValidationError("progress", "is derived from the task's subtasks")
        saved = await self.repositories.tasks.set_progress(task_id, progress)
        await self._emit(
            EntityKind.TASK, task_id, ChangeAction.UPDATED, actor_id,
            {"progress": [str(task.progress), str(progress)]},
        )
        return saved

    # ── Deletion ──────────────────────────────────────────────────────────────

    async def delete_child(
        self,
        child_kind: EntityKind | str,
        child_id: str,
        actor_id: str | None = None,
    ) -> None:
        """Delete a Task (with its Subtasks) or a Subtask, then propagate.

        Raises:
            EntityNotFoundError: The entity does not exist
        """
        kind = self._child_kind(child_kind)
        if kind == EntityKind.SUBTASK:
            removed = await self.repositories.subtasks.delete(child_id)
            await self._emit(kind, child_id, ChangeAction.DELETED, actor_id)
            await self._propagate(kind, removed)
            return

        task = await self.repositories.tasks.get_by_id(child_id)
        orphans = await self.repositories.subtasks.delete_where(task_id=child_id)
        removed = await self.repositories.tasks.delete(child_id)
        logger.info("Deleted task %s with %d subtasks", child_id, len(orphans))
        await self._link_task(task.customer_id, child_id, attach=False)
        await self._emit(kind, child_id, ChangeAction.DELETED, actor_id, {"subtasks_removed": len(orphans)})
        await self._propagate(kind, removed)

    # ── Copies ────────────────────────────────────────────────────────────────

    async def copy_subtask(self, subtask_id: str, target_task_id: str, actor_id: str | None = None) -> Subtask:
        """Duplicate a Subtask at the end of *target_task_id* as a fresh ``pending`` item."""
        source = await self.repositories.subtasks.get_by_id(subtask_id)
        data = {name: getattr(source, name) for name in _COPIED_FIELDS}
        data["sequence"] = await self.subtask_sequences.next_sequence(target_task_id)
        return await self._create_subtask(target_task_id, data, actor_id)

    async def copy_task(
        self,
        task_id: str,
        target_customer_id: str | None = None,
        actor_id: str | None = None,
    ) -> Task:
        """Duplicate a Task (without Subtasks) at the end of a Customer's list."""
        source = await self.repositories.tasks.get_by_id(task_id)
        customer_id = target_customer_id or source.customer_id
        data = {name: getattr(source, name) for name in _COPIED_FIELDS}
        data["sequence"] = await self.task_sequences.next_sequence(customer_id)
        return await self._create_task(customer_id, data, actor_id)

    # ── Repair ────────────────────────────────────────────────────────────────

    async def recalculate_subtree(
        self,
        root_kind: EntityKind | str,
        root_id: str,
        actor_id: str | None = None,
    ) -> RecalculationResult:
        """Operator repair action: recompute all progress under a Customer or Task."""
        kind = parse_enum(EntityKind, root_kind, field="root_kind")
        result = await self.cascade.recalculate_subtree(kind, root_id)
        if result.changed:
            await self._emit(
                kind, root_id, ChangeAction.PROGRESS_RECALCULATED, actor_id,
                {"updated_progress": result.updated_progress},
            )
        return result

    async def recalculate_all(self) -> list[RecalculationResult]:
        return await self.cascade.recalculate_all()

    async def detect_drift(self, root_kind: EntityKind | str, root_id: str) -> list[DriftReport]:
        kind = parse_enum(EntityKind, root_kind, field="root_kind")
        return await self.cascade.detect_drift(kind, root_id)


__all__ = ["HierarchyService"]
