"""Upward progress propagation.

Design decisions
----------------
* **Explicit calls, not persistence hooks.**  The write path calls
  :meth:`CascadeTrigger.on_child_written` after a successful child write, so
  every cross-entity write is visible at the call site and testable.

* **Counts, never deltas.**  Each step re-reads total and completed counts
  from the store.  Two cascades racing on siblings of the same Task may both
  write; the last writer wins and any later write or a
  :meth:`recalculate_subtree` converges on the right value.

* **Ordering.**  The Task's new progress is written before the Customer step
  counts Tasks, within one cascade.

* **Routing.**  A Subtask's Customer is always resolved through its Task; the
  denormalised ``Subtask.customer_id`` is never used here.

* **Failure policy.**  The child write has already succeeded when a cascade
  runs.  A failing step is logged as a :class:`CascadeFailureError` and
  reported on the returned :class:`CascadeResult`; nothing is re-raised and
  nothing is rolled back.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from progress_cascade.core.exceptions import CascadeFailureError, ValidationError
from progress_cascade.core.types import (
    CascadeResult,
    DriftReport,
    EntityKind,
    HierarchyEntity,
    RecalculationResult,
    WorkStatus,
)
from progress_cascade.engine.progress import compute_progress

if TYPE_CHECKING:
    from progress_cascade.storage.repository import (
        EntityRepository,
        ProgressRepository,
        RepositoryBundle,
    )

logger = logging.getLogger(__name__)


class CascadeTrigger:
    """Recomputes Task and Customer progress from their children.

    Parameters
    ----------
    repositories:
        The Customer/Task/Subtask repositories to read counts from and write
        progress to.
    retain_when_empty:
        Whether a parent with no children keeps its stored progress (True) or
        is reset to 0 (False).
    """

    def __init__(self, repositories: RepositoryBundle, retain_when_empty: bool = True) -> None:
        self.repositories = repositories
        self.retain_when_empty = retain_when_empty

    # ── Single steps ──────────────────────────────────────────────────────────

    async def _counts(self, children: EntityRepository, parent_field: str, parent_id: str) -> tuple[int, int]:
        total = await children.count(**{parent_field: parent_id})
        completed = await children.count(
            **{parent_field: parent_id, "status": WorkStatus.COMPLETED}
        )
        return total, completed

    async def _recompute(
        self,
        parents: ProgressRepository,
        children: EntityRepository,
        parent_field: str,
        parent_id: str,
    ) -> tuple[HierarchyEntity, int, int, int]:
        parent = await parents.get_by_id(parent_id)
        total, completed = await self._counts(children, parent_field, parent_id)
        progress = compute_progress(
            total,
            completed,
            stored_progress=parent.progress,  # type: ignore[attr-defined]
            retain_when_empty=self.retain_when_empty,
        )
        if progress != parent.progress:  # type: ignore[attr-defined]
            parent = await parents.set_progress(parent_id, progress)
            logger.info(
                "Updated %s %s progress to %d%% (%d/%d completed)",
                parents.kind, parent_id, progress, completed, total,
            )
        return parent, progress, total, completed

    async def recompute_task(self, task_id: str) -> tuple[Any, int]:
        """Recount a Task's Subtasks and persist its progress; return ``(task, progress)``."""
        task, progress, _, _ = await self._recompute(
            self.repositories.tasks, self.repositories.subtasks, "task_id", task_id
        )
        return task, progress

    async def recompute_customer(self, customer_id: str) -> tuple[Any, int]:
        """Recount a Customer's Tasks and persist its progress; return ``(customer, progress)``."""
        customer, progress, _, _ = await self._recompute(
            self.repositories.customers, self.repositories.tasks, "customer_id", customer_id
        )
        return customer, progress

    # ── Propagation ───────────────────────────────────────────────────────────

    def _failure(self, result: dict[str, Any], step: str, entity_id: str | None, exc: Exception) -> CascadeResult:
        failure = CascadeFailureError(step=step, entity_id=entity_id, reason=str(exc))
        logger.warning(
            "%s; %s %s progress is stale until recalculated",
            failure, result["child_kind"], result["child_id"],
            exc_info=exc,
        )
        return CascadeResult(**result, error=str(failure))

    async def propagate_from_customer(
        self,
        customer_id: str,
        child_kind: EntityKind = EntityKind.TASK,
        child_id: str | None = None,
    ) -> CascadeResult:
        """Recompute one Customer after a change among its Tasks."""
        result: dict[str, Any] = {
            "child_kind": child_kind,
            "child_id": child_id or customer_id,
            "customer_id": customer_id,
        }
        try:
            _, result["customer_progress"] = await self.recompute_customer(customer_id)
        except Exception as exc:
            return self._failure(result, "customer", customer_id, exc)
        return CascadeResult(**result)

    async def propagate_from_task(
        self,
        task_id: str,
        child_kind: EntityKind = EntityKind.SUBTASK,
        child_id: str | None = None,
    ) -> CascadeResult:
        """Recompute a Task, then the Customer that owns it."""
        result: dict[str, Any] = {
            "child_kind": child_kind,
            "child_id": child_id or task_id,
            "task_id": task_id,
        }
        try:
            task, result["task_progress"] = await self.recompute_task(task_id)
        except Exception as exc:
            return self._failure(result, "task", task_id, exc)

        result["customer_id"] = task.customer_id
        try:
            _, result["customer_progress"] = await self.recompute_customer(task.customer_id)
        except Exception as exc:
            return self._failure(result, "customer", task.customer_id, exc)
        return CascadeResult(**result)

    async def on_child_written(
        self,
        child_kind: EntityKind | str,
        child: str | HierarchyEntity,
    ) -> CascadeResult:
        """Propagate a Task or Subtask write to its ancestors.

        *child* may be the written entity or its id.  After a delete the
        entity itself must be passed, since its id no longer resolves.
        """
        kind = EntityKind(child_kind)
        if kind == EntityKind.CUSTOMER:
            raise ValidationError("child_kind", "customers have no parent to propagate to")

        child_id = child if isinstance(child, str) else child.id
        repo = self.repositories.for_kind(kind)
        try:
            entity = await repo.get_by_id(child) if isinstance(child, str) else child
        except Exception as exc:
            return self._failure({"child_kind": kind, "child_id": child_id}, kind.value, child_id, exc)

        if kind == EntityKind.SUBTASK:
            return await self.propagate_from_task(entity.task_id, kind, child_id)  # type: ignore[attr-defined]
        return await self.propagate_from_customer(entity.customer_id, kind, child_id)  # type: ignore[attr-defined]

    # ── Repair ────────────────────────────────────────────────────────────────

    async def recalculate_subtree(self, root_kind: EntityKind | str, root_id: str) -> RecalculationResult:
        """Recompute every progress value under *root* from current children.

        A Customer root recomputes each of its Tasks from their Subtasks and
        then the Customer itself; a Task root recomputes the Task.  Safe to
        run repeatedly: without intervening writes the second run changes
        nothing.

        Raises:
            EntityNotFoundError: If the root does not exist
            ValidationError: If *root_kind* is a Subtask
        """
        kind = EntityKind(root_kind)
        updated: dict[str, int] = {}
        changed = 0

        async def _step(parents: ProgressRepository, children: EntityRepository, field: str, entity_id: str) -> None:
            nonlocal changed
            before = (await parents.get_by_id(entity_id)).progress  # type: ignore[attr-defined]
            _, progress, _, _ = await self._recompute(parents, children, field, entity_id)
            updated[entity_id] = progress
            if progress != before:
                changed += 1

        repos = self.repositories
        if kind == EntityKind.CUSTOMER:
            await repos.customers.get_by_id(root_id)
            for task in await repos.tasks.find(customer_id=root_id):
                await _step(repos.tasks, repos.subtasks, "task_id", task.id)
            await _step(repos.customers, repos.tasks, "customer_id", root_id)
        elif kind == EntityKind.TASK:
            await _step(repos.tasks, repos.subtasks, "task_id", root_id)
        else:
            raise ValidationError("root_kind", "subtasks have no children to recalculate")

        logger.info(
            "Recalculated %d %s subtree entities under %s (%d changed)",
            len(updated), kind, root_id, changed,
        )
        return RecalculationResult(
            root_kind=kind,
            root_id=root_id,
            total_recalculated=len(updated),
            changed=changed,
            updated_progress=updated,
        )

    async def recalculate_all(self) -> list[RecalculationResult]:
        """Run :meth:`recalculate_subtree` for every Customer."""
        results = []
        for customer in await self.repositories.customers.find():
            results.append(await self.recalculate_subtree(EntityKind.CUSTOMER, customer.id))
        return results

    async def detect_drift(self, root_kind: EntityKind | str, root_id: str) -> list[DriftReport]:
        """Report stored progress values that disagree with their children, without writing."""
        kind = EntityKind(root_kind)
        repos = self.repositories
        reports: list[DriftReport] = []

        async def _inspect(entity: Any, entity_kind: EntityKind, children: EntityRepository, field: str) -> None:
            total, completed = await self._counts(children, field, entity.id)
            expected = compute_progress(
                total, completed, entity.progress, retain_when_empty=self.retain_when_empty
            )
            if expected != entity.progress:
                reports.append(
                    DriftReport(
                        entity_kind=entity_kind,
                        entity_id=entity.id,
                        stored_progress=entity.progress,
                        expected_progress=expected,
                        total_children=total,
                        completed_children=completed,
                    )
                )

        if kind == EntityKind.CUSTOMER:
            customer = await repos.customers.get_by_id(root_id)
            for task in await repos.tasks.find(customer_id=root_id):
                await _inspect(task, EntityKind.TASK, repos.subtasks, "task_id")
            await _inspect(customer, EntityKind.CUSTOMER, repos.tasks, "customer_id")
        elif kind == EntityKind.TASK:
            await _inspect(await repos.tasks.get_by_id(root_id), EntityKind.TASK, repos.subtasks, "task_id")
        else:
            raise ValidationError("root_kind", "subtasks have no children to inspect")

        if reports:
            logger.warning("Detected %d drifted progress values under %s %s", len(reports), kind, root_id)
        return reports


__all__ = ["CascadeTrigger"]
