"""Sibling sequence uniqueness.

A Task's ``sequence`` is unique within its Customer and a Subtask's within its
Task.  The guard is a read-only check; the caller aborts the write when it
fails.  The SQL backend's unique constraints catch the remaining window where
two writers pass the check at the same time.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from progress_cascade.core.exceptions import SequenceConflictError
from progress_cascade.core.types import SequenceCheck
from progress_cascade.utils.validation import assert_valid_sequence

if TYPE_CHECKING:
    from progress_cascade.storage.repository import EntityRepository

logger = logging.getLogger(__name__)


class SequenceGuard:
    """Sequence checks against one child repository.

    Example:
        ```python
        guard = SequenceGuard(repos.subtasks)
        await guard.validate_sequence("task-1", 3)                 # create
        await guard.validate_sequence("task-1", 3, "subtask-9")    # update
        nxt = await guard.next_sequence("task-1")
        ```
    """

    def __init__(self, repository: EntityRepository) -> None:
        if repository.parent_field is None:
            raise TypeError(f"{repository.kind} repository has no parent to sequence within")
        self.repository = repository

    async def check_sequence(
        self,
        parent_id: str,
        candidate_sequence: int,
        exclude_entity_id: str | None = None,
    ) -> SequenceCheck:
        """Return whether *candidate_sequence* is free under *parent_id*.

        *exclude_entity_id* is the entity's own id on updates, so it does not
        collide with itself.  On a re-parent, pass the **new** parent id.
        """
        assert_valid_sequence(candidate_sequence)
        holders = await self.repository.find(
            **{self.repository.parent_field: parent_id, "sequence": candidate_sequence}
        )
        for holder in holders:
            if holder.id != exclude_entity_id:
                return SequenceCheck(
                    parent_id=parent_id,
                    sequence=candidate_sequence,
                    ok=False,
                    conflicting_id=holder.id,
                )
        return SequenceCheck(parent_id=parent_id, sequence=candidate_sequence, ok=True)

    async def validate_sequence(
        self,
        parent_id: str,
        candidate_sequence: int,
        exclude_entity_id: str | None = None,
    ) -> None:
        """Raise :class:`SequenceConflictError` if a sibling holds the sequence."""
        check = await self.check_sequence(parent_id, candidate_sequence, exclude_entity_id)
        if not check.ok:
            logger.info(
                "Sequence %d under %s already held by %s",
                candidate_sequence, parent_id, check.conflicting_id,
            )
            raise SequenceConflictError(
                parent_id=parent_id,
                sequence=candidate_sequence,
                conflicting_id=check.conflicting_id,
            )

    async def next_sequence(self, parent_id: str) -> int:
        """Return ``max(sequence) + 1`` under *parent_id* (1 for the first child)."""
        return await self.repository.max_sequence(parent_id) + 1


__all__ = ["SequenceGuard"]
