"""SQLAlchemy repositories and the service over SQLite in-memory."""
from __future__ import annotations

import logging
from datetime import UTC

import pytest

from conftest import DUE, child_data, make_customer, make_subtask, make_task
from progress_cascade.core.config import ProgressConfig
from progress_cascade.core.exceptions import (
    ConcurrencyConflictError,
    EntityNotFoundError,
    SequenceConflictError,
    StorageError,
)
from progress_cascade.core.types import CustomerStatus, Priority, WorkStatus
from progress_cascade.service import HierarchyService
from progress_cascade.storage.repository import RepositoryBundle
from progress_cascade.storage.sql import SQLAlchemyDatabase
from progress_cascade.utils.logging import LOGGER_NAME


class TestDatabase:

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, sqlite_db: SQLAlchemyDatabase) -> None:
        await sqlite_db.initialize()

    def test_from_config(self) -> None:
        db = SQLAlchemyDatabase.from_config(
            ProgressConfig(database_url="sqlite+aiosqlite:///:memory:", enforce_versioning=False)
        )
        assert db.enforce_versioning is False
        assert db.repositories().tasks.enforce_versioning is False


class TestRoundTrip:

    @pytest.mark.asyncio
    async def test_customer(self, sql_repos: RepositoryBundle) -> None:
        await sql_repos.customers.create(make_customer(tags=["vip"], status=CustomerStatus.ACTIVE))
        loaded = await sql_repos.customers.get_by_id("cust-01")
        assert loaded.name == "Customer 01"
        assert loaded.status is CustomerStatus.ACTIVE
        assert loaded.tags == ["vip"]
        assert loaded.due_date == DUE
        assert loaded.due_date.tzinfo is not None

    @pytest.mark.asyncio
    async def test_task_lists_and_enums(self, sql_repos: RepositoryBundle) -> None:
        task = make_task(
            "cust-01", 1,
            priority=Priority.HIGH,
            assigned_to=["u-1", "u-2"],
            attachments=[{"name": "brief.pdf", "size": 1024}],
        )
        await sql_repos.tasks.create(task)
        loaded = await sql_repos.tasks.get_by_id(task.id)
        assert loaded.priority is Priority.HIGH
        assert loaded.assigned_to == ["u-1", "u-2"]
        assert loaded.attachments == [{"name": "brief.pdf", "size": 1024}]
        assert loaded.status is WorkStatus.PENDING

    @pytest.mark.asyncio
    async def test_missing(self, sql_repos: RepositoryBundle) -> None:
        with pytest.raises(EntityNotFoundError):
            await sql_repos.subtasks.get_by_id("nope")


class TestConstraints:

    @pytest.mark.asyncio
    async def test_unique_sequence_per_customer(self, sql_repos: RepositoryBundle) -> None:
        await sql_repos.tasks.create(make_task("cust-01", 1))
        with pytest.raises(SequenceConflictError):
            await sql_repos.tasks.create(make_task("cust-01", 1, suffix="dup"))
        assert await sql_repos.tasks.count(customer_id="cust-01") == 1

    @pytest.mark.asyncio
    async def test_same_sequence_other_parent(self, sql_repos: RepositoryBundle) -> None:
        await sql_repos.tasks.create(make_task("cust-01", 1))
        await sql_repos.tasks.create(make_task("cust-02", 1, suffix="b"))
        assert await sql_repos.tasks.count() == 2

    @pytest.mark.asyncio
    async def test_duplicate_id(self, sql_repos: RepositoryBundle) -> None:
        await sql_repos.customers.create(make_customer())
        with pytest.raises(StorageError):
            await sql_repos.customers.create(make_customer())

    @pytest.mark.asyncio
    async def test_save_into_taken_sequence(self, sql_repos: RepositoryBundle) -> None:
        task = make_task("cust-01", 1)
        await sql_repos.subtasks.create(make_subtask(task, 1))
        second = await sql_repos.subtasks.create(make_subtask(task, 2))
        with pytest.raises(SequenceConflictError):
            await sql_repos.subtasks.save(second.model_copy(update={"sequence": 1}))


class TestQueries:

    @pytest.mark.asyncio
    async def test_find_and_count(self, sql_repos: RepositoryBundle) -> None:
        task = make_task("cust-01", 1)
        await sql_repos.subtasks.create(make_subtask(task, 2, status=WorkStatus.COMPLETED))
        await sql_repos.subtasks.create(make_subtask(task, 1))
        found = await sql_repos.subtasks.find(task_id=task.id)
        assert [s.sequence for s in found] == [1, 2]
        assert await sql_repos.subtasks.count(task_id=task.id, status=WorkStatus.COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_max_sequence(self, sql_repos: RepositoryBundle) -> None:
        assert await sql_repos.tasks.max_sequence("cust-01") == 0
        await sql_repos.tasks.create(make_task("cust-01", 7))
        assert await sql_repos.tasks.max_sequence("cust-01") == 7


class TestWrites:

    @pytest.mark.asyncio
    async def test_save_and_version(self, sql_repos: RepositoryBundle) -> None:
        task = await sql_repos.tasks.create(make_task("cust-01", 1))
        saved = await sql_repos.tasks.save(task.model_copy(update={"title": "Renamed"}))
        assert saved.version == 2
        assert (await sql_repos.tasks.get_by_id(task.id)).title == "Renamed"

    @pytest.mark.asyncio
    async def test_stale_save(self, sql_repos: RepositoryBundle) -> None:
        task = await sql_repos.tasks.create(make_task("cust-01", 1))
        await sql_repos.tasks.save(task.model_copy(update={"title": "First"}))
        with pytest.raises(ConcurrencyConflictError):
            await sql_repos.tasks.save(task.model_copy(update={"title": "Second"}))

    @pytest.mark.asyncio
    async def test_set_progress(self, sql_repos: RepositoryBundle) -> None:
        task = await sql_repos.tasks.create(make_task("cust-01", 1))
        updated = await sql_repos.tasks.set_progress(task.id, 67)
        assert updated.progress == 67
        assert updated.version == 1

    @pytest.mark.asyncio
    async def test_save_keeps_stored_progress(self, sql_repos: RepositoryBundle) -> None:
        task = await sql_repos.tasks.create(make_task("cust-01", 1))
        await sql_repos.tasks.set_progress(task.id, 67)
        saved = await sql_repos.tasks.save(task.model_copy(update={"title": "Renamed"}))
        assert saved.progress == 67
        stored = await sql_repos.tasks.get_by_id(task.id)
        assert stored.title == "Renamed"
        assert stored.progress == 67

    @pytest.mark.asyncio
    async def test_save_keeps_task_list(self, sql_repos: RepositoryBundle) -> None:
        customer = await sql_repos.customers.create(make_customer())
        await sql_repos.customers.attach_task(customer.id, "task-1")
        saved = await sql_repos.customers.save(customer.model_copy(update={"name": "Renamed"}))
        assert saved.task_ids == ["task-1"]
        assert (await sql_repos.customers.get_by_id(customer.id)).task_ids == ["task-1"]

    @pytest.mark.asyncio
    async def test_set_progress_missing(self, sql_repos: RepositoryBundle) -> None:
        with pytest.raises(EntityNotFoundError):
            await sql_repos.customers.set_progress("nope", 10)

    @pytest.mark.asyncio
    async def test_delete(self, sql_repos: RepositoryBundle) -> None:
        await sql_repos.tasks.create(make_task("cust-01", 1))
        removed = await sql_repos.tasks.delete("task-1")
        assert removed.due_date.tzinfo == UTC
        assert not await sql_repos.tasks.exists("task-1")

    @pytest.mark.asyncio
    async def test_task_list(self, sql_repos: RepositoryBundle) -> None:
        await sql_repos.customers.create(make_customer())
        await sql_repos.customers.attach_task("cust-01", "task-1")
        await sql_repos.customers.attach_task("cust-01", "task-2")
        updated = await sql_repos.customers.detach_task("cust-01", "task-1")
        assert updated.task_ids == ["task-2"]


class TestServiceOverSQL:

    @pytest.mark.asyncio
    async def test_cascade_scenario(self, sql_service: HierarchyService) -> None:
        customer = await sql_service.create_customer({"name": "Acme", "due_date": DUE})
        task = await sql_service.create_child("customer", customer.id, child_data("Build"))
        s1 = await sql_service.create_child("task", task.id, child_data("One"))
        await sql_service.create_child("task", task.id, child_data("Two"))

        await sql_service.update_child_status("subtask", s1.id, "completed")
        assert (await sql_service.get("task", task.id)).progress == 50
        assert (await sql_service.get("customer", customer.id)).progress == 0

        await sql_service.update_child_status("task", task.id, "completed")
        assert (await sql_service.get("customer", customer.id)).progress == 100

    @pytest.mark.asyncio
    async def test_delete_task_cleans_up(self, sql_service: HierarchyService, sql_repos: RepositoryBundle) -> None:
        customer = await sql_service.create_customer({"name": "Acme", "due_date": DUE})
        task = await sql_service.create_child("customer", customer.id, child_data("Build"))
        await sql_service.create_child("task", task.id, child_data("One"))
        await sql_service.delete_child("task", task.id)
        assert await sql_repos.subtasks.count(task_id=task.id) == 0
        assert (await sql_service.get("customer", customer.id)).task_ids == []

    @pytest.mark.asyncio
    async def test_open_context_manager(self) -> None:
        config = ProgressConfig(database_url="sqlite+aiosqlite:///:memory:")
        async with HierarchyService.open(config) as service:
            customer = await service.create_customer({"name": "Acme", "due_date": DUE})
            assert (await service.get("customer", customer.id)).name == "Acme"

    @pytest.mark.asyncio
    async def test_open_applies_log_level(self) -> None:
        logger = logging.getLogger(LOGGER_NAME)
        previous = logger.level
        config = ProgressConfig(database_url="sqlite+aiosqlite:///:memory:", log_level="DEBUG")
        try:
            async with HierarchyService.open(config):
                assert logger.level == logging.DEBUG
        finally:
            logger.setLevel(previous)

    @pytest.mark.asyncio
    async def test_rename_after_cascade_keeps_progress(
        self, sql_service: HierarchyService, sql_repos: RepositoryBundle
    ) -> None:
        customer = await sql_service.create_customer({"name": "Acme", "due_date": DUE})
        task = await sql_service.create_child("customer", customer.id, child_data("Build"))
        s1 = await sql_service.create_child("task", task.id, child_data("One"))
        await sql_service.create_child("task", task.id, child_data("Two"))

        original_save = sql_repos.tasks.save

        async def save_after_cascade(entity, expected_version=None):
            await sql_service.update_child_status("subtask", s1.id, "completed")
            return await original_save(entity, expected_version)

        sql_repos.tasks.save = save_after_cascade
        await sql_service.update_child("task", task.id, {"title": "Renamed"})
        stored = await sql_service.get("task", task.id)
        assert stored.title == "Renamed"
        assert stored.progress == 50
