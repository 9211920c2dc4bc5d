"""Shared pytest fixtures for the progress-cascade test suite.

Design philosophy
-----------------
- Fixtures that touch I/O use SQLite in-memory so the suite runs without any
  external services.
- Fixtures are async where the SUT is async.
- Scope is "function" everywhere so every test starts from an empty store.
"""
from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from progress_cascade.core.config import ProgressConfig
from progress_cascade.core.types import ChangeEvent, Customer, Subtask, Task
from progress_cascade.service import HierarchyService
from progress_cascade.storage.memory import create_memory_repositories
from progress_cascade.storage.repository import RepositoryBundle
from progress_cascade.storage.sql import SQLAlchemyDatabase

DUE = datetime(2030, 6, 30, 17, 0, tzinfo=UTC)
NOW = datetime(2030, 6, 1, 9, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Event loop - one per test session (required by pytest-asyncio)
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def event_loop_policy():
    return asyncio.DefaultEventLoopPolicy()


# ---------------------------------------------------------------------------
# Entity factories
# ---------------------------------------------------------------------------

def make_customer(suffix: str = "01", **kwargs) -> Customer:
    data = {"id": f"cust-{suffix}", "name": f"Customer {suffix}", "due_date": DUE}
    data.update(kwargs)
    return Customer(**data)


def make_task(customer_id: str, sequence: int, suffix: str | None = None, **kwargs) -> Task:
    data = {
        "id": f"task-{suffix or sequence}",
        "customer_id": customer_id,
        "title": f"Task {sequence}",
        "sequence": sequence,
        "due_date": DUE,
    }
    data.update(kwargs)
    return Task(**data)


def make_subtask(task: Task, sequence: int, suffix: str | None = None, **kwargs) -> Subtask:
    data = {
        "id": f"sub-{task.id}-{suffix or sequence}",
        "task_id": task.id,
        "customer_id": task.customer_id,
        "title": f"Subtask {sequence}",
        "sequence": sequence,
        "due_date": DUE,
    }
    data.update(kwargs)
    return Subtask(**data)


def child_data(title: str = "Work item", **kwargs) -> dict:
    data = {"title": title, "due_date": DUE}
    data.update(kwargs)
    return data


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@pytest.fixture
def config() -> ProgressConfig:
    return ProgressConfig(database_url="sqlite+aiosqlite:///:memory:")


@pytest.fixture
def reset_config() -> ProgressConfig:
    return ProgressConfig(
        database_url="sqlite+aiosqlite:///:memory:",
        zero_children_policy="reset",
    )


# ---------------------------------------------------------------------------
# Repositories and services
# ---------------------------------------------------------------------------

@pytest.fixture
def repos() -> RepositoryBundle:
    return create_memory_repositories()


@pytest.fixture
def events() -> list[ChangeEvent]:
    return []


@pytest.fixture
def service(repos: RepositoryBundle, config: ProgressConfig, events: list[ChangeEvent]) -> HierarchyService:
    async def record(event: ChangeEvent) -> None:
        events.append(event)

    return HierarchyService(repos, config=config, listeners=[record])


@pytest.fixture
async def sqlite_db():
    db = SQLAlchemyDatabase("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def sql_repos(sqlite_db: SQLAlchemyDatabase) -> RepositoryBundle:
    return sqlite_db.repositories()


@pytest.fixture
def sql_service(sql_repos: RepositoryBundle, config: ProgressConfig) -> HierarchyService:
    return HierarchyService(sql_repos, config=config)


@pytest.fixture
async def customer(service: HierarchyService) -> Customer:
    return await service.create_customer({"name": "Acme rollout", "due_date": DUE}, actor_id="u-admin")


@pytest.fixture
async def task(service: HierarchyService, customer: Customer) -> Task:
    return await service.create_child("customer", customer.id, child_data("Kickoff"))
