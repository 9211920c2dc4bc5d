"""Storage implementations for the Customer → Task → Subtask hierarchy.

This module provides two repository backends:
- SQLAlchemy: production persistent storage (PostgreSQL, SQLite, MySQL)
- In-Memory: testing and development

Example:
    ```python
    # Production
    from progress_cascade.storage.sql import SQLAlchemyDatabase

    db = SQLAlchemyDatabase("postgresql+asyncpg://localhost/work")
    await db.initialize()
    repos = db.repositories()

    # Development
    from progress_cascade.storage.memory import create_memory_repositories

    repos = create_memory_repositories()
    ```
"""

from progress_cascade.storage.memory import (
    InMemoryCustomerRepository,
    InMemorySubtaskRepository,
    InMemoryTaskRepository,
    create_memory_repositories,
)
from progress_cascade.storage.repository import (
    CustomerRepository,
    EntityRepository,
    ProgressRepository,
    RepositoryBundle,
    SubtaskRepository,
    TaskRepository,
)
from progress_cascade.storage.sql import SQLAlchemyDatabase

__all__ = [
    "CustomerRepository",
    "EntityRepository",
    "InMemoryCustomerRepository",
    "InMemorySubtaskRepository",
    "InMemoryTaskRepository",
    "ProgressRepository",
    "RepositoryBundle",
    "SQLAlchemyDatabase",
    "SubtaskRepository",
    "TaskRepository",
    "create_memory_repositories",
]
