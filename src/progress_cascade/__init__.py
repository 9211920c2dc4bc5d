"""progress-cascade - hierarchical progress aggregation for Customer → Task → Subtask.

Quick start
-----------
.. code-block:: python

    from progress_cascade import HierarchyService, ProgressConfig

    async with HierarchyService.open(ProgressConfig()) as service:
        customer = await service.create_customer({"name": "Acme", "due_date": due})
        task = await service.create_child("customer", customer.id, {"title": "Kickoff", "due_date": due})
        sub = await service.create_child("task", task.id, {"title": "Agenda", "due_date": due})
        await service.update_child_status("subtask", sub.id, "completed")

Public API
----------
Core types
    Customer, Task, Subtask, WorkStatus, CustomerStatus, EntityKind

Configuration
    ProgressConfig

Service
    HierarchyService

Engine
    SequenceGuard, CascadeTrigger, compute_progress, apply_status_transition

Storage backends
    RepositoryBundle, create_memory_repositories, SQLAlchemyDatabase

Exceptions
    ProgressEngineError and all its subclasses
"""
from __future__ import annotations

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

try:
    __version__: str = _pkg_version("progress-cascade")
except PackageNotFoundError:  # running from source without install
    __version__ = "0.0.0+dev"

__license__ = "MIT"

# Configuration
from progress_cascade.core.config import ProgressConfig

# Exceptions
from progress_cascade.core.exceptions import (
    CascadeFailureError,
    ConcurrencyConflictError,
    ConfigurationError,
    EntityNotFoundError,
    ProgressEngineError,
    SequenceConflictError,
    StorageError,
    ValidationError,
)

# Core types
from progress_cascade.core.types import (
    CascadeResult,
    ChangeAction,
    ChangeEvent,
    ChangeListener,
    Customer,
    CustomerStatus,
    DriftReport,
    EntityKind,
    Priority,
    RecalculationResult,
    StatusBreakdown,
    Subtask,
    Task,
    WorkStatus,
)

# Engine
from progress_cascade.engine import (
    CascadeTrigger,
    SequenceGuard,
    apply_status_transition,
    compute_progress,
)

# Service
from progress_cascade.service import HierarchyService

# Storage
from progress_cascade.storage import (
    RepositoryBundle,
    SQLAlchemyDatabase,
    create_memory_repositories,
)
from progress_cascade.utils.logging import configure_logging

__all__ = [
    "CascadeFailureError",
    "CascadeResult",
    "CascadeTrigger",
    "ChangeAction",
    "ChangeEvent",
    "ChangeListener",
    "ConcurrencyConflictError",
    "ConfigurationError",
    "Customer",
    "CustomerStatus",
    "DriftReport",
    "EntityKind",
    "EntityNotFoundError",
    "HierarchyService",
    "Priority",
    "ProgressConfig",
    "ProgressEngineError",
    "RecalculationResult",
    "RepositoryBundle",
    "SQLAlchemyDatabase",
    "SequenceConflictError",
    "SequenceGuard",
    "StatusBreakdown",
    "StorageError",
    "Subtask",
    "Task",
    "ValidationError",
    "WorkStatus",
    "__version__",
    "apply_status_transition",
    "compute_progress",
    "configure_logging",
    "create_memory_repositories",
]
