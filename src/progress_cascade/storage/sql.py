"""SQLAlchemy-backed repositories - multi-database compatible.

Works with any async SQLAlchemy dialect:
- PostgreSQL + asyncpg (production)
- SQLite + aiosqlite (development / CI)
- MySQL + aiomysql (alternative production)

Models use SQLAlchemy 2.0 ``Mapped[T]`` syntax and portable column types;
list-valued fields are stored as JSON text.  ``(customer_id, sequence)`` and
``(task_id, sequence)`` carry unique constraints so the database backs up the
sequence guard when two writers race.
"""
from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, ClassVar

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from progress_cascade.core.exceptions import (
    ConcurrencyConflictError,
    EntityNotFoundError,
    SequenceConflictError,
    StorageError,
)
from progress_cascade.core.types import (
    Customer,
    CustomerStatus,
    HierarchyEntity,
    Priority,
    Subtask,
    Task,
    WorkStatus,
)
from progress_cascade.storage.repository import (
    ENGINE_OWNED_COLUMNS,
    CustomerRepository,
    RepositoryBundle,
    SubtaskRepository,
    TaskRepository,
)
from progress_cascade.utils.db_compat import detect_dialect, requires_static_pool

if TYPE_CHECKING:
    from progress_cascade.core.config import ProgressConfig

logger = logging.getLogger(__name__)

_LIST_FIELDS = ("task_ids", "tags", "assigned_to", "attachments")


class Base(DeclarativeBase):
    pass


class CustomerModel(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    task_ids: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    tags: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_by: Mapped[str | None] = mapped_column(String(255))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class TaskModel(Base):
    __tablename__ = "tasks"
    __table_args__ = (UniqueConstraint("customer_id", "sequence", name="uq_task_sequence"),)

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    customer_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("customers.id"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_by: Mapped[str | None] = mapped_column(String(255))
    assigned_to: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    attachments: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_by: Mapped[str | None] = mapped_column(String(255))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class SubtaskModel(Base):
    __tablename__ = "subtasks"
    __table_args__ = (UniqueConstraint("task_id", "sequence", name="uq_subtask_sequence"),)

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    task_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("tasks.id"), nullable=False, index=True
    )
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_by: Mapped[str | None] = mapped_column(String(255))
    assigned_to: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    attachments: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_by: Mapped[str | None] = mapped_column(String(255))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


def _to_row(entity: HierarchyEntity) -> dict[str, Any]:
    data = entity.model_dump()
    for field in _LIST_FIELDS:
        if field in data:
            data[field] = json.dumps(data[field], default=str)
    for field in ("status", "priority"):
        data[field] = str(data[field])
    return data


def _load_list(raw: str | None) -> list[Any]:
    try:
        value = json.loads(raw or "[]")
    except (json.JSONDecodeError, TypeError):
        return []
    return value if isinstance(value, list) else []


class _SQLAlchemyRepository:
    """Shared SQLAlchemy implementation; subclasses bind the ORM model and domain type."""

    model: ClassVar[type[Base]]
    domain: ClassVar[type[HierarchyEntity]]

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        enforce_versioning: bool = True,
    ) -> None:
        super().__init__(enforce_versioning=enforce_versioning)  # type: ignore[call-arg]
        self.session_factory = session_factory

    def _to_domain(self, row: Any) -> Any:
        data: dict[str, Any] = {}
        for column in self.model.__table__.columns:  # type: ignore[attr-defined]
            value = getattr(row, column.key)
            if column.key in _LIST_FIELDS:
                value = _load_list(value)
            elif isinstance(value, datetime) and value.tzinfo is None:
                value = value.replace(tzinfo=UTC)
            data[column.key] = value
        data["priority"] = Priority(data["priority"])
        status_type = CustomerStatus if self.domain is Customer else WorkStatus
        data["status"] = status_type(data["status"])
        return self.domain(**data)

    def _where(self, query: Any, filters: dict[str, Any]) -> Any:
        for field, value in filters.items():
            column = getattr(self.model, field)
            query = query.where(column == (str(value) if hasattr(value, "value") else value))
        return query

    def _sequence_conflict(self, entity: Any) -> SequenceConflictError:
        parent_field = self.parent_field  # type: ignore[attr-defined]
        return SequenceConflictError(
            parent_id=getattr(entity, parent_field) if parent_field else entity.id,
            sequence=getattr(entity, "sequence", 0),
        )

    async def _fetch(self, session: AsyncSession, entity_id: str) -> Any:
        result = await session.execute(select(self.model).where(self.model.id == entity_id))  # type: ignore[attr-defined]
        row = result.scalar_one_or_none()
        if row is None:
            raise EntityNotFoundError(self.kind, entity_id)  # type: ignore[attr-defined]
        return row

    async def get_by_id(self, entity_id: str) -> Any:
        async with self.session_factory() as session:
            return self._to_domain(await self._fetch(session, entity_id))

    async def exists(self, entity_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(self.model.id).where(self.model.id == entity_id)  # type: ignore[attr-defined]
            )
            return result.scalar_one_or_none() is not None

    async def find(
        self,
        *,
        skip: int = 0,
        limit: int | None = None,
        order_by: str | None = None,
        **filters: Any,
    ) -> list[Any]:
        key = order_by or ("sequence" if self.parent_field else "created_at")  # type: ignore[attr-defined]
        async with self.session_factory() as session:
            query = self._where(select(self.model), filters)
            query = query.order_by(getattr(self.model, key), self.model.created_at).offset(skip)  # type: ignore[attr-defined]
            if limit is not None:
                query = query.limit(limit)
            result = await session.execute(query)
            return [self._to_domain(row) for row in result.scalars().all()]

    async def count(self, **filters: Any) -> int:
        async with self.session_factory() as session:
            query = self._where(select(func.count(self.model.id)), filters)  # type: ignore[attr-defined]
            result = await session.execute(query)
            return result.scalar() or 0

    async def create(self, entity: Any) -> Any:
        async with self.session_factory() as session:
            session.add(self.model(**_to_row(entity)))
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if await self.exists(entity.id):
                    raise StorageError("create", f"{self.kind} id {entity.id!r} already exists") from exc  # type: ignore[attr-defined]
                raise self._sequence_conflict(entity) from exc
            except SQLAlchemyError as exc:
                await session.rollback()
                raise StorageError("create", str(exc)) from exc
            logger.info("Created %s id=%s", self.kind, entity.id)  # type: ignore[attr-defined]
            return entity

    async def save(self, entity: Any, expected_version: int | None = None) -> Any:
        expected = entity.version if expected_version is None else expected_version
        row = _to_row(entity)
        row.pop("id")
        row.pop("created_at")
        for name in ENGINE_OWNED_COLUMNS:
            row.pop(name, None)
        row["updated_at"] = datetime.now(UTC)
        async with self.session_factory() as session:
            current = await self._fetch(session, entity.id)
            if self.enforce_versioning and current.version != expected:  # type: ignore[attr-defined]
                raise ConcurrencyConflictError(self.kind, entity.id, expected, current.version)  # type: ignore[attr-defined]
            stored = self._to_domain(current)
            kept = {
                name: getattr(stored, name)
                for name in ENGINE_OWNED_COLUMNS
                if name in type(entity).model_fields
            }
            row["version"] = current.version + 1
            stmt = (
                update(self.model)
                .where(self.model.id == entity.id, self.model.version == current.version)  # type: ignore[attr-defined]
                .values(**row)
            )
            try:
                result = await session.execute(stmt)
                if result.rowcount == 0:
                    await session.rollback()
                    raise ConcurrencyConflictError(self.kind, entity.id, expected, current.version + 1)  # type: ignore[attr-defined]
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise self._sequence_conflict(entity) from exc
            except SQLAlchemyError as exc:
                await session.rollback()
                raise StorageError("save", str(exc)) from exc
            logger.info("Saved %s %s (version %d)", self.kind, entity.id, row["version"])  # type: ignore[attr-defined]
        return entity.model_copy(
            update={**kept, "version": row["version"], "updated_at": row["updated_at"]}
        )

    async def delete(self, entity_id: str) -> Any:
        async with self.session_factory() as session:
            row = await self._fetch(session, entity_id)
            entity = self._to_domain(row)
            try:
                await session.execute(delete(self.model).where(self.model.id == entity_id))  # type: ignore[attr-defined]
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise StorageError("delete", str(exc)) from exc
            logger.info("Deleted %s id=%s", self.kind, entity_id)  # type: ignore[attr-defined]
            return entity

    async def max_sequence(self, parent_id: str) -> int:
        parent_field = self.parent_field  # type: ignore[attr-defined]
        if parent_field is None:
            raise NotImplementedError(f"{self.kind} entities have no sequence")  # type: ignore[attr-defined]
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.max(self.model.sequence)).where(  # type: ignore[attr-defined]
                    getattr(self.model, parent_field) == parent_id
                )
            )
            return result.scalar() or 0

    async def _set_progress(self, entity_id: str, progress: int) -> Any:
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(self.model)
                    .where(self.model.id == entity_id)  # type: ignore[attr-defined]
                    .values(progress=progress)
                )
                if result.rowcount == 0:
                    await session.rollback()
                    raise EntityNotFoundError(self.kind, entity_id)  # type: ignore[attr-defined]
                await session.commit()
            except EntityNotFoundError:
                raise
            except SQLAlchemyError as exc:
                await session.rollback()
                raise StorageError("set_progress", str(exc)) from exc
            logger.debug("Set %s %s progress to %d", self.kind, entity_id, progress)  # type: ignore[attr-defined]
            return self._to_domain(await self._fetch(session, entity_id))


class SQLAlchemyCustomerRepository(_SQLAlchemyRepository, CustomerRepository):
    model = CustomerModel
    domain = Customer

    async def set_progress(self, entity_id: str, progress: int) -> Customer:
        return await self._set_progress(entity_id, progress)

    async def _rewrite_task_ids(self, customer_id: str, task_id: str, attach: bool) -> Customer:
        async with self.session_factory() as session:
            row = await self._fetch(session, customer_id)
            task_ids = _load_list(row.task_ids)
            if attach and task_id not in task_ids:
                task_ids.append(task_id)
            elif not attach and task_id in task_ids:
                task_ids.remove(task_id)
            else:
                return self._to_domain(row)
            row.task_ids = json.dumps(task_ids)
            await session.commit()
            await session.refresh(row)
            return self._to_domain(row)

    async def attach_task(self, customer_id: str, task_id: str) -> Customer:
        return await self._rewrite_task_ids(customer_id, task_id, attach=True)

    async def detach_task(self, customer_id: str, task_id: str) -> Customer:
        return await self._rewrite_task_ids(customer_id, task_id, attach=False)


class SQLAlchemyTaskRepository(_SQLAlchemyRepository, TaskRepository):
    model = TaskModel
    domain = Task

    async def set_progress(self, entity_id: str, progress: int) -> Task:
        return await self._set_progress(entity_id, progress)


class SQLAlchemySubtaskRepository(_SQLAlchemyRepository, SubtaskRepository):
    model = SubtaskModel
    domain = Subtask


class SQLAlchemyDatabase:
    """Owns the async engine and hands out repositories bound to it.

    Example (SQLite for testing)
    ----------------------------
    .. code-block:: python

        db = SQLAlchemyDatabase("sqlite+aiosqlite:///:memory:")
        await db.initialize()
        repos = db.repositories()
        ...
        await db.close()
    """

    def __init__(
        self,
        database_url: str,
        pool_size: int = 10,
        max_overflow: int = 20,
        pool_pre_ping: bool = True,
        echo: bool = False,
        enforce_versioning: bool = True,
    ) -> None:
        dialect = detect_dialect(database_url)
        kw: dict[str, Any] = {"echo": echo}

        if requires_static_pool(dialect):
            kw["poolclass"] = StaticPool
            kw["connect_args"] = {"check_same_thread": False}
        else:
            kw["pool_size"] = pool_size
            kw["max_overflow"] = max_overflow
            kw["pool_pre_ping"] = pool_pre_ping
            kw["pool_recycle"] = 3600

        self.enforce_versioning = enforce_versioning
        self.engine: AsyncEngine = create_async_engine(database_url, **kw)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
            autocommit=False,
        )
        logger.info("SQLAlchemyDatabase dialect=%s pool_size=%d", dialect.value, pool_size)

    @classmethod
    def from_config(cls, config: ProgressConfig) -> SQLAlchemyDatabase:
        return cls(
            database_url=config.database_url,
            pool_size=config.database_pool_size,
            max_overflow=config.database_max_overflow,
            echo=config.database_echo,
            enforce_versioning=config.enforce_versioning,
        )

    async def initialize(self) -> None:
        """Create the tables if they do not exist (idempotent)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Hierarchy tables ready")

    def repositories(self) -> RepositoryBundle:
        return RepositoryBundle(
            customers=SQLAlchemyCustomerRepository(self.session_factory, self.enforce_versioning),
            tasks=SQLAlchemyTaskRepository(self.session_factory, self.enforce_versioning),
            subtasks=SQLAlchemySubtaskRepository(self.session_factory, self.enforce_versioning),
        )

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("SQLAlchemyDatabase closed")


__all__ = [
    "Base",
    "CustomerModel",
    "SQLAlchemyCustomerRepository",
    "SQLAlchemyDatabase",
    "SQLAlchemySubtaskRepository",
    "SQLAlchemyTaskRepository",
    "SubtaskModel",
    "TaskModel",
]
