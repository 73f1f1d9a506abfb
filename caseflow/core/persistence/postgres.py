# caseflow/core/persistence/postgres.py
from __future__ import annotations
import asyncio, hashlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, TypeVar
from sqlalchemy import func, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from result import Err, Ok
from caseflow.core.codec.serde import (
    SerializationError,
    clear_serde_caches,
    document_to_object,
    to_jsonable,
)
from caseflow.core.errors import ErrorCode, LockTimeoutError, PersistenceError
from caseflow.core.logging import get_logger
from caseflow.core.models.repository import PostgresConfig
from caseflow.core.persistence.base import Filter, kind_name, unique_names
from caseflow.core.persistence.models_pg import Base, ObjectModel
from caseflow.core.persistence.result_types import (
    Collision,
    SaveResult,
    StoreError,
    StoreErrorCode,
    StoreResult,
)
from caseflow.core.utils.db import is_retryable_connection_error, is_unique_violation

T = TypeVar('T')

# Polling interval while waiting for an advisory lock held elsewhere.
_LOCK_POLL_INTERVAL_S = 0.1

TRY_ADVISORY_LOCK_SQL = text('SELECT pg_try_advisory_lock(CAST(:key AS BIGINT))')

ADVISORY_UNLOCK_SQL = text('SELECT pg_advisory_unlock(CAST(:key AS BIGINT))')

SCHEMA_LOCK_SQL = text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))')


def _advisory_key(basis: str) -> int:
    h = hashlib.sha256(basis.encode('utf-8', errors='ignore')).digest()
    return int.from_bytes(h[:8], byteorder='big', signed=True)


def _escape_like(value: str) -> str:
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


class PostgresRepository:
    """
    PostgreSQL Repository storing every object as a JSONB document in one table.

    Unique names are enforced by a partial unique index on (kind, unique_name);
    a violation comes back as ``Err(Collision)``. Locks are session-level
    advisory locks keyed on kind and id, so they work across hosts.
    """

    def __init__(self, config: PostgresConfig):
        self.config = config
        self.logger = get_logger('repository')

        engine_cfg = self.config.model_dump(exclude={'database_url'}, exclude_none=True)
        self.async_engine = create_async_engine(self.config.database_url, **engine_cfg)
        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )
        self._initialized = False

        self.logger.info('PostgresRepository initialized')

    def _schema_advisory_key(self) -> int:
        """Stable advisory key for schema creation, scoped to this database URL."""
        return _advisory_key(f'caseflow-schema:{self.config.database_url}')

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self.async_engine.begin() as conn:
            # Serialize DDL across hosts starting at the same time.
            await conn.execute(SCHEMA_LOCK_SQL, {'key': self._schema_advisory_key()})
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True

    async def ensure_schema_initialized(self) -> StoreResult[None]:
        """
        Ensure the objects table and its indexes exist.

        Safe to call multiple times and from multiple processes.
        """
        try:
            await self._ensure_initialized()
            return Ok(None)
        except Exception as exc:
            self.logger.error(f'Schema initialization failed: {exc}')
            return Err(
                StoreError(
                    code=StoreErrorCode.SCHEMA_INIT_FAILED,
                    message=f'Schema initialization failed: {exc}',
                    retryable=is_retryable_connection_error(exc),
                    exception=exc,
                )
            )

    # ----------------- reads -----------------

    def _read_failed(self, op: str, exc: BaseException) -> PersistenceError:
        self.logger.error(f'{op} failed: {type(exc).__name__}: {exc}')
        return PersistenceError(
            message=f'{op} failed: {exc}',
            code=ErrorCode.PERSISTENCE_FAILED,
            notes=[f'retryable={is_retryable_connection_error(exc)}'],
        )

    async def get(self, kind: type[T], obj_id: str) -> T | None:
        try:
            await self._ensure_initialized()
            async with self.session_factory() as session:
                row = await session.get(ObjectModel, obj_id)
                if row is None or row.kind != kind_name(kind):
                    return None
                return document_to_object(row.document)
        except (SQLAlchemyError, OSError) as exc:
            raise self._read_failed(f'get {kind_name(kind)} {obj_id}', exc) from exc

    async def get_by_name(self, kind: type[T], name: str) -> T | None:
        stmt = (
            select(ObjectModel.document)
            .where(ObjectModel.kind == kind_name(kind), ObjectModel.name == name)
            .order_by(ObjectModel.created_at.desc())
            .limit(1)
        )
        try:
            await self._ensure_initialized()
            async with self.session_factory() as session:
                document = (await session.execute(stmt)).scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            raise self._read_failed(f'get_by_name {kind_name(kind)} {name!r}', exc) from exc
        return document_to_object(document) if document is not None else None

    def _select(self, kind: type[Any], flt: Filter) -> Any:
        stmt = select(ObjectModel.document).where(ObjectModel.kind == kind_name(kind))
        if flt.eq:
            # Containment matches nulls too, so eq={'completed': None} works.
            eq_doc = {key: to_jsonable(value) for key, value in flt.eq.items()}
            stmt = stmt.where(ObjectModel.document['data'].contains(eq_doc))
        if flt.name_prefix is not None:
            stmt = stmt.where(
                ObjectModel.name.like(f'{_escape_like(flt.name_prefix)}%', escape='\\')
            )
        if flt.order_by is not None:
            column = ObjectModel.name if flt.order_by == 'name' else ObjectModel.created_at
            stmt = stmt.order_by(column.desc() if flt.descending else column.asc())
        if flt.limit is not None and flt.where is None:
            stmt = stmt.limit(flt.limit)
        return stmt

    async def search(self, kind: type[T], flt: Filter | None = None) -> AsyncIterator[T]:
        flt = flt or Filter()
        await self._ensure_initialized()
        emitted = 0
        try:
            async with self.session_factory() as session:
                stream = await session.stream(self._select(kind, flt))
                async for document in stream.scalars():
                    obj = document_to_object(document)
                    if flt.where is not None and not flt.where(obj):
                        continue
                    yield obj
                    emitted += 1
                    if flt.limit is not None and emitted >= flt.limit:
                        break
        except (SQLAlchemyError, OSError) as exc:
            raise self._read_failed(f'search {kind_name(kind)}', exc) from exc

    async def count(self, kind: type[T], flt: Filter | None = None) -> int:
        flt = flt or Filter()
        if flt.where is not None:
            return sum([1 async for _ in self.search(kind, flt)])
        stmt = select(func.count()).select_from(
            self._select(kind, Filter(eq=flt.eq, name_prefix=flt.name_prefix)).subquery()
        )
        try:
            await self._ensure_initialized()
            async with self.session_factory() as session:
                return int((await session.execute(stmt)).scalar_one())
        except (SQLAlchemyError, OSError) as exc:
            raise self._read_failed(f'count {kind_name(kind)}', exc) from exc

    # ----------------- writes -----------------

    async def save(self, obj: T) -> SaveResult[T]:
        kind = type(obj)
        name = getattr(obj, 'name', None)
        try:
            document = to_jsonable(obj)
        except SerializationError as exc:
            return Err(
                StoreError(
                    code=StoreErrorCode.SERIALIZATION_FAILED,
                    message=f'Cannot serialize {kind_name(kind)}: {exc}',
                    retryable=False,
                    exception=exc,
                )
            )

        now = datetime.now(timezone.utc)
        values = {
            'id': getattr(obj, 'id'),
            'kind': kind_name(kind),
            'name': name,
            'unique_name': name if unique_names(kind) else None,
            'document': document,
            'created_at': getattr(obj, 'created', None) or now,
            'updated_at': now,
        }
        stmt = pg_insert(ObjectModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ObjectModel.id],
            set_={
                'name': stmt.excluded.name,
                'unique_name': stmt.excluded.unique_name,
                'document': stmt.excluded.document,
                'updated_at': stmt.excluded.updated_at,
            },
        )
        try:
            await self._ensure_initialized()
            async with self.session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except IntegrityError as exc:
            if is_unique_violation(exc) and name is not None:
                return Err(Collision(kind=kind_name(kind), name=name))
            return Err(
                StoreError(
                    code=StoreErrorCode.SAVE_FAILED,
                    message=f'Integrity error saving {kind_name(kind)} {name!r}: {exc}',
                    retryable=False,
                    exception=exc,
                )
            )
        except Exception as exc:
            self.logger.error(f'Failed to save {kind_name(kind)} {name!r}: {exc}')
            return Err(
                StoreError(
                    code=StoreErrorCode.SAVE_FAILED,
                    message=f'Failed to save {kind_name(kind)} {name!r}: {exc}',
                    retryable=is_retryable_connection_error(exc),
                    exception=exc,
                )
            )
        return Ok(obj)

    async def delete(self, obj: Any) -> None:
        try:
            await self._ensure_initialized()
            async with self.session_factory() as session:
                row = await session.get(ObjectModel, getattr(obj, 'id'))
                if row is not None:
                    await session.delete(row)
                    await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            raise self._read_failed(f'delete {kind_name(type(obj))}', exc) from exc

    async def commit(self) -> None:
        # Every save commits its own transaction.
        return None

    @asynccontextmanager
    async def lock(
        self, kind: type[Any], obj_id: str, timeout: float
    ) -> AsyncIterator[None]:
        key = _advisory_key(f'caseflow-lock:{kind_name(kind)}:{obj_id}')
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        async with self.async_engine.connect() as conn:
            while True:
                acquired = (await conn.execute(TRY_ADVISORY_LOCK_SQL, {'key': key})).scalar()
                await conn.commit()
                if acquired:
                    break
                if loop.time() >= deadline:
                    raise LockTimeoutError(
                        message=f'could not lock {kind_name(kind)} {obj_id} within {timeout}s',
                        code=ErrorCode.LOCK_TIMEOUT,
                    )
                await asyncio.sleep(_LOCK_POLL_INTERVAL_S)
            try:
                yield
            finally:
                await conn.execute(ADVISORY_UNLOCK_SQL, {'key': key})
                await conn.commit()

    def decache(self) -> None:
        """Drop resolved model classes so reloaded modules are picked up."""
        clear_serde_caches()

    async def close_async(self) -> StoreResult[None]:
        try:
            await self.async_engine.dispose()
            return Ok(None)
        except Exception as exc:
            return Err(
                StoreError(
                    code=StoreErrorCode.CLOSE_FAILED,
                    message=f'Failed to dispose engine: {exc}',
                    retryable=False,
                    exception=exc,
                )
            )
