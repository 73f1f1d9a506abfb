"""In-process Repository used by tests and single-host tools."""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, TypeVar

from result import Err, Ok

from caseflow.core.errors import ErrorCode, LockTimeoutError
from caseflow.core.logging import get_logger
from caseflow.core.persistence.base import Filter, kind_name, unique_names
from caseflow.core.persistence.result_types import Collision, SaveResult

T = TypeVar('T')


class InMemoryRepository:
    """
    Dict-backed store that deep-copies on every read and write so callers
    never share state, and enforces per-kind unique names like the
    PostgreSQL backend does.
    """

    def __init__(self) -> None:
        self.logger = get_logger('repository')
        self._objects: dict[str, dict[str, Any]] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str], int] = {}
        self.saves = 0

    def _bucket(self, kind: type[Any] | str) -> dict[str, Any]:
        key = kind if isinstance(kind, str) else kind_name(kind)
        return self._objects.setdefault(key, {})

    async def get(self, kind: type[T], obj_id: str) -> T | None:
        obj = self._bucket(kind).get(obj_id)
        return copy.deepcopy(obj) if obj is not None else None

    async def get_by_name(self, kind: type[T], name: str) -> T | None:
        for obj in self._bucket(kind).values():
            if getattr(obj, 'name', None) == name:
                return copy.deepcopy(obj)
        return None

    async def search(self, kind: type[T], flt: Filter | None = None) -> AsyncIterator[T]:
        flt = flt or Filter()
        matched = [o for o in list(self._bucket(kind).values()) if flt.matches(o)]
        if flt.order_by is not None:
            matched.sort(key=flt.sort_key, reverse=flt.descending)
        if flt.limit is not None:
            matched = matched[: flt.limit]
        for obj in matched:
            yield copy.deepcopy(obj)

    async def count(self, kind: type[T], flt: Filter | None = None) -> int:
        flt = flt or Filter()
        return sum(1 for o in self._bucket(kind).values() if flt.matches(o))

    async def save(self, obj: T) -> SaveResult[T]:
        kind = type(obj)
        bucket = self._bucket(kind)
        obj_id: str = getattr(obj, 'id')
        name = getattr(obj, 'name', None)
        if unique_names(kind) and name is not None:
            for other_id, other in bucket.items():
                if other_id != obj_id and getattr(other, 'name', None) == name:
                    return Err(Collision(kind=kind_name(kind), name=name))
        bucket[obj_id] = copy.deepcopy(obj)
        self.saves += 1
        return Ok(obj)

    async def delete(self, obj: Any) -> None:
        self._bucket(type(obj)).pop(getattr(obj, 'id'), None)

    async def commit(self) -> None:
        return None

    @asynccontextmanager
    async def lock(
        self, kind: type[Any], obj_id: str, timeout: float
    ) -> AsyncIterator[None]:
        key = (kind_name(kind), obj_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except (asyncio.TimeoutError, TimeoutError):
                raise LockTimeoutError(
                    message=f'could not lock {key[0]} {obj_id} within {timeout}s',
                    code=ErrorCode.LOCK_TIMEOUT,
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            # Entries live only while a holder or waiter still needs them.
            remaining = self._lock_users.get(key, 1) - 1
            if remaining:
                self._lock_users[key] = remaining
            else:
                self._lock_users.pop(key, None)
                self._locks.pop(key, None)

    def decache(self) -> None:
        return None

    def clear(self) -> None:
        self._objects.clear()
        self._locks.clear()
        self._lock_users.clear()
