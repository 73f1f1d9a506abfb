"""Repository protocol and the query filter shared by all backends."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol, TypeVar

from caseflow.core.persistence.result_types import SaveResult

T = TypeVar('T')


def kind_name(kind: type[Any]) -> str:
    """Storage key for a model class."""
    return kind.__name__


def unique_names(kind: type[Any]) -> bool:
    return bool(getattr(kind, 'UNIQUE_NAMES', False))


@dataclass
class Filter:
    """
    Query over one kind of object.

    - eq: field -> value equality; a None value matches null fields
    - name_prefix: name starts with this text
    - where: extra predicate evaluated in Python after the store query
    - order_by: 'created' or 'name'
    - limit: applied after ``where``
    """

    eq: dict[str, Any] = field(default_factory=lambda: {})
    name_prefix: str | None = None
    where: Callable[[Any], bool] | None = None
    order_by: str | None = None
    descending: bool = False
    limit: int | None = None

    def matches(self, obj: Any) -> bool:
        for key, expected in self.eq.items():
            if getattr(obj, key, None) != expected:
                return False
        if self.name_prefix is not None:
            name = getattr(obj, 'name', None)
            if not isinstance(name, str) or not name.startswith(self.name_prefix):
                return False
        if self.where is not None and not self.where(obj):
            return False
        return True

    def sort_key(self, obj: Any) -> Any:
        assert self.order_by is not None
        return getattr(obj, self.order_by, None) or ''


class Repository(Protocol):
    """Transactional object store used by every coordinator.

    Every read returns a fresh copy; mutating it has no effect until saved.
    """

    async def get(self, kind: type[T], obj_id: str) -> T | None: ...

    async def get_by_name(self, kind: type[T], name: str) -> T | None: ...

    def search(self, kind: type[T], flt: Filter | None = None) -> AsyncIterator[T]: ...

    async def count(self, kind: type[T], flt: Filter | None = None) -> int: ...

    async def save(self, obj: T) -> SaveResult[T]: ...

    async def delete(self, obj: Any) -> None: ...

    async def commit(self) -> None: ...

    def lock(
        self, kind: type[Any], obj_id: str, timeout: float
    ) -> AbstractAsyncContextManager[None]: ...

    def decache(self) -> None: ...


async def collect(repo: Repository, kind: type[T], flt: Filter | None = None) -> list[T]:
    """Drain ``repo.search`` into a list."""
    return [obj async for obj in repo.search(kind, flt)]
