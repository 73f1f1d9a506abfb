# caseflow/core/registry/base.py
from __future__ import annotations
from typing import Dict, Iterator, MutableMapping, Generic, TypeVar
from caseflow.core.errors import RegistryError, ErrorCode

T = TypeVar('T')


class NotRegistered(RegistryError, KeyError):
    """Raised when a name is not present in a registry.

    Inherits from KeyError so MutableMapping.__contains__ works correctly
    (it catches KeyError to implement the ``in`` operator).
    """

    def __init__(self, name: str, kind: str = 'capability') -> None:
        RegistryError.__init__(
            self,
            message=f"{kind} '{name}' not registered",
            code=ErrorCode.NOT_REGISTERED,
            notes=[f"requested {kind}: '{name}'"],
            help_text=f'register the {kind} on the app before it is referenced',
        )
        self.name = name
        self.kind = kind


class DuplicateNameError(RegistryError):
    """Raised when a name is registered more than once within the same registry."""

    def __init__(self, name: str, kind: str = 'capability', context: str = '') -> None:
        super().__init__(
            message=f"duplicate {kind} name '{name}'",
            code=ErrorCode.DUPLICATE_NAME,
            notes=[context] if context else [],
            help_text=f'each {kind} name must be unique within a caseflow app',
        )
        self.name = name
        self.kind = kind


class Registry(MutableMapping[str, T], Generic[T]):
    """Registry mapping name -> registered object.

    Tracks source locations to detect duplicate registrations:
    - Same name + same source: silently skip (re-import scenario)
    - Same name + different source: raise DuplicateNameError
    """

    def __init__(self, kind: str, initial: Dict[str, T] | None = None) -> None:
        self.kind = kind
        self._data: Dict[str, T] = dict(initial or {})
        self._sources: Dict[str, str] = {}  # name -> "file:lineno"

    def __getitem__(self, key: str) -> T:
        try:
            return self._data[key]
        except KeyError:
            raise NotRegistered(key, self.kind)

    def __setitem__(self, key: str, value: T) -> None:
        """Discourage direct assignment; enforce uniqueness like register()."""
        if key in self._data:
            raise DuplicateNameError(key, self.kind, 'detected via direct assignment')
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._sources.pop(key, None)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def register(
        self, obj: T, *, name: str, source: str | None = None, replace: bool = False
    ) -> T:
        """Insert ``obj`` under ``name``.

        Returns the existing object on a re-import from the same source.
        ``replace`` swaps an existing entry instead of raising.
        """
        if name in self._data and not replace:
            existing_source = self._sources.get(name)
            if existing_source and source and existing_source == source:
                return self._data[name]
            raise DuplicateNameError(name, self.kind, f'{self.kind} with this name already exists')
        self._data[name] = obj
        if source:
            self._sources[name] = source
        return obj

    def unregister(self, name: str) -> None:
        self._data.pop(name, None)
        self._sources.pop(name, None)

    def keys_list(self) -> list[str]:
        return list(self._data.keys())
