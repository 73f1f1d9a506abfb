"""Typed error types for Repository operations.

Result propagation policy
-------------------------
``Repository.save`` returns ``SaveResult[T]``: ``Ok(obj)`` or
``Err(Collision | StoreError)``. Callers branch on the error *type*:

* ``Collision`` -- another object of the same kind already owns the name.
  Name negotiation retries with the next qualifier.
* ``StoreError`` -- the store itself failed. ``retryable`` says whether a
  transient connection problem caused it.

Where Result stops and exceptions take over (the "stop line"):

* **Repository layer** -- returns ``SaveResult`` / ``StoreResult`` for
  writes and schema setup. Reads raise ``PersistenceError``.
* **ResultCoordinator.finalize** -- converts a failed closing save into
  ``PersistenceError``; that is the only save whose failure is fatal.
* **WorkflowEngine checkpoints** -- log a failed save and continue; the
  next checkpoint retries it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TypeAlias, TypeVar

from result import Result

T = TypeVar('T')


class StoreErrorCode(str, Enum):
    """Categorized repository failure codes."""

    SCHEMA_INIT_FAILED = 'SCHEMA_INIT_FAILED'
    SAVE_FAILED = 'SAVE_FAILED'
    SERIALIZATION_FAILED = 'SERIALIZATION_FAILED'
    CLOSE_FAILED = 'CLOSE_FAILED'


@dataclass(slots=True, frozen=True)
class Collision:
    """Another object of ``kind`` already holds ``name``."""

    kind: str
    name: str


@dataclass(slots=True, frozen=True)
class StoreError:
    """Error payload carried inside Err(...) for store failures.

    Fields:
        code: which operation category failed
        message: human-readable description
        retryable: whether the caller can retry this operation
        exception: the original cause (if any)
    """

    code: StoreErrorCode
    message: str
    retryable: bool
    exception: BaseException | None = None


SaveError: TypeAlias = Collision | StoreError

SaveResult: TypeAlias = Result[T, SaveError]

StoreResult: TypeAlias = Result[T, StoreError]
