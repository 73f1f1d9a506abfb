"""Typed error types for WorkflowEngine entry points.

Follows the same pattern as ``StoreError`` in
``caseflow/core/persistence/result_types.py``.

Where Result stops and exceptions take over:

* ``launch`` / ``advance`` / ``resume`` / ``terminate`` / ``process_events``
  return ``EngineResult``. They never raise for case-level failures:
  exceptions thrown while stepping become error messages on the
  outermost case and force completion with Error status.

* ``DecisionValidationError`` is carried in ``exception`` with code
  ``VALIDATION_FAILED``; the case is left exactly as it was.

* ``asyncio.CancelledError`` is never converted.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TypeAlias, TypeVar

from result import Result

T = TypeVar('T')


class EngineErrorCode(str, Enum):
    """Categorized engine failure codes."""

    DEFINITION_NOT_FOUND = 'DEFINITION_NOT_FOUND'
    INVALID_DEFINITION = 'INVALID_DEFINITION'
    CASE_NOT_FOUND = 'CASE_NOT_FOUND'
    WORK_ITEM_NOT_FOUND = 'WORK_ITEM_NOT_FOUND'
    APPROVAL_NOT_FOUND = 'APPROVAL_NOT_FOUND'
    VALIDATION_FAILED = 'VALIDATION_FAILED'
    PERSISTENCE_FAILED = 'PERSISTENCE_FAILED'
    INTERNAL_FAILED = 'INTERNAL_FAILED'


@dataclass(slots=True, frozen=True)
class EngineError:
    """Error payload carried inside ``Err(...)`` for engine operations.

    Fields:
        code: which failure category
        message: human-readable description
        case_id: the case concerned, when known
        exception: the original cause (if any)
    """

    code: EngineErrorCode
    message: str
    case_id: str | None = None
    exception: BaseException | None = None


EngineResult: TypeAlias = Result[T, EngineError]
