from caseflow.core.persistence.base import Filter, Repository, collect
from caseflow.core.persistence.memory import InMemoryRepository
from caseflow.core.persistence.postgres import PostgresRepository
from caseflow.core.persistence.result_types import (
    Collision,
    SaveError,
    SaveResult,
    StoreError,
    StoreErrorCode,
    StoreResult,
)

__all__ = [
    'Filter',
    'Repository',
    'collect',
    'InMemoryRepository',
    'PostgresRepository',
    'Collision',
    'SaveError',
    'SaveResult',
    'StoreError',
    'StoreErrorCode',
    'StoreResult',
]
