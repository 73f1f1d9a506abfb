"""Shared fixtures for unit tests: an in-memory app with fast naming retries."""

from __future__ import annotations

import pytest

from caseflow.core.app import Caseflow
from caseflow.core.models.app import AppConfig
from caseflow.core.models.naming import NamingConfig
from caseflow.core.notify import LoggingNotifier
from caseflow.core.persistence.memory import InMemoryRepository

HOST = 'host-a'
REMOTE_HOST = 'host-b'


def make_config(**overrides: object) -> AppConfig:
    values: dict[str, object] = {
        'host': HOST,
        'naming': NamingConfig(backoff_every=4, backoff_min_ms=0, backoff_max_ms=5),
    }
    values.update(overrides)
    return AppConfig(**values)  # type: ignore[arg-type]


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def app(repo: InMemoryRepository, notifier: LoggingNotifier) -> Caseflow:
    return Caseflow(make_config(), repository=repo, notifier=notifier)


@pytest.fixture
def remote_app(repo: InMemoryRepository) -> Caseflow:
    """A second host sharing the same repository."""
    return Caseflow(make_config(host=REMOTE_HOST), repository=repo, notifier=LoggingNotifier())
