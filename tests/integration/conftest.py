"""Integration fixtures: a PostgresRepository on a clean caseflow_objects table.

Set CASEFLOW_TEST_DATABASE_URL (directly or in .env.test) to run these tests.
"""

from __future__ import annotations

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from result import is_ok
from sqlalchemy import text

from caseflow.core.app import Caseflow
from caseflow.core.models.app import AppConfig
from caseflow.core.models.naming import NamingConfig
from caseflow.core.models.repository import PostgresConfig
from caseflow.core.persistence.postgres import PostgresRepository

DB_URL = os.environ.get('CASEFLOW_TEST_DATABASE_URL')


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    if DB_URL:
        return
    skip = pytest.mark.skip(reason='CASEFLOW_TEST_DATABASE_URL is not set')
    for item in items:
        if 'integration' in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def pg_config() -> PostgresConfig:
    assert DB_URL is not None
    return PostgresConfig(database_url=DB_URL, pool_size=5, max_overflow=5)


@pytest_asyncio.fixture
async def pg_repo(pg_config: PostgresConfig) -> AsyncGenerator[PostgresRepository, None]:
    """Repository with its schema created and every stored object removed."""
    repo = PostgresRepository(pg_config)
    init_r = await repo.ensure_schema_initialized()
    assert is_ok(init_r), init_r
    async with repo.async_engine.begin() as conn:
        await conn.execute(text('TRUNCATE TABLE caseflow_objects'))
    yield repo
    await repo.close_async()


@pytest.fixture
def pg_app(pg_repo: PostgresRepository) -> Caseflow:
    config = AppConfig(
        host='pg-host',
        naming=NamingConfig(backoff_every=4, backoff_min_ms=0, backoff_max_ms=5),
    )
    return Caseflow(config, repository=pg_repo)
