"""Unit tests for InMemoryRepository record locks."""

from __future__ import annotations

import asyncio

import pytest

from caseflow.core.errors import LockTimeoutError
from caseflow.core.models.records import ExecutionRecord
from caseflow.core.persistence.memory import InMemoryRepository

pytestmark = pytest.mark.unit


class TestRecordLocks:
    @pytest.mark.asyncio
    async def test_released_lock_leaves_no_entry(self) -> None:
        repo = InMemoryRepository()

        for record_id in ('r1', 'r2', 'r3'):
            async with repo.lock(ExecutionRecord, record_id, 1.0):
                assert len(repo._locks) == 1

        assert repo._locks == {}
        assert repo._lock_users == {}

    @pytest.mark.asyncio
    async def test_entry_kept_while_a_waiter_remains(self) -> None:
        repo = InMemoryRepository()
        order: list[str] = []

        async def second() -> None:
            async with repo.lock(ExecutionRecord, 'r1', 1.0):
                order.append('second')

        async with repo.lock(ExecutionRecord, 'r1', 1.0):
            waiter = asyncio.create_task(second())
            await asyncio.sleep(0)
            assert repo._lock_users[('ExecutionRecord', 'r1')] == 2
            order.append('first')

        assert ('ExecutionRecord', 'r1') in repo._locks
        await waiter

        assert order == ['first', 'second']
        assert repo._locks == {}

    @pytest.mark.asyncio
    async def test_timed_out_waiter_releases_its_claim(self) -> None:
        repo = InMemoryRepository()

        async with repo.lock(ExecutionRecord, 'r1', 1.0):
            with pytest.raises(LockTimeoutError):
                async with repo.lock(ExecutionRecord, 'r1', 0.01):
                    pass
            assert repo._lock_users[('ExecutionRecord', 'r1')] == 1

        assert repo._locks == {}
