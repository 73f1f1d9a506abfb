"""Unit tests for record-name qualification and naming backoff."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from caseflow.core.models.naming import NamingConfig
from caseflow.core.models.records import ExecutionRecord
from caseflow.core.persistence.memory import InMemoryRepository
from caseflow.core.tasks.naming import (
    backoff_delay,
    get_qualifier,
    next_qualifier,
    qualify,
    timestamp_qualifier,
    unqualify,
)

pytestmark = pytest.mark.unit


class TestQualifiers:
    @pytest.mark.parametrize(
        'name, base, number',
        [
            ('Report', 'Report', 0),
            ('Report - 3', 'Report', 3),
            ('Report - 1 - 12', 'Report - 1', 12),
            ('A - B', 'A - B', 0),
            ('Report - 0', 'Report - 0', 0),
            (' - 4', ' - 4', 0),
        ],
    )
    def test_unqualify_and_get_qualifier(self, name: str, base: str, number: int) -> None:
        assert unqualify(name) == base
        assert get_qualifier(name) == number

    def test_qualify(self) -> None:
        assert qualify('Nightly', 7) == 'Nightly - 7'

    def test_timestamp_qualifier(self) -> None:
        when = datetime(2025, 3, 1, 8, 5, 9, 123456, tzinfo=timezone.utc)
        assert timestamp_qualifier(when) == '2025-03-01 08:05:09.123+00:00'


class TestNextQualifier:
    @pytest.mark.asyncio
    async def test_first_qualifier_is_one(self) -> None:
        assert await next_qualifier(InMemoryRepository(), 'Fresh', 10) == 1

    @pytest.mark.asyncio
    async def test_follows_highest_recent_number(self) -> None:
        repo = InMemoryRepository()
        for name in ('Load', 'Load - 2', 'Load - 5', 'Loader - 9', 'Load - x'):
            await repo.save(ExecutionRecord(name=name))

        assert await next_qualifier(repo, 'Load', 10) == 6
        assert await next_qualifier(repo, 'Load - 5', 10) == 6


class TestBackoffDelay:
    def test_only_every_nth_attempt_sleeps(self) -> None:
        naming = NamingConfig(backoff_every=4, backoff_min_ms=100, backoff_max_ms=5000)

        delays = [backoff_delay(attempt, naming) for attempt in range(8)]

        assert [d is not None for d in delays] == [False, False, False, True] * 2

    def test_delay_is_within_bounds(self) -> None:
        naming = NamingConfig(backoff_every=1, backoff_min_ms=100, backoff_max_ms=5000)

        with patch('caseflow.core.tasks.naming.random.randint', return_value=2500) as randint:
            assert backoff_delay(0, naming) == 2.5

        randint.assert_called_once_with(100, 5000)
