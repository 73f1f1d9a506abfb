"""Unit tests for PartitionPlanner sizing and the partition() splitter."""

from __future__ import annotations

from datetime import timedelta

import pytest

from caseflow.core.app import Caseflow
from caseflow.core.models.records import ClusterNode, ExecutionRecord, JobDefinition
from caseflow.core.persistence.memory import InMemoryRepository
from caseflow.core.tasks.partitions import partition
from caseflow.core.utils.clock import utcnow

pytestmark = pytest.mark.unit


class TestPartitionSplit:
    def test_splits_into_near_equal_chunks(self) -> None:
        assert partition([1, 2, 3, 4, 5], 2) == [[1, 2, 3], [4, 5]]
        assert partition(list('abcdef'), 3) == [['a', 'b'], ['c', 'd'], ['e', 'f']]

    def test_count_is_capped_by_items(self) -> None:
        assert partition(['a', 'b'], 5) == [['a'], ['b']]

    def test_non_positive_count_means_one_chunk(self) -> None:
        assert partition([1, 2, 3], 0) == [[1, 2, 3]]

    def test_empty_input(self) -> None:
        assert partition([], 4) == []


class TestSuggestedPartitionCount:
    async def _nodes(self, repo: InMemoryRepository, *nodes: ClusterNode) -> None:
        for node in nodes:
            await repo.save(node)

    @pytest.mark.asyncio
    async def test_counts_eligible_nodes(
        self, app: Caseflow, repo: InMemoryRepository
    ) -> None:
        now = utcnow()
        await self._nodes(
            repo,
            ClusterNode(name='open', heartbeat=now),
            ClusterNode(name='small', heartbeat=now, max_threads=2),
            ClusterNode(name='quiet', max_threads=8),
            ClusterNode(name='off', heartbeat=now, inactive=True),
            ClusterNode(name='stale', heartbeat=now - timedelta(hours=1)),
            ClusterNode(name='picky', heartbeat=now, allowed_jobs=['Other']),
        )
        app.register_job(JobDefinition(name='Crunch', max_threads=4))

        assert await app.suggested_partition_count('Crunch') == 4 + 2 + 4

    @pytest.mark.asyncio
    async def test_capability_must_be_served(
        self, app: Caseflow, repo: InMemoryRepository
    ) -> None:
        now = utcnow()
        await self._nodes(
            repo,
            ClusterNode(name='reporter', heartbeat=now, services=['reports']),
            ClusterNode(name='plain', heartbeat=now),
            ClusterNode(name='allowed', heartbeat=now, services=['reports'], allowed_jobs=['Print']),
        )
        job = JobDefinition(name='Print', capability='reports')

        assert await app.suggested_partition_count(job) == 2

    @pytest.mark.asyncio
    async def test_uncapped_job_counts_one_per_node(
        self, app: Caseflow, repo: InMemoryRepository
    ) -> None:
        await self._nodes(
            repo,
            ClusterNode(name='one', max_threads=16),
            ClusterNode(name='two'),
        )

        assert await app.suggested_partition_count(JobDefinition(name='Any')) == 2

    @pytest.mark.asyncio
    async def test_empty_cluster(self, app: Caseflow) -> None:
        assert await app.suggested_partition_count(JobDefinition(name='Lonely')) == 0

    @pytest.mark.asyncio
    async def test_registered_host_counts_itself(self, app: Caseflow) -> None:
        await app.cluster.register(max_threads=3)

        assert await app.suggested_partition_count(JobDefinition(name='Self', max_threads=8)) == 3


class TestCreatePartitions:
    @pytest.mark.asyncio
    async def test_attaches_pending_partitions_once(
        self, app: Caseflow, repo: InMemoryRepository
    ) -> None:
        record = await app.results.create_result(app.register_job(JobDefinition(name='Fan')))

        await app.create_partitions(record, ['a', 'b'])
        await app.create_partitions(record, ['b', 'c'])

        stored = await repo.get(ExecutionRecord, record.id)
        assert stored is not None
        assert stored.partitioned is True
        assert [p.name for p in stored.partitions] == ['a', 'b', 'c']
        assert all(not p.is_complete and p.host is None for p in stored.partitions)
