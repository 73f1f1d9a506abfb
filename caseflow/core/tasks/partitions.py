"""PartitionPlanner: sizes and splits fanned-out jobs across the cluster."""

from __future__ import annotations

from typing import Sequence, TypeVar

from result import is_err

from caseflow.core.cluster import ClusterInfo
from caseflow.core.errors import ErrorCode, PersistenceError
from caseflow.core.logging import get_logger
from caseflow.core.models.records import ExecutionRecord, JobDefinition, PartitionResult
from caseflow.core.persistence.base import Repository
from caseflow.core.registry.definitions import DefinitionRegistry
from caseflow.core.utils.clock import utcnow

logger = get_logger('partitions')

T = TypeVar('T')


def partition(items: Sequence[T], count: int) -> list[list[T]]:
    """Split ``items`` into at most ``count`` contiguous, nearly equal chunks."""
    if not items:
        return []
    count = max(1, min(count, len(items)))
    size, extra = divmod(len(items), count)
    chunks: list[list[T]] = []
    start = 0
    for index in range(count):
        end = start + size + (1 if index < extra else 0)
        chunks.append(list(items[start:end]))
        start = end
    return chunks


class PartitionPlanner:
    def __init__(
        self,
        cluster: ClusterInfo,
        definitions: DefinitionRegistry,
        *,
        stale_threshold_ms: int,
    ) -> None:
        self.cluster = cluster
        self.definitions = definitions
        self.stale_threshold_ms = stale_threshold_ms

    async def suggested_partition_count(self, job: JobDefinition | str) -> int:
        """
        How many partitions the cluster can run at once for ``job``.

        Each active, fresh node allowed to run the job contributes
        ``min(node.max_threads, job.max_threads)``; a node max of 0 does not
        cap. This is an estimate, not a reservation.
        """
        if isinstance(job, str):
            job = self.definitions.get_job(job)
        job_max = job.max_threads if job.max_threads > 0 else 1
        now = utcnow()

        total = 0
        for node in await self.cluster.nodes():
            if node.inactive or node.is_stale(now, self.stale_threshold_ms):
                continue
            if not node.allows(job.name):
                continue
            if job.capability is not None and job.capability not in node.services:
                continue
            total += job_max if node.max_threads <= 0 else min(node.max_threads, job_max)
        logger.debug(f'Suggested {total} partition(s) for {job.name}')
        return total

    async def create_partitions(
        self, repo: Repository, record: ExecutionRecord, names: Sequence[str]
    ) -> ExecutionRecord:
        """Attach pending partitions to ``record`` and save it."""
        existing = {p.name for p in record.partitions}
        for name in names:
            if name not in existing:
                record.partitions.append(PartitionResult(name=name))
        record.partitioned = True
        save_r = await repo.save(record)
        if is_err(save_r):
            raise PersistenceError(
                message=f"unable to save partitions of '{record.name}'",
                code=ErrorCode.PERSISTENCE_FAILED,
                notes=[str(save_r.err_value)],
            )
        logger.info(f'Partitioned {record.name} into {len(record.partitions)}')
        return record
