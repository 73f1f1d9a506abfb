"""Cluster membership: which hosts exist and what they may run."""

from __future__ import annotations

import asyncio
from typing import Protocol, Sequence

from result import is_err

from caseflow.core.logging import get_logger
from caseflow.core.models.records import ClusterNode
from caseflow.core.persistence.base import Repository, collect
from caseflow.core.utils.clock import utcnow

logger = get_logger('cluster')


class ClusterInfo(Protocol):
    async def nodes(self) -> Sequence[ClusterNode]: ...


def _collect_psutil_metrics() -> tuple[float, float]:
    """Collect process metrics. Blocking, run it in a thread."""
    import psutil

    process = psutil.Process()
    memory_info = process.memory_info()
    return (
        memory_info.rss / 1024 / 1024,
        process.cpu_percent(interval=0.1),
    )


class RepositoryClusterInfo:
    """ClusterInfo reading ClusterNode records; each host refreshes its own."""

    def __init__(self, repo: Repository, host: str) -> None:
        self.repo = repo
        self.host = host

    async def nodes(self) -> Sequence[ClusterNode]:
        return await collect(self.repo, ClusterNode)

    async def register(
        self,
        *,
        services: Sequence[str] = (),
        max_threads: int = 0,
        allowed_jobs: Sequence[str] | None = None,
    ) -> ClusterNode:
        """Create or update this host's node record."""
        node = await self.repo.get_by_name(ClusterNode, self.host)
        if node is None:
            node = ClusterNode(name=self.host)
        node.inactive = False
        node.services = list(services)
        node.max_threads = max_threads
        node.allowed_jobs = list(allowed_jobs) if allowed_jobs is not None else None
        node.heartbeat = utcnow()
        save_r = await self.repo.save(node)
        if is_err(save_r):
            logger.error(f'Failed to register node {self.host}: {save_r.err_value}')
        return node

    async def heartbeat(self) -> ClusterNode | None:
        """Refresh the local node's heartbeat and process metrics."""
        node = await self.repo.get_by_name(ClusterNode, self.host)
        if node is None:
            logger.debug(f'Node {self.host} is not registered; skipping heartbeat')
            return None
        try:
            rss_mb, cpu_pct = await asyncio.to_thread(_collect_psutil_metrics)
            node.memory_mb = rss_mb
            node.cpu_percent = cpu_pct
        except Exception as exc:
            logger.warning(f'Failed to collect process metrics: {exc}')
        node.heartbeat = utcnow()
        save_r = await self.repo.save(node)
        if is_err(save_r):
            logger.error(f'Heartbeat save failed for {self.host}: {save_r.err_value}')
        return node

    async def deactivate(self) -> None:
        node = await self.repo.get_by_name(ClusterNode, self.host)
        if node is None:
            return
        node.inactive = True
        await self.repo.save(node)
