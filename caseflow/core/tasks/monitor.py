"""Progress and cooperative-termination hooks for running tasks."""

from __future__ import annotations

from result import is_err

from caseflow.core.defaults import RECORD_LOCK_TIMEOUT_S
from caseflow.core.logging import get_logger
from caseflow.core.models.case import Message
from caseflow.core.models.records import ExecutionRecord, PartitionResult
from caseflow.core.persistence.base import Repository

logger = get_logger('monitor')


class TaskMonitor:
    """
    Handed to a running generic task (or one of its partitions).

    The task polls ``is_terminate_requested`` and stops on its own; nothing
    interrupts it from outside.
    """

    def __init__(
        self, repo: Repository, record_id: str, partition_name: str | None = None
    ) -> None:
        self.repo = repo
        self.record_id = record_id
        self.partition_name = partition_name

    def _target(self, record: ExecutionRecord) -> ExecutionRecord | PartitionResult | None:
        if self.partition_name is None:
            return record
        return record.get_partition(self.partition_name)

    async def update_progress(self, progress: str | None) -> None:
        async with self.repo.lock(ExecutionRecord, self.record_id, RECORD_LOCK_TIMEOUT_S):
            record = await self.repo.get(ExecutionRecord, self.record_id)
            if record is None:
                return
            record.progress = progress
            save_r = await self.repo.save(record)
            if is_err(save_r):
                logger.warning(f'Unable to save progress of {record.name}: {save_r.err_value}')

    async def is_terminate_requested(self) -> bool:
        record = await self.repo.get(ExecutionRecord, self.record_id)
        if record is None:
            return True
        if record.terminate_requested:
            return True
        target = self._target(record)
        return target is not None and target.terminate_requested

    async def add_message(self, message: Message) -> None:
        async with self.repo.lock(ExecutionRecord, self.record_id, RECORD_LOCK_TIMEOUT_S):
            record = await self.repo.get(ExecutionRecord, self.record_id)
            if record is None:
                return
            target = self._target(record)
            if target is None:
                logger.warning(
                    f'Record {record.name} has no partition {self.partition_name}'
                )
                return
            target.messages.append(message)
            save_r = await self.repo.save(record)
            if is_err(save_r):
                logger.warning(f'Unable to save message on {record.name}: {save_r.err_value}')
