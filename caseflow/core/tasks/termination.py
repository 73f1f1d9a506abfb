"""TerminationCoordinator: orphan recovery and local or remote termination."""

from __future__ import annotations

from typing import Any, Mapping

from result import is_err

from caseflow.core.defaults import RECORD_LOCK_TIMEOUT_S
from caseflow.core.errors import ErrorCode, PersistenceError
from caseflow.core.logging import get_logger
from caseflow.core.models.case import Message
from caseflow.core.models.records import (
    Command,
    ExecutionRecord,
    PartitionResult,
    ScheduleState,
)
from caseflow.core.persistence.base import Filter, Repository, collect
from caseflow.core.tasks.results import ResultCoordinator
from caseflow.core.types.status import CommandName, CompletionStatus, RecordType
from caseflow.core.utils.clock import utcnow
from caseflow.core.workflows.engine import WorkflowEngine
from caseflow.core.workflows.result_types import EngineErrorCode

logger = get_logger('termination')


def _terminate_partition(partition: PartitionResult, text: str) -> None:
    partition.terminated = True
    partition.live = False
    partition.completed = utcnow()
    partition.completion_status = CompletionStatus.TERMINATED
    partition.messages.append(Message.warn(text))


class TerminationCoordinator:
    """
    Stops running records.

    Local generic tasks are stopped cooperatively: the record is flagged
    ``terminate_requested`` and the task's TaskMonitor notices it. Records
    running on another host get a Command that the owning host's
    CommandProcessor executes.
    """

    def __init__(
        self,
        repo: Repository,
        results: ResultCoordinator,
        engine: WorkflowEngine,
        *,
        host: str,
        force_remote_termination: bool = False,
    ) -> None:
        self.repo = repo
        self.results = results
        self.engine = engine
        self.host = host
        self.force_remote_termination = force_remote_termination

    def _is_remote(self, host: str | None) -> bool:
        return self.force_remote_termination or (host is not None and host != self.host)

    async def _save(self, record: ExecutionRecord) -> None:
        save_r = await self.repo.save(record)
        if is_err(save_r):
            raise PersistenceError(
                message=f"unable to save record '{record.name}'",
                code=ErrorCode.PERSISTENCE_FAILED,
                notes=[str(save_r.err_value)],
            )

    # -- startup recovery -----------------------------------------------------

    async def sweep_orphans(self) -> int:
        """
        Terminate records this host left running when it last stopped.

        Called once at startup, before any new work is accepted. Records
        owned by other hosts are left alone. Returns the number of records
        or partitions terminated.
        """
        incomplete = await collect(
            self.repo, ExecutionRecord, Filter(eq={'completed': None}, order_by='created')
        )
        swept = 0
        for record in incomplete:
            try:
                if record.partitioned:
                    swept += await self._sweep_partitions(record)
                elif record.host == self.host and (
                    record.type is not RecordType.WORKFLOW or record.live
                ):
                    await self._sweep_record(record)
                    swept += 1
            except Exception as exc:
                logger.error(f'Orphan recovery of {record.name} failed: {exc}')
        if swept:
            logger.warning(f'Recovered {swept} orphaned task(s) on {self.host}')
        return swept

    async def _sweep_partitions(self, record: ExecutionRecord) -> int:
        async with self.repo.lock(ExecutionRecord, record.id, RECORD_LOCK_TIMEOUT_S):
            fresh = await self.repo.get(ExecutionRecord, record.id)
            if fresh is None or fresh.is_complete:
                return 0
            swept = 0
            for partition in fresh.partitions:
                if partition.is_complete or partition.host != self.host:
                    continue
                _terminate_partition(
                    partition, f'Partition {partition.name} terminated by restart of {self.host}'
                )
                swept += 1
            if not swept:
                return 0
            await self._save(fresh)
            logger.info(f'Terminated {swept} orphaned partition(s) of {fresh.name}')
            if fresh.partitions_complete():
                await self.results.finalize(fresh)
            return swept

    async def _sweep_record(self, record: ExecutionRecord) -> None:
        record.terminated = True
        record.live = False
        record.add_message(
            Message.warn(f"Task '{record.name}' was terminated by restart of {self.host}")
        )
        await self._save(record)
        await self._unblock_schedule(record)
        await self.results.finalize(record)
        logger.info(f'Terminated orphaned record {record.name}')

    async def _unblock_schedule(self, record: ExecutionRecord) -> None:
        """Release the schedule that launched ``record``; other schedules keep their state."""
        if record.schedule_name is None:
            return
        state = await self.repo.get_by_name(ScheduleState, record.schedule_name)
        if state is None or not state.blocked:
            return
        state.blocked = False
        state.blocked_since = None
        save_r = await self.repo.save(state)
        if is_err(save_r):
            logger.error(f'Unable to unblock schedule {state.name}: {save_r.err_value}')
        else:
            logger.debug(f'Unblocked schedule {state.name}')

    # -- termination ----------------------------------------------------------

    async def _load(self, record: ExecutionRecord | str) -> ExecutionRecord | None:
        record_id = record if isinstance(record, str) else record.id
        return await self.repo.get(ExecutionRecord, record_id)

    async def terminate(self, record: ExecutionRecord | str) -> bool:
        """Terminate a record wherever it runs.

        Returns False when the record is gone or already complete. Remote
        terminations return True once the commands are queued; the record
        completes when the owning host processes them.
        """
        fresh = await self._load(record)
        if fresh is None or fresh.is_complete:
            return False

        if fresh.type is RecordType.WORKFLOW:
            return await self._terminate_workflow(fresh)
        if fresh.partitioned:
            return await self._terminate_partitions(fresh)
        if fresh.launched is not None and self._is_remote(fresh.host):
            await self.send_command(fresh, CommandName.TERMINATE)
            return True
        if fresh.launched is None:
            fresh.terminated = True
            await self._save(fresh)
            await self.results.finalize(fresh)
            return True
        await self.terminate_local(fresh)
        return True

    async def _terminate_workflow(self, record: ExecutionRecord) -> bool:
        if record.case_id is not None:
            terminate_r = await self.engine.terminate(record.case_id)
            if not is_err(terminate_r):
                return True
            if terminate_r.err_value.code is not EngineErrorCode.CASE_NOT_FOUND:
                logger.error(
                    f'Unable to terminate case of {record.name}: '
                    f'{terminate_r.err_value.message}'
                )
                return False
        fresh = await self._load(record) or record
        if fresh.is_complete:
            return True
        fresh.terminated = True
        await self._save(fresh)
        await self.results.finalize(fresh)
        return True

    async def _terminate_partitions(self, record: ExecutionRecord) -> bool:
        remote: list[PartitionResult] = []
        async with self.repo.lock(ExecutionRecord, record.id, RECORD_LOCK_TIMEOUT_S):
            fresh = await self.repo.get(ExecutionRecord, record.id)
            if fresh is None or fresh.is_complete:
                return False
            for partition in fresh.partitions:
                if partition.is_complete:
                    continue
                if partition.launched is None:
                    _terminate_partition(partition, f'Partition {partition.name} was terminated')
                elif self._is_remote(partition.host):
                    remote.append(partition)
                else:
                    partition.terminate_requested = True
            await self._save(fresh)
            done = fresh.partitions_complete()

        for partition in remote:
            await self.send_command(fresh, CommandName.TERMINATE, partition=partition)
        if done:
            await self.results.finalize(fresh)
        return True

    async def terminate_local(self, record: ExecutionRecord) -> None:
        """Ask a task running on this host to stop at its next check."""
        async with self.repo.lock(ExecutionRecord, record.id, RECORD_LOCK_TIMEOUT_S):
            fresh = await self.repo.get(ExecutionRecord, record.id)
            if fresh is None or fresh.is_complete:
                return
            fresh.terminate_requested = True
            await self._save(fresh)
        if fresh.schedule_name is not None:
            state = await self.repo.get_by_name(ScheduleState, fresh.schedule_name)
            if state is not None:
                state.terminated = True
                await self.repo.save(state)
        logger.info(f'Requested termination of {fresh.name}')

    async def send_command(
        self,
        record: ExecutionRecord,
        command: CommandName,
        *,
        partition: PartitionResult | None = None,
        arguments: Mapping[str, Any] | None = None,
    ) -> list[Command]:
        """Queue ``command`` for the host(s) running the record or partition."""
        if partition is not None:
            hosts = [partition.host] if partition.host else []
        elif record.partitioned:
            hosts = sorted(
                {p.host for p in record.partitions if p.host and not p.is_complete}
            )
        else:
            hosts = [record.host] if record.host else []

        sent: list[Command] = []
        partition_name = partition.name if partition is not None else None
        for host in hosts:
            cmd = Command(
                name=Command.format_name(record.name, command, host, partition_name),
                host=host,
                command=command,
                record_id=record.id,
                record_name=record.name,
                partition_name=partition_name,
                arguments=dict(arguments or {}),
            )
            save_r = await self.repo.save(cmd)
            if is_err(save_r):
                logger.error(f'Unable to queue {cmd.name}: {save_r.err_value}')
                continue
            logger.info(f'Queued {cmd.name}')
            sent.append(cmd)
        return sent
