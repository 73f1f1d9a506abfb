"""CommandProcessor: executes host-addressed commands on the local host."""

from __future__ import annotations

import sys
import threading
import traceback

from result import is_err

from caseflow.core.defaults import RECORD_LOCK_TIMEOUT_S
from caseflow.core.errors import CaseflowError, ErrorCode, PersistenceError
from caseflow.core.logging import get_logger
from caseflow.core.models.records import Command, ExecutionRecord
from caseflow.core.persistence.base import Filter, Repository, collect
from caseflow.core.tasks.termination import TerminationCoordinator
from caseflow.core.types.status import CommandName

logger = get_logger('commands')


def capture_stacks() -> dict[str, str]:
    """Formatted stack of every live thread, keyed by thread name."""
    names = {thread.ident: thread.name for thread in threading.enumerate()}
    stacks: dict[str, str] = {}
    for ident, frame in sys._current_frames().items():
        name = names.get(ident, f'thread-{ident}')
        stacks[name] = ''.join(traceback.format_stack(frame))
    return stacks


class CommandProcessor:
    """
    Polls the command channel for this host.

    Delivery is at-least-once: a command is deleted only after its handler
    succeeds, so handlers must tolerate running twice.
    """

    def __init__(
        self,
        repo: Repository,
        termination: TerminationCoordinator,
        *,
        host: str,
        max_attempts: int = 3,
    ) -> None:
        self.repo = repo
        self.termination = termination
        self.host = host
        self.max_attempts = max_attempts

    async def process(self) -> int:
        """Run every pending command for this host; returns how many succeeded."""
        pending = await collect(
            self.repo, Command, Filter(eq={'host': self.host}, order_by='created')
        )
        handled = 0
        for cmd in pending:
            try:
                await self._execute(cmd)
            except Exception as exc:
                cmd.attempts += 1
                cmd.error = exc.message if isinstance(exc, CaseflowError) else f'{type(exc).__name__}: {exc}'
                if cmd.attempts >= self.max_attempts:
                    logger.error(
                        f'Dropping {cmd.name} after {cmd.attempts} attempts: {cmd.error}'
                    )
                    await self.repo.delete(cmd)
                else:
                    logger.warning(f'{cmd.name} failed (attempt {cmd.attempts}): {cmd.error}')
                    await self.repo.save(cmd)
                continue
            await self.repo.delete(cmd)
            handled += 1
        return handled

    async def _execute(self, cmd: Command) -> None:
        logger.debug(f'Executing {cmd.name}')
        match cmd.command:
            case CommandName.TERMINATE:
                await self._terminate(cmd)
            case CommandName.STACK:
                await self._stack(cmd)

    async def _record(self, cmd: Command) -> ExecutionRecord | None:
        if cmd.record_id is None:
            return None
        return await self.repo.get(ExecutionRecord, cmd.record_id)

    async def _terminate(self, cmd: Command) -> None:
        record = await self._record(cmd)
        if record is None or record.is_complete:
            logger.debug(f'{cmd.name}: record already gone or complete')
            return
        if cmd.partition_name is None:
            await self.termination.terminate_local(record)
            return
        async with self.repo.lock(ExecutionRecord, record.id, RECORD_LOCK_TIMEOUT_S):
            fresh = await self.repo.get(ExecutionRecord, record.id)
            if fresh is None:
                return
            partition = fresh.get_partition(cmd.partition_name)
            if partition is None or partition.is_complete or partition.terminate_requested:
                return
            partition.terminate_requested = True
            save_r = await self.repo.save(fresh)
            if is_err(save_r):
                raise PersistenceError(
                    message=f"unable to flag partition '{cmd.partition_name}' for termination",
                    code=ErrorCode.PERSISTENCE_FAILED,
                    notes=[str(save_r.err_value)],
                )
        logger.info(f'Requested termination of {fresh.name} partition {cmd.partition_name}')

    async def _stack(self, cmd: Command) -> None:
        record = await self._record(cmd)
        if record is None:
            return
        async with self.repo.lock(ExecutionRecord, record.id, RECORD_LOCK_TIMEOUT_S):
            fresh = await self.repo.get(ExecutionRecord, record.id)
            if fresh is None:
                return
            fresh.attributes['stack'] = capture_stacks()
            save_r = await self.repo.save(fresh)
            if is_err(save_r):
                raise PersistenceError(
                    message=f"unable to save stack dump on '{fresh.name}'",
                    code=ErrorCode.PERSISTENCE_FAILED,
                    notes=[str(save_r.err_value)],
                )
