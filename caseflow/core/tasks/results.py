"""ResultCoordinator: creates, names and finalizes execution records."""

from __future__ import annotations

import asyncio
import random
from datetime import timedelta
from typing import Any, Mapping, Sequence

from result import is_err, is_ok

from caseflow.core.defaults import (
    DEFAULT_LAUNCHER,
    DEFINITION_LOCK_TIMEOUT_S,
    QUALIFICATION_DELIMITER,
    RECORD_LOCK_TIMEOUT_S,
)
from caseflow.core.errors import (
    AlreadyRunningError,
    ConfigurationError,
    DecisionValidationError,
    ErrorCode,
    PersistenceError,
    ResultExistsError,
)
from caseflow.core.logging import get_logger
from caseflow.core.models.app import AppConfig
from caseflow.core.models.case import Message, ProcessInstance
from caseflow.core.models.records import ExecutionRecord, JobDefinition, WorkItem
from caseflow.core.notify import Notifier, notify_safely
from caseflow.core.persistence.base import Repository
from caseflow.core.persistence.result_types import Collision
from caseflow.core.registry.base import NotRegistered
from caseflow.core.registry.capabilities import CapabilityRegistry, invoke
from caseflow.core.registry.definitions import DefinitionRegistry
from caseflow.core.tasks.naming import (
    backoff_delay,
    next_qualifier,
    qualify,
    timestamp_qualifier,
    uid_qualifier,
    unqualify,
)
from caseflow.core.types.status import (
    CollisionPolicy,
    CompletionStatus,
    MessageType,
    RecordType,
    WorkItemType,
)
from caseflow.core.utils.clock import utcnow
from caseflow.core.workflows.engine import WorkflowEngine

logger = get_logger('results')

_RESTARTABLE_STATUSES = (CompletionStatus.ERROR, CompletionStatus.TERMINATED)


def _record_missing(record_id: str) -> PersistenceError:
    return PersistenceError(
        message=f'execution record {record_id} does not exist',
        code=ErrorCode.RECORD_NOT_FOUND,
    )


class ResultCoordinator:
    """
    Owns the lifecycle of ExecutionRecords.

    Name negotiation runs under ``lock`` (one per coordinator unless one is
    injected). The lock covers the name lookup and each save attempt; backoff
    sleeps happen outside it. The store's unique-name constraint settles
    races between hosts.
    """

    def __init__(
        self,
        repo: Repository,
        definitions: DefinitionRegistry,
        capabilities: CapabilityRegistry,
        notifier: Notifier,
        config: AppConfig,
        *,
        engine: WorkflowEngine | None = None,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self.repo = repo
        self.definitions = definitions
        self.capabilities = capabilities
        self.notifier = notifier
        self.config = config
        self.engine = engine
        self._lock = lock or asyncio.Lock()
        if engine is not None:
            engine.add_completion_listener(self.on_case_complete)

    @property
    def host(self) -> str:
        return self.config.host

    def _job(self, job: JobDefinition | str) -> JobDefinition:
        if isinstance(job, JobDefinition):
            return job
        return self.definitions.get_job(job)

    def _find_job(self, name: str | None) -> JobDefinition | None:
        if name is None:
            return None
        try:
            return self.definitions.get_job(name)
        except NotRegistered:
            return None

    # -- creation -------------------------------------------------------------

    async def create_result(
        self,
        job: JobDefinition | str,
        *,
        name: str | None = None,
        schedule_name: str | None = None,
        launcher: str | None = None,
        launching: bool = True,
        attributes: Mapping[str, Any] | None = None,
    ) -> ExecutionRecord:
        """Create and save a uniquely named record for one run of ``job``.

        Raises:
            AlreadyRunningError: a previous run is incomplete and the job is
                not concurrent.
            ResultExistsError: the collision policy is Cancel.
            PersistenceError: no name could be saved at all.
        """
        job = self._job(job)
        record = ExecutionRecord(
            name=name or schedule_name or job.name,
            definition_name=job.name,
            type=job.type,
            launcher=launcher or DEFAULT_LAUNCHER,
            schedule_name=schedule_name,
            restartable=job.restartable,
            run_length_average=job.run_length_average,
            attributes=dict(attributes or {}),
        )
        if launching:
            record.launched = utcnow()
            record.host = self.host
            record.live = True

        try_unqualified = True
        rename_existing: ExecutionRecord | None = None
        rename_new: CollisionPolicy | None = None
        policy: CollisionPolicy | None = None
        async with self._lock:
            existing = await self.repo.get_by_name(ExecutionRecord, record.name)
            if existing is not None:
                if not existing.is_complete and not job.concurrent:
                    logger.info(f'Ignoring concurrent run of {job.name}')
                    raise AlreadyRunningError(
                        message=f"'{job.name}' is already running as '{existing.name}'",
                        code=ErrorCode.ALREADY_RUNNING,
                        record_name=existing.name,
                        help_text='wait for the running record to complete or mark the job concurrent',
                    )
                policy = job.result_action or CollisionPolicy.DELETE
                if existing.signoff and policy is CollisionPolicy.DELETE:
                    policy = CollisionPolicy.CANCEL

                match policy:
                    case CollisionPolicy.DELETE:
                        logger.debug(f'Deleting previous record {existing.name}')
                        await self.repo.delete(existing)
                    case CollisionPolicy.CANCEL:
                        raise ResultExistsError(
                            message=(
                                f"a result for a previous execution of '{job.name}' "
                                f'still exists'
                            ),
                            code=ErrorCode.RESULT_EXISTS,
                            record_name=existing.name,
                        )
                    case CollisionPolicy.RENAME_NEW:
                        try_unqualified = False
                    case (
                        CollisionPolicy.RENAME_NEW_WITH_UID
                        | CollisionPolicy.RENAME_NEW_WITH_TIMESTAMP
                    ):
                        rename_new = policy
                    case _:
                        rename_existing = existing

        if rename_existing is not None:
            match policy:
                case CollisionPolicy.RENAME:
                    await self.save_qualified(rename_existing, try_unqualified=False)
                case CollisionPolicy.RENAME_WITH_UID:
                    await self.save_uniquely_qualified(rename_existing, timestamp=False)
                case CollisionPolicy.RENAME_WITH_TIMESTAMP:
                    await self.save_uniquely_qualified(rename_existing, timestamp=True)
            logger.debug(f'Renamed previous record to {rename_existing.name}')

        if rename_new is not None:
            timestamp = rename_new is CollisionPolicy.RENAME_NEW_WITH_TIMESTAMP
            await self.save_uniquely_qualified(record, timestamp=timestamp)
        else:
            await self.save_qualified(record, try_unqualified=try_unqualified)
        logger.info(f'Created record {record.name} for {job.name}')
        return record

    async def _save_locked(self, record: ExecutionRecord) -> bool:
        async with self._lock:
            save_r = await self.repo.save(record)
        if is_ok(save_r):
            return True
        match save_r.err_value:
            case Collision():
                pass
            case error:
                logger.warning(f'Unable to save record {record.name}: {error.message}')
        return False

    async def save_qualified(
        self, record: ExecutionRecord, *, try_unqualified: bool = True
    ) -> ExecutionRecord:
        """Save ``record``, adding a numeric qualifier until its name is unique."""
        if try_unqualified and await self._save_locked(record):
            return record

        naming = self.config.naming
        base = unqualify(record.name)
        qualifier = await next_qualifier(self.repo, base, naming.scan_limit)
        for attempt in range(naming.max_attempts):
            delay = backoff_delay(attempt, naming)
            if delay:
                await asyncio.sleep(delay)
            record.name = qualify(base, qualifier)
            if await self._save_locked(record):
                return record
            qualifier += 1

        record.name = f'{base} {uid_qualifier()}'
        logger.warning(f'Qualified naming exhausted; falling back to {record.name}')
        if await self._save_locked(record):
            return record
        raise PersistenceError(
            message=f"unable to create a record named '{base}'",
            code=ErrorCode.RESULT_NOT_SAVED,
        )

    async def save_uniquely_qualified(
        self, record: ExecutionRecord, *, timestamp: bool
    ) -> ExecutionRecord:
        """Rename with a timestamp or uid qualifier; collisions are unlikely."""
        base = unqualify(record.name)
        stamp = record.launched or record.created
        qualifier = timestamp_qualifier(stamp) if timestamp else uid_qualifier()
        attempts = self.config.naming.max_attempts
        for attempt in range(attempts):
            record.name = f'{base}{QUALIFICATION_DELIMITER}{qualifier}'
            if await self._save_locked(record):
                return record
            if timestamp and attempt < attempts - 1:
                stamp = stamp + timedelta(milliseconds=random.randint(1, 999))
                qualifier = timestamp_qualifier(stamp)
            else:
                qualifier = uid_qualifier()
        raise PersistenceError(
            message=f"unable to rename record '{base}'",
            code=ErrorCode.RESULT_NOT_SAVED,
        )

    # -- finalization ---------------------------------------------------------

    async def finalize(
        self,
        record: ExecutionRecord | str,
        *,
        messages: Sequence[Message] = (),
        attributes: Mapping[str, Any] | None = None,
        terminated: bool = False,
    ) -> ExecutionRecord:
        """Close a record exactly once, then run its post-actions.

        ``messages``, ``attributes`` and ``terminated`` carry the run's outcome
        and land in the same save that closes the record, so a failed save
        never leaves a half-reported record behind.

        Only the closing save can fail this call; each post-action is
        isolated and merely logged when it fails.
        """
        record_id = record if isinstance(record, str) else record.id
        fresh = await self.repo.get(ExecutionRecord, record_id)
        if fresh is None:
            raise _record_missing(record_id)
        if fresh.is_complete:
            logger.debug(f'Record {fresh.name} already finalized')
            return fresh

        fresh.messages.extend(messages)
        fresh.attributes.update(attributes or {})
        if terminated:
            fresh.terminated = True
        fresh.completed = utcnow()
        fresh.live = False
        fresh.progress = None
        if fresh.partitioned:
            fresh.merge_partition_attributes()
            status = fresh.calculate_partitioned_status()
            if status is CompletionStatus.TERMINATED:
                fresh.terminated = True
        else:
            status = fresh.calculate_completion_status()
        fresh.completion_status = status
        if fresh.terminated:
            fresh.add_message(Message.warn(f"Task '{fresh.name}' was terminated"))
        seconds = self._save_run_length(fresh)

        save_r = await self.repo.save(fresh)
        if is_err(save_r):
            raise PersistenceError(
                message=f"unable to close record '{fresh.name}'",
                code=ErrorCode.RESULT_NOT_SAVED,
                notes=[str(save_r.err_value)],
            )
        logger.info(f'Finalized {fresh.name}: {status.value}')

        job = self._find_job(fresh.definition_name)
        await self._add_average_run_length(fresh, job, seconds)
        await self._generate_signoffs(fresh, job)
        await self._run_completion_rule(fresh, job)
        fresh = await self._process_completion_events(fresh, job)
        await self._send_completion_notification(fresh, job)
        return fresh

    def _save_run_length(self, record: ExecutionRecord) -> int:
        """Store run length and deviation; returns seconds, or -1 when unknown."""
        if record.launched is None or record.completed is None:
            logger.debug(f'Record {record.name} has no launch time; skipping run length')
            return -1
        seconds = int((record.completed - record.launched).total_seconds())
        record.run_length = seconds
        average = record.run_length_average
        record.run_length_deviation = (
            int((seconds - average) / average * 100) if average > 0 else 0
        )
        return seconds

    async def _add_average_run_length(
        self, record: ExecutionRecord, job: JobDefinition | None, seconds: int
    ) -> None:
        if job is None or seconds < 0:
            return
        if record.completion_status not in (CompletionStatus.SUCCESS, CompletionStatus.WARNING):
            return
        try:
            async with self.repo.lock(JobDefinition, job.id, DEFINITION_LOCK_TIMEOUT_S):
                fresh = await self.repo.get(JobDefinition, job.id)
                if fresh is None:
                    logger.debug(f'Job {job.name} is not stored; run length not recorded')
                    return
                fresh.add_run(seconds)
                save_r = await self.repo.save(fresh)
                if is_err(save_r):
                    logger.error(f'Unable to save run length of {job.name}: {save_r.err_value}')
        except Exception as exc:
            logger.error(f'Unable to update run length average of {job.name}: {exc}')

    async def _generate_signoffs(
        self, record: ExecutionRecord, job: JobDefinition | None
    ) -> None:
        if job is None or not job.signoff_owners or record.has_errors():
            return
        try:
            for owner in job.signoff_owners:
                item = WorkItem(
                    name=f'{record.name}{QUALIFICATION_DELIMITER}Signoff{QUALIFICATION_DELIMITER}{owner}',
                    owner=owner,
                    type=WorkItemType.SIGNOFF,
                    record_id=record.id,
                    description=f"Sign off on '{record.name}'",
                )
                save_r = await self.repo.save(item)
                if is_err(save_r):
                    logger.error(f'Unable to save signoff for {owner}: {save_r.err_value}')
                    continue
                record.signoff.append(item.id)
                await notify_safely(
                    self.notifier,
                    job.template,
                    [owner],
                    {'result': record.name, 'workItem': item.name},
                )
            save_r = await self.repo.save(record)
            if is_err(save_r):
                logger.error(f'Unable to save signoffs on {record.name}: {save_r.err_value}')
        except Exception as exc:
            logger.error(f'Signoff generation for {record.name} failed: {exc}')

    async def _run_completion_rule(
        self, record: ExecutionRecord, job: JobDefinition | None
    ) -> None:
        rule_name = (job.completion_rule if job else None) or self.config.completion_rule
        if rule_name is None:
            return
        try:
            rule = self.capabilities.rules[rule_name]
        except NotRegistered:
            logger.error(f'Invalid completion rule: {rule_name}')
            return
        try:
            await invoke(rule, {'result': record, 'job': job})
        except Exception as exc:
            logger.error(f'Completion rule {rule_name} failed for {record.name}: {exc}')

    async def _process_completion_events(
        self, record: ExecutionRecord, job: JobDefinition | None
    ) -> ExecutionRecord:
        """Run each completion event rule; a rule may hand back an updated record."""
        if job is None:
            return record
        for event in job.completion_events:
            try:
                rule = self.capabilities.rules[event]
                value = await invoke(rule, {'result': record, 'event': event, 'job': job})
            except Exception as exc:
                logger.error(f'Completion event {event} failed for {record.name}: {exc}')
                continue
            if isinstance(value, Mapping) and isinstance(value.get('result'), ExecutionRecord):
                record = value['result']
                save_r = await self.repo.save(record)
                if is_err(save_r):
                    logger.error(f'Unable to save record from event {event}: {save_r.err_value}')
        return record

    async def _send_completion_notification(
        self, record: ExecutionRecord, job: JobDefinition | None
    ) -> None:
        if job is None or not job.notify:
            return
        status = record.completion_status.value if record.completion_status else None
        await notify_safely(
            self.notifier,
            job.template,
            job.notify,
            {
                'result': record.name,
                'status': status,
                'launcher': record.launcher,
                'runLength': record.run_length,
            },
        )

    # -- workflows ------------------------------------------------------------

    async def launch_process(
        self,
        job: JobDefinition | str,
        variables: Mapping[str, Any] | None = None,
        *,
        name: str | None = None,
        launcher: str | None = None,
        schedule_name: str | None = None,
    ) -> ExecutionRecord:
        """Create a record for a workflow job and launch its case."""
        job = self._job(job)
        if job.type is not RecordType.WORKFLOW or not job.process:
            raise ConfigurationError(
                message=f"job '{job.name}' is not a workflow job",
                code=ErrorCode.JOB_DEFINITION_INVALID,
                help_text="set type='workflow' and name a process",
            )
        if self.engine is None:
            raise ConfigurationError(
                message='no workflow engine is attached to this coordinator',
                code=ErrorCode.JOB_DEFINITION_INVALID,
            )

        record = await self.create_result(
            job, name=name, schedule_name=schedule_name, launcher=launcher
        )
        try:
            launch_r = await self.engine.launch(
                job.process,
                variables,
                launcher=record.launcher,
                record_id=record.id,
                name=record.name,
            )
        except asyncio.CancelledError:
            logger.warning(f'Launch of {record.name} was cancelled')
            await asyncio.shield(self.finalize(record.id, terminated=True))
            raise
        except Exception as exc:
            logger.error(f'Launch of {record.name} raised {type(exc).__name__}: {exc}')
            await self.finalize(
                record.id, messages=[Message.error(f'{type(exc).__name__}: {exc}')]
            )
            raise
        if is_err(launch_r):
            error = launch_r.err_value
            logger.error(f'Launch of {record.name} failed: {error.message}')
            return await self.finalize(record.id, messages=[Message.error(error.message)])

        instance = launch_r.ok_value
        fresh = await self.repo.get(ExecutionRecord, record.id)
        if fresh is None:
            raise _record_missing(record.id)
        fresh.case_id = instance.id
        if not fresh.is_complete:
            # The case waits on external decisions; no thread is executing it.
            fresh.live = False
        save_r = await self.repo.save(fresh)
        if is_err(save_r):
            logger.error(f'Unable to link record {fresh.name} to its case: {save_r.err_value}')
        return fresh

    async def on_case_complete(self, instance: ProcessInstance) -> None:
        """Completion listener: copy the case outcome into its record and finalize."""
        if instance.record_id is None:
            return
        record = await self.repo.get(ExecutionRecord, instance.record_id)
        if record is None:
            logger.warning(f'Case {instance.name} completed but its record is gone')
            return
        if record.is_complete:
            return
        record.messages.extend(instance.messages)
        for variable in instance.definition.variables:
            if variable.output and variable.name in instance.variables:
                record.attributes[variable.name] = instance.variables[variable.name]
        if instance.terminated:
            record.terminated = True
        record.case_id = instance.id
        save_r = await self.repo.save(record)
        if is_err(save_r):
            logger.error(f'Unable to copy case outcome into {record.name}: {save_r.err_value}')
        await self.finalize(record)

    # -- partitions -----------------------------------------------------------

    async def launch_partition(
        self, record_id: str, partition_name: str, *, host: str | None = None
    ) -> ExecutionRecord:
        """Mark a partition as started on ``host`` (default: this host)."""
        async with self.repo.lock(ExecutionRecord, record_id, RECORD_LOCK_TIMEOUT_S):
            record = await self.repo.get(ExecutionRecord, record_id)
            if record is None:
                raise _record_missing(record_id)
            partition = record.get_partition(partition_name)
            if partition is None:
                raise PersistenceError(
                    message=f"record '{record.name}' has no partition '{partition_name}'",
                    code=ErrorCode.RECORD_NOT_FOUND,
                )
            partition.launched = utcnow()
            partition.host = host or self.host
            partition.live = True
            await self.repo.save(record)
            return record

    async def assimilate_partition(
        self,
        record_id: str,
        partition_name: str,
        *,
        status: CompletionStatus | None = None,
        messages: Sequence[Message] = (),
        attributes: Mapping[str, Any] | None = None,
        terminated: bool = False,
    ) -> ExecutionRecord:
        """Record one partition's outcome; finalize the record when all are done."""
        async with self.repo.lock(ExecutionRecord, record_id, RECORD_LOCK_TIMEOUT_S):
            record = await self.repo.get(ExecutionRecord, record_id)
            if record is None:
                raise _record_missing(record_id)
            partition = record.get_partition(partition_name)
            if partition is None:
                raise PersistenceError(
                    message=f"record '{record.name}' has no partition '{partition_name}'",
                    code=ErrorCode.RECORD_NOT_FOUND,
                )
            partition.messages.extend(messages)
            partition.attributes.update(attributes or {})
            partition.terminated = partition.terminated or terminated
            partition.completed = utcnow()
            partition.live = False
            partition.completion_status = status or partition.calculate_completion_status()
            save_r = await self.repo.save(record)
            if is_err(save_r):
                raise PersistenceError(
                    message=f"unable to save partition '{partition_name}' of '{record.name}'",
                    code=ErrorCode.PERSISTENCE_FAILED,
                    notes=[str(save_r.err_value)],
                )
            logger.debug(
                f'Partition {partition_name} of {record.name} completed: '
                f'{partition.completion_status.value}'
            )
            if record.partitions_complete() and not record.is_complete:
                return await self.finalize(record)
            return record

    async def restart(self, record: ExecutionRecord | str) -> list[str]:
        """Reopen a failed partitioned record; returns the reset partition names."""
        if isinstance(record, str):
            loaded = await self.repo.get(ExecutionRecord, record)
            if loaded is None:
                loaded = await self.repo.get_by_name(ExecutionRecord, record)
            if loaded is None:
                raise _record_missing(record)
            record = loaded
        else:
            record = await self.repo.get(ExecutionRecord, record.id) or record

        problems: list[str] = []
        if not record.restartable:
            problems.append('the record is not restartable')
        if not record.is_complete:
            problems.append('the record is still running')
        if not record.partitioned:
            problems.append('only partitioned records can be restarted')
        if record.type is RecordType.WORKFLOW:
            problems.append('workflow records cannot be restarted')
        if record.is_complete and record.completion_status not in _RESTARTABLE_STATUSES:
            problems.append(
                f'status {record.completion_status.value if record.completion_status else None} '
                f'is not Error or Terminated'
            )
        if problems:
            raise DecisionValidationError(
                message=f"cannot restart '{record.name}'",
                code=ErrorCode.RESTART_NOT_ALLOWED,
                notes=problems,
            )

        reset: list[str] = []
        for partition in record.partitions:
            if (
                not partition.is_complete
                or partition.terminated
                or partition.completion_status in _RESTARTABLE_STATUSES
            ):
                partition.reset()
                reset.append(partition.name)

        record.completed = None
        record.completion_status = None
        record.terminated = False
        record.terminate_requested = False
        record.live = True
        record.launched = utcnow()
        record.host = self.host
        record.messages = [m for m in record.messages if m.type is not MessageType.ERROR]
        record.add_message(Message.info(f'Restarted partitions: {", ".join(reset)}'))
        save_r = await self.repo.save(record)
        if is_err(save_r):
            raise PersistenceError(
                message=f"unable to reopen '{record.name}'",
                code=ErrorCode.PERSISTENCE_FAILED,
                notes=[str(save_r.err_value)],
            )
        logger.info(f'Restarted {record.name}: {reset}')
        return reset

    # -- queries --------------------------------------------------------------

    async def is_running(self, result_name: str) -> bool:
        record = await self.repo.get_by_name(ExecutionRecord, result_name)
        return record is not None and not record.is_complete

    async def await_record(
        self, result_name: str, timeout: float, *, poll_interval: float = 1.0
    ) -> ExecutionRecord | None:
        """Poll until the named record completes; returns the last copy seen."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        record: ExecutionRecord | None = None
        while True:
            record = await self.repo.get_by_name(ExecutionRecord, result_name)
            if record is not None and record.is_complete:
                return record
            remaining = deadline - loop.time()
            if remaining <= 0:
                return record
            await asyncio.sleep(min(poll_interval, remaining))
