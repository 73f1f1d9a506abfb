# caseflow/core/app.py
from typing import (
    Any,
    Awaitable,
    Callable,
    Mapping,
    Optional,
    Sequence,
    TypeVar,
    Union,
    overload,
)
import asyncio
import importlib
import os

from result import is_err

from caseflow.core.cluster import RepositoryClusterInfo
from caseflow.core.errors import (
    CaseflowError,
    ConfigurationError,
    ErrorCode,
    ValidationReport,
)
from caseflow.core.evaluation.base import Evaluator
from caseflow.core.evaluation.scriptlets import ScriptletEvaluator
from caseflow.core.logging import get_logger
from caseflow.core.models.app import AppConfig
from caseflow.core.models.case import Decision, Message, ProcessInstance
from caseflow.core.models.definition import ProcessDefinition
from caseflow.core.models.records import ExecutionRecord, JobDefinition, WorkItem
from caseflow.core.notify import LoggingNotifier, Notifier
from caseflow.core.persistence.base import Repository
from caseflow.core.persistence.memory import InMemoryRepository
from caseflow.core.persistence.postgres import PostgresRepository
from caseflow.core.registry.capabilities import CapabilityRegistry, invoke
from caseflow.core.registry.definitions import DefinitionRegistry
from caseflow.core.tasks.commands import CommandProcessor
from caseflow.core.tasks.monitor import TaskMonitor
from caseflow.core.tasks.partitions import PartitionPlanner
from caseflow.core.tasks.results import ResultCoordinator
from caseflow.core.tasks.termination import TerminationCoordinator
from caseflow.core.types.status import CompletionStatus, RecordType, WorkItemState
from caseflow.core.utils.imports import import_by_path
from caseflow.core.utils.loop_runner import get_shared_runner
from caseflow.core.workflows.engine import WorkflowEngine
from caseflow.core.workflows.handlers import WorkflowHandler
from caseflow.core.workflows.result_types import EngineResult

_F = TypeVar('_F', bound=Callable[..., Any])
T = TypeVar('T')


def _no_location(error: CaseflowError) -> CaseflowError:
    """Strip the auto-detected source location from an internally built error."""
    error.location = None
    return error


class Caseflow:
    """
    Configuration-driven case management app.

    Owns the registries and wires the coordinators to one repository. All
    operations are coroutines; ``call_sync`` runs any of them from
    synchronous code on a shared background loop.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        repository: Optional[Repository] = None,
        notifier: Optional[Notifier] = None,
        evaluator: Optional[Evaluator] = None,
    ):
        self.config = config or AppConfig()
        self.logger = get_logger('app')
        self.capabilities = CapabilityRegistry()
        self.definitions = DefinitionRegistry(self.capabilities)
        self._discovered_modules: list[str] = []

        if repository is not None:
            self.repo = repository
        elif self.config.repository is not None:
            self.repo = PostgresRepository(self.config.repository)
        else:
            self.repo = InMemoryRepository()

        self.notifier = notifier or LoggingNotifier()
        self.evaluator = evaluator or ScriptletEvaluator(self.capabilities)
        self.cluster = RepositoryClusterInfo(self.repo, self.config.host)
        self.engine = WorkflowEngine(
            self.repo,
            self.evaluator,
            self.definitions,
            self.capabilities,
            self.notifier,
            keep_completed_cases=self.config.keep_completed_cases,
        )
        self.results = ResultCoordinator(
            self.repo,
            self.definitions,
            self.capabilities,
            self.notifier,
            self.config,
            engine=self.engine,
        )
        self.termination = TerminationCoordinator(
            self.repo,
            self.results,
            self.engine,
            host=self.config.host,
            force_remote_termination=self.config.force_remote_termination,
        )
        self.commands = CommandProcessor(
            self.repo,
            self.termination,
            host=self.config.host,
            max_attempts=self.config.recovery.command_max_attempts,
        )
        self.planner = PartitionPlanner(
            self.cluster,
            self.definitions,
            stale_threshold_ms=self.config.recovery.node_stale_threshold_ms,
        )

        self.logger.info(
            f'caseflow initialized on {self.config.host} '
            f'({"postgres" if self.config.repository else "in-memory"} repository)'
        )

    # -------- capability registration --------

    @overload
    def rule(self, fn: _F) -> _F: ...

    @overload
    def rule(self, fn: Optional[str] = None) -> Callable[[_F], _F]: ...

    def rule(self, fn: Union[_F, str, None] = None) -> Union[_F, Callable[[_F], _F]]:
        """
        Register a rule, usable as ``rule:<name>``, completion rule or event.

        Works bare (``@app.rule``) or named (``@app.rule('approvers')``).
        """
        if callable(fn):
            self.capabilities.register_rule(fn)
            return fn
        name = fn

        def decorator(func: _F) -> _F:
            self.capabilities.register_rule(func, name=name)
            return func

        return decorator

    @overload
    def call(self, fn: _F) -> _F: ...

    @overload
    def call(self, fn: Optional[str] = None) -> Callable[[_F], _F]: ...

    def call(self, fn: Union[_F, str, None] = None) -> Union[_F, Callable[[_F], _F]]:
        """Register a call, usable as ``call:<name>`` in scriptlets."""
        if callable(fn):
            self.capabilities.register_call(fn)
            return fn
        name = fn

        def decorator(func: _F) -> _F:
            self.capabilities.register_call(func, name=name)
            return func

        return decorator

    def handler(self, name: str) -> Callable[[Any], Any]:
        """Register a WorkflowHandler class (instantiated once) or instance."""

        def decorator(obj: Any) -> Any:
            instance = obj() if isinstance(obj, type) else obj
            if not isinstance(instance, WorkflowHandler):
                raise ConfigurationError(
                    message=f"handler '{name}' is not a WorkflowHandler",
                    code=ErrorCode.DEFINITION_UNKNOWN_HANDLER,
                    notes=[f'got {type(instance).__name__}'],
                    help_text='subclass caseflow.WorkflowHandler',
                )
            self.capabilities.register_handler(instance, name)
            return obj

        return decorator

    def register_process(
        self, definition: ProcessDefinition, *, replace: bool = False
    ) -> ProcessDefinition:
        return self.definitions.register_process(definition, replace=replace)

    def register_job(self, job: JobDefinition, *, replace: bool = False) -> JobDefinition:
        return self.definitions.register_job(job, replace=replace)

    # -------- discovery and validation --------

    def discover(self, modules: list[str]) -> None:
        """Record modules that register definitions; imported by ``check``/``import_modules``."""
        if self._discovered_modules:
            self.logger.warning(
                f'discover() called again, replacing {len(self._discovered_modules)} '
                f'previously registered module(s)'
            )
        self._discovered_modules = list(modules)

    def import_modules(self, modules: Optional[list[str]] = None) -> list[str]:
        imported: list[str] = []
        for module in self._discovered_modules if modules is None else modules:
            if module.endswith('.py') or os.path.sep in module:
                import_by_path(module)
            else:
                importlib.import_module(module)
            imported.append(module)
        return imported

    def check(self, *, live: bool = False) -> list[CaseflowError]:
        """Phased validation; an empty list means everything passed.

        Phase 1: Config, already validated at construction.
        Phase 2: Module imports, which register definitions.
        Phase 3: Rule references from jobs and config.
        Phase 4 (if live): Repository connectivity and schema.
        """
        errors = self._check_imports()
        if errors:
            return errors
        errors = self._check_rule_references()
        if errors:
            return errors
        if live:
            errors = self._check_repository()
        return errors

    def _check_imports(self) -> list[CaseflowError]:
        errors: list[CaseflowError] = []
        for module in self._discovered_modules:
            try:
                self.import_modules([module])
            except CaseflowError as exc:
                errors.append(exc)
            except Exception as exc:
                errors.append(
                    _no_location(
                        ConfigurationError(
                            message=f"failed to import module '{module}'",
                            code=ErrorCode.CLI_INVALID_LOCATOR,
                            notes=[f'{type(exc).__name__}: {exc}'],
                            help_text='check that the module imports cleanly on its own',
                        )
                    )
                )
        return errors

    def _check_rule_references(self) -> list[CaseflowError]:
        report = ValidationReport('rules')
        rules = self.capabilities.rules
        if self.config.completion_rule and self.config.completion_rule not in rules:
            report.add(
                _no_location(
                    ConfigurationError(
                        message=f"completion rule '{self.config.completion_rule}' is not registered",
                        code=ErrorCode.JOB_DEFINITION_INVALID,
                        notes=['configured by AppConfig.completion_rule'],
                        help_text='register it with @app.rule',
                    )
                )
            )
        for job in self.definitions.jobs.values():
            referenced = list(job.completion_events)
            if job.completion_rule:
                referenced.append(job.completion_rule)
            for name in referenced:
                if name not in rules:
                    report.add(
                        _no_location(
                            ConfigurationError(
                                message=f"job '{job.name}' references unknown rule '{name}'",
                                code=ErrorCode.JOB_DEFINITION_INVALID,
                                notes=[f'registered rules: {rules.keys_list()}'],
                                help_text='register the rule before the job is launched',
                            )
                        )
                    )
        return list(report.errors)

    def _check_repository(self) -> list[CaseflowError]:
        if not isinstance(self.repo, PostgresRepository):
            return []
        repo = self.repo

        async def _init_schema() -> Optional[str]:
            init_r = await repo.ensure_schema_initialized()
            return init_r.err_value.message if is_err(init_r) else None

        try:
            failure = self.call_sync(_init_schema)
        except Exception as exc:
            failure = str(exc)
        if failure is None:
            return []
        return [
            _no_location(
                ConfigurationError(
                    message='repository connectivity check failed',
                    code=ErrorCode.CONFIG_INVALID_REPOSITORY,
                    notes=[failure],
                    help_text='check database_url in PostgresConfig',
                )
            )
        ]

    # -------- lifecycle --------

    async def start(
        self,
        *,
        services: Sequence[str] = (),
        max_threads: int = 0,
        allowed_jobs: Optional[Sequence[str]] = None,
    ) -> int:
        """
        Prepare this host to accept work.

        Registers the cluster node, stores registered jobs (adopting stored
        run statistics) and, when configured, sweeps orphans. Returns the
        number of orphans terminated.
        """
        if isinstance(self.repo, PostgresRepository):
            init_r = await self.repo.ensure_schema_initialized()
            if is_err(init_r):
                raise ConfigurationError(
                    message='repository schema could not be initialized',
                    code=ErrorCode.CONFIG_INVALID_REPOSITORY,
                    notes=[init_r.err_value.message],
                )
        await self.cluster.register(
            services=services, max_threads=max_threads, allowed_jobs=allowed_jobs
        )
        await self._store_jobs()

        swept = 0
        if self.config.recovery.sweep_orphans_on_start:
            swept = await self.termination.sweep_orphans()
        self.logger.info(f'caseflow started on {self.config.host}')
        return swept

    async def _store_jobs(self) -> None:
        for job in self.definitions.jobs.values():
            stored = await self.repo.get_by_name(JobDefinition, job.name)
            if stored is not None:
                job.id = stored.id
                job.runs = stored.runs
                job.run_length_total = stored.run_length_total
                job.run_length_average = stored.run_length_average
            save_r = await self.repo.save(job)
            if is_err(save_r):
                self.logger.error(f'Unable to store job {job.name}: {save_r.err_value}')

    async def run_forever(
        self,
        stop: asyncio.Event,
        *,
        services: Sequence[str] = (),
        max_threads: int = 0,
        allowed_jobs: Optional[Sequence[str]] = None,
    ) -> None:
        """
        Start this host, then poll timed events, commands and the node
        heartbeat on their configured intervals until ``stop`` is set.
        """
        await self.start(
            services=services, max_threads=max_threads, allowed_jobs=allowed_jobs
        )
        recovery = self.config.recovery
        loop = asyncio.get_running_loop()
        periodic: list[tuple[str, float, Callable[[], Awaitable[Any]]]] = [
            ('events', recovery.event_check_interval_ms / 1000, self.process_events),
            ('commands', recovery.command_poll_interval_ms / 1000, self.process_commands),
            ('heartbeat', recovery.node_heartbeat_interval_ms / 1000, self.cluster.heartbeat),
        ]
        due = {name: loop.time() for name, _, _ in periodic}
        try:
            while not stop.is_set():
                for name, interval, job in periodic:
                    if loop.time() < due[name]:
                        continue
                    try:
                        await job()
                    except Exception as exc:
                        self.logger.error(f'Periodic {name} pass failed: {exc}')
                    due[name] = loop.time() + interval
                wake = max(0.0, min(due.values()) - loop.time())
                try:
                    await asyncio.wait_for(stop.wait(), timeout=wake)
                except (asyncio.TimeoutError, TimeoutError):
                    pass
        finally:
            await self.stop()

    async def stop(self) -> None:
        await self.cluster.deactivate()
        if isinstance(self.repo, PostgresRepository):
            close_r = await self.repo.close_async()
            if is_err(close_r):
                self.logger.warning(f'Repository close failed: {close_r.err_value.message}')
        self.logger.info(f'caseflow stopped on {self.config.host}')

    # -------- operations --------

    async def launch(
        self,
        job: Union[JobDefinition, str],
        variables: Optional[Mapping[str, Any]] = None,
        *,
        name: Optional[str] = None,
        launcher: Optional[str] = None,
        schedule_name: Optional[str] = None,
    ) -> ExecutionRecord:
        """Launch a job: workflow jobs start their case, generic jobs get a live record."""
        job_def = job if isinstance(job, JobDefinition) else self.definitions.get_job(job)
        if job_def.type is RecordType.WORKFLOW:
            return await self.results.launch_process(
                job_def,
                variables,
                name=name,
                launcher=launcher,
                schedule_name=schedule_name,
            )
        return await self.results.create_result(
            job_def,
            name=name,
            schedule_name=schedule_name,
            launcher=launcher,
            attributes=variables,
        )

    async def run_task(
        self,
        job: Union[JobDefinition, str],
        fn: Callable[..., Any],
        *,
        name: Optional[str] = None,
        launcher: Optional[str] = None,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionRecord:
        """
        Run a generic task inline and finalize its record.

        ``fn`` may take ``monitor`` (a TaskMonitor) and ``record``. A raised
        exception becomes an error message; a returned mapping is merged
        into the record attributes. A cancelled task is finalized as
        terminated before the cancellation propagates.
        """
        record = await self.results.create_result(
            job, name=name, launcher=launcher, attributes=attributes
        )
        monitor = TaskMonitor(self.repo, record.id)
        messages: list[Message] = []
        value: Any = None
        try:
            value = await invoke(fn, {'monitor': monitor, 'record': record})
        except asyncio.CancelledError:
            self.logger.warning(f'Task {record.name} was cancelled')
            await asyncio.shield(self.results.finalize(record.id, terminated=True))
            raise
        except Exception as exc:
            self.logger.error(f'Task {record.name} failed: {type(exc).__name__}: {exc}')
            messages.append(Message.error(f'{type(exc).__name__}: {exc}'))

        return await self.results.finalize(
            record.id,
            messages=messages,
            attributes=value if isinstance(value, Mapping) else None,
            terminated=await monitor.is_terminate_requested(),
        )

    async def start_case(
        self,
        process: str,
        variables: Optional[Mapping[str, Any]] = None,
        *,
        launcher: Optional[str] = None,
        name: Optional[str] = None,
    ) -> EngineResult[ProcessInstance]:
        """Launch a case with no execution record."""
        return await self.engine.launch(process, variables, launcher=launcher, name=name)

    async def decide(
        self,
        work_item: Union[WorkItem, str],
        state: Union[WorkItemState, str] = WorkItemState.FINISHED,
        *,
        comments: Optional[str] = None,
        actor: Optional[str] = None,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> EngineResult[ProcessInstance]:
        """Record a decision on a work item and advance its case."""
        decision = Decision(
            state=state if isinstance(state, WorkItemState) else WorkItemState(state),
            comments=comments,
            actor=actor,
            variables=dict(variables or {}),
        )
        return await self.engine.resume(work_item, decision)

    async def find_record(self, ref: str) -> Optional[ExecutionRecord]:
        """Look a record up by id, then by name."""
        record = await self.repo.get(ExecutionRecord, ref)
        if record is None:
            record = await self.repo.get_by_name(ExecutionRecord, ref)
        return record

    async def terminate(self, record: Union[ExecutionRecord, str]) -> bool:
        return await self.termination.terminate(record)

    async def terminate_case(self, case_id: str) -> EngineResult[ProcessInstance]:
        return await self.engine.terminate(case_id)

    async def restart(self, record: Union[ExecutionRecord, str]) -> list[str]:
        return await self.results.restart(record)

    async def process_events(self) -> int:
        events_r = await self.engine.process_events()
        if is_err(events_r):
            self.logger.error(f'Event processing failed: {events_r.err_value.message}')
            return 0
        return events_r.ok_value

    async def process_commands(self) -> int:
        return await self.commands.process()

    async def suggested_partition_count(self, job: Union[JobDefinition, str]) -> int:
        return await self.planner.suggested_partition_count(job)

    async def create_partitions(
        self, record: ExecutionRecord, names: Sequence[str]
    ) -> ExecutionRecord:
        return await self.planner.create_partitions(self.repo, record, names)

    async def complete_partition(
        self,
        record_id: str,
        partition_name: str,
        *,
        status: Optional[CompletionStatus] = None,
        messages: Sequence[Message] = (),
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionRecord:
        return await self.results.assimilate_partition(
            record_id,
            partition_name,
            status=status,
            messages=messages,
            attributes=attributes,
        )

    # -------- sync bridge --------

    def call_sync(
        self,
        coro_fn: Callable[..., Awaitable[T]],
        *args: Any,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> T:
        """Run ``coro_fn(*args, **kwargs)`` on the shared loop and wait for it."""
        return get_shared_runner().call(coro_fn, *args, timeout=timeout, **kwargs)
