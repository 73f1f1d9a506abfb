"""Workflow engine: advances case trees until they wait or complete."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from result import Err, Ok, is_err

from caseflow.core.approvals.resolver import ApprovalContext, ApprovalResolver, HookFn
from caseflow.core.defaults import (
    CASE_LOCK_TIMEOUT_S,
    CATCH_COMPLETE,
    DEFAULT_LAUNCHER,
    QUALIFICATION_DELIMITER,
    VAR_APPROVED,
    VAR_LAST_APPROVAL_STATE,
    VAR_LAUNCHER,
    VAR_RECORD_ID,
    VAR_TERMINATED,
)
from caseflow.core.errors import (
    CaseflowError,
    ConfigurationError,
    DecisionValidationError,
    ErrorCode,
    EvaluationError,
    PersistenceError,
)
from caseflow.core.evaluation.base import Evaluator
from caseflow.core.evaluation.scriptlets import lookup
from caseflow.core.logging import get_logger
from caseflow.core.models.case import (
    Approval,
    Decision,
    Message,
    ProcessInstance,
    StepState,
)
from caseflow.core.models.definition import ProcessDefinition, Step
from caseflow.core.models.records import WorkItem
from caseflow.core.notify import Notifier, notify_safely
from caseflow.core.persistence.base import Filter, Repository, collect
from caseflow.core.registry.base import NotRegistered
from caseflow.core.registry.capabilities import CapabilityRegistry
from caseflow.core.registry.definitions import DefinitionRegistry
from caseflow.core.types.status import WorkItemState, WorkItemType
from caseflow.core.utils.clock import utcnow
from caseflow.core.workflows.arena import CaseArena
from caseflow.core.workflows.handlers import WorkflowHandler
from caseflow.core.workflows.result_types import (
    EngineError,
    EngineErrorCode,
    EngineResult,
)

logger = get_logger('workflow.engine')

T = TypeVar('T')

CompletionListener = Callable[[ProcessInstance], Awaitable[None]]


class _StepFailure(Exception):
    """Carries an exception raised while running a step up to the drive loop."""

    def __init__(self, instance: ProcessInstance, step: Step, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.instance = instance
        self.step = step
        self.cause = cause


def _describe(exc: BaseException) -> str:
    if isinstance(exc, CaseflowError):
        return exc.message
    return f'{type(exc).__name__}: {exc}'


class WorkflowEngine:
    """
    Drives process instances step by step.

    A call to ``launch``, ``advance``, ``resume`` or ``terminate`` loads the
    whole case tree, runs it until every branch is waiting or complete, then
    checkpoints it. Work items opened along the way are saved, and their
    owners notified, only after that checkpoint.
    """

    def __init__(
        self,
        repo: Repository,
        evaluator: Evaluator,
        definitions: DefinitionRegistry,
        capabilities: CapabilityRegistry,
        notifier: Notifier,
        *,
        keep_completed_cases: bool = False,
    ) -> None:
        self.repo = repo
        self.evaluator = evaluator
        self.definitions = definitions
        self.capabilities = capabilities
        self.notifier = notifier
        self.keep_completed_cases = keep_completed_cases
        self.resolver = ApprovalResolver(evaluator)
        self._listeners: list[CompletionListener] = []

    def add_completion_listener(self, listener: CompletionListener) -> None:
        """Called with the root instance once a case tree completes."""
        self._listeners.append(listener)

    # -- entry points ---------------------------------------------------------

    async def launch(
        self,
        definition_name: str,
        variables: Mapping[str, Any] | None = None,
        *,
        launcher: str | None = None,
        record_id: str | None = None,
        name: str | None = None,
    ) -> EngineResult[ProcessInstance]:
        """Create a case from a registered definition and run it until it waits."""
        try:
            definition = self.definitions.get_process(definition_name)
        except NotRegistered as exc:
            return Err(
                EngineError(
                    code=EngineErrorCode.DEFINITION_NOT_FOUND,
                    message=f"process definition '{definition_name}' is not registered",
                    exception=exc,
                )
            )
        try:
            instance = await self._create_instance(
                definition,
                dict(variables or {}),
                launcher=launcher,
                record_id=record_id,
                name=name,
            )
        except (ConfigurationError, EvaluationError) as exc:
            return Err(
                EngineError(
                    code=EngineErrorCode.VALIDATION_FAILED,
                    message=f"cannot launch '{definition_name}': {_describe(exc)}",
                    exception=exc,
                )
            )

        logger.info(f'Launching case {instance.name} ({instance.id})')
        arena = CaseArena(self.repo, instance)
        try:
            await self._drive(arena, instance)
        except PersistenceError as exc:
            return Err(self._persistence_failed(instance.id, exc))
        except Exception as exc:
            logger.exception(f'Launch of {definition_name} failed')
            return Err(self._internal_failed(instance.id, exc))
        return Ok(arena.root)

    async def advance(self, case_id: str) -> EngineResult[ProcessInstance]:
        """Re-run a case tree from its root."""

        async def run(arena: CaseArena) -> EngineResult[ProcessInstance]:
            await self._drive(arena, arena.root)
            return Ok(arena.root)

        return await self._with_case(case_id, run)

    async def resume(
        self, work_item: WorkItem | str, decision: Decision | None = None
    ) -> EngineResult[ProcessInstance]:
        """Apply a decision to a work item and advance its case from the root.

        A rejected decision leaves the case untouched and returns
        ``Err`` with ``VALIDATION_FAILED``.
        """
        decision = decision or Decision()
        if isinstance(work_item, WorkItem):
            item = await self.repo.get(WorkItem, work_item.id) or work_item
        else:
            loaded = await self.repo.get(WorkItem, work_item)
            if loaded is None:
                return Err(
                    EngineError(
                        code=EngineErrorCode.WORK_ITEM_NOT_FOUND,
                        message=f'work item {work_item} does not exist',
                    )
                )
            item = loaded
        if item.case_id is None:
            return Err(
                EngineError(
                    code=EngineErrorCode.CASE_NOT_FOUND,
                    message=f'work item {item.name} belongs to no case',
                )
            )

        async def run(arena: CaseArena) -> EngineResult[ProcessInstance]:
            return await self._resume_in(arena, item, decision)

        return await self._with_case(item.case_id, run)

    async def terminate(self, case_id: str) -> EngineResult[ProcessInstance]:
        """Cancel everything open in the case tree and complete it as terminated."""

        async def run(arena: CaseArena) -> EngineResult[ProcessInstance]:
            root = arena.root
            if root.complete:
                return Ok(root)
            for instance in arena:
                await self._cancel_open(arena, instance)
                instance.complete = True
                instance.terminated = True
                instance.variables[VAR_TERMINATED] = True
            root.add_message(Message.warn(f'Case {root.name} was terminated'))
            logger.info(f'Terminated case {root.name} ({root.id})')
            await self._commit(arena)
            return Ok(root)

        return await self._with_case(case_id, run)

    async def process_events(self, now: datetime | None = None) -> EngineResult[int]:
        """Resume every event work item that is due; returns how many were resumed."""
        now = now or utcnow()
        try:
            due = await collect(
                self.repo,
                WorkItem,
                Filter(
                    eq={'type': WorkItemType.EVENT, 'state': None},
                    where=lambda item: item.is_expired(now),
                    order_by='created',
                ),
            )
        except PersistenceError as exc:
            return Err(self._persistence_failed(None, exc))

        processed = 0
        for item in due:
            resume_r = await self.resume(item, Decision(state=WorkItemState.FINISHED))
            if is_err(resume_r):
                logger.warning(f'Event {item.name} not processed: {resume_r.err_value.message}')
                continue
            processed += 1
        if processed:
            logger.info(f'Processed {processed} due event(s)')
        return Ok(processed)

    # -- entry point plumbing -------------------------------------------------

    async def _with_case(
        self,
        case_id: str,
        action: Callable[[CaseArena], Awaitable[EngineResult[T]]],
    ) -> EngineResult[T]:
        """Lock the case tree, load it fresh and run ``action`` on it."""
        try:
            instance = await self.repo.get(ProcessInstance, case_id)
            if instance is None:
                return Err(
                    EngineError(
                        code=EngineErrorCode.CASE_NOT_FOUND,
                        message=f'case {case_id} does not exist',
                        case_id=case_id,
                    )
                )
            root_id = instance.root_id or instance.id
            async with self.repo.lock(ProcessInstance, root_id, CASE_LOCK_TIMEOUT_S):
                arena = await CaseArena.load(self.repo, case_id)
                if arena is None:
                    return Err(
                        EngineError(
                            code=EngineErrorCode.CASE_NOT_FOUND,
                            message=f'case {case_id} disappeared',
                            case_id=case_id,
                        )
                    )
                return await action(arena)
        except PersistenceError as exc:
            return Err(self._persistence_failed(case_id, exc))
        except Exception as exc:
            logger.exception(f'Engine call on case {case_id} failed')
            return Err(self._internal_failed(case_id, exc))

    def _persistence_failed(self, case_id: str | None, exc: PersistenceError) -> EngineError:
        logger.error(f'Persistence failure on case {case_id}: {exc.message}')
        return EngineError(
            code=EngineErrorCode.PERSISTENCE_FAILED,
            message=exc.message,
            case_id=case_id,
            exception=exc,
        )

    def _internal_failed(self, case_id: str | None, exc: BaseException) -> EngineError:
        return EngineError(
            code=EngineErrorCode.INTERNAL_FAILED,
            message=_describe(exc),
            case_id=case_id,
            exception=exc,
        )

    async def _resume_in(
        self, arena: CaseArena, item: WorkItem, decision: Decision
    ) -> EngineResult[ProcessInstance]:
        assert item.case_id is not None
        instance = arena.get(item.case_id)
        if instance is None:
            return Err(
                EngineError(
                    code=EngineErrorCode.CASE_NOT_FOUND,
                    message=f'case {item.case_id} is not part of its tree anymore',
                    case_id=item.case_id,
                )
            )

        if item.type is WorkItemType.EVENT:
            state = instance.step_states.get(item.step_id or '')
            if state is None or state.wait_item_id != item.id or state.wait_done:
                # Stale event: nothing waits for it anymore.
                arena.discard_item(item.id)
                await arena.delete_doomed_items()
                return Err(
                    EngineError(
                        code=EngineErrorCode.WORK_ITEM_NOT_FOUND,
                        message=f'no step of case {instance.name} waits on {item.name}',
                        case_id=instance.id,
                    )
                )
            state.wait_done = True
            arena.discard_item(item.id)
            logger.debug(f'Event {item.name} fired for case {instance.name}')
            await self._drive(arena, arena.root)
            return Ok(arena.root)

        targets = [
            (step_id, node)
            for step_id, node in instance.approvals()
            if node.work_item_id == item.id and not node.is_complete
        ]
        if not targets:
            return Err(
                EngineError(
                    code=EngineErrorCode.APPROVAL_NOT_FOUND,
                    message=f'no open approval of case {instance.name} uses work item {item.name}',
                    case_id=instance.id,
                )
            )

        contexts: list[tuple[Approval, ApprovalContext]] = []
        for step_id, node in targets:
            step = instance.definition.get_step(step_id)
            if step is None:
                continue
            state = instance.state_for(step_id)
            contexts.append((node, self._approval_context(arena, instance, step, state)))

        try:
            for node, ctx in contexts:
                await self.resolver.validate_decision(node, item, decision, ctx)
        except DecisionValidationError as exc:
            return Err(
                EngineError(
                    code=EngineErrorCode.VALIDATION_FAILED,
                    message=exc.message,
                    case_id=instance.id,
                    exception=exc,
                )
            )
        except EvaluationError as exc:
            rejected = DecisionValidationError(
                message=f'decision validation failed: {exc.message}',
                code=ErrorCode.DECISION_REJECTED,
            )
            return Err(
                EngineError(
                    code=EngineErrorCode.VALIDATION_FAILED,
                    message=rejected.message,
                    case_id=instance.id,
                    exception=rejected,
                )
            )

        item.state = decision.state
        item.comments = decision.comments
        item.attributes.update(decision.variables)

        async def assimilate() -> None:
            for node, ctx in contexts:
                try:
                    await self.resolver.assimilate(node, item, decision, ctx)
                except Exception as exc:
                    raise _StepFailure(ctx.instance, ctx.step, exc) from exc

        arena.discard_item(item.id)
        logger.info(
            f'Work item {item.name} decided {decision.state.value}'
            f'{f" by {decision.actor}" if decision.actor else ""}'
        )
        await self._drive(arena, arena.root, prelude=assimilate)
        return Ok(arena.root)

    # -- instances ------------------------------------------------------------

    async def _create_instance(
        self,
        definition: ProcessDefinition,
        variables: dict[str, Any],
        *,
        launcher: str | None,
        record_id: str | None,
        name: str | None,
        parent: ProcessInstance | None = None,
        parent_step_id: str | None = None,
    ) -> ProcessInstance:
        instance = ProcessInstance(
            definition=definition.copy(),
            name=name or definition.name,
            parent_id=parent.id if parent is not None else None,
            parent_step_id=parent_step_id,
            root_id=parent.root_id if parent is not None else None,
            record_id=record_id,
            launcher=launcher or DEFAULT_LAUNCHER,
        )
        missing: list[str] = []
        for var in definition.variables:
            if var.name in variables:
                instance.variables[var.name] = variables[var.name]
            elif var.initializer is not None:
                instance.variables[var.name] = await self.evaluator.evaluate(
                    var.initializer, {**variables, **instance.variables}
                )
            elif var.required:
                missing.append(var.name)
            else:
                instance.variables[var.name] = None
        if missing:
            raise EvaluationError(
                message=f"required variable(s) {', '.join(missing)} not supplied",
                code=ErrorCode.EVALUATION_FAILED,
                notes=[f"process '{definition.name}'"],
            )
        for key, value in variables.items():
            instance.variables.setdefault(key, value)
        instance.variables[VAR_LAUNCHER] = instance.launcher
        if record_id is not None:
            instance.variables[VAR_RECORD_ID] = record_id
        return instance

    def _keep(self, instance: ProcessInstance) -> bool:
        keep = instance.definition.keep_completed_cases
        return self.keep_completed_cases if keep is None else keep

    def _descendants(self, arena: CaseArena, instance: ProcessInstance) -> list[ProcessInstance]:
        return [
            member
            for member in arena
            if member.id != instance.id
            and any(a.id == instance.id for a in arena.lineage(member))
        ]

    def _env(self, instance: ProcessInstance, state: StepState | None = None) -> dict[str, Any]:
        env: dict[str, Any] = dict(instance.variables)
        env['caseId'] = instance.id
        env['caseName'] = instance.name
        env[VAR_RECORD_ID] = instance.record_id
        env[VAR_LAUNCHER] = instance.launcher
        if state is not None:
            env.update(state.args)
            env.update(state.locals)
        return env

    # -- handlers -------------------------------------------------------------

    def _handler_for(self, instance: ProcessInstance) -> WorkflowHandler | None:
        try:
            return self.capabilities.get_handler(instance.definition.handler)
        except NotRegistered:
            text = f'Handler {instance.definition.handler} is not registered'
            logger.warning(text)
            instance.add_message(Message.warn(text))
            return None

    def _hook(self, instance: ProcessInstance) -> HookFn:
        handler = self._handler_for(instance)

        async def hook(method: str, *args: Any) -> None:
            if handler is None:
                return
            try:
                await getattr(handler, method)(*args)
            except Exception as exc:
                text = (
                    f'Handler {instance.definition.handler}.{method} failed: '
                    f'{type(exc).__name__}: {exc}'
                )
                logger.warning(text)
                instance.add_message(Message.warn(text))

        return hook

    def _approval_context(
        self, arena: CaseArena, instance: ProcessInstance, step: Step, state: StepState
    ) -> ApprovalContext:
        return ApprovalContext(
            instance=instance,
            step=step,
            state=state,
            arena=arena,
            env=self._env(instance, state),
            hook=self._hook(instance),
        )

    # -- driving --------------------------------------------------------------

    async def _drive(
        self,
        arena: CaseArena,
        start: ProcessInstance,
        prelude: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        target: ProcessInstance | None = start
        if prelude is not None:
            try:
                await prelude()
            except _StepFailure as failure:
                target = await self._recover(arena, failure)
        while target is not None:
            try:
                await self._advance_instance(arena, target)
                target = None
            except _StepFailure as failure:
                target = await self._recover(arena, failure)
        await self._commit(arena)

    async def _advance_instance(self, arena: CaseArena, instance: ProcessInstance) -> None:
        if instance.complete:
            return
        definition = instance.definition
        if instance.current_step_id is None:
            first = definition.first_step()
            if first is None:
                self._finish(instance)
                return
            instance.current_step_id = first.step_id

        while not instance.complete:
            step = instance.current_step()
            if step is None:
                self._finish(instance)
                return
            state = instance.state_for(step.step_id)
            try:
                if not await self._run_step(arena, instance, step, state):
                    return
                if step.is_catch:
                    self._finish(instance)
                    return
                following = await self._next_step(instance, step, state)
            except _StepFailure:
                raise
            except Exception as exc:
                raise _StepFailure(instance, step, exc) from exc

            if following is None:
                catch = definition.catch_step(CATCH_COMPLETE)
                if catch is None or CATCH_COMPLETE in instance.handled_conditions:
                    self._finish(instance)
                    return
                instance.handled_conditions.append(CATCH_COMPLETE)
                following = catch

            following_state = instance.step_states.get(following.step_id)
            if following_state is not None and (
                following_state.started or following_state.complete
            ):
                logger.debug(f'Case {instance.name} loops back to {following.name}')
                following_state.uncomplete()
            instance.current_step_id = following.step_id

    def _finish(self, instance: ProcessInstance) -> None:
        instance.complete = True
        logger.info(
            f'Case {instance.name} ({instance.id}) complete'
            f'{" with errors" if instance.has_errors() else ""}'
        )

    async def _next_step(
        self, instance: ProcessInstance, step: Step, state: StepState
    ) -> Step | None:
        env = self._env(instance, state)
        for transition in step.transitions:
            if transition.when is not None and not await self.evaluator.evaluate(
                transition.when, env
            ):
                continue
            target = await self.evaluator.evaluate(transition.to, env)
            following = instance.definition.get_step(str(target)) if target is not None else None
            if following is None:
                raise EvaluationError(
                    message=f"transition from '{step.name}' names unknown step '{target}'",
                    code=ErrorCode.EVALUATION_FAILED,
                )
            return following
        if instance.definition.explicit_transitions:
            return None
        return instance.definition.next_step(step.step_id)

    async def _run_step(
        self, arena: CaseArena, instance: ProcessInstance, step: Step, state: StepState
    ) -> bool:
        """Run a step as far as it can go; True when it is complete."""
        if state.complete:
            return True

        if not state.started:
            state.started = True
            env = self._env(instance, state)
            if step.condition is not None and not await self.evaluator.evaluate(
                step.condition, env
            ):
                logger.debug(f'Step {step.name} of {instance.name} skipped by condition')
                state.complete = True
                return True
            for arg in step.args:
                state.args[arg.name] = await self.evaluator.evaluate(arg.value, env)

        if step.suspends and not state.wait_done:
            if state.wait_item_id is not None:
                return False
            expiration = await self._expiration(step, self._env(instance, state))
            if expiration is not None:
                item = WorkItem(
                    name=(
                        f'{instance.work_item_prefix(step.name)}{QUALIFICATION_DELIMITER}'
                        f'{"background" if step.background else "wait"}'
                    ),
                    type=WorkItemType.EVENT,
                    case_id=instance.id,
                    step_id=step.step_id,
                    record_id=instance.record_id,
                    expiration=expiration,
                    description=step.description,
                )
                arena.stage(item)
                state.wait_item_id = item.id
                logger.debug(f'Step {step.name} of {instance.name} waits until {expiration}')
                return False

        if step.approval is not None:
            return await self._run_approval(arena, instance, step, state)
        if step.subprocess is not None:
            return await self._run_subprocess(arena, instance, step, state)
        if step.action is not None:
            state.result = await self.evaluator.evaluate(step.action, self._env(instance, state))
            if step.result_variable:
                instance.variables[step.result_variable] = state.result
        state.complete = True
        return True

    async def _expiration(self, step: Step, env: Mapping[str, Any]) -> datetime | None:
        """Absolute time a suspended step resumes; None means do not suspend."""
        now = utcnow()
        if step.background:
            return now
        value = await self.evaluator.evaluate(step.wait, env)
        if isinstance(value, str):
            try:
                value = float(value)
            except ValueError:
                raise EvaluationError(
                    message=f"wait of step '{step.name}' is not a number or datetime: {value!r}",
                    code=ErrorCode.EVALUATION_FAILED,
                )
        match value:
            case None | bool():
                return None
            case datetime():
                return value
            case int() | float() if value > 0:
                return now + timedelta(minutes=value)
            case int() | float() if value < 0:
                return now + timedelta(seconds=-value)
            case int() | float():
                return None
            case _:
                raise EvaluationError(
                    message=f"wait of step '{step.name}' is not a number or datetime: {value!r}",
                    code=ErrorCode.EVALUATION_FAILED,
                )

    async def _run_approval(
        self, arena: CaseArena, instance: ProcessInstance, step: Step, state: StepState
    ) -> bool:
        spec = step.approval
        assert spec is not None
        if state.approval is None:
            state.approval = Approval(
                name=spec.name,
                mode=spec.mode,
                description=spec.description,
            )
        ctx = self._approval_context(arena, instance, step, state)
        if not state.approval.is_started:
            await self.resolver.start(state.approval, ctx)
        else:
            await self.resolver.advance_completion(state.approval, ctx)
        if not state.approval.is_complete:
            return False

        outcome = state.approval.derive_completion_state()
        state.result = outcome.value if outcome is not None else None
        instance.variables[VAR_LAST_APPROVAL_STATE] = state.result
        instance.variables[VAR_APPROVED] = outcome is WorkItemState.FINISHED
        if step.result_variable:
            instance.variables[step.result_variable] = state.result
        state.complete = True
        logger.debug(f'Approval {spec.name} of {instance.name} complete: {state.result}')
        return True

    async def _run_subprocess(
        self, arena: CaseArena, instance: ProcessInstance, step: Step, state: StepState
    ) -> bool:
        assert step.subprocess is not None
        definition = self.definitions.get_process(step.subprocess)

        if not state.child_ids:
            env = self._env(instance, state)
            if step.replicator is not None:
                items = lookup(step.replicator.items, env)
                if items is None:
                    items = []
                elif isinstance(items, (str, bytes)) or not hasattr(items, '__iter__'):
                    items = [items]
                for index, item in enumerate(items):
                    await self._spawn(
                        arena,
                        instance,
                        step,
                        state,
                        definition,
                        {**state.args, step.replicator.arg: item},
                        index,
                    )
            else:
                await self._spawn(arena, instance, step, state, definition, dict(state.args), None)

        children: list[ProcessInstance] = []
        for child_id in state.child_ids:
            child = arena.get(child_id)
            if child is None:
                logger.warning(f'Child case {child_id} of {instance.name} is missing')
                continue
            children.append(child)
            if not child.complete:
                await self._advance_instance(arena, child)
        if not all(child.complete for child in children):
            return False

        for ret in step.returns:
            for child in children:
                if ret.value is not None:
                    value = await self.evaluator.evaluate(ret.value, self._env(child))
                else:
                    value = child.variables.get(ret.name)
                instance.apply_return(ret, value, state)

        for child in children:
            if not self._keep(child):
                for member in [child, *self._descendants(arena, child)]:
                    arena.remove(member)
        state.complete = True
        return True

    async def _spawn(
        self,
        arena: CaseArena,
        parent: ProcessInstance,
        step: Step,
        state: StepState,
        definition: ProcessDefinition,
        variables: dict[str, Any],
        index: int | None,
    ) -> ProcessInstance:
        suffix = f' {index + 1}' if index is not None else ''
        child = await self._create_instance(
            definition,
            variables,
            launcher=parent.launcher,
            record_id=parent.record_id,
            name=f'{parent.name}{QUALIFICATION_DELIMITER}{step.name}{suffix}',
            parent=parent,
            parent_step_id=step.step_id,
        )
        child.replicate_index = index
        arena.add(child)
        state.child_ids.append(child.id)
        logger.debug(f'Launched child case {child.name} from {parent.name}')
        return child

    # -- failures -------------------------------------------------------------

    async def _cancel_open(self, arena: CaseArena, instance: ProcessInstance) -> None:
        """Cancel open approvals and drop pending wait items of one instance."""
        for step_id, state in instance.step_states.items():
            step = instance.definition.get_step(step_id)
            if state.approval is not None and not state.approval.is_complete and step is not None:
                ctx = self._approval_context(arena, instance, step, state)
                await self.resolver.cancel(state.approval, ctx)
            if state.wait_item_id is not None and not state.wait_done:
                arena.discard_item(state.wait_item_id)
                state.wait_done = True

    async def _recover(
        self, arena: CaseArena, failure: _StepFailure
    ) -> ProcessInstance | None:
        """Record a step failure and pick where completion continues.

        The error lands on the outermost instance. The nearest enclosing
        instance with an unused ``complete`` catch jumps to it; without one
        the whole tree completes with errors. Returns the instance to drive
        next, or None when nothing is left to run.
        """
        instance, step = failure.instance, failure.step
        text = f"Step '{step.name}' of {instance.name} failed: {_describe(failure.cause)}"
        logger.error(text)
        arena.outermost(instance).add_message(Message.error(text))

        for candidate in arena.lineage(instance):
            catch = candidate.definition.catch_step(CATCH_COMPLETE)
            if catch is None or CATCH_COMPLETE in candidate.handled_conditions:
                continue
            for member in self._descendants(arena, candidate):
                await self._cancel_open(arena, member)
                member.complete = True
                member.error = True
            await self._cancel_open(arena, candidate)
            candidate.error = True
            candidate.handled_conditions.append(CATCH_COMPLETE)
            catch_state = candidate.state_for(catch.step_id)
            if catch_state.started or catch_state.complete:
                catch_state.uncomplete()
            candidate.current_step_id = catch.step_id
            logger.info(f'Case {candidate.name} continues at catch step {catch.name}')
            return arena.root

        for member in arena:
            await self._cancel_open(arena, member)
            member.complete = True
        for member in arena.lineage(instance):
            member.error = True
        logger.info(f'Case {arena.root.name} completes with errors')
        return None

    # -- commit ---------------------------------------------------------------

    async def _commit(self, arena: CaseArena) -> None:
        """Checkpoint the tree, then perform the side effects it implies."""
        if not await arena.checkpoint():
            logger.warning(f'Checkpoint of case {arena.root.name} incomplete; continuing')

        messages_before = sum(len(member.messages) for member in arena)
        for item in arena.take_staged():
            save_r = await self.repo.save(item)
            if is_err(save_r):
                logger.error(f'Failed to save work item {item.name}: {save_r.err_value}')
                continue
            instance = arena.get(item.case_id or '') or arena.root
            if item.type is not WorkItemType.EVENT and item.owner:
                await notify_safely(
                    self.notifier,
                    item.notification_template,
                    [item.owner],
                    {
                        'caseId': instance.id,
                        'caseName': instance.name,
                        'workItem': item.name,
                        'description': item.description,
                        **item.attributes,
                    },
                    on_failure=lambda text, instance=instance: instance.add_message(
                        Message.warn(text)
                    ),
                )
                await self._hook(instance)('open_work_item', instance, item)
        await arena.delete_doomed_items()
        if sum(len(member.messages) for member in arena) != messages_before:
            await arena.checkpoint()

        root = arena.root
        if not root.complete:
            return
        for listener in self._listeners:
            try:
                await listener(root)
            except Exception as exc:
                logger.error(
                    f'Completion listener {getattr(listener, "__qualname__", listener)} '
                    f'failed for case {root.name}: {exc}'
                )
        if not self._keep(root):
            for instance in arena:
                await self.repo.delete(instance)
