"""ApprovalResolver: expands owner specifications and drives approval trees.

A step's ApprovalSpec becomes a runtime ``Approval`` tree the first time the
step runs. Leaves with an owner open one work item each; containers derive
their outcome from their children:

    mode          completes when                    on rejection
    serial        last child completes              remaining children canceled
    serialPoll    last child completes              ignored
    parallel      all complete, or any reject       remaining children canceled
    parallelPoll  all children complete             ignored
    any           the first child completes         remaining children canceled
"""

from __future__ import annotations

from dataclasses import dataclass
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from caseflow.core.defaults import QUALIFICATION_DELIMITER
from caseflow.core.errors import DecisionValidationError, ErrorCode
from caseflow.core.evaluation.base import Evaluator
from caseflow.core.logging import get_logger
from caseflow.core.models.case import (
    Approval,
    Decision,
    ProcessInstance,
    StepState,
)
from caseflow.core.models.definition import ApprovalSpec, Step
from caseflow.core.models.records import WorkItem
from caseflow.core.types.status import (
    ApprovalMode,
    ApprovalState,
    WorkItemState,
    WorkItemType,
)

if TYPE_CHECKING:
    from caseflow.core.workflows.arena import CaseArena

logger = get_logger('approvals')

HookFn = Callable[..., Awaitable[None]]


@dataclass
class ApprovalContext:
    """Where an approval tree lives and how to reach its surroundings."""

    instance: ProcessInstance
    step: Step
    state: StepState
    arena: CaseArena
    env: Mapping[str, Any]
    hook: HookFn

    def spec_for(self, approval: Approval) -> ApprovalSpec:
        assert self.step.approval is not None
        return self.step.approval.at_path(approval.spec_path)


class ApprovalResolver:
    def __init__(self, evaluator: Evaluator) -> None:
        self.evaluator = evaluator

    # -- expansion ------------------------------------------------------------

    async def resolve_owners(
        self, spec: ApprovalSpec, approval: Approval, env: Mapping[str, Any]
    ) -> tuple[list[str], list[Approval]]:
        """Evaluate the owner scriptlet into identities and ready-made approvals."""
        if spec.owner is None:
            return [], []
        value = await self.evaluator.evaluate(spec.owner, env)
        identities: list[str] = []
        approvals: list[Approval] = []
        self._collect_owners(value, spec, approval, identities, approvals)
        return identities, approvals

    def _collect_owners(
        self,
        value: Any,
        spec: ApprovalSpec,
        parent: Approval,
        identities: list[str],
        approvals: list[Approval],
    ) -> None:
        match value:
            case None:
                return
            case Approval():
                value.expanded = True
                approvals.append(value)
            case str():
                for part in value.split(','):
                    if part.strip() and part.strip() not in identities:
                        identities.append(part.strip())
            case Mapping():
                approvals.append(
                    Approval(
                        name=str(value.get('name') or spec.name),
                        mode=value.get('mode') or ApprovalMode.SERIAL,
                        owner=value.get('owner'),
                        description=value.get('description') or spec.description,
                        args=dict(value.get('args') or {}),
                        spec_path=list(parent.spec_path),
                        expanded=True,
                    )
                )
            case Iterable():
                for item in value:
                    self._collect_owners(item, spec, parent, identities, approvals)
            case _:
                identities.append(str(value))

    async def expand(self, approval: Approval, ctx: ApprovalContext) -> None:
        """Resolve a node's owner spec into concrete leaves, once."""
        if approval.expanded:
            return
        approval.expanded = True
        spec = ctx.spec_for(approval)

        concrete = [
            Approval(
                name=child.name,
                mode=child.mode,
                description=child.description,
                spec_path=[*approval.spec_path, index],
            )
            for index, child in enumerate(spec.children)
        ]
        identities, objects = await self.resolve_owners(spec, approval, ctx.env)

        if not concrete and not objects and len(identities) == 1:
            # A single owner is attached directly instead of adding a level.
            approval.owner = identities[0]
            return

        owned = objects + [
            Approval(
                name=spec.name,
                owner=identity,
                description=spec.description,
                spec_path=list(approval.spec_path),
                expanded=True,
            )
            for identity in identities
        ]
        approval.children = concrete + owned
        logger.debug(
            f'Expanded approval {approval.name}: {len(concrete)} concrete, '
            f'{len(owned)} owner children'
        )

    # -- lifecycle ------------------------------------------------------------

    async def start(self, approval: Approval, ctx: ApprovalContext) -> None:
        """Start a node. Already-started nodes are left alone."""
        if approval.is_started:
            return
        await self.expand(approval, ctx)
        approval.state = ApprovalState.STARTED
        await ctx.hook('start_approval', ctx.instance, approval)

        if approval.is_leaf:
            if approval.owner is None:
                await self._complete(approval, WorkItemState.FINISHED, ctx)
                return
            await self._open(approval, ctx)
            approval.state = ApprovalState.WAITING
            return

        if approval.mode.is_parallel:
            for child in approval.children:
                if approval.mode.is_any and self._any_decided(approval):
                    break
                await self.start(child, ctx)

        await self.advance_completion(approval, ctx)
        if not approval.is_complete:
            approval.state = ApprovalState.WAITING

    async def _open(self, approval: Approval, ctx: ApprovalContext) -> None:
        existing = await ctx.arena.find_open_item(
            ctx.instance, ctx.step.step_id, ctx.step.name, approval.owner
        )
        if existing is not None:
            logger.debug(
                f'Reusing work item {existing.id} for {approval.owner} on {ctx.step.name}'
            )
            approval.work_item_id = existing.id
            return

        spec = ctx.spec_for(approval)
        attributes: dict[str, Any] = {}
        for arg in spec.args:
            attributes[arg.name] = await self.evaluator.evaluate(arg.value, ctx.env)
        attributes.update(approval.args)

        item = WorkItem(
            name=(
                f'{ctx.instance.work_item_prefix(ctx.step.name)}'
                f'{QUALIFICATION_DELIMITER}{approval.owner}'
            ),
            owner=approval.owner,
            type=WorkItemType.APPROVAL,
            case_id=ctx.instance.id,
            step_id=ctx.step.step_id,
            approval_id=approval.id,
            record_id=ctx.instance.record_id,
            attributes=attributes,
            description=approval.description or spec.description,
            notification_template=spec.notification_template,
        )
        ctx.arena.stage(item)
        approval.work_item_id = item.id

    def _any_decided(self, approval: Approval) -> bool:
        return any(
            child.is_complete
            and child.derive_completion_state() is not WorkItemState.CANCELED
            for child in approval.children
        )

    def _any_rejected(self, approval: Approval) -> bool:
        return any(child.is_complete and child.is_rejected() for child in approval.children)

    async def advance_completion(self, approval: Approval, ctx: ApprovalContext) -> bool:
        """Complete the node if its children allow it; start the next serial child."""
        if approval.is_complete:
            return True
        if approval.is_leaf or not approval.is_started:
            return False

        for child in approval.children:
            if child.is_started and not child.is_complete and not child.is_leaf:
                await self.advance_completion(child, ctx)

        mode = approval.mode
        if mode.is_any:
            if self._any_decided(approval):
                await self._cancel_pending(approval, ctx)
                await self._complete(approval, None, ctx)
                return True
            return False

        if mode.is_parallel:
            if not mode.is_poll and self._any_rejected(approval):
                await self._cancel_pending(approval, ctx)
                await self._complete(approval, None, ctx)
                return True
            if all(child.is_complete for child in approval.children):
                await self._complete(approval, None, ctx)
                return True
            return False

        while True:
            if not mode.is_poll and self._any_rejected(approval):
                await self._cancel_pending(approval, ctx)
                await self._complete(approval, None, ctx)
                return True
            pending = [child for child in approval.children if not child.is_complete]
            if not pending:
                await self._complete(approval, None, ctx)
                return True
            following = pending[0]
            if following.is_started:
                return False
            await self.start(following, ctx)
            if not following.is_complete:
                return False

    async def _complete(
        self, approval: Approval, state: WorkItemState | None, ctx: ApprovalContext
    ) -> None:
        approval.state = ApprovalState.COMPLETE
        approval.completion_state = state
        if state is None:
            approval.completion_state = approval.derive_completion_state()
        await ctx.hook('end_approval', ctx.instance, approval)

    async def _cancel_pending(self, approval: Approval, ctx: ApprovalContext) -> None:
        for child in approval.children:
            if not child.is_complete:
                await self.cancel(child, ctx)

    async def cancel(self, approval: Approval, ctx: ApprovalContext) -> None:
        """Cancel a node and everything below it; complete nodes are untouched."""
        if approval.is_complete:
            return
        for child in approval.children:
            await self.cancel(child, ctx)
        if approval.work_item_id is not None:
            ctx.arena.discard_item(approval.work_item_id)
        approval.state = ApprovalState.COMPLETE
        approval.completion_state = WorkItemState.CANCELED
        await ctx.hook('cancel_approval', ctx.instance, approval)

    def uncomplete(self, approval: Approval) -> None:
        approval.uncomplete()

    # -- decisions ------------------------------------------------------------

    async def validate_decision(
        self, approval: Approval, item: WorkItem, decision: Decision, ctx: ApprovalContext
    ) -> None:
        """Raise DecisionValidationError when the decision cannot be accepted."""
        spec = ctx.spec_for(approval)
        if (
            spec.require_comments
            and decision.state in (WorkItemState.REJECTED, WorkItemState.RETURNED)
            and not (decision.comments or '').strip()
        ):
            raise DecisionValidationError(
                message=f"approval '{approval.name}' requires comments when {decision.state.value.lower()}",
                code=ErrorCode.DECISION_COMMENTS_REQUIRED,
                help_text='add comments explaining the decision',
            )
        if spec.validation is None:
            return
        outcome = await self.evaluator.evaluate(
            spec.validation, self.decision_env(approval, item, decision, ctx)
        )
        if outcome is False or (isinstance(outcome, str) and outcome.strip()):
            raise DecisionValidationError(
                message=outcome if isinstance(outcome, str) else 'decision failed validation',
                code=ErrorCode.DECISION_REJECTED,
                notes=[f"approval '{approval.name}', owner {approval.owner}"],
            )

    def decision_env(
        self, approval: Approval, item: WorkItem, decision: Decision, ctx: ApprovalContext
    ) -> dict[str, Any]:
        return {
            **ctx.env,
            **item.attributes,
            **decision.variables,
            'decision': decision.state.value,
            'comments': decision.comments,
            'owner': approval.owner,
            'actor': decision.actor,
        }

    async def assimilate(
        self, approval: Approval, item: WorkItem, decision: Decision, ctx: ApprovalContext
    ) -> None:
        """Record a decision on a leaf and copy its returns into the case."""
        await ctx.hook('pre_assimilation', ctx.instance, approval, item)
        approval.state = ApprovalState.COMPLETE
        approval.completion_state = decision.state
        approval.comments = decision.comments
        approval.variables = dict(decision.variables)
        approval.assimilated = True

        spec = ctx.spec_for(approval)
        env = self.decision_env(approval, item, decision, ctx)
        for ret in spec.returns:
            if ret.value is not None:
                value = await self.evaluator.evaluate(ret.value, env)
            else:
                value = env.get(ret.name)
            ctx.instance.apply_return(ret, value, ctx.state)
        await ctx.hook('post_assimilation', ctx.instance, approval, item)
        await ctx.hook('end_approval', ctx.instance, approval)
