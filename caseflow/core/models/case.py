"""Runtime state of a case: instances, step states and approval trees."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Iterator

from caseflow.core.defaults import QUALIFICATION_DELIMITER
from caseflow.core.models.definition import ProcessDefinition, Return, Step
from caseflow.core.types.status import (
    ApprovalMode,
    ApprovalState,
    MessageType,
    WorkItemState,
)
from caseflow.core.utils.clock import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Message:
    type: MessageType
    text: str
    created: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not isinstance(self.type, MessageType):
            self.type = MessageType(self.type)

    @classmethod
    def info(cls, text: str) -> Message:
        return cls(MessageType.INFO, text)

    @classmethod
    def warn(cls, text: str) -> Message:
        return cls(MessageType.WARN, text)

    @classmethod
    def error(cls, text: str) -> Message:
        return cls(MessageType.ERROR, text)


@dataclass
class Approval:
    """
    Node of an expanded approval tree.

    Leaves carry an owner and at most one work item. Containers derive their
    outcome from their children according to ``mode``.
    """

    name: str
    mode: ApprovalMode = ApprovalMode.SERIAL
    id: str = field(default_factory=_new_id)
    owner: str | None = None
    children: list[Approval] = field(default_factory=lambda: [])
    state: ApprovalState = ApprovalState.NOT_STARTED
    completion_state: WorkItemState | None = None
    work_item_id: str | None = None
    comments: str | None = None
    assimilated: bool = False
    spec_path: list[int] = field(default_factory=lambda: [])
    """Child indices from the step's ApprovalSpec to the spec this node came from."""

    expanded: bool = False
    args: dict[str, Any] = field(default_factory=lambda: {})
    description: str | None = None
    variables: dict[str, Any] = field(default_factory=lambda: {})
    """Decision attributes copied from the completed work item."""

    def __post_init__(self) -> None:
        if not isinstance(self.mode, ApprovalMode):
            self.mode = ApprovalMode(self.mode)
        if not isinstance(self.state, ApprovalState):
            self.state = ApprovalState(self.state)
        if self.completion_state is not None and not isinstance(
            self.completion_state, WorkItemState
        ):
            self.completion_state = WorkItemState(self.completion_state)

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def is_complete(self) -> bool:
        return self.state is ApprovalState.COMPLETE

    @property
    def is_started(self) -> bool:
        return self.state is not ApprovalState.NOT_STARTED

    def walk(self) -> Iterator[Approval]:
        yield self
        for child in self.children:
            yield from child.walk()

    def leaves(self) -> Iterator[Approval]:
        for node in self.walk():
            if node.is_leaf:
                yield node

    def find(self, approval_id: str) -> Approval | None:
        for node in self.walk():
            if node.id == approval_id:
                return node
        return None

    def find_by_work_item(self, work_item_id: str) -> Approval | None:
        for node in self.walk():
            if node.work_item_id == work_item_id:
                return node
        return None

    def derive_completion_state(self) -> WorkItemState | None:
        """Outcome of this node, derived from its children when it has no own state."""
        if self.completion_state is not None:
            return self.completion_state
        if not self.children:
            return WorkItemState.FINISHED
        if self.mode.is_poll:
            return WorkItemState.FINISHED
        if self.mode.is_any:
            for child in self.children:
                if not child.is_complete:
                    continue
                state = child.derive_completion_state()
                if state is not None and state is not WorkItemState.CANCELED:
                    return state
            return None

        # serial or consensus: the first concrete non-Finished state decides
        state: WorkItemState | None = None
        for child in self.children:
            state = child.derive_completion_state() if child.is_complete else None
            if state is not None and state is not WorkItemState.FINISHED:
                break
        if state is None:
            # No consensus reached and nobody contributed a concrete reject.
            state = WorkItemState.REJECTED
        return state

    def is_rejected(self) -> bool:
        state = self.derive_completion_state()
        return state is not None and state is not WorkItemState.FINISHED

    def uncomplete(self) -> None:
        """Reset decision state for a loop, keeping expansion and owners."""
        self.state = ApprovalState.NOT_STARTED
        self.completion_state = None
        self.work_item_id = None
        self.comments = None
        self.assimilated = False
        self.variables = {}
        for child in self.children:
            child.uncomplete()


@dataclass
class StepState:
    step_id: str
    started: bool = False
    complete: bool = False
    wait_item_id: str | None = None
    wait_done: bool = False
    child_ids: list[str] = field(default_factory=lambda: [])
    approval: Approval | None = None
    result: Any = None
    args: dict[str, Any] = field(default_factory=lambda: {})
    """Step args, evaluated once when the step starts."""

    locals: dict[str, Any] = field(default_factory=lambda: {})
    """Targets of local returns; never copied into case variables."""

    def uncomplete(self) -> None:
        self.started = False
        self.complete = False
        self.wait_item_id = None
        self.wait_done = False
        self.child_ids = []
        self.result = None
        self.args = {}
        self.locals = {}
        if self.approval is not None:
            self.approval.uncomplete()


@dataclass
class ProcessInstance:
    """
    One running execution of a process definition (a "case").

    Instances of a tree share ``root_id``; children point at their parent
    through ``parent_id`` and at the launching step through ``parent_step_id``.
    """

    UNIQUE_NAMES: ClassVar[bool] = False

    definition: ProcessDefinition
    name: str | None = None
    id: str = field(default_factory=_new_id)
    parent_id: str | None = None
    parent_step_id: str | None = None
    root_id: str | None = None
    record_id: str | None = None
    launcher: str | None = None
    variables: dict[str, Any] = field(default_factory=lambda: {})
    current_step_id: str | None = None
    step_states: dict[str, StepState] = field(default_factory=lambda: {})
    complete: bool = False
    terminated: bool = False
    error: bool = False
    messages: list[Message] = field(default_factory=lambda: [])
    handled_conditions: list[str] = field(default_factory=lambda: [])
    replicate_index: int | None = None
    created: datetime = field(default_factory=utcnow)
    updated: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.name is None:
            self.name = self.definition.name
        if self.root_id is None:
            self.root_id = self.id

    @property
    def definition_name(self) -> str:
        return self.definition.name

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def state_for(self, step_id: str) -> StepState:
        state = self.step_states.get(step_id)
        if state is None:
            state = StepState(step_id=step_id)
            self.step_states[step_id] = state
        return state

    def current_step(self) -> Step | None:
        return self.definition.get_step(self.current_step_id)

    def add_message(self, message: Message) -> None:
        self.messages.append(message)
        if message.type is MessageType.ERROR:
            self.error = True

    def has_errors(self) -> bool:
        return self.error or any(m.type is MessageType.ERROR for m in self.messages)

    def approvals(self) -> Iterator[tuple[str, Approval]]:
        for step_id, state in self.step_states.items():
            if state.approval is not None:
                for node in state.approval.walk():
                    yield step_id, node

    def apply_return(self, ret: Return, value: Any, state: StepState) -> None:
        """Store a returned value in the case variables, or the step locals."""
        bucket = state.locals if ret.local else self.variables
        target = ret.target
        if not ret.merge:
            bucket[target] = value
            return
        existing = bucket.get(target)
        if existing is None:
            merged: list[Any] = []
        elif isinstance(existing, (list, tuple)):
            merged = list(existing)
        else:
            merged = [existing]
        incoming = value if isinstance(value, (list, tuple)) else [value]
        for item in incoming:
            if item is not None and item not in merged:
                merged.append(item)
        bucket[target] = merged

    def work_item_prefix(self, step_name: str) -> str:
        """Deterministic name prefix shared by all work items of one step."""
        return f'{self.name}{QUALIFICATION_DELIMITER}{step_name}'

    def pending_approvals(self) -> list[Approval]:
        """Started leaves still waiting on a decision."""
        return [
            node
            for _, node in self.approvals()
            if node.is_leaf and node.is_started and not node.is_complete
        ]


@dataclass
class Decision:
    """An actor's answer to a work item."""

    state: WorkItemState = WorkItemState.FINISHED
    comments: str | None = None
    variables: dict[str, Any] = field(default_factory=lambda: {})
    actor: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.state, WorkItemState):
            self.state = WorkItemState(self.state)
