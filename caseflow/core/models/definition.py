"""ProcessDefinition: validated template for a case."""

from __future__ import annotations

import copy
from collections.abc import Container
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

from caseflow.core.defaults import CATCH_COMPLETE
from caseflow.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)
from caseflow.core.types.status import ApprovalMode


# Catch conditions a step may declare.
KNOWN_CATCH_CONDITIONS: frozenset[str] = frozenset({CATCH_COMPLETE})


class ScriptletKind(str, Enum):
    """How a scriptlet's source is turned into a value."""

    LITERAL = 'literal'
    REFERENCE = 'ref'
    SCRIPT = 'script'
    RULE = 'rule'
    CALL = 'call'


_PREFIXES: tuple[tuple[str, ScriptletKind], ...] = (
    ('ref:', ScriptletKind.REFERENCE),
    ('script:', ScriptletKind.SCRIPT),
    ('rule:', ScriptletKind.RULE),
    ('call:', ScriptletKind.CALL),
    ('string:', ScriptletKind.LITERAL),
)


@dataclass
class Scriptlet:
    """
    A value computed at runtime.

    Parsed from prefixed strings:
        'ref:approver'       -> dotted variable lookup
        'script:amount > 10' -> expression over the case variables
        'rule:Pick Owners'   -> registered rule
        'call:notify'        -> registered call
        'string:ref:x'       -> the literal text 'ref:x'
    Anything else (including non-strings) is a literal.
    """

    kind: ScriptletKind
    source: Any = None

    def __post_init__(self) -> None:
        if not isinstance(self.kind, ScriptletKind):
            self.kind = ScriptletKind(self.kind)

    @classmethod
    def parse(cls, value: Any) -> Scriptlet:
        if isinstance(value, Scriptlet):
            return value
        if isinstance(value, str):
            for prefix, kind in _PREFIXES:
                if value.startswith(prefix):
                    return cls(kind=kind, source=value[len(prefix) :].strip())
        return cls(kind=ScriptletKind.LITERAL, source=value)

    @classmethod
    def literal(cls, value: Any) -> Scriptlet:
        return cls(kind=ScriptletKind.LITERAL, source=value)

    @property
    def is_literal(self) -> bool:
        return self.kind is ScriptletKind.LITERAL

    def __str__(self) -> str:
        if self.is_literal:
            return str(self.source)
        return f'{self.kind.value}:{self.source}'


def _scriptlet(value: Any) -> Scriptlet | None:
    if value is None:
        return None
    if isinstance(value, dict) and 'kind' in value:
        return Scriptlet(**value)  # type: ignore[arg-type]
    return Scriptlet.parse(value)


@dataclass
class Variable:
    """A declared case variable."""

    name: str
    initializer: Scriptlet | None = None
    input: bool = False
    output: bool = False
    required: bool = False
    transient: bool = False
    """Dropped whenever the case is checkpointed."""

    def __post_init__(self) -> None:
        self.initializer = _scriptlet(self.initializer)


@dataclass
class Arg:
    name: str
    value: Scriptlet | None = None

    def __post_init__(self) -> None:
        self.value = _scriptlet(self.value)


@dataclass
class Return:
    """Copies a value out of a child case or a completed work item."""

    name: str
    """Variable read from the child case or work item."""

    to: str | None = None
    """Target variable; defaults to name."""

    value: Scriptlet | None = None
    """Computed instead of reading name when set."""

    merge: bool = False
    """List-merge into the existing target value."""

    local: bool = False
    """Target is a step-local value, never copied into case variables."""

    def __post_init__(self) -> None:
        self.value = _scriptlet(self.value)

    @property
    def target(self) -> str:
        return self.to or self.name


@dataclass
class Transition:
    to: Scriptlet
    """Step id or name; a non-literal scriptlet computes one."""

    when: Scriptlet | None = None
    """Unconditional when absent."""

    def __post_init__(self) -> None:
        self.to = Scriptlet.parse(self.to)
        self.when = _scriptlet(self.when)


@dataclass
class Replicator:
    """Launch one child case per item of a list variable."""

    items: str
    arg: str


@dataclass
class ApprovalSpec:
    name: str
    mode: ApprovalMode = ApprovalMode.SERIAL
    owner: Scriptlet | None = None
    """Literal list, comma string, rule, script or call."""

    children: list[ApprovalSpec] = field(default_factory=lambda: [])
    args: list[Arg] = field(default_factory=lambda: [])
    returns: list[Return] = field(default_factory=lambda: [])
    description: str | None = None
    notification_template: str | None = None
    validation: Scriptlet | None = None
    """Evaluated against the decision; a non-empty result rejects it."""

    require_comments: bool = False

    def __post_init__(self) -> None:
        # Unknown modes are kept raw so validate() can report them.
        if isinstance(self.mode, str) and not isinstance(self.mode, ApprovalMode):
            try:
                self.mode = ApprovalMode(self.mode)
            except ValueError:
                pass
        self.owner = _scriptlet(self.owner)
        self.validation = _scriptlet(self.validation)
        self.args = _coerce_args(self.args)
        self.returns = _coerce_returns(self.returns)
        self.children = [
            c if isinstance(c, ApprovalSpec) else ApprovalSpec(**c)
            for c in self.children
        ]

    def walk(self) -> Iterator[ApprovalSpec]:
        yield self
        for child in self.children:
            yield from child.walk()

    def at_path(self, path: list[int]) -> ApprovalSpec:
        """Follow child indices from this spec."""
        spec = self
        for index in path:
            if index >= len(spec.children):
                break
            spec = spec.children[index]
        return spec


def _coerce_args(args: Any) -> list[Arg]:
    if isinstance(args, dict):
        return [Arg(name=k, value=v) for k, v in args.items()]
    return [a if isinstance(a, Arg) else Arg(**a) for a in args]


def _coerce_returns(returns: Any) -> list[Return]:
    out: list[Return] = []
    for r in returns:
        if isinstance(r, Return):
            out.append(r)
        elif isinstance(r, str):
            out.append(Return(name=r))
        else:
            out.append(Return(**r))
    return out


@dataclass
class Step:
    name: str
    id: str | None = None
    """Defaults to name."""

    action: Scriptlet | None = None
    subprocess: str | None = None
    approval: ApprovalSpec | None = None
    condition: Scriptlet | None = None
    """Step is skipped when this evaluates falsy."""

    args: list[Arg] = field(default_factory=lambda: [])
    returns: list[Return] = field(default_factory=lambda: [])
    result_variable: str | None = None
    transitions: list[Transition] = field(default_factory=lambda: [])
    background: bool = False
    wait: Scriptlet | None = None
    """Positive minutes, negative seconds, or an absolute datetime."""

    catches: str | None = None
    replicator: Replicator | None = None
    description: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            self.id = self.name
        self.action = _scriptlet(self.action)
        self.condition = _scriptlet(self.condition)
        self.wait = _scriptlet(self.wait)
        if isinstance(self.approval, dict):
            self.approval = ApprovalSpec(**self.approval)
        if isinstance(self.replicator, dict):
            self.replicator = Replicator(**self.replicator)
        self.args = _coerce_args(self.args)
        self.returns = _coerce_returns(self.returns)
        self.transitions = [
            t if isinstance(t, Transition)
            else Transition(**t) if isinstance(t, dict)
            else Transition(to=t)
            for t in self.transitions
        ]

    @property
    def step_id(self) -> str:
        assert self.id is not None
        return self.id

    @property
    def action_count(self) -> int:
        return sum(
            1
            for present in (self.action, self.subprocess, self.approval)
            if present is not None
        )

    @property
    def is_catch(self) -> bool:
        return self.catches is not None

    @property
    def suspends(self) -> bool:
        return self.background or self.wait is not None


@dataclass
class ProcessDefinition:
    """
    Immutable template for a case. Every case works on a private deep copy.

    Example:
        definition = ProcessDefinition(
            name='Access Request',
            steps=[
                Step(name='Approve', approval=ApprovalSpec(name='Manager', owner='ref:manager')),
                Step(name='Provision', action='call:provision'),
            ],
        )
    """

    name: str
    steps: list[Step] = field(default_factory=lambda: [])
    variables: list[Variable] = field(default_factory=lambda: [])
    explicit_transitions: bool = False
    """When set, a step with no matching transition ends the case."""

    handler: str | None = None
    """Registered WorkflowHandler capability."""

    keep_completed_cases: bool | None = None
    """None defers to AppConfig.keep_completed_cases."""

    description: str | None = None

    def __post_init__(self) -> None:
        self.steps = [s if isinstance(s, Step) else Step(**s) for s in self.steps]
        self.variables = [
            v if isinstance(v, Variable)
            else Variable(name=v) if isinstance(v, str)
            else Variable(**v)
            for v in self.variables
        ]

    # -- lookup ---------------------------------------------------------------

    def get_step(self, ref: str | None) -> Step | None:
        if ref is None:
            return None
        for step in self.steps:
            if step.id == ref:
                return step
        for step in self.steps:
            if step.name == ref:
                return step
        return None

    def step_index(self, step_id: str) -> int:
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        return -1

    def first_step(self) -> Step | None:
        for step in self.steps:
            if not step.is_catch:
                return step
        return None

    def next_step(self, step_id: str) -> Step | None:
        """Next step in declaration order, never falling into a catch step."""
        index = self.step_index(step_id)
        if index < 0:
            return None
        for step in self.steps[index + 1 :]:
            if not step.is_catch:
                return step
        return None

    def catch_step(self, condition: str) -> Step | None:
        for step in self.steps:
            if step.catches == condition:
                return step
        return None

    def get_variable(self, name: str) -> Variable | None:
        for variable in self.variables:
            if variable.name == name:
                return variable
        return None

    def copy(self) -> ProcessDefinition:
        return copy.deepcopy(self)

    # -- validation -----------------------------------------------------------

    def validate(
        self,
        handlers: Container[str] | None = None,
        subprocesses: Container[str] | None = None,
    ) -> None:
        """Raise ConfigurationError (or MultipleValidationErrors) when malformed.

        ``handlers`` and ``subprocesses`` are the registered names to check
        against; None skips that check.
        """
        report = ValidationReport('definition')
        if not self.name or not self.name.strip():
            report.add(
                ConfigurationError(
                    message='process definition has no name',
                    code=ErrorCode.DEFINITION_NO_NAME,
                    help_text='give the definition a non-empty name',
                )
            )
        if not self.steps:
            report.add(
                ConfigurationError(
                    message=f"process '{self.name}' has no steps",
                    code=ErrorCode.DEFINITION_NO_STEPS,
                    help_text='add at least one Step',
                )
            )
            raise_collected(report)
            return

        for error in self._collect_duplicate_step_errors():
            report.add(error)
        for error in self._collect_action_errors():
            report.add(error)
        for error in self._collect_transition_errors():
            report.add(error)
        for error in self._collect_approval_errors():
            report.add(error)
        for error in self._collect_replicator_errors(subprocesses):
            report.add(error)
        for error in self._collect_catch_errors():
            report.add(error)
        for error in self._collect_handler_errors(handlers):
            report.add(error)

        raise_collected(report)

    def _collect_duplicate_step_errors(self) -> list[ConfigurationError]:
        errors: list[ConfigurationError] = []
        seen: set[str] = set()
        for step in self.steps:
            if step.step_id in seen:
                errors.append(
                    ConfigurationError(
                        message=f"duplicate step id '{step.step_id}'",
                        code=ErrorCode.DEFINITION_DUPLICATE_STEP,
                        notes=[f"process '{self.name}'"],
                        help_text='give each step a unique id (defaults to its name)',
                    )
                )
            seen.add(step.step_id)
        return errors

    def _collect_action_errors(self) -> list[ConfigurationError]:
        errors: list[ConfigurationError] = []
        for step in self.steps:
            if step.action_count > 1:
                errors.append(
                    ConfigurationError(
                        message=f"step '{step.step_id}' declares more than one action",
                        code=ErrorCode.DEFINITION_MULTIPLE_ACTIONS,
                        notes=[
                            f'action={step.action}, subprocess={step.subprocess}, '
                            f'approval={step.approval.name if step.approval else None}'
                        ],
                        help_text='split the work into separate steps',
                    )
                )
        return errors

    def _collect_transition_errors(self) -> list[ConfigurationError]:
        errors: list[ConfigurationError] = []
        for step in self.steps:
            for transition in step.transitions:
                if not transition.to.is_literal:
                    continue
                target = transition.to.source
                if not isinstance(target, str) or self.get_step(target) is None:
                    errors.append(
                        ConfigurationError(
                            message=f"step '{step.step_id}' transitions to unknown step '{target}'",
                            code=ErrorCode.DEFINITION_UNKNOWN_TRANSITION,
                            notes=[f"known steps: {[s.step_id for s in self.steps]}"],
                        )
                    )
        return errors

    def _collect_approval_errors(self) -> list[ConfigurationError]:
        errors: list[ConfigurationError] = []
        for step in self.steps:
            if step.approval is None:
                continue
            for spec in step.approval.walk():
                if not isinstance(spec.mode, ApprovalMode):
                    errors.append(
                        ConfigurationError(
                            message=f"approval '{spec.name}' has unknown mode '{spec.mode}'",
                            code=ErrorCode.DEFINITION_INVALID_APPROVAL,
                            notes=[f"step '{step.step_id}'"],
                            help_text=(
                                f'use one of {[m.value for m in ApprovalMode]}'
                            ),
                        )
                    )
        return errors

    def _collect_replicator_errors(
        self, subprocesses: Container[str] | None
    ) -> list[ConfigurationError]:
        errors: list[ConfigurationError] = []
        for step in self.steps:
            if step.replicator is not None and step.subprocess is None:
                errors.append(
                    ConfigurationError(
                        message=f"step '{step.step_id}' has a replicator but no subprocess",
                        code=ErrorCode.DEFINITION_INVALID_REPLICATOR,
                        help_text='replicators launch one subprocess per item',
                    )
                )
            if (
                step.subprocess is not None
                and subprocesses is not None
                and step.subprocess not in subprocesses
                and step.subprocess != self.name
            ):
                errors.append(
                    ConfigurationError(
                        message=f"step '{step.step_id}' calls unknown subprocess '{step.subprocess}'",
                        code=ErrorCode.DEFINITION_UNKNOWN_SUBPROCESS,
                        help_text='register the subprocess definition first',
                    )
                )
        return errors

    def _collect_catch_errors(self) -> list[ConfigurationError]:
        errors: list[ConfigurationError] = []
        seen: set[str] = set()
        for step in self.steps:
            if step.catches is None:
                continue
            if step.catches not in KNOWN_CATCH_CONDITIONS:
                errors.append(
                    ConfigurationError(
                        message=f"step '{step.step_id}' catches unknown condition '{step.catches}'",
                        code=ErrorCode.DEFINITION_INVALID_CATCH,
                        notes=[f'known conditions: {sorted(KNOWN_CATCH_CONDITIONS)}'],
                    )
                )
            elif step.catches in seen:
                errors.append(
                    ConfigurationError(
                        message=f"condition '{step.catches}' is caught by more than one step",
                        code=ErrorCode.DEFINITION_INVALID_CATCH,
                    )
                )
            seen.add(step.catches)
        return errors

    def _collect_handler_errors(
        self, handlers: Container[str] | None
    ) -> list[ConfigurationError]:
        if self.handler is None or handlers is None or self.handler in handlers:
            return []
        return [
            ConfigurationError(
                message=f"process '{self.name}' names unknown handler '{self.handler}'",
                code=ErrorCode.DEFINITION_UNKNOWN_HANDLER,
                help_text='register it with @app.handler before the definition',
            )
        ]
