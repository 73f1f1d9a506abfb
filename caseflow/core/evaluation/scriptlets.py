"""Default Evaluator backed by the capability registry."""

from __future__ import annotations

from typing import Any, Mapping

from jinja2 import StrictUndefined, TemplateSyntaxError
from jinja2.environment import TemplateExpression
from jinja2.sandbox import SandboxedEnvironment

from caseflow.core.errors import (
    CaseflowError,
    ErrorCode,
    EvaluationError,
    UnresolvableError,
)
from caseflow.core.logging import get_logger
from caseflow.core.models.definition import Scriptlet, ScriptletKind
from caseflow.core.registry.base import NotRegistered
from caseflow.core.registry.capabilities import CapabilityRegistry, invoke

logger = get_logger('evaluator')


def lookup(path: str, env: Mapping[str, Any]) -> Any:
    """Resolve a dotted path against ``env``; missing parts give None."""
    head, _, rest = path.partition('.')
    value = env.get(head)
    if not rest:
        return value
    for part in rest.split('.'):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        else:
            value = getattr(value, part, None)
    return value


class ScriptletEvaluator:
    """
    Evaluates scriptlets:

    - literal: the source value itself
    - ref: dotted lookup in the environment
    - script: a sandboxed Jinja expression over the environment
    - rule / call: a registered function, called with the environment

    Unknown names in a script raise instead of rendering as undefined, and
    private attributes (``__class__`` and friends) are refused by the sandbox.
    """

    def __init__(self, capabilities: CapabilityRegistry) -> None:
        self.capabilities = capabilities
        self._jinja_env = SandboxedEnvironment(autoescape=False, undefined=StrictUndefined)
        self._compiled: dict[str, TemplateExpression] = {}

    def _compile(self, source: str) -> TemplateExpression:
        expression = self._compiled.get(source)
        if expression is None:
            try:
                expression = self._jinja_env.compile_expression(source)
            except TemplateSyntaxError as exc:
                raise EvaluationError(
                    message=f'invalid script: {exc.message}',
                    code=ErrorCode.EVALUATION_FAILED,
                    notes=[f'script: {source}'],
                ) from exc
            self._compiled[source] = expression
        return expression

    async def evaluate(self, scriptlet: Scriptlet | None, env: Mapping[str, Any]) -> Any:
        if scriptlet is None:
            return None

        match scriptlet.kind:
            case ScriptletKind.LITERAL:
                return scriptlet.source
            case ScriptletKind.REFERENCE:
                return lookup(str(scriptlet.source), env)
            case ScriptletKind.SCRIPT:
                expression = self._compile(str(scriptlet.source))
                try:
                    return expression(dict(env))
                except Exception as exc:
                    raise EvaluationError(
                        message=f'script failed: {type(exc).__name__}: {exc}',
                        code=ErrorCode.EVALUATION_FAILED,
                        notes=[f'script: {scriptlet.source}'],
                    ) from exc
            case ScriptletKind.RULE:
                return await self._run(self.capabilities.rules, scriptlet, env)
            case ScriptletKind.CALL:
                return await self._run(self.capabilities.calls, scriptlet, env)

    async def _run(self, registry: Any, scriptlet: Scriptlet, env: Mapping[str, Any]) -> Any:
        name = str(scriptlet.source)
        try:
            fn = registry[name]
        except NotRegistered as exc:
            raise UnresolvableError(
                message=f"{registry.kind} '{name}' is not registered",
                code=ErrorCode.UNRESOLVABLE,
                help_text=f'register it with @app.{registry.kind}',
            ) from exc
        try:
            return await invoke(fn, env)
        except CaseflowError:
            raise
        except Exception as exc:
            logger.debug(f'{registry.kind} {name} raised {type(exc).__name__}: {exc}')
            raise EvaluationError(
                message=f"{registry.kind} '{name}' failed: {type(exc).__name__}: {exc}",
                code=ErrorCode.EVALUATION_FAILED,
            ) from exc
