"""Registered rules, calls and workflow handlers, looked up by name."""

from __future__ import annotations

import inspect
import os
from typing import TYPE_CHECKING, Any, Callable, Mapping

from caseflow.core.registry.base import Registry

if TYPE_CHECKING:
    from caseflow.core.workflows.handlers import WorkflowHandler


def source_of(fn: Callable[..., Any]) -> str | None:
    """'file:line' of a function, used to tell re-imports from duplicates."""
    code = getattr(fn, '__code__', None)
    if code is None:
        return None
    return f'{os.path.realpath(code.co_filename)}:{code.co_firstlineno}'


def _valid_kwarg_names(sig: inspect.Signature) -> set[str]:
    return {
        param.name
        for param in sig.parameters.values()
        if param.kind
        in (inspect.Parameter.POSITIONAL_OR_KEYWORD, inspect.Parameter.KEYWORD_ONLY)
    }


def _signature_accepts_kwargs(sig: inspect.Signature) -> bool:
    return any(
        param.kind == inspect.Parameter.VAR_KEYWORD
        for param in sig.parameters.values()
    )


async def invoke(fn: Callable[..., Any], env: Mapping[str, Any]) -> Any:
    """
    Call a rule or call with the parts of ``env`` it declares.

    Functions taking ``**kwargs`` receive the whole environment. Coroutine
    functions are awaited.
    """
    try:
        sig: inspect.Signature | None = inspect.signature(fn)
    except (TypeError, ValueError):
        sig = None
    if sig is None or _signature_accepts_kwargs(sig):
        kwargs = dict(env)
    else:
        names = _valid_kwarg_names(sig)
        kwargs = {k: v for k, v in env.items() if k in names}
    value = fn(**kwargs)
    if inspect.isawaitable(value):
        value = await value
    return value


class CapabilityRegistry:
    """
    Named capabilities referenced from definitions.

    - rules: ``rule:<name>`` scriptlets, completion rules and events
    - calls: ``call:<name>`` scriptlets
    - handlers: WorkflowHandler interceptors named by ProcessDefinition.handler
    """

    def __init__(self) -> None:
        self.rules: Registry[Callable[..., Any]] = Registry('rule')
        self.calls: Registry[Callable[..., Any]] = Registry('call')
        self.handlers: Registry[WorkflowHandler] = Registry('handler')

    def register_rule(
        self, fn: Callable[..., Any], name: str | None = None
    ) -> Callable[..., Any]:
        return self.rules.register(fn, name=name or fn.__name__, source=source_of(fn))

    def register_call(
        self, fn: Callable[..., Any], name: str | None = None
    ) -> Callable[..., Any]:
        return self.calls.register(fn, name=name or fn.__name__, source=source_of(fn))

    def register_handler(self, handler: WorkflowHandler, name: str) -> WorkflowHandler:
        return self.handlers.register(handler, name=name)

    def get_handler(self, name: str | None) -> WorkflowHandler | None:
        if name is None:
            return None
        return self.handlers[name]
