"""Evaluator protocol: turns scriptlets into values."""

from __future__ import annotations

from typing import Any, Mapping, Protocol

from caseflow.core.models.definition import Scriptlet


class Evaluator(Protocol):
    async def evaluate(self, scriptlet: Scriptlet | None, env: Mapping[str, Any]) -> Any:
        """Return the scriptlet's value in ``env``.

        Raises UnresolvableError when a referenced capability does not
        exist and EvaluationError when evaluation itself fails.
        """
        ...
