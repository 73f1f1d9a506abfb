"""Unit tests for Scriptlet parsing and ScriptletEvaluator."""

from __future__ import annotations

from typing import Any

import pytest

from caseflow.core.errors import ErrorCode, EvaluationError, UnresolvableError
from caseflow.core.evaluation.scriptlets import ScriptletEvaluator, lookup
from caseflow.core.models.definition import Scriptlet, ScriptletKind
from caseflow.core.registry.capabilities import CapabilityRegistry

pytestmark = pytest.mark.unit


class TestScriptletParse:
    @pytest.mark.parametrize(
        'raw, kind, source',
        [
            ('ref:request.amount', ScriptletKind.REFERENCE, 'request.amount'),
            ('script: amount > 10', ScriptletKind.SCRIPT, 'amount > 10'),
            ('rule:Pick Owners', ScriptletKind.RULE, 'Pick Owners'),
            ('call:notify', ScriptletKind.CALL, 'notify'),
            ('string:ref:x', ScriptletKind.LITERAL, 'ref:x'),
            ('plain text', ScriptletKind.LITERAL, 'plain text'),
            (42, ScriptletKind.LITERAL, 42),
        ],
    )
    def test_prefixes(self, raw: Any, kind: ScriptletKind, source: Any) -> None:
        scriptlet = Scriptlet.parse(raw)
        assert scriptlet.kind is kind
        assert scriptlet.source == source

    def test_str_round_trips_prefix(self) -> None:
        assert str(Scriptlet.parse('ref:manager')) == 'ref:manager'
        assert str(Scriptlet.literal('alice')) == 'alice'

    def test_kind_coerced_from_value(self) -> None:
        assert Scriptlet(kind='call', source='x').kind is ScriptletKind.CALL  # type: ignore[arg-type]


class TestLookup:
    def test_dotted_paths(self) -> None:
        class Holder:
            city = 'Oslo'

        env = {'request': {'owner': {'name': 'rita'}}, 'holder': Holder()}
        assert lookup('request.owner.name', env) == 'rita'
        assert lookup('holder.city', env) == 'Oslo'

    def test_missing_parts_are_none(self) -> None:
        assert lookup('request.nope.deeper', {'request': {}}) is None
        assert lookup('absent', {}) is None


class TestScriptletEvaluator:
    def _evaluator(self) -> ScriptletEvaluator:
        capabilities = CapabilityRegistry()

        def owners(amount: int) -> list[str]:
            return ['cfo'] if amount > 1000 else ['manager']

        async def fetch(region: str) -> str:
            return f'data for {region}'

        def broken() -> None:
            raise KeyError('missing column')

        capabilities.register_rule(owners, name='owners')
        capabilities.register_call(fetch, name='fetch')
        capabilities.register_call(broken, name='broken')
        return ScriptletEvaluator(capabilities)

    @pytest.mark.asyncio
    async def test_none_and_literals(self) -> None:
        evaluator = self._evaluator()
        assert await evaluator.evaluate(None, {}) is None
        assert await evaluator.evaluate(Scriptlet.literal([1, 2]), {}) == [1, 2]

    @pytest.mark.asyncio
    async def test_reference(self) -> None:
        evaluator = self._evaluator()
        value = await evaluator.evaluate(Scriptlet.parse('ref:a.b'), {'a': {'b': 3}})
        assert value == 3

    @pytest.mark.asyncio
    async def test_script_sees_env(self) -> None:
        evaluator = self._evaluator()
        env = {'amount': 250, 'limit': 100}
        assert await evaluator.evaluate(Scriptlet.parse('script:amount > limit'), env) is True

    @pytest.mark.asyncio
    async def test_script_unknown_name_fails(self) -> None:
        evaluator = self._evaluator()
        with pytest.raises(EvaluationError) as exc_info:
            await evaluator.evaluate(Scriptlet.parse("script:open('/etc/passwd')"), {})
        assert exc_info.value.code == ErrorCode.EVALUATION_FAILED
        assert 'UndefinedError' in exc_info.value.message

    @pytest.mark.asyncio
    async def test_script_cannot_reach_private_attributes(self) -> None:
        evaluator = self._evaluator()
        escape = (
            "script:[c for c in ().__class__.__base__.__subclasses__()"
            " if c.__name__ == 'BuiltinImporter']"
        )
        # Comprehensions are not part of the expression language.
        with pytest.raises(EvaluationError):
            await evaluator.evaluate(Scriptlet.parse(escape), {})

        with pytest.raises(EvaluationError) as exc_info:
            await evaluator.evaluate(
                Scriptlet.parse('script:items.__class__.__base__.__subclasses__()'),
                {'items': []},
            )
        assert 'SecurityError' in exc_info.value.message

    @pytest.mark.asyncio
    async def test_script_arithmetic_error_is_wrapped(self) -> None:
        evaluator = self._evaluator()
        with pytest.raises(EvaluationError) as exc_info:
            await evaluator.evaluate(
                Scriptlet.parse('script:total / count'), {'total': 1, 'count': 0}
            )
        assert 'ZeroDivisionError' in exc_info.value.message
        assert isinstance(exc_info.value.__cause__, ZeroDivisionError)

    @pytest.mark.asyncio
    async def test_compiled_script_is_reused(self) -> None:
        evaluator = self._evaluator()
        script = Scriptlet.parse('script:amount * 2')
        assert await evaluator.evaluate(script, {'amount': 2}) == 4
        assert await evaluator.evaluate(script, {'amount': 5}) == 10
        assert list(evaluator._compiled) == ['amount * 2']

    @pytest.mark.asyncio
    async def test_script_syntax_error(self) -> None:
        evaluator = self._evaluator()
        with pytest.raises(EvaluationError, match='invalid script'):
            await evaluator.evaluate(Scriptlet.parse('script:amount >'), {'amount': 1})

    @pytest.mark.asyncio
    async def test_rule_and_call(self) -> None:
        evaluator = self._evaluator()
        assert await evaluator.evaluate(Scriptlet.parse('rule:owners'), {'amount': 5000}) == ['cfo']
        assert (
            await evaluator.evaluate(Scriptlet.parse('call:fetch'), {'region': 'eu'})
            == 'data for eu'
        )

    @pytest.mark.asyncio
    async def test_unregistered_capability(self) -> None:
        evaluator = self._evaluator()
        with pytest.raises(UnresolvableError) as exc_info:
            await evaluator.evaluate(Scriptlet.parse('call:ghost'), {})
        assert exc_info.value.message == "call 'ghost' is not registered"
        assert exc_info.value.code == ErrorCode.UNRESOLVABLE

    @pytest.mark.asyncio
    async def test_capability_failure_is_wrapped(self) -> None:
        evaluator = self._evaluator()
        with pytest.raises(EvaluationError) as exc_info:
            await evaluator.evaluate(Scriptlet.parse('call:broken'), {})
        assert exc_info.value.message.startswith("call 'broken' failed: KeyError")
        assert isinstance(exc_info.value.__cause__, KeyError)
