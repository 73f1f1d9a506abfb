"""Unit tests for Registry, CapabilityRegistry and DefinitionRegistry."""

from __future__ import annotations

from typing import Any

import pytest

from caseflow.core.errors import (
    ConfigurationError,
    ErrorCode,
    MultipleValidationErrors,
)
from caseflow.core.models.definition import ProcessDefinition, Step
from caseflow.core.models.records import JobDefinition
from caseflow.core.registry.base import DuplicateNameError, NotRegistered, Registry
from caseflow.core.registry.capabilities import CapabilityRegistry, invoke, source_of
from caseflow.core.registry.definitions import DefinitionRegistry
from caseflow.core.types.status import RecordType


def pick_owner(amount: int) -> str:
    return 'cfo' if amount > 1000 else 'manager'


def everything(**env: Any) -> list[str]:
    return sorted(env)


@pytest.mark.unit
class TestRegistry:
    """Tests for the name -> object Registry."""

    def test_missing_key_raises_not_registered(self) -> None:
        """Bracket access on a missing name raises NotRegistered naming the kind."""
        reg: Registry[str] = Registry('rule')
        with pytest.raises(NotRegistered) as exc_info:
            reg['nope']
        assert exc_info.value.kind == 'rule'
        assert exc_info.value.name == 'nope'

    def test_contains_uses_key_error(self) -> None:
        """`in` works because NotRegistered is a KeyError."""
        reg: Registry[str] = Registry('call')
        reg.register('x', name='present')
        assert 'present' in reg
        assert 'absent' not in reg

    def test_duplicate_from_other_source_raises(self) -> None:
        reg: Registry[str] = Registry('rule')
        reg.register('first', name='dup', source='a.py:1')
        with pytest.raises(DuplicateNameError) as exc_info:
            reg.register('second', name='dup', source='b.py:9')
        assert exc_info.value.code == ErrorCode.DUPLICATE_NAME
        assert reg['dup'] == 'first'

    def test_reimport_from_same_source_is_skipped(self) -> None:
        """Same name and source returns the original object instead of raising."""
        reg: Registry[str] = Registry('rule')
        reg.register('first', name='dup', source='a.py:1')
        assert reg.register('again', name='dup', source='a.py:1') == 'first'
        assert len(reg) == 1

    def test_replace_swaps_entry(self) -> None:
        reg: Registry[str] = Registry('process')
        reg.register('old', name='P')
        reg.register('new', name='P', replace=True)
        assert reg['P'] == 'new'

    def test_direct_assignment_is_unique_too(self) -> None:
        reg: Registry[str] = Registry('rule')
        reg['a'] = 'one'
        with pytest.raises(DuplicateNameError):
            reg['a'] = 'two'

    def test_unregister_and_delete(self) -> None:
        reg: Registry[str] = Registry('rule')
        reg.register('one', name='a', source='x.py:1')
        reg.register('two', name='b')
        reg.unregister('a')
        reg.unregister('never-there')
        del reg['b']
        assert reg.keys_list() == []
        # Source tracking is gone as well, so a new source is accepted.
        reg.register('three', name='a', source='y.py:2')
        assert reg['a'] == 'three'


@pytest.mark.unit
class TestCapabilityRegistry:
    def test_rules_register_under_function_name(self) -> None:
        capabilities = CapabilityRegistry()
        capabilities.register_rule(pick_owner)
        capabilities.register_call(everything, name='Dump Env')
        assert capabilities.rules['pick_owner'] is pick_owner
        assert capabilities.calls['Dump Env'] is everything

    def test_same_function_twice_is_a_reimport(self) -> None:
        capabilities = CapabilityRegistry()
        capabilities.register_rule(pick_owner)
        assert capabilities.register_rule(pick_owner) is pick_owner

    def test_different_function_same_name_is_duplicate(self) -> None:
        capabilities = CapabilityRegistry()
        capabilities.register_rule(pick_owner, name='owner')
        with pytest.raises(DuplicateNameError):
            capabilities.register_rule(everything, name='owner')

    def test_source_of(self) -> None:
        source = source_of(pick_owner)
        assert source is not None
        assert source.endswith(f':{pick_owner.__code__.co_firstlineno}')
        assert source_of(len) is None

    def test_get_handler(self) -> None:
        capabilities = CapabilityRegistry()
        assert capabilities.get_handler(None) is None
        with pytest.raises(NotRegistered):
            capabilities.get_handler('missing')

    @pytest.mark.asyncio
    async def test_invoke_passes_declared_arguments_only(self) -> None:
        assert await invoke(pick_owner, {'amount': 5000, 'other': 1}) == 'cfo'

    @pytest.mark.asyncio
    async def test_invoke_passes_whole_env_to_kwargs(self) -> None:
        assert await invoke(everything, {'b': 1, 'a': 2}) == ['a', 'b']

    @pytest.mark.asyncio
    async def test_invoke_awaits_coroutines(self) -> None:
        async def double(amount: int) -> int:
            return amount * 2

        assert await invoke(double, {'amount': 21}) == 42


@pytest.mark.unit
class TestDefinitionRegistry:
    def _registry(self) -> DefinitionRegistry:
        return DefinitionRegistry(CapabilityRegistry())

    def test_registers_valid_process(self) -> None:
        registry = self._registry()
        definition = ProcessDefinition(name='Simple', steps=[Step(name='Go', action='call:go')])
        registry.register_process(definition)
        assert registry.get_process('Simple') is definition

    def test_self_recursive_subprocess_is_allowed(self) -> None:
        registry = self._registry()
        registry.register_process(
            ProcessDefinition(name='Tree', steps=[Step(name='Branch', subprocess='Tree')])
        )
        assert 'Tree' in registry.processes

    def test_unknown_subprocess_rejected(self) -> None:
        registry = self._registry()
        with pytest.raises(ConfigurationError) as exc_info:
            registry.register_process(
                ProcessDefinition(name='Parent', steps=[Step(name='Child', subprocess='Ghost')])
            )
        assert exc_info.value.code == ErrorCode.DEFINITION_UNKNOWN_SUBPROCESS

    def test_unknown_handler_rejected(self) -> None:
        registry = self._registry()
        with pytest.raises(ConfigurationError) as exc_info:
            registry.register_process(
                ProcessDefinition(name='H', handler='audit', steps=[Step(name='A')])
            )
        assert exc_info.value.code == ErrorCode.DEFINITION_UNKNOWN_HANDLER

    def test_workflow_job_needs_a_process(self) -> None:
        registry = self._registry()
        with pytest.raises(ConfigurationError) as exc_info:
            registry.register_job(JobDefinition(name='Flow', type=RecordType.WORKFLOW))
        assert exc_info.value.code == ErrorCode.JOB_DEFINITION_INVALID

    def test_workflow_job_needs_a_known_process(self) -> None:
        registry = self._registry()
        with pytest.raises(ConfigurationError) as exc_info:
            registry.register_job(
                JobDefinition(name='Flow', type=RecordType.WORKFLOW, process='Missing')
            )
        assert exc_info.value.code == ErrorCode.JOB_DEFINITION_INVALID
        assert 'Missing' in exc_info.value.message

    def test_generic_job_and_replace(self) -> None:
        registry = self._registry()
        registry.register_job(JobDefinition(name='Export'))
        with pytest.raises(DuplicateNameError):
            registry.register_job(JobDefinition(name='Export'))
        replacement = JobDefinition(name='Export', max_threads=2)
        registry.register_job(replacement, replace=True)
        assert registry.get_job('Export') is replacement


@pytest.mark.unit
class TestProcessValidation:
    """ProcessDefinition.validate collects every problem before raising."""

    def test_no_steps_is_reported_alone(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            ProcessDefinition(name='Empty').validate()
        assert exc_info.value.code == ErrorCode.DEFINITION_NO_STEPS

    def test_multiple_problems_are_collected(self) -> None:
        definition = ProcessDefinition(
            name='Broken',
            steps=[
                Step(name='A', action='call:a', subprocess='Other', transitions=['Nowhere']),
                Step(name='A'),
                Step(name='Tail', catches='explode'),
            ],
        )
        with pytest.raises(MultipleValidationErrors) as exc_info:
            definition.validate()
        codes = {error.code for error in exc_info.value.report.errors}
        assert codes == {
            ErrorCode.DEFINITION_DUPLICATE_STEP,
            ErrorCode.DEFINITION_MULTIPLE_ACTIONS,
            ErrorCode.DEFINITION_UNKNOWN_TRANSITION,
            ErrorCode.DEFINITION_INVALID_CATCH,
        }

    def test_computed_transition_targets_are_not_checked(self) -> None:
        ProcessDefinition(
            name='Dynamic',
            steps=[Step(name='A', transitions=['ref:next_step']), Step(name='B')],
        ).validate()

    def test_unknown_approval_mode(self) -> None:
        definition = ProcessDefinition(
            name='Modes',
            steps=[Step(name='Ask', approval={'name': 'Ask', 'mode': 'sideways'})],
        )
        with pytest.raises(ConfigurationError) as exc_info:
            definition.validate()
        assert exc_info.value.code == ErrorCode.DEFINITION_INVALID_APPROVAL

    def test_replicator_without_subprocess(self) -> None:
        definition = ProcessDefinition(
            name='Fan',
            steps=[Step(name='Each', replicator={'items': 'people', 'arg': 'person'})],
        )
        with pytest.raises(ConfigurationError) as exc_info:
            definition.validate()
        assert exc_info.value.code == ErrorCode.DEFINITION_INVALID_REPLICATOR

    def test_duplicate_catch(self) -> None:
        definition = ProcessDefinition(
            name='Catches',
            steps=[
                Step(name='Main'),
                Step(name='Done 1', catches='complete'),
                Step(name='Done 2', catches='complete'),
            ],
        )
        with pytest.raises(ConfigurationError) as exc_info:
            definition.validate()
        assert exc_info.value.code == ErrorCode.DEFINITION_INVALID_CATCH
