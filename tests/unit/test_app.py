"""Unit tests for the Caseflow app surface: registration, check() and operations."""

from __future__ import annotations

from pathlib import Path
from unittest import mock

import pytest
from result import is_ok

from caseflow.core.app import Caseflow
from caseflow.core.errors import ConfigurationError, ErrorCode
from caseflow.core.models.app import AppConfig
from caseflow.core.models.definition import ApprovalSpec, ProcessDefinition, Step
from caseflow.core.models.records import ExecutionRecord, JobDefinition, WorkItem
from caseflow.core.persistence.base import collect
from caseflow.core.persistence.memory import InMemoryRepository
from caseflow.core.types.status import CompletionStatus, RecordType
from caseflow.core.workflows.handlers import WorkflowHandler


@pytest.mark.unit
class TestRegistration:
    def test_bare_and_named_rule(self, app: Caseflow) -> None:
        @app.rule
        def approvers() -> list[str]:
            return ['alice']

        @app.rule('Pick Owners')
        def pick() -> list[str]:
            return ['bob']

        assert app.capabilities.rules['approvers'] is approvers
        assert app.capabilities.rules['Pick Owners'] is pick

    def test_bare_and_named_call(self, app: Caseflow) -> None:
        @app.call
        def provision() -> None:
            return None

        @app.call('Send Mail')
        async def send() -> None:
            return None

        assert set(app.capabilities.calls) == {'provision', 'Send Mail'}

    def test_handler_class_is_instantiated_once(self, app: Caseflow) -> None:
        @app.handler('audit')
        class Audit(WorkflowHandler):
            pass

        assert isinstance(app.capabilities.handlers['audit'], Audit)

    def test_handler_must_be_a_workflow_handler(self, app: Caseflow) -> None:
        with pytest.raises(ConfigurationError) as exc_info:

            @app.handler('bogus')
            class NotAHandler:
                pass

        assert exc_info.value.code == ErrorCode.DEFINITION_UNKNOWN_HANDLER
        assert 'bogus' not in app.capabilities.handlers

    def test_default_repository_is_in_memory(self) -> None:
        assert isinstance(Caseflow(AppConfig(host='host-a')).repo, InMemoryRepository)


@pytest.mark.unit
class TestCheck:
    def test_passes_when_rules_are_registered(self, app: Caseflow) -> None:
        @app.rule
        def done() -> bool:
            return True

        app.register_job(JobDefinition(name='Job', completion_rule='done', completion_events=['done']))

        assert app.check() == []

    def test_reports_unknown_rules(self, repo: InMemoryRepository) -> None:
        app = Caseflow(AppConfig(host='host-a', completion_rule='global rule'), repository=repo)
        app.register_job(JobDefinition(name='Job', completion_rule='missing', completion_events=['gone']))

        errors = app.check()

        assert [e.code for e in errors] == [ErrorCode.JOB_DEFINITION_INVALID] * 3
        assert errors[0].message == "completion rule 'global rule' is not registered"
        assert {e.message for e in errors[1:]} == {
            "job 'Job' references unknown rule 'missing'",
            "job 'Job' references unknown rule 'gone'",
        }
        assert all(e.location is None for e in errors)

    def test_import_failure_is_reported(self, app: Caseflow) -> None:
        app.discover(['caseflow_tests_missing_module'])

        errors = app.check()

        assert len(errors) == 1
        assert errors[0].code == ErrorCode.CLI_INVALID_LOCATOR
        assert 'ModuleNotFoundError' in errors[0].notes[0]

    def test_discovered_file_is_imported(self, app: Caseflow, tmp_path: Path) -> None:
        module = tmp_path / 'caseflow_defs_ok.py'
        module.write_text('LOADED = True\n')
        app.discover([str(module)])

        assert app.check() == []
        assert app.import_modules() == [str(module)]

    def test_live_check_skips_memory_repository(self, app: Caseflow) -> None:
        assert app.check(live=True) == []


@pytest.mark.unit
class TestOperations:
    @pytest.mark.asyncio
    async def test_launch_generic_job(self, app: Caseflow) -> None:
        app.register_job(JobDefinition(name='Export'))

        record = await app.launch('Export', {'format': 'csv'}, launcher='ops')

        assert record.type is RecordType.GENERIC
        assert record.live is True
        assert record.host == 'host-a'
        assert record.launcher == 'ops'
        assert record.attributes == {'format': 'csv'}

    @pytest.mark.asyncio
    async def test_find_record_by_id_or_name(self, app: Caseflow) -> None:
        record = await app.launch(app.register_job(JobDefinition(name='Audit')), name='Audit Q3')

        by_id = await app.find_record(record.id)
        by_name = await app.find_record('Audit Q3')

        assert by_id is not None and by_name is not None
        assert by_id.id == by_name.id == record.id
        assert await app.find_record('nothing') is None

    @pytest.mark.asyncio
    async def test_start_case_runs_actions(self, app: Caseflow) -> None:
        app.register_process(
            ProcessDefinition(
                name='Compute',
                steps=[Step(name='Add', action='script:a + b', result_variable='total')],
            )
        )

        launch_r = await app.start_case('Compute', {'a': 2, 'b': 3})

        assert is_ok(launch_r)
        assert launch_r.ok_value.complete is True
        assert launch_r.ok_value.variables['total'] == 5

    @pytest.mark.asyncio
    async def test_decide_accepts_state_names(
        self, app: Caseflow, repo: InMemoryRepository
    ) -> None:
        app.register_process(
            ProcessDefinition(
                name='Sign',
                steps=[Step(name='Sign', approval=ApprovalSpec(name='Sign', owner='dana'))],
            )
        )
        app.register_job(JobDefinition(name='Sign Job', type=RecordType.WORKFLOW, process='Sign'))
        record = await app.launch('Sign Job')
        (item,) = await collect(repo, WorkItem)

        decide_r = await app.decide(item.id, 'Finished', actor='dana')

        assert is_ok(decide_r)
        assert decide_r.ok_value.complete is True
        stored = await repo.get(ExecutionRecord, record.id)
        assert stored is not None
        assert stored.completion_status is CompletionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_complete_partition_merges(self, app: Caseflow) -> None:
        record = await app.create_partitions(
            await app.launch(app.register_job(JobDefinition(name='Part'))), ['only']
        )

        merged = await app.complete_partition(
            record.id, 'only', attributes={'rows': 4}
        )

        assert merged.is_complete is True
        assert merged.completion_status is CompletionStatus.SUCCESS
        assert merged.attributes['rows'] == 4


@pytest.mark.unit
class TestDiscover:
    def test_replaces_previous_modules_with_warning(self, app: Caseflow) -> None:
        app.discover(['a.defs', 'b.defs'])

        with mock.patch.object(app.logger, 'warning') as mock_warn:
            app.discover(['c.defs'])

        mock_warn.assert_called_once()
        assert 'replacing 2' in mock_warn.call_args[0][0]

    def test_first_call_does_not_warn(self, app: Caseflow) -> None:
        with mock.patch.object(app.logger, 'warning') as mock_warn:
            app.discover(['a.defs'])

        mock_warn.assert_not_called()
