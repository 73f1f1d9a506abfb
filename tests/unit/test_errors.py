"""Unit tests for Rust-style error formatting and the error taxonomy."""

from __future__ import annotations

import inspect
import os
import sys
import tempfile
from collections.abc import Iterator
from io import StringIO
from unittest import mock

import pytest

from caseflow.core.errors import (
    AlreadyRunningError,
    CaseflowError,
    ConfigurationError,
    DecisionValidationError,
    ErrorCode,
    EvaluationError,
    LockTimeoutError,
    MultipleValidationErrors,
    PersistenceError,
    RegistryError,
    ResultExistsError,
    SourceLocation,
    UnresolvableError,
    ValidationReport,
    _caseflow_excepthook,
    _original_excepthook,
    _should_use_colors,
    configuration_error,
    install_error_handler,
    raise_collected,
    uninstall_error_handler,
)
from caseflow.core.registry.base import DuplicateNameError, NotRegistered

pytestmark = pytest.mark.unit


class TestSourceLocation:
    def test_format_short(self) -> None:
        assert SourceLocation(file='flow.py', line=3).format_short() == 'flow.py:3'
        assert SourceLocation(file='flow.py', line=3, column=7).format_short() == 'flow.py:3:7'

    def test_get_source_line(self) -> None:
        with tempfile.NamedTemporaryFile(mode='w', suffix='.py', delete=False) as f:
            f.write('first\n    second line\n')
            temp_path = f.name
        try:
            assert SourceLocation(file=temp_path, line=2).get_source_line() == '    second line'
            assert SourceLocation(file=temp_path, line=99).get_source_line() is None
        finally:
            os.unlink(temp_path)

    def test_from_frame(self) -> None:
        frame = inspect.currentframe()
        assert frame is not None
        loc = SourceLocation.from_frame(frame)
        assert loc.file.endswith('test_errors.py')
        assert loc.line > 0


class TestCaseflowError:
    def test_basic_creation(self) -> None:
        err = CaseflowError(message='something went wrong')
        assert err.message == 'something went wrong'
        assert err.code is None
        assert err.notes == []
        assert err.args == ('something went wrong',)

    def test_fluent_api(self) -> None:
        err = CaseflowError(message='error').with_note('note 1').with_note('note 2').with_help('fix it')
        assert err.notes == ['note 1', 'note 2']
        assert err.help_text == 'fix it'

    def test_auto_location_points_at_caller(self) -> None:
        err = CaseflowError(message='auto-located')
        assert err.location is not None
        assert err.location.file.endswith('test_errors.py')

    def test_format_with_code_notes_and_help(self) -> None:
        err = CaseflowError(
            message='step Review is defined twice',
            code=ErrorCode.DEFINITION_DUPLICATE_STEP,
            location=SourceLocation(file='/nonexistent/flow.py', line=10),
            notes=['first at index 0', 'line 1\nline 2'],
            help_text='rename one of the steps',
        )
        formatted = err.format_rust_style(use_colors=False)
        assert 'error[E003]: step Review is defined twice' in formatted
        assert '--> /nonexistent/flow.py:10' in formatted
        assert '= note: first at index 0' in formatted
        assert '= note: line 1' in formatted
        assert '          line 2' in formatted
        assert '= help:' in formatted
        assert 'rename one of the steps' in formatted
        assert '^' not in formatted

    def test_format_underlines_source(self) -> None:
        with tempfile.NamedTemporaryFile(mode='w', suffix='.py', delete=False) as f:
            f.write('owner = resolve_owner()\n')
            temp_path = f.name
        try:
            err = CaseflowError(
                message='bad owner',
                location=SourceLocation(file=temp_path, line=1, column=8, end_column=21),
            )
            formatted = err.format_rust_style(use_colors=False)
            assert 'owner = resolve_owner()' in formatted
            assert ' ' * 8 + '^' * 13 in formatted
        finally:
            os.unlink(temp_path)

    def test_colors(self) -> None:
        err = CaseflowError(message='colored error')
        assert '\033[' in err.format_rust_style(use_colors=True)
        with mock.patch('caseflow.core.errors._should_use_colors', return_value=False):
            assert '\033[' not in err.format_rust_style()

    def test_str_is_plain(self) -> None:
        err = CaseflowError(message='test')
        assert 'error: test' in str(err)
        assert '\033[' not in str(err)


class TestHierarchy:
    @pytest.mark.parametrize(
        'error_type',
        [
            ConfigurationError,
            AlreadyRunningError,
            DecisionValidationError,
            EvaluationError,
            PersistenceError,
            RegistryError,
        ],
    )
    def test_all_are_caseflow_errors(self, error_type: type[CaseflowError]) -> None:
        assert issubclass(error_type, CaseflowError)

    def test_specializations(self) -> None:
        assert issubclass(ResultExistsError, AlreadyRunningError)
        assert issubclass(UnresolvableError, EvaluationError)
        assert issubclass(LockTimeoutError, PersistenceError)

    def test_already_running_carries_record_name(self) -> None:
        err = ResultExistsError(
            message='exists', code=ErrorCode.RESULT_EXISTS, record_name='Nightly - 2'
        )
        assert err.record_name == 'Nightly - 2'

    def test_not_registered_is_a_key_error(self) -> None:
        err = NotRegistered('approvers', 'rule')
        assert isinstance(err, KeyError)
        assert isinstance(err, RegistryError)
        assert err.code is ErrorCode.NOT_REGISTERED
        assert err.message == "rule 'approvers' not registered"

    def test_duplicate_name(self) -> None:
        err = DuplicateNameError('Expense', 'process', 'already exists')
        assert err.code is ErrorCode.DUPLICATE_NAME
        assert err.notes == ['already exists']

    def test_configuration_error_helper(self) -> None:
        err = configuration_error('bad', code=ErrorCode.JOB_DEFINITION_INVALID, notes=['n'])
        assert err.code is ErrorCode.JOB_DEFINITION_INVALID
        assert err.location is not None
        assert err.location.file.endswith('test_errors.py')


class TestEnvironmentVariables:
    def test_force_color_beats_no_color(self) -> None:
        with mock.patch.dict(os.environ, {'CASEFLOW_FORCE_COLOR': '1', 'NO_COLOR': '1'}):
            assert _should_use_colors() is True

    def test_no_color_disables(self) -> None:
        with mock.patch.dict(os.environ, {'CASEFLOW_FORCE_COLOR': '', 'NO_COLOR': ''}):
            assert _should_use_colors() is False


class TestExceptionHook:
    @pytest.fixture(autouse=True)
    def _restore_excepthook(self) -> Iterator[None]:
        original = sys.excepthook
        yield
        sys.excepthook = original

    def test_install_and_uninstall(self) -> None:
        install_error_handler()
        assert sys.excepthook == _caseflow_excepthook
        uninstall_error_handler()
        assert sys.excepthook == _original_excepthook

    def test_caseflow_error_prints_to_stderr(self) -> None:
        err = CaseflowError(message='hook test error')
        fake_stderr = StringIO()
        with mock.patch('sys.stderr', fake_stderr):
            with mock.patch.dict(os.environ, {
                'CASEFLOW_PLAIN_ERRORS': '',
                'CASEFLOW_VERBOSE': '1',
                'CASEFLOW_FORCE_COLOR': '',
            }):
                _caseflow_excepthook(type(err), err, err.__traceback__)
        output = fake_stderr.getvalue()
        assert 'error: hook test error' in output
        assert 'Full traceback (CASEFLOW_VERBOSE=1):' in output

    def test_other_errors_delegate_to_original(self) -> None:
        err = ValueError('not ours')
        with mock.patch('caseflow.core.errors._original_excepthook') as mock_hook:
            with mock.patch.dict(os.environ, {'CASEFLOW_PLAIN_ERRORS': ''}):
                _caseflow_excepthook(type(err), err, err.__traceback__)
            mock_hook.assert_called_once_with(type(err), err, err.__traceback__)

    def test_plain_errors_bypasses_custom_formatting(self) -> None:
        err = CaseflowError(message='plain mode')
        with mock.patch('caseflow.core.errors._original_excepthook') as mock_hook:
            with mock.patch.dict(os.environ, {'CASEFLOW_PLAIN_ERRORS': '1'}):
                _caseflow_excepthook(type(err), err, err.__traceback__)
            mock_hook.assert_called_once()


class TestErrorCode:
    def test_codes_are_unique_strings(self) -> None:
        values = [code.value for code in ErrorCode]
        assert len(values) == len(set(values))
        assert all(v.startswith('E') and len(v) == 4 for v in values)

    def test_categories(self) -> None:
        assert ErrorCode.ALREADY_RUNNING.value == 'E100'
        assert ErrorCode.DECISION_REJECTED.value == 'E200'
        assert ErrorCode.EVALUATION_FAILED.value == 'E300'
        assert ErrorCode.PERSISTENCE_FAILED.value == 'E400'
        assert ErrorCode.NOT_REGISTERED.value == 'E500'


class TestValidationReport:
    def test_empty_report(self) -> None:
        report = ValidationReport('check')
        assert not report.has_errors()
        assert report.phase_name == 'check'
        raise_collected(report)

    def test_single_error_raises_original_type(self) -> None:
        report = ValidationReport('rules')
        report.add(ConfigurationError(message='unknown rule'))
        with pytest.raises(ConfigurationError, match='unknown rule') as exc_info:
            raise_collected(report)
        assert not isinstance(exc_info.value, MultipleValidationErrors)

    def test_multiple_errors_are_wrapped(self) -> None:
        report = ValidationReport('rules')
        report.add(ConfigurationError(message='first error'))
        report.add(ConfigurationError(message='second error'))
        with pytest.raises(MultipleValidationErrors) as exc_info:
            raise_collected(report)
        exc = exc_info.value
        assert exc.report is report
        assert isinstance(exc, CaseflowError)
        text = str(exc)
        assert 'first error' in text
        assert 'second error' in text
        assert 'aborting due to 2 previous errors' in text
