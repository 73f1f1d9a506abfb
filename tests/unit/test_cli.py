"""Unit tests for app discovery and the caseflow command line."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Iterator
from unittest import mock

import pytest

from caseflow.core.app import Caseflow
from caseflow.core.cli import (
    _resolve_module_argument,
    check_command,
    discover_app,
    main,
)
from caseflow.core.errors import ConfigurationError, ErrorCode
from caseflow.core.utils.imports import split_locator

_APP_MODULE = """
from caseflow.core.app import Caseflow
from caseflow.core.models.app import AppConfig
from caseflow.core.models.records import JobDefinition

app = Caseflow(AppConfig(host='cli-host'))
app.register_job(JobDefinition(name='Nightly', completion_rule={rule!r}))
"""


def _write_app(tmp_path: Path, filename: str, rule: str | None = None) -> Path:
    path = tmp_path / filename
    path.write_text(_APP_MODULE.format(rule=rule))
    return path


@pytest.fixture(autouse=True)
def _restore_sys_path() -> Iterator[None]:
    original_path = sys.path.copy()
    yield
    sys.path[:] = original_path


@pytest.mark.unit
class TestSplitLocator:
    @pytest.mark.parametrize(
        'locator, expected',
        [
            ('app.configs.caseflow:app', ('app.configs.caseflow', 'app')),
            ('app.configs.caseflow', ('app.configs.caseflow', None)),
            ('app/configs/caseflow.py:app', ('app/configs/caseflow.py', 'app')),
            ('app/configs/caseflow.py', ('app/configs/caseflow.py', None)),
            ('pkg.mod:', ('pkg.mod', None)),
        ],
    )
    def test_split(self, locator: str, expected: tuple[str, str | None]) -> None:
        assert split_locator(locator) == expected


@pytest.mark.unit
class TestResolveModuleArgument:
    def test_flag_wins_over_positional(self) -> None:
        args = argparse.Namespace(module='a.b:app', module_pos='c.d:app')
        assert _resolve_module_argument(args) == 'a.b:app'

    def test_positional(self) -> None:
        args = argparse.Namespace(module=None, module_pos='c.d:app')
        assert _resolve_module_argument(args) == 'c.d:app'

    def test_missing_module_path(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            _resolve_module_argument(argparse.Namespace(module=None, module_pos=None))
        assert exc_info.value.code == ErrorCode.CLI_INVALID_ARGS


@pytest.mark.unit
class TestDiscoverApp:
    def test_explicit_attribute(self, tmp_path: Path) -> None:
        path = _write_app(tmp_path, 'explicit_app.py')

        app, name = discover_app(f'{path}:app')

        assert isinstance(app, Caseflow)
        assert name == 'app'
        assert app.config.host == 'cli-host'
        assert 'Nightly' in app.definitions.jobs

    def test_auto_discovers_single_instance(self, tmp_path: Path) -> None:
        path = _write_app(tmp_path, 'auto_app.py')

        app, name = discover_app(str(path))

        assert name == 'app'
        assert isinstance(app, Caseflow)

    def test_attribute_must_be_a_caseflow(self, tmp_path: Path) -> None:
        path = _write_app(tmp_path, 'wrong_attr_app.py')

        with pytest.raises(ConfigurationError) as exc_info:
            discover_app(f'{path}:Caseflow')

        assert exc_info.value.code == ErrorCode.CLI_INVALID_LOCATOR
        assert exc_info.value.notes == ['got type']

    def test_no_instance(self, tmp_path: Path) -> None:
        path = tmp_path / 'empty_app.py'
        path.write_text('VALUE = 1\n')

        with pytest.raises(ConfigurationError, match='no Caseflow instance'):
            discover_app(str(path))

    def test_multiple_instances(self, tmp_path: Path) -> None:
        path = tmp_path / 'two_apps.py'
        path.write_text(
            'from caseflow.core.app import Caseflow\n'
            'from caseflow.core.models.app import AppConfig\n'
            "first = Caseflow(AppConfig(host='one'))\n"
            "second = Caseflow(AppConfig(host='two'))\n"
        )

        with pytest.raises(ConfigurationError) as exc_info:
            discover_app(str(path))

        assert 'multiple Caseflow instances' in exc_info.value.message
        assert exc_info.value.notes == ["candidates: ['first', 'second']"]

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            discover_app(f'{tmp_path / "nope.py"}:app')
        assert exc_info.value.code == ErrorCode.CLI_INVALID_LOCATOR
        assert 'module file not found' in exc_info.value.message

    def test_missing_dotted_module(self) -> None:
        with pytest.raises(ConfigurationError, match='module not found'):
            discover_app('caseflow_tests_absent.config:app')


@pytest.mark.unit
class TestCommands:
    def test_check_passes(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        path = _write_app(tmp_path, 'check_ok_app.py')
        args = argparse.Namespace(
            module=f'{path}:app', module_pos=None, loglevel='WARNING', live=False
        )

        check_command(args)

        out = capsys.readouterr().out
        assert 'ok: all validations passed' in out
        assert '0 process(es), 1 job(s) registered' in out

    def test_check_reports_errors(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        path = _write_app(tmp_path, 'check_bad_app.py', rule='missing rule')
        args = argparse.Namespace(
            module=f'{path}:app', module_pos=None, loglevel='WARNING', live=False
        )

        with pytest.raises(SystemExit) as exc_info:
            check_command(args)

        assert exc_info.value.code == 1
        assert "unknown rule 'missing rule'" in capsys.readouterr().err

    def test_partitions_command(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        path = _write_app(tmp_path, 'partitions_app.py')
        argv = ['caseflow', 'partitions', f'{path}:app', '--job', 'Nightly']

        with mock.patch.object(sys, 'argv', argv):
            main()

        assert 'Nightly: 1 partition(s) suggested' in capsys.readouterr().out

    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        with mock.patch.object(sys, 'argv', ['caseflow']):
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 1
        assert 'usage: caseflow' in capsys.readouterr().out
