"""Unit tests for caseflow logging module."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator

import pytest

from caseflow.core import logging as caseflow_logging
from caseflow.core.logging import ColoredFormatter, bind, get_logger, set_default_level

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _restore_default_level() -> Iterator[None]:
    """Save and restore the module-level _default_level after each test."""
    original = caseflow_logging._default_level
    yield
    set_default_level(original)


def _unique_logger() -> logging.Logger:
    return get_logger(f'test_{uuid.uuid4().hex[:8]}')


class TestSetDefaultLevel:
    def test_changes_module_variable(self) -> None:
        set_default_level(logging.DEBUG)
        assert caseflow_logging._default_level == logging.DEBUG

    def test_new_logger_uses_default_level(self) -> None:
        set_default_level(logging.WARNING)

        logger = _unique_logger()

        assert logger.level == logging.WARNING
        assert logger.propagate is False
        assert all(h.level == logging.WARNING for h in logger.handlers)

    def test_retunes_existing_loggers(self) -> None:
        logger = _unique_logger()

        set_default_level(logging.ERROR)

        assert logger.level == logging.ERROR
        assert all(h.level == logging.ERROR for h in logger.handlers)

    def test_get_logger_is_idempotent(self) -> None:
        name = f'test_{uuid.uuid4().hex[:8]}'

        first = get_logger(name)
        second = get_logger(name)

        assert first is second
        assert len(second.handlers) == 1


class TestFormatting:
    def test_formatter_shows_component_level_and_message(self) -> None:
        record = logging.LogRecord(
            'caseflow.results', logging.WARNING, __file__, 1, 'Finalized %s', ('Nightly',), None
        )

        text = ColoredFormatter().format(record)

        assert '[results]' in text
        assert '[WARNING]' in text
        assert 'Finalized Nightly' in text

    def test_bind_prefixes_context(self) -> None:
        adapter = bind(_unique_logger(), case='c-1', record=None, step='Approve')

        message, _ = adapter.process('opened', {})

        assert message == '[case=c-1 step=Approve] opened'

    def test_bind_without_context_is_transparent(self) -> None:
        adapter = bind(_unique_logger())

        assert adapter.process('plain', {})[0] == 'plain'
