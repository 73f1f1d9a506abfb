# caseflow/core/logging.py
import logging
import sys
from datetime import datetime
from typing import Any, MutableMapping

# Module-level default log level, can be changed by set_default_level()
_default_level: int = logging.INFO


class ColoredFormatter(logging.Formatter):
    """Colored tabular formatter for caseflow logging"""

    COLORS = {
        'RESET': '\033[0m',
        'LIGHT_BLUE': '\033[94m',
        'WHITE': '\033[97m',
        'GRAY': '\033[90m',
        'GREEN': '\033[92m',
        'YELLOW': '\033[93m',
        'RED': '\033[91m',
        'BRIGHT_RED': '\033[1;91m',
    }

    LEVEL_COLORS = {
        'DEBUG': COLORS['GRAY'],
        'INFO': COLORS['GREEN'],
        'WARNING': COLORS['YELLOW'],
        'ERROR': COLORS['RED'],
        'CRITICAL': COLORS['BRIGHT_RED'],
    }

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'caseflow.tasks.results' -> 'results'
        component = record.name.split('.')[-1] if '.' in record.name else record.name

        # [termination] is the widest component name
        component_padded = f'[{component}]'.ljust(15)
        level_padded = f'[{record.levelname}]'.ljust(10)

        level_color = self.LEVEL_COLORS.get(record.levelname, self.COLORS['WHITE'])

        formatted = (
            f"{self.COLORS['LIGHT_BLUE']}[{time_str}]{self.COLORS['RESET']} "
            f"{self.COLORS['WHITE']}{component_padded}{self.COLORS['RESET']}"
            f"{level_color}{level_padded}{self.COLORS['RESET']}"
            f"{self.COLORS['WHITE']}{record.getMessage()}{self.COLORS['RESET']}"
        )

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


class CaseLoggerAdapter(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Prefix messages with the case or record they concern.

    ``bind(logger, case='c-1')`` renders ``[case=c-1] message``.
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        context = self.extra or {}
        if not context:
            return msg, kwargs
        prefix = ' '.join(f'{key}={value}' for key, value in context.items())
        return f'[{prefix}] {msg}', kwargs


def set_default_level(level: int) -> None:
    """Set the default log level for new loggers and retune existing ones."""
    global _default_level
    _default_level = level
    for name, existing in logging.Logger.manager.loggerDict.items():
        if name.startswith('caseflow.') and isinstance(existing, logging.Logger):
            existing.setLevel(level)
            for handler in existing.handlers:
                handler.setLevel(level)


def get_logger(component_name: str) -> logging.Logger:
    """Get a logger for the specified component."""
    logger_name = f'caseflow.{component_name}'
    logger = logging.getLogger(logger_name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter())
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)

        # Prevent duplicate logs from parent loggers
        logger.propagate = False

    return logger


def bind(logger: logging.Logger, **context: Any) -> CaseLoggerAdapter:
    """Return an adapter that tags every message with ``context``."""
    return CaseLoggerAdapter(logger, {k: v for k, v in context.items() if v is not None})
