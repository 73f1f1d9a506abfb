# caseflow/core/models/app.py
import logging
import os
import socket
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator
from caseflow.core.models.repository import PostgresConfig
from caseflow.core.models.naming import NamingConfig
from caseflow.core.models.recovery import RecoveryConfig
from caseflow.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)
from caseflow.core.utils.url import mask_database_url


def _default_host() -> str:
    return os.environ.get('CASEFLOW_HOST') or socket.gethostname()


class AppConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Host name stamped on records this process launches.
    host: str = Field(default_factory=_default_host)
    # None keeps everything in memory (tests, single-process tools).
    repository: Optional[PostgresConfig] = None
    naming: NamingConfig = Field(default_factory=NamingConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    # Route every live termination through the command channel, even for
    # records owned by this host.
    force_remote_termination: bool = False
    # Keep completed cases in the repository instead of deleting them.
    keep_completed_cases: bool = False
    # Rule run after every record finalizes unless the job names its own.
    completion_rule: Optional[str] = None

    @model_validator(mode='after')
    def validate_app(self):
        report = ValidationReport('config')

        if not self.host or not self.host.strip():
            report.add(
                ConfigurationError(
                    message='host must be a non-empty string',
                    code=ErrorCode.CONFIG_INVALID_RECOVERY,
                    notes=[f'got host={self.host!r}'],
                    help_text='leave host unset to use socket.gethostname()',
                )
            )
        elif len(self.host) > 255:
            report.add(
                ConfigurationError(
                    message='host name too long',
                    code=ErrorCode.CONFIG_INVALID_RECOVERY,
                    notes=[f'host has {len(self.host)} characters, limit is 255'],
                    help_text='use the short host name',
                )
            )

        if self.completion_rule is not None and not self.completion_rule.strip():
            report.add(
                ConfigurationError(
                    message='completion_rule must not be blank',
                    code=ErrorCode.CONFIG_INVALID_RECOVERY,
                    notes=['completion_rule names a rule registered on the app'],
                    help_text='set completion_rule=None to disable it',
                )
            )

        raise_collected(report)
        return self

    def log_config(self, logger: Optional[logging.Logger] = None) -> None:
        """
        Log the AppConfig in a human-readable format.
        Masks sensitive data like database passwords.

        Args:
            logger: Logger instance to use. If None, uses root logger.
        """
        if logger is None:
            logger = logging.getLogger()

        formatted = self._format_for_logging()
        logger.info('AppConfig:\n%s', formatted)

    def _format_for_logging(self) -> str:
        """Internal helper to format the AppConfig for human-readable logging."""
        lines: list[str] = []

        lines.append(f'  host: {self.host}')

        if self.repository is None:
            lines.append('  repository: in-memory')
        else:
            masked_url = mask_database_url(self.repository.database_url)
            lines.append('  repository:')
            lines.append(f'    database_url: {masked_url}')
            lines.append(f'    pool_size: {self.repository.pool_size}')
            lines.append(f'    max_overflow: {self.repository.max_overflow}')

        lines.append('  naming:')
        lines.append(f'    max_attempts: {self.naming.max_attempts}')
        lines.append(
            f'    backoff: every {self.naming.backoff_every} attempts, '
            f'{self.naming.backoff_min_ms}-{self.naming.backoff_max_ms}ms'
        )
        lines.append(f'    scan_limit: {self.naming.scan_limit}')

        lines.append('  recovery:')
        lines.append(f'    sweep_orphans_on_start: {self.recovery.sweep_orphans_on_start}')
        lines.append(f'    event_check_interval: {self.recovery.event_check_interval_ms}ms')
        lines.append(f'    command_poll_interval: {self.recovery.command_poll_interval_ms}ms')
        lines.append(
            f'    node_heartbeat: interval={self.recovery.node_heartbeat_interval_ms}ms, '
            f'stale={self.recovery.node_stale_threshold_ms}ms'
        )

        if self.force_remote_termination:
            lines.append('  force_remote_termination: True')
        if self.keep_completed_cases:
            lines.append('  keep_completed_cases: True')
        if self.completion_rule is not None:
            lines.append(f'  completion_rule: {self.completion_rule}')

        return '\n'.join(lines)
