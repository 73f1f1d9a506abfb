# caseflow/core/models/recovery.py
from __future__ import annotations
from typing import Annotated, Self
from pydantic import BaseModel, ConfigDict, Field, model_validator
from caseflow.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)


class RecoveryConfig(BaseModel):
    """
    Configuration for orphan recovery and the maintenance loops.

    All time values are in milliseconds.

    Fields:
    - sweep_orphans_on_start: Terminate records this host left unfinished when it last died
    - event_check_interval_ms: How often due wait/background events are resumed
    - command_poll_interval_ms: How often host-addressed commands are processed
    - node_heartbeat_interval_ms: How often this host refreshes its cluster node record
    - node_stale_threshold_ms: Milliseconds without a heartbeat before a node is ignored
    - command_max_attempts: Failed command executions before a command is dropped
    """

    model_config = ConfigDict(frozen=True)

    sweep_orphans_on_start: bool = Field(
        default=True,
        description='Mark records stamped with this host and never completed as Terminated',
    )
    event_check_interval_ms: Annotated[int, Field(ge=1_000, le=3_600_000)] = Field(
        default=60_000,
        description='How often due event work items are resumed (1s-1hr)',
    )
    command_poll_interval_ms: Annotated[int, Field(ge=500, le=600_000)] = Field(
        default=5_000,
        description='How often pending host commands are processed (0.5s-10min)',
    )
    node_heartbeat_interval_ms: Annotated[int, Field(ge=1_000, le=600_000)] = Field(
        default=30_000,
        description='How often the local cluster node record is refreshed (1s-10min)',
    )
    node_stale_threshold_ms: Annotated[int, Field(ge=2_000, le=7_200_000)] = Field(
        default=120_000,
        description='Milliseconds without heartbeat before a node stops counting (2s-2hr)',
    )
    command_max_attempts: Annotated[int, Field(ge=1, le=100)] = Field(
        default=3,
        description='Failed executions before a command is dropped',
    )

    @model_validator(mode='after')
    def validate_heartbeat_thresholds(self) -> Self:
        """Ensure the stale threshold is at least 2x the heartbeat interval."""
        report = ValidationReport('recovery')
        min_stale = self.node_heartbeat_interval_ms * 2

        if self.node_stale_threshold_ms < min_stale:
            report.add(
                ConfigurationError(
                    message='node_stale_threshold_ms too low',
                    code=ErrorCode.CONFIG_INVALID_RECOVERY,
                    notes=[
                        f'node_stale_threshold_ms={self.node_stale_threshold_ms}ms ({self.node_stale_threshold_ms/1000:.1f}s)',
                        f'node_heartbeat_interval_ms={self.node_heartbeat_interval_ms}ms ({self.node_heartbeat_interval_ms/1000:.1f}s)',
                        'threshold must be at least 2x heartbeat interval',
                    ],
                    help_text=f'set node_stale_threshold_ms >= {min_stale}ms ({min_stale/1000:.1f}s)',
                )
            )

        raise_collected(report)
        return self
