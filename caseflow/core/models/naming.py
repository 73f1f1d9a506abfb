# caseflow/core/models/naming.py
from __future__ import annotations

from typing import Annotated, Self
from pydantic import BaseModel, ConfigDict, Field, model_validator
from caseflow.core.defaults import (
    MAX_RESULT_RETRY,
    QUALIFIER_SCAN_LIMIT,
    RESULT_RETRY_BACKOFF_EVERY,
    RESULT_RETRY_BACKOFF_MAX_MS,
    RESULT_RETRY_BACKOFF_MIN_MS,
)
from caseflow.core.errors import ConfigurationError, ErrorCode, ValidationReport, raise_collected


class NamingConfig(BaseModel):
    """
    Controls unique record-name negotiation under concurrent writers.

    Qualified names are retried up to ``max_attempts`` times. Every
    ``backoff_every``-th attempt sleeps a random interval between
    ``backoff_min_ms`` and ``backoff_max_ms`` before trying again.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: Annotated[int, Field(ge=1, le=1_000)] = Field(
        default=MAX_RESULT_RETRY,
        description='Qualified save attempts before falling back to a uid suffix',
    )
    backoff_every: Annotated[int, Field(ge=1, le=1_000)] = Field(
        default=RESULT_RETRY_BACKOFF_EVERY,
        description='Sleep before every Nth attempt',
    )
    backoff_min_ms: Annotated[int, Field(ge=0, le=60_000)] = Field(
        default=RESULT_RETRY_BACKOFF_MIN_MS,
        description='Lower bound of the randomized backoff sleep (0-60s)',
    )
    backoff_max_ms: Annotated[int, Field(ge=0, le=300_000)] = Field(
        default=RESULT_RETRY_BACKOFF_MAX_MS,
        description='Upper bound of the randomized backoff sleep (0-5min)',
    )
    scan_limit: Annotated[int, Field(ge=1, le=1_000)] = Field(
        default=QUALIFIER_SCAN_LIMIT,
        description='How many recent records are scanned for the next qualifier',
    )

    @model_validator(mode='after')
    def validate_backoff(self) -> Self:
        report = ValidationReport('naming')
        if self.backoff_max_ms < self.backoff_min_ms:
            report.add(
                ConfigurationError(
                    message='backoff_max_ms must be >= backoff_min_ms',
                    code=ErrorCode.CONFIG_INVALID_NAMING,
                    notes=[
                        f'backoff_min_ms={self.backoff_min_ms}ms',
                        f'backoff_max_ms={self.backoff_max_ms}ms',
                    ],
                    help_text='increase backoff_max_ms or reduce backoff_min_ms',
                )
            )

        raise_collected(report)
        return self
