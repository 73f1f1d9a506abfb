"""Notifier protocol and the default logging implementation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, Sequence

from caseflow.core.logging import get_logger

logger = get_logger('notify')


class Notifier(Protocol):
    async def send(
        self,
        template: str | None,
        recipients: Sequence[str],
        variables: Mapping[str, Any],
    ) -> None: ...


@dataclass
class SentNotification:
    template: str | None
    recipients: list[str]
    variables: dict[str, Any]


@dataclass
class LoggingNotifier:
    """Logs every notification and keeps the last ``history_size`` of them."""

    history_size: int = 100
    sent: list[SentNotification] = field(default_factory=lambda: [])

    async def send(
        self,
        template: str | None,
        recipients: Sequence[str],
        variables: Mapping[str, Any],
    ) -> None:
        logger.info(
            f'Notify {", ".join(recipients) or "<nobody>"} '
            f'(template={template or "default"})'
        )
        self.sent.append(
            SentNotification(template=template, recipients=list(recipients), variables=dict(variables))
        )
        if len(self.sent) > self.history_size:
            del self.sent[: len(self.sent) - self.history_size]


async def notify_safely(
    notifier: Notifier,
    template: str | None,
    recipients: Sequence[str],
    variables: Mapping[str, Any],
    *,
    on_failure: Callable[[str], None] | None = None,
) -> bool:
    """Send a notification; failures are logged and reported as a warning text."""
    if not recipients:
        return False
    try:
        await notifier.send(template, recipients, variables)
        return True
    except Exception as exc:
        text = f'Notification to {", ".join(recipients)} failed: {type(exc).__name__}: {exc}'
        logger.warning(text)
        if on_failure is not None:
            on_failure(text)
        return False
