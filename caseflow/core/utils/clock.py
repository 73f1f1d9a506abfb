# caseflow/core/utils/clock.py
from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware current time. All stored timestamps are UTC."""
    return datetime.now(timezone.utc)
