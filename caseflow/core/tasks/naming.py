"""Record-name qualification helpers.

Qualified names append ``" - N"`` to a base name. Only a trailing positive
integer after the last delimiter counts as a qualifier, so names that happen
to contain the delimiter survive ``unqualify`` intact.
"""

from __future__ import annotations

import random
import uuid
from datetime import datetime

from caseflow.core.defaults import QUALIFICATION_DELIMITER
from caseflow.core.models.naming import NamingConfig
from caseflow.core.models.records import ExecutionRecord
from caseflow.core.persistence.base import Filter, Repository


def _trailing(name: str) -> tuple[str, int]:
    delim = name.rfind(QUALIFICATION_DELIMITER)
    if delim <= 0:
        return name, 0
    try:
        number = int(name[delim + len(QUALIFICATION_DELIMITER) :])
    except ValueError:
        return name, 0
    return name[:delim], number


def qualify(name: str, number: int) -> str:
    return f'{name}{QUALIFICATION_DELIMITER}{number}'


def unqualify(name: str) -> str:
    """Strip a numeric qualifier, if the name carries one."""
    base, number = _trailing(name)
    return base if number > 0 else name


def get_qualifier(name: str) -> int:
    """The numeric qualifier of a name, 0 when unqualified."""
    return max(_trailing(name)[1], 0)


async def next_qualifier(repo: Repository, name: str, scan_limit: int) -> int:
    """Best guess at the next free qualifier from the most recent similar names.

    Another writer may claim it first; callers still retry on collision.
    """
    base = unqualify(name)
    qualifier = 1
    flt = Filter(name_prefix=base, order_by='created', descending=True, limit=scan_limit)
    async for record in repo.search(ExecutionRecord, flt):
        if unqualify(record.name) != base:
            continue
        number = get_qualifier(record.name)
        if number >= qualifier:
            qualifier = number + 1
    return qualifier


def uid_qualifier() -> str:
    return uuid.uuid4().hex


def timestamp_qualifier(when: datetime) -> str:
    return when.isoformat(sep=' ', timespec='milliseconds')


def backoff_delay(attempt: int, naming: NamingConfig) -> float | None:
    """Seconds to sleep before a zero-based ``attempt``; None on most attempts."""
    if (attempt + 1) % naming.backoff_every != 0:
        return None
    return random.randint(naming.backoff_min_ms, naming.backoff_max_ms) / 1000
