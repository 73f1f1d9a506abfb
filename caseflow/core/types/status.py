# caseflow/core/types/status.py
"""
Core enums used throughout the library.
This module should not import from other library modules.
"""

from enum import Enum


class CompletionStatus(str, Enum):
    """Final outcome of an execution record or partition."""

    SUCCESS = 'Success'
    WARNING = 'Warning'
    ERROR = 'Error'
    TERMINATED = 'Terminated'


# Partitioned aggregation precedence, strongest first.
PARTITION_STATUS_PRECEDENCE: tuple[CompletionStatus, ...] = (
    CompletionStatus.ERROR,
    CompletionStatus.TERMINATED,
    CompletionStatus.WARNING,
    CompletionStatus.SUCCESS,
)


class RecordType(str, Enum):
    """What kind of work an execution record tracks."""

    GENERIC = 'generic'
    WORKFLOW = 'workflow'


class MessageType(str, Enum):
    """Severity of a case or record message."""

    INFO = 'Info'
    WARN = 'Warn'
    ERROR = 'Error'


class ApprovalMode(str, Enum):
    """How the children of an approval are started and completed."""

    SERIAL = 'serial'  # one at a time, consensus required
    SERIAL_POLL = 'serialPoll'  # one at a time, rejections do not stop
    PARALLEL = 'parallel'  # concurrent, consensus required
    PARALLEL_POLL = 'parallelPoll'  # concurrent, rejections ignored
    ANY = 'any'  # concurrent, first decision wins

    @property
    def is_parallel(self) -> bool:
        return self in (
            ApprovalMode.PARALLEL,
            ApprovalMode.PARALLEL_POLL,
            ApprovalMode.ANY,
        )

    @property
    def is_poll(self) -> bool:
        return self in (ApprovalMode.SERIAL_POLL, ApprovalMode.PARALLEL_POLL)

    @property
    def is_any(self) -> bool:
        return self is ApprovalMode.ANY


class ApprovalState(str, Enum):
    """Lifecycle of a runtime approval node."""

    NOT_STARTED = 'not_started'
    STARTED = 'started'
    WAITING = 'waiting'
    COMPLETE = 'complete'


class WorkItemState(str, Enum):
    """Decision recorded on a unit of work. Pending items carry no state."""

    FINISHED = 'Finished'
    REJECTED = 'Rejected'
    RETURNED = 'Returned'
    EXPIRED = 'Expired'
    CANCELED = 'Canceled'

    @property
    def is_rejection(self) -> bool:
        return self in (
            WorkItemState.REJECTED,
            WorkItemState.RETURNED,
            WorkItemState.EXPIRED,
        )


class WorkItemType(str, Enum):
    """Kind of external decision request."""

    APPROVAL = 'approval'
    EVENT = 'event'
    SIGNOFF = 'signoff'


class CollisionPolicy(str, Enum):
    """What to do when a new record's name is already taken."""

    DELETE = 'Delete'
    RENAME = 'Rename'
    RENAME_WITH_UID = 'RenameWithUID'
    RENAME_WITH_TIMESTAMP = 'RenameWithTimestamp'
    CANCEL = 'Cancel'
    RENAME_NEW = 'RenameNew'
    RENAME_NEW_WITH_UID = 'RenameNewWithUID'
    RENAME_NEW_WITH_TIMESTAMP = 'RenameNewWithTimestamp'


class CommandName(str, Enum):
    """Commands understood by the host-addressed command channel."""

    TERMINATE = 'terminate'
    STACK = 'stack'
