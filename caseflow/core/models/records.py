"""Durable records: execution results, work items, commands, jobs and nodes."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, ClassVar, Iterable

from caseflow.core.models.case import Message
from caseflow.core.types.status import (
    CollisionPolicy,
    CommandName,
    CompletionStatus,
    MessageType,
    RecordType,
    WorkItemState,
    WorkItemType,
)
from caseflow.core.utils.clock import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


def _has_type(messages: Iterable[Message], kind: MessageType) -> bool:
    return any(m.type is kind for m in messages)


@dataclass
class PartitionResult:
    """Outcome of one partition of a fanned-out job."""

    name: str
    host: str | None = None
    launched: datetime | None = None
    completed: datetime | None = None
    completion_status: CompletionStatus | None = None
    live: bool = False
    terminate_requested: bool = False
    terminated: bool = False
    messages: list[Message] = field(default_factory=lambda: [])
    attributes: dict[str, Any] = field(default_factory=lambda: {})

    def __post_init__(self) -> None:
        if self.completion_status is not None and not isinstance(
            self.completion_status, CompletionStatus
        ):
            self.completion_status = CompletionStatus(self.completion_status)

    @property
    def is_complete(self) -> bool:
        return self.completed is not None

    def has_errors(self) -> bool:
        return _has_type(self.messages, MessageType.ERROR)

    def has_warnings(self) -> bool:
        return _has_type(self.messages, MessageType.WARN)

    def calculate_completion_status(self) -> CompletionStatus:
        if self.terminated:
            return CompletionStatus.TERMINATED
        if self.has_errors():
            return CompletionStatus.ERROR
        if self.has_warnings():
            return CompletionStatus.WARNING
        return CompletionStatus.SUCCESS

    def reset(self) -> None:
        self.launched = None
        self.completed = None
        self.completion_status = None
        self.live = False
        self.terminate_requested = False
        self.terminated = False
        self.messages = []


@dataclass
class ExecutionRecord:
    """The durable "task result" of one launched unit of work."""

    UNIQUE_NAMES: ClassVar[bool] = True

    name: str
    definition_name: str | None = None
    id: str = field(default_factory=_new_id)
    type: RecordType = RecordType.GENERIC
    launcher: str | None = None
    launched: datetime | None = None
    completed: datetime | None = None
    completion_status: CompletionStatus | None = None
    live: bool = False
    host: str | None = None
    terminated: bool = False
    terminate_requested: bool = False
    partitioned: bool = False
    partitions: list[PartitionResult] = field(default_factory=lambda: [])
    messages: list[Message] = field(default_factory=lambda: [])
    attributes: dict[str, Any] = field(default_factory=lambda: {})
    run_length: int = 0
    run_length_average: int = 0
    run_length_deviation: int = 0
    case_id: str | None = None
    schedule_name: str | None = None
    restartable: bool = False
    signoff: list[str] = field(default_factory=lambda: [])
    progress: str | None = None
    created: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not isinstance(self.type, RecordType):
            self.type = RecordType(self.type)
        if self.completion_status is not None and not isinstance(
            self.completion_status, CompletionStatus
        ):
            self.completion_status = CompletionStatus(self.completion_status)

    @property
    def is_complete(self) -> bool:
        return self.completed is not None

    def add_message(self, message: Message) -> None:
        self.messages.append(message)

    def has_errors(self) -> bool:
        return _has_type(self.messages, MessageType.ERROR)

    def has_warnings(self) -> bool:
        return _has_type(self.messages, MessageType.WARN)

    def get_partition(self, name: str) -> PartitionResult | None:
        for partition in self.partitions:
            if partition.name == name:
                return partition
        return None

    def partitions_complete(self) -> bool:
        return all(p.is_complete for p in self.partitions)

    def calculate_completion_status(self) -> CompletionStatus:
        if self.partitioned:
            return self.calculate_partitioned_status()
        if self.terminated:
            return CompletionStatus.TERMINATED
        if self.has_errors():
            return CompletionStatus.ERROR
        if self.has_warnings():
            return CompletionStatus.WARNING
        return CompletionStatus.SUCCESS

    def calculate_partitioned_status(self) -> CompletionStatus:
        """Aggregate partition outcomes: Error > Terminated > Warning > Success."""
        statuses = [
            p.completion_status or p.calculate_completion_status()
            for p in self.partitions
        ]
        if self.has_errors() or CompletionStatus.ERROR in statuses:
            return CompletionStatus.ERROR
        if self.terminated or CompletionStatus.TERMINATED in statuses:
            return CompletionStatus.TERMINATED
        if all(s is CompletionStatus.SUCCESS for s in statuses):
            return CompletionStatus.SUCCESS
        return CompletionStatus.WARNING

    def merge_partition_attributes(self) -> None:
        """Fold partition attributes into the record.

        Integers are summed; anything else is merged into a CSV of distinct values.
        """
        merged: dict[str, Any] = {}
        for partition in self.partitions:
            for key, value in partition.attributes.items():
                if key not in merged:
                    merged[key] = value
                    continue
                current = merged[key]
                if isinstance(current, int) and isinstance(value, int) and not (
                    isinstance(current, bool) or isinstance(value, bool)
                ):
                    merged[key] = current + value
                    continue
                seen = [s for s in str(current).split(',') if s]
                for item in str(value).split(','):
                    if item and item not in seen:
                        seen.append(item)
                merged[key] = ','.join(seen)
        self.attributes.update(merged)


@dataclass
class WorkItem:
    """An external decision request: approval, timed event or signoff."""

    UNIQUE_NAMES: ClassVar[bool] = False

    name: str
    owner: str | None = None
    id: str = field(default_factory=_new_id)
    type: WorkItemType = WorkItemType.APPROVAL
    state: WorkItemState | None = None
    case_id: str | None = None
    step_id: str | None = None
    approval_id: str | None = None
    record_id: str | None = None
    expiration: datetime | None = None
    comments: str | None = None
    attributes: dict[str, Any] = field(default_factory=lambda: {})
    description: str | None = None
    notification_template: str | None = None
    created: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not isinstance(self.type, WorkItemType):
            self.type = WorkItemType(self.type)
        if self.state is not None and not isinstance(self.state, WorkItemState):
            self.state = WorkItemState(self.state)

    def is_expired(self, now: datetime) -> bool:
        return self.expiration is not None and self.expiration <= now


@dataclass
class Command:
    """A request addressed to one host, picked up by its CommandProcessor."""

    UNIQUE_NAMES: ClassVar[bool] = False

    name: str
    host: str
    command: CommandName
    id: str = field(default_factory=_new_id)
    record_id: str | None = None
    record_name: str | None = None
    partition_name: str | None = None
    arguments: dict[str, Any] = field(default_factory=lambda: {})
    processed: datetime | None = None
    error: str | None = None
    attempts: int = 0
    created: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not isinstance(self.command, CommandName):
            self.command = CommandName(self.command)

    @staticmethod
    def format_name(
        record_name: str,
        command: CommandName,
        host: str,
        partition_name: str | None = None,
    ) -> str:
        if partition_name is None:
            return f'Task: {record_name}, Command: {command.value}, Host: {host}'
        return (
            f'Task: {record_name}, Partition: {partition_name}, '
            f'Command: {command.value}, Host: {host}'
        )


@dataclass
class JobDefinition:
    """Launch template for records: concurrency, naming policy and post-actions."""

    UNIQUE_NAMES: ClassVar[bool] = True

    name: str
    id: str = field(default_factory=_new_id)
    type: RecordType = RecordType.GENERIC
    process: str | None = None
    """Process definition launched by workflow jobs."""

    concurrent: bool = False
    result_action: CollisionPolicy | None = None
    """None means Delete, or Cancel when the previous record has a signoff."""

    restartable: bool = False
    max_threads: int = 0
    capability: str | None = None
    """Cluster service a node must run to execute this job."""

    run_length_average: int = 0
    runs: int = 0
    run_length_total: int = 0
    signoff_owners: list[str] = field(default_factory=lambda: [])
    completion_rule: str | None = None
    completion_events: list[str] = field(default_factory=lambda: [])
    notify: list[str] = field(default_factory=lambda: [])
    template: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.type, RecordType):
            self.type = RecordType(self.type)
        if self.result_action is not None and not isinstance(
            self.result_action, CollisionPolicy
        ):
            self.result_action = CollisionPolicy(self.result_action)

    def add_run(self, seconds: int) -> None:
        self.runs += 1
        self.run_length_total += seconds
        self.run_length_average = self.run_length_total // self.runs


@dataclass
class ScheduleState:
    UNIQUE_NAMES: ClassVar[bool] = True

    name: str
    definition_name: str | None = None
    id: str = field(default_factory=_new_id)
    blocked: bool = False
    blocked_since: datetime | None = None
    last_result_name: str | None = None
    terminated: bool = False


@dataclass
class ClusterNode:
    """A host participating in the cluster, refreshed by its own heartbeat."""

    UNIQUE_NAMES: ClassVar[bool] = True

    name: str
    id: str = field(default_factory=_new_id)
    inactive: bool = False
    services: list[str] = field(default_factory=lambda: [])
    allowed_jobs: list[str] | None = None
    """None allows every job."""

    max_threads: int = 0
    heartbeat: datetime | None = None
    cpu_percent: float | None = None
    memory_mb: float | None = None

    def allows(self, job_name: str) -> bool:
        return self.allowed_jobs is None or job_name in self.allowed_jobs

    def is_stale(self, now: datetime, threshold_ms: int) -> bool:
        if self.heartbeat is None:
            return False
        return now - self.heartbeat > timedelta(milliseconds=threshold_ms)
