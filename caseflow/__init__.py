"""caseflow - case workflows, approvals and task result management"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import Caseflow
from .core.models.app import AppConfig
from .core.models.repository import PostgresConfig
from .core.models.naming import NamingConfig
from .core.models.recovery import RecoveryConfig
from .core.models.definition import (
    ApprovalSpec,
    Arg,
    ProcessDefinition,
    Replicator,
    Return,
    Scriptlet,
    ScriptletKind,
    Step,
    Transition,
    Variable,
)
from .core.models.case import (
    Approval,
    Decision,
    Message,
    ProcessInstance,
    StepState,
)
from .core.models.records import (
    ClusterNode,
    Command,
    ExecutionRecord,
    JobDefinition,
    PartitionResult,
    ScheduleState,
    WorkItem,
)
from .core.types.status import (
    ApprovalMode,
    ApprovalState,
    CollisionPolicy,
    CommandName,
    CompletionStatus,
    MessageType,
    RecordType,
    WorkItemState,
    WorkItemType,
)
from .core.errors import (
    AlreadyRunningError,
    CaseflowError,
    ConfigurationError,
    DecisionValidationError,
    ErrorCode,
    EvaluationError,
    LockTimeoutError,
    PersistenceError,
    RegistryError,
    ResultExistsError,
    UnresolvableError,
)
from .core.persistence import Filter, InMemoryRepository, PostgresRepository, Repository
from .core.notify import LoggingNotifier, Notifier
from .core.tasks import TaskMonitor
from .core.workflows import EngineError, EngineErrorCode, WorkflowHandler

__all__ = [
    'Caseflow',
    'AppConfig',
    'PostgresConfig',
    'NamingConfig',
    'RecoveryConfig',
    'ApprovalSpec',
    'Arg',
    'ProcessDefinition',
    'Replicator',
    'Return',
    'Scriptlet',
    'ScriptletKind',
    'Step',
    'Transition',
    'Variable',
    'Approval',
    'Decision',
    'Message',
    'ProcessInstance',
    'StepState',
    'ClusterNode',
    'Command',
    'ExecutionRecord',
    'JobDefinition',
    'PartitionResult',
    'ScheduleState',
    'WorkItem',
    'ApprovalMode',
    'ApprovalState',
    'CollisionPolicy',
    'CommandName',
    'CompletionStatus',
    'MessageType',
    'RecordType',
    'WorkItemState',
    'WorkItemType',
    'AlreadyRunningError',
    'CaseflowError',
    'ConfigurationError',
    'DecisionValidationError',
    'ErrorCode',
    'EvaluationError',
    'LockTimeoutError',
    'PersistenceError',
    'RegistryError',
    'ResultExistsError',
    'UnresolvableError',
    'Filter',
    'InMemoryRepository',
    'PostgresRepository',
    'Repository',
    'LoggingNotifier',
    'Notifier',
    'TaskMonitor',
    'EngineError',
    'EngineErrorCode',
    'WorkflowHandler',
]
