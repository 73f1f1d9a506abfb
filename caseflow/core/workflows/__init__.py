from caseflow.core.workflows.engine import CompletionListener, WorkflowEngine
from caseflow.core.workflows.handlers import WorkflowHandler
from caseflow.core.workflows.result_types import (
    EngineError,
    EngineErrorCode,
    EngineResult,
)

__all__ = [
    'CompletionListener',
    'WorkflowEngine',
    'WorkflowHandler',
    'EngineError',
    'EngineErrorCode',
    'EngineResult',
]
