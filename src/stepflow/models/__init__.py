"""Workflow and execution models"""

from .document import Document, MISSING, ROOT_PATH, parse_path, format_path, is_root
from .workflow import (
    StateType, RetryRule, CatchRule, Choice, StateDefinition, StateMachineWorkflow
)
from .execution import (
    Execution, ExecutionStatus, StepStatus, StepRecord,
    ExecutionEvent, ExecutionEventType
)

__all__ = [
    "Document",
    "MISSING",
    "ROOT_PATH",
    "parse_path",
    "format_path",
    "is_root",
    "StateType",
    "RetryRule",
    "CatchRule",
    "Choice",
    "StateDefinition",
    "StateMachineWorkflow",
    "Execution",
    "ExecutionStatus",
    "StepStatus",
    "StepRecord",
    "ExecutionEvent",
    "ExecutionEventType"
]
