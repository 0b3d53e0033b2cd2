"""Core runtime components"""

from .engine import ExecutionController
from .parser import WorkflowParser
from .state_machine import StateMachineRuntime, interruptible_sleep
from .expressions import ExpressionEvaluator, parse_expression
from .paths import PathResolver
from .error_handler import ErrorHandler, RetryTracker, RetryDecision

__all__ = [
    "ExecutionController",
    "WorkflowParser",
    "StateMachineRuntime",
    "interruptible_sleep",
    "ExpressionEvaluator",
    "parse_expression",
    "PathResolver",
    "ErrorHandler",
    "RetryTracker",
    "RetryDecision"
]
