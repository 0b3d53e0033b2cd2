"""
Stepflow - 声明式状态机工作流运行时
"""

__version__ = "0.1.0"

from .core.engine import ExecutionController
from .core.parser import WorkflowParser
from .core.state_machine import StateMachineRuntime
from .models.document import Document
from .models.workflow import StateMachineWorkflow, StateDefinition, StateType
from .models.execution import Execution, ExecutionStatus, StepRecord
from .integrations.unit_registry import UnitRegistry

__all__ = [
    "ExecutionController",
    "WorkflowParser",
    "StateMachineRuntime",
    "Document",
    "StateMachineWorkflow",
    "StateDefinition",
    "StateType",
    "Execution",
    "ExecutionStatus",
    "StepRecord",
    "UnitRegistry"
]
