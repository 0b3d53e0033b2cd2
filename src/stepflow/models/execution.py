"""
工作流执行模型
"""
import asyncio
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Tuple
from enum import Enum
from datetime import datetime
from uuid import uuid4

from .document import Document
from ..exceptions import ErrorCategory
from .workflow import StateMachineWorkflow


class ExecutionStatus(Enum):
    """执行状态"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"        # 到达 fail 状态
    CRASHED = "crashed"      # 错误越过所有 catch 规则
    CANCELLED = "cancelled"


TERMINAL_EXECUTION_STATUSES = (
    ExecutionStatus.SUCCEEDED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CRASHED,
    ExecutionStatus.CANCELLED,
)


class StepStatus(Enum):
    """单步执行状态"""
    SUCCEEDED = "succeeded"
    CAUGHT = "caught"        # 失败后被 catch 规则改道
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StepRecord:
    """执行历史记录（追加写入，不可修改）"""
    state_name: str
    state_type: str
    input_snapshot: Any
    output_snapshot: Any
    status: StepStatus
    started_at: datetime
    ended_at: datetime
    attempts: int = 0
    backoff_delays: Tuple[float, ...] = ()
    error: Optional[Dict[str, Any]] = None
    next_state: Optional[str] = None

    @property
    def duration(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "state_name": self.state_name,
            "state_type": self.state_type,
            "input_snapshot": self.input_snapshot,
            "output_snapshot": self.output_snapshot,
            "status": self.status.value,
            "timestamp_range": [self.started_at.isoformat(), self.ended_at.isoformat()],
            "attempts": self.attempts,
            "backoff_delays": list(self.backoff_delays),
            "error": self.error,
            "next_state": self.next_state
        }


@dataclass
class Execution:
    """单次执行实例"""
    workflow: StateMachineWorkflow
    input: Any = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    status: ExecutionStatus = ExecutionStatus.PENDING
    document: Document = field(default=None)
    current_state: Optional[str] = None
    error: Optional[str] = None
    cause: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)
    _history: List[StepRecord] = field(default_factory=list, repr=False)
    _cancel_event: Optional[asyncio.Event] = field(default=None, repr=False)

    def __post_init__(self):
        if self.document is None:
            self.document = Document(self.input)

    @property
    def history(self) -> Tuple[StepRecord, ...]:
        """执行历史（只读）"""
        return tuple(self._history)

    @property
    def output(self) -> Any:
        return self.document.snapshot()

    @property
    def duration(self) -> Optional[float]:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    @property
    def cancel_event(self) -> asyncio.Event:
        """取消信号，在事件循环内惰性创建"""
        if self._cancel_event is None:
            self._cancel_event = asyncio.Event()
        return self._cancel_event

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def append_record(self, record: StepRecord):
        """追加历史记录"""
        self._history.append(record)

    def start(self):
        """开始执行"""
        self.status = ExecutionStatus.RUNNING
        self.current_state = self.workflow.start
        self.start_time = datetime.utcnow()

    def succeed(self):
        """执行成功"""
        self._finish(ExecutionStatus.SUCCEEDED)

    def fail(self, error: str, cause: Optional[str]):
        """到达 fail 状态"""
        self._finish(ExecutionStatus.FAILED, error, cause)

    def crash(self, error: str, cause: str):
        """未处理错误导致终止"""
        self._finish(ExecutionStatus.CRASHED, error, cause)

    def request_cancel(self):
        """请求取消（在下一步开始前或退避等待中生效）"""
        self.cancel_event.set()

    def mark_cancelled(self, cause: str):
        """标记为已取消"""
        self._finish(ExecutionStatus.CANCELLED, ErrorCategory.CANCELLED, cause)

    def _finish(self, status: ExecutionStatus, error: Optional[str] = None, cause: Optional[str] = None):
        self.status = status
        self.error = error
        self.cause = cause
        self.end_time = datetime.utcnow()

    def is_terminal_state(self) -> bool:
        """是否为终止状态"""
        return self.status in TERMINAL_EXECUTION_STATUSES

    def to_dict(self, include_history: bool = False) -> Dict[str, Any]:
        """转换为字典"""
        data = {
            "execution_id": self.id,
            "workflow_id": self.workflow.id,
            "workflow_name": self.workflow.name,
            "status": self.status.value,
            "current_state": self.current_state,
            "error": self.error,
            "cause": self.cause,
            "input": self.input,
            "output": self.output if self.is_terminal_state() else None,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration,
            "step_count": len(self._history)
        }
        if include_history:
            data["history"] = [record.to_dict() for record in self._history]
        return data


class ExecutionEventType(Enum):
    """执行事件类型"""
    EXECUTION_STARTED = "execution.started"
    STEP_COMPLETED = "execution.step_completed"
    STEP_RETRYING = "execution.step_retrying"
    EXECUTION_COMPLETED = "execution.completed"


@dataclass
class ExecutionEvent:
    """执行事件"""
    execution_id: str
    event_type: ExecutionEventType
    state_name: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=datetime.utcnow)
    data: Dict[str, Any] = field(default_factory=dict)
