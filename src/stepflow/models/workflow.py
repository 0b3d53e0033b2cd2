"""
工作流定义模型
"""
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional
from enum import Enum
from uuid import uuid4
from datetime import datetime

from .document import MISSING, format_path, is_root
from ..exceptions import ErrorCategory


class StateType(Enum):
    """状态类型"""
    INVOKE = "invoke"
    TRANSFORM = "transform"
    BRANCH = "branch"
    SUCCEED = "succeed"
    FAIL = "fail"


TERMINAL_STATE_TYPES = (StateType.SUCCEED, StateType.FAIL)
WORK_STATE_TYPES = (StateType.INVOKE, StateType.TRANSFORM)


@dataclass
class RetryRule:
    """重试规则"""
    errors: List[str]
    initial_delay: float = 1.0  # 秒
    multiplier: float = 2.0
    max_attempts: int = 3
    max_delay: Optional[float] = None  # 秒

    def delay_for_attempt(self, attempt: int) -> float:
        """第 attempt 次尝试前的等待时间，第一次尝试不等待"""
        if attempt <= 1:
            return 0.0
        delay = self.initial_delay * (self.multiplier ** (attempt - 2))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


@dataclass
class CatchRule:
    """捕获规则"""
    errors: List[str]
    next: str
    result_path: Optional[str] = "$.error"


@dataclass
class Choice:
    """分支条件"""
    condition: str
    next: str


@dataclass
class StateDefinition:
    """
    状态定义

    单一记录类型，按 type 区分 invoke/transform/branch/succeed/fail，
    不同类型只使用各自相关的字段。
    """
    name: str
    type: StateType
    next: Optional[str] = None
    comment: Optional[str] = None

    # invoke / transform
    input_path: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    result_path: Any = MISSING
    retry: List[RetryRule] = field(default_factory=list)
    catch: List[CatchRule] = field(default_factory=list)

    # invoke
    resource: Optional[str] = None
    timeout_seconds: Optional[float] = None

    # transform
    expression: Optional[str] = None
    expression_fallback: Any = MISSING

    # branch
    choices: List[Choice] = field(default_factory=list)
    default: Optional[str] = None

    # fail
    error: Optional[str] = None
    cause: Optional[str] = None

    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_STATE_TYPES

    def effective_result_path(self) -> Optional[str]:
        """
        实际使用的结果注入路径

        未声明时写入以状态名命名的字段，绝不默认为根路径；
        显式声明为 None 表示丢弃结果。
        """
        if self.result_path is MISSING:
            return format_path((self.name,))
        return self.result_path

    def targets(self) -> List[str]:
        """该状态引用的所有后继状态名"""
        names = []
        if self.next:
            names.append(self.next)
        names.extend(choice.next for choice in self.choices)
        if self.default:
            names.append(self.default)
        names.extend(rule.next for rule in self.catch)
        return names


@dataclass
class StateMachineWorkflow:
    """状态机工作流"""
    start: str
    states: Dict[str, StateDefinition] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    version: str = "1.0.0"
    description: Optional[str] = None
    timeout_seconds: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def get_state(self, name: str) -> Optional[StateDefinition]:
        """根据名称获取状态"""
        return self.states.get(name)

    def root_result_states(self) -> List[str]:
        """使用根路径注入结果的状态（会丢弃全部已有字段）"""
        names = []
        for state in self.states.values():
            result_path = state.effective_result_path()
            if state.type in WORK_STATE_TYPES and result_path is not None and is_root(result_path):
                names.append(state.name)
            for rule in state.catch:
                if rule.result_path is not None and is_root(rule.result_path):
                    names.append(f"{state.name} (catch -> {rule.next})")
        return names

    def validate(self) -> List[str]:
        """验证状态图的合法性"""
        errors = []

        if not self.states:
            errors.append("Workflow must declare at least one state")
            return errors

        if self.start not in self.states:
            errors.append(f"Start state '{self.start}' not found in states")

        for name, state in self.states.items():
            if state.name != name:
                errors.append(f"State key '{name}' does not match state name '{state.name}'")

            # 后继状态必须存在
            for target in state.targets():
                if target not in self.states:
                    errors.append(f"State '{name}' references unknown state '{target}'")

            if state.type in WORK_STATE_TYPES:
                if not state.next:
                    errors.append(f"State '{name}' of type {state.type.value} must declare 'next'")
                for rule in state.retry:
                    if ErrorCategory.ALL in rule.errors:
                        errors.append(
                            f"State '{name}' retry rule cannot match '{ErrorCategory.ALL}'"
                        )
                    if not rule.errors:
                        errors.append(f"State '{name}' retry rule must list error categories")
                    if rule.max_attempts < 1:
                        errors.append(f"State '{name}' retry rule max_attempts must be >= 1")
                    if rule.initial_delay < 0 or rule.multiplier < 1:
                        errors.append(
                            f"State '{name}' retry rule needs initial_delay >= 0 and multiplier >= 1"
                        )
                for rule in state.catch:
                    if not rule.errors:
                        errors.append(f"State '{name}' catch rule must list error categories")

            if state.type == StateType.INVOKE and not state.resource:
                errors.append(f"Invoke state '{name}' must declare a resource")

            if state.type == StateType.TRANSFORM and state.expression and state.parameters:
                errors.append(
                    f"Transform state '{name}' cannot declare both expression and parameters"
                )

            if state.type == StateType.BRANCH:
                if not state.choices:
                    errors.append(f"Branch state '{name}' must declare at least one choice")
                if not state.default and not any(
                    _is_literal_true(choice.condition) for choice in state.choices
                ):
                    errors.append(
                        f"Branch state '{name}' has no default and no unconditional choice"
                    )

            if state.type == StateType.FAIL and not state.error:
                errors.append(f"Fail state '{name}' must declare an error category")

            if state.is_terminal and state.next:
                errors.append(f"Terminal state '{name}' cannot declare 'next'")

        return errors


def _is_literal_true(condition: Any) -> bool:
    if condition is True:
        return True
    return isinstance(condition, str) and condition.strip() == "true"
