"""
错误处理与恢复机制

重试规则在单个步骤内按声明顺序匹配，每条规则独立计数；
重试耗尽或无匹配规则时再按声明顺序匹配捕获规则。
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..models.workflow import StateDefinition, RetryRule, CatchRule
from ..exceptions import StepFailure, ErrorCategory


logger = logging.getLogger(__name__)


@dataclass
class RetryDecision:
    """重试决策"""
    rule: RetryRule
    rule_index: int
    attempt: int        # 即将进行的尝试序号（按规则计数）
    delay: float        # 秒


@dataclass
class RetryTracker:
    """单个步骤的重试计数器（每条规则独立计数）"""
    attempts_by_rule: Dict[int, int] = field(default_factory=dict)
    total_attempts: int = 0
    delays: List[float] = field(default_factory=list)

    def record_attempt(self, delay: float):
        """记录一次调用尝试及其之前的等待时间"""
        self.total_attempts += 1
        self.delays.append(delay)

    @property
    def total_delay(self) -> float:
        return sum(self.delays)


class ErrorHandler:
    """错误处理器"""

    @staticmethod
    def matches(error: StepFailure, category: str, allow_all: bool = False) -> bool:
        """
        判断错误是否属于某个类别

        Args:
            error: 步骤失败
            category: 规则中声明的类别
            allow_all: 是否接受 "all" 通配（仅捕获规则允许）

        Returns:
            是否匹配
        """
        if category == ErrorCategory.ALL:
            return allow_all
        if category == error.category:
            return True
        # TaskFailed 覆盖工作单元的所有可重试失败（超时除外）
        if category == ErrorCategory.TASK_FAILED:
            return error.retryable and error.category != ErrorCategory.TIMEOUT
        return False

    def find_retry_rule(
        self,
        state: StateDefinition,
        error: StepFailure
    ) -> Optional[Tuple[int, RetryRule]]:
        """按声明顺序查找第一条匹配的重试规则"""
        for index, rule in enumerate(state.retry):
            if any(self.matches(error, category) for category in rule.errors):
                return index, rule
        return None

    def find_catch_rule(
        self,
        state: StateDefinition,
        error: StepFailure
    ) -> Optional[CatchRule]:
        """按声明顺序查找第一条匹配的捕获规则"""
        for rule in state.catch:
            if any(self.matches(error, category, allow_all=True) for category in rule.errors):
                return rule
        return None

    def next_retry(
        self,
        state: StateDefinition,
        error: StepFailure,
        tracker: RetryTracker
    ) -> Optional[RetryDecision]:
        """
        计算下一次重试

        Args:
            state: 当前状态
            error: 最近一次失败
            tracker: 该步骤的重试计数器

        Returns:
            RetryDecision，没有匹配规则或匹配规则已耗尽时返回 None
        """
        found = self.find_retry_rule(state, error)
        if found is None:
            return None

        index, rule = found
        # 首次调用计入每条规则的第一次尝试
        used = tracker.attempts_by_rule.get(index, 1)
        if used >= rule.max_attempts:
            logger.info(
                f"State {state.name}: retry rule {rule.errors} exhausted "
                f"after {used} attempts"
            )
            return None

        attempt = used + 1
        tracker.attempts_by_rule[index] = attempt
        return RetryDecision(
            rule=rule,
            rule_index=index,
            attempt=attempt,
            delay=rule.delay_for_attempt(attempt)
        )
