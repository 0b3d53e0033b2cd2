"""
状态机运行时

按状态类型分派执行单个步骤：解析输入、调用工作单元或求值表达式、
按规则重试与捕获、写回结果并确定下一个状态。
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ..models.document import Document
from ..models.workflow import StateDefinition, StateType
from ..models.execution import (
    Execution, StepRecord, StepStatus, ExecutionEvent, ExecutionEventType
)
from ..exceptions import StepFailure, NoMatchingBranchError, ErrorCategory
from ..integrations.event_bus import EventBus
from ..integrations.unit_registry import UnitRegistry
from .expressions import ExpressionEvaluator
from .paths import PathResolver
from .error_handler import ErrorHandler, RetryTracker


logger = logging.getLogger(__name__)


# sleeper(delay, cancel_event) -> 等待期间是否收到取消信号
Sleeper = Callable[[float, asyncio.Event], Awaitable[bool]]


async def interruptible_sleep(delay: float, cancel_event: asyncio.Event) -> bool:
    """
    可被取消信号立即打断的等待

    Returns:
        等待期间是否收到取消信号
    """
    if cancel_event.is_set():
        return True
    if delay <= 0:
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False


class StateMachineRuntime:
    """状态机运行时"""

    def __init__(
        self,
        registry: UnitRegistry,
        evaluator: Optional[ExpressionEvaluator] = None,
        resolver: Optional[PathResolver] = None,
        error_handler: Optional[ErrorHandler] = None,
        event_bus: Optional[EventBus] = None,
        sleeper: Optional[Sleeper] = None,
        default_timeout: Optional[float] = None
    ):
        self.registry = registry
        self.evaluator = evaluator or ExpressionEvaluator()
        self.resolver = resolver or PathResolver(self.evaluator)
        self.error_handler = error_handler or ErrorHandler()
        self.event_bus = event_bus
        self.sleeper = sleeper or interruptible_sleep
        self.default_timeout = default_timeout

        self.state_handlers = {
            StateType.INVOKE: self._execute_work_state,
            StateType.TRANSFORM: self._execute_work_state,
            StateType.BRANCH: self._execute_branch,
            StateType.SUCCEED: self._execute_succeed,
            StateType.FAIL: self._execute_fail,
        }

    async def execute_step(self, execution: Execution) -> StepRecord:
        """
        执行当前状态

        更新执行的文档、当前状态和终止状态，并追加一条历史记录。

        Args:
            execution: 运行中的执行实例

        Returns:
            StepRecord: 本步骤的历史记录
        """
        state = execution.workflow.get_state(execution.current_state)
        if state is None:
            # 工作流已通过验证，这里只会在定义被外部修改后出现
            raise StepFailure(
                f"State '{execution.current_state}' not found",
                ErrorCategory.INTERNAL_ERROR
            )

        logger.debug(f"Execution {execution.id}: entering state {state.name} ({state.type.value})")
        record = await self.state_handlers[state.type](execution, state)
        execution.append_record(record)

        if record.next_state and not execution.is_terminal_state():
            execution.current_state = record.next_state
        return record

    async def _execute_work_state(self, execution: Execution, state: StateDefinition) -> StepRecord:
        """执行 invoke/transform 状态，包含重试与捕获"""
        started_at = datetime.utcnow()
        document = execution.document
        tracker = RetryTracker()
        delay = 0.0

        while True:
            tracker.record_attempt(delay)
            try:
                result = await self._attempt(state, document)
                updated = self.resolver.inject_result(document, state.effective_result_path(), result)
            except StepFailure as error:
                decision = self.error_handler.next_retry(state, error, tracker)
                if decision is not None:
                    logger.info(
                        f"Execution {execution.id}: retrying state {state.name} after "
                        f"{decision.delay}s (attempt {decision.attempt}/{decision.rule.max_attempts}, "
                        f"{error.category}: {error.cause})"
                    )
                    await self._publish_retry(execution, state, error, decision.attempt, decision.delay)
                    cancelled = await self.sleeper(decision.delay, execution.cancel_event)
                    if cancelled:
                        execution.mark_cancelled(
                            f"Cancelled during retry backoff of state '{state.name}'"
                        )
                        return self._record(
                            state, document, document, StepStatus.CANCELLED, started_at,
                            tracker, error=error.to_dict()
                        )
                    delay = decision.delay
                    continue

                return self._handle_failure(execution, state, document, error, started_at, tracker)

            execution.document = updated
            return self._record(
                state, document, updated, StepStatus.SUCCEEDED, started_at,
                tracker, next_state=state.next
            )

    async def _attempt(self, state: StateDefinition, document: Document) -> Any:
        """单次尝试：限制输入、投影参数、调用或求值"""
        restricted = self.resolver.restrict_input(document, state.input_path)

        payload = restricted
        if state.parameters is not None:
            payload = self.resolver.project_parameters(
                restricted, state.parameters, fallback=state.expression_fallback
            )

        if state.type == StateType.INVOKE:
            return await self.registry.invoke(
                state.resource, payload,
                timeout_seconds=state.timeout_seconds,
                default_timeout=self.default_timeout
            )

        if state.expression:
            return self.evaluator.evaluate(
                state.expression, restricted, fallback=state.expression_fallback
            )
        return payload

    def _handle_failure(
        self,
        execution: Execution,
        state: StateDefinition,
        document: Document,
        error: StepFailure,
        started_at: datetime,
        tracker: RetryTracker
    ) -> StepRecord:
        """按捕获规则改道，没有匹配规则时终止执行"""
        rule = self.error_handler.find_catch_rule(state, error)
        if rule is not None:
            try:
                updated = self.resolver.inject_result(document, rule.result_path, error.to_dict())
            except StepFailure as inject_error:
                error = inject_error
            else:
                logger.info(
                    f"Execution {execution.id}: state {state.name} failed with "
                    f"{error.category}, caught and routed to {rule.next}"
                )
                execution.document = updated
                return self._record(
                    state, document, updated, StepStatus.CAUGHT, started_at, tracker,
                    error=error.to_dict(), next_state=rule.next
                )

        logger.error(
            f"Execution {execution.id}: unhandled failure in state {state.name}: "
            f"{error.category}: {error.cause}"
        )
        execution.crash(error.category, error.cause)
        return self._record(
            state, document, document, StepStatus.FAILED, started_at, tracker,
            error=error.to_dict()
        )

    async def _execute_branch(self, execution: Execution, state: StateDefinition) -> StepRecord:
        """执行分支状态：第一个满足的条件胜出，否则走默认分支"""
        started_at = datetime.utcnow()
        document = execution.document
        try:
            next_state = self.choose_branch(state, document)
        except StepFailure as error:
            logger.error(
                f"Execution {execution.id}: branch {state.name} failed: "
                f"{error.category}: {error.cause}"
            )
            execution.crash(error.category, error.cause)
            return self._record(
                state, document, document, StepStatus.FAILED, started_at,
                error=error.to_dict()
            )

        logger.debug(f"Execution {execution.id}: branch {state.name} -> {next_state}")
        return self._record(
            state, document, document, StepStatus.SUCCEEDED, started_at, next_state=next_state
        )

    def choose_branch(self, state: StateDefinition, document: Document) -> str:
        """
        选择分支

        Raises:
            NoMatchingBranchError: 没有条件匹配且未声明默认分支
        """
        for choice in state.choices:
            if self.evaluator.evaluate_condition(choice.condition, document):
                return choice.next
        if state.default:
            return state.default
        raise NoMatchingBranchError(state.name)

    async def _execute_succeed(self, execution: Execution, state: StateDefinition) -> StepRecord:
        """成功终止"""
        started_at = datetime.utcnow()
        execution.succeed()
        return self._record(
            state, execution.document, execution.document, StepStatus.SUCCEEDED, started_at
        )

    async def _execute_fail(self, execution: Execution, state: StateDefinition) -> StepRecord:
        """失败终止"""
        started_at = datetime.utcnow()
        execution.fail(state.error, state.cause)
        return self._record(
            state, execution.document, execution.document, StepStatus.FAILED, started_at,
            error={"error": state.error, "cause": state.cause}
        )

    def _record(
        self,
        state: StateDefinition,
        before: Document,
        after: Document,
        status: StepStatus,
        started_at: datetime,
        tracker: Optional[RetryTracker] = None,
        error: Optional[dict] = None,
        next_state: Optional[str] = None
    ) -> StepRecord:
        return StepRecord(
            state_name=state.name,
            state_type=state.type.value,
            input_snapshot=before.snapshot(),
            output_snapshot=after.snapshot(),
            status=status,
            started_at=started_at,
            ended_at=datetime.utcnow(),
            attempts=tracker.total_attempts if tracker else 0,
            backoff_delays=tuple(tracker.delays) if tracker else (),
            error=error,
            next_state=next_state
        )

    async def _publish_retry(
        self,
        execution: Execution,
        state: StateDefinition,
        error: StepFailure,
        attempt: int,
        delay: float
    ):
        if self.event_bus is None:
            return
        event = ExecutionEvent(
            execution_id=execution.id,
            event_type=ExecutionEventType.STEP_RETRYING,
            state_name=state.name,
            data={"attempt": attempt, "delay": delay, **error.to_dict()}
        )
        await self.event_bus.publish(event.event_type.value, event)
