"""
执行控制器

驱动单次执行从起始状态运行到终止状态，多个执行作为独立任务并发运行。
"""
import asyncio
import logging
from typing import Dict, Any, Optional, List

from ..config import RuntimeSettings
from ..models.workflow import StateMachineWorkflow
from ..models.execution import (
    Execution, ExecutionStatus, ExecutionEvent, ExecutionEventType
)
from ..exceptions import (
    WorkflowValidationError, ExecutionNotFoundError, StepFailure, ErrorCategory
)
from ..integrations.event_bus import EventBus
from ..integrations.unit_registry import UnitRegistry
from .state_machine import StateMachineRuntime


logger = logging.getLogger(__name__)


class ExecutionController:
    """执行控制器"""

    def __init__(
        self,
        runtime: Optional[StateMachineRuntime] = None,
        registry: Optional[UnitRegistry] = None,
        event_bus: Optional[EventBus] = None,
        settings: Optional[RuntimeSettings] = None
    ):
        self.settings = settings or RuntimeSettings()
        self.event_bus = event_bus or EventBus()
        self.registry = registry or UnitRegistry(default_timeout=self.settings.default_timeout_seconds)
        self.runtime = runtime or StateMachineRuntime(
            self.registry,
            event_bus=self.event_bus,
            default_timeout=self.settings.default_timeout_seconds
        )
        self.executions: Dict[str, Execution] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def create_execution(self, workflow: StateMachineWorkflow, input_data: Any = None) -> Execution:
        """
        创建执行实例

        Raises:
            WorkflowValidationError: 工作流未通过验证
        """
        errors = workflow.validate()
        if errors:
            raise WorkflowValidationError("Workflow validation failed", errors)

        execution = Execution(
            workflow=workflow,
            input=input_data if input_data is not None else {}
        )
        self.executions[execution.id] = execution
        logger.info(f"Created execution {execution.id} for workflow {workflow.name or workflow.id}")
        return execution

    async def execute(self, workflow: StateMachineWorkflow, input_data: Any = None) -> Execution:
        """创建执行并等待其结束"""
        execution = self.create_execution(workflow, input_data)
        return await self.run(execution)

    async def start_execution(self, workflow: StateMachineWorkflow, input_data: Any = None) -> Execution:
        """创建执行并在后台任务中运行"""
        execution = self.create_execution(workflow, input_data)
        task = asyncio.create_task(self.run(execution))
        self._tasks[execution.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(execution.id, None))
        return execution

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        """等待后台执行结束"""
        execution = self.get_execution(execution_id)
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return execution

    async def run(self, execution: Execution) -> Execution:
        """
        驱动执行直到终止

        Args:
            execution: 尚未开始的执行实例

        Returns:
            已终止的执行实例
        """
        if execution.status != ExecutionStatus.PENDING:
            raise ValueError(f"Execution {execution.id} has already been started")

        if execution.cancel_requested:
            execution.mark_cancelled("Cancelled before start")
            await self._publish(execution, ExecutionEventType.EXECUTION_COMPLETED)
            return execution

        execution.start()
        logger.info(f"Execution {execution.id} started at state {execution.current_state}")
        await self._publish(execution, ExecutionEventType.EXECUTION_STARTED, {"input": execution.input})

        timeout = execution.workflow.timeout_seconds
        try:
            if timeout:
                await asyncio.wait_for(self._drive(execution), timeout=timeout)
            else:
                await self._drive(execution)
        except asyncio.TimeoutError:
            execution.crash(
                ErrorCategory.TIMEOUT,
                f"Execution exceeded workflow timeout of {timeout} seconds"
            )
        except asyncio.CancelledError:
            if not execution.is_terminal_state():
                execution.mark_cancelled("Execution task was cancelled")
            raise
        except StepFailure as e:
            execution.crash(e.category, e.cause)
        except Exception as e:
            logger.error(f"Execution {execution.id} crashed: {e}", exc_info=True)
            execution.crash(ErrorCategory.INTERNAL_ERROR, f"{type(e).__name__}: {e}")
        finally:
            if execution.is_terminal_state():
                logger.info(
                    f"Execution {execution.id} finished with status {execution.status.value}"
                    + (f" ({execution.error}: {execution.cause})" if execution.error else "")
                )

        await self._publish(execution, ExecutionEventType.EXECUTION_COMPLETED, {
            "status": execution.status.value,
            "error": execution.error,
            "cause": execution.cause
        })
        return execution

    async def _drive(self, execution: Execution):
        """步骤循环"""
        max_steps = self.settings.max_steps
        steps = 0
        while not execution.is_terminal_state():
            if execution.cancel_requested:
                execution.mark_cancelled(f"Cancelled before state '{execution.current_state}'")
                break
            if steps >= max_steps:
                execution.crash(
                    ErrorCategory.STEP_LIMIT_EXCEEDED,
                    f"Execution exceeded {max_steps} steps at state '{execution.current_state}'"
                )
                break

            record = await self.runtime.execute_step(execution)
            steps += 1
            await self._publish(
                execution, ExecutionEventType.STEP_COMPLETED, record.to_dict(), record.state_name
            )

    def cancel(self, execution_id: str) -> Execution:
        """
        请求取消执行

        已终止的执行保持不变；运行中的执行在下一步开始前或退避等待中结束。
        """
        execution = self.get_execution(execution_id)
        if execution.is_terminal_state():
            logger.info(f"Execution {execution_id} already finished, cancel ignored")
            return execution

        execution.request_cancel()
        if execution.status == ExecutionStatus.PENDING and execution_id not in self._tasks:
            execution.mark_cancelled("Cancelled before start")
        logger.info(f"Cancellation requested for execution {execution_id}")
        return execution

    def get_execution(self, execution_id: str) -> Execution:
        """获取执行实例"""
        execution = self.executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None
    ) -> List[Execution]:
        """列出执行实例"""
        executions = list(self.executions.values())
        if status is not None:
            executions = [e for e in executions if e.status == status]
        if workflow_id is not None:
            executions = [e for e in executions if e.workflow.id == workflow_id]
        return executions

    async def shutdown(self):
        """取消所有后台执行"""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Execution controller shut down ({len(tasks)} running executions cancelled)")

    async def _publish(
        self,
        execution: Execution,
        event_type: ExecutionEventType,
        data: Optional[Dict[str, Any]] = None,
        state_name: Optional[str] = None
    ):
        event = ExecutionEvent(
            execution_id=execution.id,
            event_type=event_type,
            state_name=state_name or execution.current_state,
            data=data or {}
        )
        await self.event_bus.publish(event_type.value, event)
