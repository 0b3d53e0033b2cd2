"""
状态机运行时测试
"""
import asyncio
import json
from datetime import datetime

import pytest

from stepflow.config import RuntimeSettings
from stepflow.core.engine import ExecutionController
from stepflow.core.state_machine import StateMachineRuntime, interruptible_sleep
from stepflow.exceptions import ErrorCategory, NoMatchingBranchError
from stepflow.integrations import EventBus
from stepflow.models.document import Document
from stepflow.models.execution import ExecutionStatus, StepStatus
from stepflow.models.workflow import StateDefinition, StateType, Choice

from conftest import FlakyUnit


async def run(controller, parser, definition, input_data=None):
    workflow = parser.parse(definition)
    return await controller.execute(workflow, input_data or {})


class TestWorkStates:
    """invoke/transform 状态测试类"""

    @pytest.mark.asyncio
    async def test_invoke_with_parameters_and_sync_unit(self, controller, parser):
        """测试参数投影并调用同步工作单元"""
        execution = await run(controller, parser, {
            "start": "Add",
            "states": {
                "Add": {
                    "type": "invoke",
                    "resource": "add",
                    "parameters": {"a.$": "$.x", "b": 5},
                    "result_path": "$.total",
                    "next": "Done"
                },
                "Done": {"type": "succeed"}
            }
        }, {"x": 2})

        assert execution.status == ExecutionStatus.SUCCEEDED
        assert execution.output == {"x": 2, "total": {"sum": 7}}

    @pytest.mark.asyncio
    async def test_default_result_path_is_state_name(self, controller, parser):
        """测试未声明 result_path 时写入状态名字段"""
        execution = await run(controller, parser, {
            "start": "Echo",
            "states": {
                "Echo": {"type": "invoke", "resource": "echo", "input_path": "$.doc", "next": "Done"},
                "Done": {"type": "succeed"}
            }
        }, {"doc": {"id": "d1"}})

        assert execution.output == {"doc": {"id": "d1"}, "Echo": {"id": "d1"}}

    @pytest.mark.asyncio
    async def test_null_result_path_discards_result(self, controller, parser):
        execution = await run(controller, parser, {
            "start": "Echo",
            "states": {
                "Echo": {"type": "invoke", "resource": "echo", "result_path": None, "next": "Done"},
                "Done": {"type": "succeed"}
            }
        }, {"keep": True})

        assert execution.output == {"keep": True}

    @pytest.mark.asyncio
    async def test_transform_expression_uses_restricted_input(self, controller, parser):
        """测试 transform 表达式在受限输入上求值"""
        execution = await run(controller, parser, {
            "start": "Shape",
            "states": {
                "Shape": {
                    "type": "transform",
                    "input_path": "$.order",
                    "expression": "{count: length($.items), first: $.items[0]}",
                    "result_path": "$.summary",
                    "next": "Done"
                },
                "Done": {"type": "succeed"}
            }
        }, {"order": {"items": ["a", "b"]}})

        assert execution.output["summary"] == {"count": 2, "first": "a"}

    @pytest.mark.asyncio
    async def test_transform_without_expression_passes_input(self, controller, parser):
        execution = await run(controller, parser, {
            "start": "Copy",
            "states": {
                "Copy": {"type": "transform", "input_path": "$.a", "result_path": "$.b", "next": "Done"},
                "Done": {"type": "succeed"}
            }
        }, {"a": {"v": 1}})

        assert execution.output == {"a": {"v": 1}, "b": {"v": 1}}

    @pytest.mark.asyncio
    async def test_root_result_path_replaces_document(self, controller, parser):
        """测试根路径注入整体替换文档"""
        execution = await run(controller, parser, {
            "start": "Replace",
            "states": {
                "Replace": {
                    "type": "transform",
                    "expression": "{only: $.a}",
                    "result_path": "$",
                    "next": "Done"
                },
                "Done": {"type": "succeed"}
            }
        }, {"a": 1, "b": 2})

        assert execution.output == {"only": 1}

    @pytest.mark.asyncio
    async def test_non_root_steps_never_drop_fields(self, controller, parser, document_workflow, registry):
        """测试非根注入的步骤不丢失已有字段"""
        registry.register("classify", FlakyUnit(0, {"documentType": "INVOICE", "confidence": 0.9}))
        registry.register("extract", FlakyUnit(0, {"fields": {"total": 10}}))

        execution = await run(controller, parser, document_workflow, {"document": {"id": "d1"}})

        assert execution.status == ExecutionStatus.SUCCEEDED
        for record in execution.history:
            assert set(record.input_snapshot) <= set(record.output_snapshot)


class TestBranchStates:
    """分支状态测试类"""

    def _branch(self, default="Other"):
        return StateDefinition(
            name="Route",
            type=StateType.BRANCH,
            choices=[
                Choice(condition="$.n > 10", next="Big"),
                Choice(condition="$.n > 5", next="Medium")
            ],
            default=default
        )

    def test_first_matching_choice_wins(self, runtime):
        """测试第一个满足的条件胜出"""
        state = self._branch()
        assert runtime.choose_branch(state, Document({"n": 20})) == "Big"
        assert runtime.choose_branch(state, Document({"n": 7})) == "Medium"

    def test_default_branch(self, runtime):
        assert runtime.choose_branch(self._branch(), Document({"n": 1})) == "Other"

    def test_no_match_without_default(self, runtime):
        with pytest.raises(NoMatchingBranchError):
            runtime.choose_branch(self._branch(default=None), Document({"n": 1}))

    @pytest.mark.asyncio
    async def test_branch_type_error_crashes_execution(self, controller, parser):
        """测试分支条件类型错误终止执行"""
        execution = await run(controller, parser, {
            "start": "Route",
            "states": {
                "Route": {
                    "type": "branch",
                    "choices": [{"condition": "$.label * 2 > 1", "next": "Done"}],
                    "default": "Done"
                },
                "Done": {"type": "succeed"}
            }
        }, {"label": "text"})

        assert execution.status == ExecutionStatus.CRASHED
        assert execution.error == ErrorCategory.TYPE_ERROR
        assert execution.history[-1].status == StepStatus.FAILED


class TestFailures:
    """失败、捕获与终止状态测试类"""

    @pytest.mark.asyncio
    async def test_fail_state(self, controller, parser):
        execution = await run(controller, parser, {
            "start": "Stop",
            "states": {"Stop": {"type": "fail", "error": "Rejected", "cause": "not allowed"}}
        })

        assert execution.status == ExecutionStatus.FAILED
        assert (execution.error, execution.cause) == ("Rejected", "not allowed")
        assert execution.history[-1].error == {"error": "Rejected", "cause": "not allowed"}

    @pytest.mark.asyncio
    async def test_unhandled_error_crashes(self, controller, parser):
        """测试未被捕获的错误导致 CRASHED"""
        execution = await run(controller, parser, {
            "start": "Call",
            "states": {
                "Call": {"type": "invoke", "resource": "missing.unit", "next": "Done"},
                "Done": {"type": "succeed"}
            }
        }, {"a": 1})

        assert execution.status == ExecutionStatus.CRASHED
        assert execution.error == ErrorCategory.TASK_FAILED
        assert "missing.unit" in execution.cause
        assert execution.output == {"a": 1}

    @pytest.mark.asyncio
    async def test_missing_input_path_is_caught(self, controller, parser):
        """测试缺失输入路径可以被 all 捕获"""
        execution = await run(controller, parser, {
            "start": "Call",
            "states": {
                "Call": {
                    "type": "invoke",
                    "resource": "echo",
                    "input_path": "$.absent",
                    "catch": [{"errors": ["all"], "result_path": "$.failure", "next": "Recover"}],
                    "next": "Done"
                },
                "Recover": {"type": "succeed"},
                "Done": {"type": "succeed"}
            }
        }, {"a": 1})

        assert execution.status == ExecutionStatus.SUCCEEDED
        assert execution.current_state == "Recover"
        assert execution.output["a"] == 1
        assert execution.output["failure"]["error"] == ErrorCategory.PATH_NOT_FOUND
        assert execution.history[0].status == StepStatus.CAUGHT

    @pytest.mark.asyncio
    async def test_catch_injects_error_into_pre_step_document(self, controller, parser, registry):
        """测试捕获时错误写入步骤前的文档"""
        registry.register("flaky", FlakyUnit(5))

        execution = await run(controller, parser, {
            "start": "Call",
            "states": {
                "Call": {
                    "type": "invoke",
                    "resource": "flaky",
                    "result_path": "$.result",
                    "catch": [{"errors": ["TaskFailed"], "next": "Recover"}],
                    "next": "Done"
                },
                "Recover": {"type": "succeed"},
                "Done": {"type": "succeed"}
            }
        }, {"a": 1})

        assert execution.output == {
            "a": 1,
            "error": {"error": "TaskFailed", "cause": "simulated failure #1"}
        }

    @pytest.mark.asyncio
    async def test_unit_timeout(self, controller, parser, registry):
        """测试工作单元超时归为 Timeout 类别"""
        @registry.unit("slow")
        async def slow(payload):
            await asyncio.sleep(5)
            return {}

        execution = await run(controller, parser, {
            "start": "Call",
            "states": {
                "Call": {
                    "type": "invoke",
                    "resource": "slow",
                    "timeout_seconds": 0.05,
                    "catch": [
                        {"errors": ["TaskFailed"], "next": "Wrong"},
                        {"errors": ["Timeout"], "next": "TimedOut"}
                    ],
                    "next": "Done"
                },
                "Wrong": {"type": "fail", "error": "Wrong"},
                "TimedOut": {"type": "succeed"},
                "Done": {"type": "succeed"}
            }
        })

        assert execution.status == ExecutionStatus.SUCCEEDED
        assert execution.current_state == "TimedOut"
        assert execution.output["error"]["error"] == ErrorCategory.TIMEOUT

    @pytest.mark.asyncio
    async def test_unit_timeout_beats_runtime_default(self, parser, registry, event_bus):
        """测试单元自身的超时优先于运行时默认超时"""
        async def slow(payload):
            await asyncio.sleep(0.2)
            return {"done": True}

        registry.register("slow", slow, timeout_seconds=2)
        runtime = StateMachineRuntime(registry, event_bus=event_bus, default_timeout=0.05)
        controller = ExecutionController(runtime=runtime, registry=registry, event_bus=event_bus)

        execution = await run(controller, parser, {
            "start": "Call",
            "states": {
                "Call": {"type": "invoke", "resource": "slow", "result_path": "$.r", "next": "Done"},
                "Done": {"type": "succeed"}
            }
        })

        assert execution.status == ExecutionStatus.SUCCEEDED
        assert execution.output == {"r": {"done": True}}

    @pytest.mark.asyncio
    async def test_non_json_unit_result_crashes(self, controller, parser, registry):
        """测试工作单元返回非 JSON 值时执行以 TaskFailed 结束，文档保持可序列化"""
        @registry.unit("dated")
        async def dated(payload):
            return {"when": datetime(2024, 1, 1), "tags": {1, 2}}

        execution = await run(controller, parser, {
            "start": "Call",
            "states": {
                "Call": {"type": "invoke", "resource": "dated", "result_path": "$.r", "next": "Done"},
                "Done": {"type": "succeed"}
            }
        }, {"a": 1})

        assert execution.status == ExecutionStatus.CRASHED
        assert execution.error == ErrorCategory.TASK_FAILED
        assert "non-JSON result" in execution.cause
        assert execution.output == {"a": 1}
        json.dumps(execution.output)

    @pytest.mark.asyncio
    async def test_workflow_timeout(self, controller, parser, registry):
        @registry.unit("slow")
        async def slow(payload):
            await asyncio.sleep(5)
            return {}

        execution = await run(controller, parser, {
            "start": "Call",
            "timeout_seconds": 0.05,
            "states": {
                "Call": {"type": "invoke", "resource": "slow", "next": "Done"},
                "Done": {"type": "succeed"}
            }
        })

        assert execution.status == ExecutionStatus.CRASHED
        assert execution.error == ErrorCategory.TIMEOUT

    @pytest.mark.asyncio
    async def test_step_limit(self, controller, parser):
        """测试步数上限终止无限循环"""
        execution = await run(controller, parser, {
            "start": "Tick",
            "states": {
                "Tick": {"type": "transform", "result_path": None, "next": "Loop"},
                "Loop": {
                    "type": "branch",
                    "choices": [{"condition": "$.stop == true", "next": "Done"}],
                    "default": "Tick"
                },
                "Done": {"type": "succeed"}
            }
        }, {"stop": False})

        assert execution.status == ExecutionStatus.CRASHED
        assert execution.error == ErrorCategory.STEP_LIMIT_EXCEEDED
        assert len(execution.history) == 50

    @pytest.mark.asyncio
    async def test_unexpected_exception_crashes_execution(self, controller, parser, monkeypatch):
        async def broken(execution):
            raise RuntimeError("boom")

        monkeypatch.setattr(controller.runtime, "execute_step", broken)
        execution = await run(controller, parser, {
            "start": "Done",
            "states": {"Done": {"type": "succeed"}}
        })

        assert execution.status == ExecutionStatus.CRASHED
        assert execution.error == ErrorCategory.INTERNAL_ERROR
        assert "RuntimeError: boom" in execution.cause


class TestRetries:
    """步骤内重试测试类"""

    RETRY_WORKFLOW = {
        "start": "Call",
        "states": {
            "Call": {
                "type": "invoke",
                "resource": "flaky",
                "result_path": "$.result",
                "retry": [{"errors": ["TaskFailed"], "initial_delay": 2, "multiplier": 2, "max_attempts": 3}],
                "catch": [{"errors": ["all"], "next": "Recover"}],
                "next": "Done"
            },
            "Recover": {"type": "succeed"},
            "Done": {"type": "succeed"}
        }
    }

    @pytest.mark.asyncio
    async def test_retry_then_succeed(self, controller, parser, registry, sleeper):
        """测试重试后成功"""
        unit = FlakyUnit(2, {"value": 42})
        registry.register("flaky", unit)

        execution = await run(controller, parser, self.RETRY_WORKFLOW)

        assert execution.status == ExecutionStatus.SUCCEEDED
        assert execution.current_state == "Done"
        assert unit.calls == 3
        assert sleeper.delays == [2, 4]
        record = execution.history[0]
        assert record.attempts == 3
        assert list(record.backoff_delays) == [0.0, 2, 4]

    @pytest.mark.asyncio
    async def test_retry_exhaustion_falls_through_to_catch(self, controller, parser, registry, sleeper):
        """测试重试耗尽后进入捕获规则"""
        unit = FlakyUnit(3)
        registry.register("flaky", unit)

        execution = await run(controller, parser, self.RETRY_WORKFLOW)

        assert execution.current_state == "Recover"
        assert unit.calls == 3
        assert sleeper.total == 6
        assert execution.history[0].status == StepStatus.CAUGHT
        assert execution.output["error"]["cause"] == "simulated failure #3"

    @pytest.mark.asyncio
    async def test_invalid_input_is_not_retried(self, controller, parser, registry, sleeper):
        """测试输入校验失败不会重试"""
        calls = []

        @registry.unit("strict", input_schema={"type": "object", "required": ["id"]})
        async def strict(payload):
            calls.append(payload)
            return payload

        execution = await run(controller, parser, {
            "start": "Call",
            "states": {
                "Call": {
                    "type": "invoke",
                    "resource": "strict",
                    "retry": [{"errors": ["TaskFailed"], "max_attempts": 3}],
                    "next": "Done"
                },
                "Done": {"type": "succeed"}
            }
        })

        assert execution.status == ExecutionStatus.CRASHED
        assert execution.error == ErrorCategory.INVALID_INPUT
        assert calls == []
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_retry_events_published(self, controller, parser, registry, event_bus):
        events = []

        async def collect(event):
            events.append(event.payload)

        await event_bus.subscribe("execution.step_retrying", collect)
        registry.register("flaky", FlakyUnit(2))

        await run(controller, parser, self.RETRY_WORKFLOW)

        assert [event.data["attempt"] for event in events] == [2, 3]
        assert [event.data["delay"] for event in events] == [2, 4]


class TestCancellation:
    """取消测试类"""

    @pytest.mark.asyncio
    async def test_interruptible_sleep(self):
        event = asyncio.Event()
        assert await interruptible_sleep(0.01, event) is False

        event.set()
        assert await interruptible_sleep(30, event) is True

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self, parser, registry, event_bus):
        """测试退避等待中取消立即生效且文档不变"""
        runtime = StateMachineRuntime(registry, event_bus=event_bus)
        controller = ExecutionController(
            runtime=runtime, registry=registry, event_bus=event_bus, settings=RuntimeSettings()
        )
        registry.register("flaky", FlakyUnit(10))
        workflow = parser.parse({
            "start": "Call",
            "states": {
                "Call": {
                    "type": "invoke",
                    "resource": "flaky",
                    "retry": [{"errors": ["TaskFailed"], "initial_delay": 30, "max_attempts": 5}],
                    "next": "Done"
                },
                "Done": {"type": "succeed"}
            }
        })

        execution = await controller.start_execution(workflow, {"a": 1})
        await asyncio.sleep(0.05)
        controller.cancel(execution.id)
        await controller.wait(execution.id, timeout=5)

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.output == {"a": 1}
        record = execution.history[-1]
        assert record.status == StepStatus.CANCELLED
        assert record.attempts == 1

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, controller, parser):
        workflow = parser.parse({"start": "Done", "states": {"Done": {"type": "succeed"}}})
        execution = controller.create_execution(workflow, {})

        controller.cancel(execution.id)

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.history == ()

    @pytest.mark.asyncio
    async def test_cancel_requested_before_run(self, controller, parser):
        workflow = parser.parse({"start": "Done", "states": {"Done": {"type": "succeed"}}})
        execution = controller.create_execution(workflow, {})
        execution.request_cancel()

        await controller.run(execution)

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.cause == "Cancelled before start"

    @pytest.mark.asyncio
    async def test_cancel_finished_execution_is_ignored(self, controller, parser):
        workflow = parser.parse({"start": "Done", "states": {"Done": {"type": "succeed"}}})
        execution = await controller.execute(workflow, {})

        controller.cancel(execution.id)

        assert execution.status == ExecutionStatus.SUCCEEDED


class TestEvents:
    """执行事件测试类"""

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, controller, parser, event_bus):
        """测试执行生命周期事件"""
        topics = []

        def collect(event):
            topics.append(event.topic)

        await event_bus.subscribe(EventBus.WILDCARD, collect)

        await run(controller, parser, {
            "start": "Copy",
            "states": {
                "Copy": {"type": "transform", "next": "Done"},
                "Done": {"type": "succeed"}
            }
        })

        assert topics == [
            "execution.started",
            "execution.step_completed",
            "execution.step_completed",
            "execution.completed"
        ]
