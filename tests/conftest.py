"""
Pytest 配置和公共 fixtures
"""
import asyncio
from pathlib import Path
from typing import Any, Dict, List

import pytest

from stepflow.config import RuntimeSettings
from stepflow.core.engine import ExecutionController
from stepflow.core.parser import WorkflowParser
from stepflow.core.state_machine import StateMachineRuntime
from stepflow.exceptions import TaskFailedError
from stepflow.integrations import EventBus, UnitRegistry


EXAMPLES_DIR = Path(__file__).resolve().parent.parent / "examples"


class RecordingSleeper:
    """记录退避时间、不真正等待的 sleeper"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float, cancel_event: asyncio.Event) -> bool:
        self.delays.append(delay)
        return cancel_event.is_set()

    @property
    def total(self) -> float:
        return sum(self.delays)


class FlakyUnit:
    """前 failures 次调用失败、之后成功的工作单元"""

    def __init__(self, failures: int, result: Any = None, category: str = None):
        self.failures = failures
        self.result = result if result is not None else {"ok": True}
        self.category = category
        self.calls = 0
        self.payloads: List[Any] = []

    async def __call__(self, payload: Any) -> Any:
        self.calls += 1
        self.payloads.append(payload)
        if self.calls <= self.failures:
            raise TaskFailedError(f"simulated failure #{self.calls}", category=self.category)
        return self.result


@pytest.fixture
def parser() -> WorkflowParser:
    """工作流解析器"""
    return WorkflowParser()


@pytest.fixture
def sleeper() -> RecordingSleeper:
    """记录退避时间的 sleeper"""
    return RecordingSleeper()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def registry() -> UnitRegistry:
    """带有简单测试单元的注册表"""
    registry = UnitRegistry()

    @registry.unit("echo")
    async def echo(payload):
        return payload

    @registry.unit("add")
    def add(payload):
        return {"sum": payload["a"] + payload["b"]}

    return registry


@pytest.fixture
def runtime(registry, event_bus, sleeper) -> StateMachineRuntime:
    """使用记录型 sleeper 的运行时"""
    return StateMachineRuntime(registry, event_bus=event_bus, sleeper=sleeper)


@pytest.fixture
def controller(registry, event_bus, runtime) -> ExecutionController:
    """执行控制器"""
    return ExecutionController(
        runtime=runtime,
        registry=registry,
        event_bus=event_bus,
        settings=RuntimeSettings(max_steps=50)
    )


def make_classifier(document_type: str, confidence: float):
    """返回固定分类结果的分类单元"""
    calls = []

    async def classify(payload: Dict[str, Any]) -> Dict[str, Any]:
        calls.append(payload)
        return {"documentType": document_type, "confidence": confidence}

    classify.calls = calls
    return classify


@pytest.fixture
def document_workflow() -> Dict[str, Any]:
    """文档处理工作流（分类 -> 置信度分支 -> 合并 -> 抽取 -> 决定业务动作）"""
    return {
        "workflow": {
            "name": "document-e2e",
            "start": "Classify",
            "states": {
                "Classify": {
                    "type": "invoke",
                    "resource": "classify",
                    "parameters": {"documentId.$": "$.document.id"},
                    "result_path": "$.classificationResult",
                    "next": "CheckConfidence"
                },
                "CheckConfidence": {
                    "type": "branch",
                    "choices": [
                        {"condition": "$.classificationResult.confidence < 0.7", "next": "ManualReview"}
                    ],
                    "default": "PrepareExtraction"
                },
                "ManualReview": {
                    "type": "succeed",
                    "comment": "Awaiting a human reviewer"
                },
                "PrepareExtraction": {
                    "type": "transform",
                    "expression": 'merge($.document, {"metadata": {"classified": true, "type": "INVOICE"}})',
                    "result_path": "$.extractionInput",
                    "next": "Extract"
                },
                "Extract": {
                    "type": "invoke",
                    "resource": "extract",
                    "input_path": "$.extractionInput",
                    "result_path": "$.extraction",
                    "next": "DetermineAction"
                },
                "DetermineAction": {
                    "type": "transform",
                    "parameters": {
                        "actionType.$": (
                            '$.classificationResult.documentType == "INVOICE" '
                            '? "processPayment" : "createOrder"'
                        ),
                        "documentId.$": "$.document.id"
                    },
                    "result_path": "$.businessAction",
                    "next": "Done"
                },
                "Done": {"type": "succeed"}
            }
        }
    }
