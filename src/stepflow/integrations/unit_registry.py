"""
工作单元注册表

工作单元是按名称调用的外部计算：接收 JSON 输入，返回 JSON 输出，
或抛出带类别的失败。
"""
import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Callable

from ..exceptions import (
    StepFailure, TaskFailedError, TaskTimeoutError, UnitNotFoundError, UnitInputError
)
from .validators import SchemaValidator


logger = logging.getLogger(__name__)


@dataclass
class UnitDefinition:
    """工作单元定义"""
    name: str
    handler: Callable
    description: str = ""
    input_schema: Optional[Dict[str, Any]] = None
    timeout_seconds: Optional[float] = None  # 未在状态中声明超时时使用
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_async(self) -> bool:
        if inspect.iscoroutinefunction(self.handler):
            return True
        # 定义了 async __call__ 的可调用对象
        return inspect.iscoroutinefunction(getattr(self.handler, "__call__", None))


class UnitRegistry:
    """本地工作单元注册表"""

    def __init__(self, default_timeout: Optional[float] = None):
        self.units: Dict[str, UnitDefinition] = {}
        self.default_timeout = default_timeout
        self.schema_validator = SchemaValidator()

    def register(
        self,
        name: str,
        handler: Callable,
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None
    ) -> UnitDefinition:
        """注册工作单元"""
        if not callable(handler):
            raise ValueError(f"Handler for unit {name} must be callable")

        unit = UnitDefinition(
            name=name,
            handler=handler,
            description=description or (inspect.getdoc(handler) or ""),
            input_schema=input_schema,
            timeout_seconds=timeout_seconds
        )
        if name in self.units:
            logger.warning(f"Replacing registered unit: {name}")
        self.units[name] = unit

        logger.info(f"Registered unit of work: {name}")
        return unit

    def unit(
        self,
        name: str,
        input_schema: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None
    ):
        """注册工作单元的装饰器"""
        def decorator(handler: Callable) -> Callable:
            self.register(name, handler, input_schema=input_schema, timeout_seconds=timeout_seconds)
            return handler
        return decorator

    def unregister(self, name: str):
        """注销工作单元"""
        if self.units.pop(name, None) is not None:
            logger.info(f"Unregistered unit of work: {name}")

    def get(self, name: str) -> Optional[UnitDefinition]:
        """获取工作单元定义"""
        return self.units.get(name)

    def list_units(self) -> List[UnitDefinition]:
        """列出所有工作单元"""
        return list(self.units.values())

    def validate_payload(self, name: str, payload: Any) -> List[str]:
        """按工作单元的输入 schema 验证载荷"""
        unit = self.units.get(name)
        if not unit or not unit.input_schema:
            return []
        return self.schema_validator.validate(payload, unit.input_schema)

    async def invoke(
        self,
        name: str,
        payload: Any,
        timeout_seconds: Optional[float] = None,
        default_timeout: Optional[float] = None
    ) -> Any:
        """
        调用工作单元

        Args:
            name: 工作单元名称
            payload: JSON 输入
            timeout_seconds: 本次调用的超时时间
            default_timeout: 调用方的默认超时，优先级低于单元自身的超时

            超时按 timeout_seconds、单元超时、default_timeout、注册表默认值依次取第一个已设置的值。

        Returns:
            工作单元返回的 JSON 值

        Raises:
            UnitNotFoundError: 工作单元未注册
            UnitInputError: 载荷不符合输入 schema
            TaskTimeoutError: 调用超时
            TaskFailedError: 其他调用失败，或返回值不是 JSON
        """
        unit = self.units.get(name)
        if not unit:
            raise UnitNotFoundError(name)

        errors = self.validate_payload(name, payload)
        if errors:
            raise UnitInputError(name, errors)

        timeout = next(
            (value for value in (timeout_seconds, unit.timeout_seconds, default_timeout, self.default_timeout)
             if value is not None),
            None
        )

        start_time = time.monotonic()
        try:
            if unit.is_async:
                call = unit.handler(payload)
            else:
                # 同步处理函数放到线程中执行，超时限制才能生效
                call = asyncio.to_thread(unit.handler, payload)

            if timeout is not None:
                result = await asyncio.wait_for(call, timeout=timeout)
            else:
                result = await call

        except asyncio.TimeoutError:
            logger.warning(f"Unit {name} timed out after {timeout}s")
            raise TaskTimeoutError(name, timeout)
        except StepFailure as e:
            logger.info(f"Unit {name} failed with {e.category}: {e.cause}")
            raise
        except Exception as e:
            logger.error(f"Unit {name} invocation failed: {e}", exc_info=True)
            raise TaskFailedError(f"{type(e).__name__}: {e}")

        result = self._to_json(name, result)

        duration_ms = (time.monotonic() - start_time) * 1000
        logger.debug(f"Unit {name} invoked successfully in {duration_ms:.2f}ms")
        return result

    def _to_json(self, name: str, result: Any) -> Any:
        """把返回值规范化为 JSON 值（元组转为数组），无法序列化时视为调用失败"""
        try:
            return json.loads(json.dumps(result, allow_nan=False))
        except (TypeError, ValueError) as e:
            logger.error(f"Unit {name} returned a non-JSON result: {e}")
            raise TaskFailedError(f"Unit of work '{name}' returned a non-JSON result: {e}")
