"""
内置工作单元：通知与配置查询
"""
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

import aiofiles

from ..exceptions import TaskFailedError
from .event_bus import EventBus
from .unit_registry import UnitRegistry


logger = logging.getLogger(__name__)


NOTIFY_SCHEMA = {
    "type": "object",
    "required": ["topic", "message"],
    "properties": {
        "topic": {"type": "string", "minLength": 1},
        "message": {}
    }
}

CONFIG_LOOKUP_SCHEMA = {
    "type": "object",
    "required": ["key"],
    "properties": {
        "key": {"type": "string", "minLength": 1}
    }
}


class ConfigStore(ABC):
    """键值配置存储接口"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """读取配置，不存在时返回 None"""
        pass

    @abstractmethod
    async def put(self, key: str, value: Dict[str, Any]):
        """写入配置"""
        pass


class InMemoryConfigStore(ConfigStore):
    """内存配置存储"""

    def __init__(self, items: Optional[Dict[str, Dict[str, Any]]] = None):
        self.items: Dict[str, Dict[str, Any]] = dict(items or {})

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = self.items.get(key)
        return dict(value) if value is not None else None

    async def put(self, key: str, value: Dict[str, Any]):
        self.items[key] = dict(value)


class FileConfigStore(ConfigStore):
    """基于文件的配置存储，每个键对应目录下的一个 JSON 文件"""

    def __init__(self, storage_path: str = "./stepflow_config"):
        self.storage_path = storage_path
        os.makedirs(self.storage_path, exist_ok=True)

    def _get_config_path(self, key: str) -> str:
        """获取配置文件路径"""
        safe_key = key.replace(os.sep, "_")
        return os.path.join(self.storage_path, f"{safe_key}.json")

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """从文件加载配置"""
        config_path = self._get_config_path(key)
        if not os.path.exists(config_path):
            return None

        async with aiofiles.open(config_path, 'r', encoding='utf-8') as f:
            content = await f.read()
        return json.loads(content)

    async def put(self, key: str, value: Dict[str, Any]):
        """保存配置到文件"""
        async with aiofiles.open(self._get_config_path(key), 'w', encoding='utf-8') as f:
            await f.write(json.dumps(value, indent=2))


def register_builtin_units(
    registry: UnitRegistry,
    event_bus: EventBus,
    config_store: ConfigStore
):
    """注册 notify 和 config.lookup 工作单元"""

    async def notify(payload: Dict[str, Any]) -> Dict[str, Any]:
        """发布通知（发出即忘）"""
        topic = payload["topic"]
        await event_bus.publish(topic, payload["message"])
        logger.info(f"Notification published to topic '{topic}'")
        return {"published": True, "topic": topic}

    async def config_lookup(payload: Dict[str, Any]) -> Dict[str, Any]:
        """按键读取配置映射"""
        key = payload["key"]
        value = await config_store.get(key)
        if value is None:
            raise TaskFailedError(f"No configuration found for key '{key}'")
        return value

    registry.register("notify", notify, input_schema=NOTIFY_SCHEMA)
    registry.register("config.lookup", config_lookup, input_schema=CONFIG_LOOKUP_SCHEMA)
