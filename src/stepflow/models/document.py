"""
执行文档模型

文档是在整个执行过程中传递的 JSON 值。所有更新都是持久化更新：
只复制路径上的容器，其余子树共享，因此已捕获的快照不会被后续修改影响。
"""
import copy
from functools import lru_cache
from typing import Any, List, Tuple, Union

from ..exceptions import PathNotFoundError


ROOT_PATH = "$"

Segment = Union[str, int]


class _Missing:
    """缺省值哨兵"""

    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()

# get() 未提供默认值
_NO_DEFAULT = object()


@lru_cache(maxsize=1024)
def parse_path(path: str) -> Tuple[Segment, ...]:
    """
    解析路径表达式

    支持 `$`、`$.a.b`、`$.a[0]`、`$['key with spaces']`，前导 `$` 可省略。

    Returns:
        路径段元组，根路径返回空元组
    """
    if path is None:
        raise PathNotFoundError(str(path), "Path must be a string")

    text = path.strip()
    if not text:
        raise PathNotFoundError(path, "Empty path; use '$' for the whole document")
    if text.startswith(ROOT_PATH):
        text = text[1:]
    elif text and text[0] not in ".[":
        text = "." + text

    segments: List[Segment] = []
    pos = 0
    length = len(text)
    while pos < length:
        char = text[pos]
        if char == ".":
            end = pos + 1
            while end < length and text[end] not in ".[":
                end += 1
            name = text[pos + 1:end]
            if not name:
                raise PathNotFoundError(path, f"Empty field name in path '{path}'")
            segments.append(name)
            pos = end
        elif char == "[":
            end = text.find("]", pos)
            if end == -1:
                raise PathNotFoundError(path, f"Unclosed bracket in path '{path}'")
            inner = text[pos + 1:end].strip()
            if len(inner) >= 2 and inner[0] == inner[-1] and inner[0] in "'\"":
                segments.append(inner[1:-1])
            else:
                try:
                    segments.append(int(inner))
                except ValueError:
                    raise PathNotFoundError(path, f"Invalid index '{inner}' in path '{path}'")
            pos = end + 1
        else:
            raise PathNotFoundError(path, f"Unexpected character '{char}' in path '{path}'")

    return tuple(segments)


def is_root(path: str) -> bool:
    """是否为根路径"""
    return parse_path(path) == ()


def format_path(segments: Tuple[Segment, ...]) -> str:
    """把路径段格式化为路径字符串"""
    parts = [ROOT_PATH]
    for segment in segments:
        if isinstance(segment, int):
            parts.append(f"[{segment}]")
        elif segment.isidentifier():
            parts.append(f".{segment}")
        else:
            parts.append(f"['{segment}']")
    return "".join(parts)


def _step(value: Any, segment: Segment) -> Any:
    """沿单个路径段向下取值，不存在时返回 MISSING"""
    if isinstance(segment, int):
        if isinstance(value, list) and -len(value) <= segment < len(value):
            return value[segment]
        return MISSING
    if isinstance(value, dict) and segment in value:
        return value[segment]
    return MISSING


def _new_container(segment: Segment) -> Any:
    return [] if isinstance(segment, int) else {}


def _assign(container: Any, segments: Tuple[Segment, ...], value: Any, path: str) -> Any:
    """返回在 segments 处写入 value 后的新容器（路径复制）"""
    if not segments:
        return value

    head, rest = segments[0], segments[1:]

    if isinstance(head, int):
        if not isinstance(container, list):
            raise PathNotFoundError(path, f"Cannot index into non-array at '{path}'")
        if head < 0:
            raise PathNotFoundError(path, f"Negative index not allowed when writing '{path}'")
        updated = list(container)
        while len(updated) <= head:
            updated.append(None)
        child = updated[head]
        if child is None and rest:
            child = _new_container(rest[0])
        updated[head] = _assign(child, rest, value, path)
        return updated

    if not isinstance(container, dict):
        raise PathNotFoundError(path, f"Cannot set field '{head}' on non-object at '{path}'")
    updated = dict(container)
    child = updated.get(head, MISSING)
    if (child is MISSING or child is None) and rest:
        child = _new_container(rest[0])
    updated[head] = _assign(child, rest, value, path)
    return updated


class Document:
    """
    执行文档

    包装单个 JSON 值；set/merge 返回新的 Document，不修改原实例。
    """

    __slots__ = ("_value",)

    def __init__(self, value: Any = MISSING):
        self._value = {} if value is MISSING else copy.deepcopy(value)

    @classmethod
    def _wrap(cls, value: Any) -> "Document":
        document = cls.__new__(cls)
        document._value = value
        return document

    @property
    def value(self) -> Any:
        """当前值（只读视图，调用方不得修改）"""
        return self._value

    def snapshot(self) -> Any:
        """返回独立的深拷贝，用于审计记录和工作单元输入"""
        return copy.deepcopy(self._value)

    def get(self, path: str, default: Any = _NO_DEFAULT) -> Any:
        """
        读取路径上的值

        Args:
            path: 路径表达式
            default: 路径不存在时的返回值；未提供时抛出 PathNotFoundError
        """
        current = self._value
        for segment in parse_path(path):
            current = _step(current, segment)
            if current is MISSING:
                if default is not _NO_DEFAULT:
                    return default
                raise PathNotFoundError(path)
        return current

    def exists(self, path: str) -> bool:
        """路径是否存在"""
        return self.get(path, MISSING) is not MISSING

    def set(self, path: str, value: Any) -> "Document":
        """在路径处写入值，按需创建中间容器"""
        segments = parse_path(path)
        return Document._wrap(_assign(self._value, segments, copy.deepcopy(value), path))

    def merge(self, path: str, value: Any) -> "Document":
        """
        在路径处浅合并值

        目标与 value 都是对象时合并字段（value 优先），否则直接写入；
        根路径表示整体替换。
        """
        segments = parse_path(path)
        if not segments:
            return Document(value)

        existing = self.get(path, MISSING)
        if isinstance(existing, dict) and isinstance(value, dict):
            merged = dict(existing)
            merged.update(copy.deepcopy(value))
            return Document._wrap(_assign(self._value, segments, merged, path))
        return self.set(path, value)

    def fields(self) -> List[str]:
        """顶层字段名"""
        if isinstance(self._value, dict):
            return list(self._value.keys())
        return []

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, Document):
            return self._value == other._value
        return NotImplemented

    def __repr__(self) -> str:
        return f"Document({self._value!r})"
