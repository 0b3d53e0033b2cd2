"""
路径解析器

决定每个状态的工作单元看到哪些数据，以及结果如何写回文档。
"""
import copy
import logging
from typing import Any, Dict, Optional

from ..models.document import Document, MISSING, is_root
from .expressions import ExpressionEvaluator


logger = logging.getLogger(__name__)

EXPRESSION_SUFFIX = ".$"


class PathResolver:
    """路径解析器"""

    def __init__(self, evaluator: Optional[ExpressionEvaluator] = None):
        self.evaluator = evaluator or ExpressionEvaluator()

    def restrict_input(self, document: Document, path: Optional[str]) -> Any:
        """
        限制输入范围

        Args:
            document: 当前文档
            path: 输入路径，未设置时返回整个文档

        Returns:
            子文档副本
        """
        if path is None:
            return document.snapshot()
        return copy.deepcopy(document.get(path))

    def project_parameters(
        self,
        document: Any,
        parameters: Dict[str, Any],
        fallback: Any = MISSING
    ) -> Dict[str, Any]:
        """
        根据参数声明构造新对象

        以 `.$` 结尾的键视为表达式，对文档求值后写入去掉后缀的键；
        其余键按字面量复制，嵌套对象和数组递归处理。
        """
        return self._project(document, parameters, fallback)

    def _project(self, document: Any, spec: Any, fallback: Any) -> Any:
        if isinstance(spec, dict):
            result = {}
            for key, value in spec.items():
                if key.endswith(EXPRESSION_SUFFIX):
                    field = key[:-len(EXPRESSION_SUFFIX)]
                    result[field] = self.evaluator.evaluate(value, document, fallback=fallback)
                else:
                    result[key] = self._project(document, value, fallback)
            return result
        if isinstance(spec, list):
            return [self._project(document, item, fallback) for item in spec]
        return copy.deepcopy(spec)

    def inject_result(self, document: Document, path: Optional[str], result: Any) -> Document:
        """
        把结果写回文档

        Args:
            document: 当前文档
            path: 注入路径；None 表示丢弃结果，`$` 表示用结果整体替换文档
            result: 步骤结果

        Returns:
            新文档
        """
        if path is None:
            return document
        if is_root(path):
            logger.warning(
                "Result injected at root path '$': all prior document fields are discarded"
            )
            return Document(result)
        return document.merge(path, result)
