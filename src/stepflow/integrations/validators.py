"""
Schema验证器实现
"""
from typing import Dict, Any, List
import json
import logging

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError


logger = logging.getLogger(__name__)


class SchemaValidator:
    """Schema验证器"""

    def __init__(self):
        self.validators_cache: Dict[str, Draft7Validator] = {}

    def validate(self, data: Any, schema: Dict[str, Any]) -> List[str]:
        """
        验证数据是否符合 JSON Schema 定义

        Args:
            data: 待验证的数据
            schema: JSON Schema定义

        Returns:
            验证错误列表，如果没有错误返回空列表
        """
        errors = []

        # 获取或创建验证器
        schema_str = json.dumps(schema, sort_keys=True)
        if schema_str not in self.validators_cache:
            try:
                Draft7Validator.check_schema(schema)
            except SchemaError as e:
                errors.append(f"Invalid schema: {e.message}")
                return errors
            self.validators_cache[schema_str] = Draft7Validator(schema)

        validator = self.validators_cache[schema_str]

        # 收集所有验证错误
        for error in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path]):
            path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
            errors.append(f"{path}: {error.message}")

        return errors
