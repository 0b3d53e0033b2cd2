"""
工作流解析器
"""
import copy
import json
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional, Union

import yaml

from ..models.document import MISSING, parse_path
from ..models.workflow import (
    StateMachineWorkflow, StateDefinition, StateType,
    RetryRule, CatchRule, Choice, WORK_STATE_TYPES
)
from ..exceptions import (
    WorkflowParseError, WorkflowValidationError, ErrorCategory, StepflowError
)
from ..integrations.validators import SchemaValidator
from .expressions import ExpressionEvaluator
from .paths import EXPRESSION_SUFFIX


logger = logging.getLogger(__name__)


_CATEGORIES = {"type": "array", "items": {"type": "string", "minLength": 1}, "minItems": 1}
_OPTIONAL_PATH = {"type": ["string", "null"]}

RETRY_SCHEMA = {
    "type": "object",
    "required": ["errors"],
    "properties": {
        "errors": _CATEGORIES,
        "initial_delay": {"type": "number", "minimum": 0},
        "multiplier": {"type": "number", "minimum": 1},
        "max_attempts": {"type": "integer", "minimum": 1},
        "max_delay": {"type": "number", "minimum": 0}
    },
    "additionalProperties": False
}

CATCH_SCHEMA = {
    "type": "object",
    "required": ["errors", "next"],
    "properties": {
        "errors": _CATEGORIES,
        "next": {"type": "string"},
        "result_path": _OPTIONAL_PATH
    },
    "additionalProperties": False
}

CHOICE_SCHEMA = {
    "type": "object",
    "required": ["condition", "next"],
    "properties": {
        "condition": {"type": ["string", "boolean"]},
        "next": {"type": "string"}
    },
    "additionalProperties": False
}

STATE_PROPERTIES = {
    "type": {"enum": [state_type.value for state_type in StateType]},
    "comment": {"type": "string"},
    "next": {"type": "string"},
    "resource": {"type": "string"},
    "timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
    "input_path": _OPTIONAL_PATH,
    "result_path": _OPTIONAL_PATH,
    "parameters": {"type": "object"},
    "expression": {"type": "string"},
    "expression_fallback": {},
    "retry": {"type": "array", "items": RETRY_SCHEMA},
    "catch": {"type": "array", "items": CATCH_SCHEMA},
    "choices": {"type": "array", "items": CHOICE_SCHEMA},
    "default": {"type": "string"},
    "error": {"type": "string"},
    "cause": {"type": "string"},
    "metadata": {"type": "object"}
}

STATE_SCHEMA = {
    "type": "object",
    "required": ["type"],
    "properties": STATE_PROPERTIES,
    "additionalProperties": False
}

NAMED_STATE_SCHEMA = {
    "type": "object",
    "required": ["name", "type"],
    "properties": dict(STATE_PROPERTIES, name={"type": "string", "minLength": 1}),
    "additionalProperties": False
}

WORKFLOW_SCHEMA = {
    "type": "object",
    "required": ["start", "states"],
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "version": {"type": ["string", "number"]},
        "description": {"type": "string"},
        "start": {"type": "string", "minLength": 1},
        "timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
        "metadata": {"type": "object"},
        "states": {
            "oneOf": [
                {"type": "object", "additionalProperties": STATE_SCHEMA},
                {"type": "array", "items": NAMED_STATE_SCHEMA}
            ]
        }
    },
    "additionalProperties": False
}


class _UniqueKeyLoader(yaml.SafeLoader):
    """重复键视为错误的 YAML 加载器"""

    def construct_mapping(self, node, deep=False):
        keys = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in keys:
                raise WorkflowValidationError(
                    "Workflow validation failed",
                    [f"Duplicate key '{key}' at line {key_node.start_mark.line + 1}"]
                )
            keys.add(key)
        return super().construct_mapping(node, deep=deep)


def _reject_duplicate_pairs(pairs):
    result = {}
    for key, value in pairs:
        if key in result:
            raise WorkflowValidationError("Workflow validation failed", [f"Duplicate key '{key}'"])
        result[key] = value
    return result


class WorkflowParser:
    """工作流解析器"""

    def __init__(self, evaluator: Optional[ExpressionEvaluator] = None):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }
        self.evaluator = evaluator or ExpressionEvaluator()
        self.schema_validator = SchemaValidator()

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> StateMachineWorkflow:
        """
        解析并验证工作流定义

        Args:
            source: 工作流定义来源，可以是文件路径、字符串或字典

        Returns:
            StateMachineWorkflow: 已通过验证的工作流对象

        Raises:
            WorkflowParseError: 文档无法解析
            WorkflowValidationError: 文档结构或状态图不合法
        """
        if isinstance(source, dict):
            return self._parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            if "\n" not in source and len(source) < 4096:
                path = Path(source)
                if path.suffix.lower().lstrip('.') in self.parsers and path.is_file():
                    return self.parse_file(path)
            return self.parse_string(source)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Union[str, Path]) -> StateMachineWorkflow:
        """解析工作流文件"""
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        data = self.parsers[suffix](content)
        return self._parse_dict(data)

    def parse_string(self, content: str) -> StateMachineWorkflow:
        """解析工作流字符串（YAML 是 JSON 的超集）"""
        data = self._parse_yaml(content)
        return self._parse_dict(data)

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        """解析YAML格式"""
        try:
            return yaml.load(content, Loader=_UniqueKeyLoader)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        """解析JSON格式"""
        try:
            return json.loads(content, object_pairs_hook=_reject_duplicate_pairs)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}")

    def _parse_dict(self, data: Dict[str, Any]) -> StateMachineWorkflow:
        """解析字典格式的工作流定义"""
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")
        if 'workflow' in data and isinstance(data['workflow'], dict):
            data = data['workflow']

        errors = self.schema_validator.validate(data, WORKFLOW_SCHEMA)
        if errors:
            raise WorkflowValidationError("Workflow document is malformed", errors)

        states_data = data['states']
        if isinstance(states_data, list):
            states_data = self._states_from_list(states_data)

        workflow = StateMachineWorkflow(
            start=data['start'],
            name=data.get('name', ''),
            version=str(data.get('version', '1.0.0')),
            description=data.get('description'),
            timeout_seconds=data.get('timeout_seconds'),
            metadata=data.get('metadata', {})
        )
        if data.get('id'):
            workflow.id = data['id']

        for name, state_data in states_data.items():
            workflow.states[name] = self._parse_state(name, state_data)

        errors = self.validate(workflow)
        if errors:
            raise WorkflowValidationError("Workflow validation failed", errors)

        for name in workflow.root_result_states():
            logger.warning(
                f"State {name} injects its result at root '$'; "
                f"all prior document fields will be discarded at that step"
            )

        return workflow

    def _states_from_list(self, states: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        """把列表形式的状态转换为映射，名称重复视为错误"""
        mapping = {}
        duplicates = []
        for state_data in states:
            state_data = dict(state_data)
            name = state_data.pop('name')
            if name in mapping:
                duplicates.append(f"Duplicate state name '{name}'")
            mapping[name] = state_data
        if duplicates:
            raise WorkflowValidationError("Workflow validation failed", duplicates)
        return mapping

    def _parse_state(self, name: str, data: Dict[str, Any]) -> StateDefinition:
        """解析状态定义"""
        state = StateDefinition(
            name=name,
            type=StateType(data['type']),
            next=data.get('next'),
            comment=data.get('comment'),
            input_path=data.get('input_path'),
            parameters=copy.deepcopy(data.get('parameters')),
            result_path=data.get('result_path', MISSING),
            resource=data.get('resource'),
            timeout_seconds=data.get('timeout_seconds'),
            expression=data.get('expression'),
            expression_fallback=data.get('expression_fallback', MISSING),
            default=data.get('default'),
            error=data.get('error'),
            cause=data.get('cause'),
            metadata=data.get('metadata', {})
        )

        for rule_data in data.get('retry', []):
            state.retry.append(self._parse_retry(rule_data))
        for rule_data in data.get('catch', []):
            state.catch.append(self._parse_catch(rule_data))
        for choice_data in data.get('choices', []):
            state.choices.append(self._parse_choice(choice_data))

        return state

    def _parse_retry(self, data: Dict[str, Any]) -> RetryRule:
        """解析重试规则"""
        return RetryRule(
            errors=list(data['errors']),
            initial_delay=float(data.get('initial_delay', 1.0)),
            multiplier=float(data.get('multiplier', 2.0)),
            max_attempts=int(data.get('max_attempts', 3)),
            max_delay=data.get('max_delay')
        )

    def _parse_catch(self, data: Dict[str, Any]) -> CatchRule:
        """解析捕获规则"""
        return CatchRule(
            errors=list(data['errors']),
            next=data['next'],
            result_path=data.get('result_path', "$.error")
        )

    def _parse_choice(self, data: Dict[str, Any]) -> Choice:
        """解析分支条件"""
        condition = data['condition']
        if isinstance(condition, bool):
            condition = "true" if condition else "false"
        return Choice(condition=condition, next=data['next'])

    def validate(self, workflow: StateMachineWorkflow) -> List[str]:
        """验证状态图、路径和表达式"""
        errors = workflow.validate()

        for name, state in workflow.states.items():
            paths = []
            if state.type in WORK_STATE_TYPES:
                paths.append(state.input_path)
                paths.append(state.effective_result_path())
            paths.extend(rule.result_path for rule in state.catch)
            for path in paths:
                if path is None:
                    continue
                try:
                    parse_path(path)
                except StepflowError as e:
                    errors.append(f"State '{name}': {e}")

            expressions = [choice.condition for choice in state.choices]
            if state.expression:
                expressions.append(state.expression)
            if state.parameters:
                expressions.extend(self._parameter_expressions(state.parameters))
            for expression in expressions:
                try:
                    self.evaluator.compile(expression)
                except StepflowError as e:
                    errors.append(f"State '{name}': {e}")

            for rule in state.catch:
                if ErrorCategory.VALIDATION_ERROR in rule.errors:
                    errors.append(
                        f"State '{name}' catch rule cannot match '{ErrorCategory.VALIDATION_ERROR}'"
                    )

        return errors

    def _parameter_expressions(self, spec: Any) -> List[Any]:
        """收集参数声明中的所有表达式"""
        found = []
        if isinstance(spec, dict):
            for key, value in spec.items():
                if key.endswith(EXPRESSION_SUFFIX):
                    found.append(value)
                else:
                    found.extend(self._parameter_expressions(value))
        elif isinstance(spec, list):
            for item in spec:
                found.extend(self._parameter_expressions(item))
        return found

    def serialize(self, workflow: StateMachineWorkflow, fmt: str = "yaml") -> str:
        """把工作流序列化为 YAML 或 JSON 文本"""
        data = self.to_dict(workflow)
        if fmt == "json":
            return json.dumps(data, indent=2, ensure_ascii=False)
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)

    def to_dict(self, workflow: StateMachineWorkflow) -> Dict[str, Any]:
        """把工作流转换为文档格式的字典"""
        states = {}
        for name, state in workflow.states.items():
            entry: Dict[str, Any] = {"type": state.type.value}
            if state.comment:
                entry["comment"] = state.comment
            if state.resource:
                entry["resource"] = state.resource
            if state.timeout_seconds is not None:
                entry["timeout_seconds"] = state.timeout_seconds
            if state.input_path is not None:
                entry["input_path"] = state.input_path
            if state.parameters is not None:
                entry["parameters"] = copy.deepcopy(state.parameters)
            if state.expression:
                entry["expression"] = state.expression
            if state.expression_fallback is not MISSING:
                entry["expression_fallback"] = state.expression_fallback
            if state.result_path is not MISSING:
                entry["result_path"] = state.result_path
            if state.retry:
                entry["retry"] = [
                    {
                        key: value for key, value in {
                            "errors": list(rule.errors),
                            "initial_delay": rule.initial_delay,
                            "multiplier": rule.multiplier,
                            "max_attempts": rule.max_attempts,
                            "max_delay": rule.max_delay
                        }.items() if value is not None
                    }
                    for rule in state.retry
                ]
            if state.catch:
                entry["catch"] = [
                    {"errors": list(rule.errors), "next": rule.next, "result_path": rule.result_path}
                    for rule in state.catch
                ]
            if state.choices:
                entry["choices"] = [
                    {"condition": choice.condition, "next": choice.next} for choice in state.choices
                ]
            if state.default:
                entry["default"] = state.default
            if state.error:
                entry["error"] = state.error
            if state.cause:
                entry["cause"] = state.cause
            if state.next:
                entry["next"] = state.next
            if state.metadata:
                entry["metadata"] = copy.deepcopy(state.metadata)
            states[name] = entry

        data: Dict[str, Any] = {
            "id": workflow.id,
            "name": workflow.name,
            "version": workflow.version,
            "start": workflow.start,
            "states": states
        }
        if workflow.description:
            data["description"] = workflow.description
        if workflow.timeout_seconds is not None:
            data["timeout_seconds"] = workflow.timeout_seconds
        if workflow.metadata:
            data["metadata"] = copy.deepcopy(workflow.metadata)
        return data
