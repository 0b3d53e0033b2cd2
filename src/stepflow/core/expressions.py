"""
表达式求值器

支持的语法子集：
    字面量        1, 2.5, "text", 'text', true, false, null
    路径引用      $ (文档根), @ (filter 中的当前元素), .field, [index], ['key']
    构造          {"key": expr, key2: expr}, [expr, ...]
    函数          merge(a, b, ...), filter(array, predicate), length(x), coalesce(a, b, ...)
    运算符        ! - * / % + - < <= > >= == != && ||
    条件          cond ? a : b
"""
import copy
import json
import logging
import operator
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..models.document import Document, MISSING
from ..exceptions import ExpressionError, ExpressionTypeError


logger = logging.getLogger(__name__)


# 语法树节点

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class RootRef:
    pass


@dataclass(frozen=True)
class CurrentRef:
    pass


@dataclass(frozen=True)
class FieldAccess:
    target: Any
    name: str


@dataclass(frozen=True)
class IndexAccess:
    target: Any
    index: Any


@dataclass(frozen=True)
class ObjectLiteral:
    items: Tuple[Tuple[str, Any], ...]


@dataclass(frozen=True)
class ArrayLiteral:
    items: Tuple[Any, ...]


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: Tuple[Any, ...]


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: Any


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Conditional:
    condition: Any
    then: Any
    otherwise: Any


def describe(node: Any) -> str:
    """把引用节点格式化为路径文本，用于错误信息"""
    if isinstance(node, RootRef):
        return "$"
    if isinstance(node, CurrentRef):
        return "@"
    if isinstance(node, FieldAccess):
        return f"{describe(node.target)}.{node.name}"
    if isinstance(node, IndexAccess):
        if isinstance(node.index, Literal):
            return f"{describe(node.target)}[{json.dumps(node.index.value)}]"
        return f"{describe(node.target)}[...]"
    if isinstance(node, FunctionCall):
        return f"{node.name}(...)"
    return "<expression>"


# 词法分析

_TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>==|!=|<=|>=|&&|\|\||[-+*/%<>!?:.,()\[\]{}$@])
""", re.VERBOSE)


@dataclass(frozen=True)
class Token:
    kind: str
    value: Any
    pos: int


def _decode_string(raw: str) -> str:
    body = raw[1:-1]
    if raw[0] == "'":
        body = body.replace("\\'", "'")
        body = re.sub(r'(?<!\\)"', '\\"', body)
    return json.loads(f'"{body}"')


def tokenize(source: str) -> List[Token]:
    """把表达式文本切分为词法单元"""
    tokens = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if not match:
            raise ExpressionError(f"Unexpected character '{source[pos]}' at position {pos}", source)
        kind = match.lastgroup
        text = match.group(kind)
        if kind == "number":
            value = float(text) if any(c in text for c in ".eE") else int(text)
            tokens.append(Token("number", value, pos))
        elif kind == "string":
            try:
                tokens.append(Token("string", _decode_string(text), pos))
            except ValueError:
                raise ExpressionError(f"Invalid string literal at position {pos}", source)
        elif kind in ("name", "op"):
            tokens.append(Token(kind, text, pos))
        pos = match.end()
    tokens.append(Token("eof", None, pos))
    return tokens


# 语法分析（递归下降）

_KEYWORDS = {"true": True, "false": False, "null": None}


class _Parser:
    """表达式语法分析器"""

    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.pos = 0

    def parse(self) -> Any:
        node = self._conditional()
        token = self._peek()
        if token.kind != "eof":
            self._error(f"Unexpected token '{token.value}'", token)
        return node

    # 工具方法

    def _peek(self) -> Token:
        return self.tokens[self.pos]

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _match(self, *ops: str) -> Optional[Token]:
        token = self._peek()
        if token.kind == "op" and token.value in ops:
            return self._advance()
        return None

    def _expect(self, op: str) -> Token:
        token = self._match(op)
        if token is None:
            found = self._peek()
            self._error(f"Expected '{op}' but found '{found.value or 'end of expression'}'", found)
        return token

    def _error(self, message: str, token: Token):
        raise ExpressionError(f"{message} at position {token.pos}", self.source)

    # 优先级从低到高

    def _conditional(self) -> Any:
        condition = self._binary_level(0)
        if self._match("?"):
            then = self._conditional()
            self._expect(":")
            otherwise = self._conditional()
            return Conditional(condition, then, otherwise)
        return condition

    _LEVELS = (
        ("||",),
        ("&&",),
        ("==", "!="),
        ("<", "<=", ">", ">="),
        ("+", "-"),
        ("*", "/", "%"),
    )

    def _binary_level(self, level: int) -> Any:
        if level == len(self._LEVELS):
            return self._unary()
        left = self._binary_level(level + 1)
        while True:
            token = self._match(*self._LEVELS[level])
            if token is None:
                return left
            right = self._binary_level(level + 1)
            left = BinaryOp(token.value, left, right)

    def _unary(self) -> Any:
        token = self._match("!", "-")
        if token:
            return UnaryOp(token.value, self._unary())
        return self._postfix(self._primary())

    def _postfix(self, node: Any) -> Any:
        while True:
            if self._match("."):
                token = self._advance()
                if token.kind != "name":
                    self._error("Expected field name after '.'", token)
                node = FieldAccess(node, token.value)
            elif self._match("["):
                index = self._conditional()
                self._expect("]")
                node = IndexAccess(node, index)
            else:
                return node

    def _primary(self) -> Any:
        token = self._advance()

        if token.kind in ("number", "string"):
            return Literal(token.value)

        if token.kind == "name":
            if token.value in _KEYWORDS:
                return Literal(_KEYWORDS[token.value])
            if self._match("("):
                return FunctionCall(token.value, self._arguments())
            self._error(f"Unknown identifier '{token.value}'", token)

        if token.kind == "op":
            if token.value == "$":
                return RootRef()
            if token.value == "@":
                return CurrentRef()
            if token.value == "(":
                node = self._conditional()
                self._expect(")")
                return node
            if token.value == "{":
                return self._object()
            if token.value == "[":
                return self._array()

        self._error(f"Unexpected token '{token.value or 'end of expression'}'", token)

    def _arguments(self) -> Tuple[Any, ...]:
        args = []
        if self._match(")"):
            return tuple(args)
        while True:
            args.append(self._conditional())
            if self._match(")"):
                return tuple(args)
            self._expect(",")

    def _object(self) -> ObjectLiteral:
        items = []
        while not self._match("}"):
            token = self._advance()
            if token.kind not in ("string", "name"):
                self._error("Expected object key", token)
            self._expect(":")
            items.append((token.value, self._conditional()))
            if not self._match(","):
                self._expect("}")
                break
        return ObjectLiteral(tuple(items))

    def _array(self) -> ArrayLiteral:
        items = []
        while not self._match("]"):
            items.append(self._conditional())
            if not self._match(","):
                self._expect("]")
                break
        return ArrayLiteral(tuple(items))


def parse_expression(source: str) -> Any:
    """解析表达式文本为语法树"""
    if not isinstance(source, str):
        raise ExpressionError(f"Expression must be a string, got {type(source).__name__}")
    return _Parser(source).parse()


# 求值

class _Missing:
    """引用的字段不存在"""
    __slots__ = ("path",)

    def __init__(self, path: str):
        self.path = path


class _MissingField(ExpressionError):
    """在需要值的位置引用了不存在的字段"""
    pass


@dataclass(frozen=True)
class _Scope:
    source: str
    root: Any
    current: Any = MISSING


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def json_equal(left: Any, right: Any) -> bool:
    """JSON 语义的相等比较（布尔与数字不相等）"""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(json_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(json_equal(left[k], right[k]) for k in left)
    return type(left) is type(right) and left == right


_ORDERING = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class ExpressionEvaluator:
    """
    表达式求值器

    Args:
        fallback: 出现类型错误时整个表达式的默认值；不设置时抛出 ExpressionTypeError
    """

    def __init__(self, fallback: Any = MISSING):
        self.fallback = fallback
        self._cache: Dict[str, Any] = {}
        self._handlers = {
            Literal: self._eval_literal,
            RootRef: self._eval_root,
            CurrentRef: self._eval_current,
            FieldAccess: self._eval_field,
            IndexAccess: self._eval_index,
            ObjectLiteral: self._eval_object,
            ArrayLiteral: self._eval_array,
            FunctionCall: self._eval_call,
            UnaryOp: self._eval_unary,
            BinaryOp: self._eval_binary,
            Conditional: self._eval_conditional,
        }
        self._functions = {
            "merge": self._fn_merge,
            "filter": self._fn_filter,
            "length": self._fn_length,
            "coalesce": self._fn_coalesce,
        }

    def compile(self, expression: str) -> Any:
        """解析并缓存表达式"""
        node = self._cache.get(expression) if isinstance(expression, str) else None
        if node is None:
            node = parse_expression(expression)
            self._check_functions(node, expression)
            self._cache[expression] = node
        return node

    def evaluate(self, expression: str, document: Any, fallback: Any = MISSING) -> Any:
        """
        对文档求值表达式

        Args:
            expression: 表达式文本
            document: Document 实例或原始 JSON 值
            fallback: 本次求值的类型错误默认值，覆盖求值器级别的设置

        Returns:
            求值结果（与文档相互独立的副本）
        """
        node = self.compile(expression)
        if fallback is MISSING:
            fallback = self.fallback

        scope = _Scope(expression, self._unwrap(document))
        try:
            value = self._require(self._eval(node, scope), scope)
        except ExpressionTypeError as e:
            if fallback is MISSING:
                raise
            logger.warning(f"Expression type error, using fallback value: {e}")
            return copy.deepcopy(fallback)
        return copy.deepcopy(value)

    def evaluate_condition(self, expression: str, document: Any) -> bool:
        """求值布尔条件"""
        node = self.compile(expression)
        scope = _Scope(expression, self._unwrap(document))
        value = self._require(self._eval(node, scope), scope)
        if not isinstance(value, bool):
            raise ExpressionTypeError(
                f"Condition must evaluate to a boolean, got {_type_name(value)}",
                expression
            )
        return value

    @staticmethod
    def _unwrap(document: Any) -> Any:
        if isinstance(document, Document):
            return document.value
        return document

    def _check_functions(self, node: Any, expression: str):
        """编译期检查函数名"""
        if isinstance(node, FunctionCall) and node.name not in self._functions:
            raise ExpressionError(f"Unknown function '{node.name}'", expression)
        for child in vars(node).values():
            if isinstance(child, tuple):
                for item in child:
                    if isinstance(item, tuple):
                        item = item[1]
                    if hasattr(item, "__dataclass_fields__"):
                        self._check_functions(item, expression)
            elif hasattr(child, "__dataclass_fields__"):
                self._check_functions(child, expression)

    # 内部求值

    def _eval(self, node: Any, scope: _Scope) -> Any:
        return self._handlers[type(node)](node, scope)

    def _require(self, value: Any, scope: _Scope) -> Any:
        if isinstance(value, _Missing):
            raise _MissingField(f"Field '{value.path}' does not exist", scope.source)
        return value

    def _value(self, node: Any, scope: _Scope) -> Any:
        return self._require(self._eval(node, scope), scope)

    def _eval_literal(self, node: Literal, scope: _Scope) -> Any:
        return node.value

    def _eval_root(self, node: RootRef, scope: _Scope) -> Any:
        return scope.root

    def _eval_current(self, node: CurrentRef, scope: _Scope) -> Any:
        if scope.current is MISSING:
            raise ExpressionError("'@' can only be used inside filter()", scope.source)
        return scope.current

    def _eval_field(self, node: FieldAccess, scope: _Scope) -> Any:
        target = self._eval(node.target, scope)
        if isinstance(target, dict) and node.name in target:
            return target[node.name]
        return _Missing(describe(node))

    def _eval_index(self, node: IndexAccess, scope: _Scope) -> Any:
        target = self._eval(node.target, scope)
        index = self._value(node.index, scope)
        if isinstance(target, _Missing):
            return _Missing(describe(node))
        if isinstance(index, str):
            if isinstance(target, dict) and index in target:
                return target[index]
            return _Missing(describe(node))
        if not isinstance(index, int) or isinstance(index, bool):
            raise ExpressionTypeError(
                f"Index must be a number or string, got {_type_name(index)}", scope.source
            )
        if isinstance(target, list) and -len(target) <= index < len(target):
            return target[index]
        return _Missing(describe(node))

    def _eval_object(self, node: ObjectLiteral, scope: _Scope) -> Any:
        # 构造上下文：缺失字段视为 null
        result = {}
        for key, value_node in node.items:
            value = self._eval(value_node, scope)
            result[key] = None if isinstance(value, _Missing) else value
        return result

    def _eval_array(self, node: ArrayLiteral, scope: _Scope) -> Any:
        items = []
        for item_node in node.items:
            value = self._eval(item_node, scope)
            items.append(None if isinstance(value, _Missing) else value)
        return items

    def _eval_call(self, node: FunctionCall, scope: _Scope) -> Any:
        function = self._functions.get(node.name)
        if function is None:
            raise ExpressionError(f"Unknown function '{node.name}'", scope.source)
        return function(node.args, scope)

    def _eval_unary(self, node: UnaryOp, scope: _Scope) -> Any:
        operand = self._value(node.operand, scope)
        if node.op == "!":
            if not isinstance(operand, bool):
                raise ExpressionTypeError(
                    f"Operator '!' requires a boolean, got {_type_name(operand)}", scope.source
                )
            return not operand
        if not _is_number(operand):
            raise ExpressionTypeError(
                f"Unary '-' requires a number, got {_type_name(operand)}", scope.source
            )
        return -operand

    def _eval_binary(self, node: BinaryOp, scope: _Scope) -> Any:
        if node.op in ("&&", "||"):
            return self._eval_logical(node, scope)

        left = self._value(node.left, scope)
        right = self._value(node.right, scope)

        if node.op == "==":
            return json_equal(left, right)
        if node.op == "!=":
            return not json_equal(left, right)
        if node.op in _ORDERING:
            # null 或类型不一致时不可比较，视为不匹配
            if (_is_number(left) and _is_number(right)) or (
                isinstance(left, str) and isinstance(right, str)
            ):
                return _ORDERING[node.op](left, right)
            return False
        return self._arithmetic(node.op, left, right, scope)

    def _eval_logical(self, node: BinaryOp, scope: _Scope) -> bool:
        left = self._value(node.left, scope)
        if not isinstance(left, bool):
            raise ExpressionTypeError(
                f"Operator '{node.op}' requires booleans, got {_type_name(left)}", scope.source
            )
        if node.op == "&&" and not left:
            return False
        if node.op == "||" and left:
            return True
        right = self._value(node.right, scope)
        if not isinstance(right, bool):
            raise ExpressionTypeError(
                f"Operator '{node.op}' requires booleans, got {_type_name(right)}", scope.source
            )
        return right

    def _arithmetic(self, op: str, left: Any, right: Any, scope: _Scope) -> Any:
        if op == "+":
            if isinstance(left, str) and isinstance(right, str):
                return left + right
            if isinstance(left, list) and isinstance(right, list):
                return left + right

        if not (_is_number(left) and _is_number(right)):
            raise ExpressionTypeError(
                f"Operator '{op}' not supported between {_type_name(left)} and {_type_name(right)}",
                scope.source
            )

        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if right == 0:
            raise ExpressionError("Division by zero", scope.source)
        if op == "%":
            return left % right
        if isinstance(left, int) and isinstance(right, int) and left % right == 0:
            return left // right
        return left / right

    def _eval_conditional(self, node: Conditional, scope: _Scope) -> Any:
        condition = self._value(node.condition, scope)
        if not isinstance(condition, bool):
            raise ExpressionTypeError(
                f"Conditional requires a boolean condition, got {_type_name(condition)}",
                scope.source
            )
        return self._eval(node.then if condition else node.otherwise, scope)

    # 内置函数

    def _fn_merge(self, args: Tuple[Any, ...], scope: _Scope) -> Dict[str, Any]:
        if len(args) < 2:
            raise ExpressionError("merge() takes at least two arguments", scope.source)
        result: Dict[str, Any] = {}
        for arg in args:
            value = self._value(arg, scope)
            if not isinstance(value, dict):
                raise ExpressionTypeError(
                    f"merge() arguments must be objects, got {_type_name(value)}", scope.source
                )
            result.update(value)
        return result

    def _fn_filter(self, args: Tuple[Any, ...], scope: _Scope) -> List[Any]:
        if len(args) != 2:
            raise ExpressionError("filter() takes exactly two arguments", scope.source)
        items = self._value(args[0], scope)
        if not isinstance(items, list):
            raise ExpressionTypeError(
                f"filter() expects an array, got {_type_name(items)}", scope.source
            )
        selected = []
        for item in items:
            item_scope = _Scope(scope.source, scope.root, item)
            try:
                keep = self._value(args[1], item_scope)
            except _MissingField:
                # 缺少被引用字段的元素不被选中
                continue
            if not isinstance(keep, bool):
                raise ExpressionTypeError(
                    f"filter() predicate must return a boolean, got {_type_name(keep)}",
                    scope.source
                )
            if keep:
                selected.append(item)
        return selected

    def _fn_length(self, args: Tuple[Any, ...], scope: _Scope) -> int:
        if len(args) != 1:
            raise ExpressionError("length() takes exactly one argument", scope.source)
        value = self._value(args[0], scope)
        if not isinstance(value, (list, dict, str)):
            raise ExpressionTypeError(
                f"length() expects an array, object or string, got {_type_name(value)}",
                scope.source
            )
        return len(value)

    def _fn_coalesce(self, args: Tuple[Any, ...], scope: _Scope) -> Any:
        if not args:
            raise ExpressionError("coalesce() takes at least one argument", scope.source)
        for arg in args:
            value = self._eval(arg, scope)
            if not isinstance(value, _Missing) and value is not None:
                return value
        return None
