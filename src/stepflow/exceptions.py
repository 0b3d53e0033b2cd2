"""
状态机运行时异常定义
"""
from typing import Optional, Dict, Any, List


class ErrorCategory:
    """错误类别名称"""
    ALL = "all"
    TASK_FAILED = "TaskFailed"
    TIMEOUT = "Timeout"
    PATH_NOT_FOUND = "PathNotFound"
    EXPRESSION_ERROR = "ExpressionError"
    TYPE_ERROR = "TypeError"
    NO_MATCHING_BRANCH = "NoMatchingBranch"
    VALIDATION_ERROR = "ValidationError"
    INVALID_INPUT = "InvalidInput"
    STEP_LIMIT_EXCEEDED = "StepLimitExceeded"
    CANCELLED = "Cancelled"
    INTERNAL_ERROR = "InternalError"


class StepflowError(Exception):
    """运行时基础异常"""
    pass


class WorkflowParseError(StepflowError):
    """工作流文档解析异常"""
    pass


class WorkflowValidationError(StepflowError):
    """工作流验证异常"""

    category = ErrorCategory.VALIDATION_ERROR

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        if self.errors:
            message = f"{message}: {'; '.join(self.errors)}"
        super().__init__(message)


class ExecutionError(StepflowError):
    """执行控制异常"""
    pass


class ExecutionNotFoundError(ExecutionError):
    """执行实例未找到"""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class StepFailure(StepflowError):
    """
    单个状态执行失败

    所有步骤级失败都带有 category 和 cause，用于匹配 retry/catch 规则。
    """

    category = ErrorCategory.TASK_FAILED
    # 是否属于工作单元失败（可被 TaskFailed 重试规则匹配）
    retryable = False

    def __init__(self, cause: str, category: Optional[str] = None):
        if category:
            self.category = category
        self.cause = cause
        super().__init__(f"{self.category}: {cause}")

    def to_dict(self) -> Dict[str, Any]:
        """转换为错误载荷"""
        return {
            "error": self.category,
            "cause": self.cause
        }


class PathNotFoundError(StepFailure):
    """路径不存在"""

    category = ErrorCategory.PATH_NOT_FOUND

    def __init__(self, path: str, message: Optional[str] = None):
        self.path = path
        super().__init__(message or f"Path '{path}' does not exist in document")


class ExpressionError(StepFailure):
    """表达式求值异常"""

    category = ErrorCategory.EXPRESSION_ERROR

    def __init__(self, message: str, expression: Optional[str] = None):
        self.expression = expression
        if expression:
            message = f"{message} (in expression: {expression})"
        super().__init__(message)


class ExpressionTypeError(ExpressionError):
    """表达式操作数类型不兼容"""

    category = ErrorCategory.TYPE_ERROR


class TaskFailedError(StepFailure):
    """
    工作单元调用失败

    工作单元可以通过 category 参数抛出自定义类别的失败。
    """

    category = ErrorCategory.TASK_FAILED
    retryable = True


class TaskTimeoutError(StepFailure):
    """工作单元调用超时"""

    category = ErrorCategory.TIMEOUT
    retryable = True

    def __init__(self, resource: str, timeout_seconds: float):
        self.resource = resource
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Unit of work '{resource}' did not respond within {timeout_seconds} seconds"
        )


class UnitNotFoundError(StepFailure):
    """工作单元未注册"""

    category = ErrorCategory.TASK_FAILED

    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(f"Unit of work not registered: {resource}")


class UnitInputError(StepFailure):
    """工作单元输入不符合schema"""

    category = ErrorCategory.INVALID_INPUT

    def __init__(self, resource: str, validation_errors: List[str]):
        self.resource = resource
        self.validation_errors = validation_errors
        super().__init__(
            f"Invalid input for unit of work '{resource}': {'; '.join(validation_errors)}"
        )


class NoMatchingBranchError(StepFailure):
    """分支状态没有匹配条件且未声明默认分支"""

    category = ErrorCategory.NO_MATCHING_BRANCH

    def __init__(self, state_name: str):
        self.state_name = state_name
        super().__init__(f"No choice matched in branch state '{state_name}' and no default declared")
