"""
API 请求和响应模型
"""
from pydantic import BaseModel, Field, ConfigDict, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class ExecutionStatusEnum(str, Enum):
    """执行状态枚举（API）"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CRASHED = "crashed"
    CANCELLED = "cancelled"


# 工作流相关模型

class WorkflowSourceRequest(BaseModel):
    """工作流定义请求（结构化定义或 YAML/JSON 文本二选一）"""
    definition: Optional[Dict[str, Any]] = Field(None, description="工作流定义")
    source: Optional[str] = Field(None, description="YAML 或 JSON 文本")

    @model_validator(mode="after")
    def check_one_source(self):
        if (self.definition is None) == (self.source is None):
            raise ValueError("Exactly one of 'definition' or 'source' must be provided")
        return self


class ValidationResponse(BaseModel):
    """验证结果"""
    valid: bool = Field(..., description="是否通过验证")
    errors: List[str] = Field(default_factory=list, description="错误列表")
    warnings: List[str] = Field(default_factory=list, description="警告列表")
    state_count: int = Field(0, description="状态数量")


class WorkflowResponse(BaseModel):
    """工作流响应"""
    id: str = Field(..., description="工作流ID")
    name: str = Field(..., description="工作流名称")
    version: str = Field(..., description="版本号")
    description: Optional[str] = Field(None, description="描述")
    start: str = Field(..., description="起始状态")
    state_count: int = Field(..., description="状态数量")
    created_at: datetime = Field(..., description="创建时间")

    model_config = ConfigDict(from_attributes=True)


class WorkflowDetailResponse(WorkflowResponse):
    """工作流详情响应"""
    definition: Dict[str, Any] = Field(..., description="工作流定义")


# 执行相关模型

class ExecutionStartRequest(BaseModel):
    """启动执行请求"""
    workflow_id: Optional[str] = Field(None, description="已注册的工作流ID")
    definition: Optional[Dict[str, Any]] = Field(None, description="内联工作流定义")
    input: Any = Field(default_factory=dict, description="初始文档")
    wait: bool = Field(False, description="是否等待执行结束")

    @model_validator(mode="after")
    def check_workflow(self):
        if (self.workflow_id is None) == (self.definition is None):
            raise ValueError("Exactly one of 'workflow_id' or 'definition' must be provided")
        return self


class StepRecordResponse(BaseModel):
    """历史记录"""
    state_name: str = Field(..., description="状态名称")
    state_type: str = Field(..., description="状态类型")
    status: str = Field(..., description="步骤状态")
    input_snapshot: Any = Field(None, description="步骤前文档")
    output_snapshot: Any = Field(None, description="步骤后文档")
    timestamp_range: List[str] = Field(..., description="开始与结束时间")
    attempts: int = Field(0, description="调用次数")
    backoff_delays: List[float] = Field(default_factory=list, description="每次调用前的等待（秒）")
    error: Optional[Dict[str, Any]] = Field(None, description="错误载荷")
    next_state: Optional[str] = Field(None, description="下一个状态")


class ExecutionResponse(BaseModel):
    """执行响应"""
    execution_id: str = Field(..., description="执行ID")
    workflow_id: str = Field(..., description="工作流ID")
    workflow_name: str = Field("", description="工作流名称")
    status: ExecutionStatusEnum = Field(..., description="执行状态")
    current_state: Optional[str] = Field(None, description="当前状态")
    error: Optional[str] = Field(None, description="终止类别")
    cause: Optional[str] = Field(None, description="终止原因")
    input: Any = Field(None, description="初始文档")
    output: Any = Field(None, description="最终文档")
    start_time: Optional[datetime] = Field(None, description="开始时间")
    end_time: Optional[datetime] = Field(None, description="结束时间")
    duration: Optional[float] = Field(None, description="执行时长（秒）")
    step_count: int = Field(0, description="已执行步骤数")


class ExecutionDetailResponse(ExecutionResponse):
    """执行详情响应"""
    history: List[StepRecordResponse] = Field(default_factory=list, description="执行历史")


# 通用模型

class HealthCheckResponse(BaseModel):
    """健康检查响应"""
    status: str = Field(..., description="健康状态", examples=["healthy"])
    version: str = Field(..., description="版本号")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="时间戳")
    units: List[str] = Field(default_factory=list, description="已注册的工作单元")
