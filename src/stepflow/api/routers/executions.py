"""
执行管理 API 路由
"""
from fastapi import APIRouter, HTTPException, Depends, Query, Response, status
from typing import List, Optional, Dict
import logging

from ..models import (
    ExecutionStartRequest, ExecutionResponse, ExecutionDetailResponse,
    StepRecordResponse, ExecutionStatusEnum
)
from ..dependencies import get_controller, get_parser, get_workflow_store
from ...core.engine import ExecutionController
from ...core.parser import WorkflowParser
from ...exceptions import WorkflowParseError, WorkflowValidationError, ExecutionNotFoundError
from ...models.execution import Execution, ExecutionStatus
from ...models.workflow import StateMachineWorkflow


logger = logging.getLogger(__name__)
router = APIRouter()


def _not_found(execution_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={
            "error": "not_found",
            "message": f"Execution {execution_id} not found"
        }
    )


def _to_detail(execution: Execution, include_history: bool) -> ExecutionDetailResponse:
    return ExecutionDetailResponse(**execution.to_dict(include_history=include_history))


@router.post("/", response_model=ExecutionResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_execution(
    request: ExecutionStartRequest,
    response: Response,
    controller: ExecutionController = Depends(get_controller),
    parser: WorkflowParser = Depends(get_parser),
    workflows: Dict[str, StateMachineWorkflow] = Depends(get_workflow_store)
) -> ExecutionResponse:
    """启动执行；wait=true 时等待执行结束后返回"""
    if request.workflow_id is not None:
        workflow = workflows.get(request.workflow_id)
        if workflow is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={
                    "error": "not_found",
                    "message": f"Workflow {request.workflow_id} not found"
                }
            )
    else:
        try:
            workflow = parser.parse(request.definition)
        except (WorkflowParseError, WorkflowValidationError) as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error": "validation_error",
                    "message": str(e)
                }
            )

    if request.wait:
        execution = await controller.execute(workflow, request.input)
        response.status_code = status.HTTP_200_OK
    else:
        execution = await controller.start_execution(workflow, request.input)

    return ExecutionResponse(**execution.to_dict())


@router.get("/", response_model=List[ExecutionResponse])
async def list_executions(
    workflow_id: Optional[str] = Query(None, description="工作流ID"),
    status_filter: Optional[ExecutionStatusEnum] = Query(None, alias="status", description="执行状态"),
    controller: ExecutionController = Depends(get_controller)
) -> List[ExecutionResponse]:
    """列出执行实例"""
    executions = controller.list_executions(
        status=ExecutionStatus(status_filter.value) if status_filter else None,
        workflow_id=workflow_id
    )
    return [ExecutionResponse(**execution.to_dict()) for execution in executions]


@router.get("/{execution_id}", response_model=ExecutionDetailResponse)
async def get_execution(
    execution_id: str,
    include_history: bool = Query(False, description="是否包含执行历史"),
    controller: ExecutionController = Depends(get_controller)
) -> ExecutionDetailResponse:
    """获取执行状态"""
    try:
        execution = controller.get_execution(execution_id)
    except ExecutionNotFoundError:
        raise _not_found(execution_id)
    return _to_detail(execution, include_history)


@router.get("/{execution_id}/history", response_model=List[StepRecordResponse])
async def get_execution_history(
    execution_id: str,
    controller: ExecutionController = Depends(get_controller)
) -> List[StepRecordResponse]:
    """获取执行历史"""
    try:
        execution = controller.get_execution(execution_id)
    except ExecutionNotFoundError:
        raise _not_found(execution_id)
    return [StepRecordResponse(**record.to_dict()) for record in execution.history]


@router.post("/{execution_id}/cancel", response_model=ExecutionResponse)
async def cancel_execution(
    execution_id: str,
    controller: ExecutionController = Depends(get_controller)
) -> ExecutionResponse:
    """取消执行"""
    try:
        execution = controller.cancel(execution_id)
    except ExecutionNotFoundError:
        raise _not_found(execution_id)
    return ExecutionResponse(**execution.to_dict())
