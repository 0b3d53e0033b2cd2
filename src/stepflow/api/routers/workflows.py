"""
工作流管理 API 路由
"""
from fastapi import APIRouter, HTTPException, Depends, status
from typing import List, Dict
import logging

from ..models import (
    WorkflowSourceRequest, ValidationResponse, WorkflowResponse, WorkflowDetailResponse
)
from ..dependencies import get_parser, get_workflow_store
from ...core.parser import WorkflowParser
from ...exceptions import WorkflowParseError, WorkflowValidationError
from ...models.workflow import StateMachineWorkflow


logger = logging.getLogger(__name__)
router = APIRouter()


def parse_request(parser: WorkflowParser, request: WorkflowSourceRequest) -> StateMachineWorkflow:
    """按请求中的定义或文本解析工作流"""
    if request.source is not None:
        return parser.parse_string(request.source)
    return parser.parse(request.definition)


def _to_response(workflow: StateMachineWorkflow) -> WorkflowResponse:
    return WorkflowResponse(
        id=workflow.id,
        name=workflow.name,
        version=workflow.version,
        description=workflow.description,
        start=workflow.start,
        state_count=len(workflow.states),
        created_at=workflow.created_at
    )


@router.post("/validate", response_model=ValidationResponse)
async def validate_workflow(
    request: WorkflowSourceRequest,
    parser: WorkflowParser = Depends(get_parser)
) -> ValidationResponse:
    """验证工作流定义（不注册）"""
    try:
        workflow = parse_request(parser, request)
    except WorkflowValidationError as e:
        return ValidationResponse(valid=False, errors=e.errors or [str(e)])
    except WorkflowParseError as e:
        return ValidationResponse(valid=False, errors=[str(e)])

    return ValidationResponse(
        valid=True,
        warnings=[
            f"State {name} replaces the whole document with its result"
            for name in workflow.root_result_states()
        ],
        state_count=len(workflow.states)
    )


@router.post("/", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def register_workflow(
    request: WorkflowSourceRequest,
    parser: WorkflowParser = Depends(get_parser),
    workflows: Dict[str, StateMachineWorkflow] = Depends(get_workflow_store)
) -> WorkflowResponse:
    """注册工作流"""
    try:
        workflow = parse_request(parser, request)
    except (WorkflowParseError, WorkflowValidationError) as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "validation_error",
                "message": str(e)
            }
        )

    workflows[workflow.id] = workflow
    logger.info(f"Registered workflow {workflow.id} ({workflow.name})")
    return _to_response(workflow)


@router.get("/", response_model=List[WorkflowResponse])
async def list_workflows(
    workflows: Dict[str, StateMachineWorkflow] = Depends(get_workflow_store)
) -> List[WorkflowResponse]:
    """列出已注册的工作流"""
    return [_to_response(workflow) for workflow in workflows.values()]


@router.get("/{workflow_id}", response_model=WorkflowDetailResponse)
async def get_workflow(
    workflow_id: str,
    parser: WorkflowParser = Depends(get_parser),
    workflows: Dict[str, StateMachineWorkflow] = Depends(get_workflow_store)
) -> WorkflowDetailResponse:
    """获取工作流详情"""
    workflow = workflows.get(workflow_id)
    if workflow is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": f"Workflow {workflow_id} not found"
            }
        )

    return WorkflowDetailResponse(
        **_to_response(workflow).model_dump(),
        definition=parser.to_dict(workflow)
    )
