"""
FastAPI 依赖注入
"""
from fastapi import HTTPException, Request, status
from typing import Dict
import logging

from ..core.engine import ExecutionController
from ..core.parser import WorkflowParser
from ..models.workflow import StateMachineWorkflow


logger = logging.getLogger(__name__)


def get_controller(request: Request) -> ExecutionController:
    """获取执行控制器实例"""
    controller = getattr(request.app.state, "controller", None)

    if controller is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": "Execution controller not initialized"
            }
        )

    return controller


def get_parser(request: Request) -> WorkflowParser:
    """获取工作流解析器实例"""
    return request.app.state.parser


def get_workflow_store(request: Request) -> Dict[str, StateMachineWorkflow]:
    """获取已注册工作流（内存）"""
    return request.app.state.workflows
