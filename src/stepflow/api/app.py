"""
FastAPI 应用主文件
"""
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
from typing import Optional

from .. import __version__
from .routers import workflows, executions
from .middleware import RequestLoggingMiddleware
from .models import HealthCheckResponse
from ..config import RuntimeSettings, HandlerEnvironment
from ..core.engine import ExecutionController
from ..core.parser import WorkflowParser
from ..integrations import (
    EventBus, UnitRegistry, InMemoryConfigStore, FileConfigStore,
    register_builtin_units, register_document_units
)


logger = logging.getLogger(__name__)


def build_controller(
    settings: RuntimeSettings,
    environment: Optional[HandlerEnvironment] = None
) -> ExecutionController:
    """创建注册了内置工作单元的执行控制器"""
    event_bus = EventBus()
    registry = UnitRegistry(default_timeout=settings.default_timeout_seconds)
    if settings.config_store_path:
        config_store = FileConfigStore(settings.config_store_path)
    else:
        config_store = InMemoryConfigStore()

    register_builtin_units(registry, event_bus, config_store)
    register_document_units(registry, environment or HandlerEnvironment.from_env())

    return ExecutionController(registry=registry, event_bus=event_bus, settings=settings)


def create_app(
    controller: Optional[ExecutionController] = None,
    settings: Optional[RuntimeSettings] = None
) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        controller: 执行控制器，未提供时在启动时按配置创建
        settings: 运行时设置，未提供时从环境变量读取
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        logger.info("Starting Stepflow API...")

        runtime_settings = settings or RuntimeSettings.from_env()
        app.state.controller = controller or build_controller(runtime_settings)
        app.state.parser = WorkflowParser()
        app.state.workflows = {}

        logger.info("Stepflow API started successfully")

        yield

        logger.info("Shutting down Stepflow API...")
        await app.state.controller.shutdown()
        logger.info("Stepflow API shut down successfully")

    app = FastAPI(
        title="Stepflow API",
        description="声明式状态机工作流运行时 RESTful API",
        version=__version__,
        lifespan=lifespan
    )

    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(workflows.router, prefix="/api/v1/workflows", tags=["workflows"])
    app.include_router(executions.router, prefix="/api/v1/executions", tags=["executions"])

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """全局异常处理器"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "request_id": getattr(request.state, "request_id", None)
            }
        )

    @app.get("/", tags=["root"])
    async def root():
        """API根路径"""
        return {
            "name": "Stepflow API",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
            "health": "/health"
        }

    @app.get("/health", response_model=HealthCheckResponse, tags=["root"])
    async def health(request: Request) -> HealthCheckResponse:
        """健康检查"""
        registry = request.app.state.controller.registry
        return HealthCheckResponse(
            status="healthy",
            version=__version__,
            units=sorted(unit.name for unit in registry.list_units())
        )

    return app
