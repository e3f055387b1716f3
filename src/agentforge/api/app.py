"""
FastAPI 应用主文件
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from .. import __version__
from .routers import workflows, executions
from .middleware import RequestLoggingMiddleware
from .dependencies import app_state, get_app_state
from .models import HealthCheckResponse
from ..config import RuntimeSettings
from ..core.sessions import ExecutionManager
from ..exceptions import AgentForgeError
from ..integrations.event_bus import EventBus
from ..integrations.model_client import build_model_client
from ..pipeline.cache import ResponseCache


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("Starting AgentForge API...")

    settings = RuntimeSettings.from_env()
    event_bus = EventBus()
    model_client = build_model_client(settings)
    cache = ResponseCache(settings.cache_ttl_seconds, settings.cache_max_entries)
    manager = ExecutionManager(settings, model_client, event_bus=event_bus, cache=cache)

    app_state.update({
        "settings": settings,
        "event_bus": event_bus,
        "model_client": model_client,
        "cache": cache,
        "manager": manager
    })

    logger.info(
        f"AgentForge API started (provider={settings.default_provider}, "
        f"target={settings.target_environment.value})"
    )

    yield

    logger.info("Shutting down AgentForge API...")
    await manager.shutdown()
    app_state.clear()
    logger.info("AgentForge API shut down successfully")


# 创建FastAPI应用
app = FastAPI(
    title="AgentForge API",
    description="多智能体代码生成工作流 RESTful API",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# 配置CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)

# 注册路由
app.include_router(workflows.router, prefix="/api/v1/workflows", tags=["workflows"])
app.include_router(executions.router, prefix="/api/v1/executions", tags=["executions"])


@app.exception_handler(AgentForgeError)
async def agentforge_exception_handler(request: Request, exc: AgentForgeError):
    """未在路由中处理的运行时异常"""
    logger.warning(f"Unhandled AgentForge error: {exc.message}")

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": exc.__class__.__name__,
            "message": exc.message,
            "details": exc.details,
            "request_id": getattr(request.state, "request_id", None)
        }
    )


# 全局异常处理
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


# 根路径
@app.get("/", tags=["root"])
async def root():
    """API根路径"""
    return {
        "name": "AgentForge API",
        "version": __version__,
        "status": "running",
        "docs": "/docs",
        "health": "/health"
    }


@app.get("/health", response_model=HealthCheckResponse, tags=["root"])
async def health() -> HealthCheckResponse:
    """健康检查"""
    state = get_app_state()
    checks = {
        "settings": "settings" in state,
        "model_client": "model_client" in state,
        "manager": "manager" in state
    }
    cache = state.get("cache")
    return HealthCheckResponse(
        status="healthy" if all(checks.values()) else "unhealthy",
        version=__version__,
        checks=checks,
        cache=cache.stats() if cache is not None else {}
    )
