"""
FastAPI 依赖注入
"""
from fastapi import Depends, HTTPException, status
from typing import Dict, Any
import logging

from ..config import RuntimeSettings
from ..core.sessions import ExecutionManager, ExecutionSession
from ..exceptions import ExecutionNotFoundError
from ..integrations.event_bus import EventBus


logger = logging.getLogger(__name__)


# 全局实例（由 app 的 lifespan 填充）
app_state: Dict[str, Any] = {}


def get_app_state() -> Dict[str, Any]:
    """获取应用状态"""
    return app_state


def _require(key: str, name: str):
    component = get_app_state().get(key)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": f"{name} not initialized"
            }
        )
    return component


def get_settings() -> RuntimeSettings:
    """获取运行时配置"""
    return _require("settings", "Settings")


def get_execution_manager() -> ExecutionManager:
    """获取执行管理器实例"""
    return _require("manager", "Execution manager")


def get_event_bus() -> EventBus:
    """获取事件总线实例"""
    return _require("event_bus", "Event bus")


def get_session(
    execution_id: str,
    manager: ExecutionManager = Depends(get_execution_manager)
) -> ExecutionSession:
    """按路径参数获取执行会话"""
    try:
        return manager.get(execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": e.message
            }
        )
