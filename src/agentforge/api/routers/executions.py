"""
工作流执行 API 路由
"""
from fastapi import APIRouter, HTTPException, Depends, Query, status
from typing import List, Optional
import logging

from ..models import (
    ArtifactInfo, DecisionRequest, EventInfo, ExecutionDetailResponse, ExecutionResponse,
    ExecutionStartRequest, ExecutionStatusEnum, LogEntry, SuccessResponse
)
from ..dependencies import get_event_bus, get_execution_manager, get_session
from ...core.parser import WorkflowParser
from ...core.sessions import ExecutionManager, ExecutionSession
from ...core.templates import get_template_definition
from ...exceptions import AgentForgeError, GraphIntegrityError, WorkflowParseError
from ...integrations.event_bus import EventBus
from ...models.artifacts import TargetEnvironment
from ...models.execution import ExecutionStatus


logger = logging.getLogger(__name__)
router = APIRouter()


def _to_response(session: ExecutionSession) -> ExecutionResponse:
    state = session.state
    return ExecutionResponse(
        execution_id=session.execution_id,
        workflow_id=session.graph.id,
        workflow_name=session.graph.name,
        status=state.status.value,
        target=session.target.value,
        current_node_id=state.current_node_id,
        start_time=state.start_time,
        end_time=state.end_time,
        duration_ms=int(state.duration * 1000) if state.duration is not None else None,
        error_message=state.last_error,
        created_at=session.created_at
    )


def _to_detail(session: ExecutionSession) -> ExecutionDetailResponse:
    state = session.state
    base = _to_response(session).model_dump()
    return ExecutionDetailResponse(
        **base,
        visited_nodes=list(state.visited_nodes),
        node_outputs=dict(state.node_outputs),
        pending_decision=state.pending_decision.to_dict() if state.pending_decision else None,
        artifact_paths=session.artifact_store.paths(),
        node_results={k: v.to_dict() for k, v in state.node_results.items()},
        statistics=session.executor.statistics()
    )


@router.post("/", response_model=ExecutionResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_execution(
    request: ExecutionStartRequest,
    manager: ExecutionManager = Depends(get_execution_manager)
) -> ExecutionResponse:
    """以模板或图定义启动执行"""
    try:
        definition = (
            get_template_definition(request.template) if request.template
            else request.definition
        )
        graph = WorkflowParser().parse(definition)
    except GraphIntegrityError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_graph",
                "message": e.message,
                "errors": e.errors
            }
        )
    except WorkflowParseError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "parse_error",
                "message": e.message,
                "errors": e.details.get("errors", [])
            }
        )

    target = TargetEnvironment(request.target.value) if request.target else None
    session = await manager.start(graph, request.input, target=target, strict=request.strict)
    return _to_response(session)


@router.get("/", response_model=List[ExecutionResponse])
async def list_executions(
    status_filter: Optional[ExecutionStatusEnum] = Query(None, alias="status", description="执行状态"),
    manager: ExecutionManager = Depends(get_execution_manager)
) -> List[ExecutionResponse]:
    """列出执行实例"""
    status_value = ExecutionStatus(status_filter.value) if status_filter else None
    return [_to_response(s) for s in manager.list(status_value)]


@router.get("/{execution_id}", response_model=ExecutionDetailResponse)
async def get_execution(session: ExecutionSession = Depends(get_session)) -> ExecutionDetailResponse:
    """获取执行详情"""
    return _to_detail(session)


@router.post("/{execution_id}/decision", response_model=SuccessResponse)
async def submit_decision(
    execution_id: str,
    request: DecisionRequest,
    session: ExecutionSession = Depends(get_session),
    manager: ExecutionManager = Depends(get_execution_manager)
) -> SuccessResponse:
    """提交人工决策"""
    try:
        manager.resolve_decision(execution_id, request.option_id, request.node_id)
    except AgentForgeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "decision_error",
                "message": e.message
            }
        )
    return SuccessResponse(
        message=f"Decision '{request.option_id}' submitted for execution {execution_id}"
    )


@router.post("/{execution_id}/pause", response_model=SuccessResponse)
async def pause_execution(
    execution_id: str,
    session: ExecutionSession = Depends(get_session)
) -> SuccessResponse:
    """暂停执行（在下一个节点边界生效）"""
    _require_running(session)
    session.executor.pause()
    return SuccessResponse(message=f"Pause requested for execution {execution_id}")


@router.post("/{execution_id}/resume", response_model=SuccessResponse)
async def resume_execution(
    execution_id: str,
    session: ExecutionSession = Depends(get_session)
) -> SuccessResponse:
    """恢复执行"""
    _require_running(session)
    session.executor.resume()
    return SuccessResponse(message=f"Resume requested for execution {execution_id}")


@router.post("/{execution_id}/stop", response_model=SuccessResponse)
async def stop_execution(
    execution_id: str,
    session: ExecutionSession = Depends(get_session)
) -> SuccessResponse:
    """停止执行"""
    _require_running(session)
    session.executor.stop()
    return SuccessResponse(message=f"Stop requested for execution {execution_id}")


def _require_running(session: ExecutionSession):
    if not session.executor.is_running:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "not_running",
                "message": f"Execution {session.execution_id} is {session.state.status.value}"
            }
        )


@router.get("/{execution_id}/artifacts", response_model=List[ArtifactInfo])
async def list_artifacts(session: ExecutionSession = Depends(get_session)) -> List[ArtifactInfo]:
    """列出执行产生的代码产物"""
    return [
        ArtifactInfo(path=a.path, language=a.language, content=a.content)
        for a in session.artifact_store.list()
    ]


@router.get("/{execution_id}/events", response_model=List[EventInfo])
async def list_events(
    session: ExecutionSession = Depends(get_session),
    limit: int = Query(50, ge=1, le=200, description="数量"),
    event_bus: EventBus = Depends(get_event_bus)
) -> List[EventInfo]:
    """获取最近的执行事件"""
    return [
        EventInfo(topic=e.topic, timestamp=e.timestamp, payload=e.payload)
        for e in event_bus.recent(session.execution_id, limit)
    ]


@router.get("/{execution_id}/logs", response_model=List[LogEntry])
async def list_logs(session: ExecutionSession = Depends(get_session)) -> List[LogEntry]:
    """获取执行日志"""
    return [LogEntry(**entry) for entry in session.logs]


@router.delete("/{execution_id}", response_model=SuccessResponse)
async def delete_execution(
    execution_id: str,
    session: ExecutionSession = Depends(get_session),
    manager: ExecutionManager = Depends(get_execution_manager)
) -> SuccessResponse:
    """删除已结束的执行会话"""
    try:
        manager.remove(session.execution_id)
    except AgentForgeError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "still_running", "message": e.message}
        )
    return SuccessResponse(message=f"Execution {execution_id} removed")

