"""
执行会话管理
"""
import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional
from uuid import uuid4

from ..config import RuntimeSettings
from ..exceptions import AgentForgeError, ExecutionNotFoundError
from ..integrations.artifact_store import ArtifactStore, InMemoryArtifactStore
from ..integrations.event_bus import EventBus
from ..integrations.knowledge import ContextProvider
from ..integrations.model_client import ModelClient
from ..models.artifacts import TargetEnvironment
from ..models.execution import ExecutionStatus, WorkflowExecutionState
from ..models.workflow import WorkflowGraph
from ..pipeline.cache import ResponseCache
from ..pipeline.step_pipeline import AgentStepPipeline
from .decisions import DecisionBroker
from .engine import WorkflowGraphExecutor


logger = logging.getLogger(__name__)


@dataclass
class ExecutionSession:
    """一次工作流执行及其私有资源"""
    execution_id: str
    graph: WorkflowGraph
    input_text: str
    executor: WorkflowGraphExecutor
    broker: DecisionBroker
    artifact_store: ArtifactStore
    target: TargetEnvironment
    task: Optional[asyncio.Task] = None
    logs: List[Dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def state(self) -> WorkflowExecutionState:
        return self.executor.state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.graph.id,
            "workflow_name": self.graph.name,
            "target": self.target.value,
            "created_at": self.created_at.isoformat(),
            "state": self.state.to_dict(),
            "artifact_paths": self.artifact_store.paths()
        }


class ExecutionManager:
    """
    执行管理器

    每个会话拥有独立的产物存储、流水线、决策代理和执行器；
    响应缓存在会话间共享（指纹包含上下文摘要，不会串用）。
    """

    def __init__(
        self,
        settings: RuntimeSettings,
        model_client: ModelClient,
        event_bus: Optional[EventBus] = None,
        cache: Optional[ResponseCache] = None,
        context_provider: Optional[ContextProvider] = None,
        max_log_entries: int = 500,
        max_sessions: Optional[int] = None
    ):
        self.settings = settings
        self.model_client = model_client
        self.event_bus = event_bus
        self.cache = cache or ResponseCache(settings.cache_ttl_seconds, settings.cache_max_entries)
        self.context_provider = context_provider
        self.max_log_entries = max_log_entries
        self.max_sessions = max_sessions if max_sessions is not None else settings.max_retained_executions
        self.sessions: Dict[str, ExecutionSession] = {}

    async def start(
        self,
        graph: WorkflowGraph,
        input_text: str,
        target: Optional[TargetEnvironment] = None,
        strict: Optional[bool] = None
    ) -> ExecutionSession:
        """创建会话并在后台任务中运行工作流"""
        execution_id = str(uuid4())
        settings = self.settings
        if target is not None and target != settings.target_environment:
            settings = dataclasses.replace(settings, target_environment=target)

        store = InMemoryArtifactStore()
        pipeline = AgentStepPipeline(
            self.model_client,
            settings=settings,
            cache=self.cache,
            artifact_store=store,
            context_provider=self.context_provider,
            strict=strict
        )
        broker = DecisionBroker()
        logs: List[Dict[str, Any]] = []

        def on_log(message: str, level: str):
            logs.append({
                "timestamp": datetime.utcnow().isoformat(),
                "level": level,
                "message": message
            })
            if len(logs) > self.max_log_entries:
                del logs[:len(logs) - self.max_log_entries]

        executor = WorkflowGraphExecutor(
            graph,
            on_agent_execute=pipeline.as_agent_callback(),
            on_human_decision=broker,
            on_log=on_log,
            event_bus=self.event_bus,
            execution_id=execution_id
        )
        session = ExecutionSession(
            execution_id=execution_id,
            graph=graph,
            input_text=input_text,
            executor=executor,
            broker=broker,
            artifact_store=store,
            target=settings.target_environment,
            logs=logs
        )
        self._evict_finished()
        self.sessions[execution_id] = session
        session.task = asyncio.create_task(executor.start(input_text))
        logger.info(f"Started execution {execution_id} of workflow {graph.id}")
        return session

    def _evict_finished(self):
        """新会话加入后将超过上限时按创建顺序淘汰已结束的会话，运行中的会话不淘汰"""
        excess = len(self.sessions) + 1 - self.max_sessions
        if excess <= 0:
            return
        finished = [s for s in self.sessions.values() if s.task is None or s.task.done()]
        for session in finished[:excess]:
            del self.sessions[session.execution_id]
            logger.info(f"Evicted finished execution {session.execution_id}")

    def get(self, execution_id: str) -> ExecutionSession:
        session = self.sessions.get(execution_id)
        if session is None:
            raise ExecutionNotFoundError(execution_id)
        return session

    def remove(self, execution_id: str) -> ExecutionSession:
        """
        移除已结束的会话

        Raises:
            ExecutionNotFoundError: 会话不存在
            AgentForgeError: 会话仍在运行
        """
        session = self.get(execution_id)
        if session.task is not None and not session.task.done():
            raise AgentForgeError(
                f"Execution {execution_id} is still running",
                {"execution_id": execution_id, "status": session.state.status.value}
            )
        del self.sessions[execution_id]
        logger.info(f"Removed execution {execution_id}")
        return session

    def list(self, status: Optional[ExecutionStatus] = None) -> List[ExecutionSession]:
        sessions = list(self.sessions.values())
        if status is not None:
            sessions = [s for s in sessions if s.state.status == status]
        return sessions

    def resolve_decision(self, execution_id: str, option_id: str, node_id: Optional[str] = None):
        """
        提交人工决策

        Raises:
            AgentForgeError: 没有等待中的决策，或选项ID不属于该决策节点
        """
        session = self.get(execution_id)
        pending = session.state.pending_decision
        if pending is None:
            raise AgentForgeError(
                f"Execution {execution_id} is not waiting for a decision",
                {"execution_id": execution_id, "status": session.state.status.value}
            )
        if node_id is not None and node_id != pending.node_id:
            raise AgentForgeError(
                f"Execution {execution_id} is waiting on node {pending.node_id}, not {node_id}",
                {"execution_id": execution_id, "node_id": pending.node_id}
            )
        allowed = [o.id for o in pending.options]
        if option_id not in allowed:
            raise AgentForgeError(
                f"Unknown option '{option_id}' for node {pending.node_id}",
                {"node_id": pending.node_id, "allowed": allowed}
            )
        session.broker.resolve(pending.node_id, option_id)

    def stop(self, execution_id: str):
        self.get(execution_id).executor.stop()

    def pause(self, execution_id: str):
        self.get(execution_id).executor.pause()

    def resume(self, execution_id: str):
        self.get(execution_id).executor.resume()

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> WorkflowExecutionState:
        """等待会话任务结束"""
        session = self.get(execution_id)
        if session.task is not None:
            await asyncio.wait_for(asyncio.shield(session.task), timeout)
        return session.state

    async def shutdown(self):
        """停止所有运行中的会话"""
        running = [s for s in self.sessions.values() if s.task is not None and not s.task.done()]
        for session in running:
            session.executor.stop()
        if running:
            await asyncio.gather(*(s.task for s in running), return_exceptions=True)
        logger.info(f"Execution manager shut down ({len(running)} running session(s) stopped)")
