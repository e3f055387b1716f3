"""
工作流执行状态模型
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
from enum import Enum
from datetime import datetime

from .artifacts import StepKind
from .workflow import DecisionOption


class ExecutionStatus(Enum):
    """工作流执行状态"""
    IDLE = "idle"
    RUNNING = "running"
    WAITING_HUMAN = "waiting-human"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class ExecutionEventType(Enum):
    """执行事件类型"""
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    WORKFLOW_STOPPED = "workflow.stopped"
    WORKFLOW_PAUSED = "workflow.paused"
    WORKFLOW_RESUMED = "workflow.resumed"
    WAITING_HUMAN = "workflow.waiting_human"

    NODE_STARTED = "node.started"
    NODE_COMPLETED = "node.completed"


@dataclass
class PendingDecision:
    """等待中的人工决策"""
    node_id: str
    question: str
    options: List[DecisionOption] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "question": self.question,
            "options": [o.to_dict() for o in self.options]
        }


@dataclass
class NodeResult:
    """智能体节点的单次执行结果（重复访问时保留最近一次）"""
    node_id: str
    step_kind: Optional[StepKind] = None
    success: bool = True
    duration: float = 0.0
    output_chars: int = 0
    files_generated: int = 0
    issues_found: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "step_kind": self.step_kind.value if self.step_kind else None,
            "success": self.success,
            "duration": self.duration,
            "output_chars": self.output_chars,
            "files_generated": self.files_generated,
            "issues_found": self.issues_found,
            "error": self.error
        }


@dataclass
class WorkflowExecutionState:
    """工作流执行状态（仅由执行器修改）"""
    status: ExecutionStatus = ExecutionStatus.IDLE
    current_node_id: Optional[str] = None
    visited_nodes: List[str] = field(default_factory=list)
    last_error: Optional[str] = None
    node_outputs: Dict[str, str] = field(default_factory=dict)
    node_results: Dict[str, NodeResult] = field(default_factory=dict)
    pending_decision: Optional[PendingDecision] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def start(self):
        """开始执行"""
        self.status = ExecutionStatus.RUNNING
        self.start_time = datetime.utcnow()
        self.end_time = None
        self.last_error = None

    def complete(self):
        """完成执行"""
        self.status = ExecutionStatus.COMPLETED
        self.pending_decision = None
        self.end_time = datetime.utcnow()

    def fail(self, error_message: str):
        """执行失败"""
        self.status = ExecutionStatus.ERROR
        self.last_error = error_message
        self.pending_decision = None
        self.end_time = datetime.utcnow()

    def stop(self):
        """停止执行"""
        self.status = ExecutionStatus.IDLE
        self.pending_decision = None
        self.end_time = datetime.utcnow()

    def is_terminal_state(self) -> bool:
        """是否为终止状态"""
        return self.status in (ExecutionStatus.COMPLETED, ExecutionStatus.ERROR)

    @property
    def duration(self) -> Optional[float]:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    def snapshot(self) -> "WorkflowExecutionState":
        """生成状态快照，供通知回调使用"""
        return WorkflowExecutionState(
            status=self.status,
            current_node_id=self.current_node_id,
            visited_nodes=list(self.visited_nodes),
            last_error=self.last_error,
            node_outputs=dict(self.node_outputs),
            node_results=dict(self.node_results),
            pending_decision=self.pending_decision,
            start_time=self.start_time,
            end_time=self.end_time
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "current_node_id": self.current_node_id,
            "visited_nodes": list(self.visited_nodes),
            "last_error": self.last_error,
            "node_outputs": dict(self.node_outputs),
            "node_results": {k: v.to_dict() for k, v in self.node_results.items()},
            "pending_decision": self.pending_decision.to_dict() if self.pending_decision else None,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration
        }

    def statistics(self, total_nodes: int) -> Dict[str, Any]:
        """
        汇总执行统计

        Args:
            total_nodes: 工作流图的节点总数

        Returns:
            Dict[str, Any]: 节点计数、耗时分布、产物与问题数量以及进度百分比
        """
        results = list(self.node_results.values())
        durations = [r.duration for r in results if r.duration > 0]
        executed = len(set(self.visited_nodes))
        return {
            "total_nodes": total_nodes,
            "executed_nodes": executed,
            "successful_nodes": sum(1 for r in results if r.success),
            "failed_nodes": sum(1 for r in results if not r.success),
            "pending_nodes": max(0, total_nodes - executed),
            "total_duration": sum(durations),
            "avg_node_duration": sum(durations) / len(durations) if durations else 0.0,
            "min_node_duration": min(durations) if durations else 0.0,
            "max_node_duration": max(durations) if durations else 0.0,
            "files_generated": sum(r.files_generated for r in results),
            "issues_found": sum(r.issues_found for r in results),
            "progress": executed / total_nodes * 100 if total_nodes else 0.0
        }
