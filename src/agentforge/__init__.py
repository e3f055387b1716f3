"""
AgentForge - 多智能体代码生成工作流运行时
"""

__version__ = "0.1.0"

from .config import RuntimeSettings, AgentProfile
from .core.engine import WorkflowGraphExecutor
from .core.parser import WorkflowParser
from .core.sessions import ExecutionManager
from .pipeline.step_pipeline import AgentStepPipeline
from .models.workflow import WorkflowGraph, Node, Edge
from .models.execution import WorkflowExecutionState, ExecutionStatus
from .models.artifacts import StepKind, StepResult, TargetEnvironment

__all__ = [
    "RuntimeSettings",
    "AgentProfile",
    "WorkflowGraphExecutor",
    "WorkflowParser",
    "ExecutionManager",
    "AgentStepPipeline",
    "WorkflowGraph",
    "Node",
    "Edge",
    "WorkflowExecutionState",
    "ExecutionStatus",
    "StepKind",
    "StepResult",
    "TargetEnvironment"
]
