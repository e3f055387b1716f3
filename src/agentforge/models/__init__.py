"""Workflow, execution and artifact models"""

from .artifacts import (
    StepKind, TargetEnvironment, Severity, DirectiveLevel, ParsedArtifact,
    ValidationIssue, ValidationReport, StepRequest, StepResult, CorrectionAttempt
)
from .workflow import (
    NodeKind, ConditionType, DecisionOption, NodeData, Node, EdgeCondition, Edge,
    WorkflowGraph
)
from .execution import (
    ExecutionStatus, ExecutionEventType, PendingDecision, NodeResult, WorkflowExecutionState
)

__all__ = [
    "StepKind", "TargetEnvironment", "Severity", "DirectiveLevel", "ParsedArtifact",
    "ValidationIssue", "ValidationReport", "StepRequest", "StepResult", "CorrectionAttempt",
    "NodeKind", "ConditionType", "DecisionOption", "NodeData", "Node", "EdgeCondition", "Edge",
    "WorkflowGraph",
    "ExecutionStatus", "ExecutionEventType", "PendingDecision", "NodeResult", "WorkflowExecutionState",
]
