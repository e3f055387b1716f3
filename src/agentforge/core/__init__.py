"""Core workflow graph components"""

from .engine import WorkflowGraphExecutor
from .parser import WorkflowParser, load_workflow
from .conditions import StepOutcome, evaluate_condition, select_edge
from .decisions import DecisionBroker
from .error_handler import RetryPolicy, RetryStrategy, call_with_retry, classify_error
from .templates import get_template, list_templates

__all__ = [
    "WorkflowGraphExecutor",
    "WorkflowParser",
    "load_workflow",
    "StepOutcome",
    "evaluate_condition",
    "select_edge",
    "DecisionBroker",
    "RetryPolicy",
    "RetryStrategy",
    "call_with_retry",
    "classify_error",
    "get_template",
    "list_templates"
]
