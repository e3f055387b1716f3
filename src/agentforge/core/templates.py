"""
内置工作流模板
"""
import copy
from typing import Dict, Any, List

from ..exceptions import WorkflowParseError
from ..models.workflow import WorkflowGraph
from .parser import WorkflowParser


SIMPLE_LINEAR: Dict[str, Any] = {
    "id": "simple-linear",
    "name": "Simple linear",
    "description": "Plan the request, then generate the code.",
    "nodes": [
        {"id": "start", "type": "start"},
        {"id": "plan", "type": "agent", "data": {"label": "Planner", "step_kind": "planner"}},
        {"id": "code", "type": "agent", "data": {"label": "Coder", "step_kind": "coder"}},
        {"id": "end", "type": "end"}
    ],
    "edges": [
        {"from": "start", "to": "plan"},
        {"from": "plan", "to": "code"},
        {"from": "code", "to": "end"}
    ]
}

WITH_REVIEW: Dict[str, Any] = {
    "id": "with-review",
    "name": "With review",
    "description": "Plan and generate, then let a human decide whether a review pass is needed.",
    "nodes": [
        {"id": "start", "type": "start"},
        {"id": "plan", "type": "agent", "data": {"label": "Planner", "step_kind": "planner"}},
        {"id": "code", "type": "agent", "data": {"label": "Coder", "step_kind": "coder"}},
        {
            "id": "ask-review",
            "type": "human-decision",
            "data": {
                "label": "Review?",
                "question": "Run a review pass over the generated code?",
                "options": [
                    {"id": "yes", "label": "Review and fix"},
                    {"id": "no", "label": "Finish"}
                ]
            }
        },
        {"id": "review", "type": "agent", "data": {"label": "Reviewer", "step_kind": "reviewer"}},
        {"id": "fix", "type": "agent", "data": {"label": "Coder (fix)", "step_kind": "coder"}},
        {"id": "end", "type": "end"}
    ],
    "edges": [
        {"from": "start", "to": "plan"},
        {"from": "plan", "to": "code"},
        {"from": "code", "to": "ask-review"},
        {"from": "ask-review", "to": "review", "condition": {"type": "option", "value": "yes"}},
        {"from": "ask-review", "to": "end", "condition": {"type": "option", "value": "no"}},
        {"from": "review", "to": "fix"},
        {"from": "fix", "to": "end"}
    ]
}

FULL_PIPELINE: Dict[str, Any] = {
    "id": "full-pipeline",
    "name": "Full pipeline",
    "description": "Plan, generate, review and audit; loop back to the coder while issues remain.",
    "nodes": [
        {"id": "start", "type": "start"},
        {"id": "plan", "type": "agent", "data": {"label": "Planner", "step_kind": "planner"}},
        {"id": "code", "type": "agent", "data": {"label": "Coder", "step_kind": "coder", "max_visits": 3}},
        {"id": "review", "type": "agent", "data": {"label": "Reviewer", "step_kind": "reviewer", "max_visits": 3}},
        {"id": "audit", "type": "agent", "data": {"label": "Security", "step_kind": "security", "max_visits": 3}},
        {"id": "has-issues", "type": "conditional", "data": {"label": "Issues found?", "max_visits": 3}},
        {"id": "run", "type": "agent", "data": {"label": "Executor", "step_kind": "executor"}},
        {"id": "end", "type": "end"}
    ],
    "edges": [
        {"from": "start", "to": "plan"},
        {"from": "plan", "to": "code"},
        {"from": "code", "to": "review"},
        {"from": "review", "to": "audit"},
        {"from": "audit", "to": "has-issues"},
        {"from": "has-issues", "to": "code", "condition": {"type": "has-issues"}},
        {"from": "has-issues", "to": "run"},
        {"from": "run", "to": "end"}
    ]
}

TEMPLATES: Dict[str, Dict[str, Any]] = {
    "simple-linear": SIMPLE_LINEAR,
    "with-review": WITH_REVIEW,
    "full-pipeline": FULL_PIPELINE,
}


def list_templates() -> List[Dict[str, Any]]:
    """模板摘要列表"""
    return [
        {
            "id": name,
            "name": definition["name"],
            "description": definition["description"],
            "node_count": len(definition["nodes"])
        }
        for name, definition in TEMPLATES.items()
    ]


def get_template_definition(name: str) -> Dict[str, Any]:
    """模板的原始定义（副本）"""
    if name not in TEMPLATES:
        raise WorkflowParseError(
            f"Unknown workflow template: {name}",
            {"available": list(TEMPLATES)}
        )
    return copy.deepcopy(TEMPLATES[name])


def get_template(name: str) -> WorkflowGraph:
    """按名称构建模板工作流图"""
    return WorkflowParser().parse(get_template_definition(name))
