"""
工作流图 API 路由
"""
from fastapi import APIRouter, HTTPException, status
from typing import List, Dict, Any
import logging

from ..models import TemplateSummary, WorkflowValidateRequest, WorkflowValidateResponse
from ...core.parser import WorkflowParser
from ...core.templates import get_template_definition, list_templates
from ...exceptions import GraphIntegrityError, WorkflowParseError


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/templates", response_model=List[TemplateSummary])
async def get_templates() -> List[TemplateSummary]:
    """列出内置模板"""
    return [TemplateSummary(**item) for item in list_templates()]


@router.get("/templates/{name}")
async def get_template(name: str) -> Dict[str, Any]:
    """获取模板定义"""
    try:
        return get_template_definition(name)
    except WorkflowParseError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": e.message
            }
        )


@router.post("/validate", response_model=WorkflowValidateResponse)
async def validate_workflow(request: WorkflowValidateRequest) -> WorkflowValidateResponse:
    """校验工作流图定义（不执行）"""
    try:
        graph = WorkflowParser().parse(request.definition)
    except GraphIntegrityError as e:
        return WorkflowValidateResponse(valid=False, errors=e.errors or [e.message])
    except WorkflowParseError as e:
        return WorkflowValidateResponse(valid=False, errors=e.details.get("errors") or [e.message])

    _, warnings = graph.validate()
    return WorkflowValidateResponse(
        valid=True,
        warnings=warnings,
        node_count=len(graph.nodes),
        edge_count=len(graph.edges)
    )
