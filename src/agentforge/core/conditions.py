"""
边条件求值
"""
import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from ..exceptions import GraphIntegrityError
from ..models.workflow import ConditionType, DecisionOption, Edge, EdgeCondition


logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """上一步的结果（用于条件路由）"""
    output: str = ""
    succeeded: bool = True
    has_issues: bool = False
    error: Optional[str] = None
    files_generated: int = 0


def evaluate_condition(condition: EdgeCondition, outcome: StepOutcome) -> bool:
    """对上一步结果求值条件"""
    ctype = condition.type
    if ctype == ConditionType.OUTPUT_CONTAINS:
        return (condition.value or "").lower() in outcome.output.lower()
    if ctype == ConditionType.OUTPUT_MATCHES:
        try:
            return re.search(condition.value or "", outcome.output, re.IGNORECASE | re.MULTILINE) is not None
        except re.error as e:
            raise GraphIntegrityError(f"Invalid output-matches pattern {condition.value!r}: {e}")
    if ctype == ConditionType.HAS_ISSUES:
        return outcome.has_issues
    if ctype == ConditionType.ERROR_OCCURRED:
        return not outcome.succeeded
    if ctype == ConditionType.SUCCESS:
        return outcome.succeeded
    if ctype == ConditionType.HAS_FILES:
        return outcome.files_generated > 0
    if ctype == ConditionType.OPTION:
        # 选项条件只在人工决策节点上由选项ID匹配
        return False
    raise GraphIntegrityError(f"Unsupported condition type: {ctype}")


def select_edge(edges: List[Edge], outcome: StepOutcome) -> Optional[Edge]:
    """按声明顺序取第一条条件成立的边，都不成立时取无条件边"""
    fallback = None
    for edge in edges:
        if edge.condition is None:
            if fallback is None:
                fallback = edge
            continue
        if evaluate_condition(edge.condition, outcome):
            return edge
    return fallback


def visible_options(options: List[DecisionOption], outcome: Optional[StepOutcome]) -> List[DecisionOption]:
    """
    按上一步结果过滤人工决策选项

    没有上一步结果时全部可见；条件本身非法的选项隐藏。
    """
    if outcome is None:
        return list(options)
    visible = []
    for option in options:
        if option.show_condition is None:
            visible.append(option)
            continue
        try:
            shown = evaluate_condition(option.show_condition, outcome)
        except GraphIntegrityError as e:
            logger.warning(f"Hiding option {option.id}: {e.message}")
            shown = False
        if shown:
            visible.append(option)
    return visible
