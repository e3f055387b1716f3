"""
工作流图定义模型
"""
from collections import deque
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple
from enum import Enum
from uuid import uuid4

from .artifacts import StepKind


DEFAULT_MAX_VISITS = 3


class NodeKind(Enum):
    """节点类型"""
    START = "start"
    END = "end"
    AGENT = "agent"
    HUMAN_DECISION = "human-decision"
    CONDITIONAL = "conditional"


class ConditionType(Enum):
    """边条件类型"""
    OUTPUT_CONTAINS = "output-contains"
    OUTPUT_MATCHES = "output-matches"
    HAS_ISSUES = "has-issues"
    ERROR_OCCURRED = "error-occurred"
    SUCCESS = "success"
    HAS_FILES = "has-files"
    OPTION = "option"


@dataclass(frozen=True)
class EdgeCondition:
    """边条件"""
    type: ConditionType
    value: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type.value}
        if self.value is not None:
            data["value"] = self.value
        return data


@dataclass(frozen=True)
class DecisionOption:
    """人工决策选项（show_condition 不成立时该选项对本次决策隐藏）"""
    id: str
    label: str = ""
    next_node_id: Optional[str] = None
    show_condition: Optional[EdgeCondition] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id, "label": self.label or self.id}
        if self.next_node_id:
            data["next_node_id"] = self.next_node_id
        if self.show_condition is not None:
            data["show_condition"] = self.show_condition.to_dict()
        return data


@dataclass
class NodeData:
    """节点数据"""
    label: str = ""
    step_kind: Optional[StepKind] = None
    question: Optional[str] = None
    options: List[DecisionOption] = field(default_factory=list)
    max_visits: int = DEFAULT_MAX_VISITS
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Node:
    """工作流节点"""
    id: str
    kind: NodeKind
    data: NodeData = field(default_factory=NodeData)

    @property
    def label(self) -> str:
        return self.data.label or self.id


@dataclass
class Edge:
    """工作流边"""
    source: str
    target: str
    condition: Optional[EdgeCondition] = None
    id: str = field(default_factory=lambda: str(uuid4()))


@dataclass
class WorkflowGraph:
    """工作流图"""
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    description: Optional[str] = None
    nodes: List[Node] = field(default_factory=list)
    edges: List[Edge] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def get_node(self, node_id: str) -> Optional[Node]:
        """根据ID获取节点"""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def start_nodes(self) -> List[Node]:
        return [n for n in self.nodes if n.kind == NodeKind.START]

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        """按声明顺序返回节点的出边"""
        return [e for e in self.edges if e.source == node_id]

    def reachable_from(self, node_id: str) -> List[str]:
        """广度优先获取可达节点ID"""
        seen = {node_id}
        order = [node_id]
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for edge in self.outgoing_edges(current):
                if edge.target not in seen:
                    seen.add(edge.target)
                    order.append(edge.target)
                    queue.append(edge.target)
            node = self.get_node(current)
            if node and node.kind == NodeKind.HUMAN_DECISION:
                for option in node.data.options:
                    if option.next_node_id and option.next_node_id not in seen:
                        seen.add(option.next_node_id)
                        order.append(option.next_node_id)
                        queue.append(option.next_node_id)
        return order

    def validate(self) -> Tuple[List[str], List[str]]:
        """
        验证工作流图

        Returns:
            (errors, warnings): 错误导致图不可执行，警告仅提示
        """
        errors: List[str] = []
        warnings: List[str] = []
        node_ids = [n.id for n in self.nodes]

        # 检查节点ID唯一性
        duplicates = sorted({i for i in node_ids if node_ids.count(i) > 1})
        for node_id in duplicates:
            errors.append(f"Duplicate node id: {node_id}")

        starts = self.start_nodes()
        if len(starts) != 1:
            errors.append(f"Workflow must have exactly one start node, found {len(starts)}")
        if not any(n.kind == NodeKind.END for n in self.nodes):
            errors.append("Workflow must have at least one end node")

        known = set(node_ids)
        for edge in self.edges:
            if edge.source not in known:
                errors.append(f"Edge {edge.id} references unknown source node: {edge.source}")
            if edge.target not in known:
                errors.append(f"Edge {edge.id} references unknown target node: {edge.target}")

        for node in self.nodes:
            outgoing = self.outgoing_edges(node.id)
            if node.kind == NodeKind.AGENT and node.data.step_kind is None:
                errors.append(f"Agent node {node.id} must specify a step kind")
            if node.kind == NodeKind.HUMAN_DECISION:
                if not node.data.options:
                    errors.append(f"Human decision node {node.id} must define options")
                for option in node.data.options:
                    if option.next_node_id and option.next_node_id not in known:
                        errors.append(
                            f"Option {option.id} of node {node.id} targets unknown node: "
                            f"{option.next_node_id}"
                        )
            if node.kind == NodeKind.CONDITIONAL and not any(e.condition for e in outgoing):
                errors.append(f"Conditional node {node.id} must have at least one conditional edge")
            if node.kind != NodeKind.END and not outgoing:
                has_option_targets = node.kind == NodeKind.HUMAN_DECISION and any(
                    o.next_node_id for o in node.data.options
                )
                if not has_option_targets:
                    errors.append(f"Node {node.id} has no outgoing edge")
            if node.data.max_visits < 1:
                errors.append(f"Node {node.id} max_visits must be at least 1")

        # 不可达节点仅作为警告
        if len(starts) == 1:
            reachable = set(self.reachable_from(starts[0].id))
            for node in self.nodes:
                if node.id not in reachable:
                    warnings.append(f"Node {node.id} is not reachable from the start node")

        return errors, warnings
