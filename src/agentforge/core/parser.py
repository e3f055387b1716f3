"""
工作流图解析器
"""
import json
import logging
import re
from pathlib import Path
from typing import Dict, Any, List, Optional, Union

import yaml
from jsonschema import Draft7Validator

from ..exceptions import GraphIntegrityError, WorkflowParseError
from ..models.artifacts import StepKind
from ..models.workflow import (
    DEFAULT_MAX_VISITS, ConditionType, DecisionOption, Edge, EdgeCondition,
    Node, NodeData, NodeKind, WorkflowGraph
)


logger = logging.getLogger(__name__)


_CONDITION_SCHEMA = {
    "oneOf": [
        {"type": "string"},
        {
            "type": "object",
            "properties": {
                "type": {"enum": [c.value for c in ConditionType]},
                "value": {"type": ["string", "null"]}
            },
            "required": ["type"]
        }
    ]
}

WORKFLOW_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "description": {"type": ["string", "null"]},
        "metadata": {"type": "object"},
        "nodes": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "type": {"enum": [k.value for k in NodeKind]},
                    "kind": {"enum": [k.value for k in NodeKind]},
                    "data": {"type": "object"},
                    "max_visits": {"type": "integer", "minimum": 1},
                    "options": {"type": "array"}
                },
                "required": ["id"],
                "anyOf": [{"required": ["type"]}, {"required": ["kind"]}]
            }
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "from": {"type": "string"},
                    "to": {"type": "string"},
                    "source": {"type": "string"},
                    "target": {"type": "string"},
                    "condition": _CONDITION_SCHEMA,
                    "option": {"type": "string"}
                },
                "anyOf": [
                    {"required": ["from", "to"]},
                    {"required": ["source", "target"]}
                ]
            }
        }
    },
    "required": ["nodes"]
}

# 节点数据既可以内联也可以放在 data 下
_NODE_DATA_FIELDS = ("label", "agent", "step_kind", "question", "options", "max_visits", "metadata")


class WorkflowParser:
    """工作流图解析器"""

    def __init__(self):
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }
        self.schema_validator = Draft7Validator(WORKFLOW_SCHEMA)

    def parse(self, source: Union[str, Path, Dict[str, Any]]) -> WorkflowGraph:
        """
        解析工作流图定义

        Args:
            source: 文件路径、YAML/JSON 字符串或字典

        Returns:
            WorkflowGraph: 通过结构校验的工作流图
        """
        if isinstance(source, dict):
            return self._parse_dict(source)

        if isinstance(source, Path):
            return self.parse_file(source)

        if isinstance(source, str):
            # 多行文本一定不是路径
            if "\n" not in source:
                path = Path(source)
                if path.suffix.lower().lstrip('.') in self.parsers and path.is_file():
                    return self.parse_file(path)
            return self.parse_string(source)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Union[str, Path]) -> WorkflowGraph:
        """解析工作流文件"""
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")
        if not file_path.is_file():
            raise WorkflowParseError(f"Workflow file not found: {file_path}")

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        data = self.parsers[suffix](content)
        return self._parse_dict(data)

    def parse_string(self, content: str) -> WorkflowGraph:
        """解析 YAML 或 JSON 字符串（JSON 是 YAML 的子集，统一用 YAML 读取）"""
        data = self._parse_yaml(content)
        return self._parse_dict(data)

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}")

    def _check_schema(self, data: Any):
        errors = sorted(self.schema_validator.iter_errors(data), key=lambda e: list(e.path))
        if errors:
            messages = [
                f"{'/'.join(str(p) for p in error.path) or '<root>'}: {error.message}"
                for error in errors
            ]
            raise WorkflowParseError(
                "Workflow document does not match the schema",
                {"errors": messages}
            )

    def _parse_dict(self, data: Any) -> WorkflowGraph:
        """解析字典格式的工作流图定义"""
        if isinstance(data, dict) and 'workflow' in data:
            data = data['workflow']
        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow definition must be a mapping")

        self._check_schema(data)

        graph = WorkflowGraph(
            name=data.get('name', ''),
            description=data.get('description'),
            metadata=dict(data.get('metadata') or {})
        )
        if data.get('id'):
            graph.id = data['id']

        graph.nodes = [self._parse_node(n) for n in data.get('nodes', [])]
        graph.edges = [self._parse_edge(e) for e in data.get('edges', [])]

        errors, warnings = graph.validate()
        if errors:
            raise GraphIntegrityError(f"Workflow validation failed: {errors}", errors=errors)
        for warning in warnings:
            logger.warning(f"Workflow {graph.id}: {warning}")

        logger.info(f"Parsed workflow {graph.id} with {len(graph.nodes)} nodes and {len(graph.edges)} edges")
        return graph

    def _parse_node(self, node_data: Dict[str, Any]) -> Node:
        node_id = node_data['id']
        kind = NodeKind(node_data.get('type') or node_data.get('kind'))

        raw = dict(node_data.get('data') or {})
        for key in _NODE_DATA_FIELDS:
            if key in node_data and key not in raw:
                raw[key] = node_data[key]

        step_kind = None
        step_value = raw.get('step_kind') or raw.get('agent')
        if step_value:
            try:
                step_kind = StepKind(step_value)
            except ValueError:
                raise WorkflowParseError(
                    f"Unknown step kind '{step_value}' on node {node_id}",
                    {"node_id": node_id, "allowed": [k.value for k in StepKind]}
                )

        options = [self._parse_option(node_id, o) for o in raw.get('options') or []]

        return Node(
            id=node_id,
            kind=kind,
            data=NodeData(
                label=raw.get('label', ''),
                step_kind=step_kind,
                question=raw.get('question'),
                options=options,
                max_visits=int(raw.get('max_visits', DEFAULT_MAX_VISITS)),
                metadata=dict(raw.get('metadata') or {})
            )
        )

    def _parse_option(self, node_id: str, option: Any) -> DecisionOption:
        if isinstance(option, str):
            return DecisionOption(id=option, label=option)
        if not isinstance(option, dict) or not option.get('id'):
            raise WorkflowParseError(f"Invalid option on node {node_id}: {option!r}", {"node_id": node_id})
        show_condition = None
        raw_condition = option.get('show_condition')
        if isinstance(raw_condition, dict) and raw_condition.get('type') == 'always':
            raw_condition = None
        if raw_condition is not None and raw_condition != 'always':
            show_condition = self._parse_condition(raw_condition)
            if show_condition.type == ConditionType.OPTION:
                raise WorkflowParseError(
                    f"Option {option['id']} on node {node_id} cannot use an option show condition",
                    {"node_id": node_id}
                )
        return DecisionOption(
            id=str(option['id']),
            label=option.get('label', ''),
            next_node_id=option.get('next_node_id') or option.get('next'),
            show_condition=show_condition
        )

    def _parse_edge(self, edge_data: Dict[str, Any]) -> Edge:
        source = edge_data.get('from', edge_data.get('source'))
        target = edge_data.get('to', edge_data.get('target'))

        condition = None
        if 'option' in edge_data:
            condition = EdgeCondition(ConditionType.OPTION, str(edge_data['option']))
        elif edge_data.get('condition') is not None:
            condition = self._parse_condition(edge_data['condition'])

        edge = Edge(source=source, target=target, condition=condition)
        if edge_data.get('id'):
            edge.id = edge_data['id']
        return edge

    def _parse_condition(self, raw: Union[str, Dict[str, Any]]) -> EdgeCondition:
        """
        解析边条件

        字符串简写: "success" / "has-issues" / "output-contains:LGTM" / "option:yes"
        """
        if isinstance(raw, str):
            type_name, _, value = raw.partition(':')
            raw = {"type": type_name.strip(), "value": value.strip() or None}

        try:
            ctype = ConditionType(raw['type'])
        except ValueError:
            raise WorkflowParseError(
                f"Unknown condition type: {raw['type']}",
                {"allowed": [c.value for c in ConditionType]}
            )
        value = raw.get('value')
        if value is not None:
            value = str(value)

        needs_value = (ConditionType.OUTPUT_CONTAINS, ConditionType.OUTPUT_MATCHES, ConditionType.OPTION)
        if ctype in needs_value and not value:
            raise WorkflowParseError(f"Condition {ctype.value} requires a value")
        if ctype == ConditionType.OUTPUT_MATCHES:
            try:
                re.compile(value)
            except re.error as e:
                raise WorkflowParseError(f"Invalid output-matches pattern {value!r}: {e}")

        return EdgeCondition(ctype, value)

    def dump(self, graph: WorkflowGraph) -> Dict[str, Any]:
        """把工作流图导出为可再次解析的字典"""
        nodes: List[Dict[str, Any]] = []
        for node in graph.nodes:
            data: Dict[str, Any] = {}
            if node.data.label:
                data['label'] = node.data.label
            if node.data.step_kind is not None:
                data['step_kind'] = node.data.step_kind.value
            if node.data.question:
                data['question'] = node.data.question
            if node.data.options:
                data['options'] = [o.to_dict() for o in node.data.options]
            if node.data.max_visits != DEFAULT_MAX_VISITS:
                data['max_visits'] = node.data.max_visits
            if node.data.metadata:
                data['metadata'] = dict(node.data.metadata)
            nodes.append({'id': node.id, 'type': node.kind.value, 'data': data})

        edges: List[Dict[str, Any]] = []
        for edge in graph.edges:
            item: Dict[str, Any] = {'id': edge.id, 'from': edge.source, 'to': edge.target}
            if edge.condition is not None:
                item['condition'] = edge.condition.to_dict()
            edges.append(item)

        result: Dict[str, Any] = {
            'id': graph.id,
            'name': graph.name,
            'nodes': nodes,
            'edges': edges
        }
        if graph.description:
            result['description'] = graph.description
        if graph.metadata:
            result['metadata'] = dict(graph.metadata)
        return result


def load_workflow(source: Union[str, Path, Dict[str, Any]]) -> WorkflowGraph:
    """便捷函数：解析工作流图"""
    return WorkflowParser().parse(source)
