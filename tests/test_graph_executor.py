"""
工作流图执行器测试
"""
import asyncio

import pytest

from agentforge.core.decisions import DecisionBroker
from agentforge.core.engine import WorkflowGraphExecutor
from agentforge.core.parser import WorkflowParser
from agentforge.core.templates import get_template
from agentforge.exceptions import AgentForgeError, GraphIntegrityError
from agentforge.models.artifacts import (
    ParsedArtifact, Severity, StepKind, StepResult, ValidationIssue, ValidationReport
)
from agentforge.models.execution import ExecutionStatus
from agentforge.models.workflow import Edge, Node, NodeKind, WorkflowGraph


async def _wait_for(predicate, timeout: float = 2.0):
    """轮询等待条件成立"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition was not met in time")
        await asyncio.sleep(0.01)


class RecordingAgent:
    """记录调用并按步骤类型返回固定输出的智能体回调"""

    def __init__(self, outputs=None):
        self.outputs = outputs or {}
        self.calls = []

    async def __call__(self, step_kind, input_text, previous_output):
        self.calls.append((step_kind, input_text, previous_output))
        output = self.outputs.get(step_kind, f"{step_kind.value} done")
        if callable(output):
            return output(len(self.calls))
        return output


async def _never_decide(node_id, question, options):
    raise AssertionError("No decision expected")


class TestWorkflowGraphExecutor:
    """工作流图执行器测试类"""

    @pytest.fixture
    def parser(self):
        """创建解析器实例"""
        return WorkflowParser()

    @pytest.mark.asyncio
    async def test_linear_workflow(self, parser, linear_workflow):
        """测试线性工作流依次执行并完成"""
        agent = RecordingAgent({StepKind.PLANNER: "1. App.tsx", StepKind.CODER: "code"})
        executor = WorkflowGraphExecutor(parser.parse(linear_workflow), agent, _never_decide)

        state = await executor.start("Build a counter")

        assert state.status == ExecutionStatus.COMPLETED
        assert state.visited_nodes == ["start", "plan", "code", "end"]
        assert state.node_outputs == {"plan": "1. App.tsx", "code": "code"}
        assert state.last_error is None
        assert agent.calls == [
            (StepKind.PLANNER, "Build a counter", None),
            (StepKind.CODER, "Build a counter", "1. App.tsx"),
        ]
        assert not executor.is_running

    @pytest.mark.asyncio
    async def test_invalid_graph_is_rejected(self):
        """测试非法图在构造时被拒绝"""
        graph = WorkflowGraph(nodes=[Node(id="end", kind=NodeKind.END)])

        with pytest.raises(GraphIntegrityError):
            WorkflowGraphExecutor(graph, RecordingAgent(), _never_decide)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("option, expected", [
        ("a", ["start", "plan", "decide", "code", "end"]),
        ("b", ["start", "plan", "decide", "end"]),
    ])
    async def test_human_decision_routes_by_option(self, parser, decision_workflow, option, expected):
        """测试人工决策按选项路由"""
        broker = DecisionBroker()
        agent = RecordingAgent()
        states = []
        executor = WorkflowGraphExecutor(
            parser.parse(decision_workflow), agent, broker, on_state_change=states.append
        )

        task = asyncio.create_task(executor.start("Todo app"))
        await _wait_for(lambda: broker.is_waiting("decide"))

        assert executor.state.status == ExecutionStatus.WAITING_HUMAN
        assert executor.state.pending_decision.node_id == "decide"
        assert [o.id for o in executor.state.pending_decision.options] == ["a", "b"]

        broker.resolve("decide", option)
        state = await asyncio.wait_for(task, timeout=2)

        assert state.status == ExecutionStatus.COMPLETED
        assert state.visited_nodes == expected
        assert state.pending_decision is None
        assert any(s.status == ExecutionStatus.WAITING_HUMAN for s in states)

    @pytest.mark.asyncio
    async def test_unknown_option_fails_execution(self, parser, decision_workflow):
        """测试未知选项导致执行失败"""
        async def decide(node_id, question, options):
            return "c"

        executor = WorkflowGraphExecutor(parser.parse(decision_workflow), RecordingAgent(), decide)
        state = await executor.start("Todo app")

        assert state.status == ExecutionStatus.ERROR
        assert "Unknown option 'c'" in state.last_error

    @pytest.mark.asyncio
    async def test_option_next_node_id(self, parser):
        """测试选项的 next_node_id 路由"""
        definition = {
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "ask", "type": "human-decision",
                 "options": [{"id": "review", "next": "review"}, {"id": "done", "next": "end"}]},
                {"id": "review", "type": "agent", "step_kind": "reviewer"},
                {"id": "end", "type": "end"}
            ],
            "edges": [
                {"from": "start", "to": "ask"},
                {"from": "review", "to": "end"}
            ]
        }

        async def decide(node_id, question, options):
            return "review"

        agent = RecordingAgent()
        state = await WorkflowGraphExecutor(parser.parse(definition), agent, decide).start("x")

        assert state.status == ExecutionStatus.COMPLETED
        assert state.visited_nodes == ["start", "ask", "review", "end"]
        assert agent.calls[0][0] == StepKind.REVIEWER

    @pytest.mark.asyncio
    async def test_stop_while_waiting_for_decision(self, parser, decision_workflow):
        """测试等待人工决策时停止执行"""
        broker = DecisionBroker()
        executor = WorkflowGraphExecutor(parser.parse(decision_workflow), RecordingAgent(), broker)

        task = asyncio.create_task(executor.start("Todo app"))
        await _wait_for(lambda: broker.is_waiting("decide"))

        executor.stop()
        state = await asyncio.wait_for(task, timeout=2)

        assert state.status == ExecutionStatus.IDLE
        assert state.pending_decision is None
        assert "code" not in state.visited_nodes

        await asyncio.sleep(0)
        assert not broker.pending()

    @pytest.mark.asyncio
    async def test_stop_takes_effect_at_node_boundary(self, parser, linear_workflow):
        """测试停止在节点边界生效，进行中的步骤会完成"""
        executor = None

        def planner(call_number):
            executor.stop()
            return "plan"

        agent = RecordingAgent({StepKind.PLANNER: planner})
        executor = WorkflowGraphExecutor(parser.parse(linear_workflow), agent, _never_decide)

        state = await executor.start("x")

        assert state.status == ExecutionStatus.IDLE
        assert state.node_outputs == {"plan": "plan"}
        assert [c[0] for c in agent.calls] == [StepKind.PLANNER]

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, parser, linear_workflow):
        """测试暂停与恢复"""
        executor = None

        def planner(call_number):
            executor.pause()
            return "plan"

        agent = RecordingAgent({StepKind.PLANNER: planner})
        executor = WorkflowGraphExecutor(parser.parse(linear_workflow), agent, _never_decide)

        task = asyncio.create_task(executor.start("x"))
        await _wait_for(lambda: executor.state.status == ExecutionStatus.PAUSED)

        assert len(agent.calls) == 1

        executor.resume()
        state = await asyncio.wait_for(task, timeout=2)

        assert state.status == ExecutionStatus.COMPLETED
        assert len(agent.calls) == 2

    @pytest.mark.asyncio
    async def test_start_twice_is_rejected(self, parser, decision_workflow):
        """测试执行中再次启动被拒绝"""
        broker = DecisionBroker()
        executor = WorkflowGraphExecutor(parser.parse(decision_workflow), RecordingAgent(), broker)

        task = asyncio.create_task(executor.start("x"))
        await _wait_for(lambda: broker.is_waiting("decide"))

        with pytest.raises(AgentForgeError, match="already running"):
            await executor.start("x")

        executor.stop()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_agent_error_fails_execution(self, parser, linear_workflow):
        """测试智能体回调异常导致执行失败"""
        async def failing(step_kind, input_text, previous_output):
            raise RuntimeError("model unavailable")

        executor = WorkflowGraphExecutor(parser.parse(linear_workflow), failing, _never_decide)
        state = await executor.start("x")

        assert state.status == ExecutionStatus.ERROR
        assert state.last_error == "model unavailable"
        assert state.end_time is not None

    @pytest.mark.asyncio
    async def test_output_condition_routing(self, parser):
        """测试按输出内容条件路由，条件边优先于无条件边"""
        definition = {
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "review", "type": "agent", "step_kind": "reviewer"},
                {"id": "fix", "type": "agent", "step_kind": "coder"},
                {"id": "end", "type": "end"}
            ],
            "edges": [
                {"from": "start", "to": "review"},
                {"from": "review", "to": "end"},
                {"from": "review", "to": "fix", "condition": "output-matches:\\bbugs?\\b"},
                {"from": "fix", "to": "end"}
            ]
        }
        graph = parser.parse(definition)

        clean = await WorkflowGraphExecutor(
            graph, RecordingAgent({StepKind.REVIEWER: "Looks fine"}), _never_decide
        ).start("x")
        buggy = await WorkflowGraphExecutor(
            graph, RecordingAgent({StepKind.REVIEWER: "Found a bug in App.tsx"}), _never_decide
        ).start("x")

        assert clean.visited_nodes == ["start", "review", "end"]
        assert buggy.visited_nodes == ["start", "review", "fix", "end"]

    @pytest.mark.asyncio
    async def test_has_issues_loop_until_clean(self):
        """测试存在问题时回到编码节点，问题解决后继续"""
        graph = get_template("full-pipeline")
        audits = []

        def audit(call_number):
            audits.append(call_number)
            warnings = ["Hard-coded key"] if len(audits) == 1 else []
            return StepResult(step_kind=StepKind.SECURITY, content="audit", warnings=warnings)

        agent = RecordingAgent({StepKind.SECURITY: audit})
        state = await WorkflowGraphExecutor(graph, agent, _never_decide).start("x")

        assert state.status == ExecutionStatus.COMPLETED
        assert state.visited_nodes.count("code") == 2
        assert state.visited_nodes[-2:] == ["run", "end"]

    @pytest.mark.asyncio
    async def test_max_visits_exceeded(self):
        """测试超过最大访问次数导致执行失败"""
        graph = get_template("full-pipeline")

        def audit(call_number):
            return StepResult(step_kind=StepKind.SECURITY, content="audit", warnings=["still broken"])

        agent = RecordingAgent({StepKind.SECURITY: audit})
        state = await WorkflowGraphExecutor(graph, agent, _never_decide).start("x")

        assert state.status == ExecutionStatus.ERROR
        assert "exceeded its maximum of 3" in state.last_error
        assert state.visited_nodes.count("code") == 3

    @pytest.mark.asyncio
    async def test_error_condition_uses_report(self, parser):
        """测试校验不通过的结果触发 error-occurred 条件"""
        definition = {
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "code", "type": "agent", "step_kind": "coder"},
                {"id": "review", "type": "agent", "step_kind": "reviewer"},
                {"id": "end", "type": "end"}
            ],
            "edges": [
                {"from": "start", "to": "code"},
                {"from": "code", "to": "review", "condition": "error-occurred"},
                {"from": "code", "to": "end", "condition": "success"},
                {"from": "review", "to": "end"}
            ]
        }
        report = ValidationReport(score=50, issues=[
            ValidationIssue(Severity.CRITICAL, "App.tsx contains 2 default exports", "duplicate-default-export")
        ])
        agent = RecordingAgent({
            StepKind.CODER: StepResult(step_kind=StepKind.CODER, content="code", report=report)
        })

        state = await WorkflowGraphExecutor(parser.parse(definition), agent, _never_decide).start("x")

        assert state.visited_nodes == ["start", "code", "review", "end"]

    @pytest.mark.asyncio
    async def test_no_matching_edge(self, parser):
        """测试没有匹配出边时执行失败"""
        definition = {
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "code", "type": "agent", "step_kind": "coder"},
                {"id": "end", "type": "end"}
            ],
            "edges": [
                {"from": "start", "to": "code"},
                {"from": "code", "to": "end", "condition": "output-contains:APPROVED"}
            ]
        }
        state = await WorkflowGraphExecutor(
            parser.parse(definition), RecordingAgent(), _never_decide
        ).start("x")

        assert state.status == ExecutionStatus.ERROR
        assert "No outgoing edge of node code" in state.last_error

    @pytest.mark.asyncio
    async def test_events_and_logs(self, parser, linear_workflow, event_bus):
        """测试事件发布与日志回调"""
        logs = []
        executor = WorkflowGraphExecutor(
            parser.parse(linear_workflow), RecordingAgent(), _never_decide,
            on_log=lambda message, level: logs.append((level, message)),
            event_bus=event_bus, execution_id="exec-1"
        )
        await executor.start("x")

        events = event_bus.recent("exec-1")
        types = [e.topic for e in events]

        assert types[0] == "workflow.started"
        assert types[-1] == "workflow.completed"
        assert types.count("node.completed") == 2
        assert all(e.payload["execution_id"] == "exec-1" for e in events)
        assert ("info", "Workflow completed") in logs

    @pytest.mark.asyncio
    async def test_failing_observer_does_not_break_execution(self, parser, linear_workflow):
        """测试观察者回调异常不影响执行"""
        def broken_observer(state):
            raise ValueError("observer bug")

        async def broken_log(message, level):
            raise ValueError("log bug")

        executor = WorkflowGraphExecutor(
            parser.parse(linear_workflow), RecordingAgent(), _never_decide,
            on_state_change=broken_observer, on_log=broken_log
        )
        state = await executor.start("x")

        assert state.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_state_snapshots_are_independent(self, parser, linear_workflow):
        """测试通知的状态是快照"""
        states = []
        executor = WorkflowGraphExecutor(
            parser.parse(linear_workflow), RecordingAgent(), _never_decide,
            on_state_change=states.append
        )
        await executor.start("x")

        assert states[0].visited_nodes == []
        assert states[-1].visited_nodes == ["start", "plan", "code", "end"]
        assert states[-1] is not executor.state

    def test_graph_helpers(self):
        """测试图的出边顺序"""
        graph = WorkflowGraph(
            nodes=[Node(id="start", kind=NodeKind.START), Node(id="end", kind=NodeKind.END)],
            edges=[Edge(source="start", target="end", id="e1"), Edge(source="start", target="end", id="e2")]
        )

        assert [e.id for e in graph.outgoing_edges("start")] == ["e1", "e2"]
        assert graph.reachable_from("start") == ["start", "end"]

    @pytest.mark.asyncio
    async def test_option_without_route_fails(self, parser):
        """测试合法选项既无 option 边也无 next_node_id 时执行失败，不走无条件边"""
        definition = {
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "decide", "type": "human-decision", "options": ["a", "b"]},
                {"id": "code", "type": "agent", "step_kind": "coder"},
                {"id": "end", "type": "end"}
            ],
            "edges": [
                {"from": "start", "to": "decide"},
                {"from": "decide", "to": "code", "option": "a"},
                {"from": "decide", "to": "end"},
                {"from": "code", "to": "end"}
            ]
        }

        async def decide(node_id, question, options):
            return "b"

        state = await WorkflowGraphExecutor(parser.parse(definition), RecordingAgent(), decide).start("x")

        assert state.status == ExecutionStatus.ERROR
        assert "No edge of decision node decide matches option 'b'" in state.last_error
        assert "end" not in state.visited_nodes

    @pytest.mark.asyncio
    async def test_end_node_notified_before_completion(self, parser, linear_workflow):
        """测试结束节点先以运行状态记入已访问节点，再通知完成"""
        states = []
        executor = WorkflowGraphExecutor(
            parser.parse(linear_workflow), RecordingAgent(), _never_decide,
            on_state_change=states.append
        )
        await executor.start("x")

        reached = [s for s in states if "end" in s.visited_nodes]
        assert reached[0].status == ExecutionStatus.RUNNING
        assert reached[-1].status == ExecutionStatus.COMPLETED
        assert len(reached) == 2

    @pytest.mark.asyncio
    async def test_node_results_and_statistics(self, parser, linear_workflow):
        """测试节点结果记录与执行统计"""
        report = ValidationReport(score=90, issues=[
            ValidationIssue(Severity.WARNING, "App.tsx renders 1 list(s) without a key prop", "missing-key",
                            penalty=10)
        ])
        code = StepResult(
            step_kind=StepKind.CODER,
            content="code",
            artifacts=[ParsedArtifact(path="App.tsx", content="export default function App() {}\n",
                                      language="tsx")],
            report=report
        )
        executor = WorkflowGraphExecutor(
            parser.parse(linear_workflow), RecordingAgent({StepKind.CODER: code}), _never_decide
        )

        state = await executor.start("x")
        stats = executor.statistics()

        assert sorted(state.node_results) == ["code", "plan"]
        assert state.node_results["plan"].step_kind == StepKind.PLANNER
        assert state.node_results["code"].files_generated == 1
        assert state.node_results["code"].issues_found == 1
        assert all(r.success and r.duration >= 0 for r in state.node_results.values())
        assert stats["total_nodes"] == 4
        assert stats["executed_nodes"] == 4
        assert stats["pending_nodes"] == 0
        assert stats["successful_nodes"] == 2
        assert stats["failed_nodes"] == 0
        assert stats["files_generated"] == 1
        assert stats["issues_found"] == 1
        assert stats["progress"] == pytest.approx(100.0)
        assert stats["min_node_duration"] <= stats["avg_node_duration"] <= stats["max_node_duration"]
        assert state.to_dict()["node_results"]["code"]["files_generated"] == 1

    @pytest.mark.asyncio
    async def test_failed_node_is_recorded(self, parser, linear_workflow):
        """测试智能体异常时记录失败的节点结果"""
        async def failing(step_kind, input_text, previous_output):
            raise RuntimeError("model unavailable")

        executor = WorkflowGraphExecutor(parser.parse(linear_workflow), failing, _never_decide)
        state = await executor.start("x")
        stats = executor.statistics()

        assert state.node_results["plan"].success is False
        assert state.node_results["plan"].error == "model unavailable"
        assert stats["failed_nodes"] == 1
        assert stats["executed_nodes"] == 1
        assert stats["progress"] == pytest.approx(25.0)


class TestDecisionOptionFiltering:
    """人工决策选项过滤测试类"""

    DEFINITION = {
        "nodes": [
            {"id": "start", "type": "start"},
            {"id": "review", "type": "agent", "step_kind": "reviewer"},
            {"id": "decide", "type": "human-decision", "question": "Next step?", "options": [
                {"id": "fix", "next": "end", "show_condition": "output-contains:bug"},
                {"id": "ship", "next": "end", "show_condition": "always"},
                {"id": "deploy", "next": "end", "show_condition": {"type": "has-files"}}
            ]},
            {"id": "end", "type": "end"}
        ],
        "edges": [
            {"from": "start", "to": "review"},
            {"from": "review", "to": "decide"}
        ]
    }

    @pytest.fixture
    def graph(self):
        """带显示条件选项的工作流图"""
        return WorkflowParser().parse(self.DEFINITION)

    @staticmethod
    def _recorder(answer):
        offered = []

        async def decide(node_id, question, options):
            offered.append([o.id for o in options])
            return answer

        return decide, offered

    @pytest.mark.asyncio
    @pytest.mark.parametrize("review, expected", [
        ("Looks fine", ["ship"]),
        ("Found a BUG in App.tsx", ["fix", "ship"]),
    ])
    async def test_options_filtered_by_previous_output(self, graph, review, expected):
        """测试按上一步输出过滤选项"""
        decide, offered = self._recorder("ship")
        agent = RecordingAgent({StepKind.REVIEWER: review})

        state = await WorkflowGraphExecutor(graph, agent, decide).start("x")

        assert state.status == ExecutionStatus.COMPLETED
        assert offered == [expected]

    @pytest.mark.asyncio
    async def test_has_files_condition(self, graph):
        """测试上一步产生文件时显示对应选项"""
        decide, offered = self._recorder("deploy")
        result = StepResult(
            step_kind=StepKind.REVIEWER, content="ok",
            artifacts=[ParsedArtifact(path="App.tsx", content="export default function App() {}\n",
                                      language="tsx")]
        )

        state = await WorkflowGraphExecutor(
            graph, RecordingAgent({StepKind.REVIEWER: result}), decide
        ).start("x")

        assert offered == [["ship", "deploy"]]
        assert state.visited_nodes == ["start", "review", "decide", "end"]

    @pytest.mark.asyncio
    async def test_hidden_option_is_rejected(self, graph):
        """测试选择被隐藏的选项导致执行失败"""
        decide, _ = self._recorder("fix")

        state = await WorkflowGraphExecutor(
            graph, RecordingAgent({StepKind.REVIEWER: "Looks fine"}), decide
        ).start("x")

        assert state.status == ExecutionStatus.ERROR
        assert "Unknown option 'fix'" in state.last_error

    @pytest.mark.asyncio
    async def test_pending_decision_lists_visible_options(self, graph):
        """测试等待中的决策只列出可见选项"""
        broker = DecisionBroker()
        executor = WorkflowGraphExecutor(graph, RecordingAgent({StepKind.REVIEWER: "Looks fine"}), broker)

        task = asyncio.create_task(executor.start("x"))
        await _wait_for(lambda: broker.is_waiting("decide"))

        assert [o.id for o in executor.state.pending_decision.options] == ["ship"]

        broker.resolve("decide", "ship")
        state = await asyncio.wait_for(task, timeout=2)
        assert state.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_all_options_offered_without_previous_step(self):
        """测试决策节点之前没有智能体步骤时显示全部选项"""
        definition = {
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "decide", "type": "human-decision", "options": [
                    {"id": "fix", "next": "end", "show_condition": "output-contains:bug"},
                    {"id": "ship", "next": "end"}
                ]},
                {"id": "end", "type": "end"}
            ],
            "edges": [{"from": "start", "to": "decide"}]
        }
        decide, offered = self._recorder("ship")

        await WorkflowGraphExecutor(WorkflowParser().parse(definition), RecordingAgent(), decide).start("x")

        assert offered == [["fix", "ship"]]

    @pytest.mark.asyncio
    async def test_all_options_offered_when_none_visible(self):
        """测试所有选项都被过滤时退回完整列表并记录警告"""
        definition = {
            "nodes": [
                {"id": "start", "type": "start"},
                {"id": "review", "type": "agent", "step_kind": "reviewer"},
                {"id": "decide", "type": "human-decision", "options": [
                    {"id": "fix", "next": "end", "show_condition": "output-contains:bug"}
                ]},
                {"id": "end", "type": "end"}
            ],
            "edges": [{"from": "start", "to": "review"}, {"from": "review", "to": "decide"}]
        }
        decide, offered = self._recorder("fix")
        logs = []

        state = await WorkflowGraphExecutor(
            WorkflowParser().parse(definition), RecordingAgent(), decide,
            on_log=lambda message, level: logs.append((level, message))
        ).start("x")

        assert offered == [["fix"]]
        assert state.status == ExecutionStatus.COMPLETED
        assert any(level == "warning" and "No option of decide" in message for level, message in logs)
