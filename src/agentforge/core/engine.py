"""
工作流图执行器
"""
import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from uuid import uuid4

from ..exceptions import AgentForgeError, GraphIntegrityError
from ..integrations.event_bus import EventBus
from ..models.artifacts import StepKind, StepResult
from ..models.execution import (
    ExecutionEventType, ExecutionStatus, NodeResult, PendingDecision, WorkflowExecutionState
)
from ..models.workflow import ConditionType, DecisionOption, Node, NodeKind, WorkflowGraph
from .conditions import StepOutcome, select_edge, visible_options


logger = logging.getLogger(__name__)


AgentExecuteCallback = Callable[[StepKind, str, Optional[str]], Awaitable[Union[StepResult, str]]]
HumanDecisionCallback = Callable[[str, str, List[DecisionOption]], Awaitable[str]]
StateChangeCallback = Callable[[WorkflowExecutionState], Any]
LogCallback = Callable[[str, str], Any]

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class WorkflowGraphExecutor:
    """
    工作流图执行器

    单一控制流依次执行节点：智能体节点调用宿主回调，人工决策节点挂起直到外部决策，
    结束节点完成执行。stop/pause/resume 都是协作式的，只在节点边界生效；
    进行中的模型调用不会被中断。
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        on_agent_execute: AgentExecuteCallback,
        on_human_decision: HumanDecisionCallback,
        on_state_change: Optional[StateChangeCallback] = None,
        on_log: Optional[LogCallback] = None,
        event_bus: Optional[EventBus] = None,
        execution_id: Optional[str] = None
    ):
        errors, warnings = graph.validate()
        if errors:
            raise GraphIntegrityError("Workflow graph is invalid", errors=errors)
        for warning in warnings:
            logger.warning(f"Workflow {graph.id}: {warning}")

        self.graph = graph
        self.on_agent_execute = on_agent_execute
        self.on_human_decision = on_human_decision
        self.on_state_change = on_state_change
        self.on_log = on_log
        self.event_bus = event_bus
        self.execution_id = execution_id or str(uuid4())

        self.state = WorkflowExecutionState()
        self._running = False
        self._stop_requested = False
        self._stop_event: Optional[asyncio.Event] = None
        self._resume_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._running

    # 控制接口

    def stop(self):
        """请求停止（在下一个节点边界生效，同时释放等待中的人工决策）"""
        if not self._running:
            return
        self._stop_requested = True
        self._stop_event.set()
        logger.info(f"Stop requested for execution {self.execution_id}")

    def pause(self):
        """请求暂停（在下一个节点边界生效）"""
        if self._running and self._resume_event.is_set():
            self._resume_event.clear()
            logger.info(f"Pause requested for execution {self.execution_id}")

    def resume(self):
        """恢复执行"""
        if self._running and not self._resume_event.is_set():
            self._resume_event.set()
            logger.info(f"Resume requested for execution {self.execution_id}")

    # 执行

    async def start(self, input_text: str) -> WorkflowExecutionState:
        """
        从开始节点遍历到结束节点或被停止

        Returns:
            WorkflowExecutionState: 最终状态；致命错误记录在 last_error 中，不向外抛出
        """
        if self._running:
            raise AgentForgeError("Workflow execution is already running",
                                  {"execution_id": self.execution_id})

        self._running = True
        self._stop_requested = False
        self._stop_event = asyncio.Event()
        self._resume_event = asyncio.Event()
        self._resume_event.set()

        self.state = WorkflowExecutionState()
        self.state.start()
        await self._notify()
        await self._publish(ExecutionEventType.WORKFLOW_STARTED, {"workflow_id": self.graph.id})
        await self._log(f"Workflow {self.graph.name or self.graph.id} started", "info")

        try:
            await self._run(input_text)
        except Exception as e:
            logger.error(f"Workflow execution failed: {self.execution_id}", exc_info=True)
            self.state.fail(str(e))
            await self._notify()
            await self._publish(ExecutionEventType.WORKFLOW_FAILED, {"error": str(e)})
            await self._log(f"Workflow failed: {e}", "error")
        finally:
            self._running = False

        if self._stop_requested and not self.state.is_terminal_state():
            self.state.stop()
            await self._notify()
            await self._publish(ExecutionEventType.WORKFLOW_STOPPED)
            await self._log("Workflow stopped", "warning")

        return self.state

    async def _run(self, input_text: str):
        visit_counts: Dict[str, int] = {}
        current_id = self.graph.start_nodes()[0].id
        previous_output: Optional[str] = None
        outcome = StepOutcome()

        while True:
            if not await self._checkpoint():
                return

            node = self.graph.get_node(current_id)
            if node is None:
                raise GraphIntegrityError(f"Edge points to unknown node: {current_id}", node_id=current_id)

            visit_counts[node.id] = visit_counts.get(node.id, 0) + 1
            if visit_counts[node.id] > node.data.max_visits:
                raise GraphIntegrityError(
                    f"Node {node.id} exceeded its maximum of {node.data.max_visits} visit(s)",
                    node_id=node.id
                )

            self.state.current_node_id = node.id
            await self._notify()

            if node.kind == NodeKind.END:
                self.state.visited_nodes.append(node.id)
                await self._notify()
                self.state.complete()
                await self._notify()
                await self._publish(ExecutionEventType.WORKFLOW_COMPLETED, {"node_id": node.id})
                await self._log("Workflow completed", "info")
                return

            if node.kind == NodeKind.AGENT:
                previous_output, outcome = await self._execute_agent(node, input_text, previous_output)
                next_id = self._next_by_condition(node, outcome)
            elif node.kind == NodeKind.HUMAN_DECISION:
                options = await self._decision_options(
                    node, outcome if previous_output is not None else None
                )
                option_id = await self._await_decision(node, options)
                if option_id is None:
                    return
                next_id = self._route_decision(node, options, option_id)
                self.state.visited_nodes.append(node.id)
                await self._notify()
            else:
                # start / conditional 节点只负责路由
                self.state.visited_nodes.append(node.id)
                await self._notify()
                next_id = self._next_by_condition(node, outcome)

            current_id = next_id

    async def _execute_agent(self, node: Node, input_text: str, previous_output: Optional[str]):
        """执行智能体节点，并记录节点结果与耗时"""
        step_kind = node.data.step_kind
        await self._publish(ExecutionEventType.NODE_STARTED, {
            "node_id": node.id, "step_kind": step_kind.value
        })
        await self._log(f"Running {step_kind.value} step at node {node.label}", "info")

        started = time.perf_counter()
        try:
            result = await self.on_agent_execute(step_kind, input_text, previous_output)
        except Exception as e:
            self.state.node_results[node.id] = NodeResult(
                node_id=node.id, step_kind=step_kind, success=False,
                duration=time.perf_counter() - started, error=str(e)
            )
            raise
        duration = time.perf_counter() - started

        files_generated = issues_found = 0
        if isinstance(result, StepResult):
            output = result.content
            succeeded = result.report is None or result.report.is_acceptable
            error = None
            if not succeeded:
                error = "; ".join(i.message for i in result.report.critical_issues) or (
                    f"validation score {result.report.score}"
                )
            files_generated = len(result.artifacts)
            issues_found = len(result.report.issues) if result.report else 0
            outcome = StepOutcome(output=output, succeeded=succeeded, has_issues=result.has_issues,
                                  error=error, files_generated=files_generated)
            for warning in result.warnings:
                await self._log(f"{node.label}: {warning}", "warning")
        else:
            output = "" if result is None else str(result)
            outcome = StepOutcome(output=output)

        self.state.node_results[node.id] = NodeResult(
            node_id=node.id,
            step_kind=step_kind,
            success=outcome.succeeded,
            duration=duration,
            output_chars=len(output),
            files_generated=files_generated,
            issues_found=issues_found,
            error=outcome.error
        )
        self.state.node_outputs[node.id] = output
        self.state.visited_nodes.append(node.id)
        await self._notify()
        await self._publish(ExecutionEventType.NODE_COMPLETED, {
            "node_id": node.id,
            "step_kind": step_kind.value,
            "output_chars": len(output),
            "has_issues": outcome.has_issues,
            "duration": duration
        })
        return output, outcome

    def _next_by_condition(self, node: Node, outcome: StepOutcome) -> str:
        edge = select_edge(self.graph.outgoing_edges(node.id), outcome)
        if edge is None:
            raise GraphIntegrityError(f"No outgoing edge of node {node.id} matches the step result",
                                      node_id=node.id)
        return edge.target

    async def _decision_options(self, node: Node, outcome: Optional[StepOutcome]) -> List[DecisionOption]:
        """按上一步结果过滤选项；全部被过滤时退回完整选项列表"""
        options = visible_options(node.data.options, outcome)
        if not options:
            await self._log(f"No option of {node.label} matches the previous result; offering all options",
                            "warning")
            return list(node.data.options)
        return options

    async def _await_decision(self, node: Node, options: List[DecisionOption]) -> Optional[str]:
        """挂起等待人工决策；被停止时返回 None"""
        question = node.data.question or node.label
        decision = asyncio.ensure_future(
            self.on_human_decision(node.id, question, list(options))
        )
        # 先让决策回调完成登记，外部看到 waiting-human 时即可提交
        await asyncio.sleep(0)

        self.state.status = ExecutionStatus.WAITING_HUMAN
        self.state.pending_decision = PendingDecision(
            node_id=node.id, question=question, options=list(options)
        )
        await self._notify()
        await self._publish(ExecutionEventType.WAITING_HUMAN, {
            "node_id": node.id,
            "question": question,
            "options": [o.to_dict() for o in options]
        })
        await self._log(f"Waiting for human decision: {question}", "info")

        stopper = asyncio.ensure_future(self._stop_event.wait())
        done, _ = await asyncio.wait({decision, stopper}, return_when=asyncio.FIRST_COMPLETED)

        if decision not in done:
            decision.cancel()
            return None
        stopper.cancel()

        option_id = decision.result()
        self.state.status = ExecutionStatus.RUNNING
        self.state.pending_decision = None
        await self._notify()
        await self._log(f"Decision on {node.label}: {option_id}", "info")
        return option_id

    def _route_decision(self, node: Node, options: List[DecisionOption], option_id: str) -> str:
        """按选项ID选择出边：先匹配 option 边，再用选项的 next_node_id"""
        option = next((o for o in options if o.id == option_id), None)
        if option is None:
            raise GraphIntegrityError(
                f"Unknown option '{option_id}' for decision node {node.id}", node_id=node.id
            )

        for edge in self.graph.outgoing_edges(node.id):
            if (edge.condition is not None and edge.condition.type == ConditionType.OPTION
                    and edge.condition.value == option_id):
                return edge.target
        if option.next_node_id:
            return option.next_node_id
        raise GraphIntegrityError(
            f"No edge of decision node {node.id} matches option '{option_id}'", node_id=node.id
        )

    def statistics(self) -> Dict[str, Any]:
        """当前执行的统计信息"""
        return self.state.statistics(len(self.graph.nodes))

    async def _checkpoint(self) -> bool:
        """节点边界检查：处理暂停与停止，返回是否继续"""
        if self._stop_requested:
            return False
        if self._resume_event.is_set():
            return True

        self.state.status = ExecutionStatus.PAUSED
        await self._notify()
        await self._publish(ExecutionEventType.WORKFLOW_PAUSED)
        await self._log("Workflow paused", "info")

        resume_wait = asyncio.ensure_future(self._resume_event.wait())
        stop_wait = asyncio.ensure_future(self._stop_event.wait())
        _, pending = await asyncio.wait({resume_wait, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()

        if self._stop_requested:
            return False

        self.state.status = ExecutionStatus.RUNNING
        await self._notify()
        await self._publish(ExecutionEventType.WORKFLOW_RESUMED)
        await self._log("Workflow resumed", "info")
        return True

    # 通知

    async def _notify(self):
        """每次状态变化后通知观察者"""
        if self.on_state_change is None:
            return
        try:
            result = self.on_state_change(self.state.snapshot())
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"State change callback failed: {e}", exc_info=True)

    async def _log(self, message: str, level: str = "info"):
        logger.log(_LOG_LEVELS.get(level, logging.INFO), f"[{self.execution_id}] {message}")
        if self.on_log is None:
            return
        try:
            result = self.on_log(message, level)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Log callback failed: {e}", exc_info=True)

    async def _publish(self, event_type: ExecutionEventType, data: Optional[Dict[str, Any]] = None):
        if self.event_bus is None:
            return
        payload = {
            "execution_id": self.execution_id,
            "status": self.state.status.value,
            **(data or {})
        }
        await self.event_bus.publish(event_type.value, payload)
