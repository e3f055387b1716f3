"""
人工决策挂起与恢复
"""
import asyncio
import logging
from typing import Dict, List

from ..exceptions import AgentForgeError
from ..models.execution import PendingDecision
from ..models.workflow import DecisionOption


logger = logging.getLogger(__name__)


class DecisionBroker:
    """
    人工决策回调的默认实现

    每个等待中的节点对应一个 Future，由外部事件通过 resolve() 完成，不做轮询。
    """

    def __init__(self):
        self._futures: Dict[str, asyncio.Future] = {}
        self._requests: Dict[str, PendingDecision] = {}

    async def __call__(self, node_id: str, question: str, options: List[DecisionOption]) -> str:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._futures[node_id] = future
        self._requests[node_id] = PendingDecision(node_id=node_id, question=question, options=list(options))
        logger.info(f"Waiting for human decision on node {node_id}: {question}")
        try:
            return await future
        finally:
            self._futures.pop(node_id, None)
            self._requests.pop(node_id, None)

    def pending(self) -> List[PendingDecision]:
        return list(self._requests.values())

    def is_waiting(self, node_id: str) -> bool:
        return node_id in self._futures

    def resolve(self, node_id: str, option_id: str):
        """以选项ID完成等待中的决策"""
        future = self._futures.get(node_id)
        if future is None or future.done():
            raise AgentForgeError(
                f"No pending decision for node: {node_id}",
                {"node_id": node_id}
            )
        future.set_result(option_id)
        logger.info(f"Resolved decision on node {node_id} with option '{option_id}'")
