"""
进程内事件总线
"""
import asyncio
from typing import Dict, Any, List, Callable, Optional
from dataclasses import dataclass, field
from datetime import datetime
import logging


logger = logging.getLogger(__name__)


@dataclass
class Event:
    """事件对象"""
    topic: str
    payload: Any
    timestamp: datetime = field(default_factory=datetime.utcnow)
    headers: Dict[str, str] = field(default_factory=dict)


class EventBus:
    """异步发布/订阅事件总线，支持 "*" 通配订阅"""

    WILDCARD = "*"

    def __init__(self, history_size: int = 200):
        self.subscribers: Dict[str, List[Callable]] = {}
        self.history: List[Event] = []
        self.history_size = history_size
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, payload: Any, headers: Optional[Dict[str, str]] = None):
        """发布事件"""
        event = Event(
            topic=topic,
            payload=payload,
            headers=headers or {}
        )

        # 获取订阅者并记录历史
        async with self._lock:
            subscribers = list(self.subscribers.get(topic, []))
            subscribers.extend(self.subscribers.get(self.WILDCARD, []))
            self.history.append(event)
            if len(self.history) > self.history_size:
                del self.history[:len(self.history) - self.history_size]

        # 异步通知所有订阅者
        tasks = [
            asyncio.create_task(self._notify_subscriber(subscriber, event))
            for subscriber in subscribers
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.debug(f"Published event to topic '{topic}' with {len(subscribers)} subscribers")

    async def subscribe(self, topic: str, handler: Callable):
        """订阅事件"""
        async with self._lock:
            self.subscribers.setdefault(topic, []).append(handler)

        logger.info(f"Subscribed to topic '{topic}'")

    async def unsubscribe(self, topic: str, handler: Callable):
        """取消订阅"""
        async with self._lock:
            if topic in self.subscribers and handler in self.subscribers[topic]:
                self.subscribers[topic].remove(handler)
                if not self.subscribers[topic]:
                    del self.subscribers[topic]

        logger.info(f"Unsubscribed from topic '{topic}'")

    def recent(self, execution_id: Optional[str] = None, limit: int = 50) -> List[Event]:
        """获取最近的事件，可按执行ID过滤"""
        events = self.history
        if execution_id:
            events = [
                e for e in events
                if isinstance(e.payload, dict) and e.payload.get("execution_id") == execution_id
            ]
        return events[-limit:]

    async def _notify_subscriber(self, subscriber: Callable, event: Event):
        """通知订阅者"""
        try:
            if asyncio.iscoroutinefunction(subscriber):
                await subscriber(event)
            else:
                subscriber(event)
        except Exception as e:
            logger.error(f"Error notifying subscriber for topic '{event.topic}': {e}", exc_info=True)
