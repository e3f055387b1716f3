"""
知识上下文提供者

检索子系统在此只被视为一个文本上下文来源。
"""
from abc import ABC, abstractmethod
from typing import Dict, Optional

from ..models.artifacts import StepKind


class ContextProvider(ABC):
    """文本上下文提供者接口"""

    @abstractmethod
    async def fetch(self, query: str, step_kind: StepKind) -> Optional[str]:
        """返回与请求相关的参考文本，无结果时返回 None"""
        pass


class StaticContextProvider(ContextProvider):
    """按步骤类型返回固定文本（用于配置好的项目说明或测试）"""

    def __init__(self, texts: Dict[StepKind, str], fallback: Optional[str] = None):
        self.texts = texts
        self.fallback = fallback

    async def fetch(self, query: str, step_kind: StepKind) -> Optional[str]:
        return self.texts.get(step_kind, self.fallback)
