"""
模型调用边界

对上层只暴露 call(messages, model_id, temperature, max_tokens, api_key, provider)。
具体提供商（OpenAI / OpenRouter / Anthropic）在此适配，失败统一转换为 UpstreamError。
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Callable, Union

from ..core.error_handler import RetryPolicy, call_with_retry, classify_error
from ..exceptions import ConfigurationError, UpstreamError


logger = logging.getLogger(__name__)


OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

Message = Dict[str, str]


@dataclass
class ModelResponse:
    """模型响应"""
    content: str
    model: str = ""
    provider: str = ""
    usage: Dict[str, int] = field(default_factory=dict)


class ModelClient(ABC):
    """模型调用接口"""

    @abstractmethod
    async def call(
        self,
        messages: List[Message],
        model_id: str,
        temperature: float,
        max_tokens: int,
        api_key: Optional[str] = None,
        provider: Optional[str] = None
    ) -> ModelResponse:
        """发送有序消息列表并返回文本响应"""
        pass


class OpenAIModelClient(ModelClient):
    """OpenAI 兼容的聊天补全客户端（同时用于 OpenRouter）"""

    def __init__(self, provider: str = "openai", base_url: Optional[str] = None,
                 default_api_key: Optional[str] = None, timeout: float = 120.0):
        self.provider = provider
        self.base_url = base_url or (OPENROUTER_BASE_URL if provider == "openrouter" else None)
        self.default_api_key = default_api_key
        self.timeout = timeout
        self._clients: Dict[str, Any] = {}

    def _get_client(self, api_key: Optional[str]):
        key = api_key or self.default_api_key
        if not key:
            raise ConfigurationError(f"No API key configured for provider {self.provider}")
        if key not in self._clients:
            from openai import AsyncOpenAI
            self._clients[key] = AsyncOpenAI(
                api_key=key, base_url=self.base_url, timeout=self.timeout
            )
        return self._clients[key]

    async def call(
        self,
        messages: List[Message],
        model_id: str,
        temperature: float,
        max_tokens: int,
        api_key: Optional[str] = None,
        provider: Optional[str] = None
    ) -> ModelResponse:
        client = self._get_client(api_key)
        try:
            response = await client.chat.completions.create(
                model=model_id,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens
            )
        except Exception as e:
            raise classify_error(e, self.provider) from e

        if not response.choices:
            raise UpstreamError(f"{self.provider} returned no choices", provider=self.provider)

        content = response.choices[0].message.content or ""
        usage = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens
            }
        return ModelResponse(content=content, model=model_id, provider=self.provider, usage=usage)


class AnthropicModelClient(ModelClient):
    """Anthropic Messages API 客户端"""

    provider = "anthropic"

    def __init__(self, default_api_key: Optional[str] = None, timeout: float = 120.0):
        self.default_api_key = default_api_key
        self.timeout = timeout
        self._clients: Dict[str, Any] = {}

    def _get_client(self, api_key: Optional[str]):
        key = api_key or self.default_api_key
        if not key:
            raise ConfigurationError("No API key configured for provider anthropic")
        if key not in self._clients:
            from anthropic import AsyncAnthropic
            self._clients[key] = AsyncAnthropic(api_key=key, timeout=self.timeout)
        return self._clients[key]

    @staticmethod
    def split_system(messages: List[Message]):
        """拆分 system 消息（Anthropic 要求单独传递），合并相邻同角色消息"""
        system_parts = []
        turns: List[Message] = []
        for message in messages:
            if message["role"] == "system":
                system_parts.append(message["content"])
                continue
            if turns and turns[-1]["role"] == message["role"]:
                turns[-1] = {
                    "role": message["role"],
                    "content": turns[-1]["content"] + "\n\n" + message["content"]
                }
            else:
                turns.append({"role": message["role"], "content": message["content"]})
        return "\n\n".join(system_parts), turns

    async def call(
        self,
        messages: List[Message],
        model_id: str,
        temperature: float,
        max_tokens: int,
        api_key: Optional[str] = None,
        provider: Optional[str] = None
    ) -> ModelResponse:
        client = self._get_client(api_key)
        system, turns = self.split_system(messages)
        kwargs: Dict[str, Any] = {
            "model": model_id,
            "messages": turns,
            "temperature": temperature,
            "max_tokens": max_tokens
        }
        if system:
            kwargs["system"] = system

        try:
            response = await client.messages.create(**kwargs)
        except Exception as e:
            raise classify_error(e, self.provider) from e

        content = "".join(
            getattr(block, "text", "") for block in response.content
            if getattr(block, "type", "text") == "text"
        )
        usage = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": response.usage.input_tokens,
                "completion_tokens": response.usage.output_tokens,
                "total_tokens": response.usage.input_tokens + response.usage.output_tokens
            }
        return ModelResponse(content=content, model=model_id, provider=self.provider, usage=usage)


class MockModelClient(ModelClient):
    """模拟模型客户端（用于测试和离线运行）"""

    def __init__(self, responses: Union[List[str], Callable[[List[Message]], str], None] = None,
                 default: str = "OK"):
        self.responses = responses
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    async def call(
        self,
        messages: List[Message],
        model_id: str,
        temperature: float,
        max_tokens: int,
        api_key: Optional[str] = None,
        provider: Optional[str] = None
    ) -> ModelResponse:
        self.calls.append({
            "messages": [dict(m) for m in messages],
            "model_id": model_id,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "provider": provider
        })

        if callable(self.responses):
            content = self.responses(messages)
        elif self.responses:
            content = self.responses.pop(0)
        else:
            content = self.default

        return ModelResponse(content=content, model=model_id, provider="mock")


class ProviderRouter(ModelClient):
    """按 provider 分发到具体客户端"""

    def __init__(self, clients: Dict[str, ModelClient], default_provider: str = "openai"):
        self.clients = clients
        self.default_provider = default_provider

    async def call(
        self,
        messages: List[Message],
        model_id: str,
        temperature: float,
        max_tokens: int,
        api_key: Optional[str] = None,
        provider: Optional[str] = None
    ) -> ModelResponse:
        name = provider or self.default_provider
        client = self.clients.get(name)
        if client is None:
            raise ConfigurationError(
                f"No model client registered for provider: {name}",
                {"registered": sorted(self.clients)}
            )
        return await client.call(messages, model_id, temperature, max_tokens, api_key, name)


class RetryingModelClient(ModelClient):
    """对可重试失败执行指数退避重试的包装客户端"""

    def __init__(self, inner: ModelClient, policy: Optional[RetryPolicy] = None):
        self.inner = inner
        self.policy = policy or RetryPolicy()

    async def call(
        self,
        messages: List[Message],
        model_id: str,
        temperature: float,
        max_tokens: int,
        api_key: Optional[str] = None,
        provider: Optional[str] = None
    ) -> ModelResponse:
        async def operation():
            return await self.inner.call(
                messages, model_id, temperature, max_tokens, api_key, provider
            )

        return await call_with_retry(
            operation, self.policy, description=f"{provider or 'model'} call ({model_id})"
        )


def build_model_client(settings, mock_responses: Optional[List[str]] = None) -> ModelClient:
    """根据配置构建带重试的模型客户端"""
    clients: Dict[str, ModelClient] = {
        "openai": OpenAIModelClient("openai", default_api_key=settings.openai_api_key),
        "openrouter": OpenAIModelClient("openrouter", default_api_key=settings.openrouter_api_key),
        "anthropic": AnthropicModelClient(default_api_key=settings.anthropic_api_key),
        "mock": MockModelClient(mock_responses),
    }
    router = ProviderRouter(clients, default_provider=settings.default_provider)
    policy = RetryPolicy(
        max_retries=settings.retry_max_attempts,
        initial_delay=settings.retry_initial_delay,
        max_delay=settings.retry_max_delay
    )
    logger.info(f"Model client ready (default provider: {settings.default_provider})")
    return RetryingModelClient(router, policy)
