"""
上游错误分类与重试策略
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

from ..exceptions import AgentForgeError, UpstreamError, UpstreamTransientError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryStrategy(Enum):
    """重试策略"""
    FIXED_DELAY = "fixed_delay"           # 固定延迟
    EXPONENTIAL_BACKOFF = "exponential"   # 指数退避
    LINEAR_BACKOFF = "linear"             # 线性退避


# 可重试的 HTTP 状态码
RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504, 529})

# 可重试的错误信息片段
RETRYABLE_PATTERNS: Tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "timeout",
    "timed out",
    "overloaded",
    "network",
    "connection",
    "502",
    "503",
    "504",
)


@dataclass
class RetryPolicy:
    """重试策略"""
    max_retries: int = 3
    initial_delay: float = 1.0  # 秒
    max_delay: float = 30.0     # 秒
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    backoff_factor: float = 2.0
    jitter: bool = True         # 添加随机抖动
    patterns: Tuple[str, ...] = field(default=RETRYABLE_PATTERNS)

    def compute_delay(self, retry_count: int) -> float:
        """计算第 retry_count 次重试前的等待时间"""
        if self.strategy == RetryStrategy.FIXED_DELAY:
            delay = self.initial_delay
        elif self.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = self.initial_delay * (retry_count + 1)
        else:
            delay = self.initial_delay * (self.backoff_factor ** retry_count)

        delay = min(delay, self.max_delay)

        if self.jitter:
            delay += delay * 0.1 * random.random()

        return delay


def _status_code_of(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable(error: BaseException, patterns: Tuple[str, ...] = RETRYABLE_PATTERNS) -> bool:
    """按状态码与错误信息判断是否可重试"""
    if isinstance(error, UpstreamTransientError):
        return True
    if isinstance(error, UpstreamError) and error.status_code is not None:
        return error.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return True

    status = _status_code_of(error)
    if status is not None:
        return status in RETRYABLE_STATUS_CODES

    message = str(error).lower()
    return any(pattern in message for pattern in patterns)


def classify_error(
    error: BaseException,
    provider: Optional[str] = None,
    patterns: Tuple[str, ...] = RETRYABLE_PATTERNS
) -> UpstreamError:
    """将底层异常转换为带类型的上游异常"""
    if isinstance(error, UpstreamError):
        return error

    status = _status_code_of(error)
    message = f"{provider or 'model'} call failed: {error}"
    if is_retryable(error, patterns):
        return UpstreamTransientError(message, provider=provider, status_code=status, cause=error)
    return UpstreamError(message, provider=provider, status_code=status, cause=error)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
) -> T:
    """
    按重试策略执行异步操作

    只有可重试的失败才会重试；重试耗尽后抛出最后一次的 UpstreamTransientError。
    """
    retry_count = 0
    while True:
        try:
            return await operation()
        except AgentForgeError as e:
            if not isinstance(e, UpstreamTransientError):
                raise
            error = e
        except Exception as e:
            error = classify_error(e, patterns=policy.patterns)
            if not isinstance(error, UpstreamTransientError):
                raise error from e

        if retry_count >= policy.max_retries:
            logger.error(
                f"{description} failed after {retry_count + 1} attempts: {error.message}"
            )
            raise error

        delay = policy.compute_delay(retry_count)
        retry_count += 1
        logger.warning(
            f"{description} failed with transient error, retrying in {delay:.2f}s "
            f"(attempt {retry_count}/{policy.max_retries}): {error.message}"
        )
        await sleep(delay)
