"""
Retry 包装器：为网络边界上的调用提供有界指数退避。

说明：
- 只用于 model call；工具执行失败不在这里重试。
- 判定是否可重试：把异常消息与格式化后的 traceback 文本同 `retryable_errors` 逐个做子串匹配；
  另外 `httpx.HTTPStatusError` 的状态码命中 `retryable_status_codes` 时也视为可重试。
- 不可重试或次数耗尽时，原样重新抛出同一个异常对象（不包装）。
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_ERRORS: Tuple[str, ...] = (
    "Connection error",
    "ECONNREFUSED",
    "ETIMEDOUT",
    "ECONNRESET",
    "ENOTFOUND",
    "ENETUNREACH",
    "EAI_AGAIN",
    "socket hang up",
    "read ECONNRESET",
    # httpx / OS 层面的等价描述
    "ConnectError",
    "ConnectTimeout",
    "ReadTimeout",
    "ReadError",
    "RemoteProtocolError",
    "Connection refused",
    "Connection reset",
    "Network is unreachable",
    "Temporary failure in name resolution",
    "Name or service not known",
    "Server disconnected",
)

DEFAULT_RETRYABLE_STATUS_CODES: Tuple[int, ...] = (429, 500, 502, 503, 504, 529)


@dataclass(frozen=True)
class RetryPolicy:
    """
    重试策略（无状态，按调用传入）。

    字段：
    - max_retries：最多重试次数（总调用次数 = max_retries + 1）
    - initial_delay_ms：首次退避毫秒数
    - max_delay_ms：单次退避上限
    - backoff_multiplier：指数底数
    - retryable_errors：可重试错误的子串匹配表
    - retryable_status_codes：可重试的 HTTP 状态码
    """

    max_retries: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 30000
    backoff_multiplier: float = 2
    retryable_errors: Tuple[str, ...] = DEFAULT_RETRYABLE_ERRORS
    retryable_status_codes: Tuple[int, ...] = DEFAULT_RETRYABLE_STATUS_CODES

    def delay_ms(self, attempt: int) -> float:
        """计算第 `attempt` 次失败后的退避时间（attempt 从 0 开始）。"""

        return min(float(self.initial_delay_ms) * (float(self.backoff_multiplier) ** attempt), float(self.max_delay_ms))

    def with_overrides(self, **overrides: Any) -> "RetryPolicy":
        """返回覆盖部分字段后的新策略（忽略值为 None 的字段）。"""

        fields: Dict[str, Any] = {
            "max_retries": self.max_retries,
            "initial_delay_ms": self.initial_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "backoff_multiplier": self.backoff_multiplier,
            "retryable_errors": self.retryable_errors,
            "retryable_status_codes": self.retryable_status_codes,
        }
        for k, v in overrides.items():
            if k not in fields:
                raise ValueError(f"unknown retry policy field: {k}")
            if v is not None:
                fields[k] = tuple(v) if isinstance(v, list) else v
        return RetryPolicy(**fields)


def is_retryable_error(exc: BaseException, policy: RetryPolicy) -> bool:
    """
    判断异常是否可重试。

    参数：
    - exc：捕获到的异常
    - policy：重试策略

    返回：
    - True：消息或 traceback 命中 `retryable_errors`，或 HTTP 状态码命中 `retryable_status_codes`
    """

    if isinstance(exc, httpx.HTTPStatusError):
        if int(exc.response.status_code) in policy.retryable_status_codes:
            return True

    message = str(exc)
    trace_text = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    for pattern in policy.retryable_errors:
        if pattern in message or pattern in trace_text:
            return True
    return False


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    on_retry: Optional[Callable[[Dict[str, Any]], None]] = None,
) -> T:
    """
    执行 `fn`，对可重试错误做指数退避重试。

    参数：
    - fn：无参 async 工厂；每次尝试都会重新调用以生成新的 awaitable
    - policy：重试策略（默认 `RetryPolicy()`）
    - on_retry：可选；每次即将退避前回调 `{attempt, max_retries, delay_ms, error}`

    返回：
    - `fn()` 的结果

    异常：
    - 不可重试或重试耗尽时，原样抛出最后一次的异常
    """

    pol = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= int(pol.max_retries) or not is_retryable_error(exc, pol):
                raise
            delay_ms = pol.delay_ms(attempt)
            logger.warning(
                "Retryable error (attempt %d/%d), retrying in %.0fms: %s",
                attempt + 1,
                pol.max_retries,
                delay_ms,
                exc,
            )
            if on_retry is not None:
                on_retry(
                    {
                        "attempt": attempt,
                        "max_retries": int(pol.max_retries),
                        "delay_ms": delay_ms,
                        "error": str(exc),
                    }
                )
            await asyncio.sleep(delay_ms / 1000.0)
            attempt += 1
