"""
Fake LLM backend（离线回归夹具）。

用途：
- 在不依赖真实模型/外网的情况下，回归 sampling loop 的编排逻辑（tool_use → 执行 → 回注 → 继续）。
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from computer_use_runtime.llm.protocol import MessagesRequest, MessagesResponse


@dataclass(frozen=True)
class FakeMessagesCall:
    """
    一次 model call 的预期结果。

    字段：
    - content：响应 content blocks
    - stop_reason：停止原因（默认 `end_turn`）
    - error：可选；设置时本次调用抛出该异常而不是返回响应
    """

    content: List[Dict[str, Any]] = field(default_factory=list)
    stop_reason: Optional[str] = "end_turn"
    error: Optional[BaseException] = None


class FakeMessagesBackend:
    """
    用脚本化响应序列模拟 LLM。

    说明：
    - 每次 `create_message(...)` 消耗一个 `FakeMessagesCall`；
    - `requests` 记录每次收到的请求（messages 为调用时刻的深拷贝，便于断言 history 变换结果）。
    """

    def __init__(self, calls: Sequence[FakeMessagesCall]) -> None:
        """
        创建一个可预测的 fake backend。

        参数：
        - `calls`：预设的调用序列；每次 `create_message` 会消费一个条目。
        """

        self._calls = list(calls)
        self._idx = 0
        self.requests: List[MessagesRequest] = []

    @property
    def calls_made(self) -> int:
        """已消费的调用次数（包含抛异常的调用）。"""

        return self._idx

    async def create_message(self, request: MessagesRequest) -> MessagesResponse:
        """按预设序列返回响应（或抛出预设异常）。"""

        if self._idx >= len(self._calls):
            raise ValueError("FakeMessagesBackend calls 已耗尽")
        call = self._calls[self._idx]
        self._idx += 1
        self.requests.append(
            MessagesRequest(
                model=request.model,
                messages=copy.deepcopy(request.messages),
                system=copy.deepcopy(request.system),
                tools=list(request.tools),
                max_tokens=request.max_tokens,
                betas=list(request.betas),
                thinking=request.thinking,
                extra=dict(request.extra),
            )
        )
        if call.error is not None:
            raise call.error
        return MessagesResponse(stop_reason=call.stop_reason, content=copy.deepcopy(call.content))
