"""
LLM backend（Anthropic-compatible Messages API）。

提供：
- 协议对象（MessagesRequest/MessagesResponse/MessagesBackend）
- httpx 网络实现与离线 Fake backend
- model call 边界的 Retry 包装器
"""

from __future__ import annotations

from computer_use_runtime.llm.anthropic_messages import AnthropicMessagesBackend
from computer_use_runtime.llm.fake import FakeMessagesBackend, FakeMessagesCall
from computer_use_runtime.llm.protocol import MessagesBackend, MessagesRequest, MessagesResponse
from computer_use_runtime.llm.retry import RetryPolicy, with_retry

__all__ = [
    "AnthropicMessagesBackend",
    "FakeMessagesBackend",
    "FakeMessagesCall",
    "MessagesBackend",
    "MessagesRequest",
    "MessagesResponse",
    "RetryPolicy",
    "with_retry",
]
