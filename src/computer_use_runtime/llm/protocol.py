"""
LLM 协议：MessagesRequest / MessagesResponse / MessagesBackend。

设计目标：
- 用单一参数对象承载一次 model call 的全部信息（transcript、system、tools、betas、thinking）；
- content block 形态沿用 provider 的 tool-use 协议，原样透传，保证兼容；
- 允许通过 `extra` 承载 provider 特有选项（保持协议签名稳定）。
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

from computer_use_runtime.core.errors import ProviderProtocolError

STOP_END_TURN = "end_turn"
STOP_TOOL_USE = "tool_use"


@dataclass(frozen=True)
class MessagesRequest:
    """
    MessagesRequest：一次 model call 的请求参数包。

    字段：
    - model：模型名
    - messages：transcript（provider 形态的 message 列表；调用方保证已经过 history 变换）
    - system：system blocks（通常一个 text block，可带 cache_control）
    - tools：tool 定义列表（`to_params()` 的结果）
    - max_tokens：最大输出 token
    - betas：需要开启的 beta flags
    - thinking：可选；`{"type": "enabled", "budget_tokens": n}`
    - extra：provider 特有扩展字段（backend 可忽略，但必须可传递）
    """

    model: str
    messages: List[Dict[str, Any]]
    system: List[Dict[str, Any]] = field(default_factory=list)
    tools: List[Dict[str, Any]] = field(default_factory=list)
    max_tokens: int = 4096
    betas: List[str] = field(default_factory=list)
    thinking: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class MessagesResponse(BaseModel):
    """
    MessagesResponse：一次 model call 的响应（只保留 loop 需要的字段）。

    字段：
    - stop_reason：`end_turn` / `tool_use` / 其它
    - content：有序 content blocks（provider 原始形态）
    - usage：可选 token 统计
    """

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    model: Optional[str] = None
    stop_reason: Optional[str] = None
    content: List[Dict[str, Any]] = Field(default_factory=list)
    usage: Optional[Dict[str, Any]] = None


class MessagesBackend(Protocol):
    """LLM backend 抽象（非 streaming 的 Messages 调用）。"""

    async def create_message(self, request: MessagesRequest) -> MessagesResponse:
        """发起一次 model call 并返回完整响应。"""

        ...


def _validate_messages_backend_protocol(backend: Any) -> None:
    """
    校验 MessagesBackend 协议（fail-fast）。

    约束：
    - backend 必须实现 `create_message(request: MessagesRequest)`；
    - 除 request 外不允许出现无默认值的额外参数。

    异常：
    - ValueError：协议不匹配
    """

    fn = getattr(backend, "create_message", None)
    if not callable(fn):
        raise ValueError("MessagesBackend protocol mismatch: missing create_message(request: MessagesRequest)")

    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        # fail-open：无法可靠 introspect 时，至少确保可调用
        return

    params = list(sig.parameters.values())
    if params and params[0].name in ("self", "cls"):
        params = params[1:]

    if not params:
        raise ValueError("MessagesBackend.create_message must accept a `request` parameter")
    if params[0].name != "request":
        raise ValueError("MessagesBackend.create_message must be create_message(request=...)")
    for p in params[1:]:
        if p.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        if p.default is inspect.Parameter.empty:
            raise ValueError("MessagesBackend.create_message must accept only `request`")


def response_to_params(content: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    把响应 content blocks 转换为可回注 transcript 的 param blocks。

    映射：
    - text：保留 text；存在 citations 时一并保留
    - thinking：保留 thinking + signature
    - redacted_thinking：保留 data
    - tool_use：保留 id/name/input
    - 其它类型：原样透传

    异常：
    - ProviderProtocolError：block 不是 dict 或缺少 `type`
    """

    out: List[Dict[str, Any]] = []
    for block in content:
        if not isinstance(block, dict) or not isinstance(block.get("type"), str):
            raise ProviderProtocolError(f"malformed content block in model response: {block!r}")
        btype = block["type"]
        if btype == "text":
            item: Dict[str, Any] = {"type": "text", "text": block.get("text", "")}
            if block.get("citations"):
                item["citations"] = block["citations"]
            out.append(item)
        elif btype == "thinking":
            item = {"type": "thinking", "thinking": block.get("thinking", "")}
            if "signature" in block:
                item["signature"] = block["signature"]
            out.append(item)
        elif btype == "redacted_thinking":
            out.append({"type": "redacted_thinking", "data": block.get("data", "")})
        elif btype == "tool_use":
            if not isinstance(block.get("id"), str) or not isinstance(block.get("name"), str):
                raise ProviderProtocolError(f"tool_use block missing id/name: {block!r}")
            out.append({"type": "tool_use", "id": block["id"], "name": block["name"], "input": block.get("input") or {}})
        else:
            out.append(dict(block))
    return out
