"""
Anthropic-compatible `/v1/messages` backend（网络层）。

说明：
- 非 streaming：一次请求返回完整 message；
- 本模块不做重试：重试统一由 sampling loop 在 model call 边界通过 `with_retry` 施加；
- 非 2xx 时先读取 body 再 `raise_for_status()`，保证上层错误分类能看到 provider 的错误消息。
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

import httpx

from computer_use_runtime.config.loader import RuntimeLlmConfig
from computer_use_runtime.core.errors import ProviderProtocolError
from computer_use_runtime.llm.protocol import MessagesRequest, MessagesResponse


class AnthropicMessagesBackend:
    """Anthropic Messages API 实现（httpx）。"""

    def __init__(
        self,
        cfg: RuntimeLlmConfig,
        *,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        创建 backend。

        参数：
        - `cfg`：LLM 配置（base_url、api_key_env、anthropic_version、timeout 等）
        - `api_key`：可选的 API key 覆盖（仅内存；优先于环境变量）
        - `transport`：可选的 httpx transport（离线测试注入 `httpx.MockTransport`）
        """

        self._cfg = cfg
        self._api_key_override = api_key
        self._transport = transport

    def _endpoint(self) -> str:
        """返回 `/v1/messages` 的完整 URL。"""

        base = self._cfg.base_url.rstrip("/")
        return f"{base}/v1/messages"

    def _headers(self, request: MessagesRequest) -> Dict[str, str]:
        """
        构造请求头。

        异常：
        - 缺少 API key（override 与 env 均为空）时抛 `ValueError`
        """

        key = self._api_key_override or os.environ.get(self._cfg.api_key_env, "")
        if not key:
            raise ValueError(f"缺少 API key 环境变量：{self._cfg.api_key_env}")
        headers = {
            "content-type": "application/json",
            "x-api-key": key,
            "anthropic-version": self._cfg.anthropic_version,
        }
        if request.betas:
            headers["anthropic-beta"] = ",".join(request.betas)
        return headers

    def _payload(self, request: MessagesRequest) -> Dict[str, Any]:
        """把 MessagesRequest 映射为 JSON body。"""

        payload: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": int(request.max_tokens),
            "messages": request.messages,
        }
        if request.system:
            payload["system"] = request.system
        if request.tools:
            payload["tools"] = request.tools
        if request.thinking is not None:
            payload["thinking"] = dict(request.thinking)
        for k, v in request.extra.items():
            payload.setdefault(k, v)
        return payload

    async def create_message(self, request: MessagesRequest) -> MessagesResponse:
        """
        发起一次 Messages 请求。

        异常：
        - httpx.HTTPStatusError：非 2xx
        - httpx.RequestError：网络错误
        - ProviderProtocolError：响应 body 不是 JSON object
        """

        timeout = httpx.Timeout(self._cfg.timeout_sec)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            resp = await client.post(self._endpoint(), json=self._payload(request), headers=self._headers(request))
            resp.raise_for_status()
            data = resp.json()
        if not isinstance(data, dict):
            raise ProviderProtocolError(f"unexpected Messages response body: {type(data).__name__}")
        return MessagesResponse.model_validate(data)
