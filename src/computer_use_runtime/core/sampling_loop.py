"""
SamplingLoop：model call 与工具派发交替推进的迭代循环。

每个 step：
1. 同步 step 到 SignalBus；cancelling 时结束；paused 时挂起，恢复后再次检查 cancelling
2. 对 transcript 应用 history 变换（cache hint → 截断 → 配对清理 → 图片裁剪）
3. 组装 MessagesRequest，通过 `with_retry` 调用 backend
4. 追加 assistant message（content 经 `response_to_params` 规范化）
5. 没有 tool_use：返回 transcript
6. 按顺序派发每个 tool_use；任何异常：记录日志、发出 error 事件后原样抛出（不追加部分结果）
7. 追加一条包含全部 tool_result 的 user message，step + 1，回到 1

约束：
- 单个 asyncio task 内串行执行，不并行派发工具；
- 取消是协作式的：只在每个 step 开头生效，不打断进行中的 model call 或工具调用。
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from computer_use_runtime.core.utils import abbreviate_for_log
from computer_use_runtime.llm.protocol import (
    STOP_END_TURN,
    MessagesBackend,
    MessagesRequest,
    _validate_messages_backend_protocol,
    response_to_params,
)
from computer_use_runtime.llm.retry import RetryPolicy, with_retry
from computer_use_runtime.prompts.history import HistorySettings, prepare_history
from computer_use_runtime.prompts.system import build_system_block
from computer_use_runtime.signals.bus import RunState, SignalBus
from computer_use_runtime.tools.dispatcher import ToolDispatcher
from computer_use_runtime.tools.protocol import ToolExecutionContext
from computer_use_runtime.tools.results import make_tool_result_block
from computer_use_runtime.tools.versions import (
    DEFAULT_TOOL_VERSION,
    PROMPT_CACHING_BETA_FLAG,
    TOKEN_EFFICIENT_TOOLS_BETA_FLAG,
    get_tool_group,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SamplingSettings:
    """
    一次 run 的模型调用参数。

    字段：
    - model：模型名
    - max_tokens：单次响应最大 token
    - thinking_budget：可选；开启 extended thinking 的 token 预算
    - tool_version：工具 API 版本（决定 computer tool 版本与 beta flag）
    - prompt_caching：是否开启 prompt caching（system block 与 user message 的缓存边界）
    - token_efficient_tools_beta：是否附加 token-efficient tools beta flag
    - history：transcript 变换参数
    """

    model: str
    max_tokens: int = 4096
    thinking_budget: Optional[int] = None
    tool_version: str = DEFAULT_TOOL_VERSION
    prompt_caching: bool = True
    token_efficient_tools_beta: bool = False
    history: HistorySettings = field(default_factory=HistorySettings)

    def betas(self) -> List[str]:
        """本 run 需要的 beta flags（tool group → prompt caching → token-efficient）。"""

        out = [get_tool_group(self.tool_version).beta_flag]
        if self.prompt_caching:
            out.append(PROMPT_CACHING_BETA_FLAG)
        if self.token_efficient_tools_beta:
            out.append(TOKEN_EFFICIENT_TOOLS_BETA_FLAG)
        return out

    def effective_history(self) -> HistorySettings:
        """关闭 prompt caching 时不注入 cache hint。"""

        if self.prompt_caching:
            return self.history
        return HistorySettings(
            max_messages=self.history.max_messages,
            preserve_first_user=self.history.preserve_first_user,
            cache_breakpoints=0,
            images_to_keep=self.history.images_to_keep,
            min_image_removal_threshold=self.history.min_image_removal_threshold,
        )


def _tool_uses(content: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """按出现顺序取出 tool_use blocks。"""

    return [b for b in content if b.get("type") == "tool_use"]


class SamplingLoop:
    """单次 run 的 sampling loop（transcript 原地修改）。"""

    def __init__(
        self,
        *,
        backend: MessagesBackend,
        dispatcher: ToolDispatcher,
        bus: SignalBus,
        system_prompt: str,
        settings: SamplingSettings,
        retry_policy: Optional[RetryPolicy] = None,
        page: Any = None,
        run_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        创建 sampling loop。

        参数：
        - backend：实现 `create_message(request)` 的 LLM backend
        - dispatcher：本 run 的工具派发器
        - bus：本 run 的 SignalBus
        - system_prompt：system prompt 文本
        - settings：模型调用参数
        - retry_policy：model call 的重试策略（默认 `RetryPolicy()`）
        - page：注入 `ToolExecutionContext.page` 的浏览器句柄
        - run_id：可选；用于日志关联
        - metadata：可选；run 级附加信息，注入每次工具调用的 `ToolExecutionContext.metadata`

        异常：
        - ValueError：backend 不满足 MessagesBackend 协议，或 tool_version 未知
        """

        _validate_messages_backend_protocol(backend)
        get_tool_group(settings.tool_version)
        self._backend = backend
        self._dispatcher = dispatcher
        self._bus = bus
        self._system_prompt = system_prompt
        self._settings = settings
        self._retry_policy = retry_policy or RetryPolicy()
        self._page = page
        self._run_id = run_id
        self._metadata: Dict[str, Any] = dict(metadata or {})
        self.cancelled = False

    def _system_blocks(self) -> List[Dict[str, Any]]:
        """system text block；开启 prompt caching 时附带缓存边界。"""

        return [build_system_block(self._system_prompt, cache=self._settings.prompt_caching)]

    def _build_request(self, messages: List[Dict[str, Any]]) -> MessagesRequest:
        """组装本 step 的 MessagesRequest。"""

        s = self._settings
        thinking = {"type": "enabled", "budget_tokens": int(s.thinking_budget)} if s.thinking_budget else None
        return MessagesRequest(
            model=s.model,
            messages=messages,
            system=self._system_blocks(),
            tools=self._dispatcher.to_params(),
            max_tokens=s.max_tokens,
            betas=s.betas(),
            thinking=thinking,
        )

    async def _should_stop(self) -> bool:
        """step 开头的 pause/cancel 检查。"""

        if self._bus.is_cancelling():
            logger.info("Run cancelled before step %d", self._bus.step)
            return True
        if self._bus.get_state() is RunState.PAUSED:
            logger.info("Run paused at step %d", self._bus.step)
            await self._bus.wait_until_resumed()
            if self._bus.is_cancelling():
                logger.info("Run cancelled while paused at step %d", self._bus.step)
                return True
            logger.info("Run resumed at step %d", self._bus.step)
        return False

    async def _dispatch(self, tool_uses: List[Dict[str, Any]], step: int) -> List[Dict[str, Any]]:
        """按顺序派发 tool_use，返回对应的 tool_result blocks。"""

        ctx = ToolExecutionContext(
            page=self._page,
            cancellation_token=self._bus.cancellation_token,
            run_id=self._run_id,
            step=step,
            metadata=self._metadata,
        )
        results: List[Dict[str, Any]] = []
        for block in tool_uses:
            name = str(block.get("name") or "")
            args = block.get("input")
            if args is None:
                args = {}
            logger.info("Tool %s started (step %d)", name, step)
            logger.debug("Tool %s input: %s", name, abbreviate_for_log(args))
            started = time.monotonic()
            try:
                result = await self._dispatcher.run(name, args, ctx)
            except Exception as exc:
                logger.error(
                    "Tool %s failed (step %d, %.0f ms): %s",
                    name,
                    step,
                    (time.monotonic() - started) * 1000,
                    exc,
                    exc_info=True,
                )
                self._bus.emit_error(exc)
                raise
            logger.info(
                "Tool %s completed (step %d, %.0f ms, error=%s)",
                name,
                step,
                (time.monotonic() - started) * 1000,
                result.is_error,
            )
            results.append(make_tool_result_block(result, str(block.get("id"))))
        return results

    async def run(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        运行 loop 直到模型不再请求工具或 run 被取消。

        参数：
        - messages：初始 transcript（通常是一条 user query；原地修改）

        返回：
        - 同一个 transcript 对象；因 step 开头的取消检查而结束时 `self.cancelled` 为 True

        异常：
        - 工具派发失败：原样抛出（已发出 error 事件）
        - model call 失败且不可重试/重试耗尽：原样抛出
        """

        self.cancelled = False
        step = 0
        while True:
            self._bus.set_step(step)
            if await self._should_stop():
                self.cancelled = True
                return messages

            prepare_history(messages, self._settings.effective_history())
            request = self._build_request(messages)
            response = await with_retry(lambda: self._backend.create_message(request), self._retry_policy)

            content = response_to_params(response.content)
            logger.info("Model response (step %d): stop_reason=%s", step, response.stop_reason)
            logger.debug("Model content (step %d): %s", step, abbreviate_for_log(content))
            messages.append({"role": "assistant", "content": content})

            tool_uses = _tool_uses(content)
            if not tool_uses:
                if response.stop_reason != STOP_END_TURN:
                    logger.info("No tool use requested (stop_reason=%s); ending loop", response.stop_reason)
                return messages

            results = await self._dispatch(tool_uses, step)
            messages.append({"role": "user", "content": results})
            step += 1
