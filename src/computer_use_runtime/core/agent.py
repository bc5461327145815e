"""
ComputerUseAgent：对外入口（配置装配 + 每次 run 的工具/总线构建 + 结构化输出）。

说明：
- 每次 `execute` 使用独立的 SignalBus（cancelling 是终态）；`AgentController` 转发信号与事件，
  订阅在多次 run 之间保持有效。
- run 之间发送的信号作用于下一次 run（例如在 execute 之前 pause，首个 step 即挂起）。
- 同一个 agent 不支持并发 execute。
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Type, Union

from pydantic import BaseModel

from computer_use_runtime.config.loader import (
    RuntimeConfig,
    _load_yaml_file,
    load_config_dicts,
    load_default_config_dict,
)
from computer_use_runtime.core.errors import LlmError, UserError
from computer_use_runtime.core.run_errors import classify_run_exception
from computer_use_runtime.core.sampling_loop import SamplingLoop, SamplingSettings
from computer_use_runtime.llm.anthropic_messages import AnthropicMessagesBackend
from computer_use_runtime.llm.protocol import MessagesBackend
from computer_use_runtime.llm.retry import RetryPolicy
from computer_use_runtime.prompts.history import HistorySettings
from computer_use_runtime.prompts.system import build_system_prompt
from computer_use_runtime.signals.bus import ControlSignal, RunState, SignalBus, deliver_event
from computer_use_runtime.signals.events import SignalEvent, SignalEventKind, SignalListener
from computer_use_runtime.tools.builtin.computer import make_computer_tools
from computer_use_runtime.tools.builtin.playwright import PLAYWRIGHT_TOOL_NAME, PlaywrightTool
from computer_use_runtime.tools.dispatcher import ToolDispatcher
from computer_use_runtime.tools.protocol import BaseTool, ToolCapability
from computer_use_runtime.tools.registry import CapabilityRegistry, assemble_capabilities, get_default_registry
from computer_use_runtime.tools.versions import get_tool_group

logger = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class AgentController:
    """
    外部控制面：发送 pause/resume/cancel，订阅事件。

    说明：
    - 信号总是作用于“当前或下一次” run 的 SignalBus；
    - 订阅挂在 controller 上，而不是某个 bus 上，因此对之后的每次 run 都生效。
    """

    def __init__(self) -> None:
        """创建 controller（预先准备好下一次 run 的总线）。"""

        self._listeners: Dict[SignalEventKind, List[SignalListener]] = {k: [] for k in SignalEventKind}
        self._bus = self._new_bus()
        self._active = False

    def _new_bus(self) -> SignalBus:
        """创建一个把全部事件转发给 controller 监听器的新总线。"""

        bus = SignalBus()
        for kind in SignalEventKind:
            bus.on(kind, self._forward)
        return bus

    def _forward(self, event: SignalEvent) -> None:
        """转发事件到 controller 监听器。"""

        deliver_event(self._listeners[event.kind], event)

    def _begin_run(self) -> SignalBus:
        """
        标记 run 开始并返回本 run 使用的总线。

        异常：
        - UserError：已有 run 在执行
        """

        if self._active:
            raise UserError("ComputerUseAgent.execute is already running", code="RUN_ALREADY_ACTIVE")
        self._active = True
        return self._bus

    def _end_run(self) -> None:
        """标记 run 结束，并为下一次 run 换上新总线。"""

        self._active = False
        self._bus = self._new_bus()

    @property
    def state(self) -> RunState:
        """当前（或下一次）run 的总线状态。"""

        return self._bus.get_state()

    def signal(self, signal: Union[ControlSignal, str], reason: Optional[str] = None) -> None:
        """
        发送控制信号。

        参数：
        - signal：`pause|resume|cancel`
        - reason：可选；仅 cancel 使用

        异常：
        - ValueError：signal 非法
        """

        self._bus.send(signal, reason)

    def on(self, kind: Union[SignalEventKind, str], callback: SignalListener) -> Callable[[], None]:
        """
        订阅事件，返回反订阅函数。

        异常：
        - ValueError：kind 非法
        """

        bucket = self._listeners[SignalEventKind(kind)]
        bucket.append(callback)

        def _unsubscribe() -> None:
            """移除本次注册的回调。"""

            if callback in bucket:
                bucket.remove(callback)

        return _unsubscribe


def extract_text(message: Dict[str, Any]) -> str:
    """拼接 message 中全部 text block 的文本（content 为字符串时原样返回）。"""

    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(str(b.get("text") or "") for b in content if isinstance(b, dict) and b.get("type") == "text")
    return ""


def parse_json_response(response: str) -> Any:
    """
    从模型文本中解析 JSON。

    顺序：
    1. 代码围栏（```json ... ``` 或 ``` ... ```）内的内容
    2. 文本中第一个 `{` 到最后一个 `}`
    3. 整段文本

    异常：
    - json.JSONDecodeError：均无法解析
    """

    fenced = _FENCED_JSON_RE.search(response)
    if fenced and fenced.group(1):
        return json.loads(fenced.group(1).strip())
    obj = _JSON_OBJECT_RE.search(response)
    if obj:
        return json.loads(obj.group(0))
    return json.loads(response.strip())


def _schema_instructions(query: str, schema: Type[BaseModel]) -> str:
    """在 query 后追加 JSON Schema 输出要求。"""

    json_schema = json.dumps(schema.model_json_schema(), indent=2, ensure_ascii=False)
    return (
        f"{query}\n\n"
        "Please respond with a valid JSON object that matches this JSON Schema:\n"
        f"```json\n{json_schema}\n```\n\n"
        "Respond ONLY with the JSON object, no additional text."
    )


class ComputerUseAgent:
    """浏览器 computer-use agent（playwright page + Anthropic Messages 兼容 backend）。"""

    def __init__(
        self,
        page: Any,
        *,
        backend: Optional[MessagesBackend] = None,
        api_key: Optional[str] = None,
        config: Optional[RuntimeConfig] = None,
        config_paths: Sequence[Union[str, Path]] = (),
        config_overrides: Optional[Dict[str, Any]] = None,
        tools: Sequence[BaseTool] = (),
        playwright_capabilities: Sequence[ToolCapability] = (),
        registry: Optional[CapabilityRegistry] = None,
    ) -> None:
        """
        创建 agent。

        参数：
        - page：playwright `Page`
        - backend：可选；默认按 `llm` 配置创建 `AnthropicMessagesBackend`
        - api_key：可选；仅用于默认 backend（优先于 `llm.api_key_env` 指向的环境变量）
        - config：可选；直接给出已校验配置（此时忽略 config_paths/config_overrides）
        - config_paths：YAML overlay 路径（在包内默认配置之上按顺序合并）
        - config_overrides：dict overlay（最后合并）
        - tools：额外工具（同名时覆盖内置工具）
        - playwright_capabilities：本 agent 的 run 级 capability 覆盖/新增
        - registry：capability 注册表（默认进程级注册表）
        """

        if config is None:
            overlays: List[Dict[str, Any]] = [load_default_config_dict()]
            overlays.extend(_load_yaml_file(Path(p)) for p in config_paths)
            if config_overrides:
                overlays.append(config_overrides)
            config = load_config_dicts(overlays)
        self._config = config
        self._page = page
        self._backend: MessagesBackend = backend or AnthropicMessagesBackend(config.llm, api_key=api_key)
        self._tools = list(tools)
        self._capability_overrides = list(playwright_capabilities)
        self._registry = registry or get_default_registry()

        retry = config.llm.retry
        self._retry_policy = RetryPolicy().with_overrides(
            max_retries=retry.max_retries,
            initial_delay_ms=retry.initial_delay_ms,
            max_delay_ms=retry.max_delay_ms,
            backoff_multiplier=retry.backoff_multiplier,
            retryable_errors=retry.retryable_errors,
            retryable_status_codes=retry.retryable_status_codes,
        )

        self.controller = AgentController()
        self.controller.on(SignalEventKind.PAUSE, lambda e: logger.info("Signal pause at step %d", e.step))
        self.controller.on(SignalEventKind.RESUME, lambda e: logger.info("Signal resume at step %d", e.step))
        self.controller.on(
            SignalEventKind.CANCEL,
            lambda e: logger.info("Signal cancel at step %d (reason=%s)", e.step, getattr(e, "reason", None)),
        )
        self.controller.on(
            SignalEventKind.ERROR,
            lambda e: logger.debug("Agent error at step %d: %s", e.step, getattr(e, "error", None)),
        )

    @property
    def config(self) -> RuntimeConfig:
        """本 agent 的配置。"""

        return self._config

    def _build_tools(self) -> List[BaseTool]:
        """为一次 run 构建工具列表（computer → playwright → 额外工具）。"""

        group = get_tool_group(self._config.run.tool_version)
        tools: List[BaseTool] = list(
            make_computer_tools(
                self._page,
                version=group.computer_api_version,
                config=self._config.execution,
                display_width_px=self._config.tools.display_width_px,
                display_height_px=self._config.tools.display_height_px,
            )
        )
        capabilities = assemble_capabilities(self._registry, PLAYWRIGHT_TOOL_NAME, self._capability_overrides)
        tools.append(PlaywrightTool(self._page, capabilities))
        tools.extend(self._tools)
        return tools

    def _history_settings(self, only_n_most_recent_images: Optional[int]) -> HistorySettings:
        """由配置与 run 参数得到 history 变换参数。"""

        h = self._config.history
        images = only_n_most_recent_images if only_n_most_recent_images is not None else h.only_n_most_recent_images
        return HistorySettings(
            max_messages=h.max_messages,
            preserve_first_user=h.preserve_first_user,
            cache_breakpoints=h.cache_breakpoints,
            images_to_keep=images,
            min_image_removal_threshold=h.min_image_removal_threshold,
        )

    async def execute(
        self,
        query: str,
        schema: Optional[Type[BaseModel]] = None,
        *,
        system_prompt_suffix: Optional[str] = None,
        thinking_budget: Optional[int] = None,
        max_tokens: Optional[int] = None,
        only_n_most_recent_images: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        执行一次浏览器任务。

        参数：
        - query：任务描述
        - schema：可选；pydantic 模型。提供时要求模型输出 JSON 并按该模型校验
        - system_prompt_suffix / thinking_budget / max_tokens：覆盖 `run` 配置
        - only_n_most_recent_images：覆盖 `history.only_n_most_recent_images`
        - metadata：可选；run 级附加信息，工具可从 `ToolExecutionContext.metadata` 读取

        返回：
        - 无 schema：最后一条 message 的文本
        - 有 schema：校验后的模型实例；run 被取消时返回 None

        异常：
        - UserError：thinking_budget 不小于 max_tokens，或已有 run 在执行
        - json.JSONDecodeError / pydantic.ValidationError：结构化输出不合法
        - 其它：sampling loop 抛出的原始异常
        """

        run_cfg = self._config.run
        budget = thinking_budget if thinking_budget is not None else run_cfg.thinking_budget
        tokens = max_tokens if max_tokens is not None else run_cfg.max_tokens
        if budget is not None and budget >= tokens:
            raise UserError(f"max_tokens ({tokens}) must be greater than thinking_budget ({budget})")

        run_id = uuid.uuid4().hex
        started = time.monotonic()
        logger.info(
            "Agent run %s started: model=%s thinking_budget=%s max_tokens=%d schema=%s",
            run_id,
            run_cfg.model,
            budget,
            tokens,
            schema.__name__ if schema is not None else "none",
        )

        tools = self._build_tools()
        playwright_tool = next(t for t in tools if isinstance(t, PlaywrightTool))
        capability_docs = (
            playwright_tool.capability_docs() if self._config.tools.capabilities.include_in_system_prompt else ""
        )
        system_prompt = build_system_prompt(
            suffix=system_prompt_suffix if system_prompt_suffix is not None else run_cfg.system_prompt_suffix,
            capability_docs=capability_docs,
        )
        settings = SamplingSettings(
            model=run_cfg.model,
            max_tokens=tokens,
            thinking_budget=budget,
            tool_version=run_cfg.tool_version,
            prompt_caching=run_cfg.prompt_caching,
            token_efficient_tools_beta=run_cfg.token_efficient_tools_beta,
            history=self._history_settings(only_n_most_recent_images),
        )

        final_query = _schema_instructions(query, schema) if schema is not None else query
        messages: List[Dict[str, Any]] = [{"role": "user", "content": final_query}]

        bus = self.controller._begin_run()
        loop: Optional[SamplingLoop] = None
        try:
            loop = SamplingLoop(
                backend=self._backend,
                dispatcher=ToolDispatcher(
                    tools,
                    validate_capability_args=self._config.tools.capabilities.validate_inputs,
                ),
                bus=bus,
                system_prompt=system_prompt,
                settings=settings,
                retry_policy=self._retry_policy,
                page=self._page,
                run_id=run_id,
                metadata=metadata,
            )
            await loop.run(messages)
        except Exception as exc:
            err = classify_run_exception(exc)
            logger.error(
                "Agent run %s failed after %.0f ms: %s",
                run_id,
                (time.monotonic() - started) * 1000,
                err.to_payload(),
            )
            raise
        finally:
            self.controller._end_run()

        # 以 step 开头检查点观察到的取消为准
        cancelled = loop is not None and loop.cancelled

        duration_ms = (time.monotonic() - started) * 1000
        if cancelled:
            logger.info("Agent run %s cancelled after %.0f ms (%d messages)", run_id, duration_ms, len(messages))
            if schema is not None:
                return None
            last = messages[-1]
            return extract_text(last) if last.get("role") == "assistant" else ""

        if len(messages) < 2:
            raise LlmError("No response received")
        response = extract_text(messages[-1])
        logger.info("Agent run %s completed in %.0f ms (%d messages)", run_id, duration_ms, len(messages))

        if schema is None:
            return response
        return schema.model_validate(parse_json_response(response))
