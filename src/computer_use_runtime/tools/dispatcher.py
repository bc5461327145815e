"""
ToolDispatcher：把模型发出的 tool_use 请求路由到工具、校验并执行。

规则：
- `register(tools)`：每个 run 构建 name -> tool 表；同名后注册者覆盖先注册者（run 级 last-write-wins，
  与 CapabilityRegistry 的“重复即拒绝”不同）。
- `run(name, args, ctx)`：按注册时确定的 `ToolKind` 校验：
  - ACTION：`args["action"]` 必须属于工具的 action 集合
  - CAPABILITY：`method` 必须存在，`args` 必须符合该 capability 的 schema（`validate_capability_args=False` 时跳过 schema）
  - FUNCTION：若声明了 `input_model`，按其校验
- 契约违规一律抛 `ToolError`（不静默丢弃）；handler 异常原样向上传播，不在这里重试。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, cast

from computer_use_runtime.core.errors import ToolError
from computer_use_runtime.tools.protocol import (
    ActionTool,
    BaseTool,
    CapabilityTool,
    FunctionTool,
    ToolExecutionContext,
    ToolKind,
    ToolResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegisteredTool:
    """注册表条目：工具实例 + 注册时确定的类别标签。"""

    kind: ToolKind
    tool: BaseTool


class ToolDispatcher:
    """一次 run 的工具派发器。"""

    def __init__(self, tools: Iterable[BaseTool] = (), *, validate_capability_args: bool = True) -> None:
        """
        创建派发器并注册初始工具。

        参数：
        - tools：初始工具
        - validate_capability_args：是否按 capability 的 args_schema 校验参数（对应 `tools.capabilities.validate_inputs`）
        """

        self._tools: Dict[str, RegisteredTool] = {}
        self._validate_capability_args = bool(validate_capability_args)
        self.register(tools)

    def register(self, tools: Iterable[BaseTool]) -> None:
        """
        注册工具（同名覆盖）。

        异常：
        - ToolError：工具未声明合法的 `kind`
        """

        for tool in tools:
            kind = getattr(tool, "kind", None)
            if not isinstance(kind, ToolKind):
                raise ToolError(f"Tool {getattr(tool, 'name', tool)!r} does not declare a ToolKind")
            if tool.name in self._tools:
                logger.debug("Tool %s overridden by a later registration", tool.name)
            self._tools[tool.name] = RegisteredTool(kind=kind, tool=tool)

    @property
    def tools(self) -> Mapping[str, RegisteredTool]:
        """当前注册表（只读视图）。"""

        return dict(self._tools)

    def to_params(self) -> List[Dict[str, Any]]:
        """返回全部工具定义（按注册顺序）。"""

        return [entry.tool.to_params() for entry in self._tools.values()]

    def _validate(self, entry: RegisteredTool, name: str, args: Dict[str, Any]) -> None:
        """按工具类别做派发前校验。"""

        if entry.kind is ToolKind.ACTION:
            action_tool = cast(ActionTool, entry.tool)
            action = args.get("action")
            if not isinstance(action, str) or action not in action_tool.actions:
                raise ToolError(f"Invalid action {action} for tool {name}")
            return

        if entry.kind is ToolKind.CAPABILITY:
            capability_tool = cast(CapabilityTool, entry.tool)
            method = args.get("method")
            method_args = args.get("args")
            if not isinstance(method, str) or not method or not isinstance(method_args, list):
                raise ToolError(f"Invalid input for {name} tool: method and args are required")
            capability = capability_tool.capabilities.get(method)
            if capability is None:
                supported = ", ".join(capability_tool.capabilities.keys())
                raise ToolError(f"Unsupported method: {method}. Supported methods: {supported}")
            if not self._validate_capability_args:
                return
            errors = capability.validate_args(method_args)
            if errors:
                raise ToolError(f"Invalid arguments for {method}: {'; '.join(errors)}")
            return

        errors = cast(FunctionTool, entry.tool).validate_args(args)
        if errors:
            raise ToolError(f"Invalid input for tool {name}: {'; '.join(errors)}")

    async def run(self, name: str, args: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        """
        执行一次工具调用。

        参数：
        - name：工具名
        - args：模型给出的入参
        - ctx：执行上下文

        返回：
        - ToolResult

        异常：
        - ToolError：未知工具、action/method 非法、参数形态不符
        - 其它：工具 handler 抛出的异常原样传播
        """

        entry = self._tools.get(name)
        if entry is None:
            raise ToolError(f"Tool {name} not found")
        if not isinstance(args, dict):
            raise ToolError(f"Invalid input for tool {name}: expected an object")
        self._validate(entry, name, args)
        return await entry.tool.call(args, ctx)
