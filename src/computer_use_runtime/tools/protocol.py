"""
Tool 协议（ToolResult / ToolExecutionContext / ToolCapability / tool 基类）。

本模块只定义“可实现级”的最小协议：
- ToolResult：工具执行输出（output/error/base64_image/system）
- ToolExecutionContext：派发层注入的执行上下文（浏览器 page、取消令牌、run 元信息）
- ToolKind：注册时即确定的工具类别标签（action / capability / function）
- ToolCapability：capability-based tool 暴露的单个 method（带参数 schema 与 handler）
- ActionTool / CapabilityTool / FunctionTool：三类工具的基类
"""

from __future__ import annotations

import functools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Dict, FrozenSet, List, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from computer_use_runtime.signals.cancellation import CancellationToken


class ToolResult(BaseModel):
    """
    工具执行结果。

    字段：
    - output：文本输出
    - error：错误文本（存在时回注为 `is_error=true` 的 tool_result）
    - base64_image：可选 png 截图（base64）
    - system：可选系统备注（回注时以 `<system>...</system>` 前缀拼到文本前）
    """

    model_config = ConfigDict(extra="forbid")

    output: Optional[str] = None
    error: Optional[str] = None
    base64_image: Optional[str] = None
    system: Optional[str] = None

    @property
    def is_error(self) -> bool:
        """是否为错误结果。"""

        return bool(self.error)


@dataclass
class ToolExecutionContext:
    """
    Tool 执行上下文（派发层注入）。

    字段：
    - page：浏览器会话句柄（通常为 playwright `Page`；按鸭子类型使用）
    - cancellation_token：可选；协作方可据此提前结束长耗时操作
    - run_id：可选；用于日志关联
    - step：当前 sampling loop step
    - metadata：run 级别的任意附加信息
    """

    page: Any = None
    cancellation_token: Optional[CancellationToken] = None
    run_id: Optional[str] = None
    step: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


class ToolKind(str, Enum):
    """工具类别（注册时确定，不在派发时根据形态推断）。"""

    ACTION = "action"
    CAPABILITY = "capability"
    FUNCTION = "function"


CapabilityHandler = Callable[[Any, List[str]], Awaitable[ToolResult]]


@functools.lru_cache(maxsize=None)
def _type_adapter(schema: Any) -> TypeAdapter:
    """为参数 schema 构建（并缓存）pydantic TypeAdapter。"""

    return TypeAdapter(schema)


def _format_validation_error(exc: ValidationError) -> List[str]:
    """把 pydantic ValidationError 转成 `loc: msg` 文本列表。"""

    out: List[str] = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ())) or "args"
        out.append(f"{loc}: {err.get('msg', 'invalid')}")
    return out


@dataclass(frozen=True)
class ToolCapability:
    """
    capability-based tool 的单个 method。

    字段：
    - tool：所属工具名（例如 `playwright`）
    - method：method 名（例如 `goto`）
    - description：一句话说明（进入 system prompt 概览）
    - usage：多行用法说明（生成文档时逐行编号）
    - handler：`async handler(page, args) -> ToolResult`
    - args_schema：参数 schema（pydantic 可校验的类型，默认“恰好一个字符串”）
    - display_name：可选展示名
    - enabled：是否启用（禁用的 capability 不出现在文档与派发表中）
    """

    tool: str
    method: str
    description: str
    usage: str
    handler: CapabilityHandler = field(compare=False)
    args_schema: Any = Tuple[str]
    display_name: Optional[str] = None
    enabled: bool = True

    @property
    def key(self) -> str:
        """注册表 key（`tool:method`）。"""

        return f"{self.tool}:{self.method}"

    def validate_args(self, args: Any) -> List[str]:
        """
        按 `args_schema` 校验参数。

        返回：
        - 错误列表（空列表表示通过）
        """

        try:
            _type_adapter(self.args_schema).validate_python(args)
        except ValidationError as exc:
            return _format_validation_error(exc)
        return []


class BaseTool(ABC):
    """
    工具基类。

    约束：
    - `name` 在一次 run 内唯一（后注册者覆盖先注册者）；
    - `kind` 由子类在类级别声明。
    """

    name: str
    kind: ClassVar[ToolKind]

    @abstractmethod
    def to_params(self) -> Dict[str, Any]:
        """返回提交给 provider 的工具定义。"""

    @abstractmethod
    async def call(self, args: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        """执行工具；可预期的失败返回 `ToolResult(error=...)`，契约违规抛 `ToolError`。"""


class ActionTool(BaseTool):
    """固定 action 枚举的工具（例如 `computer`）；派发前校验 `args["action"]`。"""

    kind: ClassVar[ToolKind] = ToolKind.ACTION
    actions: FrozenSet[str] = frozenset()


class CapabilityTool(BaseTool):
    """按 method 暴露能力的工具（例如 `playwright`）；派发前校验 method 与参数 schema。"""

    kind: ClassVar[ToolKind] = ToolKind.CAPABILITY

    @property
    @abstractmethod
    def capabilities(self) -> Mapping[str, ToolCapability]:
        """本 run 可用的 capability（method -> capability，只读）。"""


class FunctionTool(BaseTool):
    """
    自定义函数工具（provider 侧 `type=custom`）。

    说明：
    - 若设置了 `input_model`，派发前用 pydantic 校验参数，并用其 JSON Schema 作为 `input_schema`。
    """

    kind: ClassVar[ToolKind] = ToolKind.FUNCTION
    description: str = ""
    input_model: Optional[Type[BaseModel]] = None

    def input_schema(self) -> Dict[str, Any]:
        """返回工具入参 JSON Schema。"""

        if self.input_model is not None:
            return self.input_model.model_json_schema()
        return {"type": "object", "properties": {}}

    def to_params(self) -> Dict[str, Any]:
        """返回 `type=custom` 的工具定义。"""

        params: Dict[str, Any] = {"name": self.name, "type": "custom", "input_schema": self.input_schema()}
        if self.description:
            params["description"] = self.description
        return params

    def validate_args(self, args: Dict[str, Any]) -> List[str]:
        """按 `input_model` 校验参数（未设置时总是通过）。"""

        if self.input_model is None:
            return []
        try:
            self.input_model.model_validate(args)
        except ValidationError as exc:
            return _format_validation_error(exc)
        return []
