"""
CapabilityRegistry：capability 注册表（按 `tool:method` 唯一）。

本模块提供：
- 注册：`register`（重复 key 直接拒绝，不做覆盖）
- 查询：`get/get_tool_capabilities/get_all/is_enabled/get_tool_names`
- 校验：`validate(tool, method, args) -> CapabilityValidation`
- 文档：`generate_tool_docs/generate_all_docs`（写入 system prompt）
- 进程级默认注册表：`get_default_registry/reset_default_registry`（便于测试隔离）
- 每次 run 的装配：`assemble_capabilities(registry, tool, overrides)`（run 覆盖优先，结果只读）

说明：
- 注册表只在启动阶段追加，派发阶段只读；run 级覆盖不写回注册表。
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from computer_use_runtime.core.errors import DuplicateCapabilityError
from computer_use_runtime.tools.protocol import ToolCapability

logger = logging.getLogger(__name__)


@dataclass
class CapabilityRegistryConfig:
    """
    注册表配置。

    字段：
    - overrides：`tool:method` -> 字段覆盖（例如 `{"enabled": False}`），在注册时应用
    - filter：可选过滤器；返回 False 的 capability 不入表
    - validate_inputs：`validate()` 是否真正做 schema 校验
    - include_in_system_prompt：是否把文档写入 system prompt
    """

    overrides: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    filter: Optional[Callable[[ToolCapability], bool]] = None
    validate_inputs: bool = True
    include_in_system_prompt: bool = True


@dataclass(frozen=True)
class CapabilityValidation:
    """`validate()` 的结果。"""

    valid: bool
    errors: List[str] = field(default_factory=list)


def _capability_doc(capability: ToolCapability) -> str:
    """渲染单个 capability 的 `HOW TO USE` 段落（usage 逐行编号）。"""

    lines = [f"HOW TO USE {capability.method.upper()}:"]
    usage_lines = [ln.strip() for ln in capability.usage.split("\n") if ln.strip()]
    for idx, line in enumerate(usage_lines, start=1):
        lines.append(f"{idx}. {line}")
    return "\n".join(lines)


def render_tool_docs(tool: str, capabilities: Iterable[ToolCapability]) -> str:
    """
    渲染某个工具的 capability 文档。

    返回：
    - 文档文本；没有启用的 capability 时返回空字符串
    """

    caps = [c for c in capabilities if c.enabled]
    if not caps:
        return ""
    sections: List[str] = [
        f"{tool.upper()} TOOL CAPABILITIES:",
        f"* You have access to a '{tool}' tool that provides the following capabilities:",
    ]
    for cap in caps:
        sections.append(f"  - '{cap.method}': {cap.description}")
    sections.append("")
    for cap in caps:
        sections.append(_capability_doc(cap))
        sections.append("")
    return "\n".join(sections)


class CapabilityRegistry:
    """capability 注册表（`tool:method` 唯一）。"""

    def __init__(self, config: Optional[CapabilityRegistryConfig] = None) -> None:
        """创建空注册表。"""

        self._config = config or CapabilityRegistryConfig()
        self._capabilities: Dict[str, ToolCapability] = {}

    @property
    def config(self) -> CapabilityRegistryConfig:
        """注册表配置。"""

        return self._config

    def register(self, capability: ToolCapability) -> None:
        """
        注册 capability。

        异常：
        - DuplicateCapabilityError：同一 `tool:method` 已存在
        """

        key = capability.key
        if key in self._capabilities:
            raise DuplicateCapabilityError(key)
        override = self._config.overrides.get(key)
        if override:
            capability = dataclasses.replace(capability, **override)
        if self._config.filter is not None and not self._config.filter(capability):
            logger.debug("Capability %s filtered out", key)
            return
        self._capabilities[key] = capability

    def get(self, tool: str, method: str) -> Optional[ToolCapability]:
        """按 tool + method 查询。"""

        return self._capabilities.get(f"{tool}:{method}")

    def get_tool_capabilities(self, tool: str) -> List[ToolCapability]:
        """返回某工具的全部 capability（按注册顺序）。"""

        return [c for c in self._capabilities.values() if c.tool == tool]

    def get_all(self) -> List[ToolCapability]:
        """返回全部 capability（按注册顺序）。"""

        return list(self._capabilities.values())

    def is_enabled(self, tool: str, method: str) -> bool:
        """capability 是否存在且启用。"""

        cap = self.get(tool, method)
        return cap is not None and cap.enabled

    def get_tool_names(self) -> List[str]:
        """返回出现过的工具名（去重，按首次注册顺序）。"""

        return list(dict.fromkeys(c.tool for c in self._capabilities.values()))

    def validate(self, tool: str, method: str, args: Any) -> CapabilityValidation:
        """
        校验某次调用的参数。

        返回：
        - CapabilityValidation（未知 capability 也返回 invalid，而不是抛异常）
        """

        cap = self.get(tool, method)
        if cap is None:
            return CapabilityValidation(valid=False, errors=[f"Unknown capability: {tool}:{method}"])
        if not self._config.validate_inputs:
            return CapabilityValidation(valid=True)
        errors = cap.validate_args(args)
        return CapabilityValidation(valid=not errors, errors=errors)

    def generate_tool_docs(self, tool: str) -> str:
        """生成某工具的文档。"""

        return render_tool_docs(tool, self.get_tool_capabilities(tool))

    def generate_all_docs(self) -> str:
        """生成全部工具的文档（工具之间空行分隔）。"""

        sections: List[str] = []
        for tool in self.get_tool_names():
            docs = self.generate_tool_docs(tool)
            if docs:
                sections.append(docs)
                sections.append("")
        return "\n".join(sections).strip()


def assemble_capabilities(
    registry: CapabilityRegistry,
    tool: str,
    overrides: Iterable[ToolCapability] = (),
) -> Mapping[str, ToolCapability]:
    """
    为一次 run 装配某工具的 capability 表。

    规则：
    - 以注册表中已启用的 capability 为基础；
    - run 级 overrides 按顺序覆盖同名 method（后者优先），不写回注册表；
    - 返回只读 mapping（method -> capability）。

    异常：
    - ValueError：override 的 `tool` 与目标工具不一致
    """

    table: Dict[str, ToolCapability] = {c.method: c for c in registry.get_tool_capabilities(tool) if c.enabled}
    for cap in overrides:
        if cap.tool != tool:
            raise ValueError(f"capability {cap.key} does not belong to tool {tool!r}")
        if cap.method in table:
            logger.debug("Run override replaces capability %s", cap.key)
        if cap.enabled:
            table[cap.method] = cap
        else:
            table.pop(cap.method, None)
    return MappingProxyType(table)


_default_registry: Optional[CapabilityRegistry] = None
_default_registry_lock = threading.Lock()


def get_default_registry() -> CapabilityRegistry:
    """
    返回进程级默认注册表（首次调用时创建并注册内置 playwright capabilities）。
    """

    global _default_registry
    with _default_registry_lock:
        if _default_registry is None:
            from computer_use_runtime.tools.builtin.playwright import builtin_playwright_capabilities

            registry = CapabilityRegistry()
            for cap in builtin_playwright_capabilities():
                registry.register(cap)
            _default_registry = registry
        return _default_registry


def reset_default_registry() -> None:
    """丢弃进程级默认注册表（下次 `get_default_registry()` 重新创建）。"""

    global _default_registry
    with _default_registry_lock:
        _default_registry = None
