"""
computer-use 工具 API 版本分组（版本 → computer tool 版本 + beta flag）。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Literal

ComputerApiVersion = Literal["20241022", "20250124"]

PROMPT_CACHING_BETA_FLAG = "prompt-caching-2024-07-31"
TOKEN_EFFICIENT_TOOLS_BETA_FLAG = "token-efficient-tools-2025-02-19"


@dataclass(frozen=True)
class ToolGroup:
    """一个工具 API 版本对应的 computer tool 版本与 beta flag。"""

    version: str
    computer_api_version: ComputerApiVersion
    beta_flag: str


TOOL_GROUPS_BY_VERSION: Dict[str, ToolGroup] = {
    "computer_use_20241022": ToolGroup("computer_use_20241022", "20241022", "computer-use-2024-10-22"),
    "computer_use_20250124": ToolGroup("computer_use_20250124", "20250124", "computer-use-2025-01-24"),
    # 20250429 沿用 20250124 的 computer tool
    "computer_use_20250429": ToolGroup("computer_use_20250429", "20250124", "computer-use-2025-01-24"),
}

DEFAULT_TOOL_VERSION = "computer_use_20250429"


def get_tool_group(version: str | None) -> ToolGroup:
    """
    按版本名取工具分组（None 时取默认版本）。

    异常：
    - ValueError：未知版本
    """

    key = version or DEFAULT_TOOL_VERSION
    group = TOOL_GROUPS_BY_VERSION.get(key)
    if group is None:
        raise ValueError(f"unknown tool version: {key}; expected one of {sorted(TOOL_GROUPS_BY_VERSION)}")
    return group
