"""内置工具（computer / playwright / 键名映射）。"""

from __future__ import annotations

from computer_use_runtime.tools.builtin.computer import ActionValidator, ComputerTool, make_computer_tools
from computer_use_runtime.tools.builtin.playwright import PlaywrightTool, builtin_playwright_capabilities

__all__ = [
    "ActionValidator",
    "ComputerTool",
    "PlaywrightTool",
    "builtin_playwright_capabilities",
    "make_computer_tools",
]
