"""
Prompt 管理（system prompt 组装、transcript 变换）。
"""

from __future__ import annotations

from computer_use_runtime.prompts.history import (
    HistorySettings,
    drop_unpaired_tool_results,
    inject_cache_hints,
    order_assistant_blocks,
    prepare_history,
    prune_images,
    truncate_history,
)
from computer_use_runtime.prompts.system import build_system_block, build_system_prompt

__all__ = [
    "HistorySettings",
    "build_system_block",
    "build_system_prompt",
    "drop_unpaired_tool_results",
    "inject_cache_hints",
    "order_assistant_blocks",
    "prepare_history",
    "prune_images",
    "truncate_history",
]
