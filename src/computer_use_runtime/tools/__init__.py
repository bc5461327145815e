"""
工具层：工具协议、capability 注册表、派发器与内置工具。
"""

from __future__ import annotations

from computer_use_runtime.tools.dispatcher import RegisteredTool, ToolDispatcher
from computer_use_runtime.tools.protocol import (
    ActionTool,
    BaseTool,
    CapabilityTool,
    FunctionTool,
    ToolCapability,
    ToolExecutionContext,
    ToolKind,
    ToolResult,
)
from computer_use_runtime.tools.registry import (
    CapabilityRegistry,
    CapabilityRegistryConfig,
    CapabilityValidation,
    assemble_capabilities,
    get_default_registry,
    reset_default_registry,
)
from computer_use_runtime.tools.results import make_tool_result_block, prepend_system_note

__all__ = [
    "ActionTool",
    "BaseTool",
    "CapabilityRegistry",
    "CapabilityRegistryConfig",
    "CapabilityTool",
    "CapabilityValidation",
    "FunctionTool",
    "RegisteredTool",
    "ToolCapability",
    "ToolDispatcher",
    "ToolExecutionContext",
    "ToolKind",
    "ToolResult",
    "assemble_capabilities",
    "get_default_registry",
    "make_tool_result_block",
    "prepend_system_note",
    "reset_default_registry",
]
