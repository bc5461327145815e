"""
computer-use-runtime：LLM 驱动浏览器会话的执行引擎。

对外入口：
- `ComputerUseAgent`：装配配置、工具与 backend，执行一次浏览器任务
- `AgentController`：pause/resume/cancel 与事件订阅
- `SamplingLoop`：可单独使用的 sampling loop
"""

from __future__ import annotations

from computer_use_runtime.core.agent import AgentController, ComputerUseAgent
from computer_use_runtime.core.errors import DuplicateCapabilityError, ToolError, UserError
from computer_use_runtime.core.sampling_loop import SamplingLoop, SamplingSettings
from computer_use_runtime.signals.bus import ControlSignal, RunState, SignalBus
from computer_use_runtime.signals.events import SignalEventKind
from computer_use_runtime.tools.protocol import ToolCapability, ToolExecutionContext, ToolResult

__version__ = "0.1.0"

__all__ = [
    "AgentController",
    "ComputerUseAgent",
    "ControlSignal",
    "DuplicateCapabilityError",
    "RunState",
    "SamplingLoop",
    "SamplingSettings",
    "SignalBus",
    "SignalEventKind",
    "ToolCapability",
    "ToolError",
    "ToolExecutionContext",
    "ToolResult",
    "UserError",
    "__version__",
]
