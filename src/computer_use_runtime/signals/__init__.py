"""Signal Bus（pause/resume/cancel + 事件通知 + 取消令牌）。"""

from __future__ import annotations

from computer_use_runtime.signals.bus import ControlSignal, RunState, SignalBus
from computer_use_runtime.signals.cancellation import CancellationToken
from computer_use_runtime.signals.events import (
    CancelEvent,
    ErrorEvent,
    PauseEvent,
    ResumeEvent,
    SignalEvent,
    SignalEventKind,
    SignalListener,
)

__all__ = [
    "CancelEvent",
    "CancellationToken",
    "ControlSignal",
    "ErrorEvent",
    "PauseEvent",
    "ResumeEvent",
    "RunState",
    "SignalBus",
    "SignalEvent",
    "SignalEventKind",
    "SignalListener",
]
