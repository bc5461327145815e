"""
Signal 事件（tagged variant）。

说明：
- 每种事件一个 frozen dataclass；`kind` 为类级常量，订阅与派发都按 `SignalEventKind` 路由，
  调用方如需区分可直接 `match`/`isinstance` 一次，而不是在每个调用点按字符串分支。
- `at` 为 timezone-aware UTC 时间；`step` 为事件发生时 bus 上记录的 step。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, ClassVar, Optional, Union


class SignalEventKind(str, Enum):
    """可订阅的事件类型。"""

    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    ERROR = "error"


@dataclass(frozen=True)
class PauseEvent:
    """run 在 `wait_until_resumed` 中实际挂起时发出。"""

    kind: ClassVar[SignalEventKind] = SignalEventKind.PAUSE

    at: datetime
    step: int


@dataclass(frozen=True)
class ResumeEvent:
    """挂起中的 run 被 `resume` 放行时发出。"""

    kind: ClassVar[SignalEventKind] = SignalEventKind.RESUME

    at: datetime
    step: int


@dataclass(frozen=True)
class CancelEvent:
    """`cancel` 信号生效时发出（携带可选 reason）。"""

    kind: ClassVar[SignalEventKind] = SignalEventKind.CANCEL

    at: datetime
    step: int
    reason: Optional[str] = None


@dataclass(frozen=True)
class ErrorEvent:
    """sampling loop 因工具派发失败而中止前发出。"""

    kind: ClassVar[SignalEventKind] = SignalEventKind.ERROR

    at: datetime
    step: int
    error: BaseException = field(compare=False)


SignalEvent = Union[PauseEvent, ResumeEvent, CancelEvent, ErrorEvent]
SignalListener = Callable[[SignalEvent], Union[None, Awaitable[None]]]

__all__ = [
    "CancelEvent",
    "ErrorEvent",
    "PauseEvent",
    "ResumeEvent",
    "SignalEvent",
    "SignalEventKind",
    "SignalListener",
]
