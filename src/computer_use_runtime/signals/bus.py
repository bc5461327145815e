"""
SignalBus：run 级别的协作式 pause/resume/cancel 控制。

状态机：
- running --pause--> paused
- paused --resume--> running
- running|paused --cancel--> cancelling（终态）
- 其它组合均为 no-op（不是错误）

设计要点：
- pause 只是“建议”：真正的挂起发生在 sampling loop 调用 `wait_until_resumed()` 时，
  pause 事件也在此刻（而不是 `send("pause")` 时）发出。
- 挂起闸门是单个共享 Future：任意数量的等待者共享同一个结果，由 resume 或 cancel 恰好解决一次。
- 监听器彼此隔离：某个监听器抛异常只记录日志，不影响其它监听器。
- 所有方法需在同一个 event loop 线程内调用。
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from computer_use_runtime.core.utils import utc_now
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

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    """SignalBus 状态。"""

    RUNNING = "running"
    PAUSED = "paused"
    CANCELLING = "cancelling"


class ControlSignal(str, Enum):
    """外部调用方可发送的控制信号。"""

    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"


_LISTENER_TASKS: Set["asyncio.Future[Any]"] = set()


def _schedule_listener_result(result: Any, event: SignalEvent) -> None:
    """把 async 监听器返回的 awaitable 调度到当前 event loop（结果与异常在 done-callback 中处理）。"""

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        if inspect.iscoroutine(result):
            result.close()
        logger.error("Async signal listener for %s event dropped: no running event loop", event.kind.value)
        return

    task = asyncio.ensure_future(result, loop=loop)
    _LISTENER_TASKS.add(task)

    def _settle(done: "asyncio.Future[Any]") -> None:
        _LISTENER_TASKS.discard(done)
        if done.cancelled():
            return
        exc = done.exception()
        if exc is not None:
            logger.error(
                "Async signal listener failed for %s event",
                event.kind.value,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    task.add_done_callback(_settle)


def deliver_event(listeners: Sequence[SignalListener], event: SignalEvent) -> None:
    """
    把事件逐个投递给监听器（彼此隔离）。

    说明：
    - 监听器异常只记录 error 日志（带 traceback），继续投递给后续监听器；
    - 监听器返回 awaitable（`async def`）时调度为 task，不阻塞投递；其异常同样只记录日志。
    """

    for listener in list(listeners):
        try:
            result = listener(event)
        except Exception:
            logger.error("Signal listener failed for %s event", event.kind.value, exc_info=True)
            continue
        if inspect.isawaitable(result):
            _schedule_listener_result(result, event)


class SignalBus:
    """
    一次 run 的信号总线（pause/resume/cancel + 事件通知）。

    说明：
    - 每个 run 使用独立的 SignalBus；cancelling 为终态，不可复用。
    - `cancellation_token` 可传给长耗时协作方，用于提前感知取消。
    """

    def __init__(self) -> None:
        """创建处于 running 状态、step=0 的总线。"""

        self._state = RunState.RUNNING
        self._step = 0
        self._listeners: Dict[SignalEventKind, List[SignalListener]] = {k: [] for k in SignalEventKind}
        self._resume_gate: Optional[asyncio.Future[None]] = None
        self._token = CancellationToken()

    # ------------------------------------------------------------------
    # 状态读取
    # ------------------------------------------------------------------

    def get_state(self) -> RunState:
        """返回当前状态。"""

        return self._state

    @property
    def step(self) -> int:
        """当前记录的 step。"""

        return self._step

    def set_step(self, step: int) -> None:
        """记录 sampling loop 当前 step（每次迭代开始时调用）。"""

        self._step = int(step)

    def is_cancelling(self) -> bool:
        """是否已进入 cancelling 终态。"""

        return self._state is RunState.CANCELLING

    @property
    def cancellation_token(self) -> CancellationToken:
        """取消令牌（cancel 信号生效时触发）。"""

        return self._token

    # ------------------------------------------------------------------
    # 订阅
    # ------------------------------------------------------------------

    def on(self, kind: Union[SignalEventKind, str], listener: SignalListener) -> Callable[[], None]:
        """
        订阅某一类事件。

        参数：
        - kind：事件类型（`SignalEventKind` 或其字符串值）
        - listener：回调；接收对应的事件 dataclass

        返回：
        - 反订阅函数（重复调用安全）

        异常：
        - ValueError：kind 非法
        """

        key = SignalEventKind(kind)
        bucket = self._listeners[key]
        bucket.append(listener)

        def _unsubscribe() -> None:
            """移除本次注册的监听器。"""

            if listener in bucket:
                bucket.remove(listener)

        return _unsubscribe

    def _emit(self, event: SignalEvent) -> None:
        """向对应 kind 的监听器投递事件。"""

        deliver_event(self._listeners[event.kind], event)

    def emit_error(self, error: BaseException) -> None:
        """发出 error 事件（sampling loop 在派发失败、重新抛出前调用）。"""

        self._emit(ErrorEvent(at=utc_now(), step=self._step, error=error))

    # ------------------------------------------------------------------
    # 控制
    # ------------------------------------------------------------------

    def send(self, signal: Union[ControlSignal, str], reason: Optional[str] = None) -> None:
        """
        发送控制信号。

        参数：
        - signal：`pause|resume|cancel`
        - reason：仅对 cancel 有意义；写入 CancelEvent 与 CancellationToken

        异常：
        - ValueError：signal 不是合法值（调用方契约错误）
        """

        sig = ControlSignal(signal)

        if sig is ControlSignal.PAUSE:
            if self._state is RunState.RUNNING:
                self._state = RunState.PAUSED
            return

        if sig is ControlSignal.RESUME:
            if self._state is not RunState.PAUSED:
                return
            self._state = RunState.RUNNING
            gate = self._resume_gate
            self._resume_gate = None
            # 只有真正挂起过（pause 事件已发出）才发 resume 事件
            if gate is not None:
                if not gate.done():
                    gate.set_result(None)
                self._emit(ResumeEvent(at=utc_now(), step=self._step))
            return

        if self._state is RunState.CANCELLING:
            return
        self._state = RunState.CANCELLING
        self._token.cancel(reason)
        self._emit(CancelEvent(at=utc_now(), step=self._step, reason=reason))
        gate = self._resume_gate
        self._resume_gate = None
        if gate is not None and not gate.done():
            gate.set_result(None)

    async def wait_until_resumed(self) -> None:
        """
        若处于 paused，则挂起直到 resume 或 cancel；否则立即返回。

        说明：
        - 首个等待者创建共享闸门并发出 pause 事件；后续等待者复用同一闸门，不重复发事件。
        - cancel 会释放闸门（不抛异常）；调用方应随后检查 `is_cancelling()`。
        """

        if self._state is not RunState.PAUSED:
            return
        if self._resume_gate is None:
            self._resume_gate = asyncio.get_running_loop().create_future()
            self._emit(PauseEvent(at=utc_now(), step=self._step))
        await asyncio.shield(self._resume_gate)
