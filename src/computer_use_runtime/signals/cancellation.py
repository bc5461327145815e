"""
CancellationToken：协作式取消令牌。

说明：
- 由 SignalBus 在收到 `cancel` 时触发；sampling loop 只在每个 step 的检查点观察取消。
- 长耗时协作方（工具 handler、自定义 tool）可以通过 `ToolExecutionContext.cancellation_token`
  主动轮询或 `await token.wait()`，自行决定是否提前结束；不做抢占式中断。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from computer_use_runtime.core.errors import RunCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """一次性取消令牌（只能从未取消变为已取消）。"""

    def __init__(self) -> None:
        """创建未触发的令牌。"""

        self._cancelled = False
        self._reason: Optional[str] = None
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[Optional[str]], None]] = []

    @property
    def cancelled(self) -> bool:
        """是否已触发取消。"""

        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        """取消原因（未触发或未提供时为 None）。"""

        return self._reason

    def cancel(self, reason: Optional[str] = None) -> bool:
        """
        触发取消。

        参数：
        - reason：可选的取消原因

        返回：
        - True：本次调用触发了取消
        - False：令牌此前已被触发（保持幂等）
        """

        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason
        self._event.set()
        for cb in list(self._callbacks):
            try:
                cb(reason)
            except Exception:
                logger.error("Cancellation callback failed", exc_info=True)
        return True

    def add_callback(self, callback: Callable[[Optional[str]], None]) -> Callable[[], None]:
        """
        注册取消回调；若令牌已触发则立即调用一次。

        返回：
        - 反注册函数
        """

        if self._cancelled:
            callback(self._reason)
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            """移除回调（重复调用安全）。"""

            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    async def wait(self) -> Optional[str]:
        """挂起直到取消被触发，返回取消原因。"""

        await self._event.wait()
        return self._reason

    def raise_if_cancelled(self) -> None:
        """若已取消则抛出 `RunCancelledError`。"""

        if self._cancelled:
            raise RunCancelledError(self._reason)
