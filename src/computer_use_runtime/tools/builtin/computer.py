"""
`computer` 工具：基于 playwright page 的鼠标/键盘/截图动作（action-based）。

说明：
- 入参形态沿用 provider 的 computer-use 协议（`action`/`coordinate`/`text`/`duration`/`scroll_*`）。
- 参数校验（`ActionValidator`）在触碰 page 之前完成：缺少必需参数直接抛 `ToolError`。
- scroll 的负数 amount 会翻转方向；typing 的 fill/逐字模式由 ExecutionConfig 决定。
  这两项都是工具层细节，不属于 sampling loop 的契约。
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, FrozenSet, Optional, Sequence, Tuple

from playwright.async_api import Error as PlaywrightError

from computer_use_runtime.config.loader import ExecutionConfig
from computer_use_runtime.core.errors import ToolError
from computer_use_runtime.tools.builtin.keyboard import parse_key_combination, to_playwright_key
from computer_use_runtime.tools.protocol import ActionTool, ToolExecutionContext, ToolResult
from computer_use_runtime.tools.versions import ComputerApiVersion

logger = logging.getLogger(__name__)

MOUSE_ACTIONS: FrozenSet[str] = frozenset(
    {
        "left_click",
        "right_click",
        "middle_click",
        "double_click",
        "triple_click",
        "mouse_move",
        "left_click_drag",
        "left_mouse_down",
        "left_mouse_up",
    }
)
KEYBOARD_ACTIONS: FrozenSet[str] = frozenset({"key", "type", "hold_key"})
SYSTEM_ACTIONS: FrozenSet[str] = frozenset({"screenshot", "cursor_position", "scroll", "wait", "extract_url"})
ALL_ACTIONS: FrozenSet[str] = MOUSE_ACTIONS | KEYBOARD_ACTIONS | SYSTEM_ACTIONS

_SCROLL_DIRECTIONS = ("up", "down", "left", "right")
_MAX_DURATION_SEC = 100

_CURSOR_POSITION_JS = """() => {
  const selection = window.getSelection();
  if (!selection || selection.rangeCount === 0) return null;
  const rect = selection.getRangeAt(0).getBoundingClientRect();
  return rect ? { x: rect.x, y: rect.y } : null;
}"""

_VIEWPORT_JS = "() => ({ h: window.innerHeight, w: window.innerWidth })"


def _is_number(value: Any) -> bool:
    """是否为数值（排除 bool）。"""

    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ActionValidator:
    """computer 动作参数校验（纯函数，不访问 page）。"""

    @staticmethod
    def coordinates(coordinate: Any) -> Tuple[float, float]:
        """
        校验坐标为长度 2 的非负数值序列。

        异常：
        - ToolError：形态不符
        """

        if not isinstance(coordinate, (list, tuple)) or len(coordinate) != 2:
            raise ToolError(f"{coordinate} must be a tuple of length 2")
        if not all(_is_number(v) and v >= 0 for v in coordinate):
            raise ToolError(f"{coordinate} must be a tuple of non-negative numbers")
        return float(coordinate[0]), float(coordinate[1])

    @staticmethod
    def duration(duration: Any) -> float:
        """校验 duration 为 0..100 秒的数值。"""

        if not _is_number(duration):
            raise ToolError(f"{duration} must be a number")
        if duration < 0:
            raise ToolError(f"{duration} must be non-negative")
        if duration > _MAX_DURATION_SEC:
            raise ToolError(f"{duration} is too long")
        return float(duration)

    @classmethod
    def validate(cls, params: Dict[str, Any]) -> None:
        """
        按 action 类别校验参数。

        规则：
        - 键盘类动作必须提供字符串 `text`
        - 鼠标类动作必须提供合法 `coordinate`；其它动作若提供也必须合法
        - hold_key / wait 必须提供合法 `duration`
        """

        action = params.get("action")
        text = params.get("text")
        coordinate = params.get("coordinate")

        if action in KEYBOARD_ACTIONS and text is None:
            raise ToolError(f"text is required for {action}")
        if text is not None and not isinstance(text, str):
            raise ToolError(f"{text} must be a string")

        if action in MOUSE_ACTIONS and not coordinate:
            raise ToolError(f"coordinate is required for {action}")
        if coordinate:
            cls.coordinates(coordinate)

        if action in ("hold_key", "wait"):
            cls.duration(params.get("duration"))


class ComputerTool(ActionTool):
    """computer-use `computer` 工具（20241022 / 20250124 两个 API 版本）。"""

    name = "computer"
    actions = ALL_ACTIONS

    def __init__(
        self,
        page: Any,
        *,
        version: ComputerApiVersion = "20250124",
        config: Optional[ExecutionConfig] = None,
        display_width_px: int = 1280,
        display_height_px: int = 720,
    ) -> None:
        """
        创建 computer 工具。

        参数：
        - `page`：playwright `Page`（按鸭子类型使用）
        - `version`：computer tool API 版本
        - `config`：执行参数（typing/screenshot/scrolling）；默认 `ExecutionConfig()`
        """

        self._page = page
        self._version = version
        self._config = config or ExecutionConfig()
        self._display = (display_width_px, display_height_px)

    @property
    def api_type(self) -> str:
        """provider 侧工具类型名。"""

        return f"computer_{self._version}"

    def to_params(self) -> Dict[str, Any]:
        """返回 computer tool 定义。"""

        return {
            "name": self.name,
            "type": self.api_type,
            "display_width_px": self._display[0],
            "display_height_px": self._display[1],
            "display_number": None,
        }

    def _page_for(self, ctx: ToolExecutionContext) -> Any:
        """优先使用上下文中的 page。"""

        page = ctx.page if ctx.page is not None else self._page
        if page is None:
            raise ToolError("computer tool requires a browser page")
        return page

    async def _screenshot(self, page: Any) -> ToolResult:
        """等待配置的延迟后截取视口 png。"""

        await asyncio.sleep(self._config.screenshot.delay_sec)
        try:
            data: bytes = await page.screenshot(type="png", full_page=False)
        except PlaywrightError as exc:
            raise ToolError(f"Failed to take screenshot: {exc}") from exc
        logger.debug("Screenshot taken, size=%d bytes", len(data))
        return ToolResult(base64_image=base64.b64encode(data).decode("ascii"))

    async def _mouse(self, page: Any, action: str, params: Dict[str, Any]) -> ToolResult:
        """处理鼠标类动作。"""

        x, y = ActionValidator.coordinates(params["coordinate"])
        button = {"right_click": "right", "middle_click": "middle"}.get(action, "left")

        if action == "left_click_drag":
            start = params.get("start_coordinate")
            if start:
                sx, sy = ActionValidator.coordinates(start)
                await page.mouse.move(sx, sy)
            await page.mouse.down(button="left")
            await page.mouse.move(x, y)
            await page.mouse.up(button="left")
        else:
            await page.mouse.move(x, y)
            await page.wait_for_timeout(20)
            if action == "left_mouse_down":
                await page.mouse.down()
            elif action == "left_mouse_up":
                await page.mouse.up()
            elif action == "double_click":
                await page.mouse.dblclick(x, y, button=button)
            elif action == "triple_click":
                await page.mouse.click(x, y, button=button, click_count=3)
            elif action != "mouse_move":
                await page.mouse.click(x, y, button=button, delay=self._config.mouse.click_delay_ms)

        await page.wait_for_timeout(100)
        return await self._screenshot(page)

    async def _keyboard(self, page: Any, action: str, params: Dict[str, Any]) -> ToolResult:
        """处理键盘类动作。"""

        text: str = params["text"]
        if action == "hold_key":
            key = to_playwright_key(text)
            await page.keyboard.down(key)
            await asyncio.sleep(ActionValidator.duration(params.get("duration")))
            await page.keyboard.up(key)
        elif action == "key":
            keys = parse_key_combination(text)
            for key in keys:
                await page.keyboard.down(key)
            for key in reversed(keys):
                await page.keyboard.up(key)
        else:
            await self._type_text(page, text)

        await page.wait_for_timeout(self._config.typing.completion_delay_ms)
        return await self._screenshot(page)

    async def _type_text(self, page: Any, text: str) -> None:
        """按 typing 配置输入文本（fill 失败时回退为无延迟键入）。"""

        typing_cfg = self._config.typing
        if typing_cfg.mode == "fill":
            try:
                focused = page.locator(":focus").first
                if await focused.count() > 0:
                    await focused.fill(text)
                    return
            except PlaywrightError:
                logger.debug("fill() failed; falling back to keyboard.type", exc_info=True)
            await page.keyboard.type(text, delay=0)
            return
        await page.keyboard.type(text, delay=typing_cfg.character_delay_ms)

    def _resolve_scroll(self, params: Dict[str, Any]) -> Tuple[str, float]:
        """解析 scroll 方向与幅度（负数幅度翻转方向）。"""

        direction = params.get("scroll_direction")
        amount = params.get("scroll_amount")
        if _is_number(amount) and amount < 0:
            amount = abs(amount)
            if direction == "down":
                direction = "up"
            elif direction == "right":
                direction = "left"
            elif not direction:
                direction = "up"
        if direction not in _SCROLL_DIRECTIONS:
            raise ToolError(f"Scroll direction \"{direction}\" must be 'up', 'down', 'left', or 'right'")
        if amount is None:
            amount = self._config.scrolling.percentage
        if not _is_number(amount) or amount < 0:
            raise ToolError(f"Scroll amount \"{amount}\" must be a non-negative number")
        return str(direction), float(amount)

    @staticmethod
    def _scroll_factor(amount: float) -> float:
        """把 1..100 的 scroll amount 换算为视口比例。"""

        if amount <= 20:
            return amount / 100
        if amount >= 80:
            return min(amount / 100, 0.95)
        return amount / 100

    async def _scroll(self, page: Any, params: Dict[str, Any]) -> ToolResult:
        """处理 scroll 动作。"""

        direction, amount = self._resolve_scroll(params)
        if params.get("coordinate"):
            x, y = ActionValidator.coordinates(params["coordinate"])
            await page.mouse.move(x, y)
            await page.wait_for_timeout(100)

        dims = await page.evaluate(_VIEWPORT_JS)
        factor = self._scroll_factor(amount)
        if direction in ("up", "down"):
            delta = float(dims["h"]) * factor
            await page.mouse.wheel(0, delta if direction == "down" else -delta)
        else:
            delta = float(dims["w"]) * factor
            await page.mouse.wheel(delta if direction == "right" else -delta, 0)

        await page.wait_for_timeout(100)
        return await self._screenshot(page)

    def _require_new_api(self, action: str) -> None:
        """scroll/wait 仅在 20250124 版本可用。"""

        if self._version != "20250124":
            raise ToolError(f"{action} is only available in version 20250124")

    async def call(self, args: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        """执行一次 computer 动作。"""

        ActionValidator.validate(args)
        action = args.get("action")
        page = self._page_for(ctx)

        if action == "screenshot":
            return await self._screenshot(page)
        if action == "cursor_position":
            position = await page.evaluate(_CURSOR_POSITION_JS)
            if not position:
                raise ToolError("Failed to get cursor position")
            return ToolResult(output=f"X={position['x']},Y={position['y']}")
        if action == "extract_url":
            return ToolResult(output=f"Current URL: {page.url}")
        if action == "scroll":
            self._require_new_api(action)
            return await self._scroll(page, args)
        if action == "wait":
            self._require_new_api(action)
            await asyncio.sleep(ActionValidator.duration(args.get("duration")))
            return await self._screenshot(page)
        if action in MOUSE_ACTIONS:
            return await self._mouse(page, str(action), args)
        if action in KEYBOARD_ACTIONS:
            return await self._keyboard(page, str(action), args)
        raise ToolError(f"Invalid action: {action}")


def make_computer_tools(
    page: Any,
    *,
    version: ComputerApiVersion,
    config: Optional[ExecutionConfig] = None,
    display_width_px: int = 1280,
    display_height_px: int = 720,
) -> Sequence[ComputerTool]:
    """按 API 版本创建 computer 工具列表。"""

    return [
        ComputerTool(
            page,
            version=version,
            config=config,
            display_width_px=display_width_px,
            display_height_px=display_height_px,
        )
    ]
