from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import pytest

from computer_use_runtime.tools.registry import reset_default_registry


class FakeMouse:
    """记录鼠标调用的 fake `page.mouse`。"""

    def __init__(self, calls: List[Tuple[str, Any]]) -> None:
        self._calls = calls

    async def move(self, x: float, y: float) -> None:
        self._calls.append(("mouse.move", (x, y)))

    async def down(self, button: str = "left") -> None:
        self._calls.append(("mouse.down", button))

    async def up(self, button: str = "left") -> None:
        self._calls.append(("mouse.up", button))

    async def click(self, x: float, y: float, button: str = "left", click_count: int = 1, delay: float = 0) -> None:
        self._calls.append(("mouse.click", (x, y, button, click_count)))

    async def dblclick(self, x: float, y: float, button: str = "left") -> None:
        self._calls.append(("mouse.dblclick", (x, y, button)))

    async def wheel(self, delta_x: float, delta_y: float) -> None:
        self._calls.append(("mouse.wheel", (delta_x, delta_y)))


class FakeKeyboard:
    """记录键盘调用的 fake `page.keyboard`。"""

    def __init__(self, calls: List[Tuple[str, Any]]) -> None:
        self._calls = calls

    async def down(self, key: str) -> None:
        self._calls.append(("keyboard.down", key))

    async def up(self, key: str) -> None:
        self._calls.append(("keyboard.up", key))

    async def type(self, text: str, delay: float = 0) -> None:
        self._calls.append(("keyboard.type", (text, delay)))


class FakeLocator:
    """按 selector 查 `page.elements` 的 fake locator（不在表中即未命中）。"""

    def __init__(self, page: "FakePage", selector: str) -> None:
        self._page = page
        self._selector = selector

    @property
    def first(self) -> "FakeLocator":
        return self

    async def count(self) -> int:
        return 1 if self._selector in self._page.elements else 0

    async def get_attribute(self, name: str) -> Optional[str]:
        return (self._page.elements.get(self._selector) or {}).get(name)

    async def fill(self, text: str) -> None:
        self._page.calls.append(("locator.fill", (self._selector, text)))

    def locator(self, selector: str) -> "FakeLocator":
        return FakeLocator(self._page, f"{self._selector} >> {selector}")


class FakePage:
    """
    最小 fake playwright `Page`。

    说明：
    - `calls` 记录所有交互，测试据此断言；
    - `elements`：selector -> 属性 dict，用于 locator 查询；
    - `evaluate_results`：按调用顺序返回的 evaluate 结果（为空时返回视口尺寸）。
    """

    def __init__(self, url: str = "https://example.test/start") -> None:
        self.url = url
        self.calls: List[Tuple[str, Any]] = []
        self.elements: Dict[str, Dict[str, Any]] = {}
        self.evaluate_results: List[Any] = []
        self.page_title = "Example"
        self.mouse = FakeMouse(self.calls)
        self.keyboard = FakeKeyboard(self.calls)

    async def screenshot(self, type: str = "png", full_page: bool = False) -> bytes:
        self.calls.append(("screenshot", (type, full_page)))
        return b"\x89PNG-fake"

    async def wait_for_timeout(self, ms: float) -> None:
        self.calls.append(("wait_for_timeout", ms))

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self.calls.append(("evaluate", arg))
        if self.evaluate_results:
            return self.evaluate_results.pop(0)
        return {"h": 1000, "w": 800}

    async def goto(self, url: str, wait_until: str = "load", timeout: float = 0) -> None:
        self.calls.append(("goto", (url, wait_until, timeout)))
        self.url = url

    async def title(self) -> str:
        return self.page_title

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)


@pytest.fixture
def fake_page() -> FakePage:
    return FakePage()


@pytest.fixture(autouse=True)
def _isolated_default_registry():  # type: ignore[no-untyped-def]
    reset_default_registry()
    yield
    reset_default_registry()
