"""
System prompt 组装（能力说明 + 调用方后缀 + capability 文档）。
"""

from __future__ import annotations

import platform
from datetime import date
from typing import Any, Dict, Optional

from computer_use_runtime.prompts.history import EPHEMERAL_CACHE_CONTROL

_SYSTEM_PROMPT_TEMPLATE = """<SYSTEM_CAPABILITY>
* You are utilising an Ubuntu virtual machine using {arch} architecture with internet access.
* When you connect to the display, CHROMIUM IS ALREADY OPEN. The url bar is not visible but it is there.
* If you need to navigate to a new page, you can use the playwright 'goto' method for faster navigation.
* When viewing a page it can be helpful to zoom out so that you can see everything on the page.
* Either that, or make sure you scroll down to see everything before deciding something isn't available.
* When using your computer function calls, they take a while to run and send back to you.
* For efficient page navigation, use LARGE scroll amounts (80-90) to quickly move through content.
* Only use small scroll amounts (5-15) when scrolling within specific UI elements like dropdowns or small lists.
* Page-level scrolling with scroll_amount 80-90 shows mostly new content while keeping some overlap for context.
* IMPORTANT: Always use positive scroll amounts. Use scroll_direction ('up', 'down', 'left', 'right') to control direction, not negative values.
* The current date is {today}
</SYSTEM_CAPABILITY>

<IMPORTANT>
* When using Chromium, if a startup wizard appears, IGNORE IT. Do not even click "skip this step".
* Instead, click on the search bar on the center of the screen where it says "Search or enter address", and enter the appropriate search term or URL there.
* For faster navigation, prefer using the playwright 'goto' method over manually typing URLs.
</IMPORTANT>"""


def _format_date(d: date) -> str:
    """格式化为 `Monday, July 7, 2025`。"""

    return f"{d:%A}, {d:%B} {d.day}, {d.year}"


def build_system_prompt(
    *,
    suffix: Optional[str] = None,
    capability_docs: str = "",
    today: Optional[date] = None,
) -> str:
    """
    组装 system prompt 文本。

    参数：
    - suffix：调用方追加的指令（以空格接在基础 prompt 之后）
    - capability_docs：capability 文档（空字符串时省略）
    - today：可选；注入的日期（测试用），默认取本地当天
    """

    text = _SYSTEM_PROMPT_TEMPLATE.format(arch=platform.machine() or "unknown", today=_format_date(today or date.today()))
    if suffix:
        text = f"{text} {suffix}"
    if capability_docs:
        text = f"{text}\n\n{capability_docs}"
    return text


def build_system_block(text: str, *, cache: bool = True) -> Dict[str, Any]:
    """构造 system text block；`cache=True` 时附带缓存边界。"""

    block: Dict[str, Any] = {"type": "text", "text": text}
    if cache:
        block["cache_control"] = dict(EPHEMERAL_CACHE_CONTROL)
    return block
