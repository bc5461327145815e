"""
键名映射：把模型给出的 xdotool 风格键名转换为 playwright 键名。
"""

from __future__ import annotations

import re
from typing import Dict, List

from computer_use_runtime.core.errors import ToolError

MODIFIER_KEYS: Dict[str, str] = {
    "ctrl": "Control",
    "alt": "Alt",
    "shift": "Shift",
    "command": "Meta",
    "win": "Meta",
}

KEY_MAP: Dict[str, str] = {
    "return": "Enter",
    "space": " ",
    "left": "ArrowLeft",
    "right": "ArrowRight",
    "up": "ArrowUp",
    "down": "ArrowDown",
    "home": "Home",
    "end": "End",
    "pageup": "PageUp",
    "pagedown": "PageDown",
    "delete": "Delete",
    "backspace": "Backspace",
    "tab": "Tab",
    "esc": "Escape",
    "escape": "Escape",
    "insert": "Insert",
    "super_l": "Meta",
    **{f"f{i}": f"F{i}" for i in range(1, 13)},
    "minus": "-",
    "plus": "+",
    "equal": "=",
    "equals": "=",
    "period": ".",
    "dot": ".",
    "comma": ",",
    "slash": "/",
    "backslash": "\\",
    "bracketleft": "[",
    "bracketright": "]",
    "semicolon": ";",
    "quote": "'",
    "backquote": "`",
    "tilde": "~",
}

_REPEAT_RE = re.compile(r"^(.+?)\*(\d+)$")
MAX_KEY_REPEAT = 100


def is_modifier_key(key: str | None) -> bool:
    """是否为修饰键（Control/Alt/Shift/Meta）。"""

    if not key:
        return False
    normalized = MODIFIER_KEYS.get(key.lower(), key)
    return normalized in ("Control", "Alt", "Shift", "Meta")


def to_playwright_key(key: str | None) -> str:
    """
    单个键名 → playwright 键名；未知键名原样返回。

    异常：
    - ToolError：key 为空
    """

    if not key:
        raise ToolError("Key cannot be empty")
    lowered = key.lower()
    if lowered in KEY_MAP:
        return KEY_MAP[lowered]
    if lowered in MODIFIER_KEYS:
        return MODIFIER_KEYS[lowered]
    return key


def parse_key_combination(combo: str) -> List[str]:
    """
    解析组合键（`ctrl+shift+a`）为按下顺序的键列表。

    异常：
    - ToolError：为空或含空段
    """

    if not combo:
        raise ToolError("Key combination cannot be empty")
    keys: List[str] = []
    for part in combo.lower().split("+"):
        part = part.strip()
        if not part:
            raise ToolError("Invalid key combination: empty key")
        keys.append(to_playwright_key(part))
    return keys


def parse_key_sequence(sequence: str) -> List[str]:
    """
    解析空格分隔的按键序列，支持 `key*N` 重复（1 <= N <= 100）。

    异常：
    - ToolError：序列为空或重复次数越界
    """

    if not sequence or not sequence.strip():
        raise ToolError("Key sequence cannot be empty")
    keys: List[str] = []
    for part in sequence.split():
        m = _REPEAT_RE.match(part)
        if m:
            count = int(m.group(2))
            if count < 1 or count > MAX_KEY_REPEAT:
                raise ToolError(f"Invalid repetition count {count}. Must be between 1 and {MAX_KEY_REPEAT}")
            keys.extend([to_playwright_key(m.group(1))] * count)
        else:
            keys.append(to_playwright_key(part))
    return keys
