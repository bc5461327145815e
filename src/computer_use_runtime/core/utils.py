"""共享工具函数（消除跨模块重复）。"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

_LOG_TEXT_LIMIT = 100


def utc_now() -> datetime:
    """返回当前 UTC 时间（timezone-aware）。"""
    return datetime.now(timezone.utc)


def abbreviate_for_log(value: Any, *, limit: int = _LOG_TEXT_LIMIT) -> Any:
    """
    递归缩短日志中的大字段（主要是 base64 截图）。

    参数：
    - value：任意 JSON-like 对象
    - limit：字符串保留的最大字符数

    返回：
    - 结构相同的新对象；超长字符串被截断为 `<前缀>...<N chars>`
    """

    if isinstance(value, str):
        if len(value) <= limit:
            return value
        return f"{value[:limit]}...<{len(value)} chars>"
    if isinstance(value, list):
        return [abbreviate_for_log(v, limit=limit) for v in value]
    if isinstance(value, dict):
        return {k: abbreviate_for_log(v, limit=limit) for k, v in value.items()}
    return value
