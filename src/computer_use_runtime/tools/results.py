"""
ToolResult → provider `tool_result` block 的转换。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from computer_use_runtime.tools.protocol import ToolResult


def prepend_system_note(text: str, system: Optional[str]) -> str:
    """若存在系统备注，以 `<system>...</system>` 前缀拼到文本前。"""

    if system:
        return f"<system>{system}</system>\n{text}"
    return text


def make_tool_result_block(result: ToolResult, tool_use_id: str) -> Dict[str, Any]:
    """
    构造回注给模型的 `tool_result` block。

    规则：
    - 存在 error：仅一个 text block（错误文本，带可选系统备注），`is_error=True`
    - 否则：可选 output text block + 可选 png image block，`is_error=False`
    """

    content: List[Dict[str, Any]] = []
    is_error = result.is_error
    if is_error:
        content.append({"type": "text", "text": prepend_system_note(str(result.error), result.system)})
    else:
        if result.output:
            content.append({"type": "text", "text": prepend_system_note(result.output, result.system)})
        if result.base64_image:
            content.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": "image/png", "data": result.base64_image},
                }
            )
    return {"type": "tool_result", "tool_use_id": tool_use_id, "content": content, "is_error": is_error}
