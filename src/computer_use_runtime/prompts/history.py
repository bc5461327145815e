"""
对话历史管理：在每次 model call 之前维护 transcript 的结构合法性与体积上限。

固定顺序（见 `prepare_history`）：
1. cache hint 注入：最近 N 条 user message 的最后一个 block 打 `cache_control`，更早的清除
2. 截断：超过 max_messages 时删除中段，保留首条 user message 与最近消息；之后重排 assistant blocks
3. 配对清理：tool_result 仅在“紧邻的上一条 assistant message”含同 id tool_use 时保留
4. 图片裁剪：配置了保留上限时，按批次从最旧的 tool_result 图片开始移除

说明：
- 所有变换原地修改 transcript，且在阈值以内时为安全 no-op（幂等）。
- message/block 均为 provider 形态的 dict，字段名保持原样。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

EPHEMERAL_CACHE_CONTROL: Dict[str, str] = {"type": "ephemeral"}

_REASONING_TYPES = ("thinking", "redacted_thinking")


@dataclass(frozen=True)
class HistorySettings:
    """
    history 变换参数。

    字段：
    - max_messages：transcript 最大条数
    - preserve_first_user：截断时是否保留首条 user message（通常是任务描述）
    - cache_breakpoints：cache hint 的 user message 预算；0 表示不注入
    - images_to_keep：tool_result 图片保留上限；None 表示不裁剪
    - min_image_removal_threshold：图片批量移除的最小批次；None 时取 images_to_keep
    """

    max_messages: int = 15
    preserve_first_user: bool = True
    cache_breakpoints: int = 3
    images_to_keep: Optional[int] = None
    min_image_removal_threshold: Optional[int] = None


def _is_block_list(content: Any) -> bool:
    """content 是否为 block 列表。"""

    return isinstance(content, list)


def inject_cache_hints(messages: List[Dict[str, Any]], *, max_breakpoints: int = 3) -> None:
    """
    从后向前为最近 `max_breakpoints` 条 user message 的最后一个 block 设置缓存边界，
    并清除更早 user message 上残留的边界。

    参数：
    - messages：transcript（原地修改）
    - max_breakpoints：边界预算
    """

    remaining = int(max_breakpoints)
    for message in reversed(messages):
        if message.get("role") != "user" or not _is_block_list(message.get("content")):
            continue
        content = message["content"]
        if not content:
            continue
        last = content[-1]
        if not isinstance(last, dict):
            continue
        if remaining > 0:
            remaining -= 1
            last["cache_control"] = dict(EPHEMERAL_CACHE_CONTROL)
        else:
            last.pop("cache_control", None)


def order_assistant_blocks(message: Dict[str, Any]) -> None:
    """
    把 assistant message 的 blocks 重排为 reasoning → text → tool_use → 其它。

    说明：
    - 各组内部保持原有相对顺序；非 assistant 或 content 非列表时不做处理。
    """

    if message.get("role") != "assistant" or not _is_block_list(message.get("content")):
        return
    reasoning: List[Any] = []
    text: List[Any] = []
    tool_use: List[Any] = []
    rest: List[Any] = []
    for block in message["content"]:
        btype = block.get("type") if isinstance(block, dict) else None
        if btype in _REASONING_TYPES:
            reasoning.append(block)
        elif btype == "text":
            text.append(block)
        elif btype == "tool_use":
            tool_use.append(block)
        else:
            rest.append(block)
    message["content"] = reasoning + text + tool_use + rest


def truncate_history(
    messages: List[Dict[str, Any]],
    *,
    max_messages: int = 15,
    preserve_first_user: bool = True,
) -> int:
    """
    将 transcript 截断到最多 `max_messages` 条。

    规则：
    - 保留首条 user message（preserve_first_user=True 时）以及最近的 `max_messages - 1` 条；
      首条 user message 之前若还有消息，也一并保留在头部预算内；
    - 否则仅保留最近 `max_messages` 条；
    - 截断后对所有 assistant message 做 block 重排（见 `order_assistant_blocks`）。

    返回：
    - 删除的条数（未超限时为 0）

    异常：
    - ValueError：max_messages < 1
    """

    if max_messages < 1:
        raise ValueError("max_messages 必须 >= 1")

    removed = 0
    if len(messages) > max_messages:
        first_user = next((i for i, m in enumerate(messages) if m.get("role") == "user"), None)
        if preserve_first_user and first_user is not None and first_user + 1 < max_messages:
            head = first_user + 1
            tail = max_messages - head
            removed = len(messages) - max_messages
            del messages[head : len(messages) - tail]
        elif preserve_first_user and first_user is not None:
            removed = len(messages) - 1
            kept = messages[first_user]
            messages[:] = [kept]
        else:
            removed = len(messages) - max_messages
            del messages[:removed]
        logger.debug("Truncated transcript: removed %d messages", removed)

    for message in messages:
        order_assistant_blocks(message)
    return removed


def _tool_use_ids(message: Optional[Dict[str, Any]]) -> Set[str]:
    """收集 assistant message 中的 tool_use id。"""

    if message is None or message.get("role") != "assistant" or not _is_block_list(message.get("content")):
        return set()
    return {
        str(b.get("id"))
        for b in message["content"]
        if isinstance(b, dict) and b.get("type") == "tool_use" and b.get("id") is not None
    }


def drop_unpaired_tool_results(messages: List[Dict[str, Any]]) -> int:
    """
    删除没有紧邻配对的 tool_result block。

    规则：
    - tool_result 仅当“紧邻的上一条 message”是 assistant 且包含同 id 的 tool_use 时保留；
    - 因此被截断移走请求的结果、或跨越多条 message 的结果都会被丢弃；
    - 被清空的 user message 一并删除。

    返回：
    - 删除的 tool_result block 数
    """

    dropped = 0
    out: List[Dict[str, Any]] = []
    for message in messages:
        content = message.get("content")
        if message.get("role") != "user" or not _is_block_list(content):
            out.append(message)
            continue
        valid_ids = _tool_use_ids(out[-1] if out else None)
        kept = [
            b
            for b in content
            if not (isinstance(b, dict) and b.get("type") == "tool_result")
            or str(b.get("tool_use_id")) in valid_ids
        ]
        dropped += len(content) - len(kept)
        if content and not kept:
            continue
        message["content"] = kept
        out.append(message)
    if dropped:
        logger.debug("Dropped %d unpaired tool_result blocks", dropped)
    messages[:] = out
    return dropped


def prune_images(
    messages: List[Dict[str, Any]],
    *,
    images_to_keep: int,
    min_removal_threshold: int,
) -> int:
    """
    移除 tool_result 中最旧的图片，只保留最近的 `images_to_keep` 张。

    规则：
    - 移除数量按 `min_removal_threshold` 向下取整成批次，避免每个 step 都让缓存边界失效；
    - 已在上限内（或不足一个批次）时不做任何修改。

    返回：
    - 实际移除的图片数
    """

    if images_to_keep < 0:
        raise ValueError("images_to_keep 必须 >= 0")
    threshold = max(1, int(min_removal_threshold))

    results: List[Dict[str, Any]] = [
        block
        for message in messages
        if _is_block_list(message.get("content"))
        for block in message["content"]
        if isinstance(block, dict) and block.get("type") == "tool_result" and _is_block_list(block.get("content"))
    ]
    total = sum(
        1 for r in results for item in r["content"] if isinstance(item, dict) and item.get("type") == "image"
    )
    excess = total - int(images_to_keep)
    if excess <= 0:
        return 0
    to_remove = (excess // threshold) * threshold
    remaining = to_remove
    for result in results:
        if remaining <= 0:
            break
        new_content: List[Any] = []
        for item in result["content"]:
            if remaining > 0 and isinstance(item, dict) and item.get("type") == "image":
                remaining -= 1
                continue
            new_content.append(item)
        result["content"] = new_content
    if to_remove:
        logger.debug("Pruned %d of %d tool_result images", to_remove, total)
    return to_remove


def prepare_history(messages: List[Dict[str, Any]], settings: Optional[HistorySettings] = None) -> None:
    """
    按固定顺序对 transcript 应用全部 history 变换（原地修改）。

    参数：
    - messages：transcript
    - settings：变换参数（默认 `HistorySettings()`）
    """

    s = settings or HistorySettings()
    if s.cache_breakpoints > 0:
        inject_cache_hints(messages, max_breakpoints=s.cache_breakpoints)
    truncate_history(messages, max_messages=s.max_messages, preserve_first_user=s.preserve_first_user)
    drop_unpaired_tool_results(messages)
    if s.images_to_keep is not None:
        threshold = s.min_image_removal_threshold if s.min_image_removal_threshold is not None else s.images_to_keep
        prune_images(messages, images_to_keep=s.images_to_keep, min_removal_threshold=threshold)
