"""
`playwright` 工具：按 method 暴露浏览器能力（capability-based）。

内置 capabilities：
- goto：直接导航到 URL（缺少协议时补 `https://`）
- extract_url：按可见文本提取链接 URL
- scroll_to_text：把包含指定文本的元素滚动到视口中央

说明：
- 入参形态：`{"method": <str>, "args": [<str>, ...]}`；method 与参数 schema 的校验由 ToolDispatcher 完成；
- handler 抛出的异常统一包装为 `ToolError("Failed to execute <method>: ...")` 后向上传播。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping
from urllib.parse import urlparse

from computer_use_runtime.core.errors import ToolError
from computer_use_runtime.tools.protocol import CapabilityTool, ToolCapability, ToolExecutionContext, ToolResult
from computer_use_runtime.tools.registry import render_tool_docs

logger = logging.getLogger(__name__)

PLAYWRIGHT_TOOL_NAME = "playwright"

_SCROLL_TO_TEXT_JS = """({ targetText }) => {
  const walker = document.createTreeWalker(document.body, NodeFilter.SHOW_TEXT, {
    acceptNode: (node) =>
      node.textContent && node.textContent.includes(targetText)
        ? NodeFilter.FILTER_ACCEPT
        : NodeFilter.FILTER_REJECT,
  });
  const textNode = walker.nextNode();
  const found = textNode && textNode.parentElement;
  if (!found) {
    return { success: false, message: `Text "${targetText}" not found` };
  }
  found.scrollIntoView({ behavior: "smooth", block: "center", inline: "center" });
  return { success: true, message: `Scrolled to "${targetText}"` };
}"""


def normalize_url(url: str) -> str:
    """
    规范化 URL：缺少协议时补 `https://`。

    异常：
    - ToolError：为空或无法解析出 host
    """

    if not url or not isinstance(url, str):
        raise ToolError("URL must be a non-empty string")
    candidate = url.strip()
    parsed = urlparse(candidate)
    if not parsed.scheme or (parsed.scheme not in ("http", "https", "file", "about", "data") and not parsed.netloc):
        candidate = f"https://{candidate}"
        parsed = urlparse(candidate)
    if parsed.scheme in ("http", "https") and not parsed.netloc:
        raise ToolError(f"Invalid URL format: {url}")
    return candidate


async def _goto(page: Any, args: List[str]) -> ToolResult:
    """导航到 URL，等待网络空闲后返回标题。"""

    url = normalize_url(args[0])
    await page.goto(url, wait_until="networkidle", timeout=30000)
    await page.wait_for_timeout(1000)
    title = await page.title()
    return ToolResult(output=f'Successfully navigated to {page.url}. Page title: "{title}"')


async def _extract_url(page: Any, args: List[str]) -> ToolResult:
    """按可见文本查找链接并返回绝对 URL。"""

    text = args[0]
    url = None
    source = ""

    element = page.locator(f'text="{text}"').first
    if await element.count() > 0:
        url = await element.get_attribute("href")
        if url:
            source = "element with exact matching text"
        else:
            anchor = element.locator("xpath=ancestor::a[1]").first
            if await anchor.count() > 0:
                url = await anchor.get_attribute("href")
                source = "parent anchor of element with exact text"

    if not url:
        anchor = page.locator(f'a:has-text("{text}")').first
        if await anchor.count() > 0:
            url = await anchor.get_attribute("href")
            source = "anchor tag with text"

    if not url:
        raise ToolError(f'Could not find any URL associated with text: "{text}"')

    if url.startswith("/"):
        base = urlparse(page.url)
        url = f"{base.scheme}://{base.netloc}{url}"
    return ToolResult(output=f"Successfully extracted URL: {url} (from {source})")


async def _scroll_to_text(page: Any, args: List[str]) -> ToolResult:
    """把包含目标文本的元素滚动到视口中央。"""

    target = args[0]
    if not target:
        raise ToolError("target_text argument is required")
    scrolled = await page.evaluate(_SCROLL_TO_TEXT_JS, {"targetText": target})
    if not scrolled.get("success"):
        return ToolResult(output=f"{scrolled.get('message')}. Consider using regular computer scroll instead.")
    await page.wait_for_timeout(800)
    return ToolResult(output=str(scrolled.get("message")))


def builtin_playwright_capabilities() -> List[ToolCapability]:
    """返回内置 playwright capabilities（新列表，调用方可自由注册）。"""

    return [
        ToolCapability(
            tool=PLAYWRIGHT_TOOL_NAME,
            method="goto",
            display_name="Navigate to URL",
            description="Navigate directly to any URL or website",
            usage=(
                "Use this to navigate to any website directly without using the URL bar\n"
                'Call format: {"name": "playwright", "input": {"method": "goto", "args": ["url or domain"]}}\n'
                "The tool will automatically add https:// if no protocol is specified\n"
                "This is faster and more reliable than using ctrl+l and typing in the URL bar"
            ),
            handler=_goto,
        ),
        ToolCapability(
            tool=PLAYWRIGHT_TOOL_NAME,
            method="extract_url",
            display_name="Extract URL",
            description="Extract URLs from visible text, links, or buttons on the page",
            usage=(
                "First, take a screenshot to see what's on the page\n"
                "Identify the visible text of the link/button you want to extract the URL from\n"
                'Call format: {"name": "playwright", "input": {"method": "extract_url", "args": ["exact visible text"]}}\n'
                "The tool will search for the text and extract the associated URL"
            ),
            handler=_extract_url,
        ),
        ToolCapability(
            tool=PLAYWRIGHT_TOOL_NAME,
            method="scroll_to_text",
            display_name="Scroll to Text",
            description="Instantly scroll to specific text in dropdowns, lists, or on the page",
            usage=(
                "When you need to find specific text in a dropdown/list, use this FIRST\n"
                'Call format: {"name": "playwright", "input": {"method": "scroll_to_text", "args": ["exact text"]}}\n'
                "Only provide the text you're looking for - no CSS selectors needed\n"
                "This instantly scrolls the text into view without multiple attempts\n"
                "If it fails, fall back to regular computer scroll"
            ),
            handler=_scroll_to_text,
        ),
    ]


class PlaywrightTool(CapabilityTool):
    """capability-based 的 `playwright` 工具。"""

    name = PLAYWRIGHT_TOOL_NAME

    def __init__(self, page: Any, capabilities: Mapping[str, ToolCapability]) -> None:
        """
        创建 playwright 工具。

        参数：
        - `page`：playwright `Page`
        - `capabilities`：本 run 装配好的 capability 表（见 `assemble_capabilities`）
        """

        self._page = page
        self._capabilities = capabilities

    @property
    def capabilities(self) -> Mapping[str, ToolCapability]:
        """本 run 可用的 capability。"""

        return self._capabilities

    def capability_docs(self) -> str:
        """生成写入 system prompt 的 capability 文档。"""

        return render_tool_docs(self.name, self._capabilities.values())

    def to_params(self) -> Dict[str, Any]:
        """返回 `type=custom` 的工具定义（method 枚举为本 run 可用的 capability）。"""

        return {
            "name": self.name,
            "type": "custom",
            "input_schema": {
                "type": "object",
                "properties": {
                    "method": {
                        "type": "string",
                        "description": "The playwright function to call.",
                        "enum": list(self._capabilities.keys()),
                    },
                    "args": {
                        "type": "array",
                        "description": "The required arguments",
                        "items": {"type": "string", "description": "The argument to pass to the function"},
                    },
                },
                "required": ["method", "args"],
            },
        }

    async def call(self, args: Dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        """
        执行 capability handler。

        异常：
        - ToolError：method 不存在，或 handler 失败（包装原始异常）
        """

        method = args.get("method")
        capability = self._capabilities.get(str(method))
        if capability is None:
            raise ToolError(f"Unsupported method: {method}. Supported methods: {', '.join(self._capabilities)}")
        page = ctx.page if ctx.page is not None else self._page
        try:
            return await capability.handler(page, list(args.get("args") or []))
        except ToolError as exc:
            raise ToolError(f"Failed to execute {method}: {exc}") from exc
        except Exception as exc:
            logger.warning("playwright capability %s failed", method, exc_info=True)
            raise ToolError(f"Failed to execute {method}: {exc}") from exc
