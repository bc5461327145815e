"""
SDK 内部错误分类（异常类型）。

说明：
- 控制类违规（未知 tool/method、参数形态错误、重复注册 capability）一律同步抛出，不重试、不吞掉。
- 网络类瞬时错误只在 model call 边界按 RetryPolicy 重试（见 `llm/retry.py`）。
- 取消不是异常：run 被取消时 sampling loop 正常返回 transcript。
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class RuntimeSdkError(Exception):
    """SDK 内部错误基类（不建议直接抛出）。"""


class FrameworkError(RuntimeSdkError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"


class UserError(FrameworkError):
    """用户输入/配置导致的错误。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        """创建 `UserError`。

        参数：
        - `message`：可读错误信息
        - `code`：错误码（默认 `USER_ERROR`）
        - `details`：结构化补充信息
        """

        super().__init__(code=code, message=message, details=details or {})


class DuplicateCapabilityError(UserError):
    """同一 `tool:method` 被重复注册到 CapabilityRegistry。"""

    def __init__(self, key: str) -> None:
        """创建重复注册错误。

        参数：
        - `key`：capability key（形如 `playwright:goto`）
        """

        super().__init__(
            f"Capability '{key}' is already registered",
            code="DUPLICATE_CAPABILITY",
            details={"key": key},
        )
        self.key = key


class ToolError(RuntimeSdkError):
    """工具派发/执行失败（未知 tool、action 非法、参数缺失、handler 失败等）。"""


class LlmError(RuntimeSdkError):
    """LLM 通信/协议错误。"""


class ProviderProtocolError(LlmError):
    """
    provider 响应形态不符合 Messages 协议（例如 content block 缺少 `type`）。

    说明：
    - 该类错误属于系统性 bug，不做重试也不做掩盖。
    """


class RunCancelledError(RuntimeSdkError):
    """协作方主动检查 CancellationToken 时抛出（sampling loop 自身不会抛出该异常）。"""

    def __init__(self, reason: Optional[str] = None) -> None:
        """创建取消异常。

        参数：
        - `reason`：可选的取消原因（来自 `cancel` 信号）
        """

        super().__init__(reason or "run cancelled")
        self.reason = reason
