"""
配置加载器（YAML）。

默认配置：`src/computer_use_runtime/assets/default.yaml`

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）；
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）；
- API key 不进入配置文件：只记录环境变量名（`llm.api_key_env`）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from computer_use_runtime.tools.versions import TOOL_GROUPS_BY_VERSION


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class RuntimeLlmConfig(BaseModel):
    """LLM 连接配置（Anthropic Messages 兼容端点）。"""

    model_config = ConfigDict(extra="forbid")

    class Retry(BaseModel):
        """
        model call 的重试/退避策略。

        说明：
        - retryable_errors / retryable_status_codes 为 None 时使用内置默认表。
        """

        model_config = ConfigDict(extra="forbid")

        max_retries: int = Field(default=3, ge=0)
        initial_delay_ms: float = Field(default=1000, ge=0)
        max_delay_ms: float = Field(default=30000, ge=0)
        backoff_multiplier: float = Field(default=2, ge=1)
        retryable_errors: Optional[List[str]] = None
        retryable_status_codes: Optional[List[int]] = None

    base_url: str = "https://api.anthropic.com"
    api_key_env: str = "ANTHROPIC_API_KEY"
    anthropic_version: str = "2023-06-01"
    timeout_sec: float = Field(default=120.0, gt=0)
    retry: Retry = Field(default_factory=Retry)


class RuntimeRunConfig(BaseModel):
    """单次 run 的模型参数与工具版本。"""

    model_config = ConfigDict(extra="forbid")

    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = Field(default=4096, ge=1)
    thinking_budget: Optional[int] = Field(default=None, ge=1)
    system_prompt_suffix: Optional[str] = None
    tool_version: str = "computer_use_20250429"
    token_efficient_tools_beta: bool = False
    prompt_caching: bool = True

    @field_validator("tool_version")
    @classmethod
    def _check_tool_version(cls, value: str) -> str:
        """tool_version 必须是已知的工具分组。"""

        if value not in TOOL_GROUPS_BY_VERSION:
            raise ValueError(f"run.tool_version must be one of: {sorted(TOOL_GROUPS_BY_VERSION)}")
        return value


class RuntimeHistoryConfig(BaseModel):
    """transcript 维护参数（截断、cache hint、图片裁剪）。"""

    model_config = ConfigDict(extra="forbid")

    max_messages: int = Field(default=15, ge=1)
    preserve_first_user: bool = True
    cache_breakpoints: int = Field(default=3, ge=0)
    only_n_most_recent_images: Optional[int] = Field(default=None, ge=0)
    min_image_removal_threshold: Optional[int] = Field(default=None, ge=1)


class ExecutionConfig(BaseModel):
    """computer 工具的执行细节（typing / screenshot / mouse / scrolling）。"""

    model_config = ConfigDict(extra="forbid")

    class Typing(BaseModel):
        """文本输入方式。"""

        model_config = ConfigDict(extra="forbid")

        mode: Literal["character_by_character", "fill"] = "character_by_character"
        character_delay_ms: int = Field(default=12, ge=0)
        completion_delay_ms: int = Field(default=100, ge=0)

    class Screenshot(BaseModel):
        """截图前等待页面稳定的延迟。"""

        model_config = ConfigDict(extra="forbid")

        delay_sec: float = Field(default=0.3, ge=0)

    class Mouse(BaseModel):
        """鼠标点击参数。"""

        model_config = ConfigDict(extra="forbid")

        click_delay_ms: int = Field(default=50, ge=0)

    class Scrolling(BaseModel):
        """未显式给出 scroll_amount 时的默认滚动比例（视口百分比）。"""

        model_config = ConfigDict(extra="forbid")

        percentage: int = Field(default=90, ge=1, le=100)

    typing: Typing = Field(default_factory=Typing)
    screenshot: Screenshot = Field(default_factory=Screenshot)
    mouse: Mouse = Field(default_factory=Mouse)
    scrolling: Scrolling = Field(default_factory=Scrolling)


class RuntimeToolsConfig(BaseModel):
    """工具层配置。"""

    model_config = ConfigDict(extra="forbid")

    class Capabilities(BaseModel):
        """capability registry 行为。"""

        model_config = ConfigDict(extra="forbid")

        validate_inputs: bool = True
        include_in_system_prompt: bool = True

    display_width_px: int = Field(default=1280, ge=1)
    display_height_px: int = Field(default=720, ge=1)
    capabilities: Capabilities = Field(default_factory=Capabilities)


class RuntimeConfig(BaseModel):
    """SDK 配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    run: RuntimeRunConfig = Field(default_factory=RuntimeRunConfig)
    llm: RuntimeLlmConfig = Field(default_factory=RuntimeLlmConfig)
    history: RuntimeHistoryConfig = Field(default_factory=RuntimeHistoryConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    tools: RuntimeToolsConfig = Field(default_factory=RuntimeToolsConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"配置文件不存在：{path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"配置文件根节点必须为 mapping(dict)：{path}")
    return data


def load_default_config_dict() -> Dict[str, Any]:
    """读取包内默认配置（`assets/default.yaml`）。"""

    from importlib.resources import files

    text = files("computer_use_runtime.assets").joinpath("default.yaml").read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError("内置 default.yaml 根节点必须为 mapping(dict)")
    return data


def load_config_dicts(config_dicts: List[Dict[str, Any]]) -> RuntimeConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `RuntimeConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return RuntimeConfig.model_validate(merged)


def load_config(config_paths: List[Path], *, include_defaults: bool = True) -> RuntimeConfig:
    """
    加载并合并多个配置文件，返回校验后的 `RuntimeConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    - include_defaults：是否先合并包内 default.yaml
    """

    overlays: List[Dict[str, Any]] = [load_default_config_dict()] if include_defaults else []
    for path in config_paths:
        overlays.append(_load_yaml_file(Path(path)))
    return load_config_dicts(overlays)
