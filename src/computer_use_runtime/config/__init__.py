"""配置层（YAML + pydantic 校验）。"""

from __future__ import annotations

from computer_use_runtime.config.loader import (
    ExecutionConfig,
    RuntimeConfig,
    RuntimeHistoryConfig,
    RuntimeLlmConfig,
    RuntimeRunConfig,
    RuntimeToolsConfig,
    load_config,
    load_config_dicts,
    load_default_config_dict,
)

__all__ = [
    "ExecutionConfig",
    "RuntimeConfig",
    "RuntimeHistoryConfig",
    "RuntimeLlmConfig",
    "RuntimeRunConfig",
    "RuntimeToolsConfig",
    "load_config",
    "load_config_dicts",
    "load_default_config_dict",
]
