from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from computer_use_runtime.config.loader import (
    RuntimeConfig,
    load_config,
    load_config_dicts,
    load_default_config_dict,
)


def test_packaged_defaults_match_model_defaults() -> None:
    cfg = load_config([])
    assert cfg == RuntimeConfig()
    assert cfg.run.model == "claude-sonnet-4-20250514"
    assert cfg.run.tool_version == "computer_use_20250429"
    assert cfg.history.max_messages == 15
    assert cfg.execution.typing.mode == "character_by_character"
    assert cfg.llm.retry.max_retries == 3
    assert load_default_config_dict()["config_version"] == 1


def test_yaml_overlays_are_deep_merged(tmp_path: Path) -> None:
    first = tmp_path / "a.yaml"
    first.write_text("run:\n  max_tokens: 2048\nexecution:\n  typing:\n    mode: fill\n", encoding="utf-8")
    second = tmp_path / "b.yaml"
    second.write_text("run:\n  thinking_budget: 1024\nllm:\n  retry:\n    max_retries: 5\n", encoding="utf-8")

    cfg = load_config([first, second])

    assert cfg.run.max_tokens == 2048
    assert cfg.run.thinking_budget == 1024
    assert cfg.run.model == "claude-sonnet-4-20250514"
    assert cfg.execution.typing.mode == "fill"
    assert cfg.execution.typing.character_delay_ms == 12
    assert cfg.llm.retry.max_retries == 5
    assert cfg.llm.retry.initial_delay_ms == 1000


def test_empty_yaml_file_is_noop(tmp_path: Path) -> None:
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert load_config([empty]) == RuntimeConfig()


def test_unknown_fields_are_rejected() -> None:
    with pytest.raises(ValidationError):
        load_config_dicts([{"run": {"modle": "typo"}}])
    with pytest.raises(ValidationError):
        load_config_dicts([{"execution": {"typing": {"mode": "teleport"}}}])


def test_tool_version_must_be_known() -> None:
    with pytest.raises(ValidationError, match="tool_version"):
        load_config_dicts([{"run": {"tool_version": "computer_use_1999"}}])
    cfg = load_config_dicts([{"run": {"tool_version": "computer_use_20241022"}}])
    assert cfg.run.tool_version == "computer_use_20241022"


def test_missing_file_and_non_mapping_root(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config([tmp_path / "nope.yaml"])
    bad = tmp_path / "list.yaml"
    bad.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError, match="mapping"):
        load_config([bad])


def test_without_defaults_uses_model_defaults(tmp_path: Path) -> None:
    only = tmp_path / "only.yaml"
    only.write_text("tools:\n  display_width_px: 1024\n", encoding="utf-8")
    cfg = load_config([only], include_defaults=False)
    assert cfg.tools.display_width_px == 1024
    assert cfg.tools.display_height_px == 720
