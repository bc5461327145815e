from __future__ import annotations

import asyncio
from typing import List, Tuple

import pytest

from computer_use_runtime.core.errors import DuplicateCapabilityError
from computer_use_runtime.tools.protocol import ToolCapability, ToolResult
from computer_use_runtime.tools.registry import (
    CapabilityRegistry,
    CapabilityRegistryConfig,
    assemble_capabilities,
    get_default_registry,
    reset_default_registry,
)


async def _echo(page, args: List[str]) -> ToolResult:  # type: ignore[no-untyped-def]
    _ = page
    return ToolResult(output=" ".join(args))


def _cap(method: str, *, tool: str = "playwright", **kwargs) -> ToolCapability:  # type: ignore[no-untyped-def]
    fields = {
        "description": f"{method} description",
        "usage": f"Step one for {method}\n\n  Step two  ",
        "handler": _echo,
    }
    fields.update(kwargs)
    return ToolCapability(tool=tool, method=method, **fields)


def test_duplicate_registration_is_rejected_and_first_entry_kept() -> None:
    registry = CapabilityRegistry()
    first = _cap("goto")
    registry.register(first)

    with pytest.raises(DuplicateCapabilityError) as ei:
        registry.register(_cap("goto", description="other"))

    assert ei.value.code == "DUPLICATE_CAPABILITY"
    assert ei.value.key == "playwright:goto"
    assert "already registered" in str(ei.value)
    assert registry.get_all() == [first]


def test_queries_and_tool_names() -> None:
    registry = CapabilityRegistry()
    registry.register(_cap("goto"))
    registry.register(_cap("open_tab", tool="browser"))
    registry.register(_cap("extract_url"))

    assert registry.get("playwright", "goto") is not None
    assert registry.get("playwright", "nope") is None
    assert [c.method for c in registry.get_tool_capabilities("playwright")] == ["goto", "extract_url"]
    assert registry.get_tool_names() == ["playwright", "browser"]
    assert registry.is_enabled("browser", "open_tab")


def test_config_overrides_and_filter_apply_at_registration() -> None:
    registry = CapabilityRegistry(
        CapabilityRegistryConfig(
            overrides={"playwright:goto": {"enabled": False}},
            filter=lambda c: c.method != "secret",
        )
    )
    registry.register(_cap("goto"))
    registry.register(_cap("secret"))

    assert not registry.is_enabled("playwright", "goto")
    assert registry.get("playwright", "secret") is None
    assert registry.generate_tool_docs("playwright") == ""


def test_validate_reports_unknown_and_schema_errors() -> None:
    registry = CapabilityRegistry()
    registry.register(_cap("goto"))
    registry.register(_cap("pair", args_schema=Tuple[str, str]))

    assert registry.validate("playwright", "goto", ["https://example.test"]).valid
    unknown = registry.validate("playwright", "missing", [])
    assert not unknown.valid
    assert unknown.errors == ["Unknown capability: playwright:missing"]
    bad = registry.validate("playwright", "pair", ["only-one"])
    assert not bad.valid and bad.errors

    lenient = CapabilityRegistry(CapabilityRegistryConfig(validate_inputs=False))
    lenient.register(_cap("pair", args_schema=Tuple[str, str]))
    assert lenient.validate("playwright", "pair", []).valid


def test_generated_docs_format() -> None:
    registry = CapabilityRegistry()
    registry.register(_cap("goto"))
    docs = registry.generate_tool_docs("playwright")

    assert docs.startswith("PLAYWRIGHT TOOL CAPABILITIES:")
    assert "* You have access to a 'playwright' tool that provides the following capabilities:" in docs
    assert "  - 'goto': goto description" in docs
    assert "HOW TO USE GOTO:\n1. Step one for goto\n2. Step two" in docs
    assert registry.generate_all_docs() == docs.strip()


def test_assemble_capabilities_run_overrides_win_and_are_readonly() -> None:
    registry = CapabilityRegistry()
    registry.register(_cap("goto"))
    registry.register(_cap("extract_url"))
    custom = _cap("goto", description="custom goto")

    table = assemble_capabilities(
        registry,
        "playwright",
        [custom, _cap("extract_url", enabled=False), _cap("scroll_to_text")],
    )

    assert list(table) == ["goto", "scroll_to_text"]
    assert table["goto"] is custom
    with pytest.raises(TypeError):
        table["x"] = custom  # type: ignore[index]
    # 注册表本身不受 run 级覆盖影响
    assert registry.get("playwright", "goto").description == "goto description"  # type: ignore[union-attr]

    with pytest.raises(ValueError):
        assemble_capabilities(registry, "playwright", [_cap("other", tool="browser")])


def test_default_registry_seeds_builtins_and_resets() -> None:
    registry = get_default_registry()
    assert [c.method for c in registry.get_tool_capabilities("playwright")] == [
        "goto",
        "extract_url",
        "scroll_to_text",
    ]
    assert get_default_registry() is registry

    registry.register(_cap("extra"))
    with pytest.raises(DuplicateCapabilityError):
        registry.register(_cap("goto"))

    reset_default_registry()
    fresh = get_default_registry()
    assert fresh is not registry
    assert fresh.get("playwright", "extra") is None


def test_capability_handler_is_awaitable() -> None:
    cap = _cap("goto")
    result = asyncio.run(cap.handler(None, ["a", "b"]))
    assert result.output == "a b"
