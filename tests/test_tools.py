"""Tests for the immutable tool registry and the built-in tools."""

import pytest
from langchain_core.tools import StructuredTool

from humanagent.tools.registry import ImmutableToolRegistry
from humanagent.tools.registry import ToolNotAllowed
from humanagent.tools.registry import get_tool_registry


def _tool(name):
    return StructuredTool.from_function(func=lambda: name, name=name, description=f"{name} tool")


class TestImmutableToolRegistry:
    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError, match="Duplicate tool name 'echo'"):
            ImmutableToolRegistry.build([[_tool("echo")], [_tool("echo")]])

    @pytest.mark.parametrize(
        "name, allowed, expected",
        [
            ("word_count", None, True),
            ("word_count", [], True),
            ("word_count", ["word_count"], True),
            ("datetime_diff", ["date*"], True),
            ("generate_uuid", ["date*", "word_count"], False),
        ],
    )
    def test_allowlist(self, name, allowed, expected):
        assert ImmutableToolRegistry.is_allowed(name, allowed) is expected

    def test_filter_by_allowlist(self):
        registry = ImmutableToolRegistry.build([[_tool("alpha"), _tool("beta")]])
        assert [t.name for t in registry.filter_by_allowlist(["a*"])] == ["alpha"]
        assert registry.list_names() == ["alpha", "beta"]


class TestBuiltinTools:
    def test_default_registry(self):
        assert get_tool_registry().list_names() == ["datetime_diff", "generate_uuid", "get_current_time", "word_count"]

    @pytest.mark.asyncio
    async def test_datetime_diff(self):
        hours = await get_tool_registry().invoke(
            "datetime_diff",
            {"start_time": "2026-01-01T00:00:00Z", "end_time": "2026-01-01T06:30:00Z", "unit": "hours"},
        )
        assert hours == 6.5

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        with pytest.raises(KeyError):
            await get_tool_registry().invoke("rm_rf", {})

    @pytest.mark.asyncio
    async def test_tool_outside_allowlist(self):
        with pytest.raises(ToolNotAllowed):
            await get_tool_registry().invoke("generate_uuid", {}, allowed=["word_count"])
