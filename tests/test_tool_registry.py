"""Tests for the tool registry, Tool base class and built-in tools."""

from __future__ import annotations

from typing import Any

import pytest

from chat_harness.tools.base import Tool, ToolNotFoundError, ToolProvider
from chat_harness.tools.builtin import ListDirectoryTool, ReadFileTool, register_builtins
from chat_harness.tools.registry import ToolRegistry, _smart_truncate


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class EchoTool(Tool):
    """Simple mock tool for testing."""

    name = "echo"
    description = "Echoes the input message."
    input_schema = {
        "type": "object",
        "properties": {"message": {"type": "string"}},
    }

    async def execute(self, **kwargs: Any) -> str:
        return f"Echo: {kwargs.get('message', '')}"


class LongTool(Tool):
    name = "long"
    max_output = 100

    async def execute(self, **kwargs: Any) -> str:
        return "x" * 1000


@pytest.fixture
def registry() -> ToolRegistry:
    reg = ToolRegistry()
    reg.register(EchoTool())
    return reg


class TestRegistry:
    def test_is_tool_provider(self, registry: ToolRegistry):
        assert isinstance(registry, ToolProvider)

    def test_declarations(self, registry: ToolRegistry):
        decls = registry.get_all_tools()
        assert [d.name for d in decls] == ["echo"]
        assert decls[0].description == "Echoes the input message."
        assert decls[0].input_schema["properties"]["message"]["type"] == "string"

    @pytest.mark.asyncio
    async def test_call_tool(self, registry: ToolRegistry):
        assert await registry.call_tool("echo", {"message": "hi"}) == "Echo: hi"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry: ToolRegistry):
        with pytest.raises(ToolNotFoundError, match="Available: echo"):
            await registry.call_tool("nope", {})

    @pytest.mark.asyncio
    async def test_long_output_truncated(self, registry: ToolRegistry):
        registry.register(LongTool())
        result = await registry.call_tool("long", {})
        assert "chars truncated" in result
        assert len(result) < 1000

    def test_smart_truncate_keeps_head_and_tail(self):
        text = "H" * 50 + "M" * 500 + "T" * 50
        out = _smart_truncate(text, 100)
        assert out.startswith("H" * 25)
        assert out.endswith("T" * 50)
        assert _smart_truncate("short", 100) == "short"


class TestPrompts:
    def test_register_and_render(self, registry: ToolRegistry):
        registry.register_prompt(
            "review", "Review {path} for {focus}.", "Code review",
            arguments=["path", "focus"],
        )
        [info] = registry.get_all_prompts()
        assert (info.server, info.name) == ("local", "review")
        rendered = registry.get_prompt("local", "review", {"path": "a.py", "focus": "bugs"})
        assert rendered == "Review a.py for bugs."

    def test_missing_arguments(self, registry: ToolRegistry):
        registry.register_prompt("p", "{x}", arguments=["x"])
        with pytest.raises(ValueError, match="missing arguments: x"):
            registry.get_prompt("local", "p", {})

    def test_unknown_prompt(self, registry: ToolRegistry):
        with pytest.raises(KeyError):
            registry.get_prompt("local", "nope", {})


class TestBuiltins:
    def test_register_builtins(self):
        reg = ToolRegistry()
        register_builtins(reg)
        assert reg.tool_names() == ["read_file", "list_dir"]

    @pytest.mark.asyncio
    async def test_read_file_window(self, tmp_path):
        f = tmp_path / "notes.txt"
        f.write_text("one\ntwo\nthree\nfour\n")

        out = await ReadFileTool().execute(path=str(f), offset=1, limit=2)

        assert out == "    2\ttwo\n    3\tthree"

    @pytest.mark.asyncio
    async def test_read_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            await ReadFileTool().execute(path=str(tmp_path / "missing.txt"))

    @pytest.mark.asyncio
    async def test_list_dir_directories_first(self, tmp_path):
        (tmp_path / "b.txt").write_text("")
        (tmp_path / "a_dir").mkdir()
        (tmp_path / "a.txt").write_text("")

        out = await ListDirectoryTool().execute(path=str(tmp_path))

        assert out == ["d a_dir", "f a.txt", "f b.txt"]
