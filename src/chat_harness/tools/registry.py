"""In-process tool provider with plugin discovery."""

from __future__ import annotations

import logging
from importlib.metadata import entry_points
from typing import Any

from chat_harness.tools.base import PromptInfo, Tool, ToolNotFoundError
from chat_harness.types import ToolDeclaration

_logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "chat_harness.tools"
LOCAL_SERVER = "local"


def _smart_truncate(text: str, max_length: int) -> str:
    """Keep the head and tail of long output with a marker in between."""
    if len(text) <= max_length:
        return text
    head_size = max_length // 4
    tail_size = max_length - head_size
    omitted = len(text) - max_length
    return (
        text[:head_size]
        + f"\n\n... [{omitted} chars truncated] ...\n\n"
        + text[-tail_size:]
    )


class ToolRegistry:
    """A :class:`~chat_harness.tools.base.ToolProvider` backed by local objects.

    Tools are :class:`Tool` instances; prompts are ``str.format`` templates
    registered under the ``local`` server name.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._prompts: dict[tuple[str, str], tuple[PromptInfo, str]] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def register_prompt(
        self,
        name: str,
        template: str,
        description: str = "",
        arguments: list[str] | None = None,
        server: str = LOCAL_SERVER,
    ) -> None:
        info = PromptInfo(server, name, description, list(arguments or []))
        self._prompts[(server, name)] = (info, template)

    def discover(self) -> None:
        """Load tools from entry points in the ``chat_harness.tools`` group.

        Each entry point may name a Tool subclass, a Tool instance or a
        factory returning one.
        """
        for ep in entry_points(group=ENTRY_POINT_GROUP):
            try:
                obj = ep.load()
                if isinstance(obj, type) and issubclass(obj, Tool):
                    tool = obj()
                elif isinstance(obj, Tool):
                    tool = obj
                elif callable(obj):
                    tool = obj()
                else:
                    _logger.warning(
                        "Entry point %s did not return a Tool: %s", ep.name, type(obj)
                    )
                    continue
                self.register(tool)
                _logger.info("Discovered plugin tool: %s", tool.name)
            except Exception:
                _logger.exception("Failed to load tool plugin: %s", ep.name)

    # ------------------------------------------------------------------
    # ToolProvider
    # ------------------------------------------------------------------

    def get_all_tools(self) -> list[ToolDeclaration]:
        return [t.declaration() for t in self._tools.values()]

    async def call_tool(self, name: str, args: dict[str, Any]) -> Any:
        """Run *name* with *args*.

        Raises :class:`ToolNotFoundError` for unknown tools; exceptions from
        the tool itself propagate.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(
                f"Unknown tool: {name}. Available: {', '.join(self._tools) or 'none'}"
            )
        result = await tool.execute(**args)
        if isinstance(result, str) and tool.max_output > 0:
            result = _smart_truncate(result, tool.max_output)
        return result

    def get_all_prompts(self) -> list[PromptInfo]:
        return [info for info, _ in self._prompts.values()]

    def get_prompt(self, server: str, name: str, args: dict[str, Any]) -> str:
        entry = self._prompts.get((server, name))
        if entry is None:
            raise KeyError(f"Unknown prompt: {server}/{name}")
        info, template = entry
        missing = [a for a in info.arguments if a not in args]
        if missing:
            raise ValueError(f"Prompt {name!r} missing arguments: {', '.join(missing)}")
        return template.format(**args)
