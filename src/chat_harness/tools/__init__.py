"""Tool providers for Chat Harness."""

from chat_harness.tools.base import PromptInfo, Tool, ToolNotFoundError, ToolProvider
from chat_harness.tools.registry import ToolRegistry

__all__ = ["PromptInfo", "Tool", "ToolNotFoundError", "ToolProvider", "ToolRegistry"]
