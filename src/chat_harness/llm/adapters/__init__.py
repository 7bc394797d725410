"""Backend adapters for Chat Harness."""

from chat_harness.llm.adapters.base import (
    BackendAdapter,
    RawStream,
    sanitize_schema,
    sanitize_tool_name,
)
from chat_harness.llm.adapters.copilot import CopilotAdapter
from chat_harness.llm.adapters.gemini import GeminiAdapter
from chat_harness.llm.adapters.ollama import OllamaAdapter

__all__ = [
    "BackendAdapter",
    "CopilotAdapter",
    "GeminiAdapter",
    "OllamaAdapter",
    "RawStream",
    "sanitize_schema",
    "sanitize_tool_name",
]
