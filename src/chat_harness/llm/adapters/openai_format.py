"""OpenAI-style chat message serialisation shared by Copilot and Ollama."""

from __future__ import annotations

import json
from typing import Any

from chat_harness.llm.adapters.base import sanitize_schema, sanitize_tool_name
from chat_harness.types import History, Role, ToolDeclaration


def to_openai_messages(
    history: History,
    *,
    arguments_as_json: bool = True,
    tool_name_key: str | None = None,
) -> list[dict[str, Any]]:
    """Convert history to ``messages``.

    Parameters
    ----------
    arguments_as_json:
        Copilot expects tool-call arguments as a JSON string; Ollama expects
        an object.
    tool_name_key:
        When set, tool messages also carry the tool name under this key
        (Ollama has no call ids to correlate on).
    """
    messages: list[dict[str, Any]] = []
    for turn in history:
        if turn.role is Role.USER:
            messages.append({"role": "user", "content": turn.text})
        elif turn.role is Role.MODEL:
            msg: dict[str, Any] = {"role": "assistant", "content": turn.text}
            calls = turn.tool_calls
            if calls:
                msg["tool_calls"] = [
                    {
                        "id": call.call_id,
                        "type": "function",
                        "function": {
                            "name": sanitize_tool_name(call.name),
                            "arguments": (
                                json.dumps(call.arguments)
                                if arguments_as_json else call.arguments
                            ),
                        },
                    }
                    for call in calls
                ]
            messages.append(msg)
        else:
            for result in turn.tool_results:
                tool_msg: dict[str, Any] = {
                    "role": "tool",
                    "tool_call_id": result.call_id,
                    "content": json.dumps(result.payload, default=str),
                }
                if tool_name_key:
                    tool_msg[tool_name_key] = sanitize_tool_name(result.name)
                messages.append(tool_msg)
    return messages


def to_openai_tools(tools: list[ToolDeclaration]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": sanitize_tool_name(t.name),
                "description": t.description,
                "parameters": sanitize_schema(t.input_schema),
            },
        }
        for t in tools
    ]
