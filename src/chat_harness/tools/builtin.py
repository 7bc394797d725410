"""Read-only file tools registered by the CLI when no plugins are installed."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from chat_harness.tools.base import Tool

_MAX_FILE_BYTES = 10_000_000
_MAX_ENTRIES = 500


class ReadFileTool(Tool):
    """Read a text file, optionally a window of lines."""

    name = "read_file"
    description = "Read the contents of a file. Returns numbered lines."
    max_output = 8000
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path to the file to read"},
            "offset": {
                "type": "integer",
                "description": "Line number to start reading from (0-based)",
            },
            "limit": {"type": "integer", "description": "Maximum number of lines"},
        },
        "required": ["path"],
    }

    async def execute(self, **kwargs: Any) -> str:
        path = kwargs.get("path", "")
        offset = int(kwargs.get("offset") or 0)
        limit = int(kwargs.get("limit") or 0)
        if not path:
            raise ValueError("No path provided")

        def _read() -> str:
            p = Path(path).expanduser().resolve()
            if not p.is_file():
                raise FileNotFoundError(f"Not a file: {p}")
            size = p.stat().st_size
            if size > _MAX_FILE_BYTES:
                raise ValueError(f"File too large ({size} bytes, max 10MB)")
            lines = p.read_text(errors="replace").splitlines()
            if offset > 0:
                lines = lines[offset:]
            if limit > 0:
                lines = lines[:limit]
            return "\n".join(
                f"{i:>5}\t{line}" for i, line in enumerate(lines, start=offset + 1)
            )

        return await asyncio.to_thread(_read)


class ListDirectoryTool(Tool):
    """List a directory, directories first marked with ``d``."""

    name = "list_dir"
    description = "List files and directories in a given path."
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Directory path to list"},
        },
    }

    async def execute(self, **kwargs: Any) -> list[str]:
        path = kwargs.get("path") or "."

        def _list() -> list[str]:
            p = Path(path).expanduser().resolve()
            if not p.is_dir():
                raise NotADirectoryError(f"Not a directory: {p}")
            return [
                ("d " if item.is_dir() else "f ") + item.name
                for item in sorted(p.iterdir(), key=lambda i: (not i.is_dir(), i.name))[:_MAX_ENTRIES]
            ]

        return await asyncio.to_thread(_list)


def register_builtins(registry) -> None:
    for tool_cls in (ReadFileTool, ListDirectoryTool):
        registry.register(tool_cls())
