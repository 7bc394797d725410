"""Shared data types for Chat Harness."""

from __future__ import annotations

import enum
import json
import time
from dataclasses import dataclass, field
from typing import Any, Union


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Author of a turn."""

    USER = "user"
    MODEL = "model"
    TOOL = "tool"


@dataclass(frozen=True)
class TextPart:
    """Plain text content."""

    text: str


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str = ""


@dataclass(frozen=True)
class ToolResult:
    """Outcome of a tool invocation, fed back to the model.

    ``payload`` is whatever the tool provider returned, or an
    ``{"error": ...}`` mapping for denials and failures.
    """

    name: str
    payload: Any
    call_id: str = ""

    @property
    def is_error(self) -> bool:
        return isinstance(self.payload, dict) and "error" in self.payload


Part = Union[TextPart, ToolCall, ToolResult]


def part_size(part: Part) -> int:
    """Character footprint of a part, used for token estimation."""
    if isinstance(part, TextPart):
        return len(part.text)
    if isinstance(part, ToolCall):
        return len(part.name) + len(json.dumps(part.arguments, default=str))
    return len(part.name) + len(json.dumps(part.payload, default=str))


@dataclass(frozen=True)
class Turn:
    """One message in a conversation: a role plus an ordered list of parts."""

    role: Role
    parts: tuple[Part, ...]
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def user(cls, text: str) -> Turn:
        return cls(Role.USER, (TextPart(text),))

    @classmethod
    def model(cls, text: str) -> Turn:
        return cls(Role.MODEL, (TextPart(text),))

    @classmethod
    def tool(cls, results: list[ToolResult]) -> Turn:
        return cls(Role.TOOL, tuple(results))

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [p for p in self.parts if isinstance(p, ToolCall)]

    @property
    def tool_results(self) -> list[ToolResult]:
        return [p for p in self.parts if isinstance(p, ToolResult)]

    @property
    def has_tool_calls(self) -> bool:
        return any(isinstance(p, ToolCall) for p in self.parts)

    @property
    def char_count(self) -> int:
        return sum(part_size(p) for p in self.parts)

    def is_valid(self) -> bool:
        """A turn is sendable when it carries real content.

        Empty parts lists, empty text parts and whitespace-only text turns
        are rejected.
        """
        if not self.parts:
            return False
        text_only = True
        for part in self.parts:
            if isinstance(part, TextPart):
                if part.text == "":
                    return False
            else:
                text_only = False
        if text_only and not self.text.strip():
            return False
        return True


History = tuple[Turn, ...]


# ---------------------------------------------------------------------------
# Backend types
# ---------------------------------------------------------------------------

@dataclass
class ToolDeclaration:
    """A tool advertised to the model."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelInfo:
    """A model offered by a backend."""

    id: str
    display_name: str = ""

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.id


@dataclass
class StreamResult:
    """Accumulated outcome of one backend response."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    has_finish_reason: bool = False
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    def to_turn(self) -> Turn:
        parts: list[Part] = []
        if self.text:
            parts.append(TextPart(self.text))
        parts.extend(self.tool_calls)
        return Turn(Role.MODEL, tuple(parts))


# ---------------------------------------------------------------------------
# Compression types
# ---------------------------------------------------------------------------

class CompressionStatus(enum.Enum):
    NOOP = "noop"
    COMPRESSED = "compressed"
    SKIPPED_TOO_SHORT = "skipped_too_short"


@dataclass
class CompressionResult:
    """Outcome of a compression attempt."""

    status: CompressionStatus
    original_tokens: int
    new_tokens: int
    new_history: History
    reason: str = ""

    @property
    def compressed(self) -> bool:
        return self.status is CompressionStatus.COMPRESSED


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Event types emitted by the engine."""

    # Turn lifecycle
    TURN_STARTED = "turn.started"
    TURN_DONE = "turn.done"
    TURN_ERROR = "turn.error"
    TURN_CANCELLED = "turn.cancelled"

    # Round events (one backend round-trip each)
    ROUND_STARTED = "round.started"
    ROUND_COMPLETED = "round.completed"

    # LLM events
    LLM_REQUEST = "llm.request"
    LLM_RESPONSE = "llm.response"
    LLM_RETRY = "llm.retry"

    # Tool events
    TOOL_APPROVAL_REQUESTED = "tool.approval_requested"
    TOOL_DENIED = "tool.denied"
    TOOL_EXECUTING = "tool.executing"
    TOOL_EXECUTED = "tool.executed"
    TOOL_ERROR = "tool.error"

    # History events
    HISTORY_COMPRESSED = "history.compressed"


@dataclass
class AgentEvent:
    """Event emitted by the engine via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
