"""Tool provider protocol and the async Tool base class."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Protocol, Union, runtime_checkable

from chat_harness.types import ToolDeclaration

MaybeAwaitable = Union[Any, Awaitable[Any]]


@dataclass
class PromptInfo:
    """A reusable prompt template offered by a provider."""

    server: str
    name: str
    description: str = ""
    arguments: list[str] = field(default_factory=list)


@runtime_checkable
class ToolProvider(Protocol):
    """External source of tools and prompts.

    Every method may be sync or async; callers await results when needed.
    ``call_tool`` may raise; the dispatcher turns that into a tool-result
    error for the model.
    """

    def get_all_tools(self) -> MaybeAwaitable: ...

    def call_tool(self, name: str, args: dict[str, Any]) -> MaybeAwaitable: ...

    def get_all_prompts(self) -> MaybeAwaitable: ...

    def get_prompt(self, server: str, name: str, args: dict[str, Any]) -> MaybeAwaitable: ...


class ToolNotFoundError(LookupError):
    """Raised by a provider asked to run a tool it does not have."""


class Tool(ABC):
    """Base class for in-process tools.

    Subclasses set ``name``, ``description`` and ``input_schema`` (a JSON
    Schema object) and implement ``execute()``.  Whatever ``execute``
    returns is sent back to the model as the tool result payload.
    """

    name: str
    description: str = ""
    input_schema: dict[str, Any] = {"type": "object", "properties": {}}
    max_output: int = 20000  # chars; string payloads are truncated beyond this

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        """Run the tool."""

    def declaration(self) -> ToolDeclaration:
        return ToolDeclaration(
            name=self.name,
            description=self.description,
            input_schema=dict(self.input_schema),
        )
