"""Orchestrator: the agentic turn loop.

    prompt -> compress? -> [curate -> send (retry) -> consume -> validate
                            -> dispatch tools]* -> final text

The loop is backend-agnostic; everything backend-specific lives in the
adapter.  History is owned by the orchestrator and replaced atomically.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Callable, Sequence

from chat_harness.cancellation import CancellationToken
from chat_harness.core.compressor import HistoryCompressor, estimate_tokens
from chat_harness.core.dispatcher import ApprovalCallback, ToolDispatcher
from chat_harness.core.history import curate_history
from chat_harness.errors import MaxTurnsExceededError, OperationCancelledError
from chat_harness.events.bus import EventBus
from chat_harness.llm.adapters.base import BackendAdapter, sanitize_tool_name
from chat_harness.llm.retry import RetryOptions, with_retry
from chat_harness.llm.stream import StreamConsumer, validate_stream_result
from chat_harness.tools.base import ToolProvider
from chat_harness.types import (
    AgentEvent,
    CompressionResult,
    EventType,
    History,
    Role,
    StreamResult,
    ToolCall,
    ToolDeclaration,
    Turn,
)

_logger = logging.getLogger(__name__)

MAX_ROUNDS = 10


@dataclass
class TokenEstimate:
    current: int
    limit: int
    model: str

    @property
    def fraction(self) -> float:
        return self.current / self.limit if self.limit else 0.0


class Orchestrator:
    """Runs prompts against one backend, looping through tool calls.

    Parameters
    ----------
    adapter:
        The backend to talk to.
    model:
        Model id; defaults to the adapter's default model.
    compressor:
        History compressor (a default one is created if omitted).
    dispatcher:
        Tool dispatcher (created on the event bus if omitted).
    event_bus:
        Event bus for UI and persistence hooks (optional).
    retry_options:
        Backoff policy for sends; the per-run cancel token is merged in.
    max_rounds:
        Backend round-trips allowed per ``run`` before giving up.
    history:
        Initial history, e.g. a restored conversation.
    """

    def __init__(
        self,
        adapter: BackendAdapter,
        model: str | None = None,
        *,
        compressor: HistoryCompressor | None = None,
        dispatcher: ToolDispatcher | None = None,
        event_bus: EventBus | None = None,
        retry_options: RetryOptions | None = None,
        max_rounds: int = MAX_ROUNDS,
        history: Sequence[Turn] = (),
    ) -> None:
        self._adapter = adapter
        self._model = model or adapter.default_model
        self._compressor = compressor or HistoryCompressor()
        self._event_bus = event_bus or EventBus()
        self._dispatcher = dispatcher or ToolDispatcher(self._event_bus)
        self._retry_options = retry_options or RetryOptions()
        self._max_rounds = max_rounds
        self._history: History = tuple(history)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def history(self) -> History:
        return self._history

    def load_history(self, turns: Sequence[Turn]) -> None:
        self._history = tuple(turns)

    def clear(self) -> None:
        self._history = ()

    @property
    def model(self) -> str:
        return self._model

    @model.setter
    def model(self, value: str) -> None:
        self._model = value

    @property
    def adapter(self) -> BackendAdapter:
        return self._adapter

    @adapter.setter
    def adapter(self, value: BackendAdapter) -> None:
        self._adapter = value

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    def token_estimate(self) -> TokenEstimate:
        return TokenEstimate(
            current=estimate_tokens(self._history),
            limit=self._compressor.get_limit(self._model),
            model=self._model,
        )

    async def compress(self, force: bool = True) -> CompressionResult:
        """Compress the history now (forced by default)."""
        result = self._compressor.compress(self._history, self._model, force=force)
        if result.compressed:
            self._history = result.new_history
            await self._emit(EventType.HISTORY_COMPRESSED, {
                "original_tokens": result.original_tokens,
                "new_tokens": result.new_tokens,
                "forced": force,
            })
        return result

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def run(
        self,
        prompt: str,
        tool_provider: ToolProvider | None = None,
        approval_callback: ApprovalCallback | None = None,
        cancel_token: CancellationToken | None = None,
        on_partial_text: Callable[[str], Any] | None = None,
    ) -> str:
        """Send *prompt* and loop until the model answers without tool calls.

        Returns
        -------
        str
            The final model text.

        Raises
        ------
        MaxTurnsExceededError
            No final answer within ``max_rounds`` round-trips.
        OperationCancelledError
            *cancel_token* fired; the history keeps every completed turn.
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt must not be empty")
        token = cancel_token or CancellationToken()
        retry_options = replace(self._retry_options, cancel_token=token)

        await self._emit(EventType.TURN_STARTED, {"prompt": prompt[:500], "model": self._model})
        try:
            token.raise_if_cancelled()
            self._history = (*self._history, Turn.user(prompt))
            await self.compress(force=False)

            tools = await self._load_tools(tool_provider)
            name_map = {sanitize_tool_name(t.name): t.name for t in tools}
            denied: set[str] = set()

            for round_no in range(1, self._max_rounds + 1):
                token.raise_if_cancelled()
                await self._emit(EventType.ROUND_STARTED, {"round": round_no})

                result = await self._request(tools, retry_options, token, on_partial_text)
                model_turn = self._model_turn(result, name_map)
                self._history = (*self._history, model_turn)

                calls = model_turn.tool_calls
                if not calls:
                    await self._round_completed(round_no)
                    await self._emit(EventType.TURN_DONE, {
                        "response": result.text[:500], "rounds": round_no,
                    })
                    return result.text

                results = []
                for call in calls:
                    token.raise_if_cancelled()
                    results.append(await self._dispatcher.execute(
                        call, tool_provider, approval_callback, denied, token,
                    ))
                self._history = (*self._history, Turn.tool(results))
                await self._round_completed(round_no)

            raise MaxTurnsExceededError(self._max_rounds)

        except (OperationCancelledError, asyncio.CancelledError):
            _logger.info("Turn cancelled")
            await self._emit(EventType.TURN_CANCELLED, {})
            raise
        except Exception as e:
            kind = getattr(e, "kind", type(e).__name__)
            _logger.warning("Turn failed (%s): %s", kind, e)
            await self._emit(EventType.TURN_ERROR, {"error": str(e), "kind": kind})
            raise

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_tools(self, tool_provider: ToolProvider | None) -> list[ToolDeclaration]:
        if tool_provider is None:
            return []
        tools = tool_provider.get_all_tools()
        if inspect.isawaitable(tools):
            tools = await tools
        return list(tools or [])

    async def _request(
        self,
        tools: list[ToolDeclaration],
        retry_options: RetryOptions,
        token: CancellationToken,
        on_partial_text: Callable[[str], Any] | None,
    ) -> StreamResult:
        curated = curate_history(self._history)
        payload = self._adapter.build_request(curated, tools, self._model)
        await self._emit(EventType.LLM_REQUEST, {
            "backend": self._adapter.name, "model": self._model, "turns": len(curated),
        })

        async def on_retry(error: BaseException, attempt: int, delay: float) -> None:
            await self._emit(EventType.LLM_RETRY, {
                "error": str(error), "attempt": attempt, "delay": delay,
            })

        raw = await with_retry(
            lambda: self._adapter.send(payload, token), retry_options, on_retry=on_retry,
        )
        consumer = StreamConsumer(
            raw.encoding, self._adapter.frame_parser(), on_partial_text, token,
        )
        try:
            result = await consumer.consume(raw.chunks)
        finally:
            await raw.aclose()

        validate_stream_result(result)
        await self._emit(EventType.LLM_RESPONSE, {
            "model": result.model or self._model,
            "finish_reason": result.finish_reason,
            "tool_calls": len(result.tool_calls),
            "content_length": len(result.text),
            "usage": result.usage,
        })
        return result

    @staticmethod
    def _model_turn(result: StreamResult, name_map: dict[str, str]) -> Turn:
        """Build the model turn, restoring tool names and filling call ids."""
        parts = []
        for part in result.to_turn().parts:
            if isinstance(part, ToolCall):
                part = ToolCall(
                    name=name_map.get(part.name, part.name),
                    arguments=part.arguments,
                    call_id=part.call_id or f"call_{uuid.uuid4().hex[:12]}",
                )
            parts.append(part)
        return Turn(Role.MODEL, tuple(parts))

    async def _round_completed(self, round_no: int) -> None:
        await self._emit(EventType.ROUND_COMPLETED, {
            "round": round_no, "history": self._history,
        })

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self._event_bus.emit(AgentEvent(type=event_type, data=data))
