"""Tool dispatcher: approval gate, denial memory and error capture.

A denial or a failing tool never aborts the turn; both become tool-result
payloads the model can react to.
"""

from __future__ import annotations

import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Union

from chat_harness.cancellation import CancellationToken
from chat_harness.errors import OperationCancelledError
from chat_harness.events.bus import EventBus
from chat_harness.tools.base import ToolProvider
from chat_harness.types import AgentEvent, EventType, ToolCall, ToolResult

_logger = logging.getLogger(__name__)

ApprovalCallback = Callable[[str, dict[str, Any]], Union[bool, Awaitable[bool]]]

DENIED_PAYLOAD = {"error": "denied"}
NO_PROVIDER_PAYLOAD = {"error": "no tool provider available"}


def tool_signature(name: str, arguments: dict[str, Any]) -> str:
    """Stable identity of a call: name plus key-sorted JSON arguments."""
    return f"{name}:{json.dumps(arguments, sort_keys=True, separators=(',', ':'), default=str)}"


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _accepts_call_id(callback: ApprovalCallback) -> bool:
    """True if *callback* takes a ``call_id`` keyword, as ApprovalBroker does."""
    try:
        params = inspect.signature(callback).parameters
    except (TypeError, ValueError):
        return False
    return "call_id" in params


class ToolDispatcher:
    """Runs one tool call through approval and the tool provider.

    Usage::

        dispatcher = ToolDispatcher(event_bus)
        result = await dispatcher.execute(call, provider, approve, denied)
    """

    def __init__(self, event_bus: EventBus | None = None) -> None:
        self._event_bus = event_bus

    async def execute(
        self,
        call: ToolCall,
        tool_provider: ToolProvider | None,
        approval_callback: ApprovalCallback | None,
        denied_signatures: set[str],
        cancel_token: CancellationToken | None = None,
    ) -> ToolResult:
        """Execute *call* and return its result.

        A signature denied earlier in the same run is auto-denied without
        asking again.  On a fresh denial the signature is added to
        *denied_signatures*.  With no callback, calls are approved.
        """
        signature = tool_signature(call.name, call.arguments)

        if signature in denied_signatures:
            _logger.info("Auto-denying previously denied call %s", signature)
            await self._emit(EventType.TOOL_DENIED, call, {"auto": True})
            return self._result(call, DENIED_PAYLOAD)

        if approval_callback is not None:
            await self._emit(EventType.TOOL_APPROVAL_REQUESTED, call, {})
            if _accepts_call_id(approval_callback):
                answer = approval_callback(call.name, call.arguments, call_id=call.call_id)
            else:
                answer = approval_callback(call.name, call.arguments)
            pending = _maybe_await(answer)
            if cancel_token is not None:
                approved = await cancel_token.race(pending)
            else:
                approved = await pending
            if not approved:
                denied_signatures.add(signature)
                _logger.info("User denied tool %s", call.name)
                await self._emit(EventType.TOOL_DENIED, call, {"auto": False})
                return self._result(call, DENIED_PAYLOAD)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        if tool_provider is None:
            _logger.warning("Tool %s requested but no tool provider is available", call.name)
            return self._result(call, NO_PROVIDER_PAYLOAD)

        await self._emit(EventType.TOOL_EXECUTING, call, {})
        try:
            payload = await _maybe_await(tool_provider.call_tool(call.name, call.arguments))
        except OperationCancelledError:
            raise
        except Exception as e:
            _logger.warning("Tool %s failed: %s: %s", call.name, type(e).__name__, e)
            await self._emit(EventType.TOOL_ERROR, call, {"error": str(e)})
            return self._result(call, {"error": str(e) or type(e).__name__})

        await self._emit(EventType.TOOL_EXECUTED, call, {})
        return self._result(call, payload)

    @staticmethod
    def _result(call: ToolCall, payload: Any) -> ToolResult:
        return ToolResult(name=call.name, payload=payload, call_id=call.call_id)

    async def _emit(self, event_type: EventType, call: ToolCall, extra: dict[str, Any]) -> None:
        if self._event_bus is None:
            return
        data = {"tool": call.name, "arguments": call.arguments, "call_id": call.call_id}
        data.update(extra)
        await self._event_bus.emit(AgentEvent(type=event_type, data=data))
