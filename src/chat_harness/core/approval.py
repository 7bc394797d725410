"""Correlated approval handshake between the engine and a UI.

Each tool approval is a request with a unique id; the UI answers it by id.
Several requests may be open at once (one per conversation) without a
shared global listener.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalRequest:
    request_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str = ""


class ApprovalBroker:
    """An approval callback whose answers arrive through :meth:`resolve`.

    Usage::

        broker = ApprovalBroker(on_request=ui.show_prompt)
        await orchestrator.run(prompt, provider, approval_callback=broker)
        # ...later, from the UI:
        broker.resolve(request.request_id, approved=True)

    Parameters
    ----------
    on_request:
        Called (sync or async) with each new :class:`ApprovalRequest`.
    """

    def __init__(self, on_request: Callable[[ApprovalRequest], Any] | None = None) -> None:
        self._on_request = on_request
        self._pending: dict[str, tuple[ApprovalRequest, asyncio.Future[bool]]] = {}

    async def __call__(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        call_id: str = "",
    ) -> bool:
        # The tool call id doubles as the request id unless it is already open
        if call_id and call_id not in self._pending:
            request_id = call_id
        else:
            request_id = uuid.uuid4().hex
        request = ApprovalRequest(request_id, tool_name, dict(arguments), call_id)
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[request.request_id] = (request, future)
        _logger.debug("Approval requested %s for %s", request.request_id, tool_name)
        try:
            if self._on_request is not None:
                result = self._on_request(request)
                if inspect.isawaitable(result):
                    await result
            return await future
        finally:
            self._pending.pop(request.request_id, None)

    def resolve(self, request_id: str, approved: bool) -> bool:
        """Answer a pending request; returns ``False`` if it is unknown."""
        entry = self._pending.get(request_id)
        if entry is None or entry[1].done():
            _logger.warning("Ignoring answer for unknown approval %s", request_id)
            return False
        entry[1].set_result(bool(approved))
        return True

    def pending(self) -> list[ApprovalRequest]:
        return [req for req, fut in self._pending.values() if not fut.done()]

    def cancel_all(self) -> None:
        """Deny every open request (e.g. when the UI goes away)."""
        for _, future in list(self._pending.values()):
            if not future.done():
                future.set_result(False)
