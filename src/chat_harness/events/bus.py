"""Event bus the turn loop reports to.

The orchestrator and dispatcher emit :class:`AgentEvent` records; the CLI
and persistence hooks observe them without the engine knowing who listens.
"""

from __future__ import annotations

import inspect
import logging
from collections import deque
from typing import Any, Callable

from chat_harness.types import AgentEvent, EventType

_logger = logging.getLogger(__name__)

Handler = Callable[[AgentEvent], Any]


class EventBus:
    """Delivers engine events to observers, in subscription order.

    A handler subscribed with ``event_type=None`` sees every event.  Sync
    and async handlers are both accepted; a handler that raises is logged
    and skipped so observers can never break a turn.

    Parameters
    ----------
    max_history:
        Number of recent events kept for :attr:`history` (0 keeps none).
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: list[tuple[EventType | None, Handler]] = []
        self._history: deque[AgentEvent] = deque(maxlen=max_history)

    def subscribe(
        self,
        event_type: EventType | None,
        handler: Handler,
    ) -> Callable[[], None]:
        """Register *handler*; returns a callable that removes it again."""
        entry = (event_type, handler)
        self._handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return unsubscribe

    async def emit(self, event: AgentEvent) -> None:
        self._history.append(event)
        for event_type, handler in list(self._handlers):
            if event_type is None or event_type is event.type:
                await self._deliver(handler, event)

    @property
    def history(self) -> list[AgentEvent]:
        return list(self._history)

    def events_of(self, event_type: EventType) -> list[AgentEvent]:
        """Recorded events of one type, oldest first."""
        return [e for e in self._history if e.type is event_type]

    @staticmethod
    async def _deliver(handler: Handler, event: AgentEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "Event handler %s failed on %s",
                getattr(handler, "__name__", handler),
                event.type.value,
            )
