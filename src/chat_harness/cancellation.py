"""Cooperative cancellation shared by a turn and everything it awaits."""

from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, TypeVar

from chat_harness.errors import OperationCancelledError

T = TypeVar("T")


class CancellationToken:
    """A one-shot cancellation signal.

    The engine checks the token at each suspension point (network send,
    stream chunk, tool approval, tool execution).  A tool that is already
    running is never killed; cancellation takes effect at the next check.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError()

    async def sleep(self, delay: float) -> None:
        """Sleep for *delay* seconds, waking early if cancelled."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(delay, 0))
        except asyncio.TimeoutError:
            return
        raise OperationCancelledError()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable*, abandoning it if the token fires first."""
        if self._event.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelledError()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        raise OperationCancelledError()
