"""Backend adapter contract and shared HTTP plumbing.

An adapter translates the backend-neutral history into one backend's wire
format, opens the streaming response and interprets its frames.  The turn
loop never branches on which backend it is talking to.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from chat_harness.cancellation import CancellationToken
from chat_harness.errors import NetworkError, error_from_status
from chat_harness.llm.stream import FrameParser, StreamEncoding
from chat_harness.types import History, ModelInfo, ToolDeclaration

_logger = logging.getLogger(__name__)

_TOOL_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]")
_SCHEMA_DROP_KEYS = ("$schema", "title")


def sanitize_tool_name(name: str) -> str:
    """Restrict a tool name to the characters every backend accepts."""
    return _TOOL_NAME_RE.sub("_", name)


def sanitize_schema(schema: dict[str, Any] | None) -> dict[str, Any]:
    """Strip JSON-Schema metadata some backends reject."""
    cleaned = {k: v for k, v in (schema or {}).items() if k not in _SCHEMA_DROP_KEYS}
    cleaned.setdefault("type", "object")
    cleaned.setdefault("properties", {})
    return cleaned


@dataclass
class RawStream:
    """An open response body, ready to be consumed chunk by chunk."""

    encoding: StreamEncoding
    chunks: AsyncIterator[bytes]
    aclose: Callable[[], Awaitable[None]]


class BackendAdapter(ABC):
    """Contract every backend implements.

    Subclasses set ``name`` and ``default_model`` and implement request
    building, frame parsing and model listing.  ``send`` is shared: it posts
    the payload, maps failures onto the error taxonomy and returns the open
    body.
    """

    name: str = ""
    default_model: str = ""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=30, read=300),
        )

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def encoding(self) -> StreamEncoding:
        """Framing of response bodies."""

    @abstractmethod
    def build_request(
        self,
        history: History,
        tools: list[ToolDeclaration],
        model: str,
    ) -> dict[str, Any]:
        """Serialise curated history and tool declarations into a payload."""

    @abstractmethod
    async def send(
        self,
        payload: dict[str, Any],
        cancel_token: CancellationToken | None = None,
    ) -> RawStream:
        """Send *payload* and return the open response stream."""

    @abstractmethod
    def frame_parser(self) -> FrameParser:
        """A fresh parser for one response."""

    @abstractmethod
    async def list_models(self) -> list[ModelInfo]:
        """Models this backend offers."""

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials or endpoints needed to send are present."""

    async def validate_connection(self) -> bool:
        return self.is_configured()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Shared HTTP plumbing
    # ------------------------------------------------------------------

    async def _open_stream(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str],
        cancel_token: CancellationToken | None = None,
    ) -> RawStream:
        """POST *payload* and return the body once headers arrive.

        Non-2xx statuses are read in full and raised via
        :func:`error_from_status`; transport failures become
        :class:`NetworkError`.
        """
        request = self._client.build_request("POST", url, json=payload, headers=headers)
        try:
            if cancel_token is not None:
                response = await cancel_token.race(self._client.send(request, stream=True))
            else:
                response = await self._client.send(request, stream=True)
        except httpx.TransportError as e:
            raise NetworkError(f"{self.name}: network error: {type(e).__name__}: {e}", cause=e) from e

        if not response.is_success:
            await self._raise_for_response(response)

        return RawStream(
            encoding=self.encoding,
            chunks=self._iter_body(response),
            aclose=response.aclose,
        )

    async def _raise_for_response(self, response: httpx.Response) -> None:
        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        finally:
            await response.aclose()
        _logger.warning(
            "%s returned HTTP %d: %.300s", self.name, response.status_code, body,
        )
        raise error_from_status(
            response.status_code, body[:500] or response.reason_phrase,
            backend=self.name, body=body,
        )

    async def _iter_body(self, response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.TransportError as e:
            raise NetworkError(
                f"{self.name}: stream interrupted: {type(e).__name__}: {e}", cause=e,
            ) from e

    async def _get_json(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> Any:
        try:
            kwargs: dict[str, Any] = {"headers": headers or {}}
            if timeout is not None:
                kwargs["timeout"] = timeout
            resp = await self._client.get(url, **kwargs)
        except httpx.TransportError as e:
            raise NetworkError(f"{self.name}: network error: {e}", cause=e) from e
        if not resp.is_success:
            raise error_from_status(
                resp.status_code, resp.text[:500] or resp.reason_phrase,
                backend=self.name, body=resp.text,
            )
        return resp.json()
