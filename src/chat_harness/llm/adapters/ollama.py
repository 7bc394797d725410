"""Ollama adapter: local ``/api/chat`` with NDJSON streaming."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from chat_harness.cancellation import CancellationToken
from chat_harness.config import OLLAMA_DEFAULT_URL
from chat_harness.errors import BackendError, NetworkError
from chat_harness.llm.adapters.base import BackendAdapter, RawStream
from chat_harness.llm.adapters.openai_format import to_openai_messages, to_openai_tools
from chat_harness.llm.stream import StreamAccumulator, StreamEncoding, parse_tool_arguments
from chat_harness.types import History, ModelInfo, ToolCall, ToolDeclaration

_logger = logging.getLogger(__name__)

_PING_TIMEOUT = 2.0  # seconds


class OllamaFrameParser:
    """Reads ``/api/chat`` chunks; the last one carries ``done: true``."""

    def feed(self, frame: dict[str, Any], acc: StreamAccumulator) -> None:
        if frame.get("error"):
            raise BackendError(f"ollama stream error: {frame['error']}", backend="ollama")
        if frame.get("model"):
            acc.model = frame["model"]
        message = frame.get("message") or {}
        acc.add_text(message.get("content") or "")
        for tc in message.get("tool_calls") or []:
            func = tc.get("function") or {}
            name = func.get("name", "")
            acc.add_tool_call(
                ToolCall(name=name, arguments=parse_tool_arguments(func.get("arguments"), name))
            )
        if frame.get("done"):
            acc.usage = {
                "prompt_tokens": frame.get("prompt_eval_count", 0),
                "completion_tokens": frame.get("eval_count", 0),
            }
            acc.set_finish(frame.get("done_reason") or "stop")

    def close(self, acc: StreamAccumulator) -> None:
        pass


class OllamaAdapter(BackendAdapter):
    """Local model server; no authentication.

    A 400 on a request that carried tools usually means the model has no
    tool support, so the request is repeated once without them.
    """

    name = "ollama"
    default_model = "llama3"

    def __init__(
        self,
        base_url: str = OLLAMA_DEFAULT_URL,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 300,
    ) -> None:
        super().__init__(client, timeout)
        self._base_url = base_url.rstrip("/").removesuffix("/v1")

    @property
    def encoding(self) -> StreamEncoding:
        return StreamEncoding.NDJSON

    @property
    def base_url(self) -> str:
        return self._base_url

    def is_configured(self) -> bool:
        return True

    def build_request(
        self,
        history: History,
        tools: list[ToolDeclaration],
        model: str,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model or self.default_model,
            "messages": to_openai_messages(
                history, arguments_as_json=False, tool_name_key="tool_name",
            ),
            "stream": True,
        }
        if tools:
            payload["tools"] = to_openai_tools(tools)
        return payload

    async def send(
        self,
        payload: dict[str, Any],
        cancel_token: CancellationToken | None = None,
    ) -> RawStream:
        url = f"{self._base_url}/api/chat"
        headers = {"Content-Type": "application/json"}
        try:
            return await self._open_stream(url, payload, headers, cancel_token)
        except BackendError as e:
            if e.status_code != 400 or not payload.get("tools"):
                raise
            _logger.warning(
                "Model %s rejected tools (HTTP 400); retrying without tools",
                payload.get("model"),
            )
        stripped = {k: v for k, v in payload.items() if k != "tools"}
        return await self._open_stream(url, stripped, headers, cancel_token)

    def frame_parser(self) -> OllamaFrameParser:
        return OllamaFrameParser()

    async def list_models(self) -> list[ModelInfo]:
        data = await self._get_json(f"{self._base_url}/api/tags")
        return [ModelInfo(m["name"]) for m in data.get("models") or [] if m.get("name")]

    async def validate_connection(self) -> bool:
        try:
            await self._get_json(f"{self._base_url}/api/tags", timeout=_PING_TIMEOUT)
        except (NetworkError, BackendError) as e:
            _logger.info("Ollama not reachable at %s: %s", self._base_url, e)
            return False
        return True
