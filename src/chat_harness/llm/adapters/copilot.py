"""Copilot adapter: OpenAI-style chat completions behind a token exchange."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from chat_harness.cancellation import CancellationToken
from chat_harness.errors import AuthenticationError, InvalidStreamError, InvalidStreamReason
from chat_harness.llm.adapters.base import BackendAdapter, RawStream
from chat_harness.llm.adapters.openai_format import to_openai_messages, to_openai_tools
from chat_harness.llm.auth import CopilotTokenManager
from chat_harness.llm.stream import StreamAccumulator, StreamEncoding, parse_tool_arguments
from chat_harness.types import History, ModelInfo, ToolCall, ToolDeclaration

_logger = logging.getLogger(__name__)

EDITOR_HEADERS = {
    "Editor-Version": "vscode/1.85.0",
    "Editor-Plugin-Version": "copilot/1.145.0",
    "Copilot-Integration-Id": "vscode-chat",
    "User-Agent": "GithubCopilot/1.145.0",
}


class CopilotFrameParser:
    """Reads chat-completion bodies, batch or streamed.

    A batch body carries ``choices[0].message``; streamed SSE frames carry
    ``choices[0].delta`` whose tool-call fragments are keyed by ``index``
    and concatenated until the stream closes.
    """

    def __init__(self) -> None:
        self._calls: dict[int, dict[str, str]] = {}

    def feed(self, frame: dict[str, Any], acc: StreamAccumulator) -> None:
        if frame.get("model"):
            acc.model = frame["model"]
        if frame.get("usage"):
            acc.usage = dict(frame["usage"])
        choices = frame.get("choices") or []
        if not choices:
            return
        choice = choices[0]

        message = choice.get("message")
        if message is not None:
            acc.add_text(message.get("content") or "")
            for tc in message.get("tool_calls") or []:
                func = tc.get("function") or {}
                name = func.get("name", "")
                acc.add_tool_call(ToolCall(
                    name=name,
                    arguments=parse_tool_arguments(func.get("arguments"), name),
                    call_id=tc.get("id", ""),
                ))

        delta = choice.get("delta")
        if delta is not None:
            acc.add_text(delta.get("content") or "")
            for tc in delta.get("tool_calls") or []:
                entry = self._calls.setdefault(
                    tc.get("index", 0), {"id": "", "name": "", "arguments": ""},
                )
                func = tc.get("function") or {}
                if tc.get("id"):
                    entry["id"] = tc["id"]
                if func.get("name"):
                    entry["name"] = func["name"]
                if func.get("arguments"):
                    entry["arguments"] += func["arguments"]

        acc.set_finish(choice.get("finish_reason"))

    def close(self, acc: StreamAccumulator) -> None:
        for idx in sorted(self._calls):
            entry = self._calls[idx]
            if not entry["name"]:
                if entry["arguments"]:
                    raise InvalidStreamError(
                        InvalidStreamReason.MALFORMED_FUNCTION_CALL,
                        f"Tool call fragment {idx} has arguments but no name",
                    )
                continue
            acc.add_tool_call(ToolCall(
                name=entry["name"],
                arguments=parse_tool_arguments(entry["arguments"], entry["name"]),
                call_id=entry["id"],
            ))
        self._calls.clear()


class CopilotAdapter(BackendAdapter):
    """Chat completions against the Copilot API.

    Parameters
    ----------
    token_manager:
        Exchanges the OAuth token for API tokens and knows the API endpoint.
    stream:
        Request SSE instead of a single JSON body.
    """

    name = "copilot"
    default_model = "gpt-4o-mini"

    def __init__(
        self,
        token_manager: CopilotTokenManager | None,
        *,
        stream: bool = False,
        client: httpx.AsyncClient | None = None,
        timeout: float = 60,
    ) -> None:
        super().__init__(client, timeout)
        self._tokens = token_manager
        self._stream = stream

    @property
    def encoding(self) -> StreamEncoding:
        return StreamEncoding.SSE if self._stream else StreamEncoding.BATCH

    def is_configured(self) -> bool:
        return self._tokens is not None and self._tokens.is_available()

    async def validate_connection(self) -> bool:
        if self._tokens is None:
            return False
        return await self._tokens.validate_connection()

    def build_request(
        self,
        history: History,
        tools: list[ToolDeclaration],
        model: str,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model or self.default_model,
            "messages": to_openai_messages(history),
            "stream": self._stream,
        }
        if tools:
            payload["tools"] = to_openai_tools(tools)
            payload["tool_choice"] = "auto"
        return payload

    async def send(
        self,
        payload: dict[str, Any],
        cancel_token: CancellationToken | None = None,
    ) -> RawStream:
        headers = await self._headers()
        try:
            return await self._open_stream(
                f"{self._tokens.api_endpoint}/chat/completions",
                payload, headers, cancel_token,
            )
        except AuthenticationError:
            # The cached API token may have been revoked early
            self._tokens.invalidate()
            raise

    async def aclose(self) -> None:
        await super().aclose()
        if self._tokens is not None:
            await self._tokens.aclose()

    def frame_parser(self) -> CopilotFrameParser:
        return CopilotFrameParser()

    async def list_models(self) -> list[ModelInfo]:
        """Chat models enabled for this account in the model picker."""
        headers = await self._headers()
        data = await self._get_json(f"{self._tokens.api_endpoint}/models", headers)
        models = []
        entries = data if isinstance(data, list) else data.get("data") or []
        for entry in entries:
            if not entry.get("model_picker_enabled"):
                continue
            if (entry.get("capabilities") or {}).get("type") != "chat":
                continue
            if (entry.get("policy") or {}).get("state") != "enabled":
                continue
            models.append(ModelInfo(entry["id"], entry.get("name") or entry["id"]))
        return models

    async def _headers(self) -> dict[str, str]:
        if self._tokens is None:
            raise AuthenticationError("Copilot backend is not authenticated")
        token = await self._tokens.get_token()
        return {
            **EDITOR_HEADERS,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
