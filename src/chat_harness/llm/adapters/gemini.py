"""Gemini adapter for the Code Assist cloud API (SSE, bearer token)."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

import httpx

from chat_harness.cancellation import CancellationToken
from chat_harness.config import GEMINI_CODE_ASSIST_ENDPOINT
from chat_harness.errors import (
    AuthenticationError,
    BackendError,
    NetworkError,
    error_from_status,
)
from chat_harness.llm.adapters.base import (
    BackendAdapter,
    RawStream,
    sanitize_schema,
    sanitize_tool_name,
)
from chat_harness.llm.auth import TokenProvider
from chat_harness.llm.stream import StreamAccumulator, StreamEncoding, parse_tool_arguments
from chat_harness.types import History, ModelInfo, Role, TextPart, ToolCall, ToolDeclaration

_logger = logging.getLogger(__name__)

_CLIENT_METADATA = {"ideType": "IDE_UNSPECIFIED", "pluginType": "GEMINI"}
_FREE_TIER = "FREE"

GEMINI_MODELS = (
    ModelInfo("gemini-2.5-flash", "Gemini 2.5 Flash"),
    ModelInfo("gemini-2.5-pro", "Gemini 2.5 Pro"),
    ModelInfo("gemini-2.5-flash-lite", "Gemini 2.5 Flash Lite"),
    ModelInfo("gemini-3-pro-preview", "Gemini 3 Pro (Preview)"),
    ModelInfo("gemini-3-flash-preview", "Gemini 3 Flash (Preview)"),
)


def _gemini_schema(schema: Any) -> Any:
    """Upper-case JSON-Schema ``type`` values, recursively."""
    if isinstance(schema, dict):
        out = {}
        for key, value in schema.items():
            if key == "type" and isinstance(value, str):
                out[key] = value.upper()
            else:
                out[key] = _gemini_schema(value)
        return out
    if isinstance(schema, list):
        return [_gemini_schema(v) for v in schema]
    return schema


def to_gemini_contents(history: History) -> list[dict[str, Any]]:
    """Serialise history as Gemini ``contents``.

    Tool turns are sent with the ``user`` role carrying ``functionResponse``
    parts.
    """
    contents: list[dict[str, Any]] = []
    for turn in history:
        parts: list[dict[str, Any]] = []
        for part in turn.parts:
            if isinstance(part, TextPart):
                parts.append({"text": part.text})
            elif isinstance(part, ToolCall):
                parts.append({
                    "functionCall": {
                        "name": sanitize_tool_name(part.name),
                        "args": part.arguments,
                    },
                })
            else:
                name = sanitize_tool_name(part.name)
                parts.append({
                    "functionResponse": {
                        "name": name,
                        "response": {"name": name, "content": part.payload},
                    },
                })
        role = "model" if turn.role is Role.MODEL else "user"
        contents.append({"role": role, "parts": parts})
    return contents


class GeminiFrameParser:
    """Reads ``{response: {candidates: [...]}}`` SSE frames."""

    def feed(self, frame: dict[str, Any], acc: StreamAccumulator) -> None:
        body = frame.get("response", frame)
        if body.get("modelVersion"):
            acc.model = body["modelVersion"]
        usage = body.get("usageMetadata")
        if usage:
            acc.usage = {
                "prompt_tokens": usage.get("promptTokenCount", 0),
                "completion_tokens": usage.get("candidatesTokenCount", 0),
                "total_tokens": usage.get("totalTokenCount", 0),
            }
        candidates = body.get("candidates") or []
        if not candidates:
            return
        candidate = candidates[0]
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "text" in part:
                acc.add_text(part["text"] or "")
            call = part.get("functionCall")
            if call:
                name = call.get("name", "")
                acc.add_tool_call(
                    ToolCall(name=name, arguments=parse_tool_arguments(call.get("args"), name))
                )
        acc.set_finish(candidate.get("finishReason"))

    def close(self, acc: StreamAccumulator) -> None:
        pass


class GeminiAdapter(BackendAdapter):
    """Code Assist ``streamGenerateContent`` client.

    Parameters
    ----------
    token_provider:
        Source of OAuth bearer tokens.
    endpoint:
        Code Assist base URL.
    project_id:
        Known project id; when empty it is obtained via the provisioning
        handshake on first send and cached.
    temperature:
        Sampling temperature sent with every request.
    poll_interval:
        Seconds between onboarding operation polls.
    """

    name = "gemini"
    default_model = "gemini-2.5-flash"

    def __init__(
        self,
        token_provider: TokenProvider | None,
        *,
        endpoint: str = GEMINI_CODE_ASSIST_ENDPOINT,
        project_id: str = "",
        temperature: float = 0.7,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120,
        poll_interval: float = 2.0,
        max_polls: int = 60,
    ) -> None:
        super().__init__(client, timeout)
        self._tokens = token_provider
        self._endpoint = endpoint.rstrip("/")
        self._project_id = project_id
        self._temperature = temperature
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._project_lock = asyncio.Lock()

    @property
    def encoding(self) -> StreamEncoding:
        return StreamEncoding.SSE

    @property
    def project_id(self) -> str:
        return self._project_id

    def is_configured(self) -> bool:
        return self._tokens is not None and self._tokens.is_available()

    def build_request(
        self,
        history: History,
        tools: list[ToolDeclaration],
        model: str,
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "contents": to_gemini_contents(history),
            "generationConfig": {"temperature": self._temperature},
        }
        if tools:
            request["tools"] = [{
                "functionDeclarations": [
                    {
                        "name": sanitize_tool_name(t.name),
                        "description": t.description,
                        "parameters": _gemini_schema(sanitize_schema(t.input_schema)),
                    }
                    for t in tools
                ],
            }]
        return {
            "model": model or self.default_model,
            "user_prompt_id": uuid.uuid4().hex,
            "request": request,
        }

    async def send(
        self,
        payload: dict[str, Any],
        cancel_token: CancellationToken | None = None,
    ) -> RawStream:
        project = await self.ensure_project()
        body = {**payload, "project": project}
        return await self._open_stream(
            f"{self._endpoint}:streamGenerateContent?alt=sse",
            body,
            await self._auth_headers(),
            cancel_token,
        )

    def frame_parser(self) -> GeminiFrameParser:
        return GeminiFrameParser()

    async def list_models(self) -> list[ModelInfo]:
        return list(GEMINI_MODELS)

    # ------------------------------------------------------------------
    # Provisioning handshake
    # ------------------------------------------------------------------

    async def ensure_project(self) -> str:
        """Return the cached project id, provisioning one if needed.

        ``loadCodeAssist`` answers directly for already-onboarded users;
        otherwise ``onboardUser`` starts a long-running operation which is
        polled until done.
        """
        if self._project_id:
            return self._project_id
        async with self._project_lock:
            if self._project_id:
                return self._project_id
            _logger.debug("Performing Code Assist handshake")
            loaded = await self._call("loadCodeAssist", {"metadata": _CLIENT_METADATA})
            project = loaded.get("cloudaicompanionProject")
            if isinstance(project, dict):
                project = project.get("id")
            if not project:
                tier_id = (loaded.get("currentTier") or {}).get("id") or _FREE_TIER
                project = await self._onboard(tier_id)
            self._project_id = project
            _logger.info("Using Code Assist project %s", project)
            return project

    async def _onboard(self, tier_id: str) -> str:
        op = await self._call(
            "onboardUser", {"tierId": tier_id, "metadata": _CLIENT_METADATA},
        )
        polls = 0
        while not op.get("done") and op.get("name"):
            if polls >= self._max_polls:
                raise BackendError(
                    "Timed out waiting for Code Assist onboarding", backend=self.name,
                )
            polls += 1
            _logger.debug("Waiting for onboarding (poll %d)", polls)
            await asyncio.sleep(self._poll_interval)
            op = await self._get_json(
                f"{self._endpoint}/{op['name']}", await self._auth_headers(),
            )
        project = ((op.get("response") or {}).get("cloudaicompanionProject") or {}).get("id")
        if not project:
            raise BackendError("Failed to obtain Project ID", backend=self.name)
        return project

    async def _call(self, method: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._client.post(
                f"{self._endpoint}:{method}", json=body, headers=await self._auth_headers(),
            )
        except httpx.TransportError as e:
            raise NetworkError(f"{self.name}: {method} failed: {e}", cause=e) from e
        if not resp.is_success:
            raise error_from_status(
                resp.status_code, f"{method}: {resp.text[:300]}",
                backend=self.name, body=resp.text,
            )
        return resp.json()

    async def _auth_headers(self) -> dict[str, str]:
        if self._tokens is None:
            raise AuthenticationError("Gemini backend is not authenticated")
        token = await self._tokens.get_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
