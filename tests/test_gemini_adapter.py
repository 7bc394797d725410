"""Tests for the Gemini Code Assist adapter (httpx.MockTransport)."""

import json

import httpx
import pytest

from chat_harness.errors import AuthenticationError, BackendError
from chat_harness.llm.adapters.gemini import GeminiAdapter, to_gemini_contents
from chat_harness.llm.auth import StaticTokenProvider
from chat_harness.llm.stream import StreamConsumer
from chat_harness.types import Role, ToolCall, ToolDeclaration, ToolResult, Turn

ENDPOINT = "https://gemini.test/v1internal"


def _sse(*frames) -> bytes:
    return b"".join(b"data: " + json.dumps(f).encode() + b"\n\n" for f in frames)


def _text_frames(*chunks, finish="STOP"):
    frames = [
        {"response": {"candidates": [{"content": {"role": "model", "parts": [{"text": c}]}}]}}
        for c in chunks
    ]
    frames[-1]["response"]["candidates"][0]["finishReason"] = finish
    frames[-1]["response"]["usageMetadata"] = {
        "promptTokenCount": 3, "candidatesTokenCount": 2, "totalTokenCount": 5,
    }
    return frames


class FakeCodeAssist:
    """Routes Code Assist calls and records them."""

    def __init__(self, load=None, onboard=None, polls=(), stream=b"", stream_status=200):
        self.load = load if load is not None else {"cloudaicompanionProject": "proj-1"}
        self.onboard = onboard or {}
        self.polls = list(polls)
        self.stream = stream
        self.stream_status = stream_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith(":loadCodeAssist"):
            return httpx.Response(200, json=self.load)
        if path.endswith(":onboardUser"):
            return httpx.Response(200, json=self.onboard)
        if path.endswith(":streamGenerateContent"):
            return httpx.Response(self.stream_status, content=self.stream)
        if "/operations/" in path:
            return httpx.Response(200, json=self.polls.pop(0))
        return httpx.Response(404, text="not found")

    def paths(self) -> list[str]:
        return [r.url.path.rsplit(":", 1)[-1] if ":" in r.url.path else r.url.path
                for r in self.requests]


def _adapter(server: FakeCodeAssist, **kwargs) -> GeminiAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    return GeminiAdapter(
        StaticTokenProvider("tok"), endpoint=ENDPOINT, client=client,
        poll_interval=0, **kwargs,
    )


async def _roundtrip(adapter: GeminiAdapter, history, tools=()):
    payload = adapter.build_request(tuple(history), list(tools), "gemini-2.5-flash")
    raw = await adapter.send(payload)
    try:
        return await StreamConsumer(raw.encoding, adapter.frame_parser()).consume(raw.chunks)
    finally:
        await raw.aclose()


class TestContents:
    def test_roles_and_parts(self):
        history = (
            Turn.user("hi"),
            Turn(Role.MODEL, (ToolCall("fs.read", {"p": "a"}),)),
            Turn.tool([ToolResult("fs.read", {"ok": True})]),
        )
        contents = to_gemini_contents(history)
        assert [c["role"] for c in contents] == ["user", "model", "user"]
        assert contents[1]["parts"][0]["functionCall"] == {"name": "fs_read", "args": {"p": "a"}}
        assert contents[2]["parts"][0]["functionResponse"] == {
            "name": "fs_read",
            "response": {"name": "fs_read", "content": {"ok": True}},
        }

    def test_tool_declarations_uppercase_types(self):
        adapter = GeminiAdapter(StaticTokenProvider("t"))
        tool = ToolDeclaration("lookup", "d", {
            "$schema": "x", "type": "object",
            "properties": {"q": {"type": "string"}},
        })
        payload = adapter.build_request((Turn.user("x"),), [tool], "gemini-2.5-pro")
        decl = payload["request"]["tools"][0]["functionDeclarations"][0]
        assert payload["model"] == "gemini-2.5-pro"
        assert payload["user_prompt_id"]
        assert decl["parameters"] == {
            "type": "OBJECT", "properties": {"q": {"type": "STRING"}},
        }


class TestHandshake:
    @pytest.mark.asyncio
    async def test_existing_project_used(self):
        server = FakeCodeAssist(stream=_sse(*_text_frames("Hi", " there")))
        adapter = _adapter(server)

        result = await _roundtrip(adapter, [Turn.user("hello")])

        assert result.text == "Hi there"
        assert result.finish_reason == "STOP"
        assert result.usage["total_tokens"] == 5
        assert adapter.project_id == "proj-1"
        sent = json.loads(server.requests[-1].content)
        assert sent["project"] == "proj-1"
        assert server.requests[-1].headers["Authorization"] == "Bearer tok"
        assert server.requests[-1].url.params["alt"] == "sse"

    @pytest.mark.asyncio
    async def test_handshake_runs_once(self):
        server = FakeCodeAssist()
        adapter = _adapter(server)
        assert await adapter.ensure_project() == "proj-1"
        assert await adapter.ensure_project() == "proj-1"
        assert server.paths() == ["loadCodeAssist"]

    @pytest.mark.asyncio
    async def test_onboarding_polls_until_done(self):
        server = FakeCodeAssist(
            load={"currentTier": {"id": "standard-tier"}},
            onboard={"name": "operations/42", "done": False},
            polls=[
                {"name": "operations/42", "done": False},
                {"name": "operations/42", "done": True,
                 "response": {"cloudaicompanionProject": {"id": "new-proj"}}},
            ],
        )
        adapter = _adapter(server)

        assert await adapter.ensure_project() == "new-proj"
        onboard = json.loads(server.requests[1].content)
        assert onboard["tierId"] == "standard-tier"
        assert len(server.requests) == 4

    @pytest.mark.asyncio
    async def test_onboarding_defaults_to_free_tier(self):
        server = FakeCodeAssist(
            load={},
            onboard={"done": True, "response": {"cloudaicompanionProject": {"id": "p"}}},
        )
        adapter = _adapter(server)
        assert await adapter.ensure_project() == "p"
        assert json.loads(server.requests[1].content)["tierId"] == "FREE"

    @pytest.mark.asyncio
    async def test_missing_project_fails(self):
        server = FakeCodeAssist(load={}, onboard={"done": True, "response": {}})
        with pytest.raises(BackendError, match="Failed to obtain Project ID"):
            await _adapter(server).ensure_project()

    @pytest.mark.asyncio
    async def test_known_project_skips_handshake(self):
        server = FakeCodeAssist(stream=_sse(*_text_frames("ok")))
        adapter = _adapter(server, project_id="preset")
        await _roundtrip(adapter, [Turn.user("x")])
        assert server.paths() == ["streamGenerateContent"]


class TestStreaming:
    @pytest.mark.asyncio
    async def test_function_call_parsed(self):
        frame = {"response": {"candidates": [{
            "content": {"parts": [{"functionCall": {"name": "lookup", "args": {"q": "x"}}}]},
            "finishReason": "STOP",
        }]}}
        server = FakeCodeAssist(stream=_sse(frame))
        result = await _roundtrip(_adapter(server), [Turn.user("x")])
        assert result.tool_calls == [ToolCall("lookup", {"q": "x"})]

    @pytest.mark.asyncio
    async def test_http_errors_mapped(self):
        server = FakeCodeAssist(stream=b'{"error": "no"}', stream_status=401)
        with pytest.raises(AuthenticationError):
            await _roundtrip(_adapter(server), [Turn.user("x")])

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        server = FakeCodeAssist(stream=b"busy", stream_status=503)
        with pytest.raises(BackendError) as exc:
            await _roundtrip(_adapter(server), [Turn.user("x")])
        assert exc.value.status_code == 503
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_static_model_list(self):
        models = await GeminiAdapter(StaticTokenProvider("t")).list_models()
        assert "gemini-2.5-flash" in [m.id for m in models]

    def test_not_configured_without_token(self):
        assert not GeminiAdapter(StaticTokenProvider("")).is_configured()
        assert not GeminiAdapter(None).is_configured()
