"""Tests for the Copilot chat-completions adapter."""

import json

import httpx
import pytest

from chat_harness.errors import AuthenticationError, InvalidStreamError, InvalidStreamReason
from chat_harness.llm.adapters.copilot import CopilotAdapter
from chat_harness.llm.auth import CopilotTokenManager
from chat_harness.llm.retry import RetryOptions
from chat_harness.llm.stream import StreamConsumer, StreamEncoding
from chat_harness.types import Role, ToolCall, ToolDeclaration, ToolResult, Turn

API = "https://api.copilot.test"


class FakeCopilot:
    """Token exchange plus the chat API on one mock transport."""

    def __init__(self, completion=None, status=200, models=None):
        self.completion = completion
        self.status = status
        self.models = models
        self.requests: list[httpx.Request] = []
        self.exchanges = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/token"):
            self.exchanges += 1
            return httpx.Response(200, json={
                "token": f"api-{self.exchanges}",
                "expires_at": 4_000_000_000,
                "endpoints": {"api": API},
            })
        if request.url.path == "/models":
            return httpx.Response(200, json=self.models)
        if request.url.path == "/chat/completions":
            if isinstance(self.completion, bytes):
                return httpx.Response(self.status, content=self.completion)
            return httpx.Response(self.status, json=self.completion)
        return httpx.Response(404)

    def chat_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/chat/completions"]


def _adapter(server: FakeCopilot, stream: bool = False) -> CopilotAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    tokens = CopilotTokenManager(
        "gho_x", client, "https://github.test/token",
        retry_options=RetryOptions(initial_delay=0, max_delay=0),
    )
    return CopilotAdapter(tokens, stream=stream, client=client)


async def _roundtrip(adapter: CopilotAdapter, history, tools=()):
    payload = adapter.build_request(tuple(history), list(tools), "gpt-4o")
    raw = await adapter.send(payload)
    try:
        return await StreamConsumer(raw.encoding, adapter.frame_parser()).consume(raw.chunks)
    finally:
        await raw.aclose()


class TestBuildRequest:
    def test_messages_and_tools(self):
        adapter = CopilotAdapter(None)
        history = (
            Turn.user("hi"),
            Turn(Role.MODEL, (ToolCall("fs.read", {"p": "a"}, "call_1"),)),
            Turn.tool([ToolResult("fs.read", {"ok": True}, "call_1")]),
        )
        tool = ToolDeclaration("fs.read", "Read", {"type": "object", "title": "T"})

        payload = adapter.build_request(history, [tool], "gpt-4o")

        assert payload["stream"] is False
        assert payload["tool_choice"] == "auto"
        assert payload["tools"][0]["function"]["name"] == "fs_read"
        assert payload["tools"][0]["function"]["parameters"] == {
            "type": "object", "properties": {},
        }
        msgs = payload["messages"]
        assert msgs[1]["tool_calls"][0]["function"]["arguments"] == '{"p": "a"}'
        assert msgs[2] == {
            "role": "tool", "tool_call_id": "call_1", "content": '{"ok": true}',
        }

    def test_encoding_follows_stream_flag(self):
        assert CopilotAdapter(None).encoding is StreamEncoding.BATCH
        assert CopilotAdapter(None, stream=True).encoding is StreamEncoding.SSE


class TestBatch:
    @pytest.mark.asyncio
    async def test_text_completion(self):
        server = FakeCopilot(completion={
            "model": "gpt-4o",
            "choices": [{"message": {"role": "assistant", "content": "Hello"},
                         "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 4, "completion_tokens": 1},
        })
        adapter = _adapter(server)

        result = await _roundtrip(adapter, [Turn.user("hi")])

        assert result.text == "Hello"
        assert result.finish_reason == "stop"
        chat = server.chat_requests()[0]
        assert chat.headers["Authorization"] == "Bearer api-1"
        assert chat.headers["Copilot-Integration-Id"] == "vscode-chat"
        assert json.loads(chat.content)["model"] == "gpt-4o"

    @pytest.mark.asyncio
    async def test_tool_calls(self):
        server = FakeCopilot(completion={"choices": [{
            "message": {"content": None, "tool_calls": [{
                "id": "call_9", "type": "function",
                "function": {"name": "lookup", "arguments": '{"q": "x"}'},
            }]},
            "finish_reason": "tool_calls",
        }]})
        result = await _roundtrip(_adapter(server), [Turn.user("x")])
        assert result.tool_calls == [ToolCall("lookup", {"q": "x"}, "call_9")]

    @pytest.mark.asyncio
    async def test_401_invalidates_cached_token(self):
        server = FakeCopilot(completion={"error": "expired"}, status=401)
        adapter = _adapter(server)

        with pytest.raises(AuthenticationError):
            await _roundtrip(adapter, [Turn.user("x")])
        server.status = 200
        server.completion = {"choices": [{"message": {"content": "ok"}, "finish_reason": "stop"}]}
        await _roundtrip(adapter, [Turn.user("x")])

        assert server.exchanges == 2
        assert server.chat_requests()[-1].headers["Authorization"] == "Bearer api-2"


class TestStreaming:
    @pytest.mark.asyncio
    async def test_sse_deltas_and_tool_fragments(self):
        frames = [
            {"choices": [{"delta": {"content": "Let me "}}]},
            {"choices": [{"delta": {"content": "check"}}]},
            {"choices": [{"delta": {"tool_calls": [{
                "index": 0, "id": "call_a",
                "function": {"name": "lookup", "arguments": '{"q":'},
            }]}}]},
            {"choices": [{"delta": {"tool_calls": [{
                "index": 0, "function": {"arguments": ' "x"}'},
            }]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        ]
        body = b"".join(b"data: " + json.dumps(f).encode() + b"\n\n" for f in frames)
        server = FakeCopilot(completion=body + b"data: [DONE]\n\n")

        result = await _roundtrip(_adapter(server, stream=True), [Turn.user("x")])

        assert result.text == "Let me check"
        assert result.tool_calls == [ToolCall("lookup", {"q": "x"}, "call_a")]
        assert result.finish_reason == "tool_calls"

    @pytest.mark.asyncio
    async def test_nameless_fragment_is_malformed(self):
        frames = [
            {"choices": [{"delta": {"tool_calls": [{
                "index": 0, "function": {"arguments": '{"q": "x"}'},
            }]}}]},
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        ]
        body = b"".join(b"data: " + json.dumps(f).encode() + b"\n\n" for f in frames)
        server = FakeCopilot(completion=body + b"data: [DONE]\n\n")

        with pytest.raises(InvalidStreamError) as exc:
            await _roundtrip(_adapter(server, stream=True), [Turn.user("x")])

        assert exc.value.reason is InvalidStreamReason.MALFORMED_FUNCTION_CALL


class TestModels:
    @pytest.mark.asyncio
    async def test_filters_picker_chat_enabled(self):
        server = FakeCopilot(models={"data": [
            {"id": "gpt-4o", "name": "GPT-4o", "model_picker_enabled": True,
             "capabilities": {"type": "chat"}, "policy": {"state": "enabled"}},
            {"id": "hidden", "model_picker_enabled": False,
             "capabilities": {"type": "chat"}, "policy": {"state": "enabled"}},
            {"id": "embed", "model_picker_enabled": True,
             "capabilities": {"type": "embeddings"}, "policy": {"state": "enabled"}},
            {"id": "no-policy", "model_picker_enabled": True,
             "capabilities": {"type": "chat"}},
        ]})

        models = await _adapter(server).list_models()

        assert [(m.id, m.display_name) for m in models] == [("gpt-4o", "GPT-4o")]

    @pytest.mark.asyncio
    async def test_validate_connection(self):
        assert await _adapter(FakeCopilot()).validate_connection()
        assert not await CopilotAdapter(None).validate_connection()


class TestClose:
    @pytest.mark.asyncio
    async def test_aclose_closes_owned_token_client(self):
        manager = CopilotTokenManager("gho_x")
        adapter = CopilotAdapter(manager)

        await adapter.aclose()

        assert adapter._client.is_closed
        assert manager._client.is_closed

    @pytest.mark.asyncio
    async def test_shared_client_left_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(FakeCopilot()))
        manager = CopilotTokenManager("gho_x", client)

        await manager.aclose()

        assert not client.is_closed
