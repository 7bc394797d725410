"""Response stream consumer: framing, accumulation and validation.

Framing (SSE, NDJSON, batch JSON) is generic; what a frame *means* is
decided by the adapter's :class:`FrameParser`.
"""

from __future__ import annotations

import codecs
import enum
import json
import logging
from typing import Any, AsyncIterator, Callable, Protocol

from chat_harness.cancellation import CancellationToken
from chat_harness.errors import InvalidStreamError, InvalidStreamReason
from chat_harness.types import StreamResult, ToolCall

_logger = logging.getLogger(__name__)

MALFORMED_FUNCTION_CALL = "MALFORMED_FUNCTION_CALL"


class StreamEncoding(str, enum.Enum):
    SSE = "sse"
    NDJSON = "ndjson"
    BATCH = "batch"


# ---------------------------------------------------------------------------
# Accumulation
# ---------------------------------------------------------------------------

class StreamAccumulator:
    """Mutable builder for a :class:`StreamResult`.

    Text fragments are forwarded to ``on_text`` as they arrive.
    """

    def __init__(self, on_text: Callable[[str], Any] | None = None) -> None:
        self._on_text = on_text
        self._text: list[str] = []
        self._tool_calls: list[ToolCall] = []
        self.finish_reason: str | None = None
        self.model = ""
        self.usage: dict[str, int] = {}

    def add_text(self, chunk: str) -> None:
        if not chunk:
            return
        self._text.append(chunk)
        if self._on_text is not None:
            self._on_text(chunk)

    def add_tool_call(self, call: ToolCall) -> None:
        self._tool_calls.append(call)

    def set_finish(self, reason: str | None) -> None:
        if reason:
            self.finish_reason = reason

    def build(self) -> StreamResult:
        return StreamResult(
            text="".join(self._text),
            tool_calls=list(self._tool_calls),
            finish_reason=self.finish_reason,
            has_finish_reason=self.finish_reason is not None,
            model=self.model,
            usage=dict(self.usage),
        )


class FrameParser(Protocol):
    """Interprets decoded JSON frames for one backend response."""

    def feed(self, frame: dict[str, Any], acc: StreamAccumulator) -> None: ...

    def close(self, acc: StreamAccumulator) -> None: ...


# ---------------------------------------------------------------------------
# Decoders
# ---------------------------------------------------------------------------

class _LineDecoder:
    """Splits a byte stream into complete lines.

    A trailing partial line is held back until more bytes arrive; UTF-8
    sequences split across chunks are reassembled.  At end of stream the
    remainder is complete by definition and is decoded by :meth:`finish`.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        text = chunk if isinstance(chunk, str) else self._utf8.decode(chunk)
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def finish(self) -> list[dict[str, Any]]:
        rest = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        return self._parse_lines(rest.split("\n"))

    def _parse_lines(self, lines: list[str]) -> list[dict[str, Any]]:
        frames = []
        for raw in lines:
            line = raw.rstrip("\r")
            if not line.strip():
                continue
            frame = self._parse_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def _parse_line(self, line: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @staticmethod
    def _loads(payload: str, line: str) -> dict[str, Any] | None:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            _logger.warning("Skipping malformed stream line: %.200s", line)
            return None
        if not isinstance(data, dict):
            _logger.warning("Skipping non-object stream frame: %.200s", line)
            return None
        return data


class SSEDecoder(_LineDecoder):
    """``data: {...}`` lines; ``[DONE]``, comments and other fields are ignored."""

    def _parse_line(self, line: str) -> dict[str, Any] | None:
        if not line.startswith("data:"):
            return None
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            return None
        return self._loads(payload, line)


class NDJSONDecoder(_LineDecoder):
    """One JSON object per line."""

    def _parse_line(self, line: str) -> dict[str, Any] | None:
        return self._loads(line.strip(), line)


class BatchDecoder:
    """A single JSON document delivered as the whole body."""

    def __init__(self) -> None:
        self._chunks: list[bytes] = []

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        self._chunks.append(chunk.encode() if isinstance(chunk, str) else chunk)
        return []

    def finish(self) -> list[dict[str, Any]]:
        body = b"".join(self._chunks)
        self._chunks = []
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidStreamError(
                InvalidStreamReason.MALFORMED_RESPONSE,
                f"Response body is not valid JSON: {e}",
            ) from e
        if not isinstance(data, dict):
            raise InvalidStreamError(
                InvalidStreamReason.MALFORMED_RESPONSE,
                "Response body is not a JSON object",
            )
        return [data]


def decoder_for(encoding: StreamEncoding) -> _LineDecoder | BatchDecoder:
    if encoding is StreamEncoding.SSE:
        return SSEDecoder()
    if encoding is StreamEncoding.NDJSON:
        return NDJSONDecoder()
    return BatchDecoder()


# ---------------------------------------------------------------------------
# Consumer
# ---------------------------------------------------------------------------

class StreamConsumer:
    """Drives a decoder and a frame parser over an async byte stream.

    Parameters
    ----------
    encoding:
        Wire framing of the response body.
    frame_parser:
        Backend-specific interpretation of decoded frames.
    on_text:
        Called with each text fragment as it arrives.
    cancel_token:
        Checked before each chunk is processed.
    """

    def __init__(
        self,
        encoding: StreamEncoding,
        frame_parser: FrameParser,
        on_text: Callable[[str], Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self._decoder = decoder_for(encoding)
        self._parser = frame_parser
        self._acc = StreamAccumulator(on_text)
        self._cancel_token = cancel_token

    async def consume(self, chunks: AsyncIterator[bytes]) -> StreamResult:
        async for chunk in chunks:
            if self._cancel_token is not None:
                self._cancel_token.raise_if_cancelled()
            for frame in self._decoder.feed(chunk):
                self._parser.feed(frame, self._acc)
        for frame in self._decoder.finish():
            self._parser.feed(frame, self._acc)
        self._parser.close(self._acc)
        return self._acc.build()


def parse_tool_arguments(raw: Any, name: str) -> dict[str, Any]:
    """Normalise tool-call arguments to a dict.

    Backends send either an object or a JSON-encoded string; anything that
    does not decode to an object is a malformed call.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidStreamError(
                InvalidStreamReason.MALFORMED_FUNCTION_CALL,
                f"Tool call {name!r} has malformed arguments: {e}",
            ) from e
        if isinstance(value, dict):
            return value
    raise InvalidStreamError(
        InvalidStreamReason.MALFORMED_FUNCTION_CALL,
        f"Tool call {name!r} arguments are not an object",
    )


def validate_stream_result(result: StreamResult) -> None:
    """Reject structurally unusable responses.

    A response carrying tool calls is always accepted.  Otherwise it needs a
    finish signal, a finish reason other than a malformed call, and
    non-blank text.
    """
    if result.has_tool_calls:
        return
    if not result.has_finish_reason:
        raise InvalidStreamError(InvalidStreamReason.NO_FINISH_REASON)
    if result.finish_reason == MALFORMED_FUNCTION_CALL:
        raise InvalidStreamError(InvalidStreamReason.MALFORMED_FUNCTION_CALL)
    if not result.text.strip():
        raise InvalidStreamError(InvalidStreamReason.NO_RESPONSE_TEXT)
