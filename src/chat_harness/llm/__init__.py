"""LLM backends, retry and stream decoding for Chat Harness."""

from chat_harness.llm.retry import RetryOptions, compute_delay, is_retryable, with_retry
from chat_harness.llm.router import BackendRouter
from chat_harness.llm.stream import (
    StreamConsumer,
    StreamEncoding,
    validate_stream_result,
)

__all__ = [
    "BackendRouter",
    "RetryOptions",
    "StreamConsumer",
    "StreamEncoding",
    "compute_delay",
    "is_retryable",
    "validate_stream_result",
    "with_retry",
]
