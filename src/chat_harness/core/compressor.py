"""History compressor: summarise old turns when history nears the model limit.

Token counts are estimated at 4 characters per token.  The oldest part of
the history is replaced by a summary turn plus a canned acknowledgement;
the newest ``preserve_fraction`` of the history is kept verbatim.
"""

from __future__ import annotations

import logging
import math

from chat_harness.config import CompressionConfig
from chat_harness.core.history import turn_summary_lines
from chat_harness.types import (
    CompressionResult,
    CompressionStatus,
    History,
    Role,
    Turn,
)

_logger = logging.getLogger(__name__)

_CHARS_PER_TOKEN = 4

# Context windows in tokens.  Lookup: exact, then longest prefix, then default.
MODEL_TOKEN_LIMITS: dict[str, int] = {
    # Gemini
    "gemini-2.5-flash": 1_048_576,
    "gemini-2.5-pro": 1_048_576,
    "gemini-2.0-flash": 1_048_576,
    "gemini-1.5-flash": 1_048_576,
    "gemini-1.5-pro": 2_097_152,
    # OpenAI / Copilot
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-3.5-turbo": 16_385,
    "o1": 128_000,
    "o1-mini": 128_000,
    # Ollama
    "llama3": 8_192,
    "llama3.1": 128_000,
    "llama3.2": 128_000,
    "mistral": 32_768,
    "codellama": 16_384,
}
DEFAULT_TOKEN_LIMIT = 32_000

SUMMARY_ACK = "Got it, I understand the previous context. How can I help you continue?"
_SUMMARY_MAX_LINES = 10
_SUMMARY_LINE_CHARS = 150


def estimate_tokens(history: History) -> int:
    """ceil(total characters / 4); never decreases as turns are appended."""
    chars = sum(turn.char_count for turn in history)
    return math.ceil(chars / _CHARS_PER_TOKEN)


def is_split_candidate(turn: Turn) -> bool:
    """A user turn that carries no tool result."""
    return turn.role is Role.USER and not turn.tool_results


def find_split_point(history: History, preserve_fraction: float = 0.3) -> int:
    """Index of the last user turn at or before the compressible share.

    Only user turns without tool results qualify, so a split never falls
    inside a tool call/result exchange.  Returns 0 when nothing can be
    compressed.
    """
    sizes = [turn.char_count for turn in history]
    target = sum(sizes) * (1 - preserve_fraction)
    split = 0
    cumulative = 0
    for i, turn in enumerate(history):
        if cumulative > target:
            break
        if i > 0 and is_split_candidate(turn):
            split = i
        cumulative += sizes[i]
    return split


def generate_summary(turns: History) -> str:
    lines: list[str] = []
    for turn in turns:
        lines.extend(turn_summary_lines(turn, _SUMMARY_LINE_CHARS))
    body = "\n".join(lines[:_SUMMARY_MAX_LINES])
    extra = len(lines) - _SUMMARY_MAX_LINES
    more = f"\n... and {extra} more exchanges" if extra > 0 else ""
    return (
        "<previous_conversation_summary>\n"
        "The conversation so far covered:\n"
        f"{body}{more}\n"
        "</previous_conversation_summary>"
    )


class HistoryCompressor:
    """Decides when and how to shrink a history.

    Parameters
    ----------
    config:
        Threshold, preserve fraction, minimum turn count and limit overrides.
    """

    def __init__(self, config: CompressionConfig | None = None) -> None:
        self._config = config or CompressionConfig()
        self._limits = {**MODEL_TOKEN_LIMITS, **self._config.model_limits}

    def get_limit(self, model: str) -> int:
        if model in self._limits:
            return self._limits[model]
        prefixes = [k for k in self._limits if model.startswith(k)]
        if prefixes:
            return self._limits[max(prefixes, key=len)]
        return self._config.default_limit

    def should_compress(self, history: History, model: str) -> bool:
        return estimate_tokens(history) > self.get_limit(model) * self._config.threshold

    def compress(
        self,
        history: History,
        model: str,
        force: bool = False,
    ) -> CompressionResult:
        """Compress *history* if needed (or if *force*).

        Returns NOOP when under threshold, SKIPPED_TOO_SHORT when there is
        nothing worth summarising, otherwise COMPRESSED with the new history:
        summary turn, acknowledgement turn, then the preserved suffix.
        """
        history = tuple(history)
        original = estimate_tokens(history)

        def skipped(reason: str) -> CompressionResult:
            _logger.info("Compression skipped: %s", reason)
            return CompressionResult(
                CompressionStatus.SKIPPED_TOO_SHORT, original, original, history, reason,
            )

        if not force and not self.should_compress(history, model):
            return CompressionResult(CompressionStatus.NOOP, original, original, history)

        if len(history) < self._config.min_turns:
            return skipped(f"fewer than {self._config.min_turns} turns")

        split = find_split_point(history, self._config.preserve_fraction)
        if split <= 0:
            return skipped("no safe split point")

        summary = generate_summary(history[:split])
        new_history: History = (
            Turn.user(summary),
            Turn.model(SUMMARY_ACK),
            *history[split:],
        )
        new_tokens = estimate_tokens(new_history)
        if new_tokens >= original:
            return skipped("summary would not reduce history size")

        _logger.info(
            "Compressed history: %d turns -> %d, ~%d -> ~%d tokens",
            len(history), len(new_history), original, new_tokens,
        )
        return CompressionResult(
            CompressionStatus.COMPRESSED, original, new_tokens, new_history,
        )
