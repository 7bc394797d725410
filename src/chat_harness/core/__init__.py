"""Core turn-execution components for Chat Harness."""

from chat_harness.core.approval import ApprovalBroker, ApprovalRequest
from chat_harness.core.compressor import HistoryCompressor, estimate_tokens
from chat_harness.core.dispatcher import ToolDispatcher, tool_signature
from chat_harness.core.history import curate_history
from chat_harness.core.orchestrator import Orchestrator, TokenEstimate

__all__ = [
    "ApprovalBroker",
    "ApprovalRequest",
    "HistoryCompressor",
    "Orchestrator",
    "TokenEstimate",
    "ToolDispatcher",
    "curate_history",
    "estimate_tokens",
    "tool_signature",
]
