"""Error hierarchy for Chat Harness.

Every failure the engine raises carries a ``kind`` so callers can branch
without string matching.  Tool denials and tool failures are *not* errors:
they are returned to the model as tool-result payloads.
"""

from __future__ import annotations

import enum


class HarnessError(Exception):
    """Base error for all engine errors."""

    kind: str = "internal"
    retryable: bool = False

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class AuthenticationError(HarnessError):
    """Missing, invalid or expired credentials (HTTP 401/403)."""

    kind = "authentication"


class NetworkError(HarnessError):
    """Connection reset, refused, DNS failure or timeout."""

    kind = "network"
    retryable = True


class BackendError(HarnessError):
    """Non-success HTTP status returned by a backend."""

    kind = "backend"

    def __init__(
        self,
        message: str,
        *,
        backend: str = "",
        status_code: int | None = None,
        body: str = "",
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.backend = backend
        self.status_code = status_code
        self.body = body
        self.retryable = status_code in _TRANSIENT_STATUSES


class InvalidStreamReason(enum.Enum):
    NO_FINISH_REASON = "NO_FINISH_REASON"
    NO_RESPONSE_TEXT = "NO_RESPONSE_TEXT"
    MALFORMED_FUNCTION_CALL = "MALFORMED_FUNCTION_CALL"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"


class InvalidStreamError(HarnessError):
    """The backend response was structurally unusable."""

    kind = "invalid_stream"

    def __init__(self, reason: InvalidStreamReason, message: str = "") -> None:
        super().__init__(message or f"Invalid response stream: {reason.value}")
        self.reason = reason


class MaxTurnsExceededError(HarnessError):
    """The turn loop hit its round limit without a final answer."""

    kind = "budget_exceeded"

    def __init__(self, max_rounds: int) -> None:
        super().__init__(f"max turns reached ({max_rounds})")
        self.max_rounds = max_rounds


class OperationCancelledError(HarnessError):
    """The caller cancelled the operation."""

    kind = "cancelled"

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)


class ConfigurationError(HarnessError):
    """A backend is missing required configuration."""

    kind = "configuration"


# --- Factory ---

_TRANSIENT_STATUSES = frozenset({429, 502, 503, 504})


def error_from_status(
    status_code: int,
    message: str,
    *,
    backend: str = "",
    body: str = "",
) -> HarnessError:
    """Map an HTTP status to the matching error.

    The message always embeds the status code so that substring-based
    retry classification sees it.
    """
    text = f"{backend or 'backend'} returned HTTP {status_code}: {message}"
    if status_code in (401, 403):
        return AuthenticationError(text)
    return BackendError(text, backend=backend, status_code=status_code, body=body)
