"""Credential providers for authenticated backends.

How the long-lived OAuth tokens are first obtained is outside this package;
providers only hand out (and, for Copilot, refresh) bearer tokens.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol, runtime_checkable

import httpx

from chat_harness.config import COPILOT_DEFAULT_API, COPILOT_TOKEN_URL
from chat_harness.errors import AuthenticationError, NetworkError, error_from_status
from chat_harness.llm.retry import RetryOptions, with_retry

_logger = logging.getLogger(__name__)

# Used when the exchange response omits ``expires_at``
_DEFAULT_TOKEN_LIFETIME = 1500  # seconds
# Refresh this long before the advertised expiry
_EXPIRY_MARGIN = 60


@runtime_checkable
class TokenProvider(Protocol):
    def is_available(self) -> bool: ...

    async def get_token(self) -> str: ...


class StaticTokenProvider:
    """Hands out a fixed bearer token."""

    def __init__(self, token: str) -> None:
        self._token = token

    def is_available(self) -> bool:
        return bool(self._token)

    async def get_token(self) -> str:
        if not self._token:
            raise AuthenticationError("No access token configured")
        return self._token


class CopilotTokenManager:
    """Exchanges a GitHub OAuth token for short-lived Copilot API tokens.

    The API token and the API endpoint it is valid for are cached until
    shortly before expiry.  Concurrent callers share one in-flight exchange.

    Parameters
    ----------
    oauth_token:
        Long-lived GitHub OAuth token.
    client:
        Optional shared ``httpx.AsyncClient``.
    token_url:
        Exchange endpoint.
    retry_options:
        Backoff policy for the exchange request.
    """

    def __init__(
        self,
        oauth_token: str,
        client: httpx.AsyncClient | None = None,
        token_url: str = COPILOT_TOKEN_URL,
        retry_options: RetryOptions | None = None,
        clock=time.time,
    ) -> None:
        self._oauth_token = oauth_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(30, connect=10))
        self._token_url = token_url
        self._retry_options = retry_options or RetryOptions()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._api_token = ""
        self._expires_at = 0.0
        self._api_endpoint = COPILOT_DEFAULT_API
        self.exchange_count = 0

    def is_available(self) -> bool:
        return bool(self._oauth_token)

    @property
    def api_endpoint(self) -> str:
        return self._api_endpoint

    def _is_fresh(self) -> bool:
        return bool(self._api_token) and self._clock() < self._expires_at - _EXPIRY_MARGIN

    async def get_token(self) -> str:
        """Return a valid API token, exchanging if missing or near expiry."""
        if not self._oauth_token:
            raise AuthenticationError("No Copilot OAuth token configured")
        if self._is_fresh():
            return self._api_token
        async with self._lock:
            # Another caller may have refreshed while we waited
            if not self._is_fresh():
                await with_retry(self._exchange, self._retry_options)
        return self._api_token

    def invalidate(self) -> None:
        """Forget the cached API token (e.g. after a 401)."""
        self._api_token = ""
        self._expires_at = 0.0

    async def aclose(self) -> None:
        """Close the HTTP client if this manager created it."""
        if self._owns_client:
            await self._client.aclose()

    async def _exchange(self) -> None:
        try:
            resp = await self._client.get(
                self._token_url,
                headers={
                    "Authorization": f"token {self._oauth_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.TransportError as e:
            raise NetworkError(f"Copilot token exchange failed: {e}", cause=e) from e

        if resp.status_code != 200:
            raise error_from_status(
                resp.status_code, "Copilot token exchange failed",
                backend="copilot", body=resp.text,
            )

        data = resp.json()
        token = data.get("token")
        if not token:
            raise AuthenticationError("Copilot token exchange returned no token")
        self._api_token = token
        self._expires_at = float(
            data.get("expires_at") or self._clock() + _DEFAULT_TOKEN_LIFETIME
        )
        endpoints = data.get("endpoints") or {}
        self._api_endpoint = (endpoints.get("api") or COPILOT_DEFAULT_API).rstrip("/")
        self.exchange_count += 1
        _logger.info(
            "Obtained Copilot API token (expires in %ds, endpoint %s)",
            int(self._expires_at - self._clock()), self._api_endpoint,
        )

    async def validate_connection(self) -> bool:
        """Check that the OAuth token is accepted by GitHub."""
        try:
            await self.get_token()
        except (AuthenticationError, NetworkError) as e:
            _logger.info("Copilot connection check failed: %s", e)
            return False
        return True
