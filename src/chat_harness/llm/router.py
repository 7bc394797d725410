"""Backend router: builds adapters from config and tracks the active one."""

from __future__ import annotations

import logging

from chat_harness.config import BACKEND_NAMES, HarnessConfig
from chat_harness.errors import ConfigurationError
from chat_harness.llm.adapters import (
    BackendAdapter,
    CopilotAdapter,
    GeminiAdapter,
    OllamaAdapter,
)
from chat_harness.llm.auth import CopilotTokenManager, StaticTokenProvider
from chat_harness.llm.retry import RetryOptions

_logger = logging.getLogger(__name__)


class BackendRouter:
    """Lazily constructs one adapter per backend and selects between them.

    Parameters
    ----------
    config:
        The full ``HarnessConfig``; ``config.backend`` is the initial choice.
    adapters:
        Optional pre-built adapters keyed by backend name (used in tests).
    """

    def __init__(
        self,
        config: HarnessConfig,
        adapters: dict[str, BackendAdapter] | None = None,
    ) -> None:
        self._config = config
        self._adapters: dict[str, BackendAdapter] = dict(adapters or {})
        self._active = config.backend
        self._models: dict[str, str] = {
            "gemini": config.backends.gemini.model,
            "copilot": config.backends.copilot.model,
            "ollama": config.backends.ollama.model,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def active(self) -> str:
        return self._active

    @property
    def current_model(self) -> str:
        return self._models[self._active]

    def set_model(self, model: str) -> None:
        self._models[self._active] = model

    def get_adapter(self, name: str | None = None) -> BackendAdapter:
        name = name or self._active
        if name not in BACKEND_NAMES:
            raise ConfigurationError(f"Unknown backend: {name}")
        if name not in self._adapters:
            self._adapters[name] = self._build(name)
        return self._adapters[name]

    def switch(self, name: str) -> BackendAdapter:
        """Make *name* the active backend and return its adapter."""
        adapter = self.get_adapter(name)
        if not adapter.is_configured():
            raise ConfigurationError(f"Backend {name!r} is not configured")
        _logger.info("Switched backend %s -> %s", self._active, name)
        self._active = name
        return adapter

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build(self, name: str) -> BackendAdapter:
        backends = self._config.backends
        if name == "gemini":
            cfg = backends.gemini
            return GeminiAdapter(
                StaticTokenProvider(cfg.access_token),
                endpoint=cfg.endpoint,
                project_id=cfg.project_id,
                temperature=cfg.temperature,
                timeout=cfg.timeout,
            )
        if name == "copilot":
            cfg = backends.copilot
            retry = self._config.retry
            manager = CopilotTokenManager(
                cfg.oauth_token,
                token_url=cfg.token_url,
                retry_options=RetryOptions(
                    max_attempts=retry.max_attempts,
                    initial_delay=retry.initial_delay,
                    max_delay=retry.max_delay,
                ),
            )
            return CopilotAdapter(manager, stream=cfg.stream, timeout=cfg.timeout)
        cfg = backends.ollama
        return OllamaAdapter(cfg.base_url, timeout=cfg.timeout)
