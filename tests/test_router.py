"""Tests for backend selection."""

import pytest

from chat_harness.config import HarnessConfig
from chat_harness.errors import ConfigurationError
from chat_harness.llm.adapters import CopilotAdapter, GeminiAdapter, OllamaAdapter
from chat_harness.llm.router import BackendRouter


def _config(**backends) -> HarnessConfig:
    return HarnessConfig.model_validate({"backends": backends})


class TestBackendRouter:
    def test_builds_active_adapter_lazily(self):
        router = BackendRouter(_config())
        adapter = router.get_adapter()
        assert isinstance(adapter, OllamaAdapter)
        assert router.get_adapter("ollama") is adapter
        assert router.current_model == "llama3"

    def test_builds_each_backend(self):
        router = BackendRouter(_config())
        assert isinstance(router.get_adapter("gemini"), GeminiAdapter)
        assert isinstance(router.get_adapter("copilot"), CopilotAdapter)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            BackendRouter(_config()).get_adapter("openai")

    def test_switch_requires_credentials(self):
        router = BackendRouter(_config())
        with pytest.raises(ConfigurationError, match="not configured"):
            router.switch("gemini")
        assert router.active == "ollama"

    def test_switch_and_per_backend_models(self):
        router = BackendRouter(_config(copilot={"oauth_token": "gho_x", "model": "gpt-4o"}))
        router.set_model("qwen2.5")

        adapter = router.switch("copilot")

        assert isinstance(adapter, CopilotAdapter)
        assert router.active == "copilot"
        assert router.current_model == "gpt-4o"
        router.switch("ollama")
        assert router.current_model == "qwen2.5"

    @pytest.mark.asyncio
    async def test_aclose_closes_built_adapters(self):
        router = BackendRouter(_config())
        adapter = router.get_adapter()
        await router.aclose()
        assert adapter._client.is_closed
