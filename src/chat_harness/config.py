"""Configuration management for Chat Harness."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

GEMINI_CODE_ASSIST_ENDPOINT = "https://cloudcode-pa.googleapis.com/v1internal"
COPILOT_TOKEN_URL = "https://api.github.com/copilot_internal/v2/token"
COPILOT_DEFAULT_API = "https://api.githubcopilot.com"
OLLAMA_DEFAULT_URL = "http://localhost:11434"

BACKEND_NAMES = ("gemini", "copilot", "ollama")


class GeminiConfig(BaseModel):
    model: str = "gemini-2.5-flash"
    endpoint: str = GEMINI_CODE_ASSIST_ENDPOINT
    access_token: str = ""
    project_id: str = ""  # skips the provisioning handshake when set
    temperature: float = 0.7
    timeout: float = 120


class CopilotConfig(BaseModel):
    model: str = "gpt-4o-mini"
    oauth_token: str = ""
    token_url: str = COPILOT_TOKEN_URL
    stream: bool = False  # SSE instead of a single JSON body
    timeout: float = 60


class OllamaConfig(BaseModel):
    model: str = "llama3"
    base_url: str = OLLAMA_DEFAULT_URL
    timeout: float = 300


class BackendsConfig(BaseModel):
    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    copilot: CopilotConfig = Field(default_factory=CopilotConfig)
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)


class RetryConfig(BaseModel):
    max_attempts: int = 3
    initial_delay: float = 0.5  # seconds
    max_delay: float = 5.0
    extra_retryable_patterns: list[str] = Field(default_factory=list)

    @field_validator("max_attempts")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be >= 1")
        return v


class CompressionConfig(BaseModel):
    threshold: float = 0.5  # fraction of the model limit that triggers compression
    preserve_fraction: float = 0.3  # share of history kept verbatim
    min_turns: int = 4
    default_limit: int = 32000
    model_limits: dict[str, int] = Field(default_factory=dict)  # merged over built-ins


class HarnessConfig(BaseModel):
    backend: str = "ollama"
    backends: BackendsConfig = Field(default_factory=BackendsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    max_rounds: int = 10

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, v: str) -> str:
        if v not in BACKEND_NAMES:
            raise ValueError(f"unknown backend {v!r}; expected one of {BACKEND_NAMES}")
        return v


CONFIG_FILENAME = "chat_harness.yaml"


def apply_env_overrides(config: HarnessConfig) -> HarnessConfig:
    """Fill secrets and hosts from the environment when set."""
    env = os.environ
    if env.get("GEMINI_ACCESS_TOKEN"):
        config.backends.gemini.access_token = env["GEMINI_ACCESS_TOKEN"]
    if env.get("GEMINI_MODEL"):
        config.backends.gemini.model = env["GEMINI_MODEL"]
    if env.get("COPILOT_OAUTH_TOKEN"):
        config.backends.copilot.oauth_token = env["COPILOT_OAUTH_TOKEN"]
    if env.get("OLLAMA_HOST"):
        config.backends.ollama.base_url = env["OLLAMA_HOST"]
    return config


def load_config(
    config_path: str | Path | None = None,
) -> tuple[HarnessConfig, Path | None]:
    """Load configuration from YAML file.

    Returns (config, resolved_path).  *resolved_path* is ``None`` when
    no file was found and built-in defaults are used.

    Search order (first match wins):
      1. Explicit ``--config`` path
      2. Current working directory: ``./chat_harness.yaml``
      3. User config dir: ``~/.chat_harness/chat_harness.yaml``

    Environment overrides are applied last in every case.
    """
    if config_path is None:
        for d in (Path.cwd(), Path.home() / ".chat_harness"):
            p = d / CONFIG_FILENAME
            if p.exists():
                config_path = p
                break
    elif not Path(config_path).exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    if config_path is None:
        return apply_env_overrides(HarnessConfig()), None

    resolved = Path(config_path)
    with open(resolved) as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}
    config = HarnessConfig.model_validate(raw)
    return apply_env_overrides(config), resolved.resolve()
