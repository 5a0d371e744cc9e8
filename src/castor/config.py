"""Configuration: frozen Config with explicit provider/model requirements."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
import re
from typing import Literal

from dotenv import load_dotenv

from castor.errors import ConfigurationError
from castor.retry import RetryPolicy
from castor.types import ToolChoice

load_dotenv()

ProviderName = Literal["gemini", "openai", "ollama"]

_PROVIDERS: tuple[str, ...] = ("gemini", "openai", "ollama")

# Provider-specific API key environment variable names
_API_KEY_ENV_VARS: dict[str, str] = {
    "gemini": "GEMINI_API_KEY",
    "openai": "OPENAI_API_KEY",
}

_DEFAULT_BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "ollama": "http://localhost:11434",
}

_KEY_SEPARATORS = re.compile(r"[\n,]")


def parse_key_list(raw: str | None) -> tuple[str, ...]:
    """Split a newline- or comma-separated key list, dropping blanks."""
    if not raw:
        return ()
    return tuple(k.strip() for k in _KEY_SEPARATORS.split(raw) if k.strip())


@dataclass(frozen=True)
class RateLimit:
    """Client-side request budget over a sliding 60-second window."""

    requests_per_minute: int = 60

    def __post_init__(self) -> None:
        if self.requests_per_minute < 1:
            raise ConfigurationError(
                f"requests_per_minute must be ≥ 1, got {self.requests_per_minute}"
            )


@dataclass(frozen=True)
class CircuitBreakerPolicy:
    """Thresholds for the per-driver circuit breaker."""

    failure_threshold: int = 5
    cooldown_s: float = 30.0
    half_open_max_attempts: int = 1

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ConfigurationError(
                f"failure_threshold must be ≥ 1, got {self.failure_threshold}"
            )
        if self.cooldown_s < 0:
            raise ConfigurationError(f"cooldown_s must be ≥ 0, got {self.cooldown_s}")
        if self.half_open_max_attempts < 1:
            raise ConfigurationError(
                "half_open_max_attempts must be ≥ 1, "
                f"got {self.half_open_max_attempts}"
            )


@dataclass(frozen=True)
class Config:
    """Immutable configuration for one driver and its orchestrator.

    Provider and model are required. API keys are auto-resolved from
    ``GEMINI_API_KEY`` / ``OPENAI_API_KEY``; either variable may hold several
    keys separated by newlines or commas, which are then rotated.

    Example:
        config = Config(provider="openai", model="gpt-4o-mini")
    """

    provider: ProviderName
    model: str
    #: Auto-resolved from the provider's environment variable when *None*.
    api_keys: tuple[str, ...] | None = None
    #: OpenAI-compatible or Ollama server root. Unused by Gemini.
    base_url: str | None = None
    use_mock: bool = False
    timeout_s: float = 300.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    rate_limit: RateLimit = field(default_factory=RateLimit)
    circuit_breaker: CircuitBreakerPolicy = field(default_factory=CircuitBreakerPolicy)
    max_tokens: int = 4096
    temperature: float = 0.7
    top_p: float = 1.0
    enable_tools: bool = True
    tool_choice: ToolChoice = "auto"
    #: Advance the key cursor after every successful request.
    rotate_on_success: bool = False
    #: Gemini harm category -> threshold, e.g. {"HARM_CATEGORY_HARASSMENT": "BLOCK_NONE"}.
    safety_settings: dict[str, str] | None = None
    #: Error categories escalated to CRITICAL severity (marks the driver unhealthy).
    critical_categories: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        """Resolve keys and base URL, then validate."""
        if self.provider not in _PROVIDERS:
            raise ConfigurationError(
                f"Unknown provider: {self.provider!r}",
                hint="Supported providers: 'gemini', 'openai', 'ollama'",
            )
        if not self.model:
            raise ConfigurationError(
                "model is required", hint="Pass Config(model='...')."
            )
        if self.timeout_s <= 0:
            raise ConfigurationError(
                f"timeout_s must be > 0, got {self.timeout_s}",
                hint="This is the per-request timeout in seconds.",
            )
        if self.max_tokens < 1:
            raise ConfigurationError(f"max_tokens must be ≥ 1, got {self.max_tokens}")
        if self.tool_choice not in ("auto", "required", "none"):
            raise ConfigurationError(
                f"Unknown tool_choice: {self.tool_choice!r}",
                hint="Use 'auto', 'required' or 'none'.",
            )

        if isinstance(self.api_keys, str):
            object.__setattr__(self, "api_keys", parse_key_list(self.api_keys))
        elif self.api_keys is not None:
            object.__setattr__(self, "api_keys", tuple(self.api_keys))

        env_var = _API_KEY_ENV_VARS.get(self.provider)
        if self.api_keys is None and env_var and not self.use_mock:
            object.__setattr__(
                self, "api_keys", parse_key_list(os.environ.get(env_var))
            )

        if self.base_url is None:
            default = _DEFAULT_BASE_URLS.get(self.provider)
            if self.provider == "ollama":
                default = os.environ.get("OLLAMA_BASE_URL") or default
            object.__setattr__(self, "base_url", default)
        if self.base_url:
            object.__setattr__(self, "base_url", self.base_url.rstrip("/"))

        if self.requires_credentials and not self.api_keys:
            raise ConfigurationError(
                f"API key required for {self.provider}",
                hint=f"Set {env_var} environment variable or pass api_keys=...",
            )

    @property
    def requires_credentials(self) -> bool:
        return self.provider in _API_KEY_ENV_VARS and not self.use_mock

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        n_keys = len(self.api_keys or ())
        return (
            f"Config(provider={self.provider!r}, model={self.model!r}, "
            f"api_keys={f'[{n_keys} REDACTED]' if n_keys else None}, "
            f"base_url={self.base_url!r}, use_mock={self.use_mock})"
        )

    __repr__ = __str__
