"""Provider drivers and the driver factory."""

from __future__ import annotations

from typing import TYPE_CHECKING

from castor.drivers.base import Driver, LineAssembler
from castor.errors import ConfigurationError

if TYPE_CHECKING:
    from castor.config import Config

__all__ = ["Driver", "LineAssembler", "create_driver"]


def create_driver(config: Config) -> Driver:
    """Get the appropriate driver based on configuration."""
    if config.use_mock:
        from castor.drivers.mock import MockDriver

        return MockDriver(config.model, timeout_s=config.timeout_s)

    if config.provider == "gemini":
        from castor.drivers.gemini import GeminiDriver

        return GeminiDriver(config)

    if config.provider == "openai":
        from castor.drivers.openai import OpenAIDriver

        return OpenAIDriver(config)

    if config.provider == "ollama":
        from castor.drivers.ollama import OllamaDriver

        return OllamaDriver(config)

    raise ConfigurationError(
        f"Unknown provider: {config.provider!r}",
        hint="Supported providers: 'gemini', 'openai', 'ollama'",
    )
