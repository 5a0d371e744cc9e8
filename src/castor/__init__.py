"""Castor: one streaming chat interface over Gemini, OpenAI-compatible and Ollama upstreams.

Public API:
    - ChatClient: Facade that builds the system prompt and streams replies
    - Orchestrator: Gates, retries, credential rotation and health per driver
    - Config: Configuration dataclass
    - CancelToken: Cooperative cancellation handle
"""

from __future__ import annotations

import logging

from castor.cancel import CancelToken
from castor.client import ChatClient
from castor.config import CircuitBreakerPolicy, Config, RateLimit
from castor.credentials import CredentialSet, KeyRotationSession
from castor.drivers import create_driver
from castor.error_policy import ErrorClassification, classify
from castor.errors import (
    AbortError,
    APIError,
    AuthenticationError,
    CastorError,
    CircuitOpenError,
    ConfigurationError,
    RateLimitError,
    RequestTimeoutError,
    ServiceError,
    ServiceUnavailableError,
    Severity,
    StreamParseError,
)
from castor.metrics import HealthSnapshot
from castor.orchestrator import Orchestrator
from castor.prompts import PromptBuilder, PromptContext, build_prompt
from castor.retry import RetryPolicy, compute_delay
from castor.types import (
    FunctionCall,
    FunctionCallPart,
    FunctionCallsEvent,
    FunctionResponsePart,
    PromptPack,
    ProviderCapabilities,
    StreamEvent,
    TextEvent,
    TextPart,
    ToolProtocol,
    Turn,
    UsageEvent,
)

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("castor-llm")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("castor").addHandler(logging.NullHandler())

__all__ = [
    "APIError",
    "AbortError",
    "AuthenticationError",
    "CancelToken",
    "CastorError",
    "ChatClient",
    "CircuitBreakerPolicy",
    "CircuitOpenError",
    "Config",
    "ConfigurationError",
    "CredentialSet",
    "ErrorClassification",
    "FunctionCall",
    "FunctionCallPart",
    "FunctionCallsEvent",
    "FunctionResponsePart",
    "HealthSnapshot",
    "KeyRotationSession",
    "Orchestrator",
    "PromptBuilder",
    "PromptContext",
    "PromptPack",
    "ProviderCapabilities",
    "RateLimit",
    "RateLimitError",
    "RequestTimeoutError",
    "RetryPolicy",
    "ServiceError",
    "ServiceUnavailableError",
    "Severity",
    "StreamEvent",
    "StreamParseError",
    "TextEvent",
    "TextPart",
    "ToolProtocol",
    "Turn",
    "UsageEvent",
    "build_prompt",
    "classify",
    "compute_delay",
    "create_driver",
]
