"""Gemini driver on the google-genai SDK."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from castor.cancel import guard_stream
from castor.drivers._errors import wrap_driver_error
from castor.drivers.base import sampling_params, system_prompt_of, without_system
from castor.errors import APIError, AuthenticationError, CastorError
from castor.tools import from_provider_calls, normalize_declarations
from castor.types import (
    FunctionCallPart,
    FunctionCallsEvent,
    ProviderCapabilities,
    TextEvent,
    TextPart,
    ToolProtocol,
    UsageEvent,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from castor.config import Config
    from castor.types import StreamEvent, StreamRequest, Turn

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_SETTINGS: dict[str, str] = {
    "HARM_CATEGORY_HARASSMENT": "BLOCK_NONE",
    "HARM_CATEGORY_HATE_SPEECH": "BLOCK_NONE",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT": "BLOCK_NONE",
    "HARM_CATEGORY_DANGEROUS_CONTENT": "BLOCK_NONE",
}

_TOOL_CHOICE_MODES = {"auto": "AUTO", "required": "ANY", "none": "NONE"}


def _import_types() -> Any:
    try:
        from google.genai import types
    except ImportError as e:
        raise APIError(
            "google-genai package not installed", hint="pip install google-genai"
        ) from e
    return types


def _default_client_factory(api_key: str) -> Any:
    try:
        from google import genai
    except ImportError as e:
        raise APIError(
            "google-genai package not installed", hint="pip install google-genai"
        ) from e
    return genai.Client(api_key=api_key)


def _response_payload(response: Any) -> dict[str, Any]:
    if isinstance(response, dict):
        return response
    return {"result": response}


def build_contents(history: list[Turn]) -> list[Any]:
    """Translate turns into SDK contents.

    User turns are split: text goes out as a ``user`` content and each function
    response as its own ``function`` content.
    """
    types = _import_types()
    contents: list[Any] = []
    for turn in without_system(history):
        if turn.role == "user":
            text_parts = [
                types.Part.from_text(text=p.text)
                for p in turn.parts
                if isinstance(p, TextPart) and p.text
            ]
            if text_parts:
                contents.append(types.Content(role="user", parts=text_parts))
            for resp in turn.function_responses:
                contents.append(
                    types.Content(
                        role="function",
                        parts=[
                            types.Part(
                                function_response=types.FunctionResponse(
                                    id=resp.id or None,
                                    name=resp.name,
                                    response=_response_payload(resp.response),
                                )
                            )
                        ],
                    )
                )
            continue

        model_parts: list[Any] = []
        for part in turn.parts:
            if isinstance(part, TextPart):
                if part.text:
                    model_parts.append(types.Part.from_text(text=part.text))
            elif isinstance(part, FunctionCallPart):
                model_parts.append(
                    types.Part(
                        function_call=types.FunctionCall(
                            id=part.id or None, name=part.name, args=dict(part.args)
                        )
                    )
                )
        if model_parts:
            contents.append(types.Content(role="model", parts=model_parts))
    return contents


class GeminiDriver:
    """Google Gemini streaming driver."""

    provider = "gemini"

    def __init__(
        self,
        config: Config,
        *,
        client_factory: Callable[[str], Any] | None = None,
    ) -> None:
        self.config = config
        self.model = config.model
        self.timeout_s = config.timeout_s
        self._client_factory = client_factory or _default_client_factory
        self._clients: dict[str, Any] = {}

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            provider=self.provider,
            supports_function_calling=True,
            supports_system_instruction=True,
            tool_protocol=ToolProtocol.GEMINI,
            max_context=1_000_000,
            max_tokens=self.config.max_tokens,
            rate_limits={
                "requests_per_minute": self.config.rate_limit.requests_per_minute
            },
        )

    @property
    def requires_credentials(self) -> bool:
        return True

    def is_configured(self, api_key: str | None) -> bool:
        return bool(api_key and self.model)

    def _get_client(self, api_key: str) -> Any:
        """One SDK client per API key."""
        client = self._clients.get(api_key)
        if client is None:
            client = self._client_factory(api_key)
            self._clients[api_key] = client
            logger.debug("Created Gemini client #%d", len(self._clients))
        return client

    def build_config(self, request: StreamRequest) -> Any:
        types = _import_types()
        params = sampling_params(self.config, request.model_params)
        config_kwargs: dict[str, Any] = {
            "temperature": params["temperature"],
            "top_p": params["top_p"],
            "max_output_tokens": params["max_tokens"],
        }
        system = system_prompt_of(request.history, request.custom_rules)
        if system:
            config_kwargs["system_instruction"] = system

        safety = self.config.safety_settings
        if safety is None:
            safety = DEFAULT_SAFETY_SETTINGS
        if safety:
            config_kwargs["safety_settings"] = [
                types.SafetySetting(category=category, threshold=threshold)
                for category, threshold in safety.items()
            ]

        declarations = normalize_declarations(request.tools)
        if declarations:
            config_kwargs["tools"] = [
                types.Tool(
                    function_declarations=[
                        types.FunctionDeclaration(
                            name=d["name"],
                            description=d.get("description", ""),
                            parameters=d.get("parameters"),
                        )
                        for d in declarations
                    ]
                )
            ]
            mode = _TOOL_CHOICE_MODES[request.tool_choice or self.config.tool_choice]
            config_kwargs["tool_config"] = {"function_calling_config": {"mode": mode}}

        return types.GenerateContentConfig(**config_kwargs)

    def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        return guard_stream(
            self._events(request), cancel=request.cancel, timeout_s=self.timeout_s
        )

    async def _events(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        if not request.api_key:
            raise AuthenticationError(
                "Gemini API key is not configured",
                hint="Set GEMINI_API_KEY or pass Config(api_keys=...).",
                provider=self.provider,
            )
        client = self._get_client(request.api_key)
        usage: Any = None
        try:
            stream = await client.aio.models.generate_content_stream(
                model=self.model,
                contents=build_contents(request.history),
                config=self.build_config(request),
            )
            async for chunk in stream:
                text = getattr(chunk, "text", None)
                if text:
                    yield TextEvent(text)
                raw_calls = getattr(chunk, "function_calls", None)
                if raw_calls:
                    calls = from_provider_calls(ToolProtocol.GEMINI, raw_calls)
                    yield FunctionCallsEvent(tuple(calls))
                usage = getattr(chunk, "usage_metadata", None) or usage
        except (asyncio.CancelledError, CastorError):
            raise
        except Exception as e:
            raise wrap_driver_error(
                e, provider=self.provider, message="Gemini stream failed"
            ) from e

        if usage is not None:
            yield UsageEvent(
                prompt_tokens=int(getattr(usage, "prompt_token_count", 0) or 0),
                completion_tokens=int(getattr(usage, "candidates_token_count", 0) or 0),
            )

    async def aclose(self) -> None:
        self._clients.clear()
