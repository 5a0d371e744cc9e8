"""ChatClient: the provider-agnostic streaming chat facade."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from castor.orchestrator import Orchestrator
from castor.prompts import PromptBuilder
from castor.tools import declaration_names, to_provider_declarations
from castor.types import TextEvent, Turn, coerce_history

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Mapping
    from types import TracebackType

    from castor.cancel import CancelToken
    from castor.config import Config
    from castor.drivers.base import Driver
    from castor.metrics import HealthSnapshot
    from castor.prompts import Mode, PromptContext
    from castor.types import ProviderCapabilities, StreamEvent

logger = logging.getLogger(__name__)


class ChatClient:
    """Builds the system prompt, offers tools and streams through an orchestrator.

    Example:
        config = Config(provider="gemini", model="gemini-2.0-flash")
        async with ChatClient.from_config(config) as chat:
            async for event in chat.stream([Turn.text("user", "hi")]):
                ...
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        config: Config | None = None,
        *,
        prompt_builder: PromptBuilder | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.config = config
        self.prompt_builder = prompt_builder or PromptBuilder()

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        driver: Driver | None = None,
        prompt_builder: PromptBuilder | None = None,
        **orchestrator_kwargs: Any,
    ) -> ChatClient:
        orchestrator = Orchestrator.from_config(config, driver, **orchestrator_kwargs)
        return cls(orchestrator, config, prompt_builder=prompt_builder)

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self.orchestrator.driver.capabilities

    def _provider_tools(self, tools: Any) -> list[dict[str, Any]] | None:
        if not tools:
            return None
        if self.config is not None and not self.config.enable_tools:
            return None
        caps = self.capabilities
        if not caps.supports_function_calling:
            return None
        converted = to_provider_declarations(caps.tool_protocol, tools)
        logger.debug("Offering tools to %s: %s", caps.provider, declaration_names(tools))
        return converted or None

    async def stream(
        self,
        history: Iterable[Turn | Mapping[str, Any]],
        tools: Any = None,
        mode: Mode | str = "code",
        custom_rules: str = "",
        cancel: CancelToken | None = None,
        prompt_context: PromptContext | Mapping[str, Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a reply to *history*.

        A caller-supplied system turn at the head of *history* is kept as is;
        otherwise the built system prompt is prepended.
        """
        turns = coerce_history(history)
        pack = self.prompt_builder.build(mode, custom_rules, prompt_context)
        if not turns or turns[0].role != "system":
            turns = [Turn.text("system", pack.system_prompt), *turns]

        events = self.orchestrator.stream(
            turns,
            self._provider_tools(tools),
            custom_rules,
            cancel,
            model_params=pack.model_params,
            tool_choice=self.config.tool_choice if self.config is not None else None,
        )
        async for event in events:
            yield event

    async def send_prompt(
        self,
        prompt: str,
        *,
        history: Iterable[Turn | Mapping[str, Any]] = (),
        tools: Any = None,
        mode: Mode | str = "code",
        custom_rules: str = "",
        cancel: CancelToken | None = None,
        prompt_context: PromptContext | Mapping[str, Any] | None = None,
    ) -> str:
        """Send one prompt and return the concatenated reply text."""
        turns = [*coerce_history(history), Turn.text("user", prompt)]
        chunks: list[str] = []
        async for event in self.stream(
            turns,
            tools=tools,
            mode=mode,
            custom_rules=custom_rules,
            cancel=cancel,
            prompt_context=prompt_context,
        ):
            if isinstance(event, TextEvent):
                chunks.append(event.text)
        return "".join(chunks).strip()

    def health(self) -> HealthSnapshot:
        return self.orchestrator.health()

    async def aclose(self) -> None:
        await self.orchestrator.aclose()

    async def __aenter__(self) -> ChatClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
