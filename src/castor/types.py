"""Domain types shared by the orchestration layer and the drivers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from castor.cancel import CancelToken

Role = Literal["system", "user", "model"]
ToolChoice = Literal["auto", "required", "none"]

_ROLES: frozenset[str] = frozenset({"system", "user", "model"})


class ToolProtocol(StrEnum):
    """Native tool-calling dialect of a provider."""

    GEMINI = "gemini"  # declarations used as-is, args arrive as mappings
    OPENAI = "openai"  # {"type": "function", ...}, args arrive as JSON text
    NONE = "none"


# =============================================================================
# Conversation
# =============================================================================


@dataclass(frozen=True)
class TextPart:
    """Plain text content."""

    text: str


@dataclass(frozen=True)
class FunctionCallPart:
    """A tool invocation emitted by the model."""

    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FunctionResponsePart:
    """The result of a tool invocation, sent back by the caller."""

    id: str
    name: str
    response: Any = None


Part = TextPart | FunctionCallPart | FunctionResponsePart


@dataclass(frozen=True)
class Turn:
    """One conversation turn: a role and an ordered tuple of parts."""

    role: Role
    parts: tuple[Part, ...] = ()

    @classmethod
    def text(cls, role: Role, text: str) -> Turn:
        """Build a single-text-part turn."""
        return cls(role=role, parts=(TextPart(text),))

    @property
    def text_content(self) -> str:
        """Text parts joined with newlines."""
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def function_calls(self) -> list[FunctionCallPart]:
        return [p for p in self.parts if isinstance(p, FunctionCallPart)]

    @property
    def function_responses(self) -> list[FunctionResponsePart]:
        return [p for p in self.parts if isinstance(p, FunctionResponsePart)]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Turn:
        """Build a turn from the plain-dict wire form.

        Accepts ``{"role": ..., "parts": [...]}`` where each part is one of
        ``{"text": ...}``, ``{"functionCall": {...}}`` or
        ``{"functionResponse": {...}}`` (snake_case keys are accepted too).
        """
        role = data.get("role")
        if role not in _ROLES:
            raise ValueError(f"Unknown turn role: {role!r}")
        parts: list[Part] = []
        for raw in data.get("parts") or ():
            parts.append(_part_from_dict(raw))
        return cls(role=role, parts=tuple(parts))


def _part_from_dict(raw: Any) -> Part:
    if isinstance(raw, (TextPart, FunctionCallPart, FunctionResponsePart)):
        return raw
    if isinstance(raw, str):
        return TextPart(raw)
    if not isinstance(raw, dict):
        raise ValueError(f"Unsupported part: {raw!r}")
    call = raw.get("functionCall") or raw.get("function_call")
    if isinstance(call, dict):
        args = call.get("args")
        return FunctionCallPart(
            id=str(call.get("id") or ""),
            name=str(call.get("name") or ""),
            args=dict(args) if isinstance(args, dict) else {},
        )
    resp = raw.get("functionResponse") or raw.get("function_response")
    if isinstance(resp, dict):
        return FunctionResponsePart(
            id=str(resp.get("id") or ""),
            name=str(resp.get("name") or ""),
            response=resp.get("response"),
        )
    if "text" in raw:
        return TextPart(str(raw["text"]))
    raise ValueError(f"Unsupported part: {raw!r}")


def coerce_history(history: Iterable[Turn | Mapping[str, Any]]) -> list[Turn]:
    """Return *history* as a list of `Turn`, converting plain dicts."""
    return [t if isinstance(t, Turn) else Turn.from_dict(t) for t in history]


# =============================================================================
# Stream events
# =============================================================================


@dataclass(frozen=True)
class FunctionCall:
    """Provider-agnostic tool call: ``args`` is always a mapping."""

    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TextEvent:
    """A content delta."""

    text: str


@dataclass(frozen=True)
class FunctionCallsEvent:
    """One or more structurally complete tool calls."""

    calls: tuple[FunctionCall, ...]


@dataclass(frozen=True)
class UsageEvent:
    """Token usage reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0


StreamEvent = TextEvent | FunctionCallsEvent | UsageEvent


# =============================================================================
# Provider-facing
# =============================================================================


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags and limits exposed by a driver."""

    provider: str
    supports_function_calling: bool
    supports_system_instruction: bool
    tool_protocol: ToolProtocol
    max_context: int
    max_tokens: int
    rate_limits: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class PromptPack:
    """Assembled system prompt plus neutral model parameters."""

    system_prompt: str
    model_params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamRequest:
    """Everything a driver needs for one attempt."""

    history: list[Turn]
    tools: list[dict[str, Any]] | None = None
    custom_rules: str = ""
    cancel: CancelToken | None = None
    api_key: str | None = None
    model_params: dict[str, Any] = field(default_factory=dict)
    tool_choice: ToolChoice | None = None
