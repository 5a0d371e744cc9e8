"""Provider-agnostic system prompt assembly with capped context slots.

The prompt is composed of a fixed header, a mode block, a reuse-policy
paragraph, a Context block built from named slots, a Session footer (local
time and timezone) and optional user rules. Slot sizes are capped in
characters (roughly 4 characters per token), and so is the assembled body;
the Session footer and the user rules are never capped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import json
import os
from typing import TYPE_CHECKING, Any, Final, Literal

from castor.types import PromptPack

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

Mode = Literal["code", "plan", "search"]

ELLIPSIS: Final = "..."

HEADER: Final = (
    "You are an AI assistant helping with code development and analysis. "
    "Be precise, concise, and correct. Prefer incremental, testable changes."
)

MODE_BLOCKS: Final[dict[str, str]] = {
    "code": "\n".join(
        [
            "# Mode: CODE",
            "- Focus on code analysis, generation, and debugging.",
            "- Provide working, idiomatic code with brief rationale.",
            "- When modifying files, explain the intent and scope.",
            "- Think step-by-step but keep output compact.",
        ]
    ),
    "plan": "\n".join(
        [
            "# Mode: PLAN",
            "- Break complex goals into actionable steps.",
            "- Identify risks, dependencies, and acceptance criteria.",
            "- Provide a phased plan with measurable milestones.",
        ]
    ),
    "search": "\n".join(
        [
            "# Mode: SEARCH",
            "- Explore the codebase and documentation to answer questions.",
            "- Cite exact files and line numbers where possible.",
            "- Synthesize findings into clear, actionable insights.",
        ]
    ),
}

REUSE_POLICY: Final = "\n".join(
    [
        "# Reuse Policy",
        "- Reuse results already present in this conversation (file contents, "
        "search results, tool outputs) instead of requesting them again.",
        "- Only call a tool again when its earlier result is missing, stale, "
        "or was truncated.",
    ]
)

#: Slot order is the rendering order of the Context block.
SLOT_NAMES: Final[tuple[str, ...]] = (
    "task_summary",
    "plan_outline",
    "plan_outline_hash",
    "current_focus",
    "tools_context",
    "code_context",
    "available_artifacts",
    "execution_guidance",
)

DEFAULT_SLOT_CAPS: Final[dict[str, int]] = {
    "task_summary": 2_000,
    "plan_outline": 4_000,
    "plan_outline_hash": 128,
    "current_focus": 1_000,
    "tools_context": 3_000,
    "code_context": 12_000,
    "available_artifacts": 2_000,
    "execution_guidance": 2_000,
}
DEFAULT_BODY_CAP: Final = 24_000

COMPACT_SLOT_CAPS: Final[dict[str, int]] = {
    name: cap // 2 for name, cap in DEFAULT_SLOT_CAPS.items()
}
COMPACT_BODY_CAP: Final = DEFAULT_BODY_CAP // 2

_MODEL_PARAM_KEYS: Final = frozenset({"temperature", "top_p", "max_tokens"})


@dataclass(frozen=True)
class PromptContext:
    """Optional per-request context for `build_prompt`.

    ``caps`` overrides individual slot caps; the key ``"body"`` overrides the
    body cap. ``compact`` switches to the halved cap table.
    """

    slots: dict[str, Any] = field(default_factory=dict)
    caps: dict[str, int] = field(default_factory=dict)
    compact: bool = False
    model_params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> PromptContext:
        if not data:
            return cls()
        return cls(
            slots=dict(data.get("slots") or {}),
            caps=dict(data.get("caps") or {}),
            compact=bool(data.get("compact", False)),
            model_params=dict(data.get("model_params") or {}),
        )

    def slot_cap(self, name: str) -> int:
        if name in self.caps:
            return self.caps[name]
        table = COMPACT_SLOT_CAPS if self.compact else DEFAULT_SLOT_CAPS
        return table[name]

    @property
    def body_cap(self) -> int:
        if "body" in self.caps:
            return self.caps["body"]
        return COMPACT_BODY_CAP if self.compact else DEFAULT_BODY_CAP


def clip(text: str, cap: int) -> str:
    """Tail-clip *text* to at most *cap* characters, ending with an ellipsis."""
    if cap <= 0:
        return ""
    if len(text) <= cap:
        return text
    if cap <= len(ELLIPSIS):
        return ELLIPSIS[:cap]
    return text[: cap - len(ELLIPSIS)] + ELLIPSIS


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return json.dumps(value, sort_keys=True, default=str)


def format_context(context: PromptContext) -> str:
    """Render non-empty known slots as ``- name: value`` lines, each capped."""
    lines = []
    for name in SLOT_NAMES:
        value = context.slots.get(name)
        if value is None:
            continue
        rendered = _render_value(value)
        if not rendered:
            continue
        lines.append(f"- {name}: {clip(rendered, context.slot_cap(name))}")
    return "\n".join(lines)


def _timezone_name(now: datetime) -> str:
    tz = now.tzinfo
    key = getattr(tz, "key", None)
    if isinstance(key, str) and key:
        return key
    env_tz = os.environ.get("TZ")
    if env_tz:
        return env_tz
    return (tz.tzname(now) if tz is not None else None) or "UTC"


def build_prompt(
    mode: Mode | str = "code",
    custom_rules: str | None = "",
    context: PromptContext | Mapping[str, Any] | None = None,
    *,
    now: Callable[[], datetime] | None = None,
) -> PromptPack:
    """Assemble the unified system prompt.

    Deterministic for fixed inputs when *now* returns a fixed aware datetime.
    Unknown modes fall back to ``"code"``.
    """
    ctx = context if isinstance(context, PromptContext) else PromptContext.from_mapping(
        context
    )
    current = (now or (lambda: datetime.now().astimezone()))()

    sections = [HEADER, MODE_BLOCKS.get(mode, MODE_BLOCKS["code"]), REUSE_POLICY]
    context_block = format_context(ctx)
    if context_block:
        sections.append(f"# Context\n{context_block}")
    body = clip("\n\n".join(sections), ctx.body_cap)

    session = "\n".join(
        [
            "# Session",
            f"- Time: {current.strftime('%Y-%m-%d %H:%M:%S')}",
            f"- Timezone: {_timezone_name(current)}",
        ]
    )
    system_prompt = f"{body}\n\n{session}"

    rules = (custom_rules or "").strip()
    if rules:
        system_prompt += f"\n\n# User-Defined Rules\n{rules}"

    model_params = {
        k: v for k, v in ctx.model_params.items() if k in _MODEL_PARAM_KEYS
    }
    return PromptPack(system_prompt=system_prompt, model_params=model_params)


class PromptBuilder:
    """Callable holder for a clock, so a facade can share one builder."""

    def __init__(self, now: Callable[[], datetime] | None = None) -> None:
        self._now = now

    def build(
        self,
        mode: Mode | str = "code",
        custom_rules: str | None = "",
        context: PromptContext | Mapping[str, Any] | None = None,
    ) -> PromptPack:
        return build_prompt(mode, custom_rules, context, now=self._now)
