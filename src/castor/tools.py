"""Tool declaration and tool-call translation between the neutral and provider shapes.

Neutral declarations are Gemini-style mappings ``{name, description,
parameters}``. Normalized calls are `FunctionCall` values whose ``args`` is
always a mapping.
"""

from __future__ import annotations

import json
import logging
import random
import string
import time
from typing import TYPE_CHECKING, Any

from castor.types import FunctionCall, ToolProtocol

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

logger = logging.getLogger(__name__)

_ID_PREFIXES: dict[ToolProtocol, str] = {
    ToolProtocol.GEMINI: "gm",
    ToolProtocol.OPENAI: "oa",
}
_ALPHABET = string.digits + string.ascii_lowercase


def _base36(n: int) -> str:
    if n <= 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_call_id(prefix: str, index: int, *, now_ms: int | None = None) -> str:
    """Return ``<prefix>_<index>_<timestampBase36>_<random8>``."""
    ts = int(time.time() * 1000) if now_ms is None else now_ms
    rnd = "".join(random.choices(_ALPHABET, k=8))  # noqa: S311
    return f"{prefix}_{index}_{_base36(ts)}_{rnd}"


def convert_schema(node: Any) -> Any:
    """Fold over a JSON-Schema-like tree, lowercasing every ``type`` tag.

    Descends into ``properties`` of objects and ``items`` of arrays; nodes
    without a ``type`` are returned unchanged.
    """
    if not isinstance(node, dict) or not node.get("type"):
        return node

    updated = dict(node)
    updated["type"] = str(node["type"]).lower()

    properties = updated.get("properties")
    if updated["type"] == "object" and isinstance(properties, dict):
        updated["properties"] = {k: convert_schema(v) for k, v in properties.items()}

    items = updated.get("items")
    if updated["type"] == "array" and items is not None:
        updated["items"] = convert_schema(items)

    return updated


def normalize_declarations(tools: Any) -> list[dict[str, Any]]:
    """Accept a list, ``{"declarations": [...]}`` or ``{"function_declarations": [...]}``."""
    if not tools:
        return []
    if isinstance(tools, dict):
        for key in ("declarations", "function_declarations", "functionDeclarations"):
            if key in tools:
                return [dict(d) for d in tools[key] or ()]
        if "name" in tools:
            return [dict(tools)]
        return []
    return [dict(d) for d in tools]


def to_provider_declarations(
    protocol: ToolProtocol | str, tools: Any
) -> list[dict[str, Any]]:
    """Translate neutral tool declarations into the provider's declaration shape."""
    protocol = ToolProtocol(protocol)
    declarations = normalize_declarations(tools)

    if protocol is ToolProtocol.GEMINI:
        return declarations
    if protocol is ToolProtocol.OPENAI:
        converted = []
        for decl in declarations:
            fn: dict[str, Any] = {"name": decl["name"]}
            if decl.get("description") is not None:
                fn["description"] = decl["description"]
            if decl.get("parameters") is not None:
                fn["parameters"] = convert_schema(decl["parameters"])
            converted.append({"type": "function", "function": fn})
        return converted
    return []


def _parse_args(raw: Any, *, call_name: str) -> dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("Tool call %r carried unparsable arguments", call_name)
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _field(call: Any, name: str) -> Any:
    if isinstance(call, dict):
        return call.get(name)
    return getattr(call, name, None)


def from_provider_calls(
    protocol: ToolProtocol | str, raw_calls: Iterable[Any] | None
) -> list[FunctionCall]:
    """Normalize provider-emitted tool calls into `FunctionCall` values.

    OpenAI-style calls may carry ``arguments`` (or ``args``) as JSON text, which
    is parsed here; invalid JSON becomes ``{}``. Gemini-style calls carry
    ``args`` as a mapping. Missing ids are synthesized.
    """
    protocol = ToolProtocol(protocol)
    if not raw_calls or protocol is ToolProtocol.NONE:
        return []

    prefix = _ID_PREFIXES[protocol]
    calls: list[FunctionCall] = []
    for idx, raw in enumerate(raw_calls):
        fn = _field(raw, "function")
        name = _field(raw, "name") or (_field(fn, "name") if fn is not None else None)
        name = str(name or "")
        if protocol is ToolProtocol.OPENAI:
            args_raw = _field(raw, "args")
            if args_raw is None:
                args_raw = _field(raw, "arguments")
            if args_raw is None and fn is not None:
                args_raw = _field(fn, "arguments")
            args = _parse_args(args_raw, call_name=name)
        else:
            args_raw = _field(raw, "args")
            args = dict(args_raw) if isinstance(args_raw, dict) else {}
        call_id = _field(raw, "id") or generate_call_id(prefix, idx)
        calls.append(FunctionCall(id=str(call_id), name=name, args=args))
    return calls


def to_provider_calls(
    protocol: ToolProtocol | str, calls: Iterable[FunctionCall]
) -> list[dict[str, Any]]:
    """Inverse of `from_provider_calls`: render calls in the provider's shape."""
    protocol = ToolProtocol(protocol)
    if protocol is ToolProtocol.OPENAI:
        return [
            {
                "id": c.id,
                "type": "function",
                "function": {"name": c.name, "arguments": json.dumps(c.args)},
            }
            for c in calls
        ]
    if protocol is ToolProtocol.GEMINI:
        return [{"id": c.id, "name": c.name, "args": dict(c.args)} for c in calls]
    return []


def declaration_names(tools: Mapping[str, Any] | list[Any] | None) -> list[str]:
    """Return the tool names of a neutral declaration set."""
    return [str(d.get("name", "")) for d in normalize_declarations(tools)]
