"""Driver wire formats: SSE and NDJSON decoding, message translation, Gemini SDK mapping."""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any

import httpx
from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from castor.config import Config
from castor.drivers import Driver, LineAssembler, create_driver
from castor.drivers._errors import extract_retry_after_s, wrap_driver_error
from castor.drivers.gemini import GeminiDriver, build_contents
from castor.drivers.mock import MockDriver
from castor.drivers.ollama import OllamaDriver
from castor.drivers.openai import (
    OpenAIDriver,
    SSEDecoder,
    build_messages,
    enforce_tool_pairing,
)
from castor.errors import (
    APIError,
    AuthenticationError,
    RateLimitError,
    StreamParseError,
)
from castor.types import (
    FunctionCall,
    FunctionCallPart,
    FunctionCallsEvent,
    FunctionResponsePart,
    StreamRequest,
    TextEvent,
    TextPart,
    Turn,
    UsageEvent,
)

pytestmark = pytest.mark.unit

READ_FILE_TOOL = {
    "type": "function",
    "function": {
        "name": "read_file",
        "description": "Read a file",
        "parameters": {"type": "object", "properties": {"path": {"type": "string"}}},
    },
}


def _sse(*payloads: Any) -> bytes:
    lines = []
    for p in payloads:
        data = p if isinstance(p, str) else json.dumps(p)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode()


def _delta(**delta: Any) -> dict[str, Any]:
    return {"choices": [{"delta": delta}]}


def _tool_fragment(index: int = 0, **fields: Any) -> dict[str, Any]:
    fn = {k: fields.pop(k) for k in ("name", "arguments") if k in fields}
    return {"index": index, **fields, "function": fn}


async def _collect(stream: Any) -> list[Any]:
    return [event async for event in stream]


# =============================================================================
# Line assembly
# =============================================================================


def test_line_assembler_keeps_split_multibyte_characters() -> None:
    assembler = LineAssembler()

    assert assembler.feed(b"data: caf\xc3") == []
    assert assembler.feed(b"\xa9\r\nnext") == ["data: café"]
    assert assembler.flush() == ["next"]
    assert assembler.flush() == []


def test_line_assembler_ignores_blank_tail() -> None:
    assembler = LineAssembler()
    assert assembler.feed(b"a\nb\n  ") == ["a", "b"]
    assert assembler.flush() == []


# =============================================================================
# OpenAI outbound messages
# =============================================================================


def test_build_messages_pairs_tool_results_with_calls() -> None:
    history = [
        Turn.text("system", "be terse"),
        Turn.text("user", "read a.py"),
        Turn(
            role="model",
            parts=(
                TextPart("reading"),
                FunctionCallPart(id="c1", name="read_file", args={"path": "a.py"}),
            ),
        ),
        Turn(
            role="user",
            parts=(
                FunctionResponsePart(id="c1", name="read_file", response={"text": "x"}),
                TextPart("now summarize"),
            ),
        ),
    ]

    messages = build_messages(history)

    assert [m["role"] for m in messages] == [
        "system",
        "user",
        "assistant",
        "tool",
        "user",
    ]
    assert messages[0]["content"] == "be terse"
    (call,) = messages[2]["tool_calls"]
    assert call["id"] == "c1"
    assert json.loads(call["function"]["arguments"]) == {"path": "a.py"}
    assert messages[3]["tool_call_id"] == "c1"
    assert json.loads(messages[3]["content"]) == {"text": "x"}


def test_build_messages_uses_custom_rules_without_system_turn() -> None:
    messages = build_messages([Turn.text("user", "hi")], custom_rules="  rules  ")
    assert messages[0] == {"role": "system", "content": "rules"}


def test_unresolved_tool_calls_are_trimmed() -> None:
    history = [
        Turn.text("user", "go"),
        Turn(role="model", parts=(FunctionCallPart(id="c1", name="f", args={}),)),
        Turn.text("user", "never answered"),
    ]

    messages = build_messages(history)

    assert messages == [{"role": "user", "content": "go"}]


def test_orphan_tool_messages_are_dropped() -> None:
    messages = [
        {"role": "user", "content": "hi"},
        {"role": "tool", "tool_call_id": "ghost", "content": "?"},
        {"role": "assistant", "content": "hello"},
    ]

    assert enforce_tool_pairing(messages) == [messages[0], messages[2]]


_IDS = st.sampled_from(["a", "b", "c"])
_messages = st.lists(
    st.one_of(
        st.just({"role": "user", "content": "u"}),
        st.just({"role": "assistant", "content": "t"}),
        st.lists(_IDS, min_size=1, max_size=2).map(
            lambda ids: {
                "role": "assistant",
                "content": None,
                "tool_calls": [{"id": i, "type": "function"} for i in ids],
            }
        ),
        _IDS.map(lambda i: {"role": "tool", "tool_call_id": i, "content": "r"}),
    ),
    max_size=12,
)


@given(messages=_messages)
@settings(max_examples=200, deadline=None, derandomize=True)
def test_enforce_tool_pairing_output_is_always_paired(messages: list[dict]) -> None:
    """Property: every tool_calls block is fully answered before the next message."""
    out = enforce_tool_pairing(messages)

    remaining = iter(messages)
    assert all(any(m is o for m in remaining) for o in out)

    open_ids: set[str] = set()
    for msg in out:
        if msg["role"] == "tool":
            assert msg["tool_call_id"] in open_ids
            open_ids.discard(msg["tool_call_id"])
            continue
        assert not open_ids
        if msg.get("tool_calls"):
            open_ids = {tc["id"] for tc in msg["tool_calls"]}
    assert not open_ids


# =============================================================================
# OpenAI inbound stream
# =============================================================================


def test_tool_call_is_emitted_once_arguments_are_complete() -> None:
    decoder = SSEDecoder()
    frames = [
        _delta(tool_calls=[_tool_fragment(id="call_1", name="read_file", arguments="")]),
        _delta(tool_calls=[_tool_fragment(arguments='{"path":')]),
        _delta(tool_calls=[_tool_fragment(arguments=' "a.py"}')]),
    ]

    emitted = [decoder.feed_line("data: " + json.dumps(f)) for f in frames]

    assert emitted[:2] == [[], []]
    assert emitted[2] == [
        FunctionCallsEvent((FunctionCall("call_1", "read_file", {"path": "a.py"}),))
    ]
    assert decoder.feed_line("data: [DONE]") == []
    assert decoder.done


def test_argument_free_call_completes_on_finish_reason() -> None:
    decoder = SSEDecoder()
    decoder.feed_line(
        "data: " + json.dumps(_delta(tool_calls=[_tool_fragment(id="c9", name="ls")]))
    )

    events = decoder.feed_line(
        "data: " + json.dumps({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]})
    )

    assert events == [FunctionCallsEvent((FunctionCall("c9", "ls", {}),))]


def test_parallel_calls_are_tracked_by_index() -> None:
    decoder = SSEDecoder()
    decoder.feed_line(
        "data: "
        + json.dumps(
            _delta(
                tool_calls=[
                    _tool_fragment(0, id="c1", name="a", arguments='{"x"'),
                    _tool_fragment(1, id="c2", name="b", arguments="{}"),
                ]
            )
        )
    )
    (event,) = decoder.feed_line(
        "data: " + json.dumps(_delta(tool_calls=[_tool_fragment(0, arguments=": 1}")]))
    )

    assert event == FunctionCallsEvent((FunctionCall("c1", "a", {"x": 1}),))


def test_incomplete_calls_are_discarded_at_done() -> None:
    decoder = SSEDecoder()
    decoder.feed_line(
        "data: "
        + json.dumps(_delta(tool_calls=[_tool_fragment(id="c1", arguments='{"x"')]))
    )
    assert decoder.feed_line("data: [DONE]") == []


def test_decoder_skips_noise_and_raises_on_error_payload() -> None:
    decoder = SSEDecoder()

    assert decoder.feed_line(": keep-alive") == []
    assert decoder.feed_line("data: {not json") == []
    assert decoder.feed_line("event: ping") == []
    with pytest.raises(StreamParseError, match="OpenAI stream error: boom"):
        decoder.feed_line('data: {"error": {"message": "boom"}}')


def _openai_driver(handler: Any, **config_kwargs: Any) -> OpenAIDriver:
    config = Config(provider="openai", model="gpt-4o-mini", api_keys=["k"], **config_kwargs)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAIDriver(config, http_client=client)


@pytest.mark.asyncio
async def test_openai_driver_streams_text_and_usage() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = _sse(
            _delta(content="Hel"),
            _delta(content="lo"),
            {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2}},
            "[DONE]",
        )
        return httpx.Response(200, content=body)

    driver = _openai_driver(handler)
    request = StreamRequest(
        history=[Turn.text("user", "hi")],
        tools=[READ_FILE_TOOL],
        api_key="sk-test",
        model_params={"temperature": 0.1},
    )

    events = await _collect(driver.stream(request))

    assert events == [TextEvent("Hel"), TextEvent("lo"), UsageEvent(5, 2)]
    (sent,) = seen
    assert str(sent.url) == "https://api.openai.com/v1/chat/completions"
    assert sent.headers["Authorization"] == "Bearer sk-test"
    payload = json.loads(sent.content)
    assert payload["stream"] is True
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["temperature"] == 0.1
    assert payload["tools"] == [READ_FILE_TOOL]
    assert payload["tool_choice"] == "auto"
    await driver.aclose()


@pytest.mark.asyncio
async def test_openai_driver_maps_http_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429, headers={"Retry-After": "7"}, json={"error": {"message": "slow down"}}
        )

    driver = _openai_driver(handler)

    with pytest.raises(RateLimitError) as exc:
        await _collect(driver.stream(StreamRequest(history=[], api_key="k")))

    assert exc.value.status_code == 429
    assert exc.value.retry_after_s == 7.0
    assert "slow down" in str(exc.value)


@pytest.mark.asyncio
async def test_openai_driver_auth_error_hint() -> None:
    driver = _openai_driver(lambda request: httpx.Response(401, json={"error": "nope"}))

    with pytest.raises(AuthenticationError) as exc:
        await _collect(driver.stream(StreamRequest(history=[], api_key="k")))

    assert exc.value.hint is not None
    assert "OPENAI_API_KEY" in exc.value.hint


@pytest.mark.asyncio
async def test_openai_driver_requires_a_key() -> None:
    driver = _openai_driver(lambda request: httpx.Response(200))

    with pytest.raises(AuthenticationError):
        await _collect(driver.stream(StreamRequest(history=[])))
    assert not driver.is_configured(None)


@pytest.mark.asyncio
async def test_openai_driver_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    driver = _openai_driver(handler)

    with pytest.raises(APIError, match="OpenAI request failed"):
        await _collect(driver.stream(StreamRequest(history=[], api_key="k")))


# =============================================================================
# Ollama
# =============================================================================


@pytest.mark.asyncio
async def test_ollama_driver_reads_ndjson() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        lines = [
            {"message": {"role": "assistant", "content": "Hi"}, "done": False},
            "garbage",
            {"message": {"role": "assistant", "content": " there"}, "done": False},
            {"done": True, "prompt_eval_count": 3, "eval_count": 2},
        ]
        body = "\n".join(x if isinstance(x, str) else json.dumps(x) for x in lines)
        return httpx.Response(200, content=body.encode())

    config = Config(provider="ollama", model="llama3", max_tokens=64)
    driver = OllamaDriver(
        config, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    request = StreamRequest(
        history=[Turn.text("user", "hello")], custom_rules="be nice"
    )

    events = await _collect(driver.stream(request))

    assert events == [TextEvent("Hi"), TextEvent(" there"), UsageEvent(3, 2)]
    payload = json.loads(seen[0].content)
    assert str(seen[0].url) == "http://localhost:11434/api/chat"
    assert payload["messages"] == [
        {"role": "system", "content": "be nice"},
        {"role": "user", "content": "hello"},
    ]
    assert payload["options"]["num_predict"] == 64
    assert not driver.requires_credentials
    assert driver.is_configured(None)


@pytest.mark.asyncio
async def test_ollama_error_line_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b'{"error": "model not found"}\n')

    config = Config(provider="ollama", model="llama3")
    driver = OllamaDriver(
        config, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )

    with pytest.raises(StreamParseError, match="model not found"):
        await _collect(driver.stream(StreamRequest(history=[Turn.text("user", "x")])))


# =============================================================================
# Gemini
# =============================================================================


class FakeModels:
    def __init__(self, chunks: list[Any] | None = None, error: Exception | None = None):
        self.chunks = chunks or []
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def generate_content_stream(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error

        async def gen() -> Any:
            for chunk in self.chunks:
                yield chunk

        return gen()


def _gemini_driver(models: FakeModels, **config_kwargs: Any) -> tuple[GeminiDriver, list[str]]:
    created: list[str] = []

    def factory(api_key: str) -> Any:
        created.append(api_key)
        return SimpleNamespace(aio=SimpleNamespace(models=models))

    config = Config(provider="gemini", model="gemini-2.0-flash", api_keys=["k"], **config_kwargs)
    return GeminiDriver(config, client_factory=factory), created


GEMINI_DECL = {
    "name": "read_file",
    "description": "Read a file",
    "parameters": {"type": "OBJECT", "properties": {"path": {"type": "STRING"}}},
}


@pytest.mark.asyncio
async def test_gemini_driver_maps_chunks_to_events() -> None:
    chunks = [
        SimpleNamespace(text="Hel", function_calls=None, usage_metadata=None),
        SimpleNamespace(
            text=None,
            function_calls=[SimpleNamespace(id="g1", name="read_file", args={"path": "a"})],
            usage_metadata=SimpleNamespace(prompt_token_count=4, candidates_token_count=6),
        ),
    ]
    models = FakeModels(chunks)
    driver, created = _gemini_driver(models)
    request = StreamRequest(
        history=[Turn.text("system", "sys"), Turn.text("user", "hi")],
        tools=[GEMINI_DECL],
        api_key="k1",
        tool_choice="required",
    )

    events = await _collect(driver.stream(request))
    await _collect(driver.stream(request))

    assert events == [
        TextEvent("Hel"),
        FunctionCallsEvent((FunctionCall("g1", "read_file", {"path": "a"}),)),
        UsageEvent(4, 6),
    ]
    assert created == ["k1"]
    config = models.calls[0]["config"]
    assert "sys" in str(config.system_instruction)
    assert len(config.safety_settings) == 4
    assert config.tools[0].function_declarations[0].name == "read_file"
    assert config.tool_config.function_calling_config.mode == "ANY"
    assert models.calls[0]["model"] == "gemini-2.0-flash"


def test_gemini_contents_roles() -> None:
    history = [
        Turn.text("system", "ignored here"),
        Turn.text("user", "go"),
        Turn(
            role="model",
            parts=(TextPart("calling"), FunctionCallPart(id="g1", name="f", args={"a": 1})),
        ),
        Turn(role="user", parts=(FunctionResponsePart(id="g1", name="f", response=42),)),
    ]

    contents = build_contents(history)

    assert [c.role for c in contents] == ["user", "model", "function"]
    assert contents[1].parts[1].function_call.name == "f"
    assert contents[2].parts[0].function_response.response == {"result": 42}


@pytest.mark.asyncio
async def test_gemini_sdk_errors_are_wrapped_with_status() -> None:
    class ClientError(Exception):
        code = 429
        details = {
            "error": {
                "details": [
                    {"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "8s"}
                ]
            }
        }

    driver, _ = _gemini_driver(FakeModels(error=ClientError("quota")))

    with pytest.raises(RateLimitError) as exc:
        await _collect(
            driver.stream(StreamRequest(history=[Turn.text("user", "x")], api_key="k"))
        )

    assert exc.value.status_code == 429
    assert exc.value.retry_after_s == 8.0
    assert exc.value.provider == "gemini"


def test_wrap_driver_error_fills_provider_on_api_errors() -> None:
    err = APIError("x", status_code=500)
    assert wrap_driver_error(err, provider="openai", message="m") is err
    assert err.provider == "openai"


def test_retry_after_from_response_headers() -> None:
    exc = RuntimeError("boom")
    exc.response = SimpleNamespace(headers={"Retry-After": "3"})  # type: ignore[attr-defined]
    assert extract_retry_after_s(exc) == 3.0


# =============================================================================
# Factory and mock
# =============================================================================


@pytest.mark.parametrize(
    ("kwargs", "expected"),
    [
        ({"provider": "openai", "api_keys": ["k"]}, OpenAIDriver),
        ({"provider": "gemini", "api_keys": ["k"]}, GeminiDriver),
        ({"provider": "ollama"}, OllamaDriver),
        ({"provider": "openai", "use_mock": True}, MockDriver),
    ],
)
def test_create_driver(kwargs: dict[str, Any], expected: type) -> None:
    driver = create_driver(Config(model="m", **kwargs))

    assert isinstance(driver, expected)
    assert isinstance(driver, Driver)


@pytest.mark.asyncio
async def test_mock_driver_echoes_last_user_turn() -> None:
    driver = MockDriver()
    request = StreamRequest(
        history=[Turn.text("user", "first"), Turn.text("user", "hello world")]
    )

    events = await _collect(driver.stream(request))

    assert events == [
        TextEvent("echo:"),
        TextEvent(" hello"),
        TextEvent(" world"),
        UsageEvent(10, 3),
    ]
