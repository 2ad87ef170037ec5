import asyncio
import json

import pytest

from conftest import chunks, collect, sse_body
from relay_library.error_handler import StreamedAPIError
from relay_library.streaming.events import TextEvent, ThinkingEvent, ToolCallEvent, UsageEvent
from relay_library.streaming.normalizer import StreamNormalizer
from relay_library.streaming.signatures import ThoughtSignatureCache
from relay_library.utils.cancellation import CancellationToken


def delta(**fields) -> dict:
    return {"choices": [{"index": 0, "delta": fields, "finish_reason": None}]}


def finish(reason: str) -> dict:
    return {"choices": [{"index": 0, "delta": {}, "finish_reason": reason}]}


REASONING_AND_TOOL = sse_body(
    delta(role="assistant", reasoning_content="Let me think"),
    delta(reasoning_content=" about it."),
    delta(content="The answer is 42."),
    delta(
        tool_calls=[
            {"index": 0, "id": "call_1", "type": "function", "function": {"name": "lookup", "arguments": ""}}
        ]
    ),
    delta(tool_calls=[{"index": 0, "function": {"arguments": '{"q": "4'}}]),
    delta(tool_calls=[{"index": 0, "function": {"arguments": '2"}'}}]),
    finish("tool_calls"),
    {
        "choices": [],
        "usage": {
            "prompt_tokens": 10,
            "completion_tokens": 20,
            "total_tokens": 30,
            "prompt_tokens_details": {"cached_tokens": 4},
            "completion_tokens_details": {"reasoning_tokens": 8},
        },
    },
)

EXPECTED = [
    ThinkingEvent("span_0", "Let me think about it."),
    ThinkingEvent("span_0", ""),
    TextEvent("The answer is 42."),
    ToolCallEvent("call_1", "lookup", {"q": "42"}),
    UsageEvent(prompt_tokens=10, completion_tokens=20, total_tokens=30, cached_tokens=4, reasoning_tokens=8),
]


@pytest.mark.asyncio
async def test_reasoning_text_and_tool_call_in_order() -> None:
    assert await collect("openai", REASONING_AND_TOOL) == EXPECTED


@pytest.mark.asyncio
@pytest.mark.parametrize("size", [1, 3, 17, 64])
async def test_output_does_not_depend_on_chunking(size: int) -> None:
    assert await collect("openai", REASONING_AND_TOOL, size=size) == EXPECTED


@pytest.mark.asyncio
async def test_multibyte_text_split_inside_characters() -> None:
    body = sse_body(delta(content="Grüße, 世界!"), finish("stop")).encode("utf-8")
    assert await collect("openai", body, size=1) == [TextEvent("Grüße, 世界!")]


@pytest.mark.asyncio
async def test_whitespace_between_reasoning_keeps_the_span_open() -> None:
    body = sse_body(
        delta(reasoning_content="a"),
        delta(content="\n\n"),
        delta(reasoning_content="b"),
        delta(content="Done"),
        finish("stop"),
    )
    assert await collect("openai", body) == [
        ThinkingEvent("span_0", "ab"),
        ThinkingEvent("span_0", ""),
        TextEvent("\n\nDone"),
    ]


@pytest.mark.asyncio
async def test_reasoning_only_turn_gets_placeholder() -> None:
    body = sse_body(delta(reasoning="Just thinking"), finish("stop"))
    normalizer = StreamNormalizer("openai")
    events = [event async for event in normalizer.events(chunks(body))]

    assert isinstance(events[-1], TextEvent) and events[-1].delta == "<think/>"
    assert events[-2].delta == ""
    assert normalizer.outcome.placeholder_emitted is True
    assert normalizer.outcome.thinking_spans == 1


@pytest.mark.asyncio
async def test_thinking_can_be_suppressed() -> None:
    body = sse_body(delta(reasoning_content="hidden"), delta(content="Visible"), finish("stop"))
    assert await collect("openai", body, output_thinking=False) == [TextEvent("Visible")]


@pytest.mark.asyncio
async def test_inline_thinking_tags_split_across_chunks() -> None:
    body = sse_body(
        delta(content="<thin"),
        delta(content="king>plan</thi"),
        delta(content="nking>Result"),
        finish("stop"),
    )
    assert await collect("openai", body) == [
        ThinkingEvent("span_0", "plan"),
        ThinkingEvent("span_0", ""),
        TextEvent("Result"),
    ]


@pytest.mark.asyncio
async def test_non_streaming_document_is_framed_as_json() -> None:
    document = {
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": "Hi there",
                    "tool_calls": [
                        {"id": "call_9", "type": "function", "function": {"name": "f", "arguments": '{"x": 1}'}}
                    ],
                },
                "finish_reason": "tool_calls",
            }
        ],
        "usage": {"prompt_tokens": 3, "completion_tokens": 4},
    }
    assert await collect("openai", "\n  " + json.dumps(document), size=5) == [
        TextEvent("Hi there"),
        ToolCallEvent("call_9", "f", {"x": 1}),
        UsageEvent(prompt_tokens=3, completion_tokens=4, total_tokens=7),
    ]


@pytest.mark.asyncio
async def test_parallel_tool_calls_by_index_with_repair() -> None:
    body = sse_body(
        delta(
            tool_calls=[
                {"index": 0, "id": "call_a", "function": {"name": "first", "arguments": '{"loc'}},
                {"index": 1, "id": "call_b", "function": {"name": "second", "arguments": "{}"}},
            ]
        ),
        delta(tool_calls=[{"index": 0, "function": {"arguments": '{"location": "Paris"}'}}]),
        finish("tool_calls"),
    )
    events = await collect("openai", body)
    assert events == [
        ToolCallEvent("call_b", "second", {}),
        ToolCallEvent("call_a", "first", {"location": "Paris"}),
    ]


@pytest.mark.asyncio
async def test_repeated_tool_call_is_emitted_once() -> None:
    call = {"index": 0, "id": "call_1", "function": {"name": "f", "arguments": "{}"}}
    body = sse_body(delta(tool_calls=[call]), finish("tool_calls"))
    replay = sse_body(delta(tool_calls=[call]), finish("tool_calls"), done=False)
    events = await collect("openai", replay + body)
    assert events == [ToolCallEvent("call_1", "f", {})]


@pytest.mark.asyncio
async def test_tool_fragment_without_name_is_dropped() -> None:
    body = sse_body(
        delta(tool_calls=[{"index": 0, "function": {"arguments": '{"a": 1}'}}]),
        finish("tool_calls"),
    )
    normalizer = StreamNormalizer("openai")
    events = [event async for event in normalizer.events(chunks(body))]
    assert events == []


@pytest.mark.asyncio
async def test_tool_calls_remember_reasoning_signature() -> None:
    cache = ThoughtSignatureCache()
    body = sse_body(
        delta(tool_calls=[{"index": 0, "id": "call_1", "function": {"name": "f", "arguments": "{}"}}]),
        finish("tool_calls"),
    )
    await collect("openai", body, signature_cache=cache)
    # No reasoning signature in this dialect, nothing to remember
    assert cache.get("call_1") is None


@pytest.mark.asyncio
async def test_error_payload_flushes_then_raises() -> None:
    body = sse_body(
        delta(content="Partial"),
        {"error": {"message": "Rate limited", "type": "rate_limit_error", "code": 429}},
    )
    normalizer = StreamNormalizer("openai")
    received = []
    with pytest.raises(StreamedAPIError) as excinfo:
        async for event in normalizer.events(chunks(body)):
            received.append(event)

    assert excinfo.value.status_code == 429
    assert "".join(e.delta for e in received) == "Partial"
    assert normalizer.events_emitted == len(received)


@pytest.mark.asyncio
async def test_cancellation_flushes_and_skips_the_rest() -> None:
    cancel = CancellationToken()
    closed = []

    async def source():
        try:
            yield sse_body(
                delta(reasoning_content="thinking"),
                delta(content="Hello"),
                delta(tool_calls=[{"index": 0, "id": "call_1", "function": {"name": "f", "arguments": '{"a"'}}]),
                done=False,
            )
            cancel.cancel()
            yield sse_body(delta(content=" world"), finish("stop"))
        finally:
            closed.append(True)

    normalizer = StreamNormalizer("openai")
    events = [event async for event in normalizer.events(source(), cancel)]

    assert [type(e) for e in events] == [ThinkingEvent, ThinkingEvent, TextEvent]
    assert events[-1].delta == "Hello"
    assert normalizer.outcome.cancelled is True
    assert normalizer.outcome.usage is None
    assert closed == [True]


@pytest.mark.asyncio
async def test_run_feeds_sink_and_returns_outcome() -> None:
    seen = []
    normalizer = StreamNormalizer("openai", sink=seen.append)
    outcome = await normalizer.run(chunks(REASONING_AND_TOOL))

    assert outcome.finish_reason == "tool_calls"
    assert outcome.tool_calls == 1
    assert outcome.text_chars == len("The answer is 42.")
    assert outcome.has_visible_output
    assert len(seen) == normalizer.events_emitted


@pytest.mark.asyncio
async def test_cancel_wakes_a_stalled_read() -> None:
    cancel = CancellationToken()
    closed = []

    async def source():
        try:
            yield sse_body(delta(content="partial answer"), done=False)
            asyncio.get_running_loop().call_later(0.05, cancel.cancel)
            await asyncio.sleep(5)
            yield sse_body(delta(content=" late"))
        finally:
            closed.append(True)

    normalizer = StreamNormalizer("openai")
    loop = asyncio.get_running_loop()
    started = loop.time()
    events = [event async for event in normalizer.events(source(), cancel)]

    assert loop.time() - started < 2.0
    assert events == [TextEvent("partial answer")]
    assert normalizer.outcome.cancelled is True
    assert closed == [True]
