import json

import pytest

from conftest import chunks, collect
from relay_library.error_handler import StreamedAPIError
from relay_library.streaming.events import TextEvent, ThinkingEvent, ToolCallEvent, UsageEvent
from relay_library.streaming.normalizer import StreamNormalizer
from relay_library.streaming.signatures import ThoughtSignatureCache


def event_stream(*payloads: dict) -> str:
    return "".join(
        f"event: {p['type']}\ndata: {json.dumps(p)}\n\n" for p in payloads
    )


def block_start(index: int, block: dict) -> dict:
    return {"type": "content_block_start", "index": index, "content_block": block}


def block_delta(index: int, delta: dict) -> dict:
    return {"type": "content_block_delta", "index": index, "delta": delta}


def block_stop(index: int) -> dict:
    return {"type": "content_block_stop", "index": index}


THINK_TEXT_TOOL = event_stream(
    {
        "type": "message_start",
        "message": {
            "id": "msg_1",
            "usage": {
                "input_tokens": 10,
                "cache_creation_input_tokens": 2,
                "cache_read_input_tokens": 3,
                "output_tokens": 1,
            },
        },
    },
    block_start(0, {"type": "thinking", "thinking": ""}),
    block_delta(0, {"type": "thinking_delta", "thinking": "Considering"}),
    block_delta(0, {"type": "thinking_delta", "thinking": " the weather."}),
    block_delta(0, {"type": "signature_delta", "signature": "sig-123"}),
    block_stop(0),
    {"type": "ping"},
    block_start(1, {"type": "text", "text": ""}),
    block_delta(1, {"type": "text_delta", "text": "Sure, "}),
    block_delta(1, {"type": "text_delta", "text": "calling a tool."}),
    block_stop(1),
    block_start(2, {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {}}),
    block_delta(2, {"type": "input_json_delta", "partial_json": '{"city": '}),
    block_delta(2, {"type": "input_json_delta", "partial_json": '"Paris"}'}),
    block_stop(2),
    {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 25}},
    {"type": "message_stop"},
)

EXPECTED = [
    ThinkingEvent("span_0", "Considering the weather."),
    ThinkingEvent("span_0", "", "sig-123"),
    TextEvent("Sure, calling a tool."),
    ToolCallEvent("toolu_1", "get_weather", {"city": "Paris"}),
    UsageEvent(prompt_tokens=15, completion_tokens=25, total_tokens=40, cached_tokens=3),
]


@pytest.mark.asyncio
async def test_thinking_text_and_tool_use() -> None:
    assert await collect("anthropic", THINK_TEXT_TOOL) == EXPECTED


@pytest.mark.asyncio
@pytest.mark.parametrize("size", [1, 5, 33])
async def test_output_does_not_depend_on_chunking(size: int) -> None:
    assert await collect("anthropic", THINK_TEXT_TOOL, size=size) == EXPECTED


@pytest.mark.asyncio
async def test_signature_is_remembered_for_the_tool_call() -> None:
    cache = ThoughtSignatureCache()
    await collect("anthropic", THINK_TEXT_TOOL, signature_cache=cache)
    assert cache.get("toolu_1") == "sig-123"


@pytest.mark.asyncio
async def test_event_type_from_sse_header_when_payload_has_none() -> None:
    body = (
        "event: content_block_start\n"
        'data: {"index": 0, "content_block": {"type": "text", "text": "Hello"}}\n\n'
        "event: message_stop\n"
        "data: {}\n\n"
    )
    assert await collect("anthropic", body) == [TextEvent("Hello")]


@pytest.mark.asyncio
async def test_thinking_only_turn_gets_placeholder() -> None:
    body = event_stream(
        block_start(0, {"type": "thinking", "thinking": "Hmm"}),
        block_stop(0),
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 4}},
        {"type": "message_stop"},
    )
    assert await collect("anthropic", body) == [
        ThinkingEvent("span_0", "Hmm"),
        ThinkingEvent("span_0", ""),
        TextEvent("<think/>"),
        UsageEvent(completion_tokens=4, total_tokens=4),
    ]


@pytest.mark.asyncio
async def test_redacted_thinking_and_unknown_events_are_ignored() -> None:
    body = event_stream(
        block_start(0, {"type": "redacted_thinking", "data": "opaque"}),
        block_stop(0),
        {"type": "some_future_event", "value": 1},
        block_start(1, {"type": "text", "text": "ok"}),
        block_stop(1),
        {"type": "message_stop"},
    )
    assert await collect("anthropic", body) == [TextEvent("ok")]


@pytest.mark.asyncio
async def test_non_streaming_message_document() -> None:
    document = {
        "type": "message",
        "role": "assistant",
        "content": [
            {"type": "thinking", "thinking": "Plan", "signature": "sig-9"},
            {"type": "text", "text": "Result"},
            {"type": "tool_use", "id": "toolu_2", "name": "save", "input": {"ok": True}},
        ],
        "stop_reason": "tool_use",
        "usage": {"input_tokens": 7, "output_tokens": 9},
    }
    normalizer = StreamNormalizer("anthropic")
    events = [event async for event in normalizer.events(chunks(json.dumps(document)))]

    assert [type(e) for e in events] == [
        ThinkingEvent,
        ThinkingEvent,
        TextEvent,
        ToolCallEvent,
        UsageEvent,
    ]
    assert events[1].signature == "sig-9"
    assert events[3] == ToolCallEvent("toolu_2", "save", {"ok": True})
    assert normalizer.outcome.finish_reason == "tool_use"
    assert normalizer.outcome.usage == UsageEvent(prompt_tokens=7, completion_tokens=9, total_tokens=16)


@pytest.mark.asyncio
async def test_error_event_raises_with_status() -> None:
    body = event_stream(
        block_start(0, {"type": "text", "text": ""}),
        {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
    )
    with pytest.raises(StreamedAPIError) as excinfo:
        await collect("anthropic", body)
    assert excinfo.value.status_code == 529
    assert str(excinfo.value) == "Overloaded"


@pytest.mark.asyncio
async def test_unterminated_tool_use_is_flushed_at_end_of_stream() -> None:
    body = event_stream(
        block_start(0, {"type": "tool_use", "id": "toolu_3", "name": "run", "input": {}}),
        block_delta(0, {"type": "input_json_delta", "partial_json": '{"cmd": "ls"'}),
    )
    events = await collect("anthropic", body)
    assert events == [ToolCallEvent("toolu_3", "run", {"value": '{"cmd": "ls"'})]
