import json

import pytest

from conftest import collect, sse_body
from relay_library.error_handler import StreamedAPIError
from relay_library.streaming.dialects.gemini import is_thinking_part
from relay_library.streaming.events import TextEvent, ThinkingEvent, ToolCallEvent, UsageEvent
from relay_library.streaming.signatures import ThoughtSignatureCache
from relay_library.streaming.tool_calls import is_synthetic_tool_call_id


def parts(*items: dict, finish: str = None, usage: dict = None, wrap: bool = False) -> dict:
    candidate = {"content": {"role": "model", "parts": list(items)}}
    if finish:
        candidate["finishReason"] = finish
    body = {"candidates": [candidate]}
    if usage:
        body["usageMetadata"] = usage
    return {"response": body} if wrap else body


USAGE = {
    "promptTokenCount": 7,
    "candidatesTokenCount": 5,
    "thoughtsTokenCount": 3,
    "totalTokenCount": 15,
    "cachedContentTokenCount": 2,
}

THOUGHT_TEXT_CALL = sse_body(
    parts({"text": "Planning", "thought": True}, wrap=True),
    parts({"text": "", "thought": True, "thoughtSignature": "gsig"}, wrap=True),
    parts({"text": "Here you go."}, wrap=True),
    parts(
        {"functionCall": {"id": "fc_1", "name": "search", "args": {"q": "x"}}, "thoughtSignature": "fsig"},
        finish="STOP",
        usage=USAGE,
        wrap=True,
    ),
    done=False,
)

EXPECTED = [
    ThinkingEvent("span_0", "Planning"),
    ThinkingEvent("span_0", "", "gsig"),
    TextEvent("Here you go."),
    ToolCallEvent("fc_1", "search", {"q": "x"}),
    UsageEvent(prompt_tokens=7, completion_tokens=8, total_tokens=15, cached_tokens=2, reasoning_tokens=3),
]


def test_thinking_part_detection() -> None:
    assert is_thinking_part({"text": "a", "thought": True})
    assert is_thinking_part({"text": "a", "thoughtSignature": "s"})
    assert not is_thinking_part({"text": "a"})
    assert not is_thinking_part({"functionCall": {"name": "f"}, "thoughtSignature": "s", "text": ""})
    assert not is_thinking_part({"text": "a", "thought": "yes"})


@pytest.mark.asyncio
async def test_thoughts_text_and_function_call() -> None:
    assert await collect("gemini", THOUGHT_TEXT_CALL) == EXPECTED


@pytest.mark.asyncio
@pytest.mark.parametrize("size", [1, 4, 50])
async def test_output_does_not_depend_on_chunking(size: int) -> None:
    assert await collect("gemini", THOUGHT_TEXT_CALL, size=size) == EXPECTED


@pytest.mark.asyncio
async def test_json_array_stream_without_sse() -> None:
    body = "[" + ",\n".join(
        json.dumps(p)
        for p in (
            parts({"text": "Hello "}),
            parts({"text": "there"}, finish="STOP", usage={"promptTokenCount": 1, "candidatesTokenCount": 2}),
        )
    ) + "]"
    assert await collect("gemini", body, size=7) == [
        TextEvent("Hello there"),
        UsageEvent(prompt_tokens=1, completion_tokens=2, total_tokens=3),
    ]


@pytest.mark.asyncio
async def test_function_call_signature_is_cached() -> None:
    cache = ThoughtSignatureCache()
    await collect("gemini", THOUGHT_TEXT_CALL, signature_cache=cache)
    assert cache.get("fc_1") == "fsig"


@pytest.mark.asyncio
async def test_function_call_without_id_gets_synthetic_id() -> None:
    body = sse_body(
        parts({"functionCall": {"name": "ls", "args": '{"path": "."}'}}, finish="STOP"),
    )
    events = await collect("gemini", body)
    assert len(events) == 1
    call = events[0]
    assert isinstance(call, ToolCallEvent)
    assert is_synthetic_tool_call_id(call.id)
    assert (call.name, call.args) == ("ls", {"path": "."})


@pytest.mark.asyncio
async def test_xml_function_calls_in_text_become_tool_calls() -> None:
    body = sse_body(
        parts({"text": "Reading now. <function_"}),
        parts(
            {
                "text": "calls><tool_call name=\"read_file\" arguments='{\"path\": \"a.txt\"}'/>"
                "</function_calls> Done."
            },
            finish="STOP",
        ),
    )
    events = await collect("gemini", body)
    assert events[0] == TextEvent("Reading now. ")
    assert isinstance(events[1], ToolCallEvent)
    assert (events[1].name, events[1].args) == ("read_file", {"path": "a.txt"})
    assert events[2] == TextEvent(" Done.")
    assert len(events) == 3


@pytest.mark.asyncio
async def test_unterminated_function_calls_block_is_plain_text() -> None:
    body = sse_body(parts({"text": "x <function_calls><tool_call"}, finish="STOP"))
    assert await collect("gemini", body) == [TextEvent("x <function_calls><tool_call")]


@pytest.mark.asyncio
async def test_thought_only_turn_gets_placeholder() -> None:
    body = sse_body(parts({"text": "Only thinking", "thought": True}, finish="STOP"))
    assert await collect("gemini", body) == [
        ThinkingEvent("span_0", "Only thinking"),
        ThinkingEvent("span_0", ""),
        TextEvent("<think/>"),
    ]


@pytest.mark.asyncio
async def test_error_object_raises() -> None:
    body = sse_body(
        {"error": {"code": 429, "message": "Resource has been exhausted", "status": "RESOURCE_EXHAUSTED"}}
    )
    with pytest.raises(StreamedAPIError) as excinfo:
        await collect("gemini", body)
    assert excinfo.value.status_code == 429
