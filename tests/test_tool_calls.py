from relay_library.streaming.tool_calls import (
    ToolCallAccumulator,
    ToolCallDeduplicator,
    is_synthetic_tool_call_id,
    parse_arguments,
    repair_arguments,
    strip_duplicated_prefix,
    tool_call_dedup_key,
    truncate_doubled_object,
)


def test_duplicated_head_is_stripped() -> None:
    assert strip_duplicated_prefix('{"loc{"location": "Paris"}') == '{"location": "Paris"}'
    assert strip_duplicated_prefix('{"a": 1}{"a": 1}') == '{"a": 1}'
    # Too short to judge
    assert strip_duplicated_prefix('{"a"}') == '{"a"}'


def test_doubled_object_is_truncated() -> None:
    assert truncate_doubled_object('{"a": 1}{"b": 2}') == '{"a": 1}'
    assert truncate_doubled_object('{"a": "}{"}') == '{"a": "}{"}'
    assert repair_arguments('{"x": [1]}{"y": 2}') == '{"x": [1]}'


def test_parse_arguments() -> None:
    assert parse_arguments("") == ({}, True)
    assert parse_arguments('{"a": 1}') == ({"a": 1}, True)
    assert parse_arguments("[1, 2]") == ({"value": [1, 2]}, True)
    assert parse_arguments('{"a": 1}{"b": 2}') == ({"a": 1}, True)
    assert parse_arguments("{broken") == ({"value": "{broken"}, False)


def test_accumulator_emits_calls_once_their_arguments_parse() -> None:
    acc = ToolCallAccumulator()
    acc.add_fragment(0, call_id="call_1", name="f", arguments='{"a": ')
    assert acc.ready() == []
    acc.add_fragment(0, arguments="1}")
    assert acc.ready() == [("call_1", "f", {"a": 1})]
    assert acc.ready() == []
    assert acc.flush() == []


def test_accumulator_flush_repairs_and_generates_ids() -> None:
    acc = ToolCallAccumulator()
    acc.add_fragment("k", name="g", arguments='{"x": 1')
    acc.add_fragment("nameless", arguments="{}")
    flushed = acc.flush()
    assert len(flushed) == 1
    call_id, name, args = flushed[0]
    assert is_synthetic_tool_call_id(call_id)
    assert (name, args) == ("g", {"value": '{"x": 1'})


def test_accumulator_index_reused_by_a_new_call() -> None:
    acc = ToolCallAccumulator()
    acc.add_fragment(0, call_id="call_1", name="f", arguments="{}")
    assert acc.ready() == [("call_1", "f", {})]
    acc.add_fragment(0, call_id="call_2", name="g", arguments='{"b": 2}')
    assert acc.ready() == [("call_2", "g", {"b": 2})]


def test_dedup_uses_id_or_argument_digest() -> None:
    assert tool_call_dedup_key("call_1", "f", {"a": 1}) == "call_1:f"
    synthetic = tool_call_dedup_key("tool_call_0_1700000000000", "f", {"a": 1})
    assert synthetic.startswith("synthetic:f:")
    assert synthetic == tool_call_dedup_key("tool_call_3_1700000000999", "f", {"a": 1})

    dedup = ToolCallDeduplicator()
    assert dedup.check_and_add("call_1", "f", {})
    assert not dedup.check_and_add("call_1", "f", {"changed": True})
    assert dedup.check_and_add("call_1", "g", {})
    assert dedup.check_and_add("tool_call_0_1", "f", {"a": 1})
    assert not dedup.check_and_add("tool_call_1_2", "f", {"a": 1})
    assert dedup.check_and_add("tool_call_2_3", "f", {"a": 2})
