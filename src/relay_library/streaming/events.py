# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Normalized stream events.

Every dialect produces the same vocabulary, in render order.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass(frozen=True)
class TextEvent:
    delta: str


@dataclass(frozen=True)
class ThinkingEvent:
    """
    Reasoning content. ``id`` groups one span; an empty ``delta`` closes it.

    ``signature`` carries the provider's opaque thinking signature, when one
    was sent, on the closing event.
    """

    id: str
    delta: str
    signature: Optional[str] = None

    @property
    def is_close(self) -> bool:
        return self.delta == ""


@dataclass(frozen=True)
class ToolCallEvent:
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UsageEvent:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0


StreamEvent = Union[TextEvent, ThinkingEvent, ToolCallEvent, UsageEvent]


@dataclass
class StreamOutcome:
    """Terminal summary returned once a stream has been fully consumed."""

    usage: Optional[UsageEvent] = None
    finish_reason: Optional[str] = None
    text_chars: int = 0
    tool_calls: int = 0
    thinking_spans: int = 0
    cancelled: bool = False
    placeholder_emitted: bool = False
    dropped_fragments: int = 0

    @property
    def has_visible_output(self) -> bool:
        return self.text_chars > 0 or self.tool_calls > 0


def coalesce_events(events: List[StreamEvent]) -> List[StreamEvent]:
    """
    Merges adjacent text deltas and adjacent non-empty thinking deltas of the
    same span.

    Two runs over the same payload can differ in how text was batched; after
    coalescing they compare equal.
    """
    merged: List[StreamEvent] = []
    for event in events:
        previous = merged[-1] if merged else None
        if isinstance(event, TextEvent) and isinstance(previous, TextEvent):
            merged[-1] = TextEvent(previous.delta + event.delta)
            continue
        if (
            isinstance(event, ThinkingEvent)
            and isinstance(previous, ThinkingEvent)
            and event.id == previous.id
            and event.delta
            and previous.delta
        ):
            merged[-1] = ThinkingEvent(previous.id, previous.delta + event.delta)
            continue
        merged.append(event)
    return merged
