# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Optional, Tuple

from ..buffers import DEFAULT_PROFILE, BufferProfile

if TYPE_CHECKING:
    from ..normalizer import StreamEmitter


class DialectHandler:
    """
    Interprets the decoded JSON payloads of one wire dialect.

    Handlers never produce events themselves; they call the emitter, which
    owns ordering, buffering and span bookkeeping.
    """

    def __init__(self, emitter: "StreamEmitter"):
        self.emitter = emitter

    def handle(self, payload: Dict[str, Any], event_type: Optional[str] = None) -> None:
        raise NotImplementedError

    def finish(self) -> None:
        """Called once after the last payload of a completed stream."""

    def emit_tool_calls(self, calls: Iterable[Tuple[str, str, Dict[str, Any]]]) -> None:
        for call_id, name, args in calls:
            self.emitter.tool_call(call_id, name, args)


@dataclass(frozen=True)
class Dialect:
    """A wire dialect plugged into the shared normalizer."""

    name: str
    handler_factory: Callable[["StreamEmitter"], DialectHandler]
    buffer_profile: BufferProfile = DEFAULT_PROFILE
    split_thinking_tags: bool = True
    extract_function_calls: bool = False


def as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def as_argument_text(value: Any) -> Optional[str]:
    """Tool arguments arrive as a JSON string, or already decoded."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value)
