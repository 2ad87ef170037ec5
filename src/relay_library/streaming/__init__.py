# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .dialects import Dialect, DialectHandler, get_dialect
from .events import (
    StreamEvent,
    StreamOutcome,
    TextEvent,
    ThinkingEvent,
    ToolCallEvent,
    UsageEvent,
    coalesce_events,
)
from .normalizer import StreamEmitter, StreamNormalizer, dump_event, normalize_stream
from .signatures import ThoughtSignatureCache

__all__ = [
    "Dialect",
    "DialectHandler",
    "get_dialect",
    "StreamEvent",
    "StreamOutcome",
    "TextEvent",
    "ThinkingEvent",
    "ToolCallEvent",
    "UsageEvent",
    "coalesce_events",
    "StreamEmitter",
    "StreamNormalizer",
    "normalize_stream",
    "dump_event",
    "ThoughtSignatureCache",
]
