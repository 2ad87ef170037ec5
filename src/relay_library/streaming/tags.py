# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import json
import logging
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional

from ..constants import (
    FUNCTION_CALLS_CLOSE_TAG,
    FUNCTION_CALLS_OPEN_TAG,
    THINKING_CLOSE_HOLDBACK,
    THINKING_CLOSE_TAG,
    THINKING_OPEN_HOLDBACK,
    THINKING_OPEN_TAG,
)

lib_logger = logging.getLogger("relay_library")


class SegmentKind(IntEnum):
    TEXT = 0
    THINKING = 1
    TOOL_CALL = 2


@dataclass
class TagSegment:
    kind: SegmentKind
    text: str = ""
    name: Optional[str] = None
    args: Dict[str, Any] = field(default_factory=dict)


def _append(segments: List[TagSegment], kind: SegmentKind, text: str) -> None:
    if not text:
        return
    if segments and segments[-1].kind == kind and kind != SegmentKind.TOOL_CALL:
        segments[-1].text += text
    else:
        segments.append(TagSegment(kind, text))


class ThinkingTagSplitter:
    """
    Splits plain text containing <thinking>...</thinking> into text and
    thinking segments, across chunk boundaries.

    The tail of each chunk that could still be the start of a tag is held
    back (10 chars outside a span, 12 inside) until the next chunk resolves
    it. finalize() releases whatever is held.
    """

    def __init__(self):
        self.inside = False
        self._held = ""
        self.found_thinking = False

    def feed(self, text: str) -> List[TagSegment]:
        segments: List[TagSegment] = []
        remaining = self._held + text
        self._held = ""

        while remaining:
            if self.inside:
                close_idx = remaining.find(THINKING_CLOSE_TAG)
                if close_idx != -1:
                    _append(segments, SegmentKind.THINKING, remaining[:close_idx])
                    self.inside = False
                    remaining = remaining[close_idx + len(THINKING_CLOSE_TAG):]
                else:
                    safe_len = max(0, len(remaining) - THINKING_CLOSE_HOLDBACK)
                    _append(segments, SegmentKind.THINKING, remaining[:safe_len])
                    self._held = remaining[safe_len:]
                    remaining = ""
            else:
                open_idx = remaining.find(THINKING_OPEN_TAG)
                if open_idx != -1:
                    _append(segments, SegmentKind.TEXT, remaining[:open_idx])
                    self.inside = True
                    self.found_thinking = True
                    remaining = remaining[open_idx + len(THINKING_OPEN_TAG):]
                else:
                    safe_len = max(0, len(remaining) - THINKING_OPEN_HOLDBACK)
                    _append(segments, SegmentKind.TEXT, remaining[:safe_len])
                    self._held = remaining[safe_len:]
                    remaining = ""
        return segments

    def finalize(self) -> List[TagSegment]:
        """Releases held characters in the current mode."""
        segments: List[TagSegment] = []
        if self._held:
            kind = SegmentKind.THINKING if self.inside else SegmentKind.TEXT
            _append(segments, kind, self._held)
            self._held = ""
        return segments

    @property
    def has_held(self) -> bool:
        return bool(self._held)


_TOOL_CALL_PATTERN = re.compile(
    r"<tool_call\s+name=\"([^\"]+)\"\s+arguments='([^']*)'\s*/>"
)


def parse_function_calls_block(block: str) -> List[TagSegment]:
    """Extracts <tool_call name="..." arguments='...'/> entries from a block."""
    calls: List[TagSegment] = []
    for match in _TOOL_CALL_PATTERN.finditer(block):
        name, raw_args = match.group(1), match.group(2) or ""
        try:
            args = json.loads(raw_args) if raw_args.strip() else {}
        except json.JSONDecodeError:
            lib_logger.debug(f"Tool call '{name}' has non-JSON arguments, wrapping as value")
            args = {"value": raw_args}
        if not isinstance(args, dict):
            args = {"value": args}
        calls.append(TagSegment(SegmentKind.TOOL_CALL, name=name, args=args))
    return calls


class FunctionCallsExtractor:
    """
    Pulls XML style <function_calls> blocks out of a text stream.

    Text around the blocks is passed through. An opened block, or a tail that
    could be the start of the opening tag, is held until it is complete.
    """

    def __init__(self):
        self._held = ""

    def feed(self, text: str) -> List[TagSegment]:
        segments: List[TagSegment] = []
        remaining = self._held + text
        self._held = ""

        while remaining:
            open_idx = remaining.find(FUNCTION_CALLS_OPEN_TAG)
            if open_idx == -1:
                keep = _partial_prefix_len(remaining, FUNCTION_CALLS_OPEN_TAG)
                _append(segments, SegmentKind.TEXT, remaining[: len(remaining) - keep])
                self._held = remaining[len(remaining) - keep:]
                break

            _append(segments, SegmentKind.TEXT, remaining[:open_idx])
            close_idx = remaining.find(FUNCTION_CALLS_CLOSE_TAG, open_idx)
            if close_idx == -1:
                self._held = remaining[open_idx:]
                break

            end = close_idx + len(FUNCTION_CALLS_CLOSE_TAG)
            segments.extend(parse_function_calls_block(remaining[open_idx:end]))
            remaining = remaining[end:]
        return segments

    def finalize(self) -> List[TagSegment]:
        """An unterminated block at end of stream is surfaced as plain text."""
        segments: List[TagSegment] = []
        if self._held:
            if self._held.startswith(FUNCTION_CALLS_OPEN_TAG):
                lib_logger.warning("Stream ended inside an unterminated <function_calls> block")
            _append(segments, SegmentKind.TEXT, self._held)
            self._held = ""
        return segments


def _partial_prefix_len(text: str, tag: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``tag``."""
    for length in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:length]):
            return length
    return 0
