# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

lib_logger = logging.getLogger("relay_library")


def find_matching_brace(text: str, start_pos: int) -> int:
    """Index of the brace closing the object opened at ``start_pos``, or -1."""
    if start_pos >= len(text) or text[start_pos] != "{":
        return -1
    brace_count = 0
    in_string = False
    escape_next = False
    for i in range(start_pos, len(text)):
        char = text[i]
        if escape_next:
            escape_next = False
            continue
        if char == "\\" and in_string:
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if not in_string:
            if char == "{":
                brace_count += 1
            elif char == "}":
                brace_count -= 1
                if brace_count == 0:
                    return i
    return -1


class JsonObjectFramer:
    """
    Incrementally cuts top-level JSON objects out of a character stream.

    Anything between objects (array brackets, commas, whitespace) is
    skipped, which covers both concatenated objects (``{..}{..}``) and JSON
    array streams (``[{..},\\n{..}]``).
    """

    def __init__(self):
        self._buffer = ""
        self._pos = 0
        self._depth = 0
        self._in_string = False
        self._escape = False

    def feed(self, text: str) -> List[str]:
        objects: List[str] = []
        self._buffer += text
        buf = self._buffer
        start = 0 if self._depth else -1
        i = self._pos

        while i < len(buf):
            char = buf[i]
            if self._in_string:
                if self._escape:
                    self._escape = False
                elif char == "\\":
                    self._escape = True
                elif char == '"':
                    self._in_string = False
            elif char == '"':
                if self._depth > 0:
                    self._in_string = True
            elif char == "{":
                if self._depth == 0:
                    start = i
                self._depth += 1
            elif char == "}" and self._depth > 0:
                self._depth -= 1
                if self._depth == 0:
                    objects.append(buf[start : i + 1])
                    start = -1
            i += 1

        if self._depth:
            # Keep only the open object; it always starts the buffer
            self._buffer = buf[start:]
            self._pos = len(self._buffer)
        else:
            self._buffer = ""
            self._pos = 0
        return objects

    @property
    def pending(self) -> str:
        return self._buffer


def split_concatenated_json(text: str) -> List[str]:
    """Splits ``{"a":1}{"b":2}`` into its objects by brace depth."""
    return JsonObjectFramer().feed(text)


def parse_json_payload(data: str) -> List[Dict[str, Any]]:
    """
    Parses one event payload into one or more JSON objects.

    A payload holding several concatenated objects is split instead of being
    dropped. Returns an empty list for payloads that cannot be recovered.
    """
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError as e:
        pieces = split_concatenated_json(data)
        results = []
        for piece in pieces:
            try:
                results.append(json.loads(piece))
            except json.JSONDecodeError:
                lib_logger.debug(f"Dropping unparseable fragment: {piece[:80]!r}")
        if not results:
            lib_logger.warning(f"Malformed stream payload ({e.msg}): {data[:120]!r}")
        return [r for r in results if isinstance(r, dict)]

    if isinstance(parsed, list):
        return [item for item in parsed if isinstance(item, dict)]
    if isinstance(parsed, dict):
        return [parsed]
    return []


@dataclass
class SSEEvent:
    data: str
    event: Optional[str] = None


class SSEDecoder:
    """
    Server-sent events framing.

    Buffers partial lines across reads, joins multi-line ``data:`` fields and
    dispatches on blank lines. ``data:`` is accepted with or without the
    space. ``[DONE]`` ends the stream.
    """

    DONE_SENTINEL = "[DONE]"

    def __init__(self):
        self._buffer = ""
        self._data_lines: List[str] = []
        self._event_type: Optional[str] = None
        self.done = False

    def feed(self, text: str) -> List[SSEEvent]:
        events: List[SSEEvent] = []
        if self.done:
            return events
        self._buffer = (self._buffer + text).replace("\r\n", "\n")

        while not self.done:
            newline = self._buffer.find("\n")
            if newline == -1:
                break
            line = self._buffer[:newline].rstrip("\r")
            self._buffer = self._buffer[newline + 1 :]
            self._process_line(line, events)
        return events

    def _process_line(self, line: str, events: List[SSEEvent]) -> None:
        if not line.strip():
            self._dispatch(events)
            return
        if line.startswith(":"):
            return  # comment / keep-alive
        if line.startswith("data:"):
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            if value.strip() == self.DONE_SENTINEL:
                self._dispatch(events)
                self.done = True
                return
            self._data_lines.append(value)
        elif line.startswith("event:"):
            self._event_type = line[6:].strip() or None
        # id:, retry: and unknown fields are ignored

    def _dispatch(self, events: List[SSEEvent]) -> None:
        if not self._data_lines:
            self._event_type = None
            return
        data = "\n".join(self._data_lines).strip()
        self._data_lines = []
        event_type = self._event_type
        self._event_type = None
        if data:
            events.append(SSEEvent(data=data, event=event_type))

    def finish(self) -> List[SSEEvent]:
        """Flushes an event left without its terminating blank line."""
        events: List[SSEEvent] = []
        if self.done:
            return events
        if self._buffer:
            self._process_line(self._buffer.rstrip("\r"), events)
            self._buffer = ""
        self._dispatch(events)
        return events


class Utf8StreamDecoder:
    """Bytes to text, keeping multi-byte sequences split across reads intact."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def decode(self, chunk: Union[bytes, str]) -> str:
        if isinstance(chunk, str):
            return chunk
        return self._decoder.decode(chunk)

    def flush(self) -> str:
        return self._decoder.decode(b"", final=True)
