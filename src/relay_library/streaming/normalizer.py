# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Shared stream normalizer driver.

A Dialect supplies a payload handler; everything else (framing, tag
splitting, text coalescing, thinking-span lifecycle, tool-call dedup,
placeholder and usage reporting) lives here and is identical for every
dialect.
"""

import asyncio
import inspect
import json
import logging
import random
import re
import string
import time
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Union,
)

from ..constants import THINK_PLACEHOLDER
from ..utils.cancellation import CancellationToken
from .buffers import DEFAULT_PROFILE, AdaptiveTextBuffer, BufferProfile
from .events import (
    StreamEvent,
    StreamOutcome,
    TextEvent,
    ThinkingEvent,
    ToolCallEvent,
    UsageEvent,
)
from .framing import JsonObjectFramer, SSEDecoder, Utf8StreamDecoder, parse_json_payload
from .tags import FunctionCallsExtractor, SegmentKind, TagSegment, ThinkingTagSplitter
from .signatures import ThoughtSignatureCache
from .tool_calls import ToolCallDeduplicator, generate_tool_call_id

lib_logger = logging.getLogger("relay_library")

EventSink = Callable[[StreamEvent], Union[None, Awaitable[None]]]

_INVISIBLE_PATTERN = re.compile(r"[\s﻿\xA0]+")


def is_visible_text(text: str) -> bool:
    """True if the text has anything besides whitespace, BOM and NBSP."""
    return bool(_INVISIBLE_PATTERN.sub("", text or ""))


def generate_thinking_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"thinking_{int(time.time() * 1000)}_{suffix}"


class StreamEmitter:
    """
    Turns dialect-level calls into ordered normalized events.

    Handlers call text()/thinking()/tool_call()/set_usage(); the driver
    drains ``events`` after every frame.

    Ordering rules:
    - pending text is flushed before new thinking content
    - an open thinking span is closed (empty delta) before visible text or a
      tool call
    - whitespace-only text does not close a span; it is held until visible
      text arrives or the turn ends
    """

    def __init__(
        self,
        profile: BufferProfile = DEFAULT_PROFILE,
        clock: Callable[[], float] = time.monotonic,
        split_thinking_tags: bool = True,
        extract_function_calls: bool = True,
        output_thinking: bool = True,
        signature_cache: Optional[ThoughtSignatureCache] = None,
    ):
        self._clock = clock
        self._signature_cache = signature_cache
        self._last_signature: Optional[str] = None
        self.events: List[StreamEvent] = []
        self._buffer = AdaptiveTextBuffer(profile, start_ms=self._now_ms())
        self._splitter = ThinkingTagSplitter() if split_thinking_tags else None
        self._function_calls = FunctionCallsExtractor() if extract_function_calls else None
        self._dedup = ToolCallDeduplicator()
        self._output_thinking = output_thinking

        self._thinking_id: Optional[str] = None
        self._pending_signature: Optional[str] = None
        self._tool_counter = 0
        self._usage: Dict[str, int] = {}

        self.finish_reason: Optional[str] = None
        self.has_visible_content = False
        self.has_thinking_content = False
        self.text_chars = 0
        self.tool_calls = 0
        self.thinking_spans = 0
        self.dropped_fragments = 0
        self.placeholder_emitted = False

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    # =========================================================================
    # TEXT
    # =========================================================================

    def text(self, delta: str, split_tags: bool = True) -> None:
        """Visible text, optionally scanned for <thinking> and <function_calls>."""
        if not delta:
            return
        if not split_tags:
            self._append_text(delta)
            return

        segments: List[TagSegment]
        if self._function_calls is not None:
            segments = self._function_calls.feed(delta)
        else:
            segments = [TagSegment(SegmentKind.TEXT, delta)]
        for segment in segments:
            if segment.kind == SegmentKind.TOOL_CALL:
                self._release_held_tags()
                self._emit_tool_call(self.next_tool_call_id(), segment.name or "", segment.args)
            else:
                self._route_text(segment.text)

    def _route_text(self, text: str) -> None:
        if self._splitter is None:
            self._append_text(text)
            return
        self._apply_segments(self._splitter.feed(text))

    def _apply_segments(self, segments: List[TagSegment]) -> None:
        for segment in segments:
            if segment.kind == SegmentKind.THINKING:
                self._thinking(segment.text)
            else:
                self._append_text(segment.text)

    def _release_held_tags(self) -> None:
        if self._splitter is not None:
            self._apply_segments(self._splitter.finalize())

    def _append_text(self, text: str) -> None:
        if not text:
            return
        if is_visible_text(text):
            self.close_thinking()
            self.has_visible_content = True
        self._buffer.append(text)

    def _flush_text(self, force: bool = True) -> None:
        pending = self._buffer.pending
        if not pending:
            return
        if self._thinking_id is not None:
            if not force and not is_visible_text(pending):
                return
            self.close_thinking()
        text = self._buffer.take(self._now_ms())
        self.text_chars += len(text)
        self.events.append(TextEvent(text))

    def maybe_flush_text(self) -> None:
        if self._buffer.should_flush(self._now_ms()):
            self._flush_text(force=False)

    def record_arrival(self, nbytes: int) -> None:
        self._buffer.record_arrival(nbytes, self._now_ms())

    # =========================================================================
    # THINKING
    # =========================================================================

    def thinking(self, delta: str) -> None:
        """Reasoning content delivered as its own field by the provider."""
        if not delta:
            return
        self._release_all_held()
        self._thinking(delta)

    def _thinking(self, delta: str) -> None:
        if not delta or not self._output_thinking:
            return
        if self._thinking_id is None:
            self._flush_text(force=True)
            self._thinking_id = generate_thinking_id()
            self.thinking_spans += 1
        self.has_thinking_content = True
        self.events.append(ThinkingEvent(self._thinking_id, delta))

    def set_thinking_signature(self, signature: str) -> None:
        """Attaches a signature to the closing event of the current span."""
        if signature:
            self._pending_signature = (self._pending_signature or "") + signature

    def close_thinking(self) -> None:
        if self._thinking_id is None:
            # Redacted or empty reasoning still signs the following tool calls
            if self._pending_signature:
                self._last_signature = self._pending_signature
            self._pending_signature = None
            return
        self.events.append(ThinkingEvent(self._thinking_id, "", self._pending_signature))
        if self._pending_signature:
            self._last_signature = self._pending_signature
        self._thinking_id = None
        self._pending_signature = None

    @property
    def thinking_open(self) -> bool:
        return self._thinking_id is not None

    # =========================================================================
    # TOOL CALLS
    # =========================================================================

    def next_tool_call_id(self) -> str:
        call_id = generate_tool_call_id(self._tool_counter)
        self._tool_counter += 1
        return call_id

    def tool_call(
        self,
        call_id: str,
        name: str,
        args: Dict[str, Any],
        signature: Optional[str] = None,
    ) -> bool:
        """
        Emits a tool call unless it was already emitted. Returns True if emitted.

        ``signature`` (or the signature of the last closed thinking span) is
        remembered under the call id for the next turn.
        """
        self._release_all_held()
        return self._emit_tool_call(call_id, name, args, signature)

    def _emit_tool_call(
        self,
        call_id: str,
        name: str,
        args: Dict[str, Any],
        signature: Optional[str] = None,
    ) -> bool:
        if not name:
            self.dropped_fragments += 1
            lib_logger.warning(f"Dropping tool call without a name (id={call_id})")
            return False
        if not self._dedup.check_and_add(call_id, name, args):
            return False
        self.close_thinking()
        self._flush_text(force=True)
        self.events.append(ToolCallEvent(call_id, name, dict(args)))
        if self._signature_cache is not None:
            self._signature_cache.store(call_id, signature or self._last_signature or "")
        self.tool_calls += 1
        self.has_visible_content = True
        return True

    # =========================================================================
    # USAGE / FINISH
    # =========================================================================

    def set_usage(self, **counts: Optional[int]) -> None:
        """Merges token counts; later values for the same field win."""
        for key, value in counts.items():
            if value is not None:
                self._usage[key] = int(value)

    def set_finish_reason(self, reason: Optional[str]) -> None:
        if reason:
            self.finish_reason = reason

    def build_usage(self) -> Optional[UsageEvent]:
        if not self._usage:
            return None
        prompt = self._usage.get("prompt_tokens", 0)
        completion = self._usage.get("completion_tokens", 0)
        total = self._usage.get("total_tokens") or prompt + completion
        return UsageEvent(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=total,
            cached_tokens=self._usage.get("cached_tokens", 0),
            reasoning_tokens=self._usage.get("reasoning_tokens", 0),
        )

    # =========================================================================
    # END OF TURN
    # =========================================================================

    def _release_all_held(self) -> None:
        if self._function_calls is not None:
            for segment in self._function_calls.finalize():
                self._route_text(segment.text)
        self._release_held_tags()

    def flush_open(self) -> None:
        """Flush everything buffered and close any span (error/cancel path)."""
        self._release_all_held()
        self._flush_text(force=True)
        self.close_thinking()

    def finalize(self) -> Optional[UsageEvent]:
        """End of a completed turn: flush, close, placeholder, usage."""
        self.flush_open()
        if self.has_thinking_content and not self.has_visible_content:
            self.events.append(TextEvent(THINK_PLACEHOLDER))
            self.placeholder_emitted = True
            lib_logger.debug("Turn produced only thinking; emitted placeholder")
        usage = self.build_usage()
        if usage is not None:
            self.events.append(usage)
        return usage

    def drain(self) -> List[StreamEvent]:
        events, self.events = self.events, []
        return events


class StreamNormalizer:
    """
    Consumes one upstream response and produces normalized events.

    Usage:
        normalizer = StreamNormalizer("anthropic", sink=on_event)
        outcome = await normalizer.run(response.aiter_bytes(), cancel_token)

    Framing is detected from the first non-blank character: ``{`` or ``[``
    means a JSON document (or array stream), anything else is SSE.
    """

    def __init__(
        self,
        dialect,
        sink: Optional[EventSink] = None,
        clock: Callable[[], float] = time.monotonic,
        output_thinking: bool = True,
        signature_cache: Optional[ThoughtSignatureCache] = None,
    ):
        from .dialects import get_dialect

        self.dialect = get_dialect(dialect) if isinstance(dialect, str) else dialect
        self._sink = sink
        self.emitter = StreamEmitter(
            profile=self.dialect.buffer_profile,
            clock=clock,
            split_thinking_tags=self.dialect.split_thinking_tags,
            extract_function_calls=self.dialect.extract_function_calls,
            output_thinking=output_thinking,
            signature_cache=signature_cache,
        )
        self.handler = self.dialect.handler_factory(self.emitter)
        self.outcome = StreamOutcome()
        self.events_emitted = 0

        self._utf8 = Utf8StreamDecoder()
        self._sse: Optional[SSEDecoder] = None
        self._json: Optional[JsonObjectFramer] = None
        self._lead = ""

    # =========================================================================
    # FRAMING
    # =========================================================================

    def _frame(self, text: str) -> None:
        if self._sse is None and self._json is None:
            self._lead += text
            stripped = self._lead.lstrip("﻿ \t\r\n")
            if not stripped:
                return
            if stripped[0] in "{[":
                self._json = JsonObjectFramer()
            else:
                self._sse = SSEDecoder()
            text, self._lead = self._lead, ""

        if self._sse is not None:
            for event in self._sse.feed(text):
                self._dispatch(event.data, event.event)
        else:
            for raw in self._json.feed(text):
                self._dispatch(raw, None)

    def _finish_framing(self) -> None:
        tail = self._utf8.flush()
        if tail:
            self._frame(tail)
        if self._sse is not None:
            for event in self._sse.finish():
                self._dispatch(event.data, event.event)
        elif self._json is not None and self._json.pending.strip():
            self.emitter.dropped_fragments += 1
            lib_logger.warning(
                f"Stream ended inside a JSON object ({len(self._json.pending)} chars dropped)"
            )

    @property
    def _upstream_done(self) -> bool:
        return self._sse is not None and self._sse.done

    def _dispatch(self, data: str, event_type: Optional[str]) -> None:
        payloads = parse_json_payload(data)
        if not payloads:
            self.emitter.dropped_fragments += 1
            return
        for payload in payloads:
            self.handler.handle(payload, event_type)

    # =========================================================================
    # DRIVER
    # =========================================================================

    def _check_cancel(self, cancel: Optional[CancellationToken]) -> bool:
        if cancel is not None and cancel.is_cancelled:
            self.outcome.cancelled = True
        return self.outcome.cancelled

    @staticmethod
    async def _next_chunk(
        iterator: AsyncIterator[Union[bytes, str]],
        cancel: Optional[CancellationToken],
    ) -> Optional[Union[bytes, str]]:
        """
        Next chunk from the source, or None once it is exhausted.

        A pending read is raced against the cancellation token so a stalled
        upstream does not delay cancellation until its next chunk.
        """
        if cancel is None:
            try:
                return await iterator.__anext__()
            except StopAsyncIteration:
                return None

        read = asyncio.ensure_future(iterator.__anext__())
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({read, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            read.cancel()
            raise
        finally:
            waiter.cancel()

        if not read.done():
            read.cancel()
            await asyncio.wait({read})
        if read.cancelled():
            return None
        try:
            return read.result()
        except StopAsyncIteration:
            return None

    async def events(
        self,
        source: AsyncIterable[Union[bytes, str]],
        cancel: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Async generator of normalized events for one response."""
        error: Optional[Exception] = None
        try:
            if not self._check_cancel(cancel):
                iterator = source.__aiter__()
                while True:
                    chunk = await self._next_chunk(iterator, cancel)
                    if chunk is None:
                        self._check_cancel(cancel)
                        break
                    if self._check_cancel(cancel):
                        break
                    if not chunk:
                        continue
                    self.emitter.record_arrival(len(chunk))
                    self._frame(self._utf8.decode(chunk))
                    self.emitter.maybe_flush_text()
                    for event in self._drain(cancel):
                        yield event
                    if self._upstream_done or self._check_cancel(cancel):
                        break
            if not self.outcome.cancelled:
                self._finish_framing()
                self.handler.finish()
        except Exception as e:
            error = e

        if error is not None:
            self.emitter.flush_open()
            self._fill_outcome()
            for event in self._drain(cancel):
                yield event
            raise error

        if self.outcome.cancelled:
            lib_logger.info("Stream cancelled; flushing buffered output")
            self.emitter.flush_open()
            self._fill_outcome()
        else:
            self.outcome.usage = self.emitter.finalize()
            self._fill_outcome()
        for event in self._drain(cancel):
            yield event

        aclose = getattr(source, "aclose", None)
        if self.outcome.cancelled and aclose is not None:
            await aclose()

    def _drain(self, cancel: Optional[CancellationToken]) -> List[StreamEvent]:
        events = self.emitter.drain()
        if events:
            self._check_cancel(cancel)
            self.events_emitted += len(events)
        return events

    def _fill_outcome(self) -> None:
        emitter = self.emitter
        self.outcome.finish_reason = emitter.finish_reason
        self.outcome.text_chars = emitter.text_chars
        self.outcome.tool_calls = emitter.tool_calls
        self.outcome.thinking_spans = emitter.thinking_spans
        self.outcome.placeholder_emitted = emitter.placeholder_emitted
        self.outcome.dropped_fragments = emitter.dropped_fragments
        if self.outcome.usage is None:
            self.outcome.usage = emitter.build_usage()

    async def run(
        self,
        source: AsyncIterable[Union[bytes, str]],
        cancel: Optional[CancellationToken] = None,
    ) -> StreamOutcome:
        """Feeds every event to the sink and returns the outcome."""
        async for event in self.events(source, cancel):
            if self._sink is None:
                continue
            result = self._sink(event)
            if inspect.isawaitable(result):
                await result
        return self.outcome


async def normalize_stream(
    dialect,
    source: AsyncIterable[Union[bytes, str]],
    cancel: Optional[CancellationToken] = None,
    **kwargs,
) -> List[StreamEvent]:
    """Collects all events of a stream into a list."""
    collected: List[StreamEvent] = []
    await StreamNormalizer(dialect, sink=collected.append, **kwargs).run(source, cancel)
    return collected


def dump_event(event: StreamEvent) -> str:
    """Compact JSON form of an event, for logs and the CLI."""
    payload = {"type": type(event).__name__}
    payload.update(event.__dict__)
    return json.dumps(payload, default=str)
