# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Anthropic Messages stream events.

Typed events (``message_start``, ``content_block_start``,
``content_block_delta``, ``content_block_stop``, ``message_delta``,
``message_stop``, ``ping``, ``error``) plus the non-streaming ``message``
document. Unknown event types are ignored.
"""

import logging
from typing import Any, Dict, Optional

from ...error_handler import StreamedAPIError
from ..buffers import ANTHROPIC_PROFILE
from ..tool_calls import ToolCallAccumulator
from .base import Dialect, DialectHandler, as_argument_text, as_int

lib_logger = logging.getLogger("relay_library")


class AnthropicHandler(DialectHandler):
    def __init__(self, emitter):
        super().__init__(emitter)
        self._tools = ToolCallAccumulator()
        self._block_types: Dict[int, str] = {}

    def handle(self, payload: Dict[str, Any], event_type: Optional[str] = None) -> None:
        kind = payload.get("type") or event_type

        if kind == "message_start":
            message = payload.get("message") or {}
            self._record_usage(message.get("usage") or {})
        elif kind == "content_block_start":
            self._start_block(payload.get("index", 0), payload.get("content_block") or {})
        elif kind == "content_block_delta":
            self._apply_delta(payload.get("index", 0), payload.get("delta") or {})
        elif kind == "content_block_stop":
            self._stop_block(payload.get("index", 0))
        elif kind == "message_delta":
            delta = payload.get("delta") or {}
            self.emitter.set_finish_reason(delta.get("stop_reason"))
            self._record_usage(payload.get("usage") or {})
        elif kind == "message_stop":
            self.emit_tool_calls(self._tools.flush())
        elif kind == "error":
            raise StreamedAPIError(payload)
        elif kind == "message":
            self._handle_message(payload)
        elif kind != "ping":
            lib_logger.debug(f"Ignoring Anthropic stream event '{kind}'")

    # =========================================================================
    # CONTENT BLOCKS
    # =========================================================================

    def _start_block(self, index: int, block: Dict[str, Any]) -> None:
        block_type = block.get("type", "")
        self._block_types[index] = block_type

        if block_type == "text":
            self.emitter.text(block.get("text") or "")
        elif block_type == "thinking":
            self.emitter.thinking(block.get("thinking") or "")
            self.emitter.set_thinking_signature(block.get("signature") or "")
        elif block_type == "tool_use":
            initial = block.get("input")
            self._tools.add_fragment(
                index,
                call_id=block.get("id"),
                name=block.get("name"),
                arguments=as_argument_text(initial) if initial else None,
            )
        elif block_type == "redacted_thinking":
            lib_logger.debug("Received redacted thinking block")

    def _apply_delta(self, index: int, delta: Dict[str, Any]) -> None:
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            self.emitter.text(delta.get("text") or "")
        elif delta_type == "thinking_delta":
            self.emitter.thinking(delta.get("thinking") or "")
        elif delta_type == "signature_delta":
            self.emitter.set_thinking_signature(delta.get("signature") or "")
        elif delta_type == "input_json_delta":
            self._tools.add_fragment(index, arguments=delta.get("partial_json") or "")

    def _stop_block(self, index: int) -> None:
        block_type = self._block_types.pop(index, "")
        if block_type in ("thinking", "redacted_thinking"):
            self.emitter.close_thinking()
        elif block_type == "tool_use":
            self.emit_tool_calls(self._tools.flush())

    def _handle_message(self, message: Dict[str, Any]) -> None:
        for block in message.get("content") or []:
            block_type = block.get("type")
            if block_type == "text":
                self.emitter.text(block.get("text") or "")
            elif block_type == "thinking":
                self.emitter.thinking(block.get("thinking") or "")
                self.emitter.set_thinking_signature(block.get("signature") or "")
                self.emitter.close_thinking()
            elif block_type == "tool_use":
                self.emitter.tool_call(
                    block.get("id") or self.emitter.next_tool_call_id(),
                    block.get("name") or "",
                    block.get("input") if isinstance(block.get("input"), dict) else {},
                )
        self.emitter.set_finish_reason(message.get("stop_reason"))
        self._record_usage(message.get("usage") or {})

    # =========================================================================
    # USAGE
    # =========================================================================

    def _record_usage(self, usage: Dict[str, Any]) -> None:
        if not usage:
            return
        input_tokens = as_int(usage.get("input_tokens"))
        cache_creation = as_int(usage.get("cache_creation_input_tokens")) or 0
        cache_read = as_int(usage.get("cache_read_input_tokens"))
        prompt_tokens = None
        if input_tokens is not None:
            # Cached prompt tokens are billed separately but still part of the prompt
            prompt_tokens = input_tokens + cache_creation + (cache_read or 0)
        self.emitter.set_usage(
            prompt_tokens=prompt_tokens,
            completion_tokens=as_int(usage.get("output_tokens")),
            cached_tokens=cache_read,
        )

    def finish(self) -> None:
        self.emit_tool_calls(self._tools.flush())


ANTHROPIC_DIALECT = Dialect(
    name="anthropic",
    handler_factory=AnthropicHandler,
    buffer_profile=ANTHROPIC_PROFILE,
)
