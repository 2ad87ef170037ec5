# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
OpenAI chat-completions chunks.

    {"choices": [{"index": 0, "delta": {"content": "...",
                  "reasoning_content": "...", "tool_calls": [...]},
                  "finish_reason": null}],
     "usage": {...}}

Non-streaming responses carry ``message`` instead of ``delta`` and are
handled the same way.
"""

import logging
from typing import Any, Dict, Optional

from ...error_handler import StreamedAPIError
from ..tool_calls import ToolCallAccumulator
from .base import Dialect, DialectHandler, as_argument_text, as_int

lib_logger = logging.getLogger("relay_library")


class OpenAIHandler(DialectHandler):
    def __init__(self, emitter):
        super().__init__(emitter)
        self._tools = ToolCallAccumulator()

    def handle(self, payload: Dict[str, Any], event_type: Optional[str] = None) -> None:
        if payload.get("error"):
            raise StreamedAPIError(payload)

        usage = payload.get("usage")
        if isinstance(usage, dict):
            self._record_usage(usage)

        choices = payload.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return
        choice = choices[0]
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            delta = choice.get("message") if isinstance(choice.get("message"), dict) else {}

        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str):
            self.emitter.thinking(reasoning)

        content = delta.get("content")
        if isinstance(content, str):
            self.emitter.text(content)
        elif isinstance(content, list):
            for part in content:
                if isinstance(part, dict) and part.get("type") == "text":
                    self.emitter.text(part.get("text") or "")

        for position, fragment in enumerate(delta.get("tool_calls") or []):
            if isinstance(fragment, dict):
                self._add_tool_fragment(fragment, position)
        self.emit_tool_calls(self._tools.ready())

        finish_reason = choice.get("finish_reason")
        if finish_reason:
            self.emitter.set_finish_reason(finish_reason)
            self.emit_tool_calls(self._tools.flush())

    def _add_tool_fragment(self, fragment: Dict[str, Any], position: int) -> None:
        function = fragment.get("function") or {}
        key = fragment.get("index")
        if key is None:
            key = fragment.get("id") or position
        self._tools.add_fragment(
            key,
            call_id=fragment.get("id"),
            name=function.get("name"),
            arguments=as_argument_text(function.get("arguments")),
        )

    def _record_usage(self, usage: Dict[str, Any]) -> None:
        prompt_details = usage.get("prompt_tokens_details") or {}
        completion_details = usage.get("completion_tokens_details") or {}
        self.emitter.set_usage(
            prompt_tokens=as_int(usage.get("prompt_tokens")),
            completion_tokens=as_int(usage.get("completion_tokens")),
            total_tokens=as_int(usage.get("total_tokens")),
            cached_tokens=as_int(prompt_details.get("cached_tokens")),
            reasoning_tokens=as_int(completion_details.get("reasoning_tokens")),
        )

    def finish(self) -> None:
        self.emit_tool_calls(self._tools.flush())


OPENAI_DIALECT = Dialect(name="openai", handler_factory=OpenAIHandler)
