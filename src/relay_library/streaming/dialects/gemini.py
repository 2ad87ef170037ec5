# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Gemini candidate/parts payloads.

    {"response": {"candidates": [{"content": {"parts": [
        {"text": "...", "thought": true},
        {"functionCall": {"name": "...", "args": {...}}, "thoughtSignature": "..."}
    ]}, "finishReason": "STOP"}], "usageMetadata": {...}}}

The ``response`` wrapper is optional (Code Assist endpoints add it, the
public API does not).
"""

import logging
from typing import Any, Dict, Optional

from ...error_handler import StreamedAPIError
from ..tool_calls import parse_arguments
from .base import Dialect, DialectHandler, as_int

lib_logger = logging.getLogger("relay_library")


def is_thinking_part(part: Dict[str, Any]) -> bool:
    """``thought: true``, or text carrying a signature that is not a call/result."""
    if part.get("thought") is True:
        return True
    return (
        isinstance(part.get("thoughtSignature"), str)
        and isinstance(part.get("text"), str)
        and not part.get("functionCall")
        and not part.get("functionResponse")
    )


class GeminiHandler(DialectHandler):
    def handle(self, payload: Dict[str, Any], event_type: Optional[str] = None) -> None:
        body = payload.get("response") if isinstance(payload.get("response"), dict) else payload
        if body.get("error") and not body.get("candidates"):
            raise StreamedAPIError(body)

        candidates = body.get("candidates") or []
        if candidates and isinstance(candidates[0], dict):
            candidate = candidates[0]
            content = candidate.get("content") or {}
            for part in content.get("parts") or []:
                if isinstance(part, dict):
                    self._handle_part(part)
            self.emitter.set_finish_reason(candidate.get("finishReason"))

        usage = body.get("usageMetadata")
        if isinstance(usage, dict):
            self._record_usage(usage)

    def _handle_part(self, part: Dict[str, Any]) -> None:
        signature = part.get("thoughtSignature")
        text = part.get("text")

        if is_thinking_part(part):
            if isinstance(text, str):
                self.emitter.thinking(text)
            if isinstance(signature, str):
                self.emitter.set_thinking_signature(signature)
        elif isinstance(text, str):
            self.emitter.text(text)

        function_call = part.get("functionCall")
        if isinstance(function_call, dict) and function_call.get("name"):
            raw_args = function_call.get("args")
            if isinstance(raw_args, dict):
                args = raw_args
            elif isinstance(raw_args, str):
                args, _ = parse_arguments(raw_args)
            else:
                args = {}
            self.emitter.tool_call(
                function_call.get("id") or self.emitter.next_tool_call_id(),
                function_call["name"],
                args,
                signature=signature if isinstance(signature, str) else None,
            )

    def _record_usage(self, usage: Dict[str, Any]) -> None:
        candidates = as_int(usage.get("candidatesTokenCount"))
        thoughts = as_int(usage.get("thoughtsTokenCount"))
        completion = None
        if candidates is not None or thoughts is not None:
            # Thinking tokens are billed as output
            completion = (candidates or 0) + (thoughts or 0)
        self.emitter.set_usage(
            prompt_tokens=as_int(usage.get("promptTokenCount")),
            completion_tokens=completion,
            total_tokens=as_int(usage.get("totalTokenCount")),
            cached_tokens=as_int(usage.get("cachedContentTokenCount")),
            reasoning_tokens=thoughts,
        )


GEMINI_DIALECT = Dialect(
    name="gemini",
    handler_factory=GeminiHandler,
    extract_function_calls=True,
)
