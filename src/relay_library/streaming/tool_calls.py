# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Tool-call argument assembly, repair and deduplication.
"""

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from ..constants import DUPLICATE_PREFIX_MAX_CHECK, DUPLICATE_PREFIX_MIN_CHECK
from .framing import find_matching_brace

lib_logger = logging.getLogger("relay_library")

_SYNTHETIC_ID_PATTERN = re.compile(r"^tool_call_\d+_\d+$")


def generate_tool_call_id(counter: int) -> str:
    """Placeholder id for providers that do not issue one."""
    return f"tool_call_{counter}_{int(time.time() * 1000)}"


def is_synthetic_tool_call_id(call_id: str) -> bool:
    return bool(_SYNTHETIC_ID_PATTERN.match(call_id or ""))


# =============================================================================
# ARGUMENT REPAIR
# =============================================================================


def strip_duplicated_prefix(raw: str) -> str:
    """
    Drops a duplicated head from an argument string.

    Some producers resend the beginning of the arguments. Starting from the
    longest candidate (at most 50 chars, at most half the string, at least 5)
    the first prefix that reappears later marks where the clean copy starts.
    """
    max_check = min(DUPLICATE_PREFIX_MAX_CHECK, len(raw) // 2)
    for length in range(max_check, DUPLICATE_PREFIX_MIN_CHECK - 1, -1):
        prefix = raw[:length]
        duplicate_at = raw.find(prefix, length)
        if duplicate_at != -1:
            lib_logger.debug(
                f"Argument repair: first {length} chars repeat at {duplicate_at}"
            )
            return raw[duplicate_at:]
    return raw


def truncate_doubled_object(raw: str) -> str:
    """``{...}{...}`` -> the first balanced object."""
    if "}{" not in raw:
        return raw
    start = raw.find("{")
    end = find_matching_brace(raw, start) if start != -1 else -1
    if end != -1 and end < len(raw) - 1:
        lib_logger.debug(f"Argument repair: truncated doubled object at {end + 1}")
        return raw[start : end + 1]
    return raw


def repair_arguments(raw: str) -> str:
    return truncate_doubled_object(strip_duplicated_prefix(raw))


def _as_args(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {"value": value}


def try_parse_arguments(raw: str) -> Optional[Dict[str, Any]]:
    """Strict parse, no repair. Empty input counts as ``{}``."""
    if not raw or not raw.strip():
        return {}
    try:
        return _as_args(json.loads(raw))
    except json.JSONDecodeError:
        return None


def parse_arguments(raw: str) -> Tuple[Dict[str, Any], bool]:
    """
    Parses an argument string, repairing known producer defects.

    Returns:
        (args, ok). When nothing works, args is ``{"value": raw}`` and ok is
        False.
    """
    parsed = try_parse_arguments(raw)
    if parsed is not None:
        return parsed, True

    repaired = repair_arguments(raw)
    if repaired != raw:
        parsed = try_parse_arguments(repaired)
        if parsed is not None:
            lib_logger.debug("Tool call arguments parsed after repair")
            return parsed, True

    lib_logger.warning(f"Failed to parse tool call arguments: {raw[:100]!r}")
    return {"value": raw}, False


# =============================================================================
# ASSEMBLY
# =============================================================================


@dataclass
class PendingToolCall:
    key: Any
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""
    emitted: bool = False


class ToolCallAccumulator:
    """
    Collects argument fragments per index (or id) until they parse.

    ready() hands back calls whose arguments already parse strictly;
    flush() forces the rest through repair at the end of a turn.
    """

    def __init__(self):
        self._calls: Dict[Any, PendingToolCall] = {}
        self._order: List[Any] = []
        self._counter = 0

    def add_fragment(
        self,
        key: Any,
        call_id: Optional[str] = None,
        name: Optional[str] = None,
        arguments: Optional[str] = None,
    ) -> PendingToolCall:
        call = self._calls.get(key)
        # An index reused by a new call id after the previous call was emitted
        reused = call is not None and call.emitted and bool(call_id) and call_id != call.id
        if call is None or reused:
            if call is None:
                self._order.append(key)
            call = PendingToolCall(key=key)
            self._calls[key] = call
        if call_id and not call.id:
            call.id = call_id
        if name and not call.name:
            call.name = name
        if arguments:
            call.arguments += arguments
        return call

    def _finish(self, call: PendingToolCall, args: Dict[str, Any]) -> Tuple[str, str, Dict[str, Any]]:
        call.emitted = True
        if not call.id:
            call.id = generate_tool_call_id(self._counter)
        self._counter += 1
        return call.id, call.name or "", args

    def ready(self) -> List[Tuple[str, str, Dict[str, Any]]]:
        """Calls with a name whose arguments form a complete JSON object."""
        completed = []
        for key in self._order:
            call = self._calls[key]
            if call.emitted or not call.name or not call.arguments.strip():
                continue
            if not call.arguments.rstrip().endswith("}"):
                continue
            args = try_parse_arguments(call.arguments)
            if args is not None:
                completed.append(self._finish(call, args))
        return completed

    def flush(self) -> List[Tuple[str, str, Dict[str, Any]]]:
        """Emits every outstanding call, repairing arguments if needed."""
        completed = []
        for key in self._order:
            call = self._calls[key]
            if call.emitted:
                continue
            if not call.name:
                lib_logger.warning(f"Dropping tool call fragment without a name (key={key})")
                call.emitted = True
                continue
            args, _ = parse_arguments(call.arguments)
            completed.append(self._finish(call, args))
        self._calls.clear()
        self._order.clear()
        return completed


# =============================================================================
# DEDUPLICATION
# =============================================================================


def _args_digest(args: Dict[str, Any]) -> str:
    encoded = json.dumps(args, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha1(encoded).hexdigest()[:16]


def tool_call_dedup_key(call_id: str, name: str, args: Dict[str, Any]) -> str:
    """
    ``id:name`` for provider-issued ids.

    Synthetic ids are regenerated per fragment, so for those the id is
    replaced by a digest of the arguments.
    """
    if is_synthetic_tool_call_id(call_id):
        return f"synthetic:{name}:{_args_digest(args)}"
    return f"{call_id}:{name}"


class ToolCallDeduplicator:
    def __init__(self):
        self._seen: Set[str] = set()

    def check_and_add(self, call_id: str, name: str, args: Dict[str, Any]) -> bool:
        """True the first time a call is seen."""
        key = tool_call_dedup_key(call_id, name, args)
        if key in self._seen:
            lib_logger.debug(f"Skipping duplicate tool call {key}")
            return False
        self._seen.add(key)
        return True
