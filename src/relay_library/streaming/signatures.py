# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass
class SignatureEntry:
    signature: str
    updated_at: float


class ThoughtSignatureCache:
    """
    Thinking signatures keyed by tool-call id.

    Providers that sign their reasoning expect the signature back when the
    tool result is sent on the next turn. Process-local:
    - entries idle longer than ttl_seconds are evicted
    - total entries are capped by max_entries (oldest evicted first)
    """

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.max_entries = max(1, int(max_entries))
        self.ttl_seconds = max(1, int(ttl_seconds))
        self._clock = clock
        self._entries: Dict[str, SignatureEntry] = {}

    def store(self, call_id: str, signature: str) -> bool:
        if not call_id or not signature:
            return False
        now = self._clock()
        self._prune(now)
        self._entries.pop(call_id, None)
        self._entries[call_id] = SignatureEntry(signature, now)
        while len(self._entries) > self.max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
        return True

    def get(self, call_id: str) -> Optional[str]:
        entry = self._entries.get(call_id)
        if entry is None:
            return None
        if self._clock() - entry.updated_at > self.ttl_seconds:
            del self._entries[call_id]
            return None
        return entry.signature

    def _prune(self, now: float) -> None:
        expired = [
            key
            for key, entry in self._entries.items()
            if now - entry.updated_at > self.ttl_seconds
        ]
        for key in expired:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
