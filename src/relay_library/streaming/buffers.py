# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Visible-text coalescing.

Text is held until it reaches a size threshold or a delay has passed since
the last flush, whichever comes first. When the transport delivers faster
than HIGH_VELOCITY_THRESHOLD bytes/ms both thresholds are scaled down.
"""

import re
from dataclasses import dataclass
from typing import Optional

from ..constants import (
    ADAPTIVE_BUFFER_MULTIPLIER,
    ANTHROPIC_BUFFER_CHAR_THRESHOLD,
    ANTHROPIC_BUFFER_MAX_DELAY_MS,
    ANTHROPIC_BUFFER_WORD_THRESHOLD,
    HIGH_VELOCITY_THRESHOLD,
    TEXT_BUFFER_MAX_DELAY_MS,
    TEXT_BUFFER_MIN_SIZE,
)

_WORD_PATTERN = re.compile(r"\S+")


@dataclass(frozen=True)
class BufferProfile:
    """Flush thresholds for one dialect."""

    min_size: int = TEXT_BUFFER_MIN_SIZE
    max_delay_ms: float = TEXT_BUFFER_MAX_DELAY_MS
    word_threshold: Optional[int] = None
    adaptive: bool = True


DEFAULT_PROFILE = BufferProfile()

ANTHROPIC_PROFILE = BufferProfile(
    min_size=ANTHROPIC_BUFFER_CHAR_THRESHOLD,
    max_delay_ms=ANTHROPIC_BUFFER_MAX_DELAY_MS,
    word_threshold=ANTHROPIC_BUFFER_WORD_THRESHOLD,
    adaptive=False,
)


class AdaptiveTextBuffer:
    def __init__(self, profile: BufferProfile = DEFAULT_PROFILE, start_ms: float = 0.0):
        self.profile = profile
        self._text = ""
        self._last_flush_ms = start_ms
        self._last_arrival_ms: Optional[float] = None
        self.velocity = 0.0  # bytes per ms

    @property
    def pending(self) -> str:
        return self._text

    def __len__(self) -> int:
        return len(self._text)

    def append(self, text: str) -> None:
        self._text += text

    def record_arrival(self, nbytes: int, now_ms: float) -> None:
        """Updates the observed transport velocity from one read."""
        if self._last_arrival_ms is not None:
            elapsed = now_ms - self._last_arrival_ms
            if elapsed > 0:
                self.velocity = nbytes / elapsed
        self._last_arrival_ms = now_ms

    @property
    def is_high_velocity(self) -> bool:
        return self.profile.adaptive and self.velocity > HIGH_VELOCITY_THRESHOLD

    def thresholds(self):
        """Current (min_size, max_delay_ms), after velocity scaling."""
        min_size = self.profile.min_size
        max_delay = self.profile.max_delay_ms
        if self.is_high_velocity:
            min_size = int(min_size * ADAPTIVE_BUFFER_MULTIPLIER)
            max_delay = int(max_delay * ADAPTIVE_BUFFER_MULTIPLIER)
        return min_size, max_delay

    def should_flush(self, now_ms: float) -> bool:
        if not self._text:
            return False
        min_size, max_delay = self.thresholds()
        if len(self._text) >= min_size:
            return True
        if self.profile.word_threshold is not None:
            if len(_WORD_PATTERN.findall(self._text)) >= self.profile.word_threshold:
                return True
        return now_ms - self._last_flush_ms >= max_delay

    def take(self, now_ms: float) -> str:
        text, self._text = self._text, ""
        self._last_flush_ms = now_ms
        return text
