# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict

from ..constants import DEFAULT_RATE_LIMIT_REQUESTS, DEFAULT_RATE_LIMIT_WINDOW_MS

lib_logger = logging.getLogger("relay_library")


@dataclass
class _Window:
    started_at: float = 0.0
    count: int = 0


class RateLimiter:
    """
    Fixed-window request throttle, one window per key (usually the provider).

    At most ``max_requests`` calls to throttle() pass per ``window_ms``; the
    next caller sleeps until the window rolls over.
    """

    def __init__(
        self,
        max_requests: int = DEFAULT_RATE_LIMIT_REQUESTS,
        window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_requests = max(1, int(max_requests))
        self.window_seconds = max(0, int(window_ms)) / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._windows: Dict[str, _Window] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def throttle(self, key: str) -> float:
        """Waits for a slot. Returns the number of seconds spent waiting."""
        if self.window_seconds <= 0:
            return 0.0
        lock = self._locks.setdefault(key, asyncio.Lock())
        waited = 0.0
        async with lock:
            window = self._windows.setdefault(key, _Window())
            while True:
                now = self._clock()
                elapsed = now - window.started_at
                if window.count == 0 or elapsed >= self.window_seconds:
                    window.started_at = now
                    window.count = 1
                    return waited
                if window.count < self.max_requests:
                    window.count += 1
                    return waited
                delay = self.window_seconds - elapsed
                lib_logger.info(
                    f"[{key}] Rate limit reached ({self.max_requests} req/"
                    f"{int(self.window_seconds * 1000)}ms). Throttling for {delay * 1000:.0f}ms..."
                )
                await self._sleep(delay)
                waited += delay

    def reset(self, key: str) -> None:
        self._windows.pop(key, None)
