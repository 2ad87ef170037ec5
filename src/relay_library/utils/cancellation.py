# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import asyncio
import logging
from typing import Callable, List

lib_logger = logging.getLogger("relay_library")


class CancellationToken:
    """
    Cooperative cancellation signal passed from the caller down to the
    transport and the stream normalizer.

    Checked at frame boundaries; cancel() also runs registered callbacks so a
    transport can abort its connection.
    """

    def __init__(self):
        self._cancelled = False
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._event.set()
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception as e:
                lib_logger.debug(f"Cancellation callback failed: {e}")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Registers a callback; runs it immediately if already cancelled."""
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    async def wait(self) -> None:
        await self._event.wait()
