# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Change notification channel shared by the quota store and account registry.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Set

lib_logger = logging.getLogger("relay_library")


@dataclass(frozen=True)
class ChangeEvent:
    """Emitted after every mutation of a credential's state."""

    credential_id: str
    provider: str
    new_state: Any  # QuotaState, Account, or None when removed


ChangeListener = Callable[[ChangeEvent], Any]


class ChangeNotifier:
    """
    Minimal subscribe/unsubscribe event channel.

    Listeners are called synchronously in subscription order. A listener may
    return a coroutine; it is scheduled on the running loop and tracked until
    it finishes (see join()). Exceptions from listeners are logged and never
    reach the code that made the change.
    """

    def __init__(self, name: str = "changes"):
        self._name = name
        self._listeners: List[ChangeListener] = []
        self._pending: Set["asyncio.Future"] = set()

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        if listener not in self._listeners:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(listener)

        return _unsubscribe

    def unsubscribe(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit(self, credential_id: str, provider: str, new_state: Optional[Any]) -> None:
        event = ChangeEvent(credential_id=credential_id, provider=provider, new_state=new_state)
        # Copy so listeners may unsubscribe while being notified
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    self._track(asyncio.ensure_future(result), listener)
            except Exception as e:
                lib_logger.warning(f"{self._name} listener {listener!r} failed: {e}")

    def _track(self, task: "asyncio.Future", listener: ChangeListener) -> None:
        self._pending.add(task)

        def _done(finished: "asyncio.Future") -> None:
            self._pending.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                lib_logger.warning(f"{self._name} listener {listener!r} failed: {error}")

        task.add_done_callback(_done)

    async def join(self) -> None:
        """Waits for coroutines scheduled by listeners."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
