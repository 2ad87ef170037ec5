# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Per-credential quota state with exponential backoff.

The store keeps everything in memory. Mutations complete synchronously and
are then persisted through the optional KeyValueStorage, so another task
scheduled during the save always sees consistent state.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..constants import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_MAX_SECONDS,
    QUOTA_SCHEMA_VERSION,
    QUOTA_STORAGE_KEY,
)
from ..error_handler import mask_credential
from ..notifications import ChangeListener, ChangeNotifier
from ..storage import KeyValueStorage
from .types import QuotaState

lib_logger = logging.getLogger("relay_library")


def calculate_cooldown(
    previous_level: int,
    server_delay: Optional[float] = None,
    base_seconds: float = BACKOFF_BASE_SECONDS,
    max_seconds: float = BACKOFF_MAX_SECONDS,
) -> Tuple[float, int]:
    """
    Computes the next cooldown and backoff level.

    Args:
        previous_level: Consecutive quota failures so far
        server_delay: Provider-suggested wait in seconds, if any
        base_seconds: Cooldown for level 0
        max_seconds: Ceiling for any cooldown

    Returns:
        (cooldown_seconds, new_level). At the ceiling the level is not
        incremented.
    """
    previous_level = max(0, previous_level)
    cooldown = max(base_seconds, base_seconds * (2 ** previous_level))

    if server_delay and server_delay > cooldown:
        cooldown = server_delay

    if cooldown >= max_seconds:
        return max_seconds, previous_level
    return cooldown, previous_level + 1


class QuotaStateStore:
    """
    Tracks quota exhaustion and backoff per credential.

    Usage:
        store = QuotaStateStore(storage=JsonFileStorage(data_dir))
        await store.initialize()
        await store.mark_exceeded(account.id, "gemini", reset_delay_hint=12.5)
        if store.is_in_cooldown(account.id):
            ...
    """

    def __init__(
        self,
        storage: Optional[KeyValueStorage] = None,
        base_seconds: float = BACKOFF_BASE_SECONDS,
        max_seconds: float = BACKOFF_MAX_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._storage = storage
        self._base_seconds = base_seconds
        self._max_seconds = max_seconds
        self._clock = clock
        self._states: Dict[str, QuotaState] = {}
        self._notifier = ChangeNotifier("quota")
        self._dirty = False
        self._pending_saves: Set[asyncio.Task] = set()
        self._initialized = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def initialize(self) -> None:
        """
        Loads persisted state.

        Credentials whose cooldown already ran out while the process was down
        are healed right away so a restart never extends a cooldown.
        """
        if self._initialized:
            return
        self._initialized = True
        if self._storage is None:
            return

        data = await self._storage.load(QUOTA_STORAGE_KEY)
        if not data:
            return

        version = data.get("schema_version")
        if version != QUOTA_SCHEMA_VERSION:
            lib_logger.warning(
                f"Ignoring stored quota state with schema v{version} "
                f"(expected v{QUOTA_SCHEMA_VERSION})"
            )
            return

        now = self._clock()
        healed = 0
        for record in data.get("states", []):
            if not isinstance(record, dict):
                continue
            state = QuotaState.from_dict(record)
            if state is None:
                continue
            if state.is_expired(now):
                state.heal()
                healed += 1
            self._states[state.credential_id] = state

        lib_logger.info(
            f"Loaded quota state for {len(self._states)} credentials ({healed} healed)"
        )
        if healed:
            await self.save()

    async def save(self) -> bool:
        """Writes the whole table to storage."""
        if self._storage is None:
            self._dirty = False
            return False
        payload = {
            "schema_version": QUOTA_SCHEMA_VERSION,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "states": [state.to_dict() for state in self._states.values()],
        }
        self._dirty = False
        saved = await self._storage.save(QUOTA_STORAGE_KEY, payload)
        if not saved:
            self._dirty = True
        return saved

    async def flush(self) -> None:
        """Waits for background saves and writes any unsaved change."""
        await self._notifier.join()
        if self._pending_saves:
            await asyncio.gather(*list(self._pending_saves), return_exceptions=True)
        if self._dirty:
            await self.save()

    def _schedule_save(self) -> None:
        """Persist from a synchronous code path (lazy expiry)."""
        self._dirty = True
        if self._storage is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop; flush() will pick it up
            return
        task = loop.create_task(self.save())
        self._pending_saves.add(task)
        task.add_done_callback(self._pending_saves.discard)

    # =========================================================================
    # NOTIFICATIONS
    # =========================================================================

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        return self._notifier.subscribe(listener)

    def unsubscribe(self, listener: ChangeListener) -> None:
        self._notifier.unsubscribe(listener)

    def _notify(self, state: QuotaState) -> None:
        self._notifier.emit(state.credential_id, state.provider, state)

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def _get_or_create(self, credential_id: str, provider: str) -> QuotaState:
        state = self._states.get(credential_id)
        if state is None:
            state = QuotaState(credential_id=credential_id, provider=provider)
            self._states[credential_id] = state
        elif provider and not state.provider:
            state.provider = provider
        return state

    async def mark_exceeded(
        self,
        credential_id: str,
        provider: str,
        reset_delay_hint: Optional[float] = None,
        affected_model: Optional[str] = None,
        error: Optional[str] = None,
    ) -> QuotaState:
        """
        Puts a credential into cooldown after a quota-class failure.

        Args:
            credential_id: Account id
            provider: Provider name
            reset_delay_hint: Server suggested wait in seconds; wins when larger
                than the computed backoff
            affected_model: Model that hit the limit (informational)
            error: Error text to keep as last_error

        Returns:
            The updated state
        """
        now = self._clock()
        state = self._get_or_create(credential_id, provider)
        cooldown, new_level = calculate_cooldown(
            state.backoff_level, reset_delay_hint, self._base_seconds, self._max_seconds
        )

        state.quota_exceeded = True
        state.quota_reset_at = now + cooldown
        state.backoff_level = new_level
        state.failure_count += 1
        state.last_failure_at = now
        state.last_error = error or f"Quota exceeded, retry after {round(cooldown)}s"
        if affected_model:
            state.affected_model = affected_model

        lib_logger.info(
            f"Credential {mask_credential(credential_id)} ({provider}) cooling down "
            f"for {cooldown:.1f}s (level {new_level})"
        )
        self._notify(state)
        await self.save()
        return state

    async def clear_exceeded(self, credential_id: str) -> None:
        """Returns a credential to the healthy state. No-op if already healthy."""
        state = self._states.get(credential_id)
        if state is None or (not state.quota_exceeded and state.backoff_level == 0):
            return
        state.heal()
        lib_logger.debug(f"Cleared cooldown for {mask_credential(credential_id)}")
        self._notify(state)
        await self.save()

    async def record_success(self, credential_id: str, provider: str) -> QuotaState:
        """
        Counts a successful request.

        A real success is stronger evidence than the timer, so any cooldown is
        cleared as well.
        """
        state = self._get_or_create(credential_id, provider)
        state.success_count += 1
        state.last_success_at = self._clock()
        if state.quota_exceeded or state.backoff_level:
            state.heal()
        self._notify(state)
        await self.save()
        return state

    async def record_failure(self, credential_id: str, provider: str, message: str) -> QuotaState:
        """Bookkeeping for non-quota failures. Backoff state is left alone."""
        state = self._get_or_create(credential_id, provider)
        state.failure_count += 1
        state.last_failure_at = self._clock()
        state.last_error = message
        self._notify(state)
        await self.save()
        return state

    async def remove(self, credential_id: str) -> None:
        """Drops all state for a credential (used when its account is removed)."""
        state = self._states.pop(credential_id, None)
        if state is None:
            return
        self._notifier.emit(credential_id, state.provider, None)
        await self.save()

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_state(self, credential_id: str) -> Optional[QuotaState]:
        return self._states.get(credential_id)

    def is_in_cooldown(self, credential_id: str) -> bool:
        """
        True while the credential's cooldown is running.

        An expired cooldown is cleared on read, with the same effect as
        clear_exceeded().
        """
        state = self._states.get(credential_id)
        if state is None or not state.quota_exceeded:
            return False
        if state.is_expired(self._clock()):
            state.heal()
            self._notify(state)
            self._schedule_save()
            return False
        return True

    def remaining_cooldown(self, credential_id: str) -> float:
        """Seconds until the cooldown ends, 0 when not cooling down."""
        state = self._states.get(credential_id)
        if state is None or not state.quota_exceeded or state.quota_reset_at is None:
            return 0.0
        return max(0.0, state.quota_reset_at - self._clock())

    def shortest_cooldown_credential(self, provider: str) -> Optional[str]:
        """Among cooling-down credentials of a provider, the one that recovers first."""
        best: Optional[QuotaState] = None
        for state in self._states.values():
            if state.provider != provider or not state.quota_exceeded:
                continue
            if state.quota_reset_at is None:
                continue
            if best is None or state.quota_reset_at < best.quota_reset_at:
                best = state
        return best.credential_id if best else None

    def get_provider_states(self, provider: str) -> List[QuotaState]:
        return [s for s in self._states.values() if s.provider == provider]

    def snapshot(self) -> Dict[str, QuotaState]:
        """Copy of the table, safe to hand to pure selection code."""
        return {
            cid: QuotaState(**state.to_dict()) for cid, state in self._states.items()
        }
