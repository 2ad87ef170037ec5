# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Candidate ordering for a single request.

build_candidates() is a pure function over a snapshot of accounts, the
provider's routing config and a cooldown predicate. FailoverSelector binds
it to a live registry and quota store.
"""

import logging
import time
from typing import Callable, List, Optional, Sequence

from ..accounts.types import Account, AccountStatus, RoutingConfig

lib_logger = logging.getLogger("relay_library")


def _default_first(pool: Sequence[Account]) -> List[Account]:
    defaults = [a for a in pool if a.is_default]
    return defaults[:1] + [a for a in pool if not defaults or a.id != defaults[0].id]


def build_candidates(
    provider: str,
    model_id: str,
    accounts: Sequence[Account],
    routing: RoutingConfig,
    in_cooldown: Callable[[str], bool],
    now: float,
    include_cooling_fallback: bool = False,
) -> List[Account]:
    """
    Orders the accounts to try for one request.

    1. A usable explicit pin for ``model_id`` goes first.
    2. The pool is every active account, or every account when none is
       active so an erroring credential can still be retried.
    3. Load balancing on: accounts out of cooldown, default first. If that
       leaves nothing, the whole pool in the same order.
    4. Load balancing off: only the default, or every account in
       registration order when there is no default.

    Args:
        provider: Provider whose accounts are being ordered
        model_id: Target model, used for the pin lookup
        accounts: The provider's accounts in registration order
        routing: The provider's routing config
        in_cooldown: Predicate telling whether an account id is cooling down
        now: Current time, for expiry checks
        include_cooling_fallback: With load balancing on, append cooling-down
            accounts after the healthy ones as a last resort

    Returns:
        Accounts to attempt, in order, without duplicates
    """
    accounts = [a for a in accounts if a.provider == provider]
    if not accounts:
        return []

    assigned: Optional[Account] = None
    assigned_id = routing.model_assignments.get(model_id)
    if assigned_id:
        assigned = next((a for a in accounts if a.id == assigned_id), None)
        if assigned is not None and not assigned.is_usable(now):
            lib_logger.debug(
                f"Ignoring pin {model_id} -> {assigned.display_name}: {assigned.status.value}"
            )
            assigned = None

    if not routing.load_balance_enabled:
        if assigned is not None:
            return [assigned]
        default = next((a for a in accounts if a.is_default), None)
        if default is not None:
            return [default]
        return list(accounts)

    pool = [a for a in accounts if a.status == AccountStatus.ACTIVE and not a.is_expired(now)]
    if not pool:
        pool = list(accounts)

    healthy = [a for a in pool if not in_cooldown(a.id)]
    if healthy:
        ordered = _default_first(healthy)
        if include_cooling_fallback:
            ordered += _default_first([a for a in pool if a not in healthy])
    else:
        ordered = _default_first(pool)

    if assigned is not None:
        ordered = [assigned] + [a for a in ordered if a.id != assigned.id]
    return ordered


class FailoverSelector:
    """Builds candidate lists from the live registry and quota store."""

    def __init__(self, registry, quota_store=None, clock: Callable[[], float] = time.time):
        self._registry = registry
        self._quota = quota_store if quota_store is not None else registry.quota_store
        self._clock = clock

    def _in_cooldown(self, account_id: str) -> bool:
        return self._quota is not None and self._quota.is_in_cooldown(account_id)

    def candidates(
        self, provider: str, model_id: str, include_cooling_fallback: bool = False
    ) -> List[Account]:
        return build_candidates(
            provider,
            model_id,
            self._registry.get_accounts(provider),
            self._registry.get_routing(provider),
            self._in_cooldown,
            self._clock(),
            include_cooling_fallback=include_cooling_fallback,
        )

    def select(self, provider: str, model_id: str) -> Optional[Account]:
        candidates = self.candidates(provider, model_id)
        return candidates[0] if candidates else None
