# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""Quota and backoff tracking per credential."""

from .store import QuotaStateStore, calculate_cooldown
from .types import QuotaState

__all__ = ["QuotaState", "QuotaStateStore", "calculate_cooldown"]
