# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Type definitions for quota tracking.
"""

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional


@dataclass
class QuotaState:
    """
    Quota and backoff state for a single credential.

    ``quota_exceeded`` implies ``quota_reset_at`` is set. Once the reset time
    has passed the state reads as healthy even before it is cleared.
    """

    credential_id: str
    provider: str
    quota_exceeded: bool = False
    quota_reset_at: Optional[float] = None  # epoch seconds
    backoff_level: int = 0
    affected_model: Optional[str] = None
    success_count: int = 0
    failure_count: int = 0
    last_success_at: Optional[float] = None
    last_failure_at: Optional[float] = None
    last_error: Optional[str] = None

    def heal(self) -> None:
        """Reset to the healthy state, keeping counters."""
        self.quota_exceeded = False
        self.quota_reset_at = None
        self.backoff_level = 0
        self.last_error = None

    def is_expired(self, now: float) -> bool:
        """True when an exceeded state has outlived its reset time."""
        return (
            self.quota_exceeded
            and self.quota_reset_at is not None
            and now >= self.quota_reset_at
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["QuotaState"]:
        """Build from a stored record. Returns None for records without an id."""
        credential_id = data.get("credential_id")
        if not credential_id:
            return None
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values.setdefault("provider", "")
        state = cls(**values)
        if state.quota_exceeded and state.quota_reset_at is None:
            # Broken record; an exceeded state without a reset time never expires
            state.heal()
        return state
