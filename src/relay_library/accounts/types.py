# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Type definitions for the account registry.
"""

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


# =============================================================================
# ENUMS
# =============================================================================


class AuthType(str, Enum):
    """How an account authenticates."""

    API_KEY = "api_key"
    OAUTH = "oauth"
    TOKEN = "token"


class AccountStatus(str, Enum):
    """Lifecycle status of an account."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    ERROR = "error"


# =============================================================================
# ACCOUNT TYPES
# =============================================================================


def generate_account_id(provider: str) -> str:
    return f"{provider}_{uuid.uuid4().hex[:12]}"


@dataclass
class Account:
    """
    One authenticated identity for one provider.

    Secret material is never stored here; it lives in the SecretStore under
    the account id.
    """

    id: str
    display_name: str
    provider: str
    auth_type: AuthType = AuthType.API_KEY
    status: AccountStatus = AccountStatus.ACTIVE
    email: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0
    expires_at: Optional[float] = None  # epoch seconds
    is_default: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_usable(self, now: float) -> bool:
        """Active and not past its expiry."""
        return self.status == AccountStatus.ACTIVE and not self.is_expired(now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["auth_type"] = self.auth_type.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["Account"]:
        if not data.get("id") or not data.get("provider"):
            return None
        try:
            auth_type = AuthType(data.get("auth_type", AuthType.API_KEY.value))
        except ValueError:
            auth_type = AuthType.API_KEY
        try:
            status = AccountStatus(data.get("status", AccountStatus.ACTIVE.value))
        except ValueError:
            status = AccountStatus.ERROR
        return cls(
            id=data["id"],
            display_name=data.get("display_name") or data["id"],
            provider=data["provider"],
            auth_type=auth_type,
            status=status,
            email=data.get("email"),
            created_at=data.get("created_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
            expires_at=data.get("expires_at"),
            is_default=bool(data.get("is_default", False)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class RoutingConfig:
    """
    Per-provider routing.

    ``model_assignments`` pins a model to a credential (set by the user, or
    learned after a successful failover).
    """

    model_assignments: Dict[str, str] = field(default_factory=dict)
    load_balance_enabled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_assignments": dict(self.model_assignments),
            "load_balance_enabled": self.load_balance_enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoutingConfig":
        assignments = data.get("model_assignments") or {}
        return cls(
            model_assignments={str(k): str(v) for k, v in assignments.items() if v},
            load_balance_enabled=bool(data.get("load_balance_enabled", False)),
        )
