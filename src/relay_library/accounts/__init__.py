# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""Credentials, defaults and model routing."""

from .registry import AccountRegistry
from .secrets import EnvSecretStore, MemorySecretStore, SecretStore
from .types import Account, AccountStatus, AuthType, RoutingConfig

__all__ = [
    "Account",
    "AccountRegistry",
    "AccountStatus",
    "AuthType",
    "EnvSecretStore",
    "MemorySecretStore",
    "RoutingConfig",
    "SecretStore",
]
