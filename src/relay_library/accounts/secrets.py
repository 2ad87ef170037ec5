# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Secret storage boundary.

The registry and orchestrator only ever see secrets through this interface,
keyed by account id. Persistence of secrets is up to the implementation.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

lib_logger = logging.getLogger("relay_library")

Secret = Dict[str, Any]

# OPENAI_API_KEY, OPENAI_API_KEY_2, ANTHROPIC_API_KEY_WORK, ...
_ENV_KEY_PATTERN = re.compile(r"^(?P<provider>[A-Z0-9_]+?)_API_KEY(?:_(?P<suffix>[A-Z0-9_]+))?$")

# Variables that look like provider keys but are not
_IGNORED_ENV_KEYS = {"PROXY_API_KEY", "RELAY_API_KEY"}


class SecretStore(ABC):
    """Opaque secret storage keyed by account id."""

    @abstractmethod
    async def get(self, account_id: str) -> Optional[Secret]:
        """Return the secret for an account, or None."""

    @abstractmethod
    async def set(self, account_id: str, secret: Secret) -> None:
        """Store or replace the secret for an account."""

    @abstractmethod
    async def delete(self, account_id: str) -> None:
        """Forget the secret for an account. Missing ids are ignored."""


class MemorySecretStore(SecretStore):
    """Keeps secrets in process memory only."""

    def __init__(self, initial: Optional[Dict[str, Secret]] = None):
        self._secrets: Dict[str, Secret] = {k: dict(v) for k, v in (initial or {}).items()}

    async def get(self, account_id: str) -> Optional[Secret]:
        secret = self._secrets.get(account_id)
        return dict(secret) if secret is not None else None

    async def set(self, account_id: str, secret: Secret) -> None:
        self._secrets[account_id] = dict(secret)

    async def delete(self, account_id: str) -> None:
        self._secrets.pop(account_id, None)


@dataclass(frozen=True)
class DiscoveredKey:
    account_id: str
    provider: str
    env_name: str


class EnvSecretStore(MemorySecretStore):
    """
    API keys discovered from environment variables.

    ``<PROVIDER>_API_KEY`` and ``<PROVIDER>_API_KEY_<SUFFIX>`` become one
    account each, with ids like ``openai_env_1`` / ``openai_env_work``.
    Values set at runtime are kept in memory and are not written back to the
    environment.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        super().__init__()
        self._discovered: List[DiscoveredKey] = []
        self._scan(os.environ if environ is None else environ)

    def _scan(self, environ: Mapping[str, str]) -> None:
        for env_name in sorted(environ):
            value = environ[env_name]
            if not value or env_name in _IGNORED_ENV_KEYS:
                continue
            match = _ENV_KEY_PATTERN.match(env_name)
            if not match:
                continue
            provider = match.group("provider").lower()
            suffix = (match.group("suffix") or "1").lower()
            account_id = f"{provider}_env_{suffix}"
            self._secrets[account_id] = {"api_key": value}
            self._discovered.append(DiscoveredKey(account_id, provider, env_name))

        if self._discovered:
            providers = sorted({d.provider for d in self._discovered})
            lib_logger.info(
                f"Discovered {len(self._discovered)} API key(s) for: {', '.join(providers)}"
            )

    @property
    def discovered(self) -> List[DiscoveredKey]:
        return list(self._discovered)
