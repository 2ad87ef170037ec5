# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Runtime configuration for the relay library.

Configuration is read from environment variables. The CLI loads a ``.env``
file with python-dotenv before calling ``RelayConfig.from_env()``, so the
library itself never touches the file system to find settings.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from .constants import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_MAX_SECONDS,
    DEFAULT_API_BASES,
    DEFAULT_PROVIDER_DIALECTS,
    DEFAULT_LOAD_BALANCE_PROVIDERS,
    DEFAULT_RATE_LIMIT_REQUESTS,
    DEFAULT_RATE_LIMIT_WINDOW_MS,
    DEFAULT_REQUEST_TIMEOUT,
    FALLBACK_DIALECT,
)


def _env_bool(key: str, default: bool = False) -> bool:
    """Get boolean from environment variable."""
    return os.getenv(key, str(default).lower()).lower() in ("true", "1", "yes")


def _env_int(key: str, default: int) -> int:
    """Get integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    """Get float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _env_list(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """Get a comma separated list from environment variable."""
    raw = os.getenv(key)
    if raw is None:
        return default
    return tuple(item.strip().lower() for item in raw.split(",") if item.strip())


def get_default_data_dir() -> Path:
    """Directory used for persisted state when nothing else is configured."""
    return Path(os.getenv("RELAY_DATA_DIR", Path.cwd() / "relay_data")).resolve()


@dataclass
class RelayConfig:
    """
    Settings shared by the store, registry and orchestrator.

    Attributes:
        data_dir: Where accounts.json, quota_state.json and logs/ live
        backoff_base_seconds: First quota cooldown
        backoff_max_seconds: Cooldown ceiling
        request_timeout: Read timeout for streaming requests (seconds)
        rate_limit_requests: Requests allowed per provider per window
        rate_limit_window_ms: Length of the throttle window
        enable_failure_log: Write failures.log with JSON records
        load_balance_default_providers: Providers that balance by default
        api_bases: Provider -> base URL
        dialects: Provider -> wire dialect tag
    """

    data_dir: Path = field(default_factory=get_default_data_dir)
    backoff_base_seconds: float = BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = BACKOFF_MAX_SECONDS
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    rate_limit_requests: int = DEFAULT_RATE_LIMIT_REQUESTS
    rate_limit_window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS
    enable_failure_log: bool = True
    load_balance_default_providers: Tuple[str, ...] = DEFAULT_LOAD_BALANCE_PROVIDERS
    api_bases: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_API_BASES))
    dialects: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_PROVIDER_DIALECTS)
    )

    @classmethod
    def from_env(cls, data_dir: Optional[Path] = None) -> "RelayConfig":
        """Build a config from the current environment."""
        api_bases = dict(DEFAULT_API_BASES)
        # Same convention as custom providers: FOO_API_BASE=https://...
        for key, value in os.environ.items():
            if key.endswith("_API_BASE") and value:
                provider = key[: -len("_API_BASE")].lower()
                api_bases[provider] = value.rstrip("/")

        dialects = dict(DEFAULT_PROVIDER_DIALECTS)
        for key, value in os.environ.items():
            if key.endswith("_DIALECT") and value and not key.startswith("RELAY_"):
                dialects[key[: -len("_DIALECT")].lower()] = value.strip().lower()

        return cls(
            data_dir=Path(data_dir).resolve() if data_dir else get_default_data_dir(),
            backoff_base_seconds=_env_float("RELAY_BACKOFF_BASE", BACKOFF_BASE_SECONDS),
            backoff_max_seconds=_env_float("RELAY_BACKOFF_MAX", BACKOFF_MAX_SECONDS),
            request_timeout=_env_float("RELAY_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            rate_limit_requests=_env_int(
                "RELAY_RATE_LIMIT_REQUESTS", DEFAULT_RATE_LIMIT_REQUESTS
            ),
            rate_limit_window_ms=_env_int(
                "RELAY_RATE_LIMIT_WINDOW_MS", DEFAULT_RATE_LIMIT_WINDOW_MS
            ),
            enable_failure_log=_env_bool("RELAY_FAILURE_LOG", True),
            load_balance_default_providers=_env_list(
                "RELAY_LOAD_BALANCE_PROVIDERS", DEFAULT_LOAD_BALANCE_PROVIDERS
            ),
            api_bases=api_bases,
            dialects=dialects,
        )

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def accounts_file(self) -> Path:
        return self.data_dir / "accounts.json"

    @property
    def quota_file(self) -> Path:
        return self.data_dir / "quota_state.json"

    def api_base_for(self, provider: str) -> Optional[str]:
        return self.api_bases.get(provider.lower())

    def dialect_for(self, provider: str) -> str:
        return self.dialects.get(provider.lower(), FALLBACK_DIALECT)
