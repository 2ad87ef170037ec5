# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
from dataclasses import dataclass
from typing import Optional

from .accounts.registry import AccountRegistry
from .accounts.secrets import EnvSecretStore, SecretStore
from .client.orchestrator import RequestOrchestrator
from .config import RelayConfig
from .failure_logger import configure_failure_logger
from .quota.store import QuotaStateStore
from .selection.failover import FailoverSelector
from .storage import JsonFileStorage, KeyValueStorage

lib_logger = logging.getLogger("relay_library")


@dataclass
class RelayContext:
    """Everything one process needs, built once and passed around."""

    config: RelayConfig
    quota_store: QuotaStateStore
    registry: AccountRegistry
    selector: FailoverSelector
    orchestrator: RequestOrchestrator

    @classmethod
    async def create(
        cls,
        config: Optional[RelayConfig] = None,
        storage: Optional[KeyValueStorage] = None,
        secret_store: Optional[SecretStore] = None,
        http_transport=None,
        import_env_keys: bool = True,
    ) -> "RelayContext":
        """
        Builds and initializes the store, registry, selector and orchestrator.

        Args:
            config: Settings, defaults to RelayConfig.from_env()
            storage: Persistence, defaults to JSON files under config.data_dir
            secret_store: Secrets, defaults to API keys from the environment
            http_transport: httpx transport override for every client
            import_env_keys: Register environment API keys as accounts
        """
        config = config or RelayConfig.from_env()
        if storage is None:
            storage = JsonFileStorage(config.data_dir)
        if secret_store is None:
            secret_store = EnvSecretStore()
        if config.enable_failure_log:
            configure_failure_logger(config.logs_dir)

        quota_store = QuotaStateStore(
            storage,
            base_seconds=config.backoff_base_seconds,
            max_seconds=config.backoff_max_seconds,
        )
        await quota_store.initialize()

        registry = AccountRegistry(
            storage,
            secret_store,
            quota_store,
            load_balance_default_providers=config.load_balance_default_providers,
        )
        await registry.initialize()

        if import_env_keys and isinstance(secret_store, EnvSecretStore):
            added = await registry.sync_from_environment(secret_store)
            if added:
                lib_logger.info(f"Imported {added} API key(s) from the environment")

        selector = FailoverSelector(registry, quota_store)
        orchestrator = RequestOrchestrator(
            registry,
            quota_store,
            selector=selector,
            config=config,
            http_transport=http_transport,
        )
        return cls(config, quota_store, registry, selector, orchestrator)

    async def aclose(self) -> None:
        await self.orchestrator.aclose()
        await self.quota_store.flush()
