# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Account registry.

Owns every Account, the per-provider default flag, and the per-provider
RoutingConfig (model pins + load balancing switch). Mutations are applied
in memory first and then persisted, so readers never observe a provider
with two defaults.
"""

import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

from ..constants import (
    ACCOUNTS_SCHEMA_VERSION,
    ACCOUNTS_STORAGE_KEY,
    DEFAULT_LOAD_BALANCE_PROVIDERS,
)
from ..error_handler import AccountNotFoundError, MissingCredentialsError, mask_credential
from ..notifications import ChangeListener, ChangeNotifier
from ..storage import KeyValueStorage
from .secrets import EnvSecretStore, MemorySecretStore, Secret, SecretStore
from .types import Account, AccountStatus, AuthType, RoutingConfig, generate_account_id

lib_logger = logging.getLogger("relay_library")

# Fields update_account() may change directly
_UPDATABLE_FIELDS = {"display_name", "status", "email", "expires_at", "metadata", "auth_type"}


class AccountRegistry:
    """
    In-memory table of credentials per provider.

    Usage:
        registry = AccountRegistry(storage, secret_store, quota_store)
        await registry.initialize()
        account = await registry.add_account("openai", "Work key", secret={"api_key": "sk-..."})
        await registry.set_assigned_credential("openai", "gpt-4o", account.id)
    """

    def __init__(
        self,
        storage: Optional[KeyValueStorage] = None,
        secret_store: Optional[SecretStore] = None,
        quota_store=None,
        load_balance_default_providers: Iterable[str] = DEFAULT_LOAD_BALANCE_PROVIDERS,
        clock: Callable[[], float] = time.time,
    ):
        self._storage = storage
        self._secrets = secret_store or MemorySecretStore()
        self._quota = quota_store
        self._load_balance_defaults = {p.lower() for p in load_balance_default_providers}
        self._clock = clock
        # Insertion order doubles as registration order
        self._accounts: Dict[str, Account] = {}
        self._routing: Dict[str, RoutingConfig] = {}
        self._notifier = ChangeNotifier("accounts")
        self._initialized = False

    @property
    def secret_store(self) -> SecretStore:
        return self._secrets

    @property
    def quota_store(self):
        return self._quota

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    async def initialize(self) -> None:
        """Loads accounts and routing from storage (once)."""
        if self._initialized:
            return
        self._initialized = True
        if self._storage is None:
            return

        data = await self._storage.load(ACCOUNTS_STORAGE_KEY)
        if not data:
            return
        version = data.get("schema_version")
        if version != ACCOUNTS_SCHEMA_VERSION:
            lib_logger.warning(
                f"Ignoring stored accounts with schema v{version} "
                f"(expected v{ACCOUNTS_SCHEMA_VERSION})"
            )
            return

        for record in data.get("accounts", []):
            if not isinstance(record, dict):
                continue
            account = Account.from_dict(record)
            if account is not None:
                self._accounts[account.id] = account

        for provider, routing in (data.get("routing") or {}).items():
            if isinstance(routing, dict):
                self._routing[provider] = RoutingConfig.from_dict(routing)

        # Trust the explicit active map over stale per-account flags
        for provider, account_id in (data.get("active") or {}).items():
            if account_id in self._accounts:
                self._set_default_in_memory(provider, account_id)
        for provider in self.get_providers():
            self._repair_default(provider)

        lib_logger.info(
            f"Loaded {len(self._accounts)} accounts for {len(self.get_providers())} providers"
        )

    async def save(self) -> bool:
        if self._storage is None:
            return False
        active = {}
        for provider in self.get_providers():
            default = self.get_default(provider)
            if default:
                active[provider] = default.id
        payload = {
            "schema_version": ACCOUNTS_SCHEMA_VERSION,
            "accounts": [a.to_dict() for a in self._accounts.values()],
            "active": active,
            "routing": {p: r.to_dict() for p, r in self._routing.items()},
        }
        return await self._storage.save(ACCOUNTS_STORAGE_KEY, payload)

    # =========================================================================
    # NOTIFICATIONS
    # =========================================================================

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        return self._notifier.subscribe(listener)

    def unsubscribe(self, listener: ChangeListener) -> None:
        self._notifier.unsubscribe(listener)

    # =========================================================================
    # CRUD
    # =========================================================================

    async def add_account(
        self,
        provider: str,
        display_name: str,
        auth_type: AuthType = AuthType.API_KEY,
        secret: Optional[Secret] = None,
        email: Optional[str] = None,
        expires_at: Optional[float] = None,
        account_id: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> Account:
        """
        Registers a new account.

        The first account of a provider becomes its default and is active.

        Raises:
            ValueError: If account_id is already registered
        """
        account_id = account_id or generate_account_id(provider)
        if account_id in self._accounts:
            raise ValueError(f"Account already exists: {account_id}")

        now = self._clock()
        account = Account(
            id=account_id,
            display_name=display_name,
            provider=provider,
            auth_type=auth_type,
            status=AccountStatus.ACTIVE,
            email=email,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
            is_default=not self.get_accounts(provider),
            metadata=dict(metadata or {}),
        )
        self._accounts[account.id] = account

        if secret is not None:
            await self._secrets.set(account.id, secret)

        lib_logger.info(
            f"Added {provider} account '{display_name}' ({mask_credential(account.id)})"
            + (" as default" if account.is_default else "")
        )
        self._notifier.emit(account.id, provider, account)
        await self.save()
        return account

    async def update_account(self, account_id: str, **changes) -> Account:
        """
        Updates mutable fields of an account.

        ``is_default=True`` is accepted and routed through switch_active so the
        one-default invariant holds.
        """
        account = self._require(account_id)
        make_default = changes.pop("is_default", None)
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update account fields: {', '.join(sorted(unknown))}")

        for name, value in changes.items():
            if name == "status" and not isinstance(value, AccountStatus):
                value = AccountStatus(value)
            if name == "auth_type" and not isinstance(value, AuthType):
                value = AuthType(value)
            setattr(account, name, value)
        account.updated_at = self._clock()

        if make_default:
            await self.switch_active(account.provider, account.id)
            return account

        self._notifier.emit(account.id, account.provider, account)
        await self.save()
        return account

    async def set_status(self, account_id: str, status: AccountStatus) -> Account:
        return await self.update_account(account_id, status=status)

    async def remove_account(self, account_id: str) -> bool:
        """
        Removes an account, its routing pins, quota state and secret.

        If it was the default, the first remaining account of the provider is
        promoted.
        """
        account = self._accounts.pop(account_id, None)
        if account is None:
            return False
        provider = account.provider

        routing = self._routing.get(provider)
        if routing:
            pruned = [m for m, cid in routing.model_assignments.items() if cid == account_id]
            for model_id in pruned:
                del routing.model_assignments[model_id]
            if pruned:
                lib_logger.debug(f"Pruned {len(pruned)} model pin(s) for removed account")

        if account.is_default:
            remaining = self.get_accounts(provider)
            if remaining:
                remaining[0].is_default = True
                remaining[0].updated_at = self._clock()
                self._notifier.emit(remaining[0].id, provider, remaining[0])

        await self._secrets.delete(account_id)
        if self._quota is not None:
            await self._quota.remove(account_id)

        lib_logger.info(f"Removed {provider} account {mask_credential(account_id)}")
        self._notifier.emit(account_id, provider, None)
        await self.save()
        return True

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._accounts.get(account_id)

    def get_accounts(self, provider: str) -> List[Account]:
        """Accounts of a provider in registration order."""
        return [a for a in self._accounts.values() if a.provider == provider]

    def get_all_accounts(self) -> List[Account]:
        return list(self._accounts.values())

    def get_providers(self) -> List[str]:
        seen: Dict[str, None] = {}
        for account in self._accounts.values():
            seen.setdefault(account.provider, None)
        return list(seen)

    def get_default(self, provider: str) -> Optional[Account]:
        for account in self._accounts.values():
            if account.provider == provider and account.is_default:
                return account
        return None

    async def get_credentials(self, account_id: str) -> Secret:
        """
        Fetches the secret for an account.

        Raises:
            MissingCredentialsError: If the secret store has nothing for it
        """
        secret = await self._secrets.get(account_id)
        if not secret:
            raise MissingCredentialsError(account_id)
        return secret

    def _require(self, account_id: str) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    # =========================================================================
    # DEFAULT / ACTIVE
    # =========================================================================

    def _set_default_in_memory(self, provider: str, account_id: str) -> None:
        for account in self._accounts.values():
            if account.provider == provider:
                account.is_default = account.id == account_id

    def _repair_default(self, provider: str) -> None:
        """Restores the single-default invariant after loading."""
        accounts = self.get_accounts(provider)
        defaults = [a for a in accounts if a.is_default]
        if len(defaults) == 1:
            return
        chosen = defaults[0] if defaults else (accounts[0] if accounts else None)
        if chosen is not None:
            self._set_default_in_memory(provider, chosen.id)

    async def switch_active(self, provider: str, account_id: str) -> Account:
        """
        Makes an account the provider's default (and active).

        The old default is unmarked in the same step, before anything is
        awaited.
        """
        account = self._require(account_id)
        if account.provider != provider:
            raise ValueError(f"Account {account_id} belongs to {account.provider}, not {provider}")

        previous = self.get_default(provider)
        self._set_default_in_memory(provider, account_id)
        if account.status != AccountStatus.ACTIVE:
            account.status = AccountStatus.ACTIVE
        account.updated_at = self._clock()

        if previous is not None and previous.id != account_id:
            self._notifier.emit(previous.id, provider, previous)
        self._notifier.emit(account.id, provider, account)
        lib_logger.info(f"Switched {provider} default to {account.display_name}")
        await self.save()
        return account

    # =========================================================================
    # AVAILABILITY
    # =========================================================================

    def _in_cooldown(self, account_id: str) -> bool:
        return self._quota is not None and self._quota.is_in_cooldown(account_id)

    def get_available(self, provider: str) -> List[Account]:
        """Active, unexpired accounts that are not cooling down."""
        now = self._clock()
        return [
            a
            for a in self.get_accounts(provider)
            if a.is_usable(now) and not self._in_cooldown(a.id)
        ]

    def get_next_available(
        self, provider: str, current_id: Optional[str] = None
    ) -> Optional[Account]:
        """
        Round-robin over available accounts.

        Returns the successor of ``current_id`` when it is available and not
        last, otherwise the first available account. With nothing available
        the account whose cooldown ends soonest is returned.
        """
        available = self.get_available(provider)
        if available:
            ids = [a.id for a in available]
            if current_id in ids:
                index = ids.index(current_id)
                if index < len(available) - 1:
                    return available[index + 1]
            return available[0]

        if self._quota is not None:
            fallback_id = self._quota.shortest_cooldown_credential(provider)
            if fallback_id:
                return self._accounts.get(fallback_id)
        return None

    # =========================================================================
    # ROUTING
    # =========================================================================

    def get_routing(self, provider: str) -> RoutingConfig:
        routing = self._routing.get(provider)
        if routing is None:
            routing = RoutingConfig(
                load_balance_enabled=provider.lower() in self._load_balance_defaults
            )
            self._routing[provider] = routing
        return routing

    def get_assigned_credential(self, provider: str, model_id: str) -> Optional[str]:
        routing = self._routing.get(provider)
        if routing is None:
            return None
        return routing.model_assignments.get(model_id)

    async def set_assigned_credential(
        self, provider: str, model_id: str, account_id: Optional[str]
    ) -> None:
        """Pins ``model_id`` to an account, or clears the pin with None."""
        routing = self.get_routing(provider)
        if account_id is None:
            previous = routing.model_assignments.pop(model_id, None)
            if previous is None:
                return
            self._notifier.emit(previous, provider, routing)
        else:
            account = self._require(account_id)
            if account.provider != provider:
                raise ValueError(
                    f"Account {account_id} belongs to {account.provider}, not {provider}"
                )
            if routing.model_assignments.get(model_id) == account_id:
                return
            routing.model_assignments[model_id] = account_id
            self._notifier.emit(account_id, provider, routing)
        await self.save()

    def is_load_balance_enabled(self, provider: str) -> bool:
        return self.get_routing(provider).load_balance_enabled

    async def set_load_balance_enabled(self, provider: str, enabled: bool) -> None:
        routing = self.get_routing(provider)
        if routing.load_balance_enabled == enabled:
            return
        routing.load_balance_enabled = enabled
        lib_logger.info(f"Load balancing for {provider}: {'on' if enabled else 'off'}")
        self._notifier.emit("", provider, routing)
        await self.save()

    # =========================================================================
    # ENVIRONMENT IMPORT
    # =========================================================================

    async def sync_from_environment(self, env_store: EnvSecretStore) -> int:
        """
        Registers an account for every API key found in the environment.

        Already-registered ids are left untouched. Returns the number added.
        """
        added = 0
        for key in env_store.discovered:
            if key.account_id in self._accounts:
                continue
            secret = await env_store.get(key.account_id)
            await self.add_account(
                key.provider,
                display_name=key.env_name,
                auth_type=AuthType.API_KEY,
                secret=secret,
                account_id=key.account_id,
                metadata={"source": "env", "env_name": key.env_name},
            )
            added += 1
        return added
