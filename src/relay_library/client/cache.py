# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

from .transport import HttpTransport

lib_logger = logging.getLogger("relay_library")

TransportFactory = Callable[[], Awaitable[HttpTransport]]


class ClientCache:
    """
    Transports keyed by (provider, credential_id).

    Entries live until invalidated; the orchestrator invalidates a
    credential when its account changes or is removed.
    """

    def __init__(self):
        self._clients: Dict[Tuple[str, str], HttpTransport] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    async def get(
        self, provider: str, credential_id: str, factory: TransportFactory
    ) -> HttpTransport:
        key = (provider, credential_id)
        transport = self._clients.get(key)
        if transport is not None:
            return transport
        # Concurrent misses on one key must share a single transport
        async with self._locks.setdefault(key, asyncio.Lock()):
            transport = self._clients.get(key)
            if transport is None:
                transport = await factory()
                self._clients[key] = transport
                lib_logger.debug(f"Created transport for {provider}/{credential_id}")
        return transport

    async def invalidate(self, credential_id: str, provider: Optional[str] = None) -> int:
        """Closes and drops cached transports of a credential. Returns how many."""
        keys = [
            key
            for key in self._clients
            if key[1] == credential_id and (provider is None or key[0] == provider)
        ]
        for key in keys:
            await self._clients.pop(key).close()
        if keys:
            lib_logger.debug(f"Invalidated {len(keys)} cached transport(s) for {credential_id}")
        return len(keys)

    async def aclose(self) -> None:
        clients, self._clients = self._clients, {}
        for transport in clients.values():
            await transport.close()

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._clients

    def __len__(self) -> int:
        return len(self._clients)
