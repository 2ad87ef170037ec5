# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
from typing import TYPE_CHECKING

from .config import RelayConfig

logging.getLogger("relay_library").addHandler(logging.NullHandler())

# For type checkers, import the heavy modules statically.
# At runtime they are lazy-loaded via __getattr__ (litellm is slow to import).
if TYPE_CHECKING:
    from .accounts import Account, AccountRegistry, AccountStatus
    from .client import ChatRequest, RequestOrchestrator, RequestResult
    from .context import RelayContext
    from .quota import QuotaStateStore
    from .selection import FailoverSelector
    from .streaming import StreamNormalizer

__all__ = [
    "RelayConfig",
    "RelayContext",
    "Account",
    "AccountRegistry",
    "AccountStatus",
    "QuotaStateStore",
    "FailoverSelector",
    "StreamNormalizer",
    "ChatRequest",
    "RequestOrchestrator",
    "RequestResult",
]

_LAZY = {
    "RelayContext": ".context",
    "Account": ".accounts",
    "AccountRegistry": ".accounts",
    "AccountStatus": ".accounts",
    "QuotaStateStore": ".quota",
    "FailoverSelector": ".selection",
    "StreamNormalizer": ".streaming",
    "ChatRequest": ".client",
    "RequestOrchestrator": ".client",
    "RequestResult": ".client",
}


def __getattr__(name):
    """Lazy-load the public classes to keep `import relay_library` fast."""
    module_name = _LAZY.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    import importlib

    module = importlib.import_module(module_name, __name__)
    return getattr(module, name)
