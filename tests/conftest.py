import json
import sys
from pathlib import Path
from typing import AsyncIterator, Union

import pytest
import pytest_asyncio


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from relay_library.accounts.registry import AccountRegistry
from relay_library.accounts.secrets import MemorySecretStore
from relay_library.quota.store import QuotaStateStore
from relay_library.storage import MemoryStorage
from relay_library.streaming.events import ThinkingEvent, coalesce_events
from relay_library.streaming.normalizer import normalize_stream


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def chunks(*parts: Union[str, bytes]) -> AsyncIterator[Union[str, bytes]]:
    for part in parts:
        yield part


def sse_body(*payloads: dict, done: bool = True) -> str:
    body = "".join(f"data: {json.dumps(p)}\n\n" for p in payloads)
    return body + ("data: [DONE]\n\n" if done else "")


def strip_thinking_ids(events: list) -> list:
    """Thinking ids are random; replace them by their order of appearance."""
    mapping = {}
    result = []
    for event in events:
        if isinstance(event, ThinkingEvent):
            mapped = mapping.setdefault(event.id, f"span_{len(mapping)}")
            event = ThinkingEvent(mapped, event.delta, event.signature)
        result.append(event)
    return result


async def collect(dialect: str, body: Union[str, bytes], size: int = 0, **kwargs) -> list:
    """Normalizes ``body`` fed in pieces of ``size`` (whole when 0)."""
    parts = [body[i : i + size] for i in range(0, len(body), size)] if size else [body]
    events = await normalize_stream(dialect, chunks(*parts), **kwargs)
    return strip_thinking_ids(coalesce_events(events))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest_asyncio.fixture
async def quota_store(storage: MemoryStorage, clock: FakeClock) -> QuotaStateStore:
    store = QuotaStateStore(storage, base_seconds=1.0, max_seconds=60.0, clock=clock)
    await store.initialize()
    return store


@pytest_asyncio.fixture
async def registry(
    storage: MemoryStorage, quota_store: QuotaStateStore, clock: FakeClock
) -> AccountRegistry:
    registry = AccountRegistry(storage, MemorySecretStore(), quota_store, clock=clock)
    await registry.initialize()
    return registry
