"""
Shared fixtures: an in-memory store, a controllable clock and a fully
wired core.  Nothing here touches the network or the filesystem.
"""

from __future__ import annotations

import pytest
import pytest_asyncio

from tabjar.config import IsolationConfig
from tabjar.server import Core, build_core
from tabjar.storage import MemoryKeyValueStore

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest_asyncio.fixture
async def core(kv: MemoryKeyValueStore, clock: FakeClock) -> Core:
    return await build_core(kv, IsolationConfig(), clock=clock)


def cookie_header(core: Core, tab_id: int) -> str | None:
    """The Cookie value the installed rules would send for *tab_id*."""
    headers = core.engine.apply_request_headers(tab_id, "main_frame", [("cookie", "native=1")])
    values = [v for k, v in headers if k.lower() == "cookie"]
    return values[0] if values else None
