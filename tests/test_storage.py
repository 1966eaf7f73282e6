from __future__ import annotations

import json

import pytest

from tabjar.sessions import RGBColor, SessionCatalog
from tabjar.storage import DEFAULT_SESSIONS, JsonFileKeyValueStore, MemoryKeyValueStore, initialize

pytestmark = pytest.mark.asyncio


async def test_memory_store_hands_out_copies() -> None:
    kv = MemoryKeyValueStore({"sessions": [{"id": "a"}]})
    got = await kv.get(["sessions", "missing"])
    assert got == {"sessions": [{"id": "a"}]}
    got["sessions"].append({"id": "b"})
    assert (await kv.get(["sessions"]))["sessions"] == [{"id": "a"}]


async def test_json_store_persists_across_instances(tmp_path) -> None:
    path = tmp_path / "state" / "tabjar.json"
    first = JsonFileKeyValueStore(str(path))
    await first.set({"ruleIdCounter": 301, "tabSessions": {"1": {"sessionId": "work", "ruleIds": []}}})

    assert json.loads(path.read_text())["ruleIdCounter"] == 301
    second = JsonFileKeyValueStore(str(path))
    assert await second.get(["ruleIdCounter", "tabSessions"]) == {
        "ruleIdCounter": 301,
        "tabSessions": {"1": {"sessionId": "work", "ruleIds": []}},
    }
    assert [p.name for p in path.parent.iterdir()] == ["tabjar.json"]


async def test_json_store_starts_empty_without_a_file(tmp_path) -> None:
    kv = JsonFileKeyValueStore(str(tmp_path / "none.json"))
    assert await kv.get(["sessions"]) == {}


async def test_json_store_rejects_non_object_documents(tmp_path) -> None:
    path = tmp_path / "bad.json"
    path.write_text("[1, 2, 3]")
    with pytest.raises(ValueError):
        await JsonFileKeyValueStore(str(path)).get(["sessions"])


async def test_initialize_seeds_missing_keys_only() -> None:
    kv = MemoryKeyValueStore({"ruleIdCounter": 501, "sessionCookies": {"work": {}}})
    await initialize(kv)
    data = kv.snapshot()
    assert data["sessions"] == DEFAULT_SESSIONS
    assert data["tabSessions"] == {}
    assert data["sessionCookies"] == {"work": {}}
    assert data["ruleIdCounter"] == 501


async def test_catalog_recreates_lost_default(clock) -> None:
    kv = MemoryKeyValueStore({"sessions": [{"id": "work", "name": "Work", "color": "#f9a825", "icon": "briefcase"}]})
    catalog = SessionCatalog(kv, clock=clock)
    sessions = await catalog.all()
    assert [s.id for s in sessions] == ["default", "work"]
    assert sessions[1].color == RGBColor(0xF9, 0xA8, 0x25)
    assert await catalog.exists("default")
    assert await catalog.delete("default") is False
