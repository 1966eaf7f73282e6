from __future__ import annotations

import asyncio

import pytest

from tabjar.config import IsolationConfig
from tabjar.cookies import CookieRecord
from tabjar.errors import UnknownSession
from tabjar.server import Core, build_core
from tabjar.storage import MemoryKeyValueStore

from conftest import cookie_header

pytestmark = pytest.mark.asyncio

URL = "https://example.com/account"


async def _bind(core: Core, tab_id: int, session_id: str, url: str = URL) -> list[int]:
    await core.registry.on_tab_created(tab_id, session_id=session_id)
    return await core.registry.on_navigate(tab_id, url)


async def test_new_tab_defaults_to_default_session(core: Core) -> None:
    binding = await core.registry.on_tab_created(1)
    assert binding.session_id == "default"
    assert core.registry.get_tab_session(1) == "default"
    assert core.registry.get_tab_session(404) == "default"


async def test_opened_tab_inherits_opener_session(core: Core) -> None:
    await _bind(core, 1, "work")
    child = await core.registry.on_tab_created(2, opener_tab_id=1)
    assert child.session_id == "work"
    orphan = await core.registry.on_tab_created(3, opener_tab_id=999)
    assert orphan.session_id == "default"


async def test_explicit_unknown_session_is_refused(core: Core) -> None:
    with pytest.raises(UnknownSession):
        await core.registry.on_tab_created(1, session_id="nope")
    assert not core.registry.is_known(1)


async def test_navigation_installs_two_rules(core: Core) -> None:
    ids = await _bind(core, 1, "work")
    assert len(ids) == 2
    assert core.engine.installed_ids() == frozenset(ids)
    assert core.registry.binding(1).active_rule_ids == ids


async def test_default_tab_has_no_rules(core: Core) -> None:
    assert await _bind(core, 1, "default") == []
    assert len(core.engine) == 0
    assert cookie_header(core, 1) == "native=1"


async def test_isolated_tab_never_sends_native_cookies(core: Core) -> None:
    await _bind(core, 1, "work")
    assert cookie_header(core, 1) is None


async def test_switching_sessions_round_trips_the_cookie_header(core: Core) -> None:
    await _bind(core, 1, "work")
    await core.registry.on_cookie_captured(1, "work", CookieRecord("sid", "w", "example.com"))
    assert cookie_header(core, 1) == "sid=w"

    assert await core.registry.set_session(1, "personal") is True
    assert cookie_header(core, 1) is None

    assert await core.registry.set_session(1, "work") is True
    assert cookie_header(core, 1) == "sid=w"
    assert len(core.engine) == 2


async def test_switch_to_default_drops_rules(core: Core) -> None:
    await _bind(core, 1, "work")
    await core.registry.set_session(1, "default")
    assert len(core.engine) == 0
    assert core.registry.binding(1).active_rule_ids == []


async def test_set_session_on_unknown_tab(core: Core) -> None:
    assert await core.registry.set_session(42, "work") is False
    with pytest.raises(UnknownSession):
        await core.registry.set_session(42, "nope")


async def test_removing_a_tab_releases_its_rules(core: Core, kv: MemoryKeyValueStore) -> None:
    await _bind(core, 1, "work")
    await core.registry.on_tab_removed(1)
    assert len(core.engine) == 0
    assert not core.registry.is_known(1)
    assert "1" not in kv.snapshot()["tabSessions"]


async def test_late_navigation_on_closed_tab_is_ignored(core: Core) -> None:
    await _bind(core, 1, "work")
    await core.registry.on_tab_removed(1)
    assert await core.registry.on_navigate(1, URL) == []
    assert len(core.engine) == 0
    assert not core.registry.is_known(1)


async def test_removing_an_unknown_tab_is_harmless(core: Core) -> None:
    await core.registry.on_tab_removed(77)
    assert core.registry.is_closed(77)


async def test_concurrent_navigations_leave_exactly_two_rules(core: Core) -> None:
    await core.registry.on_tab_created(1, session_id="work")
    await asyncio.gather(*(core.registry.on_navigate(1, f"https://example.com/{i}") for i in range(10)))
    binding = core.registry.binding(1)
    assert len(core.engine) == 2
    assert core.engine.installed_ids() == frozenset(binding.active_rule_ids)


async def test_tabs_get_disjoint_rule_ids(core: Core) -> None:
    a, b = await asyncio.gather(_bind(core, 1, "work"), _bind(core, 2, "work"))
    assert not set(a) & set(b)
    assert len(core.engine) == 4


async def test_response_cookies_are_captured_and_applied(core: Core) -> None:
    await _bind(core, 1, "work")
    stored = await core.registry.on_response_headers(
        1,
        URL,
        [("Set-Cookie", "a=1; Path=/"), ("Content-Type", "text/html"), ("set-cookie", "b=2; HttpOnly")],
    )
    assert stored == 2
    assert cookie_header(core, 1) == "a=1; b=2"


async def test_unparsable_set_cookie_is_skipped(core: Core) -> None:
    await _bind(core, 1, "work")
    stored = await core.registry.on_response_headers(1, URL, [("Set-Cookie", "garbage"), ("Set-Cookie", "ok=1")])
    assert stored == 1
    assert cookie_header(core, 1) == "ok=1"


async def test_default_tab_responses_are_not_captured(core: Core) -> None:
    await _bind(core, 1, "default")
    assert await core.registry.on_response_headers(1, URL, [("Set-Cookie", "a=1")]) == 0
    assert await core.store.all_records("default") == []


async def test_captured_cookie_is_shared_by_tabs_of_the_session(core: Core) -> None:
    await _bind(core, 1, "work")
    await _bind(core, 2, "work")
    await _bind(core, 3, "personal")
    await core.registry.on_response_headers(1, URL, [("Set-Cookie", "sid=shared")])

    # Tab 2 picks the cookie up on its next rebuild
    await core.registry.on_navigate(2, URL)
    assert cookie_header(core, 2) == "sid=shared"
    assert cookie_header(core, 3) is None


async def test_refresh_session_tabs(core: Core) -> None:
    await _bind(core, 1, "work")
    await _bind(core, 2, "work")
    await _bind(core, 3, "personal")
    await core.store.put("work", CookieRecord("sid", "x", "example.com"))

    refreshed = await core.registry.refresh_session_tabs("work")

    assert sorted(refreshed) == [1, 2]
    assert cookie_header(core, 1) == cookie_header(core, 2) == "sid=x"


async def test_deleted_session_moves_tabs_to_default(core: Core) -> None:
    await _bind(core, 1, "work")
    await _bind(core, 2, "personal")
    moved = await core.registry.on_session_deleted("work")
    assert moved == [1]
    assert core.registry.get_tab_session(1) == "default"
    assert core.registry.binding(1).active_rule_ids == []
    assert len(core.engine) == 2


async def test_bindings_are_mirrored_to_storage(core: Core, kv: MemoryKeyValueStore) -> None:
    ids = await _bind(core, 5, "work")
    assert kv.snapshot()["tabSessions"]["5"] == {"sessionId": "work", "ruleIds": ids, "url": URL}


async def test_binding_is_a_copy(core: Core) -> None:
    await _bind(core, 1, "work")
    copy = core.registry.binding(1)
    copy.active_rule_ids.clear()
    assert len(core.registry.binding(1).active_rule_ids) == 2


async def test_restore_loads_bindings_without_rules(clock) -> None:
    kv = MemoryKeyValueStore(
        {
            "tabSessions": {
                "4": {"sessionId": "work", "ruleIds": [5, 6], "url": "https://example.com/"},
                "5": {"sessionId": "vanished", "ruleIds": []},
                "junk": {"sessionId": "work"},
            }
        }
    )
    core = await build_core(kv, IsolationConfig(), clock=clock)

    assert core.registry.get_tab_session(4) == "work"
    assert core.registry.binding(4).active_rule_ids == []
    assert core.registry.binding(4).url == "https://example.com/"
    assert core.registry.get_tab_session(5) == "default"
    assert set(kv.snapshot()["tabSessions"]) == {"4", "5"}

    # The next navigation rebuilds the rules
    assert len(await core.registry.on_navigate(4, "https://example.com/")) == 2


async def test_capture_refused_once_session_left_catalog(core: Core, kv: MemoryKeyValueStore) -> None:
    await _bind(core, 1, "work")
    await core.catalog.delete("work")
    await core.store.drop_session("work")

    assert await core.registry.on_response_headers(1, URL, [("Set-Cookie", "sid=late")]) == 0
    assert await core.registry.on_cookie_captured(1, "work", CookieRecord("sid", "late", "example.com")) is False
    assert "work" not in kv.snapshot()["sessionCookies"]

    # A navigation in the gap falls back to default instead of isolating a dead session
    assert await core.registry.on_navigate(1, URL) == []
    assert core.registry.get_tab_session(1) == "default"
    assert len(core.engine) == 0
    assert await core.registry.on_session_deleted("work") == []


async def test_cookie_capture_only_into_the_tabs_live_session(core: Core) -> None:
    await _bind(core, 1, "work")
    await _bind(core, 2, "default")
    record = CookieRecord("sid", "x", "example.com")

    assert await core.registry.on_cookie_captured(2, "default", record) is False
    assert await core.registry.on_cookie_captured(1, "nope", record) is False
    assert await core.registry.on_cookie_captured(1, "personal", record) is False
    assert await core.registry.on_cookie_captured(99, "work", record) is False
    for session_id in ("default", "nope", "personal", "work"):
        assert await core.store.all_records(session_id) == []

    assert await core.registry.on_cookie_captured(1, "work", record) is True
    assert cookie_header(core, 1) == "sid=x"


async def test_closed_tab_memory_is_bounded(core: Core) -> None:
    core.registry.CLOSED_MEMORY = 8
    for tab_id in range(50):
        await _bind(core, tab_id, "work")
        await core.registry.on_tab_removed(tab_id)

    assert [t for t in range(50) if core.registry.is_closed(t)] == list(range(42, 50))
    assert len(core.registry._locks) == 8
    assert len(core.engine) == 0


async def test_tab_lock_outlives_removal(core: Core) -> None:
    lock = core.registry._lock(1)
    await _bind(core, 1, "work")
    await core.registry.on_tab_removed(1)
    assert core.registry._lock(1) is lock


async def test_navigation_queued_behind_removal_stays_a_no_op(core: Core) -> None:
    await _bind(core, 1, "work")
    lock = core.registry._lock(1)
    await lock.acquire()
    try:
        navigation = asyncio.create_task(core.registry.on_navigate(1, URL))
        removal = asyncio.create_task(core.registry.on_tab_removed(1))
        await asyncio.sleep(0)
    finally:
        lock.release()
    await removal
    assert await navigation == []
    assert not core.registry.is_known(1)
    assert len(core.engine) == 0
