from __future__ import annotations

import pytest
from mitmproxy import http
from mitmproxy.test import tflow

from tabjar.addon import TabJarAddOn, resource_type_of
from tabjar.cookies import CookieRecord
from tabjar.server import Core

pytestmark = pytest.mark.asyncio

URL = "https://example.com/inbox"


def _addon(core: Core) -> TabJarAddOn:
    return TabJarAddOn(core.dispatcher, core.registry, core.engine)


def _flow(tab_id: str | None = None, dest: str = "document", opener: str | None = None) -> http.HTTPFlow:
    f = tflow.tflow(resp=True)
    f.request.url = URL
    f.request.headers["Sec-Fetch-Dest"] = dest
    f.request.headers["Cookie"] = "native=1"
    if tab_id is not None:
        f.request.headers["X-Tab-Id"] = tab_id
    if opener is not None:
        f.request.headers["X-Opener-Tab-Id"] = opener
    return f


@pytest.mark.parametrize(
    "fields, expected",
    [
        ([(b"Sec-Fetch-Dest", b"document")], "main_frame"),
        ([(b"Sec-Fetch-Dest", b"iframe")], "sub_frame"),
        ([(b"Sec-Fetch-Dest", b"empty")], "xmlhttprequest"),
        ([(b"Sec-Fetch-Dest", b"image")], "image"),
        ([(b"Sec-Fetch-Dest", b"manifest")], "other"),
        ([(b"Upgrade", b"websocket"), (b"Sec-Fetch-Dest", b"websocket")], "websocket"),
        ([(b"Accept", b"text/html,application/xhtml+xml")], "main_frame"),
        ([(b"Accept", b"*/*")], "other"),
    ],
)
async def test_resource_type_of(fields, expected) -> None:
    assert resource_type_of(http.Headers(fields)) == expected


async def test_untagged_requests_pass_through(core: Core) -> None:
    f = _flow()
    await _addon(core).request(f)
    assert f.request.headers["Cookie"] == "native=1"
    assert "tabjar.tab_id" not in f.metadata
    assert not core.registry.is_known(0)


async def test_tab_headers_are_stripped(core: Core) -> None:
    f = _flow("1", opener="0")
    await _addon(core).request(f)
    assert "X-Tab-Id" not in f.request.headers
    assert "X-Opener-Tab-Id" not in f.request.headers
    assert f.metadata["tabjar.tab_id"] == 1


async def test_first_request_creates_a_default_tab(core: Core) -> None:
    f = _flow("1")
    await _addon(core).request(f)
    assert core.registry.get_tab_session(1) == "default"
    assert f.request.headers["Cookie"] == "native=1"


async def test_isolated_tab_gets_session_cookies(core: Core) -> None:
    await core.registry.on_tab_created(1, session_id="work")
    await core.store.put("work", CookieRecord("sid", "w", "example.com"))
    addon = _addon(core)

    f = _flow("1")
    await addon.request(f)
    assert f.request.headers.get_all("Cookie") == ["sid=w"]

    # Subresources reuse the rules built for the document
    sub = _flow("1", dest="script")
    await addon.request(sub)
    assert sub.request.headers.get_all("Cookie") == ["sid=w"]


async def test_opener_header_inherits_session(core: Core) -> None:
    await core.registry.on_tab_created(1, session_id="personal")
    await _addon(core).request(_flow("2", opener="1"))
    assert core.registry.get_tab_session(2) == "personal"


async def test_response_cookies_are_captured_and_hidden(core: Core) -> None:
    await core.registry.on_tab_created(1, session_id="work")
    addon = _addon(core)
    f = _flow("1")
    await addon.request(f)

    f.response.headers.add("Set-Cookie", "sid=fresh; Path=/; HttpOnly")
    f.response.headers.add("Set-Cookie", "theme=dark")
    await addon.response(f)

    assert "Set-Cookie" not in f.response.headers
    assert [c.name for c in await core.store.all_records("work")] == ["sid", "theme"]

    nxt = _flow("1", dest="image")
    await addon.request(nxt)
    assert nxt.request.headers["Cookie"] == "sid=fresh; theme=dark"


async def test_default_tab_responses_are_untouched(core: Core) -> None:
    addon = _addon(core)
    f = _flow("1")
    await addon.request(f)
    f.response.headers.add("Set-Cookie", "native=2")
    await addon.response(f)
    assert f.response.headers.get_all("Set-Cookie") == ["native=2"]
    assert await core.store.all_records("default") == []


async def test_closed_tab_requests_pass_through(core: Core) -> None:
    await core.registry.on_tab_created(1, session_id="work")
    await core.registry.on_tab_removed(1)
    f = _flow("1")
    await _addon(core).request(f)
    assert f.request.headers["Cookie"] == "native=1"
    assert not core.registry.is_known(1)


async def test_core_failure_fails_open(core: Core, monkeypatch) -> None:
    await core.registry.on_tab_created(1, session_id="work")

    async def broken(*args, **kwargs):
        raise RuntimeError("storage unavailable")

    monkeypatch.setattr(core.registry, "on_navigate", broken)
    f = _flow("1")
    await _addon(core).request(f)
    assert f.request.headers["Cookie"] == "native=1"


async def test_untouched_header_names_keep_their_spelling(core: Core) -> None:
    await core.registry.on_tab_created(1, session_id="work")
    await core.store.put("work", CookieRecord("sid", "w", "example.com"))
    f = _flow("1")
    f.request.headers["X-Requested-With"] = "XMLHttpRequest"

    await _addon(core).request(f)

    names = [k for k, _ in f.request.headers.fields]
    assert b"X-Requested-With" in names
    assert b"Sec-Fetch-Dest" in names
    assert (b"Cookie", b"sid=w") in f.request.headers.fields
