"""
Tab → session registry.

The registry owns the in-memory :class:`TabBinding` map, mirrors it to
the ``tabSessions`` storage key and is the only caller of
:meth:`RuleSynthesizer.install_rules_for_tab`.

Concurrency model
~~~~~~~~~~~~~~~~~
Host events arrive as independent coroutines; several may target the
same tab at once (a navigation racing a late response from the
previous page).  Every operation that reads-then-writes a tab's binding
or rule set runs under that tab's :class:`asyncio.Lock`, so two installs
can never remove each other's fresh rules.  Cross-tab shared state (the
cookie store, the rule-id counter, the persisted mirror) has its own
locks.

A closed tab is remembered (the most recent ``CLOSED_MEMORY`` ids, with
their locks) so events that were already in flight when it closed turn
into no-ops instead of resurrecting its binding.

Cookie capture re-checks the tab's session under the tab lock, so once
a session has left the catalog nothing is written to its jar again.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional, Sequence

from tabjar.config import DEFAULT_SESSION_ID
from tabjar.cookies import CookieRecord, parse_set_cookie
from tabjar.errors import UnknownSession, UnknownTab
from tabjar.rules import RuleSynthesizer
from tabjar.sessions import SessionCatalog
from tabjar.storage import KeyValueStore
from tabjar.store import CookieStore

logger = logging.getLogger(__name__)

_KEY = "tabSessions"


@dataclass
class TabBinding:
    tab_id: int
    session_id: str = DEFAULT_SESSION_ID
    active_rule_ids: list[int] = field(default_factory=list)
    url: Optional[str] = None

    def to_dict(self) -> dict:
        d: dict = {"sessionId": self.session_id, "ruleIds": list(self.active_rule_ids)}
        if self.url is not None:
            d["url"] = self.url
        return d


class TabSessionRegistry:
    """Authoritative map of tab → (session, installed rule ids).

    Parameters
    ----------
    kv:
        Backing store for the ``tabSessions`` mirror.
    catalog:
        Session catalog, used to validate session ids on switch.
    store:
        Cookie store captured cookies are written to.
    synthesizer:
        Builds and installs the per-tab rules.
    """

    CLOSED_MEMORY = 1024

    def __init__(
        self,
        kv: KeyValueStore,
        catalog: SessionCatalog,
        store: CookieStore,
        synthesizer: RuleSynthesizer,
    ) -> None:
        self.kv = kv
        self.catalog = catalog
        self.store = store
        self.synthesizer = synthesizer

        self._bindings: dict[int, TabBinding] = {}
        self._locks: dict[int, asyncio.Lock] = {}
        self._closed: OrderedDict[int, None] = OrderedDict()
        self._mirror_lock = asyncio.Lock()

    # -- helpers -----------------------------------------------------------

    def _lock(self, tab_id: int) -> asyncio.Lock:
        lock = self._locks.get(tab_id)
        if lock is None:
            lock = self._locks[tab_id] = asyncio.Lock()
        return lock

    def _mark_closed(self, tab_id: int) -> None:
        self._closed[tab_id] = None
        self._closed.move_to_end(tab_id)
        while len(self._closed) > self.CLOSED_MEMORY:
            old, _ = self._closed.popitem(last=False)
            lock = self._locks.get(old)
            if lock is not None and not lock.locked():
                del self._locks[old]

    async def _resolve(self, session_id: str) -> str:
        """*session_id*, or ``default`` once it has left the catalog."""
        if session_id == DEFAULT_SESSION_ID or await self.catalog.exists(session_id):
            return session_id
        return DEFAULT_SESSION_ID

    def _live(self, tab_id: int) -> TabBinding:
        binding = self._bindings.get(tab_id)
        if binding is None or tab_id in self._closed:
            raise UnknownTab(tab_id)
        return binding

    async def _persist(self, binding: TabBinding) -> None:
        async with self._mirror_lock:
            data = await self.kv.get([_KEY])
            tabs = data.get(_KEY) or {}
            tabs[str(binding.tab_id)] = binding.to_dict()
            await self.kv.set({_KEY: tabs})

    async def _forget(self, tab_id: int) -> None:
        async with self._mirror_lock:
            data = await self.kv.get([_KEY])
            tabs = data.get(_KEY) or {}
            if tabs.pop(str(tab_id), None) is not None:
                await self.kv.set({_KEY: tabs})

    async def _install(self, binding: TabBinding, session_id: str, url: Optional[str]) -> None:
        """Rebuild *binding*'s rules.  Caller holds the tab lock."""
        result = await self.synthesizer.install_rules_for_tab(
            binding.tab_id,
            session_id,
            url or "",
            previous_ids=binding.active_rule_ids,
            previous_session_id=binding.session_id,
        )
        binding.session_id = session_id
        binding.url = url
        binding.active_rule_ids = result.rule_ids
        await self._persist(binding)

    # -- startup -----------------------------------------------------------

    async def restore(self) -> int:
        """Load persisted bindings.  Rules do not survive a restart, so
        every restored binding starts with an empty rule set; the next
        navigation rebuilds it.
        """
        data = await self.kv.get([_KEY])
        tabs = data.get(_KEY) or {}
        known = {s.id for s in await self.catalog.all()}
        restored: dict[str, dict] = {}
        for key, info in tabs.items():
            try:
                tab_id = int(key)
            except ValueError:
                logger.warning("Skipping persisted binding with bad tab id %r", key)
                continue
            session_id = info.get("sessionId") or DEFAULT_SESSION_ID
            if session_id not in known:
                session_id = DEFAULT_SESSION_ID
            binding = TabBinding(tab_id, session_id, [], info.get("url"))
            self._bindings[tab_id] = binding
            restored[str(tab_id)] = binding.to_dict()
        async with self._mirror_lock:
            await self.kv.set({_KEY: restored})
        logger.debug("Restored %d tab binding(s)", len(restored))
        return len(restored)

    # -- queries -----------------------------------------------------------

    def get_tab_session(self, tab_id: int) -> str:
        binding = self._bindings.get(tab_id)
        return binding.session_id if binding else DEFAULT_SESSION_ID

    def binding(self, tab_id: int) -> Optional[TabBinding]:
        b = self._bindings.get(tab_id)
        return replace(b, active_rule_ids=list(b.active_rule_ids)) if b else None

    def is_known(self, tab_id: int) -> bool:
        return tab_id in self._bindings

    def is_closed(self, tab_id: int) -> bool:
        return tab_id in self._closed

    def tabs_in_session(self, session_id: str) -> list[int]:
        return [t for t, b in self._bindings.items() if b.session_id == session_id]

    # -- tab lifecycle -----------------------------------------------------

    async def on_tab_created(
        self,
        tab_id: int,
        opener_tab_id: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> TabBinding:
        """Bind a new tab.

        The session is *session_id* when given (open-in-session), else
        the opener's session, else ``default``.
        """
        if session_id is None:
            session_id = DEFAULT_SESSION_ID
            if opener_tab_id is not None:
                session_id = self.get_tab_session(opener_tab_id)
        elif not await self.catalog.exists(session_id):
            raise UnknownSession(session_id)

        self._closed.pop(tab_id, None)
        async with self._lock(tab_id):
            existing = self._bindings.get(tab_id)
            if existing is not None:
                return replace(existing, active_rule_ids=list(existing.active_rule_ids))
            binding = TabBinding(tab_id, session_id)
            self._bindings[tab_id] = binding
            await self._persist(binding)
        logger.debug("[tab %d] Created in session %s (opener %s)", tab_id, session_id, opener_tab_id)
        return replace(binding)

    async def on_navigate(self, tab_id: int, url: str) -> list[int]:
        """Rebuild the tab's rules for *url*.  Must complete before the
        navigation request is forwarded.  Returns the installed rule ids.
        """
        if tab_id in self._closed:
            logger.debug("[tab %d] Navigation on closed tab ignored", tab_id)
            return []
        async with self._lock(tab_id):
            if tab_id in self._closed:
                return []
            binding = self._bindings.get(tab_id)
            if binding is None:
                binding = self._bindings[tab_id] = TabBinding(tab_id)
            session_id = await self._resolve(binding.session_id)
            if session_id != binding.session_id:
                logger.debug("[tab %d] Session %s is gone, navigating in default", tab_id, binding.session_id)
            await self._install(binding, session_id, url)
            return list(binding.active_rule_ids)

    async def set_session(self, tab_id: int, session_id: str) -> bool:
        """Switch a tab to *session_id* and rebuild its rules for its
        current URL.  Returns ``False`` for an unknown tab.

        The caller should reload the tab: rules only affect requests
        issued after they are installed.

        Raises
        ------
        UnknownSession
            If *session_id* is not in the catalog.
        """
        if not await self.catalog.exists(session_id):
            raise UnknownSession(session_id)
        if tab_id not in self._bindings:
            logger.debug("[tab %d] Session switch on unknown tab ignored", tab_id)
            return False
        async with self._lock(tab_id):
            try:
                binding = self._live(tab_id)
            except UnknownTab:
                logger.debug("[tab %d] Session switch on unknown tab ignored", tab_id)
                return False
            if await self._resolve(session_id) != session_id:
                raise UnknownSession(session_id)
            await self._install(binding, session_id, binding.url)
        logger.debug("[tab %d] Switched to session %s", tab_id, session_id)
        return True

    async def on_tab_removed(self, tab_id: int) -> None:
        """Release the tab's rules and drop its binding."""
        self._mark_closed(tab_id)
        async with self._lock(tab_id):
            binding = self._bindings.pop(tab_id, None)
            if binding is not None and binding.active_rule_ids:
                # Unknown ids are fine: the tab may have closed mid-install
                await self.synthesizer.engine.update_rules(remove=binding.active_rule_ids)
            await self._forget(tab_id)
        logger.debug("[tab %d] Removed", tab_id)

    # -- session lifecycle -------------------------------------------------

    async def _refresh(self, tab_id: int, only_session: Optional[str] = None) -> bool:
        async with self._lock(tab_id):
            try:
                binding = self._live(tab_id)
            except UnknownTab:
                return False
            if only_session is not None and binding.session_id != only_session:
                return False
            if await self._resolve(binding.session_id) == DEFAULT_SESSION_ID:
                return False
            await self._install(binding, binding.session_id, binding.url)
            return True

    async def refresh_session_tabs(self, session_id: str) -> list[int]:
        """Rebuild rules of every tab bound to *session_id*."""
        tabs = self.tabs_in_session(session_id)
        done = await asyncio.gather(*(self._refresh(t, session_id) for t in tabs))
        return [t for t, ok in zip(tabs, done) if ok]

    async def on_session_deleted(self, session_id: str) -> list[int]:
        """Move every tab of *session_id* to ``default`` and drop its rules."""

        async def _reassign(tab_id: int) -> bool:
            async with self._lock(tab_id):
                binding = self._bindings.get(tab_id)
                if binding is None or binding.session_id != session_id:
                    return False
                await self._install(binding, DEFAULT_SESSION_ID, binding.url)
                return True

        tabs = self.tabs_in_session(session_id)
        done = await asyncio.gather(*(_reassign(t) for t in tabs))
        moved = [t for t, ok in zip(tabs, done) if ok]
        if moved:
            logger.info("Moved %d tab(s) from deleted session %s to default", len(moved), session_id)
        return moved

    # -- cookie capture ----------------------------------------------------

    async def _capture(self, binding: TabBinding, records: Sequence[CookieRecord]) -> int:
        """Store *records* in the binding's session and rebuild its rules.
        Caller holds the tab lock.
        """
        session_id = binding.session_id
        if await self._resolve(session_id) == DEFAULT_SESSION_ID:
            return 0
        for record in records:
            await self.store.put(session_id, record)
        if records:
            await self._install(binding, session_id, binding.url)
        return len(records)

    async def on_cookie_captured(self, tab_id: int, session_id: str, record: CookieRecord) -> bool:
        """Store *record* in *session_id* and rebuild the tab's rules.

        Ignored unless the tab is currently bound to *session_id* and
        that session still exists; ``default`` never stores anything.
        """
        if session_id == DEFAULT_SESSION_ID or tab_id not in self._bindings:
            return False
        async with self._lock(tab_id):
            try:
                binding = self._live(tab_id)
            except UnknownTab:
                return False
            if binding.session_id != session_id:
                return False
            return await self._capture(binding, [record]) == 1

    async def on_response_headers(
        self, tab_id: int, url: str, headers: Iterable[tuple[str, str]]
    ) -> int:
        """Capture every ``Set-Cookie`` of a response into the tab's
        session, then rebuild the tab's rules once.  Returns the number
        of cookies stored.
        """
        if tab_id not in self._bindings:
            return 0
        values: Sequence[str] = [v for k, v in headers if k.lower() == "set-cookie"]
        if not values:
            return 0

        now = self.store.clock()
        records = [r for r in (parse_set_cookie(v, url, now=now) for v in values) if r is not None]
        async with self._lock(tab_id):
            try:
                binding = self._live(tab_id)
            except UnknownTab:
                return 0
            stored = await self._capture(binding, records)
        if stored:
            logger.debug("[tab %d] Captured %d cookie(s) from %s", tab_id, stored, url)
        return stored
