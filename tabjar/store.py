"""
Session-scoped cookie store.

Layout under the ``sessionCookies`` key::

    {sessionId: {domain: {"name|path": cookie_dict}}}

Every mutation is a read-modify-write of that one key, so all of them
go through a single :class:`asyncio.Lock`; concurrent ``put`` calls from
different tabs therefore never lose each other's updates.  Reads take
the same lock so a ``query_for_domain`` issued after ``clear`` returns
can never observe the cleared records.

Ordering: domains and keys keep insertion order (dict semantics, also
preserved by the JSON round-trip), which makes header construction
reproducible for a fixed store state.  Overwriting an existing
``name|path`` keeps its original position.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional

from tabjar.cookies import CookieRecord, domain_matches
from tabjar.storage import KeyValueStore

logger = logging.getLogger(__name__)

_KEY = "sessionCookies"

Clock = Callable[[], float]


class CookieStore:
    """Persistent table of cookie records keyed by session and domain.

    Parameters
    ----------
    kv:
        Backing key-value store.
    clock:
        Source of "now" in epoch seconds.  Tests pass a fixed clock.
    """

    def __init__(self, kv: KeyValueStore, clock: Clock = time.time) -> None:
        self.kv = kv
        self.clock = clock
        self._lock = asyncio.Lock()

    async def _load(self) -> dict[str, Any]:
        data = await self.kv.get([_KEY])
        return data.get(_KEY) or {}

    # ── writes ────────────────────────────────────────────────────────────

    async def put(self, session_id: str, record: CookieRecord) -> None:
        """Upsert *record*; an existing ``(domain, name, path)`` is replaced."""
        async with self._lock:
            all_cookies = await self._load()
            bucket = all_cookies.setdefault(session_id, {}).setdefault(record.domain, {})
            bucket[record.key] = record.to_dict()
            await self.kv.set({_KEY: all_cookies})
        logger.debug(
            "Stored cookie %s for %s in session %s", record.name, record.domain, session_id
        )

    async def clear(self, session_id: str) -> None:
        """Remove every record of *session_id*; the session keeps an empty jar."""
        async with self._lock:
            all_cookies = await self._load()
            if session_id in all_cookies:
                all_cookies[session_id] = {}
                await self.kv.set({_KEY: all_cookies})
        logger.debug("Cleared cookies of session %s", session_id)

    async def drop_session(self, session_id: str) -> None:
        """Forget *session_id* entirely (used when the session is deleted)."""
        async with self._lock:
            all_cookies = await self._load()
            if all_cookies.pop(session_id, None) is not None:
                await self.kv.set({_KEY: all_cookies})

    async def prune_expired(self, session_id: str, now: Optional[float] = None) -> int:
        """Delete expired records of *session_id*.  Returns how many went.

        Housekeeping only; reads already skip expired records.
        """
        if now is None:
            now = self.clock()
        removed = 0
        async with self._lock:
            all_cookies = await self._load()
            domains = all_cookies.get(session_id)
            if not domains:
                return 0
            for domain in list(domains):
                bucket = domains[domain]
                for key in list(bucket):
                    if CookieRecord.from_dict(bucket[key]).is_expired(now):
                        del bucket[key]
                        removed += 1
                if not bucket:
                    del domains[domain]
            if removed:
                await self.kv.set({_KEY: all_cookies})
        if removed:
            logger.debug("Pruned %d expired cookie(s) from session %s", removed, session_id)
        return removed

    # ── reads ─────────────────────────────────────────────────────────────

    async def query_for_domain(
        self, session_id: str, request_domain: str, now: Optional[float] = None
    ) -> list[CookieRecord]:
        """Return the live records of *session_id* that apply to *request_domain*."""
        if now is None:
            now = self.clock()
        async with self._lock:
            domains = (await self._load()).get(session_id) or {}
        result: list[CookieRecord] = []
        for cookie_domain, bucket in domains.items():
            if not domain_matches(request_domain, cookie_domain):
                continue
            for raw in bucket.values():
                record = CookieRecord.from_dict(raw)
                if not record.is_expired(now):
                    result.append(record)
        return result

    async def all_records(self, session_id: str) -> list[CookieRecord]:
        """Every stored record of *session_id*, expired ones included."""
        async with self._lock:
            domains = (await self._load()).get(session_id) or {}
        return [
            CookieRecord.from_dict(raw)
            for bucket in domains.values()
            for raw in bucket.values()
        ]
