"""
Persistence primitives: an opaque asynchronous key-value store.

The core only ever reads and writes four top-level keys:

* ``sessions``: list of session dicts
* ``tabSessions``: ``{tabId: {"sessionId": ..., "ruleIds": [...]}}``
* ``sessionCookies``: ``{sessionId: {domain: {"name|path": cookie}}}``
* ``ruleIdCounter``: next free rule identifier

Values handed out by :meth:`KeyValueStore.get` are copies; mutating them
has no effect until they are written back with :meth:`KeyValueStore.set`.
Read-modify-write sequences are serialised by the callers (the cookie
store, the rule-id allocator, the registry), not here.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
from typing import Any, Iterable, Mapping, Protocol

logger = logging.getLogger(__name__)


DEFAULT_SESSIONS: list[dict[str, str]] = [
    {"id": "default", "name": "Default", "color": "#808080", "icon": "fingerprint"},
    {"id": "personal", "name": "Personal", "color": "#00a8e8", "icon": "user"},
    {"id": "work", "name": "Work", "color": "#f9a825", "icon": "briefcase"},
    {"id": "shopping", "name": "Shopping", "color": "#43a047", "icon": "cart"},
    {"id": "banking", "name": "Banking", "color": "#e53935", "icon": "dollar"},
]


class KeyValueStore(Protocol):
    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        """Return ``{key: value}`` for every requested key that exists."""
        ...

    async def set(self, items: Mapping[str, Any]) -> None:
        """Write every key in *items*, replacing previous values."""
        ...


class MemoryKeyValueStore:
    """Dict-backed store.  Deep-copies on both read and write."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(dict(initial or {}))

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        return {k: copy.deepcopy(self._data[k]) for k in keys if k in self._data}

    async def set(self, items: Mapping[str, Any]) -> None:
        for k, v in items.items():
            self._data[k] = copy.deepcopy(v)

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)


class JsonFileKeyValueStore:
    """Whole-document JSON store on disk.

    The document is cached after the first read.  Every :meth:`set`
    rewrites the file through a temporary sibling and ``os.replace`` so
    a crash mid-write never leaves a truncated document behind.  Disk
    I/O runs in a worker thread.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._data: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    async def _load(self) -> dict[str, Any]:
        if self._data is None:
            self._data = await asyncio.to_thread(self._read_file)
        return self._data

    def _read_file(self) -> dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            logger.debug("State file %s not found, starting empty", self.path)
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"State file {self.path} does not hold a JSON object")
        return data

    def _write_file(self, data: dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".tabjar-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, separators=(",", ":"))
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        async with self._lock:
            data = await self._load()
            return {k: copy.deepcopy(data[k]) for k in keys if k in data}

    async def set(self, items: Mapping[str, Any]) -> None:
        async with self._lock:
            data = await self._load()
            for k, v in items.items():
                data[k] = copy.deepcopy(v)
            await asyncio.to_thread(self._write_file, copy.deepcopy(data))


async def initialize(kv: KeyValueStore) -> None:
    """Seed any missing top-level key with its default."""
    data = await kv.get(["sessions", "tabSessions", "sessionCookies", "ruleIdCounter"])
    missing: dict[str, Any] = {}
    if not data.get("sessions"):
        missing["sessions"] = copy.deepcopy(DEFAULT_SESSIONS)
    if "tabSessions" not in data:
        missing["tabSessions"] = {}
    if "sessionCookies" not in data:
        missing["sessionCookies"] = {}
    if not data.get("ruleIdCounter"):
        missing["ruleIdCounter"] = 1
    if missing:
        logger.debug("Seeding storage keys: %s", ", ".join(sorted(missing)))
        await kv.set(missing)
