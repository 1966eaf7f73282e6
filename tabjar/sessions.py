"""Session catalog: the named, coloured cookie jars a tab can be bound to."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Mapping, NamedTuple, Optional

from tabjar.config import DEFAULT_SESSION_ID
from tabjar.errors import ReservedSession
from tabjar.storage import KeyValueStore

logger = logging.getLogger(__name__)

_KEY = "sessions"
_HEX_COLOR = re.compile(r"^#?([0-9a-fA-F]{6}|[0-9a-fA-F]{3})$")

PATCHABLE_FIELDS = frozenset({"name", "color", "icon"})


class RGBColor(NamedTuple):
    red: int
    green: int
    blue: int

    @classmethod
    def parse(cls, value: str) -> RGBColor:
        """Parse ``#rrggbb`` or ``#rgb``."""
        m = _HEX_COLOR.match(value.strip())
        if not m:
            raise ValueError(f"Not a hex colour: {value!r}")
        digits = m.group(1)
        if len(digits) == 3:
            digits = "".join(ch * 2 for ch in digits)
        return cls(int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16))

    def hex(self) -> str:
        return f"#{self.red:02x}{self.green:02x}{self.blue:02x}"


@dataclass(frozen=True)
class Session:
    id: str
    name: str
    color: RGBColor
    icon: str

    @property
    def is_default(self) -> bool:
        return self.id == DEFAULT_SESSION_ID

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "color": self.color.hex(), "icon": self.icon}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Session:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            color=RGBColor.parse(str(data.get("color") or "#808080")),
            icon=str(data.get("icon", "")),
        )


class SessionCatalog:
    """CRUD over the persisted ``sessions`` list.

    ``default`` is always present: it is re-created on read if storage
    lost it, and it can be renamed or recoloured but never deleted.
    """

    def __init__(self, kv: KeyValueStore, clock: Callable[[], float] = time.time) -> None:
        self.kv = kv
        self.clock = clock
        self._lock = asyncio.Lock()

    async def _load(self) -> list[Session]:
        data = await self.kv.get([_KEY])
        sessions = [Session.from_dict(s) for s in data.get(_KEY) or []]
        if not any(s.is_default for s in sessions):
            sessions.insert(0, Session(DEFAULT_SESSION_ID, "Default", RGBColor(0x80, 0x80, 0x80), "fingerprint"))
        return sessions

    async def _save(self, sessions: list[Session]) -> None:
        await self.kv.set({_KEY: [s.to_dict() for s in sessions]})

    async def all(self) -> list[Session]:
        async with self._lock:
            return await self._load()

    async def get(self, session_id: str) -> Optional[Session]:
        for s in await self.all():
            if s.id == session_id:
                return s
        return None

    async def exists(self, session_id: str) -> bool:
        return session_id == DEFAULT_SESSION_ID or await self.get(session_id) is not None

    def _new_id(self, taken: set[str]) -> str:
        stamp = int(self.clock() * 1000)
        candidate = f"session_{stamp}"
        while candidate in taken:
            stamp += 1
            candidate = f"session_{stamp}"
        return candidate

    async def add(self, name: str, color: str, icon: str) -> Session:
        """Create a session.  The id is always generated here."""
        async with self._lock:
            sessions = await self._load()
            session = Session(
                id=self._new_id({s.id for s in sessions}),
                name=name,
                color=RGBColor.parse(color),
                icon=icon,
            )
            sessions.append(session)
            await self._save(sessions)
        logger.info("Added session %s (%s)", session.id, session.name)
        return session

    async def update(self, session_id: str, patch: Mapping[str, Any]) -> Optional[Session]:
        """Merge *patch* into a session.  Unknown keys are ignored.

        Returns the updated session, or ``None`` if it does not exist.

        Raises
        ------
        ReservedSession
            If the patch tries to change a session's id.
        """
        if "id" in patch and patch["id"] != session_id:
            raise ReservedSession(session_id)
        async with self._lock:
            sessions = await self._load()
            for i, s in enumerate(sessions):
                if s.id != session_id:
                    continue
                changes: dict[str, Any] = {}
                for k in PATCHABLE_FIELDS & patch.keys():
                    changes[k] = RGBColor.parse(str(patch[k])) if k == "color" else str(patch[k])
                sessions[i] = replace(s, **changes)
                await self._save(sessions)
                logger.info("Updated session %s: %s", session_id, ", ".join(sorted(changes)) or "no changes")
                return sessions[i]
        return None

    async def delete(self, session_id: str) -> bool:
        """Remove a session from the catalog.  ``default`` is refused."""
        if session_id == DEFAULT_SESSION_ID:
            return False
        async with self._lock:
            sessions = await self._load()
            kept = [s for s in sessions if s.id != session_id]
            if len(kept) == len(sessions):
                return False
            await self._save(kept)
        logger.info("Deleted session %s", session_id)
        return True
