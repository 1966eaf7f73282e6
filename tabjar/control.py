"""
Control surface for UI collaborators, and the TCP server exposing it.

:class:`ControlSurface` implements the request/response operations a
popup or indicator needs.  Every result is JSON-serialisable.  Failures
a UI can act on come back as ``{"error": "..."}`` rather than raising.

:class:`ControlServer` speaks newline-delimited JSON over TCP: one
request object per line in, one response object per line out::

    -> {"action": "setTabSession", "tabId": 7, "sessionId": "work"}
    <- {"success": true, "reload": true}
"""

from __future__ import annotations

import asyncio
import json
import logging
from asyncio import StreamReader, StreamWriter
from typing import Any, Awaitable, Callable, Mapping, Optional

from tabjar.config import DEFAULT_SESSION_ID
from tabjar.errors import ReservedSession, UnknownSession
from tabjar.registry import TabSessionRegistry
from tabjar.sessions import SessionCatalog
from tabjar.store import CookieStore

logger = logging.getLogger(__name__)


class ControlSurface:
    def __init__(
        self,
        catalog: SessionCatalog,
        registry: TabSessionRegistry,
        store: CookieStore,
    ) -> None:
        self.catalog = catalog
        self.registry = registry
        self.store = store

    # -- sessions ----------------------------------------------------------

    async def get_sessions(self) -> list[dict[str, str]]:
        return [s.to_dict() for s in await self.catalog.all()]

    async def add_session(self, session: Mapping[str, Any]) -> dict[str, Any]:
        try:
            created = await self.catalog.add(
                name=str(session.get("name") or "Session"),
                color=str(session.get("color") or "#808080"),
                icon=str(session.get("icon") or "fingerprint"),
            )
        except ValueError as e:
            return {"error": str(e)}
        return created.to_dict()

    async def update_session(self, session_id: str, patch: Mapping[str, Any]) -> Optional[dict[str, Any]]:
        try:
            updated = await self.catalog.update(session_id, patch)
        except ReservedSession:
            return {"error": "Session id cannot change"}
        except ValueError as e:
            return {"error": str(e)}
        return updated.to_dict() if updated else None

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session, move its tabs to default and purge its cookies.

        The jar is dropped last: once the session has left the catalog the
        registry refuses to capture into it, and moving the tabs waits for
        any capture already in progress.
        """
        if not await self.catalog.delete(session_id):
            return False
        await self.registry.on_session_deleted(session_id)
        await self.store.drop_session(session_id)
        return True

    async def clear_session_cookies(self, session_id: str) -> dict[str, Any]:
        await self.store.clear(session_id)
        await self.registry.refresh_session_tabs(session_id)
        return {"success": True}

    # -- tabs --------------------------------------------------------------

    async def get_tab_session(self, tab_id: int) -> str:
        return self.registry.get_tab_session(tab_id)

    async def set_tab_session(self, tab_id: int, session_id: str, reload: bool = True) -> dict[str, Any]:
        """Rebind a tab.  ``reload`` in the reply tells the caller to
        reload the tab so the new rules apply to fresh requests.
        """
        try:
            ok = await self.registry.set_session(tab_id, session_id)
        except UnknownSession:
            return {"error": "Unknown session"}
        if not ok:
            return {"error": "Tab not found"}
        return {"success": True, "reload": reload is not False}

    async def get_tab_session_info(self, tab_id: Optional[int]) -> dict[str, Any]:
        if tab_id is None:
            return {"session": None}
        session = await self.catalog.get(self.registry.get_tab_session(tab_id))
        return {"session": session.to_dict() if session else None}

    async def open_in_session(self, tab_id: int, session_id: str, url: Optional[str] = None) -> dict[str, Any]:
        """Bind *tab_id* to *session_id* and, given a *url*, navigate it.

        A tab the caller is about to open is pre-bound so its first
        navigation is already isolated; a tab that is already known is
        switched to *session_id*.
        """
        try:
            if self.registry.is_known(tab_id):
                await self.registry.set_session(tab_id, session_id)
            else:
                await self.registry.on_tab_created(tab_id, session_id=session_id)
        except UnknownSession:
            return {"error": "Unknown session"}
        if url:
            await self.registry.on_navigate(tab_id, url)
        return {"success": True, "tabId": tab_id}

    # -- dispatch ----------------------------------------------------------

    async def handle(self, message: Mapping[str, Any]) -> Any:
        action = message.get("action")
        if action == "getSessions":
            return await self.get_sessions()
        if action == "getTabSession":
            return await self.get_tab_session(int(message["tabId"]))
        if action == "setTabSession":
            return await self.set_tab_session(
                int(message["tabId"]), str(message["sessionId"]), message.get("reload", True)
            )
        if action == "addSession":
            return await self.add_session(message.get("session") or {})
        if action == "updateSession":
            return await self.update_session(str(message["sessionId"]), message.get("updates") or {})
        if action == "deleteSession":
            return await self.delete_session(str(message["sessionId"]))
        if action == "clearSessionCookies":
            return await self.clear_session_cookies(str(message["sessionId"]))
        if action == "getTabSessionInfo":
            tab_id = message.get("tabId")
            return await self.get_tab_session_info(int(tab_id) if tab_id is not None else None)
        if action == "openInSession":
            return await self.open_in_session(
                int(message["tabId"]),
                str(message.get("sessionId") or DEFAULT_SESSION_ID),
                message.get("url"),
            )
        return {"error": "Unknown action"}


# ============================================================================
# TCP server
# ============================================================================


Handler = Callable[[Mapping[str, Any]], Awaitable[Any]]


class ControlServer:
    """Newline-delimited JSON request/response server.

    Parameters
    ----------
    handler:
        Coroutine called with each decoded request object; its return
        value is sent back as the response.
    host, port:
        Bind address.  Port ``0`` lets the OS pick.
    """

    MAX_LINE = 1 << 20

    def __init__(self, handler: Handler, host: str = "127.0.0.1", port: int = 0) -> None:
        self.handler = handler
        self.host = host
        self.port = port
        self._server: Optional[asyncio.Server] = None
        self._clients: set[asyncio.Task] = set()

    async def start(self) -> int:
        self._server = await asyncio.start_server(
            self._on_connect, self.host, self.port, limit=self.MAX_LINE
        )
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info("Control server listening on %s:%d", self.host, self.port)
        return self.port

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        tasks = list(self._clients)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Control server stopped (was :%d)", self.port)

    def _on_connect(self, reader: StreamReader, writer: StreamWriter) -> None:
        task = asyncio.get_running_loop().create_task(self._serve(reader, writer))
        self._clients.add(task)
        task.add_done_callback(self._clients.discard)

    async def _respond(self, line: bytes) -> Any:
        try:
            message = json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return {"error": f"Malformed request: {e}"}
        if not isinstance(message, dict):
            return {"error": "Request must be a JSON object"}
        try:
            return await self.handler(message)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Bad control request %s: %s", message.get("action"), e)
            return {"error": f"Bad request: {e}"}
        except Exception:
            logger.exception("Control request %s failed", message.get("action"))
            return {"error": "Internal error"}

    async def _serve(self, reader: StreamReader, writer: StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        logger.debug("Control client connected: %s", peer)
        try:
            while True:
                try:
                    line = await reader.readline()
                except (asyncio.LimitOverrunError, ValueError):
                    writer.write(b'{"error": "Request too large"}\n')
                    await writer.drain()
                    break
                if not line:
                    break
                if not line.strip():
                    continue
                response = await self._respond(line)
                writer.write(json.dumps(response).encode("utf-8") + b"\n")
                await writer.drain()
        except ConnectionResetError as e:
            logger.debug("Control client %s reset: %s", peer, e)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass
            logger.debug("Control client disconnected: %s", peer)
