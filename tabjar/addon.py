"""
mitmproxy addon acting as the browser's host for the isolation core.

It plays two collaborator roles at once:

* **host rule engine**: applies the rules installed in
  :class:`tabjar.rules.InMemoryRuleEngine` to every request and
  response of a tab;
* **response-header observer**: reports each response's ``Set-Cookie``
  values before the response rule strips them.

Tabs identify themselves with the ``X-Tab-Id`` request header (and
``X-Opener-Tab-Id`` on a tab's first request).  Both headers are
removed before the request leaves the proxy.

Ordering per request::

    first sighting of tab  -> TAB_CREATED       (awaited)
    top-level document     -> BEFORE_NAVIGATE   (awaited, rules rebuilt)
    request rules applied  -> forwarded upstream
    response arrives       -> RESPONSE_HEADERS  (awaited, cookies stored)
    response rules applied -> Set-Cookie never reaches the browser

Any failure inside the core is logged and the flow continues with
whatever rules are currently installed.
"""

from __future__ import annotations

from typing import Optional

from mitmproxy import http

from tabjar.config import DEFAULT_CONFIG, IsolationConfig
from tabjar.events import EventDispatcher, EventKind, TabEvent
from tabjar.logs import get_logger
from tabjar.registry import TabSessionRegistry
from tabjar.rules import InMemoryRuleEngine

logger = get_logger(__name__)

_META_TAB = "tabjar.tab_id"
_META_TYPE = "tabjar.resource_type"

# Sec-Fetch-Dest -> declarative resource type
_DEST_TYPES: dict[str, str] = {
    "document": "main_frame",
    "iframe": "sub_frame",
    "frame": "sub_frame",
    "empty": "xmlhttprequest",
    "script": "script",
    "worker": "script",
    "sharedworker": "script",
    "serviceworker": "script",
    "image": "image",
    "font": "font",
    "style": "stylesheet",
    "audio": "media",
    "video": "media",
    "track": "media",
}


def resource_type_of(headers: http.Headers) -> str:
    """Classify a request the way a browser's declarative rules would."""
    if headers.get("upgrade", "").lower() == "websocket":
        return "websocket"
    dest = headers.get("sec-fetch-dest")
    if dest is not None:
        return _DEST_TYPES.get(dest.strip().lower(), "other")
    # Clients that predate Fetch Metadata: treat HTML navigations as documents
    if headers.get("accept", "").lower().startswith("text/html"):
        return "main_frame"
    return "other"


def _parse_tab_id(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        tab_id = int(value.strip())
    except ValueError:
        return None
    return tab_id if tab_id >= 0 else None


def _to_fields(headers: list[tuple[str, str]]) -> list[tuple[bytes, bytes]]:
    return [
        (k.encode("utf-8", "surrogateescape"), v.encode("utf-8", "surrogateescape"))
        for k, v in headers
    ]


class TabJarAddOn:
    def __init__(
        self,
        dispatcher: EventDispatcher,
        registry: TabSessionRegistry,
        engine: InMemoryRuleEngine,
        config: IsolationConfig = DEFAULT_CONFIG,
    ) -> None:
        self.dispatcher = dispatcher
        self.registry = registry
        self.engine = engine
        self.config = config

    async def _dispatch(self, event: TabEvent) -> None:
        try:
            await self.dispatcher.dispatch(event)
        except Exception:
            logger.exception("[tab %s] %s failed, continuing unmodified", event.tab_id, event.kind.value)

    async def request(self, flow: http.HTTPFlow) -> None:
        headers = flow.request.headers
        raw_tab = headers.get(self.config.tab_header)
        raw_opener = headers.get(self.config.opener_header)
        for name in (self.config.tab_header, self.config.opener_header):
            if name in headers:
                del headers[name]

        tab_id = _parse_tab_id(raw_tab)
        if tab_id is None:
            return
        resource_type = resource_type_of(headers)
        flow.metadata[_META_TAB] = tab_id
        flow.metadata[_META_TYPE] = resource_type

        if self.registry.is_closed(tab_id):
            logger.debug("[tab %d] Request from closed tab passed through", tab_id)
            return

        url = flow.request.pretty_url
        if not self.registry.is_known(tab_id):
            await self._dispatch(
                TabEvent(EventKind.TAB_CREATED, tab_id=tab_id, opener_tab_id=_parse_tab_id(raw_opener))
            )
        if resource_type == "main_frame":
            await self._dispatch(TabEvent(EventKind.BEFORE_NAVIGATE, tab_id=tab_id, url=url))

        rewritten = self.engine.apply_request_headers(
            tab_id, resource_type, list(headers.items(multi=True))
        )
        flow.request.headers = http.Headers(_to_fields(rewritten))
        logger.trace("[tab %d] %s %s (%s)", tab_id, flow.request.method, url, resource_type)

    async def response(self, flow: http.HTTPFlow) -> None:
        tab_id = flow.metadata.get(_META_TAB)
        if tab_id is None or flow.response is None:
            return
        resource_type = flow.metadata.get(_META_TYPE, "other")
        headers = list(flow.response.headers.items(multi=True))

        if any(k.lower() == "set-cookie" for k, _ in headers):
            await self._dispatch(
                TabEvent(
                    EventKind.RESPONSE_HEADERS,
                    tab_id=tab_id,
                    url=flow.request.pretty_url,
                    headers=tuple(headers),
                )
            )

        rewritten = self.engine.apply_response_headers(tab_id, resource_type, headers)
        flow.response.headers = http.Headers(_to_fields(rewritten))
