"""
Event dispatcher between host adapters and the isolation core.

Host adapters (the mitmproxy addon, the control server) translate what
they observe into :class:`TabEvent` values and hand them to
:meth:`EventDispatcher.dispatch`; they never call the registry directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from tabjar.control import ControlSurface
from tabjar.registry import TabSessionRegistry

logger = logging.getLogger(__name__)


class EventKind(Enum):
    TAB_CREATED = "tabCreated"
    TAB_REMOVED = "tabRemoved"
    BEFORE_NAVIGATE = "beforeNavigate"
    RESPONSE_HEADERS = "responseHeaders"
    USER_ACTION = "userAction"


@dataclass(frozen=True)
class TabEvent:
    kind: EventKind
    tab_id: Optional[int] = None
    url: Optional[str] = None
    opener_tab_id: Optional[int] = None
    headers: tuple[tuple[str, str], ...] = ()
    action: Optional[str] = None
    payload: Mapping[str, Any] = field(default_factory=dict)


_LIFECYCLE_ACTIONS = {
    EventKind.TAB_CREATED.value: EventKind.TAB_CREATED,
    EventKind.TAB_REMOVED.value: EventKind.TAB_REMOVED,
    EventKind.BEFORE_NAVIGATE.value: EventKind.BEFORE_NAVIGATE,
}


def event_from_message(message: Mapping[str, Any]) -> TabEvent:
    """Map a control-server request onto an event.

    ``tabCreated``/``tabRemoved``/``beforeNavigate`` let a browser-side
    shim report tab lifecycle; every other action is a user action.
    """
    action = str(message.get("action") or "")
    kind = _LIFECYCLE_ACTIONS.get(action)
    if kind is None:
        return TabEvent(EventKind.USER_ACTION, action=action, payload=dict(message))
    opener = message.get("openerTabId")
    return TabEvent(
        kind,
        tab_id=int(message["tabId"]),
        url=message.get("url"),
        opener_tab_id=int(opener) if opener is not None else None,
    )


class EventDispatcher:
    def __init__(self, registry: TabSessionRegistry, control: ControlSurface) -> None:
        self.registry = registry
        self.control = control

    async def dispatch(self, event: TabEvent) -> Any:
        kind = event.kind
        logger.debug("Dispatching %s (tab %s)", kind.value, event.tab_id)
        if kind is EventKind.USER_ACTION:
            return await self.control.handle(event.payload)

        if event.tab_id is None:
            raise ValueError(f"{kind.value} event without a tab id")

        if kind is EventKind.TAB_CREATED:
            binding = await self.registry.on_tab_created(event.tab_id, event.opener_tab_id)
            return {"tabId": binding.tab_id, "sessionId": binding.session_id}
        if kind is EventKind.TAB_REMOVED:
            await self.registry.on_tab_removed(event.tab_id)
            return {"success": True}
        if kind is EventKind.BEFORE_NAVIGATE:
            rule_ids = await self.registry.on_navigate(event.tab_id, event.url or "")
            return {"ruleIds": rule_ids}
        if kind is EventKind.RESPONSE_HEADERS:
            stored = await self.registry.on_response_headers(
                event.tab_id, event.url or "", event.headers
            )
            return {"stored": stored}
        raise ValueError(f"Unhandled event kind {kind!r}")

    async def handle_message(self, message: Mapping[str, Any]) -> Any:
        """Entry point for :class:`tabjar.control.ControlServer`."""
        return await self.dispatch(event_from_message(message))
