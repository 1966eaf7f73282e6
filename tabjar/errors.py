"""Exceptions raised inside the isolation core.

None of these is allowed to block a navigation: host adapters catch
them and let the request through untouched.
"""

from __future__ import annotations


class IsolationError(Exception):
    """Base class for every tabjar error."""


class UnresolvableURL(IsolationError):
    def __init__(self, url: str) -> None:
        super().__init__(f"Cannot resolve a hostname from {url!r}")
        self.url = url


class UnknownTab(IsolationError):
    def __init__(self, tab_id: int) -> None:
        super().__init__(f"Tab {tab_id} is not bound")
        self.tab_id = tab_id


class UnknownSession(IsolationError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id!r} does not exist")
        self.session_id = session_id


class ReservedSession(IsolationError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id!r} is reserved")
        self.session_id = session_id


class RuleInstallRejected(IsolationError):
    """The host rule engine refused an ``update_rules`` call.

    The engine guarantees the call had no effect: neither the additions
    nor the removals were applied.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
