"""
Declarative header-rewrite rules and the engine that enforces them.

Architecture
------------
* **RewriteRule**: immutable description of one host rule: which tab
  and resource types it covers and which header operations it performs
  on requests and/or responses.
* **RuleIdAllocator**: hands out blocks of consecutive rule ids from a
  persisted counter.  Every install gets a fresh block, so a rebuilt
  rule set never reuses an id that may still be pending removal.
* **RuleSynthesizer**: builds the two rules an isolated tab needs:
  rule A replaces the request ``Cookie`` header with the session's
  cookies, rule B strips every response ``Set-Cookie``.
* **InMemoryRuleEngine**: the host rule engine: a single global id
  namespace with a hard cap, atomic ``update_rules`` and header
  application for the proxy addon.

Rule shape
~~~~~~~~~~
Rule A (omits the ``set`` when the session has no cookie for the host,
because an empty ``Cookie`` header is not the same as no header)::

    request:  remove Cookie; set Cookie = "a=1; b=2"

Rule B::

    response: remove Set-Cookie
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Protocol, Sequence

from tabjar.config import DEFAULT_CONFIG, DEFAULT_SESSION_ID, IsolationConfig
from tabjar.cookies import build_cookie_header, hostname_of
from tabjar.errors import RuleInstallRejected, UnresolvableURL
from tabjar.logs import get_logger
from tabjar.storage import KeyValueStore
from tabjar.store import CookieStore

logger = get_logger(__name__)


# ============================================================================
# Data Classes
# ============================================================================


class HeaderOperation(str, Enum):
    REMOVE = "remove"
    SET = "set"


@dataclass(frozen=True)
class HeaderAction:
    header: str
    operation: HeaderOperation
    value: Optional[str] = None

    def __post_init__(self) -> None:
        if self.operation is HeaderOperation.REMOVE and self.value is not None:
            raise ValueError("A remove action carries no value")
        if self.operation is not HeaderOperation.REMOVE and self.value is None:
            raise ValueError(f"A {self.operation.value} action needs a value")


@dataclass(frozen=True)
class RuleCondition:
    tab_ids: frozenset[int]
    resource_types: frozenset[str]

    def matches(self, tab_id: int, resource_type: str) -> bool:
        return tab_id in self.tab_ids and resource_type in self.resource_types


@dataclass(frozen=True)
class RewriteRule:
    """An immutable header-modification rule scoped to a set of tabs."""

    id: int
    priority: int
    condition: RuleCondition
    request_headers: tuple[HeaderAction, ...] = ()
    response_headers: tuple[HeaderAction, ...] = ()

    @classmethod
    def create(
        cls,
        rule_id: int,
        tab_id: int,
        resource_types: Iterable[str],
        *,
        priority: int = 1,
        request_headers: Sequence[HeaderAction] = (),
        response_headers: Sequence[HeaderAction] = (),
    ) -> RewriteRule:
        return cls(
            id=rule_id,
            priority=priority,
            condition=RuleCondition(frozenset({tab_id}), frozenset(resource_types)),
            request_headers=tuple(request_headers),
            response_headers=tuple(response_headers),
        )


# ============================================================================
# Rule-id allocation
# ============================================================================


class RuleIdAllocator:
    """Monotonic, persisted rule-id counter handing out fixed-size blocks.

    Allocation is a read-modify-write of ``ruleIdCounter`` guarded by a
    lock, so concurrent allocations for different tabs never overlap.
    """

    _KEY = "ruleIdCounter"

    def __init__(self, kv: KeyValueStore, block_size: int = DEFAULT_CONFIG.rule_id_block_size) -> None:
        if block_size < 1:
            raise ValueError("block_size must be positive")
        self.kv = kv
        self.block_size = block_size
        self._lock = asyncio.Lock()

    async def allocate_block(self) -> int:
        """Reserve ``block_size`` consecutive ids; return the first one."""
        async with self._lock:
            data = await self.kv.get([self._KEY])
            base = int(data.get(self._KEY) or 1)
            await self.kv.set({self._KEY: base + self.block_size})
        logger.trace("Allocated rule ids %d..%d", base, base + self.block_size - 1)
        return base


# ============================================================================
# Host rule engine
# ============================================================================


class HostRuleEngine(Protocol):
    async def update_rules(
        self, add: Sequence[RewriteRule] = (), remove: Sequence[int] = ()
    ) -> None:
        """Atomically remove *remove* ids and install *add*.

        Unknown ids in *remove* are ignored.  On rejection nothing
        changes and :class:`RuleInstallRejected` is raised.
        """
        ...

    def installed_ids(self) -> frozenset[int]:
        ...


class InMemoryRuleEngine:
    """Host rule engine enforcing a global cap on installed rules.

    Header application mirrors how a browser applies declarative rules:
    every matching rule runs, highest priority first, then lowest id.
    Header names are matched case-insensitively; headers no rule touches
    pass through with their original spelling.
    """

    def __init__(self, cap: int = DEFAULT_CONFIG.rule_cap) -> None:
        self.cap = cap
        self._rules: dict[int, RewriteRule] = {}

    # -- installation ------------------------------------------------------

    async def update_rules(
        self, add: Sequence[RewriteRule] = (), remove: Sequence[int] = ()
    ) -> None:
        removing = {rid for rid in remove if rid in self._rules}
        add_ids = [r.id for r in add]

        if len(set(add_ids)) != len(add_ids):
            raise RuleInstallRejected("duplicate rule id in a single update")
        for rid in add_ids:
            if rid in self._rules and rid not in removing:
                raise RuleInstallRejected(f"rule id {rid} is already installed")
        for rule in add:
            if not rule.request_headers and not rule.response_headers:
                raise RuleInstallRejected(f"rule {rule.id} has no header actions")
            if not rule.condition.tab_ids or not rule.condition.resource_types:
                raise RuleInstallRejected(f"rule {rule.id} has an empty condition")

        total = len(self._rules) - len(removing) + len(add)
        if total > self.cap:
            raise RuleInstallRejected(
                f"rule cap exceeded: {total} > {self.cap}"
            )

        for rid in removing:
            del self._rules[rid]
        for rule in add:
            self._rules[rule.id] = rule

    def installed_ids(self) -> frozenset[int]:
        return frozenset(self._rules)

    def get(self, rule_id: int) -> Optional[RewriteRule]:
        return self._rules.get(rule_id)

    def __len__(self) -> int:
        return len(self._rules)

    # -- application -------------------------------------------------------

    def matching(self, tab_id: int, resource_type: str) -> list[RewriteRule]:
        rules = [r for r in self._rules.values() if r.condition.matches(tab_id, resource_type)]
        rules.sort(key=lambda r: (-r.priority, r.id))
        return rules

    @staticmethod
    def _apply(
        headers: Sequence[tuple[str, str]], actions: Iterable[HeaderAction]
    ) -> list[tuple[str, str]]:
        """Run *actions* over *headers*.  Names compare case-insensitively;
        untouched headers keep their original spelling.
        """
        result = list(headers)
        for action in actions:
            name = action.header.lower()
            if action.operation is HeaderOperation.REMOVE:
                result = [(k, v) for k, v in result if k.lower() != name]
                continue
            # SET: replace in place, first occurrence keeps its position
            replaced = False
            updated: list[tuple[str, str]] = []
            for k, v in result:
                if k.lower() == name:
                    if not replaced:
                        updated.append((k, action.value or ""))
                        replaced = True
                    continue
                updated.append((k, v))
            if not replaced:
                updated.append((action.header, action.value or ""))
            result = updated
        return result

    def apply_request_headers(
        self, tab_id: int, resource_type: str, headers: Sequence[tuple[str, str]]
    ) -> list[tuple[str, str]]:
        actions = [a for r in self.matching(tab_id, resource_type) for a in r.request_headers]
        if not actions:
            return list(headers)
        logger.trace("[tab %d] Applying %d request header action(s)", tab_id, len(actions))
        return self._apply(headers, actions)

    def apply_response_headers(
        self, tab_id: int, resource_type: str, headers: Sequence[tuple[str, str]]
    ) -> list[tuple[str, str]]:
        actions = [a for r in self.matching(tab_id, resource_type) for a in r.response_headers]
        if not actions:
            return list(headers)
        logger.trace("[tab %d] Applying %d response header action(s)", tab_id, len(actions))
        return self._apply(headers, actions)


# ============================================================================
# Synthesis
# ============================================================================


@dataclass
class InstallResult:
    """Outcome of one :meth:`RuleSynthesizer.install_rules_for_tab` call."""

    rule_ids: list[int] = field(default_factory=list)
    rejected: bool = False


class RuleSynthesizer:
    """Builds and installs the per-tab cookie rules.

    Parameters
    ----------
    store:
        Cookie store the ``Cookie`` header is built from.
    allocator:
        Source of fresh rule-id blocks.
    engine:
        Host rule engine the rules are installed into.
    config:
        Priority and resource types for every rule.
    """

    def __init__(
        self,
        store: CookieStore,
        allocator: RuleIdAllocator,
        engine: HostRuleEngine,
        config: IsolationConfig = DEFAULT_CONFIG,
    ) -> None:
        self.store = store
        self.allocator = allocator
        self.engine = engine
        self.config = config

    async def build_rules_for_tab(self, tab_id: int, session_id: str, url: str) -> list[RewriteRule]:
        """Return the rules isolating *tab_id* into *session_id* for *url*.

        Empty for the default session and for URLs without a hostname;
        both leave the tab on the host's native cookie jar.
        """
        if session_id == DEFAULT_SESSION_ID:
            return []
        try:
            domain = hostname_of(url)
        except UnresolvableURL:
            logger.debug("[tab %d] No rules for unresolvable URL %r", tab_id, url)
            return []

        cookie_header = await build_cookie_header(self.store, session_id, domain)
        base = await self.allocator.allocate_block()

        request_actions = [HeaderAction("Cookie", HeaderOperation.REMOVE)]
        if cookie_header:
            request_actions.append(HeaderAction("Cookie", HeaderOperation.SET, cookie_header))

        return [
            RewriteRule.create(
                base,
                tab_id,
                self.config.resource_types,
                priority=self.config.rule_priority,
                request_headers=request_actions,
            ),
            RewriteRule.create(
                base + 1,
                tab_id,
                self.config.resource_types,
                priority=self.config.rule_priority,
                response_headers=[HeaderAction("Set-Cookie", HeaderOperation.REMOVE)],
            ),
        ]

    async def install_rules_for_tab(
        self,
        tab_id: int,
        session_id: str,
        url: str,
        previous_ids: Sequence[int] = (),
        previous_session_id: Optional[str] = None,
    ) -> InstallResult:
        """Swap *previous_ids* for a freshly built rule set in one update.

        The caller owns serialisation per tab and records the returned
        ids in the tab's binding.

        On rejection the previous rules are kept when they still isolate
        the same session; otherwise they are removed and the tab falls
        back to native cookies.  The returned ids always match what is
        installed.
        """
        rules = await self.build_rules_for_tab(tab_id, session_id, url)
        try:
            await self.engine.update_rules(add=rules, remove=list(previous_ids))
        except RuleInstallRejected as e:
            logger.warning("[tab %d] Rule install rejected: %s", tab_id, e.reason)
            installed = self.engine.installed_ids()
            survivors = [rid for rid in previous_ids if rid in installed]
            if survivors and previous_session_id == session_id:
                return InstallResult(rule_ids=survivors, rejected=True)
            if survivors:
                try:
                    await self.engine.update_rules(remove=survivors)
                except RuleInstallRejected as e2:
                    # Removal-only updates cannot exceed the cap
                    logger.error("[tab %d] Could not drop stale rules: %s", tab_id, e2.reason)
                    return InstallResult(rule_ids=survivors, rejected=True)
            return InstallResult(rule_ids=[], rejected=True)

        ids = [r.id for r in rules]
        logger.debug(
            "[tab %d] Installed rules %s for session %s (removed %s)",
            tab_id, ids, session_id, list(previous_ids),
        )
        return InstallResult(rule_ids=ids)
