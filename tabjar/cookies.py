"""
Cookie records and the ``Set-Cookie`` / ``Cookie`` header codec.

Parsing
-------
:func:`parse_set_cookie` turns one raw ``Set-Cookie`` value into a
:class:`CookieRecord`.  Attributes are processed left to right and a
later attribute overwrites an earlier one, so ``Max-Age=60; Expires=...``
ends up with the ``Expires`` date while ``Expires=...; Max-Age=60`` ends
up with now + 60.  A malformed ``Expires``/``Max-Age``/``SameSite`` is
ignored (``SameSite`` falls back to ``Lax``); the rest of the cookie is
kept.

Serialising
-----------
:func:`build_cookie_header` asks the store for every live cookie whose
domain matches the request host and joins them as ``name=value`` pairs
separated by ``"; "``.  An empty string means "send no Cookie header".
"""

from __future__ import annotations

import email.utils
import logging
import time
from dataclasses import asdict, dataclass
from datetime import timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional
from urllib.parse import urlsplit

from tabjar.errors import UnresolvableURL

if TYPE_CHECKING:
    from tabjar.store import CookieStore

logger = logging.getLogger(__name__)


class SameSite(str, Enum):
    STRICT = "Strict"
    LAX = "Lax"
    NONE = "None"

    @classmethod
    def parse(cls, value: str) -> SameSite:
        """Case-insensitive lookup; anything unrecognised is ``Lax``."""
        lowered = value.strip().lower()
        for member in cls:
            if member.value.lower() == lowered:
                return member
        return cls.LAX


@dataclass(frozen=True)
class CookieRecord:
    """A cookie as captured from a response.

    ``domain`` starts with ``.`` when the response carried an explicit
    ``Domain`` attribute (domain cookie, matches subdomains) and is the
    bare request host otherwise (host-only cookie).  ``expiration_date``
    is epoch seconds, or ``None`` for a session cookie.
    """

    name: str
    value: str
    domain: str
    path: str = "/"
    secure: bool = False
    http_only: bool = False
    same_site: SameSite = SameSite.LAX
    expiration_date: Optional[float] = None

    @property
    def key(self) -> str:
        """Uniqueness key inside one session+domain bucket."""
        return f"{self.name}|{self.path or '/'}"

    def is_expired(self, now: float) -> bool:
        return self.expiration_date is not None and self.expiration_date <= now

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        return {
            "name": d["name"],
            "value": d["value"],
            "domain": d["domain"],
            "path": d["path"],
            "secure": d["secure"],
            "httpOnly": d["http_only"],
            "sameSite": self.same_site.value,
            "expirationDate": d["expiration_date"],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CookieRecord:
        return cls(
            name=data["name"],
            value=data["value"],
            domain=data["domain"],
            path=data.get("path") or "/",
            secure=bool(data.get("secure", False)),
            http_only=bool(data.get("httpOnly", False)),
            same_site=SameSite.parse(data.get("sameSite") or "Lax"),
            expiration_date=data.get("expirationDate"),
        )


def hostname_of(url: str) -> str:
    """Return the lower-cased hostname of *url*.

    Raises
    ------
    UnresolvableURL
        If *url* does not parse or carries no hostname (``about:blank``,
        ``data:`` and similar opaque URLs).
    """
    try:
        host = urlsplit(url).hostname
    except (ValueError, TypeError, AttributeError):
        raise UnresolvableURL(url) from None
    if not host:
        raise UnresolvableURL(url)
    return host


def domain_matches(request_domain: str, cookie_domain: str) -> bool:
    """Cookie-domain containment test.

    ``.example.com`` matches ``example.com`` and any subdomain of it;
    ``example.com`` (no leading dot) matches only ``example.com``.
    """
    if not request_domain or not cookie_domain:
        return False
    if cookie_domain.startswith("."):
        return request_domain == cookie_domain[1:] or request_domain.endswith(cookie_domain)
    return request_domain == cookie_domain


def _parse_expires(value: str) -> Optional[float]:
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.timestamp()
    except (OverflowError, OSError, ValueError):
        return None


def parse_set_cookie(
    header: str, source_url: str, now: Optional[float] = None
) -> Optional[CookieRecord]:
    """Parse one ``Set-Cookie`` value received from *source_url*.

    Returns ``None`` when *source_url* has no hostname or the header has
    no ``name=value`` pair.
    """
    try:
        host = hostname_of(source_url)
    except UnresolvableURL:
        logger.debug("Dropping Set-Cookie from unresolvable URL %r", source_url)
        return None

    parts = [p.strip() for p in header.split(";")]
    name_value, attributes = parts[0], parts[1:]
    eq = name_value.find("=")
    if eq == -1:
        logger.debug("Dropping Set-Cookie without name=value: %r", header)
        return None
    name = name_value[:eq].strip()
    value = name_value[eq + 1:].strip()
    if not name:
        logger.debug("Dropping Set-Cookie with empty name: %r", header)
        return None

    if now is None:
        now = time.time()

    domain = host
    path = "/"
    secure = False
    http_only = False
    same_site = SameSite.LAX
    expiration: Optional[float] = None

    for attr in attributes:
        if not attr:
            continue
        eq = attr.find("=")
        if eq > 0:
            attr_name = attr[:eq].strip().lower()
            attr_value = attr[eq + 1:].strip()
        else:
            attr_name = attr.lower()
            attr_value = ""

        if attr_name == "domain":
            if attr_value:
                d = attr_value.lower()
                domain = d if d.startswith(".") else "." + d
        elif attr_name == "path":
            path = attr_value or "/"
        elif attr_name == "expires":
            parsed = _parse_expires(attr_value)
            if parsed is None:
                logger.debug("Ignoring unparsable Expires=%r on %s", attr_value, name)
            else:
                expiration = parsed
        elif attr_name == "max-age":
            try:
                expiration = now + int(attr_value)
            except ValueError:
                logger.debug("Ignoring unparsable Max-Age=%r on %s", attr_value, name)
        elif attr_name == "secure":
            secure = True
        elif attr_name == "httponly":
            http_only = True
        elif attr_name == "samesite":
            same_site = SameSite.parse(attr_value)

    return CookieRecord(
        name=name,
        value=value,
        domain=domain,
        path=path,
        secure=secure,
        http_only=http_only,
        same_site=same_site,
        expiration_date=expiration,
    )


def serialize_cookie_pairs(records: Iterable[CookieRecord], now: float) -> str:
    return "; ".join(
        f"{c.name}={c.value}" for c in records if not c.is_expired(now)
    )


async def build_cookie_header(
    store: CookieStore, session_id: str, domain: str, now: Optional[float] = None
) -> str:
    """Serialise *session_id*'s cookies for a request to *domain*.

    Returns ``""`` when there is nothing to send.
    """
    if now is None:
        now = store.clock()
    records = await store.query_for_domain(session_id, domain, now=now)
    return serialize_cookie_pairs(records, now)
