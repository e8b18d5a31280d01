"""Canonicalize product-page addresses to ``scheme://host/dp/<identifier>``."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Pattern, Tuple
from urllib.parse import urlsplit

from .errors import InvalidAddress
from .fetcher_config import ALLOWED_HOSTS
from .fetcher_utils import host_matches, idna_normalize

logger = logging.getLogger(__name__)

_ID = r"([A-Z0-9]{10})(?:[/?#]|$)"

# Ordered: the first shape that matches wins.
IDENTIFIER_PATTERNS: Tuple[Pattern[str], ...] = tuple(
    re.compile(pattern, re.I)
    for pattern in (
        r"/dp/" + _ID,
        r"/product/" + _ID,
        r"/gp/product/" + _ID,
        r"/exec/obidos/ASIN/" + _ID,
        r"/o/ASIN/" + _ID,
        r"ASIN[=/]" + _ID,
    )
)

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.I)


@dataclass(frozen=True)
class CanonicalAddress:
    scheme: str
    host: str
    identifier: str

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}/dp/{self.identifier}"

    def __str__(self) -> str:
        return self.url


def find_identifier(text: str) -> Optional[str]:
    """Return the upper-cased product identifier embedded in a path/query, if any."""

    for pattern in IDENTIFIER_PATTERNS:
        match = pattern.search(text or "")
        if match:
            return match.group(1).upper()
    return None


def canonicalize(raw: str, *, allowed_hosts: Optional[Iterable[str]] = None) -> CanonicalAddress:
    """Reduce ``raw`` to its canonical product address.

    Raises InvalidAddress when the host is not allow-listed (exact match or a
    subdomain of an allowed host) or no identifier shape matches. Applying the
    function to its own output returns the same address.
    """

    candidate = (raw or "").strip()
    if not candidate:
        raise InvalidAddress(raw or "", "empty address")
    if not _SCHEME_RE.match(candidate):
        candidate = f"https://{candidate}"

    try:
        parts = urlsplit(candidate)
    except ValueError as exc:
        raise InvalidAddress(raw, f"unparseable: {exc}") from exc

    scheme = (parts.scheme or "https").lower()
    if scheme not in {"http", "https"}:
        raise InvalidAddress(raw, f"unsupported scheme {scheme!r}")
    host = idna_normalize(parts.hostname or "")
    if not host:
        raise InvalidAddress(raw, "missing host")

    hosts = tuple(allowed_hosts) if allowed_hosts is not None else ALLOWED_HOSTS
    if host_matches(host, hosts) is None:
        raise InvalidAddress(raw, f"host {host!r} is not allow-listed")

    # Path first, then query: ASIN=<id> lives in the query string.
    haystack = parts.path or ""
    if parts.query:
        haystack = f"{haystack}?{parts.query}"
    identifier = find_identifier(haystack)
    if identifier is None:
        raise InvalidAddress(raw, "no product identifier found")

    address = CanonicalAddress(scheme=scheme, host=host, identifier=identifier)
    logger.debug("canonicalized %s -> %s", raw, address.url)
    return address


__all__ = [
    "CanonicalAddress",
    "IDENTIFIER_PATTERNS",
    "canonicalize",
    "find_identifier",
]
