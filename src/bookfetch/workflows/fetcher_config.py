"""Fetcher defaults (routes, headers, hosts, timeouts, cache sizing).

Centralizes static defaults so the racer and orchestrator carry no embedded
magic strings. Callers can inject their own FetchConfig to override any of
them; environment overrides are applied by ``FetchConfig.from_env``.
"""

from __future__ import annotations

from typing import Tuple

# Storefront hosts whose product pages we know how to canonicalize.
# Subdomains of these hosts are accepted as well.
ALLOWED_HOSTS: Tuple[str, ...] = (
    "amazon.co.jp",
    "amazon.com",
    "amazon.ca",
    "amazon.co.uk",
    "amazon.de",
    "amazon.fr",
    "amazon.it",
    "amazon.es",
)

# Forwarding routes: (prefix, shaping). "raw" appends the target verbatim,
# "encoded" appends it percent-encoded.
DEFAULT_ROUTES: Tuple[Tuple[str, str], ...] = (
    ("https://corsproxy.io/?", "encoded"),
    ("https://api.allorigins.win/raw?url=", "encoded"),
    ("https://api.allorigins.win/get?url=", "encoded"),
    ("https://api.codetabs.com/v1/proxy?quest=", "encoded"),
    ("https://thingproxy.freeboard.io/fetch/", "raw"),
    ("https://cors.isomorphic-git.org/", "raw"),
    ("https://cors-anywhere.herokuapp.com/", "raw"),
)

# Request headers
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
ACCEPT_LANGUAGE = "ja,en-US;q=0.7,en;q=0.3"

# Timeouts (seconds)
BASE_ROUTE_TIMEOUT = 8.0
RACE_TIMEOUT = 15.0
FALLBACK_TIMEOUT = 20.0

# Markup validation
MIN_MARKUP_LENGTH = 1000
REQUIRED_MARKERS: Tuple[str, ...] = ("<title", "<body")
BLOCKED_TITLE_HINTS: Tuple[str, ...] = (
    "error",
    "not found",
    "access denied",
    "blocked",
    "robot check",
    "captcha",
    "service unavailable",
)
JSON_ENVELOPE_KEYS: Tuple[str, ...] = ("contents", "response", "data")

# Response cache (seconds / entries)
CACHE_DEFAULT_TTL = 300.0
CACHE_MAX_AGE = 24 * 60 * 60.0
CACHE_MAX_ENTRIES = 100
CACHE_SWEEP_INTERVAL = 120.0

# Record sanitisation
UNKNOWN_TITLE = "Unknown Title"
UNKNOWN_AUTHOR = "Unknown Author"
TITLE_MAX_CHARS = 200
AUTHOR_MAX_CHARS = 100
COVER_URL_MAX_CHARS = 2048
AUTHOR_DISPLAY_SEPARATOR = ", "

# Health flag thresholds for FetchStats
HEALTHY_SUCCESS_RATE = 0.7
HEALTHY_AVERAGE_MS = 10_000.0
