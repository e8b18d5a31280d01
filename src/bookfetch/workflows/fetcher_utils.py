"""Shared helper functions used by the fetch workflow."""

from __future__ import annotations

import os
from typing import Dict, Iterable, List, Optional, Set, Tuple


def idna_normalize(host: str) -> str:
    """Return a lowercase, IDNA-normalized host name."""

    h = (host or "").strip().rstrip(".").lower()
    if not h:
        return ""
    try:
        h = h.encode("idna").decode("ascii")
    except UnicodeError:
        pass
    return h


def host_matches(host: str, allowed: Iterable[str]) -> Optional[str]:
    """Return the allow-list entry matching ``host`` exactly or as a parent domain."""

    normalized = idna_normalize(host)
    if not normalized:
        return None
    for token in allowed:
        candidate = idna_normalize(token).lstrip(".")
        if not candidate:
            continue
        if normalized == candidate or normalized.endswith(f".{candidate}"):
            return candidate
    return None


def split_env_list(value: str, *, lower: bool = False) -> Tuple[str, ...]:
    tokens: List[str] = []
    for token in (value or "").split(","):
        cleaned = token.strip()
        if not cleaned:
            continue
        tokens.append(cleaned.lower() if lower else cleaned)
    # Preserve order but drop duplicates
    seen: Set[str] = set()
    ordered: List[str] = []
    for token in tokens:
        if token in seen:
            continue
        seen.add(token)
        ordered.append(token)
    return tuple(ordered)


def env_int(name: str, default: int = 0) -> int:
    try:
        raw = os.getenv(name, "")
        return int(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def env_float(name: str, default: float = 0.0) -> float:
    try:
        raw = os.getenv(name, "")
        return float(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def env_bool(name: str, default: str = "0") -> bool:
    raw = os.getenv(name, default)
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


_NUMERIC_ENV = (
    "BOOKFETCH_MAX_ROUTES",
    "BOOKFETCH_BASE_TIMEOUT",
    "BOOKFETCH_RACE_TIMEOUT",
    "BOOKFETCH_FALLBACK_TIMEOUT",
    "BOOKFETCH_MIN_MARKUP_LENGTH",
    "BOOKFETCH_CACHE_TTL",
    "BOOKFETCH_CACHE_MAX_AGE",
    "BOOKFETCH_CACHE_MAX_ENTRIES",
    "BOOKFETCH_CACHE_SWEEP_INTERVAL",
)


def collect_environment_warnings() -> List[Dict[str, str]]:
    """Return operator-facing warnings about the current environment."""

    warnings: List[Dict[str, str]] = []
    for name in _NUMERIC_ENV:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            continue
        try:
            float(raw)
        except ValueError:
            warnings.append(
                {
                    "code": f"{name.lower()}_invalid",
                    "message": f"{name}={raw!r} is not a number; the default is used.",
                    "remedy": f"Set {name} to a numeric value or unset it.",
                }
            )

    from . import web_fetch

    _, rejected = web_fetch.parse_route_list(split_env_list(os.getenv("BOOKFETCH_ROUTES", "")))
    for reason in rejected:
        warnings.append(
            {
                "code": "bookfetch_routes_invalid",
                "message": f"BOOKFETCH_ROUTES entry skipped: {reason}",
                "remedy": "Use prefix, prefix|raw or prefix|encoded for each comma-separated route.",
            }
        )

    if getattr(web_fetch, "async_playwright", None) is None and not env_bool("BOOKFETCH_FALLBACK_DISABLE", "0"):
        warnings.append(
            {
                "code": "playwright_missing",
                "message": "Playwright is not installed; the rendered fallback is unavailable.",
                "remedy": "pip install 'bookfetch[browser]' && playwright install chromium",
            }
        )
    return warnings


def sanity_check() -> None:
    assert idna_normalize("ExAmple.COM.") == "example.com"
    assert host_matches("www.amazon.co.jp", ("amazon.co.jp",)) == "amazon.co.jp"
    assert host_matches("evilamazon.com", ("amazon.com",)) is None
    assert split_env_list("a, b,,a") == ("a", "b")


sanity_check()

__all__ = [
    "idna_normalize",
    "host_matches",
    "split_env_list",
    "env_int",
    "env_float",
    "env_bool",
    "collect_environment_warnings",
    "sanity_check",
]
