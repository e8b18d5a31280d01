from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlsplit

from .fetcher_utils import collect_environment_warnings
from .web_fetch import FetchConfig


_SECRET_TOKENS = ("key", "token", "secret", "password", "pass", "auth")


def _is_secret_name(name: str) -> bool:
    lowered = (name or "").lower()
    return any(token in lowered for token in _SECRET_TOKENS)


def redact_value(value: str, keep: int = 4) -> str:
    raw = (value or "").strip()
    if not raw:
        return ""
    if len(raw) <= keep * 2:
        return "*" * len(raw)
    return f"{raw[:keep]}...{raw[-keep:]}"


def redact_route_prefix(prefix: str) -> str:
    """Mask credentials and secret-looking query parameters in a route prefix."""

    parts = urlsplit(prefix)
    netloc = parts.netloc
    if "@" in netloc:
        creds, _, host = netloc.rpartition("@")
        netloc = f"***@{host}" if creds else netloc
    query_items = []
    for name, value in parse_qsl(parts.query, keep_blank_values=True):
        if value and _is_secret_name(name):
            value = redact_value(value)
        query_items.append(f"{name}={value}" if value else f"{name}=")
    query = "&".join(query_items)
    rebuilt = f"{parts.scheme}://{netloc}{parts.path}" if parts.scheme else prefix.split("?", 1)[0]
    if parts.query or prefix.endswith("?"):
        rebuilt = f"{rebuilt}?{query}"
    return rebuilt


def _check_playwright_available() -> bool:
    from . import web_fetch

    return getattr(web_fetch, "async_playwright", None) is not None


def build_doctor_report(*, config: Optional[FetchConfig] = None) -> Dict[str, Any]:
    cfg = config or FetchConfig.from_env()
    report: Dict[str, Any] = {
        "generated_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "ok": True,
        "checks": [],
        "environment_warnings": collect_environment_warnings(),
    }

    def add_check(
        name: str,
        status: bool,
        *,
        detail: Optional[str] = None,
        remedy: Optional[str] = None,
        level: str = "warn",
        value: Optional[str] = None,
    ) -> None:
        entry = {
            "name": name,
            "status": "ok" if status else "missing",
            "level": level,
            "detail": detail,
        }
        if remedy:
            entry["remedy"] = remedy
        if value is not None:
            entry["value"] = value
        report["checks"].append(entry)
        if not status and level == "warn":
            report["ok"] = False

    playwright_ok = _check_playwright_available()
    if not cfg.enable_fallback:
        add_check("playwright", True, detail="Rendered fallback disabled by BOOKFETCH_FALLBACK_DISABLE", level="info")
    else:
        add_check(
            "playwright",
            playwright_ok,
            detail="Rendered fallback enabled" if playwright_ok else "Rendered fallback unavailable",
            remedy="Install the browser extra and run `playwright install chromium`.",
            level="warn",
        )

    routes = list(cfg.routes)
    participating = cfg.max_routes if cfg.max_routes > 0 else len(routes)
    add_check(
        "BOOKFETCH_ROUTES",
        bool(routes),
        detail=f"{len(routes)} route(s) configured, {min(participating, len(routes))} race per request",
        remedy="Set BOOKFETCH_ROUTES to a comma list of `prefix` or `prefix|raw` entries.",
        level="warn",
    )
    for route in routes:
        add_check(
            f"route:{route.route_id}",
            True,
            detail=f"shaping={route.shaping}",
            level="info",
            value=redact_route_prefix(route.prefix),
        )

    timeouts_ok = 0 < cfg.base_timeout <= cfg.race_timeout and cfg.fallback_timeout > 0
    add_check(
        "timeouts",
        timeouts_ok,
        detail=(
            f"base={cfg.base_timeout:.1f}s race={cfg.race_timeout:.1f}s "
            f"fallback={cfg.fallback_timeout:.1f}s"
        ),
        remedy="Keep 0 < BOOKFETCH_BASE_TIMEOUT <= BOOKFETCH_RACE_TIMEOUT and a positive fallback timeout.",
        level="warn",
    )

    cache_ok = cfg.cache_max_entries > 0 and 0 < cfg.cache_ttl <= cfg.cache_max_age
    add_check(
        "cache",
        cache_ok,
        detail=(
            f"ttl={cfg.cache_ttl:.0f}s max_age={cfg.cache_max_age:.0f}s "
            f"entries={cfg.cache_max_entries} sweep={cfg.cache_sweep_interval:.0f}s"
        ),
        remedy="Use a positive BOOKFETCH_CACHE_MAX_ENTRIES and 0 < BOOKFETCH_CACHE_TTL <= BOOKFETCH_CACHE_MAX_AGE.",
        level="warn",
    )
    if cfg.cache_sweep_interval <= 0:
        add_check("cache_sweeper", False, detail="Background sweep disabled; expiry is lazy only", level="info")

    add_check(
        "BOOKFETCH_ALLOWED_HOSTS",
        bool(cfg.allowed_hosts),
        detail=", ".join(cfg.allowed_hosts) or "no hosts allowed",
        remedy="Add storefront hosts with BOOKFETCH_ALLOWED_HOSTS.",
        level="warn",
    )
    return report


def format_doctor_report(report: Dict[str, Any]) -> str:
    lines: List[str] = []
    lines.append("bookfetch doctor")
    lines.append(f"Generated: {report.get('generated_at')}")
    lines.append("Route secrets are redacted.")
    lines.append("")
    for check in report.get("checks", []):
        name = check.get("name", "check")
        status = check.get("status", "unknown")
        level = check.get("level", "info")
        detail = check.get("detail")
        value = check.get("value")
        label = f"{name}: {status}"
        if value:
            label = f"{label} ({value})"
        lines.append(f"- [{level}] {label}")
        if detail:
            lines.append(f"  detail: {detail}")
        remedy = check.get("remedy")
        if remedy and status != "ok":
            lines.append(f"  remedy: {remedy}")
    warnings = report.get("environment_warnings") or []
    if warnings:
        lines.append("")
        lines.append("Environment warnings:")
        for warning in warnings:
            lines.append(f"- {warning.get('code', 'warning')}: {warning.get('message', '')}")
            if warning.get("remedy"):
                lines.append(f"  remedy: {warning['remedy']}")
    return "\n".join(lines).rstrip() + "\n"
