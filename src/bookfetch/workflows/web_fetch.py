from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote, urlsplit

import aiohttp

from .canonical import CanonicalAddress
from .errors import AllRoutesFailed
from .fetcher_config import (
    ACCEPT,
    ACCEPT_LANGUAGE,
    ALLOWED_HOSTS,
    BASE_ROUTE_TIMEOUT,
    BLOCKED_TITLE_HINTS,
    CACHE_DEFAULT_TTL,
    CACHE_MAX_AGE,
    CACHE_MAX_ENTRIES,
    CACHE_SWEEP_INTERVAL,
    DEFAULT_ROUTES,
    FALLBACK_TIMEOUT,
    JSON_ENVELOPE_KEYS,
    MIN_MARKUP_LENGTH,
    RACE_TIMEOUT,
    REQUIRED_MARKERS,
    USER_AGENT,
)
from .fetcher_utils import env_bool, env_float, env_int, split_env_list
from .html_normalize import decode_bytes_auto, page_title
from .route_health import RouteHealthTracker

logger = logging.getLogger(__name__)

try:  # Playwright is optional; the rendered fallback is skipped if unavailable
    from playwright.async_api import async_playwright  # type: ignore
except Exception:  # pragma: no cover - handled at runtime
    async_playwright = None  # type: ignore

Renderer = Callable[[str, float], Awaitable[str]]

_TEXTUAL_TYPES = ("html", "text", "xml", "json")
_SHAPINGS = {"raw", "encoded"}


@dataclass(frozen=True)
class Route:
    """A forwarding route: ``prefix`` plus the target shaped per ``shaping``."""

    route_id: str
    prefix: str
    shaping: str = "encoded"

    def build_url(self, target: str) -> str:
        if self.shaping == "raw":
            return f"{self.prefix}{target}"
        return f"{self.prefix}{quote(target, safe='')}"


def make_route(prefix: str, shaping: str = "encoded") -> Route:
    shaping = (shaping or "encoded").strip().lower()
    parts = urlsplit(prefix)
    if shaping not in _SHAPINGS:
        raise ValueError(f"unknown route shaping {shaping!r} for {parts.hostname or 'route'}")
    path = parts.path.strip("/")
    host = parts.netloc.rpartition("@")[2]
    route_id = f"{host}/{path}" if path else host
    return Route(route_id=route_id or prefix, prefix=prefix, shaping=shaping)


def parse_route_spec(spec: str) -> Route:
    """Parse ``prefix`` or ``prefix|raw`` / ``prefix|encoded``."""

    prefix, _, shaping = spec.strip().partition("|")
    if not prefix:
        raise ValueError(f"empty route spec: {spec!r}")
    return make_route(prefix.strip(), shaping or "encoded")


def parse_route_list(items: Sequence[str]) -> Tuple[Tuple[Route, ...], List[str]]:
    """Parse route specs, returning the usable routes and the rejected specs with reasons."""

    routes: List[Route] = []
    rejected: List[str] = []
    for item in items:
        try:
            routes.append(parse_route_spec(item))
        except ValueError as exc:
            rejected.append(str(exc))
    return tuple(routes), rejected


DEFAULT_ROUTE_LIST: Tuple[Route, ...] = tuple(make_route(prefix, shaping) for prefix, shaping in DEFAULT_ROUTES)


@dataclass
class FetchConfig:
    """Configuration for the route race, fallback, cache and extraction gate."""

    routes: Tuple[Route, ...] = DEFAULT_ROUTE_LIST
    max_routes: int = 0
    base_timeout: float = BASE_ROUTE_TIMEOUT
    race_timeout: float = RACE_TIMEOUT
    fallback_timeout: float = FALLBACK_TIMEOUT
    enable_fallback: bool = True
    playwright_headed: bool = False
    user_agent: str = USER_AGENT
    accept: str = ACCEPT
    accept_language: str = ACCEPT_LANGUAGE
    min_markup_length: int = MIN_MARKUP_LENGTH
    required_markers: Tuple[str, ...] = REQUIRED_MARKERS
    blocked_title_hints: Tuple[str, ...] = BLOCKED_TITLE_HINTS
    allowed_hosts: Tuple[str, ...] = ALLOWED_HOSTS
    cache_ttl: float = CACHE_DEFAULT_TTL
    cache_max_age: float = CACHE_MAX_AGE
    cache_max_entries: int = CACHE_MAX_ENTRIES
    cache_sweep_interval: float = CACHE_SWEEP_INTERVAL
    # None makes a missing review count fail the completeness gate.
    default_review_count: Optional[int] = 0

    @classmethod
    def from_env(cls, **overrides: Any) -> "FetchConfig":
        config = cls()
        raw_routes = split_env_list(os.getenv("BOOKFETCH_ROUTES", ""))
        if raw_routes:
            routes, rejected = parse_route_list(raw_routes)
            for reason in rejected:
                logger.warning("ignoring BOOKFETCH_ROUTES entry: %s", reason)
            if routes:
                config.routes = routes
        config.max_routes = max(0, env_int("BOOKFETCH_MAX_ROUTES", config.max_routes))
        config.base_timeout = env_float("BOOKFETCH_BASE_TIMEOUT", config.base_timeout)
        config.race_timeout = env_float("BOOKFETCH_RACE_TIMEOUT", config.race_timeout)
        config.fallback_timeout = env_float("BOOKFETCH_FALLBACK_TIMEOUT", config.fallback_timeout)
        config.enable_fallback = not env_bool("BOOKFETCH_FALLBACK_DISABLE", "0")
        config.playwright_headed = env_bool("BOOKFETCH_PLAYWRIGHT_HEADED", "0")
        config.min_markup_length = max(0, env_int("BOOKFETCH_MIN_MARKUP_LENGTH", config.min_markup_length))
        extra_hosts = split_env_list(os.getenv("BOOKFETCH_ALLOWED_HOSTS", ""), lower=True)
        if extra_hosts:
            config.allowed_hosts = tuple(dict.fromkeys(config.allowed_hosts + extra_hosts))
        config.cache_ttl = env_float("BOOKFETCH_CACHE_TTL", config.cache_ttl)
        config.cache_max_age = env_float("BOOKFETCH_CACHE_MAX_AGE", config.cache_max_age)
        config.cache_max_entries = env_int("BOOKFETCH_CACHE_MAX_ENTRIES", config.cache_max_entries)
        config.cache_sweep_interval = env_float("BOOKFETCH_CACHE_SWEEP_INTERVAL", config.cache_sweep_interval)
        for name, value in overrides.items():
            if not hasattr(config, name):
                raise TypeError(f"unknown FetchConfig field: {name}")
            setattr(config, name, value)
        return config

    def participating_routes(self, tracker: RouteHealthTracker) -> List[Route]:
        ordered = tracker.ordered_routes(list(self.routes))
        if self.max_routes > 0:
            return ordered[: self.max_routes]
        return ordered


@dataclass
class RouteAttempt:
    route_id: str
    ok: bool
    latency_ms: float
    status: int = 0
    content_type: str = ""
    error: Optional[str] = None
    text: str = field(default="", repr=False)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "route_id": self.route_id,
            "ok": self.ok,
            "latency_ms": round(self.latency_ms, 1),
            "status": self.status,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class FetchResult:
    """Validated markup for one canonical address."""

    url: str
    route: str
    method: str
    status: int
    content_type: str
    text: str = field(repr=False)
    fetched_at: str
    elapsed_ms: float = 0.0
    attempts: List[RouteAttempt] = field(default_factory=list)
    launched: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "route": self.route,
            "method": self.method,
            "status": self.status,
            "content_type": self.content_type,
            "text_sha256": hashlib.sha256(self.text.encode("utf-8")).hexdigest() if self.text else "",
            "text_length": len(self.text),
            "fetched_at": self.fetched_at,
            "elapsed_ms": round(self.elapsed_ms, 1),
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class RoutesExhausted(Exception):
    """Every participating route failed or the race deadline elapsed."""

    def __init__(self, url: str, attempts: Sequence[RouteAttempt], launched: int, *, deadline_hit: bool) -> None:
        reason = "race deadline elapsed" if deadline_hit else "all routes failed"
        super().__init__(f"{reason} for {url} ({len(attempts)}/{launched} attempts completed)")
        self.attempts = list(attempts)
        self.launched = launched
        self.deadline_hit = deadline_hit


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def unwrap_json_envelope(text: str, content_type: str = "") -> str:
    """Return the wrapped document when a route answers with a JSON envelope."""

    if not text:
        return text
    if "json" not in (content_type or "").lower() and not text.lstrip().startswith("{"):
        return text
    try:
        payload = json.loads(text)
    except ValueError:
        return text
    if isinstance(payload, dict):
        for key in JSON_ENVELOPE_KEYS:
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    if isinstance(payload, str):
        return payload
    return text


def assess_markup(
    text: str,
    *,
    status: int = 200,
    content_type: str = "text/html",
    min_length: int = MIN_MARKUP_LENGTH,
    required_markers: Sequence[str] = REQUIRED_MARKERS,
    blocked_title_hints: Sequence[str] = BLOCKED_TITLE_HINTS,
) -> Optional[str]:
    """Return a rejection reason for route output, or None when it looks like a product page."""

    if not 200 <= int(status or 0) < 300:
        return f"status_{status}"
    ctype = (content_type or "").lower()
    if ctype and not any(token in ctype for token in _TEXTUAL_TYPES):
        return f"non_textual:{ctype}"
    if len(text or "") < min_length:
        return "too_short"
    lowered = text.lower()
    for marker in required_markers:
        if marker.lower() not in lowered:
            return f"missing_marker:{marker}"
    title = page_title(text).lower()
    for hint in blocked_title_hints:
        if re.search(rf"\b{re.escape(hint.lower())}\b", title):
            return f"blocked_title:{hint}"
    return None


async def render_with_playwright(
    url: str,
    timeout: float,
    *,
    user_agent: str = USER_AGENT,
    headed: bool = False,
    locale: str = "ja-JP",
) -> str:
    """Render ``url`` in headless Chromium and return the realised document."""

    if async_playwright is None:
        raise RuntimeError("playwright is not installed")
    async with async_playwright() as p:  # type: ignore
        browser = await p.chromium.launch(headless=not headed)
        context = await browser.new_context(
            user_agent=user_agent,
            viewport={"width": 1920, "height": 1080},
            locale=locale,
            java_script_enabled=True,
        )
        page = await context.new_page()
        try:
            await page.goto(url, timeout=int(timeout * 1000), wait_until="domcontentloaded")
            return await page.content()
        finally:
            await context.close()
            await browser.close()


class FetchRacer:
    """Race forwarding routes for one address; escalate to a rendered fallback."""

    def __init__(
        self,
        config: FetchConfig,
        tracker: RouteHealthTracker,
        *,
        renderer: Optional[Renderer] = None,
    ) -> None:
        self.config = config
        self.tracker = tracker
        self._renderer = renderer

    def _session_headers(self) -> Dict[str, str]:
        return {
            "User-Agent": self.config.user_agent,
            "Accept": self.config.accept,
            "Accept-Language": self.config.accept_language,
            "Cache-Control": "no-cache",
        }

    async def fetch(self, address: CanonicalAddress) -> FetchResult:
        try:
            return await self.race(address)
        except RoutesExhausted as exhausted:
            logger.warning("%s; escalating to rendered fallback", exhausted)
            return await self._fetch_fallback(address, exhausted)

    async def race(self, address: CanonicalAddress) -> FetchResult:
        """Return the first validated route response, cancelling the rest."""

        routes = self.config.participating_routes(self.tracker)
        started = time.perf_counter()
        if not routes:
            raise RoutesExhausted(address.url, [], 0, deadline_hit=False)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.race_timeout
        attempts: List[RouteAttempt] = []
        async with aiohttp.ClientSession(headers=self._session_headers()) as session:
            pending = {
                asyncio.create_task(self._attempt(session, route, address), name=f"route:{route.route_id}")
                for route in routes
            }
            try:
                while pending:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        break
                    done, pending = await asyncio.wait(
                        pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                    )
                    for task in done:
                        attempt = task.result()
                        attempts.append(attempt)
                        if attempt.ok:
                            logger.info(
                                "route %s won for %s in %.0fms", attempt.route_id, address.url, attempt.latency_ms
                            )
                            return FetchResult(
                                url=address.url,
                                route=attempt.route_id,
                                method="route",
                                status=attempt.status,
                                content_type=attempt.content_type,
                                text=attempt.text,
                                fetched_at=_now_iso(),
                                elapsed_ms=(time.perf_counter() - started) * 1000.0,
                                attempts=attempts,
                                launched=len(routes),
                            )
            finally:
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
        raise RoutesExhausted(address.url, attempts, len(routes), deadline_hit=bool(pending))

    async def _attempt(
        self,
        session: aiohttp.ClientSession,
        route: Route,
        address: CanonicalAddress,
    ) -> RouteAttempt:
        timeout = self.tracker.recommended_timeout(route)
        request_url = route.build_url(address.url)
        started = time.perf_counter()
        status, content_type, text = 0, "", ""
        error: Optional[str] = None
        try:
            status, content_type, text = await asyncio.wait_for(
                self._request(session, request_url, timeout), timeout
            )
        except asyncio.TimeoutError:
            error = f"timeout after {timeout:.2f}s"
        except aiohttp.ClientError as exc:
            error = f"{type(exc).__name__}: {exc}"
        except Exception as exc:  # route-level failures never escape the race
            error = f"{type(exc).__name__}: {exc}"
        latency_ms = (time.perf_counter() - started) * 1000.0

        if error is None:
            text = unwrap_json_envelope(text, content_type)
            error = assess_markup(
                text,
                status=status,
                content_type=content_type,
                min_length=self.config.min_markup_length,
                required_markers=self.config.required_markers,
                blocked_title_hints=self.config.blocked_title_hints,
            )
        ok = error is None
        self.tracker.record_attempt(route, ok, latency_ms)
        if not ok:
            logger.debug("route %s rejected for %s: %s", route.route_id, address.url, error)
        return RouteAttempt(
            route_id=route.route_id,
            ok=ok,
            latency_ms=latency_ms,
            status=status,
            content_type=content_type,
            error=error,
            text=text if ok else "",
        )

    async def _request(
        self,
        session: aiohttp.ClientSession,
        url: str,
        timeout: float,
    ) -> Tuple[int, str, str]:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            status = resp.status
            content_type = resp.headers.get("Content-Type", "text/html").split(";")[0].strip()
            raw_bytes = await resp.read()
            text = decode_bytes_auto(raw_bytes, resp.headers)
        return status, content_type, text

    def _resolve_renderer(self) -> Optional[Renderer]:
        if self._renderer is not None:
            return self._renderer
        if async_playwright is None:
            return None

        async def _render(url: str, timeout: float) -> str:
            return await render_with_playwright(
                url,
                timeout,
                user_agent=self.config.user_agent,
                headed=self.config.playwright_headed,
            )

        return _render

    async def _fetch_fallback(self, address: CanonicalAddress, exhausted: RoutesExhausted) -> FetchResult:
        errors = [f"{attempt.route_id}: {attempt.error}" for attempt in exhausted.attempts if attempt.error]
        if exhausted.deadline_hit:
            errors.append(f"race deadline {self.config.race_timeout:.1f}s elapsed")
        renderer = self._resolve_renderer() if self.config.enable_fallback else None
        if renderer is None:
            errors.append("fallback: unavailable")
            raise AllRoutesFailed(address.url, exhausted.launched, errors)

        attempts = exhausted.launched + 1
        timeout = self.config.fallback_timeout
        started = time.perf_counter()
        try:
            text = await asyncio.wait_for(renderer(address.url, timeout), timeout)
        except asyncio.TimeoutError as exc:
            errors.append(f"fallback: timeout after {timeout:.1f}s")
            raise AllRoutesFailed(address.url, attempts, errors) from exc
        except Exception as exc:
            errors.append(f"fallback: {type(exc).__name__}: {exc}")
            raise AllRoutesFailed(address.url, attempts, errors) from exc

        reason = assess_markup(
            text or "",
            min_length=self.config.min_markup_length,
            required_markers=self.config.required_markers,
            blocked_title_hints=self.config.blocked_title_hints,
        )
        if reason is not None:
            errors.append(f"fallback: {reason}")
            raise AllRoutesFailed(address.url, attempts, errors)

        elapsed = (time.perf_counter() - started) * 1000.0
        logger.info("rendered fallback succeeded for %s in %.0fms", address.url, elapsed)
        return FetchResult(
            url=address.url,
            route="fallback",
            method="playwright",
            status=200,
            content_type="text/html",
            text=text,
            fetched_at=_now_iso(),
            elapsed_ms=elapsed,
            attempts=list(exhausted.attempts),
            launched=attempts,
        )


__all__ = [
    "DEFAULT_ROUTE_LIST",
    "FetchConfig",
    "FetchRacer",
    "FetchResult",
    "Route",
    "RouteAttempt",
    "RoutesExhausted",
    "assess_markup",
    "make_route",
    "parse_route_list",
    "parse_route_spec",
    "render_with_playwright",
    "unwrap_json_envelope",
]
