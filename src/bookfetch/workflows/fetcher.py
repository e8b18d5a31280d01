"""Orchestrate canonicalize → cache → race → extract → assemble → validate → store."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv

from .assembler import BookRecord, ResultAssembler
from .canonical import CanonicalAddress, canonicalize
from .cascade import ExtractionCascade
from .errors import (
    AllRoutesFailed,
    BookFetchError,
    CacheWriteFailure,
    ExtractionIncomplete,
    InvalidAddress,
)
from .fetcher_config import HEALTHY_AVERAGE_MS, HEALTHY_SUCCESS_RATE
from .metadata import MetadataExtractor
from .response_cache import ResponseCache
from .route_health import RouteHealthTracker
from .web_fetch import FetchConfig, FetchRacer

load_dotenv(override=True)

logger = logging.getLogger(__name__)

# Process exit codes shared by the argparse entrypoint and the typer CLI.
EXIT_OK = 0
EXIT_INVALID_ADDRESS = 2
EXIT_ALL_ROUTES_FAILED = 3
EXIT_INCOMPLETE = 4


class FetchState(str, Enum):
    START = "START"
    CANONICALIZED = "CANONICALIZED"
    CACHE_HIT = "CACHE_HIT"
    CACHE_MISS = "CACHE_MISS"
    FETCHED = "FETCHED"
    EXTRACTED = "EXTRACTED"
    ASSEMBLED = "ASSEMBLED"
    VALIDATED = "VALIDATED"
    CACHED = "CACHED"
    FAILED = "FAILED"


@dataclass
class FetchStats:
    """Running request counters for one orchestrator."""

    total_requests: int = 0
    cache_hits: int = 0
    successful_fetches: int = 0
    failed_fetches: int = 0
    average_response_ms: float = 0.0
    fastest_response_ms: Optional[float] = None
    slowest_response_ms: Optional[float] = None

    def record_request(self) -> None:
        self.total_requests += 1

    def record_cache_hit(self, elapsed_ms: float) -> None:
        self.cache_hits += 1
        self._track_extremes(elapsed_ms)

    def record_success(self, elapsed_ms: float) -> None:
        self.successful_fetches += 1
        n = self.successful_fetches
        self.average_response_ms += (elapsed_ms - self.average_response_ms) / n
        self._track_extremes(elapsed_ms)

    def record_failure(self) -> None:
        self.failed_fetches += 1

    def _track_extremes(self, elapsed_ms: float) -> None:
        if self.fastest_response_ms is None or elapsed_ms < self.fastest_response_ms:
            self.fastest_response_ms = elapsed_ms
        if self.slowest_response_ms is None or elapsed_ms > self.slowest_response_ms:
            self.slowest_response_ms = elapsed_ms

    @property
    def success_rate(self) -> float:
        fetched = self.successful_fetches + self.failed_fetches
        return self.successful_fetches / fetched if fetched else 1.0

    @property
    def cache_hit_rate(self) -> float:
        return self.cache_hits / self.total_requests if self.total_requests else 0.0

    @property
    def healthy(self) -> bool:
        return self.success_rate > HEALTHY_SUCCESS_RATE and self.average_response_ms < HEALTHY_AVERAGE_MS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "cache_hits": self.cache_hits,
            "successful_fetches": self.successful_fetches,
            "failed_fetches": self.failed_fetches,
            "average_response_ms": round(self.average_response_ms, 1),
            "fastest_response_ms": self.fastest_response_ms,
            "slowest_response_ms": self.slowest_response_ms,
            "success_rate": round(self.success_rate, 3),
            "cache_hit_rate": round(self.cache_hit_rate, 3),
            "healthy": self.healthy,
        }


class FetchOrchestrator:
    """Single linear pass per request; owns no global state."""

    def __init__(
        self,
        config: Optional[FetchConfig] = None,
        *,
        cache: Optional[ResponseCache] = None,
        tracker: Optional[RouteHealthTracker] = None,
        racer: Optional[FetchRacer] = None,
        cascade: Optional[ExtractionCascade] = None,
        metadata: Optional[MetadataExtractor] = None,
        assembler: Optional[ResultAssembler] = None,
    ) -> None:
        self.config = config or FetchConfig.from_env()
        self._owns_cache = cache is None
        if cache is None:
            cache = ResponseCache(
                max_entries=self.config.cache_max_entries,
                default_ttl=self.config.cache_ttl,
                max_age=self.config.cache_max_age,
            )
        self.cache = cache
        self.tracker = tracker or RouteHealthTracker(self.config.base_timeout)
        self.racer = racer or FetchRacer(self.config, self.tracker)
        self.cascade = cascade or ExtractionCascade()
        self.metadata = metadata or MetadataExtractor()
        self.assembler = assembler or ResultAssembler(default_review_count=self.config.default_review_count)
        self._stats = FetchStats()
        if self._owns_cache and self.config.cache_sweep_interval > 0:
            self.cache.start_sweeper(self.config.cache_sweep_interval)

    async def __aenter__(self) -> "FetchOrchestrator":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_cache:
            self.cache.close()

    def stats(self) -> FetchStats:
        return self._stats

    def _enter(self, state: FetchState, raw: str) -> FetchState:
        logger.debug("%s -> %s", raw, state.value)
        return state

    async def fetch(self, raw: str, *, overrides: Optional[Mapping[str, Any]] = None) -> BookRecord:
        """Return a validated record for ``raw`` or raise a tagged ``BookFetchError``."""

        started = time.perf_counter()
        self._stats.record_request()
        use_cache = not overrides
        stage = self._enter(FetchState.START, raw)
        try:
            stage = FetchState.CANONICALIZED
            address = canonicalize(raw, allowed_hosts=self.config.allowed_hosts)
            self._enter(stage, raw)

            if use_cache:
                cached = self.cache.get(address.url)
                if cached is not None:
                    self._enter(FetchState.CACHE_HIT, raw)
                    elapsed = (time.perf_counter() - started) * 1000.0
                    self._stats.record_cache_hit(elapsed)
                    logger.info("cache hit for %s", address.url)
                    return cached
            stage = self._enter(FetchState.CACHE_MISS, raw)

            stage = FetchState.FETCHED
            result = await self.racer.fetch(address)
            self._enter(stage, raw)

            stage = FetchState.EXTRACTED
            candidates = self.cascade.extract(result.text, address, overrides)
            metadata = self.metadata.extract_all(result.text, address)
            self._enter(stage, raw)

            stage = FetchState.ASSEMBLED
            record = self.assembler.assemble(candidates, metadata, address, result.fetched_at)
            self._enter(stage, raw)

            stage = FetchState.VALIDATED
            missing = self.assembler.missing_fields(record)
            if missing:
                raise ExtractionIncomplete(address.url, missing, record)
            self._enter(stage, raw)

            if use_cache:
                self._store(address, record)
            self._enter(FetchState.CACHED, raw)
        except BookFetchError as exc:
            if exc.state is None:
                exc.state = stage.value
            self._stats.record_failure()
            logger.debug("%s -> %s (%s: %s)", raw, FetchState.FAILED.value, type(exc).__name__, exc)
            raise

        self._stats.record_success((time.perf_counter() - started) * 1000.0)
        return record

    def _store(self, address: CanonicalAddress, record: BookRecord) -> None:
        try:
            self.cache.set(address.url, record, ttl=self.config.cache_ttl)
        except CacheWriteFailure as exc:
            logger.warning("cache write failed for %s: %s", address.url, exc)


# ---------------- Single event loop helper for this module ------------------
_FETCH_LOOP: asyncio.AbstractEventLoop | None = None


def _run_in_fetch_loop(coro: "asyncio.coroutines.Coroutine"):
    global _FETCH_LOOP
    if _FETCH_LOOP is None or _FETCH_LOOP.is_closed():
        _FETCH_LOOP = asyncio.new_event_loop()
    try:
        return _FETCH_LOOP.run_until_complete(coro)
    except BaseException:
        # A failed run may leave the loop in an unknown state; start fresh next time.
        _FETCH_LOOP.close()
        _FETCH_LOOP = None
        raise


def fetch_book(
    raw: str,
    *,
    config: Optional[FetchConfig] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    orchestrator: Optional[FetchOrchestrator] = None,
) -> BookRecord:
    """Fetch a single product page synchronously."""

    owned = orchestrator is None
    runner = orchestrator or FetchOrchestrator(config)
    try:
        return _run_in_fetch_loop(runner.fetch(raw, overrides=overrides))
    finally:
        if owned:
            runner.close()


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, InvalidAddress):
        return EXIT_INVALID_ADDRESS
    if isinstance(exc, AllRoutesFailed):
        return EXIT_ALL_ROUTES_FAILED
    if isinstance(exc, ExtractionIncomplete):
        return EXIT_INCOMPLETE
    return 1


def error_payload(raw: str, exc: BookFetchError) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "url": raw,
        "error": type(exc).__name__,
        "message": str(exc),
        "state": exc.state,
        "retryable": exc.retryable,
    }
    if isinstance(exc, AllRoutesFailed):
        payload["attempts"] = exc.attempts
        payload["errors"] = list(exc.errors)
    if isinstance(exc, ExtractionIncomplete):
        payload["missing"] = list(exc.missing)
        if exc.record is not None:
            payload["record"] = exc.record.to_dict()
    return payload


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="bookfetch single-product entrypoint")
    parser.add_argument("url", help="Product page address")
    parser.add_argument("--title", help="Manual title override (bypasses the cache)")
    parser.add_argument("--author", help="Manual author override (bypasses the cache)")
    parser.add_argument("--race-timeout", type=float, help="Override the overall race ceiling (seconds)")
    parser.add_argument("--no-fallback", action="store_true", help="Disable the rendered fallback")
    parser.add_argument("--stats", action="store_true", help="Include orchestrator stats in the output")
    args = parser.parse_args(argv)

    config = FetchConfig.from_env()
    if args.race_timeout:
        config.race_timeout = args.race_timeout
    if args.no_fallback:
        config.enable_fallback = False
    overrides = {key: value for key, value in (("title", args.title), ("author", args.author)) if value}

    orchestrator = FetchOrchestrator(config)
    try:
        record = fetch_book(args.url, overrides=overrides or None, orchestrator=orchestrator)
    except BookFetchError as exc:
        json.dump(error_payload(args.url, exc), sys.stdout, ensure_ascii=False, indent=2)
        sys.stdout.write("\n")
        return exit_code_for(exc)
    finally:
        orchestrator.close()

    payload: Dict[str, Any] = record.to_dict()
    if args.stats:
        payload["stats"] = orchestrator.stats().to_dict()
    json.dump(payload, sys.stdout, ensure_ascii=False, indent=2)
    sys.stdout.write("\n")
    return EXIT_OK


__all__ = [
    "EXIT_ALL_ROUTES_FAILED",
    "EXIT_INCOMPLETE",
    "EXIT_INVALID_ADDRESS",
    "EXIT_OK",
    "FetchOrchestrator",
    "FetchState",
    "FetchStats",
    "error_payload",
    "exit_code_for",
    "fetch_book",
    "main",
]


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
