"""High-level exports for the bookfetch workflows."""

from .assembler import BookRecord, ResultAssembler
from .canonical import CanonicalAddress, canonicalize
from .cascade import ExtractedCandidate, ExtractionCascade, Tier
from .errors import (
    AllRoutesFailed,
    BookFetchError,
    CacheWriteFailure,
    ExtractionIncomplete,
    InvalidAddress,
)
from .fetcher import FetchOrchestrator, FetchState, FetchStats, fetch_book
from .metadata import MetadataExtractor, MetadataResult
from .response_cache import ResponseCache
from .route_health import RouteHealthTracker
from .web_fetch import FetchConfig, FetchRacer, FetchResult, Route

__all__ = [
    "AllRoutesFailed",
    "BookFetchError",
    "BookRecord",
    "CacheWriteFailure",
    "CanonicalAddress",
    "ExtractedCandidate",
    "ExtractionCascade",
    "ExtractionIncomplete",
    "FetchConfig",
    "FetchOrchestrator",
    "FetchRacer",
    "FetchResult",
    "FetchState",
    "FetchStats",
    "InvalidAddress",
    "MetadataExtractor",
    "MetadataResult",
    "ResponseCache",
    "ResultAssembler",
    "Route",
    "RouteHealthTracker",
    "Tier",
    "canonicalize",
    "fetch_book",
]
