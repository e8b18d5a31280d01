"""Merge cascade and metadata candidates into a sanitised BookRecord."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..core.keys import (
    K_AUTHOR,
    K_CANONICAL_ADDRESS,
    K_COVER_URL,
    K_DETAILS,
    K_FETCHED_AT,
    K_IDENTIFIER,
    K_PRICE,
    K_PROVENANCE,
    K_RATING,
    K_REVIEW_COUNT,
    K_TITLE,
)
from .canonical import CanonicalAddress
from .cascade import ExtractedCandidate, Tier
from .extract_utils import clean_text
from .fetcher_config import (
    AUTHOR_MAX_CHARS,
    COVER_URL_MAX_CHARS,
    TITLE_MAX_CHARS,
    UNKNOWN_AUTHOR,
    UNKNOWN_TITLE,
)
from .metadata import MetadataResult

logger = logging.getLogger(__name__)

RECORD_FIELDS: Tuple[str, ...] = (
    K_TITLE,
    K_AUTHOR,
    K_COVER_URL,
    K_REVIEW_COUNT,
    K_RATING,
    K_PRICE,
    K_IDENTIFIER,
)


@dataclass(frozen=True)
class BookRecord:
    title: str
    author: str
    cover_url: Optional[str]
    review_count: Optional[int]
    rating: Optional[float]
    price: Optional[float]
    identifier: str
    canonical_address: str
    fetched_at: str
    provenance: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    details: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            K_TITLE: self.title,
            K_AUTHOR: self.author,
            K_COVER_URL: self.cover_url,
            K_REVIEW_COUNT: self.review_count,
            K_RATING: self.rating,
            K_PRICE: self.price,
            K_IDENTIFIER: self.identifier,
            K_CANONICAL_ADDRESS: self.canonical_address,
            K_FETCHED_AT: self.fetched_at,
            K_PROVENANCE: dict(self.provenance),
            K_DETAILS: {key: list(value) if isinstance(value, tuple) else value for key, value in self.details.items()},
        }

    def to_json(self, *, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=indent)


def _same_value(left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        return clean_text(left).casefold() == clean_text(right).casefold()
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return abs(float(left) - float(right)) < 1e-9
    return left == right


def choose_candidate(
    cascade: Optional[ExtractedCandidate],
    metadata: Optional[ExtractedCandidate],
) -> Optional[ExtractedCandidate]:
    """Metadata wins a disagreement unless the cascade value is a manual override."""

    if cascade is not None and metadata is not None:
        if cascade.tier == Tier.MANUAL_OVERRIDE or _same_value(cascade.value, metadata.value):
            return cascade
        logger.debug(
            "%s: metadata %r overrides %s %r", cascade.field, metadata.value, cascade.source, cascade.value
        )
        return metadata
    return cascade if cascade is not None else metadata


class ResultAssembler:
    def __init__(self, *, default_review_count: Optional[int] = 0) -> None:
        self.default_review_count = default_review_count

    def assemble(
        self,
        cascade: Mapping[str, ExtractedCandidate],
        metadata: Optional[MetadataResult],
        address: CanonicalAddress,
        fetched_at: str,
    ) -> BookRecord:
        meta_candidates = metadata.candidates if metadata is not None else {}
        values: Dict[str, Any] = {}
        provenance: Dict[str, str] = {}
        for name in RECORD_FIELDS:
            chosen = choose_candidate(cascade.get(name), meta_candidates.get(name))
            if chosen is None or chosen.value in (None, ""):
                continue
            values[name] = chosen.value
            provenance[name] = chosen.source

        title = self._cap(values.get(K_TITLE), TITLE_MAX_CHARS) or UNKNOWN_TITLE
        author = self._cap(values.get(K_AUTHOR), AUTHOR_MAX_CHARS) or UNKNOWN_AUTHOR
        cover_url = values.get(K_COVER_URL)
        if cover_url and len(cover_url) > COVER_URL_MAX_CHARS:
            logger.debug("dropping oversized cover url (%d chars)", len(cover_url))
            cover_url = None
            provenance.pop(K_COVER_URL, None)

        review_count = values.get(K_REVIEW_COUNT)
        if review_count is None:
            review_count = self.default_review_count

        details = dict(metadata.details) if metadata is not None else {}
        for key, value in list(details.items()):
            if isinstance(value, list):
                details[key] = tuple(value)

        return BookRecord(
            title=title,
            author=author,
            cover_url=cover_url,
            review_count=review_count,
            rating=values.get(K_RATING),
            price=values.get(K_PRICE),
            identifier=values.get(K_IDENTIFIER) or address.identifier,
            canonical_address=address.url,
            fetched_at=fetched_at,
            provenance=MappingProxyType(provenance),
            details=MappingProxyType(details),
        )

    @staticmethod
    def _cap(value: Optional[str], limit: int) -> str:
        return (value or "").strip()[:limit].rstrip()

    @staticmethod
    def missing_fields(record: BookRecord) -> List[str]:
        missing: List[str] = []
        if not record.title or record.title == UNKNOWN_TITLE:
            missing.append(K_TITLE)
        if not record.author or record.author == UNKNOWN_AUTHOR:
            missing.append(K_AUTHOR)
        count = record.review_count
        if not isinstance(count, int) or isinstance(count, bool):
            missing.append(K_REVIEW_COUNT)
        if not record.canonical_address:
            missing.append(K_CANONICAL_ADDRESS)
        return missing

    def validate(self, record: BookRecord) -> bool:
        return not self.missing_fields(record)


__all__ = ["BookRecord", "RECORD_FIELDS", "ResultAssembler", "choose_candidate"]
