"""Tiered extraction engine.

Each field owns an ordered list of independent strategies. A strategy yields
raw candidate strings; the field's normaliser cleans, validates and converts
them. The first strategy that produces a valid value wins and records its
tier, confidence and source label. Scored strategies rank all of their valid
candidates and keep the best one instead of the first.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import IntEnum
from functools import cached_property
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .canonical import CanonicalAddress
from .extract_utils import json_ld_nodes
from .html_normalize import strip_markup

logger = logging.getLogger(__name__)


class Tier(IntEnum):
    STRUCTURED_DATA = 1
    SEMANTIC_MARKUP = 2
    TEXT_PATTERN = 3
    STRUCTURAL = 4
    MANUAL_OVERRIDE = 5

    @property
    def label(self) -> str:
        return _TIER_LABELS[self]

    @property
    def confidence(self) -> float:
        return TIER_CONFIDENCE[self]


_TIER_LABELS = {
    Tier.STRUCTURED_DATA: "structured-data",
    Tier.SEMANTIC_MARKUP: "semantic-markup",
    Tier.TEXT_PATTERN: "text-pattern",
    Tier.STRUCTURAL: "structural",
    Tier.MANUAL_OVERRIDE: "manual-override",
}

TIER_CONFIDENCE = {
    Tier.STRUCTURED_DATA: 0.95,
    Tier.SEMANTIC_MARKUP: 0.8,
    Tier.TEXT_PATTERN: 0.6,
    Tier.STRUCTURAL: 0.4,
    Tier.MANUAL_OVERRIDE: 1.0,
}


@dataclass(frozen=True)
class ExtractedCandidate:
    field: str
    value: Any
    tier: Tier
    confidence: float
    source: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "value": self.value,
            "tier": int(self.tier),
            "confidence": self.confidence,
            "source": self.source,
        }


class PageContext:
    """The markup string plus lazily computed views shared by all strategies."""

    _FOLLOW_WIDGET_RE = re.compile(
        r"<(a|button|span)\b[^>]*(?:follow|フォロー)[^>]*>.*?</\1\s*>",
        re.I | re.S,
    )

    def __init__(self, html: str, address: Optional[CanonicalAddress] = None) -> None:
        self.html = html or ""
        self.address = address

    @cached_property
    def json_ld(self) -> List[Dict[str, Any]]:
        return json_ld_nodes(self.html)

    @cached_property
    def text(self) -> str:
        return strip_markup(self.html)

    def region(self, markers: Sequence[Tuple[str, int, int]]) -> str:
        """Slice around the first marker found: ``(needle, before, after)``."""

        for needle, before, after in markers:
            index = self.html.find(needle)
            if index >= 0:
                return self.html[max(0, index - before) : index + after]
        return ""

    @cached_property
    def byline(self) -> str:
        region = self.region(
            (
                ('id="bylineInfo"', 200, 2000),
                ("id='bylineInfo'", 200, 2000),
                ("bylineInfo_feature_div", 200, 3000),
            )
        )
        return self._FOLLOW_WIDGET_RE.sub(" ", region)

    @cached_property
    def image_block(self) -> str:
        return self.region(
            (
                ("imgTagWrapperId", 500, 5000),
                ("ebooksImageBlock", 500, 5000),
                ('id="imageBlock"', 500, 8000),
                ("main-image-container", 500, 5000),
                ("imageGallery", 500, 5000),
            )
        )


Finder = Callable[[PageContext], Iterable[Any]]


@dataclass(frozen=True)
class Strategy:
    name: str
    tier: Tier
    find: Finder
    scored: bool = False
    source: Optional[str] = None

    @property
    def label(self) -> str:
        return self.source or self.tier.label


@dataclass(frozen=True)
class FieldSpec:
    name: str
    normalize: Callable[[Any], Optional[Any]]
    strategies: Tuple[Strategy, ...]
    score: Optional[Callable[[Any], float]] = None


class ExtractionCascade:
    """Run every field's strategies in order and keep the first trustworthy value."""

    def __init__(self, fields: Optional[Sequence[FieldSpec]] = None) -> None:
        if fields is None:
            from .strategies import DEFAULT_FIELDS

            fields = DEFAULT_FIELDS
        self.fields: Dict[str, FieldSpec] = {spec.name: spec for spec in fields}

    def extract(
        self,
        html: str,
        address: Optional[CanonicalAddress] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, ExtractedCandidate]:
        context = PageContext(html, address)
        results: Dict[str, ExtractedCandidate] = {}
        for name, spec in self.fields.items():
            candidate = None
            if overrides and overrides.get(name) not in (None, ""):
                candidate = self.apply_override(spec, overrides[name])
            if candidate is None:
                candidate = self.extract_field(spec, context)
            if candidate is not None:
                results[name] = candidate
        return results

    def apply_override(self, spec: FieldSpec, raw: Any) -> Optional[ExtractedCandidate]:
        value = spec.normalize(raw)
        if value is None:
            logger.warning("ignoring invalid manual %s override: %r", spec.name, raw)
            return None
        tier = Tier.MANUAL_OVERRIDE
        return ExtractedCandidate(spec.name, value, tier, tier.confidence, tier.label)

    def extract_field(self, spec: FieldSpec, context: PageContext) -> Optional[ExtractedCandidate]:
        for strategy in spec.strategies:
            value = self._run_strategy(spec, strategy, context)
            if value is None:
                continue
            logger.debug("%s: %s hit via %s -> %r", spec.name, strategy.label, strategy.name, value)
            return ExtractedCandidate(
                field=spec.name,
                value=value,
                tier=strategy.tier,
                confidence=strategy.tier.confidence,
                source=strategy.label,
            )
        logger.debug("%s: no strategy produced a value", spec.name)
        return None

    def _run_strategy(self, spec: FieldSpec, strategy: Strategy, context: PageContext) -> Optional[Any]:
        best: Optional[Any] = None
        best_score = float("-inf")
        try:
            for raw in strategy.find(context):
                value = spec.normalize(raw)
                if value is None:
                    continue
                if not strategy.scored or spec.score is None:
                    return value
                score = spec.score(value)
                if score > best_score:
                    best, best_score = value, score
        except Exception:  # a broken strategy is a miss, never a failure
            logger.debug("%s strategy %s raised", spec.name, strategy.name, exc_info=True)
        return best


__all__ = [
    "ExtractedCandidate",
    "ExtractionCascade",
    "FieldSpec",
    "PageContext",
    "Strategy",
    "TIER_CONFIDENCE",
    "Tier",
]
