"""Dedicated structured-data extractor (JSON-LD and microdata) plus detail fields."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..core.keys import (
    K_AUTHOR,
    K_CATEGORIES,
    K_CURRENCY,
    K_IDENTIFIER,
    K_ISBN,
    K_LANGUAGE,
    K_PAGE_COUNT,
    K_PRICE,
    K_PUBLICATION_DATE,
    K_PUBLISHER,
    K_RATING,
    K_REVIEW_COUNT,
    K_TITLE,
)
from .canonical import CanonicalAddress
from .cascade import ExtractedCandidate, PageContext, Tier
from .extract_utils import (
    clean_text,
    node_types,
    normalize_authors,
    normalize_identifier,
    normalize_isbn,
    normalize_title,
    parse_count,
    parse_price,
    parse_rating,
    person_names,
)

logger = logging.getLogger(__name__)

METADATA_SOURCE = "metadata"

_PRODUCT_TYPES = {"book", "product", "creativework", "individualproduct"}
_DETAIL_SEP = r"(?:\s|&[lr]rm;|&#820[67];|[‎‏:：])*"
_CURRENCY_SYMBOLS = {"￥": "JPY", "¥": "JPY", "円": "JPY", "$": "USD", "£": "GBP", "€": "EUR"}
_PRICE_SYMBOL_RE = re.compile(r"[￥¥$£€]\s*\d|\d[\d,]*\s*円")
_DATE_IN_PARENS_RE = re.compile(r"[\(（]\s*(\d{4}[/.-]\d{1,2}[/.-]\d{1,2}|[A-Z][a-z]+ \d{1,2}, \d{4})\s*[\)）]")
_PAGES_RE = re.compile(r"(\d{1,5})\s*(?:pages?|ページ)", re.I)
_BREADCRUMB_REGION = "wayfinding-breadcrumbs_feature_div"


@dataclass
class MetadataResult:
    candidates: Dict[str, ExtractedCandidate] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)


def _detail_bullet(html: str, labels: str) -> Iterator[str]:
    """Values of Amazon-style detail bullets: ``<span>Label : </span><span>value</span>``."""

    pattern = re.compile(
        rf"<span\b[^>]*>\s*(?:{labels}){_DETAIL_SEP}</span>\s*<span\b[^>]*>(.*?)</span\s*>",
        re.I | re.S,
    )
    for match in pattern.finditer(html):
        value = clean_text(match.group(1))
        if value:
            yield value


def _first(values: Iterator[Any], normalize: Callable[[Any], Optional[Any]]) -> Optional[Any]:
    for raw in values:
        value = normalize(raw)
        if value is not None:
            return value
    return None


def _text_or_name(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("name"), str):
        return value["name"]
    if isinstance(value, list) and value:
        return _text_or_name(value[0])
    return None


class MetadataExtractor:
    """Higher-authority structured-data source consulted alongside the cascade."""

    def extract_all(self, html: str, address: Optional[CanonicalAddress] = None) -> MetadataResult:
        context = PageContext(html, address)
        result = MetadataResult()
        products = [node for node in context.json_ld if _PRODUCT_TYPES.intersection(node_types(node))]
        fields = self._guarded("structured fields", self._structured_fields, context, products) or {}
        for name, value in fields.items():
            tier = Tier.STRUCTURED_DATA
            result.candidates[name] = ExtractedCandidate(name, value, tier, tier.confidence, METADATA_SOURCE)
        result.details = self._guarded("details", self._details, context, products) or {}
        logger.debug(
            "metadata: %d structured fields, %d details for %s",
            len(result.candidates),
            len(result.details),
            address.url if address else "<markup>",
        )
        return result

    def _structured_fields(self, context: PageContext, products: List[Dict[str, Any]]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}

        def offer_values(key: str) -> Iterator[Any]:
            for node in products:
                offers = node.get("offers")
                for offer in offers if isinstance(offers, list) else [offers]:
                    if isinstance(offer, dict) and offer.get(key) not in (None, ""):
                        yield offer[key]

        def rating_values(key: str) -> Iterator[Any]:
            for node in context.json_ld:
                rating = node.get("aggregateRating")
                if isinstance(rating, dict) and rating.get(key) not in (None, ""):
                    yield rating[key]

        lookups = {
            K_TITLE: (
                iter(node["name"] for node in products if isinstance(node.get("name"), str)),
                normalize_title,
            ),
            K_AUTHOR: (
                iter(", ".join(person_names(node.get("author"))) for node in products),
                normalize_authors,
            ),
            K_IDENTIFIER: (
                iter(node.get(key) for node in products for key in ("sku", "productID", "asin")),
                normalize_identifier,
            ),
            K_REVIEW_COUNT: (
                iter([*rating_values("reviewCount"), *rating_values("ratingCount")]),
                parse_count,
            ),
            K_RATING: (rating_values("ratingValue"), parse_rating),
            K_PRICE: (offer_values("price"), parse_price),
        }
        for name, (values, normalize) in lookups.items():
            value = _first((raw for raw in values if raw not in (None, "")), normalize)
            if value is not None:
                fields[name] = value

        # Microdata carries the same facts on pages without JSON-LD.
        microdata = {
            K_REVIEW_COUNT: (("reviewCount", "ratingCount"), parse_count),
            K_RATING: (("ratingValue",), parse_rating),
            K_PRICE: (("price",), parse_price),
        }
        for name, (props, normalize) in microdata.items():
            if name in fields:
                continue
            value = _first(self._itemprop_values(context.html, props), normalize)
            if value is not None:
                fields[name] = value
        return fields

    @staticmethod
    def _guarded(section: str, build: Callable[..., Any], *args: Any) -> Any:
        try:
            return build(*args)
        except Exception:  # a malformed section is a miss, never a failure
            logger.debug("metadata %s section raised", section, exc_info=True)
            return None

    @staticmethod
    def _itemprop_values(html: str, props: tuple) -> Iterator[str]:
        alternation = "|".join(re.escape(prop) for prop in props)
        for match in re.finditer(
            rf"<[a-z]+\b[^>]*itemprop=[\"'](?:{alternation})[\"'][^>]*>",
            html,
            re.I,
        ):
            content = re.search(r"content=[\"']([^\"']+)[\"']", match.group(0), re.I)
            if content:
                yield content.group(1)

    def _details(self, context: PageContext, products: List[Dict[str, Any]]) -> Dict[str, Any]:
        html = context.html
        details: Dict[str, Any] = {}

        def from_products(key: str) -> Iterator[Any]:
            for node in products:
                if node.get(key) not in (None, ""):
                    yield node[key]

        isbn = _first(from_products("isbn"), normalize_isbn)
        if isbn is None:
            isbn = _first(_detail_bullet(html, r"ISBN-13|ISBN-10|ISBN"), normalize_isbn)
        if isbn:
            details[K_ISBN] = isbn

        publisher = _first(from_products("publisher"), _text_or_name)
        bullet_publisher = next(_detail_bullet(html, r"出版社|Publisher"), None)
        if publisher is None and bullet_publisher:
            publisher = _DATE_IN_PARENS_RE.sub("", bullet_publisher).split(";")[0]
        if publisher:
            details[K_PUBLISHER] = clean_text(publisher)

        published = _first(from_products("datePublished"), _text_or_name)
        if published is None:
            published = next(_detail_bullet(html, r"発売日|出版日|Publication date"), None)
        if published is None and bullet_publisher:
            dated = _DATE_IN_PARENS_RE.search(bullet_publisher)
            published = dated.group(1) if dated else None
        if published:
            details[K_PUBLICATION_DATE] = clean_text(published)

        pages = _first(from_products("numberOfPages"), self._page_count)
        if pages is None:
            pages = _first(
                _detail_bullet(html, r"ページ数|本の長さ|Print length|Paperback|Hardcover|単行本|文庫"),
                self._page_count,
            )
        if pages is not None:
            details[K_PAGE_COUNT] = pages

        language = _first(from_products("inLanguage"), _text_or_name)
        if language is None:
            language = next(_detail_bullet(html, r"言語|Language"), None)
        if language:
            details[K_LANGUAGE] = clean_text(language)

        currency = _first(
            (offer.get("priceCurrency") for node in products for offer in self._offer_list(node)),
            lambda value: value.upper() if isinstance(value, str) and len(value) == 3 else None,
        )
        if currency is None:
            symbol = _PRICE_SYMBOL_RE.search(context.text)
            if symbol:
                token = symbol.group(0)
                currency = next((code for mark, code in _CURRENCY_SYMBOLS.items() if mark in token), None)
        if currency:
            details[K_CURRENCY] = currency

        categories = self._guarded("categories", self._categories, context)
        if categories:
            details[K_CATEGORIES] = categories
        return details

    @staticmethod
    def _offer_list(node: Dict[str, Any]) -> List[Dict[str, Any]]:
        offers = node.get("offers")
        items = offers if isinstance(offers, list) else [offers]
        return [item for item in items if isinstance(item, dict)]

    @staticmethod
    def _page_count(raw: Any) -> Optional[int]:
        if isinstance(raw, int) and not isinstance(raw, bool):
            return raw if raw > 0 else None
        match = _PAGES_RE.search(str(raw or "")) or re.fullmatch(r"\s*(\d{1,5})\s*", str(raw or ""))
        if not match:
            return None
        value = int(match.group(1))
        return value if value > 0 else None

    @staticmethod
    def _categories(context: PageContext) -> List[str]:
        names: List[str] = []
        for node in context.json_ld:
            if "breadcrumblist" not in node_types(node):
                continue
            items = node.get("itemListElement")
            if not isinstance(items, list):
                continue
            for item in items:
                if not isinstance(item, dict):
                    continue
                name = _text_or_name(item.get("name")) or _text_or_name(item.get("item"))
                if name:
                    names.append(clean_text(name))
        if not names:
            region = context.region(((_BREADCRUMB_REGION, 0, 4000),)).split("</ul>", 1)[0]
            for match in re.finditer(r"<a\b[^>]*>(.*?)</a\s*>", region, re.I | re.S):
                text = clean_text(match.group(1))
                if text:
                    names.append(text)
        return list(dict.fromkeys(name for name in names if name))


__all__ = ["METADATA_SOURCE", "MetadataExtractor", "MetadataResult"]
