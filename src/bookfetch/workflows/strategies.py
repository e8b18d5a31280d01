"""Per-field strategy tables for the extraction cascade.

Every finder is a generator over the raw markup string (regular expressions
only) and yields raw candidates in preference order. Normalisers live in
``extract_utils`` so the manual-override path validates the same way.
"""

from __future__ import annotations

import json
import re
from functools import lru_cache
from html import unescape
from typing import Any, Dict, Iterator, List, Optional, Pattern, Tuple

from ..core.keys import (
    K_AUTHOR,
    K_COVER_URL,
    K_IDENTIFIER,
    K_PRICE,
    K_RATING,
    K_REVIEW_COUNT,
    K_TITLE,
)
from .canonical import find_identifier
from .cascade import FieldSpec, PageContext, Strategy, Tier
from .extract_utils import (
    COUNT_TOKEN_PATTERN,
    ZERO_COUNT_RE,
    clean_text,
    count_token_value,
    node_types,
    normalize_authors,
    normalize_cover_url,
    normalize_identifier,
    normalize_title,
    parse_count,
    parse_price,
    parse_rating,
    person_names,
    score_author,
    score_title,
)

STRUCTURED_FALLBACK = "structured-data-fallback"
CONTEXTUAL_SCAN = "contextual-scan"
CANONICAL_ADDRESS = "canonical-address"

_PRODUCT_TYPES = {"book", "product", "creativework", "individualproduct"}
_SKIP_AUTHOR_TYPES = {"review", "rating", "aggregaterating", "comment"}

# ---------------------------------------------------------------------------
# Markup helpers
# ---------------------------------------------------------------------------


@lru_cache(maxsize=256)
def _element_re(attr: str, value: str, tag: str) -> Pattern[str]:
    return re.compile(
        rf"<(?P<tag>{tag})\b[^>]*?(?<![\w-]){attr}\s*=\s*[\"'](?P<val>{value})[\"'][^>]*>(?P<inner>.*?)</(?P=tag)\s*>",
        re.I | re.S,
    )


def _elements(html: str, attr: str, value: str, tag: str = r"[a-z][a-z0-9]*") -> Iterator[str]:
    """Inner markup of elements whose ``attr`` matches ``value`` (a regex)."""

    for match in _element_re(attr, value, tag).finditer(html):
        yield match.group("inner")


def _class_value(name: str) -> str:
    return rf"[^\"']*(?<![\w-]){name}(?![\w-])[^\"']*"


@lru_cache(maxsize=64)
def _open_tag_re(tag: str) -> Pattern[str]:
    return re.compile(rf"<{tag}\b[^>]*>", re.I | re.S)


def _open_tags(html: str, tag: str) -> Iterator[str]:
    for match in _open_tag_re(tag).finditer(html):
        yield match.group(0)


def _attr(tag: str, name: str) -> Optional[str]:
    match = re.search(rf"(?<![\w-]){re.escape(name)}\s*=\s*(?:\"([^\"]*)\"|'([^']*)')", tag, re.I)
    if not match:
        return None
    value = match.group(1) if match.group(1) is not None else match.group(2)
    return unescape(value)


def _meta(html: str, *names: str) -> Iterator[str]:
    wanted = {name.lower() for name in names}
    for tag in _open_tags(html, "meta"):
        key = (_attr(tag, "property") or _attr(tag, "name") or _attr(tag, "itemprop") or "").lower()
        if key in wanted:
            content = _attr(tag, "content")
            if content:
                yield content


def _product_nodes(ctx: PageContext) -> Iterator[Dict[str, Any]]:
    for node in ctx.json_ld:
        if _PRODUCT_TYPES.intersection(node_types(node)):
            yield node


def _aggregate_ratings(ctx: PageContext) -> Iterator[Dict[str, Any]]:
    for node in ctx.json_ld:
        rating = node.get("aggregateRating")
        if isinstance(rating, dict):
            yield rating
        elif "aggregaterating" in node_types(node):
            yield node


def _offers(ctx: PageContext) -> Iterator[Dict[str, Any]]:
    for node in _product_nodes(ctx):
        offers = node.get("offers")
        items = offers if isinstance(offers, list) else [offers]
        for item in items:
            if isinstance(item, dict):
                yield item


# ---------------------------------------------------------------------------
# Title
# ---------------------------------------------------------------------------

_TITLE_TAG_RE = re.compile(r"<title[^>]*>(.*?)</title\s*>", re.I | re.S)


def title_structured(ctx: PageContext) -> Iterator[Any]:
    for node in _product_nodes(ctx):
        name = node.get("name")
        if isinstance(name, str):
            yield name


def title_semantic(ctx: PageContext) -> Iterator[str]:
    html = ctx.html
    yield from _elements(html, "id", "productTitle")
    yield from _elements(html, "id", "ebooksProductTitle")
    yield from _elements(html, "id", "title", tag="h1")
    yield from _elements(html, "class", _class_value("kindle-title"))
    yield from _elements(html, "class", _class_value("a-size-large"), tag="h1")


def title_text(ctx: PageContext) -> Iterator[str]:
    yield from _meta(ctx.html, "og:title", "twitter:title")
    for match in _TITLE_TAG_RE.finditer(ctx.html):
        yield match.group(1)


def title_structural(ctx: PageContext) -> Iterator[str]:
    match = re.search(r"<h1\b[^>]*>(.*?)</h1\s*>", ctx.html, re.I | re.S)
    if match:
        yield match.group(1)
    yield from _elements(ctx.html, "class", _class_value("title"), tag="h2")


# ---------------------------------------------------------------------------
# Author
# ---------------------------------------------------------------------------

_AUTHOR_JSON_FALLBACKS = (
    re.compile(r"\"author\"\s*:\s*\[?\s*\{[^{}]*?\"name\"\s*:\s*\"([^\"]+)\"", re.S),
    re.compile(r"\"author\"\s*:\s*\"([^\"]+)\""),
)
_CONTRIBUTOR_RE = re.compile(r"<a\b[^>]*class=[\"'][^\"']*contributorNameID[^\"']*[\"'][^>]*>(.*?)</a\s*>", re.I | re.S)
_AUTHOR_SPAN_ANCHOR_RE = re.compile(
    r"<span\b[^>]*class=[\"'][^\"']*(?<![\w-])author(?![\w-])[^\"']*[\"'][^>]*>[\s\S]{0,400}?<a\b[^>]*>(.*?)</a\s*>",
    re.I,
)
_AUTHOR_HREF_RE = re.compile(
    r"<a\b[^>]*href=[\"'][^\"']*(?:/e/[A-Z0-9]{10}|/author/|field-author=)[^\"']*[\"'][^>]*>(.*?)</a\s*>",
    re.I | re.S,
)
_AUTHOR_TEXT_PATTERNS = (
    re.compile(r">\s*(?:By|Authors?|Written\s+by)\b\s*[:：]?\s*([^<>]{2,60})<", re.I),
    re.compile(r">\s*(?:著者|作者)\s*[:：]\s*([^<>]{2,60})<"),
    re.compile(
        r">\s*(?:By|Authors?|著者|作者)\b\s*[:：]?\s*</[a-z0-9]+>\s*(?:<[^>]+>\s*){0,3}([^<>]{2,60})<",
        re.I,
    ),
    re.compile(r">\s*([^<>]{2,40}?)\s*[\(（](?:著|作|Author)[\)）]", re.I),
)
_LABEL = r"(?:著者|作者|Authors?|By)"
_AUTHOR_TABLE_RE = re.compile(
    rf"<tr\b[^>]*>\s*<t[hd]\b[^>]*>\s*(?:<[^>]+>\s*)*{_LABEL}\s*[:：]?\s*(?:</?[^>]+>\s*)*</t[hd]>\s*<td\b[^>]*>(.*?)</td\s*>",
    re.I | re.S,
)
_AUTHOR_LIST_RE = re.compile(
    rf"<li\b[^>]*>\s*(?:<[^>]+>\s*)*{_LABEL}\s*[:：‎‏]\s*(?:</?[^>]+>\s*)*(.*?)</li\s*>",
    re.I | re.S,
)
_DATA_AUTHOR_RE = re.compile(r"(?<![\w-])data-[\w-]*author[\w-]*\s*=\s*[\"']([^\"']+)[\"']", re.I)
_ARIA_AUTHOR_RE = re.compile(r"aria-label\s*=\s*[\"']\s*((?:author|著者)\s*[:：][^\"']+)[\"']", re.I)
_HEADING_END_RE = re.compile(r"</h1\s*>", re.I)
_INLINE_TEXT_RE = re.compile(r"<(a|span)\b[^>]*>([^<>]{2,50})</\1\s*>", re.I)


def author_structured(ctx: PageContext) -> Iterator[str]:
    for node in _product_nodes(ctx):
        for key in ("author", "creator"):
            names = person_names(node.get(key))
            if names:
                yield ", ".join(names)
    for node in ctx.json_ld:
        if _SKIP_AUTHOR_TYPES.intersection(node_types(node)):
            continue
        names = person_names(node.get("author"))
        if names:
            yield ", ".join(names)
    if not ctx.json_ld:
        # Blocks json.loads rejects still carry usable author names.
        for pattern in _AUTHOR_JSON_FALLBACKS:
            for match in pattern.finditer(ctx.html):
                yield match.group(1)
    yield from _elements(ctx.html, "itemprop", "author")
    yield from _meta(ctx.html, "author", "book:author")


def author_byline(ctx: PageContext) -> Iterator[str]:
    region = ctx.byline
    if not region:
        return
    names: List[str] = []
    for pattern in (_CONTRIBUTOR_RE, _AUTHOR_SPAN_ANCHOR_RE, _AUTHOR_HREF_RE):
        names.extend(clean_text(match.group(1)) for match in pattern.finditer(region))
    names = [name for name in names if name]
    if names:
        yield ", ".join(names)


def author_semantic(ctx: PageContext) -> Iterator[str]:
    html = ctx.html
    yield from _elements(html, "(?:class|id)", r"[^\"']*(?:author|byline|contributor)[^\"']*")
    for match in _DATA_AUTHOR_RE.finditer(html):
        yield unescape(match.group(1))
    for match in _ARIA_AUTHOR_RE.finditer(html):
        yield unescape(match.group(1))
    yield from _address_blocks(html)
    for tag in _open_tags(html, "link"):
        if (_attr(tag, "rel") or "").lower() == "author":
            title = _attr(tag, "title")
            if title:
                yield title


def _address_blocks(html: str) -> Iterator[str]:
    for match in re.finditer(r"<address\b[^>]*>(.*?)</address\s*>", html, re.I | re.S):
        yield match.group(1)


def author_text(ctx: PageContext) -> Iterator[str]:
    for pattern in _AUTHOR_TEXT_PATTERNS:
        for match in pattern.finditer(ctx.html):
            yield match.group(1)


def author_structural(ctx: PageContext) -> Iterator[str]:
    for match in _AUTHOR_TABLE_RE.finditer(ctx.html):
        yield match.group(1)
    for match in _AUTHOR_LIST_RE.finditer(ctx.html):
        yield match.group(1)
    heading = _HEADING_END_RE.search(ctx.html)
    if heading:
        window = ctx.html[heading.end() : heading.end() + 500]
        for match in _INLINE_TEXT_RE.finditer(window):
            yield match.group(2)


# ---------------------------------------------------------------------------
# Cover image
# ---------------------------------------------------------------------------

_COVER_IDS = ("landingImage", "imgBlkFront", "ebooksImgBlkFront")
_COVER_CLASSES = ("a-dynamic-image", "frontImage")


def _image_scope(ctx: PageContext) -> str:
    return ctx.image_block or ctx.html


def cover_dynamic_map(ctx: PageContext) -> Iterator[str]:
    """Largest image first from ``data-a-dynamic-image`` sizing maps."""

    sized: List[Tuple[int, str]] = []
    for tag in _open_tags(_image_scope(ctx), "img"):
        raw = _attr(tag, "data-a-dynamic-image")
        if not raw:
            continue
        try:
            mapping = json.loads(raw)
        except ValueError:
            continue
        if not isinstance(mapping, dict):
            continue
        for url, dims in mapping.items():
            area = 0
            if isinstance(dims, list) and len(dims) >= 2:
                try:
                    area = int(dims[0]) * int(dims[1])
                except (TypeError, ValueError):
                    area = 0
            sized.append((area, url))
    for _area, url in sorted(sized, key=lambda item: item[0], reverse=True):
        yield url


def cover_high_res(ctx: PageContext) -> Iterator[str]:
    for tag in _open_tags(_image_scope(ctx), "img"):
        value = _attr(tag, "data-old-hires")
        if value:
            yield value


def cover_semantic(ctx: PageContext) -> Iterator[str]:
    tags = list(_open_tags(_image_scope(ctx), "img"))
    for wanted in _COVER_IDS:
        for tag in tags:
            if _attr(tag, "id") == wanted:
                for attr in ("data-old-hires", "src", "data-src"):
                    value = _attr(tag, attr)
                    if value:
                        yield value
    for wanted in _COVER_CLASSES:
        for tag in tags:
            classes = (_attr(tag, "class") or "").split()
            if wanted in classes:
                for attr in ("src", "data-src"):
                    value = _attr(tag, attr)
                    if value:
                        yield value


def cover_preview_meta(ctx: PageContext) -> Iterator[str]:
    yield from _meta(ctx.html, "og:image", "twitter:image")


def cover_any_product_image(ctx: PageContext) -> Iterator[str]:
    for tag in _open_tags(_image_scope(ctx), "img"):
        for attr in ("src", "data-src"):
            value = _attr(tag, attr)
            if value and "/images/I/" in value:
                yield value


# ---------------------------------------------------------------------------
# Review count
# ---------------------------------------------------------------------------

_COUNT_UNITS = (
    r"個の評価|件のレビュー|件のカスタマーレビュー|ratings?\b"
    r"|Sternebewertungen|Bewertungen|évaluations|valutazioni|valoraciones"
)
_REVIEW_DIRECT_TEXT_RE = re.compile(r"(" + COUNT_TOKEN_PATTERN + r")\s*(?:" + _COUNT_UNITS + r")", re.I)
_REVIEW_WIDGET_RE = re.compile(
    r"id=[\"']cr-widget-ACR[\"'][\s\S]{0,2000}?("
    + COUNT_TOKEN_PATTERN
    + r")\s*(?:"
    + _COUNT_UNITS
    + r"|reviews?\b)",
    re.I,
)
_REVIEW_COUNT_JSON_RE = re.compile(r"\"(?:reviewCount|ratingCount)\"\s*:\s*\"?(\d[\d,]*)")
_REVIEW_KEYWORD_RE = re.compile(
    r"レビュー|評価|customer\s+reviews?|global\s+ratings?|ratings?|reviews?|bewertungen|évaluations|valutazioni|valoraciones",
    re.I,
)
_NUMBER_RE = re.compile(COUNT_TOKEN_PATTERN)
CONTEXT_WINDOW = 40


def review_count_semantic(ctx: PageContext) -> Iterator[str]:
    html = ctx.html
    yield from _elements(html, "data-hook", "total-review-count")
    yield from _elements(html, "id", "acrCustomerReviewText")
    yield from _elements(html, "href", r"[^\"']*#customerReviews", tag="a")
    for match in _REVIEW_WIDGET_RE.finditer(html):
        yield match.group(1)


def review_count_text(ctx: PageContext) -> Iterator[str]:
    for match in _REVIEW_DIRECT_TEXT_RE.finditer(ctx.html):
        yield match.group(1)


def review_count_structured(ctx: PageContext) -> Iterator[Any]:
    for rating in _aggregate_ratings(ctx):
        for key in ("reviewCount", "ratingCount"):
            if rating.get(key) not in (None, ""):
                yield rating[key]
    for match in _REVIEW_COUNT_JSON_RE.finditer(ctx.html):
        yield match.group(1)
    yield from _meta(ctx.html, "reviewCount", "ratingCount")


def review_count_zero_marker(ctx: PageContext) -> Iterator[str]:
    match = ZERO_COUNT_RE.search(ctx.text)
    if match:
        yield match.group(0)


def review_count_contextual(ctx: PageContext) -> Iterator[int]:
    """Largest number within a fixed window of any review keyword."""

    text = ctx.text
    best: Optional[int] = None
    for keyword in _REVIEW_KEYWORD_RE.finditer(text):
        start = max(0, keyword.start() - CONTEXT_WINDOW)
        window = text[start : keyword.end() + CONTEXT_WINDOW]
        for token in _NUMBER_RE.findall(window):
            value = count_token_value(token)
            if best is None or value > best:
                best = value
    if best is not None:
        yield best


# ---------------------------------------------------------------------------
# Rating
# ---------------------------------------------------------------------------

_RATING_JSON_RE = re.compile(r"\"ratingValue\"\s*:\s*\"?([\d.,]+)")
_RATING_POPOVER_RE = re.compile(r"<[a-z]+\b[^>]*(?<![\w-])id=[\"']acrPopover[\"'][^>]*>", re.I)
_RATING_TEXT_PATTERNS = (
    re.compile(r"5つ星のうち\s*[\d.,]+"),
    re.compile(r"[\d.,]+\s*out\s+of\s+5(?:\s+stars)?", re.I),
    re.compile(r"平均評価\s*[:：]?\s*([\d.,]+)"),
)


def rating_structured(ctx: PageContext) -> Iterator[Any]:
    for rating in _aggregate_ratings(ctx):
        if rating.get("ratingValue") not in (None, ""):
            yield rating["ratingValue"]
    for match in _RATING_JSON_RE.finditer(ctx.html):
        yield match.group(1)
    yield from _meta(ctx.html, "ratingValue")


def rating_semantic(ctx: PageContext) -> Iterator[str]:
    for match in _RATING_POPOVER_RE.finditer(ctx.html):
        title = _attr(match.group(0), "title")
        if title:
            yield title
    yield from _elements(ctx.html, "class", _class_value("a-icon-alt"))


def rating_text(ctx: PageContext) -> Iterator[str]:
    for pattern in _RATING_TEXT_PATTERNS:
        for match in pattern.finditer(ctx.text):
            yield match.group(1) if pattern.groups else match.group(0)


# ---------------------------------------------------------------------------
# Price
# ---------------------------------------------------------------------------

_PRICE_JSON_RE = re.compile(r"\"price\"\s*:\s*\"?[￥¥$£€]?\s*([\d.,]+)")
_PRICE_TEXT_RE = re.compile(r"[￥¥$£€]\s*\d[\d,]*(?:\.\d+)?|\d[\d,]*\s*円")


def price_structured(ctx: PageContext) -> Iterator[Any]:
    for offer in _offers(ctx):
        if offer.get("price") not in (None, ""):
            yield offer["price"]
        spec = offer.get("priceSpecification")
        if isinstance(spec, dict) and spec.get("price") not in (None, ""):
            yield spec["price"]
    for match in _PRICE_JSON_RE.finditer(ctx.html):
        yield match.group(1)
    yield from _meta(ctx.html, "price", "product:price:amount", "og:price:amount")


def price_semantic(ctx: PageContext) -> Iterator[str]:
    html = ctx.html
    # a-price-whole holds only the integer part.
    yield from _elements(html, "class", _class_value("a-offscreen"))
    yield from _elements(html, "class", _class_value("a-price-whole"))
    for element_id in ("kindle-price", "priceblock_ourprice", "price"):
        yield from _elements(html, "id", element_id)


def price_text(ctx: PageContext) -> Iterator[str]:
    for match in _PRICE_TEXT_RE.finditer(ctx.text):
        yield match.group(0)


# ---------------------------------------------------------------------------
# Identifier
# ---------------------------------------------------------------------------

_ASIN_JSON_RE = re.compile(r"\"asin\"\s*:\s*\"([A-Z0-9]{10})\"", re.I)
_ASIN_TEXT_RE = re.compile(r"ASIN[\s‎‏:：]*([A-Z0-9]{10})\b")


def identifier_structured(ctx: PageContext) -> Iterator[Any]:
    for node in _product_nodes(ctx):
        for key in ("sku", "productID", "asin", "isbn"):
            value = node.get(key)
            if isinstance(value, str):
                yield value.split(":")[-1]
    yield from _meta(ctx.html, "sku", "productID")


def identifier_semantic(ctx: PageContext) -> Iterator[str]:
    for tag in _open_tags(ctx.html, "input"):
        if (_attr(tag, "name") or "").upper() == "ASIN":
            value = _attr(tag, "value")
            if value:
                yield value
    for match in re.finditer(r"(?<![\w-])data-asin\s*=\s*[\"']([A-Z0-9]{10})[\"']", ctx.html, re.I):
        yield match.group(1)
    for match in _ASIN_JSON_RE.finditer(ctx.html):
        yield match.group(1)


def identifier_text(ctx: PageContext) -> Iterator[str]:
    for match in _ASIN_TEXT_RE.finditer(ctx.text):
        yield match.group(1)


def identifier_canonical_link(ctx: PageContext) -> Iterator[str]:
    for tag in _open_tags(ctx.html, "link"):
        if (_attr(tag, "rel") or "").lower() == "canonical":
            found = find_identifier(_attr(tag, "href") or "")
            if found:
                yield found


def identifier_from_address(ctx: PageContext) -> Iterator[str]:
    if ctx.address is not None:
        yield ctx.address.identifier


# ---------------------------------------------------------------------------
# Field tables
# ---------------------------------------------------------------------------

S1, S2, S3, S4 = Tier.STRUCTURED_DATA, Tier.SEMANTIC_MARKUP, Tier.TEXT_PATTERN, Tier.STRUCTURAL

TITLE_FIELD = FieldSpec(
    K_TITLE,
    normalize_title,
    (
        Strategy("json-ld name", S1, title_structured),
        Strategy("title elements", S2, title_semantic),
        Strategy("meta and document title", S3, title_text, scored=True),
        Strategy("headings", S4, title_structural),
    ),
    score=score_title,
)

AUTHOR_FIELD = FieldSpec(
    K_AUTHOR,
    normalize_authors,
    (
        Strategy("json-ld, microdata and meta author", S1, author_structured),
        Strategy("byline contributors", S2, author_byline),
        Strategy("author attributes", S2, author_semantic),
        Strategy("labelled author text", S3, author_text, scored=True),
        Strategy("labelled rows and heading proximity", S4, author_structural),
    ),
    score=score_author,
)

COVER_FIELD = FieldSpec(
    K_COVER_URL,
    normalize_cover_url,
    (
        Strategy("dynamic image sizing map", S1, cover_dynamic_map),
        Strategy("high-resolution attribute", S2, cover_high_res),
        Strategy("cover image ids and classes", S2, cover_semantic),
        Strategy("preview meta image", S3, cover_preview_meta),
        Strategy("any product image", S4, cover_any_product_image),
    ),
)

REVIEW_COUNT_FIELD = FieldSpec(
    K_REVIEW_COUNT,
    parse_count,
    (
        Strategy("review count elements", S2, review_count_semantic),
        Strategy("labelled review count", S3, review_count_text),
        Strategy("aggregate rating count", S1, review_count_structured, source=STRUCTURED_FALLBACK),
        Strategy("no-review marker", S3, review_count_zero_marker),
        Strategy("keyword window scan", S4, review_count_contextual, source=CONTEXTUAL_SCAN),
    ),
)

RATING_FIELD = FieldSpec(
    K_RATING,
    parse_rating,
    (
        Strategy("aggregate rating value", S1, rating_structured),
        Strategy("rating widgets", S2, rating_semantic),
        Strategy("rating phrases", S3, rating_text),
    ),
)

PRICE_FIELD = FieldSpec(
    K_PRICE,
    parse_price,
    (
        Strategy("offer price", S1, price_structured),
        Strategy("price elements", S2, price_semantic),
        Strategy("currency amounts", S3, price_text),
    ),
)

IDENTIFIER_FIELD = FieldSpec(
    K_IDENTIFIER,
    normalize_identifier,
    (
        Strategy("json-ld sku", S1, identifier_structured),
        Strategy("asin attributes", S2, identifier_semantic),
        Strategy("asin label", S3, identifier_text),
        Strategy("canonical link", S4, identifier_canonical_link),
        Strategy("requested address", S4, identifier_from_address, source=CANONICAL_ADDRESS),
    ),
)

DEFAULT_FIELDS: Tuple[FieldSpec, ...] = (
    TITLE_FIELD,
    AUTHOR_FIELD,
    COVER_FIELD,
    REVIEW_COUNT_FIELD,
    RATING_FIELD,
    PRICE_FIELD,
    IDENTIFIER_FIELD,
)

__all__ = [
    "AUTHOR_FIELD",
    "CANONICAL_ADDRESS",
    "CONTEXTUAL_SCAN",
    "COVER_FIELD",
    "DEFAULT_FIELDS",
    "IDENTIFIER_FIELD",
    "PRICE_FIELD",
    "RATING_FIELD",
    "REVIEW_COUNT_FIELD",
    "STRUCTURED_FALLBACK",
    "TITLE_FIELD",
]
