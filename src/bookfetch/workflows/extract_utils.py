"""Field cleaners, validators and parsers shared by every extraction tier."""

from __future__ import annotations

import json
import logging
import re
from html import unescape
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .fetcher_config import AUTHOR_DISPLAY_SEPARATOR
from .html_normalize import collapse_whitespace, fragment_text, minimal_text_fix

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Denylists
# ---------------------------------------------------------------------------

# Placeholder/action vocabulary that shows up where a name or title should be.
AUTHOR_DENYLIST = (
    "follow",
    "following",
    "unfollow",
    "more",
    "see",
    "see all",
    "visit",
    "store",
    "kindle",
    "amazon",
    "paperback",
    "hardcover",
    "edition",
    "format",
    "review",
    "reviews",
    "rating",
    "ratings",
    "stars",
    "buy",
    "buy now",
    "cart",
    "price",
    "click",
    "sign in",
    "learn more",
    "details",
    "search",
    "prime",
    "unknown",
)
AUTHOR_DENYLIST_NATIVE = (
    "フォロー",
    "もっと見る",
    "すべて見る",
    "詳細",
    "購入",
    "カート",
    "レビュー",
    "評価",
    "検索",
    "ストア",
    "著者ページ",
    "形式",
    "不明",
)
TITLE_DENYLIST_EXACT = {
    "amazon",
    "amazon.co.jp",
    "amazon.com",
    "kindle",
    "book",
    "books",
    "title",
    "error",
    "not found",
    "page not found",
    "robot check",
    "本",
}

_AUTHOR_DENY_WORDS = frozenset(word for term in AUTHOR_DENYLIST for word in term.split())
_AUTHOR_ACTION_RE = re.compile(
    r"^(?:see|click|read|view|visit|follow|unfollow|buy|shop|sign\s+in|learn\s+more)(?:\s|$)",
    re.I,
)
_WORD_RE = re.compile(r"[^\W\d_]+")

# ---------------------------------------------------------------------------
# Shared patterns
# ---------------------------------------------------------------------------

_STORE_SUFFIX_RE = re.compile(r"\s*[-–|:：]\s*Amazon(?:\.[a-z.]+)?\b.*$", re.I)
_FOLLOW_CUT_RE = re.compile(r"をフォロー|フォロー中|\bunfollow\b|\bfollowing\b", re.I)
_AUTHOR_PREFIX_RE = re.compile(
    r"^(?:(?:written\s+by|by|authors?|著者|作者|著|作)\s*[:：]\s*|(?:written\s+by|by)\s+)",
    re.I,
)
_BRACKETED_RE = re.compile(r"[\(（][^)）]*[\)）]|【[^】]*】|\[[^\]]*\]")
_TRAILING_FOLLOW_RE = re.compile(r"\s*(?:フォロー|follow)\s*$", re.I)
_QUOTE_CHARS = "\"'“”‘’「」『』«»"
_EDGE_PUNCT = " ,、，・/／&＆-–—:：;；|"
_AUTHOR_SPLIT_RE = re.compile(r"\s*(?:[,，、&＆/／;；]|\band\b)\s*", re.I)
_PROSE_RE = re.compile(r"[。？！?!]|[a-z]{3,}\.\s+[A-Z]")
_SYMBOLIC_RE = re.compile(r"^[\d\W_]+$")
_JAPANESE_RE = re.compile(r"[぀-ヿ㐀-鿿]")

# Grouped thousands: "1,292", "1.292", "1 292" (also NBSP, narrow NBSP, thin space).
COUNT_TOKEN_PATTERN = r"\d{1,3}(?:[,.'\u00a0\u202f\u2009 ]\d{3})+(?!\d)|\d+"
_NUMBER_TOKEN_RE = re.compile(COUNT_TOKEN_PATTERN)
_DECIMAL_RE = re.compile(r"\d+(?:[.,]\d+)?")
_PRICE_TOKEN_RE = re.compile(r"\d[\d,.\s]*")
ZERO_COUNT_RE = re.compile(
    r"no\s+customer\s+reviews|no\s+reviews\s+yet|be\s+the\s+first\s+to\s+(?:write\s+a\s+)?review"
    r"|レビューはありません|カスタマーレビューはありません|まだレビューがありません",
    re.I,
)

_IDENTIFIER_RE = re.compile(r"^[A-Z0-9]{10}$")
_ISBN_ALLOWED_RE = re.compile(r"^[0-9Xx\- ]{10,17}$")

COVER_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")
COVER_PATH_MARKERS = ("/images/I/",)
COVER_BANNER_MARKERS = ("Digital_Video", "svod", "PrimeVideo", "/images/G/")

_JSON_LD_RE = re.compile(
    r"<script\b[^>]*type=[\"']application/ld\+json[\"'][^>]*>(.*?)</script\s*>",
    re.I | re.S,
)

MAX_REVIEW_COUNT = 100_000_000
MAX_PRICE = 10_000_000.0


# ---------------------------------------------------------------------------
# Text cleaning
# ---------------------------------------------------------------------------


def clean_text(raw: Any) -> str:
    """Fragment → visible text, mojibake fixed, whitespace collapsed."""

    if raw is None:
        return ""
    text = fragment_text(str(raw))
    return collapse_whitespace(minimal_text_fix(text))


def clean_title(raw: Any) -> str:
    text = clean_text(raw)
    text = _STORE_SUFFIX_RE.sub("", text)
    return text.strip(_QUOTE_CHARS + " ")


def validate_title(value: str) -> bool:
    if not value or not 2 <= len(value) <= 300:
        return False
    if value.strip().lower() in TITLE_DENYLIST_EXACT:
        return False
    return not _SYMBOLIC_RE.match(value)


def normalize_title(raw: Any) -> Optional[str]:
    value = clean_title(raw)
    return value if validate_title(value) else None


def clean_author(raw: Any) -> str:
    """Strip follow-button text, role labels and decoration from one author name."""

    text = clean_text(raw)
    cut = _FOLLOW_CUT_RE.search(text)
    if cut:
        text = text[: cut.start()]
    text = _AUTHOR_PREFIX_RE.sub("", text.strip())
    text = _BRACKETED_RE.sub(" ", text)
    for quote in "“”「」『』«»":
        text = text.replace(quote, " ")
    text = collapse_whitespace(text).strip(_QUOTE_CHARS + " ")
    text = _TRAILING_FOLLOW_RE.sub("", text)
    return collapse_whitespace(text.strip(_EDGE_PUNCT))


def validate_author(value: str) -> bool:
    if not value or not 2 <= len(value) <= 50:
        return False
    if _SYMBOLIC_RE.match(value):
        return False
    if _PROSE_RE.search(value):
        return False
    # Whole-value UI labels only; "Richard Price" and "Thomas More" are names.
    words = _WORD_RE.findall(value.casefold())
    if words and all(word in _AUTHOR_DENY_WORDS for word in words):
        return False
    if _AUTHOR_ACTION_RE.match(value):
        return False
    if any(term in value for term in AUTHOR_DENYLIST_NATIVE):
        return False
    # Lone one- or two-letter ASCII tokens are initials or UI fragments.
    if re.fullmatch(r"[A-Za-z]{1,2}\.?", value):
        return False
    return True


def author_key(name: str) -> str:
    return re.sub(r"\s+", "", name or "").casefold()


def split_authors(raw: Any) -> List[str]:
    """Split a multi-author string, clean and validate each name, dedupe in order."""

    text = clean_text(raw)
    cut = _FOLLOW_CUT_RE.search(text)
    # A follow suffix only ends the list when nothing separates names after it.
    if cut and not _AUTHOR_SPLIT_RE.search(text[cut.end():]):
        text = text[: cut.start()]
    names: List[str] = []
    seen = set()
    for token in _AUTHOR_SPLIT_RE.split(text):
        name = clean_author(token)
        if not validate_author(name):
            continue
        key = author_key(name)
        if key in seen:
            continue
        seen.add(key)
        names.append(name)
    return names


def normalize_authors(raw: Any) -> Optional[str]:
    names = split_authors(raw)
    if not names:
        return None
    return AUTHOR_DISPLAY_SEPARATOR.join(names)


def score_author(value: str) -> float:
    """Plausibility score used to rank text-pattern author candidates."""

    score = 0.0
    if _JAPANESE_RE.search(value):
        score += 10
    if 3 <= len(value) <= 20:
        score += 5
    if value[:1].isupper():
        score += 3
    words = value.split()
    if len(words) > 1 and len(words) <= 4:
        score += 2
    return score


def score_title(value: str) -> float:
    score = 0.0
    if 5 <= len(value) <= 150:
        score += 5
    if "|" not in value:
        score += 3
    if "amazon" in value.lower():
        score -= 5
    return score + min(len(value), 80) / 80.0


# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------


def parse_count(raw: Any) -> Optional[int]:
    """Parse a review count; explicit "no reviews" text is a real zero."""

    if raw is None:
        return None
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if 0 <= raw <= MAX_REVIEW_COUNT else None
    if isinstance(raw, float):
        return int(raw) if raw.is_integer() and 0 <= raw <= MAX_REVIEW_COUNT else None
    text = clean_text(raw)
    if not text:
        return None
    if ZERO_COUNT_RE.search(text):
        return 0
    match = _NUMBER_TOKEN_RE.search(text)
    if not match:
        return None
    value = count_token_value(match.group(0))
    return value if value <= MAX_REVIEW_COUNT else None


def count_token_value(token: str) -> int:
    return int(re.sub(r"\D", "", token))


def _to_float(token: str) -> Optional[float]:
    try:
        return float(token.replace(",", "."))
    except ValueError:
        return None


def parse_rating(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value: Optional[float] = float(raw)
    else:
        text = clean_text(raw)
        if "のうち" in text:
            text = text.split("のうち", 1)[1]
        elif re.search(r"out\s+of", text, re.I):
            text = re.split(r"out\s+of", text, maxsplit=1, flags=re.I)[0]
        match = _DECIMAL_RE.search(text)
        value = _to_float(match.group(0)) if match else None
    if value is None or not 0.0 <= value <= 5.0:
        return None
    return round(value, 2)


def parse_price(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value: Optional[float] = float(raw)
    else:
        match = _PRICE_TOKEN_RE.search(clean_text(raw))
        if not match:
            return None
        token = re.sub(r"\s+", "", match.group(0)).rstrip(".,")
        if "," in token and "." in token:
            # The right-most separator is the decimal point.
            if token.rfind(",") > token.rfind("."):
                token = token.replace(".", "").replace(",", ".")
            else:
                token = token.replace(",", "")
        elif "," in token:
            head, _, tail = token.rpartition(",")
            token = token.replace(",", "") if len(tail) == 3 else f"{head.replace(',', '')}.{tail}"
        elif token.count(".") > 1:
            token = token.replace(".", "")
        try:
            value = float(token)
        except ValueError:
            return None
    if value is None or not 0.0 <= value <= MAX_PRICE:
        return None
    return round(value, 2)


# ---------------------------------------------------------------------------
# Identifiers and images
# ---------------------------------------------------------------------------


def normalize_identifier(raw: Any) -> Optional[str]:
    value = clean_text(raw).upper().replace(" ", "")
    if not _IDENTIFIER_RE.match(value):
        return None
    if not any(ch.isdigit() for ch in value):
        return None
    return value


def normalize_isbn(raw: Any) -> Optional[str]:
    text = clean_text(raw)
    if not _ISBN_ALLOWED_RE.match(text):
        return None
    compact = re.sub(r"[\s-]", "", text).upper()
    if len(compact) == 13 and compact.isdigit():
        return compact
    if len(compact) == 10 and compact[:9].isdigit() and (compact[9].isdigit() or compact[9] == "X"):
        return compact
    return None


def is_cover_image(url: str) -> bool:
    if not url:
        return False
    path = url.split("?", 1)[0].lower()
    if not path.endswith(COVER_EXTENSIONS):
        return False
    if not any(marker in url for marker in COVER_PATH_MARKERS):
        return False
    return not any(marker.lower() in url.lower() for marker in COVER_BANNER_MARKERS)


def normalize_cover_url(raw: Any) -> Optional[str]:
    url = unescape(str(raw or "")).strip().strip(_QUOTE_CHARS)
    if url.startswith("//"):
        url = f"https:{url}"
    if not url.lower().startswith(("http://", "https://")):
        return None
    return url if is_cover_image(url) else None


# ---------------------------------------------------------------------------
# Structured data
# ---------------------------------------------------------------------------


def _walk_json(value: Any) -> Iterator[Dict[str, Any]]:
    if isinstance(value, dict):
        yield value
        for child in value.values():
            yield from _walk_json(child)
    elif isinstance(value, list):
        for child in value:
            yield from _walk_json(child)


def json_ld_nodes(html: str) -> List[Dict[str, Any]]:
    """Return every object found in the page's JSON-LD blocks (depth-first)."""

    nodes: List[Dict[str, Any]] = []
    for match in _JSON_LD_RE.finditer(html or ""):
        body = match.group(1).strip()
        body = re.sub(r"^\s*(?:<!--|<!\[CDATA\[)|(?:-->|\]\]>)\s*$", "", body)
        if not body:
            continue
        try:
            payload = json.loads(body)
        except ValueError:
            logger.debug("skipping malformed JSON-LD block (%d chars)", len(body))
            continue
        nodes.extend(_walk_json(payload))
    return nodes


def node_types(node: Dict[str, Any]) -> List[str]:
    raw = node.get("@type")
    if isinstance(raw, str):
        return [raw.lower()]
    if isinstance(raw, list):
        return [str(item).lower() for item in raw]
    return []


def person_names(value: Any) -> List[str]:
    """Names from a JSON-LD author/creator value (string, Person, or list)."""

    names: List[str] = []
    items: Iterable[Any] = value if isinstance(value, list) else [value]
    for item in items:
        if isinstance(item, str):
            names.append(item)
        elif isinstance(item, dict):
            name = item.get("name")
            if isinstance(name, str):
                names.append(name)
    return names


__all__ = [
    "AUTHOR_DENYLIST",
    "COUNT_TOKEN_PATTERN",
    "ZERO_COUNT_RE",
    "author_key",
    "clean_author",
    "clean_text",
    "clean_title",
    "count_token_value",
    "is_cover_image",
    "json_ld_nodes",
    "node_types",
    "normalize_authors",
    "normalize_cover_url",
    "normalize_identifier",
    "normalize_isbn",
    "normalize_title",
    "parse_count",
    "parse_price",
    "parse_rating",
    "person_names",
    "score_author",
    "score_title",
    "split_authors",
    "validate_author",
    "validate_title",
]
