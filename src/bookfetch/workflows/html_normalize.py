"""Text normalization helpers for captured markup.

This module is deterministic and provider-agnostic. Pages are never parsed
into a full tree: whole-document helpers work on the raw string, and only
small captured fragments are handed to BeautifulSoup for text conversion.
"""

from __future__ import annotations

import re
from html import unescape as _unescape
import unicodedata
import warnings
from typing import Mapping, Optional

import ftfy
from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning  # type: ignore
from charset_normalizer import from_bytes

warnings.filterwarnings("ignore", category=MarkupResemblesLocatorWarning)

__all__ = [
    "decode_bytes_auto",
    "minimal_text_fix",
    "fragment_text",
    "collapse_whitespace",
    "strip_markup",
    "page_title",
]

_ZERO_WIDTH = {0x200B, 0x200C, 0x200D, 0x200E, 0x200F, 0x2060, 0xFEFF}
_REMOVE = {0x00, 0x0B, 0x0C}
_C1_TO_SPACE = {cp: " " for cp in range(0x80, 0xA0)}
_TRANSLATE = {**{cp: None for cp in _ZERO_WIDTH | _REMOVE}, **_C1_TO_SPACE}

_WS_RE = re.compile(r"\s+")
_TAG_RE = re.compile(r"<[^>]+>")
_INVISIBLE_BLOCK_RE = re.compile(r"<(script|style|noscript|template)\b[^>]*>.*?</\1\s*>", re.I | re.S)
_COMMENT_RE = re.compile(r"<!--.*?-->", re.S)
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title\s*>", re.I | re.S)


def decode_bytes_auto(body: bytes, headers: Optional[Mapping[str, str]] = None) -> str:
    """Decode HTTP bytes using charset header hints with charset-normalizer fallback."""

    enc = None
    if headers:
        ct = headers.get("content-type", "") or headers.get("Content-Type", "")
        match = re.search(r"charset=([^\s;]+)", ct, re.I)
        if match:
            enc = match.group(1).strip(' "\'').lower()
    if enc:
        try:
            return body.decode(enc, errors="replace")
        except LookupError:
            pass
    result = from_bytes(body).best()
    if result is None:
        return body.decode("utf-8", errors="replace")
    return str(result)


def minimal_text_fix(text: str) -> str:
    """Fix mojibake and strip zero-width/control noise without collapsing structure."""

    if not text:
        return ""
    normalized = unicodedata.normalize("NFC", text)
    fixed = ftfy.fix_text(normalized, normalization="NFC")
    return fixed.translate(_TRANSLATE)


def collapse_whitespace(text: str) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def fragment_text(fragment: str) -> str:
    """Return the visible text of a small markup fragment with entities decoded."""

    if not fragment:
        return ""
    if "<" not in fragment and "&" not in fragment:
        return collapse_whitespace(fragment)
    text = BeautifulSoup(fragment, "lxml").get_text(" ", strip=True)
    return collapse_whitespace(text)


def strip_markup(html: str) -> str:
    """Cheap whole-document text view: drop scripts/styles/comments and tags."""

    if not html:
        return ""
    text = _INVISIBLE_BLOCK_RE.sub(" ", html)
    text = _COMMENT_RE.sub(" ", text)
    text = _TAG_RE.sub(" ", text)
    return collapse_whitespace(_unescape(text))


def page_title(html: str) -> str:
    match = _TITLE_RE.search(html or "")
    if not match:
        return ""
    return fragment_text(match.group(1))
