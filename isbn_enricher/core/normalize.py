from __future__ import annotations

import hashlib
import re
import unicodedata
from typing import Iterable, List, Optional, Tuple

_ISBN10_SHAPE = re.compile(r"^\d{9}[\dX]$")
_ISBN13_SHAPE = re.compile(r"^97[89]\d{10}$")
_NOT_ISBN_CHARS = re.compile(r"[^0-9X]")

_HTML_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[^\w\s]+", re.UNICODE)
_LEADING_ARTICLE_RE = re.compile(r"^(the|a|an)\s+", re.IGNORECASE)


def normalize_isbn(raw: str) -> str:
    """Uppercase and keep digits/X only: "978-0-306-40615-7" -> "9780306406157"."""
    return _NOT_ISBN_CHARS.sub("", str(raw or "").upper())


def _ean13_check_digit(first12: str) -> int:
    weighted = sum(int(d) * (3 if pos % 2 else 1) for pos, d in enumerate(first12))
    return -weighted % 10


def is_valid_isbn10(value: str) -> bool:
    isbn = normalize_isbn(value)
    if not _ISBN10_SHAPE.match(isbn):
        return False
    weights = range(10, 0, -1)
    vals = [10 if ch == "X" else int(ch) for ch in isbn]
    return sum(w * v for w, v in zip(weights, vals)) % 11 == 0


def is_valid_isbn13(value: str) -> bool:
    isbn = normalize_isbn(value)
    return bool(_ISBN13_SHAPE.match(isbn)) and _ean13_check_digit(isbn[:12]) == int(isbn[12])


def isbn10_to_isbn13(value: str) -> str:
    isbn = normalize_isbn(value)
    if not is_valid_isbn10(isbn):
        return ""
    body = "978" + isbn[:9]
    return body + str(_ean13_check_digit(body))


def to_isbn13(value: str) -> str:
    """Return a valid ISBN-13 for any ISBN-10/13 input, or "" when invalid."""
    isbn = normalize_isbn(value)
    if len(isbn) == 13 and is_valid_isbn13(isbn):
        return isbn
    if len(isbn) == 10:
        return isbn10_to_isbn13(isbn)
    return ""


def first_valid_isbn13(values: Iterable[str]) -> str:
    for v in values or []:
        isbn = to_isbn13(str(v))
        if isbn:
            return isbn
    return ""


def clean_text(text: str, max_len: Optional[int] = None) -> str:
    if not text:
        return ""
    t = _HTML_RE.sub(" ", str(text))
    t = _WS_RE.sub(" ", t).strip()
    if max_len and len(t) > max_len:
        return t[: max_len - 1].rstrip() + "…"
    return t


def normalize_match_text(text: str) -> str:
    """Lowercase, drop punctuation and accents, collapse whitespace."""
    t = unicodedata.normalize("NFKD", text or "")
    t = "".join(ch for ch in t if not unicodedata.combining(ch))
    t = _PUNCT_RE.sub(" ", t.lower())
    return _WS_RE.sub(" ", t).strip()


def strip_leading_article(text: str) -> str:
    return _LEADING_ARTICLE_RE.sub("", (text or "").strip())


def _smart_title(s: str) -> str:
    if not s:
        return ""
    if s.isupper() and len(s) <= 4:
        return s
    if any(ch.isdigit() for ch in s):
        return s.upper() if s.isupper() else s
    return s.title()


def normalize_subject_term(s: str) -> str:
    s = (s or "").strip()
    if not s:
        return ""
    s = s.replace("_", " ")
    s = re.sub(r"\s+", " ", s).strip()
    return _smart_title(s)


def merge_unique(base: Iterable[str], extra: Iterable[str], *, lower: bool = False) -> Tuple[str, ...]:
    """Order-preserving, case-insensitive union."""
    seen = set()
    out: List[str] = []
    for item in list(base or []) + list(extra or []):
        val = str(item or "").strip()
        if not val:
            continue
        if lower:
            val = val.lower()
        key = val.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(val)
    return tuple(out)


def stable_key(prefix: str, *parts: str) -> str:
    raw = "|".join(normalize_match_text(p) for p in parts)
    return f"{prefix}:{hashlib.sha1(raw.encode('utf-8')).hexdigest()[:16]}"


def work_key_for(title: str, author: str) -> str:
    return stable_key("work", title, author)


def author_key_for(name: str) -> str:
    return stable_key("author", name)
