from __future__ import annotations

import hashlib
import html
import re


_HTML_TAG_RE = re.compile(r"<[^>]*>", flags=re.UNICODE)
_WS_RE = re.compile(r"\s+", flags=re.UNICODE)

_MAX_PASSES = 8

HASH_HEX_CHARS = 12
MATCH_PREFIX_CHARS = 50


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _normalize_once(text: str) -> str:
    text = html.unescape(text.casefold())
    text = _HTML_TAG_RE.sub(" ", text)
    return _WS_RE.sub(" ", text).strip()


def normalize_text(value: object) -> str:
    """Lowercase, strip tags, decode entities and collapse whitespace.

    Double-encoded markup (``&amp;lt;b&amp;gt;``) is unwrapped by repeating the
    pass until the text stops changing, so the result is a fixed point:
    ``normalize_text(normalize_text(s)) == normalize_text(s)``.
    Anything that is not a string normalizes to ``""``.
    """
    if value is None:
        return ""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if not isinstance(value, str):
        return ""

    text = value
    for _ in range(_MAX_PASSES):
        out = _normalize_once(text)
        if out == text:
            break
        text = out
    return text


def content_hash(feed_slug: str, title: str, body: str) -> str:
    norm_title = normalize_text(title)
    norm_body = normalize_text(body)
    digest = _sha256_hex(f"{feed_slug}:{norm_title}:{norm_body}")
    return f"{feed_slug}_{digest[:HASH_HEX_CHARS]}"


def title_prefix_hash(title: str, *, chars: int = MATCH_PREFIX_CHARS) -> str:
    return _sha256_hex(normalize_text(title)[:chars])[:8]
