"""Text normalization helpers used while decoding and assembling."""

from __future__ import annotations

import re
import unicodedata

_WHITESPACE_RE = re.compile(r"\s+")
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def normalize_whitespace(text: str) -> str:
    """Collapse repeated whitespace and trim boundaries."""

    return _WHITESPACE_RE.sub(" ", text).strip()


def slugify(text: str, *, fallback: str = "untitled") -> str:
    """Produce an ASCII, hyphen-separated slug for host-relative links."""

    ascii_text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    slug = _SLUG_RE.sub("-", ascii_text.casefold()).strip("-")
    return slug or fallback


class SlugRegistry:
    """Hand out slugs that are unique within one import."""

    def __init__(self) -> None:
        self._seen: dict[str, int] = {}

    def claim(self, text: str) -> str:
        base = slugify(text)
        count = self._seen.get(base, 0) + 1
        self._seen[base] = count
        if count == 1:
            return base
        candidate = f"{base}-{count}"
        while candidate in self._seen:
            count += 1
            candidate = f"{base}-{count}"
        self._seen[base] = count
        self._seen[candidate] = 1
        return candidate
