"""Reduce raw SQL text to the canonical shape shared by its parameter variants.

Two statements that differ only in bound values, or in how many values
are bound to an ``IN (...)`` membership test, map to the same canonical
text and therefore to the same fingerprint::

    SELECT * FROM t WHERE id IN ($1, $2, $3)   ->  SELECT * FROM t WHERE id IN ($?)
    SELECT * FROM t WHERE id IN ($7)           ->  SELECT * FROM t WHERE id IN ($?)

Only positional placeholders (``$1``, ``$2``...) are rewritten. Monitored
servers already replace literal constants with placeholders before
reporting a statement, so literals are left untouched.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

from app.core.logging import get_logger

PLACEHOLDER = "$?"

_IN_LIST_PATTERN = re.compile(r"\bIN\s*\(\s*(?:\$\d+\s*,\s*)*\$\d+\s*\)", re.IGNORECASE)
_PLACEHOLDER_PATTERN = re.compile(r"\$\d+")
_WHITESPACE_PATTERN = re.compile(r"\s+")

logger = get_logger("query_telemetry.canonicalizer")


@dataclass(frozen=True)
class CanonicalForm:
    """Canonical text of a statement together with its content fingerprint."""

    text: str
    fingerprint: str


def fingerprint(text: str) -> str:
    """Return the 128-bit hex digest identifying ``text``.

    Lone surrogates are encoded as-is so any Python string has a digest.
    """

    return hashlib.md5(text.encode("utf-8", "surrogatepass")).hexdigest()


def _rewrite(raw_text: str) -> str:
    canonical = raw_text.strip()
    canonical = _IN_LIST_PATTERN.sub(f"IN ({PLACEHOLDER})", canonical)
    canonical = _PLACEHOLDER_PATTERN.sub(PLACEHOLDER, canonical)
    return _WHITESPACE_PATTERN.sub(" ", canonical)


def canonicalize(raw_text: object) -> CanonicalForm:
    """Map raw query text to its canonical form.

    Never raises: empty or non-string input yields the empty canonical
    text, and an unexpected rewrite failure falls back to the raw text.
    """

    if not isinstance(raw_text, str) or not raw_text:
        return CanonicalForm(text="", fingerprint=fingerprint(""))

    try:
        canonical = _rewrite(raw_text)
        return CanonicalForm(text=canonical, fingerprint=fingerprint(canonical))
    except Exception:
        logger.warning("canonicalization_failed", exc_info=True)
        return CanonicalForm(text=raw_text, fingerprint=fingerprint(raw_text))


__all__ = ["PLACEHOLDER", "CanonicalForm", "canonicalize", "fingerprint"]
