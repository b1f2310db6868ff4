"""Utilities for normalising free-text song titles."""

from __future__ import annotations

import re

from unidecode import unidecode

_QUOTES_TRANSLATION = str.maketrans(
    {
        "“": '"',
        "”": '"',
        "„": '"',
        "«": '"',
        "»": '"',
        "‘": "'",
        "’": "'",
        "‚": "'",
        "′": "'",
    }
)

_PUNCTUATION = re.compile(r"[^\w\s]", flags=re.UNICODE)
_WHITESPACE = re.compile(r"\s+")


def normalize_quotes(value: str) -> str:
    """Return the provided string with smart quotes converted to ASCII ones."""

    if not value:
        return ""
    return value.translate(_QUOTES_TRANSLATION)


def normalize_title(value: str | None) -> str:
    """Lower-case, transliterate, strip punctuation and collapse whitespace.

    >>> normalize_title("Don't Stop Believin'")
    'dont stop believin'
    """

    if not value:
        return ""
    text = unidecode(normalize_quotes(value)).lower()
    text = _PUNCTUATION.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


__all__ = ["normalize_quotes", "normalize_title"]
