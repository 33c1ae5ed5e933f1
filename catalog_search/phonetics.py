"""Utilities for query normalization and phonetic encoding.

Two-step pipeline shared by the indexer and the query builder:

    1) :func:`normalize_query` cleans the user text (lowercase, fold accents,
       strip punctuation, collapse whitespace) and applies a small alias map
       so colloquial spellings like ``"mobile"`` or ``"cellphone"`` meet the
       catalog's ``"phone"`` wording.
    2) :func:`to_phonetic` accepts the normalized string and generates a
       double-metaphone key per token, so misspelled product names such as
       ``"chargar"`` still land on ``"charger"``.

The projector stores ``to_phonetic(normalize_query(name))`` in ``namePhonetic``
and the query builder matches the same key with a low boost.
"""
from __future__ import annotations

import logging
import re
from typing import Iterable

from metaphone import doublemetaphone
from unidecode import unidecode

logger = logging.getLogger(__name__)

# After folding we keep only Latin letters/digits/spaces.
_ASCII_ALNUM_SPACE_RE = re.compile(r"[^0-9a-z ]+")

# Query-side aliases applied before analyzers see the text. Index-time
# synonyms live in the analyzer's synonyms file.
QUERY_ALIASES: dict[str, str] = {
    "mobile": "phone",
    "mobiles": "phones",
    "cellphone": "phone",
    "smartphone": "phone",
    "tshirt": "t shirt",
    "tee": "t shirt",
    "icecream": "ice cream",
    "choco": "chocolate",
    "veggies": "vegetables",
    "atta": "flour",
    "dahi": "curd",
    "paneer": "cottage cheese",
}


def normalize_query(text: str) -> str:
    """Normalize free-form input prior to search and phonetics.

    1. Fold to ASCII with ``unidecode`` and lowercase.
    2. Strip everything except letters, digits and spaces.
    3. Collapse multiple spaces and trim.
    4. Apply :data:`QUERY_ALIASES` token by token.
    """

    folded = unidecode(text or "").lower()
    cleaned = _ASCII_ALNUM_SPACE_RE.sub(" ", folded)
    compact = " ".join(cleaned.split())
    if not compact:
        logger.debug("normalize_query empty after cleaning raw=%r", text)
        return ""

    tokens = [QUERY_ALIASES.get(token, token) for token in compact.split()]
    normalized = " ".join(tokens)
    logger.debug("normalize_query raw=%r normalized=%r", text, normalized)
    return normalized


def _metaphone_tokens(tokens: Iterable[str]) -> list[str]:
    phonetics: list[str] = []
    for token in tokens:
        primary, secondary = doublemetaphone(token)
        for code in (primary, secondary):
            if code and code not in phonetics:
                phonetics.append(code)
    return phonetics


def to_phonetic(normalized_text: str) -> str:
    """Generate a phonetic key from **already normalized** text.

    Digits are dropped since metaphone only encodes letters; an empty input
    yields an empty key.
    """

    if not normalized_text:
        return ""
    tokens = [token for token in normalized_text.split() if not token.isdigit()]
    codes = _metaphone_tokens(tokens)
    phonetic = " ".join(codes)
    logger.debug("to_phonetic normalized=%r codes=%s", normalized_text, codes)
    return phonetic
