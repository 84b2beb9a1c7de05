"""
Charset and collation semantics used when canonicalizing text.

Charset names are the ones databases report in information_schema:
MySQL (utf8mb4, utf8mb3, latin1, ...), PostgreSQL (UTF8, WIN1252, ...)
and SQL Server (UNICODE, iso_1). MySQL's lowercase ``utf8`` is the
3-byte alias of utf8mb3; PostgreSQL's uppercase ``UTF8`` is full UTF-8.
"""

import codecs
import re
import unicodedata
from dataclasses import dataclass
from functools import lru_cache

BMP_MAX = 0xFFFF


@dataclass(frozen=True)
class Charset:
    """A storage charset: how to decode its bytes and what it can hold."""

    name: str
    codec: str
    max_codepoint: int | None = None

    def decode(self, raw: bytes) -> str | None:
        """Decode stored bytes, or None when they are not valid in this charset."""
        try:
            return raw.decode(self.codec)
        except UnicodeDecodeError:
            return None

    def can_represent(self, text: str) -> bool:
        """Whether every codepoint of ``text`` survives storage in this charset."""
        if self.max_codepoint is not None and any(ord(c) > self.max_codepoint for c in text):
            return False
        try:
            text.encode(self.codec)
        except UnicodeEncodeError:
            return False
        return True


# Spellings whose meaning depends on case
_EXACT_CHARSETS = {
    "UTF8": ("utf-8", None),
    "LATIN1": ("latin-1", None),
    "WIN1252": ("cp1252", None),
    "SQL_ASCII": ("ascii", None),
    "UNICODE": ("utf-16-le", None),
}

_CHARSETS = {
    "utf8mb4": ("utf-8", None),
    "utf8mb3": ("utf-8", BMP_MAX),
    "utf8": ("utf-8", BMP_MAX),
    "utf-8": ("utf-8", None),
    "latin1": ("cp1252", None),
    "iso_1": ("latin-1", None),
    "ascii": ("ascii", None),
    "ucs2": ("utf-16-be", BMP_MAX),
    "utf16": ("utf-16-be", None),
    "utf16le": ("utf-16-le", None),
    "utf32": ("utf-32-be", None),
}

_BINARY_CHARSETS = {"binary", ""}


@lru_cache(maxsize=None)
def lookup_charset(name: str | None) -> Charset | None:
    """
    Resolve a database charset name.

    Returns None for binary columns.

    Raises:
        ValueError: If the charset is unknown to both the table above and
            Python's codec registry
    """
    if name is None or name.lower() in _BINARY_CHARSETS:
        return None

    if name in _EXACT_CHARSETS:
        codec, max_codepoint = _EXACT_CHARSETS[name]
        return Charset(name, codec, max_codepoint)

    lowered = name.lower()
    if lowered in _CHARSETS:
        codec, max_codepoint = _CHARSETS[lowered]
        return Charset(name, codec, max_codepoint)

    try:
        codec = codecs.lookup(lowered).name
    except LookupError:
        raise ValueError(f"Unsupported charset: {name}") from None
    return Charset(name, codec)


@dataclass(frozen=True)
class Collation:
    """Equality semantics of a collation, reduced to what comparison needs."""

    name: str | None = None
    case_insensitive: bool = False
    accent_insensitive: bool = False

    @classmethod
    def parse(cls, name: str | None) -> "Collation":
        return _parse_collation(name)

    def fold(self, text: str) -> str:
        """Map ``text`` to the representative of its equality class."""
        text = unicodedata.normalize("NFC", text)
        if self.accent_insensitive:
            decomposed = unicodedata.normalize("NFD", text)
            text = unicodedata.normalize(
                "NFC", "".join(c for c in decomposed if not unicodedata.combining(c))
            )
        if self.case_insensitive:
            text = text.casefold()
        return text


@lru_cache(maxsize=None)
def _parse_collation(name: str | None) -> Collation:
    if not name or name in ("C", "POSIX"):
        return Collation(name)

    tokens = set(re.split(r"[_.\-]", name.lower()))
    if tokens & {"bin", "bin2", "binary"}:
        return Collation(name)

    case_insensitive = "ci" in tokens
    # MySQL's pre-0900 _ci collations compare at primary weight only,
    # which ignores accents unless _as says otherwise.
    accent_insensitive = "ai" in tokens or (case_insensitive and "as" not in tokens)
    return Collation(name, case_insensitive, accent_insensitive)
