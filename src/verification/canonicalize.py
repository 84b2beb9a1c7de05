"""
Value canonicalization.

Turns one stored column value into bytes that are equal exactly when the
two values are logically equal under the target's comparison semantics:
compressed blocks are decompressed, text is decoded from its storage
charset and folded per the target collation, and every value carries a
type tag so that, for example, the text "5" never equals the integer 5.
"""

import datetime as dt
from decimal import Decimal
from typing import Any
from uuid import UUID

import snappy

from .charsets import Collation, lookup_charset
from .errors import DecompressionError
from .models import ColumnEncoding, CompressionAlgorithm

NULL = b"\x00"
TAG_TEXT = b"s"
TAG_LOSSY_TEXT = b"x"
TAG_UNDECODABLE = b"u"
TAG_BYTES = b"b"
TAG_NUMBER = b"n"
TAG_FLOAT = b"f"
TAG_TEMPORAL = b"t"
TAG_INTERVAL = b"d"
TAG_OTHER = b"o"


def decompress(raw: Any, algorithm: CompressionAlgorithm) -> bytes:
    """
    Decode a compressed block.

    Raises:
        DecompressionError: If the value is not bytes or not a valid block
    """
    if not isinstance(raw, (bytes, bytearray, memoryview)):
        raise DecompressionError(f"expected a bytes value, got {type(raw).__name__}")

    if algorithm is CompressionAlgorithm.SNAPPY:
        try:
            return bytes(snappy.uncompress(bytes(raw)))
        except Exception as e:
            raise DecompressionError(f"invalid snappy block: {e}") from e

    raise DecompressionError(f"unsupported compression algorithm {algorithm}")


def canonicalize(
    raw: Any,
    encoding: ColumnEncoding,
    comparison: ColumnEncoding | None = None,
) -> bytes:
    """
    Canonicalize one column value.

    Args:
        raw: Value as returned by the database driver
        encoding: How this side stores the column (decode charset, compression)
        comparison: Encoding whose charset/collation define equality;
            defaults to ``encoding``. Callers pass the target column's
            encoding for both sides.

    Returns:
        Type-tagged canonical bytes

    Raises:
        DecompressionError: If a compressed value is malformed
    """
    if raw is None:
        return NULL

    if encoding.compression is not None:
        raw = decompress(raw, encoding.compression)

    comparison = comparison or encoding

    if isinstance(raw, (bytes, bytearray, memoryview)):
        raw = bytes(raw)
        charset = lookup_charset(encoding.charset)
        if charset is None:
            return TAG_BYTES + raw
        text = charset.decode(raw)
        if text is None:
            return TAG_UNDECODABLE + raw
        return _canonicalize_text(text, comparison)

    if isinstance(raw, str):
        return _canonicalize_text(raw, comparison)

    if isinstance(raw, bool):
        return TAG_NUMBER + (b"1" if raw else b"0")

    if isinstance(raw, int):
        return TAG_NUMBER + str(raw).encode("ascii")

    if isinstance(raw, Decimal):
        return _canonicalize_decimal(raw)

    if isinstance(raw, float):
        return TAG_FLOAT + repr(raw).encode("ascii")

    if isinstance(raw, dt.datetime):
        if raw.tzinfo is not None:
            raw = raw.astimezone(dt.UTC).replace(tzinfo=None)
        return TAG_TEMPORAL + raw.isoformat().encode("ascii")

    if isinstance(raw, (dt.date, dt.time)):
        return TAG_TEMPORAL + raw.isoformat().encode("ascii")

    if isinstance(raw, dt.timedelta):
        micros = (raw.days * 86400 + raw.seconds) * 1_000_000 + raw.microseconds
        return TAG_INTERVAL + str(micros).encode("ascii")

    if isinstance(raw, UUID):
        return _canonicalize_text(str(raw), comparison)

    return TAG_OTHER + str(raw).encode("utf-8", "surrogatepass")


def _canonicalize_text(text: str, comparison: ColumnEncoding) -> bytes:
    charset = lookup_charset(comparison.charset)
    if charset is not None and not charset.can_represent(text):
        # Conversion into the target would lose these codepoints, so the
        # exact text is kept under a tag no stored target value can produce.
        return TAG_LOSSY_TEXT + text.encode("utf-8", "surrogatepass")

    folded = Collation.parse(comparison.collation).fold(text)
    return TAG_TEXT + folded.encode("utf-8", "surrogatepass")


def _canonicalize_decimal(value: Decimal) -> bytes:
    if not value.is_finite():
        return TAG_FLOAT + str(value).encode("ascii")
    if value == 0:
        return TAG_NUMBER + b"0"
    return TAG_NUMBER + format(value.normalize(), "f").encode("ascii")
