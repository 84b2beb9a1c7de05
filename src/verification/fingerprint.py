"""
Row fingerprinting.

A fingerprint is SHA-256 over the row's canonical column values in schema
order, each prefixed with its 4-byte big-endian length so that values
containing separator-like bytes cannot run into their neighbours.
"""

import hashlib
import struct
from collections.abc import Mapping, Sequence

from .canonicalize import canonicalize
from .errors import DecompressionError
from .models import ColumnEncoding, Row, RowFingerprint

# Length prefix of a column missing from the row; no canonical value is this long
_ABSENT = struct.pack(">I", 0xFFFFFFFF)


class RowFingerprinter:
    """Computes comparable digests for rows read from either side."""

    def __init__(self, hash_name: str = "sha256"):
        if hash_name not in hashlib.algorithms_available:
            raise ValueError(f"Unsupported hash algorithm: {hash_name}")
        self.hash_name = hash_name

    def fingerprint(
        self,
        row: Row,
        column_order: Sequence[str],
        comparison: Mapping[str, ColumnEncoding] | None = None,
    ) -> RowFingerprint:
        """
        Fingerprint one row.

        Args:
            row: Row snapshot; its own encodings drive decoding/decompression
            column_order: Non-key columns in schema order
            comparison: Per-column encodings defining equality (the target's);
                defaults to the row's own encodings

        Raises:
            DecompressionError: If a compressed column is malformed; the
                error's ``column`` names it
        """
        hasher = hashlib.new(self.hash_name)
        comparison = comparison or {}

        for column in column_order:
            if column not in row.values:
                hasher.update(_ABSENT)
                continue

            encoding = row.encoding_for(column)
            try:
                value = canonicalize(row.values[column], encoding, comparison.get(column))
            except DecompressionError as e:
                if e.column is None:
                    raise DecompressionError(e.reason, column=column) from e
                raise

            hasher.update(struct.pack(">I", len(value)))
            hasher.update(value)

        return RowFingerprint(row.table, row.primary_key, hasher.hexdigest())
