"""
Verifier configuration.

Values come from keyword arguments, a mapping (``from_dict``) or the
process environment (``from_env``). Validation happens once, in
``__post_init__``; an invalid value raises ValueError.
"""

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import CompressionAlgorithm


class VerifierKind(str, Enum):
    NONE = "NONE"
    INLINE = "INLINE"


class CheckScope(str, Enum):
    TOUCHED_ROWS = "TOUCHED_ROWS"
    FULL_TABLE = "FULL_TABLE"


class ReplicatedMismatchPolicy(str, Enum):
    """What a mismatch found on a replicated change does."""

    IMMEDIATE = "IMMEDIATE"  # hard stop, like a copy batch
    DEFER = "DEFER"          # keep the keys and settle at cutover


_TRUE = ("true", "1", "yes", "on")
_FALSE = ("false", "0", "no", "off")


def _parse_enum(enum_cls, value: Any, field_name: str):
    if isinstance(value, enum_cls):
        return value
    if value is None or str(value).strip() == "":
        raise ValueError(f"{field_name} must not be empty")
    normalized = str(value).strip().upper().replace("-", "_")
    try:
        return enum_cls(normalized)
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"Invalid {field_name} {value!r}; expected one of: {choices}") from None


def _parse_bool(value: Any, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"Invalid {field_name} {value!r}; expected a boolean")


def _parse_json(value: Any, field_name: str) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise ValueError(f"{field_name} is not valid JSON: {e}") from e


@dataclass
class VerifierConfig:
    """
    Settings for one verifier instance.

    ``compressed_columns`` maps table -> column -> algorithm and only takes
    effect when ``decompression_enabled`` is set. ``ignored_columns`` maps
    table -> columns left out of fingerprints.
    """

    verifier_kind: VerifierKind = VerifierKind.INLINE
    decompression_enabled: bool = False
    compressed_columns: dict[str, dict[str, CompressionAlgorithm]] = field(default_factory=dict)
    ignored_columns: dict[str, list[str]] = field(default_factory=dict)
    incremental_scope: CheckScope = CheckScope.TOUCHED_ROWS
    cutover_scope: CheckScope = CheckScope.TOUCHED_ROWS
    replicated_mismatch_policy: ReplicatedMismatchPolicy = ReplicatedMismatchPolicy.DEFER
    batch_size: int = 1000
    max_workers: int = 4
    parallel_fetch: bool = True

    def __post_init__(self):
        self.verifier_kind = _parse_enum(VerifierKind, self.verifier_kind, "verifier type")
        self.incremental_scope = _parse_enum(CheckScope, self.incremental_scope, "incremental scope")
        self.cutover_scope = _parse_enum(CheckScope, self.cutover_scope, "cutover scope")
        self.replicated_mismatch_policy = _parse_enum(
            ReplicatedMismatchPolicy, self.replicated_mismatch_policy, "replicated mismatch policy"
        )
        self.decompression_enabled = _parse_bool(self.decompression_enabled, "decompression flag")
        self.parallel_fetch = _parse_bool(self.parallel_fetch, "parallel fetch flag")

        compressed = _parse_json(self.compressed_columns, "compressed columns") or {}
        if not isinstance(compressed, Mapping):
            raise ValueError("compressed columns must map table -> column -> algorithm")
        self.compressed_columns = {}
        for table, columns in compressed.items():
            if not isinstance(columns, Mapping):
                raise ValueError(f"compressed columns for {table} must map column -> algorithm")
            self.compressed_columns[table] = {
                column: CompressionAlgorithm.parse(algorithm) for column, algorithm in columns.items()
            }

        ignored = _parse_json(self.ignored_columns, "ignored columns") or {}
        if not isinstance(ignored, Mapping):
            raise ValueError("ignored columns must map table -> list of columns")
        self.ignored_columns = {}
        for table, columns in ignored.items():
            if isinstance(columns, str) or not all(isinstance(c, str) for c in columns):
                raise ValueError(f"ignored columns for {table} must be a list of column names")
            self.ignored_columns[table] = list(columns)

        try:
            self.batch_size = int(self.batch_size)
            self.max_workers = int(self.max_workers)
        except (TypeError, ValueError) as e:
            raise ValueError(f"batch size and worker count must be integers: {e}") from e
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be positive, got {self.max_workers}")

    @property
    def enabled(self) -> bool:
        return self.verifier_kind is VerifierKind.INLINE

    def compression_for(self, table: str, column: str) -> CompressionAlgorithm | None:
        """Algorithm a column is compressed with, if decompression is enabled."""
        if not self.decompression_enabled:
            return None
        return self.compressed_columns.get(table, {}).get(column)

    def is_ignored(self, table: str, column: str) -> bool:
        return column in self.ignored_columns.get(table, ())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "VerifierConfig":
        """
        Build from a mapping of field names.

        Also understands the older ``verifier_type`` and ``compressed_data``
        keys; unknown keys are rejected.
        """
        values = dict(data)
        if "verifier_type" in values:
            values.setdefault("verifier_kind", values.pop("verifier_type"))
        if "compressed_data" in values:
            compressed = values.pop("compressed_data")
            if isinstance(compressed, bool):
                values.setdefault("decompression_enabled", compressed)
            else:
                values.setdefault("compressed_columns", compressed)
                values.setdefault("decompression_enabled", True)

        known = set(cls.__dataclass_fields__)
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown verifier settings: {', '.join(sorted(unknown))}")
        return cls(**values)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "VerifierConfig":
        """Build from VERIFIER_* environment variables; unset ones keep defaults."""
        environ = os.environ if environ is None else environ
        env_map = {
            "VERIFIER_TYPE": "verifier_kind",
            "VERIFIER_DECOMPRESSION": "decompression_enabled",
            "VERIFIER_COMPRESSED_COLUMNS": "compressed_columns",
            "VERIFIER_IGNORED_COLUMNS": "ignored_columns",
            "VERIFIER_INCREMENTAL_SCOPE": "incremental_scope",
            "VERIFIER_CUTOVER_SCOPE": "cutover_scope",
            "VERIFIER_REPLICATED_MISMATCH_POLICY": "replicated_mismatch_policy",
            "VERIFIER_BATCH_SIZE": "batch_size",
            "VERIFIER_MAX_WORKERS": "max_workers",
            "VERIFIER_PARALLEL_FETCH": "parallel_fetch",
        }
        values = {
            field_name: environ[var]
            for var, field_name in env_map.items()
            if environ.get(var, "") != ""
        }
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {
            "verifier_kind": self.verifier_kind.value,
            "decompression_enabled": self.decompression_enabled,
            "compressed_columns": {
                table: {column: algorithm.value for column, algorithm in columns.items()}
                for table, columns in self.compressed_columns.items()
            },
            "ignored_columns": {table: list(columns) for table, columns in self.ignored_columns.items()},
            "incremental_scope": self.incremental_scope.value,
            "cutover_scope": self.cutover_scope.value,
            "replicated_mismatch_policy": self.replicated_mismatch_policy.value,
            "batch_size": self.batch_size,
            "max_workers": self.max_workers,
            "parallel_fetch": self.parallel_fetch,
        }
