"""
Data model for inline verification.

Rows are read-time snapshots owned by the databases; fingerprints and
mismatch sets are transient per comparison; VerificationRun is the record
the orchestrator keeps for the lifetime of a migration attempt.
"""

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .errors import VerificationError


class CompressionAlgorithm(str, Enum):
    """Compressed-block formats the canonicalizer can decode."""

    SNAPPY = "SNAPPY"

    @classmethod
    def parse(cls, value: "str | CompressionAlgorithm") -> "CompressionAlgorithm":
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValueError(f"Unsupported compression algorithm: {value}") from None


class MismatchKind(str, Enum):
    """Why a primary key ended up in a MismatchSet."""

    MISSING = "MISSING"            # on source only
    EXTRA = "EXTRA"                # on target only
    MODIFIED = "MODIFIED"          # fingerprints differ
    UNVERIFIABLE = "UNVERIFIABLE"  # a value could not be canonicalized


class VerificationScope(str, Enum):
    INCREMENTAL = "incremental"
    CUTOVER = "cutover"


class RunOutcome(str, Enum):
    PENDING = "PENDING"
    PASS = "PASS"
    FAIL = "FAIL"


@dataclass(frozen=True)
class ColumnEncoding:
    """Declared storage metadata for one column on one side."""

    charset: str | None = None
    collation: str | None = None
    compression: CompressionAlgorithm | None = None


BINARY = ColumnEncoding()


@dataclass(frozen=True)
class ColumnSpec:
    """A non-key column and how each side stores it."""

    name: str
    source: ColumnEncoding = BINARY
    target: ColumnEncoding = BINARY


@dataclass(frozen=True)
class TableSchema:
    """
    Verification view of a table.

    ``columns`` is the fingerprint order: schema order with key and
    ignored columns removed.
    """

    name: str
    primary_key: tuple[str, ...]
    columns: tuple[ColumnSpec, ...]

    def __post_init__(self):
        if not self.primary_key:
            raise ValueError(f"Table {self.name} has no primary key; it cannot be verified")

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    @property
    def source_encodings(self) -> dict[str, ColumnEncoding]:
        return {column.name: column.source for column in self.columns}

    @property
    def target_encodings(self) -> dict[str, ColumnEncoding]:
        return {column.name: column.target for column in self.columns}

    def key_of(self, values: Mapping[str, Any]) -> Any:
        """Extract the primary key from a column -> value mapping."""
        if len(self.primary_key) == 1:
            return values[self.primary_key[0]]
        return tuple(values[column] for column in self.primary_key)


@dataclass(frozen=True)
class Row:
    """Immutable snapshot of one row as read from one side."""

    table: str
    primary_key: Any
    values: Mapping[str, Any]
    encodings: Mapping[str, ColumnEncoding] = field(default_factory=dict)

    def encoding_for(self, column: str) -> ColumnEncoding:
        return self.encodings.get(column, BINARY)


@dataclass(frozen=True)
class RowFingerprint:
    table: str
    primary_key: Any
    digest: str


def format_primary_key(primary_key: Any) -> str:
    """Render a primary key for error messages; composite keys join with '/'."""
    if isinstance(primary_key, tuple):
        return "/".join(str(part) for part in primary_key)
    return str(primary_key)


def sort_primary_keys(primary_keys: Iterable[Any]) -> list[Any]:
    """Sort keys ascending; falls back to string order for mixed key types."""
    keys = list(primary_keys)
    try:
        return sorted(keys)
    except TypeError:
        return sorted(keys, key=format_primary_key)


@dataclass(frozen=True)
class MismatchSet:
    """Primary keys of one table that failed one comparison pass."""

    table: str
    kinds: Mapping[Any, MismatchKind] = field(default_factory=dict)

    @property
    def primary_keys(self) -> list[Any]:
        return sort_primary_keys(self.kinds)

    @property
    def empty(self) -> bool:
        return not self.kinds

    def __len__(self) -> int:
        return len(self.kinds)

    def __contains__(self, primary_key: Any) -> bool:
        return primary_key in self.kinds

    def merge(self, other: "MismatchSet") -> "MismatchSet":
        """Union with another set for the same table; later kinds win."""
        if other.table != self.table:
            raise ValueError(f"Cannot merge mismatches of {other.table} into {self.table}")
        return MismatchSet(self.table, {**self.kinds, **other.kinds})

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "primary_keys": self.primary_keys,
            "kinds": {format_primary_key(pk): self.kinds[pk].value for pk in self.primary_keys},
        }


class VerificationRun:
    """
    One verification pass.

    Created when the pass starts, filled through record(), closed by seal().
    A sealed run is read-only.
    """

    def __init__(self, scope: VerificationScope, tables: Iterable[str] = ()):
        self.scope = scope
        self.tables_examined: set[str] = set(tables)
        self.mismatches: dict[str, MismatchSet] = {}
        self.outcome = RunOutcome.PENDING
        self.started_at = datetime.now(UTC)
        self.completed_at: datetime | None = None
        self._lock = threading.Lock()

    @property
    def sealed(self) -> bool:
        return self.outcome is not RunOutcome.PENDING

    @property
    def passed(self) -> bool:
        return self.outcome is RunOutcome.PASS

    @property
    def timestamp(self) -> datetime:
        return self.completed_at or self.started_at

    def record(self, mismatch_set: MismatchSet) -> None:
        """Fold one comparison result into the run."""
        with self._lock:
            if self.sealed:
                raise VerificationError(f"Cannot record into a sealed {self.scope.value} run")
            self.tables_examined.add(mismatch_set.table)
            if mismatch_set.empty:
                return
            existing = self.mismatches.get(mismatch_set.table)
            self.mismatches[mismatch_set.table] = (
                existing.merge(mismatch_set) if existing else mismatch_set
            )

    def seal(self) -> RunOutcome:
        with self._lock:
            if self.sealed:
                raise VerificationError(f"{self.scope.value} run is already sealed")
            self.outcome = RunOutcome.FAIL if self.mismatches else RunOutcome.PASS
            self.completed_at = datetime.now(UTC)
            return self.outcome

    def failing_tables(self) -> list[str]:
        return sorted(self.mismatches)

    def mismatched_keys(self) -> dict[str, list[Any]]:
        return {table: self.mismatches[table].primary_keys for table in self.failing_tables()}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "scope": self.scope.value,
            "tables_examined": sorted(self.tables_examined),
            "mismatches": [self.mismatches[table].to_dict() for table in self.failing_tables()],
            "outcome": self.outcome.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"VerificationRun(scope={self.scope.value}, outcome={self.outcome.value}, "
            f"failing_tables={self.failing_tables()})"
        )
