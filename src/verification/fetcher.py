"""
Dual-source row fetching.

Reads the rows for a set of primary keys from the source and the target.
Each side is read in its own short statement, so each read is
self-consistent on its own; the two reads are not synchronized with each
other and the orchestrator's re-verification compensates for races.
"""

import logging
import threading
from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, NamedTuple, Protocol

from opentelemetry import trace

from src.utils.database_types import DatabaseType
from src.utils.logging import ContextLogger
from src.utils.retry import retry_database_operation
from src.utils.tracing import trace_operation

from .errors import FetchError
from .models import Row, TableSchema, sort_primary_keys

logger = logging.getLogger(__name__)

SOURCE = "source"
TARGET = "target"


class RowReader(Protocol):
    """One side of the migration, as seen by the verifier."""

    def read_rows(self, schema: TableSchema, primary_keys: Sequence[Any]) -> dict[Any, Row]:
        ...

    def primary_keys(self, schema: TableSchema) -> list[Any]:
        ...


class FetchResult(NamedTuple):
    source_rows: dict[Any, Row]
    target_rows: dict[Any, Row]


@retry_database_operation(max_retries=3, base_delay=0.5)
def _execute_query(cursor: Any, query: str, params: Sequence[Any]) -> tuple[list[str], list]:
    """Execute a read and return (column names, rows), retrying transient errors."""
    cursor.execute(query, params)
    rows = cursor.fetchall()
    columns = [desc[0] for desc in (cursor.description or [])]
    return columns, rows


class SqlRowReader:
    """
    RowReader over a DB-API connection.

    A cursor is opened per read and the read transaction is ended right
    after, so neither locks nor a stale snapshot outlive a single fetch.
    The connection is used by one thread at a time.
    """

    def __init__(
        self,
        connection: Any,
        side: str,
        dialect: DatabaseType | None = None,
        batch_size: int = 1000,
    ):
        """
        Args:
            connection: DB-API connection to this side
            side: 'source' or 'target'; selects which column encodings rows carry
            dialect: Database dialect; detected from the cursor when omitted
            batch_size: Maximum primary keys per SELECT
        """
        if side not in (SOURCE, TARGET):
            raise ValueError(f"side must be '{SOURCE}' or '{TARGET}', got {side!r}")
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        self.connection = connection
        self.side = side
        self.dialect = dialect
        self.batch_size = batch_size
        self._lock = threading.Lock()
        self._log = ContextLogger(__name__, side=side)

    def read_rows(self, schema: TableSchema, primary_keys: Sequence[Any]) -> dict[Any, Row]:
        """Fetch rows by primary key; keys with no row are simply absent."""
        keys = list(dict.fromkeys(primary_keys))
        if not keys:
            return {}

        encodings = schema.source_encodings if self.side == SOURCE else schema.target_encodings
        results: dict[Any, Row] = {}

        with trace_operation(
            "read_rows", kind=trace.SpanKind.CLIENT,
            side=self.side, table=schema.name, keys=len(keys),
        ):
            with self._lock:
                cursor = self.connection.cursor()
                try:
                    dialect = self.dialect or DatabaseType.from_cursor(cursor)
                    for i in range(0, len(keys), self.batch_size):
                        batch = keys[i:i + self.batch_size]
                        query, params = self._build_select(schema, batch, dialect)
                        columns, rows = _execute_query(cursor, query, params)

                        for raw in rows:
                            values = dict(raw) if isinstance(raw, Mapping) else dict(zip(columns, raw))
                            pk = schema.key_of(values)
                            results[pk] = Row(
                                table=schema.name,
                                primary_key=pk,
                                values={c: values[c] for c in schema.column_names if c in values},
                                encodings=encodings,
                            )
                finally:
                    cursor.close()
                    self._release_snapshot()

        self._log.debug(
            f"Read {len(results)}/{len(keys)} rows of {schema.name} from {self.side}",
            table=schema.name,
        )
        return results

    def primary_keys(self, schema: TableSchema) -> list[Any]:
        """All primary keys of the table, ascending."""
        with trace_operation(
            "read_primary_keys", kind=trace.SpanKind.CLIENT,
            side=self.side, table=schema.name,
        ):
            with self._lock:
                cursor = self.connection.cursor()
                try:
                    dialect = self.dialect or DatabaseType.from_cursor(cursor)
                    pk_cols = ", ".join(dialect.quote_identifier(c) for c in schema.primary_key)
                    query = (
                        f"SELECT {pk_cols} FROM {dialect.quote_identifier(schema.name)} "
                        f"ORDER BY {pk_cols}"
                    )
                    columns, rows = _execute_query(cursor, query, ())
                finally:
                    cursor.close()
                    self._release_snapshot()

        keys = []
        for raw in rows:
            values = dict(raw) if isinstance(raw, Mapping) else dict(zip(schema.primary_key, raw))
            keys.append(schema.key_of(values))
        return keys

    def _build_select(
        self, schema: TableSchema, batch: Sequence[Any], dialect: DatabaseType
    ) -> tuple[str, list[Any]]:
        quote = dialect.quote_identifier
        select_cols = ", ".join(quote(c) for c in (*schema.primary_key, *schema.column_names))
        params: list[Any] = []

        if len(schema.primary_key) == 1:
            placeholders = ", ".join(dialect.get_placeholder(j) for j in range(len(batch)))
            where_clause = f"{quote(schema.primary_key[0])} IN ({placeholders})"
            params.extend(batch)
        else:
            conditions = []
            for pk in batch:
                pk_conditions = []
                for k, col in enumerate(schema.primary_key):
                    pk_conditions.append(f"{quote(col)} = {dialect.get_placeholder(len(params))}")
                    params.append(pk[k])
                conditions.append(f"({' AND '.join(pk_conditions)})")
            where_clause = " OR ".join(conditions)

        query = f"SELECT {select_cols} FROM {quote(schema.name)} WHERE {where_clause}"
        return query, params

    def _release_snapshot(self) -> None:
        rollback = getattr(self.connection, "rollback", None)
        if rollback is None:
            return
        try:
            rollback()
        except Exception as e:
            self._log.warning(f"Failed to end read transaction on {self.side}: {e}")


class DualSourceRowFetcher:
    """Fetches the same primary keys from both sides."""

    def __init__(self, source: RowReader, target: RowReader, parallel: bool = True, max_workers: int = 4):
        """
        Args:
            source: Reader for the source database
            target: Reader for the target database
            parallel: Issue the two reads concurrently
            max_workers: Threads shared by concurrent fetches
        """
        self.source = source
        self.target = target
        self.parallel = parallel
        self._executor = (
            ThreadPoolExecutor(max_workers=max(2, max_workers), thread_name_prefix="verifier-fetch")
            if parallel else None
        )

    def fetch(self, schema: TableSchema, primary_keys: Iterable[Any]) -> FetchResult:
        """
        Read rows for ``primary_keys`` from both sides.

        Returns only after both reads finished.

        Raises:
            FetchError: If either side could not be read
        """
        keys = list(dict.fromkeys(primary_keys))
        if not keys:
            return FetchResult({}, {})

        with trace_operation("dual_source_fetch", table=schema.name, keys=len(keys)):
            source_rows, target_rows = self._on_both_sides(
                lambda reader: reader.read_rows(schema, keys), schema.name
            )

        return FetchResult(source_rows, target_rows)

    def table_primary_keys(self, schema: TableSchema) -> list[Any]:
        """Union of both sides' primary keys, ascending."""
        with trace_operation("table_primary_keys", table=schema.name):
            source_keys, target_keys = self._on_both_sides(
                lambda reader: reader.primary_keys(schema), schema.name
            )
        return sort_primary_keys(set(source_keys) | set(target_keys))

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)

    def __enter__(self) -> "DualSourceRowFetcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _on_both_sides(self, read, table: str):
        if self._executor is None:
            return (
                self._guarded(read, self.source, SOURCE, table),
                self._guarded(read, self.target, TARGET, table),
            )

        source_future = self._executor.submit(self._guarded, read, self.source, SOURCE, table)
        target_future = self._executor.submit(self._guarded, read, self.target, TARGET, table)
        wait([source_future, target_future])
        return source_future.result(), target_future.result()

    @staticmethod
    def _guarded(read, reader: RowReader, side: str, table: str):
        try:
            return read(reader)
        except FetchError:
            raise
        except Exception as e:
            logger.error(f"Reading {table} from {side} failed: {type(e).__name__}: {e}")
            raise FetchError(side, table, e) from e
