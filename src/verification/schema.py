"""
Table schema construction and introspection.

A TableSchema pairs each non-key column with its source and target
encodings. Schemas are built from ``(column, charset, collation)`` tuples,
either supplied by the caller or read from information_schema.
"""

import logging
from collections.abc import Iterable, Sequence
from typing import Any

from src.utils.database_types import DatabaseType
from src.utils.retry import retry_database_operation
from src.utils.tracing import trace_function

from .charsets import lookup_charset
from .config import VerifierConfig
from .models import ColumnEncoding, ColumnSpec, TableSchema

logger = logging.getLogger(__name__)

ColumnDefinition = tuple[str, str | None, str | None]

_DEFAULT_SCHEMAS = {
    DatabaseType.POSTGRESQL: "public",
    DatabaseType.SQLSERVER: "dbo",
}

_TEXT_TYPES = {
    "text", "character varying", "varchar", "character", "char", "bpchar", "name", "citext",
}


def _normalize_columns(columns: Iterable[Any], side: str, table: str) -> list[ColumnDefinition]:
    normalized = []
    for column in columns:
        if isinstance(column, str):
            column = (column,)
        column = tuple(column)
        if not 1 <= len(column) <= 3 or not column[0]:
            raise ValueError(
                f"{side} column of {table} must be (name, charset, collation), got {column!r}"
            )
        name, charset, collation = (*column, None, None)[:3]
        normalized.append((name, charset, collation))

    names = [name for name, _, _ in normalized]
    if len(set(names)) != len(names):
        raise ValueError(f"{side} columns of {table} contain duplicates: {names}")
    return normalized


def build_table_schema(
    name: str,
    primary_key: str | Sequence[str],
    source_columns: Iterable[Any],
    target_columns: Iterable[Any],
    config: VerifierConfig | None = None,
) -> TableSchema:
    """
    Build the verification view of a table.

    Args:
        name: Table name, optionally schema-qualified ('gftest.test_table_1')
        primary_key: Key column or columns, in key order
        source_columns: Ordered (column, charset, collation) on the source
        target_columns: Ordered (column, charset, collation) on the target
        config: Supplies compressed and ignored columns

    Returns:
        TableSchema whose columns follow source order, minus key and
        ignored columns

    Raises:
        ValueError: If the key is empty or missing, the two sides disagree
            on the column set, or a charset is unknown
    """
    config = config or VerifierConfig()
    key = (primary_key,) if isinstance(primary_key, str) else tuple(primary_key)
    if not key:
        raise ValueError(f"Table {name} has no primary key; it cannot be verified")

    source = _normalize_columns(source_columns, "source", name)
    target = {column: (charset, collation) for column, charset, collation in
              _normalize_columns(target_columns, "target", name)}
    source_names = {column for column, _, _ in source}

    for column in key:
        if column not in source_names or column not in target:
            raise ValueError(f"Primary key column {column} of {name} missing on one side")

    ignored = set(config.ignored_columns.get(name, ()))
    relevant_source = {c for c in source_names if c not in ignored}
    relevant_target = {c for c in target if c not in ignored}
    if relevant_source != relevant_target:
        only_source = sorted(relevant_source - relevant_target)
        only_target = sorted(relevant_target - relevant_source)
        raise ValueError(
            f"Columns of {name} differ between sides: "
            f"source only {only_source}, target only {only_target}"
        )

    specs = []
    for column, charset, collation in source:
        if column in key or column in ignored:
            continue
        target_charset, target_collation = target[column]
        for side_charset in (charset, target_charset):
            lookup_charset(side_charset)

        compression = config.compression_for(name, column)
        specs.append(ColumnSpec(
            name=column,
            source=ColumnEncoding(charset, collation, compression),
            target=ColumnEncoding(target_charset, target_collation, compression),
        ))

    schema = TableSchema(name=name, primary_key=key, columns=tuple(specs))
    logger.debug(
        f"Built schema for {name}: key={list(key)}, {len(specs)} verified columns"
        + (f", ignoring {sorted(ignored)}" if ignored else "")
    )
    return schema


@retry_database_operation(max_retries=3, base_delay=0.5)
def _fetch_all(cursor: Any, query: str, params: Sequence[Any]) -> list:
    cursor.execute(query, params)
    return cursor.fetchall()


def _split_table_name(table: str, dialect: DatabaseType) -> tuple[str | None, str]:
    parts = table.split(".")
    if len(parts) == 1:
        return _DEFAULT_SCHEMAS.get(dialect), parts[0]
    if len(parts) == 2 and all(parts):
        return parts[0], parts[1]
    raise ValueError(f"Invalid table name format: {table!r}")


@trace_function(component="verification")
def introspect_table(
    cursor: Any,
    table: str,
    dialect: DatabaseType | None = None,
) -> tuple[tuple[str, ...], list[ColumnDefinition]]:
    """
    Read a table's key and column encodings from information_schema.

    Args:
        cursor: Cursor on the database holding ``table``
        table: Table name, optionally schema-qualified
        dialect: Database dialect; detected from the cursor when omitted

    Returns:
        (primary key columns, ordered (column, charset, collation) tuples)

    Raises:
        ValueError: If the table does not exist or has no primary key
    """
    dialect = dialect or DatabaseType.from_cursor(cursor)
    schema_name, table_name = _split_table_name(table, dialect)
    placeholder = dialect.get_placeholder()

    if schema_name is None:
        schema_filter = "table_schema = DATABASE()"
        params: list[Any] = [table_name]
    else:
        schema_filter = f"table_schema = {placeholder}"
        params = [schema_name, table_name]

    rows = _fetch_all(
        cursor,
        "SELECT column_name, data_type, character_set_name, collation_name "
        "FROM information_schema.columns "
        f"WHERE {schema_filter} AND table_name = {placeholder} "
        "ORDER BY ordinal_position",
        params,
    )
    if not rows:
        raise ValueError(f"Table {table} not found")

    if dialect is DatabaseType.MYSQL:
        key_query = (
            "SELECT column_name FROM information_schema.key_column_usage "
            f"WHERE {schema_filter} "
            f"AND table_name = {placeholder} AND constraint_name = 'PRIMARY' "
            "ORDER BY ordinal_position"
        )
    else:
        key_query = (
            "SELECT kcu.column_name "
            "FROM information_schema.table_constraints tc "
            "JOIN information_schema.key_column_usage kcu "
            "ON tc.constraint_name = kcu.constraint_name "
            "AND tc.table_schema = kcu.table_schema "
            "AND tc.table_name = kcu.table_name "
            f"WHERE tc.{schema_filter} AND tc.table_name = {placeholder} "
            "AND tc.constraint_type = 'PRIMARY KEY' "
            "ORDER BY kcu.ordinal_position"
        )
    key_rows = _fetch_all(cursor, key_query, params)
    primary_key = tuple(row[0] for row in key_rows)
    if not primary_key:
        raise ValueError(f"Table {table} has no primary key; it cannot be verified")

    database_charset = None
    if dialect is DatabaseType.POSTGRESQL:
        # Text columns report no charset; they use the database encoding.
        encoding_rows = _fetch_all(
            cursor,
            "SELECT pg_encoding_to_char(encoding) FROM pg_database "
            "WHERE datname = current_database()",
            (),
        )
        database_charset = encoding_rows[0][0] if encoding_rows else None

    columns = []
    for name, data_type, charset, collation in rows:
        if charset is None and str(data_type).lower() in _TEXT_TYPES:
            charset = database_charset
        columns.append((name, charset, collation))

    logger.info(
        f"Introspected {table}: key={list(primary_key)}, columns={[c[0] for c in columns]}",
        extra={"table": table, "dialect": dialect.value},
    )
    return primary_key, columns
