"""
Database dialect enumeration for type-safe database identification.

Used by the row readers to quote identifiers and pick parameter placeholders
for whichever engine sits behind a DB-API cursor.
"""

from enum import Enum


class DatabaseType(str, Enum):
    """
    Enumeration of supported database types.

    Inherits from str for JSON serialization compatibility and
    easy comparison with string values.
    """

    MYSQL = "mysql"
    POSTGRESQL = "postgresql"
    SQLSERVER = "sqlserver"
    UNKNOWN = "unknown"

    @classmethod
    def from_cursor(cls, cursor) -> "DatabaseType":
        """
        Detect database type from cursor class name and module.

        Args:
            cursor: Database cursor object

        Returns:
            DatabaseType enum value
        """
        cursor_class_name = cursor.__class__.__name__.lower()
        cursor_module = (type(cursor).__module__ or "").lower()
        hint = f"{cursor_module}.{cursor_class_name}"

        if "psycopg" in hint or "postgres" in hint:
            return cls.POSTGRESQL
        elif "pyodbc" in hint or "odbc" in hint:
            return cls.SQLSERVER
        elif "mysql" in hint:
            return cls.MYSQL
        else:
            return cls.UNKNOWN

    def get_placeholder(self, index: int = 0) -> str:
        """
        Get parameter placeholder for this database type.

        Args:
            index: Parameter index (0-based), kept for drivers with numbered styles

        Returns:
            Placeholder string
        """
        if self in (DatabaseType.POSTGRESQL, DatabaseType.MYSQL):
            return "%s"
        else:
            return "?"

    def quote_identifier(self, identifier: str) -> str:
        """
        Quote a possibly schema-qualified identifier for this database type.

        Args:
            identifier: Column or table name, e.g. 'gftest.test_table_1'

        Returns:
            Quoted identifier string

        Raises:
            ValueError: If the identifier is empty or has an empty part
        """
        parts = identifier.split(".")
        if not identifier or any(not part for part in parts):
            raise ValueError(f"Invalid identifier format: {identifier!r}")

        return ".".join(self._quote_part(part) for part in parts)

    def _quote_part(self, part: str) -> str:
        if self == DatabaseType.POSTGRESQL:
            return '"' + part.replace('"', '""') + '"'
        elif self == DatabaseType.SQLSERVER:
            return "[" + part.replace("]", "]]") + "]"
        elif self == DatabaseType.MYSQL:
            return "`" + part.replace("`", "``") + "`"
        else:
            return part
