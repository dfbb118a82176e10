from dataclasses import dataclass

import duckdb

_parser_conn: duckdb.DuckDBPyConnection | None = None


def get_parser_conn() -> duckdb.DuckDBPyConnection:
    """Lazy singleton in-memory connection for SQL parsing."""
    global _parser_conn
    if _parser_conn is None:
        _parser_conn = duckdb.connect(":memory:")
    return _parser_conn


class SqlParseError(ValueError):
    """Raised when DuckDB cannot parse SQL text."""


@dataclass(frozen=True)
class ParsedStatement:
    """A single parsed SQL statement."""

    sql: str
    kind: str  # upper-case statement type name, e.g. "UPDATE"

    def is_select(self) -> bool:
        return self.kind == "SELECT"

    def is_dml(self) -> bool:
        return self.kind in DML_KINDS


# Statement kinds whose result is a single "Count" row of affected rows.
DML_KINDS = frozenset({"INSERT", "UPDATE", "DELETE"})


def _kind_name(stmt_type: object) -> str:
    name = getattr(stmt_type, "name", None)
    if name is None:
        name = str(stmt_type).rsplit(".", 1)[-1]
    return str(name).upper()


def parse_statements(sql_text: str) -> list[ParsedStatement]:
    """Split *sql_text* into parsed statements using DuckDB's parser.

    Raises SqlParseError if the text cannot be parsed.
    """
    sql_text = (sql_text or "").strip()
    if not sql_text:
        return []
    try:
        statements = get_parser_conn().extract_statements(sql_text)
    except duckdb.Error as e:
        raise SqlParseError(f"SQL parse error: {e}") from e
    return [
        ParsedStatement(sql=s.query.strip(), kind=_kind_name(s.type))
        for s in statements
        if s.query.strip()
    ]


def get_column_names(conn: duckdb.DuckDBPyConnection, table_name: str) -> set[str]:
    """Get the set of column names for a table or view."""
    rows = conn.execute(
        """
        SELECT column_name
        FROM information_schema.columns
        WHERE table_name = ?
        """,
        [table_name],
    ).fetchall()
    return {row[0] for row in rows}


def get_column_schema(
    conn: duckdb.DuckDBPyConnection, table_name: str
) -> list[tuple[str, str]]:
    """Get the column names and data types for a table or view."""
    rows = conn.execute(
        """
        SELECT column_name, data_type
        FROM information_schema.columns
        WHERE table_name = ?
        ORDER BY ordinal_position
        """,
        [table_name],
    ).fetchall()
    return [(row[0], row[1]) for row in rows]


def sql_literal(value: str) -> str:
    """Render *value* as a single-quoted SQL string literal."""
    return "'" + value.replace("'", "''") + "'"
