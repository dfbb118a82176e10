"""DuckDB catalog helpers.

Small wrappers over duckdb_tables()/duckdb_views() used by the pipeline,
the exporters and the CLI to discover relations and count their rows
without repeating catalog SQL everywhere.
"""

from __future__ import annotations

from typing import Iterable

import duckdb


def quote_ident(name: str) -> str:
    """Quote an identifier for DuckDB SQL."""
    return '"' + name.replace('"', '""') + '"'


def _excluded(name: str, exclude_prefixes: Iterable[str]) -> bool:
    return any(p and name.startswith(p) for p in exclude_prefixes)


def _names(
    conn: duckdb.DuckDBPyConnection,
    catalog_fn: str,
    name_col: str,
    include_internal: bool,
    exclude_prefixes: Iterable[str],
) -> list[str]:
    where = "" if include_internal else "WHERE internal = false"
    rows = conn.execute(
        f"SELECT {name_col} FROM {catalog_fn}() {where} ORDER BY {name_col}"
    ).fetchall()
    return [r[0] for r in rows if not _excluded(r[0], exclude_prefixes)]


def list_views(
    conn: duckdb.DuckDBPyConnection,
    *,
    include_internal: bool = False,
    exclude_prefixes: Iterable[str] = (),
) -> list[str]:
    """Return view names from the catalog."""
    return _names(conn, "duckdb_views", "view_name", include_internal, exclude_prefixes)


def list_tables(
    conn: duckdb.DuckDBPyConnection,
    *,
    include_internal: bool = False,
    exclude_prefixes: Iterable[str] = (),
) -> list[str]:
    """Return table names from the catalog."""
    return _names(
        conn, "duckdb_tables", "table_name", include_internal, exclude_prefixes
    )


def view_exists(conn: duckdb.DuckDBPyConnection, view_name: str) -> bool:
    """Return True if a (non-internal) view exists."""
    rows = conn.execute(
        "SELECT 1 FROM duckdb_views() WHERE view_name = ? AND internal = false",
        [view_name],
    ).fetchall()
    return bool(rows)


def table_exists(conn: duckdb.DuckDBPyConnection, table_name: str) -> bool:
    """Return True if a (non-internal) table exists."""
    rows = conn.execute(
        "SELECT 1 FROM duckdb_tables() WHERE table_name = ? AND internal = false",
        [table_name],
    ).fetchall()
    return bool(rows)


def relation_exists(conn: duckdb.DuckDBPyConnection, name: str) -> bool:
    return table_exists(conn, name) or view_exists(conn, name)


def count_rows(conn: duckdb.DuckDBPyConnection, relation_name: str) -> int | None:
    """Return COUNT(*) for a table/view, or None on error."""
    try:
        row = conn.execute(
            f"SELECT COUNT(*) FROM {quote_ident(relation_name)}"
        ).fetchone()
    except duckdb.Error:
        return None
    if not row:
        return 0
    return int(row[0])


def count_rows_display(conn: duckdb.DuckDBPyConnection, relation_name: str) -> str:
    """Return a display-friendly row count (or 'error')."""
    n = count_rows(conn, relation_name)
    return str(n) if n is not None else "error"
