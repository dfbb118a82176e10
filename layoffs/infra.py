"""Pipeline infrastructure tables.

Centralizes creation and persistence for the run-internal tables:
- _trace (+ _trace_seq)
- _step_meta
- _pipeline_meta
"""

from __future__ import annotations

import importlib.metadata
import json
import platform
import sys
import time
from typing import Any, Iterable

import duckdb

from .sql_utils import get_column_schema


def init_infra(conn: duckdb.DuckDBPyConnection) -> None:
    """Ensure all pipeline infra tables exist."""
    ensure_trace(conn)
    ensure_step_meta(conn)
    ensure_pipeline_meta(conn)


# ---------------------------------------------------------------------------
# Trace
# ---------------------------------------------------------------------------


def ensure_trace(conn: duckdb.DuckDBPyConnection) -> None:
    """Create the _trace table."""
    conn.execute("CREATE SEQUENCE IF NOT EXISTS _trace_seq")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _trace (
            id INTEGER DEFAULT nextval('_trace_seq'),
            timestamp TIMESTAMP DEFAULT current_timestamp,
            step VARCHAR,
            source VARCHAR,
            query VARCHAR NOT NULL,
            success BOOLEAN NOT NULL,
            error VARCHAR,
            row_count BIGINT,
            elapsed_ms DOUBLE
        )
        """
    )


def log_trace(
    conn: duckdb.DuckDBPyConnection,
    query: str,
    success: bool,
    *,
    error: str | None = None,
    row_count: int | None = None,
    elapsed_ms: float | None = None,
    step_name: str | None = None,
    source: str | None = None,
) -> None:
    """Log a SQL statement execution to the _trace table."""
    conn.execute(
        """
        INSERT INTO _trace (step, source, query, success, error, row_count, elapsed_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        [step_name, source, query, success, error, row_count, elapsed_ms],
    )


# ---------------------------------------------------------------------------
# Step metadata
# ---------------------------------------------------------------------------


def ensure_step_meta(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _step_meta (
            step VARCHAR PRIMARY KEY,
            meta_json VARCHAR NOT NULL
        )
        """
    )


def persist_step_meta(
    conn: duckdb.DuckDBPyConnection, step_name: str, meta: dict[str, Any]
) -> None:
    """Persist per-step run metadata in _step_meta (overwrite per step)."""
    ensure_step_meta(conn)
    conn.execute("DELETE FROM _step_meta WHERE step = ?", [step_name])
    conn.execute(
        "INSERT INTO _step_meta (step, meta_json) VALUES (?, ?)",
        [step_name, json.dumps(meta, sort_keys=True, default=str)],
    )


def read_step_meta(conn: duckdb.DuckDBPyConnection) -> dict[str, dict[str, Any]]:
    """Read per-step metadata. Returns empty dict if the table doesn't exist."""
    try:
        rows = conn.execute("SELECT step, meta_json FROM _step_meta").fetchall()
    except duckdb.Error:
        return {}
    return {step: json.loads(raw) for step, raw in rows}


# ---------------------------------------------------------------------------
# Pipeline metadata
# ---------------------------------------------------------------------------


def ensure_pipeline_meta(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _pipeline_meta (
            key VARCHAR PRIMARY KEY,
            value VARCHAR
        )
        """
    )


def persist_pipeline_meta(
    conn: duckdb.DuckDBPyConnection,
    steps: Iterable[Any],
    *,
    config: dict[str, Any] | None = None,
    source_row_counts: dict[str, int] | None = None,
) -> None:
    """Write pipeline-level metadata to _pipeline_meta."""
    ensure_pipeline_meta(conn)
    conn.execute("DELETE FROM _pipeline_meta")

    try:
        pkg_version = importlib.metadata.version("layoffs-etl")
    except importlib.metadata.PackageNotFoundError:
        pkg_version = "unknown"

    rows: list[tuple[str, str]] = [
        ("meta_version", "1"),
        ("created_at_utc", time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())),
        ("layoffs_etl_version", pkg_version),
        ("duckdb_version", duckdb.__version__),
        ("python_version", sys.version.split()[0]),
        ("platform", platform.platform()),
        ("steps", json.dumps([s.name for s in steps])),
    ]

    if config:
        rows.append(("config", json.dumps(config, sort_keys=True, default=str)))

    if source_row_counts:
        source_schemas = {
            table: [
                {"name": r[0], "type": r[1]} for r in get_column_schema(conn, table)
            ]
            for table in sorted(source_row_counts)
        }
        rows.append(
            ("inputs_row_counts", json.dumps(source_row_counts, sort_keys=True))
        )
        rows.append(("inputs_schema", json.dumps(source_schemas, sort_keys=True)))

    conn.executemany("INSERT INTO _pipeline_meta (key, value) VALUES (?, ?)", rows)


def read_pipeline_meta(conn: duckdb.DuckDBPyConnection) -> dict[str, str]:
    """Read pipeline metadata. Returns empty dict if the table doesn't exist."""
    try:
        return dict(conn.execute("SELECT key, value FROM _pipeline_meta").fetchall())
    except duckdb.Error:
        return {}


def upsert_pipeline_meta(
    conn: duckdb.DuckDBPyConnection, rows: list[tuple[str, str]]
) -> None:
    """Upsert additional pipeline metadata rows."""
    ensure_pipeline_meta(conn)
    conn.executemany(
        """
        INSERT INTO _pipeline_meta (key, value)
        VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        rows,
    )
