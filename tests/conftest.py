"""Shared fixtures and helpers for the layoffs ETL test suite."""

from pathlib import Path

import duckdb
import pytest

from layoffs.cleaning import cleaning_steps, source_step
from layoffs.config import PipelineConfig
from layoffs.infra import init_infra
from layoffs.ingest import LAYOFF_COLUMNS
from layoffs.pipeline import execute_steps
from layoffs.step import Step


@pytest.fixture
def conn():
    """In-memory DuckDB connection for each test."""
    c = duckdb.connect(":memory:")
    init_infra(c)
    yield c
    c.close()


def _row(
    company,
    location,
    industry,
    total,
    pct,
    date,
    stage,
    country,
    funds="NULL",
) -> dict[str, str]:
    values = [company, location, industry, total, pct, date, stage, country, funds]
    return dict(zip(LAYOFF_COLUMNS, values))


def sample_rows() -> list[dict[str, str]]:
    """Raw rows the way a CSV export delivers them: all text, 'NULL' markers.

    After cleaning, 7 rows remain:
    - the second Acme row is an exact duplicate
    - Delta has neither layoff figure
    """
    return [
        _row("Acme", "SF Bay Area", "Crypto Currency", "100", "0.1", "03/01/2022",
             "Series B", "United States"),
        _row("Acme", "SF Bay Area", "Crypto Currency", "100", "0.1", "03/01/2022",
             "Series B", "United States"),
        _row(" Beta ", "New York City", "", "50", "0.5", "03/15/2022",
             "Post-IPO", "United States.", "120"),
        _row("Beta", "New York City", "Retail", "30", "NULL", "04/01/2022",
             "Post-IPO", "United States", "120"),
        _row("Gamma", "London", "Crypto", "200", "1", "01/10/2023",
             "Seed", "United Kingdom", "5.5"),
        _row("Delta", "Berlin", "Retail", "NULL", "NULL", "05/05/2022",
             "Series A", "Germany"),
        _row("Epsilon", "Toronto", "Food", "200", "0.25", "2023-02-01",
             "Series C", "Canada", "300"),
        _row("Zeta", "Austin", "Food", "10", "0.05", "not a date",
             "Unknown", "United States"),
        _row("Eta", "Austin", "NULL", "40", "0.2", "06/01/2022",
             "Series A", "United States", "12"),
    ]


def write_csv(path: Path, rows: list[dict[str, str]]) -> Path:
    """Write rows as a CSV file with a header line."""
    lines = [",".join(LAYOFF_COLUMNS)]
    for r in rows:
        lines.append(",".join(f'"{r[c]}"' for c in LAYOFF_COLUMNS))
    path.write_text("\n".join(lines) + "\n")
    return path


def run_cleaning(
    conn: duckdb.DuckDBPyConnection,
    rows=None,
    config: PipelineConfig | None = None,
):
    """Ingest *rows* and run the cleaning chain on *conn*."""
    config = config or PipelineConfig()
    steps = [source_step(rows if rows is not None else sample_rows())]
    steps.extend(cleaning_steps(config))
    return execute_steps(conn, steps)


@pytest.fixture
def cleaned(conn):
    """Connection with the sample rows cleaned into layoffs_clean."""
    results, ok = run_cleaning(conn)
    assert ok, {n: r.message for n, r in results.items() if not r.success}
    return conn


def _make_step(**kwargs) -> Step:
    """Helper to create a Step with defaults."""
    defaults = {
        "name": "t",
        "sql": "CREATE OR REPLACE VIEW t_out AS SELECT 1 AS x",
    }
    defaults.update(kwargs)
    return Step(**defaults)


def _views(conn: duckdb.DuckDBPyConnection) -> set[str]:
    """Return the set of user-defined view names."""
    rows = conn.execute(
        "SELECT view_name FROM duckdb_views() WHERE internal = false"
    ).fetchall()
    return {r[0] for r in rows}


def _tables(conn: duckdb.DuckDBPyConnection) -> set[str]:
    """Return the set of user-defined table names."""
    rows = conn.execute(
        "SELECT table_name FROM duckdb_tables() WHERE internal = false"
    ).fetchall()
    return {r[0] for r in rows}
