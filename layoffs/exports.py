"""Export functions run after every step passed.

Each exporter has the signature ``fn(conn, path)``. The pipeline maps an
output path to an exporter and records failures per path instead of
aborting the run.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

import duckdb
import polars as pl
from openpyxl import Workbook

from .analysis import REPORT_PREFIX
from .catalog import list_tables, quote_ident, table_exists
from .cleaning import CLEAN_TABLE

log = logging.getLogger(__name__)

ExportFn = Callable[[duckdb.DuckDBPyConnection, Path], None]

# Excel rejects sheet titles longer than this.
MAX_SHEET_TITLE = 31


def _clean_frame(conn: duckdb.DuckDBPyConnection) -> pl.DataFrame:
    if not table_exists(conn, CLEAN_TABLE):
        raise ValueError(f"'{CLEAN_TABLE}' does not exist; run the pipeline first")
    return conn.execute(f"SELECT * FROM {quote_ident(CLEAN_TABLE)}").pl()


def _prepare(path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def export_clean_csv(conn: duckdb.DuckDBPyConnection, path: Path) -> None:
    """Write ``layoffs_clean`` to CSV (dates as YYYY-MM-DD)."""
    path = _prepare(path)
    _clean_frame(conn).write_csv(path)


def export_clean_parquet(conn: duckdb.DuckDBPyConnection, path: Path) -> None:
    """Write ``layoffs_clean`` to parquet."""
    path = _prepare(path)
    _clean_frame(conn).write_parquet(path)


def report_tables(conn: duckdb.DuckDBPyConnection) -> list[str]:
    return [t for t in list_tables(conn) if t.startswith(REPORT_PREFIX)]


def sheet_title(table_name: str) -> str:
    if table_name.startswith(REPORT_PREFIX):
        table_name = table_name[len(REPORT_PREFIX) :]
    return table_name[:MAX_SHEET_TITLE]


def export_report_workbook(conn: duckdb.DuckDBPyConnection, path: Path) -> None:
    """Write every ``eda_*`` report table to its own worksheet."""
    tables = report_tables(conn)
    if not tables:
        raise ValueError("No report tables to export")
    path = _prepare(path)

    wb = Workbook()
    for i, table in enumerate(tables):
        ws = wb.active if i == 0 else wb.create_sheet()
        ws.title = sheet_title(table)
        result = conn.execute(f"SELECT * FROM {quote_ident(table)}")
        ws.append([col[0] for col in result.description])
        for row in result.fetchall():
            ws.append(list(row))

    wb.save(str(path))


def default_exports(export_dir: Path) -> dict[str, ExportFn]:
    """Standard exports written under *export_dir*."""
    export_dir = Path(export_dir)
    return {
        str(export_dir / f"{CLEAN_TABLE}.csv"): export_clean_csv,
        str(export_dir / f"{CLEAN_TABLE}.parquet"): export_clean_parquet,
        str(export_dir / "layoffs_reports.xlsx"): export_report_workbook,
    }


def run_exports(
    conn: duckdb.DuckDBPyConnection, exports: dict[str, ExportFn]
) -> dict[str, str]:
    """Run export functions. Returns dict of path -> error for failures."""
    errors: dict[str, str] = {}
    for output_path, export_fn in exports.items():
        try:
            export_fn(conn, Path(output_path))
            log.info("  %s: OK", output_path)
        except Exception as e:
            errors[output_path] = str(e)
            log.error("  %s: FAILED (%s)", output_path, e)
    return errors
