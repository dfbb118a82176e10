"""Ingestion module: load the raw layoffs dataset into DuckDB.

Accepts Polars DataFrames, list[dict] (array of structs), dict[str, list]
(struct of arrays) or a zero-argument callable returning one of those.
All are coerced to DataFrame before writing.

Also supports file-based inputs (csv, parquet). CSV files are read with
every column as text so that ``NULL`` markers and blank cells reach the
cleaning steps untouched.

The raw table always gets an INTEGER ``_row_id`` identifier column.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import duckdb
import polars as pl

from .catalog import quote_ident

log = logging.getLogger(__name__)

# Type alias for data accepted as an in-memory source
TableData = Any  # pl.DataFrame | list[dict] | dict[str, list]

RAW_TABLE = "layoffs"
ROW_ID = "_row_id"

# Columns of the layoffs dataset, in source order. Together they form the
# deduplication key.
LAYOFF_COLUMNS: tuple[str, ...] = (
    "company",
    "location",
    "industry",
    "total_laid_off",
    "percentage_laid_off",
    "date",
    "stage",
    "country",
    "funds_raised_millions",
)

SUPPORTED_FILE_EXTENSIONS = {
    ".csv": "csv",
    ".parquet": "parquet",
}


@dataclass(frozen=True)
class FileInput:
    path: Path
    format: str


def normalize_column_name(name: str) -> str:
    return str(name).strip().lower()


def coerce_to_dataframe(data: TableData) -> pl.DataFrame:
    """Convert supported tabular formats to a Polars DataFrame.

    Accepted formats:
    - pl.DataFrame: returned as-is
    - list[dict]: array of structs, e.g. [{"a": 1, "b": 2}, ...]
    - dict[str, list]: struct of arrays, e.g. {"a": [1, 2], "b": [3, 4]}

    Raises TypeError for unsupported formats.
    """
    if isinstance(data, pl.DataFrame):
        return data
    if isinstance(data, list):
        return pl.DataFrame(data, infer_schema_length=None)
    if isinstance(data, dict):
        return pl.DataFrame(data)
    raise TypeError(
        f"Unsupported data type: {type(data).__name__}. "
        f"Expected DataFrame, list[dict], or dict[str, list]."
    )


def _normalize_path(path: Path, base_dir: Path | None = None) -> Path:
    """Resolve path against base_dir (or cwd) and expand user/symlinks."""
    path = path.expanduser()
    if not path.is_absolute():
        if base_dir is None:
            base_dir = Path.cwd()
        path = base_dir / path
    return path.resolve()


def parse_file_path(path: Path | str, base_dir: Path | None = None) -> FileInput:
    """Parse a path into a FileInput.

    Raises ValueError for empty paths and unsupported extensions.
    """
    if isinstance(path, str):
        if not path.strip():
            raise ValueError("File path must be a non-empty string")
        path = Path(path.strip())
    normalized = _normalize_path(path, base_dir=base_dir)
    suffix = normalized.suffix.lower()
    if suffix not in SUPPORTED_FILE_EXTENSIONS:
        raise ValueError(f"Unsupported file extension: {suffix or '(none)'}")
    return FileInput(path=normalized, format=SUPPORTED_FILE_EXTENSIONS[suffix])


def resolve_source(value: Any, base_dir: Path | None = None) -> Any:
    """Turn file paths/strings into FileInput; pass other sources through."""
    if isinstance(value, FileInput):
        return value
    if isinstance(value, Path):
        return parse_file_path(value, base_dir=base_dir)
    if isinstance(value, str):
        return parse_file_path(value, base_dir=base_dir)
    return value


def _check_columns(columns: list[str], source_label: str) -> None:
    counts = Counter(columns)
    dupes = sorted(c for c, n in counts.items() if n > 1)
    if dupes:
        raise ValueError(
            f"{source_label}: duplicate column(s) after normalization: "
            f"{', '.join(dupes)}"
        )
    missing = [c for c in LAYOFF_COLUMNS if c not in counts]
    if missing:
        raise ValueError(
            f"{source_label}: missing required column(s): {', '.join(missing)}. "
            f"Found: {', '.join(columns) or '(none)'}"
        )
    extra = [c for c in columns if c not in LAYOFF_COLUMNS and c != ROW_ID]
    if extra:
        log.info(
            "  %s: extra column(s) not carried into staging: %s",
            source_label,
            ", ".join(extra),
        )


def _write_table(
    conn: duckdb.DuckDBPyConnection, df: pl.DataFrame, table_name: str
) -> None:
    """Write a DataFrame to DuckDB with a leading _row_id INTEGER column.

    Uses DuckDB's native DataFrame scan for bulk ingestion.
    """
    conn.execute(f"DROP TABLE IF EXISTS {quote_ident(table_name)}")
    conn.register("_df", df)
    try:
        conn.execute(
            f"CREATE TABLE {quote_ident(table_name)} AS "
            f"SELECT CAST(row_number() OVER () AS INTEGER) AS {ROW_ID}, * "
            "FROM _df"
        )
    finally:
        conn.unregister("_df")


def ingest_table(
    conn: duckdb.DuckDBPyConnection, data: TableData, table_name: str = RAW_TABLE
) -> None:
    """Ingest in-memory layoff rows into the database as a named table.

    Accepts DataFrame, list[dict], or dict[str, list].
    """
    df = coerce_to_dataframe(data)
    normalized = [normalize_column_name(c) for c in df.columns]
    _check_columns(normalized, f"table '{table_name}'")
    df = df.rename(dict(zip(df.columns, normalized)))
    if ROW_ID in df.columns:
        df = df.drop(ROW_ID)
    _write_table(conn, df, table_name)


def _ensure_file_exists(path: Path) -> None:
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")


def _reader_sql(fmt: str) -> str:
    if fmt == "csv":
        return "read_csv(?, header = true, all_varchar = true)"
    if fmt == "parquet":
        return "read_parquet(?)"
    raise ValueError(f"Unsupported file format: {fmt}")


def ingest_file(
    conn: duckdb.DuckDBPyConnection,
    file_input: FileInput,
    table_name: str = RAW_TABLE,
) -> None:
    """Ingest a csv or parquet file using a DuckDB reader function.

    Column names are trimmed and lower-cased on the way in.
    """
    _ensure_file_exists(file_input.path)
    reader = _reader_sql(file_input.format)
    params = [str(file_input.path)]

    cursor = conn.execute(f"SELECT * FROM {reader} LIMIT 0", params)
    original = [d[0] for d in cursor.description]
    normalized = [normalize_column_name(c) for c in original]
    _check_columns(normalized, str(file_input.path.name))

    select_list = ", ".join(
        f"{quote_ident(src)} AS {quote_ident(dst)}"
        for src, dst in zip(original, normalized)
        if dst != ROW_ID
    )
    conn.execute(f"DROP TABLE IF EXISTS {quote_ident(table_name)}")
    conn.execute(
        f"CREATE TABLE {quote_ident(table_name)} AS "
        f"SELECT CAST(row_number() OVER () AS INTEGER) AS {ROW_ID}, {select_list} "
        f"FROM {reader}",
        params,
    )


def ingest_csv(
    conn: duckdb.DuckDBPyConnection, path: Path, table_name: str = RAW_TABLE
) -> None:
    ingest_file(conn, FileInput(path=Path(path), format="csv"), table_name)


def ingest_parquet(
    conn: duckdb.DuckDBPyConnection, path: Path, table_name: str = RAW_TABLE
) -> None:
    ingest_file(conn, FileInput(path=Path(path), format="parquet"), table_name)


def ingest_source(
    conn: duckdb.DuckDBPyConnection, value: Any, table_name: str = RAW_TABLE
) -> None:
    """Ingest any supported source value (file, data, or callable)."""
    if isinstance(value, FileInput):
        ingest_file(conn, value, table_name)
    elif callable(value):
        try:
            data = value()
        except Exception as e:
            raise RuntimeError(f"Source '{table_name}' callable failed: {e}") from e
        ingest_table(conn, data, table_name)
    else:
        ingest_table(conn, value, table_name)
