"""CLI entry point for the layoffs ETL.

Usage:
    # Clean a CSV export and build the reports
    layoffs run data/layoffs.csv -o runs/layoffs.duckdb --export-dir out/

    # Inspect a finished run
    layoffs show runs/layoffs.duckdb
    layoffs report runs/layoffs.duckdb company_year_ranking

    # Show the step graph
    layoffs steps
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import duckdb
import polars as pl

from layoffs.analysis import REPORTS, run_report
from layoffs.catalog import count_rows_display, list_tables, list_views
from layoffs.config import ConfigError, PipelineConfig, load_config
from layoffs.infra import read_pipeline_meta, read_step_meta
from layoffs.ingest import FileInput
from layoffs.pipeline import DEFAULT_DB_PATH, build_pipeline, build_steps
from layoffs.step import (
    MAX_INLINE_MESSAGES,
    Step,
    resolve_dag,
    resolve_deps,
    validate_graph,
)

log = logging.getLogger(__name__)


def _setup_logging(quiet: bool) -> None:
    level = logging.WARNING if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def _load_config(**overrides: Any) -> PipelineConfig:
    try:
        return load_config(**overrides)
    except ConfigError as e:
        raise click.ClickException(str(e))


def _meta_json(meta: dict[str, str], key: str) -> Any:
    """Parse a JSON blob from pipeline meta."""
    raw = meta.get(key)
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}


def _open_db(path: Path) -> duckdb.DuckDBPyConnection:
    if not path.exists():
        raise click.ClickException(f"{path} does not exist.")
    try:
        return duckdb.connect(str(path), read_only=True)
    except duckdb.Error as e:
        raise click.ClickException(f"Cannot open {path} as a DuckDB database: {e}")


def _describe_step(s: Step, include_validation: bool = False) -> str:
    """One-line description of a step for display.

    Produces a string like:
      ``[source] (data/layoffs.csv)``
      ``[sql] depends on: dedupe  -> layoffs_staging2  validate=yes``
    """
    parts: list[str] = [f"[{s.step_type()}]"]

    if s.is_source():
        src = s.source
        if isinstance(src, FileInput):
            parts.append(f"({src.path})")
        elif callable(src):
            parts.append("(callable)")
        elif isinstance(src, list):
            parts.append(f"({len(src)} rows)")
        else:
            parts.append(f"({type(src).__name__})")

    if s.depends_on:
        parts.append(f"depends on: {', '.join(s.depends_on)}")
    if s.outputs and not s.is_source():
        parts.append(" -> " + ", ".join(s.outputs))
    if include_validation and s.has_validation():
        parts.append("validate=yes")

    return "  ".join(parts)


def _format_step_tree(steps: list[Step]) -> list[str]:
    """Format the step DAG as a list of tree lines."""
    if not steps:
        return ["  (no steps)"]

    deps = resolve_deps(steps)
    step_by_name = {s.name: s for s in steps}
    children: dict[str, list[str]] = {s.name: [] for s in steps}
    for name, parents in deps.items():
        for p in parents:
            children[p].append(name)
    for p in children:
        children[p] = sorted(set(children[p]))

    roots = sorted(name for name, parents in deps.items() if not parents)

    lines: list[str] = []

    def _emit(name: str, prefix: str, is_last: bool, stack: set[str], seen: set[str]):
        s = step_by_name[name]
        branch = "`- " if is_last else "|- "
        lines.append(
            f"{prefix}{branch}{name}  {_describe_step(s, include_validation=True)}"
        )

        if name in stack:
            lines.append(f"{prefix}{'   ' if is_last else '|  '}[cycle]")
            return
        if name in seen:
            lines.append(f"{prefix}{'   ' if is_last else '|  '}[shared]")
            return

        seen.add(name)
        stack.add(name)
        kids = children.get(name, [])
        next_prefix = prefix + ("   " if is_last else "|  ")
        for i, child in enumerate(kids):
            _emit(
                child,
                prefix=next_prefix,
                is_last=(i == len(kids) - 1),
                stack=stack,
                seen=seen,
            )
        stack.remove(name)

    seen_all: set[str] = set()
    for i, r in enumerate(roots):
        _emit(
            r,
            prefix="  ",
            is_last=(i == len(roots) - 1),
            stack=set(),
            seen=seen_all,
        )
    return lines


@click.group()
def main():
    """Layoffs ETL: clean the layoffs dataset and build reports."""


@main.command()
@click.argument("source", required=False, type=click.Path(path_type=Path))
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=None,
    help=f"Output database path (default: db_path setting, else {DEFAULT_DB_PATH})",
)
@click.option(
    "--export-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Write layoffs_clean.csv/.parquet and layoffs_reports.xlsx here",
)
@click.option("--top-n", type=int, default=None, help="Rows kept by top-N reports")
@click.option("--country", default=None, help="Country for the daily report")
@click.option(
    "--keep-staging",
    is_flag=True,
    default=None,
    help="Keep layoffs_staging in the output database",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress verbose output")
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite output file without prompting",
)
def run(
    source: Path | None,
    output: Path | None,
    export_dir: Path | None,
    top_n: int | None,
    country: str | None,
    keep_staging: bool | None,
    quiet: bool,
    force: bool,
):
    """Clean SOURCE (csv or parquet) and build the reports."""
    _setup_logging(quiet)

    config = _load_config(
        source=source,
        db_path=output,
        export_dir=export_dir,
        top_n=top_n,
        focus_country=country,
        keep_staging=keep_staging or None,
    )
    if config.source is None:
        raise click.ClickException(
            "No SOURCE given and no [tool.layoffs] source or LAYOFFS_SOURCE set."
        )

    try:
        pipeline = build_pipeline(config)
    except (ConfigError, ValueError) as e:
        raise click.ClickException(str(e))

    db_path = Path(pipeline.db_path)
    if db_path.exists() and not force:
        click.confirm(
            f"{db_path} already exists and will be overwritten. Continue?",
            abort=True,
        )

    log.info("Source: %s", config.source)
    log.info("Output: %s", db_path)
    log.info("Steps: %d", len(pipeline.steps))

    try:
        result = pipeline.run()
    except ValueError as e:
        raise click.ClickException(str(e))

    log.info("Saved to: %s", db_path)
    log.info("Step metadata: SELECT step, meta_json FROM _step_meta")
    log.info("SQL trace: SELECT * FROM _trace")

    if not quiet:
        _report_run_summary(db_path, pipeline.steps)

    for path, err in sorted(result.export_errors.items()):
        click.echo(f"Export failed: {path}: {err}", err=True)
    for name in result.failed:
        click.echo(f"Step failed: {name}", err=True)

    sys.exit(0 if result.success else 1)


def _report_run_summary(db_path: Path, steps: list[Step]) -> None:
    try:
        conn = duckdb.connect(str(db_path), read_only=True)
    except duckdb.Error:
        return

    try:
        tables = set(list_tables(conn, exclude_prefixes=("_",)))
        click.echo(f"\nOutputs: {len(tables)} tables")
        for step in steps:
            names = [o for o in step.outputs if o in tables]
            for name in names:
                click.echo(f"  {name}: {count_rows_display(conn, name)} rows")

        for step in steps:
            warn_count, warn_msgs = step.validation_warnings(
                conn, limit=MAX_INLINE_MESSAGES
            )
            if warn_count:
                click.echo(f"\n  {step.name} warnings: {warn_count}")
                for msg in warn_msgs:
                    click.echo(f"    - {msg}")
    finally:
        conn.close()


@main.command()
@click.argument("db", type=click.Path(path_type=Path))
def show(db: Path):
    """Show metadata, tables and step status of a finished run.

    \b
    Example:
        layoffs show runs/layoffs.duckdb
    """
    conn = _open_db(db)
    try:
        meta = read_pipeline_meta(conn)
        if not meta:
            raise click.ClickException(
                f"{db} has no pipeline metadata; not a layoffs run database."
            )
        step_meta = read_step_meta(conn)

        click.echo(f"Database: {db}\n")
        click.echo(f"Created: {meta.get('created_at_utc', '(unknown)')}")
        click.echo(f"DuckDB: {meta.get('duckdb_version', '(unknown)')}")

        config = _meta_json(meta, "config")
        if config:
            click.echo("\nConfig:")
            for key in sorted(config):
                click.echo(f"  {key}: {config[key]}")

        counts = _meta_json(meta, "inputs_row_counts")
        if counts:
            click.echo("\nInputs:")
            for name in sorted(counts):
                click.echo(f"  {name}: {counts[name]} rows")

        steps = _meta_json(meta, "steps") or sorted(step_meta)
        click.echo(f"\nSteps ({len(steps)}):")
        for name in steps:
            m = step_meta.get(name, {})
            status = m.get("validation", "?")
            line = f"  {name:<26}{status:<6}"
            if m.get("warnings"):
                line += f"  {m['warnings']} warning(s)"
            click.echo(line)
            if m.get("error"):
                for err_line in str(m["error"]).splitlines()[:MAX_INLINE_MESSAGES]:
                    click.echo(f"      {err_line}")

        tables = list_tables(conn, exclude_prefixes=("_",))
        views = list_views(conn, exclude_prefixes=("_",))
        click.echo(f"\nTables ({len(tables)}):")
        for name in tables:
            click.echo(f"  {name}: {count_rows_display(conn, name)} rows")
        if views:
            click.echo(f"\nViews ({len(views)}):")
            for name in views:
                click.echo(f"  {name}")

        exports = _meta_json(meta, "exports")
        if exports:
            results = exports.get("results") or {}
            click.echo("\nExports:")
            click.echo(f"  attempted: {exports.get('attempted')}")
            for name in sorted(results):
                r = results[name]
                if r.get("ok"):
                    click.echo(f"  {name}: OK")
                else:
                    click.echo(f"  {name}: FAILED ({r.get('error')})")
    finally:
        conn.close()


@main.command()
@click.argument("source", required=False, type=click.Path(path_type=Path))
def steps(source: Path | None):
    """Show the step graph for SOURCE (default: configured source)."""
    config = _load_config(source=source)
    try:
        step_list = build_steps(config, source=config.source or "layoffs.csv")
    except (ConfigError, ValueError) as e:
        raise click.ClickException(str(e))

    try:
        layers = resolve_dag(step_list)
    except ValueError as e:
        click.echo(f"\nDAG error: {e}")
        sys.exit(1)

    click.echo(f"Steps ({len(step_list)}):")
    for layer_idx, layer in enumerate(layers):
        click.echo(f"  Layer {layer_idx}:")
        for s in layer:
            click.echo(f"    {s.name:<26}{_describe_step(s)}")

    click.echo(f"\nDAG (tree, {len(step_list)} steps):")
    for line in _format_step_tree(step_list):
        click.echo(line)

    graph_errors = validate_graph(step_list)
    if graph_errors:
        click.echo("\nGraph errors:")
        for err in graph_errors:
            click.echo(f"  ! {err}")


@main.command()
@click.argument("db", type=click.Path(path_type=Path))
@click.argument("name", required=False)
@click.option("--top-n", type=int, default=None, help="Rows kept by top-N reports")
@click.option("--country", default=None, help="Country for the daily report")
@click.option("--limit", type=int, default=50, help="Maximum rows to print")
def report(
    db: Path,
    name: str | None,
    top_n: int | None,
    country: str | None,
    limit: int,
):
    """Run report NAME against a finished run (lists reports without NAME)."""
    if name is None:
        click.echo(f"Reports ({len(REPORTS)}):")
        for r in REPORTS.values():
            click.echo(f"  {r.name:<26}{r.description}")
        return

    config = _load_config(top_n=top_n, focus_country=country)
    conn = _open_db(db)
    try:
        df = run_report(conn, name, config)
    except ValueError as e:
        raise click.ClickException(str(e))
    except duckdb.Error as e:
        raise click.ClickException(f"Report '{name}' failed: {e}")
    finally:
        conn.close()

    with pl.Config(tbl_rows=limit, tbl_cols=-1, tbl_width_chars=160):
        click.echo(str(df))


if __name__ == "__main__":
    main()
