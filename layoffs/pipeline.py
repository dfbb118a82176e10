"""Pipeline orchestrator: run steps in dependency order, validate, export.

A run produces a single DuckDB database containing:
- The raw ``layoffs`` table and the cleaned ``layoffs_clean`` table
- Evidence tables written by the cleaning steps
- One ``eda_<name>`` table per report
- Materialized validation views and the internal ``_*`` tables

Steps run one at a time in the order returned by ``execution_order``.
A failed step only blocks the steps that depend on it (directly or
transitively); unrelated steps still run.

After execution, every step goes through the same post-execution flow:
1. Validate outputs (``step.validate_outputs(conn)``)
2. Define validation views if configured
3. Check validation views (``step.validate_validation_views(conn)``)
4. Materialize declared output views and validation views as tables

Usage:

    pipeline = build_pipeline(load_config(source="layoffs.csv"))
    result = pipeline.run()
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import duckdb

from .analysis import report_steps
from .catalog import count_rows, quote_ident, view_exists
from .cleaning import cleaning_steps, source_step
from .config import ConfigError, PipelineConfig
from .exports import ExportFn, default_exports, run_exports
from .infra import (
    init_infra,
    log_trace,
    persist_pipeline_meta,
    persist_step_meta,
    upsert_pipeline_meta,
)
from .ingest import ingest_source, resolve_source
from .sql_utils import SqlParseError
from .step import Step, execution_order, resolve_dag, resolve_deps, validate_graph

log = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("layoffs.duckdb")


# --- View materialization ---


def materialize_views(
    conn: duckdb.DuckDBPyConnection,
    view_names: list[str],
) -> int:
    """Materialize a list of views as tables.

    For each view that exists, does a 3-step swap: CREATE TABLE from
    view, DROP VIEW, RENAME TABLE. Duplicates are ignored and missing
    views (already tables, or never created) are skipped.

    Returns the number of views materialized.
    """
    unique_names = list(dict.fromkeys(view_names))

    materialized = 0
    for view_name in unique_names:
        if not view_exists(conn, view_name):
            continue

        # Never leave the catalog with the view gone and the tmp not renamed
        tmp_name = f"_materialize_tmp_{view_name}"
        view = quote_ident(view_name)
        tmp = quote_ident(tmp_name)
        conn.execute(f"DROP TABLE IF EXISTS {tmp}")
        conn.execute(f"CREATE TABLE {tmp} AS SELECT * FROM {view}")
        try:
            conn.execute(f"DROP VIEW {view}")
            conn.execute(f"ALTER TABLE {tmp} RENAME TO {view}")
        except duckdb.Error:
            conn.execute(f"DROP TABLE IF EXISTS {tmp}")
            raise
        materialized += 1

    return materialized


def materialize_step_outputs(conn: duckdb.DuckDBPyConnection, step: Step) -> int:
    """Materialize a step's declared output views and its validation views."""
    return materialize_views(conn, [*step.outputs, *step.validation_view_names()])


# --- Results ---


@dataclass
class StepResult:
    """Outcome of a single step."""

    success: bool
    message: str
    elapsed_s: float = 0.0
    skipped: bool = False
    row_count: int | None = None  # source steps only
    warning_count: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.skipped:
            return "SKIP"
        return "PASS" if self.success else "FAIL"


@dataclass
class PipelineResult:
    """Aggregated results from running all steps of a pipeline."""

    success: bool  # True if ALL steps passed and every export succeeded
    step_results: dict[str, StepResult]
    elapsed_s: float
    layers: list[list[str]]  # For display: layer -> [step_names]
    export_errors: dict[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> list[str]:
        return [
            n for n, r in self.step_results.items() if not r.success and not r.skipped
        ]

    @property
    def skipped(self) -> list[str]:
        return [n for n, r in self.step_results.items() if r.skipped]


# --- Step execution ---


def run_sql_step(conn: duckdb.DuckDBPyConnection, step: Step) -> StepResult:
    """Execute a SQL step statement by statement.

    Every statement is recorded in ``_trace``. Stops at the first failing
    statement. Does NOT run validation; see ``complete_step``.
    """
    errors = step.check_sql()
    if errors:
        return StepResult(False, "\n".join(errors))
    try:
        statements = step.sql_statements()
    except SqlParseError as e:
        return StepResult(False, str(e))

    for stmt in statements:
        start = time.perf_counter()
        row_count: int | None = None
        try:
            cursor = conn.execute(stmt.sql)
            if stmt.is_dml():
                row = cursor.fetchone()
                row_count = int(row[0]) if row else 0
        except duckdb.Error as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            log_trace(
                conn,
                stmt.sql,
                False,
                error=str(e),
                elapsed_ms=elapsed_ms,
                step_name=step.name,
                source="step",
            )
            return StepResult(False, f"{stmt.kind} failed: {e}")
        elapsed_ms = (time.perf_counter() - start) * 1000
        log_trace(
            conn,
            stmt.sql,
            True,
            row_count=row_count,
            elapsed_ms=elapsed_ms,
            step_name=step.name,
            source="step",
        )
        if row_count is not None:
            log.debug("[%s] %s: %d row(s)", step.name, stmt.kind, row_count)

    return StepResult(True, f"OK ({len(statements)} statement(s))")


def run_source_step(conn: duckdb.DuckDBPyConnection, step: Step) -> StepResult:
    """Ingest a source step into a table named after the step."""
    try:
        ingest_source(conn, step.source, step.name)
    except Exception as e:
        return StepResult(False, f"Source ingestion failed: {e}")

    count = count_rows(conn, step.name) or 0
    if count == 0:
        log.warning("  %s: 0 rows (empty table)", step.name)
    else:
        log.info("  %s: %d rows", step.name, count)
    return StepResult(True, f"OK ({count} rows)", row_count=count)


def complete_step(conn: duckdb.DuckDBPyConnection, step: Step) -> list[str]:
    """Run full step validation and return error messages (empty = pass)."""
    errors = step.validate_outputs(conn)
    if errors:
        return errors
    if step.has_validation():
        errors = step.define_validation_views(conn)
        if errors:
            return errors
        errors = step.validate_validation_views(conn)
        if errors:
            return errors
    return []


def run_step(conn: duckdb.DuckDBPyConnection, step: Step) -> StepResult:
    """Execute one step and its post-execution flow."""
    log.info("[%s] Starting (%s)", step.name, step.step_type())
    start = time.time()

    if step.is_source():
        result = run_source_step(conn, step)
    else:
        result = run_sql_step(conn, step)

    if result.success:
        errors = complete_step(conn, step)
        if errors:
            result.success = False
            result.message = "\n".join(f"- {e}" for e in errors)

    if result.success:
        result.warning_count, result.warnings = step.validation_warnings(conn)
        for msg in result.warnings:
            log.warning("[%s] warn: %s", step.name, msg)
        n = materialize_step_outputs(conn, step)
        if n:
            log.debug("[%s] Materialized %d view(s)", step.name, n)
    else:
        log.warning("[%s] FAILED: %s", step.name, result.message)

    result.elapsed_s = time.time() - start
    return result


def _step_meta(step: Step, result: StepResult) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "step_type": step.step_type(),
        "depends_on": step.depends_on,
        "description": step.description,
        "elapsed_s": round(result.elapsed_s, 3),
        "validation": result.status,
        "warnings": result.warning_count,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
    }
    if step.output_columns:
        meta["output_columns"] = dict(step.output_columns)
    if result.row_count is not None:
        meta["row_count"] = result.row_count
    if not result.success:
        meta["error"] = result.message
    return meta


def execute_steps(
    conn: duckdb.DuckDBPyConnection, steps: list[Step]
) -> tuple[dict[str, StepResult], bool]:
    """Run steps in dependency order.

    A step whose dependency failed or was skipped is skipped as well.

    Returns:
        (results dict, all_success bool)
    """
    deps = resolve_deps(steps)
    results: dict[str, StepResult] = {}
    blocked: set[str] = set()

    for step in execution_order(steps):
        bad_deps = sorted(deps[step.name] & blocked)
        if bad_deps:
            result = StepResult(
                False,
                f"Skipped: blocked by failed dependency {', '.join(bad_deps)}",
                skipped=True,
            )
        else:
            result = run_step(conn, step)
        if not result.success:
            blocked.add(step.name)
        results[step.name] = result
        persist_step_meta(conn, step.name, _step_meta(step, result))

    skipped = sorted(n for n, r in results.items() if r.skipped)
    if skipped:
        log.warning("Skipped (blocked by failed deps): %s", ", ".join(skipped))

    return results, not blocked


# --- Pipeline ---


@dataclass
class Pipeline:
    """A run of the layoffs steps backed by a single DuckDB database.

    Args:
        db_path: Path for the output database (created fresh).
        steps: Step definitions forming a DAG.
        exports: Mapping of output_path -> fn(conn, path). Export functions
            run after all steps pass.
        config: Settings recorded in the run metadata.
    """

    db_path: Path | str
    steps: list[Step] = field(default_factory=list)
    exports: dict[str, ExportFn] = field(default_factory=dict)
    config: PipelineConfig = field(default_factory=PipelineConfig)

    def _validate_config(self) -> None:
        errors = validate_graph(self.steps)
        if errors:
            raise ValueError(
                "Graph validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
            )

    def _fresh_connection(self) -> duckdb.DuckDBPyConnection:
        db_path = Path(self.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        for stale in (db_path, db_path.with_name(db_path.name + ".wal")):
            if stale.exists():
                stale.unlink()
        return duckdb.connect(str(db_path))

    def run(self) -> PipelineResult:
        """Run every step, persist metadata and run exports.

        Exports run only if every step passed.
        """
        start_time = time.time()
        self._validate_config()

        layers = [[s.name for s in layer] for layer in resolve_dag(self.steps)]

        conn = self._fresh_connection()
        try:
            init_infra(conn)

            step_results, all_success = execute_steps(conn, self.steps)

            source_row_counts = {
                name: r.row_count
                for name, r in step_results.items()
                if r.success and r.row_count is not None
            }
            persist_pipeline_meta(
                conn,
                self.steps,
                config=self.config.to_meta(),
                source_row_counts=source_row_counts or None,
            )

            export_errors: dict[str, str] = {}
            if all_success and self.exports:
                log.info("--- Exports (%d) ---", len(self.exports))
                export_errors = run_exports(conn, self.exports)

            if self.exports:
                export_results: dict[str, dict[str, Any]] = {}
                for name in sorted(self.exports):
                    if name in export_errors:
                        export_results[name] = {
                            "ok": False,
                            "error": export_errors[name],
                        }
                    else:
                        export_results[name] = {"ok": all_success, "error": None}
                exports_meta = {"attempted": all_success, "results": export_results}
                upsert_pipeline_meta(
                    conn, [("exports", json.dumps(exports_meta, sort_keys=True))]
                )

            elapsed_s = time.time() - start_time

            status = "ALL PASSED" if all_success else "SOME FAILED"
            log.info("--- Pipeline complete: %s (%.1fs) ---", status, elapsed_s)
            for name, result in step_results.items():
                log.info("  %s: %s (%.2fs)", name, result.status, result.elapsed_s)

            return PipelineResult(
                success=all_success and not export_errors,
                step_results=step_results,
                elapsed_s=elapsed_s,
                layers=layers,
                export_errors=export_errors,
            )
        finally:
            conn.close()


def build_steps(config: PipelineConfig, source: Any = None) -> list[Step]:
    """Source step + cleaning chain + one step per report."""
    if source is None:
        source = config.source
    if source is None:
        raise ConfigError("No source configured (set [tool.layoffs] source)")
    return [
        source_step(resolve_source(source)),
        *cleaning_steps(config),
        *report_steps(config),
    ]


def build_pipeline(
    config: PipelineConfig,
    exports: dict[str, ExportFn] | None = None,
    source: Any = None,
) -> Pipeline:
    """Assemble the standard pipeline from *config*.

    *source* overrides ``config.source`` and may be any ingestible value.
    Without explicit *exports*, the default exports are written to
    ``config.export_dir`` when one is set.
    """
    if exports is None:
        exports = default_exports(config.export_dir) if config.export_dir else {}
    return Pipeline(
        db_path=config.db_path or DEFAULT_DB_PATH,
        steps=build_steps(config, source),
        exports=exports,
        config=config,
    )
