"""Step definition and dependency resolution for the layoffs pipeline.

A Step is one unit of work against the run database. It either ingests
data (``source``) or executes SQL (``sql``). Steps name the steps they
depend on; the pipeline runs them in dependency order.

Example:

    steps = [
        Step(name="layoffs", source="data/layoffs.csv"),
        Step(
            name="staging",
            depends_on=["layoffs"],
            sql="CREATE TABLE layoffs_staging AS SELECT ... FROM layoffs",
            outputs=["layoffs_staging"],
            validate={
                "not_empty": (
                    "SELECT CASE WHEN COUNT(*) = 0 THEN 'warn' ELSE 'pass' END "
                    "AS status, 'staging is empty' AS message "
                    "FROM layoffs_staging"
                ),
            },
        ),
    ]

    layers = resolve_dag(steps)
    # layers[0] = [layoffs]
    # layers[1] = [staging]

Validation queries become views named ``{step}__validation_{check}``
with columns ``status`` (pass|warn|fail), ``message`` and optionally
``evidence_view``. Any ``fail`` row fails the step.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

import duckdb

from .catalog import quote_ident, relation_exists
from .sql_utils import (
    ParsedStatement,
    SqlParseError,
    get_column_names,
    parse_statements,
)

_VALIDATION_VIEW_REQUIRED_COLS = ["status", "message"]
_VALIDATION_STATUS_ALLOWED = {"pass", "warn", "fail"}
MAX_INLINE_MESSAGES = 20  # Cap messages shown inline in validation/warning output

_STEP_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*$")


def validate_step_name(name: str) -> str | None:
    """Return an error message if *name* is not a valid step name."""
    if not _STEP_NAME_RE.match(name or ""):
        return (
            f"Invalid step name '{name}': must start with a lowercase letter "
            "and contain only lowercase letters, digits and underscores."
        )
    if "__" in name:
        return f"Invalid step name '{name}': must not contain '__'."
    return None


def validation_view_prefix(step_name: str) -> str:
    return f"{step_name}__validation"


def validation_view_name(step_name: str, check_name: str) -> str:
    return f"{validation_view_prefix(step_name)}_{check_name}"


@dataclass
class Step:
    """A single unit of work in the pipeline.

    Attributes:
        name: Unique identifier. Source steps ingest into a table of this name.
        depends_on: Names of steps that must succeed before this one runs.
        source: Ingestion source (file path, FileInput, data, or callable).
        sql: One or more SQL statements. Bare SELECTs are rejected.
        outputs: Tables/views that must exist after the step ran.
        output_columns: Optional schema check, relation -> required columns.
        validate: Mapping of check name -> SELECT returning status/message rows.
        description: Human-readable summary shown by the CLI.
    """

    name: str
    depends_on: list[str] = field(default_factory=list)
    source: Any = None
    sql: str = ""
    outputs: list[str] = field(default_factory=list)
    output_columns: dict[str, list[str]] = field(default_factory=dict)
    validate: dict[str, str] = field(default_factory=dict)
    description: str = ""

    def is_source(self) -> bool:
        return self.source is not None

    def step_type(self) -> str:
        return "source" if self.is_source() else "sql"

    def has_validation(self) -> bool:
        return bool(self.validate)

    def validation_view_names(self) -> list[str]:
        return [validation_view_name(self.name, k) for k in sorted(self.validate)]

    def sql_statements(self) -> list[ParsedStatement]:
        """Return parsed SQL statements. Raises SqlParseError on bad SQL."""
        return parse_statements(self.sql)

    def check_sql(self) -> list[str]:
        """Static checks on the step's SQL. Returns error messages."""
        if self.is_source():
            return []
        try:
            statements = self.sql_statements()
        except SqlParseError as e:
            return [str(e)]
        if not statements:
            return [f"Step '{self.name}' has no SQL statements."]
        selects = [s.sql for s in statements if s.is_select()]
        if selects:
            return [
                f"Step '{self.name}': steps only allow statements that change the "
                f"database (CREATE/ALTER/DROP/INSERT/UPDATE/DELETE); "
                f"got SELECT: {selects[0][:80]}"
            ]
        return []

    # ------------------------------------------------------------------
    # Output checks
    # ------------------------------------------------------------------

    def validate_outputs(self, conn: duckdb.DuckDBPyConnection) -> list[str]:
        """Check declared outputs exist and carry the required columns."""
        missing = [o for o in self.outputs if not relation_exists(conn, o)]
        if missing:
            return [f"Required output '{o}' was not created." for o in missing]

        for relation, required_cols in self.output_columns.items():
            if not relation_exists(conn, relation):
                return [f"Required output '{relation}' was not created."]
            actual_cols = get_column_names(conn, relation)
            missing_cols = [c for c in required_cols if c not in actual_cols]
            if missing_cols:
                return [
                    f"'{relation}' is missing required column(s): "
                    f"{', '.join(missing_cols)}. "
                    f"Actual columns: {', '.join(sorted(actual_cols))}"
                ]
        return []

    # ------------------------------------------------------------------
    # Validation views
    # ------------------------------------------------------------------

    def define_validation_views(self, conn: duckdb.DuckDBPyConnection) -> list[str]:
        """Create (or replace) one validation view per check.

        Returns error messages (empty = success).
        """
        for check_name, query in sorted(self.validate.items()):
            view_name = validation_view_name(self.name, check_name)
            q = query.rstrip().rstrip(";").strip()
            try:
                conn.execute(f"CREATE OR REPLACE VIEW {quote_ident(view_name)} AS\n{q}")
            except duckdb.Error as e:
                return [f"{view_name}: {e}"]
        return []

    def validate_validation_views(self, conn: duckdb.DuckDBPyConnection) -> list[str]:
        """Enforce validation views. Any fail row fails the step."""
        errors: list[str] = []
        for view_name in self.validation_view_names():
            view_errors, fatal = _check_one_validation_view(conn, view_name)
            if fatal and view_errors:
                return view_errors
            errors.extend(view_errors)
        return errors

    def validation_warnings(
        self, conn: duckdb.DuckDBPyConnection, limit: int | None = MAX_INLINE_MESSAGES
    ) -> tuple[int, list[str]]:
        """Return (total warn rows, warn messages capped at *limit*)."""
        total = 0
        messages: list[str] = []
        for view_name in self.validation_view_names():
            rows = _status_rows(conn, view_name, "warn")
            if rows is None:
                continue
            total += len(rows)
            for msg, evidence in rows:
                if limit is not None and len(messages) >= limit:
                    break
                suffix = f" [evidence: {evidence}]" if evidence else ""
                messages.append(f"{msg}{suffix}")
        return total, messages


def _status_rows(
    conn: duckdb.DuckDBPyConnection, view_name: str, status: str
) -> list[tuple[str, str | None]] | None:
    """Return (message, evidence_view) rows with the given status.

    Returns None if the view is missing or malformed.
    """
    cols = {c.lower() for c in get_column_names(conn, view_name)}
    if not all(c in cols for c in _VALIDATION_VIEW_REQUIRED_COLS):
        return None
    evidence = "evidence_view" if "evidence_view" in cols else "NULL"
    try:
        rows = conn.execute(
            f"SELECT message, {evidence} FROM {quote_ident(view_name)} "
            "WHERE lower(status) = ?",
            [status],
        ).fetchall()
    except duckdb.Error:
        return None
    return [(str(m), str(e) if e else None) for m, e in rows]


def _check_one_validation_view(
    conn: duckdb.DuckDBPyConnection, view_name: str
) -> tuple[list[str], bool]:
    """Validate a single validation view.

    Returns (errors, fatal).
    - fatal=True indicates a schema/query/contract problem that should stop immediately.
    """
    if not relation_exists(conn, view_name):
        return ([f"Validation view '{view_name}' does not exist."], True)

    cols = sorted(get_column_names(conn, view_name))
    actual = {c.lower() for c in cols}
    missing = [c for c in _VALIDATION_VIEW_REQUIRED_COLS if c not in actual]
    if missing:
        return (
            [
                f"Validation view '{view_name}' is missing required column(s): "
                f"{', '.join(missing)}. Actual columns: {', '.join(cols)}"
            ],
            True,
        )

    try:
        bad = conn.execute(
            f"SELECT DISTINCT lower(status) FROM {quote_ident(view_name)} "
            "WHERE status IS NOT NULL AND lower(status) NOT IN ('pass','warn','fail')"
        ).fetchall()
    except duckdb.Error as e:
        return ([f"Validation view query error for '{view_name}': {e}"], True)

    if bad:
        bad_vals = ", ".join(sorted({str(r[0]) for r in bad}))
        allowed = ", ".join(sorted(_VALIDATION_STATUS_ALLOWED))
        return (
            [
                f"Validation view '{view_name}' has invalid status value(s): "
                f"{bad_vals}. "
                f"Allowed: {allowed}"
            ],
            True,
        )

    rows = _status_rows(conn, view_name, "fail") or []
    if not rows:
        return ([], False)

    count = len(rows)
    evidence_views = sorted({e for _m, e in rows if e})
    header = f"Fail rows in '{view_name}' ({count})"
    if evidence_views:
        header += f" [evidence: {', '.join(evidence_views)}]"
    sample = [m for m, _e in rows[:MAX_INLINE_MESSAGES]]
    detail = "\n".join(f"  {m}" for m in sample)
    if count > MAX_INLINE_MESSAGES:
        detail += f"\n  ... and {count - MAX_INLINE_MESSAGES} more"
    return ([f"{header}:\n{detail}"], False)


# ---------------------------------------------------------------------------
# Dependency graph
# ---------------------------------------------------------------------------


def resolve_deps(steps: list[Step]) -> dict[str, set[str]]:
    """Return a mapping of step name -> names of the steps it depends on."""
    names = {s.name for s in steps}
    return {s.name: {d for d in s.depends_on if d in names} for s in steps}


def resolve_dag(steps: list[Step]) -> list[list[Step]]:
    """Topologically sort steps into layers.

    Layer 0 has no dependencies, layer 1 depends only on layer 0, etc.
    Steps within a layer are sorted by name.

    Raises ValueError if a cycle is detected.
    """
    step_by_name = {s.name: s for s in steps}
    deps = {name: set(d) for name, d in resolve_deps(steps).items()}

    layers: list[list[Step]] = []
    remaining = set(step_by_name)

    while remaining:
        layer_names = sorted(n for n in remaining if not deps[n])
        if not layer_names:
            raise ValueError(
                f"Dependency cycle detected among steps: {sorted(remaining)}"
            )
        layers.append([step_by_name[n] for n in layer_names])
        for name in layer_names:
            remaining.remove(name)
        for other in remaining:
            deps[other].difference_update(layer_names)

    return layers


def execution_order(steps: list[Step]) -> list[Step]:
    """Flatten resolve_dag() layers into a single run order."""
    return [s for layer in resolve_dag(steps) for s in layer]


def validate_graph(steps: list[Step]) -> list[str]:
    """Validate step names, dependencies and acyclicity.

    Returns list of error messages (empty = valid).
    """
    errors: list[str] = []
    seen: set[str] = set()
    for s in steps:
        name_err = validate_step_name(s.name)
        if name_err:
            errors.append(name_err)
        if s.name in seen:
            errors.append(f"Duplicate step name: '{s.name}'.")
        seen.add(s.name)
        if s.is_source() and s.sql:
            errors.append(f"Step '{s.name}' has both source and sql; only one allowed.")

    for s in steps:
        for dep in s.depends_on:
            if dep not in seen:
                errors.append(f"Step '{s.name}' depends on unknown step '{dep}'.")
            elif dep == s.name:
                errors.append(f"Step '{s.name}' depends on itself.")

    if not errors:
        try:
            resolve_dag(steps)
        except ValueError as e:
            errors.append(str(e))

    return errors
