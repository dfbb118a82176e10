"""Cleaning steps for the layoffs dataset.

The raw ``layoffs`` table is never modified. Work happens on staging
copies, one step per stage:

    layoffs -> staging -> dedupe -> standardize -> backfill -> prune -> publish

``layoffs_staging`` holds a typed copy of the raw rows.
``layoffs_staging2`` adds the ``row_num`` helper used to drop duplicates
and is the table the remaining steps mutate. ``publish`` renames it to
``layoffs_clean`` and discards the first staging table.
"""

from __future__ import annotations

from typing import Any

from .catalog import quote_ident
from .config import PipelineConfig
from .ingest import LAYOFF_COLUMNS, RAW_TABLE
from .sql_utils import sql_literal
from .step import Step

STAGING_TABLE = "layoffs_staging"
DEDUP_TABLE = "layoffs_staging2"
CLEAN_TABLE = "layoffs_clean"
ROW_NUM = "row_num"

DUPLICATES_TABLE = "dedupe_duplicates"
UNPARSED_DATES_TABLE = "standardize_unparsed_dates"

TEXT_COLUMNS = ("company", "location", "industry", "date", "stage", "country")
INTEGER_COLUMNS = ("total_laid_off",)
DOUBLE_COLUMNS = ("percentage_laid_off", "funds_raised_millions")

# Text spellings of a missing value found in exported dumps.
NULL_MARKERS = ("NULL",)

# LIKE pattern -> canonical industry name.
INDUSTRY_CANONICAL: dict[str, str] = {"Crypto%": "Crypto"}

# Companies never get their industry from a different company.
BACKFILL_KEY = "company"


def _dedup_key() -> str:
    return ", ".join(quote_ident(c) for c in LAYOFF_COLUMNS)


def _text_expr(col: str) -> str:
    raw = f"CAST({quote_ident(col)} AS VARCHAR)"
    markers = ", ".join(sql_literal(m) for m in NULL_MARKERS)
    return f"CASE WHEN trim({raw}) IN ({markers}) THEN NULL ELSE {raw} END"


def _column_expr(col: str) -> str:
    text = _text_expr(col)
    if col in INTEGER_COLUMNS:
        return f"TRY_CAST(TRY_CAST(trim({text}) AS DOUBLE) AS INTEGER)"
    if col in DOUBLE_COLUMNS:
        return f"TRY_CAST(trim({text}) AS DOUBLE)"
    return text


def parse_date_expr(column: str, date_formats: tuple[str, ...]) -> str:
    """SQL expression parsing a text date column with the first matching format."""
    if not date_formats:
        raise ValueError("At least one date format is required")
    col = quote_ident(column)
    attempts = ", ".join(
        f"try_strptime({col}, {sql_literal(f)})" for f in date_formats
    )
    if len(date_formats) == 1:
        return f"CAST({attempts} AS DATE)"
    return f"CAST(COALESCE({attempts}) AS DATE)"


def _check(condition: str, status: str, message: str, relation: str) -> str:
    """Single-row validation query: *status* when *condition* holds, else pass."""
    return (
        f"SELECT CASE WHEN {condition} THEN '{status}' ELSE 'pass' END AS status, "
        f"{message} AS message FROM {relation}"
    )


# ---------------------------------------------------------------------------
# SQL builders
# ---------------------------------------------------------------------------


def staging_sql() -> str:
    select_list = ",\n    ".join(
        f"{_column_expr(c)} AS {quote_ident(c)}" for c in LAYOFF_COLUMNS
    )
    return (
        f"CREATE OR REPLACE TABLE {STAGING_TABLE} AS\n"
        f"SELECT\n    {select_list}\n"
        f"FROM {RAW_TABLE}\n"
        "ORDER BY _row_id;"
    )


def dedupe_sql() -> str:
    return f"""
CREATE OR REPLACE TABLE {DEDUP_TABLE} AS
SELECT
    *,
    ROW_NUMBER() OVER (PARTITION BY {_dedup_key()}) AS {ROW_NUM}
FROM {STAGING_TABLE};

CREATE OR REPLACE TABLE {DUPLICATES_TABLE} AS
SELECT * FROM {DEDUP_TABLE} WHERE {ROW_NUM} > 1;

DELETE FROM {DEDUP_TABLE} WHERE {ROW_NUM} > 1;
"""


def standardize_sql(date_formats: tuple[str, ...]) -> str:
    trims = ",\n    ".join(
        f"{quote_ident(c)} = trim({quote_ident(c)})"
        for c in TEXT_COLUMNS
        if c != "date"
    )
    canonical = "\n".join(
        f"UPDATE {DEDUP_TABLE} SET industry = {sql_literal(name)} "
        f"WHERE industry LIKE {sql_literal(pattern)} "
        f"AND industry <> {sql_literal(name)};"
        for pattern, name in INDUSTRY_CANONICAL.items()
    )
    parsed = parse_date_expr("date", date_formats)
    return f"""
UPDATE {DEDUP_TABLE} SET
    {trims},
    "date" = NULLIF(trim("date"), '');

{canonical}

UPDATE {DEDUP_TABLE} SET country = rtrim(country, '.') WHERE country LIKE '%.';

CREATE OR REPLACE TABLE {UNPARSED_DATES_TABLE} AS
SELECT company, "date" AS raw_date
FROM {DEDUP_TABLE}
WHERE "date" IS NOT NULL AND {parsed} IS NULL;

ALTER TABLE {DEDUP_TABLE} ALTER "date" TYPE DATE USING {parsed};
"""


def backfill_sql() -> str:
    key = quote_ident(BACKFILL_KEY)
    return f"""
UPDATE {DEDUP_TABLE} SET industry = NULL WHERE trim(industry) = '';

UPDATE {DEDUP_TABLE}
SET industry = known.industry
FROM (
    SELECT {key}, min(industry) AS industry
    FROM {DEDUP_TABLE}
    WHERE industry IS NOT NULL
    GROUP BY {key}
) AS known
WHERE {DEDUP_TABLE}.{key} = known.{key}
  AND {DEDUP_TABLE}.industry IS NULL;
"""


def prune_sql() -> str:
    return f"""
DELETE FROM {DEDUP_TABLE}
WHERE total_laid_off IS NULL AND percentage_laid_off IS NULL;

ALTER TABLE {DEDUP_TABLE} DROP COLUMN {ROW_NUM};
"""


def publish_sql(keep_staging: bool = False) -> str:
    statements = [
        f"DROP TABLE IF EXISTS {CLEAN_TABLE};",
        f"ALTER TABLE {DEDUP_TABLE} RENAME TO {CLEAN_TABLE};",
    ]
    if not keep_staging:
        statements.append(f"DROP TABLE IF EXISTS {STAGING_TABLE};")
    return "\n".join(statements)


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def source_step(source: Any) -> Step:
    return Step(
        name=RAW_TABLE,
        source=source,
        outputs=[RAW_TABLE],
        output_columns={RAW_TABLE: list(LAYOFF_COLUMNS)},
        validate={
            "has_rows": _check(
                "COUNT(*) = 0", "fail", "'raw dataset has no rows'", RAW_TABLE
            ),
        },
        description="Ingest the raw layoffs dataset",
    )


def cleaning_steps(config: PipelineConfig) -> list[Step]:
    """Return the cleaning chain from staging copy to ``layoffs_clean``."""
    dup_groups = (
        f"(SELECT 1 FROM {DEDUP_TABLE} GROUP BY {_dedup_key()} HAVING COUNT(*) > 1)"
    )
    return [
        Step(
            name="staging",
            depends_on=[RAW_TABLE],
            sql=staging_sql(),
            outputs=[STAGING_TABLE],
            output_columns={STAGING_TABLE: list(LAYOFF_COLUMNS)},
            validate={
                "row_count": (
                    "SELECT CASE WHEN s.n <> r.n THEN 'fail' ELSE 'pass' END "
                    "AS status, "
                    "concat('staging has ', s.n, ' row(s), raw has ', r.n) AS message "
                    f"FROM (SELECT COUNT(*) AS n FROM {STAGING_TABLE}) s, "
                    f"(SELECT COUNT(*) AS n FROM {RAW_TABLE}) r"
                ),
            },
            description="Copy raw rows into a typed staging table",
        ),
        Step(
            name="dedupe",
            depends_on=["staging"],
            sql=dedupe_sql(),
            outputs=[DEDUP_TABLE, DUPLICATES_TABLE],
            output_columns={DEDUP_TABLE: [*LAYOFF_COLUMNS, ROW_NUM]},
            validate={
                "no_duplicates": _check(
                    "COUNT(*) > 0",
                    "fail",
                    "concat(COUNT(*), ' duplicate group(s) remain')",
                    dup_groups,
                ),
            },
            description="Number rows per deduplication key and delete repeats",
        ),
        Step(
            name="standardize",
            depends_on=["dedupe"],
            sql=standardize_sql(config.date_formats),
            outputs=[DEDUP_TABLE, UNPARSED_DATES_TABLE],
            validate={
                "trimmed_company": _check(
                    "COUNT(*) > 0",
                    "fail",
                    "concat(COUNT(*), ' company name(s) with surrounding whitespace')",
                    f"{DEDUP_TABLE} WHERE company <> trim(company)",
                ),
                "date_type": (
                    "SELECT CASE WHEN data_type <> 'DATE' THEN 'fail' ELSE 'pass' END "
                    "AS status, concat('date column type is ', data_type) AS message "
                    "FROM information_schema.columns "
                    f"WHERE table_name = '{DEDUP_TABLE}' AND column_name = 'date'"
                ),
                "unparsed_dates": (
                    "SELECT CASE WHEN COUNT(*) > 0 THEN 'warn' ELSE 'pass' END "
                    "AS status, "
                    "concat(COUNT(*), ' date value(s) matched no known format') "
                    f"AS message, '{UNPARSED_DATES_TABLE}' AS evidence_view "
                    f"FROM {UNPARSED_DATES_TABLE}"
                ),
            },
            description="Trim text, canonicalize industry/country, type the date",
        ),
        Step(
            name="backfill",
            depends_on=["standardize"],
            sql=backfill_sql(),
            outputs=[DEDUP_TABLE],
            validate={
                "missing_industry": (
                    "SELECT 'warn' AS status, "
                    "concat('no industry known for company ', "
                    "coalesce(company, '(null)')) AS message "
                    f"FROM {DEDUP_TABLE} WHERE industry IS NULL "
                    "GROUP BY company"
                ),
            },
            description="Blank industries to NULL, fill from the same company",
        ),
        Step(
            name="prune",
            depends_on=["backfill"],
            sql=prune_sql(),
            outputs=[DEDUP_TABLE],
            validate={
                "has_metric": _check(
                    "COUNT(*) > 0",
                    "fail",
                    "concat(COUNT(*), ' row(s) without any layoff figure')",
                    f"{DEDUP_TABLE} WHERE total_laid_off IS NULL "
                    "AND percentage_laid_off IS NULL",
                ),
                "helper_dropped": _check(
                    "COUNT(*) > 0",
                    "fail",
                    f"'{ROW_NUM} column still present'",
                    "information_schema.columns "
                    f"WHERE table_name = '{DEDUP_TABLE}' AND column_name = '{ROW_NUM}'",
                ),
            },
            description="Delete rows without a layoff figure, drop the helper column",
        ),
        Step(
            name="publish",
            depends_on=["prune"],
            sql=publish_sql(config.keep_staging),
            outputs=[CLEAN_TABLE],
            output_columns={CLEAN_TABLE: list(LAYOFF_COLUMNS)},
            validate={
                "not_empty": _check(
                    "COUNT(*) = 0",
                    "warn",
                    f"concat(COUNT(*), ' row(s) in {CLEAN_TABLE}')",
                    CLEAN_TABLE,
                ),
            },
            description=f"Publish {CLEAN_TABLE} and discard staging",
        ),
    ]
