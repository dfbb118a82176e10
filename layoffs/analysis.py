"""Exploratory reports over ``layoffs_clean``.

Each report is a plain SELECT built from the pipeline config. The
pipeline materializes every report as an ``eda_<name>`` table; the same
SQL can be run ad hoc with :func:`run_report`, which returns a Polars
DataFrame.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import duckdb
import polars as pl

from .catalog import quote_ident
from .cleaning import CLEAN_TABLE
from .config import PipelineConfig
from .sql_utils import sql_literal
from .step import Step

REPORT_PREFIX = "eda_"
MONTH_FORMAT = "%Y-%m"


def _total(expr: str = "total_laid_off") -> str:
    # SUM over INTEGER yields HUGEINT; keep report columns BIGINT
    return f"CAST(SUM({expr}) AS BIGINT)"


def report_view_name(name: str) -> str:
    return f"{REPORT_PREFIX}{name}"


# ---------------------------------------------------------------------------
# SQL builders
# ---------------------------------------------------------------------------


def max_layoffs_sql() -> str:
    return (
        "SELECT MAX(total_laid_off) AS max_total_laid_off, "
        "MAX(percentage_laid_off) AS max_percentage_laid_off "
        f"FROM {CLEAN_TABLE}"
    )


def full_shutdowns_sql() -> str:
    """Companies that laid off 100 percent of their workforce."""
    return (
        f"SELECT * FROM {CLEAN_TABLE} WHERE percentage_laid_off = 1 "
        "ORDER BY total_laid_off DESC NULLS LAST, company, \"date\""
    )


def totals_by_sql(column: str, limit: int | None = None) -> str:
    """Total layoffs per value of *column*, largest first."""
    col = quote_ident(column)
    sql = (
        f"SELECT {col}, {_total()} AS total_layoffs "
        f"FROM {CLEAN_TABLE} "
        f"GROUP BY {col} "
        f"ORDER BY total_layoffs DESC NULLS LAST, {col} NULLS LAST"
    )
    if limit is not None:
        sql += f" LIMIT {int(limit)}"
    return sql


def date_range_sql() -> str:
    return (
        'SELECT MIN("date") AS first_date, MAX("date") AS last_date '
        f"FROM {CLEAN_TABLE}"
    )


def daily_layoffs_sql(country: str) -> str:
    return (
        f'SELECT "date", {_total()} AS layoffs_per_day '
        f"FROM {CLEAN_TABLE} "
        f"WHERE country = {sql_literal(country)} "
        'GROUP BY "date" '
        'ORDER BY "date" NULLS LAST'
    )


def _monthly_cte() -> str:
    return (
        f"SELECT strftime(\"date\", '{MONTH_FORMAT}') AS month, "
        f"{_total()} AS total_layoffs "
        f"FROM {CLEAN_TABLE} "
        'WHERE "date" IS NOT NULL AND total_laid_off IS NOT NULL '
        "GROUP BY month"
    )


def monthly_totals_sql() -> str:
    return f"SELECT * FROM ({_monthly_cte()}) ORDER BY month"


def monthly_rolling_sql() -> str:
    """Monthly totals with a running sum in month order."""
    return f"""
WITH monthly AS (
    {_monthly_cte()}
)
SELECT
    month,
    total_layoffs,
    CAST(SUM(total_layoffs) OVER (ORDER BY month) AS BIGINT) AS rolling_total
FROM monthly
ORDER BY month
""".strip()


def _company_year_cte() -> str:
    return (
        'SELECT company, year("date") AS calendar_year, '
        f"{_total()} AS total_layoffs "
        f"FROM {CLEAN_TABLE} "
        'WHERE "date" IS NOT NULL '
        "GROUP BY company, calendar_year"
    )


def company_year_totals_sql() -> str:
    return f"SELECT * FROM ({_company_year_cte()}) ORDER BY company, calendar_year"


def company_year_ranking_sql(top_n: int | None = None) -> str:
    """Dense-rank companies by total layoffs within each calendar year.

    Tied companies share a rank and no rank is skipped. With *top_n*,
    only ranks up to and including *top_n* are kept. Report runs always
    pass the positive ``PipelineConfig.top_n``; None is for direct callers.
    """
    where = f"WHERE ranking <= {int(top_n)}" if top_n is not None else ""
    return f"""
WITH company_year AS (
    {_company_year_cte()}
),
company_year_rank AS (
    SELECT
        *,
        DENSE_RANK() OVER (
            PARTITION BY calendar_year ORDER BY total_layoffs DESC
        ) AS ranking
    FROM company_year
    WHERE total_layoffs IS NOT NULL
)
SELECT *
FROM company_year_rank
{where}
ORDER BY calendar_year, ranking, company
""".strip()


def employees_before_layoffs_sql() -> str:
    """Estimated headcount before the layoff: total / percentage."""
    return (
        "SELECT company, industry, total_laid_off, percentage_laid_off, "
        "CAST(ROUND(total_laid_off / percentage_laid_off, 0) AS BIGINT) "
        "AS employees_before_layoffs "
        f"FROM {CLEAN_TABLE} "
        "WHERE total_laid_off IS NOT NULL "
        "AND percentage_laid_off IS NOT NULL AND percentage_laid_off > 0 "
        "ORDER BY employees_before_layoffs DESC, company"
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Report:
    name: str
    description: str
    build: Callable[[PipelineConfig], str]

    def sql(self, config: PipelineConfig) -> str:
        return self.build(config)


REPORTS: dict[str, Report] = {
    r.name: r
    for r in [
        Report(
            "max_layoffs",
            "Largest single layoff and percentage",
            lambda c: max_layoffs_sql(),
        ),
        Report(
            "full_shutdowns",
            "Companies that laid off 100% of staff",
            lambda c: full_shutdowns_sql(),
        ),
        Report(
            "company_totals",
            "Total layoffs per company",
            lambda c: totals_by_sql("company"),
        ),
        Report(
            "date_range",
            "First and last layoff date",
            lambda c: date_range_sql(),
        ),
        Report(
            "top_industries",
            "Industries with the most layoffs",
            lambda c: totals_by_sql("industry", limit=c.top_n),
        ),
        Report(
            "country_totals",
            "Total layoffs per country",
            lambda c: totals_by_sql("country"),
        ),
        Report(
            "daily_layoffs",
            "Layoffs per day in the focus country",
            lambda c: daily_layoffs_sql(c.focus_country),
        ),
        Report(
            "stage_totals",
            "Total layoffs per funding stage",
            lambda c: totals_by_sql("stage"),
        ),
        Report(
            "monthly_totals",
            "Layoffs per month",
            lambda c: monthly_totals_sql(),
        ),
        Report(
            "monthly_rolling",
            "Monthly layoffs with running total",
            lambda c: monthly_rolling_sql(),
        ),
        Report(
            "company_year_totals",
            "Layoffs per company per year",
            lambda c: company_year_totals_sql(),
        ),
        Report(
            "company_year_ranking",
            "Top companies by layoffs each year",
            lambda c: company_year_ranking_sql(c.top_n),
        ),
        Report(
            "employees_before_layoffs",
            "Estimated headcount before layoffs",
            lambda c: employees_before_layoffs_sql(),
        ),
    ]
}


def get_report(name: str) -> Report:
    try:
        return REPORTS[name]
    except KeyError:
        raise ValueError(
            f"Unknown report '{name}'. Available: {', '.join(REPORTS)}"
        ) from None


def run_report(
    conn: duckdb.DuckDBPyConnection,
    name: str,
    config: PipelineConfig | None = None,
) -> pl.DataFrame:
    """Run a report against ``layoffs_clean`` and return it as a DataFrame."""
    report = get_report(name)
    return conn.execute(report.sql(config or PipelineConfig())).pl()


def report_steps(config: PipelineConfig, depends_on: str = "publish") -> list[Step]:
    """One step per report, each creating an ``eda_<name>`` view."""
    steps: list[Step] = []
    for report in REPORTS.values():
        view = report_view_name(report.name)
        steps.append(
            Step(
                name=report.name,
                depends_on=[depends_on],
                sql=f"CREATE OR REPLACE VIEW {view} AS\n{report.sql(config)};",
                outputs=[view],
                description=report.description,
            )
        )
    return steps
