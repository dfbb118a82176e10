import datetime

import polars as pl
import pytest

from layoffs.analysis import (
    REPORT_PREFIX,
    REPORTS,
    company_year_ranking_sql,
    get_report,
    report_steps,
    run_report,
    totals_by_sql,
)
from layoffs.cleaning import CLEAN_TABLE
from layoffs.config import PipelineConfig


def _rows(df: pl.DataFrame) -> list[tuple]:
    return df.rows()


@pytest.fixture
def ranking_conn(conn):
    """Hand-built clean table with tied yearly totals."""
    conn.execute(
        f"""
        CREATE TABLE {CLEAN_TABLE} AS
        SELECT * FROM (VALUES
            ('A', 100, DATE '2021-01-05'),
            ('B', 100, DATE '2021-02-05'),
            ('C', 50,  DATE '2021-03-05'),
            ('D', 10,  DATE '2021-04-05'),
            ('A', 5,   DATE '2022-01-05'),
            ('B', 7,   DATE '2022-01-06'),
            ('E', NULL, DATE '2022-01-07')
        ) AS t(company, total_laid_off, "date")
        """
    )
    return conn


class TestReports:
    def test_max_layoffs(self, cleaned):
        assert _rows(run_report(cleaned, "max_layoffs")) == [(200, 1.0)]

    def test_full_shutdowns(self, cleaned):
        df = run_report(cleaned, "full_shutdowns")
        assert df["company"].to_list() == ["Gamma"]

    def test_company_totals_largest_first(self, cleaned):
        df = run_report(cleaned, "company_totals")
        assert _rows(df) == [
            ("Epsilon", 200),
            ("Gamma", 200),
            ("Acme", 100),
            ("Beta", 80),
            ("Eta", 40),
            ("Zeta", 10),
        ]

    def test_date_range(self, cleaned):
        assert _rows(run_report(cleaned, "date_range")) == [
            (datetime.date(2022, 3, 1), datetime.date(2023, 2, 1))
        ]

    def test_top_industries(self, cleaned):
        df = run_report(cleaned, "top_industries")
        assert _rows(df) == [
            ("Crypto", 300),
            ("Food", 210),
            ("Retail", 80),
            (None, 40),
        ]

    def test_top_industries_respects_top_n(self, cleaned):
        df = run_report(cleaned, "top_industries", PipelineConfig(top_n=2))
        assert df["industry"].to_list() == ["Crypto", "Food"]

    def test_country_totals(self, cleaned):
        assert _rows(run_report(cleaned, "country_totals")) == [
            ("United States", 230),
            ("Canada", 200),
            ("United Kingdom", 200),
        ]

    def test_daily_layoffs_for_focus_country(self, cleaned):
        df = run_report(cleaned, "daily_layoffs")
        assert _rows(df) == [
            (datetime.date(2022, 3, 1), 100),
            (datetime.date(2022, 3, 15), 50),
            (datetime.date(2022, 4, 1), 30),
            (datetime.date(2022, 6, 1), 40),
            (None, 10),
        ]

    def test_daily_layoffs_other_country(self, cleaned):
        config = PipelineConfig(focus_country="Canada")
        df = run_report(cleaned, "daily_layoffs", config)
        assert _rows(df) == [(datetime.date(2023, 2, 1), 200)]

    def test_stage_totals(self, cleaned):
        df = run_report(cleaned, "stage_totals")
        assert df["stage"].to_list() == [
            "Seed",
            "Series C",
            "Series B",
            "Post-IPO",
            "Series A",
            "Unknown",
        ]

    def test_monthly_totals_exclude_missing_dates(self, cleaned):
        assert _rows(run_report(cleaned, "monthly_totals")) == [
            ("2022-03", 150),
            ("2022-04", 30),
            ("2022-06", 40),
            ("2023-01", 200),
            ("2023-02", 200),
        ]

    def test_monthly_rolling_sum(self, cleaned):
        df = run_report(cleaned, "monthly_rolling")
        assert df.columns == ["month", "total_layoffs", "rolling_total"]
        assert df["rolling_total"].to_list() == [150, 180, 220, 420, 620]

    def test_company_year_totals(self, cleaned):
        assert _rows(run_report(cleaned, "company_year_totals")) == [
            ("Acme", 2022, 100),
            ("Beta", 2022, 80),
            ("Epsilon", 2023, 200),
            ("Eta", 2022, 40),
            ("Gamma", 2023, 200),
        ]

    def test_company_year_ranking(self, cleaned):
        df = run_report(cleaned, "company_year_ranking")
        assert df.columns == ["company", "calendar_year", "total_layoffs", "ranking"]
        assert _rows(df) == [
            ("Acme", 2022, 100, 1),
            ("Beta", 2022, 80, 2),
            ("Eta", 2022, 40, 3),
            ("Epsilon", 2023, 200, 1),
            ("Gamma", 2023, 200, 1),
        ]

    def test_employees_before_layoffs(self, cleaned):
        df = run_report(cleaned, "employees_before_layoffs")
        assert _rows(df.select("company", "employees_before_layoffs")) == [
            ("Acme", 1000),
            ("Epsilon", 800),
            ("Eta", 200),
            ("Gamma", 200),
            ("Zeta", 200),
            ("Beta", 100),
        ]

    def test_unknown_report(self, cleaned):
        with pytest.raises(ValueError, match="Unknown report"):
            run_report(cleaned, "nope")


class TestRanking:
    def test_ties_share_rank_without_gaps(self, ranking_conn):
        df = ranking_conn.execute(company_year_ranking_sql(top_n=None)).pl()
        year_2021 = df.filter(pl.col("calendar_year") == 2021)
        assert _rows(year_2021.select("company", "ranking")) == [
            ("A", 1),
            ("B", 1),
            ("C", 2),
            ("D", 3),
        ]

    def test_top_n_keeps_ranks_not_rows(self, ranking_conn):
        df = ranking_conn.execute(company_year_ranking_sql(top_n=1)).pl()
        assert _rows(df.select("company", "calendar_year")) == [
            ("A", 2021),
            ("B", 2021),
            ("B", 2022),
        ]

    def test_null_totals_are_not_ranked(self, ranking_conn):
        df = ranking_conn.execute(company_year_ranking_sql(top_n=None)).pl()
        assert "E" not in df["company"].to_list()


class TestReportSteps:
    def test_one_step_per_report(self):
        steps = report_steps(PipelineConfig())
        assert [s.name for s in steps] == list(REPORTS)
        for s in steps:
            assert s.depends_on == ["publish"]
            assert s.outputs == [f"{REPORT_PREFIX}{s.name}"]
            assert s.check_sql() == []

    def test_report_sql_uses_config(self):
        sql = get_report("daily_layoffs").sql(PipelineConfig(focus_country="O'Land"))
        assert "'O''Land'" in sql

    def test_totals_by_limit(self):
        assert totals_by_sql("industry", limit=3).endswith("LIMIT 3")
        assert "LIMIT" not in totals_by_sql("industry")
