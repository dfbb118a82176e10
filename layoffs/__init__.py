"""Layoffs ETL: clean the layoffs dataset and build exploratory reports."""

from .config import ConfigError, PipelineConfig, load_config
from .step import Step, resolve_dag, resolve_deps, validate_graph
from .pipeline import Pipeline, PipelineResult, StepResult, build_pipeline
from .ingest import FileInput, ingest_source, ingest_table, coerce_to_dataframe
from .cleaning import CLEAN_TABLE, cleaning_steps
from .analysis import REPORTS, run_report
from .exports import export_clean_csv, export_clean_parquet, export_report_workbook

__all__ = [
    # Configuration
    "ConfigError",
    "PipelineConfig",
    "load_config",
    # Step DAG
    "Step",
    "resolve_dag",
    "resolve_deps",
    "validate_graph",
    # Pipeline orchestrator
    "Pipeline",
    "PipelineResult",
    "StepResult",
    "build_pipeline",
    # Ingestion
    "FileInput",
    "ingest_source",
    "ingest_table",
    "coerce_to_dataframe",
    # Cleaning
    "CLEAN_TABLE",
    "cleaning_steps",
    # Reports
    "REPORTS",
    "run_report",
    # Exports
    "export_clean_csv",
    "export_clean_parquet",
    "export_report_workbook",
]
