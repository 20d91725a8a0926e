"""
NYC Sales Metrics - Pipeline

Reads the nyc_sales table (CSV extract or database table),
Cleans it (fallible casts, required-field filtering),
Aggregates global and neighborhood-segment sale price statistics,
Enriches every sale with z-scores and per-unit ratios,
Formats the result set and writes the narrative report.

Usage:
    python -m src.pipeline --input data/raw/nyc_sales.csv --write-report
    python -m src.pipeline --source-table nyc_sales --output-table
"""

import argparse
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import pandas as pd

from config.settings import MIN_SEGMENT_COUNT, RAW_DATA_PATH, REPORTS_DIR, SOURCE_TABLE
from src.aggregation import Aggregates, compute_aggregates
from src.cleaning import CleaningResult, clean_sales, normalize_columns
from src.database import get_engine, load_metrics, read_source_table
from src.metrics import enrich_sales
from src.report import ReportArtifacts, build_output_frame, write_report
from src.validation.data_contracts import (
    ENRICHED_NULL_THRESHOLDS,
    DataContractResult,
    validate_data_contracts,
    validate_source,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    cleaning: CleaningResult
    aggregates: Aggregates
    enriched: pd.DataFrame
    output: pd.DataFrame
    stage_stats: List[dict]
    contract_results: List[tuple] = field(default_factory=list)
    report: Optional[ReportArtifacts] = None


# =============================================================================
# 1. EXTRACTION
# =============================================================================

def load_raw_data(path: Path) -> pd.DataFrame:
    """Load the raw nyc_sales extract from CSV, every column as text."""
    if not path.exists():
        raise FileNotFoundError(f"Raw data not found at {path}")

    logger.info(f"Loading raw data from {path}...")
    df = pd.read_csv(path, dtype=str, keep_default_na=False, na_values=[""], low_memory=False)
    logger.info(f"Loaded {len(df):,} records")

    return df


def _record_stage(stage_stats: list[dict], stage_name: str, df: pd.DataFrame) -> None:
    """Capture row counters for stage reporting."""
    stage_stats.append(
        {
            "stage": stage_name,
            "rows": len(df),
            "neighborhoods": int(df["neighborhood"].nunique()) if "neighborhood" in df.columns else None,
        }
    )


# =============================================================================
# MAIN PIPELINE
# =============================================================================

def run_pipeline(
    input_path: Optional[Path] = RAW_DATA_PATH,
    *,
    source_table: Optional[str] = None,
    database_url: Optional[str] = None,
    limit: Optional[int] = None,
    min_segment_count: int = MIN_SEGMENT_COUNT,
    write_output_table: bool = False,
    replace_output: bool = False,
    write_report_files: bool = False,
    report_dir: Path = REPORTS_DIR,
    with_charts: bool = True,
) -> PipelineResult:
    """Execute the full pipeline; any whole-run failure aborts before output is written."""
    logger.info("=" * 60)
    logger.info("NYC Sales Metrics Pipeline")
    logger.info("=" * 60)

    run_started_at = datetime.utcnow()
    stage_stats: list[dict] = []
    contract_results: list[tuple[str, DataContractResult]] = []
    engine = get_engine(database_url) if (source_table or write_output_table) else None

    try:
        # 1. Extract
        if source_table:
            raw = read_source_table(engine, source_table)
            input_label = f"table:{source_table}"
        else:
            raw = load_raw_data(Path(input_path))
            input_label = str(input_path)
        if limit is not None:
            raw = raw.head(limit).copy()
            logger.info(f"Applied deterministic row limit: {limit:,}")

        normalized = normalize_columns(raw)
        contract_results.append(("source", validate_source(normalized)))
        _record_stage(stage_stats, "extract_raw", normalized)

        # 2. Clean
        cleaning = clean_sales(raw)
        _record_stage(stage_stats, "cleaned", cleaning.frame)
        contract_results.append(("post-clean", validate_data_contracts(cleaning.frame)))
        logger.info("Data contracts (post-clean): PASS")

        # 3. Aggregate
        aggregates = compute_aggregates(cleaning.frame, min_count=min_segment_count)

        # 4. Enrich
        enriched = enrich_sales(cleaning.frame, aggregates.global_stats, aggregates.segment_stats)
        _record_stage(stage_stats, "enriched", enriched)
        contract_results.append(
            (
                "post-enrich",
                validate_data_contracts(enriched, null_thresholds=ENRICHED_NULL_THRESHOLDS, check_ratios=True),
            )
        )
        logger.info("Data contracts (post-enrich): PASS")

        # 5. Format
        output = build_output_frame(enriched)

        # 6. Load
        if write_output_table:
            load_metrics(output, engine, replace_existing=replace_output)

        result = PipelineResult(
            cleaning=cleaning,
            aggregates=aggregates,
            enriched=enriched,
            output=output,
            stage_stats=stage_stats,
            contract_results=contract_results,
        )

        # 7. Report
        if write_report_files:
            result.report = write_report(
                report_dir,
                enriched=enriched,
                output_frame=output,
                cleaning=cleaning,
                aggregates=aggregates,
                stage_stats=stage_stats,
                input_label=input_label,
                run_started_at=run_started_at,
                contract_results=contract_results,
                with_charts=with_charts,
            )

        logger.info("=" * 60)
        logger.info("Pipeline Completed Successfully")
        logger.info("=" * 60)
        logger.info(f"Final record count: {len(output):,} (dropped {cleaning.dropped_rows:,})")

        return result

    except Exception as e:
        logger.error(f"Pipeline Failed: {e}")
        raise
    finally:
        if engine is not None:
            engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the NYC sales metrics pipeline")
    parser.add_argument(
        "--input",
        type=Path,
        default=RAW_DATA_PATH,
        help=f"Input CSV path (default: {RAW_DATA_PATH})",
    )
    parser.add_argument(
        "--source-table",
        type=str,
        nargs="?",
        const=SOURCE_TABLE,
        default=None,
        help=f"Read from a database table instead of CSV (default table: {SOURCE_TABLE})",
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="SQLAlchemy URL (default: DATABASE_URL from environment)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Optional deterministic row limit (applied before cleaning)",
    )
    parser.add_argument(
        "--min-segment-count",
        type=int,
        default=MIN_SEGMENT_COUNT,
        help="Segments need strictly more sales than this to get their own statistics",
    )
    parser.add_argument(
        "--output-table",
        action="store_true",
        help="Write the formatted result set to the sale_metrics table",
    )
    parser.add_argument(
        "--replace-output",
        action="store_true",
        help="Clear the sale_metrics table before load",
    )
    parser.add_argument(
        "--write-report",
        action="store_true",
        help="Write the Markdown report, result CSV and charts",
    )
    parser.add_argument(
        "--report-dir",
        type=Path,
        default=REPORTS_DIR,
        help=f"Report output directory (default: {REPORTS_DIR})",
    )
    parser.add_argument(
        "--no-charts",
        action="store_true",
        help="Skip chart rendering",
    )
    args = parser.parse_args()

    run_pipeline(
        input_path=args.input,
        source_table=args.source_table,
        database_url=args.database_url,
        limit=args.limit,
        min_segment_count=args.min_segment_count,
        write_output_table=args.output_table,
        replace_output=args.replace_output,
        write_report_files=args.write_report,
        report_dir=args.report_dir,
        with_charts=not args.no_charts,
    )
