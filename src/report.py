"""
Formatting, ordering and narrative reporting for enriched sales.

Nothing here recomputes the pipeline statistics: formatting and ordering work
on what the metric stage produced, and the summaries are read-only reductions
over the enriched frame.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from config.settings import BOROUGH_CODES, OUTLIER_ZSCORE, TOP_N_NEIGHBORHOODS
from src.aggregation import Aggregates
from src.cleaning import CleaningResult
from src.metrics import REFERENCE_GLOBAL, REFERENCE_SEGMENT, segment_key_frame
from src.validation.data_contracts import DataContractResult


logger = logging.getLogger(__name__)

OUTPUT_COLUMNS = [
    "NEIGHBORHOOD",
    "ADDRESS",
    "BOROUGH",
    "BLOCK",
    "LOT",
    "ZIP_CODE",
    "BUILDING_CLASS_CATEGORY",
    "formatted_sale_price",
    "raw_sale_price",
    "sale_price_zscore",
    "sale_price_zscore_neighborhood",
    "square_ft_per_unit",
    "price_per_unit",
]

SORT_KEYS = ["neighborhood", "building_class_category", "address"]

CHART_COLOR = "#3b82f6"


# =============================================================================
# 1. VALUE FORMATTING
# =============================================================================

def _absent(value) -> bool:
    return value is None or value is pd.NA or (isinstance(value, float) and math.isnan(value))


def format_currency(value: Optional[float]) -> Optional[str]:
    """$1,234,567.89"""
    if _absent(value):
        return None
    value = float(value)
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


def format_zscore(value: Optional[float]) -> Optional[str]:
    if _absent(value):
        return None
    return f"{float(value):.4f}"


def format_square_feet(value: Optional[float]) -> Optional[str]:
    """1,234.56"""
    if _absent(value):
        return None
    return f"{float(value):,.2f}"


# =============================================================================
# 2. ORDERING + OUTPUT ROW SET
# =============================================================================

def order_for_presentation(enriched: pd.DataFrame) -> pd.DataFrame:
    """Stable sort: neighborhood, building class category, address."""
    return enriched.sort_values(SORT_KEYS, kind="mergesort", na_position="last").reset_index(drop=True)


def build_output_frame(enriched: pd.DataFrame) -> pd.DataFrame:
    """Presentation row set with the downstream column names and formats."""
    ordered = order_for_presentation(enriched)
    out = pd.DataFrame(
        {
            "NEIGHBORHOOD": ordered["neighborhood"],
            "ADDRESS": ordered["address"],
            "BOROUGH": ordered["borough"],
            "BLOCK": ordered["block"],
            "LOT": ordered["lot"],
            "ZIP_CODE": ordered["zip_code"],
            "BUILDING_CLASS_CATEGORY": ordered["building_class_category"],
            "formatted_sale_price": ordered["sale_price"].map(format_currency),
            "raw_sale_price": ordered["sale_price"],
            "sale_price_zscore": ordered["sale_price_zscore"].map(format_zscore),
            "sale_price_zscore_neighborhood": ordered["sale_price_zscore_neighborhood"].map(format_zscore),
            "square_ft_per_unit": ordered["square_ft_per_unit"].map(format_square_feet),
            "price_per_unit": ordered["price_per_unit"].map(format_currency),
        },
        columns=OUTPUT_COLUMNS,
    )
    return out


# =============================================================================
# 3. REPORT SUMMARIES
# =============================================================================

def _none_if_nan(value) -> Optional[float]:
    return None if _absent(value) else float(value)


def top_neighborhoods_by_count(enriched: pd.DataFrame, n: int = TOP_N_NEIGHBORHOODS) -> pd.DataFrame:
    """Neighborhoods with the most transactions; ties broken alphabetically."""
    if enriched.empty:
        return pd.DataFrame(columns=["neighborhood", "transactions", "median_sale_price"])
    summary = (
        enriched.groupby("neighborhood")["sale_price"]
        .agg(transactions="count", median_sale_price="median")
        .reset_index()
        .sort_values(["transactions", "neighborhood"], ascending=[False, True])
    )
    return summary.head(n).reset_index(drop=True)


def log_price_distribution(enriched: pd.DataFrame) -> Dict[str, Optional[float]]:
    """Shape of ln(sale_price): location, spread, skewness, excess kurtosis."""
    log_price = np.log(enriched["sale_price"].astype(float))
    return {
        "n": int(log_price.count()),
        "mean": _none_if_nan(log_price.mean()),
        "median": _none_if_nan(log_price.median()),
        "stddev": _none_if_nan(log_price.std()),
        "skewness": _none_if_nan(log_price.skew()),
        "kurtosis": _none_if_nan(log_price.kurt()),
    }


def borough_summary(enriched: pd.DataFrame) -> pd.DataFrame:
    columns = ["borough", "borough_name", "transactions", "median_sale_price", "median_price_per_unit"]
    frame = enriched[enriched["borough"].notna()]
    if frame.empty:
        return pd.DataFrame(columns=columns)
    summary = (
        frame.groupby("borough")
        .agg(
            transactions=("sale_price", "count"),
            median_sale_price=("sale_price", "median"),
            median_price_per_unit=("price_per_unit", "median"),
        )
        .reset_index()
    )
    summary["borough_name"] = summary["borough"].map(lambda b: BOROUGH_CODES.get(int(b), "Unknown"))
    return summary[columns]


def zscore_outliers(enriched: pd.DataFrame, threshold: float = OUTLIER_ZSCORE) -> pd.DataFrame:
    """Sales whose segment z-score magnitude exceeds `threshold`, largest first."""
    z = enriched["sale_price_zscore_neighborhood"]
    flagged = enriched[z.abs() > threshold]
    order = flagged["sale_price_zscore_neighborhood"].abs().sort_values(ascending=False, kind="mergesort").index
    return flagged.loc[order].reset_index(drop=True)


def largest_segments(aggregates: Aggregates, n: int = TOP_N_NEIGHBORHOODS) -> pd.DataFrame:
    """Materialized segments with the most sales, mean/stddev formatted as currency."""
    segments = segment_key_frame(aggregates.segment_stats)
    if segments.empty:
        return segments
    segments = (
        segments.sort_values(["count", "neighborhood", "building_class_category"], ascending=[False, True, True])
        .head(n)
        .reset_index(drop=True)
    )
    segments["mean"] = segments["mean"].map(format_currency)
    segments["stddev"] = segments["stddev"].map(format_currency)
    return segments


def segment_coverage(enriched: pd.DataFrame, aggregates: Aggregates) -> Dict[str, int]:
    reference = enriched["zscore_reference"]
    return {
        "segments_total": aggregates.segment_count,
        "segments_materialized": len(aggregates.segment_stats),
        "rows_segment_reference": int((reference == REFERENCE_SEGMENT).sum()),
        "rows_global_fallback": int((reference == REFERENCE_GLOBAL).sum()),
        "rows_without_zscore": int(enriched["sale_price_zscore_neighborhood"].isna().sum()),
    }


# =============================================================================
# 4. CHARTS
# =============================================================================

def render_charts(enriched: pd.DataFrame, output_dir: Path, top_n: int = TOP_N_NEIGHBORHOODS) -> Dict[str, Path]:
    """Write static PNG charts; charts with no data are skipped."""
    output_dir.mkdir(parents=True, exist_ok=True)
    charts: Dict[str, Path] = {}

    if not enriched.empty:
        path = output_dir / "log_sale_price_hist.png"
        fig, ax = plt.subplots(figsize=(8, 5))
        ax.hist(np.log(enriched["sale_price"].astype(float)), bins=50, color=CHART_COLOR)
        ax.set_title("Distribution of ln(sale price)")
        ax.set_xlabel("ln(sale price)")
        ax.set_ylabel("Sales")
        fig.tight_layout()
        fig.savefig(path, dpi=120)
        plt.close(fig)
        charts["log_sale_price"] = path

        top = top_neighborhoods_by_count(enriched, n=top_n)
        path = output_dir / "top_neighborhoods.png"
        fig, ax = plt.subplots(figsize=(8, 5))
        ax.barh(top["neighborhood"][::-1], top["transactions"][::-1], color=CHART_COLOR)
        ax.set_title(f"Top {len(top)} neighborhoods by transaction count")
        ax.set_xlabel("Transactions")
        fig.tight_layout()
        fig.savefig(path, dpi=120)
        plt.close(fig)
        charts["top_neighborhoods"] = path

    z = enriched["sale_price_zscore_neighborhood"].dropna()
    if not z.empty:
        path = output_dir / "segment_zscore_hist.png"
        fig, ax = plt.subplots(figsize=(8, 5))
        ax.hist(z.clip(-5, 5), bins=50, color=CHART_COLOR)
        ax.set_title("Neighborhood-segment sale price z-scores (clipped to ±5)")
        ax.set_xlabel("z-score")
        ax.set_ylabel("Sales")
        fig.tight_layout()
        fig.savefig(path, dpi=120)
        plt.close(fig)
        charts["segment_zscore"] = path

    for name, path in charts.items():
        logger.info(f"Wrote chart {name}: {path}")
    return charts


# =============================================================================
# 5. NARRATIVE REPORT
# =============================================================================

@dataclass
class ReportArtifacts:
    markdown_path: Path
    results_csv_path: Path
    stages_csv_path: Path
    charts: Dict[str, Path] = field(default_factory=dict)


def _fmt_optional(value: Optional[float], fmt: str = ",.4f") -> str:
    return "n/a" if value is None else format(value, fmt)


def _text_block(df: pd.DataFrame, empty: str) -> List[str]:
    if df.empty:
        return [f"_{empty}_"]
    return ["```text", df.to_string(index=False), "```"]


def write_report(
    output_dir: Path,
    *,
    enriched: pd.DataFrame,
    output_frame: pd.DataFrame,
    cleaning: CleaningResult,
    aggregates: Aggregates,
    stage_stats: List[dict],
    input_label: str,
    run_started_at: datetime,
    contract_results: Optional[List[Tuple[str, DataContractResult]]] = None,
    with_charts: bool = True,
    outlier_threshold: float = OUTLIER_ZSCORE,
    top_n: int = TOP_N_NEIGHBORHOODS,
) -> ReportArtifacts:
    """
    Write run artifacts:
    - <output_dir>/sales_metrics_YYYYMMDD.md (narrative)
    - <output_dir>/sales_metrics_YYYYMMDD.csv (formatted row set)
    - <output_dir>/sales_metrics_stages_YYYYMMDD.csv (stage row counts)
    - <output_dir>/charts/*.png
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    run_stamp = run_started_at.strftime("%Y%m%d")
    markdown_path = output_dir / f"sales_metrics_{run_stamp}.md"
    results_csv_path = output_dir / f"sales_metrics_{run_stamp}.csv"
    stages_csv_path = output_dir / f"sales_metrics_stages_{run_stamp}.csv"

    output_frame.to_csv(results_csv_path, index=False)
    stage_df = pd.DataFrame(stage_stats)
    stage_df.to_csv(stages_csv_path, index=False)

    charts = render_charts(enriched, output_dir / "charts", top_n=top_n) if with_charts else {}

    g = aggregates.global_stats
    coverage = segment_coverage(enriched, aggregates)
    distribution = log_price_distribution(enriched)
    top = top_neighborhoods_by_count(enriched, n=top_n)
    boroughs = borough_summary(enriched)
    outliers = zscore_outliers(enriched, threshold=outlier_threshold)
    segments = largest_segments(aggregates, n=top_n)

    contract_lines = []
    for label, result in contract_results or []:
        contract_lines.append(f"- **{label}**: {'PASS' if result.passed else 'FAIL'}")
        for violation in result.violations:
            contract_lines.append(
                f"  - [{violation.check}] {violation.message} (failed_rows={violation.failed_rows})"
            )

    md = [
        f"# NYC Sales Metrics Report - {run_stamp}",
        "",
        "## Run Metadata",
        f"- Started (UTC): {run_started_at.isoformat()}",
        f"- Input: `{input_label}`",
        "- Standard deviation: sample (n - 1)",
        "",
        "## Stage Summary",
        *_text_block(stage_df, "No stage stats captured."),
        "",
        "## Data Contract Results",
        *(contract_lines or ["_No contract results captured._"]),
        "",
        "## Cleaning",
        f"- Raw rows: {cleaning.raw_rows:,}",
        f"- Kept rows: {cleaning.cleaned_rows:,}",
        f"- Dropped rows: {cleaning.dropped_rows:,}",
    ]
    for reason, count in cleaning.drop_reasons.items():
        md.append(f"  - {reason}: {count:,}")

    md.extend(
        [
            "",
            "## Global Sale Price",
            f"- Sales: {g.count:,}",
            f"- Mean: {format_currency(g.mean) or 'n/a'}",
            f"- Standard deviation: {format_currency(g.stddev) or 'n/a'}",
            "",
            "## Segment Coverage",
            f"- Segments (neighborhood x building class category): {coverage['segments_total']:,}",
            f"- Segments with more than {aggregates.min_count} sales: {coverage['segments_materialized']:,}",
            f"- Sales scored against their segment: {coverage['rows_segment_reference']:,}",
            f"- Sales scored against the global fallback: {coverage['rows_global_fallback']:,}",
            f"- Sales without a segment z-score: {coverage['rows_without_zscore']:,}",
            "",
            f"### Largest Segments (top {top_n})",
            *_text_block(segments, "No segment has enough sales for its own statistics."),
            "",
            f"## Top {top_n} Neighborhoods by Transactions",
            *_text_block(top, "No sales."),
            "",
            "## Distribution of ln(sale price)",
            f"- n: {distribution['n']:,}",
            f"- Mean: {_fmt_optional(distribution['mean'])}",
            f"- Median: {_fmt_optional(distribution['median'])}",
            f"- Std dev: {_fmt_optional(distribution['stddev'])}",
            f"- Skewness: {_fmt_optional(distribution['skewness'])}",
            f"- Excess kurtosis: {_fmt_optional(distribution['kurtosis'])}",
            "",
            "## Boroughs",
            *_text_block(boroughs, "No borough codes available."),
            "",
            f"## Outliers (|segment z| > {outlier_threshold:g})",
            f"- Count: {len(outliers):,}",
        ]
    )
    if not outliers.empty:
        top_outliers = outliers.head(20)
        preview = pd.DataFrame(
            {
                "NEIGHBORHOOD": top_outliers["neighborhood"],
                "ADDRESS": top_outliers["address"],
                "formatted_sale_price": top_outliers["sale_price"].map(format_currency),
                "sale_price_zscore_neighborhood": top_outliers["sale_price_zscore_neighborhood"].map(format_zscore),
            }
        )
        md.extend(_text_block(preview, ""))

    md.extend(["", "## Charts"])
    if charts:
        for name, path in charts.items():
            md.append(f"![{name}]({path.relative_to(output_dir).as_posix()})")
    else:
        md.append("_No charts rendered._")

    markdown_path.write_text("\n".join(md), encoding="utf-8")
    logger.info(f"Wrote report: {markdown_path}")
    logger.info(f"Wrote results CSV: {results_csv_path}")
    return ReportArtifacts(
        markdown_path=markdown_path,
        results_csv_path=results_csv_path,
        stages_csv_path=stages_csv_path,
        charts=charts,
    )