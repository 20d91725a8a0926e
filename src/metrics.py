"""
Per-row sale metrics.

For each cleaned sale:
- sale_price_zscore: against the global mean/stddev
- sale_price_zscore_neighborhood: against its (neighborhood, building class
  category) segment, falling back to the global pair when the segment was not
  materialized or has zero spread
- square_ft_per_unit, price_per_unit: total_units is already > 0

A z-score whose reference stddev is missing or not > 0 is absent (NaN in the
frame), never zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
import pandas as pd

from src.aggregation import SEGMENT_KEYS, GlobalStats, SegmentKey, SegmentStats


logger = logging.getLogger(__name__)

REFERENCE_SEGMENT = "segment"
REFERENCE_GLOBAL = "global"


@dataclass(frozen=True)
class ZScoreReference:
    mean: float
    stddev: float
    source: str


def _positive(value: Optional[float]) -> bool:
    return value is not None and not np.isnan(value) and value > 0


def zscore(value: float, mean: Optional[float], stddev: Optional[float]) -> Optional[float]:
    """(value - mean) / stddev, or None when stddev is not > 0."""
    if mean is None or not _positive(stddev):
        return None
    return (float(value) - mean) / stddev


def lookup_segment(
    segment_stats: Dict[SegmentKey, SegmentStats],
    neighborhood: str,
    building_class_category: str,
) -> Optional[SegmentStats]:
    return segment_stats.get((neighborhood, building_class_category))


def reference_stats(segment: Optional[SegmentStats], global_stats: GlobalStats) -> Optional[ZScoreReference]:
    """Segment mean/stddev if usable, else the global pair, else None."""
    if segment is not None and _positive(segment.stddev):
        return ZScoreReference(mean=segment.mean, stddev=segment.stddev, source=REFERENCE_SEGMENT)
    if global_stats.mean is not None and _positive(global_stats.stddev):
        return ZScoreReference(mean=global_stats.mean, stddev=global_stats.stddev, source=REFERENCE_GLOBAL)
    return None


def enrich_sales(
    cleaned: pd.DataFrame,
    global_stats: GlobalStats,
    segment_stats: Dict[SegmentKey, SegmentStats],
) -> pd.DataFrame:
    """Return a new frame of EnrichedSaleRecords; `cleaned` is not modified."""
    df = cleaned.copy()
    price = df["sale_price"].astype(float)
    units = df["total_units"].astype(float)

    # 1. Global z-score
    if global_stats.mean is not None and _positive(global_stats.stddev):
        df["sale_price_zscore"] = (price - global_stats.mean) / global_stats.stddev
    else:
        df["sale_price_zscore"] = np.nan

    # 2. Segment z-score with global fallback, resolved once per segment key
    keys = list(zip(df["neighborhood"], df["building_class_category"]))
    references: Dict[SegmentKey, Optional[ZScoreReference]] = {
        key: reference_stats(lookup_segment(segment_stats, *key), global_stats) for key in set(keys)
    }
    ref_mean = np.array([references[k].mean if references[k] else np.nan for k in keys], dtype=float)
    ref_std = np.array([references[k].stddev if references[k] else np.nan for k in keys], dtype=float)
    df["sale_price_zscore_neighborhood"] = (price.to_numpy() - ref_mean) / ref_std
    df["zscore_reference"] = [references[k].source if references[k] else None for k in keys]

    # 3. Per-unit ratios
    df["square_ft_per_unit"] = df["gross_square_feet"].astype(float) / units
    df["price_per_unit"] = price / units

    fallback = int((df["zscore_reference"] == REFERENCE_GLOBAL).sum())
    logger.info(f"Enriched {len(df):,} sales ({fallback:,} scored against global fallback)")
    return df


def segment_key_frame(segment_stats: Dict[SegmentKey, SegmentStats]) -> pd.DataFrame:
    """Materialized segments as a frame, for reporting."""
    rows = [
        {
            SEGMENT_KEYS[0]: s.neighborhood,
            SEGMENT_KEYS[1]: s.building_class_category,
            "count": s.count,
            "mean": s.mean,
            "stddev": s.stddev,
        }
        for s in segment_stats.values()
    ]
    return pd.DataFrame(rows, columns=SEGMENT_KEYS + ["count", "mean", "stddev"])
