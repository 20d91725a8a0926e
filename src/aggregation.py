"""
Global and segment sale-price statistics.

Segments are (neighborhood, building_class_category) pairs. Standard
deviations use the sample convention (n - 1 denominator); with n <= 1 the
deviation is undefined and reported as None. Only segments with strictly more
than MIN_SEGMENT_COUNT rows are materialized.

All statistics are reductions over Moments (count, mean, sum of squared
deviations). Moments.merge is associative and commutative, so partial
aggregates computed over chunks of the input combine into the same result
regardless of row order or chunking.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from functools import reduce
from typing import Dict, Iterable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from config.settings import MIN_SEGMENT_COUNT, STDDEV_DDOF


logger = logging.getLogger(__name__)

SEGMENT_KEYS = ["neighborhood", "building_class_category"]

SegmentKey = Tuple[str, str]


@dataclass(frozen=True)
class Moments:
    """Running count / mean / M2 for one group of sale prices."""

    count: int = 0
    mean: float = 0.0
    m2: float = 0.0

    @classmethod
    def from_values(cls, values: Sequence[float]) -> "Moments":
        arr = np.asarray(values, dtype=float)
        if arr.size == 0:
            return cls()
        mean = float(arr.mean())
        return cls(count=int(arr.size), mean=mean, m2=float(np.square(arr - mean).sum()))

    def merge(self, other: "Moments") -> "Moments":
        # Chan et al. pairwise update
        if self.count == 0:
            return other
        if other.count == 0:
            return self
        total = self.count + other.count
        delta = other.mean - self.mean
        mean = (self.count * self.mean + other.count * other.mean) / total
        m2 = self.m2 + other.m2 + delta * delta * self.count * other.count / total
        return Moments(count=total, mean=mean, m2=m2)

    def stddev(self, ddof: int = STDDEV_DDOF) -> Optional[float]:
        if self.count <= ddof:
            return None
        return math.sqrt(max(self.m2, 0.0) / (self.count - ddof))


@dataclass(frozen=True)
class GlobalStats:
    mean: Optional[float]
    stddev: Optional[float]
    count: int

    @classmethod
    def from_moments(cls, moments: Moments) -> "GlobalStats":
        mean = moments.mean if moments.count > 0 else None
        return cls(mean=mean, stddev=moments.stddev(), count=moments.count)


@dataclass(frozen=True)
class SegmentStats:
    neighborhood: str
    building_class_category: str
    mean: float
    stddev: Optional[float]
    count: int

    @property
    def key(self) -> SegmentKey:
        return (self.neighborhood, self.building_class_category)


@dataclass(frozen=True)
class Aggregates:
    """Everything the metric stage needs from the aggregation stage."""

    global_stats: GlobalStats
    segment_stats: Dict[SegmentKey, SegmentStats]
    segment_count: int  # all segments, before the size filter
    min_count: int = MIN_SEGMENT_COUNT


def segment_moments(df: pd.DataFrame) -> Dict[SegmentKey, Moments]:
    """Moments of sale_price per (neighborhood, building_class_category)."""
    if df.empty:
        return {}
    summary = df.groupby(SEGMENT_KEYS, sort=True)["sale_price"].agg(["count", "mean", "var"])
    out: Dict[SegmentKey, Moments] = {}
    for (neighborhood, building_class), row in summary.iterrows():
        count = int(row["count"])
        var = row["var"] if pd.notna(row["var"]) else 0.0
        out[(neighborhood, building_class)] = Moments(
            count=count,
            mean=float(row["mean"]),
            m2=float(var) * (count - 1),
        )
    return out


def merge_segment_moments(
    left: Dict[SegmentKey, Moments],
    right: Dict[SegmentKey, Moments],
) -> Dict[SegmentKey, Moments]:
    merged = dict(left)
    for key, moments in right.items():
        merged[key] = merged[key].merge(moments) if key in merged else moments
    return merged


def qualifying_segments(
    moments: Dict[SegmentKey, Moments],
    min_count: int = MIN_SEGMENT_COUNT,
) -> Dict[SegmentKey, SegmentStats]:
    """Keep segments with count strictly greater than min_count."""
    return {
        key: SegmentStats(
            neighborhood=key[0],
            building_class_category=key[1],
            mean=m.mean,
            stddev=m.stddev(),
            count=m.count,
        )
        for key, m in sorted(moments.items())
        if m.count > min_count
    }


def compute_global_stats(cleaned: pd.DataFrame) -> GlobalStats:
    """Mean and sample stddev of sale_price over every cleaned row."""
    return GlobalStats.from_moments(Moments.from_values(cleaned["sale_price"].to_numpy(dtype=float)))


def compute_segment_stats(
    cleaned: pd.DataFrame,
    min_count: int = MIN_SEGMENT_COUNT,
) -> Dict[SegmentKey, SegmentStats]:
    return qualifying_segments(segment_moments(cleaned), min_count=min_count)


def compute_aggregates(cleaned: pd.DataFrame, min_count: int = MIN_SEGMENT_COUNT) -> Aggregates:
    """Global and segment statistics for an in-memory cleaned frame."""
    moments = segment_moments(cleaned)
    aggregates = Aggregates(
        global_stats=compute_global_stats(cleaned),
        segment_stats=qualifying_segments(moments, min_count=min_count),
        segment_count=len(moments),
        min_count=min_count,
    )
    _log_aggregates(aggregates, min_count)
    return aggregates


def aggregate_partitions(
    partitions: Iterable[pd.DataFrame],
    min_count: int = MIN_SEGMENT_COUNT,
) -> Aggregates:
    """
    Same result as compute_aggregates over the concatenated partitions, built
    by merging per-partition partial aggregates.
    """
    partials = [
        (Moments.from_values(part["sale_price"].to_numpy(dtype=float)), segment_moments(part))
        for part in partitions
    ]
    global_moments = reduce(Moments.merge, (p[0] for p in partials), Moments())
    moments = reduce(merge_segment_moments, (p[1] for p in partials), {})
    aggregates = Aggregates(
        global_stats=GlobalStats.from_moments(global_moments),
        segment_stats=qualifying_segments(moments, min_count=min_count),
        segment_count=len(moments),
        min_count=min_count,
    )
    _log_aggregates(aggregates, min_count)
    return aggregates


def _log_aggregates(aggregates: Aggregates, min_count: int) -> None:
    g = aggregates.global_stats
    mean = f"{g.mean:,.2f}" if g.mean is not None else "n/a"
    stddev = f"{g.stddev:,.2f}" if g.stddev is not None else "n/a"
    logger.info(f"Global sale_price: n={g.count:,}, mean={mean}, stddev={stddev}")
    logger.info(
        f"Segments with > {min_count} sales: {len(aggregates.segment_stats):,} "
        f"of {aggregates.segment_count:,}"
    )
