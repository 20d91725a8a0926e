"""
Cleaning stage for the nyc_sales table.

Every raw field arrives loosely typed (usually text). Numeric fields go through
a fallible cast that turns anything unparseable into NaN; only the three
required fields can cause a row to be dropped:

- sale_price > 0
- total_units > 0 and integral
- gross_square_feet > 0

Neighborhood and building class category are trimmed and upper-cased. A blank
or missing value is kept as the empty string (an uninformative but valid
segment key). Addresses are trimmed only. Unparseable sale dates become NaT and
the row is kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict

import numpy as np
import pandas as pd

from src.validation.data_contracts import DataContractError


logger = logging.getLogger(__name__)


NUMERIC_COLUMNS = [
    "borough",
    "block",
    "lot",
    "zip_code",
    "total_units",
    "gross_square_feet",
    "land_square_feet",
    "year_built",
    "sale_price",
]

# Identifiers that are integers in the source; fractional values become absent
INTEGER_COLUMNS = ["borough", "block", "lot", "zip_code", "total_units", "year_built"]

SEGMENT_TEXT_COLUMNS = ["neighborhood", "building_class_category"]

REQUIRED_COLUMNS = [
    "neighborhood",
    "building_class_category",
    "total_units",
    "gross_square_feet",
    "sale_price",
]

OPTIONAL_COLUMNS = [
    "borough",
    "block",
    "lot",
    "zip_code",
    "land_square_feet",
    "year_built",
    "sale_date",
    "address",
]

CLEANED_COLUMNS = [
    "neighborhood",
    "building_class_category",
    "borough",
    "block",
    "lot",
    "zip_code",
    "address",
    "total_units",
    "gross_square_feet",
    "land_square_feet",
    "year_built",
    "sale_price",
    "sale_date",
]

_NUMERIC_NOISE = r"[,$\s]"


@dataclass
class CleaningResult:
    """Cleaned frame plus the drop tally reported in the narrative."""

    frame: pd.DataFrame
    raw_rows: int
    dropped_rows: int
    drop_reasons: Dict[str, int] = field(default_factory=dict)

    @property
    def cleaned_rows(self) -> int:
        return len(self.frame)


def normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """
    Lower-case headers and replace spaces so 'SALE PRICE' == 'sale_price'.

    Two headers that collapse to the same name make the source ambiguous and
    raise DataContractError.
    """
    out = df.copy()
    out.columns = [str(c).strip().lower().replace(" ", "_") for c in out.columns]
    duplicated = sorted(set(out.columns[out.columns.duplicated()]))
    if duplicated:
        raise DataContractError(f"Duplicate columns after header normalization: {', '.join(duplicated)}")
    return out


def to_number(series: pd.Series) -> pd.Series:
    """Fallible numeric cast: unparseable values become NaN, never an error."""
    if pd.api.types.is_numeric_dtype(series):
        values = pd.to_numeric(series, errors="coerce").astype(float)
    else:
        text = series.astype(str).str.replace(_NUMERIC_NOISE, "", regex=True)
        values = pd.to_numeric(text, errors="coerce").astype(float)
    return values.where(np.isfinite(values))


def to_integer(series: pd.Series) -> pd.Series:
    """Numeric cast to nullable Int64; fractional values become absent."""
    values = to_number(series)
    values = values.where(np.isfinite(values) & (values % 1 == 0))
    return values.astype("Int64")


def normalize_text(series: pd.Series, *, upper: bool) -> pd.Series:
    text = series.where(series.notna(), "").astype(str).str.strip()
    return text.str.upper() if upper else text


def parse_sale_date(series: pd.Series) -> pd.Series:
    """Parse calendar dates per value (formats may differ by row); anything unparseable becomes NaT."""
    return pd.to_datetime(series, errors="coerce", format="mixed").dt.normalize()


def required_field_failures(df: pd.DataFrame) -> Dict[str, pd.Series]:
    """Boolean masks, one per required-field check, True where the row fails."""
    units = df["total_units"]
    return {
        "invalid_sale_price": ~(df["sale_price"] > 0),
        "invalid_total_units": ~((units > 0) & (units % 1 == 0)),
        "invalid_gross_square_feet": ~(df["gross_square_feet"] > 0),
    }


def clean_sales(raw: pd.DataFrame) -> CleaningResult:
    """
    Clean raw nyc_sales rows into CleanedSaleRecords.

    Returns a new frame with the columns in CLEANED_COLUMNS; the input frame is
    never modified.
    """
    df = normalize_columns(raw)
    raw_rows = len(df)

    missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        raise DataContractError(f"Missing required columns: {', '.join(missing)}")

    for col in OPTIONAL_COLUMNS:
        if col not in df.columns:
            logger.warning(f"Column '{col}' not in source; filling with absent values")
            df[col] = np.nan

    # 1. Fallible numeric casts
    for col in NUMERIC_COLUMNS:
        df[col] = to_number(df[col])

    # 2. Required-field validity
    failures = required_field_failures(df)
    invalid = pd.Series(False, index=df.index)
    drop_reasons: Dict[str, int] = {}
    for reason, mask in failures.items():
        drop_reasons[reason] = int(mask.sum())
        invalid |= mask

    df = df.loc[~invalid].copy()
    dropped = raw_rows - len(df)
    logger.info(f"Dropped invalid rows: {raw_rows:,} -> {len(df):,} records ({dropped:,} removed)")
    for reason, count in drop_reasons.items():
        if count:
            logger.info(f"  {reason}: {count:,}")

    # 3. Types for kept rows
    for col in INTEGER_COLUMNS:
        df[col] = to_integer(df[col])

    # 4. Text normalization
    for col in SEGMENT_TEXT_COLUMNS:
        df[col] = normalize_text(df[col], upper=True)
    df["address"] = normalize_text(df["address"], upper=False)

    # 5. Dates (not required)
    df["sale_date"] = parse_sale_date(df["sale_date"])
    bad_dates = int(df["sale_date"].isna().sum())
    if bad_dates:
        logger.info(f"Unparseable or missing sale_date kept as absent: {bad_dates:,}")

    cleaned = df[CLEANED_COLUMNS].reset_index(drop=True)
    return CleaningResult(
        frame=cleaned,
        raw_rows=raw_rows,
        dropped_rows=dropped,
        drop_reasons=drop_reasons,
    )
