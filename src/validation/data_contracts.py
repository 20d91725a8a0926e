"""Data contracts for the sales metrics pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

import numpy as np
import pandas as pd


SOURCE_REQUIRED_COLUMNS = [
    "neighborhood",
    "building_class_category",
    "total_units",
    "gross_square_feet",
    "sale_price",
]

CLEANED_NULL_THRESHOLDS = {
    "sale_price": 0.0,
    "total_units": 0.0,
    "gross_square_feet": 0.0,
    "neighborhood": 0.0,
    "building_class_category": 0.0,
}

ENRICHED_NULL_THRESHOLDS = {
    **CLEANED_NULL_THRESHOLDS,
    "square_ft_per_unit": 0.0,
    "price_per_unit": 0.0,
}

RATIO_TOLERANCE = 1e-9


@dataclass
class ContractViolation:
    """Represents a failed data-contract check."""

    check: str
    message: str
    failed_rows: int = 0


@dataclass
class DataContractResult:
    """Aggregated result for all checks."""

    passed: bool
    row_count: int
    checked_at: str
    violations: List[ContractViolation]


class DataContractError(ValueError):
    """Raised when one or more contract checks fail."""


def validate_source(
    df: pd.DataFrame,
    *,
    required_columns: Optional[Iterable[str]] = None,
    raise_on_error: bool = True,
) -> DataContractResult:
    """
    Whole-run checks on the raw source before any row-level work.

    An empty source or one missing a required column cannot produce output,
    so both are fatal.
    """
    req_cols = list(required_columns or SOURCE_REQUIRED_COLUMNS)
    violations: List[ContractViolation] = []
    if len(df) == 0:
        violations.append(ContractViolation(check="non_empty", message="Source contains no rows"))
    violations.extend(_check_required_columns(df, req_cols))
    return _finish(df, violations, raise_on_error)


def validate_data_contracts(
    df: pd.DataFrame,
    *,
    null_thresholds: Optional[dict[str, float]] = None,
    check_ratios: bool = False,
    raise_on_error: bool = True,
) -> DataContractResult:
    """
    Execute post-stage checks and optionally raise on failure.

    Checks:
    - null thresholds
    - domain constraints (positive sale_price / gross_square_feet, positive integral total_units)
    - per-unit ratios consistent with their inputs (enriched frames only)
    """
    thresholds = null_thresholds or CLEANED_NULL_THRESHOLDS

    violations: List[ContractViolation] = []
    violations.extend(_check_required_columns(df, list(thresholds)))
    violations.extend(_check_null_thresholds(df, thresholds))
    violations.extend(_check_domain_constraints(df))
    if check_ratios:
        violations.extend(_check_per_unit_ratios(df))

    return _finish(df, violations, raise_on_error)


def format_contract_violations(violations: List[ContractViolation]) -> str:
    """Format violations into a single error message."""
    lines = ["Data contract validation failed:"]
    for v in violations:
        lines.append(f"- [{v.check}] {v.message} (failed_rows={v.failed_rows})")
    return "\n".join(lines)


def _finish(df: pd.DataFrame, violations: List[ContractViolation], raise_on_error: bool) -> DataContractResult:
    result = DataContractResult(
        passed=len(violations) == 0,
        row_count=len(df),
        checked_at=datetime.utcnow().isoformat(),
        violations=violations,
    )
    if raise_on_error and not result.passed:
        raise DataContractError(format_contract_violations(result.violations))
    return result


def _check_required_columns(df: pd.DataFrame, required_columns: List[str]) -> List[ContractViolation]:
    missing = [col for col in required_columns if col not in df.columns]
    if not missing:
        return []
    return [
        ContractViolation(
            check="required_columns",
            message=f"Missing required columns: {', '.join(missing)}",
            failed_rows=len(df),
        )
    ]


def _check_null_thresholds(df: pd.DataFrame, null_thresholds: dict[str, float]) -> List[ContractViolation]:
    violations: List[ContractViolation] = []
    if len(df) == 0:
        return violations
    for col, threshold in null_thresholds.items():
        if col not in df.columns:
            continue
        null_ratio = float(df[col].isna().mean())
        if null_ratio > threshold:
            violations.append(
                ContractViolation(
                    check="null_threshold",
                    message=f"{col} null ratio {null_ratio:.4f} exceeds threshold {threshold:.4f}",
                    failed_rows=int(df[col].isna().sum()),
                )
            )
    return violations


def _check_domain_constraints(df: pd.DataFrame) -> List[ContractViolation]:
    violations: List[ContractViolation] = []

    for col in ("sale_price", "gross_square_feet"):
        if col not in df.columns:
            continue
        values = pd.to_numeric(df[col], errors="coerce")
        bad = ~(values > 0)
        if bad.any():
            violations.append(
                ContractViolation(
                    check=f"domain_{col}",
                    message=f"{col} must be numeric and > 0",
                    failed_rows=int(bad.sum()),
                )
            )

    if "total_units" in df.columns:
        units = pd.to_numeric(df["total_units"], errors="coerce").astype(float)
        bad_units = ~((units > 0) & (units % 1 == 0))
        if bad_units.any():
            violations.append(
                ContractViolation(
                    check="domain_total_units",
                    message="total_units must be a positive integer",
                    failed_rows=int(bad_units.sum()),
                )
            )

    return violations


def _check_per_unit_ratios(df: pd.DataFrame) -> List[ContractViolation]:
    needed = {"sale_price", "gross_square_feet", "total_units", "square_ft_per_unit", "price_per_unit"}
    if not needed.issubset(df.columns):
        return []

    units = df["total_units"].astype(float)
    violations: List[ContractViolation] = []
    for ratio_col, numerator in (("square_ft_per_unit", "gross_square_feet"), ("price_per_unit", "sale_price")):
        expected = df[numerator].astype(float) / units
        mismatch = ~np.isclose(df[ratio_col].astype(float), expected, rtol=RATIO_TOLERANCE, atol=0.0)
        if mismatch.any():
            violations.append(
                ContractViolation(
                    check=f"ratio_{ratio_col}",
                    message=f"{ratio_col} does not equal {numerator} / total_units",
                    failed_rows=int(mismatch.sum()),
                )
            )
    return violations
