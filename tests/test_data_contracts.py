import unittest

import pandas as pd

from src.validation.data_contracts import (
    ENRICHED_NULL_THRESHOLDS,
    DataContractError,
    validate_data_contracts,
    validate_source,
)


def _cleaned(**overrides):
    frame = pd.DataFrame(
        {
            "neighborhood": ["SOHO", "CHELSEA"],
            "building_class_category": ["A1", "R4"],
            "sale_price": [1_000_000.0, 650_000.0],
            "total_units": pd.array([2, 1], dtype="Int64"),
            "gross_square_feet": [2000.0, 700.0],
        }
    )
    for col, values in overrides.items():
        frame[col] = values
    return frame


class TestDataContracts(unittest.TestCase):
    def test_source_must_have_rows(self):
        empty = pd.DataFrame(columns=["neighborhood", "building_class_category", "total_units", "gross_square_feet", "sale_price"])
        with self.assertRaises(DataContractError) as ctx:
            validate_source(empty)
        self.assertIn("non_empty", str(ctx.exception))

    def test_source_required_columns(self):
        result = validate_source(pd.DataFrame({"sale_price": ["1"]}), raise_on_error=False)
        self.assertFalse(result.passed)
        self.assertEqual(result.violations[0].check, "required_columns")

    def test_clean_frame_passes(self):
        result = validate_data_contracts(_cleaned())
        self.assertTrue(result.passed)
        self.assertEqual(result.row_count, 2)

    def test_domain_violations_reported(self):
        frame = _cleaned(sale_price=[-1.0, 650_000.0], total_units=[2.5, 1.0])
        result = validate_data_contracts(frame, raise_on_error=False)
        checks = {v.check for v in result.violations}
        self.assertEqual(checks, {"domain_sale_price", "domain_total_units"})

    def test_null_threshold(self):
        frame = _cleaned(gross_square_feet=[None, 700.0])
        with self.assertRaises(DataContractError):
            validate_data_contracts(frame)

    def test_ratio_mismatch(self):
        frame = _cleaned()
        frame["square_ft_per_unit"] = [1000.0, 700.0]
        frame["price_per_unit"] = [500_000.0, 1.0]
        result = validate_data_contracts(
            frame,
            null_thresholds=ENRICHED_NULL_THRESHOLDS,
            check_ratios=True,
            raise_on_error=False,
        )
        self.assertEqual([v.check for v in result.violations], ["ratio_price_per_unit"])
        self.assertEqual(result.violations[0].failed_rows, 1)


if __name__ == "__main__":
    unittest.main()
