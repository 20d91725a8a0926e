import unittest

import numpy as np
import pandas as pd

from src.cleaning import clean_sales, to_integer, to_number
from src.validation.data_contracts import DataContractError


def _raw_row(**overrides):
    row = {
        "NEIGHBORHOOD": "SOHO",
        "BUILDING_CLASS_CATEGORY": "A1",
        "BOROUGH": "1",
        "BLOCK": "100",
        "LOT": "7",
        "ZIP_CODE": "10012",
        "TOTAL_UNITS": "2",
        "GROSS_SQUARE_FEET": "2000",
        "LAND_SQUARE_FEET": "1500",
        "YEAR_BUILT": "1920",
        "SALE_PRICE": "1000000",
        "SALE_DATE": "2024-01-15",
        "ADDRESS": "1 MAIN ST",
    }
    row.update(overrides)
    return row


class TestFallibleCasts(unittest.TestCase):
    def test_to_number_strips_noise_and_nulls_failures(self):
        values = to_number(pd.Series(["1,234", " $5 ", "abc", None, "inf", "-"]))
        self.assertEqual(values.iloc[0], 1234.0)
        self.assertEqual(values.iloc[1], 5.0)
        self.assertTrue(values.iloc[2:].isna().all())

    def test_to_integer_rejects_fractions(self):
        values = to_integer(pd.Series(["3", "2.5", "x"]))
        self.assertEqual(int(values.iloc[0]), 3)
        self.assertTrue(pd.isna(values.iloc[1]))
        self.assertTrue(pd.isna(values.iloc[2]))


class TestCleanSales(unittest.TestCase):
    def test_clean_sales_filters_invalid_rows(self):
        raw = pd.DataFrame(
            [
                _raw_row(NEIGHBORHOOD=" soho ", BUILDING_CLASS_CATEGORY="a1 ", SALE_PRICE="$1,000,000",
                         GROSS_SQUARE_FEET="2,000", ADDRESS="  12 Main St "),
                _raw_row(SALE_PRICE="0"),
                _raw_row(SALE_PRICE="abc"),
                _raw_row(TOTAL_UNITS="0"),
                _raw_row(TOTAL_UNITS="1.5"),
                _raw_row(GROSS_SQUARE_FEET=""),
                _raw_row(NEIGHBORHOOD=None, SALE_DATE="not a date"),
            ]
        )

        result = clean_sales(raw)
        cleaned = result.frame

        self.assertEqual(result.raw_rows, 7)
        self.assertEqual(result.cleaned_rows, 2)
        self.assertEqual(result.dropped_rows, 5)
        self.assertEqual(
            result.drop_reasons,
            {"invalid_sale_price": 2, "invalid_total_units": 2, "invalid_gross_square_feet": 1},
        )

        first = cleaned.iloc[0]
        self.assertEqual(first["neighborhood"], "SOHO")
        self.assertEqual(first["building_class_category"], "A1")
        self.assertEqual(first["address"], "12 Main St")
        self.assertEqual(float(first["sale_price"]), 1_000_000.0)
        self.assertEqual(float(first["gross_square_feet"]), 2000.0)
        self.assertEqual(int(first["total_units"]), 2)
        self.assertEqual(int(first["borough"]), 1)
        self.assertEqual(first["sale_date"], pd.Timestamp("2024-01-15"))

        second = cleaned.iloc[1]
        self.assertEqual(second["neighborhood"], "")
        self.assertTrue(pd.isna(second["sale_date"]))

    def test_required_invariants_hold_for_every_kept_row(self):
        raw = pd.DataFrame(
            [
                _raw_row(SALE_PRICE=str(p), TOTAL_UNITS=str(u), GROSS_SQUARE_FEET=str(s))
                for p, u, s in [
                    (500000, 1, 900),
                    (-10, 1, 900),
                    (750000, 3, 0),
                    (820000, -2, 1200),
                    (910000, 4, 3100),
                    ("", "", ""),
                ]
            ]
        )
        cleaned = clean_sales(raw).frame
        self.assertEqual(len(cleaned), 2)
        self.assertTrue((cleaned["sale_price"] > 0).all())
        self.assertTrue((cleaned["total_units"] > 0).all())
        self.assertTrue((cleaned["gross_square_feet"] > 0).all())

    def test_dropping_invalid_prices_removes_exactly_those_rows(self):
        valid = [_raw_row(SALE_PRICE=str(100000 * (i + 1)), ADDRESS=f"{i} ELM ST") for i in range(8)]
        invalid = [_raw_row(SALE_PRICE=v, ADDRESS="BAD") for v in ["0", "", "n/a"]]
        mixed = valid[:3] + invalid[:2] + valid[3:6] + invalid[2:] + valid[6:]

        baseline = clean_sales(pd.DataFrame(valid)).frame
        with_invalid = clean_sales(pd.DataFrame(mixed))

        self.assertEqual(with_invalid.cleaned_rows, len(mixed) - len(invalid))
        self.assertEqual(with_invalid.drop_reasons["invalid_sale_price"], len(invalid))
        pd.testing.assert_frame_equal(with_invalid.frame, baseline)

    def test_clean_sales_does_not_modify_input(self):
        raw = pd.DataFrame([_raw_row(NEIGHBORHOOD=" soho ")])
        before = raw.copy()
        clean_sales(raw)
        pd.testing.assert_frame_equal(raw, before)

    def test_optional_columns_may_be_missing(self):
        raw = pd.DataFrame([_raw_row()]).drop(columns=["ADDRESS", "SALE_DATE", "ZIP_CODE"])
        cleaned = clean_sales(raw).frame
        self.assertEqual(len(cleaned), 1)
        self.assertEqual(cleaned.iloc[0]["address"], "")
        self.assertTrue(pd.isna(cleaned.iloc[0]["zip_code"]))

    def test_missing_required_column_is_fatal(self):
        raw = pd.DataFrame([_raw_row()]).drop(columns=["SALE_PRICE"])
        with self.assertRaises(DataContractError):
            clean_sales(raw)

    def test_header_variants_are_equivalent(self):
        raw = pd.DataFrame([_raw_row()])
        spaced = raw.rename(columns=lambda c: c.replace("_", " "))
        pd.testing.assert_frame_equal(clean_sales(raw).frame, clean_sales(spaced).frame)

    def test_sale_dates_in_mixed_formats_are_parsed(self):
        raw = pd.DataFrame(
            [
                _raw_row(SALE_DATE="2024-01-15"),
                _raw_row(SALE_DATE="01/20/2024"),
                _raw_row(SALE_DATE="2024-02-01T00:00:00.000"),
                _raw_row(SALE_DATE="2024-03-05 14:30:00"),
                _raw_row(SALE_DATE="not a date"),
            ]
        )
        dates = clean_sales(raw).frame["sale_date"].tolist()
        self.assertEqual(
            dates[:4],
            [
                pd.Timestamp("2024-01-15"),
                pd.Timestamp("2024-01-20"),
                pd.Timestamp("2024-02-01"),
                pd.Timestamp("2024-03-05"),
            ],
        )
        self.assertTrue(pd.isna(dates[4]))

    def test_format_of_first_date_does_not_decide_the_rest(self):
        raw = pd.DataFrame(
            [
                _raw_row(SALE_DATE="2024-02-01T00:00:00.000"),
                _raw_row(SALE_DATE="2024-01-15"),
            ]
        )
        dates = clean_sales(raw).frame["sale_date"].tolist()
        self.assertEqual(dates, [pd.Timestamp("2024-02-01"), pd.Timestamp("2024-01-15")])

    def test_headers_colliding_after_normalization_are_fatal(self):
        raw = pd.DataFrame([_raw_row()])
        raw["SALE PRICE"] = "2000000"
        with self.assertRaises(DataContractError) as ctx:
            clean_sales(raw)
        self.assertIn("sale_price", str(ctx.exception))

    def test_numeric_source_columns_are_accepted(self):
        raw = pd.DataFrame(
            {
                "neighborhood": ["SOHO"],
                "building_class_category": ["A1"],
                "total_units": [2],
                "gross_square_feet": [np.float64(2000)],
                "sale_price": [1_000_000],
            }
        )
        cleaned = clean_sales(raw).frame
        self.assertEqual(len(cleaned), 1)
        self.assertEqual(float(cleaned.iloc[0]["sale_price"]), 1_000_000.0)


if __name__ == "__main__":
    unittest.main()
