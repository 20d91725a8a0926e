import tempfile
import unittest
from pathlib import Path

import numpy as np
import pandas as pd
from sqlalchemy.exc import IntegrityError

from src.database import get_engine, load_metrics
from src.report import OUTPUT_COLUMNS


def _output_frame(prices):
    n = len(prices)
    return pd.DataFrame(
        {
            "NEIGHBORHOOD": ["SOHO"] * n,
            "ADDRESS": [f"{i} GREENE ST" for i in range(n)],
            "BOROUGH": pd.array([1] * n, dtype="Int64"),
            "BLOCK": pd.array([475] * n, dtype="Int64"),
            "LOT": pd.array([None] * n, dtype="Int64"),
            "ZIP_CODE": pd.array([10012] * n, dtype="Int64"),
            "BUILDING_CLASS_CATEGORY": ["A1"] * n,
            "formatted_sale_price": ["$1.00"] * n,
            "raw_sale_price": prices,
            "sale_price_zscore": [None] * n,
            "sale_price_zscore_neighborhood": [None] * n,
            "square_ft_per_unit": ["1,000.00"] * n,
            "price_per_unit": ["$1.00"] * n,
        },
        columns=OUTPUT_COLUMNS,
    )


class TestLoadMetrics(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.engine = get_engine(f"sqlite:///{Path(self._tmp.name) / 'metrics.db'}")

    def tearDown(self):
        self.engine.dispose()
        self._tmp.cleanup()

    def test_load_writes_rows_with_absent_values_as_null(self):
        count = load_metrics(_output_frame([1_000_000.0, 3_000_000.0]), self.engine)
        self.assertEqual(count, 2)
        stored = pd.read_sql_table("sale_metrics", self.engine)
        self.assertEqual(len(stored), 2)
        self.assertTrue(stored["LOT"].isna().all())
        self.assertTrue(stored["sale_price_zscore"].isna().all())

    def test_failed_replace_keeps_previous_rows(self):
        load_metrics(_output_frame([1_000_000.0, 3_000_000.0]), self.engine)

        # raw_sale_price is NOT NULL, so the second load fails mid-insert
        with self.assertRaises(IntegrityError):
            load_metrics(_output_frame([5.0, np.nan]), self.engine, replace_existing=True)

        stored = pd.read_sql_table("sale_metrics", self.engine)
        self.assertEqual(sorted(stored["raw_sale_price"].tolist()), [1_000_000.0, 3_000_000.0])

    def test_replace_existing_swaps_rows(self):
        load_metrics(_output_frame([1_000_000.0, 3_000_000.0]), self.engine)
        load_metrics(_output_frame([7.0]), self.engine, replace_existing=True)
        stored = pd.read_sql_table("sale_metrics", self.engine)
        self.assertEqual(stored["raw_sale_price"].tolist(), [7.0])


if __name__ == "__main__":
    unittest.main()
