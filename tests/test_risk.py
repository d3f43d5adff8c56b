"""
Tests for Fisher-Jenks risk categories and the held-out comparison.
"""

import numpy as np
import pandas as pd
import pytest

from crime_risk.risk import check_risk_ordering, classify_risk, compare_risk_categories, ordinal_label
from crime_risk.schemas import PREDICTION, TEST_COUNT


class TestClassifyRisk:
    """Tests for classify_risk."""

    def test_outlier_alone_in_top_class(self):
        classes, _ = classify_risk([1, 2, 2, 3, 50])
        assert classes[-1] == classes.max()
        assert (classes[:-1] < classes[-1]).all()

    def test_five_nonempty_classes(self):
        values = np.random.default_rng(3).gamma(2.0, 2.0, 300)
        classes, labels = classify_risk(values, k=5)
        assert sorted(np.unique(classes)) == [1, 2, 3, 4, 5]
        assert labels == ["1st", "2nd", "3rd", "4th", "5th"]

    def test_monotonic_in_value(self):
        values = np.random.default_rng(4).exponential(1.0, 200)
        classes, _ = classify_risk(values)
        order = np.argsort(values, kind="stable")
        assert (np.diff(classes[order]) >= 0).all()

    def test_largest_value_in_top_class(self):
        values = np.random.default_rng(5).normal(10, 3, 150)
        classes, _ = classify_risk(values)
        assert classes[np.argmax(values)] == 5

    def test_constant_values_all_first_class(self):
        classes, labels = classify_risk([4.0] * 10)
        assert (classes == 1).all()
        assert len(labels) == 5

    def test_fewer_distinct_values_than_classes(self):
        classes, _ = classify_risk([0, 0, 1, 1, 2])
        assert sorted(np.unique(classes)) == [1, 2, 3]

    def test_nan_raises(self):
        with pytest.raises(ValueError):
            classify_risk([1.0, np.nan, 2.0])

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            classify_risk([])


class TestOrdinalLabel:

    @pytest.mark.parametrize("n,label", [(1, "1st"), (2, "2nd"), (3, "3rd"), (4, "4th"), (11, "11th"), (22, "22nd")])
    def test_suffixes(self, n, label):
        assert ordinal_label(n) == label


class TestCompareRiskCategories:
    """Tests for compare_risk_categories and check_risk_ordering."""

    @pytest.fixture
    def cells(self):
        rng = np.random.default_rng(9)
        kde = rng.gamma(2.0, 1.0, 200)
        return pd.DataFrame({
            "kde": kde,
            PREDICTION: kde * 1.5 + rng.normal(0, 0.1, 200).clip(-0.5, 0.5) + 1,
            TEST_COUNT: rng.poisson(kde),
        })

    def test_columns_and_labels(self, cells):
        comparison = compare_risk_categories(cells)
        assert list(comparison.columns) == ["Label", "Risk_Category", "countWeapons", "Rate_of_test_set_crimes"]
        assert list(comparison["Label"].unique()) == ["Kernel Density", "Risk Predictions"]

    def test_rates_sum_to_one(self, cells):
        comparison = compare_risk_categories(cells)
        sums = comparison.groupby("Label")["Rate_of_test_set_crimes"].sum()
        np.testing.assert_allclose(sums.to_numpy(), 1.0)

    def test_counts_sum_to_test_total(self, cells):
        comparison = compare_risk_categories(cells)
        totals = comparison.groupby("Label")["countWeapons"].sum()
        assert (totals == cells[TEST_COUNT].sum()).all()

    def test_every_category_present(self):
        few = pd.DataFrame({"kde": [1.0, 1.0, 2.0], PREDICTION: [1.0, 2.0, 3.0], TEST_COUNT: [0, 1, 2]})
        comparison = compare_risk_categories(few)
        assert (comparison.groupby("Label").size() == 5).all()

    def test_zero_test_total_gives_zero_rates(self, cells):
        comparison = compare_risk_categories(cells.assign(**{TEST_COUNT: 0}))
        assert (comparison["Rate_of_test_set_crimes"] == 0).all()

    def test_ordering_report(self):
        comparison = pd.DataFrame({
            "Label": ["A"] * 3 + ["B"] * 3,
            "Risk_Category": ["1st", "2nd", "3rd"] * 2,
            "countWeapons": [1, 2, 3, 3, 2, 1],
            "Rate_of_test_set_crimes": [1 / 6, 2 / 6, 3 / 6, 3 / 6, 2 / 6, 1 / 6],
        })
        assert check_risk_ordering(comparison) == {"A": True, "B": False}
