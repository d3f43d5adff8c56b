"""
Risk categories and the held-out-year comparison.

Both the KDE baseline and the model predictions are cut into ordinal risk
classes with Fisher-Jenks breaks. Each method is then scored by the share of
the following year's events that land in each class.
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import mapclassify
import numpy as np
import pandas as pd

from crime_risk.schemas import PREDICTION, TEST_COUNT

log = logging.getLogger(__name__)

DEFAULT_CLASSES = 5

METHODS = {
    "Kernel Density": "kde",
    "Risk Predictions": PREDICTION,
}


def ordinal_label(n: int) -> str:
    """1 -> '1st', 2 -> '2nd', 11 -> '11th'."""
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def classify_risk(
    values: Sequence[float],
    k: int = DEFAULT_CLASSES,
) -> Tuple[np.ndarray, List[str]]:
    """
    Fisher-Jenks classes 1..k (1 = lowest risk).

    With fewer than k distinct values, the number of classes drops to the
    number of distinct values, so a constant input is all class 1.

    Returns:
        (int array of classes aligned with `values`, labels "1st".."<k>th")

    Raises:
        ValueError: If k < 1, values are empty or contain NaN
    """
    y = np.asarray(values, dtype=float)
    if k < 1:
        raise ValueError(f"k must be >= 1, got {k}")
    if y.size == 0:
        raise ValueError("Cannot classify an empty value set")
    if np.isnan(y).any():
        raise ValueError("Cannot classify values containing NaN")

    labels = [ordinal_label(i) for i in range(1, k + 1)]
    k_eff = min(k, len(np.unique(y)))
    if k_eff == 1:
        return np.ones(y.size, dtype="int64"), labels

    classifier = mapclassify.FisherJenks(y, k=k_eff)
    return np.asarray(classifier.yb, dtype="int64") + 1, labels


def compare_risk_categories(
    df: pd.DataFrame,
    methods: Optional[Mapping[str, str]] = None,
    test_col: str = TEST_COUNT,
    k: int = DEFAULT_CLASSES,
    logger=None,
) -> pd.DataFrame:
    """
    Held-out event counts and rates per risk category, for each method.

    Args:
        df: One row per cell with each method's value column and `test_col`
        methods: Label -> value column (default KDE and model predictions)
        test_col: Held-out year event count per cell
        k: Number of risk classes

    Returns:
        Long table: Label, Risk_Category ("1st".."5th"), countWeapons,
        Rate_of_test_set_crimes. Every category appears for every method.
    """
    logger = logger or log
    methods = methods or METHODS
    frames = []

    for label, value_col in methods.items():
        classes, names = classify_risk(df[value_col], k)
        counts = (
            pd.Series(df[test_col].to_numpy(), index=classes)
            .groupby(level=0)
            .sum()
            .reindex(range(1, k + 1), fill_value=0)
            .astype("int64")
        )
        total = int(counts.sum())
        rates = counts / total if total > 0 else counts * 0.0

        frames.append(pd.DataFrame({
            "Label": label,
            "Risk_Category": names,
            "countWeapons": counts.to_numpy(),
            "Rate_of_test_set_crimes": rates.to_numpy(dtype=float),
        }))
        logger.info(f"{label}: {total:,} held-out events across {k} risk categories")

    return pd.concat(frames, ignore_index=True)


def check_risk_ordering(comparison: pd.DataFrame) -> Dict[str, bool]:
    """
    Whether the held-out rate is non-decreasing in risk category, per method.

    Informational only; a well-ranked method puts more events in higher classes.
    """
    ordering = {}
    for label, group in comparison.groupby("Label", sort=False):
        rates = group["Rate_of_test_set_crimes"].to_numpy()
        ordering[label] = bool(np.all(np.diff(rates) >= 0))
        if not ordering[label]:
            log.info(f"{label}: held-out rate is not monotonic across categories")
    return ordering
