"""
Poisson count regression and cross-validation over fishnet cells.

Two fold schemes are compared: random k-fold (cells shuffled into `cvID`
groups) and spatial leave-one-group-out (each neighborhood held out in
turn). Both run through the same harness. For every held-out group the GLM
is refit on the remaining cells, so no cell is ever predicted by a model
that saw it.
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from sklearn.model_selection import KFold, LeaveOneGroupOut

from crime_risk.schemas import (
    CELL_ID,
    IS_SIG,
    IS_SIG_NN,
    NEIGHBORHOOD,
    PREDICTION,
    RANDOM_FOLD,
    TARGET_COUNT,
    nn_column,
)
from crime_risk.spatial_stats import global_morans_i

log = logging.getLogger(__name__)

FOLD_SCHEMES = {
    "Random k-fold CV": RANDOM_FOLD,
    "Spatial LOGO-CV": NEIGHBORHOOD,
}


class ModelingError(Exception):
    """Raised when a model or CV configuration is invalid."""
    pass


# =============================================================================
# Folds
# =============================================================================

def assign_random_folds(
    df: pd.DataFrame,
    n_folds: int = 24,
    seed: int = 12345,
    fold_col: str = RANDOM_FOLD,
) -> pd.DataFrame:
    """
    Shuffle rows into `n_folds` groups of near-equal size, labelled 1..n_folds.

    Raises:
        ModelingError: If n_folds < 2 or exceeds the number of rows
    """
    if n_folds < 2 or n_folds > len(df):
        raise ModelingError(f"Cannot split {len(df)} rows into {n_folds} folds")

    folds = np.zeros(len(df), dtype="int64")
    splitter = KFold(n_splits=n_folds, shuffle=True, random_state=seed)
    for fold, (_, test_idx) in enumerate(splitter.split(np.arange(len(df))), start=1):
        folds[test_idx] = fold

    result = df.copy()
    result[fold_col] = folds
    return result


# =============================================================================
# Feature sets
# =============================================================================

def build_feature_sets(factors: Sequence[str]) -> Dict[str, List[str]]:
    """
    The two compared feature sets for a list of risk-factor names.

    "Just Risk Factors" uses each factor's cell count and `.nn` distance;
    "Spatial Process" adds the local Moran's I hotspot flag and the distance
    to the nearest hotspot.
    """
    risk_factors = [*factors, *(nn_column(f) for f in factors)]
    return {
        "Just Risk Factors": risk_factors,
        "Spatial Process": risk_factors + [IS_SIG, IS_SIG_NN],
    }


# =============================================================================
# Model
# =============================================================================

def _term(col: str) -> str:
    # Q() lets patsy accept names like "abandoned_cars.nn"
    return f'Q("{col}")'


def build_formula(dependent_var: str, feature_cols: Sequence[str]) -> str:
    return f"{_term(dependent_var)} ~ " + " + ".join(_term(c) for c in feature_cols)


def check_features(dependent_var: str, feature_cols: Sequence[str]) -> None:
    """
    Reject empty feature sets and any feature derived from the target.

    Raises:
        ModelingError: On target leakage or no features
    """
    if not feature_cols:
        raise ModelingError("Feature set is empty")
    leaked = [c for c in feature_cols if c == dependent_var or c.startswith(f"{dependent_var}_")]
    if leaked:
        raise ModelingError(f"Features include the dependent variable: {leaked}")


def fit_poisson(
    train: pd.DataFrame,
    dependent_var: str,
    feature_cols: Sequence[str],
):
    """Fit a log-link Poisson GLM and return the statsmodels results object."""
    check_features(dependent_var, feature_cols)
    formula = build_formula(dependent_var, feature_cols)
    return smf.glm(formula, data=train, family=sm.families.Poisson()).fit()


# =============================================================================
# Cross-validation
# =============================================================================

def cross_validate(
    df: pd.DataFrame,
    dependent_var: str,
    feature_cols: Sequence[str],
    fold_col: str,
    id_col: str = CELL_ID,
    logger=None,
) -> pd.DataFrame:
    """
    Out-of-fold Poisson predictions, one per cell.

    Rows missing the target, a feature or the fold key are dropped first.

    Returns:
        DataFrame with id_col, fold_col, dependent_var and `Prediction`

    Raises:
        ModelingError: On leakage, duplicate ids or fewer than two folds
    """
    logger = logger or log
    check_features(dependent_var, feature_cols)

    cols = [id_col, fold_col, dependent_var, *feature_cols]
    data = pd.DataFrame(df[cols]).dropna()
    dropped = len(df) - len(data)
    if dropped:
        logger.info(f"Dropped {dropped:,} incomplete rows before CV on {fold_col}")

    if data[id_col].duplicated().any():
        raise ModelingError(f"Duplicate {id_col} values in CV input")

    groups = data[fold_col].values
    n_groups = len(np.unique(groups))
    if n_groups < 2:
        raise ModelingError(f"Need at least 2 groups in {fold_col}, got {n_groups}")

    data = data.reset_index(drop=True)
    predictions = []
    for train_idx, test_idx in LeaveOneGroupOut().split(data, groups=groups):
        train, test = data.iloc[train_idx], data.iloc[test_idx]
        model = fit_poisson(train, dependent_var, feature_cols)
        out = test[[id_col, fold_col, dependent_var]].copy()
        out[PREDICTION] = np.asarray(model.predict(test), dtype=float)
        predictions.append(out)

    result = pd.concat(predictions, ignore_index=True)
    logger.info(f"CV on {fold_col}: {n_groups} folds, {len(result):,} out-of-fold predictions")
    return result


def run_cv_grid(
    df: pd.DataFrame,
    feature_sets: Mapping[str, Sequence[str]],
    dependent_var: str = TARGET_COUNT,
    fold_schemes: Optional[Mapping[str, str]] = None,
    id_col: str = CELL_ID,
    logger=None,
) -> pd.DataFrame:
    """
    Cross-validate every feature set under every fold scheme.

    Returns:
        Long table with `Regression` ("<scheme>: <feature set>"), `fold`,
        the observed count, `Prediction`, `Error` (predicted - observed)
        and `AbsError`
    """
    fold_schemes = fold_schemes or FOLD_SCHEMES
    frames = []

    for scheme, fold_col in fold_schemes.items():
        for set_name, features in feature_sets.items():
            cv = cross_validate(df, dependent_var, features, fold_col, id_col, logger)
            cv = cv.rename(columns={fold_col: "fold"})
            cv["fold"] = cv["fold"].astype(str)
            cv["Regression"] = f"{scheme}: {set_name}"
            cv["fold_scheme"] = scheme
            cv["feature_set"] = set_name
            frames.append(cv)

    results = pd.concat(frames, ignore_index=True)
    results["Error"] = results[PREDICTION] - results[dependent_var]
    results["AbsError"] = results["Error"].abs()
    return results


# =============================================================================
# Error summaries
# =============================================================================

def fold_mae(results: pd.DataFrame) -> pd.DataFrame:
    """Mean absolute error per (Regression, fold)."""
    return (
        results.groupby(["Regression", "fold"], as_index=False)["AbsError"]
        .mean()
        .rename(columns={"AbsError": "MAE"})
    )


def error_summary(results: pd.DataFrame) -> pd.DataFrame:
    """Mean and standard deviation of per-fold MAE for each regression."""
    per_fold = fold_mae(results)
    return (
        per_fold.groupby("Regression")["MAE"]
        .agg(Mean_MAE="mean", SD_MAE="std")
        .reset_index()
        .round(3)
    )


def neighborhood_errors(
    results: pd.DataFrame,
    cells: pd.DataFrame,
    id_col: str = CELL_ID,
) -> pd.DataFrame:
    """Mean error and mean absolute error per neighborhood and regression."""
    labelled = results.merge(cells[[id_col, NEIGHBORHOOD]], on=id_col, how="left")
    return (
        labelled.dropna(subset=[NEIGHBORHOOD])
        .groupby(["Regression", NEIGHBORHOOD], as_index=False)
        .agg(Mean_Error=("Error", "mean"), MAE=("AbsError", "mean"))
    )


def residual_morans_i(
    results: pd.DataFrame,
    cells: pd.DataFrame,
    neighborhoods: gpd.GeoDataFrame,
    permutations: int = 999,
    seed: int = 12345,
    id_col: str = CELL_ID,
    logger=None,
) -> pd.DataFrame:
    """
    Global Moran's I of neighborhood mean errors, one row per LOGO regression.

    `neighborhoods` must carry a `name` column matching the cells' labels.
    """
    logger = logger or log
    errors = neighborhood_errors(results, cells, id_col)
    logo = errors[errors["Regression"].str.startswith("Spatial LOGO-CV")]

    rows: List[Dict] = []
    for regression, group in logo.groupby("Regression"):
        polys = neighborhoods[[NEIGHBORHOOD, "geometry"]].merge(group, on=NEIGHBORHOOD, how="inner")
        stats = global_morans_i(polys, "Mean_Error", NEIGHBORHOOD, permutations, seed, logger)
        rows.append({"Regression": regression, **stats})
        logger.info(f"Residual Moran's I ({regression}): I={stats['morans_i']:.3f}, p={stats['p_value']:.3f}")

    return pd.DataFrame(rows, columns=["Regression", "morans_i", "p_value", "n_units", "n_islands"])
