"""
Nearest-neighbor distance features.

Raw counts are sparse at 500 m; the mean distance from a cell centroid to its
k nearest risk-factor points gives every cell a smooth exposure value.
"""

import logging
from typing import Dict

import geopandas as gpd
import numpy as np
from sklearn.neighbors import NearestNeighbors

from crime_risk.fishnet import cell_centroids
from crime_risk.qa import assert_same_crs
from crime_risk.schemas import nn_column

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when a feature parameter cannot be applied to the data."""
    pass


def nn_distance(
    from_xy: np.ndarray,
    to_xy: np.ndarray,
    k: int,
    logger=None,
) -> np.ndarray:
    """
    Mean planar distance from each origin to its k nearest reference points.

    If fewer than k reference points exist, the mean is taken over all of
    them (with a warning).

    Args:
        from_xy: (n, 2) origin coordinates
        to_xy: (m, 2) reference coordinates
        k: Number of neighbors

    Returns:
        (n,) array of non-negative distances

    Raises:
        ConfigError: If k < 1 or there are no reference points
    """
    logger = logger or log
    from_xy = np.asarray(from_xy, dtype=float).reshape(-1, 2)
    to_xy = np.asarray(to_xy, dtype=float).reshape(-1, 2)

    if k < 1:
        raise ConfigError(f"k must be >= 1, got {k}")
    if len(to_xy) == 0:
        raise ConfigError("No reference points for nearest-neighbor distance")
    if len(from_xy) == 0:
        return np.empty(0, dtype=float)

    k_eff = min(k, len(to_xy))
    if k_eff < k:
        logger.warning(f"Only {len(to_xy)} reference points for k={k}; averaging over {k_eff}")

    nn = NearestNeighbors(n_neighbors=k_eff).fit(to_xy)
    distances, _ = nn.kneighbors(from_xy)

    return distances.mean(axis=1)


def nn_features(
    fishnet: gpd.GeoDataFrame,
    points: gpd.GeoDataFrame,
    factor_col: str = "legend",
    k: int = 3,
    logger=None,
) -> gpd.GeoDataFrame:
    """
    Add one `<factor>.nn` column per risk factor, measured from cell centroids.
    """
    logger = logger or log
    assert_same_crs(fishnet, points, "nn features")

    centroids = cell_centroids(fishnet)
    result = fishnet.copy()
    summary: Dict[str, float] = {}

    for factor in sorted(points[factor_col].dropna().unique()):
        subset = points[points[factor_col] == factor]
        ref_xy = np.column_stack([subset.geometry.x.values, subset.geometry.y.values])
        col = nn_column(factor)
        result[col] = nn_distance(centroids, ref_xy, k, logger=logger)
        summary[col] = float(result[col].mean())

    logger.info(f"Nearest-neighbor features (k={k}): {summary}")
    return result
