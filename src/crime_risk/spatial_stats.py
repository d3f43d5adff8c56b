"""
Spatial dependence diagnostics: queen weights, local and global Moran's I.

Islands policy: a unit with no queen neighbor is excluded from the
statistic. It gets localI = NaN, p_value = NaN and is_sig = 0, and the
island count is logged. The same policy applies wherever weights are built
(fishnet cells and neighborhoods).
"""

import logging
from typing import Dict, List, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from esda.moran import Moran, Moran_Local
from libpysal.weights import Queen, W

from crime_risk.features import ConfigError, nn_distance
from crime_risk.fishnet import cell_centroids
from crime_risk.schemas import CELL_ID, IS_SIG, IS_SIG_NN, LOCAL_I, P_VALUE

log = logging.getLogger(__name__)

DEFAULT_PERMUTATIONS = 999
DEFAULT_THRESHOLD = 0.001


def queen_weights(gdf: gpd.GeoDataFrame, id_col: str = CELL_ID) -> W:
    """Row-standardized queen contiguity weights keyed by `id_col`."""
    w = Queen.from_dataframe(gdf, ids=gdf[id_col].tolist(), silence_warnings=True)
    w.transform = "r"
    return w


def split_islands(
    gdf: gpd.GeoDataFrame,
    id_col: str = CELL_ID,
    logger=None,
) -> Tuple[gpd.GeoDataFrame, List]:
    """
    Separate units with at least one queen neighbor from islands.

    Returns:
        (connected units, list of island ids)
    """
    logger = logger or log
    w = queen_weights(gdf, id_col)
    islands = list(w.islands)
    if islands:
        logger.warning(f"{len(islands)} unit(s) have no queen neighbors and are excluded: {islands[:10]}")
    connected = gdf[~gdf[id_col].isin(islands)]
    return connected, islands


def local_morans_i(
    gdf: gpd.GeoDataFrame,
    value_col: str,
    id_col: str = CELL_ID,
    permutations: int = DEFAULT_PERMUTATIONS,
    seed: int = 12345,
    threshold: float = DEFAULT_THRESHOLD,
    logger=None,
) -> gpd.GeoDataFrame:
    """
    Local Moran's I with a conditional-permutation null.

    Adds `localI`, `p_value` (pseudo p-value) and `is_sig`
    (1 if p_value <= threshold, else 0). Note the smallest attainable
    pseudo p-value is 1 / (permutations + 1).
    """
    logger = logger or log
    result = gdf.copy()
    result[LOCAL_I] = np.nan
    result[P_VALUE] = np.nan

    connected, islands = split_islands(gdf, id_col, logger)
    y = connected[value_col].astype(float).values

    if len(connected) == 0:
        logger.warning("Every unit is an island; local Moran's I not computed")
    elif np.nanstd(y) == 0:
        logger.warning(f"{value_col} is constant across connected units; local Moran's I not computed")
    else:
        w = queen_weights(connected, id_col)
        lisa = Moran_Local(y, w, transformation="r", permutations=permutations, seed=seed)
        stats = pd.DataFrame({id_col: connected[id_col].values, LOCAL_I: lisa.Is, P_VALUE: lisa.p_sim})
        result = result.drop(columns=[LOCAL_I, P_VALUE]).merge(stats, on=id_col, how="left")

    result[IS_SIG] = (result[P_VALUE] <= threshold).astype("int64")

    logger.info(
        f"Local Moran's I on {value_col}: {int(result[IS_SIG].sum())} significant "
        f"(p <= {threshold}) of {len(result)}; {len(islands)} islands"
    )
    return result


def nearest_significant_distance(
    fishnet: gpd.GeoDataFrame,
    sig_col: str = IS_SIG,
    out_col: str = IS_SIG_NN,
    logger=None,
) -> gpd.GeoDataFrame:
    """
    Distance from each cell centroid to the nearest significant cell centroid.

    Significant cells get 0.

    Raises:
        ConfigError: If no cell is significant
    """
    sig = fishnet[fishnet[sig_col] == 1]
    if len(sig) == 0:
        raise ConfigError(f"No cells flagged in {sig_col}; cannot compute {out_col}")

    result = fishnet.copy()
    result[out_col] = nn_distance(cell_centroids(fishnet), cell_centroids(sig), k=1, logger=logger)
    return result


def global_morans_i(
    gdf: gpd.GeoDataFrame,
    value_col: str,
    id_col: str,
    permutations: int = DEFAULT_PERMUTATIONS,
    seed: int = 12345,
    logger=None,
) -> Dict[str, float]:
    """
    Global Moran's I and its permutation pseudo p-value.

    Islands are excluded, as for the local statistic. Returns NaNs when fewer
    than two connected units remain or the values are constant.
    """
    logger = logger or log
    connected, islands = split_islands(gdf.dropna(subset=[value_col]), id_col, logger)
    y = connected[value_col].astype(float).values

    if len(connected) < 2 or np.std(y) == 0:
        logger.warning(f"Global Moran's I on {value_col} not computed ({len(connected)} connected units)")
        return {"morans_i": np.nan, "p_value": np.nan, "n_units": len(connected), "n_islands": len(islands)}

    # esda's global Moran draws permutations from numpy's global state
    np.random.seed(seed)
    mi = Moran(y, queen_weights(connected, id_col), transformation="r", permutations=permutations)

    return {
        "morans_i": float(mi.I),
        "p_value": float(mi.p_sim),
        "n_units": len(connected),
        "n_islands": len(islands),
    }
