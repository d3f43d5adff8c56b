"""
Point-to-cell spatial joins.

A point belongs to the cell that contains it; a point on a shared edge goes
to the lower-numbered cell so it is counted exactly once. Counts are merged
back onto the full fishnet so cells with no points report 0, never NaN.
Points that land in no cell are dropped and reported in the join stats.
"""

import logging
from typing import Dict, Tuple

import geopandas as gpd

from crime_risk.qa import CRSError, assert_same_crs
from crime_risk.schemas import CELL_ID

log = logging.getLogger(__name__)


class SpatialJoinError(Exception):
    """Raised when a spatial join cannot be performed as requested."""
    pass


def _join_points(points: gpd.GeoDataFrame, fishnet: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    if CELL_ID not in fishnet.columns:
        raise SpatialJoinError(f"Fishnet has no {CELL_ID} column")
    try:
        assert_same_crs(points, fishnet, "points to fishnet")
    except CRSError as e:
        raise SpatialJoinError(str(e)) from e

    return gpd.sjoin(
        points.reset_index(drop=True),
        fishnet[[CELL_ID, "geometry"]],
        how="inner",
        predicate="intersects",
    )


def clip_points_to_boundary(
    points: gpd.GeoDataFrame,
    boundary: gpd.GeoDataFrame,
    logger=None,
) -> gpd.GeoDataFrame:
    """
    Keep only points that intersect the study boundary.

    Edge cells of the fishnet are unclipped squares, so a point can sit in a
    kept cell while lying outside the city. Filtering first makes the summed
    cell counts equal the number of points inside the boundary.
    """
    logger = logger or log
    try:
        assert_same_crs(points, boundary, "points to boundary")
    except CRSError as e:
        raise SpatialJoinError(str(e)) from e

    outline = boundary.geometry.union_all()
    inside = points[points.geometry.intersects(outline)].reset_index(drop=True)

    dropped = len(points) - len(inside)
    logger.info(f"Boundary filter: kept {len(inside):,} of {len(points):,} points ({dropped:,} outside)")
    return inside


def count_points_in_cells(
    fishnet: gpd.GeoDataFrame,
    points: gpd.GeoDataFrame,
    count_col: str = "count",
    logger=None,
) -> Tuple[gpd.GeoDataFrame, Dict]:
    """
    Count points per fishnet cell.

    Args:
        fishnet: Cells with `uniqueID`
        points: Points in the same CRS
        count_col: Name of the output count column

    Returns:
        (fishnet with `count_col` as int64, join stats dict)

    Raises:
        SpatialJoinError: On missing id column or CRS mismatch
    """
    logger = logger or log
    joined = _join_points(points, fishnet)

    # A point on a shared edge touches two cells; keep the lower uniqueID
    joined = joined.sort_values(CELL_ID, kind="stable")
    joined = joined[~joined.index.duplicated(keep="first")]

    counts = joined.groupby(CELL_ID).size().reset_index(name=count_col)
    result = fishnet.drop(columns=[count_col], errors="ignore").merge(
        counts, on=CELL_ID, how="left", validate="one_to_one"
    )
    result[count_col] = result[count_col].fillna(0).astype("int64")

    stats = {
        "total_points": int(len(points)),
        "matched": int(len(joined)),
        "unmatched": int(len(points) - len(joined)),
        "cells_with_points": int((result[count_col] > 0).sum()),
        "total_cells": int(len(result)),
    }
    log_join_stats(stats, logger, label=count_col)

    return result, stats


def count_points_by_factor(
    fishnet: gpd.GeoDataFrame,
    points: gpd.GeoDataFrame,
    factor_col: str = "legend",
    logger=None,
) -> Tuple[gpd.GeoDataFrame, Dict[str, Dict]]:
    """
    Count points per cell for every distinct value of `factor_col`.

    Returns:
        (fishnet with one int64 count column per factor, stats per factor)
    """
    logger = logger or log
    result = fishnet
    all_stats = {}

    for factor in sorted(points[factor_col].dropna().unique()):
        subset = points[points[factor_col] == factor]
        result, all_stats[factor] = count_points_in_cells(result, subset, count_col=factor, logger=logger)

    return result, all_stats


def log_join_stats(stats: Dict, logger=None, label: str = "") -> None:
    """Log a one-line join summary, with the stats dict attached as extra."""
    prefix = f"[{label}] " if label else ""
    msg = (
        f"{prefix}Spatial join: {stats['total_points']:,} points, "
        f"{stats['matched']:,} in cells, {stats['unmatched']:,} outside, "
        f"{stats['cells_with_points']:,} / {stats['total_cells']:,} cells non-empty"
    )
    (logger or log).info(msg, extra={"join_stats": stats})

