"""
Fishnet construction: a regular square grid over the study area.

Cells are axis-aligned squares laid over the boundary's bounding box. Cells
that touch the boundary are kept whole (not clipped) and numbered 1..n in
row-major order, bottom row first. That number, `uniqueID`, is the join key
for every later stage.
"""

import logging

import geopandas as gpd
import numpy as np
from shapely.geometry import box

from crime_risk.qa import assert_crs_not_none, assert_same_crs
from crime_risk.schemas import CELL_ID, FISHNET_SCHEMA, NEIGHBORHOOD, validate_schema

log = logging.getLogger(__name__)


def create_fishnet(
    boundary: gpd.GeoDataFrame,
    cell_size: float,
    logger=None,
) -> gpd.GeoDataFrame:
    """
    Tile the boundary's extent into squares and keep those touching it.

    Args:
        boundary: Study-area polygons in a planar CRS (unioned before use)
        cell_size: Side length in CRS units

    Returns:
        GeoDataFrame with `uniqueID` (1..n) and square cell geometry

    Raises:
        ValueError: If cell_size is not positive or the boundary is empty
        CRSError: If the boundary has no CRS
    """
    logger = logger or log
    assert_crs_not_none(boundary, "fishnet boundary")

    if cell_size <= 0:
        raise ValueError(f"cell_size must be positive, got {cell_size}")
    if len(boundary) == 0 or boundary.geometry.is_empty.all():
        raise ValueError("Boundary is empty; cannot build a fishnet")

    study_area = boundary.geometry.union_all()
    minx, miny, maxx, maxy = study_area.bounds

    n_cols = max(int(np.ceil((maxx - minx) / cell_size)), 1)
    n_rows = max(int(np.ceil((maxy - miny) / cell_size)), 1)
    logger.info(f"Fishnet extent: {n_cols} cols x {n_rows} rows = {n_cols * n_rows:,} candidate cells")

    cells = [
        box(
            minx + col * cell_size,
            miny + row * cell_size,
            minx + (col + 1) * cell_size,
            miny + (row + 1) * cell_size,
        )
        for row in range(n_rows)
        for col in range(n_cols)
    ]
    grid = gpd.GeoDataFrame(geometry=cells, crs=boundary.crs)

    keep = grid.geometry.intersects(study_area)
    fishnet = grid[keep].reset_index(drop=True)
    fishnet.insert(0, CELL_ID, np.arange(1, len(fishnet) + 1, dtype="int64"))

    logger.info(f"Kept {len(fishnet):,} cells touching the boundary (dropped {int((~keep).sum()):,})")

    validate_schema(fishnet, FISHNET_SCHEMA, "create_fishnet")
    return fishnet


def assign_cells_to_neighborhoods(
    fishnet: gpd.GeoDataFrame,
    neighborhoods: gpd.GeoDataFrame,
    name_col: str = "name",
    logger=None,
) -> gpd.GeoDataFrame:
    """
    Label each cell with the neighborhood containing its centroid.

    Cells whose centroid falls in no neighborhood get a null `name`. A
    centroid on a shared edge, or inside overlapping neighborhoods, takes
    the first match so each cell appears once.
    """
    logger = logger or log
    assert_same_crs(fishnet, neighborhoods, "cells to neighborhoods")

    centroids = gpd.GeoDataFrame(
        {CELL_ID: fishnet[CELL_ID].values},
        geometry=fishnet.geometry.centroid.values,
        crs=fishnet.crs,
    )
    hoods = neighborhoods[[name_col, "geometry"]].rename(columns={name_col: NEIGHBORHOOD})

    joined = gpd.sjoin(centroids, hoods, how="left", predicate="intersects")
    joined = joined.drop_duplicates(subset=CELL_ID)

    result = fishnet.drop(columns=[NEIGHBORHOOD], errors="ignore").merge(
        joined[[CELL_ID, NEIGHBORHOOD]],
        on=CELL_ID,
        how="left",
        validate="one_to_one",
    )

    unassigned = int(result[NEIGHBORHOOD].isna().sum())
    logger.info(
        f"Cells assigned to neighborhoods: {len(result) - unassigned:,} / {len(result):,} "
        f"({result[NEIGHBORHOOD].nunique()} neighborhoods)"
    )
    return result


def cell_centroids(fishnet: gpd.GeoDataFrame) -> np.ndarray:
    """Centroid coordinates as an (n, 2) array, in fishnet row order."""
    centroids = fishnet.geometry.centroid
    return np.column_stack([centroids.x.values, centroids.y.values])
