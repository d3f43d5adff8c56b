"""
Shared synthetic layers for the unit tests.

Everything sits in ESRI:102271 inside the plausible Chicago extent, so the
bounds checks behave as they do on real data.
"""

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import Point, box

CRS = "ESRI:102271"
ORIGIN_X = 350000.0
ORIGIN_Y = 570000.0
CELL = 500.0


def make_points(xy, crs=CRS, **columns):
    """Point GeoDataFrame from a list of (x, y) offsets from the origin."""
    geoms = [Point(ORIGIN_X + x, ORIGIN_Y + y) for x, y in xy]
    return gpd.GeoDataFrame(columns, geometry=geoms, crs=crs)


def make_boundary(width: float, height: float, crs=CRS) -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(
        geometry=[box(ORIGIN_X, ORIGIN_Y, ORIGIN_X + width, ORIGIN_Y + height)],
        crs=crs,
    )


@pytest.fixture
def boundary_10x10():
    """A 5 km square: exactly 10 x 10 cells of 500 m."""
    return make_boundary(10 * CELL, 10 * CELL)


@pytest.fixture
def boundary_10x1():
    """A 5 km x 500 m strip: one row of 10 cells."""
    return make_boundary(10 * CELL, CELL)


@pytest.fixture
def rng():
    return np.random.default_rng(42)
