"""
Tests for fishnet construction and neighborhood assignment.
"""

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import Polygon, box

from crime_risk.fishnet import assign_cells_to_neighborhoods, cell_centroids, create_fishnet
from crime_risk.qa import CRSError
from crime_risk.schemas import CELL_ID, NEIGHBORHOOD, validate_cell_ids

from conftest import CELL, CRS, ORIGIN_X, ORIGIN_Y


@pytest.fixture
def triangle():
    """Right triangle over a 10 x 10 cell extent; cuts the grid diagonally."""
    poly = Polygon([
        (ORIGIN_X, ORIGIN_Y),
        (ORIGIN_X + 10 * CELL, ORIGIN_Y),
        (ORIGIN_X, ORIGIN_Y + 10 * CELL),
    ])
    return gpd.GeoDataFrame(geometry=[poly], crs=CRS)


class TestCreateFishnet:
    """Tests for create_fishnet."""

    def test_square_boundary_gives_full_grid(self, boundary_10x10):
        fishnet = create_fishnet(boundary_10x10, CELL)
        assert len(fishnet) == 100

    def test_ids_dense_from_one(self, triangle):
        fishnet = create_fishnet(triangle, CELL)
        validate_cell_ids(fishnet, "triangle fishnet")
        assert fishnet[CELL_ID].iloc[0] == 1
        assert fishnet[CELL_ID].is_monotonic_increasing

    def test_every_cell_intersects_boundary(self, triangle):
        fishnet = create_fishnet(triangle, CELL)
        area = triangle.geometry.union_all()
        assert fishnet.geometry.intersects(area).all()
        assert len(fishnet) < 100

    def test_cells_are_unclipped_squares(self, triangle):
        fishnet = create_fishnet(triangle, CELL)
        np.testing.assert_allclose(fishnet.geometry.area, CELL * CELL)

    def test_row_major_bottom_row_first(self, boundary_10x10):
        fishnet = create_fishnet(boundary_10x10, CELL)
        first = fishnet.loc[fishnet[CELL_ID] == 1, "geometry"].iloc[0]
        second = fishnet.loc[fishnet[CELL_ID] == 2, "geometry"].iloc[0]
        eleventh = fishnet.loc[fishnet[CELL_ID] == 11, "geometry"].iloc[0]
        assert first.equals(box(ORIGIN_X, ORIGIN_Y, ORIGIN_X + CELL, ORIGIN_Y + CELL))
        assert second.bounds[0] == pytest.approx(ORIGIN_X + CELL)
        assert eleventh.bounds[1] == pytest.approx(ORIGIN_Y + CELL)

    def test_keeps_boundary_crs(self, boundary_10x10):
        fishnet = create_fishnet(boundary_10x10, CELL)
        assert fishnet.crs.equals(boundary_10x10.crs)

    def test_cell_larger_than_extent(self, boundary_10x10):
        fishnet = create_fishnet(boundary_10x10, 100 * CELL)
        assert len(fishnet) == 1

    @pytest.mark.parametrize("size", [0, -500])
    def test_non_positive_cell_size_raises(self, boundary_10x10, size):
        with pytest.raises(ValueError):
            create_fishnet(boundary_10x10, size)

    def test_empty_boundary_raises(self):
        empty = gpd.GeoDataFrame(geometry=[], crs=CRS)
        with pytest.raises(ValueError):
            create_fishnet(empty, CELL)

    def test_missing_crs_raises(self, boundary_10x10):
        no_crs = gpd.GeoDataFrame(geometry=list(boundary_10x10.geometry))
        with pytest.raises(CRSError):
            create_fishnet(no_crs, CELL)


class TestNeighborhoodAssignment:
    """Tests for assign_cells_to_neighborhoods."""

    @pytest.fixture
    def halves(self):
        """West and east halves of the 10 x 10 extent, plus a gap row on top."""
        west = box(ORIGIN_X, ORIGIN_Y, ORIGIN_X + 5 * CELL, ORIGIN_Y + 9 * CELL)
        east = box(ORIGIN_X + 5 * CELL, ORIGIN_Y, ORIGIN_X + 10 * CELL, ORIGIN_Y + 9 * CELL)
        return gpd.GeoDataFrame({"pri_neigh": ["West", "East"]}, geometry=[west, east], crs=CRS)

    def test_labels_by_centroid(self, boundary_10x10, halves):
        fishnet = create_fishnet(boundary_10x10, CELL)
        result = assign_cells_to_neighborhoods(fishnet, halves, "pri_neigh")
        assert result.loc[result[CELL_ID] == 1, NEIGHBORHOOD].iloc[0] == "West"
        assert result.loc[result[CELL_ID] == 10, NEIGHBORHOOD].iloc[0] == "East"

    def test_uncovered_cells_get_null(self, boundary_10x10, halves):
        fishnet = create_fishnet(boundary_10x10, CELL)
        result = assign_cells_to_neighborhoods(fishnet, halves, "pri_neigh")
        assert result[NEIGHBORHOOD].isna().sum() == 10

    def test_centroid_on_shared_edge_assigned_once(self, boundary_10x10):
        # Column 6 centroids sit on x = 5.5 cells, the line between the two
        split = ORIGIN_X + 5.5 * CELL
        west = box(ORIGIN_X, ORIGIN_Y, split, ORIGIN_Y + 10 * CELL)
        east = box(split, ORIGIN_Y, ORIGIN_X + 10 * CELL, ORIGIN_Y + 10 * CELL)
        hoods = gpd.GeoDataFrame({"pri_neigh": ["West", "East"]}, geometry=[west, east], crs=CRS)

        fishnet = create_fishnet(boundary_10x10, CELL)
        result = assign_cells_to_neighborhoods(fishnet, hoods, "pri_neigh")
        assert result[NEIGHBORHOOD].notna().all()
        assert len(result) == len(fishnet)
        assert not result[CELL_ID].duplicated().any()

    def test_one_row_per_cell(self, boundary_10x10, halves):
        fishnet = create_fishnet(boundary_10x10, CELL)
        result = assign_cells_to_neighborhoods(fishnet, halves, "pri_neigh")
        assert len(result) == len(fishnet)
        assert not result[CELL_ID].duplicated().any()


class TestCellCentroids:
    """Tests for cell_centroids."""

    def test_first_centroid(self, boundary_10x10):
        xy = cell_centroids(create_fishnet(boundary_10x10, CELL))
        assert xy.shape == (100, 2)
        np.testing.assert_allclose(xy[0], [ORIGIN_X + CELL / 2, ORIGIN_Y + CELL / 2])
