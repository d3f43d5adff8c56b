"""
Tests for point-to-cell counting.
"""

import geopandas as gpd
import pytest
from shapely.geometry import Polygon

from crime_risk.fishnet import create_fishnet
from crime_risk.joins import (
    SpatialJoinError,
    clip_points_to_boundary,
    count_points_by_factor,
    count_points_in_cells,
)
from crime_risk.schemas import CELL_ID

from conftest import CELL, CRS, ORIGIN_X, ORIGIN_Y, make_points


@pytest.fixture
def strip(boundary_10x1):
    return create_fishnet(boundary_10x1, CELL)


class TestCountPointsInCells:
    """Tests for count_points_in_cells."""

    def test_three_points_in_cell_four(self, strip):
        points = make_points([(3 * CELL + 100, 100), (3 * CELL + 250, 250), (3 * CELL + 400, 50)])
        result, stats = count_points_in_cells(strip, points, "count")
        assert result.sort_values(CELL_ID)["count"].tolist() == [0, 0, 0, 3, 0, 0, 0, 0, 0, 0]
        assert stats["matched"] == 3
        assert stats["cells_with_points"] == 1

    def test_counts_are_int64_and_zero_filled(self, strip):
        points = make_points([(10, 10)])
        result, _ = count_points_in_cells(strip, points, "count")
        assert str(result["count"].dtype) == "int64"
        assert result["count"].notna().all()
        assert (result["count"] >= 0).all()

    def test_sum_equals_points_inside(self, boundary_10x10, rng):
        fishnet = create_fishnet(boundary_10x10, CELL)
        xy = rng.uniform(0, 10 * CELL, size=(250, 2))
        points = make_points(xy.tolist())
        result, stats = count_points_in_cells(fishnet, points, "count")
        assert result["count"].sum() == 250
        assert stats["unmatched"] == 0

    def test_outside_points_dropped_and_reported(self, strip):
        points = make_points([(100, 100), (100, 5 * CELL), (-CELL, 100)])
        result, stats = count_points_in_cells(strip, points, "count")
        assert result["count"].sum() == 1
        assert stats["unmatched"] == 2

    def test_edge_point_counted_once_in_lower_cell(self, strip):
        points = make_points([(CELL, 100)])
        result, stats = count_points_in_cells(strip, points, "count")
        assert result["count"].sum() == 1
        assert result.loc[result[CELL_ID] == 1, "count"].iloc[0] == 1
        assert stats["matched"] == 1

    def test_no_points_gives_all_zero(self, strip):
        points = make_points([])
        result, _ = count_points_in_cells(strip, points, "count")
        assert (result["count"] == 0).all()
        assert len(result) == len(strip)

    def test_input_not_mutated(self, strip):
        before = strip.copy()
        count_points_in_cells(strip, make_points([(10, 10)]), "count")
        assert list(strip.columns) == list(before.columns)

    def test_crs_mismatch_raises(self, strip):
        points = make_points([(10, 10)]).set_crs("EPSG:3435", allow_override=True)
        with pytest.raises(SpatialJoinError):
            count_points_in_cells(strip, points, "count")

    def test_missing_id_column_raises(self, strip):
        with pytest.raises(SpatialJoinError):
            count_points_in_cells(strip.drop(columns=[CELL_ID]), make_points([(10, 10)]), "count")


class TestCountPointsByFactor:
    """Tests for count_points_by_factor."""

    def test_one_column_per_factor(self, strip):
        points = make_points(
            [(100, 100), (600, 100), (700, 100), (100, 200)],
            legend=["Abandoned_Cars", "Abandoned_Cars", "ShotSpotter", "ShotSpotter"],
        )
        result, stats = count_points_by_factor(strip, points, "legend")
        assert result["Abandoned_Cars"].tolist()[:2] == [1, 1]
        assert result["ShotSpotter"].tolist()[:2] == [1, 1]
        assert set(stats) == {"Abandoned_Cars", "ShotSpotter"}
        assert result["Abandoned_Cars"].sum() + result["ShotSpotter"].sum() == 4


class TestClipPointsToBoundary:
    """Tests for clip_points_to_boundary on a boundary that cuts edge cells."""

    @pytest.fixture
    def triangle(self):
        poly = Polygon([
            (ORIGIN_X, ORIGIN_Y),
            (ORIGIN_X + 10 * CELL, ORIGIN_Y),
            (ORIGIN_X, ORIGIN_Y + 10 * CELL),
        ])
        return gpd.GeoDataFrame(geometry=[poly], crs=CRS)

    def test_point_in_edge_cell_outside_boundary_not_counted(self, triangle):
        fishnet = create_fishnet(triangle, CELL)
        # (4900, 400) is in the kept bottom-right cell but past the hypotenuse
        points = make_points([(4900, 400), (4600, 100), (100, 100)])
        inside = clip_points_to_boundary(points, triangle)
        result, stats = count_points_in_cells(fishnet, inside, "count")
        assert len(inside) == 2
        assert result["count"].sum() == 2
        assert stats["unmatched"] == 0

    def test_sum_equals_points_inside_boundary(self, triangle, rng):
        fishnet = create_fishnet(triangle, CELL)
        xy = rng.uniform(0, 10 * CELL, size=(300, 2))
        expected = int((xy.sum(axis=1) < 10 * CELL).sum())
        inside = clip_points_to_boundary(make_points(xy.tolist()), triangle)
        result, _ = count_points_in_cells(fishnet, inside, "count")
        assert len(inside) == expected
        assert result["count"].sum() == expected

    def test_columns_kept(self, triangle):
        points = make_points([(100, 100), (4900, 400)], legend=["ShotSpotter", "ShotSpotter"])
        inside = clip_points_to_boundary(points, triangle)
        assert inside["legend"].tolist() == ["ShotSpotter"]
        assert inside.crs == points.crs

    def test_crs_mismatch_raises(self, triangle):
        points = make_points([(100, 100)]).set_crs("EPSG:3435", allow_override=True)
        with pytest.raises(SpatialJoinError):
            clip_points_to_boundary(points, triangle)
