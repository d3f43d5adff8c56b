"""
Tests for the KDE surface, raster writing and zonal extraction.
"""

import geopandas as gpd
import numpy as np
import pytest
import rasterio
from shapely.geometry import Polygon

from crime_risk.density import cell_density, kernel_density_surface, write_density_raster
from crime_risk.features import ConfigError
from crime_risk.fishnet import cell_centroids, create_fishnet
from crime_risk.raster_utils import (
    NODATA,
    RasterError,
    check_bounds_overlap,
    compute_nodata_fraction,
    read_raster_metadata,
    zonal_stats_hardened,
)
from crime_risk.schemas import CELL_ID

from conftest import CELL, CRS, ORIGIN_X, ORIGIN_Y, make_points


@pytest.fixture
def events(rng):
    """A tight cluster near the south-west corner plus scattered points."""
    cluster = rng.normal(loc=700, scale=150, size=(80, 2))
    scatter = rng.uniform(0, 10 * CELL, size=(20, 2))
    return make_points(np.vstack([cluster, scatter]).tolist())


@pytest.fixture
def surface(events, boundary_10x10):
    return kernel_density_surface(events, boundary_10x10, bandwidth=500, pixel_size=100)


class TestKernelDensitySurface:
    """Tests for kernel_density_surface."""

    def test_grid_shape(self, surface):
        assert surface.array.shape == (50, 50)

    def test_intensity_positive_inside(self, surface):
        assert np.nanmin(surface.array) > 0
        assert not np.isnan(surface.array).any()

    def test_peak_near_cluster(self, surface):
        row, col = np.unravel_index(np.nanargmax(surface.array), surface.array.shape)
        x, y = surface.transform * (col + 0.5, row + 0.5)
        assert abs(x - (ORIGIN_X + 700)) < 300
        assert abs(y - (ORIGIN_Y + 700)) < 300

    def test_integrates_to_about_n_points(self, events, boundary_10x10):
        wide = kernel_density_surface(events, boundary_10x10, bandwidth=200, pixel_size=50)
        total = np.nansum(wide.array) * 50 * 50
        assert total == pytest.approx(len(events), rel=0.15)

    def test_masked_outside_boundary(self, events):
        triangle = gpd.GeoDataFrame(
            geometry=[Polygon([
                (ORIGIN_X, ORIGIN_Y),
                (ORIGIN_X + 10 * CELL, ORIGIN_Y),
                (ORIGIN_X, ORIGIN_Y + 10 * CELL),
            ])],
            crs=CRS,
        )
        surface = kernel_density_surface(events, triangle, bandwidth=500, pixel_size=100)
        assert np.isnan(surface.array[0, -1])
        assert not np.isnan(surface.array[-1, 0])
        assert 0.4 < compute_nodata_fraction(surface.array) < 0.6

    def test_no_points_raises(self, boundary_10x10):
        with pytest.raises(ConfigError):
            kernel_density_surface(make_points([]), boundary_10x10, bandwidth=500)

    def test_bad_bandwidth_raises(self, events, boundary_10x10):
        with pytest.raises(ConfigError):
            kernel_density_surface(events, boundary_10x10, bandwidth=0)


class TestDensityRaster:
    """Tests for write_density_raster and zonal extraction."""

    def test_written_raster_metadata(self, surface, tmp_path):
        path = write_density_raster(surface, tmp_path / "kde_500.tif")
        meta = read_raster_metadata(path)
        assert (meta.height, meta.width) == surface.array.shape
        assert meta.nodata == NODATA
        assert meta.resolution == pytest.approx((100.0, 100.0))
        assert meta.crs is not None

    def test_nan_written_as_nodata(self, surface, tmp_path):
        surface.array[0, 0] = np.nan
        path = write_density_raster(surface, tmp_path / "kde.tif")
        with rasterio.open(path) as src:
            assert src.read(1)[0, 0] == NODATA

    def test_no_temp_files_left(self, surface, tmp_path):
        write_density_raster(surface, tmp_path / "kde.tif")
        assert [p.name for p in tmp_path.iterdir()] == ["kde.tif"]

    def test_zonal_mean_per_cell(self, surface, boundary_10x10, tmp_path):
        path = write_density_raster(surface, tmp_path / "kde.tif")
        fishnet = create_fishnet(boundary_10x10, CELL)
        result, qa = zonal_stats_hardened(fishnet, path, stats=["mean"])
        assert result["mean"].notna().all()
        assert qa["zero_pixel_polygons"] == 0
        assert qa["min_pixels_per_polygon"] >= 25

    def test_cell_density_matches_surface(self, surface, boundary_10x10, tmp_path):
        path = write_density_raster(surface, tmp_path / "kde.tif")
        fishnet = create_fishnet(boundary_10x10, CELL)
        result = cell_density(fishnet, surface, path, "kde")
        assert (result["kde"] > 0).all()
        hottest = result.loc[result["kde"].idxmax(), "geometry"]
        assert hottest.distance(make_points([(700, 700)]).geometry.iloc[0]) < CELL

    def test_empty_cells_fall_back_to_centroid(self, surface, boundary_10x10, tmp_path):
        surface.array[:, :] = np.nan
        path = write_density_raster(surface, tmp_path / "kde.tif")
        fishnet = create_fishnet(boundary_10x10, CELL)
        result = cell_density(fishnet, surface, path, "kde")
        assert result["kde"].notna().all()
        assert (result["kde"] > 0).all()

    def test_partial_fallback_keeps_zonal_values(self, surface, boundary_10x10, tmp_path):
        # Blank the two bottom cell rows; only the first row touches no valid pixel
        surface.array[-10:, :] = np.nan
        path = write_density_raster(surface, tmp_path / "kde.tif")
        fishnet = create_fishnet(boundary_10x10, CELL)
        zonal, _ = zonal_stats_hardened(fishnet, path, stats=["mean"])
        result = cell_density(fishnet, surface, path, "kde")

        bottom = (result[CELL_ID] <= 10).to_numpy()
        upper = (result[CELL_ID] > 20).to_numpy()
        np.testing.assert_allclose(
            result.loc[bottom, "kde"].to_numpy(),
            surface.evaluate(cell_centroids(fishnet[bottom])),
        )
        np.testing.assert_allclose(
            result.loc[upper, "kde"].to_numpy(), zonal.loc[upper, "mean"].to_numpy(dtype=float)
        )


class TestBoundsOverlap:
    """Tests for check_bounds_overlap."""

    def test_overlap_ok(self):
        assert check_bounds_overlap((0, 0, 10, 10), (5, 5, 15, 15))

    def test_disjoint_raises(self):
        with pytest.raises(RasterError):
            check_bounds_overlap((0, 0, 10, 10), (20, 20, 30, 30))
