"""
Kernel density baseline.

A Gaussian KDE of the event points is evaluated at the pixel centres of a
regular raster over the boundary extent, scaled to an intensity (points per
square metre) and masked to the boundary. The per-cell value is the mean of
the pixels each fishnet cell touches.
"""

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

import geopandas as gpd
import numpy as np
import pandas as pd
from rasterio.features import geometry_mask
from rasterio.transform import Affine, from_origin
from sklearn.neighbors import KernelDensity

from crime_risk.features import ConfigError
from crime_risk.fishnet import cell_centroids
from crime_risk.qa import assert_same_crs
from crime_risk.raster_utils import NODATA, log_raster_qa, write_raster, zonal_stats_hardened

log = logging.getLogger(__name__)

DEFAULT_PIXEL_SIZE = 100.0


@dataclass
class DensitySurface:
    """A fitted KDE and its rasterized intensity (NaN outside the boundary)."""
    array: np.ndarray
    transform: Affine
    crs: Any
    bandwidth: float
    n_points: int
    model: KernelDensity

    def evaluate(self, xy: np.ndarray) -> np.ndarray:
        """Intensity at arbitrary (n, 2) coordinates."""
        xy = np.asarray(xy, dtype=float).reshape(-1, 2)
        if len(xy) == 0:
            return np.empty(0, dtype=float)
        return np.exp(self.model.score_samples(xy)) * self.n_points


def kernel_density_surface(
    points: gpd.GeoDataFrame,
    boundary: gpd.GeoDataFrame,
    bandwidth: float,
    pixel_size: float = DEFAULT_PIXEL_SIZE,
    logger=None,
) -> DensitySurface:
    """
    Fit a Gaussian KDE to `points` and rasterize it over `boundary`.

    Raises:
        ConfigError: If there are no points or bandwidth/pixel_size are not positive
    """
    logger = logger or log
    if bandwidth <= 0 or pixel_size <= 0:
        raise ConfigError(f"bandwidth and pixel_size must be positive (got {bandwidth}, {pixel_size})")
    if len(points) == 0:
        raise ConfigError("No points for kernel density")
    assert_same_crs(points, boundary, "kernel density")

    xy = np.column_stack([points.geometry.x.values, points.geometry.y.values])
    model = KernelDensity(kernel="gaussian", bandwidth=bandwidth).fit(xy)

    minx, miny, maxx, maxy = boundary.total_bounds
    width = max(1, math.ceil((maxx - minx) / pixel_size))
    height = max(1, math.ceil((maxy - miny) / pixel_size))
    transform = from_origin(minx, maxy, pixel_size, pixel_size)

    xs = minx + (np.arange(width) + 0.5) * pixel_size
    ys = maxy - (np.arange(height) + 0.5) * pixel_size
    xx, yy = np.meshgrid(xs, ys)

    # geometry_mask is True outside the shapes
    outside = geometry_mask(boundary.geometry, out_shape=(height, width), transform=transform)
    inside = ~outside

    array = np.full((height, width), np.nan)
    surface = DensitySurface(array, transform, boundary.crs, float(bandwidth), len(xy), model)
    array[inside] = surface.evaluate(np.column_stack([xx[inside], yy[inside]]))

    logger.info(
        f"KDE (bandwidth={bandwidth}): {len(xy):,} points, {width}x{height} pixels of {pixel_size} m, "
        f"{int(inside.sum()):,} inside boundary"
    )
    return surface


def write_density_raster(surface: DensitySurface, path: Union[str, Path]) -> Path:
    """Write the surface as a GeoTIFF (pixels outside the boundary = nodata)."""
    return write_raster(surface.array, surface.transform, surface.crs, path, nodata=NODATA)


def cell_density(
    fishnet: gpd.GeoDataFrame,
    surface: DensitySurface,
    raster_path: Union[str, Path],
    out_col: str = "kde",
    logger=None,
) -> gpd.GeoDataFrame:
    """
    Mean KDE intensity per fishnet cell from the written raster.

    Cells touching no valid pixel take the KDE evaluated at their centroid.
    """
    logger = logger or log
    zonal, qa_stats = zonal_stats_hardened(
        fishnet, raster_path, stats=["mean"], nodata=NODATA, all_touched=True
    )
    log_raster_qa(qa_stats, logger)

    values = pd.to_numeric(zonal["mean"], errors="coerce").to_numpy(dtype=float, copy=True)
    missing = np.isnan(values)
    if missing.any():
        values[missing] = surface.evaluate(cell_centroids(fishnet[missing]))
        logger.info(f"{int(missing.sum())} cells had no valid pixels; used KDE at centroid")

    result = fishnet.copy()
    result[out_col] = values
    return result
