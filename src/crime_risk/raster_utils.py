"""
Raster I/O and zonal statistics with alignment checks.

Before any per-cell statistic is taken, the raster's CRS and bounds are read
and the polygons are reprojected and checked for overlap. Nodata is always
passed explicitly. The number of pixels behind each cell's value is kept
for QA.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import geopandas as gpd
import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterstats import zonal_stats

from crime_risk.io_utils import staged_path
from crime_risk.qa import safe_reproject

log = logging.getLogger(__name__)

NODATA = -9999.0


class RasterError(Exception):
    """Raised when raster operations fail validation."""
    pass


@dataclass
class RasterMetadata:
    """Metadata for a raster file."""
    path: Path
    crs: CRS
    bounds: Tuple[float, float, float, float]  # (left, bottom, right, top)
    width: int
    height: int
    nodata: Optional[float]
    transform: Any  # Affine

    @property
    def resolution(self) -> Tuple[float, float]:
        """Pixel size (x, y)."""
        return abs(self.transform.a), abs(self.transform.e)


def read_raster_metadata(path: Union[str, Path]) -> RasterMetadata:
    """Read raster metadata without loading the band."""
    path = Path(path)
    with rasterio.open(path) as src:
        return RasterMetadata(
            path=path,
            crs=src.crs,
            bounds=tuple(src.bounds),
            width=src.width,
            height=src.height,
            nodata=src.nodata,
            transform=src.transform,
        )


def write_raster(
    array: np.ndarray,
    transform,
    crs,
    path: Union[str, Path],
    nodata: float = NODATA,
) -> Path:
    """
    Atomically write a single-band float32 GeoTIFF.

    NaNs in `array` are written as `nodata`.
    """
    path = Path(path)
    if hasattr(crs, "to_wkt"):
        crs = crs.to_wkt()
    data = np.where(np.isnan(array), nodata, array).astype("float32")

    with staged_path(path, suffix=".tif") as temp_path:
        with rasterio.open(
            temp_path,
            "w",
            driver="GTiff",
            height=data.shape[0],
            width=data.shape[1],
            count=1,
            dtype="float32",
            crs=crs,
            transform=transform,
            nodata=nodata,
        ) as dst:
            dst.write(data, 1)

    return path


def check_bounds_overlap(
    raster_bounds: Tuple[float, float, float, float],
    polygon_bounds: Tuple[float, float, float, float],
    context: str = "",
) -> bool:
    """
    Raise RasterError unless raster and polygon bounds overlap.
    """
    r_left, r_bottom, r_right, r_top = raster_bounds
    p_minx, p_miny, p_maxx, p_maxy = polygon_bounds

    overlaps = not (
        r_right < p_minx
        or r_left > p_maxx
        or r_top < p_miny
        or r_bottom > p_maxy
    )
    if not overlaps:
        raise RasterError(
            f"Raster and polygon bounds do not overlap. "
            f"Raster: {raster_bounds}, Polygons: {polygon_bounds} ({context})"
        )
    return True


def zonal_stats_hardened(
    polygons: gpd.GeoDataFrame,
    raster_path: Union[str, Path],
    stats: Optional[List[str]] = None,
    nodata: Optional[float] = None,
    all_touched: bool = True,
    prefix: str = "",
) -> Tuple[gpd.GeoDataFrame, Dict]:
    """
    Per-polygon raster statistics after CRS and overlap checks.

    Args:
        polygons: Polygons (any CRS; reprojected to the raster's)
        raster_path: Path to a single-band raster
        stats: Statistics to compute (default ["mean"])
        nodata: Overrides the raster's nodata value if given
        all_touched: Include every pixel the polygon touches
        prefix: Prefix for output column names

    Returns:
        (copy of polygons with stat columns and `<prefix>pixel_count`, QA dict)

    Raises:
        RasterError: If polygons lack a CRS or bounds do not overlap
    """
    stats = stats or ["mean"]
    raster_path = Path(raster_path)
    meta = read_raster_metadata(raster_path)
    effective_nodata = nodata if nodata is not None else meta.nodata

    if polygons.crs is None:
        raise RasterError("Polygons have no CRS set")
    polygons_proj = safe_reproject(polygons, meta.crs, "polygons for zonal stats")

    check_bounds_overlap(meta.bounds, tuple(polygons_proj.total_bounds), f"raster: {raster_path.name}")

    results = zonal_stats(
        polygons_proj.geometry,
        str(raster_path),
        stats=sorted(set(stats) | {"count"}),
        nodata=effective_nodata,
        all_touched=all_touched,
    )

    result_df = polygons.copy()
    for stat in stats:
        result_df[f"{prefix}{stat}"] = [r.get(stat) if r else None for r in results]

    pixel_counts = [r.get("count", 0) if r else 0 for r in results]
    result_df[f"{prefix}pixel_count"] = pixel_counts

    qa_stats = {
        "raster_path": str(raster_path),
        "raster_crs": str(meta.crs),
        "raster_resolution": meta.resolution,
        "raster_nodata": effective_nodata,
        "polygon_count": len(polygons),
        "total_pixels": int(sum(pixel_counts)),
        "min_pixels_per_polygon": int(min(pixel_counts)) if pixel_counts else 0,
        "max_pixels_per_polygon": int(max(pixel_counts)) if pixel_counts else 0,
        "mean_pixels_per_polygon": float(np.mean(pixel_counts)) if pixel_counts else 0.0,
        "zero_pixel_polygons": sum(1 for c in pixel_counts if c == 0),
    }
    return result_df, qa_stats


def compute_nodata_fraction(values: np.ndarray, nodata: Optional[float] = None) -> float:
    """Fraction (0-1) of NaN or nodata cells in an array."""
    mask = np.isnan(values)
    if nodata is not None:
        mask = mask | (values == nodata)
    return float(mask.sum() / values.size) if values.size > 0 else 0.0


def log_raster_qa(qa_stats: Dict, logger=None) -> None:
    """One-line summary of zonal QA stats."""
    msg = (
        f"Raster QA: {qa_stats['polygon_count']} polygons, "
        f"{qa_stats['total_pixels']} total pixels, "
        f"min={qa_stats['min_pixels_per_polygon']}, "
        f"max={qa_stats['max_pixels_per_polygon']}, "
        f"mean={qa_stats['mean_pixels_per_polygon']:.1f}, "
        f"zero_pixel={qa_stats['zero_pixel_polygons']}"
    )
    (logger or log).info(msg, extra={"raster_qa": qa_stats})
