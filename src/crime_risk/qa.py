"""
Quality assurance utilities for geospatial data.

CRS mismatches are hard errors; layers are only ever moved between CRSs with
to_crs(), never relabelled with set_crs(). Bounds are sanity-checked against
the Chicago extent after every reprojection.
"""

from typing import Optional, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
from pyproj import CRS

# Planar CRS for all distance work: NAD83(HARN) / Illinois East, metres
DEFAULT_CRS = "ESRI:102271"

# Plausible Chicago extent per CRS: (minx, miny, maxx, maxy)
CHICAGO_BOUNDS = {
    "EPSG:4326": (-88.0, 41.6, -87.5, 42.1),
    "ESRI:102271": (320000.0, 540000.0, 380000.0, 610000.0),
}

CRSLike = Union[int, str, CRS]


class CRSError(Exception):
    """Raised when CRS validation fails."""
    pass


class BoundsError(Exception):
    """Raised when bounds validation fails."""
    pass


def _as_crs(crs: CRSLike) -> CRS:
    if isinstance(crs, int):
        return CRS.from_epsg(crs)
    return CRS.from_user_input(crs)


def assert_crs_not_none(gdf: gpd.GeoDataFrame, context: str = "") -> None:
    """
    Raise CRSError if the GeoDataFrame has no CRS.
    """
    if gdf.crs is None:
        msg = "GeoDataFrame has no CRS set"
        if context:
            msg = f"{msg} ({context})"
        raise CRSError(msg)


def assert_same_crs(left: gpd.GeoDataFrame, right: gpd.GeoDataFrame, context: str = "") -> None:
    """Raise CRSError unless both layers carry the same CRS."""
    assert_crs_not_none(left, context)
    assert_crs_not_none(right, context)
    if not left.crs.equals(right.crs):
        msg = f"CRS mismatch: {left.crs.to_string()} vs {right.crs.to_string()}"
        if context:
            msg = f"{msg} ({context})"
        raise CRSError(msg)


def safe_reproject(
    gdf: gpd.GeoDataFrame,
    target_crs: CRSLike = DEFAULT_CRS,
    context: str = "",
) -> gpd.GeoDataFrame:
    """
    Reproject a GeoDataFrame, refusing layers without a CRS.

    Args:
        gdf: GeoDataFrame to reproject
        target_crs: EPSG code, authority string or pyproj CRS
        context: Optional context string for error message

    Returns:
        Reprojected GeoDataFrame (the input itself if already in target CRS)

    Raises:
        CRSError: If source CRS is None
    """
    assert_crs_not_none(gdf, context)

    target = _as_crs(target_crs)
    if gdf.crs.equals(target):
        return gdf

    return gdf.to_crs(target)


def crs_key(gdf: gpd.GeoDataFrame) -> Optional[str]:
    """Return 'AUTH:CODE' for the layer's CRS, or None if unidentifiable."""
    if gdf.crs is None:
        return None
    authority = gdf.crs.to_authority()
    if authority is None:
        return None
    return f"{authority[0]}:{authority[1]}"


# =============================================================================
# Bounds Validation
# =============================================================================

def get_bounds(gdf: gpd.GeoDataFrame) -> Tuple[float, float, float, float]:
    """Bounds of a GeoDataFrame as (minx, miny, maxx, maxy)."""
    return tuple(gdf.total_bounds)


def validate_bounds(gdf: gpd.GeoDataFrame, context: str = "") -> bool:
    """
    Check that a layer lies within the plausible Chicago extent.

    Layers in a CRS without a registered extent only need finite bounds.

    Raises:
        CRSError: If CRS is None
        BoundsError: If bounds are outside the expected range
    """
    assert_crs_not_none(gdf, context)

    minx, miny, maxx, maxy = get_bounds(gdf)
    if not np.all(np.isfinite([minx, miny, maxx, maxy])):
        raise BoundsError(f"Non-finite bounds: {(minx, miny, maxx, maxy)} ({context})")

    expected = CHICAGO_BOUNDS.get(crs_key(gdf))
    if expected is None:
        return True

    x_min, y_min, x_max, y_max = expected
    errors = []
    if minx < x_min or maxx > x_max:
        errors.append(f"X out of range: [{minx}, {maxx}] not in [{x_min}, {x_max}]")
    if miny < y_min or maxy > y_max:
        errors.append(f"Y out of range: [{miny}, {maxy}] not in [{y_min}, {y_max}]")

    if errors:
        msg = f"{crs_key(gdf)} bounds check failed: " + "; ".join(errors)
        if context:
            msg = f"{msg} ({context})"
        raise BoundsError(msg)

    return True


# =============================================================================
# Geometry Validation
# =============================================================================

def assert_all_valid(gdf: gpd.GeoDataFrame, context: str = "") -> None:
    """
    Raise ValueError if any geometry is invalid or empty.
    """
    bad = ~gdf.geometry.is_valid | gdf.geometry.is_empty
    if bad.any():
        msg = f"{int(bad.sum())} invalid or empty geometries found"
        if context:
            msg = f"{msg} ({context})"
        raise ValueError(msg)


def compute_na_rates(df: pd.DataFrame) -> dict[str, float]:
    """NA rate (0-1) per column."""
    if len(df) == 0:
        return {col: 0.0 for col in df.columns}
    return (df.isna().sum() / len(df)).to_dict()
