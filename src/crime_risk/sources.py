"""
Point and boundary layers from the Chicago Data Portal (Socrata SODA API).

Each point source is described in params.yml (dataset id, date field,
optional category filter, coordinate fields). A fetch pulls every matching
row for one calendar year, page by page. A failed request or an empty result
stops the run: the stages downstream have nothing meaningful to do without it.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import geopandas as gpd
import pandas as pd
import requests

from crime_risk.qa import DEFAULT_CRS, safe_reproject

log = logging.getLogger(__name__)

SODA_BASE_URL = "https://data.cityofchicago.org/resource"
GEOSPATIAL_EXPORT_URL = "https://data.cityofchicago.org/api/geospatial/{dataset_id}?method=export&format=GeoJSON"

PAGE_SIZE = 50000
REQUEST_TIMEOUT = 120  # seconds


class DataFetchError(Exception):
    """Raised when a remote layer cannot be fetched or comes back empty."""
    pass


@dataclass
class PointSource:
    """One remote point layer, as configured under `sources:` in params.yml."""
    name: str
    dataset_id: str
    date_field: str
    legend: str
    category_field: Optional[str] = None
    category_value: Optional[str] = None
    id_field: Optional[str] = None
    lat_field: str = "latitude"
    lon_field: str = "longitude"

    @property
    def url(self) -> str:
        return f"{SODA_BASE_URL}/{self.dataset_id}.json"

    @classmethod
    def from_config(cls, name: str, cfg: Dict[str, Any]) -> "PointSource":
        return cls(name=name, legend=cfg.get("legend", name), **{
            k: v for k, v in cfg.items() if k != "legend"
        })


def load_point_sources(config: Dict[str, Any]) -> Dict[str, PointSource]:
    """Build PointSource objects for the target and every risk factor."""
    sources_cfg = config["sources"]
    sources = {"target": PointSource.from_config("target", sources_cfg["target"])}
    for name, cfg in sources_cfg["risk_factors"].items():
        sources[name] = PointSource.from_config(name, cfg)
    return sources


# =============================================================================
# Query construction
# =============================================================================

def build_soql_params(
    source: PointSource,
    year: int,
    offset: int = 0,
    limit: int = PAGE_SIZE,
) -> Dict[str, str]:
    """
    SoQL parameters selecting one calendar year (and category, if set).

    Ordering by `:id` keeps paging stable across requests.
    """
    conditions = [
        f"{source.date_field} between '{year}-01-01T00:00:00' and '{year}-12-31T23:59:59'"
    ]
    if source.category_field and source.category_value:
        value = source.category_value.replace("'", "''")
        conditions.insert(0, f"{source.category_field} = '{value}'")

    return {
        "$where": " AND ".join(conditions),
        "$order": ":id",
        "$limit": str(limit),
        "$offset": str(offset),
    }


# =============================================================================
# Fetching
# =============================================================================

def _get_json(session: requests.Session, url: str, params: Optional[Dict[str, str]] = None) -> Any:
    try:
        response = session.get(url, params=params, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        raise DataFetchError(f"Request to {url} failed: {e}") from e
    except ValueError as e:
        raise DataFetchError(f"Response from {url} is not JSON: {e}") from e


def fetch_source(
    source: PointSource,
    year: int,
    logger=None,
    session: Optional[requests.Session] = None,
    page_size: int = PAGE_SIZE,
) -> pd.DataFrame:
    """
    Fetch every row of `source` for `year`.

    Raises:
        DataFetchError: On any HTTP failure or if no rows match
    """
    logger = logger or log
    session = session or requests.Session()

    records: List[dict] = []
    offset = 0
    while True:
        params = build_soql_params(source, year, offset, page_size)
        page = _get_json(session, source.url, params)
        records.extend(page)
        logger.info(f"{source.name} {year}: page at offset {offset} -> {len(page)} rows")

        if len(page) < page_size:
            break
        offset += page_size

    if not records:
        raise DataFetchError(f"No rows returned for {source.name} ({source.dataset_id}) in {year}")

    logger.info(f"{source.name} {year}: {len(records):,} rows fetched")
    return pd.DataFrame(records)


def records_to_points(
    df: pd.DataFrame,
    source: PointSource,
    target_crs=DEFAULT_CRS,
    logger=None,
) -> gpd.GeoDataFrame:
    """
    Turn raw SODA rows into deduplicated, projected points.

    Rows without usable coordinates are dropped. Duplicates are removed on
    the source id field when configured, otherwise on (date, lat, lon).
    The output carries a `legend` column naming the layer.
    """
    logger = logger or log
    df = df.copy()

    for col in (source.lat_field, source.lon_field):
        if col not in df.columns:
            raise DataFetchError(f"{source.name}: coordinate field '{col}' missing from response")
        df[col] = pd.to_numeric(df[col], errors="coerce")

    has_coords = df[source.lat_field].notna() & df[source.lon_field].notna()
    dropped = int((~has_coords).sum())
    df = df[has_coords]

    if source.id_field and source.id_field in df.columns:
        subset = [source.id_field]
    else:
        subset = [c for c in (source.date_field, source.lat_field, source.lon_field) if c in df.columns]
    n_before = len(df)
    df = df.drop_duplicates(subset=subset)

    logger.info(
        f"{source.name}: dropped {dropped:,} rows without coordinates, "
        f"{n_before - len(df):,} duplicates; {len(df):,} points remain"
    )

    if len(df) == 0:
        raise DataFetchError(f"{source.name}: no points with coordinates")

    keep = [c for c in (source.id_field, source.date_field, source.category_field) if c and c in df.columns]
    gdf = gpd.GeoDataFrame(
        df[keep].reset_index(drop=True),
        geometry=gpd.points_from_xy(df[source.lon_field], df[source.lat_field]),
        crs="EPSG:4326",
    )
    if source.date_field in gdf.columns:
        gdf[source.date_field] = pd.to_datetime(gdf[source.date_field], errors="coerce")
    gdf["legend"] = source.legend

    return safe_reproject(gdf, target_crs, source.name)


def fetch_boundary(
    dataset_id: str,
    logger=None,
    session: Optional[requests.Session] = None,
    target_crs=DEFAULT_CRS,
) -> gpd.GeoDataFrame:
    """
    Fetch a polygon layer via the portal's GeoJSON export and project it.

    Raises:
        DataFetchError: On HTTP failure or an empty feature collection
    """
    logger = logger or log
    session = session or requests.Session()

    url = GEOSPATIAL_EXPORT_URL.format(dataset_id=dataset_id)
    payload = _get_json(session, url)
    features = payload.get("features", []) if isinstance(payload, dict) else []
    if not features:
        raise DataFetchError(f"No features returned for boundary layer {dataset_id}")

    gdf = gpd.GeoDataFrame.from_features(features, crs="EPSG:4326")
    logger.info(f"Boundary layer {dataset_id}: {len(gdf)} polygons")

    return safe_reproject(gdf, target_crs, f"boundary {dataset_id}")
