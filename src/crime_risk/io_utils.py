"""
I/O utilities with atomic writes and safe reads.

Every output is written to a temp file in the target directory and then
renamed over the target, so a failed stage never leaves a half-written table.
GeoParquet is the internal format; GeoJSON and CSV are exports for humans.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Union

import geopandas as gpd
import pandas as pd
import yaml

from crime_risk.paths import CONFIG_DIR

PathLike = Union[str, Path]


# =============================================================================
# Atomic Write Utilities
# =============================================================================

@contextmanager
def staged_path(target_path: PathLike, suffix: Optional[str] = None) -> Iterator[Path]:
    """
    Yield a temp path next to `target_path`; replace the target on success.

    The temp file is removed if the body raises.
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)

    if suffix is None:
        suffix = target_path.suffix or ".tmp"

    fd, temp_name = tempfile.mkstemp(
        suffix=suffix,
        prefix=f".{target_path.stem}_",
        dir=target_path.parent,
    )
    os.close(fd)
    temp_path = Path(temp_name)

    try:
        yield temp_path
        temp_path.replace(target_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


@contextmanager
def atomic_write(target_path: PathLike, mode: str = "w", suffix: Optional[str] = None):
    """
    Context manager yielding a file handle whose contents land atomically.

    Example:
        with atomic_write("summary.txt") as f:
            f.write("data")
    """
    with staged_path(target_path, suffix) as temp_path:
        with open(temp_path, mode) as f:
            yield f


def atomic_write_df(df: pd.DataFrame, target_path: PathLike, **kwargs) -> None:
    """
    Atomically write a DataFrame to CSV or Parquet (chosen by extension).

    Args:
        df: DataFrame to write
        target_path: Destination path (.csv or .parquet)
        **kwargs: Passed to to_csv/to_parquet
    """
    suffix = Path(target_path).suffix.lower()
    if suffix not in (".parquet", ".csv"):
        raise ValueError(f"Unsupported format: {suffix}")

    with staged_path(target_path) as temp_path:
        if suffix == ".parquet":
            df.to_parquet(temp_path, **kwargs)
        else:
            df.to_csv(temp_path, **kwargs)


def atomic_write_gdf(gdf: gpd.GeoDataFrame, target_path: PathLike, **kwargs) -> None:
    """
    Atomically write a GeoDataFrame to GeoParquet, GeoJSON or GeoPackage.

    Args:
        gdf: GeoDataFrame to write
        target_path: Destination path (.parquet, .geojson, .gpkg)
        **kwargs: Passed to the writer
    """
    suffix = Path(target_path).suffix.lower()
    drivers = {".geojson": "GeoJSON", ".gpkg": "GPKG"}
    if suffix != ".parquet" and suffix not in drivers:
        raise ValueError(f"Unsupported geo format: {suffix}")

    with staged_path(target_path) as temp_path:
        if suffix == ".parquet":
            gdf.to_parquet(temp_path, **kwargs)
        else:
            gdf.to_file(temp_path, driver=drivers[suffix], **kwargs)


def atomic_write_json(data: Any, target_path: PathLike, **kwargs) -> None:
    """Atomically write JSON data (indented, non-serializable values str()'d)."""
    kwargs.setdefault("indent", 2)
    kwargs.setdefault("default", str)

    with atomic_write(target_path, mode="w", suffix=".json") as f:
        json.dump(data, f, **kwargs)


# =============================================================================
# Read Utilities
# =============================================================================

def read_yaml(path: PathLike) -> dict:
    """Read a YAML file."""
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def read_json(path: PathLike) -> Any:
    """Read a JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_params(path: Optional[PathLike] = None) -> dict:
    """Load the pipeline parameters (configs/params.yml by default)."""
    return read_yaml(path or CONFIG_DIR / "params.yml")


def read_gdf(path: PathLike, **kwargs) -> gpd.GeoDataFrame:
    """
    Read a GeoDataFrame from GeoParquet or any format GDAL can open.
    """
    path = Path(path)
    if path.suffix.lower() == ".parquet":
        return gpd.read_parquet(path, **kwargs)
    return gpd.read_file(path, **kwargs)


def read_df(path: PathLike, **kwargs) -> pd.DataFrame:
    """Read a DataFrame from CSV or Parquet."""
    path = Path(path)
    suffix = path.suffix.lower()

    if suffix == ".parquet":
        return pd.read_parquet(path, **kwargs)
    elif suffix == ".csv":
        return pd.read_csv(path, **kwargs)
    else:
        raise ValueError(f"Unsupported format: {suffix}")
