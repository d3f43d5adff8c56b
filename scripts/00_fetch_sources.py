#!/usr/bin/env python3
"""
00_fetch_sources.py

Download the study-area layers from the Chicago Data Portal (Socrata SODA).

- City boundary and neighborhood polygons (GeoJSON export)
- Weapons-violation events for the training and test years
- Risk-factor points (311 abandoned cars, street lights all out,
  ShotSpotter alerts) for the training year

Everything is projected to the planar CRS in params.yml before it is written.
Any failed request or empty result aborts the run (no retries).

Outputs:
- data/raw/<source>_<year>.parquet (raw SODA rows, scalar columns only)
- data/raw/_manifest.json (download provenance, one record per file)
- data/processed/geo/chicago_boundary.parquet
- data/processed/geo/neighborhoods.parquet
- data/processed/geo/<source>_<year>_points.parquet
- data/processed/metadata/chicago_boundary_metadata.json
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
import requests

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from crime_risk.hashing import append_to_manifest, write_metadata_sidecar
from crime_risk.io_utils import atomic_write_df, atomic_write_gdf, load_params
from crime_risk.logging_utils import get_logger
from crime_risk.paths import GEO_DIR, RAW_DIR, ensure_dirs_exist
from crime_risk.qa import assert_all_valid, validate_bounds
from crime_risk.schemas import NEIGHBORHOOD
from crime_risk.sources import (
    fetch_boundary,
    fetch_source,
    load_point_sources,
    records_to_points,
)


# =============================================================================
# Constants
# =============================================================================

OUTPUT_BOUNDARY = GEO_DIR / "chicago_boundary.parquet"
OUTPUT_NEIGHBORHOODS = GEO_DIR / "neighborhoods.parquet"


def points_path(name: str, year: int) -> Path:
    return GEO_DIR / f"{name}_{year}_points.parquet"


def raw_path(name: str, year: int) -> Path:
    return RAW_DIR / f"{name}_{year}.parquet"


# =============================================================================
# Steps
# =============================================================================

def scalar_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Drop nested columns (SODA returns `location` as a dict)."""
    nested = [c for c in df.columns if df[c].map(lambda v: isinstance(v, (dict, list))).any()]
    return df.drop(columns=nested)


def fetch_geographies(config: dict, session: requests.Session, logger):
    crs = config["crs"]
    boundary = fetch_boundary(config["sources"]["city_boundary"], logger, session, crs)
    assert_all_valid(boundary, "city boundary")
    validate_bounds(boundary, "city boundary")

    hood_cfg = config["sources"]["neighborhoods"]
    hoods = fetch_boundary(hood_cfg["dataset_id"], logger, session, crs)
    hoods = hoods.rename(columns={hood_cfg["name_field"]: NEIGHBORHOOD})
    hoods = hoods[[NEIGHBORHOOD, "geometry"]].dissolve(by=NEIGHBORHOOD, as_index=False)
    assert_all_valid(hoods, "neighborhoods")
    logger.info(f"Neighborhoods: {len(hoods)} after dissolving on {hood_cfg['name_field']}")

    return boundary[["geometry"]], hoods


def fetch_points(name, source, year: int, config: dict, session: requests.Session, logger) -> dict:
    raw = fetch_source(source, year, logger, session)
    raw_file = raw_path(name, year)
    atomic_write_df(scalar_columns(raw), raw_file, index=False)

    append_to_manifest({
        "source": name,
        "dataset_id": source.dataset_id,
        "url": source.url,
        "year": year,
        "row_count": len(raw),
        "file_path": str(raw_file),
        "download_timestamp": datetime.now(timezone.utc).isoformat(),
    })

    points = records_to_points(raw, source, config["crs"], logger)
    atomic_write_gdf(points, points_path(name, year))
    logger.info(f"Wrote: {points_path(name, year)} ({len(points):,} points)")

    return {"raw_rows": len(raw), "points": len(points)}


def main():
    """Main entry point."""
    with get_logger("00_fetch_sources") as logger:
        logger.info("Starting 00_fetch_sources.py")

        config = load_params()
        logger.log_config(config)

        train_year = config["years"]["train"]
        test_year = config["years"]["test"]

        try:
            ensure_dirs_exist()
            session = requests.Session()

            boundary, hoods = fetch_geographies(config, session, logger)
            atomic_write_gdf(boundary, OUTPUT_BOUNDARY)
            atomic_write_gdf(hoods, OUTPUT_NEIGHBORHOODS)
            logger.info(f"Wrote: {OUTPUT_BOUNDARY}, {OUTPUT_NEIGHBORHOODS}")

            sources = load_point_sources(config)
            counts = {}
            outputs = {}

            for year in (train_year, test_year):
                counts[f"target_{year}"] = fetch_points("target", sources["target"], year, config, session, logger)
                outputs[f"target_{year}"] = str(points_path("target", year))

            for name, source in sources.items():
                if name == "target":
                    continue
                counts[f"{name}_{train_year}"] = fetch_points(name, source, train_year, config, session, logger)
                outputs[f"{name}_{train_year}"] = str(points_path(name, train_year))

            logger.log_outputs({
                "boundary": str(OUTPUT_BOUNDARY),
                "neighborhoods": str(OUTPUT_NEIGHBORHOODS),
                **outputs,
            })
            logger.log_metrics({
                "neighborhoods": len(hoods),
                "layers": counts,
            })

            write_metadata_sidecar(
                output_path=OUTPUT_BOUNDARY,
                inputs={},
                config=config,
                run_id=logger.run_id,
                extra={"city_boundary": config["sources"]["city_boundary"]},
            )

            logger.info("SUCCESS: Fetched boundaries and point layers")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
