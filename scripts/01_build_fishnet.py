#!/usr/bin/env python3
"""
01_build_fishnet.py

Build the fishnet and the per-cell feature table.

- Square cells of `cell_size` metres over the city boundary (kept unclipped)
- Weapons-violation counts per cell for the training and test years, after
  dropping points outside the city boundary
- Risk-factor counts and mean k-nearest-neighbor distances per cell
- Neighborhood label (by cell centroid) and random fold id `cvID`

Outputs:
- data/processed/fishnet/fishnet.parquet (uniqueID + geometry)
- data/processed/fishnet/fishnet_features.parquet (one row per cell)
- data/processed/fishnet/fishnet_features.geojson (map-ready)
- data/processed/metadata/fishnet_features_metadata.json (provenance sidecar)
"""

import sys
from pathlib import Path

import geopandas as gpd
import pandas as pd

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from crime_risk.features import nn_features
from crime_risk.fishnet import assign_cells_to_neighborhoods, create_fishnet
from crime_risk.hashing import write_metadata_sidecar
from crime_risk.io_utils import atomic_write_gdf, load_params, read_gdf
from crime_risk.joins import clip_points_to_boundary, count_points_by_factor, count_points_in_cells
from crime_risk.logging_utils import get_logger
from crime_risk.modeling import assign_random_folds
from crime_risk.paths import FISHNET_DIR, GEO_DIR
from crime_risk.qa import compute_na_rates, crs_key
from crime_risk.schemas import (
    CELL_ID,
    FEATURES_SCHEMA,
    NEIGHBORHOOD,
    TARGET_COUNT,
    TEST_COUNT,
    validate_cell_ids,
    validate_schema,
)
from crime_risk.sources import load_point_sources


# =============================================================================
# Constants
# =============================================================================

INPUT_BOUNDARY = GEO_DIR / "chicago_boundary.parquet"
INPUT_NEIGHBORHOODS = GEO_DIR / "neighborhoods.parquet"

OUTPUT_FISHNET = FISHNET_DIR / "fishnet.parquet"
OUTPUT_FEATURES = FISHNET_DIR / "fishnet_features.parquet"
OUTPUT_FEATURES_GEOJSON = FISHNET_DIR / "fishnet_features.geojson"


def load_points(name: str, year: int, logger) -> gpd.GeoDataFrame:
    path = GEO_DIR / f"{name}_{year}_points.parquet"
    if not path.exists():
        raise FileNotFoundError(f"{path} not found. Run 00_fetch_sources.py first.")
    points = read_gdf(path)
    logger.info(f"Loaded {len(points):,} {name} points for {year}")
    return points


def main():
    """Main entry point."""
    with get_logger("01_build_fishnet") as logger:
        logger.info("Starting 01_build_fishnet.py")

        config = load_params()
        logger.log_config(config)

        cell_size = config["cell_size"]
        nn_k = config["nn_k"]
        n_folds = config["n_random_folds"]
        train_year = config["years"]["train"]
        test_year = config["years"]["test"]

        try:
            boundary = read_gdf(INPUT_BOUNDARY)
            hoods = read_gdf(INPUT_NEIGHBORHOODS)
            logger.log_crs_info({"boundary": crs_key(boundary), "neighborhoods": crs_key(hoods)})

            # Grid
            fishnet = create_fishnet(boundary, cell_size, logger)
            atomic_write_gdf(fishnet, OUTPUT_FISHNET)

            # Target counts
            events_train = clip_points_to_boundary(load_points("target", train_year, logger), boundary, logger)
            events_test = clip_points_to_boundary(load_points("target", test_year, logger), boundary, logger)
            features, train_stats = count_points_in_cells(fishnet, events_train, TARGET_COUNT, logger)
            features, test_stats = count_points_in_cells(features, events_test, TEST_COUNT, logger)

            # Risk factors
            sources = load_point_sources(config)
            factor_points = pd.concat(
                [load_points(name, train_year, logger) for name in sources if name != "target"],
                ignore_index=True,
            )
            factor_points = gpd.GeoDataFrame(factor_points, geometry="geometry", crs=events_train.crs)
            factor_points = clip_points_to_boundary(factor_points, boundary, logger)
            features, factor_stats = count_points_by_factor(features, factor_points, "legend", logger)
            features = nn_features(features, factor_points, "legend", nn_k, logger)

            # Neighborhoods and folds
            features = assign_cells_to_neighborhoods(features, hoods, NEIGHBORHOOD, logger)
            features = assign_random_folds(features, n_folds, config["random_seeds"]["folds"])

            validate_cell_ids(features, "fishnet features")
            validate_schema(features, FEATURES_SCHEMA, "fishnet features")

            atomic_write_gdf(features, OUTPUT_FEATURES)
            atomic_write_gdf(features.to_crs("EPSG:4326"), OUTPUT_FEATURES_GEOJSON)
            logger.info(f"Wrote: {OUTPUT_FEATURES} ({len(features):,} cells)")

            logger.log_outputs({
                "fishnet": str(OUTPUT_FISHNET),
                "fishnet_features": str(OUTPUT_FEATURES),
                "fishnet_features_geojson": str(OUTPUT_FEATURES_GEOJSON),
            })
            join_stats = {TARGET_COUNT: train_stats, TEST_COUNT: test_stats, **factor_stats}
            logger.log_join_stats(join_stats)
            logger.log_metrics({
                "cell_size": cell_size,
                "n_cells": len(features),
                "cells_without_neighborhood": int(features[NEIGHBORHOOD].isna().sum()),
                "events_train": int(features[TARGET_COUNT].sum()),
                "events_test": int(features[TEST_COUNT].sum()),
                "na_rates": compute_na_rates(features.drop(columns="geometry")),
            })

            write_metadata_sidecar(
                output_path=OUTPUT_FEATURES,
                inputs={
                    "boundary": str(INPUT_BOUNDARY),
                    "neighborhoods": str(INPUT_NEIGHBORHOODS),
                },
                config=config,
                run_id=logger.run_id,
                extra={
                    "n_cells": len(features),
                    "id_column": CELL_ID,
                    "nn_k": nn_k,
                    "n_random_folds": n_folds,
                    "join_stats": join_stats,
                },
            )

            logger.info("SUCCESS: Built fishnet features")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
