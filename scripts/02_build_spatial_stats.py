#!/usr/bin/env python3
"""
02_build_spatial_stats.py

Local Moran's I of weapons-violation counts over the fishnet.

Queen contiguity, row-standardized weights; conditional-permutation pseudo
p-values. Cells with p <= significance_threshold are flagged `is_sig`, and
every cell gets `is_sig.nn`, the distance to the nearest flagged cell.
Cells with no queen neighbor are excluded from the statistic and reported
as not significant.

Outputs:
- data/processed/fishnet/fishnet_spatial_features.parquet
- data/processed/fishnet/fishnet_spatial_features.geojson (map-ready)
- data/processed/metadata/fishnet_spatial_features_metadata.json
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from crime_risk.hashing import write_metadata_sidecar
from crime_risk.io_utils import atomic_write_gdf, load_params, read_gdf
from crime_risk.logging_utils import get_logger
from crime_risk.paths import FISHNET_DIR
from crime_risk.schemas import (
    CELL_ID,
    IS_SIG,
    IS_SIG_NN,
    LOCAL_I,
    SPATIAL_FEATURES_SCHEMA,
    TARGET_COUNT,
    validate_schema,
)
from crime_risk.spatial_stats import local_morans_i, nearest_significant_distance


# =============================================================================
# Constants
# =============================================================================

INPUT_FEATURES = FISHNET_DIR / "fishnet_features.parquet"

OUTPUT_SPATIAL = FISHNET_DIR / "fishnet_spatial_features.parquet"
OUTPUT_SPATIAL_GEOJSON = FISHNET_DIR / "fishnet_spatial_features.geojson"


def main():
    """Main entry point."""
    with get_logger("02_build_spatial_stats") as logger:
        logger.info("Starting 02_build_spatial_stats.py")

        config = load_params()
        logger.log_config(config)

        permutations = config["permutations"]
        threshold = config["significance_threshold"]
        seed = config["random_seeds"]["local_moran"]

        try:
            if not INPUT_FEATURES.exists():
                raise FileNotFoundError(f"{INPUT_FEATURES} not found. Run 01_build_fishnet.py first.")
            features = read_gdf(INPUT_FEATURES)
            logger.info(f"Loaded {len(features):,} cells")

            result = local_morans_i(
                features,
                TARGET_COUNT,
                id_col=CELL_ID,
                permutations=permutations,
                seed=seed,
                threshold=threshold,
                logger=logger,
            )
            result = nearest_significant_distance(result, IS_SIG, IS_SIG_NN, logger)

            validate_schema(result, SPATIAL_FEATURES_SCHEMA, "spatial features")

            atomic_write_gdf(result, OUTPUT_SPATIAL)
            atomic_write_gdf(result.to_crs("EPSG:4326"), OUTPUT_SPATIAL_GEOJSON)
            logger.info(f"Wrote: {OUTPUT_SPATIAL}")

            metrics = {
                "permutations": permutations,
                "significance_threshold": threshold,
                "n_cells": len(result),
                "n_significant": int(result[IS_SIG].sum()),
                "n_excluded": int(result[LOCAL_I].isna().sum()),
                "mean_is_sig_nn": float(result[IS_SIG_NN].mean()),
            }
            logger.log_outputs({
                "spatial_features": str(OUTPUT_SPATIAL),
                "spatial_features_geojson": str(OUTPUT_SPATIAL_GEOJSON),
            })
            logger.log_metrics(metrics)

            write_metadata_sidecar(
                output_path=OUTPUT_SPATIAL,
                inputs={"fishnet_features": str(INPUT_FEATURES)},
                config=config,
                run_id=logger.run_id,
                extra=metrics,
            )

            logger.info("SUCCESS: Built local Moran's I features")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
