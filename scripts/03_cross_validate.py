#!/usr/bin/env python3
"""
03_cross_validate.py

Cross-validate the Poisson count model of weapons violations per cell.

Two feature sets ("Just Risk Factors", "Spatial Process") are each run under
two fold schemes (random k-fold on `cvID`, leave-one-neighborhood-out on
`name`). Every cell gets one out-of-fold prediction per regression.

Outputs:
- data/processed/model/cv_results.parquet (long: one row per cell x regression)
- reports/tables/mae_by_regression.csv (mean and SD of per-fold MAE)
- reports/tables/fold_mae.csv (MAE per regression and fold)
- reports/tables/neighborhood_errors.csv (LOGO errors per neighborhood)
- reports/tables/residual_morans_i.csv (Moran's I of neighborhood mean error)
- data/processed/metadata/cv_results_metadata.json
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from crime_risk.hashing import write_metadata_sidecar
from crime_risk.io_utils import atomic_write_df, load_params, read_gdf
from crime_risk.logging_utils import get_logger
from crime_risk.modeling import (
    build_feature_sets,
    error_summary,
    fold_mae,
    neighborhood_errors,
    residual_morans_i,
    run_cv_grid,
)
from crime_risk.paths import FISHNET_DIR, GEO_DIR, MODEL_DIR, TABLES_DIR
from crime_risk.schemas import CV_RESULTS_SCHEMA, TARGET_COUNT, validate_schema
from crime_risk.sources import load_point_sources


# =============================================================================
# Constants
# =============================================================================

INPUT_SPATIAL = FISHNET_DIR / "fishnet_spatial_features.parquet"
INPUT_NEIGHBORHOODS = GEO_DIR / "neighborhoods.parquet"

OUTPUT_CV = MODEL_DIR / "cv_results.parquet"
OUTPUT_MAE = TABLES_DIR / "mae_by_regression.csv"
OUTPUT_FOLD_MAE = TABLES_DIR / "fold_mae.csv"
OUTPUT_HOOD_ERRORS = TABLES_DIR / "neighborhood_errors.csv"
OUTPUT_MORAN = TABLES_DIR / "residual_morans_i.csv"


def main():
    """Main entry point."""
    with get_logger("03_cross_validate") as logger:
        logger.info("Starting 03_cross_validate.py")

        config = load_params()
        logger.log_config(config)

        try:
            if not INPUT_SPATIAL.exists():
                raise FileNotFoundError(f"{INPUT_SPATIAL} not found. Run 02_build_spatial_stats.py first.")
            cells = read_gdf(INPUT_SPATIAL)
            hoods = read_gdf(INPUT_NEIGHBORHOODS)

            factors = [s.legend for name, s in load_point_sources(config).items() if name != "target"]
            feature_sets = build_feature_sets(factors)
            logger.info(f"Feature sets: {feature_sets}")

            results = run_cv_grid(cells, feature_sets, dependent_var=TARGET_COUNT, logger=logger)
            validate_schema(results, CV_RESULTS_SCHEMA, "cv results")

            per_fold = fold_mae(results)
            summary = error_summary(results)
            hood_errors = neighborhood_errors(results, cells)
            moran = residual_morans_i(
                results,
                cells,
                hoods,
                permutations=config["permutations"],
                seed=config["random_seeds"]["global_moran"],
                logger=logger,
            )

            atomic_write_df(results, OUTPUT_CV, index=False)
            atomic_write_df(summary, OUTPUT_MAE, index=False)
            atomic_write_df(per_fold, OUTPUT_FOLD_MAE, index=False)
            atomic_write_df(hood_errors, OUTPUT_HOOD_ERRORS, index=False)
            atomic_write_df(moran, OUTPUT_MORAN, index=False)

            logger.log_outputs({
                "cv_results": str(OUTPUT_CV),
                "mae_by_regression": str(OUTPUT_MAE),
                "fold_mae": str(OUTPUT_FOLD_MAE),
                "neighborhood_errors": str(OUTPUT_HOOD_ERRORS),
                "residual_morans_i": str(OUTPUT_MORAN),
            })
            cv_stats = {
                row["Regression"]: {"Mean_MAE": row["Mean_MAE"], "SD_MAE": row["SD_MAE"]}
                for _, row in summary.iterrows()
            }
            logger.log_cv_stats(cv_stats)
            logger.log_metrics({
                "n_cells": len(cells),
                "n_predictions": len(results),
                "feature_sets": feature_sets,
                "residual_morans_i": moran.to_dict(orient="records"),
            })

            write_metadata_sidecar(
                output_path=OUTPUT_CV,
                inputs={
                    "spatial_features": str(INPUT_SPATIAL),
                    "neighborhoods": str(INPUT_NEIGHBORHOODS),
                },
                config=config,
                run_id=logger.run_id,
                extra={"cv_stats": cv_stats},
            )

            logger.info("=" * 70)
            logger.info("Mean absolute error by regression:")
            for _, row in summary.iterrows():
                logger.info(f"  {row['Regression']}: {row['Mean_MAE']:.3f} (SD {row['SD_MAE']:.3f})")
            logger.info("=" * 70)

            logger.info("SUCCESS: Cross-validated count models")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
