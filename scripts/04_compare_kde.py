#!/usr/bin/env python3
"""
04_compare_kde.py

Compare model predictions against a kernel density baseline on the
following year's events.

- Gaussian KDE of training-year events, one raster per bandwidth
- Mean KDE intensity per fishnet cell (first bandwidth)
- Both the KDE and the model's out-of-fold predictions cut into
  Fisher-Jenks risk categories (1st..5th)
- Share of test-year events falling in each category, per method

Outputs:
- data/processed/density/kde_<bandwidth>.tif (one GeoTIFF per bandwidth)
- data/processed/density/cell_risk.parquet (uniqueID, kde, Prediction, test counts)
- reports/tables/risk_comparison.csv
- data/processed/metadata/risk_comparison_metadata.json
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from crime_risk.density import cell_density, kernel_density_surface, write_density_raster
from crime_risk.hashing import write_metadata_sidecar
from crime_risk.io_utils import atomic_write_df, atomic_write_gdf, load_params, read_df, read_gdf
from crime_risk.joins import clip_points_to_boundary
from crime_risk.logging_utils import get_logger
from crime_risk.paths import DENSITY_DIR, FISHNET_DIR, GEO_DIR, MODEL_DIR, TABLES_DIR
from crime_risk.raster_utils import compute_nodata_fraction
from crime_risk.risk import check_risk_ordering, compare_risk_categories
from crime_risk.schemas import CELL_ID, PREDICTION, TEST_COUNT, validate_merge


# =============================================================================
# Constants
# =============================================================================

INPUT_BOUNDARY = GEO_DIR / "chicago_boundary.parquet"
INPUT_SPATIAL = FISHNET_DIR / "fishnet_spatial_features.parquet"
INPUT_CV = MODEL_DIR / "cv_results.parquet"

OUTPUT_CELL_RISK = DENSITY_DIR / "cell_risk.parquet"
OUTPUT_COMPARISON = TABLES_DIR / "risk_comparison.csv"


def kde_path(bandwidth) -> Path:
    return DENSITY_DIR / f"kde_{int(bandwidth)}.tif"


def main():
    """Main entry point."""
    with get_logger("04_compare_kde") as logger:
        logger.info("Starting 04_compare_kde.py")

        config = load_params()
        logger.log_config(config)

        bandwidths = config["kde_bandwidths"]
        pixel_size = config["kde_pixel_size"]
        regression = config["comparison_regression"]
        train_year = config["years"]["train"]
        events_path = GEO_DIR / f"target_{train_year}_points.parquet"

        try:
            boundary = read_gdf(INPUT_BOUNDARY)
            events = clip_points_to_boundary(read_gdf(events_path), boundary, logger)
            cells = read_gdf(INPUT_SPATIAL)
            cv = read_df(INPUT_CV)

            # Density surfaces
            surfaces = {}
            raster_stats = {}
            for bandwidth in bandwidths:
                surface = kernel_density_surface(events, boundary, bandwidth, pixel_size, logger)
                write_density_raster(surface, kde_path(bandwidth))
                surfaces[bandwidth] = surface
                raster_stats[str(bandwidth)] = {
                    "path": str(kde_path(bandwidth)),
                    "shape": list(surface.array.shape),
                    "nodata_fraction": compute_nodata_fraction(surface.array),
                }
                logger.info(f"Wrote: {kde_path(bandwidth)}")
            logger.log_raster_stats(raster_stats)

            primary = bandwidths[0]
            cells = cell_density(cells, surfaces[primary], kde_path(primary), "kde", logger)

            # Model predictions
            preds = cv.loc[cv["Regression"] == regression, [CELL_ID, PREDICTION]]
            if preds.empty:
                raise ValueError(f"No predictions for regression '{regression}' in {INPUT_CV}")
            cell_risk = validate_merge(
                cells[[CELL_ID, "kde", TEST_COUNT, "geometry"]],
                preds,
                on=CELL_ID,
                how="inner",
                context="cells + predictions",
            )
            logger.info(f"{len(cell_risk):,} of {len(cells):,} cells have a '{regression}' prediction")

            comparison = compare_risk_categories(cell_risk, k=config["risk_classes"], logger=logger)
            ordering = check_risk_ordering(comparison)

            atomic_write_gdf(cell_risk, OUTPUT_CELL_RISK)
            atomic_write_df(comparison, OUTPUT_COMPARISON, index=False)

            logger.log_outputs({
                "kde_rasters": [str(kde_path(b)) for b in bandwidths],
                "cell_risk": str(OUTPUT_CELL_RISK),
                "risk_comparison": str(OUTPUT_COMPARISON),
            })
            logger.log_metrics({
                "primary_bandwidth": primary,
                "comparison_regression": regression,
                "test_events": int(cell_risk[TEST_COUNT].sum()),
                "rate_non_decreasing": ordering,
            })

            write_metadata_sidecar(
                output_path=OUTPUT_COMPARISON,
                inputs={
                    "events": str(events_path),
                    "spatial_features": str(INPUT_SPATIAL),
                    "cv_results": str(INPUT_CV),
                },
                config=config,
                run_id=logger.run_id,
                extra={"bandwidths": bandwidths, "rate_non_decreasing": ordering},
            )

            logger.info("=" * 70)
            logger.info("Share of test-year events by risk category:")
            for _, row in comparison.iterrows():
                logger.info(f"  {row['Label']:<16} {row['Risk_Category']}: {row['Rate_of_test_set_crimes']:.1%}")
            logger.info("=" * 70)

            logger.info("SUCCESS: Compared KDE and model risk categories")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
