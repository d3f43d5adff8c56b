#!/usr/bin/env python3
"""
05_build_figures.py

Render report figures from the outputs of scripts 01-04.

Outputs:
- reports/figures/weapons_points.png (training-year events over the city boundary)
- reports/figures/weapons_counts.png (training-year events per cell)
- reports/figures/risk_factors.png (per-factor counts and mean NN distance, faceted)
- reports/figures/nn_scatter.png (weapons count vs. NN distance per factor)
- reports/figures/local_morans_i.png (local I and significant hotspots)
- reports/figures/mae_by_regression.png (per-fold MAE distributions)
- reports/figures/neighborhood_errors.png (LOGO mean absolute error by neighborhood)
- reports/figures/kde_bandwidths.png (density surface per bandwidth)
- reports/figures/risk_comparison.png (test-year share by risk category)

Usage:
  python scripts/05_build_figures.py            # 150 dpi
  python scripts/05_build_figures.py --dpi 300
"""

import argparse
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import rasterio

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from crime_risk.io_utils import load_params, read_df, read_gdf
from crime_risk.joins import clip_points_to_boundary
from crime_risk.logging_utils import get_logger
from crime_risk.paths import DENSITY_DIR, FIGURES_DIR, FISHNET_DIR, GEO_DIR, MODEL_DIR, TABLES_DIR
from crime_risk.schemas import IS_SIG, LOCAL_I, NEIGHBORHOOD, TARGET_COUNT, nn_column
from crime_risk.sources import load_point_sources


# =============================================================================
# Constants
# =============================================================================

INPUT_BOUNDARY = GEO_DIR / "chicago_boundary.parquet"
INPUT_NEIGHBORHOODS = GEO_DIR / "neighborhoods.parquet"
INPUT_SPATIAL = FISHNET_DIR / "fishnet_spatial_features.parquet"
INPUT_CV = MODEL_DIR / "cv_results.parquet"
INPUT_COMPARISON = TABLES_DIR / "risk_comparison.csv"
INPUT_HOOD_ERRORS = TABLES_DIR / "neighborhood_errors.csv"

METHOD_COLORS = {
    "Kernel Density": "#4575b4",
    "Risk Predictions": "#d73027",
}


def save(fig, path: Path, dpi: int, logger) -> str:
    fig.savefig(path, dpi=dpi, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    logger.info(f"Saved figure: {path}")
    return str(path)


def plot_counts(cells, path: Path, dpi: int, logger) -> str:
    fig, ax = plt.subplots(figsize=(7, 9))
    cells.plot(column=TARGET_COUNT, cmap="viridis", linewidth=0, legend=True, ax=ax)
    ax.set_title("Weapons violations per 500 m cell", fontsize=12, fontweight="bold")
    ax.set_axis_off()
    return save(fig, path, dpi, logger)


def plot_event_points(events, boundary, year: int, path: Path, dpi: int, logger) -> str:
    fig, ax = plt.subplots(figsize=(7, 9))
    boundary.plot(color="#f0f0f0", edgecolor="black", linewidth=0.6, ax=ax)
    events.plot(color="#d73027", markersize=1, alpha=0.5, ax=ax)
    ax.set_title(f"Weapons violations, {year} (n={len(events):,})", fontsize=12, fontweight="bold")
    ax.set_axis_off()
    return save(fig, path, dpi, logger)


def plot_risk_factors(cells, legends, path: Path, dpi: int, logger) -> str:
    """Small multiples: counts on the top row, mean NN distance below."""
    fig, axes = plt.subplots(2, len(legends), figsize=(4.5 * len(legends), 11), squeeze=False)

    for idx, legend in enumerate(legends):
        cells.plot(column=legend, cmap="viridis", linewidth=0, legend=True, ax=axes[0, idx])
        axes[0, idx].set_title(f"{legend}: count", fontsize=10, fontweight="bold")

        cells.plot(column=nn_column(legend), cmap="viridis_r", linewidth=0, legend=True, ax=axes[1, idx])
        axes[1, idx].set_title(f"{legend}: NN distance (m)", fontsize=10, fontweight="bold")

    for ax in axes.flat:
        ax.set_axis_off()
    plt.suptitle("Risk factors by fishnet cell", fontsize=14, fontweight="bold", y=1.01)
    plt.tight_layout()
    return save(fig, path, dpi, logger)


def plot_nn_scatter(cells, legends, path: Path, dpi: int, logger) -> str:
    fig, axes = plt.subplots(1, len(legends), figsize=(4.5 * len(legends), 4.5), sharey=True, squeeze=False)

    for ax, legend in zip(axes[0], legends):
        x = cells[nn_column(legend)]
        y = cells[TARGET_COUNT]
        ax.scatter(x, y, s=6, alpha=0.4, color="#4575b4", edgecolors="none")
        r = np.corrcoef(x, y)[0, 1] if len(cells) > 1 else np.nan
        ax.set_title(f"{legend} (r={r:.2f})", fontsize=10, fontweight="bold")
        ax.set_xlabel("NN distance (m)")
    axes[0, 0].set_ylabel("Weapons violations per cell")

    plt.tight_layout()
    return save(fig, path, dpi, logger)


def plot_neighborhood_errors(hoods, hood_errors: pd.DataFrame, path: Path, dpi: int, logger) -> str:
    logo = hood_errors[hood_errors["Regression"].str.startswith("Spatial LOGO-CV")]
    regressions = sorted(logo["Regression"].unique())

    fig, axes = plt.subplots(1, len(regressions), figsize=(6.5 * len(regressions), 9), squeeze=False)
    vmax = logo["MAE"].max()
    for ax, regression in zip(axes[0], regressions):
        errors = logo.loc[logo["Regression"] == regression, [NEIGHBORHOOD, "MAE"]]
        mapped = hoods.merge(errors, on=NEIGHBORHOOD, how="left")
        mapped.plot(
            column="MAE",
            cmap="magma_r",
            vmin=0,
            vmax=vmax,
            edgecolor="white",
            linewidth=0.3,
            legend=True,
            ax=ax,
            missing_kwds={"color": "lightgrey"},
        )
        ax.set_title(regression, fontsize=11, fontweight="bold")
        ax.set_axis_off()

    plt.suptitle("Mean absolute error by neighborhood", fontsize=13, fontweight="bold", y=1.01)
    plt.tight_layout()
    return save(fig, path, dpi, logger)


def plot_local_moran(cells, path: Path, dpi: int, logger) -> str:
    fig, axes = plt.subplots(1, 2, figsize=(13, 9))

    cells.plot(
        column=LOCAL_I,
        cmap="RdBu_r",
        linewidth=0,
        legend=True,
        ax=axes[0],
        missing_kwds={"color": "lightgrey"},
    )
    axes[0].set_title("Local Moran's I", fontsize=11, fontweight="bold")

    cells.plot(color="#f0f0f0", linewidth=0, ax=axes[1])
    cells[cells[IS_SIG] == 1].plot(color="#d73027", linewidth=0, ax=axes[1])
    axes[1].set_title(f"Significant hotspots (n={int(cells[IS_SIG].sum())})", fontsize=11, fontweight="bold")

    for ax in axes:
        ax.set_axis_off()
    plt.tight_layout()
    return save(fig, path, dpi, logger)


def plot_mae(cv: pd.DataFrame, path: Path, dpi: int, logger) -> str:
    per_fold = cv.groupby(["Regression", "fold"], as_index=False)["AbsError"].mean()
    regressions = sorted(per_fold["Regression"].unique())

    fig, axes = plt.subplots(len(regressions), 1, figsize=(9, 2.5 * len(regressions)), sharex=True, squeeze=False)
    for ax, regression in zip(axes[:, 0], regressions):
        values = per_fold.loc[per_fold["Regression"] == regression, "AbsError"]
        ax.hist(values, bins=30, color="#fc8d59", edgecolor="black", linewidth=0.5)
        ax.axvline(values.mean(), color="black", linewidth=1, linestyle="--")
        ax.set_title(regression, fontsize=10, fontweight="bold")
        ax.set_ylabel("Folds")
    axes[-1, 0].set_xlabel("Mean absolute error per fold")

    plt.suptitle("Distribution of MAE by regression", fontsize=13, fontweight="bold", y=1.01)
    plt.tight_layout()
    return save(fig, path, dpi, logger)


def plot_kde(bandwidths, path: Path, dpi: int, logger) -> str:
    fig, axes = plt.subplots(1, len(bandwidths), figsize=(5 * len(bandwidths), 7), squeeze=False)
    for ax, bandwidth in zip(axes[0], bandwidths):
        with rasterio.open(DENSITY_DIR / f"kde_{int(bandwidth)}.tif") as src:
            data = src.read(1, masked=True)
        ax.imshow(np.ma.filled(data.astype(float), np.nan), cmap="magma")
        ax.set_title(f"KDE, bandwidth {bandwidth} m", fontsize=11, fontweight="bold")
        ax.set_axis_off()
    plt.tight_layout()
    return save(fig, path, dpi, logger)


def plot_comparison(comparison: pd.DataFrame, path: Path, dpi: int, logger) -> str:
    categories = list(dict.fromkeys(comparison["Risk_Category"]))
    x = np.arange(len(categories))
    width = 0.4

    fig, ax = plt.subplots(figsize=(9, 5))
    for i, (label, group) in enumerate(comparison.groupby("Label", sort=False)):
        rates = group.set_index("Risk_Category").reindex(categories)["Rate_of_test_set_crimes"]
        ax.bar(x + (i - 0.5) * width, rates, width, label=label, color=METHOD_COLORS.get(label), edgecolor="black", linewidth=0.5)

    ax.set_xticks(x)
    ax.set_xticklabels(categories)
    ax.set_xlabel("Risk category (1st = lowest)")
    ax.set_ylabel("Share of test-year weapons violations")
    ax.set_title("Risk predictions vs. kernel density", fontsize=12, fontweight="bold")
    ax.legend()
    plt.tight_layout()
    return save(fig, path, dpi, logger)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Build report figures")
    parser.add_argument("--dpi", type=int, default=150, help="Figure resolution")
    args = parser.parse_args()

    with get_logger("05_build_figures") as logger:
        logger.info("Starting 05_build_figures.py")

        config = load_params()
        logger.log_config(config)

        try:
            FIGURES_DIR.mkdir(parents=True, exist_ok=True)

            train_year = config["years"]["train"]
            legends = [s.legend for name, s in load_point_sources(config).items() if name != "target"]

            boundary = read_gdf(INPUT_BOUNDARY)
            hoods = read_gdf(INPUT_NEIGHBORHOODS)
            events = clip_points_to_boundary(
                read_gdf(GEO_DIR / f"target_{train_year}_points.parquet"), boundary, logger
            )
            cells = read_gdf(INPUT_SPATIAL)
            cv = read_df(INPUT_CV)
            comparison = read_df(INPUT_COMPARISON)
            hood_errors = read_df(INPUT_HOOD_ERRORS)

            outputs = {
                "weapons_points": plot_event_points(
                    events, boundary, train_year, FIGURES_DIR / "weapons_points.png", args.dpi, logger
                ),
                "weapons_counts": plot_counts(cells, FIGURES_DIR / "weapons_counts.png", args.dpi, logger),
                "risk_factors": plot_risk_factors(cells, legends, FIGURES_DIR / "risk_factors.png", args.dpi, logger),
                "nn_scatter": plot_nn_scatter(cells, legends, FIGURES_DIR / "nn_scatter.png", args.dpi, logger),
                "local_morans_i": plot_local_moran(cells, FIGURES_DIR / "local_morans_i.png", args.dpi, logger),
                "mae_by_regression": plot_mae(cv, FIGURES_DIR / "mae_by_regression.png", args.dpi, logger),
                "neighborhood_errors": plot_neighborhood_errors(
                    hoods, hood_errors, FIGURES_DIR / "neighborhood_errors.png", args.dpi, logger
                ),
                "kde_bandwidths": plot_kde(config["kde_bandwidths"], FIGURES_DIR / "kde_bandwidths.png", args.dpi, logger),
                "risk_comparison": plot_comparison(comparison, FIGURES_DIR / "risk_comparison.png", args.dpi, logger),
            }
            logger.log_outputs(outputs)

            logger.info("SUCCESS: Built report figures")

        except Exception as e:
            logger.error(f"FAILED: {e}")
            raise


if __name__ == "__main__":
    main()
