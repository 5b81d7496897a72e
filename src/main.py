"""
Main Script for the Urban Stream Water Quality Trend Analysis

This script is the main entry point for modelling long-term trends and site
differences in dissolved oxygen, chloride and water temperature. It expects the
cleaned daily data produced by notebooks/pre_process_water_quality_data.py.

The script performs the following tasks:
1. Loads cleaned daily water quality data, weather records and site attributes
2. Derives model covariates (log transforms, precipitation indices, flow index)
3. Calculates non-parametric per-site trends
4. Fits the GAMM, GLS and GEE models listed in config.MODEL_SPECS (cached on disk)
5. Computes marginal means and residual diagnostics
6. Writes report tables and generates figures

Dependencies:
- pandas: Data manipulation and analysis
- statsmodels / patsy: Model fitting (models module)
- geopandas / matplotlib / seaborn: Figures (plotting module)

Author: Urban Streams Monitoring Program
"""

# Standard library imports
import logging
import sys
from pathlib import Path

# Third party imports
import numpy as np
import pandas as pd
from scipy.special import expit

# Local imports
import covariates
import data_loading
import models
import plotting
import report
import trend_analysis
from config import (
    CLEANED_DATA_PATH,
    GRAB_SAMPLE_PATH,
    MODEL_CACHE_DIR,
    MODEL_FRAME_PATH,
    MODEL_SPECS,
    OUTPUT_DIR,
    SITE_TABLE_PATH,
    START_YEAR,
    END_YEAR,
    PERIOD,
    TREND_METRICS,
    WATERSHED_BOUNDARY_SHAPEFILE,
    WEATHER_DATA_PATH,
)

logger = logging.getLogger("water_quality_trends")


def setup_logging(output_dir, name="analysis.log"):
    """Configure logging to both file and console."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    # File handler - detailed logging
    fh = logging.FileHandler(output_dir / name, mode='w')
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter('%(asctime)s | %(name)-16s | %(levelname)-8s | %(message)s',
                                      datefmt='%Y-%m-%d %H:%M:%S'))

    # Console handler - info and above
    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(logging.Formatter('%(levelname)-8s | %(message)s'))

    root.addHandler(fh)
    root.addHandler(ch)
    return root


def load_model_frame(refresh=False):
    """Build the model frame from the cleaned daily data, or read it if it was saved before."""
    if MODEL_FRAME_PATH.exists() and not refresh:
        logger.info("Loading existing model frame...")
        return pd.read_csv(MODEL_FRAME_PATH, parse_dates=["date"])

    logger.info("Loading cleaned daily data...")
    daily = pd.read_csv(CLEANED_DATA_PATH, parse_dates=["date"])
    weather = data_loading.read_weather_data(WEATHER_DATA_PATH)
    sites = data_loading.read_site_table(SITE_TABLE_PATH)

    chloride_coefs = None
    if GRAB_SAMPLE_PATH.exists():
        grab_samples = data_loading.read_grab_samples(GRAB_SAMPLE_PATH)
        chloride_coefs = covariates.fit_chloride_regression(grab_samples)
    else:
        logger.info("No grab samples found, using the default chloride regression")

    logger.info("Deriving covariates...")
    frame = covariates.build_model_frame(daily, weather["precip"], sites, chloride_coefs=chloride_coefs)
    frame.to_csv(MODEL_FRAME_PATH, index=False)
    return frame


def inverse_link_for(fit):
    """Back-transformation used for marginal means on the response scale."""
    if fit.kind == "gee":
        return expit
    if fit.log_response:
        return np.exp
    return None


def main(refit=False):
    output_dir = OUTPUT_DIR / f"results_{PERIOD}"
    setup_logging(output_dir)

    frame = load_model_frame(refresh=refit)
    sites = data_loading.read_site_table(SITE_TABLE_PATH)
    folders = plotting.create_folders(OUTPUT_DIR / "figures", START_YEAR, END_YEAR)

    # Non-parametric trends per site
    logger.info("Calculating per-site trends...")
    site_trends, valid_data_dict, invalid_data_dict = trend_analysis.calc_site_trends(
        frame, TREND_METRICS, START_YEAR, END_YEAR)
    site_trends.round(4).to_csv(output_dir / f"site_trends_{PERIOD}.csv", sep=';')

    # Fit models, loading cached fits where available
    fits, emm_tables, acf_tables = {}, {}, {}
    for spec in MODEL_SPECS:
        cache_file = MODEL_CACHE_DIR / f"{spec['name']}_{PERIOD}.p"
        fit = models.load_or_fit(cache_file, lambda spec=spec: models.fit_model(spec, frame), refit=refit)
        fits[spec["name"]] = fit
        emm_tables[spec["name"]] = models.marginal_means(
            fit, factor="site", average_over={"doy": np.arange(1, 366)}, inverse_link=inverse_link_for(fit))
        acf_tables[spec["name"]] = models.residual_acf(fit)

    logger.info("Saving report tables...")
    tables = report.create_model_tables(fits, emm_tables, site_trends)
    report.write_tables(tables, output_dir / f"model_tables_{PERIOD}.xlsx", csv_dir=output_dir / "tables")

    # Define which plots to create
    # True = plot will be created, False = plot will be skipped
    which_plots = {
        'daily_series': True,     # Daily series of each metric by site
        'annual_trends': True,    # Annual means with Theil-Sen trend lines
        'marginal_means': True,   # Marginal means by site for each model
        'residual_acf': True,     # Residual autocorrelation diagnostics
        'maps': True,             # Maps of per-site trends
    }

    logger.info("Generating plots...")
    plotting.plot_all(which_plots, frame, site_trends, valid_data_dict, invalid_data_dict, fits,
                      emm_tables, acf_tables, sites, folders, boundary_path=WATERSHED_BOUNDARY_SHAPEFILE)

    logger.info("Analysis complete!")


if __name__ == "__main__":
    try:
        main(refit="--refit" in sys.argv[1:])
    except Exception:
        logger.exception("Analysis failed")
        sys.exit(1)
