"""
Pre-process raw sonde exports into cleaned daily water quality data.

This script performs the following operations:
1. Reads the 15-minute sonde exports of every site (CSV or Excel)
2. Combines the files into one long table, one row per site and timestamp
3. Masks logger sentinel codes, drops duplicate readings from overlapping downloads,
   removes physically implausible values and readings taken while the sonde was dry
4. Applies the site-specific corrections listed in config.CORRECTIONS, e.g.:
   - Removes fouled dissolved oxygen readings
   - Drops periods when the sonde was frozen in
   - Corrects conductivity drift
   - Fills depth from a temporary logger while a transducer was replaced
5. Aggregates to daily values and saves the cleaned dataset

Input data format:
- Sonde exports named <SITE>_<anything>.csv or .xlsx with the column layout in
  config.INSTRUMENT_COLUMNS

Output:
- DataFrame with one row per site and date
- Data range: START_YEAR-01-01 through END_YEAR-12-31
"""

import logging
import sys

import pandas as pd

import data_cleaning
import data_loading
from config import (
    AUXILIARY_SITES,
    CLEANED_DATA_PATH,
    CORRECTIONS,
    END_YEAR,
    OUTPUT_DIR,
    RAW_INSTRUMENT_DIR,
    START_YEAR,
)
from main import setup_logging

logger = logging.getLogger("pre_process_water_quality_data")


def main():
    # Create output directory if it doesn't exist
    CLEANED_DATA_PATH.parent.mkdir(parents=True, exist_ok=True)
    setup_logging(OUTPUT_DIR, name="pre_process.log")

    # Read instrument exports
    raw = data_loading.process_instrument_data(RAW_INSTRUMENT_DIR)

    # Generic screening and site-specific corrections, then daily aggregation
    daily = data_cleaning.clean_instrument_data(raw, corrections=CORRECTIONS)

    # Temporary loggers are only kept as substitution sources
    daily = daily.loc[~daily["site"].isin(AUXILIARY_SITES)]

    # Ensure consistent date range
    daily = daily.loc[(daily["date"] >= pd.Timestamp(f"{START_YEAR}-01-01"))
                      & (daily["date"] <= pd.Timestamp(f"{END_YEAR}-12-31"))]
    daily = daily.sort_values(["site", "date"]).reset_index(drop=True)

    logger.info("Saving cleaned data to %s", CLEANED_DATA_PATH)
    logger.info("DataFrame shape: %s", daily.shape)
    logger.info("Date range: %s to %s", daily["date"].min(), daily["date"].max())
    logger.info("Number of sites: %d", daily["site"].nunique())

    daily.to_csv(CLEANED_DATA_PATH, index=False)


if __name__ == "__main__":
    try:
        main()
    except Exception:
        logger.exception("Pre-processing failed")
        sys.exit(1)
