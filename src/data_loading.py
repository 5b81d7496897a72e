"""
Read raw monitoring inputs for the water quality analysis.

This module reads:
- 15-minute sonde exports (CSV or Excel), one or more files per site
- Daily weather station records (precipitation, air temperature)
- The site reference table with impervious cover and coordinates
- Laboratory chloride grab samples used to calibrate the chloride estimate

All readers return pandas objects with canonical column names so the cleaning
and covariate steps do not depend on the instrument vendor's headers.

Dependencies:
- pandas
- openpyxl (Excel exports)

Author: Urban Streams Monitoring Program
"""

import logging
from pathlib import Path

import numpy as np
import pandas as pd

from config import INSTRUMENT_COLUMNS, INSTRUMENT_FILE_PATTERNS, INSTRUMENT_HEADER_ROW

logger = logging.getLogger(__name__)

SITE_TABLE_COLUMNS = ["site", "site_name", "impervious_pct", "latitude", "longitude"]
GRAB_SAMPLE_COLUMNS = ["site", "date", "spcond", "chloride"]


def _read_table(path, header_row=0):
    """Read a CSV or Excel file depending on its suffix."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    if path.suffix.lower() in (".xlsx", ".xls"):
        return pd.read_excel(path, header=header_row)
    return pd.read_csv(path, header=header_row)


def read_instrument_file(path, site, columns=None, header_row=INSTRUMENT_HEADER_ROW):
    """
    Read a single sonde export and return it in canonical form.

    Args:
        path (str or Path): Path to the CSV or Excel export
        site (str): Site code the file belongs to
        columns (dict, optional): Mapping of raw headers to canonical names.
            Defaults to config.INSTRUMENT_COLUMNS
        header_row (int): Row holding the column headers

    Returns:
        pd.DataFrame: Columns site, datetime and the measured metrics, sorted by time

    Raises:
        KeyError: If a column of the fixed layout is missing from the file
    """
    columns = INSTRUMENT_COLUMNS if columns is None else columns
    df = _read_table(path, header_row=header_row)
    df.columns = [str(c).strip() for c in df.columns]

    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise KeyError(f"{Path(path).name} is missing expected columns: {missing}")

    df = df[list(columns)].rename(columns=columns)

    # Combine separate date and time columns into one timestamp
    if "time" in df.columns:
        stamp = df["date"].astype(str).str.strip() + " " + df["time"].astype(str).str.strip()
        df["datetime"] = pd.to_datetime(stamp, errors="coerce")
        df = df.drop(columns=["date", "time"])
    else:
        df["datetime"] = pd.to_datetime(df["date"], errors="coerce")
        df = df.drop(columns=["date"])

    n_bad = df["datetime"].isna().sum()
    if n_bad:
        logger.warning("%s: dropping %d rows with unparseable timestamps", Path(path).name, n_bad)
        df = df.dropna(subset=["datetime"])

    metrics = [c for c in df.columns if c != "datetime"]
    for col in metrics:
        df[col] = pd.to_numeric(df[col], errors="coerce")

    df.insert(0, "site", site)
    df = df[["site", "datetime"] + metrics]
    return df.sort_values("datetime").reset_index(drop=True)


def process_instrument_data(instrument_dir, patterns=None, columns=None, header_row=INSTRUMENT_HEADER_ROW):
    """Read every sonde export in a directory into one long table.

    Parameters:
    ----------
    instrument_dir : Path
        Directory containing the exports.
        Expected file names: <SITE>_<anything>.csv or <SITE>_<anything>.xlsx
    patterns : list of str, optional
        Glob patterns to read. Defaults to config.INSTRUMENT_FILE_PATTERNS

    Returns:
    -------
    pd.DataFrame
        Readings from all sites, sorted by site and datetime
    """
    instrument_dir = Path(instrument_dir)
    patterns = INSTRUMENT_FILE_PATTERNS if patterns is None else patterns

    if not instrument_dir.exists():
        raise FileNotFoundError(f"Instrument data directory not found: {instrument_dir}")

    frames = []
    for pattern in patterns:
        for instrument_file in sorted(instrument_dir.glob(pattern)):
            try:
                site = instrument_file.stem.split("_")[0]
                frames.append(read_instrument_file(instrument_file, site, columns=columns, header_row=header_row))
                logger.debug("Read %s for site %s", instrument_file.name, site)
            except (KeyError, ValueError, pd.errors.ParserError) as e:
                logger.error("Error processing file %s: %s", instrument_file, e)
                continue

    if not frames:
        raise ValueError(f"No valid instrument files were processed in {instrument_dir}")

    raw = pd.concat(frames, ignore_index=True)
    raw = raw.sort_values(["site", "datetime"], kind="mergesort").reset_index(drop=True)
    logger.info("Read %d readings from %d files covering %d sites",
                len(raw), len(frames), raw["site"].nunique())
    return raw


def read_weather_data(path, start=None, end=None):
    """
    Read daily weather station records.

    Several stations in the file are averaged per date. The result is placed on a
    continuous daily calendar so that missing days are explicit NaN values.

    Args:
        path (str or Path): CSV with columns DATE, PRCP and optionally TMAX, TMIN
        start (str, optional): First date to keep
        end (str, optional): Last date to keep

    Returns:
        pd.DataFrame: Daily values indexed by date with columns precip (and tmax, tmin)
    """
    weather = _read_table(path)
    if "DATE" not in weather.columns or "PRCP" not in weather.columns:
        raise KeyError(f"Weather file {path} must contain DATE and PRCP columns")

    weather["DATE"] = pd.to_datetime(weather["DATE"])
    rename = {"PRCP": "precip", "TMAX": "tmax", "TMIN": "tmin"}
    keep = [c for c in rename if c in weather.columns]
    for col in keep:
        weather[col] = pd.to_numeric(weather[col], errors="coerce")
    daily = weather.groupby("DATE")[keep].mean().rename(columns=rename)

    start = daily.index.min() if start is None else pd.Timestamp(start)
    end = daily.index.max() if end is None else pd.Timestamp(end)
    calendar = pd.date_range(start, end, freq="D", name="date")
    daily = daily.reindex(calendar)

    n_missing = daily["precip"].isna().sum()
    if n_missing:
        logger.info("Weather record has %d missing precipitation days between %s and %s",
                    n_missing, start.date(), end.date())
    return daily


def read_site_table(path):
    """Read the site reference table and check it has one row per site."""
    sites = _read_table(path)
    missing = [c for c in SITE_TABLE_COLUMNS if c not in sites.columns]
    if missing:
        raise KeyError(f"Site table {path} is missing columns: {missing}")

    sites["site"] = sites["site"].astype(str).str.strip()
    if sites["site"].duplicated().any():
        dupes = sites.loc[sites["site"].duplicated(), "site"].tolist()
        raise ValueError(f"Site table lists sites more than once: {dupes}")

    sites["impervious_pct"] = pd.to_numeric(sites["impervious_pct"], errors="coerce")
    if ((sites["impervious_pct"] < 0) | (sites["impervious_pct"] > 100)).any():
        raise ValueError("Impervious cover must be a percentage between 0 and 100")
    return sites.set_index("site")


def read_grab_samples(path):
    """Read laboratory chloride grab samples paired with field specific conductance."""
    samples = _read_table(path)
    missing = [c for c in GRAB_SAMPLE_COLUMNS if c not in samples.columns]
    if missing:
        raise KeyError(f"Grab sample file {path} is missing columns: {missing}")
    samples["date"] = pd.to_datetime(samples["date"])
    samples["site"] = samples["site"].astype(str)
    for col in ["spcond", "chloride"]:
        samples[col] = pd.to_numeric(samples[col], errors="coerce")
    samples = samples.replace([np.inf, -np.inf], np.nan)
    return samples[GRAB_SAMPLE_COLUMNS]
