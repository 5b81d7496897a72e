"""
Screening and correction of sonde readings.

The cleaning sequence is:
1. Mask logger sentinel codes (e.g. -9999) as missing
2. Drop repeated readings from overlapping downloads
3. Remove physically implausible values per metric
4. Remove water quality readings while the sonde was out of the water
5. Apply the site-specific correction rules in order
6. Aggregate to one row per site and date, requiring a minimum daily coverage

Correction rules are plain dicts (see config.CORRECTIONS) matched on site,
an inclusive date range and a metric. They apply to raw readings (datetime
column) or daily values (date column).

Author: Urban Streams Monitoring Program
"""

import logging

import numpy as np
import pandas as pd

from config import (
    CORRECTIONS,
    DAILY_COVERAGE_THRESHOLD,
    MIN_SENSOR_DEPTH,
    READINGS_PER_DAY,
    SENTINEL_VALUES,
    VALID_RANGES,
    WATER_QUALITY_METRICS,
)

logger = logging.getLogger(__name__)

CORRECTION_ACTIONS = ("remove", "drop", "replace", "offset", "substitute")


def _time_column(df):
    if "datetime" in df.columns:
        return "datetime"
    if "date" in df.columns:
        return "date"
    raise KeyError("Table needs a 'datetime' or 'date' column")


def _day_key(df):
    """Calendar day of every row, used to match inclusive date ranges."""
    return pd.to_datetime(df[_time_column(df)]).dt.normalize()


def _metrics_present(df, metrics):
    return [m for m in metrics if m in df.columns]


def mask_sentinel_values(df, metrics=None, sentinels=None):
    """Replace logger fill codes with NaN."""
    metrics = _metrics_present(df, WATER_QUALITY_METRICS if metrics is None else metrics)
    sentinels = SENTINEL_VALUES if sentinels is None else sentinels
    df = df.copy()
    for metric in metrics:
        mask = df[metric].isin(sentinels)
        if mask.any():
            logger.info("Masked %d sentinel values in %s", mask.sum(), metric)
            df.loc[mask, metric] = np.nan
    return df


def drop_duplicate_readings(df):
    """Keep the first reading of each (site, timestamp)."""
    key = ["site", _time_column(df)]
    dupes = df.duplicated(subset=key, keep="first")
    if dupes.any():
        logger.info("Dropped %d duplicate readings from overlapping downloads", dupes.sum())
    return df.loc[~dupes].reset_index(drop=True)


def apply_range_checks(df, valid_ranges=None):
    """
    Set values outside the physically plausible range to NaN.

    Args:
        df (pd.DataFrame): Readings
        valid_ranges (dict): metric -> (lower, upper), both inclusive

    Returns:
        pd.DataFrame: Copy with implausible values removed
    """
    valid_ranges = VALID_RANGES if valid_ranges is None else valid_ranges
    df = df.copy()
    for metric, (lower, upper) in valid_ranges.items():
        if metric not in df.columns:
            continue
        values = df[metric]
        out_of_range = values.notna() & ((values < lower) | (values > upper))
        if out_of_range.any():
            logger.info("Removed %d %s values outside [%s, %s]", out_of_range.sum(), metric, lower, upper)
            df.loc[out_of_range, metric] = np.nan
    return df


def remove_dry_sensor_readings(df, min_depth=MIN_SENSOR_DEPTH, metrics=None):
    """
    Remove water quality readings logged while the sonde was out of the water.

    Depth itself is kept so that low-flow periods remain visible in the record.
    """
    if metrics is None:
        metrics = [m for m in WATER_QUALITY_METRICS if m != "depth"]
    metrics = _metrics_present(df, metrics)
    df = df.copy()
    dry = df["depth"] < min_depth
    if dry.any():
        logger.info("Removed water quality readings on %d rows with depth below %s m", dry.sum(), min_depth)
        df.loc[dry, metrics] = np.nan
    return df


def _apply_correction(df, rule):
    """Apply one correction rule and return the corrected table and the number of rows touched."""
    action = rule["action"]
    if action not in CORRECTION_ACTIONS:
        raise ValueError(f"Unknown correction action '{action}'; expected one of {CORRECTION_ACTIONS}")

    metric = rule.get("metric")
    if action != "drop" and metric is None:
        raise ValueError(f"Correction action '{action}' needs a metric")
    if metric is not None and metric not in df.columns:
        raise KeyError(f"Correction refers to unknown metric '{metric}'")

    days = _day_key(df)
    start = pd.Timestamp(rule["start"]).normalize()
    end = pd.Timestamp(rule["end"]).normalize()
    mask = (df["site"] == rule["site"]) & (days >= start) & (days <= end)
    n_rows = int(mask.sum())

    if action == "drop":
        return df.loc[~mask].reset_index(drop=True), n_rows

    df = df.copy()
    if action == "remove":
        df.loc[mask, metric] = np.nan
    elif action == "replace":
        df.loc[mask, metric] = rule["value"]
    elif action == "offset":
        df.loc[mask, metric] = df.loc[mask, metric] + rule["value"]
    elif action == "substitute":
        time_col = _time_column(df)
        source = df.loc[df["site"] == rule["source_site"]].drop_duplicates(subset=[time_col])
        source = source.set_index(time_col)[metric]
        df.loc[mask, metric] = df.loc[mask, time_col].map(source).to_numpy()
    return df, n_rows


def apply_corrections(df, corrections=None):
    """
    Apply site-specific correction rules sequentially.

    Each rule is a dict with keys site, start, end, metric, action and, depending on
    the action, value or source_site. Later rules see the result of earlier ones.

    Args:
        df (pd.DataFrame): Raw readings or daily values
        corrections (list of dict): Rules to apply. Defaults to config.CORRECTIONS

    Returns:
        pd.DataFrame: Corrected table
    """
    corrections = CORRECTIONS if corrections is None else corrections
    for rule in corrections:
        df, n_rows = _apply_correction(df, rule)
        logger.info("Correction %s %s at %s (%s to %s): %d rows. %s",
                    rule["action"], rule.get("metric") or "all metrics", rule["site"],
                    rule["start"], rule["end"], n_rows, rule.get("note", ""))
    return df


def aggregate_daily(df, metrics=None, readings_per_day=READINGS_PER_DAY, min_coverage=DAILY_COVERAGE_THRESHOLD):
    """
    Aggregate 15-minute readings to daily values.

    A daily value is kept only when the number of valid readings for that metric
    is at least min_coverage * readings_per_day. Besides the daily means, the
    daily minimum and maximum dissolved oxygen and the daily maximum temperature
    are returned because the water quality standards are written against them.

    Returns:
        pd.DataFrame: One row per site and date
    """
    metrics = _metrics_present(df, WATER_QUALITY_METRICS if metrics is None else metrics)
    df = df.copy()
    df["date"] = df["datetime"].dt.normalize()
    grouped = df.groupby(["site", "date"])

    daily = grouped[metrics].mean()
    counts = grouped[metrics].count()
    min_readings = min_coverage * readings_per_day
    daily = daily.where(counts >= min_readings)

    extremes = {"do_min": ("do_mgl", "min"), "do_max": ("do_mgl", "max"), "temp_max": ("temp", "max")}
    for name, (source, how) in extremes.items():
        if source in metrics:
            daily[name] = grouped[source].agg(how).where(counts[source] >= min_readings)

    daily["n_readings"] = grouped.size()
    daily = daily.reset_index()
    logger.info("Aggregated %d readings to %d site-days", len(df), len(daily))
    return daily


def check_unique_site_dates(df):
    """Raise ValueError if any site has more than one row for a date."""
    dupes = df.duplicated(subset=["site", "date"], keep=False)
    if dupes.any():
        examples = df.loc[dupes, ["site", "date"]].drop_duplicates().head(5).to_records(index=False).tolist()
        raise ValueError(f"Expected one row per site and date, found duplicates such as {examples}")
    return df


def clean_instrument_data(raw, corrections=None, valid_ranges=None, min_depth=MIN_SENSOR_DEPTH,
                          readings_per_day=READINGS_PER_DAY, min_coverage=DAILY_COVERAGE_THRESHOLD):
    """Run the full cleaning sequence on raw readings and return daily values."""
    df = mask_sentinel_values(raw)
    df = drop_duplicate_readings(df)
    df = apply_range_checks(df, valid_ranges)
    df = remove_dry_sensor_readings(df, min_depth=min_depth)
    df = apply_corrections(df, corrections)
    daily = aggregate_daily(df, readings_per_day=readings_per_day, min_coverage=min_coverage)
    return check_unique_site_dates(daily)
