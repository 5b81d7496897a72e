"""
Derived covariates for the water quality models.

Daily site values are joined to weather and site attributes, and the following
variables are derived:
- Chloride estimated from specific conductance
- Log transforms of chloride, depth, dissolved oxygen and impervious cover
- Calendar and seasonal terms (day of year, harmonics, decimal time)
- Lagged, rolling and exponentially weighted precipitation
- A watershed flow index from log depth at the reference site
- Exceedance indicators against water quality standards

Every step keeps one row per site and date.

Author: Urban Streams Monitoring Program
"""

import logging

import numpy as np
import pandas as pd
import statsmodels.api as sm

from config import (
    CHLORIDE_INTERCEPT,
    CHLORIDE_SLOPE,
    EXCEEDANCE_THRESHOLDS,
    PRECIP_DECAY,
    PRECIP_DECAY_DAYS,
    PRECIP_LAGS,
    PRECIP_WINDOWS,
    REFERENCE_SITE,
    START_YEAR,
)

logger = logging.getLogger(__name__)

SEASONS = {12: "DJF", 1: "DJF", 2: "DJF", 3: "MAM", 4: "MAM", 5: "MAM",
           6: "JJA", 7: "JJA", 8: "JJA", 9: "SON", 10: "SON", 11: "SON"}


def fit_chloride_regression(grab_samples):
    """
    Fit chloride against specific conductance from paired grab samples.

    Args:
        grab_samples (pd.DataFrame): Columns spcond (µS/cm) and chloride (mg/L)

    Returns:
        tuple: (slope, intercept) of chloride = slope * spcond + intercept
    """
    samples = grab_samples[["spcond", "chloride"]].dropna()
    if len(samples) < 3:
        raise ValueError(f"Need at least 3 paired grab samples to fit the chloride regression, got {len(samples)}")
    result = sm.OLS(samples["chloride"], sm.add_constant(samples["spcond"])).fit()
    slope = float(result.params["spcond"])
    intercept = float(result.params["const"])
    logger.info("Chloride regression: Cl = %.4f * SpCond %+.2f (R2=%.3f, n=%d)",
                slope, intercept, result.rsquared, len(samples))
    return slope, intercept


def estimate_chloride(spcond, slope=CHLORIDE_SLOPE, intercept=CHLORIDE_INTERCEPT):
    """Estimate chloride (mg/L) from specific conductance. Non-positive estimates are NaN."""
    chloride = slope * pd.Series(spcond, dtype=float) + intercept
    return chloride.where(chloride > 0)


def log_transform(values, offset=0.0):
    """Natural log of values + offset, with NaN where the argument is not positive."""
    values = pd.Series(values, dtype=float) + offset
    return np.log(values.where(values > 0))


def add_time_covariates(df, origin_year=START_YEAR):
    """Add calendar, seasonal and decimal-time columns based on the date column."""
    df = df.copy()
    dates = pd.to_datetime(df["date"])
    origin = pd.Timestamp(f"{origin_year}-01-01")
    df["year"] = dates.dt.year
    df["month"] = dates.dt.month
    df["doy"] = dates.dt.dayofyear
    df["season"] = df["month"].map(SEASONS)
    df["trend_years"] = (dates - origin).dt.days / 365.25
    angle = 2 * np.pi * df["doy"] / 365.25
    df["sin_doy"] = np.sin(angle)
    df["cos_doy"] = np.cos(angle)
    return df


def antecedent_precipitation_index(precip, decay=PRECIP_DECAY, n_days=PRECIP_DECAY_DAYS):
    """
    Exponentially weighted sum of the previous n_days of precipitation.

    API[t] = sum_{k=0}^{n_days-1} decay**k * P[t-k]. The series must be on a
    continuous daily calendar. Windows with a missing day are NaN.
    """
    weights = decay ** np.arange(n_days)[::-1]
    return precip.rolling(window=n_days, min_periods=n_days).apply(lambda w: np.dot(w, weights), raw=True)


def precipitation_covariates(precip, lags=None, windows=None, decay=PRECIP_DECAY, decay_days=PRECIP_DECAY_DAYS):
    """
    Build daily precipitation covariates on the calendar.

    Args:
        precip (pd.Series): Daily precipitation with a continuous DatetimeIndex
        lags (list of int): Lags in days
        windows (list of int): Rolling sum windows in days
        decay (float): Daily decay factor for the antecedent precipitation index
        decay_days (int): Length of the antecedent precipitation window

    Returns:
        pd.DataFrame: Covariates indexed by date
    """
    lags = PRECIP_LAGS if lags is None else lags
    windows = PRECIP_WINDOWS if windows is None else windows

    precip = precip.sort_index()
    calendar = pd.date_range(precip.index.min(), precip.index.max(), freq="D")
    precip = precip.reindex(calendar)

    out = pd.DataFrame({"precip": precip}, index=calendar)
    for lag in lags:
        out[f"precip_lag{lag}"] = precip.shift(lag)
    for window in windows:
        out[f"precip_sum{window}d"] = precip.rolling(window=window, min_periods=window).sum()
    out["precip_api"] = antecedent_precipitation_index(precip, decay=decay, n_days=decay_days)
    out["log_precip_api"] = np.log1p(out["precip_api"])
    out.index.name = "date"
    return out


def add_precipitation_covariates(df, precip, lags=None, windows=None, decay=PRECIP_DECAY,
                                 decay_days=PRECIP_DECAY_DAYS):
    """Join precipitation covariates onto site-days by date."""
    covariates = precipitation_covariates(precip, lags=lags, windows=windows, decay=decay, decay_days=decay_days)
    df = df.drop(columns=[c for c in covariates.columns if c in df.columns])
    merged = df.merge(covariates, left_on="date", right_index=True, how="left")
    merged.index = df.index
    n_missing = merged["precip"].isna().sum()
    if n_missing:
        logger.info("%d site-days have no precipitation record", n_missing)
    return merged


def compute_flow_index(df, reference_site=REFERENCE_SITE, depth_col="depth", standardize=True):
    """
    Compute the watershed flow index from water depth at the reference site.

    The index is log depth at the reference site, standardized to zero mean and
    unit variance over its record when standardize is True.

    Returns:
        pd.Series: Flow index indexed by date
    """
    ref = df.loc[df["site"] == reference_site].set_index("date")[depth_col].sort_index()
    log_depth = log_transform(ref).set_axis(ref.index)
    n_valid = log_depth.notna().sum()
    if n_valid == 0:
        raise ValueError(f"Reference site {reference_site} has no positive {depth_col} values")
    if standardize and n_valid < 2:
        raise ValueError(f"Reference site {reference_site} needs at least 2 positive {depth_col} values "
                         f"to standardize the flow index, got {n_valid}")
    if standardize:
        log_depth = (log_depth - log_depth.mean()) / log_depth.std()
    return log_depth.rename("flow_index")


def add_flow_index(df, flow_index):
    """Join the flow index onto every site by date."""
    df = df.drop(columns=["flow_index"], errors="ignore")
    merged = df.merge(flow_index.rename("flow_index"), left_on="date", right_index=True, how="left")
    merged.index = df.index
    return merged


def _indicator(values, threshold, above):
    exceed = values > threshold if above else values < threshold
    return exceed.astype(float).where(values.notna())


def add_exceedance_indicators(df, thresholds=None):
    """
    Add 0/1 indicators of water quality standard exceedances.

    The indicator is NaN where the underlying value is missing. Daily minimum DO
    and daily maximum temperature are used when available.
    """
    thresholds = EXCEEDANCE_THRESHOLDS if thresholds is None else thresholds
    df = df.copy()
    do_col = "do_min" if "do_min" in df.columns else "do_mgl"
    temp_col = "temp_max" if "temp_max" in df.columns else "temp"
    if do_col in df.columns:
        df["do_low"] = _indicator(df[do_col], thresholds["do_min"], above=False)
    if "chloride" in df.columns:
        df["chloride_chronic"] = _indicator(df["chloride"], thresholds["chloride_chronic"], above=True)
        df["chloride_acute"] = _indicator(df["chloride"], thresholds["chloride_acute"], above=True)
    if temp_col in df.columns:
        df["temp_high"] = _indicator(df[temp_col], thresholds["temp_max"], above=True)
    return df


def merge_site_attributes(df, sites):
    """Left join impervious cover (and its log) from the site table."""
    attributes = sites[["impervious_pct"]].copy()
    attributes["log_impervious"] = log_transform(attributes["impervious_pct"]).to_numpy()
    df = df.drop(columns=["impervious_pct", "log_impervious"], errors="ignore")
    merged = df.merge(attributes, left_on="site", right_index=True, how="left")
    merged.index = df.index
    unknown = sorted(merged.loc[merged["impervious_pct"].isna(), "site"].unique())
    if unknown:
        logger.warning("No site attributes for sites %s", unknown)
    return merged


def build_model_frame(daily, precip, sites, chloride_coefs=None, reference_site=REFERENCE_SITE,
                      origin_year=START_YEAR, lags=None, windows=None, decay=PRECIP_DECAY,
                      decay_days=PRECIP_DECAY_DAYS, thresholds=None):
    """
    Derive every model covariate from the cleaned daily table.

    Args:
        daily (pd.DataFrame): Cleaned daily values, one row per site and date
        precip (pd.Series): Daily precipitation on a continuous calendar
        sites (pd.DataFrame): Site table indexed by site
        chloride_coefs (tuple, optional): (slope, intercept) of the chloride regression

    Returns:
        pd.DataFrame: Model frame sorted by site and date
    """
    slope, intercept = (CHLORIDE_SLOPE, CHLORIDE_INTERCEPT) if chloride_coefs is None else chloride_coefs
    n_rows = len(daily)

    frame = daily.copy()
    frame["date"] = pd.to_datetime(frame["date"])
    if "spcond" in frame.columns:
        frame["chloride"] = estimate_chloride(frame["spcond"], slope, intercept).to_numpy()
        frame["log_chloride"] = log_transform(frame["chloride"]).to_numpy()
    frame["log_depth"] = log_transform(frame["depth"]).to_numpy()
    frame["log_do"] = log_transform(frame["do_mgl"]).to_numpy()

    frame = add_time_covariates(frame, origin_year=origin_year)
    frame = add_precipitation_covariates(frame, precip, lags=lags, windows=windows, decay=decay,
                                         decay_days=decay_days)
    frame = add_flow_index(frame, compute_flow_index(frame, reference_site=reference_site))
    frame = add_exceedance_indicators(frame, thresholds)
    frame = merge_site_attributes(frame, sites)

    if len(frame) != n_rows:
        raise ValueError(f"Covariate joins changed the number of site-days from {n_rows} to {len(frame)}")
    return frame.sort_values(["site", "date"]).reset_index(drop=True)
