"""
Non-parametric trend analysis for the daily water quality data.

This module complements the regression models with per-site trend tests on
aggregated values, which make no assumption about the error distribution.

The script calculates trends in:
- Annual means of the daily metrics (dissolved oxygen, chloride, temperature, depth)
- Monthly means, tested with the seasonal Kendall test

Methods:
- Trend calculation using Theil-Sen slope estimator
- Significance testing using modified Mann-Kendall test (Hamed and Rao modification)
- Seasonal Kendall test on monthly means (period of 12)

Dependencies:
- pandas
- numpy
- scipy
- pymannkendall

Author: Urban Streams Monitoring Program
"""

import logging
from collections import defaultdict

import numpy as np
import pandas as pd
import pymannkendall as mk
from pymannkendall import hamed_rao_modification_test
from scipy.stats import theilslopes

from config import ANNUAL_COVERAGE_THRESHOLD, MIN_YEARS_FOR_TREND, MONTHLY_COVERAGE_THRESHOLD

logger = logging.getLogger(__name__)


def calc_trend_and_pval(data, x=None):
    """
    Calculate trend and p-value using Theil-Sen slope estimator and modified Mann-Kendall test.

    Args:
        data (np.array): Annual time series
        x (np.array, optional): Year of each value. Defaults to 0, 1, 2, ...

    Returns:
        tuple: (trend per decade in %, p-value, trend, intercept, x values)
    """
    tmul = 10  # Multiplier to convert to per-decade values
    data = np.asarray(data, dtype=np.float64)
    x_values = np.arange(len(data)) if x is None else np.asarray(x, dtype=np.float64)
    trend_ts, intercept_ts, _, _ = theilslopes(data, x_values)
    _, _, mod_pval, _, _, _, _, _, _ = hamed_rao_modification_test(data)
    trend_percent_increase_per_decade_ts = (trend_ts / np.mean(data)) * 100 * tmul

    return trend_percent_increase_per_decade_ts, mod_pval, trend_ts, intercept_ts, x_values


def _wide(daily, metric):
    """Daily values of one metric with dates as rows and sites as columns."""
    wide = daily.pivot(index="date", columns="site", values=metric)
    wide.index = pd.to_datetime(wide.index)
    return wide.sort_index()


def compute_annual_means(daily, metric, coverage=ANNUAL_COVERAGE_THRESHOLD):
    """
    Compute calendar-year means per site.

    A year is kept only when the fraction of days with a valid value is at least
    coverage.

    Returns:
        pd.DataFrame: Annual means indexed by year end, one column per site
    """
    wide = _wide(daily, metric)
    years = wide.index.year
    annual_avg = wide.groupby(years).mean()
    annual_count = wide.groupby(years).count()
    days_in_year = pd.Series([366 if pd.Timestamp(f"{y}-01-01").is_leap_year else 365 for y in annual_avg.index],
                             index=annual_avg.index)
    annual_avg = annual_avg.where(annual_count.div(days_in_year, axis=0) >= coverage)
    annual_avg.index = pd.to_datetime([f"{y}-12-31" for y in annual_avg.index])
    return annual_avg


def compute_monthly_means(daily, metric, coverage=MONTHLY_COVERAGE_THRESHOLD):
    """Compute monthly means per site, keeping months with enough valid days."""
    wide = _wide(daily, metric)
    monthly_avg = wide.resample("MS").mean()
    monthly_count = wide.resample("MS").count()
    days_in_month = pd.Series(monthly_avg.index.days_in_month, index=monthly_avg.index)
    return monthly_avg.where(monthly_count.div(days_in_month, axis=0) >= coverage)


def seasonal_kendall(monthly, start_year, end_year, min_complete_years=3):
    """
    Seasonal Kendall test on a monthly series.

    Returns:
        tuple: (slope per year, p-value), NaN when fewer than min_complete_years
        years have all twelve months
    """
    calendar = pd.date_range(f"{start_year}-01-01", f"{end_year}-12-01", freq="MS")
    values = monthly.reindex(calendar).to_numpy(dtype=float)
    complete_years = (~np.isnan(values.reshape(-1, 12))).all(axis=1).sum()
    if complete_years < min_complete_years:
        return np.nan, np.nan
    result = mk.seasonal_test(values, period=12)
    return result.slope, result.p


def calc_site_trends(daily, metrics, start_year, end_year, annual_coverage=ANNUAL_COVERAGE_THRESHOLD,
                     monthly_coverage=MONTHLY_COVERAGE_THRESHOLD, min_years=MIN_YEARS_FOR_TREND):
    """
    Calculate per-site trends for a set of daily metrics.

    Args:
        daily (pd.DataFrame): Daily values with columns site, date and the metrics
        metrics (list of str): Metrics to analyse
        start_year (int): Start year for analysis
        end_year (int): End year for analysis
        annual_coverage (float): Minimum fraction of valid days for an annual mean
        monthly_coverage (float): Minimum fraction of valid days for a monthly mean
        min_years (int): Minimum number of valid years for a trend

    Returns:
        tuple: (results DataFrame, valid data dictionary, invalid data dictionary)
    """
    results = defaultdict(dict)
    valid_data_dict = {}
    invalid_data_dict = {}

    dates = pd.to_datetime(daily["date"])
    period = daily.loc[(dates.dt.year >= start_year) & (dates.dt.year <= end_year)].copy()
    period["date"] = pd.to_datetime(period["date"])

    for metric in metrics:
        if metric not in period.columns:
            logger.warning("Metric %s not in the daily data, skipping trend analysis", metric)
            continue
        annual_avg = compute_annual_means(period, metric, annual_coverage)
        monthly_avg = compute_monthly_means(period, metric, monthly_coverage)

        for site in annual_avg.columns:
            annual_data = annual_avg[site].dropna()
            if len(annual_data) >= min_years:
                trend_per_dec, pval, trend, intercept, _ = calc_trend_and_pval(
                    annual_data.values, annual_data.index.year)
                results[site][f'trend_{metric}_per_decade'] = trend_per_dec
                results[site][f'trend_{metric}'] = trend
                results[site][f'intercept_{metric}'] = intercept
                results[site][f'pval_{metric}'] = pval
                valid_data_dict[(site, metric)] = annual_data
            else:
                logger.info("Site %s omitted for %s: %d valid years, %d required",
                            site, metric, len(annual_data), min_years)
                for prefix in ['trend_%s_per_decade', 'trend_%s', 'intercept_%s', 'pval_%s']:
                    results[site][prefix % metric] = np.nan
                invalid_data_dict[(site, metric)] = annual_data

            slope, pval = seasonal_kendall(monthly_avg[site], start_year, end_year)
            results[site][f'seasonal_slope_{metric}'] = slope
            results[site][f'seasonal_pval_{metric}'] = pval

    results = pd.DataFrame(results).T
    results.index.name = "site"
    return results.astype(float), valid_data_dict, invalid_data_dict
