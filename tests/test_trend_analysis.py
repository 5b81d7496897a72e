"""
Tests for the per-site Theil-Sen / Mann-Kendall trends.
"""

import numpy as np
import pandas as pd
import pytest

import trend_analysis


def make_daily(seed=5):
    """Eight years of daily temperature at SC-01 rising 0.2 degrees per year, three years at SC-02."""
    rng = np.random.default_rng(seed)
    dates = pd.date_range("2012-01-01", "2019-12-31", freq="D")
    years = dates.year - 2012
    seasonal = 8 * np.sin(2 * np.pi * dates.dayofyear / 365.25)
    site_1 = pd.DataFrame({"site": "SC-01", "date": dates,
                           "temp": 12 + 0.2 * years + seasonal + rng.normal(scale=1.0, size=len(dates))})
    recent = dates[dates.year >= 2017]
    site_2 = pd.DataFrame({"site": "SC-02", "date": recent,
                           "temp": 14 + rng.normal(scale=1.0, size=len(recent))})
    return pd.concat([site_1, site_2], ignore_index=True)


def test_calc_trend_and_pval():
    rng = np.random.default_rng(1)
    years = np.arange(2010, 2020)
    data = 50 + 2.0 * (years - 2010) + rng.normal(scale=0.5, size=len(years))

    trend_per_dec, pval, trend, intercept, x_values = trend_analysis.calc_trend_and_pval(data, years)

    assert trend == pytest.approx(2.0, abs=0.3)
    assert trend_per_dec == pytest.approx(trend / np.mean(data) * 1000)
    assert pval < 0.01
    assert intercept + trend * 2015 == pytest.approx(np.median(data), abs=2)
    assert np.array_equal(x_values, years)


def test_compute_annual_means_applies_coverage():
    daily = make_daily()
    daily = daily.loc[~((daily["site"] == "SC-01") & (daily["date"].dt.year == 2013)
                        & (daily["date"].dt.month > 4))]

    annual = trend_analysis.compute_annual_means(daily, "temp", coverage=0.6)

    assert annual.index[0] == pd.Timestamp("2012-12-31")
    assert np.isnan(annual.loc["2013-12-31", "SC-01"])
    assert annual["SC-01"].notna().sum() == 7
    assert annual["SC-02"].notna().sum() == 3


def test_compute_monthly_means():
    daily = make_daily()
    daily = daily.loc[~((daily["date"] >= "2015-02-01") & (daily["date"] <= "2015-02-20"))]

    monthly = trend_analysis.compute_monthly_means(daily, "temp", coverage=0.6)

    assert monthly.index.freqstr == "MS"
    assert np.isnan(monthly.loc["2015-02-01", "SC-01"])
    assert not np.isnan(monthly.loc["2015-03-01", "SC-01"])


def test_seasonal_kendall_needs_complete_years():
    index = pd.date_range("2012-01-01", "2019-12-01", freq="MS")
    monthly = pd.Series(np.arange(len(index), dtype=float), index=index)

    slope, pval = trend_analysis.seasonal_kendall(monthly, 2012, 2019)
    assert slope == pytest.approx(12.0)
    assert pval < 0.001

    slope, pval = trend_analysis.seasonal_kendall(monthly.loc[:"2013-12-01"], 2012, 2019)
    assert np.isnan(slope) and np.isnan(pval)


def test_calc_site_trends():
    daily = make_daily()

    results, valid, invalid = trend_analysis.calc_site_trends(daily, ["temp", "chloride"], 2012, 2019)

    assert results.index.name == "site"
    assert results.loc["SC-01", "trend_temp"] == pytest.approx(0.2, abs=0.05)
    assert results.loc["SC-01", "pval_temp"] < 0.05
    assert results.loc["SC-01", "seasonal_slope_temp"] == pytest.approx(0.2, abs=0.1)
    assert np.isnan(results.loc["SC-02", "trend_temp"])
    assert ("SC-01", "temp") in valid
    assert ("SC-02", "temp") in invalid
    assert len(invalid[("SC-02", "temp")]) == 3
    assert not any(col.endswith("chloride") for col in results.columns)


def test_calc_site_trends_restricts_period():
    daily = make_daily()

    results, valid, _ = trend_analysis.calc_site_trends(daily, ["temp"], 2012, 2016)

    assert valid[("SC-01", "temp")].index.max() == pd.Timestamp("2016-12-31")
    assert "SC-02" not in results.index
