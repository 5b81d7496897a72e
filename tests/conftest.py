"""
Shared fixtures: synthetic sonde readings, daily values and weather records.
"""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

import covariates

SITE_EFFECTS = {"SC-01": 0.0, "SC-02": 1.5, "SC-03": -1.0, "SC-04": 0.5}
IMPERVIOUS = {"SC-01": 8.0, "SC-02": 22.0, "SC-03": 35.0, "SC-04": 51.0}


def ar1_series(rng, n, phi):
    """Stationary AR(1) series with unit variance."""
    e = np.empty(n)
    e[0] = rng.normal()
    innovations = rng.normal(size=n) * np.sqrt(1 - phi ** 2)
    for t in range(1, n):
        e[t] = phi * e[t - 1] + innovations[t]
    return e


def make_model_frame(n_days=730, phi=0.6, trend=1.0, drop_frac=0.05, seed=42):
    """
    Daily site values with known site effects, linear trend, seasonal cycle and AR(1) errors.

    A random share of days is removed to leave irregular gaps.
    """
    rng = np.random.default_rng(seed)
    dates = pd.date_range("2015-01-01", periods=n_days, freq="D")
    frames = []
    for site, effect in SITE_EFFECTS.items():
        frame = pd.DataFrame({"site": site, "date": dates})
        frame = covariates.add_time_covariates(frame, origin_year=2015)
        frame["error"] = ar1_series(rng, n_days, phi)
        frame["impervious_pct"] = IMPERVIOUS[site]
        frame["flow_index"] = rng.normal(size=n_days)
        frame["temp"] = 12 + 9 * frame["sin_doy"] + rng.normal(scale=0.5, size=n_days)
        frame["do_mgl"] = (8 + effect + trend * frame["trend_years"] + 2 * frame["sin_doy"]
                           - 0.3 * frame["flow_index"] + frame["error"])
        keep = rng.random(n_days) > drop_frac
        frames.append(frame.loc[keep])
    frame = pd.concat(frames, ignore_index=True)
    frame["log_impervious"] = np.log(frame["impervious_pct"])
    return frame


@pytest.fixture
def model_frame():
    return make_model_frame()


@pytest.fixture
def site_table():
    return pd.DataFrame({
        "site": list(SITE_EFFECTS),
        "site_name": ["Upper Sawmill", "Mill Pond", "Rail Yard", "Outlet"],
        "impervious_pct": [IMPERVIOUS[s] for s in SITE_EFFECTS],
        "latitude": [44.98, 44.96, 44.95, 44.93],
        "longitude": [-93.31, -93.28, -93.25, -93.22],
    }).set_index("site")


def make_raw_readings(site="SC-01", start="2015-06-01", days=2, seed=0):
    """15-minute readings for one site."""
    rng = np.random.default_rng(seed)
    stamps = pd.date_range(start, periods=96 * days, freq="15min")
    n = len(stamps)
    return pd.DataFrame({
        "site": site,
        "datetime": stamps,
        "depth": 0.4 + rng.normal(scale=0.01, size=n),
        "do_mgl": 8 + rng.normal(scale=0.2, size=n),
        "do_sat": 90 + rng.normal(scale=2, size=n),
        "temp": 18 + rng.normal(scale=0.5, size=n),
        "spcond": 900 + rng.normal(scale=10, size=n),
    })


@pytest.fixture
def raw_readings():
    return make_raw_readings()


@pytest.fixture
def daily_precip():
    dates = pd.date_range("2015-01-01", periods=730, freq="D")
    rng = np.random.default_rng(7)
    precip = np.where(rng.random(len(dates)) < 0.3, rng.gamma(1.5, 6, len(dates)), 0.0)
    return pd.Series(precip, index=dates, name="precip")
