"""
Smoke tests for the figures: each plot function writes a file.
"""

import numpy as np
import pandas as pd
import pytest

import models
import plotting


@pytest.fixture
def folders(tmp_path):
    return plotting.create_folders(tmp_path, 2015, 2016)


@pytest.fixture
def annual_series():
    index = pd.to_datetime([f"{y}-12-31" for y in range(2012, 2019)])
    valid = {("SC-01", "temp"): pd.Series(np.linspace(12, 13.2, len(index)), index=index)}
    invalid = {("SC-02", "temp"): pd.Series([14.1, 14.3], index=index[-2:])}
    results = pd.DataFrame({
        "trend_temp_per_decade": [15.0, np.nan],
        "trend_temp": [0.2, np.nan],
        "intercept_temp": [12 - 0.2 * 2012, np.nan],
        "pval_temp": [0.01, np.nan],
    }, index=pd.Index(["SC-01", "SC-02"], name="site"))
    return valid, invalid, results


def test_create_folders(tmp_path):
    paths = plotting.create_folders(tmp_path, 2015, 2016)
    assert len(paths) == 5
    assert all(p.is_dir() and p.parent == tmp_path / "2015_2016" for p in paths)


def test_determine_extend():
    assert plotting.determine_extend(-20, 20, -30, 30) == 'both'
    assert plotting.determine_extend(-20, 20, -30, 10) == 'min'
    assert plotting.determine_extend(-20, 20, -10, 30) == 'max'
    assert plotting.determine_extend(-20, 20, -10, 10) == 'neither'


def test_plot_site_timeseries(model_frame, folders):
    out = plotting.plot_site_timeseries(model_frame, "do_mgl", "DO (mg/L)", folders[0])
    assert out.exists()


def test_plot_metric_trend_valid_invalid_and_missing(annual_series, folders):
    valid, invalid, results = annual_series
    for site in ["SC-01", "SC-02", "SC-03"]:
        out = plotting.plot_metric_trend(site, "temp", valid, invalid, results, "Temperature", folders[1])
        assert out.exists()


def test_plot_marginal_means_and_acf(model_frame, folders):
    fit = models.fit_gls("do_mgl ~ C(site) + trend_years", model_frame, name="do_test", correlation=None)

    emm = models.marginal_means(fit, inverse_link=np.exp)
    out = plotting.plot_marginal_means(emm, "DO", "DO (mg/L)", folders[2])
    assert out.name == "do_test_marginal_means.png"
    assert out.exists()

    table = models.residual_acf(fit, nlags=5)
    assert plotting.plot_residual_acf(table, "DO residuals", folders[3], fit.name).exists()


def test_plot_site_map_without_boundary(site_table, annual_series, folders):
    _, _, results = annual_series
    out = plotting.plot_site_map(site_table, results, "trend_temp_per_decade", folders[4],
                                 pval_column="pval_temp", boundary_path=folders[4] / "missing.shp")
    assert out.exists()


def test_plot_all(model_frame, annual_series, site_table, folders):
    valid, invalid, results = annual_series
    fit = models.fit_gls("do_mgl ~ C(site) + trend_years", model_frame, name="do_test", correlation=None)
    which_plots = {'daily_series': True, 'annual_trends': True, 'marginal_means': True,
                   'residual_acf': True, 'maps': True}

    plotting.plot_all(which_plots, model_frame, results, valid, invalid, {"do_test": fit},
                      {"do_test": models.marginal_means(fit)}, {"do_test": models.residual_acf(fit)},
                      site_table, folders)

    daily_path, annual_path, emm_path, acf_path, maps_path = folders
    assert (daily_path / "daily_do_mgl.png").exists()
    assert (daily_path / "daily_flow_index.png").exists()
    assert (annual_path / "SC-02_temp.png").exists()
    assert (emm_path / "do_test_marginal_means.png").exists()
    assert (acf_path / "do_test_residual_acf.png").exists()
    assert (maps_path / "map_trend_temp_per_decade.png").exists()
