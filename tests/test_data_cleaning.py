"""
Tests for the screening, correction and daily aggregation of sonde readings.
"""

import numpy as np
import pandas as pd
import pytest

import data_cleaning
from conftest import make_raw_readings


def test_mask_sentinel_values(raw_readings):
    raw_readings.loc[3, "temp"] = -9999
    cleaned = data_cleaning.mask_sentinel_values(raw_readings)
    assert np.isnan(cleaned.loc[3, "temp"])
    assert raw_readings.loc[3, "temp"] == -9999


def test_drop_duplicate_readings_keeps_first(raw_readings):
    repeated = raw_readings.iloc[[5]].copy()
    repeated["do_mgl"] = 99.0
    df = pd.concat([raw_readings, repeated], ignore_index=True)

    cleaned = data_cleaning.drop_duplicate_readings(df)

    assert len(cleaned) == len(raw_readings)
    assert cleaned.loc[5, "do_mgl"] == raw_readings.loc[5, "do_mgl"]


def test_apply_range_checks_bounds_are_inclusive(raw_readings):
    raw_readings.loc[0, "do_mgl"] = 20.0
    raw_readings.loc[1, "do_mgl"] = 20.5
    raw_readings.loc[2, "temp"] = -3.0

    cleaned = data_cleaning.apply_range_checks(raw_readings, {"do_mgl": (0, 20), "temp": (-0.5, 35)})

    assert cleaned.loc[0, "do_mgl"] == 20.0
    assert np.isnan(cleaned.loc[1, "do_mgl"])
    assert np.isnan(cleaned.loc[2, "temp"])


def test_remove_dry_sensor_readings_keeps_depth(raw_readings):
    raw_readings.loc[10, "depth"] = 0.01

    cleaned = data_cleaning.remove_dry_sensor_readings(raw_readings, min_depth=0.05)

    assert cleaned.loc[10, "depth"] == 0.01
    assert cleaned.loc[10, ["do_mgl", "do_sat", "temp", "spcond"]].isna().all()
    assert cleaned.loc[11, ["do_mgl", "temp"]].notna().all()


def test_remove_correction_matches_site_and_whole_days():
    df = pd.concat([make_raw_readings("SC-01", days=3), make_raw_readings("SC-02", days=3)], ignore_index=True)
    rule = {"site": "SC-01", "start": "2015-06-02", "end": "2015-06-02", "metric": "do_mgl", "action": "remove"}

    cleaned = data_cleaning.apply_corrections(df, [rule])

    removed = cleaned["do_mgl"].isna()
    on_day = (cleaned["site"] == "SC-01") & (cleaned["datetime"].dt.day == 2)
    assert removed.sum() == 96
    assert (removed == on_day).all()


def test_drop_correction_removes_rows():
    df = make_raw_readings("SC-04", days=3)
    rule = {"site": "SC-04", "start": "2015-06-01", "end": "2015-06-02", "metric": None, "action": "drop"}

    cleaned = data_cleaning.apply_corrections(df, [rule])

    assert len(cleaned) == 96
    assert (cleaned["datetime"].dt.day == 3).all()


def test_corrections_apply_in_order():
    df = make_raw_readings("SC-03", days=1)
    rules = [
        {"site": "SC-03", "start": "2015-06-01", "end": "2015-06-01", "metric": "spcond",
         "action": "replace", "value": 1000.0},
        {"site": "SC-03", "start": "2015-06-01", "end": "2015-06-01", "metric": "spcond",
         "action": "offset", "value": -35.0},
    ]

    cleaned = data_cleaning.apply_corrections(df, rules)

    assert np.allclose(cleaned["spcond"], 965.0)


def test_substitute_correction_copies_source_site():
    target = make_raw_readings("SC-05", days=2, seed=1)
    source = make_raw_readings("SC-05B", days=1, start="2015-06-02", seed=2)
    df = pd.concat([target, source], ignore_index=True)
    rule = {"site": "SC-05", "start": "2015-06-01", "end": "2015-06-02", "metric": "depth",
            "action": "substitute", "source_site": "SC-05B"}

    cleaned = data_cleaning.apply_corrections(df, [rule])

    corrected = cleaned.loc[cleaned["site"] == "SC-05"].set_index("datetime")["depth"]
    assert corrected.loc["2015-06-01"].isna().all()
    expected = source.set_index("datetime")["depth"]
    assert np.allclose(corrected.loc["2015-06-02"].to_numpy(), expected.to_numpy())


def test_correction_errors(raw_readings):
    bad_action = {"site": "SC-01", "start": "2015-06-01", "end": "2015-06-01", "metric": "temp",
                  "action": "interpolate"}
    bad_metric = {"site": "SC-01", "start": "2015-06-01", "end": "2015-06-01", "metric": "turbidity",
                  "action": "remove"}
    with pytest.raises(ValueError):
        data_cleaning.apply_corrections(raw_readings, [bad_action])
    with pytest.raises(KeyError):
        data_cleaning.apply_corrections(raw_readings, [bad_metric])


def test_corrections_apply_to_daily_tables():
    daily = pd.DataFrame({"site": ["SC-01"] * 3, "date": pd.date_range("2015-06-01", periods=3),
                          "temp": [18.0, 19.0, 20.0]})
    rule = {"site": "SC-01", "start": "2015-06-02", "end": "2015-06-03", "metric": "temp", "action": "remove"}

    cleaned = data_cleaning.apply_corrections(daily, [rule])

    assert cleaned["temp"].isna().tolist() == [False, True, True]


def test_aggregate_daily_applies_coverage():
    raw = make_raw_readings("SC-01", days=2)
    second_day = raw["datetime"].dt.day == 2
    raw.loc[second_day & (raw.index % 2 == 0), "do_mgl"] = np.nan  # 48 of 96 readings left

    daily = data_cleaning.aggregate_daily(raw, readings_per_day=96, min_coverage=0.75)

    assert len(daily) == 2
    assert daily["n_readings"].tolist() == [96, 96]
    assert np.isclose(daily.loc[0, "do_mgl"], raw.loc[~second_day, "do_mgl"].mean())
    assert np.isclose(daily.loc[0, "do_min"], raw.loc[~second_day, "do_mgl"].min())
    assert np.isnan(daily.loc[1, "do_mgl"])
    assert np.isnan(daily.loc[1, "do_min"])
    assert not np.isnan(daily.loc[1, "temp"])
    assert np.isclose(daily.loc[1, "temp_max"], raw.loc[second_day, "temp"].max())


def test_check_unique_site_dates():
    daily = pd.DataFrame({"site": ["SC-01", "SC-01", "SC-02"],
                          "date": pd.to_datetime(["2015-06-01", "2015-06-01", "2015-06-01"])})
    with pytest.raises(ValueError):
        data_cleaning.check_unique_site_dates(daily)
    assert len(data_cleaning.check_unique_site_dates(daily.iloc[1:])) == 2


def test_clean_instrument_data_end_to_end():
    raw = pd.concat([make_raw_readings("SC-01", days=3), make_raw_readings("SC-02", days=3, seed=3)],
                    ignore_index=True)
    raw = pd.concat([raw, raw.iloc[:10]], ignore_index=True)
    raw.loc[0, "do_mgl"] = -9999
    corrections = [{"site": "SC-02", "start": "2015-06-03", "end": "2015-06-03", "metric": None,
                    "action": "drop"}]

    daily = data_cleaning.clean_instrument_data(raw, corrections=corrections)

    assert len(daily) == 5
    assert not daily.duplicated(subset=["site", "date"]).any()
    assert daily["do_mgl"].between(7, 9).all()
