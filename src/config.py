"""Configuration settings for the water quality data processing and modelling."""

from pathlib import Path

# Base path to the raw monitoring data
# Users should modify this path to point to their local copy of the dataset
DATA_DIR = Path(r"../data")

# Raw inputs
RAW_INSTRUMENT_DIR = DATA_DIR / "raw" / "instruments"
WEATHER_DATA_PATH = DATA_DIR / "raw" / "weather" / "daily_weather.csv"
SITE_TABLE_PATH = DATA_DIR / "raw" / "site_attributes.csv"
GRAB_SAMPLE_PATH = DATA_DIR / "raw" / "chloride_grab_samples.csv"
WATERSHED_BOUNDARY_SHAPEFILE = DATA_DIR / "gis" / "watershed_boundary.shp"

# Output directory for processed data, model fits and figures
OUTPUT_DIR = Path(r"../output")

# Path to the cleaned daily water quality data
CLEANED_DATA_PATH = OUTPUT_DIR / "cleaned_water_quality_data" / "cleaned_daily_water_quality.csv"
MODEL_FRAME_PATH = OUTPUT_DIR / "cleaned_water_quality_data" / "model_frame.csv"
MODEL_CACHE_DIR = OUTPUT_DIR / "model_fits"

# Analysis period configuration
START_YEAR = 2012
END_YEAR = 2023
PERIOD = f"{START_YEAR}_{END_YEAR}"

# Instrument export layout: raw header -> canonical column name
INSTRUMENT_COLUMNS = {
    "Date (MM/DD/YYYY)": "date",
    "Time (HH:mm:ss)": "time",
    "Depth m": "depth",
    "ODO mg/L": "do_mgl",
    "ODO % sat": "do_sat",
    "Temp °C": "temp",
    "SpCond µS/cm": "spcond",
}
INSTRUMENT_FILE_PATTERNS = ["*.csv", "*.xlsx"]
INSTRUMENT_HEADER_ROW = 0
READINGS_PER_DAY = 96  # 15-minute logging interval
WATER_QUALITY_METRICS = ["depth", "do_mgl", "do_sat", "temp", "spcond"]

# Logger fill codes written when a probe fails
SENTINEL_VALUES = [-9999, -999, -99.99]

# Data quality thresholds
VALID_RANGES = {
    "depth": (0.0, 5.0),        # m
    "do_mgl": (0.0, 20.0),      # mg/L
    "do_sat": (0.0, 200.0),     # %
    "temp": (-0.5, 35.0),       # °C
    "spcond": (10.0, 20000.0),  # µS/cm
}
MIN_SENSOR_DEPTH = 0.05  # Sonde considered out of water below this depth (m)
DAILY_COVERAGE_THRESHOLD = 0.75  # Minimum fraction of 15-minute readings required for a daily value
ANNUAL_COVERAGE_THRESHOLD = 0.6  # Minimum fraction of valid days required for an annual value
MONTHLY_COVERAGE_THRESHOLD = 0.6
MIN_YEARS_FOR_TREND = 5

# Site-specific corrections, applied in order after the generic checks.
# Dates are inclusive. Actions: remove, drop, replace, offset, substitute
CORRECTIONS = [
    {"site": "SC-02", "start": "2014-07-08", "end": "2014-07-29", "metric": "do_mgl",
     "action": "remove", "note": "DO membrane fouled between maintenance visits"},
    {"site": "SC-02", "start": "2014-07-08", "end": "2014-07-29", "metric": "do_sat",
     "action": "remove", "note": "DO membrane fouled between maintenance visits"},
    {"site": "SC-04", "start": "2016-01-12", "end": "2016-02-03", "metric": None,
     "action": "drop", "note": "Sonde frozen into ice"},
    {"site": "SC-03", "start": "2017-05-02", "end": "2017-09-14", "metric": "spcond",
     "action": "offset", "value": -35.0, "note": "Conductivity calibration drift"},
    {"site": "SC-05", "start": "2019-08-20", "end": "2019-10-01", "metric": "depth",
     "action": "substitute", "source_site": "SC-05B",
     "note": "Temporary logger installed while the pressure transducer was replaced"},
    {"site": "SC-01", "start": "2020-03-16", "end": "2020-03-16", "metric": "temp",
     "action": "remove", "note": "Sonde out of water during download"},
]

# Temporary loggers used only as substitution sources; dropped after the corrections
AUXILIARY_SITES = ["SC-05B"]

# Covariate settings
REFERENCE_SITE = "SC-05"  # Most downstream site, used for the flow index
PRECIP_LAGS = [1, 2, 3]
PRECIP_WINDOWS = [3, 7]
PRECIP_DECAY = 0.85  # Daily decay of the antecedent precipitation index
PRECIP_DECAY_DAYS = 14

# Chloride estimate from specific conductance, used when no grab samples are available
CHLORIDE_SLOPE = 0.28
CHLORIDE_INTERCEPT = -21.4

# Water quality standards used for exceedance indicators
DO_MIN_STANDARD = 5.0       # mg/L, warm-water aquatic life
CHLORIDE_CHRONIC = 230.0    # mg/L, EPA chronic criterion
CHLORIDE_ACUTE = 860.0      # mg/L, EPA acute criterion
TEMP_MAX_STANDARD = 29.0    # °C
EXCEEDANCE_THRESHOLDS = {
    "do_min": DO_MIN_STANDARD,
    "chloride_chronic": CHLORIDE_CHRONIC,
    "chloride_acute": CHLORIDE_ACUTE,
    "temp_max": TEMP_MAX_STANDARD,
}

# Models to fit, in order. Smooth terms use patsy regression splines.
SEASONAL_SMOOTH = "cc(doy, df=6, lower_bound=1, upper_bound=367, constraints='center')"
MODEL_SPECS = [
    {"name": "do_gamm", "kind": "gamm", "response": "Dissolved oxygen (mg/L)", "log_response": False,
     "formula": f"do_mgl ~ trend_years + log_impervious + {SEASONAL_SMOOTH} + bs(temp, df=4) + flow_index"},
    {"name": "chloride_gamm", "kind": "gamm", "response": "Chloride (mg/L)", "log_response": True,
     "formula": f"log_chloride ~ trend_years + log_impervious + {SEASONAL_SMOOTH} + flow_index + log_precip_api"},
    {"name": "do_gls", "kind": "gls", "response": "Dissolved oxygen (mg/L)", "log_response": False,
     "formula": "do_mgl ~ C(site) + trend_years + temp + flow_index + sin_doy + cos_doy"},
    {"name": "chloride_gls", "kind": "gls", "response": "Chloride (mg/L)", "log_response": True,
     "formula": "log_chloride ~ C(site) * trend_years + flow_index + log_precip_api + sin_doy + cos_doy"},
    {"name": "temp_gls", "kind": "gls", "response": "Water temperature (°C)", "log_response": False,
     "formula": "temp ~ C(site) + trend_years + sin_doy + cos_doy + flow_index"},
    {"name": "do_low_gee", "kind": "gee", "response": "P(daily minimum DO < 5 mg/L)", "log_response": False,
     "formula": "do_low ~ C(site) + trend_years + temp + flow_index"},
]

# Metrics for the non-parametric per-site trend tests
TREND_METRICS = ["do_mgl", "do_min", "temp", "chloride", "depth"]
