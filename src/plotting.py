"""
Plotting Functions for the Water Quality Trend Analysis

This module contains functions for visualizing the cleaned monitoring data and
the fitted models.

The module provides functions for creating:
1. Daily time series of each metric by site
2. Annual series with Theil-Sen trend lines
3. Estimated marginal means by site from the GAMM/GLS/GEE fits
4. Residual autocorrelation diagnostics
5. Maps of site trends

Dependencies:
- matplotlib: Core plotting functionality
- seaborn: Enhanced plotting styles
- pandas: Data manipulation
- geopandas: Spatial data handling
- numpy: Numerical operations

Author: Urban Streams Monitoring Program
"""

import logging
import os
from pathlib import Path

import geopandas as gpd
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib.colorbar import ColorbarBase
from matplotlib.colors import Normalize

logger = logging.getLogger(__name__)

# Trend limits for maps (percent per decade)
trend_vmin = -20
trend_vmax = 20

# Set seaborn style for all plots
sns.set()


def determine_extend(vmin, vmax, vmin_actual, vmax_actual):
    """
    Determine the extend parameter for colorbar based on data range vs. colorbar limits.

    Returns:
        str: One of 'both', 'min', 'max', or 'neither' indicating which arrows to show on colorbar
    """
    if vmin_actual < vmin and vmax_actual > vmax:
        extend = 'both'
    elif vmin_actual < vmin:
        extend = 'min'
    elif vmax_actual > vmax:
        extend = 'max'
    else:
        extend = 'neither'
    return extend


def create_folders(base_folder, start_year, end_year):
    """
    Create folder structure for storing different types of plots.

    Args:
        base_folder (str or Path): Base directory for all output
        start_year (int): Start year of the analysis period
        end_year (int): End year of the analysis period

    Returns:
        tuple: Paths to all created directories
    """
    period = f"{start_year}_{end_year}"
    base_path = Path(base_folder) / period
    daily_timeseries_path = base_path / 'daily_series'
    annual_trends_path = base_path / 'annual_trend_series'
    marginal_means_path = base_path / 'marginal_means'
    diagnostics_path = base_path / 'residual_diagnostics'
    maps_path = base_path / 'maps'

    for folder_path in [base_path, daily_timeseries_path, annual_trends_path, marginal_means_path,
                        diagnostics_path, maps_path]:
        folder_path.mkdir(parents=True, exist_ok=True)

    return daily_timeseries_path, annual_trends_path, marginal_means_path, diagnostics_path, maps_path


def add_colorbar(fig, colormap, vmin, vmax, label, extend):
    """Add a horizontal colorbar below the axes with consistent styling."""
    cax = fig.add_axes([0.25, 0.04, 0.5, 0.03])
    cb = ColorbarBase(cax, cmap=plt.get_cmap(colormap), norm=Normalize(vmin=vmin, vmax=vmax),
                      orientation='horizontal', extend=extend)
    cb.set_label(label, size=12)
    return cb


def plot_site_timeseries(daily, metric, ylabel, save_path):
    """
    Plot the daily series of one metric with one line per site.

    Args:
        daily (pd.DataFrame): Daily values with columns site, date and metric
        metric (str): Column to plot
        ylabel (str): Y-axis label
        save_path (Path): Directory to save the plot

    Returns:
        Path: The saved figure
    """
    fig, ax = plt.subplots(figsize=(12, 5))
    to_plot = daily[["site", "date", metric]].copy()
    to_plot["date"] = pd.to_datetime(to_plot["date"])
    sns.lineplot(data=to_plot, x="date", y=metric, hue="site", ax=ax, lw=0.7, estimator=None)
    ax.set_xlabel('Date')
    ax.set_ylabel(ylabel)
    ax.legend(title='Site', loc='upper left', fontsize=8)
    plt.tight_layout()
    out = Path(save_path) / f'daily_{metric}.png'
    plt.savefig(out, dpi=150)
    plt.close(fig)
    return out


def plot_marginal_means(emm, title, ylabel, save_path, factor="site"):
    """
    Plot estimated marginal means with 95% confidence intervals.

    Response-scale columns are plotted when present, otherwise the link scale.
    """
    if "response" in emm.columns:
        est, lower, upper = emm["response"], emm["response_lower"], emm["response_upper"]
    else:
        est, lower, upper = emm["emmean"], emm["lower"], emm["upper"]

    fig, ax = plt.subplots(figsize=(7, 4.5))
    x = np.arange(len(emm))
    ax.errorbar(x, est, yerr=[est - lower, upper - est], fmt='o', color='k', capsize=4)
    ax.set_xticks(x)
    ax.set_xticklabels(emm[factor].astype(str))
    ax.set_xlabel(factor.capitalize())
    ax.set_ylabel(ylabel)
    ax.set_title(title)
    plt.tight_layout()
    out = Path(save_path) / f'{emm["model"].iloc[0]}_marginal_means.png'
    plt.savefig(out, dpi=150)
    plt.close(fig)
    return out


def plot_residual_acf(acf_table, title, save_path, name):
    """Plot residual autocorrelation by site with approximate 95% white-noise bounds."""
    fig, ax = plt.subplots(figsize=(7, 4.5))
    lags = acf_table.index.to_numpy()
    width = 0.8 / max(len(acf_table.columns), 1)
    for i, site in enumerate(acf_table.columns):
        ax.bar(lags[1:] + i * width, acf_table[site].to_numpy()[1:], width=width, label=site)
    nobs = acf_table.attrs.get("nobs", {})
    if nobs:
        bound = 1.96 / np.sqrt(min(nobs.values()))
        ax.axhline(bound, ls='--', c='gray', lw=0.8)
        ax.axhline(-bound, ls='--', c='gray', lw=0.8)
    ax.axhline(0, c='k', lw=0.8)
    ax.set_xlabel('Lag (observations)')
    ax.set_ylabel('Autocorrelation of normalized residuals')
    ax.set_title(title)
    ax.legend(fontsize=8)
    plt.tight_layout()
    out = Path(save_path) / f'{name}_residual_acf.png'
    plt.savefig(out, dpi=150)
    plt.close(fig)
    return out


def plot_metric_trend(site, metric, valid_data_dict, invalid_data_dict, results, ylabel, save_path, ax=None):
    """
    Plot annual values of a metric at a site with the Theil-Sen trend line.

    The trend line is solid when the modified Mann-Kendall p-value is below 0.05
    and dashed otherwise. Years available but too few for a trend are drawn in
    light blue.

    Args:
        site (str): Site code
        metric (str): Name of the metric (e.g., 'do_mgl', 'chloride')
        valid_data_dict (dict): Annual series used for trends, keyed by (site, metric)
        invalid_data_dict (dict): Annual series with too few years, keyed by (site, metric)
        results (DataFrame): Trend results indexed by site
        ylabel (str): Y-axis label
        save_path (Path): Directory to save the plot
        ax (matplotlib.axes.Axes, optional): Axes to plot on. If None, creates and saves a new figure
    """
    created = ax is None
    if created:
        fig, ax = plt.subplots(figsize=(10, 6))

    valid_data = valid_data_dict.get((site, metric))
    if valid_data is not None:
        ax.scatter(valid_data.index, valid_data.values, label=None)
        trend = results.loc[site, f'trend_{metric}']
        intercept = results.loc[site, f'intercept_{metric}']
        trend_per_decade = results.loc[site, f'trend_{metric}_per_decade']
        pval = results.loc[site, f'pval_{metric}']
        trend_values = intercept + trend * valid_data.index.year.to_numpy()
        ls = '-' if pval < 0.05 else '--'
        ax.plot(valid_data.index, trend_values, ls=ls, c='r',
                label=f"{trend_per_decade:.1f} % per decade, p={pval:.3f}")
    else:
        invalid_data = invalid_data_dict.get((site, metric))
        if invalid_data is not None and not invalid_data.empty:
            ax.scatter(invalid_data.index, invalid_data.values,
                       color='lightblue', label='Trend not calculated due to missing data')
        else:
            ax.text(0.5, 0.5, 'No data available', horizontalalignment='center', transform=ax.transAxes)

    ax.set_ylabel(ylabel)
    ax.set_xlabel('Year')
    ax.set_title(site)
    if len(ax.get_lines()) > 0 or len(ax.collections) > 0:
        handles, labels = ax.get_legend_handles_labels()
        if labels:
            ax.legend()

    if created:
        plt.tight_layout()
        out = os.path.join(save_path, f'{site}_{metric}.png')
        plt.savefig(out)
        plt.close(fig)
        return Path(out)
    return None


def plot_site_map(sites, results, column, save_path, pval_column=None, boundary_path=None,
                  vmin=trend_vmin, vmax=trend_vmax, label='Trend (%/decade)'):
    """
    Map the sites coloured by a trend column.

    Sites with p < 0.05 in pval_column are ringed in black. The watershed
    boundary is drawn when boundary_path points to an existing file.

    Args:
        sites (pd.DataFrame): Site table indexed by site with latitude and longitude
        results (pd.DataFrame): Trend results indexed by site
        column (str): Results column used for the colour
        save_path (Path): Directory to save the map
    """
    gdf = gpd.GeoDataFrame(sites.copy(), geometry=gpd.points_from_xy(sites['longitude'], sites['latitude']),
                           crs='EPSG:4326')
    gdf = gdf.join(results, how='inner')
    colormap = 'RdBu'

    fig, ax = plt.subplots(figsize=(7, 7))
    fig.patch.set_facecolor('white')
    if boundary_path is not None and Path(boundary_path).exists():
        boundary = gpd.read_file(boundary_path).to_crs('EPSG:4326')
        boundary.plot(ax=ax, facecolor='none', edgecolor='darkgray', lw=1)

    data = gdf[column].dropna()
    extend = determine_extend(vmin, vmax, data.min(), data.max()) if not data.empty else 'neither'
    gdf.plot(column=column, ax=ax, cmap=colormap, vmin=vmin, vmax=vmax, markersize=150,
             edgecolor='gray', missing_kwds={'color': 'lightgray'})
    if pval_column is not None:
        significant = gdf[gdf[pval_column] < 0.05]
        ax.plot(significant.geometry.x, significant.geometry.y, marker='o', markersize=16,
                markerfacecolor='none', markeredgecolor='k', linestyle='none')
    for site, point in zip(gdf.index, gdf.geometry):
        ax.annotate(site, (point.x, point.y), xytext=(6, 6), textcoords='offset points', fontsize=8)
    ax.set_xticks([])
    ax.set_yticks([])
    add_colorbar(fig, colormap, vmin, vmax, label, extend)
    out = Path(save_path) / f'map_{column}.png'
    plt.savefig(out, dpi=200, bbox_inches='tight')
    plt.close(fig)
    return out


METRIC_LABELS = {
    'do_mgl': 'Dissolved oxygen (mg/L)',
    'do_min': 'Daily minimum dissolved oxygen (mg/L)',
    'do_sat': 'Dissolved oxygen saturation (%)',
    'temp': 'Water temperature (°C)',
    'chloride': 'Chloride (mg/L)',
    'depth': 'Water depth (m)',
    'spcond': 'Specific conductance (µS/cm)',
    'flow_index': 'Flow index (standardized log depth)',
}


def plot_all(which_plots, daily, trend_results, valid_data_dict, invalid_data_dict, fits, emm_tables,
             acf_tables, sites, folders, boundary_path=None):
    """
    Produce every figure selected in which_plots.

    Args:
        which_plots (dict): Plot group -> bool
        daily (pd.DataFrame): Model frame
        trend_results (pd.DataFrame): Output of trend_analysis.calc_site_trends
        fits (dict): Model name -> ModelFit
        emm_tables (dict): Model name -> marginal means table
        acf_tables (dict): Model name -> residual ACF table
        sites (pd.DataFrame): Site table
        folders (tuple): Output of create_folders
    """
    daily_timeseries_path, annual_trends_path, marginal_means_path, diagnostics_path, maps_path = folders

    if which_plots.get('daily_series'):
        logger.info("Plotting daily series...")
        for metric, label in METRIC_LABELS.items():
            if metric in daily.columns:
                plot_site_timeseries(daily, metric, label, daily_timeseries_path)

    if which_plots.get('annual_trends'):
        logger.info("Plotting annual trend series...")
        for (site, metric) in list(valid_data_dict) + list(invalid_data_dict):
            plot_metric_trend(site, metric, valid_data_dict, invalid_data_dict, trend_results,
                              METRIC_LABELS.get(metric, metric), annual_trends_path)

    if which_plots.get('marginal_means'):
        logger.info("Plotting marginal means...")
        for name, emm in emm_tables.items():
            fit = fits[name]
            plot_marginal_means(emm, f'{name} ({fit.kind.upper()})', fit.response_label, marginal_means_path)

    if which_plots.get('residual_acf'):
        logger.info("Plotting residual autocorrelation...")
        for name, table in acf_tables.items():
            if not table.empty:
                plot_residual_acf(table, f'{name}: phi = {fits[name].phi:.2f}', diagnostics_path, name)

    if which_plots.get('maps'):
        logger.info("Plotting trend maps...")
        for metric in METRIC_LABELS:
            column = f'trend_{metric}_per_decade'
            if column in trend_results.columns and trend_results[column].notna().any():
                plot_site_map(sites, trend_results, column, maps_path, pval_column=f'pval_{metric}',
                              boundary_path=boundary_path, label=f'Trend in {METRIC_LABELS[metric]} (%/decade)')
