"""
Create summary tables of the fitted models for the monitoring report.

The tables are:
1. Coefficients: estimates, standard errors, p-values and 95% limits of every model
2. Model summary: sample size, CAR1 correlation, log-likelihood, AIC,
   Wald test of site differences and the long-term trend
3. Marginal means: estimated marginal means by site for every model
4. Site trends: non-parametric per-site trends (when provided)

All tables are saved to a single Excel file with multiple sheets and as CSV files.

Dependencies:
    pandas
    openpyxl

Author: Urban Streams Monitoring Program
"""

import logging
from pathlib import Path

import numpy as np
import pandas as pd

import models

logger = logging.getLogger(__name__)


def summarize_fit(fit, time_term="trend_years", site_prefix="C(site)"):
    """One summary row for a fitted model."""
    row = {
        "model": fit.name,
        "kind": fit.kind,
        "formula": fit.formula,
        "nobs": fit.nobs,
        "n_sites": fit.data[fit.group_col].nunique(),
        "phi": fit.phi,
        "llf": fit.llf,
        "aic": fit.aic,
        "site_variance": fit.group_var,
        "converged": fit.converged,
    }
    if any(name.startswith(site_prefix) for name in fit.params.index):
        wald = models.wald_test_terms(fit, site_prefix)
        row.update({"site_wald_chi2": wald["statistic"], "site_wald_df": wald["df"],
                    "site_wald_pvalue": wald["pvalue"]})
    if time_term in fit.params.index:
        trend = models.trend_summary(fit, time_term)
        row.update({f"trend_{k}": v for k, v in trend.items() if k != "model"})
    return row


def create_model_tables(fits, emm_tables=None, site_trends=None):
    """
    Build the report tables.

    Args:
        fits (dict): Model name -> ModelFit
        emm_tables (dict, optional): Model name -> marginal means table
        site_trends (pd.DataFrame, optional): Output of trend_analysis.calc_site_trends

    Returns:
        dict: Sheet name -> DataFrame
    """
    tables = {
        "coefficients": pd.concat([models.coefficient_table(fit) for fit in fits.values()], ignore_index=True),
        "model_summary": pd.DataFrame([summarize_fit(fit) for fit in fits.values()]),
    }
    if emm_tables:
        tables["marginal_means"] = pd.concat(list(emm_tables.values()), ignore_index=True)
    if site_trends is not None:
        tables["site_trends"] = site_trends.reset_index()
    return tables


def write_tables(tables, excel_path, csv_dir=None):
    """Write every table to one Excel workbook and, optionally, to CSV files."""
    excel_path = Path(excel_path)
    excel_path.parent.mkdir(parents=True, exist_ok=True)
    with pd.ExcelWriter(excel_path, engine="openpyxl") as writer:
        for sheet, table in tables.items():
            table.replace([np.inf, -np.inf], np.nan).to_excel(writer, sheet_name=sheet[:31], index=False)
    logger.info("Saved %d tables to %s", len(tables), excel_path)

    if csv_dir is not None:
        csv_dir = Path(csv_dir)
        csv_dir.mkdir(parents=True, exist_ok=True)
        for sheet, table in tables.items():
            table.to_csv(csv_dir / f"{sheet}.csv", index=False)
