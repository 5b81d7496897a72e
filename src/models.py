"""
Model fitting for the water quality trend analysis.

Three model families are fitted to the daily site values:
- GAMM: additive mixed models with regression-spline smooths (patsy cc/cr/bs terms),
  a random intercept per site and continuous-time AR(1) errors, fitted by REML
- GLS: linear models with continuous-time AR(1) errors, correlation chosen by
  maximizing the REML profile likelihood
- GEE: logistic models for exceedance indicators with an AR(1) working correlation

Continuous-time AR(1) (CAR1) errors have correlation phi**|dt| between two days
of the same site. They are handled by whitening the response and design matrices
with the inverse Cholesky factor of that correlation matrix, which only needs the
day gap to the previous observation of the same site. Estimation itself is done
by statsmodels.

Fitted models are stored as ModelFit records that can be pickled to disk and
reloaded without refitting.

Methods:
- REML for the GAMM (statsmodels MixedLM) and for the GLS correlation parameter
- Wald chi-square tests for site differences
- Estimated marginal means from a reference grid

Dependencies:
- numpy
- pandas
- scipy
- statsmodels
- patsy

Author: Urban Streams Monitoring Program
"""

import logging
import pickle
import re
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd
import statsmodels.api as sm
from patsy import build_design_matrices, dmatrices
from scipy import stats
from scipy.optimize import minimize_scalar
from statsmodels.tsa.stattools import acf

logger = logging.getLogger(__name__)

PHI_BOUNDS = (0.0, 0.99)


@dataclass
class ModelFit:
    """Estimates and data of one fitted model."""

    name: str
    kind: str
    formula: str
    data: pd.DataFrame
    params: pd.Series
    bse: pd.Series
    cov_params: pd.DataFrame
    pvalues: pd.Series
    nobs: int
    df_resid: float
    scale: float
    phi: float = 0.0
    llf: float = np.nan
    aic: float = np.nan
    group_var: float = np.nan
    resid: pd.Series = None
    resid_normalized: pd.Series = None
    group_col: str = "site"
    date_col: str = "date"
    n_iter: int = 1
    converged: bool = True
    log_response: bool = False
    response_label: str = ""

    def design_matrix(self, newdata):
        """Build the fixed-effects design matrix for new data using the fitted formula."""
        _, X = dmatrices(self.formula, self.data, return_type="dataframe", NA_action="raise")
        return build_design_matrices([X.design_info], newdata, return_type="dataframe")[0]


def _formula_variables(formula, data):
    """Columns of data referred to in the formula."""
    tokens = set(re.findall(r"[A-Za-z_][A-Za-z0-9_]*", formula))
    return [c for c in data.columns if c in tokens]


def _prepare_design(formula, data, group_col, date_col):
    """Drop incomplete rows, order by group and date, and build the design matrices."""
    variables = _formula_variables(formula, data)
    keep = list(dict.fromkeys(variables + [group_col, date_col]))
    subset = data[keep].dropna(subset=variables)
    subset = subset.sort_values([group_col, date_col], kind="mergesort").reset_index(drop=True)
    if subset.empty:
        raise ValueError(f"No complete rows for formula '{formula}'")

    y, X = dmatrices(formula, subset, return_type="dataframe", NA_action="raise")
    y = y.iloc[:, 0]
    gaps = day_gaps(subset[date_col], subset[group_col])
    logger.debug("Design for '%s': %d rows, %d columns, %d groups",
                 formula, X.shape[0], X.shape[1], subset[group_col].nunique())
    return subset, y, X, gaps


def day_gaps(dates, groups):
    """
    Days since the previous observation of the same group.

    The first observation of each group gets NaN. Rows must already be ordered by
    date within each group, with at most one row per date.
    """
    dates = pd.Series(pd.to_datetime(np.asarray(dates)))
    groups = pd.Series(np.asarray(groups))
    gaps = dates.groupby(groups).diff().dt.days.astype(float)
    if (gaps <= 0).any():
        raise ValueError("Rows must be sorted by date within each group with one row per date")
    return gaps.to_numpy()


def _car1_r(gaps, phi):
    gaps = np.asarray(gaps, dtype=float)
    first = np.isnan(gaps)
    return np.where(first, 0.0, phi ** np.where(first, 1.0, gaps))


def car1_whiten(values, gaps, phi):
    """
    Whiten values with continuous-time AR(1) correlation phi**gap.

    Applies the inverse Cholesky factor of the CAR1 correlation matrix:
    w[t] = (e[t] - r[t] * e[t-1]) / sqrt(1 - r[t]**2) with r[t] = phi**gap[t],
    and w[t] = e[t] for the first observation of each group.

    Args:
        values (array-like): 1-D vector or 2-D matrix with one row per observation
        gaps (array-like): Output of day_gaps for the same rows
        phi (float): Correlation at a lag of one day, 0 <= phi < 1

    Returns:
        np.ndarray: Whitened values with the same shape
    """
    values = np.asarray(values, dtype=float)
    r = _car1_r(gaps, phi)
    previous = np.roll(values, 1, axis=0)
    if values.ndim == 2:
        r = r[:, None]
    return (values - r * previous) / np.sqrt(1.0 - r ** 2)


def _car1_logdet(gaps, phi):
    """Log determinant of the CAR1 correlation matrix."""
    r = _car1_r(gaps, phi)
    return float(np.sum(np.log(1.0 - r ** 2)))


def estimate_car1_phi(resid, gaps, bounds=PHI_BOUNDS):
    """
    Estimate the CAR1 correlation of residuals by profile likelihood.

    Returns:
        float: phi within bounds, or 0 when no group has two observations
    """
    resid = np.asarray(resid, dtype=float)
    if np.all(np.isnan(np.asarray(gaps, dtype=float))):
        return 0.0
    n = len(resid)

    def criterion(phi):
        w = car1_whiten(resid, gaps, phi)
        return n * np.log(np.sum(w ** 2) / n) + _car1_logdet(gaps, phi)

    opt = minimize_scalar(criterion, bounds=bounds, method="bounded", options={"xatol": 1e-4})
    return float(opt.x)


def _gls_criterion(phi, y, X, gaps, reml=True):
    """-2 x profile (restricted) log-likelihood of a GLS model with CAR1 errors, up to a constant."""
    yw = car1_whiten(y, gaps, phi)
    Xw = car1_whiten(X, gaps, phi)
    beta, *_ = np.linalg.lstsq(Xw, yw, rcond=None)
    rss = np.sum((yw - Xw @ beta) ** 2)
    n, p = Xw.shape
    logdet = _car1_logdet(gaps, phi)
    if reml:
        _, logdet_xtx = np.linalg.slogdet(Xw.T @ Xw)
        return (n - p) * np.log(rss / (n - p)) + logdet + logdet_xtx
    return n * np.log(rss / n) + logdet


def _whitened_frames(y, X, gaps, phi):
    yw = pd.Series(car1_whiten(y, gaps, phi), index=y.index, name=y.name)
    Xw = pd.DataFrame(car1_whiten(X, gaps, phi), index=X.index, columns=X.columns)
    return yw, Xw


def fit_gls(formula, data, name="gls", group_col="site", date_col="date", correlation="car1",
            log_response=False):
    """
    Fit a GLS model with continuous-time AR(1) errors within each group.

    Args:
        formula (str): patsy formula, e.g. "do_mgl ~ C(site) + trend_years + temp"
        data (pd.DataFrame): Model frame with one row per group and date
        name (str): Model name used in tables and cache files
        correlation (str or None): "car1" or None for independent errors

    Returns:
        ModelFit: Fitted model
    """
    if correlation not in ("car1", None):
        raise ValueError(f"Unknown correlation structure '{correlation}'")
    subset, y, X, gaps = _prepare_design(formula, data, group_col, date_col)

    phi = 0.0
    if correlation == "car1":
        opt = minimize_scalar(_gls_criterion, bounds=PHI_BOUNDS, method="bounded",
                              args=(y.to_numpy(), X.to_numpy(), gaps), options={"xatol": 1e-4})
        phi = float(opt.x)

    yw, Xw = _whitened_frames(y, X, gaps, phi)
    result = sm.OLS(yw, Xw).fit()
    llf = float(result.llf - 0.5 * _car1_logdet(gaps, phi))
    k = len(result.params) + 1 + (correlation == "car1")
    logger.info("%s: GLS n=%d, phi=%.3f, llf=%.1f", name, int(result.nobs), phi, llf)

    return ModelFit(
        name=name, kind="gls", formula=formula, data=subset,
        params=result.params, bse=result.bse, cov_params=result.cov_params(), pvalues=result.pvalues,
        nobs=int(result.nobs), df_resid=float(result.df_resid), scale=float(result.scale),
        phi=phi, llf=llf, aic=-2 * llf + 2 * k,
        resid=y - X @ result.params, resid_normalized=result.resid / np.sqrt(result.scale),
        group_col=group_col, date_col=date_col, log_response=log_response,
    )


def _conditional_resid(y, X, result, groups):
    """Residuals on the original scale after removing fixed and random effects."""
    effects = {g: float(v.iloc[0]) for g, v in result.random_effects.items()}
    random_part = np.array([effects[g] for g in groups])
    fitted = X.to_numpy() @ np.asarray(result.fe_params) + random_part
    return y - fitted


def fit_gamm(formula, data, name="gamm", group_col="site", date_col="date", correlation="car1",
             max_iter=10, tol=1e-3, log_response=False):
    """
    Fit an additive mixed model with a random group intercept and CAR1 errors.

    Smooth terms are regression splines written into the formula (for example
    cc(doy, df=6, constraints='center') for a cyclic seasonal smooth). The model is
    fitted by REML with statsmodels MixedLM. With correlation="car1" the CAR1
    parameter is estimated from the conditional residuals, the fixed and random
    design matrices are whitened, and the model is refitted until phi changes by
    less than tol.

    Args:
        formula (str): patsy formula for the fixed effects and smooths
        data (pd.DataFrame): Model frame
        name (str): Model name
        group_col (str): Column defining the random intercept and the error series
        date_col (str): Column with the observation date
        correlation (str or None): "car1" or None
        max_iter (int): Maximum number of phi updates
        tol (float): Convergence tolerance on phi

    Returns:
        ModelFit: Fitted model
    """
    if correlation not in ("car1", None):
        raise ValueError(f"Unknown correlation structure '{correlation}'")
    subset, y, X, gaps = _prepare_design(formula, data, group_col, date_col)
    groups = subset[group_col].to_numpy()
    Z = pd.DataFrame({"Group": np.ones(len(y))}, index=y.index)

    phi = 0.0
    converged = correlation is None
    for n_iter in range(1, max_iter + 1):
        yw, Xw = _whitened_frames(y, X, gaps, phi)
        Zw = pd.DataFrame(car1_whiten(Z, gaps, phi), index=Z.index, columns=Z.columns)
        result = sm.MixedLM(yw, Xw, groups=groups, exog_re=Zw).fit(reml=True)
        resid = _conditional_resid(y, X, result, groups)
        if correlation is None:
            break
        new_phi = estimate_car1_phi(resid, gaps)
        logger.debug("%s: iteration %d, phi %.4f -> %.4f", name, n_iter, phi, new_phi)
        if abs(new_phi - phi) < tol:
            converged = True
            break
        if n_iter == max_iter:
            break
        phi = new_phi

    # phi stays at the value the last fit was whitened with
    if not converged:
        logger.warning("%s: CAR1 parameter did not converge in %d iterations (phi=%.3f, last estimate %.3f)",
                       name, max_iter, phi, new_phi)

    fe_names = list(X.columns)
    k_fe = len(fe_names)
    params = pd.Series(np.asarray(result.fe_params), index=fe_names)
    bse = pd.Series(np.asarray(result.bse_fe), index=fe_names)
    cov = pd.DataFrame(np.asarray(result.cov_params())[:k_fe, :k_fe], index=fe_names, columns=fe_names)
    pvalues = pd.Series(2 * stats.norm.sf(np.abs(params / bse)), index=fe_names)
    llf = float(result.llf - 0.5 * _car1_logdet(gaps, phi))
    k = k_fe + 2 + (correlation == "car1")
    normalized = pd.Series(car1_whiten(resid, gaps, phi) / np.sqrt(result.scale), index=y.index)
    logger.info("%s: GAMM n=%d, groups=%d, phi=%.3f, iterations=%d",
                name, len(y), len(np.unique(groups)), phi, n_iter)

    return ModelFit(
        name=name, kind="gamm", formula=formula, data=subset,
        params=params, bse=bse, cov_params=cov, pvalues=pvalues,
        nobs=len(y), df_resid=float(len(y) - k_fe), scale=float(result.scale),
        phi=phi, llf=llf, aic=-2 * llf + 2 * k, group_var=float(np.asarray(result.cov_re)[0, 0]),
        resid=resid, resid_normalized=normalized, group_col=group_col, date_col=date_col,
        n_iter=n_iter, converged=converged, log_response=log_response,
    )


def fit_exceedance_gee(formula, data, name="gee", group_col="site", date_col="date", log_response=False):
    """
    Fit a logistic GEE for a 0/1 exceedance indicator.

    The working correlation is AR(1) over consecutive observations within a group,
    so the rows are ordered by date before fitting.
    """
    subset, y, X, _ = _prepare_design(formula, data, group_col, date_col)
    model = sm.GEE(y, X, groups=subset[group_col].to_numpy(), family=sm.families.Binomial(),
                   cov_struct=sm.cov_struct.Autoregressive(grid=True))
    result = model.fit()
    phi = float(np.asarray(result.cov_struct.dep_params).ravel()[0])
    logger.info("%s: GEE n=%d, working AR(1)=%.3f", name, len(y), phi)

    return ModelFit(
        name=name, kind="gee", formula=formula, data=subset,
        params=result.params, bse=result.bse, cov_params=result.cov_params(), pvalues=result.pvalues,
        nobs=len(y), df_resid=float(len(y) - len(result.params)), scale=float(result.scale), phi=phi,
        resid=y - result.fittedvalues, resid_normalized=pd.Series(np.asarray(result.resid_pearson), index=y.index),
        group_col=group_col, date_col=date_col, log_response=log_response,
    )


MODEL_FITTERS = {"gamm": fit_gamm, "gls": fit_gls, "gee": fit_exceedance_gee}


def fit_model(spec, data):
    """Fit one model described by a MODEL_SPECS entry."""
    kind = spec["kind"]
    if kind not in MODEL_FITTERS:
        raise ValueError(f"Unknown model kind '{kind}'; expected one of {sorted(MODEL_FITTERS)}")
    fit = MODEL_FITTERS[kind](spec["formula"], data, name=spec["name"],
                              log_response=spec.get("log_response", False))
    fit.response_label = spec.get("response", spec["name"])
    return fit


def load_or_fit(cache_path, fit_func, refit=False):
    """
    Return a cached model fit if it exists, otherwise fit and cache it.

    Args:
        cache_path (str or Path): Pickle file for the fit
        fit_func (callable): Function without arguments returning the fit
        refit (bool): Ignore an existing cache file

    Returns:
        The cached or newly fitted object
    """
    cache_path = Path(cache_path)
    if cache_path.exists() and not refit:
        logger.info("Loading cached model fit %s", cache_path.name)
        with open(cache_path, "rb") as f:
            return pickle.load(f)

    logger.info("Fitting model for %s", cache_path.name)
    fit = fit_func()
    cache_path.parent.mkdir(parents=True, exist_ok=True)
    with open(cache_path, "wb") as f:
        pickle.dump(fit, f)
    return fit


def wald_test_terms(fit, term_prefix="C(site)", include_interactions=True):
    """
    Joint Wald chi-square test that all parameters starting with term_prefix are zero.

    Returns:
        dict: statistic, df, pvalue and the tested terms
    """
    names = [n for n in fit.params.index if n.startswith(term_prefix)]
    if not include_interactions:
        names = [n for n in names if ":" not in n]
    if not names:
        raise KeyError(f"Model {fit.name} has no terms starting with '{term_prefix}'")
    b = fit.params[names].to_numpy()
    V = fit.cov_params.loc[names, names].to_numpy()
    statistic = float(b @ np.linalg.solve(V, b))
    df = len(names)
    return {"statistic": statistic, "df": df, "pvalue": float(stats.chi2.sf(statistic, df)), "terms": names}


def trend_summary(fit, time_term="trend_years"):
    """Coefficient of the time term, with the change per decade on the response scale where possible."""
    b = float(fit.params[time_term])
    summary = {
        "model": fit.name,
        "coef": b,
        "se": float(fit.bse[time_term]),
        "pvalue": float(fit.pvalues[time_term]),
        "change_per_decade": 10 * b,
    }
    if fit.log_response:
        summary["percent_change_per_decade"] = 100 * (np.exp(10 * b) - 1)
    if fit.kind == "gee":
        summary["odds_ratio_per_decade"] = float(np.exp(10 * b))
    return summary


def _reference_values(data, factor, skip):
    """Split columns into those constant within factor levels and those held at a typical value."""
    per_level, fixed = {}, {}
    by_level = data.groupby(factor)
    for col in data.columns:
        if col == factor or col in skip:
            continue
        if by_level[col].nunique(dropna=True).max() <= 1:
            per_level[col] = by_level[col].first()
        elif pd.api.types.is_numeric_dtype(data[col]):
            fixed[col] = data[col].mean()
        else:
            fixed[col] = data[col].mode().iloc[0]
    return per_level, fixed


def marginal_means(fit, factor="site", average_over=None, inverse_link=None):
    """
    Estimated marginal means for each level of a factor.

    The reference grid holds covariates that are constant within a level (such as
    impervious cover for a site) at the level's value, other numeric covariates at
    their mean and other categorical covariates at their most frequent value.
    Columns in average_over are averaged over the supplied values, for example
    {"doy": range(1, 366)} to average a seasonal smooth over the year.

    Args:
        fit (ModelFit): Fitted model
        factor (str): Column whose levels get a marginal mean
        average_over (dict, optional): column -> values to average over
        inverse_link (callable, optional): Maps link-scale values to the response scale

    Returns:
        pd.DataFrame: Mean, standard error and 95% limits per level
    """
    data = fit.data
    if factor not in data.columns:
        raise KeyError(f"Model {fit.name} data has no column '{factor}'")
    average_over = {} if average_over is None else average_over
    average_over = {col: values for col, values in average_over.items() if col in data.columns}
    skip = set(average_over) | {fit.date_col}
    per_level, fixed = _reference_values(data, factor, skip)

    if average_over:
        grid = pd.MultiIndex.from_product([list(v) for v in average_over.values()],
                                          names=list(average_over)).to_frame(index=False)
    else:
        grid = pd.DataFrame(index=[0])

    z = stats.norm.ppf(0.975)
    V = fit.cov_params.loc[fit.params.index, fit.params.index].to_numpy()
    rows = []
    for level in sorted(data[factor].unique()):
        newdata = grid.copy()
        newdata[factor] = level
        for col, values in per_level.items():
            newdata[col] = values[level]
        for col, value in fixed.items():
            newdata[col] = value
        X = fit.design_matrix(newdata)
        xbar = X.mean(axis=0).reindex(fit.params.index).to_numpy()
        estimate = float(xbar @ fit.params.to_numpy())
        se = float(np.sqrt(xbar @ V @ xbar))
        rows.append({factor: level, "emmean": estimate, "se": se,
                     "lower": estimate - z * se, "upper": estimate + z * se})

    emm = pd.DataFrame(rows)
    if inverse_link is not None:
        emm["response"] = inverse_link(emm["emmean"])
        emm["response_lower"] = inverse_link(emm["lower"])
        emm["response_upper"] = inverse_link(emm["upper"])
    emm.insert(0, "model", fit.name)
    return emm


def residual_acf(fit, nlags=10):
    """
    Autocorrelation of the normalized residuals within each group.

    Returns:
        pd.DataFrame: ACF by lag (rows) and group (columns); attrs["nobs"] holds group sizes
    """
    groups = fit.data[fit.group_col].to_numpy()
    table, nobs = {}, {}
    for group, resid in fit.resid_normalized.groupby(groups):
        resid = resid.dropna()
        if len(resid) <= nlags:
            logger.debug("%s: too few residuals for group %s to compute the ACF", fit.name, group)
            continue
        table[group] = acf(resid.to_numpy(), nlags=nlags, fft=True)
        nobs[group] = len(resid)
    out = pd.DataFrame(table, index=pd.RangeIndex(nlags + 1, name="lag"))
    out.attrs["nobs"] = nobs
    return out


def coefficient_table(fit):
    """Tidy table of the model estimates with 95% confidence limits."""
    z = stats.norm.ppf(0.975)
    table = pd.DataFrame({"estimate": fit.params, "se": fit.bse, "pvalue": fit.pvalues})
    table["lower"] = table["estimate"] - z * table["se"]
    table["upper"] = table["estimate"] + z * table["se"]
    table.index.name = "term"
    table = table.reset_index()
    table.insert(0, "model", fit.name)
    return table
