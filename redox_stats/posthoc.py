"""
Post-hoc Comparisons Module
===========================

Pairwise condition x timepoint contrasts for metrics whose RM-ANOVA shows a
significant interaction, with multiplicity-adjusted p-values and Hedges' g.

Effect sizes follow the standardized-mean-difference convention of
estimated-marginal-means software: the contrast estimate is divided by the
residual standard deviation of an auxiliary linear model fitted to the same
data, then multiplied by the small-sample correction J with df = n - 1.
"""
from __future__ import annotations

from itertools import combinations, product
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import warnings

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import gammaln
import statsmodels.formula.api as smf
from statsmodels.stats.multitest import multipletests

from .prepare import ALPHA
from .rmanova import RMAnovaResult, is_significant, iter_partitions


CORRECTION_METHODS = {"sidak": "sidak", "bonferroni": "bonferroni"}

CONTRAST_COLUMNS = [
    "contrast", "estimate", "std_error", "t", "df", "p_value", "p_adjusted",
    "sigma", "edf", "d", "J", "hedges_g", "stars",
]


# =============================================================================
# Effect Size Helpers
# =============================================================================

def hedges_j(df: float) -> float:
    """
    Exact small-sample bias correction factor for Cohen's d.

    J = exp(lgamma(df/2) - log(sqrt(df/2)) - lgamma((df-1)/2))
    """
    if df <= 1:
        return np.nan
    return float(np.exp(gammaln(df / 2) - np.log(np.sqrt(df / 2)) - gammaln((df - 1) / 2)))


def hedges_j_approx(df: float) -> float:
    """Closed-form approximation J = 1 - 3 / (4 df - 1)."""
    if df <= 1:
        return np.nan
    return 1.0 - 3.0 / (4.0 * df - 1.0)


def hedges_g(d: float, n: int, exact: bool = True) -> float:
    """
    Bias-corrected standardized mean difference for a paired design.

    :param d: Cohen's d
    :param n: Number of participants (df = n - 1)
    :param exact: Use the log-gamma form of J (False = approximation)
    :returns: g = d * J
    """
    j = hedges_j(n - 1) if exact else hedges_j_approx(n - 1)
    return d * j


def significance_stars(p: float) -> str:
    """Return '***', '**', '*' or '' for a p-value."""
    if p is None or np.isnan(p):
        return ""
    if p < 0.001:
        return "***"
    if p < 0.01:
        return "**"
    if p < 0.05:
        return "*"
    return ""


def residual_sd(
    df: pd.DataFrame,
    dv: str,
    within: Sequence[str],
) -> Tuple[float, float]:
    """
    Residual SD and residual df of the auxiliary linear model
    ``dv ~ factor1 * factor2 ...`` fitted with statsmodels OLS.

    :returns: (sigma, residual degrees of freedom)
    """
    data = df[[dv] + list(within)].copy()
    for col in within:
        data[col] = data[col].astype(str)
    rhs = " * ".join(f'C(Q("{f}"))' for f in within)
    model = smf.ols(f'Q("{dv}") ~ {rhs}', data=data).fit()
    return float(np.sqrt(model.scale)), float(model.df_resid)


# =============================================================================
# Pairwise Contrasts
# =============================================================================

def _cell_levels(df: pd.DataFrame, within: Sequence[str]) -> List[Tuple[Any, ...]]:
    levels = []
    for f in within:
        if isinstance(df[f].dtype, pd.CategoricalDtype):
            observed = set(df[f].dropna().unique())
            levels.append([c for c in df[f].cat.categories if c in observed])
        else:
            levels.append(list(pd.unique(df[f].dropna())))
    return list(product(*levels))


def _cell_label(cell: Tuple[Any, ...]) -> str:
    return " ".join(str(c) for c in cell)


def adjust_pvalues(p_values: Sequence[float], method: str = "sidak") -> np.ndarray:
    """
    Adjust p-values for multiplicity, leaving NaN entries untouched.

    :param p_values: Raw p-values
    :param method: "sidak" or "bonferroni"
    :returns: Adjusted p-values
    """
    if method not in CORRECTION_METHODS:
        raise ValueError(f"Unknown correction method: {method}. Use one of {list(CORRECTION_METHODS)}")
    p = np.asarray(p_values, dtype=float)
    adjusted = np.full_like(p, np.nan)
    mask = ~np.isnan(p)
    if mask.any():
        adjusted[mask] = multipletests(p[mask], method=CORRECTION_METHODS[method])[1]
    return adjusted


def pairwise_contrasts(
    df: pd.DataFrame,
    dv: str,
    within: Sequence[str],
    subject: str,
    method: str = "sidak",
    exact_j: bool = True,
) -> pd.DataFrame:
    """
    All pairwise contrasts between within-subject cells of one metric.

    Each contrast is a paired comparison of two cells (estimate = mean of the
    per-participant differences, SE = SD of differences / sqrt(n), df = n - 1).

    :param df: Long DataFrame for a single metric (balanced design)
    :param dv: Dependent variable column
    :param within: Within-subject factors defining the cells
    :param subject: Participant column
    :param method: Multiplicity correction ("sidak" or "bonferroni")
    :param exact_j: Use the exact J (False = approximation)
    :returns: DataFrame with CONTRAST_COLUMNS, in cell-enumeration order
    """
    within = list(within)
    if method not in CORRECTION_METHODS:
        raise ValueError(f"Unknown correction method: {method}. Use one of {list(CORRECTION_METHODS)}")

    data = df.copy()
    cells = _cell_levels(data, within)
    data["_cell"] = [
        _cell_label(c) for c in data[within].astype("object").itertuples(index=False, name=None)
    ]
    wide = data.pivot(index=subject, columns="_cell", values=dv)
    sigma, edf = residual_sd(df, dv, within)

    rows = []
    for a, b in combinations([_cell_label(c) for c in cells], 2):
        pair = wide[[a, b]].dropna()
        diff = pair[a] - pair[b]
        n = len(diff)
        estimate = float(diff.mean())
        se = float(diff.std(ddof=1) / np.sqrt(n)) if n > 1 else np.nan
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            test = stats.ttest_rel(pair[a], pair[b])
        d = estimate / sigma if sigma > 0 else np.nan
        j = hedges_j(n - 1) if exact_j else hedges_j_approx(n - 1)
        rows.append({
            "contrast": f"{a} - {b}",
            "estimate": estimate,
            "std_error": se,
            "t": float(test.statistic),
            "df": n - 1,
            "p_value": float(test.pvalue),
            "sigma": sigma,
            "edf": edf,
            "d": d,
            "J": j,
            "hedges_g": d * j,
        })

    result = pd.DataFrame(rows, columns=[c for c in CONTRAST_COLUMNS if c not in ("p_adjusted", "stars")])
    result["p_adjusted"] = adjust_pvalues(result["p_value"].to_numpy(), method=method)
    result["stars"] = result["p_adjusted"].map(significance_stars)
    return result[CONTRAST_COLUMNS]


def significant_contrasts(
    contrasts: pd.DataFrame,
    alpha: float = ALPHA,
    by: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Keep contrasts with adjusted p < alpha, sorted by contrast label.

    Applying this twice gives the same table as applying it once.

    :param contrasts: Contrast table (single metric or combined)
    :param alpha: Significance threshold on p_adjusted
    :param by: Leading sort columns (e.g. ["Molecule"]) for combined tables
    :returns: Filtered, sorted copy
    """
    kept = contrasts[contrasts["p_adjusted"] < alpha]
    sort_cols = list(by or []) + ["contrast"]
    return kept.sort_values(sort_cols, kind="stable").reset_index(drop=True)


# =============================================================================
# Batch Post-hoc
# =============================================================================

def run_posthoc(
    df: pd.DataFrame,
    results: Dict[Any, RMAnovaResult],
    group_by: Union[str, Sequence[str]],
    method: str = "sidak",
    alpha: float = ALPHA,
    exact_j: bool = True,
) -> Dict[Any, pd.DataFrame]:
    """
    Post-hoc contrasts for every fit with a significant interaction.

    Partitions are matched to fits by group key, never by position.

    :param df: Stacked long DataFrame the fits were computed from
    :param results: Output of fit_grouped / fit_all_metrics
    :param group_by: Grouping column(s) used for fitting
    :param method: Multiplicity correction
    :param alpha: Threshold on the interaction p-value
    :param exact_j: Use the exact J
    :returns: Dict mapping group key -> full contrast table
    """
    contrasts: Dict[Any, pd.DataFrame] = {}
    for key, part in iter_partitions(df, group_by):
        fit = results.get(key)
        if fit is None or not is_significant(fit, alpha=alpha):
            continue
        contrasts[key] = pairwise_contrasts(
            part, fit["dv"], fit["within"], fit["subject"], method=method, exact_j=exact_j,
        )
    return contrasts


def combine_contrasts(
    contrasts: Dict[Any, pd.DataFrame],
    key_names: Sequence[str],
) -> pd.DataFrame:
    """
    Stack per-metric contrast tables into one table with key columns.

    :param contrasts: Dict mapping group key -> contrast table
    :param key_names: Column name(s) for the key (e.g. ["Molecule"] or ["Metric", "Limb"])
    """
    key_names = list(key_names)
    frames = []
    for key, table in contrasts.items():
        values = key if isinstance(key, tuple) else (key,)
        frame = table.copy()
        for name, value in reversed(list(zip(key_names, values))):
            frame.insert(0, name, value)
        frames.append(frame)
    if not frames:
        return pd.DataFrame(columns=key_names + CONTRAST_COLUMNS)
    return pd.concat(frames, ignore_index=True)
