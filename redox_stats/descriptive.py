"""
Descriptive Statistics Module
=============================

Summary statistics and exploratory checks run before model fitting:
- Per-cell summaries (n, mean, SD, SEM, median, range)
- Shapiro-Wilk normality per cell and on paired differences
- Test-policy suggestion for the paired engine
- Missingness report
- Participant characteristics table
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional
import warnings

import numpy as np
import pandas as pd
from scipy import stats

from .prepare import ALPHA, TidyTable, check_design_balance, is_stacked, stack_table
from .rmanova import iter_partitions


def _stacked(table: TidyTable) -> TidyTable:
    return table if is_stacked(table) else stack_table(table)


def summarize_metrics(table: TidyTable) -> pd.DataFrame:
    """
    Per metric x cell summary statistics.

    :param table: TidyTable (stacked or not)
    :returns: DataFrame with n, mean, sd, sem, median, min, max
    """
    t = _stacked(table)
    keys = [t["metric_var"]] + t["factors"]
    grouped = t["data"].groupby(keys, observed=True, sort=True)[t["value_var"]]
    summary = grouped.agg(["count", "mean", "std", "median", "min", "max"]).reset_index()
    summary = summary.rename(columns={"count": "n", "std": "sd"})
    summary.insert(summary.columns.get_loc("sd") + 1, "sem", summary["sd"] / np.sqrt(summary["n"]))
    return summary


def _shapiro(values: pd.Series) -> tuple:
    values = values.dropna()
    if len(values) < 3 or values.nunique() < 2:
        return np.nan, np.nan
    w, p = stats.shapiro(values)
    return float(w), float(p)


def check_normality(table: TidyTable, alpha: float = ALPHA) -> pd.DataFrame:
    """
    Shapiro-Wilk test for every metric x cell.

    Cells with fewer than 3 values or no variance get NaN and is_normal=None.

    :returns: DataFrame with n, W, p_value, is_normal
    """
    t = _stacked(table)
    keys = [t["metric_var"]] + t["factors"]
    rows = []
    for key, part in t["data"].groupby(keys, observed=True, sort=True):
        key = key if isinstance(key, tuple) else (key,)
        w, p = _shapiro(part[t["value_var"]])
        row = dict(zip(keys, key))
        row.update({
            "n": int(part[t["value_var"]].notna().sum()),
            "W": w,
            "p_value": p,
            "is_normal": None if np.isnan(p) else bool(p >= alpha),
        })
        rows.append(row)
    return pd.DataFrame(rows)


def check_paired_normality(
    table: TidyTable,
    factor: Optional[str] = None,
    alpha: float = ALPHA,
) -> pd.DataFrame:
    """
    Shapiro-Wilk test on the paired differences of a two-level factor, per metric.

    :param table: TidyTable with a two-level within factor
    :param factor: The two-level factor (default: the table's only factor)
    :returns: DataFrame with metric, n, W, p_value, is_normal
    """
    t = _stacked(table)
    if factor is None:
        if len(t["factors"]) != 1:
            raise ValueError(f"Cannot infer the paired factor from {t['factors']}")
        factor = t["factors"][0]

    rows = []
    for key, part in iter_partitions(t["data"], t["metric_var"]):
        wide = part.pivot(index=t["id_var"], columns=factor, values=t["value_var"])
        levels = list(part[factor].cat.categories) if isinstance(part[factor].dtype, pd.CategoricalDtype) \
            else list(wide.columns)
        if len(levels) != 2:
            raise ValueError(f"Factor '{factor}' must have two levels, found {levels}")
        diff = (wide[levels[0]] - wide[levels[1]]).dropna()
        w, p = _shapiro(diff)
        rows.append({
            t["metric_var"]: key,
            "n": len(diff),
            "W": w,
            "p_value": p,
            "is_normal": None if np.isnan(p) else bool(p >= alpha),
        })
    return pd.DataFrame(rows)


def suggest_paired_tests(
    table: TidyTable,
    factor: Optional[str] = None,
    alpha: float = ALPHA,
) -> Dict[Any, str]:
    """
    Turn paired-difference normality checks into a test policy.

    Metrics whose differences reject normality get "wilcoxon", everything
    else (including untestable metrics) gets "ttest".

    :returns: Dict mapping metric -> "ttest" / "wilcoxon"
    """
    normality = check_paired_normality(table, factor=factor, alpha=alpha)
    metric_var = _stacked(table)["metric_var"]
    return {
        row[metric_var]: "wilcoxon" if row["is_normal"] is False else "ttest"
        for _, row in normality.iterrows()
    }


def missingness_report(table: TidyTable) -> pd.DataFrame:
    """
    Missing cells per metric against the balanced design.

    :returns: DataFrame with expected, missing and pct_missing per metric
    """
    t = _stacked(table)
    balance = check_design_balance(t)
    per_metric = balance["n_subjects"] * balance["n_cells"]
    missing = balance["missing"]
    counts = (
        missing.groupby(t["metric_var"], observed=False).size()
        if not missing.empty else pd.Series(dtype=int)
    )
    rows = []
    for metric in t["metrics"]:
        n_missing = int(counts.get(metric, 0))
        rows.append({
            t["metric_var"]: metric,
            "expected": per_metric,
            "missing": n_missing,
            "pct_missing": 100.0 * n_missing / per_metric if per_metric else np.nan,
        })
    return pd.DataFrame(rows)


def print_missingness_summary(table: TidyTable) -> None:
    """Print metrics with missing cells."""
    report = missingness_report(table)
    flagged = report[report["missing"] > 0]
    print(f"[{table['domain']}] {len(flagged)}/{len(report)} metrics with missing cells")
    for _, row in flagged.iterrows():
        print(f"  - {row.iloc[0]}: {row['missing']} missing ({row['pct_missing']:.1f}%)")


def describe_demographics(table: TidyTable, decimals: int = 1) -> pd.DataFrame:
    """
    Participant characteristics: mean +/- SD for numeric columns and counts
    for categorical columns.

    :param table: Participant-level TidyTable (no factors)
    :returns: DataFrame with variable, statistic, value
    """
    if table["factors"]:
        warnings.warn(f"'{table['domain']}' has within factors; summarising all rows")
    df = table["data"]
    rows: List[Dict[str, Any]] = []
    for col in df.columns:
        if col == table["id_var"]:
            continue
        series = df[col]
        if pd.api.types.is_numeric_dtype(series):
            rows.append({
                "variable": col,
                "statistic": "mean ± SD",
                "value": f"{series.mean():.{decimals}f} ± {series.std():.{decimals}f}",
                "n": int(series.notna().sum()),
            })
        else:
            for level, count in series.value_counts(sort=False).items():
                rows.append({
                    "variable": col,
                    "statistic": str(level),
                    "value": str(int(count)),
                    "n": int(series.notna().sum()),
                })
    return pd.DataFrame(rows, columns=["variable", "statistic", "value", "n"])
