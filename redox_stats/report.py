"""
Reporting Module
================

Turns fit, contrast and paired-test results into flat tables for printing
and CSV export.
"""
from __future__ import annotations

import os
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from .paired import PairedResult
from .posthoc import combine_contrasts, significance_stars, significant_contrasts
from .prepare import ALPHA
from .rmanova import RMAnovaResult


def format_p(p: float) -> str:
    """Format a p-value for display."""
    if p is None or np.isnan(p):
        return "NA"
    if p < 0.001:
        return "<0.001"
    return f"{p:.3f}"


def _key_columns(key: Any, key_names: Sequence[str]) -> Dict[str, Any]:
    values = key if isinstance(key, tuple) else (key,)
    return dict(zip(key_names, values))


def anova_table(
    results: Dict[Any, RMAnovaResult],
    key_names: Sequence[str] = ("Metric",),
) -> pd.DataFrame:
    """
    One row per metric x ANOVA term; failed fits get a single row.

    :param results: Output of fit_grouped / fit_all_metrics
    :param key_names: Column name(s) for the group key
    :returns: DataFrame with F, dfs, p-values, np2, correction flag and stars
    """
    rows: List[Dict[str, Any]] = []
    for key, result in results.items():
        base = _key_columns(key, key_names)
        if not result["ok"]:
            rows.append({**base, "term": None, "status": "Failed",
                         "note": f"{result['error_type']}: {result['error']}"})
            continue
        for _, term in result["table"].iterrows():
            rows.append({
                **base,
                "term": term["term"],
                "F": term["F"],
                "df1": term["df1"],
                "df2": term["df2"],
                "p_value": term["p_value"],
                "p_unc": term["p_unc"],
                "np2": term["np2"],
                "eps": term["eps"],
                "sphericity_corrected": term["sphericity_corrected"],
                "stars": significance_stars(term["p_value"]),
                "status": "OK",
                "note": "; ".join(result["warnings"]),
            })
    columns = list(key_names) + [
        "term", "F", "df1", "df2", "p_value", "p_unc", "np2", "eps",
        "sphericity_corrected", "stars", "status", "note",
    ]
    return pd.DataFrame(rows, columns=columns)


def contrast_table(
    contrasts: Dict[Any, pd.DataFrame],
    key_names: Sequence[str] = ("Metric",),
    significant_only: bool = False,
    alpha: float = ALPHA,
) -> pd.DataFrame:
    """
    Post-hoc contrasts of all metrics in one table.

    :param contrasts: Output of run_posthoc
    :param key_names: Column name(s) for the group key
    :param significant_only: Keep only contrasts with p_adjusted < alpha
    """
    table = combine_contrasts(contrasts, key_names)
    if significant_only:
        table = significant_contrasts(table, alpha=alpha, by=list(key_names))
    return table


def paired_table(
    results: Dict[Any, PairedResult],
    key_names: Sequence[str] = ("Metric",),
) -> pd.DataFrame:
    """One row per metric for paired comparisons."""
    rows = []
    for key, r in results.items():
        rows.append({
            **_key_columns(key, key_names),
            "test": r["test"],
            "contrast": r["contrast"],
            "statistic_name": r["statistic_name"],
            "statistic": r["statistic"],
            "df": r["df"],
            "p_value": r["p_value"],
            "estimate": r["estimate"],
            "ci_lower": r["ci_lower"],
            "ci_upper": r["ci_upper"],
            "effect_size": r["effect_size"],
            "effect_size_type": r["effect_size_type"],
            "hedges_g": r["hedges_g"],
            "stars": r["stars"],
            "n": r["n"],
            "status": "OK" if r["ok"] else "Failed",
            "note": "" if r["ok"] else f"{r['error_type']}: {r['error']}",
        })
    return pd.DataFrame(rows)


def results_summary(domain_result: Dict[str, Any]) -> pd.DataFrame:
    """
    One-line-per-metric summary of a domain result from study.runner.

    Shows the reported p-value of the highest-order term (or the paired
    test) and the number of significant post-hoc contrasts.
    """
    rows = []
    kind = domain_result.get("analysis")
    key_names = domain_result.get("key_names", ["Metric"])
    if kind == "rm_anova":
        significant = domain_result.get("significant_contrasts", pd.DataFrame())
        for key, fit in domain_result["fits"].items():
            base = _key_columns(key, key_names)
            n_sig = 0
            if not significant.empty:
                mask = np.ones(len(significant), dtype=bool)
                for name, value in base.items():
                    mask &= (significant[name] == value).to_numpy()
                n_sig = int(mask.sum())
            rows.append({
                **base,
                "test": "RM-ANOVA",
                "term": fit["interaction"],
                "p_value": fit["p_interaction"],
                "stars": significance_stars(fit["p_interaction"]),
                "significant_contrasts": n_sig,
                "status": "OK" if fit["ok"] else "Failed",
            })
    elif kind == "paired":
        for key, r in domain_result["fits"].items():
            rows.append({
                **_key_columns(key, key_names),
                "test": r["test"],
                "term": r["contrast"],
                "p_value": r["p_value"],
                "stars": r["stars"],
                "significant_contrasts": np.nan,
                "status": "OK" if r["ok"] else "Failed",
            })
    return pd.DataFrame(rows)


def export_to_csv(
    tables: Dict[str, pd.DataFrame],
    output_dir: str,
    prefix: str = "",
    sep: str = ",",
) -> List[str]:
    """
    Write each table to ``<output_dir>/<prefix><name>.csv``.

    :returns: List of written paths
    """
    os.makedirs(output_dir, exist_ok=True)
    paths = []
    for name, df in tables.items():
        if df is None:
            continue
        path = os.path.join(output_dir, f"{prefix}{name}.csv")
        df.to_csv(path, index=False, sep=sep)
        paths.append(path)
    return paths


def print_results_summary(domain_result: Dict[str, Any], max_rows: Optional[int] = None) -> None:
    """Print the summary and the significant contrasts of a domain result."""
    summary = results_summary(domain_result)
    print(f"\n[{domain_result['domain']}] {domain_result.get('analysis', '')}")
    if summary.empty:
        print("  (no results)")
        return
    display = summary.copy()
    display["p_value"] = display["p_value"].map(format_p)
    print(display.head(max_rows).to_string(index=False) if max_rows else display.to_string(index=False))

    significant = domain_result.get("significant_contrasts")
    if significant is not None and not significant.empty:
        print(f"\n  Significant contrasts ({len(significant)}):")
        cols = [c for c in significant.columns if c in (
            list(domain_result.get("key_names", [])) +
            ["contrast", "estimate", "p_adjusted", "hedges_g", "stars"]
        )]
        print(significant[cols].to_string(index=False))
