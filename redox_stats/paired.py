"""
Paired Comparisons Module
=========================

Two-level within-subject comparisons (Control vs Oxidative-stress) for
metrics measured once per condition.

The test is chosen per metric by the caller:
- "ttest": paired t-test, Cohen's d_z on the differences and its Hedges' g
- "wilcoxon": Wilcoxon signed-rank test, matched-pairs rank-biserial r

Use descriptive.suggest_paired_tests() to derive a policy from normality
diagnostics; the engine never switches tests on its own.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Union, Sequence
import warnings

import numpy as np
import pandas as pd
from scipy import stats

from .exceptions import IncompleteDesign, ModelFitFailure
from .posthoc import hedges_j, significance_stars
from .prepare import TidyTable, is_stacked
from .rmanova import iter_partitions


TEST_POLICIES = ("ttest", "wilcoxon")

PairedResult = Dict[str, Any]


def create_paired_result(
    key: Any,
    test: str,
    contrast: str = "",
    statistic: float = np.nan,
    df: float = np.nan,
    p_value: float = np.nan,
    ci_lower: float = np.nan,
    ci_upper: float = np.nan,
    estimate: float = np.nan,
    effect_size: float = np.nan,
    effect_size_type: str = "",
    hedges_g: float = np.nan,
    n: int = 0,
    ok: bool = False,
    error: Optional[str] = None,
    error_type: Optional[str] = None,
) -> PairedResult:
    """Create a PairedResult dictionary."""
    return {
        "key": key,
        "test": test,
        "contrast": contrast,
        "statistic": statistic,
        "statistic_name": "t" if test == "ttest" else "W",
        "df": df,
        "p_value": p_value,
        "ci_lower": ci_lower,
        "ci_upper": ci_upper,
        "estimate": estimate,
        "effect_size": effect_size,
        "effect_size_type": effect_size_type,
        "hedges_g": hedges_g,
        "stars": significance_stars(p_value),
        "n": n,
        "ok": ok,
        "error": error,
        "error_type": error_type,
    }


def rank_biserial(diff: Union[np.ndarray, pd.Series]) -> float:
    """
    Matched-pairs rank-biserial correlation of paired differences.

    r = (R+ - R-) / (R+ + R-), with ranks of |diff| over non-zero differences.
    """
    diff = np.asarray(diff, dtype=float)
    diff = diff[~np.isnan(diff) & (diff != 0)]
    if diff.size == 0:
        return np.nan
    ranks = stats.rankdata(np.abs(diff))
    r_plus = ranks[diff > 0].sum()
    r_minus = ranks[diff < 0].sum()
    return float((r_plus - r_minus) / (r_plus + r_minus))


def cohens_dz(diff: Union[np.ndarray, pd.Series]) -> float:
    """Mean of paired differences divided by their SD."""
    diff = np.asarray(diff, dtype=float)
    sd = diff.std(ddof=1)
    if sd == 0 or np.isnan(sd):
        return np.nan
    return float(diff.mean() / sd)


def fit_paired(
    df: pd.DataFrame,
    dv: str,
    factor: str,
    subject: str,
    test: str = "ttest",
    key: Any = None,
    subjects: Optional[Sequence[Any]] = None,
) -> PairedResult:
    """
    Paired comparison of the two levels of ``factor`` for one metric.

    The contrast is first level minus second level in declared order
    (e.g. "Control - Oxidative-stress").

    :param df: Long DataFrame for a single metric
    :param dv: Dependent variable column
    :param factor: Two-level within-subject factor
    :param subject: Participant column
    :param test: "ttest" or "wilcoxon"
    :param key: Label for messages and the result (default: dv)
    :param subjects: Participants expected in ``df`` (default: those present)
    :returns: PairedResult dictionary
    :raises IncompleteDesign: If a participant lacks a value for either level
    :raises ModelFitFailure: If the factor does not have two levels or scipy fails
    """
    key = dv if key is None else key
    if test not in TEST_POLICIES:
        raise ValueError(f"Unknown test policy: {test}. Use one of {TEST_POLICIES}")

    if isinstance(df[factor].dtype, pd.CategoricalDtype):
        levels = list(df[factor].cat.categories)
    else:
        levels = list(pd.unique(df[factor].dropna()))
    if len(levels) != 2:
        raise ModelFitFailure(key, f"factor '{factor}' has {len(levels)} levels, expected 2")

    counts = df.dropna(subset=[dv]).groupby([subject, factor], observed=True).size()
    if (counts > 1).any():
        raise ModelFitFailure(key, "participants have repeated observations per level")

    wide = df.pivot(index=subject, columns=factor, values=dv)
    wide = wide.reindex(columns=levels)
    if subjects is not None:
        wide = wide.reindex(index=list(subjects))
    missing = [
        (s, lvl) for s in wide.index for lvl in levels if pd.isna(wide.loc[s, lvl])
    ]
    if missing:
        raise IncompleteDesign(key, missing)

    x = wide[levels[0]].astype(float)
    y = wide[levels[1]].astype(float)
    diff = x - y
    n = len(diff)
    contrast = f"{levels[0]} - {levels[1]}"

    try:
        if test == "ttest":
            res = stats.ttest_rel(x, y)
            ci = res.confidence_interval(confidence_level=0.95)
            dz = cohens_dz(diff)
            return create_paired_result(
                key=key, test=test, contrast=contrast,
                statistic=float(res.statistic), df=float(res.df), p_value=float(res.pvalue),
                ci_lower=float(ci.low), ci_upper=float(ci.high),
                estimate=float(diff.mean()),
                effect_size=dz, effect_size_type="cohen_dz",
                hedges_g=dz * hedges_j(n - 1),
                n=n, ok=True,
            )
        res = stats.wilcoxon(x, y)
        return create_paired_result(
            key=key, test=test, contrast=contrast,
            statistic=float(res.statistic), p_value=float(res.pvalue),
            estimate=float(diff.median()),
            effect_size=rank_biserial(diff), effect_size_type="rank_biserial",
            n=n, ok=True,
        )
    except ValueError as e:
        raise ModelFitFailure(key, str(e), cause=e) from e


def fit_all_paired(
    df: pd.DataFrame,
    dv: str,
    factor: str,
    subject: str,
    group_by: Union[str, Sequence[str]],
    tests: Optional[Dict[Any, str]] = None,
    default_test: str = "ttest",
    verbose: bool = False,
) -> Dict[Any, PairedResult]:
    """
    Paired comparison for every partition of ``df``.

    :param df: Stacked long DataFrame
    :param dv: Dependent variable column
    :param factor: Two-level within-subject factor
    :param subject: Participant column
    :param group_by: Grouping column(s)
    :param tests: Group key -> "ttest" / "wilcoxon" policy
    :param default_test: Policy for keys not in ``tests``
    :param verbose: Print one line per partition
    :returns: Dict mapping group key -> PairedResult, in encounter order
    """
    tests = dict(tests or {})
    for policy in list(tests.values()) + [default_test]:
        if policy not in TEST_POLICIES:
            raise ValueError(f"Unknown test policy: {policy}. Use one of {TEST_POLICIES}")

    subjects = list(pd.unique(df[subject].dropna()))
    results: Dict[Any, PairedResult] = {}
    for key, part in iter_partitions(df, group_by):
        test = tests.get(key, default_test)
        try:
            results[key] = fit_paired(
                part, dv, factor, subject, test=test, key=key, subjects=subjects,
            )
        except (IncompleteDesign, ModelFitFailure) as e:
            warnings.warn(f"Failed paired comparison for {key}: {e}")
            results[key] = create_paired_result(
                key=key, test=test, ok=False, error=str(e), error_type=type(e).__name__,
            )
        if verbose:
            r = results[key]
            if r["ok"]:
                print(f"  {key}: {r['statistic_name']} = {r['statistic']:.3f}, "
                      f"p = {r['p_value']:.4f} {r['stars']}")
            else:
                print(f"  {key}: FAILED ({r['error_type']})")
    return results


def fit_all_paired_table(
    table: TidyTable,
    tests: Optional[Dict[Any, str]] = None,
    factor: Optional[str] = None,
    group_by: Optional[List[str]] = None,
    default_test: str = "ttest",
    verbose: bool = False,
) -> Dict[Any, PairedResult]:
    """
    Paired comparisons for every metric of a stacked TidyTable.

    :param table: Stacked TidyTable with a single two-level factor
    :param tests: Metric -> test policy
    :param factor: Two-level factor (default: the table's only non-grouping factor)
    :param group_by: Grouping columns (default: [metric_var])
    """
    if not is_stacked(table):
        raise ValueError(f"Table '{table['domain']}' must be stacked before testing")
    group_by = list(group_by) if group_by is not None else [table["metric_var"]]
    if factor is None:
        candidates = [f for f in table["factors"] if f not in group_by]
        if len(candidates) != 1:
            raise ValueError(f"Cannot infer the paired factor from {table['factors']}")
        factor = candidates[0]
    return fit_all_paired(
        table["data"],
        dv=table["value_var"],
        factor=factor,
        subject=table["id_var"],
        group_by=group_by,
        tests=tests,
        default_test=default_test,
        verbose=verbose,
    )
