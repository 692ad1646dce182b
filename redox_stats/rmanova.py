"""
Repeated-Measures ANOVA Module
==============================

Fits repeated-measures ANOVA models (pingouin) for every metric of a stacked
tidy table. Designed for fully within-subject designs (condition x timepoint)
with the participant as the repeated-measures unit.

Architecture Note:
    This module uses dictionaries instead of classes for data structures
    to keep results easy to inspect and to tabulate.

Key features:
- RMAnovaResult dict with one row per ANOVA term
- Balance check before fitting (IncompleteDesign)
- Mauchly's test for every term with more than one numerator df; the
  Greenhouse-Geisser corrected p-value is reported when sphericity is violated
- Batch fitting keyed by the observed group label, isolated per metric
"""
from __future__ import annotations

from itertools import product
from typing import Any, Dict, List, Optional, Sequence, Union
import warnings

import numpy as np
import pandas as pd
import pingouin as pg

from .exceptions import IncompleteDesign, ModelFitFailure
from .prepare import ALPHA, TidyTable, is_stacked


# =============================================================================
# RMAnovaResult (dict)
# =============================================================================

RMAnovaResult = Dict[str, Any]

TERM_COLUMNS = [
    "term", "F", "df1", "df2", "p_unc", "p_gg", "p_value",
    "np2", "eps", "mauchly_w", "mauchly_p", "sphericity_corrected",
]


def create_rm_anova_result(
    key: Any,
    table: Optional[pd.DataFrame] = None,
    dv: str = "",
    within: Optional[List[str]] = None,
    subject: str = "",
    n_subjects: int = 0,
    n_obs: int = 0,
    ok: bool = False,
    error: Optional[str] = None,
    error_type: Optional[str] = None,
    model_warnings: Optional[List[str]] = None,
) -> RMAnovaResult:
    """
    Create an RMAnovaResult dictionary.

    :param key: Group key the model was fitted for (metric name or tuple)
    :param table: DataFrame with one row per term (see TERM_COLUMNS)
    :param dv: Dependent variable column
    :param within: Within-subject factors
    :param subject: Participant column
    :param n_subjects: Number of participants
    :param n_obs: Number of observations
    :param ok: Whether the fit succeeded
    :param error: Error message if the fit failed
    :param error_type: Exception class name if the fit failed
    :param model_warnings: Warnings generated while fitting
    :returns: RMAnovaResult dictionary
    """
    table = table if table is not None else pd.DataFrame(columns=TERM_COLUMNS)
    within = list(within or [])
    interaction = table["term"].iloc[-1] if len(table) else None
    p_interaction = float(table["p_value"].iloc[-1]) if len(table) else np.nan
    return {
        "key": key,
        "dv": dv,
        "within": within,
        "subject": subject,
        "table": table,
        "interaction": interaction,
        "p_interaction": p_interaction,
        "n_subjects": n_subjects,
        "n_obs": n_obs,
        "ok": ok,
        "error": error,
        "error_type": error_type,
        "warnings": model_warnings if model_warnings is not None else [],
    }


def summarize_rm_anova_result(result: RMAnovaResult) -> str:
    """
    Generate a summary string for an RM-ANOVA result.

    :param result: RMAnovaResult dictionary
    :returns: Human-readable summary string
    """
    lines = [f"RM-ANOVA Result: {result['key']}"]
    if not result["ok"]:
        lines.append(f"  FAILED ({result['error_type']}): {result['error']}")
        return "\n".join(lines)
    lines.append(f"  Within: {' x '.join(result['within'])}")
    lines.append(f"  N subjects: {result['n_subjects']}  N observations: {result['n_obs']}")
    for _, row in result["table"].iterrows():
        flag = " (GG)" if row["sphericity_corrected"] else ""
        lines.append(
            f"  {row['term']:<28} F({row['df1']:.0f}, {row['df2']:.0f}) = {row['F']:.3f}  "
            f"p = {row['p_value']:.4f}{flag}  np2 = {row['np2']:.3f}"
        )
    if result["warnings"]:
        lines.append(f"  Warnings: {len(result['warnings'])}")
    return "\n".join(lines)


def get_term(result: RMAnovaResult, term: str) -> Optional[Dict[str, Any]]:
    """Return one term row as a dict, or None if absent."""
    table = result["table"]
    rows = table[table["term"] == term]
    if rows.empty:
        return None
    return rows.iloc[0].to_dict()


def is_significant(result: RMAnovaResult, alpha: float = ALPHA) -> bool:
    """True if the highest-order term (interaction) of a successful fit is significant."""
    if not result["ok"]:
        return False
    p = result["p_interaction"]
    return bool(not np.isnan(p) and p < alpha)


# =============================================================================
# Design Checks
# =============================================================================

def _factor_levels(series: pd.Series) -> List[Any]:
    """Declared levels for categoricals, observed levels otherwise."""
    if isinstance(series.dtype, pd.CategoricalDtype):
        return list(series.cat.categories)
    return list(pd.unique(series.dropna()))


def check_complete_design(
    df: pd.DataFrame,
    dv: str,
    within: Sequence[str],
    subject: str,
    key: Any = None,
    subjects: Optional[Sequence[Any]] = None,
) -> None:
    """
    Require one non-missing observation per participant and within cell.

    Declared-but-unobserved levels count as missing cells. When ``subjects``
    is given (e.g. every participant of the whole table), a participant with
    no rows at all in ``df`` counts as missing every cell.

    :raises IncompleteDesign: If any participant x cell is absent or missing
    :raises ModelFitFailure: If a participant x cell appears more than once
    """
    within = list(within)
    counts = df.dropna(subset=[dv]).groupby([subject] + within, observed=True).size()
    duplicated = counts[counts > 1]
    if not duplicated.empty:
        raise ModelFitFailure(
            key, f"{len(duplicated)} participant x cell combinations have repeated observations"
        )

    if subjects is None:
        subjects = pd.unique(df[subject])
    subjects = list(subjects)
    cells = list(product(*[_factor_levels(df[f]) for f in within]))
    present = set(counts.index.tolist())
    missing = []
    for s in subjects:
        for cell in cells:
            idx = (s,) + cell
            if idx not in present:
                missing.append(idx)
    if missing:
        raise IncompleteDesign(key, missing)


# =============================================================================
# Model Fitting
# =============================================================================

def _sphericity(
    data: pd.DataFrame,
    dv: str,
    factors: List[str],
    subject: str,
    alpha: float = ALPHA,
) -> tuple:
    """Mauchly's test via pingouin; returns (spher, W, pval)."""
    # SpherResults namedtuple: (spher, W, chi2, dof, pval)
    within = factors[0] if len(factors) == 1 else factors
    spher, w, _, _, pval = pg.sphericity(data=data, dv=dv, within=within, subject=subject, alpha=alpha)
    return bool(spher), float(w), float(pval)


def _term_table(
    aov: pd.DataFrame,
    data: pd.DataFrame,
    dv: str,
    subject: str,
    alpha: float,
    model_warnings: List[str],
) -> pd.DataFrame:
    """
    Convert pingouin's ANOVA table to one row per term (TERM_COLUMNS).

    pingouin < 0.6 names columns "p-unc" / "p-GG-corr", later releases
    "p_unc" / "p_GG_corr"; both are read after normalising to underscores.
    """
    aov = aov.rename(columns=lambda c: str(c).replace("-", "_"))
    has_gg = "p_GG_corr" in aov.columns
    has_eps = "eps" in aov.columns

    rows = []
    for _, row in aov.iterrows():
        term = str(row["Source"])
        factors = [f.strip() for f in term.split("*")]
        df1 = float(row["ddof1"])
        p_unc = float(row["p_unc"])
        p_gg = float(row["p_GG_corr"]) if has_gg else np.nan
        w = p_spher = np.nan
        corrected = False

        if df1 > 1:
            try:
                spher, w, p_spher = _sphericity(data, dv, factors, subject, alpha=alpha)
            except (ValueError, np.linalg.LinAlgError) as e:
                spher = False
                model_warnings.append(f"Sphericity test unavailable for '{term}' ({e}); applying GG correction")
            if not spher:
                if np.isnan(p_gg):
                    model_warnings.append(f"No GG-corrected p-value for '{term}'; reporting uncorrected")
                else:
                    corrected = True

        rows.append({
            "term": term,
            "F": float(row["F"]),
            "df1": df1,
            "df2": float(row["ddof2"]),
            "p_unc": p_unc,
            "p_gg": p_gg,
            "p_value": p_gg if corrected else p_unc,
            "np2": float(row["np2"]),
            "eps": float(row["eps"]) if has_eps else np.nan,
            "mauchly_w": w,
            "mauchly_p": p_spher,
            "sphericity_corrected": corrected,
        })
    return pd.DataFrame(rows, columns=TERM_COLUMNS)


def fit_rm_anova(
    df: pd.DataFrame,
    dv: str,
    within: Union[str, Sequence[str]],
    subject: str,
    key: Any = None,
    alpha: float = ALPHA,
    subjects: Optional[Sequence[Any]] = None,
) -> RMAnovaResult:
    """
    Fit a one- or two-way repeated-measures ANOVA to one metric's data.

    :param df: Long DataFrame for a single metric
    :param dv: Dependent variable column (e.g. "Measurement")
    :param within: Within-subject factor(s), e.g. ["Condition", "Timepoint"]
    :param subject: Participant column
    :param key: Label for messages and the result (default: dv)
    :param alpha: Significance level of Mauchly's test
    :param subjects: Participants expected in ``df`` (default: those present)
    :returns: RMAnovaResult dictionary
    :raises IncompleteDesign: If the design is unbalanced
    :raises ModelFitFailure: If pingouin fails or returns no usable statistic

    Note:
        The reported ``p_value`` of a term is the Greenhouse-Geisser
        corrected one whenever Mauchly's test rejects sphericity, and the
        uncorrected one otherwise. Terms with one numerator df always satisfy
        sphericity.

    Example:
        >>> part = stacked[stacked["Molecule"] == "GPX"]
        >>> result = fit_rm_anova(part, "Measurement", ["Condition", "Timepoint"], "Participant")
        >>> print(summarize_rm_anova_result(result))
    """
    within = [within] if isinstance(within, str) else list(within)
    key = dv if key is None else key
    model_warnings: List[str] = []

    missing_cols = [c for c in [dv, subject] + within if c not in df.columns]
    if missing_cols:
        raise ValueError(f"Columns not found in data: {missing_cols}")
    if len(within) not in (1, 2):
        raise ValueError(f"Only one- and two-way within designs are supported, got {within}")

    check_complete_design(df, dv, within, subject, key=key, subjects=subjects)

    # Plain strings avoid pivots over unobserved categories inside pingouin
    data = df[[subject] + within + [dv]].copy()
    for col in [subject] + within:
        data[col] = data[col].astype(str)
    data[dv] = data[dv].astype(float)

    try:
        aov = pg.rm_anova(
            data=data,
            dv=dv,
            within=within[0] if len(within) == 1 else within,
            subject=subject,
            correction=True,
            detailed=False,
            effsize="np2",
        )
        table = _term_table(aov, data, dv, subject, alpha, model_warnings)
    except Exception as e:
        raise ModelFitFailure(key, f"{type(e).__name__}: {e}", cause=e) from e

    if table.empty or table["F"].isna().all():
        raise ModelFitFailure(key, "no finite F statistic (zero residual variance?)")
    for term in table.loc[table["F"].isna(), "term"]:
        model_warnings.append(f"F statistic for '{term}' is undefined")

    return create_rm_anova_result(
        key=key,
        table=table,
        dv=dv,
        within=within,
        subject=subject,
        n_subjects=data[subject].nunique(),
        n_obs=len(data),
        ok=True,
        model_warnings=model_warnings,
    )


# =============================================================================
# Batch Fitting
# =============================================================================

def _normalize_group_by(group_by: Union[str, Sequence[str]]) -> List[str]:
    return [group_by] if isinstance(group_by, str) else list(group_by)


def iter_partitions(df: pd.DataFrame, group_by: Union[str, Sequence[str]]):
    """
    Yield (key, partition) pairs in encounter order.

    Keys are scalars for a single grouping column and tuples otherwise.
    """
    cols = _normalize_group_by(group_by)
    for key, part in df.groupby(cols, sort=False, observed=True):
        if isinstance(key, tuple) and len(cols) == 1:
            key = key[0]
        yield key, part


def fit_grouped(
    df: pd.DataFrame,
    dv: str,
    within: Union[str, Sequence[str]],
    subject: str,
    group_by: Union[str, Sequence[str]],
    alpha: float = ALPHA,
    verbose: bool = False,
) -> Dict[Any, RMAnovaResult]:
    """
    Fit an RM-ANOVA independently to every partition of ``df``.

    A failed partition (IncompleteDesign or ModelFitFailure) is recorded with
    ``ok=False`` and a warning naming the metric; the other partitions are
    unaffected.

    Every partition is checked against the participants of the whole
    ``df``, so a participant with no rows for one metric fails that metric.

    :param df: Stacked long DataFrame
    :param dv: Dependent variable column
    :param within: Within-subject factor(s)
    :param subject: Participant column
    :param group_by: Grouping column(s), e.g. "Molecule" or ["Metric", "Limb"]
    :param alpha: Significance level of Mauchly's test
    :param verbose: Print a summary per partition
    :returns: Dict mapping group key -> RMAnovaResult, in encounter order
    """
    subjects = list(pd.unique(df[subject].dropna()))
    results: Dict[Any, RMAnovaResult] = {}
    for key, part in iter_partitions(df, group_by):
        try:
            results[key] = fit_rm_anova(
                part, dv, within, subject, key=key, alpha=alpha, subjects=subjects,
            )
        except (IncompleteDesign, ModelFitFailure) as e:
            warnings.warn(f"Failed to fit model for {key}: {e}")
            results[key] = create_rm_anova_result(
                key=key,
                dv=dv,
                within=[within] if isinstance(within, str) else list(within),
                subject=subject,
                n_subjects=part[subject].nunique(),
                n_obs=len(part),
                ok=False,
                error=str(e),
                error_type=type(e).__name__,
            )
        if verbose:
            print(summarize_rm_anova_result(results[key]))
    return results


def fit_all_metrics(
    table: TidyTable,
    within: Optional[Sequence[str]] = None,
    group_by: Optional[Sequence[str]] = None,
    alpha: float = ALPHA,
    verbose: bool = False,
) -> Dict[Any, RMAnovaResult]:
    """
    Fit an RM-ANOVA for every metric of a stacked TidyTable.

    :param table: Stacked TidyTable
    :param within: Within-subject factors (default: all table factors not in group_by)
    :param group_by: Grouping columns (default: [metric_var])
    :param alpha: Significance level of Mauchly's test
    :param verbose: Print a summary per metric
    :returns: Dict mapping metric (or (metric, ...) tuple) -> RMAnovaResult
    """
    if not is_stacked(table):
        raise ValueError(f"Table '{table['domain']}' must be stacked before fitting")
    group_by = list(group_by) if group_by is not None else [table["metric_var"]]
    if within is None:
        within = [f for f in table["factors"] if f not in group_by]
    return fit_grouped(
        table["data"],
        dv=table["value_var"],
        within=list(within),
        subject=table["id_var"],
        group_by=group_by,
        alpha=alpha,
        verbose=verbose,
    )


def successful_fits(results: Dict[Any, RMAnovaResult]) -> Dict[Any, RMAnovaResult]:
    """Subset of results whose fit succeeded."""
    return {k: r for k, r in results.items() if r["ok"]}


def failed_fits(results: Dict[Any, RMAnovaResult]) -> Dict[Any, RMAnovaResult]:
    """Subset of results whose fit failed."""
    return {k: r for k, r in results.items() if not r["ok"]}
