"""
Study Runner
============

Generic execution engine for both stages of the redox study.

Stage 1 (tidying) turns the wide spreadsheet into a bundle of named tidy
tables and is fail-fast: any schema or category error aborts the run.

Stage 2 (statistics) consumes the bundle by table name:
1. Look up the domain configuration and its table
2. Fit the configured analysis (RM-ANOVA, paired tests or descriptives)
3. Run post-hoc contrasts where the interaction is significant
4. Return a structured result with summary tables

A domain whose analysis cannot run is returned as a skipped result so the
remaining domains still get analysed.
"""

from typing import Dict, Any, Optional, List
import warnings

import numpy as np
import pandas as pd

from .config import DOMAINS, DomainConfig, get_domain

from redox_stats import (
    ALPHA,
    DEFAULT_ID_VAR,
    TidyBundle,
    TidyTable,
    prepare_domain,
    create_tidy_bundle,
    get_table,
    summarize_metrics,
    describe_demographics,
    fit_all_metrics,
    run_posthoc,
    significant_contrasts,
    fit_all_paired_table,
    anova_table,
    contrast_table,
    paired_table,
    print_results_summary,
)


# -----------------------------------------------------------------------------
# DomainResult (dictionary-based, no classes)
# -----------------------------------------------------------------------------

DomainResult = Dict[str, Any]


def create_domain_result(
    domain: str,
    config: DomainConfig,
    fits: Optional[Dict[Any, Dict[str, Any]]] = None,
    contrasts: Optional[Dict[Any, pd.DataFrame]] = None,
    significant: Optional[pd.DataFrame] = None,
    tables: Optional[Dict[str, pd.DataFrame]] = None,
    note: str = "",
    skipped: bool = False,
    skip_reason: str = "",
) -> DomainResult:
    """Create a DomainResult dictionary."""
    return {
        "domain": domain,
        "config": config,
        "analysis": config.get("analysis"),
        "key_names": list(config.get("group_by", [])),
        "fits": fits if fits is not None else {},
        "contrasts": contrasts if contrasts is not None else {},
        "significant_contrasts": significant if significant is not None else pd.DataFrame(),
        "tables": tables if tables is not None else {},
        "note": note,
        "skipped": skipped,
        "skip_reason": skip_reason,
    }


# -----------------------------------------------------------------------------
# Stage 1: tidying
# -----------------------------------------------------------------------------

def tidy_domain(
    wide: pd.DataFrame,
    name: str,
    id_col: str = DEFAULT_ID_VAR,
    verbose: bool = False,
) -> TidyTable:
    """
    Prepare the tidy table of one domain.

    Raises on schema or category errors; imbalance only warns.
    """
    return prepare_domain(wide, get_domain(name), id_col=id_col, stack=True, verbose=verbose)


def tidy_all(
    wide: pd.DataFrame,
    domains: Optional[List[str]] = None,
    id_col: str = DEFAULT_ID_VAR,
    verbose: bool = True,
) -> TidyBundle:
    """
    Prepare every (or the selected) domain table and bundle them.

    Args:
        wide: Wide spreadsheet, one row per participant
        domains: Domain names to prepare (default: all)
        id_col: Participant identifier column
        verbose: Print one description per table

    Returns:
        Read-only bundle mapping domain name to TidyTable
    """
    domains = domains or list(DOMAINS.keys())

    if verbose:
        print("=" * 70)
        print(f"TIDYING ({len(domains)} domains)")
        print("=" * 70)

    tables = {}
    for name in domains:
        if verbose:
            print(f"\n[{name}]")
        tables[name] = tidy_domain(wide, name, id_col=id_col, verbose=verbose)
    return create_tidy_bundle(tables)


# -----------------------------------------------------------------------------
# Stage 2: statistics
# -----------------------------------------------------------------------------

def _run_rm_anova(
    table: TidyTable,
    config: DomainConfig,
    alpha: float,
    method: str,
    exact_j: bool,
    verbose: bool,
) -> DomainResult:
    key_names = list(config["group_by"])
    fits = fit_all_metrics(
        table, within=config["within"], group_by=key_names, alpha=alpha, verbose=verbose,
    )
    contrasts = run_posthoc(
        table["data"], fits, group_by=key_names, method=method, alpha=alpha, exact_j=exact_j,
    )
    all_contrasts = contrast_table(contrasts, key_names)
    significant = significant_contrasts(all_contrasts, alpha=alpha, by=key_names)

    n_failed = sum(1 for r in fits.values() if not r["ok"])
    note = f"{n_failed} of {len(fits)} fits failed" if n_failed else ""
    return create_domain_result(
        domain=table["domain"],
        config=config,
        fits=fits,
        contrasts=contrasts,
        significant=significant,
        tables={
            "descriptives": summarize_metrics(table),
            "anova": anova_table(fits, key_names),
            "contrasts": all_contrasts,
            "significant_contrasts": significant,
        },
        note=note,
    )


def _run_paired(
    table: TidyTable,
    config: DomainConfig,
    verbose: bool,
) -> DomainResult:
    key_names = list(config["group_by"])
    fits = fit_all_paired_table(
        table,
        tests=config.get("paired_tests"),
        factor=config["within"][0],
        group_by=key_names,
        verbose=verbose,
    )
    n_failed = sum(1 for r in fits.values() if not r["ok"])
    note = f"{n_failed} of {len(fits)} tests failed" if n_failed else ""
    return create_domain_result(
        domain=table["domain"],
        config=config,
        fits=fits,
        tables={
            "descriptives": summarize_metrics(table),
            "paired": paired_table(fits, key_names),
        },
        note=note,
    )


def run_domain(
    bundle: TidyBundle,
    name: str,
    alpha: float = ALPHA,
    method: str = "sidak",
    exact_j: bool = True,
    verbose: bool = True,
) -> DomainResult:
    """
    Run the configured analysis of a single domain.

    Args:
        bundle: Bundle of tidy tables from tidy_all / load_bundle
        name: Domain name (bundle key and DOMAINS key)
        alpha: Significance level
        method: Post-hoc multiplicity correction ("sidak" or "bonferroni")
        exact_j: Use the exact Hedges' J (False = approximation)
        verbose: Print progress messages

    Returns:
        DomainResult dict with fits, contrasts and summary tables
    """
    config = dict(get_domain(name))  # Copy to keep DOMAINS untouched

    if verbose:
        print(f"\n[{name}] {config.get('analysis')}")

    analysis = config.get("analysis")
    try:
        table = get_table(bundle, name)
        if analysis == "rm_anova":
            result = _run_rm_anova(table, config, alpha, method, exact_j, verbose)
        elif analysis == "paired":
            result = _run_paired(table, config, verbose)
        elif analysis == "descriptive":
            result = create_domain_result(
                domain=name,
                config=config,
                tables={"demographics": describe_demographics(table)},
            )
        else:
            result = create_domain_result(
                domain=name,
                config=config,
                skipped=True,
                skip_reason=f"Unknown analysis type: {analysis}",
            )
    except ValueError as e:
        warnings.warn(f"[{name}] analysis skipped: {e}")
        result = create_domain_result(
            domain=name,
            config=config,
            skipped=True,
            skip_reason=f"{type(e).__name__}: {e}",
        )

    if verbose:
        if result["skipped"]:
            print(f"  SKIPPED: {result['skip_reason']}")
        elif result["note"]:
            print(f"  WARNING: {result['note']}")
        if not result["skipped"] and analysis in ("rm_anova", "paired"):
            print_results_summary(result)
        elif not result["skipped"]:
            print(result["tables"]["demographics"].to_string(index=False))

    return result


def run_all(
    bundle: TidyBundle,
    domains: Optional[List[str]] = None,
    alpha: float = ALPHA,
    method: str = "sidak",
    exact_j: bool = True,
    verbose: bool = True,
) -> Dict[str, DomainResult]:
    """
    Run all (or selected) domain analyses.

    Domains are analysed one after another; a failing domain is returned
    as skipped and does not stop the others.

    Returns:
        Dictionary mapping domain name to DomainResult dict
    """
    domains = domains or [name for name in DOMAINS if name in bundle]

    if verbose:
        print("=" * 70)
        print(f"STATISTICS ({len(domains)} domains)")
        print("=" * 70)

    results = {}
    for name in domains:
        results[name] = run_domain(
            bundle, name, alpha=alpha, method=method, exact_j=exact_j, verbose=verbose,
        )
    return results


def _count_significant(result: DomainResult, alpha: float) -> float:
    if result["analysis"] == "rm_anova":
        return sum(
            1 for r in result["fits"].values()
            if r["ok"] and not np.isnan(r["p_interaction"]) and r["p_interaction"] < alpha
        )
    if result["analysis"] == "paired":
        return sum(
            1 for r in result["fits"].values()
            if r["ok"] and not np.isnan(r["p_value"]) and r["p_value"] < alpha
        )
    return np.nan


def summarize_results(
    results: Dict[str, DomainResult],
    alpha: float = ALPHA,
) -> pd.DataFrame:
    """
    Create a summary table of all domain results.

    Returns:
        DataFrame with one row per domain
    """
    rows = []
    for name, result in results.items():
        skipped = result.get("skipped", False)
        fits = result["fits"]
        n_ok = sum(1 for r in fits.values() if r["ok"])
        rows.append({
            "Domain": name,
            "Analysis": result["analysis"],
            "Models": len(fits) if not skipped else None,
            "OK": n_ok if not skipped else None,
            "Failed": len(fits) - n_ok if not skipped else None,
            "Significant": _count_significant(result, alpha) if not skipped else None,
            "Significant contrasts": len(result["significant_contrasts"]) if not skipped else None,
            "Status": "Skipped" if skipped else ("Partial" if n_ok < len(fits) else "OK"),
            "Note": result.get("skip_reason", "") if skipped else result.get("note", ""),
        })
    return pd.DataFrame(rows)
