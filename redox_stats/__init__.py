"""
Redox Stats - Statistical Analysis Package for the Redox Study
==============================================================

Tidying and inference engine for the eccentric-exercise redox study: one wide
spreadsheet (one row per participant) is split into per-domain tidy tables,
which are then analysed with repeated-measures ANOVA, post-hoc contrasts or
paired tests.

Architecture Note:
    This package uses dictionaries (TypedDicts) instead of classes for data
    structures. All data containers are plain Python dicts with documented
    keys.

Architecture:
- exceptions: Error taxonomy (schema, categories, design, fitting)
- prepare: Column-schema reshaping, recoding, stacking, table bundle
- descriptive: Summary statistics, normality and missingness checks
- rmanova: Repeated-measures ANOVA per metric with sphericity correction
- posthoc: Pairwise cell contrasts, Sidak adjustment and Hedges' g
- paired: Two-level paired t-test / Wilcoxon comparisons
- report: Summary tables and CSV export

Usage:
    from redox_stats import read_wide_table, prepare_domain, fit_all_metrics, run_posthoc
    from study.config import get_domain

    wide = read_wide_table("/path/to/redox_wide.csv")
    table = prepare_domain(wide, get_domain("enzymes"))
    fits = fit_all_metrics(table)
    contrasts = run_posthoc(table["data"], fits, group_by="Molecule")
"""
from __future__ import annotations

__version__ = "0.1.0"

# Exceptions
from .exceptions import (
    RedoxStatsError,
    SchemaMismatch,
    UnmappedCategory,
    IncompleteDesign,
    ModelFitFailure,
)

# Data preparation - TypedDict and helper functions
from .prepare import (
    ALPHA,
    DEFAULT_ID_VAR,
    DEFAULT_VALUE_VAR,
    DEFAULT_SEP,
    TidyTable,
    TidyBundle,
    read_wide_table,
    validate_wide_table,
    column_range,
    split_column_name,
    reshape_wide_to_long,
    recode_factor,
    recode_factors,
    stack_metrics,
    unstack_metrics,
    create_tidy_table,
    validate_table,
    is_stacked,
    stack_table,
    unstack_table,
    get_n_subjects,
    get_n_observations,
    subset_table,
    describe_table,
    pivot_to_wide,
    check_design_balance,
    select_columns,
    prepare_domain,
    # Bundle
    create_tidy_bundle,
    get_table,
    save_bundle,
    load_bundle,
)

# Descriptive statistics
from .descriptive import (
    summarize_metrics,
    check_normality,
    check_paired_normality,
    suggest_paired_tests,
    missingness_report,
    print_missingness_summary,
    describe_demographics,
)

# Repeated-measures ANOVA
from .rmanova import (
    RMAnovaResult,
    create_rm_anova_result,
    summarize_rm_anova_result,
    get_term,
    is_significant,
    check_complete_design,
    fit_rm_anova,
    iter_partitions,
    fit_grouped,
    fit_all_metrics,
    successful_fits,
    failed_fits,
)

# Post-hoc comparisons
from .posthoc import (
    hedges_j,
    hedges_j_approx,
    hedges_g,
    significance_stars,
    residual_sd,
    adjust_pvalues,
    pairwise_contrasts,
    significant_contrasts,
    run_posthoc,
    combine_contrasts,
)

# Paired comparisons
from .paired import (
    PairedResult,
    TEST_POLICIES,
    create_paired_result,
    rank_biserial,
    cohens_dz,
    fit_paired,
    fit_all_paired,
    fit_all_paired_table,
)

# Reporting
from .report import (
    format_p,
    anova_table,
    contrast_table,
    paired_table,
    results_summary,
    export_to_csv,
    print_results_summary,
)

__all__ = [
    # Version
    "__version__",

    # Exceptions
    "RedoxStatsError",
    "SchemaMismatch",
    "UnmappedCategory",
    "IncompleteDesign",
    "ModelFitFailure",

    # Prepare - TypedDict and functions
    "ALPHA",
    "DEFAULT_ID_VAR",
    "DEFAULT_VALUE_VAR",
    "DEFAULT_SEP",
    "TidyTable",
    "TidyBundle",
    "read_wide_table",
    "validate_wide_table",
    "column_range",
    "split_column_name",
    "reshape_wide_to_long",
    "recode_factor",
    "recode_factors",
    "stack_metrics",
    "unstack_metrics",
    "create_tidy_table",
    "validate_table",
    "is_stacked",
    "stack_table",
    "unstack_table",
    "get_n_subjects",
    "get_n_observations",
    "subset_table",
    "describe_table",
    "pivot_to_wide",
    "check_design_balance",
    "select_columns",
    "prepare_domain",
    # Bundle
    "create_tidy_bundle",
    "get_table",
    "save_bundle",
    "load_bundle",

    # Descriptive
    "summarize_metrics",
    "check_normality",
    "check_paired_normality",
    "suggest_paired_tests",
    "missingness_report",
    "print_missingness_summary",
    "describe_demographics",

    # RM-ANOVA - dict and functions
    "RMAnovaResult",
    "create_rm_anova_result",
    "summarize_rm_anova_result",
    "get_term",
    "is_significant",
    "check_complete_design",
    "fit_rm_anova",
    "iter_partitions",
    "fit_grouped",
    "fit_all_metrics",
    "successful_fits",
    "failed_fits",

    # Post-hoc
    "hedges_j",
    "hedges_j_approx",
    "hedges_g",
    "significance_stars",
    "residual_sd",
    "adjust_pvalues",
    "pairwise_contrasts",
    "significant_contrasts",
    "run_posthoc",
    "combine_contrasts",

    # Paired - dict and functions
    "PairedResult",
    "TEST_POLICIES",
    "create_paired_result",
    "rank_biserial",
    "cohens_dz",
    "fit_paired",
    "fit_all_paired",
    "fit_all_paired_table",

    # Reporting
    "format_p",
    "anova_table",
    "contrast_table",
    "paired_table",
    "results_summary",
    "export_to_csv",
    "print_results_summary",
]
