"""
Redox Study Analysis Module
===========================

Per-domain configuration and the two-stage workflow of the redox study.

Each measurement domain (enzymes, strength, NIRS, ...) is declared once in
``study.config`` with:
- Its column range and column-name schema
- Ordered factor levels and labels
- The analysis to run on its tidy table

Usage:
    from study import tidy_all, run_all, DOMAINS

    # Stage 1: wide spreadsheet -> bundle of tidy tables
    bundle = tidy_all(wide)

    # Stage 2: statistics from the bundle
    results = run_all(bundle)
"""

from .config import DOMAINS, DomainConfig, get_domain, list_domains, labels_for, domain_columns
from .runner import (
    create_domain_result,
    tidy_domain,
    tidy_all,
    run_domain,
    run_all,
    summarize_results,
)

__all__ = [
    "DOMAINS",
    "DomainConfig",
    "get_domain",
    "list_domains",
    "labels_for",
    "domain_columns",
    "create_domain_result",
    "tidy_domain",
    "tidy_all",
    "run_domain",
    "run_all",
    "summarize_results",
]
