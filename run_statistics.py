#!/usr/bin/env python3
"""
Run Statistics
==============

Stage 2 entry point: loads the tidy-table bundle written by prepare_data.py
and runs the configured analysis of every domain.

Usage:
    python run_statistics.py                       # All domains
    python run_statistics.py enzymes cpet          # Selected domains
    python run_statistics.py --output-dir results  # Also export CSV tables

Environment:
    REDOX_BUNDLE_PATH: Path to the bundle file (optional)
"""
import os
import sys
import argparse

from redox_stats import ALPHA, load_bundle, export_to_csv
from study import run_all, summarize_results, DOMAINS


def main():
    parser = argparse.ArgumentParser(
        description="Run the redox study statistics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python run_statistics.py                        # Analyse all domains
    python run_statistics.py enzymes strength       # Analyse selected domains
    python run_statistics.py --method bonferroni    # Bonferroni-adjusted contrasts
        """,
    )
    parser.add_argument(
        "domains",
        nargs="*",
        choices=list(DOMAINS.keys()),
        help="Specific domains to analyse (default: all in the bundle)",
    )
    parser.add_argument(
        "--bundle",
        default=os.getenv("REDOX_BUNDLE_PATH", "data/redox_tidy.pkl"),
        help="Path to the bundle file",
    )
    parser.add_argument(
        "--method",
        default="sidak",
        choices=["sidak", "bonferroni"],
        help="Multiplicity correction of post-hoc contrasts",
    )
    parser.add_argument(
        "--alpha",
        type=float,
        default=ALPHA,
        help="Significance level",
    )
    parser.add_argument(
        "--approx-j",
        action="store_true",
        help="Use the closed-form approximation of Hedges' J",
    )
    parser.add_argument(
        "--output-dir",
        default=None,
        help="Directory for CSV exports (default: no export)",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Minimal output",
    )

    args = parser.parse_args()

    print("=" * 70)
    print("REDOX STUDY STATISTICS")
    print("=" * 70)
    print(f"Bundle: {args.bundle}")

    bundle = load_bundle(args.bundle)
    print(f"Loaded {len(bundle)} tables: {', '.join(bundle.keys())}\n")

    results = run_all(
        bundle,
        domains=args.domains or None,
        alpha=args.alpha,
        method=args.method,
        exact_j=not args.approx_j,
        verbose=not args.quiet,
    )

    print("\n" + "=" * 70)
    print("SUMMARY")
    print("=" * 70)
    summary = summarize_results(results, alpha=args.alpha)
    print(summary.to_string(index=False))

    if args.output_dir:
        written = []
        for name, result in results.items():
            written += export_to_csv(result["tables"], args.output_dir, prefix=f"{name}_")
        written += export_to_csv({"summary": summary}, args.output_dir)
        print(f"\nWrote {len(written)} CSV files to {args.output_dir}")

    print("\n" + "=" * 70)
    print("COMPLETE")
    print("=" * 70)

    return 0


if __name__ == "__main__":
    sys.exit(main())
