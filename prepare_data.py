#!/usr/bin/env python3
"""
Prepare Tidy Tables
===================

Stage 1 entry point: reads the wide study spreadsheet, builds one tidy table
per measurement domain and saves them as a single bundle file.

Usage:
    python prepare_data.py                         # All domains
    python prepare_data.py enzymes strength        # Selected domains
    python prepare_data.py --describe              # Print domain descriptions

Environment:
    REDOX_WIDE_TABLE: Path to the wide spreadsheet (optional)
    REDOX_BUNDLE_PATH: Path of the bundle file to write (optional)
"""
import os
import sys
import argparse

from redox_stats import read_wide_table, save_bundle, print_missingness_summary
from study import tidy_all, DOMAINS


def main():
    parser = argparse.ArgumentParser(
        description="Prepare tidy tables for the redox study",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python prepare_data.py                     # Prepare all domains
    python prepare_data.py enzymes nirs        # Prepare selected domains
    python prepare_data.py --describe enzymes  # Show a domain description
        """,
    )
    parser.add_argument(
        "domains",
        nargs="*",
        choices=list(DOMAINS.keys()),
        help="Specific domains to prepare (default: all)",
    )
    parser.add_argument(
        "--describe",
        action="store_true",
        help="Print domain descriptions instead of running",
    )
    parser.add_argument(
        "--input",
        default=os.getenv("REDOX_WIDE_TABLE", "data/redox_wide.csv"),
        help="Path to the wide spreadsheet (';' or ',' delimited)",
    )
    parser.add_argument(
        "--output",
        default=os.getenv("REDOX_BUNDLE_PATH", "data/redox_tidy.pkl"),
        help="Path of the bundle file to write",
    )
    parser.add_argument(
        "--id-col",
        default="Participant",
        help="Participant identifier column",
    )
    parser.add_argument(
        "--decimal",
        default=".",
        help="Decimal mark of numeric fields",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Minimal output",
    )

    args = parser.parse_args()
    domains = args.domains or list(DOMAINS.keys())

    if args.describe:
        for name in domains:
            config = DOMAINS[name]
            print("=" * 70)
            print(f"{name}: {config['analysis']}")
            print("=" * 70)
            print(config.get("description", "No description available"))
            print()
        return 0

    print("=" * 70)
    print("REDOX STUDY DATA PREPARATION")
    print("=" * 70)
    print(f"Input: {args.input}")

    wide = read_wide_table(args.input, id_col=args.id_col, decimal=args.decimal)
    print(f"Loaded {len(wide)} participants, {wide.shape[1] - 1} columns\n")

    bundle = tidy_all(wide, domains=domains, id_col=args.id_col, verbose=not args.quiet)

    print("\n" + "=" * 70)
    print("MISSINGNESS")
    print("=" * 70)
    for name, table in bundle.items():
        if table["factors"]:
            print_missingness_summary(table)

    output_dir = os.path.dirname(args.output)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
    save_bundle(bundle, args.output)

    print("\n" + "=" * 70)
    print(f"SAVED {len(bundle)} tables to {args.output}")
    print("=" * 70)

    return 0


if __name__ == "__main__":
    sys.exit(main())
