#!/usr/bin/env python3
"""
Run the pairwise tally and budget allocation on processed election data.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# Add src to path so we can import our modules
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from analysis.config import AllocationStrategy, ElectionConfig  # noqa: E402
from analysis.pipeline import run_election  # noqa: E402
from analysis.results import (  # noqa: E402
    allocation_frame,
    generate_allocation_report,
    match_frame,
)
from data.ballot_parser import read_ballots, read_options  # noqa: E402
from data.database import ElectionDatabase  # noqa: E402

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Run SPP tally and allocation")
    parser.add_argument("--db", help="Path to DuckDB database file with processed data")
    parser.add_argument(
        "--strategy",
        choices=[s.value for s in AllocationStrategy],
        help="Allocation strategy (default: standard, or SPP_ALLOCATION_STRATEGY)",
    )
    parser.add_argument("--budget", type=float, help="Total program budget")
    parser.add_argument(
        "--rank-threshold",
        type=int,
        help="Highest rank eligible for the two-year stream (eligibility_ranked only)",
    )
    parser.add_argument(
        "--no-normalize", action="store_true", help="Keep ballots exactly as cast"
    )
    parser.add_argument(
        "--providers",
        help="JSON file of provider budgets ({provider: {basic_amount, extended_amount, "
        "long_stream_eligible}}) overriding the stored amounts",
    )
    parser.add_argument("--export", help="Export allocation to CSV file")
    parser.add_argument("--export-matches", help="Export head-to-head matches to CSV file")
    parser.add_argument("--json", help="Write full results as JSON")

    args = parser.parse_args()

    if not args.db or not Path(args.db).exists():
        logger.error(
            "Database file required and must exist. Run process_data.py first."
        )
        sys.exit(1)

    try:
        config = ElectionConfig.from_env().with_overrides(
            allocation_strategy=args.strategy,
            total_budget=args.budget,
            long_stream_rank_threshold=args.rank_threshold,
            normalize_ballots=False if args.no_normalize else None,
        )
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    provider_metadata = None
    if args.providers:
        if not Path(args.providers).exists():
            logger.error(f"Provider file not found: {args.providers}")
            sys.exit(1)
        with open(args.providers) as f:
            provider_metadata = json.load(f)
        logger.info(f"Loaded budgets for {len(provider_metadata)} providers from {args.providers}")

    try:
        with ElectionDatabase(args.db) as db:
            # Check that required tables exist
            required_tables = ["options", "ballots", "ballots_long"]
            for table in required_tables:
                if not db.table_exists(table):
                    logger.error(
                        f"Required table '{table}' not found. Run process_data.py first."
                    )
                    sys.exit(1)

            logger.info(f"=== SPP Allocation ({config.allocation_strategy.value}) ===")
            results = run_election(
                read_options(db),
                read_ballots(db),
                config,
                provider_metadata=provider_metadata,
            )

        print()
        print(generate_allocation_report(results))

        if args.export:
            allocation_frame(results).to_csv(args.export, index=False)
            print(f"\n✓ Allocation exported to {args.export}")
        if args.export_matches:
            match_frame(results).to_csv(args.export_matches, index=False)
            print(f"✓ Matches exported to {args.export_matches}")
        if args.json:
            with open(args.json, "w") as f:
                json.dump(results.to_dict(), f, indent=2)
            print(f"✓ Results written to {args.json}")

    except Exception as e:
        logger.error(f"Error running allocation: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
