#!/usr/bin/env python3
"""
Data processing pipeline for SPP election exports.
Loads the option table and ballots into a DuckDB database.
"""

import argparse
import logging
import sys
from pathlib import Path

# Add src to path so we can import our modules
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from data.ballot_parser import BallotParser  # noqa: E402

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Process SPP election data")
    parser.add_argument("choices_file", help="Path to choices CSV file")
    parser.add_argument("votes_file", help="Path to votes CSV or Snapshot JSON export")
    parser.add_argument(
        "--db", help="Path to DuckDB database file (default: in-memory)"
    )

    args = parser.parse_args()

    for path in (Path(args.choices_file), Path(args.votes_file)):
        if not path.exists():
            logger.error(f"File not found: {path}")
            sys.exit(1)

    try:
        with BallotParser(args.db) as ballot_parser:
            # Step 1: Load options
            logger.info("=== Step 1: Loading Choices ===")
            option_stats = ballot_parser.load_choices_file(args.choices_file)
            print(
                f"✓ Loaded {option_stats['total_options']} options "
                f"from {option_stats['providers']} providers"
            )
            if option_stats["stop_markers"] == 0:
                print("⚠️  Warning: no 'None below' cutoff option found")

            print("\nOptions:")
            for option in ballot_parser.get_options():
                eligible = " [2-year eligible]" if option.is_long_stream_eligible else ""
                print(
                    f"  {option.id:2d}: {option.label:30s} "
                    f"{option.budget_amount:>12,.0f}{eligible}"
                )

            # Step 2: Load ballots
            logger.info("=== Step 2: Loading Ballots ===")
            if args.votes_file.lower().endswith(".json"):
                ballot_stats = ballot_parser.load_snapshot_file(args.votes_file)
            else:
                ballot_stats = ballot_parser.load_votes_file(args.votes_file)
            print(f"\n✓ Stored {ballot_stats['total_ballots']} ballots")
            print(f"✓ Created {ballot_stats['total_vote_records']} vote records")

            # Step 3: Ballot completion patterns
            completion = ballot_parser.get_ballot_completion_stats()
            print("\nBallot Completion Patterns:")
            for _, row in completion.iterrows():
                print(
                    f"  {row['ranks_used']} ranks: {row['ballot_count']:5d} ballots ({row['percentage']:5.1f}%)"
                )

            print("✓ Data processing completed successfully")

    except Exception as e:
        logger.error(f"Error processing data: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
