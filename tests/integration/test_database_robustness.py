"""
Database Integration Robustness Tests

These tests verify that the ElectionDatabase layer handles edge cases,
error conditions and awkward option labels properly when the option and
ballot tables are read back for tallying.
"""

import os
import tempfile
import time

import pytest

from analysis.choice_parser import build_options
from analysis.models import Ballot
from data.ballot_parser import BallotParser, read_ballots, read_options
from data.database import ElectionDatabase

AWKWARD_LABELS = [
    "Normal provider",
    "Provider with 'Quotes' - basic",
    "Provider with 'Quotes' - ext",
    "Provider; with; semicolons",
    "Provider with émojis 😊",
    "None below",
]


@pytest.mark.integration
class TestDatabaseRobustness:
    """Test database integration robustness and error handling."""

    def setup_method(self):
        """Set up a database file holding awkward labels and ballots."""
        fd, self.db_path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        os.unlink(self.db_path)  # Remove empty file for DuckDB

        self.ballots = [
            Ballot(f"0x{i:03x}", float(i + 1), [(i % 5) + 1, ((i + 2) % 5) + 1, 6])
            for i in range(40)
        ]
        with BallotParser(self.db_path) as parser:
            parser.store_options(build_options(AWKWARD_LABELS, {}))
            parser.store_ballots(self.ballots)

        self.db = ElectionDatabase(self.db_path, read_only=True)

    def teardown_method(self):
        """Clean up test fixtures."""
        self.db.close()
        for path in (self.db_path, self.db_path + ".wal"):
            if os.path.exists(path):
                os.unlink(path)

    def test_sequential_read_reliability(self):
        """Test that sequential reads return the same counts every time."""
        option_counts = []
        ballot_counts = []
        for _ in range(10):
            option_counts.append(self.db.query("SELECT COUNT(*) as count FROM options").iloc[0]["count"])
            ballot_counts.append(self.db.query("SELECT COUNT(*) as count FROM ballots").iloc[0]["count"])

        assert len(set(option_counts)) == 1, f"Inconsistent option counts: {set(option_counts)}"
        assert len(set(ballot_counts)) == 1, f"Inconsistent ballot counts: {set(ballot_counts)}"
        assert option_counts[0] == len(AWKWARD_LABELS)
        assert ballot_counts[0] == len(self.ballots)

    def test_query_error_handling(self):
        """Test that malformed queries raise instead of returning partial data."""
        error_queries = [
            "SELECT * FROM nonexistent_table",
            "SELECT invalid_column FROM options",
            "SELECT * FROM options WHERE",
            "SELECT COUNT(*) as count FROM options GROUP BY invalid_col",
        ]

        for query in error_queries:
            with pytest.raises(Exception):
                self.db.query(query)

    def test_special_character_round_trip(self):
        """Test that awkward labels survive storage and map back to the same ids."""
        options = read_options(self.db)

        assert [o.label for o in options] == AWKWARD_LABELS
        assert options[1].provider_name == options[2].provider_name == "Provider with 'Quotes'"
        assert options[-1].is_stop_marker

    def test_parameterized_label_lookup(self):
        """Test that quoted labels are safe to pass as query parameters."""
        result = self.db.query(
            "SELECT option_id FROM options WHERE label = ?", ["Provider with 'Quotes' - ext"]
        )
        assert list(result["option_id"]) == [3]

    def test_ballots_round_trip(self):
        """Test that ballots read back in their stored order and weights."""
        assert read_ballots(self.db) == self.ballots

    def test_long_table_matches_ballots(self):
        """Test that every ranked position is present in the long table."""
        result = self.db.query(
            """
            SELECT b.voter, COUNT(l.option_id) as ranked
            FROM ballots b
            LEFT JOIN ballots_long l ON b.ballot_id = l.ballot_id
            GROUP BY b.voter
            """
        )
        assert set(result["ranked"]) == {3}

    def test_connection_recovery(self):
        """Test that data is consistent after reopening the database."""
        initial = self.db.query("SELECT COUNT(*) as count FROM ballots_long").iloc[0]["count"]

        self.db.close()
        self.db = ElectionDatabase(self.db_path, read_only=True)

        recovered = self.db.query("SELECT COUNT(*) as count FROM ballots_long").iloc[0]["count"]
        assert recovered == initial, "Data should be consistent after reconnection"

    def test_read_consistency_under_load(self):
        """Test that repeated reads through the retrying path stay consistent."""
        counts = []
        for i in range(30):
            result = self.db.query_with_retry("SELECT COUNT(*) as count FROM ballots_long")
            counts.append(result.iloc[0]["count"])
            if i % 10 == 0:
                time.sleep(0.01)

        assert len(set(counts)) == 1, f"Inconsistent read counts: {set(counts)}"
        assert counts[0] == 3 * len(self.ballots)
