"""
Critical path integration tests for allocation correctness.

These tests drive a generated election from CSV exports through the
database, the pairwise tally and the budget allocator. Failure of any test
in this module means published allocation results cannot be trusted.
"""

import random
import time

import numpy as np
import pandas as pd
import pytest

from analysis.allocation import PAST_CUTOFF
from analysis.config import AllocationStrategy, ElectionConfig
from analysis.models import Ballot, StreamDuration
from analysis.pipeline import run_election
from analysis.results import generate_allocation_report
from data.ballot_parser import BallotParser, read_ballots, read_options, read_provider_metadata
from data.database import ElectionDatabase

PROVIDERS = 10
VOTERS = 300


def write_generated_election(tmp_path, providers=PROVIDERS, voters=VOTERS, seed=42):
    """Write choices and votes CSVs for a seeded random election."""
    rng = np.random.default_rng(seed)

    rows = []
    for index in range(providers):
        name = f"provider {index:02d}"
        basic = int(rng.integers(10, 80)) * 10_000
        extended = basic + int(rng.integers(5, 40)) * 10_000 if index % 3 != 2 else None
        eligible = "TRUE" if index % 2 == 0 else "FALSE"
        labels = [f"{name} - basic", f"{name} - ext"] if extended else [name]
        for label in labels:
            rows.append(
                {
                    "Name": label,
                    "Basic budget": basic,
                    "Extended budget": extended if extended else "",
                    "2 year eligible": eligible,
                }
            )
        if index == providers // 2:
            rows.append({"Name": "None below", "Basic budget": "", "Extended budget": "", "2 year eligible": ""})

    choices = pd.DataFrame(rows)
    choices.insert(0, "Choice", range(1, len(choices) + 1))
    choices_path = tmp_path / "choices.csv"
    choices.to_csv(choices_path, index=False)

    labels = list(choices["Name"])
    votes = []
    for voter in range(voters):
        ranks_used = int(rng.integers(1, len(labels) + 1))
        ranking = [labels[i] for i in rng.permutation(len(labels))[:ranks_used]]
        record = {"Name": f"0x{voter:04x}", "Votes": int(rng.integers(1, 1000))}
        for position in range(len(labels)):
            record[f"Choice {position + 1}"] = ranking[position] if position < ranks_used else ""
        votes.append(record)

    votes_path = tmp_path / "votes.csv"
    pd.DataFrame(votes).to_csv(votes_path, index=False)
    return choices_path, votes_path


@pytest.mark.integration
@pytest.mark.critical
class TestCriticalPaths:
    """Critical path tests that must pass before results are published."""

    @pytest.fixture
    def election_db(self, tmp_path):
        """Database file holding a generated election."""
        choices_path, votes_path = write_generated_election(tmp_path)
        db_path = str(tmp_path / "election.db")
        with BallotParser(db_path) as parser:
            parser.load_choices_file(str(choices_path))
            parser.load_votes_file(str(votes_path))
        return db_path

    @pytest.fixture
    def election_data(self, election_db):
        db = ElectionDatabase(election_db, read_only=True)
        try:
            yield read_options(db), read_ballots(db)
        finally:
            db.close()

    def test_complete_pipeline(self, election_db):
        """CRITICAL: Stored exports tally into a complete ranking and allocation."""
        db = ElectionDatabase(election_db, read_only=True)
        options = read_options(db)
        ballots = read_ballots(db)
        metadata = read_provider_metadata(db)
        db.close()

        assert len(ballots) == VOTERS
        assert len(metadata) == PROVIDERS
        assert sum(o.is_stop_marker for o in options) == 1

        results = run_election(options, ballots, ElectionConfig(total_budget=4_500_000))

        assert len(results.ranking) == len(options)
        assert [entry.rank for entry in results.ranking] == list(range(1, len(options) + 1))
        assert len(results.matches) == len(options) * (len(options) - 1) // 2
        assert len(results.allocations) == len(options)

    @pytest.mark.parametrize("strategy", list(AllocationStrategy))
    @pytest.mark.parametrize("total_budget", [0, 1_000_000, 4_500_000, 50_000_000])
    def test_budget_conservation(self, election_data, strategy, total_budget):
        """CRITICAL: Funded plus remaining money always equals the voted budget."""
        options, ballots = election_data
        config = ElectionConfig(total_budget=total_budget, allocation_strategy=strategy)
        summary = run_election(options, ballots, config).summary

        assert summary.total_allocated + summary.unspent_budget == pytest.approx(total_budget)
        assert summary.remaining_long_budget >= -1e-6
        assert summary.remaining_short_budget >= -1e-6
        assert summary.adjusted_long_budget + summary.adjusted_short_budget == pytest.approx(
            total_budget
        )

    def test_stream_spending_within_limits(self, election_data):
        """CRITICAL: Neither stream pays out more than it holds."""
        options, ballots = election_data
        results = run_election(options, ballots, ElectionConfig(total_budget=4_500_000))
        summary = results.summary

        long_spent = sum(
            a.allocated_amount
            for a in results.allocations
            if a.stream_duration == StreamDuration.LONG
        )
        short_spent = sum(
            a.allocated_amount
            for a in results.allocations
            if a.stream_duration == StreamDuration.SHORT
        )
        assert long_spent <= summary.adjusted_long_budget + 1e-6
        assert short_spent <= summary.adjusted_short_budget + 1e-6
        for allocation in results.allocations:
            if allocation.stream_duration == StreamDuration.LONG:
                assert allocation.option.is_long_stream_eligible

    def test_cutoff_is_final(self, election_data):
        """CRITICAL: Nothing ranked at or below the cutoff marker is funded."""
        options, ballots = election_data
        results = run_election(options, ballots, ElectionConfig(total_budget=50_000_000))

        reasons = [a.rejection_reason for a in results.allocations]
        marker_index = next(
            i for i, a in enumerate(results.allocations) if a.option.is_stop_marker
        )
        assert all(r == PAST_CUTOFF for r in reasons[marker_index:])
        assert PAST_CUTOFF not in reasons[:marker_index]
        # with a budget this large everything above the cutoff is funded
        assert all(a.allocated for a in results.allocations[:marker_index])

    def test_scores_account_for_every_contested_pair(self, election_data):
        """CRITICAL: Default points hand out exactly one point per contested pair."""
        options, ballots = election_data
        results = run_election(options, ballots)

        contested = sum(1 for m in results.matches if m.result.total_participating > 0)
        assert sum(entry.score for entry in results.ranking) == pytest.approx(contested)

        for match in results.matches:
            result = match.result
            assert result.votes_a + result.votes_b == pytest.approx(result.total_participating)

    def test_ranking_is_deterministic(self, election_data):
        """CRITICAL: Ballot order never changes the outcome."""
        options, ballots = election_data
        first = run_election(options, ballots)

        shuffled = list(ballots)
        random.Random(7).shuffle(shuffled)
        second = run_election(options, shuffled)

        assert [e.option.id for e in first.ranking] == [e.option.id for e in second.ranking]
        assert first.summary == second.summary
        assert run_election(options, ballots).to_dict() == first.to_dict()

    def test_eligibility_ranked_limits_long_stream(self, election_data):
        """CRITICAL: Only top-ranked eligible options draw on the long stream."""
        options, ballots = election_data
        config = ElectionConfig(
            total_budget=4_500_000,
            allocation_strategy=AllocationStrategy.ELIGIBILITY_RANKED,
            long_stream_rank_threshold=3,
        )
        results = run_election(options, ballots, config)

        for allocation in results.allocations:
            if allocation.stream_duration == StreamDuration.LONG:
                assert allocation.rank <= 3

    def test_report_lists_funded_options(self, election_data):
        options, ballots = election_data
        results = run_election(options, ballots, ElectionConfig(total_budget=4_500_000))
        report = generate_allocation_report(results)

        assert "SERVICE PROVIDER PROGRAM ALLOCATION REPORT" in report
        for allocation in results.allocations:
            if allocation.allocated:
                assert allocation.option.label in report

    def test_error_handling_edge_cases(self, election_data):
        """CRITICAL: Degenerate inputs give well-defined results."""
        options, _ = election_data

        results = run_election(options, [], ElectionConfig(total_budget=1_000_000))
        assert all(entry.score == 0 for entry in results.ranking)
        assert [e.option.id for e in results.ranking] == [o.id for o in options]

        garbage = [Ballot("0xbad", 5.0, [999, -1, "x"]), Ballot("0xnone", None, [options[0].id])]
        results = run_election(options, garbage)
        assert results.ranking[0].option.id == options[0].id

    @pytest.mark.slow
    def test_performance_large_election(self, tmp_path):
        """CRITICAL: A large election tallies within acceptable time."""
        choices_path, votes_path = write_generated_election(
            tmp_path, providers=20, voters=2000, seed=3
        )
        with BallotParser() as parser:
            parser.load_choices_file(str(choices_path))
            parser.load_votes_file(str(votes_path))
            options = parser.get_options()
            ballots = parser.get_ballots()

        start_time = time.time()
        run_election(options, ballots)
        elapsed = time.time() - start_time

        assert elapsed < 30.0, f"Election took {elapsed:.2f}s, should be under 30s"
