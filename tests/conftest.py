"""
Shared pytest configuration and fixtures for spp-allocation-analyzer.

This module provides common test fixtures and utilities used across
all test modules.
"""

import os
import sys
import tempfile
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from analysis.choice_parser import build_options  # noqa: E402
from analysis.models import Ballot  # noqa: E402
from data.database import ElectionDatabase  # noqa: E402

SAMPLE_LABELS = [
    "sp a",
    "sp b - basic",
    "sp b - ext",
    "sp c - basic",
    "sp c - ext",
    "None below",
    "sp d",
]

SAMPLE_METADATA = {
    "sp a": {"basic_amount": 400_000, "extended_amount": 0, "long_stream_eligible": False},
    "sp b": {"basic_amount": 400_000, "extended_amount": 700_000, "long_stream_eligible": True},
    "sp c": {"basic_amount": 300_000, "extended_amount": 500_000, "long_stream_eligible": True},
    "sp d": {"basic_amount": 250_000, "extended_amount": 0, "long_stream_eligible": False},
}


@pytest.fixture
def temp_db():
    """Provide a temporary in-memory database for testing."""
    db = ElectionDatabase(":memory:")
    yield db
    db.close()


@pytest.fixture
def temp_db_file():
    """Provide a temporary database file path for testing."""
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    os.unlink(db_path)  # Let DuckDB create the file

    try:
        yield db_path
    finally:
        for path in (db_path, db_path + ".wal"):
            if os.path.exists(path):
                os.unlink(path)


@pytest.fixture
def sample_options():
    """Provide a small option list with a cutoff marker and budget data."""
    return build_options(SAMPLE_LABELS, SAMPLE_METADATA)


@pytest.fixture
def sample_ballots():
    """Provide sample ballots over the sample options (ids are 1-based)."""
    return [
        # sp b basic first, then sp a, cutoff before sp d
        Ballot(voter="0xaaa", weight=100.0, ranked_option_ids=[2, 1, 4, 6, 7]),
        # extended before basic; normalization swaps 3 and 2
        Ballot(voter="0xbbb", weight=60.0, ranked_option_ids=[3, 2, 1, 6]),
        Ballot(voter="0xccc", weight=40.0, ranked_option_ids=[4, 5, 2, 6, 1]),
        Ballot(voter="0xddd", weight=25.0, ranked_option_ids=[1, 7]),
    ]


@pytest.fixture
def choices_csv(tmp_path):
    """Write a choices CSV in the Choice/Name/Basic/Extended layout."""
    path = tmp_path / "choices.csv"
    path.write_text(
        "Choice,Name,Basic budget,Extended budget,2 year eligible\n"
        '1,sp a,"400,000",,FALSE\n'
        '2,sp b - basic,"400,000","700,000",TRUE\n'
        '3,sp b - ext,"400,000","700,000",TRUE\n'
        '4,sp c - basic,"300,000","500,000",yes\n'
        '5,sp c - ext,"300,000","500,000",yes\n'
        "6,None below,,,\n"
        '7,sp d,"250,000",,no\n'
    )
    return path


@pytest.fixture
def votes_csv(tmp_path):
    """Write a votes CSV matching the sample ballots."""
    path = tmp_path / "votes.csv"
    path.write_text(
        "Name,Votes,Choice 1,Choice 2,Choice 3,Choice 4,Choice 5\n"
        "0xaaa,100,sp b - basic,sp a,sp c - basic,None below,sp d\n"
        "0xbbb,60,sp b - ext,sp b - basic,sp a,None below,\n"
        "0xccc,40,sp c - basic,sp c - ext,sp b - basic,None below,sp a\n"
        "0xddd,25,sp a,sp d,,,\n"
    )
    return path


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (medium speed, database required)",
    )
    config.addinivalue_line(
        "markers",
        "golden: marks tests as golden dataset validation (hand-computed expectations)",
    )
    config.addinivalue_line(
        "markers", "invariant: marks tests as mathematical invariant validation"
    )
    config.addinivalue_line(
        "markers", "smoke: marks tests as smoke tests (basic functionality check)"
    )
    config.addinivalue_line(
        "markers", "critical: marks end-to-end tests that guard allocation correctness"
    )
    config.addinivalue_line("markers", "slow: marks tests as slow (larger generated elections)")
