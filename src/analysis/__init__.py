"""
Analysis module for Service Provider Program elections.

This module provides the pairwise ranked-choice tally and the budget allocator:
- CopelandTabulator: head-to-head tally and ranking
- allocate_budgets: two-stream budget allocation over a ranking
- run_election: the full normalize -> tally -> rank -> allocate pipeline
"""

from .allocation import allocate_budgets
from .config import AllocationStrategy, ElectionConfig
from .copeland import CopelandTabulator, PairwiseMatrix
from .models import Ballot, ElectionDataError, Option
from .pipeline import run_election
from .results import ElectionResults, generate_allocation_report

__all__ = [
    "CopelandTabulator",
    "PairwiseMatrix",
    "allocate_budgets",
    "run_election",
    "ElectionConfig",
    "AllocationStrategy",
    "ElectionResults",
    "generate_allocation_report",
    "Option",
    "Ballot",
    "ElectionDataError",
]
