"""
Data structures shared by the tallying and allocation engine.

Every entity is built fresh per election run from caller-supplied options,
ballots and configuration. Options are immutable once loaded.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union


class ElectionDataError(ValueError):
    """Raised when required election data is missing and no result can be produced."""


class BudgetTier(str, Enum):
    BASIC = "basic"
    EXTENDED = "extended"
    NONE = "none"


class StreamDuration(str, Enum):
    LONG = "long"  # two-year stream
    SHORT = "short"  # one-year stream
    NONE = "none"


TIE = "tie"


@dataclass(frozen=True)
class Option:
    """One ballot option; ``id`` is its 1-based position in the option list."""

    id: int
    label: str
    provider_name: str
    budget_tier: BudgetTier
    budget_amount: float = 0.0
    is_long_stream_eligible: bool = False
    is_stop_marker: bool = False


@dataclass(frozen=True)
class Ballot:
    """A voter's ranked preferences; index 0 is the most preferred option id."""

    voter: str
    weight: Optional[float]
    ranked_option_ids: Sequence[int]


@dataclass(frozen=True)
class PairwiseResult:
    """Head-to-head outcome between two options, seen from option ``a``."""

    option_a_id: int
    option_b_id: int
    votes_a: float
    votes_b: float
    total_participating: float
    winner: Union[int, str]  # option id or TIE
    is_internal: bool = False

    def mirrored(self) -> "PairwiseResult":
        return PairwiseResult(
            option_a_id=self.option_b_id,
            option_b_id=self.option_a_id,
            votes_a=self.votes_b,
            votes_b=self.votes_a,
            total_participating=self.total_participating,
            winner=self.winner,
            is_internal=self.is_internal,
        )


@dataclass
class HeadToHeadMatch:
    """A pairwise result enriched with the voters backing each side."""

    result: PairwiseResult
    option_a: Option
    option_b: Option
    voters_a: List[Tuple[str, float]] = field(default_factory=list)
    voters_b: List[Tuple[str, float]] = field(default_factory=list)

    @property
    def winner_label(self) -> str:
        if self.result.winner == self.option_a.id:
            return self.option_a.label
        if self.result.winner == self.option_b.id:
            return self.option_b.label
        return TIE


@dataclass(frozen=True)
class RankedOption:
    option: Option
    score: float
    average_support: float
    rank: int


@dataclass(frozen=True)
class Allocation:
    option: Option
    allocated: bool
    stream_duration: StreamDuration
    allocated_amount: float
    rejection_reason: Optional[str]
    score: float = 0.0
    average_support: float = 0.0
    rank: int = 0


@dataclass(frozen=True)
class AllocationSummary:
    """Aggregate budget figures, always derived from a final allocation set."""

    voted_budget: float
    long_stream_budget: float
    short_stream_budget: float
    transferred_budget: float
    adjusted_long_budget: float
    adjusted_short_budget: float
    remaining_long_budget: float
    remaining_short_budget: float
    total_allocated: float
    unspent_budget: float
    allocated_count: int
    rejected_count: int
