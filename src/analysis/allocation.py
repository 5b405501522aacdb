"""
Two-stream budget allocation.

The program budget is split into a long (two-year) and a short (one-year)
stream. Options are funded greedily in ranking order until the voters'
cutoff marker is reached. Long-stream capacity that the ranking can no
longer use is moved into the short stream once, as soon as the walk leaves
the long-stream eligibility window.
"""

import logging
from dataclasses import replace
from typing import Any, List, Mapping, Optional, Sequence, Tuple

try:
    from .choice_parser import find_stop_marker
    from .config import AllocationStrategy, ElectionConfig
    from .models import (
        Allocation,
        AllocationSummary,
        BudgetTier,
        RankedOption,
        StreamDuration,
    )
except ImportError:
    from analysis.choice_parser import find_stop_marker
    from analysis.config import AllocationStrategy, ElectionConfig
    from analysis.models import (
        Allocation,
        AllocationSummary,
        BudgetTier,
        RankedOption,
        StreamDuration,
    )

logger = logging.getLogger(__name__)

PAST_CUTOFF = "past cutoff"
INSUFFICIENT_BUDGET = "insufficient budget"
PROGRAM_NOT_RENEWED = "program not renewed"


def combine_with_metadata(
    ranking: Sequence[RankedOption],
    provider_metadata: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> List[RankedOption]:
    """
    Attach budget metadata to ranked options.

    Options already carry the amounts they were built with; passing a
    provider metadata table re-resolves amount and eligibility from it.
    Providers absent from the table get amount 0 and no long-stream
    eligibility.
    """
    if provider_metadata is None:
        return list(ranking)

    combined = []
    for entry in ranking:
        option = entry.option
        if option.is_stop_marker:
            combined.append(entry)
            continue

        metadata = provider_metadata.get(option.provider_name)
        if metadata is None:
            logger.warning(
                f"No budget metadata for provider '{option.provider_name}'; "
                f"'{option.label}' defaults to 0 and not eligible"
            )
            metadata = {}

        amount_key = (
            "extended_amount" if option.budget_tier == BudgetTier.EXTENDED else "basic_amount"
        )
        option = replace(
            option,
            budget_amount=float(metadata.get(amount_key) or 0.0),
            is_long_stream_eligible=bool(metadata.get("long_stream_eligible", False)),
        )
        combined.append(replace(entry, option=option))
    return combined


def split_budget(total_budget: float, config: ElectionConfig) -> Tuple[float, float]:
    """Split the total into (long, short) streams; the two always add up to the total."""
    long_budget = round(total_budget * config.long_stream_ratio, 2)
    return long_budget, total_budget - long_budget


def _is_long_stream_candidate(entry: RankedOption, position: int, config: ElectionConfig) -> bool:
    if not entry.option.is_long_stream_eligible:
        return False
    if config.allocation_strategy == AllocationStrategy.ELIGIBILITY_RANKED:
        return position <= config.long_stream_rank_threshold
    return True


def _cutoff_index(ranking: Sequence[RankedOption], stop_marker_id: Optional[int]) -> int:
    """Ranking index of the cutoff marker, or the ranking length when it is absent."""
    for index, entry in enumerate(ranking):
        if entry.option.id == stop_marker_id:
            return index
    return len(ranking)


def _eligibility_window_end(
    ranking: Sequence[RankedOption], config: ElectionConfig, cutoff_index: int
) -> int:
    """
    Index of the last rank inside the long-stream window, or -1 when no
    option above the cutoff qualifies.

    The ranked strategy's window runs to rank N (or the cutoff, if earlier);
    the standard strategy has no N, so its window ends at the last candidate.
    """
    candidates = [
        index
        for index, entry in enumerate(ranking[:cutoff_index])
        if _is_long_stream_candidate(entry, index + 1, config)
    ]
    if not candidates:
        return -1
    if config.allocation_strategy == AllocationStrategy.ELIGIBILITY_RANKED:
        return min(config.long_stream_rank_threshold, cutoff_index) - 1
    return candidates[-1]


def _allocation(entry: RankedOption, **kwargs) -> Allocation:
    return Allocation(
        option=entry.option,
        score=entry.score,
        average_support=entry.average_support,
        rank=entry.rank,
        **kwargs,
    )


def _rejected(entry: RankedOption, reason: str) -> Allocation:
    return _allocation(
        entry,
        allocated=False,
        stream_duration=StreamDuration.NONE,
        allocated_amount=0.0,
        rejection_reason=reason,
    )


def allocate_budgets(
    ranking: Sequence[RankedOption],
    total_budget: Optional[float] = None,
    config: Optional[ElectionConfig] = None,
    stop_marker_id: Optional[int] = None,
) -> Tuple[List[Allocation], AllocationSummary]:
    """
    Fund ranked options from the long and short budget streams.

    Args:
        ranking: Ranked options, best first
        total_budget: Program budget (defaults to ``config.total_budget``)
        config: Election configuration
        stop_marker_id: Option acting as the cutoff (defaults to the
            lowest-id marker, the one the tally honours)

    Returns:
        Tuple of (allocations in ranking order, summary)
    """
    config = config or ElectionConfig()
    total_budget = config.total_budget if total_budget is None else float(total_budget)
    if total_budget < 0:
        raise ValueError(f"total_budget must be non-negative, got {total_budget}")

    long_budget, short_budget = split_budget(total_budget, config)
    logger.info(
        f"Allocating {total_budget:,.2f} ({config.allocation_strategy.value} strategy): "
        f"long stream {long_budget:,.2f}, short stream {short_budget:,.2f}"
    )

    if total_budget == 0:
        logger.info("Program not renewed; rejecting every option")
        allocations = [_rejected(entry, PROGRAM_NOT_RENEWED) for entry in ranking]
        return allocations, summarize_allocations(allocations, total_budget, long_budget, short_budget, 0.0)

    if stop_marker_id is None:
        marker = find_stop_marker(sorted((e.option for e in ranking), key=lambda o: o.id))
        stop_marker_id = marker.id if marker is not None else None
    cutoff_index = _cutoff_index(ranking, stop_marker_id)
    window_end = _eligibility_window_end(ranking, config, cutoff_index)
    remaining_long = long_budget
    remaining_short = short_budget
    transferred = 0.0
    transfer_done = False
    cutoff_reached = False
    allocations: List[Allocation] = []

    for index, entry in enumerate(ranking):
        option = entry.option

        if cutoff_reached or index == cutoff_index:
            if not cutoff_reached:
                logger.info(f"Cutoff reached at rank {index + 1}: {option.label}")
            cutoff_reached = True
            allocations.append(_rejected(entry, PAST_CUTOFF))
            continue

        if not transfer_done and index > window_end:
            transferred = remaining_long
            remaining_short = round(remaining_short + remaining_long, 2)
            remaining_long = 0.0
            transfer_done = True
            logger.info(f"Transferred {transferred:,.2f} from long to short stream")

        amount = option.budget_amount
        stream = StreamDuration.NONE
        if _is_long_stream_candidate(entry, index + 1, config) and amount <= remaining_long:
            remaining_long = round(remaining_long - amount, 2)
            stream = StreamDuration.LONG
        elif amount <= remaining_short:
            remaining_short = round(remaining_short - amount, 2)
            stream = StreamDuration.SHORT

        if stream == StreamDuration.NONE:
            logger.debug(f"Insufficient budget for {option.label} ({amount:,.2f})")
            allocations.append(_rejected(entry, INSUFFICIENT_BUDGET))
        else:
            logger.debug(f"Funded {option.label} ({amount:,.2f}) from {stream.value} stream")
            allocations.append(
                _allocation(
                    entry,
                    allocated=True,
                    stream_duration=stream,
                    allocated_amount=amount,
                    rejection_reason=None,
                )
            )

    summary = summarize_allocations(allocations, total_budget, long_budget, short_budget, transferred)
    logger.info(
        f"Allocated {summary.total_allocated:,.2f} to {summary.allocated_count} options; "
        f"{summary.rejected_count} rejected, {summary.unspent_budget:,.2f} unspent"
    )
    return allocations, summary


def summarize_allocations(
    allocations: Sequence[Allocation],
    total_budget: float,
    long_budget: float,
    short_budget: float,
    transferred: float,
) -> AllocationSummary:
    """Derive every summary figure from the final allocation set."""
    long_spent = sum(
        a.allocated_amount for a in allocations if a.stream_duration == StreamDuration.LONG
    )
    short_spent = sum(
        a.allocated_amount for a in allocations if a.stream_duration == StreamDuration.SHORT
    )
    adjusted_long = long_budget - transferred
    adjusted_short = short_budget + transferred
    remaining_long = adjusted_long - long_spent
    remaining_short = adjusted_short - short_spent
    total_allocated = long_spent + short_spent
    allocated_count = sum(1 for a in allocations if a.allocated)

    return AllocationSummary(
        voted_budget=total_budget,
        long_stream_budget=long_budget,
        short_stream_budget=short_budget,
        transferred_budget=transferred,
        adjusted_long_budget=adjusted_long,
        adjusted_short_budget=adjusted_short,
        remaining_long_budget=remaining_long,
        remaining_short_budget=remaining_short,
        total_allocated=total_allocated,
        unspent_budget=remaining_long + remaining_short,
        allocated_count=allocated_count,
        rejected_count=len(allocations) - allocated_count,
    )
