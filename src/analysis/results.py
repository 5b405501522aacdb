"""
Result assembly, tabular exports and the plain-text allocation report.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

try:
    from .copeland import PairwiseMatrix
    from .models import (
        TIE,
        Allocation,
        AllocationSummary,
        HeadToHeadMatch,
        Option,
        RankedOption,
    )
except ImportError:
    from analysis.copeland import PairwiseMatrix
    from analysis.models import (
        TIE,
        Allocation,
        AllocationSummary,
        HeadToHeadMatch,
        Option,
        RankedOption,
    )

logger = logging.getLogger(__name__)


def convert_numpy_types(obj: Any) -> Any:
    """Convert numpy types to native Python types for JSON serialization."""
    if isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, dict):
        return {k: convert_numpy_types(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [convert_numpy_types(item) for item in obj]
    else:
        return obj


@dataclass
class ElectionResults:
    """Everything one election run produces."""

    ranking: List[RankedOption]
    matches: List[HeadToHeadMatch]
    allocations: List[Allocation]
    summary: AllocationSummary
    program_info: Dict[str, Any] = field(default_factory=dict)
    proposal: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Plain, JSON-safe representation."""
        data = {
            "ranking": [_ranked_option_dict(entry) for entry in self.ranking],
            "matches": [_match_dict(match) for match in self.matches],
            "allocations": [_allocation_dict(a) for a in self.allocations],
            "summary": _summary_dict(self.summary),
            "program_info": dict(self.program_info),
            "proposal": self.proposal,
        }
        return convert_numpy_types(data)


def _option_dict(option: Option) -> Dict[str, Any]:
    return {
        "option_id": option.id,
        "label": option.label,
        "provider_name": option.provider_name,
        "budget_tier": option.budget_tier.value,
        "budget_amount": option.budget_amount,
        "long_stream_eligible": option.is_long_stream_eligible,
        "is_stop_marker": option.is_stop_marker,
    }


def _ranked_option_dict(entry: RankedOption) -> Dict[str, Any]:
    data = _option_dict(entry.option)
    data.update(rank=entry.rank, score=entry.score, average_support=entry.average_support)
    return data


def _allocation_dict(allocation: Allocation) -> Dict[str, Any]:
    data = _option_dict(allocation.option)
    data.update(
        rank=allocation.rank,
        score=allocation.score,
        average_support=allocation.average_support,
        allocated=allocation.allocated,
        stream_duration=allocation.stream_duration.value,
        allocated_amount=allocation.allocated_amount,
        rejection_reason=allocation.rejection_reason,
    )
    return data


def _summary_dict(summary: AllocationSummary) -> Dict[str, Any]:
    return dict(vars(summary))


def _match_dict(match: HeadToHeadMatch) -> Dict[str, Any]:
    result = match.result
    return {
        "option_a_id": result.option_a_id,
        "option_a": match.option_a.label,
        "option_b_id": result.option_b_id,
        "option_b": match.option_b.label,
        "votes_a": result.votes_a,
        "votes_b": result.votes_b,
        "total_votes": result.total_participating,
        "winner": match.winner_label,
        "is_internal": result.is_internal,
        "voters_a": [{"voter": v, "weight": w} for v, w in match.voters_a],
        "voters_b": [{"voter": v, "weight": w} for v, w in match.voters_b],
    }


def build_match_table(matrix: PairwiseMatrix, options: Sequence[Option]) -> List[HeadToHeadMatch]:
    """
    Build every head-to-head match with its supporters.

    Returns:
        Matches sorted by total participation, most contested first
    """
    matches = matrix.matches(options)
    logger.info(
        f"Built {len(matches)} head-to-head matches "
        f"({sum(1 for m in matches if m.result.is_internal)} between tiers of one provider)"
    )
    return matches


def _oriented(match: HeadToHeadMatch, option_id: int) -> HeadToHeadMatch:
    if match.option_a.id == option_id:
        return match
    return HeadToHeadMatch(
        result=match.result.mirrored(),
        option_a=match.option_b,
        option_b=match.option_a,
        voters_a=match.voters_b,
        voters_b=match.voters_a,
    )


def get_option_head_to_head(matches: Sequence[HeadToHeadMatch], option_id: int) -> Dict[str, Any]:
    """
    Collect one option's matches, always with that option as side "a".

    Args:
        matches: Full match table
        option_id: Option to focus on

    Returns:
        Dictionary with the oriented matches and win/loss/tie counts
    """
    own = [
        _oriented(m, option_id)
        for m in matches
        if option_id in (m.option_a.id, m.option_b.id)
    ]
    own = sorted(own, key=lambda m: m.result.votes_a, reverse=True)

    wins = sum(1 for m in own if m.result.winner == option_id)
    ties = sum(1 for m in own if m.result.winner == TIE)
    return {
        "option_id": option_id,
        "matches": own,
        "wins": wins,
        "losses": len(own) - wins - ties,
        "ties": ties,
    }


def assemble_results(
    ranking: Sequence[RankedOption],
    matches: Sequence[HeadToHeadMatch],
    allocations: Sequence[Allocation],
    summary: AllocationSummary,
    program_info: Optional[Dict[str, Any]] = None,
    proposal: Optional[Dict[str, Any]] = None,
) -> ElectionResults:
    return ElectionResults(
        ranking=list(ranking),
        matches=list(matches),
        allocations=list(allocations),
        summary=summary,
        program_info=dict(program_info or {}),
        proposal=proposal,
    )


def ranking_frame(results: ElectionResults) -> pd.DataFrame:
    return pd.DataFrame([_ranked_option_dict(entry) for entry in results.ranking])


def allocation_frame(results: ElectionResults) -> pd.DataFrame:
    return pd.DataFrame([_allocation_dict(a) for a in results.allocations])


def match_frame(results: ElectionResults) -> pd.DataFrame:
    rows = []
    for match in results.matches:
        row = _match_dict(match)
        row["voters_a"] = len(match.voters_a)
        row["voters_b"] = len(match.voters_b)
        rows.append(row)
    return pd.DataFrame(rows)


def generate_allocation_report(results: ElectionResults, top_matches: int = 10) -> str:
    """
    Generate a human-readable allocation report.

    Args:
        results: Assembled election results
        top_matches: Number of most contested matches to list

    Returns:
        Formatted report string
    """
    summary = results.summary
    report = []
    report.append("=" * 60)
    report.append("SERVICE PROVIDER PROGRAM ALLOCATION REPORT")
    report.append("=" * 60)

    if results.proposal and results.proposal.get("title"):
        report.append(f"Proposal: {results.proposal['title']}")

    report.append("")
    report.append("PROGRAM SUMMARY:")
    report.append(f"Voted budget: {summary.voted_budget:,.2f}")
    report.append(f"Two-year stream: {summary.long_stream_budget:,.2f}")
    report.append(f"One-year stream: {summary.short_stream_budget:,.2f}")
    if summary.transferred_budget > 0:
        report.append(
            f"Transferred {summary.transferred_budget:,.2f} from the two-year to the "
            f"one-year stream (adjusted: {summary.adjusted_long_budget:,.2f} / "
            f"{summary.adjusted_short_budget:,.2f})"
        )
    report.append(f"Total allocated: {summary.total_allocated:,.2f}")
    report.append(f"Unspent: {summary.unspent_budget:,.2f}")
    report.append(
        f"Funded options: {summary.allocated_count}, rejected: {summary.rejected_count}"
    )

    report.append("")
    report.append("RANKING AND FUNDING:")
    for allocation in results.allocations:
        if allocation.allocated:
            status = (
                f"FUNDED {allocation.allocated_amount:,.2f} "
                f"({allocation.stream_duration.value} stream)"
            )
        else:
            status = f"not funded: {allocation.rejection_reason}"
        report.append(
            f"  {allocation.rank:>3}. {allocation.option.label} "
            f"[score {allocation.score:g}] {status}"
        )

    if results.matches:
        report.append("")
        report.append(f"MOST CONTESTED MATCHES (top {top_matches}):")
        for match in results.matches[:top_matches]:
            result = match.result
            internal = " (same provider)" if result.is_internal else ""
            report.append(
                f"  {match.option_a.label} {result.votes_a:g} vs "
                f"{result.votes_b:g} {match.option_b.label}: "
                f"winner {match.winner_label}{internal}"
            )

    return "\n".join(report)
