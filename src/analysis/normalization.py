"""
Ballot normalization.

A voter ranking a provider's extended tier above its basic tier would imply
the cheaper tier is *less* preferred. Allocation treats basic-then-extended
as the natural escalation, so such ballots are rewritten to rank the basic
tier first, in the slot the extended tier held.
"""

import logging
from dataclasses import replace
from typing import Dict, List, Sequence

try:
    from .models import Ballot, BudgetTier, Option
except ImportError:
    from analysis.models import Ballot, BudgetTier, Option

logger = logging.getLogger(__name__)


def _provider_tiers(options: Sequence[Option]) -> Dict[int, tuple]:
    return {
        o.id: (o.provider_name, o.budget_tier)
        for o in options
        if o.budget_tier in (BudgetTier.BASIC, BudgetTier.EXTENDED)
    }


def normalize_ranking(ranking: Sequence[int], options: Sequence[Option]) -> List[int]:
    """
    Reorder a ranking so no provider's basic option follows its extended option.

    Args:
        ranking: Option ids in preference order
        options: Canonical option list

    Returns:
        New list of option ids
    """
    tiers = _provider_tiers(options)
    result = list(ranking)

    # First occurrence of each tier per provider, in ballot order
    basic_ids: Dict[str, int] = {}
    extended_ids: Dict[str, int] = {}
    for option_id in result:
        if option_id not in tiers:
            continue
        provider, tier = tiers[option_id]
        target = basic_ids if tier == BudgetTier.BASIC else extended_ids
        target.setdefault(provider, option_id)

    for provider, extended_id in extended_ids.items():
        basic_id = basic_ids.get(provider)
        if basic_id is None:
            continue
        extended_pos = result.index(extended_id)
        basic_pos = result.index(basic_id)
        if extended_pos < basic_pos:
            result.pop(basic_pos)
            result.insert(extended_pos, basic_id)

    return result


def normalize_ballot(ballot: Ballot, options: Sequence[Option]) -> Ballot:
    """Return a normalized copy of the ballot; the input is never mutated."""
    if not isinstance(ballot.ranked_option_ids, (list, tuple)):
        return ballot

    reordered = normalize_ranking(ballot.ranked_option_ids, options)
    if reordered == list(ballot.ranked_option_ids):
        return ballot

    logger.debug(f"Reordered tiers on ballot from {ballot.voter}")
    return replace(ballot, ranked_option_ids=reordered)


def normalize_ballots(ballots: Sequence[Ballot], options: Sequence[Option]) -> List[Ballot]:
    """Normalize every ballot; malformed ballots pass through for the tally to skip."""
    normalized = [normalize_ballot(b, options) for b in ballots]
    changed = sum(1 for before, after in zip(ballots, normalized) if before is not after)
    logger.info(f"Normalized {len(normalized)} ballots ({changed} reordered)")
    return normalized
