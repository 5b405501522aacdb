import logging
from typing import Any, Dict, Mapping, Optional, Sequence

try:
    from .allocation import allocate_budgets, combine_with_metadata
    from .choice_parser import find_stop_marker
    from .config import ElectionConfig
    from .copeland import CopelandTabulator
    from .models import Ballot, ElectionDataError, Option
    from .normalization import normalize_ballots
    from .results import ElectionResults, assemble_results, build_match_table
except ImportError:
    from analysis.allocation import allocate_budgets, combine_with_metadata
    from analysis.choice_parser import find_stop_marker
    from analysis.config import ElectionConfig
    from analysis.copeland import CopelandTabulator
    from analysis.models import Ballot, ElectionDataError, Option
    from analysis.normalization import normalize_ballots
    from analysis.results import ElectionResults, assemble_results, build_match_table

logger = logging.getLogger(__name__)


def run_election(
    options: Sequence[Option],
    ballots: Optional[Sequence[Ballot]],
    config: Optional[ElectionConfig] = None,
    proposal: Optional[Dict[str, Any]] = None,
    provider_metadata: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> ElectionResults:
    """
    Tally the ballots and allocate the program budget.

    Args:
        options: Canonical option list with budget metadata
        ballots: Ballots to tally (an empty list is a valid, vote-less election)
        config: Election configuration (defaults used when omitted)
        proposal: Optional proposal metadata carried into the results
        provider_metadata: Optional provider table re-pricing the ranked
            options before allocation

    Returns:
        ElectionResults

    Raises:
        ElectionDataError: If options or ballots are missing
    """
    config = config or ElectionConfig()
    if not options:
        raise ElectionDataError("No options supplied")
    if ballots is None:
        raise ElectionDataError("No ballots supplied")

    logger.info(f"Running election: {len(options)} options, {len(ballots)} ballots")

    if config.normalize_ballots:
        ballots = normalize_ballots(ballots, options)

    tabulator = CopelandTabulator(options, config.point_weights)
    ranking = tabulator.run_tabulation(ballots)
    matches = build_match_table(tabulator.matrix, options)
    if provider_metadata is not None:
        ranking = combine_with_metadata(ranking, provider_metadata)

    stop_marker = find_stop_marker(options)
    allocations, summary = allocate_budgets(
        ranking,
        config.total_budget,
        config,
        stop_marker_id=stop_marker.id if stop_marker is not None else None,
    )

    return assemble_results(
        ranking=ranking,
        matches=matches,
        allocations=allocations,
        summary=summary,
        program_info=config.to_dict(),
        proposal=proposal,
    )
