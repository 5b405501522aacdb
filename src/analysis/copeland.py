import logging
from collections import defaultdict
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

try:
    from .choice_parser import find_stop_marker, is_same_provider
    from .models import (
        TIE,
        Ballot,
        ElectionDataError,
        HeadToHeadMatch,
        Option,
        PairwiseResult,
        RankedOption,
    )
except ImportError:
    from analysis.choice_parser import find_stop_marker, is_same_provider
    from analysis.models import (
        TIE,
        Ballot,
        ElectionDataError,
        HeadToHeadMatch,
        Option,
        PairwiseResult,
        RankedOption,
    )

logger = logging.getLogger(__name__)

DEFAULT_POINTS = {"win": 1.0, "tie": 0.5, "loss": 0.0}


class PairwiseMatrix:
    """
    Weighted head-to-head tallies keyed by option id.

    ``votes(i, j)`` is the weight of ballots preferring option i over j;
    ``participation(i, j)`` is the weight of ballots counted for the pair and
    is symmetric. Option ids map to array rows through a private arena so
    callers never depend on list positions.
    """

    def __init__(self, options: Sequence[Option]):
        self.options: List[Option] = list(options)
        self._index: Dict[int, int] = {o.id: idx for idx, o in enumerate(self.options)}
        size = len(self.options)
        self._votes = np.zeros((size, size), dtype=float)
        self._participation = np.zeros((size, size), dtype=float)
        self._supporters: Dict[Tuple[int, int], List[Tuple[str, float]]] = defaultdict(list)

    def __contains__(self, option_id: int) -> bool:
        return option_id in self._index

    def __len__(self) -> int:
        return len(self.options)

    def record(self, winner_id: int, loser_id: int, weight: float, voter: Optional[str] = None):
        """Add one ballot's weight to ``winner_id`` in its match against ``loser_id``."""
        w, l = self._index[winner_id], self._index[loser_id]
        self._votes[w, l] += weight
        self._participation[w, l] += weight
        self._participation[l, w] += weight
        if voter is not None:
            self._supporters[(winner_id, loser_id)].append((voter, weight))

    def votes(self, option_id: int, against_id: int) -> float:
        return float(self._votes[self._index[option_id], self._index[against_id]])

    def participation(self, option_id: int, against_id: int) -> float:
        return float(self._participation[self._index[option_id], self._index[against_id]])

    def supporters(self, option_id: int, against_id: int) -> List[Tuple[str, float]]:
        """Voters whose ballots gave ``option_id`` the win over ``against_id``."""
        return sorted(
            self._supporters.get((option_id, against_id), []),
            key=lambda entry: entry[1],
            reverse=True,
        )

    def result(self, option_id: int, against_id: int) -> PairwiseResult:
        votes_a = self.votes(option_id, against_id)
        votes_b = self.votes(against_id, option_id)
        if votes_a > votes_b:
            winner = option_id
        elif votes_b > votes_a:
            winner = against_id
        else:
            winner = TIE

        option_a = self.options[self._index[option_id]]
        option_b = self.options[self._index[against_id]]
        return PairwiseResult(
            option_a_id=option_id,
            option_b_id=against_id,
            votes_a=votes_a,
            votes_b=votes_b,
            total_participating=self.participation(option_id, against_id),
            winner=winner,
            is_internal=is_same_provider(option_a.label, option_b.label),
        )

    def pairs(self) -> Iterator[Tuple[Option, Option]]:
        """Unordered option pairs in canonical order."""
        for i, option_a in enumerate(self.options):
            for option_b in self.options[i + 1 :]:
                yield option_a, option_b

    def results(self) -> List[PairwiseResult]:
        return [self.result(a.id, b.id) for a, b in self.pairs()]

    def matches(self, options: Optional[Sequence[Option]] = None) -> List[HeadToHeadMatch]:
        """
        Every head-to-head match with its supporters, most contested first.

        Args:
            options: Options to attach to each side (defaults to the tallied ones)
        """
        by_id = {o.id: o for o in (options or self.options)}
        matches = [
            HeadToHeadMatch(
                result=result,
                option_a=by_id[result.option_a_id],
                option_b=by_id[result.option_b_id],
                voters_a=self.supporters(result.option_a_id, result.option_b_id),
                voters_b=self.supporters(result.option_b_id, result.option_a_id),
            )
            for result in self.results()
        ]
        return sorted(matches, key=lambda m: m.result.total_participating, reverse=True)

    def to_frame(self) -> pd.DataFrame:
        """Square DataFrame of pairwise votes, rows beating columns."""
        ids = [o.id for o in self.options]
        return pd.DataFrame(self._votes.copy(), index=ids, columns=ids)


def _sanitize_ranking(
    ballot: Ballot, known_ids: Mapping[int, Option], ballot_index: int
) -> Optional[List[int]]:
    ranking = ballot.ranked_option_ids
    if not isinstance(ranking, (list, tuple)):
        logger.warning(
            f"Ballot #{ballot_index} from {ballot.voter} is not a ranked list. Skipping."
        )
        return None

    cleaned = []
    seen = set()
    for option_id in ranking:
        if isinstance(option_id, bool) or not isinstance(option_id, (int, np.integer)):
            logger.warning(
                f"Ballot #{ballot_index} from {ballot.voter}: ignoring non-integer choice {option_id!r}"
            )
            continue
        option_id = int(option_id)
        if option_id not in known_ids:
            logger.warning(
                f"Ballot #{ballot_index} from {ballot.voter}: ignoring unknown option {option_id}"
            )
            continue
        if option_id in seen:
            logger.warning(
                f"Ballot #{ballot_index} from {ballot.voter}: ignoring repeated option {option_id}"
            )
            continue
        seen.add(option_id)
        cleaned.append(option_id)
    return cleaned


def tally_pairwise(
    ballots: Sequence[Ballot], options: Sequence[Option], track_voters: bool = False
) -> PairwiseMatrix:
    """
    Build the weighted pairwise matrix from all ballots.

    Every option listed on a ballot is ranked. When the cutoff marker is
    ranked, options placed after it are treated as rejected by that voter:
    two options both past the cutoff are not compared, and an option past the
    cutoff never beats an option missing from the ballot.

    Args:
        ballots: Ballots to tally
        options: Canonical option list
        track_voters: Record which voters supported each side of every match

    Returns:
        PairwiseMatrix
    """
    if not options:
        raise ElectionDataError("No options supplied")

    matrix = PairwiseMatrix(options)
    known_ids = {o.id: o for o in options}
    stop_marker = find_stop_marker(options)
    skipped = 0

    for ballot_index, ballot in enumerate(ballots):
        ranking = _sanitize_ranking(ballot, known_ids, ballot_index)
        if ranking is None:
            skipped += 1
            continue

        weight = 1.0 if ballot.weight is None else float(ballot.weight)
        voter = ballot.voter if track_voters else None
        positions = {option_id: pos for pos, option_id in enumerate(ranking)}
        stop_pos = positions.get(stop_marker.id) if stop_marker is not None else None

        for option_a, option_b in matrix.pairs():
            pos_a = positions.get(option_a.id)
            pos_b = positions.get(option_b.id)

            if pos_a is not None and pos_b is not None:
                if stop_pos is not None and pos_a > stop_pos and pos_b > stop_pos:
                    continue
                if pos_a < pos_b:
                    matrix.record(option_a.id, option_b.id, weight, voter)
                else:
                    matrix.record(option_b.id, option_a.id, weight, voter)
            elif pos_a is not None:
                if stop_pos is None or pos_a <= stop_pos:
                    matrix.record(option_a.id, option_b.id, weight, voter)
            elif pos_b is not None:
                if stop_pos is None or pos_b <= stop_pos:
                    matrix.record(option_b.id, option_a.id, weight, voter)

    logger.info(
        f"Tallied {len(ballots) - skipped} ballots across {len(options)} options "
        f"({skipped} skipped)"
    )
    return matrix


def resolve_ranking(
    matrix: PairwiseMatrix,
    options: Sequence[Option],
    weights: Optional[Mapping[str, float]] = None,
) -> List[RankedOption]:
    """
    Score options by head-to-head record and order them.

    Win/tie/loss points come from ``weights``; a pair nobody voted on scores
    nothing. Average support (votes received per contested match) breaks
    score ties, and the original option order breaks the rest.

    Args:
        matrix: Pairwise tallies
        options: Canonical option list
        weights: {"win", "tie", "loss"} points

    Returns:
        RankedOption list, best first
    """
    points = dict(DEFAULT_POINTS)
    if weights:
        points.update(weights)

    scored = []
    for option in options:
        score = 0.0
        votes_received = 0.0
        contested = 0

        for other in options:
            if other.id == option.id:
                continue
            votes_for = matrix.votes(option.id, other.id)
            votes_against = matrix.votes(other.id, option.id)

            if votes_for > votes_against:
                score += points["win"]
            elif votes_for < votes_against:
                score += points["loss"]
            elif votes_for > 0:
                score += points["tie"]

            votes_received += votes_for
            if matrix.participation(option.id, other.id) > 0:
                contested += 1

        average_support = votes_received / contested if contested > 0 else 0.0
        scored.append((option, score, average_support))

    # sorted() is stable, so equal keys keep the canonical option order
    scored = sorted(scored, key=lambda entry: (-entry[1], -entry[2]))

    return [
        RankedOption(option=option, score=score, average_support=support, rank=rank)
        for rank, (option, score, support) in enumerate(scored, 1)
    ]


class CopelandTabulator:
    """
    Copeland pairwise tabulation engine.
    Scores every option by its head-to-head record against all others.
    """

    def __init__(self, options: Sequence[Option], weights: Optional[Mapping[str, float]] = None):
        """
        Initialize Copeland tabulator.

        Args:
            options: Canonical option list
            weights: Win/tie/loss points (defaults 1 / 0.5 / 0)
        """
        if not options:
            raise ElectionDataError("No options supplied")
        self.options = list(options)
        self.weights = dict(DEFAULT_POINTS)
        if weights:
            self.weights.update(weights)
        self.matrix: Optional[PairwiseMatrix] = None
        self.ranking: List[RankedOption] = []

    def run_tabulation(self, ballots: Sequence[Ballot], track_voters: bool = True) -> List[RankedOption]:
        """
        Run the complete pairwise tabulation.

        Returns:
            Ranked options, best first
        """
        logger.info(f"Starting Copeland tabulation of {len(ballots)} ballots")
        self.matrix = tally_pairwise(ballots, self.options, track_voters=track_voters)
        self.ranking = resolve_ranking(self.matrix, self.options, self.weights)

        for entry in self.ranking:
            logger.info(
                f"{entry.rank}. {entry.option.label}: score {entry.score:g}, "
                f"average support {entry.average_support:.2f}"
            )
        return self.ranking

    def _require_results(self):
        if self.matrix is None:
            raise RuntimeError("Must run tabulation first")

    def get_ranking_summary(self) -> pd.DataFrame:
        """
        Get the ranking as a DataFrame.

        Returns:
            DataFrame with rank, option and score columns
        """
        if not self.ranking:
            return pd.DataFrame()

        return pd.DataFrame(
            [
                {
                    "rank": entry.rank,
                    "option_id": entry.option.id,
                    "label": entry.option.label,
                    "provider_name": entry.option.provider_name,
                    "budget_tier": entry.option.budget_tier.value,
                    "score": entry.score,
                    "average_support": entry.average_support,
                    "is_stop_marker": entry.option.is_stop_marker,
                }
                for entry in self.ranking
            ]
        )

    def get_head_to_head_matches(self) -> List[HeadToHeadMatch]:
        """Get every match with its supporters, most contested first."""
        self._require_results()
        return self.matrix.matches()

    def get_match_summary(self) -> pd.DataFrame:
        """Get every head-to-head result as a DataFrame, most contested first."""
        self._require_results()
        labels = {o.id: o.label for o in self.options}
        rows = []
        for result in self.matrix.results():
            rows.append(
                {
                    "option_a_id": result.option_a_id,
                    "option_a": labels[result.option_a_id],
                    "option_b_id": result.option_b_id,
                    "option_b": labels[result.option_b_id],
                    "votes_a": result.votes_a,
                    "votes_b": result.votes_b,
                    "total_votes": result.total_participating,
                    "winner": labels.get(result.winner, TIE),
                    "is_internal": result.is_internal,
                }
            )
        frame = pd.DataFrame(rows)
        if frame.empty:
            return frame
        return frame.sort_values("total_votes", ascending=False, kind="stable").reset_index(
            drop=True
        )
