import json
import logging
import math
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

try:
    from ..analysis.choice_parser import build_options, group_choices_by_provider, parse_choice_name
    from ..analysis.models import Ballot, BudgetTier, Option
    from .database import ElectionDatabase
except ImportError:
    from analysis.choice_parser import build_options, group_choices_by_provider, parse_choice_name
    from analysis.models import Ballot, BudgetTier, Option
    from data.database import ElectionDatabase

logger = logging.getLogger(__name__)

TRUE_VALUES = ("true", "yes", "1", "y")


def _parse_amount(value: Any, context: str = "") -> float:
    """Parse a money cell such as ``"400,000"`` or ``"$1,250.50"``; blanks are 0."""
    text = re.sub(r"[\s\",$]", "", str(value or ""))
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        logger.warning(f"Invalid amount {value!r}{context}; using 0")
        return 0.0


def _parse_flag(value: Any) -> bool:
    return str(value or "").strip().lower() in TRUE_VALUES


def _find_column(columns: Sequence[str], *candidates: str) -> Optional[str]:
    lowered = {c.strip().lower(): c for c in columns}
    for candidate in candidates:
        if candidate in lowered:
            return lowered[candidate]
    return None


def _find_column_containing(columns: Sequence[str], *fragments: str) -> Optional[str]:
    for column in columns:
        name = column.strip().lower()
        if all(fragment in name for fragment in fragments):
            return column
    return None


def options_to_frame(options: Sequence[Option]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "option_id": o.id,
                "label": o.label,
                "provider_name": o.provider_name,
                "budget_tier": o.budget_tier.value,
                "budget_amount": float(o.budget_amount),
                "long_stream_eligible": bool(o.is_long_stream_eligible),
                "is_stop_marker": bool(o.is_stop_marker),
            }
            for o in options
        ],
        columns=[
            "option_id",
            "label",
            "provider_name",
            "budget_tier",
            "budget_amount",
            "long_stream_eligible",
            "is_stop_marker",
        ],
    )


def read_options(db: ElectionDatabase) -> List[Option]:
    """Read the canonical option list from the ``options`` table."""
    if not db.table_exists("options"):
        raise RuntimeError("Must load choices first")

    frame = db.query_with_retry("SELECT * FROM options ORDER BY option_id")
    return [
        Option(
            id=int(row["option_id"]),
            label=row["label"],
            provider_name=row["provider_name"],
            budget_tier=BudgetTier(row["budget_tier"]),
            budget_amount=float(row["budget_amount"]),
            is_long_stream_eligible=bool(row["long_stream_eligible"]),
            is_stop_marker=bool(row["is_stop_marker"]),
        )
        for row in frame.to_dict("records")
    ]


def read_ballots(db: ElectionDatabase) -> List[Ballot]:
    """Rebuild ballots from the ``ballots`` and ``ballots_long`` tables."""
    if not db.table_exists("ballots"):
        raise RuntimeError("Must load votes first")

    headers = db.query_with_retry("SELECT * FROM ballots ORDER BY ballot_id")
    ranks = db.query_with_retry(
        "SELECT ballot_id, option_id FROM ballots_long ORDER BY ballot_id, rank_position"
    )
    rankings = ranks.groupby("ballot_id")["option_id"].apply(list).to_dict()

    ballots = []
    for row in headers.to_dict("records"):
        weight = row["weight"]
        if weight is None or (isinstance(weight, float) and math.isnan(weight)):
            weight = None
        ballots.append(
            Ballot(
                voter=row["voter"],
                weight=None if weight is None else float(weight),
                ranked_option_ids=[int(i) for i in rankings.get(row["ballot_id"], [])],
            )
        )
    return ballots


def read_provider_metadata(db: ElectionDatabase) -> Dict[str, Dict[str, Any]]:
    """Collapse the option table back into ``{provider: {basic_amount, ...}}``."""
    metadata: Dict[str, Dict[str, Any]] = {}
    for option in read_options(db):
        if option.is_stop_marker:
            continue
        entry = metadata.setdefault(
            option.provider_name,
            {"basic_amount": 0.0, "extended_amount": 0.0, "long_stream_eligible": False},
        )
        key = "extended_amount" if option.budget_tier == BudgetTier.EXTENDED else "basic_amount"
        entry[key] = option.budget_amount
        entry["long_stream_eligible"] = entry["long_stream_eligible"] or option.is_long_stream_eligible
    return metadata


class BallotParser:
    """
    Loads option tables and ballots from file exports and stores them in DuckDB.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize ballot parser.

        Args:
            db_path: Path to DuckDB database file (in-memory when None)
        """
        self.db = ElectionDatabase(db_path, read_only=False)
        self._options: Optional[List[Option]] = None
        self._proposal: Optional[Dict[str, Any]] = None

    def load_choices_file(self, csv_path: str) -> Dict[str, int]:
        """
        Load the option table from a choices CSV.

        Two layouts are accepted:
            choiceId,choiceName,amount,isSpp
            Choice,Name,Basic budget,Extended budget,2 year eligible

        Args:
            csv_path: Path to choices CSV file

        Returns:
            Dictionary with loading statistics
        """
        path = Path(csv_path)
        if not path.exists():
            raise FileNotFoundError(f"Choices file not found: {path}")

        logger.info(f"Loading choices from: {path}")
        frame = pd.read_csv(path, dtype=str, keep_default_na=False, skipinitialspace=True)
        frame.columns = [c.strip() for c in frame.columns]

        if _find_column(frame.columns, "choicename") is not None:
            labels, metadata = self._parse_per_option_layout(frame)
        else:
            labels, metadata = self._parse_per_provider_layout(frame)

        options = build_options(labels, metadata)
        return self.store_options(options)

    def _parse_per_option_layout(self, frame: pd.DataFrame):
        name_col = _find_column(frame.columns, "choicename")
        id_col = _find_column(frame.columns, "choiceid")
        amount_col = _find_column(frame.columns, "amount")
        flag_col = _find_column_containing(frame.columns, "spp") or _find_column_containing(
            frame.columns, "eligible"
        )

        if id_col is not None:
            frame = frame.assign(_order=pd.to_numeric(frame[id_col], errors="coerce"))
            frame = frame.sort_values("_order", kind="stable")

        labels = []
        metadata: Dict[str, Dict[str, Any]] = {}
        for line, row in enumerate(frame.to_dict("records"), 2):
            label = row[name_col].strip()
            if not label:
                logger.warning(f"Skipping choices line {line} due to missing name")
                continue
            labels.append(label)

            parsed = parse_choice_name(label)
            if parsed.budget_tier == BudgetTier.NONE:
                continue
            entry = metadata.setdefault(
                parsed.provider_name,
                {"basic_amount": 0.0, "extended_amount": 0.0, "long_stream_eligible": False},
            )
            key = "extended_amount" if parsed.budget_tier == BudgetTier.EXTENDED else "basic_amount"
            if amount_col is not None:
                entry[key] = _parse_amount(row[amount_col], f" on choices line {line}")
            if flag_col is not None and _parse_flag(row[flag_col]):
                entry["long_stream_eligible"] = True
        return labels, metadata

    def _parse_per_provider_layout(self, frame: pd.DataFrame):
        name_col = _find_column(frame.columns, "name")
        basic_col = _find_column_containing(frame.columns, "basic", "budget")
        extended_col = _find_column_containing(frame.columns, "extended", "budget")
        flag_col = _find_column_containing(frame.columns, "eligible") or _find_column_containing(
            frame.columns, "spp"
        )
        if name_col is None or (basic_col is None and extended_col is None):
            raise ValueError(
                "Choices CSV must contain either choiceName/amount columns or "
                "Name plus Basic/Extended budget columns"
            )

        labels = []
        metadata: Dict[str, Dict[str, Any]] = {}
        for line, row in enumerate(frame.to_dict("records"), 2):
            label = row[name_col].strip()
            if not label:
                logger.warning(f"Skipping choices line {line} due to missing name")
                continue
            labels.append(label)

            parsed = parse_choice_name(label)
            if parsed.budget_tier == BudgetTier.NONE:
                continue
            entry = {
                "basic_amount": _parse_amount(row[basic_col], f" on choices line {line}")
                if basic_col
                else 0.0,
                "extended_amount": _parse_amount(row[extended_col], f" on choices line {line}")
                if extended_col
                else 0.0,
                "long_stream_eligible": _parse_flag(row[flag_col]) if flag_col else False,
            }
            existing = metadata.setdefault(parsed.provider_name, entry)
            if existing != entry:
                logger.warning(
                    f"Conflicting budget data for provider '{parsed.provider_name}' "
                    f"on choices line {line}; keeping the first row"
                )
        return labels, metadata

    def store_options(self, options: Sequence[Option]) -> Dict[str, int]:
        """Store an option list in the ``options`` table."""
        self.db.store_frame("options", options_to_frame(options))
        self._options = list(options)
        providers = group_choices_by_provider([o.label for o in options if not o.is_stop_marker])
        stats = {
            "total_options": len(options),
            "providers": len(providers),
            "stop_markers": sum(1 for o in options if o.is_stop_marker),
        }
        logger.info(f"Loaded {stats['total_options']} options from {stats['providers']} providers")
        return stats

    def load_votes_file(self, csv_path: str) -> Dict[str, int]:
        """
        Load ballots from a votes CSV (``Name,Votes,Choice 1,...``).

        Choice cells hold option labels. Unknown labels are dropped and rows
        with a missing voter or an unparsable weight are skipped.

        Args:
            csv_path: Path to votes CSV file

        Returns:
            Dictionary with loading statistics
        """
        options = self.get_options()
        path = Path(csv_path)
        if not path.exists():
            raise FileNotFoundError(f"Votes file not found: {path}")

        logger.info(f"Loading votes from: {path}")
        frame = pd.read_csv(path, dtype=str, keep_default_na=False, skipinitialspace=True)
        frame.columns = [c.strip() for c in frame.columns]

        voter_col = _find_column(frame.columns, "voter", "name")
        weight_col = _find_column(frame.columns, "vp", "votes")
        if voter_col is None or weight_col is None:
            raise ValueError('Votes CSV must contain "Name/voter" and "Votes/vp" columns')

        choice_cols = [c for c in frame.columns if c not in (voter_col, weight_col)]
        label_ids = {o.label: o.id for o in options}

        ballots = []
        for line, row in enumerate(frame.to_dict("records"), 2):
            voter = row[voter_col].strip()
            weight = pd.to_numeric(row[weight_col].replace(",", ""), errors="coerce")
            if not voter or pd.isna(weight):
                logger.warning(f"Skipping votes line {line} due to invalid voter or weight")
                continue

            ranking = []
            for column in choice_cols:
                label = row[column].strip()
                if not label:
                    continue
                if label not in label_ids:
                    logger.warning(f"Unknown choice '{label}' on votes line {line}")
                    continue
                ranking.append(label_ids[label])

            if not ranking:
                logger.warning(f"No valid choices for voter {voter} on votes line {line}")
                continue
            ballots.append(Ballot(voter=voter, weight=float(weight), ranked_option_ids=ranking))

        return self.store_ballots(ballots)

    def load_snapshot_file(self, json_path: str) -> Dict[str, int]:
        """
        Load ballots from a Snapshot vote export.

        Expected shape: ``{"data": {"votes": [{"voter", "vp", "choice",
        "proposal": {"choices": [...]}}]}}``. When no choices file was loaded
        first, options are built from the proposal's choice labels without
        budget data.

        Args:
            json_path: Path to JSON export

        Returns:
            Dictionary with loading statistics
        """
        path = Path(json_path)
        if not path.exists():
            raise FileNotFoundError(f"Snapshot export not found: {path}")

        logger.info(f"Loading Snapshot votes from: {path}")
        with open(path, "r") as f:
            payload = json.load(f)

        votes = (payload.get("data") or {}).get("votes")
        if votes is None:
            raise ValueError("Snapshot export has no data.votes list")

        proposal = next((v.get("proposal") for v in votes if v.get("proposal")), None)
        if proposal:
            self._proposal = {k: v for k, v in proposal.items() if k != "votes"}
        if self._options is None and not self.db.table_exists("options", use_temporary_connection=False):
            if not proposal or not proposal.get("choices"):
                raise RuntimeError("Must load choices first")
            logger.warning("No choices file loaded; building options without budget data")
            self.store_options(build_options(proposal["choices"], {}))

        ballots = []
        for index, vote in enumerate(votes):
            voter = str(vote.get("voter") or "").strip()
            choice = vote.get("choice")
            if not voter:
                logger.warning(f"Skipping Snapshot vote #{index}: missing voter")
                continue
            if not isinstance(choice, (list, tuple)):
                logger.warning(f"Skipping Snapshot vote #{index} from {voter}: choice is not a list")
                continue
            vp = vote.get("vp")
            weight = None
            if vp is not None:
                weight = pd.to_numeric(str(vp).replace(",", ""), errors="coerce")
                if pd.isna(weight):
                    logger.warning(f"Skipping Snapshot vote #{index} from {voter}: invalid vp {vp!r}")
                    continue
            ballots.append(
                Ballot(
                    voter=voter,
                    weight=None if weight is None else float(weight),
                    ranked_option_ids=[c for c in choice if isinstance(c, int) and not isinstance(c, bool)],
                )
            )

        return self.store_ballots(ballots)

    def store_ballots(self, ballots: Sequence[Ballot]) -> Dict[str, int]:
        """
        Store ballots in the ``ballots`` and ``ballots_long`` tables.

        Returns:
            Dictionary with storage statistics
        """
        known_ids = {o.id for o in self.get_options()}
        headers = []
        long_rows = []
        for ballot_id, ballot in enumerate(ballots, 1):
            ranking = []
            for option_id in ballot.ranked_option_ids:
                if option_id not in known_ids or option_id in ranking:
                    logger.warning(f"Dropping option {option_id} from ballot of {ballot.voter}")
                    continue
                ranking.append(option_id)

            headers.append(
                {
                    "ballot_id": ballot_id,
                    "voter": ballot.voter,
                    "weight": ballot.weight,
                    "ranks_used": len(ranking),
                }
            )
            long_rows.extend(
                {
                    "ballot_id": ballot_id,
                    "voter": ballot.voter,
                    "weight": ballot.weight,
                    "rank_position": position,
                    "option_id": option_id,
                }
                for position, option_id in enumerate(ranking, 1)
            )

        self.db.store_frame(
            "ballots",
            pd.DataFrame(headers, columns=["ballot_id", "voter", "weight", "ranks_used"]).astype(
                {"ballot_id": "int64", "ranks_used": "int64", "weight": "float64"}
            ),
        )
        self.db.store_frame(
            "ballots_long",
            pd.DataFrame(
                long_rows, columns=["ballot_id", "voter", "weight", "rank_position", "option_id"]
            ).astype(
                {"ballot_id": "int64", "rank_position": "int64", "option_id": "int64", "weight": "float64"}
            ),
        )

        stats = {
            "total_ballots": len(headers),
            "total_vote_records": len(long_rows),
            "empty_ballots": sum(1 for h in headers if h["ranks_used"] == 0),
        }
        logger.info(
            f"Stored {stats['total_ballots']} ballots with {stats['total_vote_records']} vote records"
        )
        if stats["empty_ballots"] > 0:
            logger.warning(f"Found {stats['empty_ballots']} ballots with no valid choices")
        return stats

    def get_options(self) -> List[Option]:
        """Get the canonical option list."""
        if self._options is None:
            self._options = read_options(self.db)
        return self._options

    def get_ballots(self) -> List[Ballot]:
        """Get all stored ballots in load order."""
        return read_ballots(self.db)

    def get_provider_metadata(self) -> Dict[str, Dict[str, Any]]:
        return read_provider_metadata(self.db)

    def get_proposal(self) -> Optional[Dict[str, Any]]:
        """Proposal metadata from the last Snapshot export, if any."""
        return self._proposal

    def get_ballot_completion_stats(self) -> pd.DataFrame:
        """Get statistics about how many options each ballot ranks."""
        return self.db.query(
            """
            SELECT
                ranks_used,
                COUNT(*) as ballot_count,
                ROUND(100.0 * COUNT(*) / SUM(COUNT(*)) OVER (), 2) as percentage
            FROM ballots
            GROUP BY ranks_used
            ORDER BY ranks_used
            """
        )

    def close(self):
        """Close database connection."""
        self.db.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
