import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse

try:
    from ..analysis.config import ElectionConfig
    from ..analysis.models import ElectionDataError
    from ..analysis.pipeline import run_election
    from ..analysis.results import (
        allocation_frame,
        convert_numpy_types,
        get_option_head_to_head,
    )
    from ..data.ballot_parser import read_ballots, read_options
    from ..data.database import ElectionDatabase
except ImportError:
    from analysis.config import ElectionConfig
    from analysis.models import ElectionDataError
    from analysis.pipeline import run_election
    from analysis.results import (
        allocation_frame,
        convert_numpy_types,
        get_option_head_to_head,
    )
    from data.ballot_parser import read_ballots, read_options
    from data.database import ElectionDatabase

logger = logging.getLogger(__name__)

app = FastAPI(
    title="SPP Allocation Analyzer",
    description="Pairwise ranked-choice tally and budget allocation for the Service Provider Program",
)

# Global database path - connections are opened per request
db_path = None


@app.on_event("startup")
async def startup_event():
    """Initialize the application."""
    logger.info("Starting SPP Allocation Analyzer")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on shutdown."""
    logger.info("Shutting down SPP Allocation Analyzer")


def get_database() -> ElectionDatabase:
    """
    Get a read-only database handle.
    Falls back to SPP_DATABASE_PATH when no path was set explicitly.
    """
    path = db_path or os.environ.get("SPP_DATABASE_PATH")
    if not path:
        raise HTTPException(status_code=500, detail="Database not configured")
    return ElectionDatabase(path, read_only=True)


def set_database_path(path: str):
    """Set the database path for the application."""
    global db_path
    db_path = path
    logger.info(f"Database path set to: {path}")

    # Test connection to ensure database is accessible
    try:
        test_db = ElectionDatabase(db_path, read_only=True)
        test_db.table_exists("options")
        logger.info("Database connection test successful")
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        raise


def _require_data(database: ElectionDatabase):
    if not database.table_exists("options") or not database.table_exists("ballots"):
        raise HTTPException(status_code=400, detail="No data loaded")


def _build_config(strategy: Optional[str] = None, total_budget: Optional[float] = None):
    try:
        return ElectionConfig.from_env().with_overrides(
            allocation_strategy=strategy, total_budget=total_budget
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _run(database: ElectionDatabase, config: ElectionConfig):
    try:
        return run_election(read_options(database), read_ballots(database), config)
    except ElectionDataError as e:
        logger.warning(f"Incomplete election data: {e}")
        raise HTTPException(status_code=400, detail=f"No data loaded: {str(e)}")
    except Exception as e:
        logger.error(f"Error running election: {e}")
        raise HTTPException(status_code=500, detail=f"Tabulation failed: {str(e)}")


# API Routes
@app.get("/api/options")
async def get_options():
    """Get the option list with budget metadata."""
    database = get_database()
    if not database.table_exists("options"):
        raise HTTPException(status_code=400, detail="No data loaded")

    options = database.query_with_retry("SELECT * FROM options ORDER BY option_id")
    return convert_numpy_types(options.to_dict("records"))


@app.get("/api/ballots/summary")
async def get_ballot_summary():
    """Get summary statistics about the stored ballots."""
    database = get_database()
    _require_data(database)

    summary = database.query_with_retry(
        """
        SELECT
            COUNT(*) as total_ballots,
            COALESCE(SUM(COALESCE(weight, 1.0)), 0) as total_weight,
            COALESCE(AVG(ranks_used), 0) as avg_ranks_used,
            COALESCE(MAX(ranks_used), 0) as max_ranks_used,
            COUNT(*) FILTER (WHERE ranks_used = 0) as empty_ballots
        FROM ballots
        """
    )
    stop_rankers = database.query_with_retry(
        """
        SELECT COUNT(DISTINCT bl.ballot_id) as ballots_ranking_cutoff
        FROM ballots_long bl
        JOIN options o ON bl.option_id = o.option_id
        WHERE o.is_stop_marker
        """
    )
    result = summary.to_dict("records")[0]
    result.update(stop_rankers.to_dict("records")[0])
    return convert_numpy_types(result)


@app.get("/api/ranking")
async def get_ranking():
    """Run the pairwise tally and return the ranking."""
    database = get_database()
    _require_data(database)

    results = _run(database, _build_config())
    return results.to_dict()["ranking"]


@app.get("/api/head-to-head")
async def get_head_to_head(limit: Optional[int] = None, internal_only: bool = False):
    """Get every head-to-head match, most contested first."""
    database = get_database()
    _require_data(database)

    matches = _run(database, _build_config()).to_dict()["matches"]
    if internal_only:
        matches = [m for m in matches if m["is_internal"]]
    if limit is not None:
        matches = matches[:limit]
    return matches


@app.get("/api/head-to-head/{option_id}")
async def get_option_matches(option_id: int):
    """Get one option's head-to-head record, seen from that option."""
    database = get_database()
    _require_data(database)

    results = _run(database, _build_config())
    option = next((e.option for e in results.ranking if e.option.id == option_id), None)
    if option is None:
        raise HTTPException(status_code=404, detail="Option not found")

    record = get_option_head_to_head(results.matches, option_id)
    matches = [
        {
            "opponent_id": m.option_b.id,
            "opponent": m.option_b.label,
            "votes_for": m.result.votes_a,
            "votes_against": m.result.votes_b,
            "total_votes": m.result.total_participating,
            "winner": m.winner_label,
            "is_internal": m.result.is_internal,
            "supporters": len(m.voters_a),
            "opponents": len(m.voters_b),
        }
        for m in record["matches"]
    ]
    return convert_numpy_types(
        {
            "option_id": option.id,
            "label": option.label,
            "wins": record["wins"],
            "losses": record["losses"],
            "ties": record["ties"],
            "matches": matches,
        }
    )


@app.get("/api/allocation")
async def get_allocation(strategy: Optional[str] = None, total_budget: Optional[float] = None):
    """Run the election and return the budget allocation."""
    database = get_database()
    _require_data(database)

    data = _run(database, _build_config(strategy, total_budget)).to_dict()
    return {
        "allocations": data["allocations"],
        "summary": data["summary"],
        "program_info": data["program_info"],
    }


@app.get("/api/results")
async def get_results(strategy: Optional[str] = None, total_budget: Optional[float] = None):
    """Get the complete election results."""
    database = get_database()
    _require_data(database)

    return _run(database, _build_config(strategy, total_budget)).to_dict()


# CSV Export endpoints
@app.get("/api/export/allocation")
async def export_allocation(strategy: Optional[str] = None, total_budget: Optional[float] = None):
    """Export the allocation as CSV."""
    database = get_database()
    _require_data(database)

    results = _run(database, _build_config(strategy, total_budget))

    temp_path = Path(tempfile.gettempdir()) / "spp_allocation.csv"
    allocation_frame(results).to_csv(temp_path, index=False)

    return FileResponse(temp_path, media_type="text/csv", filename="spp_allocation.csv")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
