"""
Database unit tests.

These tests verify core ElectionDatabase operations and the retrying
connection manager without external data files.
"""

from unittest.mock import patch

import duckdb
import pandas as pd
import pytest

from data.database import DatabaseConnectionManager, ElectionDatabase


@pytest.mark.unit
def test_database_creation(temp_db):
    """Test that database can be created and closed."""
    assert temp_db.is_in_memory
    assert temp_db.conn is not None


@pytest.mark.unit
def test_default_is_in_memory():
    with ElectionDatabase() as db:
        assert db.db_path == ":memory:"
        assert db.query("SELECT 1 as test_value").iloc[0]["test_value"] == 1


@pytest.mark.unit
def test_basic_query_with_params(temp_db):
    result = temp_db.query("SELECT ? + 1 as answer", [41])
    assert isinstance(result, pd.DataFrame)
    assert result.iloc[0]["answer"] == 42


@pytest.mark.unit
def test_store_frame_and_table_exists(temp_db):
    frame = pd.DataFrame({"option_id": [1, 2], "label": ["sp a", "sp b"]})

    assert not temp_db.table_exists("options")
    assert temp_db.store_frame("options", frame) == 2
    assert temp_db.table_exists("options")

    result = temp_db.query("SELECT * FROM options ORDER BY option_id")
    assert list(result["label"]) == ["sp a", "sp b"]


@pytest.mark.unit
def test_store_frame_replaces_table(temp_db):
    temp_db.store_frame("options", pd.DataFrame({"x": [1, 2, 3]}))
    temp_db.store_frame("options", pd.DataFrame({"x": [9]}))

    assert temp_db.query("SELECT COUNT(*) as n FROM options").iloc[0]["n"] == 1


@pytest.mark.unit
def test_store_frame_rejects_bad_table_name(temp_db):
    with pytest.raises(ValueError):
        temp_db.store_frame("options; DROP TABLE x", pd.DataFrame({"x": [1]}))


@pytest.mark.unit
def test_read_only_file_refuses_writes(temp_db_file):
    with ElectionDatabase(temp_db_file, read_only=False) as db:
        db.store_frame("options", pd.DataFrame({"x": [1]}))

    with ElectionDatabase(temp_db_file, read_only=True) as db:
        assert db.table_exists("options")
        with pytest.raises(RuntimeError):
            db.store_frame("options", pd.DataFrame({"x": [2]}))


@pytest.mark.unit
def test_file_round_trip_with_temporary_connections(temp_db_file):
    with ElectionDatabase(temp_db_file, read_only=False) as db:
        db.store_frame("ballots", pd.DataFrame({"voter": ["0x1"], "weight": [2.5]}))
        # reads reuse the open writer connection
        assert db.table_exists("ballots")

    db = ElectionDatabase(temp_db_file, read_only=True)
    result = db.query_with_retry("SELECT * FROM ballots")
    assert result.iloc[0]["weight"] == 2.5
    assert db._conn is None  # only temporary connections were used

    info = db.get_table_info("ballots")
    assert set(info["column_name"]) == {"voter", "weight"}


@pytest.mark.unit
def test_close_is_idempotent(temp_db):
    temp_db.query("SELECT 1")
    temp_db.close()
    temp_db.close()
    assert temp_db._conn is None


@pytest.mark.unit
def test_connection_retry_on_lock():
    manager = DatabaseConnectionManager()
    lock_error = duckdb.IOException("Conflicting lock is held")
    sentinel = object()

    with patch("data.database.duckdb.connect", side_effect=[lock_error, sentinel]) as connect, patch(
        "data.database.time.sleep"
    ) as sleep:
        conn = manager.get_connection(":memory:", read_only=False)

    assert conn is sentinel
    assert connect.call_count == 2
    sleep.assert_called_once()


@pytest.mark.unit
def test_connection_gives_up_after_retries():
    manager = DatabaseConnectionManager()
    lock_error = duckdb.IOException("Conflicting lock is held")

    with patch("data.database.duckdb.connect", side_effect=lock_error), patch(
        "data.database.time.sleep"
    ):
        with pytest.raises(duckdb.IOException):
            manager.get_connection(":memory:", read_only=False, max_retries=2)


@pytest.mark.unit
def test_query_with_retry_retries(temp_db):
    calls = []

    def flaky(sql, params=None, use_temporary_connection=False):
        calls.append(sql)
        if len(calls) == 1:
            raise RuntimeError("transient")
        return pd.DataFrame({"ok": [1]})

    with patch.object(temp_db, "query", side_effect=flaky), patch("data.database.time.sleep"):
        result = temp_db.query_with_retry("SELECT 1")

    assert len(calls) == 2
    assert result.iloc[0]["ok"] == 1
