"""
Tests for SQLite storage operations.

Tests cover:
- Database context manager
- Sample inserts and history queries
- Mailbox enqueue / peek / consume, including concurrent consumers
- Device registry upserts
- Startup failures
"""
import json
import sqlite3
import threading
import time

import pytest

from picohub.models import Sample
from picohub.state import (
    StorageError,
    _db_connection,
    consume_message,
    enqueue_message,
    ensure_device,
    fetch_recent_samples,
    initialize_database,
    insert_raw_message,
    insert_sample,
    store_reading,
    list_devices,
    peek_message,
    ping,
)


def _sample(device_id: str, value: float, ts: float) -> Sample:
    return Sample(device_id=device_id, value=value, fan=1.0, mode="AUTO", timestamp=ts)


class TestDatabaseContextManager:
    """Tests for the _db_connection context manager."""

    def test_context_manager_commits_on_success(self, temp_db):
        with _db_connection() as conn:
            conn.execute(
                "INSERT INTO samples (device_id, value, fan, mode, ts) VALUES (?, ?, ?, ?, ?)",
                ("pico-1", 21.0, 0.0, None, time.time()),
            )

        with _db_connection() as conn:
            assert conn.execute("SELECT COUNT(*) FROM samples").fetchone()[0] == 1

    def test_context_manager_rolls_back_on_error(self, temp_db):
        with pytest.raises(ValueError):
            with _db_connection() as conn:
                conn.execute(
                    "INSERT INTO samples (device_id, value, fan, mode, ts) VALUES (?, ?, ?, ?, ?)",
                    ("pico-1", 21.0, 0.0, None, time.time()),
                )
                raise ValueError("Test error")

        with _db_connection() as conn:
            assert conn.execute("SELECT COUNT(*) FROM samples").fetchone()[0] == 0

    def test_sqlite_errors_become_storage_errors(self, temp_db):
        with pytest.raises(StorageError):
            with _db_connection() as conn:
                conn.execute("SELECT * FROM no_such_table")

    def test_context_manager_with_row_factory(self, temp_db):
        with _db_connection(row_factory=sqlite3.Row) as conn:
            row = conn.execute("SELECT 1 AS one").fetchone()
            assert row["one"] == 1

    def test_ping(self, temp_db):
        assert ping() is True


class TestStartup:

    def test_initialize_database_is_idempotent(self, temp_db):
        initialize_database()
        initialize_database()

        with _db_connection() as conn:
            names = {
                r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        assert {"samples", "device_messages", "raw_messages", "devices"} <= names

    def test_empty_path_is_fatal(self, monkeypatch):
        monkeypatch.setattr("picohub.state.DB_FILE", "")
        with pytest.raises(StorageError):
            initialize_database()

    def test_unopenable_path_is_fatal(self, tmp_path, monkeypatch):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        monkeypatch.setattr("picohub.state.DB_FILE", str(blocker / "iot.db"))
        with pytest.raises(StorageError):
            initialize_database()

    def test_ping_reports_failure(self, monkeypatch):
        monkeypatch.setattr("picohub.state.DB_FILE", "")
        assert ping() is False


class TestSamples:

    def test_fetch_returns_most_recent_oldest_first(self, temp_db):
        for i in range(10):
            insert_sample(_sample("pico-1", float(i), 1000.0 + i))

        samples = fetch_recent_samples(3)
        assert [s.value for s in samples] == [7.0, 8.0, 9.0]
        assert [s.timestamp for s in samples] == [1007.0, 1008.0, 1009.0]

    def test_fetch_filters_by_device(self, temp_db):
        insert_sample(_sample("a", 1.0, 1.0))
        insert_sample(_sample("b", 2.0, 2.0))
        insert_sample(_sample("a", 3.0, 3.0))

        samples = fetch_recent_samples(50, device_id="a")
        assert [s.value for s in samples] == [1.0, 3.0]
        assert all(s.device_id == "a" for s in samples)

    def test_equal_timestamps_keep_insert_order(self, temp_db):
        for i in range(4):
            insert_sample(_sample("pico-1", float(i), 500.0))

        assert [s.value for s in fetch_recent_samples(2)] == [2.0, 3.0]

    def test_sample_fields_round_trip(self, temp_db):
        insert_sample(Sample(device_id="pico-1", value=19.5, fan=0.0, mode=None, timestamp=42.0))

        [s] = fetch_recent_samples(1)
        assert s.mode is None
        assert s.fan == 0.0

    def test_raw_message_kept_verbatim(self, temp_db):
        insert_raw_message("pico-1", {"device_id": "pico-1", "temp": 20.0, "rssi": -60}, 1.0)

        with _db_connection() as conn:
            payload = conn.execute("SELECT payload FROM raw_messages").fetchone()[0]
        assert json.loads(payload)["rssi"] == -60

    def test_store_reading_writes_all_tables(self, temp_db):
        store_reading(_sample("pico-9", 21.0, 5.0), {"device_id": "pico-9", "temp": "21"})

        assert [s.value for s in fetch_recent_samples(10)] == [21.0]
        assert [d["device_id"] for d in list_devices()] == ["pico-9"]
        with _db_connection() as conn:
            payload = conn.execute("SELECT payload FROM raw_messages").fetchone()[0]
        assert json.loads(payload) == {"device_id": "pico-9", "temp": "21"}

    def test_store_reading_is_all_or_nothing(self, temp_db):
        with _db_connection() as conn:
            conn.execute("DROP TABLE samples")

        with pytest.raises(StorageError):
            store_reading(_sample("pico-9", 21.0, 5.0), {"device_id": "pico-9", "temp": 21.0})

        with _db_connection() as conn:
            assert conn.execute("SELECT COUNT(*) FROM raw_messages").fetchone()[0] == 0
            assert conn.execute("SELECT COUNT(*) FROM devices").fetchone()[0] == 0


class TestMailbox:

    def test_empty_mailbox(self, temp_db):
        assert peek_message("pico-1") is None
        assert consume_message("pico-1") is None

    def test_consume_is_fifo_per_device(self, temp_db):
        first = enqueue_message("pico-1", {"fan": 10}, 100.0)
        enqueue_message("pico-2", {"fan": 99}, 50.0)
        second = enqueue_message("pico-1", {"fan": 20}, 200.0)

        m1 = consume_message("pico-1")
        m2 = consume_message("pico-1")
        assert (m1.id, m1.params, m1.consumed) == (first, {"fan": 10}, True)
        assert (m2.id, m2.params) == (second, {"fan": 20})
        assert consume_message("pico-1") is None
        assert consume_message("pico-2").params == {"fan": 99}

    def test_peek_does_not_consume(self, temp_db):
        msg_id = enqueue_message("pico-1", {"mode": "FORCED_ON"}, 1.0)

        for _ in range(3):
            peeked = peek_message("pico-1")
            assert peeked.id == msg_id
            assert peeked.consumed is False

        consumed = consume_message("pico-1")
        assert consumed.id == msg_id
        assert consumed.consumed is True
        assert peek_message("pico-1") is None

    def test_consumed_entries_are_retained(self, temp_db):
        enqueue_message("pico-1", "reboot", 1.0)
        consume_message("pico-1")

        with _db_connection() as conn:
            rows = conn.execute("SELECT consumed FROM device_messages").fetchall()
        assert rows == [(1,)]

    def test_params_may_be_any_json(self, temp_db):
        enqueue_message("pico-1", [1, "two", None], 1.0)
        assert consume_message("pico-1").params == [1, "two", None]

    def test_concurrent_consumers_get_each_entry_once(self, temp_db):
        queued = [enqueue_message("pico-1", {"n": i}, 100.0 + i) for i in range(5)]
        workers = 20
        barrier = threading.Barrier(workers)
        results = []
        errors = []
        lock = threading.Lock()

        def poll():
            barrier.wait()
            try:
                msg = consume_message("pico-1")
            except Exception as e:
                with lock:
                    errors.append(e)
                return
            with lock:
                results.append(msg)

        threads = [threading.Thread(target=poll) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        delivered = [m.id for m in results if m is not None]
        assert sorted(delivered) == queued
        assert len(set(delivered)) == len(delivered)
        assert sum(1 for m in results if m is None) == workers - len(queued)


class TestDeviceRegistry:

    def test_ensure_device_inserts_and_updates(self, temp_db):
        ensure_device("pico-1", name="Cooler", location="Room 1", type="temp+fan")
        ensure_device("pico-1")

        [d] = list_devices()
        assert d == {"device_id": "pico-1", "name": "Cooler", "location": "Room 1", "type": "temp+fan"}

        ensure_device("pico-1", location="Room 2")
        assert list_devices()[0]["location"] == "Room 2"
        assert list_devices()[0]["name"] == "Cooler"
