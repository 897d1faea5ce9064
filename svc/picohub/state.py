from __future__ import annotations
import json
import os
import sqlite3
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional
from .models import Sample, DeviceMessage
from .config import DB_FILE, DB_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Durable storage is unreachable or a read/write failed."""


def _ensure_dirs() -> None:
    parent = os.path.dirname(DB_FILE)
    if parent:
        os.makedirs(parent, exist_ok=True)


@contextmanager
def _db_connection(row_factory: Optional[Callable[[sqlite3.Cursor, tuple], Any]] = None) -> Iterator[sqlite3.Connection]:
    """
    Context manager for database connections.

    Automatically handles:
    - Connection creation and cleanup
    - Transaction commit on success
    - Transaction rollback on error
    - Translating sqlite3 errors into StorageError

    Args:
        row_factory: Optional row factory (e.g., sqlite3.Row) to set on connection
    """
    if not DB_FILE:
        raise StorageError("database path is not configured (PICO_DB_FILE)")
    try:
        _ensure_dirs()
        conn = sqlite3.connect(DB_FILE, timeout=DB_TIMEOUT_SECONDS)
    except (sqlite3.Error, OSError) as e:
        raise StorageError(f"cannot open database {DB_FILE}: {e}") from e
    if row_factory:
        conn.row_factory = row_factory
    try:
        yield conn
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise StorageError(str(e)) from e
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def initialize_database() -> None:
    """
    Create all tables once at application startup.

    Raises StorageError when the database cannot be opened, which the
    entry point treats as fatal.
    """
    with _db_connection() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                device_id TEXT NOT NULL,
                value REAL NOT NULL,
                fan REAL NOT NULL DEFAULT 0.0,
                mode TEXT,
                ts REAL NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_samples_device_ts ON samples (device_id, ts)")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS device_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                device_id TEXT NOT NULL,
                params TEXT NOT NULL,
                consumed INTEGER NOT NULL DEFAULT 0,
                ts REAL NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_device_messages_pending ON device_messages (device_id, consumed, ts)"
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS raw_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                device_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                ts REAL NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS devices (
                device_id TEXT PRIMARY KEY,
                name TEXT,
                location TEXT,
                type TEXT
            )
            """
        )
    logger.info(f"Database ready at {DB_FILE}")


def ping() -> bool:
    """Return True when the database answers a trivial query."""
    try:
        with _db_connection() as conn:
            conn.execute("SELECT 1").fetchone()
        return True
    except StorageError as e:
        logger.error(f"Storage ping failed: {e}")
        return False


# --- readings --------------------------------------------------------------

def _insert_sample(conn: sqlite3.Connection, sample: Sample) -> None:
    conn.execute(
        """
        INSERT INTO samples (device_id, value, fan, mode, ts)
        VALUES (?, ?, ?, ?, ?)
        """,
        (sample.device_id, sample.value, sample.fan, sample.mode, sample.timestamp),
    )


def _insert_raw_message(conn: sqlite3.Connection, device_id: str, payload: Any, ts: float) -> None:
    conn.execute(
        "INSERT INTO raw_messages (device_id, payload, ts) VALUES (?, ?, ?)",
        (device_id, json.dumps(payload), ts),
    )


def insert_sample(sample: Sample) -> None:
    with _db_connection() as conn:
        _insert_sample(conn, sample)


def insert_raw_message(device_id: str, payload: Any, ts: float) -> None:
    """Keep the full ingest payload as received, for auditing."""
    with _db_connection() as conn:
        _insert_raw_message(conn, device_id, payload, ts)


def store_reading(sample: Sample, raw: Any) -> None:
    """
    Persist one accepted reading: registry row, raw payload and sample.

    All three writes share one transaction, so a failure leaves no raw
    payload without its sample.
    """
    with _db_connection() as conn:
        _upsert_device(conn, sample.device_id)
        _insert_raw_message(conn, sample.device_id, raw, sample.timestamp)
        _insert_sample(conn, sample)


def _row_to_sample(row: sqlite3.Row) -> Sample:
    return Sample(
        device_id=row["device_id"],
        value=row["value"],
        fan=row["fan"],
        mode=row["mode"],
        timestamp=row["ts"],
    )


def fetch_recent_samples(limit: int, device_id: Optional[str] = None) -> List[Sample]:
    """Most recent `limit` samples, optionally for one device, returned oldest first."""
    query = "SELECT device_id, value, fan, mode, ts FROM samples"
    params: List[Any] = []
    if device_id is not None:
        query += " WHERE device_id = ?"
        params.append(device_id)
    query += " ORDER BY ts DESC, id DESC LIMIT ?"
    params.append(limit)

    with _db_connection(row_factory=sqlite3.Row) as conn:
        rows = conn.execute(query, params).fetchall()

    samples = [_row_to_sample(r) for r in rows]
    samples.reverse()
    return samples


# --- mailbox ---------------------------------------------------------------

def _row_to_message(row: sqlite3.Row) -> DeviceMessage:
    return DeviceMessage(
        id=row["id"],
        device_id=row["device_id"],
        params=json.loads(row["params"]),
        consumed=bool(row["consumed"]),
        timestamp=row["ts"],
    )


def enqueue_message(device_id: str, params: Any, ts: float) -> int:
    """Queue a command for a device and return its id."""
    with _db_connection() as conn:
        cur = conn.execute(
            "INSERT INTO device_messages (device_id, params, consumed, ts) VALUES (?, ?, 0, ?)",
            (device_id, json.dumps(params), ts),
        )
        return int(cur.lastrowid)


_OLDEST_PENDING = """
    SELECT id, device_id, params, consumed, ts
    FROM device_messages
    WHERE device_id = ? AND consumed = 0
    ORDER BY ts ASC, id ASC
    LIMIT 1
"""


def peek_message(device_id: str) -> Optional[DeviceMessage]:
    """Oldest queued command for the device, left queued."""
    with _db_connection(row_factory=sqlite3.Row) as conn:
        row = conn.execute(_OLDEST_PENDING, (device_id,)).fetchone()
    return _row_to_message(row) if row else None


def consume_message(device_id: str) -> Optional[DeviceMessage]:
    """
    Take the oldest queued command for the device and mark it consumed.

    Select and flip run inside one BEGIN IMMEDIATE transaction, which holds
    the database write lock, so two pollers can never take the same entry.
    The conditional update on consumed = 0 is checked as well.
    """
    with _db_connection(row_factory=sqlite3.Row) as conn:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute(_OLDEST_PENDING, (device_id,)).fetchone()
        if row is None:
            return None
        cur = conn.execute(
            "UPDATE device_messages SET consumed = 1 WHERE id = ? AND consumed = 0",
            (row["id"],),
        )
        if cur.rowcount != 1:
            raise StorageError(f"device message {row['id']} changed during consume")
        msg = _row_to_message(row)
    return msg.model_copy(update={"consumed": True})


# --- device registry -------------------------------------------------------

def _upsert_device(
    conn: sqlite3.Connection,
    device_id: str,
    name: Optional[str] = None,
    location: Optional[str] = None,
    type: Optional[str] = None,
) -> None:
    conn.execute(
        """
        INSERT INTO devices (device_id, name, location, type)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(device_id) DO UPDATE SET
            name = COALESCE(excluded.name, devices.name),
            location = COALESCE(excluded.location, devices.location),
            type = COALESCE(excluded.type, devices.type)
        """,
        (device_id, name, location, type),
    )


def ensure_device(
    device_id: str,
    name: Optional[str] = None,
    location: Optional[str] = None,
    type: Optional[str] = None,
) -> None:
    """Insert or update a registry row; None fields keep what is stored."""
    with _db_connection() as conn:
        _upsert_device(conn, device_id, name, location, type)


def list_devices() -> List[Dict[str, Any]]:
    with _db_connection(row_factory=sqlite3.Row) as conn:
        rows = conn.execute(
            "SELECT device_id, name, location, type FROM devices ORDER BY device_id"
        ).fetchall()
    return [dict(r) for r in rows]
