"""Database layer for tempsix: the identity store and the message store.

Both stores live in one SQLite database. The synchronization primitives are
SQLite transactions plus the primary key on ``identities.code``; there are no
in-process locks around data. Every write helper runs in ``with conn:``, so a
failed statement is rolled back instead of leaving a write lock held.

Connection Management:
    # Process-wide (server, CLI)
    configure("/var/lib/tempsix/data.db")
    init_db()
    ...
    close_db()

    # Scoped connection
    with scoped_connection("/path/to/data.db") as conn:
        init_db_with_conn(conn)
        create_identity("123456", conn=conn)

    # In-memory for testing
    with scoped_connection(":memory:") as conn:
        init_db_with_conn(conn)
        ...

Timestamps are stored as ISO-8601 UTC strings with microsecond precision, so
they compare correctly as text.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from uuid_extensions import uuid7 as make_uuid7

from .errors import StoreError
from .metrics import timed_db_operation
from .options import DEFAULT_DB_PATH

logger = logging.getLogger(__name__)

# Version created by SCHEMA_SQL on a fresh database
BASELINE_SCHEMA_VERSION = 1

# Current schema version (increment when adding migrations)
SCHEMA_VERSION = 1

# Thread-local storage for per-thread connections
# FastAPI runs sync handlers in a thread pool; every thread gets its own connection.
_local = threading.local()

# Global config for connection parameters (shared across threads)
_db_config: dict[str, Any] = {
    "path": None,  # None means: read TEMPSIX_DB, default DEFAULT_DB_PATH
    "generation": 0,  # bumped by close_db; older thread connections reconnect
}

# Every thread-local connection, so close_db can close them all
_connections: list[sqlite3.Connection] = []
_connections_lock = threading.Lock()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Format a timestamp the way every column stores it."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


# --- Connection Management ---


def configure(db_path: str | Path | None) -> None:
    """Set the database path used by thread-local connections.

    Every open thread-local connection is closed so the next get_connection()
    in any thread picks up the new path.
    """
    close_db()
    _db_config["path"] = str(db_path) if db_path is not None else None


def _configured_path() -> str:
    if _db_config["path"] is not None:
        return _db_config["path"]
    return os.environ.get("TEMPSIX_DB", DEFAULT_DB_PATH)


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create database connection.

    Uses thread-local storage to give each thread its own connection,
    which is essential for safe concurrent access in threaded environments.

    Args:
        db_path: Optional explicit database path. If None, uses the thread-local
                 connection for the configured path. Special value ":memory:"
                 creates a private in-memory database.

    Returns:
        SQLite connection with row_factory set to sqlite3.Row.
    """
    # Explicit path: a new, caller-owned connection (used by scoped_connection)
    if db_path is not None:
        if str(db_path) == ":memory:":
            conn = sqlite3.connect(":memory:", check_same_thread=False)
        else:
            conn = sqlite3.connect(str(db_path), check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.row_factory = sqlite3.Row
        return conn

    if getattr(_local, "generation", None) != _db_config["generation"]:
        # close_db ran since this thread connected; its connection is closed
        _local.conn = None

    if getattr(_local, "conn", None) is None:
        path = _configured_path()

        if path == ":memory:":
            # Shared cache so all threads see the same data. The name includes
            # the process ID so parallel test processes don't interfere.
            _local.conn = sqlite3.connect(
                f"file:tempsix_{os.getpid()}?mode=memory&cache=shared",
                uri=True,
                check_same_thread=False,
            )
        else:
            _local.conn = sqlite3.connect(path, check_same_thread=False)
            # WAL lets the sweep read while request handlers write
            _local.conn.execute("PRAGMA journal_mode=WAL")

        # Wait for locks instead of failing immediately
        _local.conn.execute("PRAGMA busy_timeout=5000")
        _local.conn.row_factory = sqlite3.Row
        _local.generation = _db_config["generation"]
        with _connections_lock:
            _connections.append(_local.conn)

    return _local.conn


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Context manager for scoped database connections.

    Creates a new connection that is automatically closed when the context exits.

    Example:
        with scoped_connection("/path/to/data.db") as conn:
            init_db_with_conn(conn)
            get_identity("123456", conn=conn)
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def close_thread_connection():
    """Close the connection for the current thread only."""
    conn = getattr(_local, "conn", None)
    if conn is not None:
        with _connections_lock:
            if conn in _connections:
                _connections.remove(conn)
        conn.close()
        _local.conn = None


def close_db():
    """Close every thread-local connection (process teardown).

    Covers connections opened by request worker threads and the sweep
    executor, not only the caller's.
    """
    with _connections_lock:
        conns = list(_connections)
        _connections.clear()
        _db_config["generation"] += 1
    for conn in conns:
        conn.close()
    _local.conn = None


def _get_conn(conn: sqlite3.Connection | None) -> sqlite3.Connection:
    """Helper to get connection - uses provided conn or falls back to thread-local."""
    if conn is not None:
        return conn
    return get_connection()


@contextmanager
def store_operation(operation: str) -> Iterator[None]:
    """Time a store operation and translate driver failures into StoreError.

    sqlite3.IntegrityError raised inside the block is translated too; callers
    that treat a constraint violation as a domain outcome catch it within the
    block.
    """
    with timed_db_operation(operation):
        try:
            yield
        except sqlite3.Error as e:
            logger.error(f"Store operation {operation} failed: {e}")
            raise StoreError(f"Storage operation failed: {operation}") from e


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    """Convert a database row to a dictionary."""
    if row is None:
        return None
    return dict(row)


def _rows_to_dicts(rows: list) -> list[dict]:
    """Convert database rows to a list of dictionaries."""
    return [dict(row) for row in rows]


# --- Schema and Migrations ---


def _ensure_schema_version_table(conn: sqlite3.Connection) -> None:
    """Create the schema_version table if it doesn't exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            description TEXT
        )
    """)
    conn.commit()


def get_schema_version(conn: sqlite3.Connection | None = None) -> int:
    """Get the current schema version from the database.

    Returns 0 if no migrations have been applied yet.
    """
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)

    cursor = conn.execute("SELECT MAX(version) FROM schema_version")
    row = cursor.fetchone()
    return row[0] if row and row[0] is not None else 0


def record_migration(conn: sqlite3.Connection, version: int, description: str) -> None:
    """Record that a migration has been applied."""
    conn.execute(
        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
        (version, description),
    )
    conn.commit()


# Migration registry: (version, description, migration_function)
# SCHEMA_SQL creates the baseline (version 1); register later changes here.
MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = []


def run_migrations(conn: sqlite3.Connection | None = None) -> list[int]:
    """Run any pending migrations.

    Returns a list of migration versions that were applied.
    """
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)
    current_version = get_schema_version(conn)
    applied: list[int] = []

    for version, description, migrate_fn in MIGRATIONS:
        if version > current_version:
            try:
                migrate_fn(conn)
                record_migration(conn, version, description)
                applied.append(version)
            except sqlite3.Error as e:
                raise RuntimeError(f"Migration {version} failed: {e}") from e

    return applied


# --- Schema Definition ---


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS identities (
        code TEXT PRIMARY KEY
            CHECK (code GLOB '[0-9][0-9][0-9][0-9][0-9][0-9]'),
        created_at TEXT NOT NULL,
        last_active_at TEXT NOT NULL,
        marked_for_deletion INTEGER NOT NULL DEFAULT 0,
        marked_at TEXT,
        delete_reason TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_identities_marked
        ON identities(marked_for_deletion, marked_at);
    CREATE INDEX IF NOT EXISTS idx_identities_last_active
        ON identities(last_active_at);

    CREATE TABLE IF NOT EXISTS messages (
        mid TEXT PRIMARY KEY,
        sender_id TEXT NOT NULL,
        recipient_id TEXT NOT NULL,
        content TEXT NOT NULL,
        sender_fingerprint TEXT,
        created_at TEXT NOT NULL,
        is_read INTEGER NOT NULL DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_messages_inbox
        ON messages(recipient_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_messages_unread
        ON messages(recipient_id, is_read);
    CREATE INDEX IF NOT EXISTS idx_messages_sender
        ON messages(sender_id, created_at);
"""


def init_db_with_conn(conn: sqlite3.Connection) -> None:
    """Initialize database schema with an explicit connection.

    A fresh database is recorded at the baseline version; pending migrations
    then bring it to SCHEMA_VERSION.
    """
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    if get_schema_version(conn) == 0:
        record_migration(conn, BASELINE_SCHEMA_VERSION, "Initial schema")
    run_migrations(conn)


def init_db():
    """Initialize database schema using the thread-local connection."""
    conn = get_connection()
    init_db_with_conn(conn)


def reset_db(conn: sqlite3.Connection | None = None):
    """Reset database (for testing)."""
    conn = _get_conn(conn)
    conn.executescript("""
        DROP TABLE IF EXISTS messages;
        DROP TABLE IF EXISTS identities;
        DROP TABLE IF EXISTS schema_version;
    """)
    conn.commit()
    init_db_with_conn(conn)


def ping(conn: sqlite3.Connection | None = None) -> bool:
    """Cheap liveness query used by the health endpoint."""
    conn = _get_conn(conn)
    conn.execute("SELECT 1 FROM identities LIMIT 1").fetchone()
    return True


# --- Identity Store ---


IDENTITY_COLUMNS = "code, created_at, last_active_at, marked_for_deletion, marked_at, delete_reason"


def _identity_from_row(row: dict | None) -> dict | None:
    if row is None:
        return None
    row["marked_for_deletion"] = bool(row["marked_for_deletion"])
    return row


def create_identity(
    code: str,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Insert a new identity.

    Raises sqlite3.IntegrityError if the code is already held; the primary key
    is the final arbiter of uniqueness.
    """
    conn = _get_conn(conn)
    stamp = to_iso(now or utcnow())

    with conn:
        conn.execute(
            "INSERT INTO identities (code, created_at, last_active_at) VALUES (?, ?, ?)",
            (code, stamp, stamp),
        )

    return {
        "code": code,
        "created_at": stamp,
        "last_active_at": stamp,
        "marked_for_deletion": False,
        "marked_at": None,
        "delete_reason": None,
    }


def get_identity(code: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get identity by code (marked identities included)."""
    conn = _get_conn(conn)
    cursor = conn.execute(f"SELECT {IDENTITY_COLUMNS} FROM identities WHERE code = ?", (code,))
    return _identity_from_row(_row_to_dict(cursor.fetchone()))


def identity_exists(code: str, conn: sqlite3.Connection | None = None) -> bool:
    """Check if a live identity holds the code."""
    conn = _get_conn(conn)
    cursor = conn.execute("SELECT 1 FROM identities WHERE code = ?", (code,))
    return cursor.fetchone() is not None


def touch_identity(
    code: str,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> str | None:
    """Refresh last_active_at. Returns the new timestamp, or None if absent.

    Deliberately leaves marked_for_deletion alone.
    """
    conn = _get_conn(conn)
    stamp = to_iso(now or utcnow())
    with conn:
        cursor = conn.execute(
            "UPDATE identities SET last_active_at = ? WHERE code = ?", (stamp, code)
        )
    return stamp if cursor.rowcount > 0 else None


def mark_identity(
    code: str,
    reason: str,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Mark an identity for deletion.

    Only unmarked identities are updated, so the first marked_at wins.
    Returns True if this call performed the transition.
    """
    conn = _get_conn(conn)
    stamp = to_iso(now or utcnow())
    with conn:
        cursor = conn.execute(
            """UPDATE identities SET marked_for_deletion = 1, marked_at = ?, delete_reason = ?
               WHERE code = ? AND marked_for_deletion = 0""",
            (stamp, reason, code),
        )
    return cursor.rowcount > 0


def delete_identity(code: str, conn: sqlite3.Connection | None = None) -> bool:
    """Delete the identity row only. Use purge_identity to cascade."""
    conn = _get_conn(conn)
    with conn:
        cursor = conn.execute("DELETE FROM identities WHERE code = ?", (code,))
    return cursor.rowcount > 0


def purge_identity(code: str, conn: sqlite3.Connection | None = None) -> tuple[int, bool]:
    """Delete every message sent or received by the identity, then the identity.

    Returns (deleted_messages, identity_deleted). Not-found is not an error.
    """
    conn = _get_conn(conn)
    # One transaction: a failure leaves both tables untouched
    with conn:
        cursor = conn.execute(
            "DELETE FROM messages WHERE sender_id = ? OR recipient_id = ?", (code, code)
        )
        deleted_messages = cursor.rowcount
        cursor = conn.execute("DELETE FROM identities WHERE code = ?", (code,))
        identity_deleted = cursor.rowcount > 0
    return deleted_messages, identity_deleted


def list_purgeable_identities(
    marked_before: datetime,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Marked identities whose grace window has elapsed."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"""SELECT {IDENTITY_COLUMNS} FROM identities
            WHERE marked_for_deletion = 1 AND marked_at < ?
            ORDER BY marked_at""",
        (to_iso(marked_before),),
    )
    return [_identity_from_row(row) for row in _rows_to_dicts(cursor.fetchall())]


def list_inactive_identities(
    active_before: datetime,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Unmarked identities idle since before the cutoff."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"""SELECT {IDENTITY_COLUMNS} FROM identities
            WHERE marked_for_deletion = 0 AND last_active_at < ?
            ORDER BY last_active_at""",
        (to_iso(active_before),),
    )
    return [_identity_from_row(row) for row in _rows_to_dicts(cursor.fetchall())]


def count_identities(conn: sqlite3.Connection | None = None) -> int:
    conn = _get_conn(conn)
    return conn.execute("SELECT COUNT(*) FROM identities").fetchone()[0]


# --- Message Store ---


def insert_message(
    sender_id: str,
    recipient_id: str,
    content: str,
    sender_fingerprint: str | None = None,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Persist a message. Returns {mid, created_at}."""
    conn = _get_conn(conn)

    mid = str(make_uuid7())
    stamp = to_iso(now or utcnow())

    with conn:
        conn.execute(
            """INSERT INTO messages (mid, sender_id, recipient_id, content, sender_fingerprint, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (mid, sender_id, recipient_id, content, sender_fingerprint, stamp),
        )

    return {"mid": mid, "created_at": stamp}


def find_messages(
    recipient_id: str,
    unread_only: bool = False,
    offset: int = 0,
    limit: int = 20,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Page through a recipient's messages, newest first.

    The fingerprint column is never selected.
    """
    conn = _get_conn(conn)

    query = """
        SELECT mid, sender_id, recipient_id, content, created_at, is_read
        FROM messages
        WHERE recipient_id = ?
    """
    params: list[Any] = [recipient_id]

    if unread_only:
        query += " AND is_read = 0"

    # mid is a UUIDv7, so it breaks timestamp ties in creation order
    query += " ORDER BY created_at DESC, mid DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    cursor = conn.execute(query, tuple(params))
    rows = _rows_to_dicts(cursor.fetchall())
    for row in rows:
        row["is_read"] = bool(row["is_read"])
    return rows


def count_messages(
    recipient_id: str,
    unread_only: bool = False,
    conn: sqlite3.Connection | None = None,
) -> int:
    """Count a recipient's messages."""
    conn = _get_conn(conn)
    query = "SELECT COUNT(*) FROM messages WHERE recipient_id = ?"
    if unread_only:
        query += " AND is_read = 0"
    return conn.execute(query, (recipient_id,)).fetchone()[0]


def delete_messages(mids: list[str], conn: sqlite3.Connection | None = None) -> int:
    """Delete messages by id. Returns how many rows this call removed."""
    if not mids:
        return 0
    conn = _get_conn(conn)
    placeholders = ",".join("?" * len(mids))
    with conn:
        cursor = conn.execute(f"DELETE FROM messages WHERE mid IN ({placeholders})", tuple(mids))
    return cursor.rowcount


def mark_messages_read(
    recipient_id: str,
    mids: list[str] | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    """Mark a recipient's messages read. Returns the number of rows that changed."""
    conn = _get_conn(conn)

    query = "UPDATE messages SET is_read = 1 WHERE recipient_id = ? AND is_read = 0"
    params: list[Any] = [recipient_id]

    if mids:
        placeholders = ",".join("?" * len(mids))
        query += f" AND mid IN ({placeholders})"
        params.extend(mids)

    with conn:
        cursor = conn.execute(query, tuple(params))
    return cursor.rowcount


def count_messages_involving(code: str, conn: sqlite3.Connection | None = None) -> int:
    """Count messages sent or received by an identity."""
    conn = _get_conn(conn)
    return conn.execute(
        "SELECT COUNT(*) FROM messages WHERE sender_id = ? OR recipient_id = ?", (code, code)
    ).fetchone()[0]
