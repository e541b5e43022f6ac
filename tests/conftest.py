"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
os.environ["TEMPSIX_DB"] = ":memory:"
os.environ["TEMPSIX_SWEEP_ENABLED"] = "0"
os.environ.pop("TEMPSIX_CONFIG", None)


from datetime import datetime, timezone

import pytest
from tempsix import db
from tempsix.metrics import metrics


@pytest.fixture(autouse=True, scope="function")
def reset_database():
    """Reset database and metrics before each test function.

    For in-memory shared cache databases, we need to drop the tables
    explicitly, since close_db() doesn't destroy the shared cache.
    """
    db.configure(None)
    conn = db.get_connection()
    conn.executescript("""
        DROP TABLE IF EXISTS messages;
        DROP TABLE IF EXISTS identities;
        DROP TABLE IF EXISTS schema_version;
    """)
    conn.commit()

    db.init_db_with_conn(conn)
    metrics.reset()
    yield
    db.close_db()  # Cleanup after test


@pytest.fixture
def t0():
    """A fixed reference time for clock-dependent tests."""
    return datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
