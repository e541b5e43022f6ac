"""CLI for tempsix administration.

Runs the server and performs maintenance directly against the configured
database (TEMPSIX_DB / TEMPSIX_CONFIG, or --db):
- serve: run the HTTP API with uvicorn
- sweep: run one lifecycle sweep (optionally as a dry run)
- identity: generate, reserve, check, delete and inspect identities
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import timedelta

import cyclopts

from .errors import RelayError
from .options import RelayConfigError, RelayOptions

app = cyclopts.App(
    name="tempsix",
    help="Anonymous messaging relay with short-lived 6-digit identities",
)

identity_app = cyclopts.App(name="identity", help="Identity operations (local database)")
app.command(identity_app)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_options(config: str | None = None, db_path: str | None = None) -> RelayOptions:
    """Resolve options from --config/--db, falling back to the environment."""
    try:
        if config:
            options = RelayOptions.from_yaml(config)
        else:
            options = RelayOptions.load()
    except (RelayConfigError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)

    if db_path:
        options.db_path = db_path
    return options


def warn_if_in_memory(options: RelayOptions) -> None:
    if options.is_in_memory():
        print(
            "Warning: using an in-memory database; nothing will persist and "
            "concurrent requests may fail with table locks. "
            "Set TEMPSIX_DB or pass --db.",
            file=sys.stderr,
        )


def open_store(options: RelayOptions) -> None:
    """Point the store at the configured database and make sure the schema exists."""
    from . import db

    warn_if_in_memory(options)
    db.configure(options.db_path)
    db.init_db()


def print_json(data):
    """Pretty print JSON data."""
    print(json.dumps(data, indent=2, default=str))


def _fail(error: RelayError) -> None:
    print(f"Error ({error.code}): {error.message}", file=sys.stderr)
    raise SystemExit(1)


# --- Maintenance Commands ---


@app.command
def init_db(*, db: str | None = None, config: str | None = None):
    """Create or migrate the database schema."""
    from . import db as store

    options = load_options(config, db)
    open_store(options)
    print(f"Schema at version {store.get_schema_version()} ({options.db_path})")


@app.command
def sweep(
    *,
    dry_run: bool = False,
    inactivity_minutes: float | None = None,
    grace_minutes: float | None = None,
    db: str | None = None,
    config: str | None = None,
    log_level: str = "INFO",
):
    """Run one lifecycle sweep.

    Purges identities whose grace window has elapsed, then marks identities
    that have been idle past the inactivity threshold.

    --dry-run: Show what would be purged and marked without making changes
    --inactivity-minutes / --grace-minutes: Override the configured thresholds
    """
    from . import lifecycle

    setup_logging(log_level)
    options = load_options(config, db)
    open_store(options)

    report = lifecycle.sweep(
        inactivity=timedelta(minutes=inactivity_minutes or options.inactivity_minutes),
        grace=timedelta(minutes=grace_minutes if grace_minutes is not None else options.grace_minutes),
        dry_run=dry_run,
    )

    prefix = "Would purge" if dry_run else "Purged"
    print(f"{prefix} {len(report.purged)} identities ({report.deleted_messages} messages)")
    prefix = "Would mark" if dry_run else "Marked"
    print(f"{prefix} {len(report.marked)} identities for deletion")
    if report.failed:
        print(f"Failed: {', '.join(report.failed)}", file=sys.stderr)
        raise SystemExit(1)


# --- Identity Commands ---


@identity_app.command(name="generate")
def identity_generate(*, db: str | None = None, config: str | None = None):
    """Allocate a random identity."""
    from . import allocator

    options = load_options(config, db)
    open_store(options)
    try:
        code = allocator.allocate(max_attempts=options.max_allocation_attempts)
    except RelayError as e:
        _fail(e)
    print(code)


@identity_app.command(name="reserve")
def identity_reserve(code: str, *, db: str | None = None, config: str | None = None):
    """Reserve a specific 6-digit identity."""
    from . import allocator

    open_store(load_options(config, db))
    try:
        identity = allocator.reserve(code)
    except RelayError as e:
        _fail(e)
    print_json(identity)


@identity_app.command(name="check")
def identity_check(code: str, *, db: str | None = None, config: str | None = None):
    """Check whether a code is available."""
    from . import allocator

    open_store(load_options(config, db))
    available = allocator.is_available(code)
    print(f"{code}: {'available' if available else 'unavailable'}")


@identity_app.command(name="stats")
def identity_stats(code: str, *, db: str | None = None, config: str | None = None):
    """Show an identity's inbox statistics."""
    from . import relay

    open_store(load_options(config, db))
    try:
        stats = relay.get_stats(code)
    except RelayError as e:
        _fail(e)
    print_json(stats)


@identity_app.command(name="delete")
def identity_delete(
    code: str,
    *,
    immediate: bool = False,
    reason: str = "manual",
    db: str | None = None,
    config: str | None = None,
):
    """Delete an identity (--immediate) or mark it for deletion."""
    from . import lifecycle

    open_store(load_options(config, db))
    try:
        result = lifecycle.delete_identity(code, immediate=immediate, reason=reason)
    except RelayError as e:
        _fail(e)
    print_json(result)


# --- Server Command ---


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    config: str | None = None,
    db: str | None = None,
    log_level: str = "INFO",
):
    """Run the tempsix server.

    The lifecycle sweep runs inside the server process unless
    TEMPSIX_SWEEP_ENABLED=0.
    """
    import uvicorn

    setup_logging(log_level)

    # The app reads its options at import time in the server process
    if config:
        os.environ["TEMPSIX_CONFIG"] = config
    if db:
        os.environ["TEMPSIX_DB"] = db
    warn_if_in_memory(load_options(config, db))

    uvicorn.run(
        "tempsix.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    app()
