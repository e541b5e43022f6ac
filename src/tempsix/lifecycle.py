"""Identity lifecycle for tempsix.

State machine per identity:

    ACTIVE --(manual/beacon delete, or idle past the inactivity threshold)-->
    MARKED_FOR_DELETION --(grace window elapsed, swept)--> PURGED

An immediate delete request purges from any state. Purging cascades: every
message the identity sent or received is deleted, then the identity itself.

Heartbeats refresh last_active_at but never clear a mark. A marked identity is
purged once its grace window elapses, however active it has been since.

Sweep order:
    1. purge every marked identity past its grace window
    2. mark every unmarked identity idle past the inactivity threshold
Identities marked in step 2 carry marked_at = now, so the same pass never
purges them.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from . import db
from .errors import InvalidReason, UserNotFound
from .metrics import metrics

if TYPE_CHECKING:
    from .options import RelayOptions

logger = logging.getLogger(__name__)

INACTIVITY_THRESHOLD = timedelta(minutes=15)
GRACE_WINDOW = timedelta(minutes=2)
SWEEP_INTERVAL_SECONDS = 300.0

REASON_INACTIVITY = "inactivity"
REASON_MANUAL = "manual"
REASON_BEACON = "beacon"
DELETE_REASONS = (REASON_INACTIVITY, REASON_MANUAL, REASON_BEACON)


def exists(user_id: str, conn: sqlite3.Connection | None = None) -> bool:
    """True while the identity is live (marked identities included)."""
    with db.store_operation("exists"):
        return db.identity_exists(user_id, conn=conn)


def touch(
    user_id: str,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> str:
    """Heartbeat: refresh last_active_at and return it.

    Raises:
        UserNotFound
    """
    with db.store_operation("heartbeat"):
        stamp = db.touch_identity(user_id, now=now, conn=conn)
    if stamp is None:
        raise UserNotFound()
    return stamp


def purge_identity(user_id: str, conn: sqlite3.Connection | None = None) -> dict:
    """Delete an identity and all messages it sent or received.

    Returns {deleted_messages, was_deleted}. Purging an absent identity is a no-op.
    """
    with db.store_operation("purge"):
        deleted_messages, was_deleted = db.purge_identity(user_id, conn=conn)

    if was_deleted:
        metrics.increment("identities_purged")
        logger.info(f"Deleted user {user_id} and {deleted_messages} associated messages")

    return {"deleted_messages": deleted_messages, "was_deleted": was_deleted}


def delete_identity(
    user_id: str,
    immediate: bool = False,
    reason: str = REASON_MANUAL,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Delete (immediate) or mark (deferred) an identity.

    Idempotent: an identity that no longer exists is reported as a successful
    no-op, and marking an already-marked identity keeps its original marked_at
    and reason. The returned reason is the one recorded on the identity.

    Returns:
        {user_id, deleted_messages, was_deleted, reason}

    Raises:
        InvalidReason: reason is not one of DELETE_REASONS.
    """
    if reason not in DELETE_REASONS:
        raise InvalidReason(f"Unknown deletion reason: {reason!r}")

    result = {
        "user_id": user_id,
        "deleted_messages": 0,
        "was_deleted": False,
        "reason": reason,
    }

    if not exists(user_id, conn=conn):
        logger.debug(f"User {user_id} already deleted or never existed")
        return result

    if immediate:
        result.update(purge_identity(user_id, conn=conn))
        return result

    with db.store_operation("mark"):
        transitioned = db.mark_identity(user_id, reason, now=now, conn=conn)

    if transitioned:
        metrics.increment("identities_marked")
        logger.info(f"Marked user {user_id} for deletion ({reason})")
        return result

    with db.store_operation("get_identity"):
        identity = db.get_identity(user_id, conn=conn)
    if identity is not None and identity["delete_reason"]:
        result["reason"] = identity["delete_reason"]
    return result


@dataclass
class SweepReport:
    """Outcome of one sweep pass."""

    purged: list[str] = field(default_factory=list)
    marked: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    deleted_messages: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "purged": list(self.purged),
            "marked": list(self.marked),
            "failed": list(self.failed),
            "deleted_messages": self.deleted_messages,
            "dry_run": self.dry_run,
        }


def sweep(
    now: datetime | None = None,
    inactivity: timedelta = INACTIVITY_THRESHOLD,
    grace: timedelta = GRACE_WINDOW,
    dry_run: bool = False,
    conn: sqlite3.Connection | None = None,
) -> SweepReport:
    """Advance the lifecycle state machine for every identity.

    Each identity is handled independently: a failure is logged, recorded in
    ``report.failed`` and the sweep moves on.

    Args:
        now: Reference time (defaults to the current time)
        inactivity: Idle time after which an identity gets marked
        grace: Time a marked identity survives before it is purged
        dry_run: Report what would change without writing
    """
    now = now or db.utcnow()
    report = SweepReport(dry_run=dry_run)

    with db.store_operation("sweep_select_purgeable"):
        purgeable = db.list_purgeable_identities(now - grace, conn=conn)

    for identity in purgeable:
        code = identity["code"]
        if dry_run:
            report.purged.append(code)
            with db.store_operation("sweep_count"):
                report.deleted_messages += db.count_messages_involving(code, conn=conn)
            continue
        try:
            outcome = purge_identity(code, conn=conn)
        except Exception:
            logger.exception(f"Sweep failed to purge {code}")
            report.failed.append(code)
            continue
        if outcome["was_deleted"]:
            report.purged.append(code)
        report.deleted_messages += outcome["deleted_messages"]

    with db.store_operation("sweep_select_inactive"):
        inactive = db.list_inactive_identities(now - inactivity, conn=conn)

    for identity in inactive:
        code = identity["code"]
        if dry_run:
            report.marked.append(code)
            continue
        try:
            with db.store_operation("mark"):
                transitioned = db.mark_identity(code, REASON_INACTIVITY, now=now, conn=conn)
        except Exception:
            logger.exception(f"Sweep failed to mark {code}")
            report.failed.append(code)
            continue
        if transitioned:
            metrics.increment("identities_marked")
            report.marked.append(code)

    if not dry_run:
        metrics.increment("sweep_runs")
        metrics.increment("sweep_failures", len(report.failed))

    if report.purged or report.marked or report.failed:
        logger.info(
            f"Sweep{' (dry run)' if dry_run else ''}: purged {len(report.purged)}, "
            f"marked {len(report.marked)}, failed {len(report.failed)}, "
            f"{report.deleted_messages} messages removed"
        )

    return report


class SweepTask:
    """The long-lived periodic sweep.

    Started once at process start and stopped at shutdown. Each run executes
    ``sweep`` in a worker thread (it uses that thread's own connection), so
    request handlers keep running. A failed run is logged and the loop goes on.
    """

    def __init__(
        self,
        interval: float = SWEEP_INTERVAL_SECONDS,
        inactivity: timedelta = INACTIVITY_THRESHOLD,
        grace: timedelta = GRACE_WINDOW,
    ):
        self.interval = interval
        self.inactivity = inactivity
        self.grace = grace
        self.last_report: SweepReport | None = None
        self._shutdown_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    @classmethod
    def from_options(cls, options: RelayOptions) -> "SweepTask":
        return cls(
            interval=options.sweep_interval_seconds,
            inactivity=timedelta(seconds=options.inactivity_seconds),
            grace=timedelta(seconds=options.grace_seconds),
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the sweep loop on the running event loop."""
        if self.running:
            return
        self._shutdown_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"Sweep scheduled every {self.interval:.0f}s")

    async def stop(self) -> None:
        """Signal the loop to stop and wait for the current run to finish."""
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def run_once(self) -> SweepReport | None:
        """Run one sweep off the event loop. Returns None if the run failed."""
        loop = asyncio.get_running_loop()
        try:
            report = await loop.run_in_executor(None, self._sweep_in_thread)
        except Exception:
            metrics.increment("sweep_failures")
            logger.exception("Sweep run failed")
            return None
        self.last_report = report
        return report

    def _sweep_in_thread(self) -> SweepReport:
        return sweep(inactivity=self.inactivity, grace=self.grace)

    async def _run(self) -> None:
        assert self._shutdown_event is not None
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval)
                # Shutdown was signaled
                break
            except asyncio.TimeoutError:
                pass

            await self.run_once()
