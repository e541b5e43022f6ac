"""Tests for identity deletion, heartbeats and the lifecycle sweep."""

import asyncio
from datetime import timedelta

import pytest

from tempsix import allocator, db, lifecycle, relay
from tempsix.errors import InvalidReason, StoreError, UserNotFound
from tempsix.metrics import metrics


def reserve_at(code, when):
    return allocator.reserve(code, now=when)


class TestHeartbeat:
    def test_touch_updates_last_active(self, t0):
        reserve_at("111111", t0)
        later = t0 + timedelta(minutes=3)

        assert lifecycle.touch("111111", now=later) == db.to_iso(later)
        assert db.get_identity("111111")["last_active_at"] == db.to_iso(later)

    def test_touch_unknown(self):
        with pytest.raises(UserNotFound):
            lifecycle.touch("999999")

    def test_touch_does_not_clear_mark(self, t0):
        reserve_at("111111", t0)
        lifecycle.delete_identity("111111", now=t0)

        lifecycle.touch("111111", now=t0 + timedelta(minutes=1))

        identity = db.get_identity("111111")
        assert identity["marked_for_deletion"] is True
        assert identity["marked_at"] == db.to_iso(t0)


class TestExists:
    def test_exists(self):
        allocator.reserve("111111")
        assert lifecycle.exists("111111")
        assert not lifecycle.exists("222222")

    def test_marked_identity_still_exists(self):
        allocator.reserve("111111")
        lifecycle.delete_identity("111111")
        assert lifecycle.exists("111111")


class TestDeleteIdentity:
    def test_immediate_delete_cascades(self, t0):
        """Immediate delete removes the identity and every message it sent or received."""
        reserve_at("111111", t0)
        reserve_at("222222", t0)
        relay.send("111111", "222222", "one", now=t0)
        relay.send("111111", "222222", "two", now=t0)
        relay.send("222222", "111111", "three", now=t0)

        result = lifecycle.delete_identity("111111", immediate=True)

        assert result == {
            "user_id": "111111",
            "deleted_messages": 3,
            "was_deleted": True,
            "reason": "manual",
        }
        assert not lifecycle.exists("111111")
        assert db.count_messages_involving("111111") == 0
        assert lifecycle.exists("222222")
        assert metrics.get_counter("identities_purged") == 1

    def test_delete_is_idempotent(self, t0):
        reserve_at("111111", t0)
        lifecycle.delete_identity("111111", immediate=True)

        again = lifecycle.delete_identity("111111", immediate=True)
        assert again == {
            "user_id": "111111",
            "deleted_messages": 0,
            "was_deleted": False,
            "reason": "manual",
        }

    def test_delete_never_existed(self):
        result = lifecycle.delete_identity("999999")
        assert result["was_deleted"] is False

    def test_deferred_delete_marks(self, t0):
        reserve_at("111111", t0)

        result = lifecycle.delete_identity("111111", reason="beacon", now=t0)

        assert result["was_deleted"] is False
        assert result["reason"] == "beacon"
        identity = db.get_identity("111111")
        assert identity["marked_for_deletion"] is True
        assert identity["marked_at"] == db.to_iso(t0)
        assert identity["delete_reason"] == "beacon"
        assert metrics.get_counter("identities_marked") == 1

    def test_second_mark_keeps_first_timestamp(self, t0):
        reserve_at("111111", t0)
        lifecycle.delete_identity("111111", now=t0)
        result = lifecycle.delete_identity(
            "111111", reason="beacon", now=t0 + timedelta(minutes=1)
        )

        # The reported reason is the one on record
        assert result["reason"] == "manual"

        identity = db.get_identity("111111")
        assert identity["marked_at"] == db.to_iso(t0)
        assert identity["delete_reason"] == "manual"
        assert metrics.get_counter("identities_marked") == 1

    def test_immediate_purges_marked_identity(self, t0):
        reserve_at("111111", t0)
        lifecycle.delete_identity("111111", now=t0)

        result = lifecycle.delete_identity("111111", immediate=True)
        assert result["was_deleted"] is True
        assert not lifecycle.exists("111111")

    def test_unknown_reason(self):
        allocator.reserve("111111")
        with pytest.raises(InvalidReason) as exc_info:
            lifecycle.delete_identity("111111", reason="bored")
        assert exc_info.value.status == 400

    def test_store_failure_raises_store_error(self, monkeypatch):
        import sqlite3

        allocator.reserve("111111")

        def broken_purge(code, conn=None):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(db, "purge_identity", broken_purge)

        with pytest.raises(StoreError):
            lifecycle.delete_identity("111111", immediate=True)

    def test_failed_purge_rolls_back(self, tmp_path):
        """A purge that fails halfway keeps the messages and releases the connection."""
        with db.scoped_connection(tmp_path / "purge.db") as conn:
            db.init_db_with_conn(conn)
            allocator.reserve("111111", conn=conn)
            allocator.reserve("222222", conn=conn)
            relay.send("111111", "222222", "hi", conn=conn)
            conn.executescript("""
                CREATE TRIGGER refuse_identity_delete BEFORE DELETE ON identities
                BEGIN SELECT RAISE(ABORT, 'refused'); END;
            """)

            with pytest.raises(StoreError):
                lifecycle.delete_identity("111111", immediate=True, conn=conn)

            assert not conn.in_transaction
            assert db.count_messages_involving("111111", conn=conn) == 1


class TestSweep:
    def test_idle_identity_marked_then_purged(self, t0):
        reserve_at("111111", t0)
        reserve_at("222222", t0)
        relay.send("111111", "222222", "hi", now=t0)

        # 16 minutes later: both are idle, so both get marked
        first = t0 + timedelta(minutes=16)
        report = lifecycle.sweep(now=first)
        assert sorted(report.marked) == ["111111", "222222"]
        assert report.purged == []
        assert db.get_identity("111111")["delete_reason"] == "inactivity"

        # Still inside the grace window
        report = lifecycle.sweep(now=first + timedelta(minutes=1))
        assert report.purged == []
        assert report.marked == []

        # Grace window elapsed
        report = lifecycle.sweep(now=first + timedelta(minutes=3))
        assert sorted(report.purged) == ["111111", "222222"]
        assert report.deleted_messages == 1
        assert db.count_identities() == 0

    def test_active_identity_untouched(self, t0):
        reserve_at("111111", t0)
        lifecycle.touch("111111", now=t0 + timedelta(minutes=10))

        report = lifecycle.sweep(now=t0 + timedelta(minutes=16))
        assert report.marked == []
        assert db.get_identity("111111")["marked_for_deletion"] is False

    def test_heartbeat_does_not_save_marked_identity(self, t0):
        reserve_at("111111", t0)
        lifecycle.delete_identity("111111", now=t0)
        lifecycle.touch("111111", now=t0 + timedelta(minutes=2, seconds=30))

        report = lifecycle.sweep(now=t0 + timedelta(minutes=3))
        assert report.purged == ["111111"]

    def test_freshly_marked_not_purged_in_same_pass(self, t0):
        """Purge runs before marking, so a new mark always gets its grace window."""
        reserve_at("111111", t0)

        report = lifecycle.sweep(now=t0 + timedelta(hours=5))
        assert report.marked == ["111111"]
        assert report.purged == []
        assert lifecycle.exists("111111")

    def test_custom_thresholds(self, t0):
        reserve_at("111111", t0)

        report = lifecycle.sweep(
            now=t0 + timedelta(minutes=2),
            inactivity=timedelta(minutes=1),
            grace=timedelta(0),
        )
        assert report.marked == ["111111"]

    def test_dry_run_changes_nothing(self, t0):
        reserve_at("111111", t0)
        reserve_at("222222", t0)
        relay.send("111111", "222222", "hi", now=t0)
        lifecycle.delete_identity("111111", now=t0)

        report = lifecycle.sweep(now=t0 + timedelta(minutes=16), dry_run=True)

        assert report.dry_run is True
        assert report.purged == ["111111"]
        assert report.marked == ["222222"]
        assert report.deleted_messages == 1
        assert lifecycle.exists("111111")
        assert db.get_identity("222222")["marked_for_deletion"] is False
        assert metrics.get_counter("sweep_runs") == 0

    def test_failure_is_isolated(self, t0, monkeypatch):
        """One identity failing to purge does not stop the rest of the sweep."""
        import sqlite3

        for code in ("111111", "222222", "333333"):
            reserve_at(code, t0)
            lifecycle.delete_identity(code, now=t0)

        real_purge = db.purge_identity

        def flaky_purge(code, conn=None):
            if code == "222222":
                raise sqlite3.OperationalError("database is locked")
            return real_purge(code, conn=conn)

        monkeypatch.setattr(db, "purge_identity", flaky_purge)

        report = lifecycle.sweep(now=t0 + timedelta(minutes=5))

        assert sorted(report.purged) == ["111111", "333333"]
        assert report.failed == ["222222"]
        assert lifecycle.exists("222222")
        assert metrics.get_counter("sweep_failures") == 1
        assert metrics.get_counter("sweep_runs") == 1

    def test_report_to_dict(self):
        report = lifecycle.SweepReport(purged=["111111"], deleted_messages=2)
        assert report.to_dict() == {
            "purged": ["111111"],
            "marked": [],
            "failed": [],
            "deleted_messages": 2,
            "dry_run": False,
        }


class TestSweepTask:
    def test_from_options(self):
        from tempsix.options import RelayOptions

        task = lifecycle.SweepTask.from_options(
            RelayOptions(inactivity_minutes=30, grace_minutes=5, sweep_interval_seconds=60)
        )
        assert task.interval == 60
        assert task.inactivity == timedelta(minutes=30)
        assert task.grace == timedelta(minutes=5)

    def test_run_once(self):
        allocator.reserve("111111")
        db.mark_identity("111111", "manual", now=db.utcnow() - timedelta(minutes=10))

        task = lifecycle.SweepTask(interval=3600)
        report = asyncio.run(task.run_once())

        assert report is not None
        assert report.purged == ["111111"]
        assert task.last_report is report

    def test_run_once_survives_failure(self, monkeypatch):
        def broken_sweep(**kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(lifecycle, "sweep", broken_sweep)

        task = lifecycle.SweepTask(interval=3600)
        assert asyncio.run(task.run_once()) is None
        assert metrics.get_counter("sweep_failures") == 1

    def test_start_and_stop(self):
        async def scenario():
            task = lifecycle.SweepTask(interval=3600)
            task.start()
            assert task.running
            await task.stop()
            return task

        task = asyncio.run(scenario())
        assert not task.running
        assert task.last_report is None

    def test_loop_runs_each_interval(self):
        allocator.reserve("111111")
        db.mark_identity("111111", "manual", now=db.utcnow() - timedelta(minutes=10))

        async def scenario():
            task = lifecycle.SweepTask(interval=0.05)
            task.start()
            for _ in range(100):
                if task.last_report is not None:
                    break
                await asyncio.sleep(0.02)
            await task.stop()
            return task

        task = asyncio.run(scenario())
        assert task.last_report is not None
        assert not lifecycle.exists("111111")
