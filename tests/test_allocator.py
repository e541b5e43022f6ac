"""Tests for identity allocation."""

import sqlite3

import pytest

from tempsix import allocator, db
from tempsix.errors import AllocationExhausted, AlreadyTaken, InvalidFormat
from tempsix.metrics import metrics


class TestCodeFormat:
    @pytest.mark.parametrize("code", ["100000", "999999", "123456", "000001"])
    def test_valid_codes(self, code):
        assert allocator.is_valid_code(code)

    @pytest.mark.parametrize(
        "code",
        ["12345", "1234567", "12345a", "", " 123456", "123456\n", "١٢٣٤٥٦", None, 123456],
    )
    def test_invalid_codes(self, code):
        """Anything but exactly six ASCII digits is rejected."""
        assert not allocator.is_valid_code(code)

    def test_generated_codes_in_range(self):
        for _ in range(200):
            code = allocator.generate_code()
            assert allocator.is_valid_code(code)
            assert allocator.CODE_MIN <= int(code) <= allocator.CODE_MAX


class TestAllocate:
    def test_allocate_creates_identity(self):
        code = allocator.allocate()

        assert allocator.is_valid_code(code)
        identity = db.get_identity(code)
        assert identity is not None
        assert identity["marked_for_deletion"] is False
        assert identity["created_at"] == identity["last_active_at"]
        assert metrics.get_counter("identities_allocated") == 1

    def test_allocate_skips_taken_codes(self, monkeypatch):
        """A taken code counts as a collision and the next draw is used."""
        allocator.reserve("111111")
        draws = iter(["111111", "111111", "222222"])
        monkeypatch.setattr(allocator, "generate_code", lambda: next(draws))

        assert allocator.allocate() == "222222"
        assert metrics.get_counter("allocation_collisions") == 2

    def test_allocate_exhausted(self, monkeypatch):
        """Every attempt colliding raises AllocationExhausted."""
        allocator.reserve("111111")
        calls = []

        def always_taken():
            calls.append(1)
            return "111111"

        monkeypatch.setattr(allocator, "generate_code", always_taken)

        with pytest.raises(AllocationExhausted) as exc_info:
            allocator.allocate(max_attempts=10)

        assert len(calls) == 10
        assert exc_info.value.status == 503
        assert exc_info.value.code == "SERVICE_UNAVAILABLE"
        assert db.count_identities() == 1

    def test_lost_insert_race_is_a_collision(self, monkeypatch):
        """An IntegrityError on insert is retried, not surfaced."""
        draws = iter(["333333", "444444"])
        monkeypatch.setattr(allocator, "generate_code", lambda: next(draws))

        real_create = db.create_identity

        def racing_create(code, now=None, conn=None):
            if code == "333333":
                # A concurrent allocator wins the insert after our existence check
                real_create(code, now=now, conn=conn)
                raise sqlite3.IntegrityError("UNIQUE constraint failed: identities.code")
            return real_create(code, now=now, conn=conn)

        monkeypatch.setattr(db, "create_identity", racing_create)

        assert allocator.allocate() == "444444"
        assert metrics.get_counter("allocation_collisions") == 1

    def test_allocated_codes_are_unique(self):
        codes = {allocator.allocate() for _ in range(50)}
        assert len(codes) == 50
        assert db.count_identities() == 50


class TestReserve:
    def test_reserve(self, t0):
        identity = allocator.reserve("123456", now=t0)

        assert identity["code"] == "123456"
        assert identity["created_at"] == db.to_iso(t0)
        assert identity["last_active_at"] == db.to_iso(t0)
        assert identity["marked_for_deletion"] is False

    def test_reserve_invalid_format(self):
        with pytest.raises(InvalidFormat) as exc_info:
            allocator.reserve("12345")
        assert exc_info.value.status == 400
        assert db.count_identities() == 0

    def test_reserve_taken(self):
        allocator.reserve("123456")
        with pytest.raises(AlreadyTaken) as exc_info:
            allocator.reserve("123456")
        assert exc_info.value.status == 409
        assert exc_info.value.code == "ID_TAKEN"

    def test_reserve_marked_code_is_taken(self):
        """A marked identity still holds its code until purged."""
        allocator.reserve("123456")
        db.mark_identity("123456", "manual")

        with pytest.raises(AlreadyTaken):
            allocator.reserve("123456")

    def test_reserve_lost_race(self, monkeypatch):
        def racing_create(code, now=None, conn=None):
            raise sqlite3.IntegrityError("UNIQUE constraint failed: identities.code")

        monkeypatch.setattr(db, "create_identity", racing_create)

        with pytest.raises(AlreadyTaken):
            allocator.reserve("123456")

    def test_lost_race_releases_write_lock(self, tmp_path, monkeypatch):
        """Losing the insert race rolls back, so other connections can still write."""
        path = tmp_path / "race.db"
        with db.scoped_connection(path) as a, db.scoped_connection(path) as b:
            db.init_db_with_conn(a)
            db.create_identity("123456", conn=b)

            # a checks before b inserts, then loses the insert
            monkeypatch.setattr(db, "identity_exists", lambda code, conn=None: False)
            with pytest.raises(AlreadyTaken):
                allocator.reserve("123456", conn=a)
            monkeypatch.undo()

            assert not a.in_transaction
            assert allocator.reserve("654321", conn=b)["code"] == "654321"
            assert db.count_identities(conn=a) == 2

class TestIsAvailable:
    def test_available(self):
        assert allocator.is_available("123456")

    def test_unavailable_after_reserve(self):
        allocator.reserve("123456")
        assert not allocator.is_available("123456")

    def test_malformed_is_unavailable(self):
        assert not allocator.is_available("abc")

    def test_available_again_after_purge(self):
        allocator.reserve("123456")
        db.purge_identity("123456")
        assert allocator.is_available("123456")
