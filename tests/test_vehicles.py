"""Tests for vehicle resolution and the member roster."""

import tempfile
from datetime import datetime
from pathlib import Path

import pytest

from garage_workflow.core import members as members_mod
from garage_workflow.core import tasks as tasks_mod
from garage_workflow.core import vehicles as vehicles_mod
from garage_workflow.core.clock import FixedClock
from garage_workflow.db.engine import init_db
from garage_workflow.db.models import Role
from garage_workflow.db.store import Store
from garage_workflow.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError

ORG = "garage-1"


@pytest.fixture
def store():
    """Create a temporary SQLite-backed store for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield Store(conn, clock=FixedClock(datetime(2026, 3, 10, 9, 0)))
        conn.close()


class TestPlates:
    def test_normalize(self):
        assert vehicles_mod.normalize_plate("12-345-67") == "1234567"
        assert vehicles_mod.normalize_plate(" 123 45 678 ") == "12345678"

    def test_too_short(self):
        with pytest.raises(ValidationError):
            vehicles_mod.normalize_plate("12-34")

    def test_format(self):
        assert vehicles_mod.format_plate("1234567") == "12-345-67"
        assert vehicles_mod.format_plate("12345678") == "123-45-678"


class TestFindOrCreate:
    def test_creates_once_per_plate(self, store):
        first = vehicles_mod.find_or_create_vehicle(store, ORG, "12-345-67", {"model": "Civic"})
        second = vehicles_mod.find_or_create_vehicle(store, ORG, "1234567")
        assert first.id == second.id
        assert second.model == "Civic"
        assert len(store.find("vehicles")) == 1

    def test_refreshes_non_empty_fields(self, store):
        vehicles_mod.find_or_create_vehicle(store, ORG, "1234567", {"model": "Civic", "color": "Red"})
        refreshed = vehicles_mod.find_or_create_vehicle(
            store, ORG, "1234567", {"model": "Civic Type R", "color": "", "mileage": 5}
        )
        assert refreshed.model == "Civic Type R"
        assert refreshed.color == "Red"

    def test_lookup_by_formatted_plate(self, store):
        vehicle = vehicles_mod.find_or_create_vehicle(store, ORG, "1234567")
        assert vehicles_mod.get_vehicle_by_plate(store, ORG, "12-345-67").id == vehicle.id
        assert vehicles_mod.get_vehicle_by_plate(store, "garage-2", "12-345-67") is None

    def test_plates_scoped_per_garage(self, store):
        a = vehicles_mod.find_or_create_vehicle(store, ORG, "1234567")
        b = vehicles_mod.find_or_create_vehicle(store, "garage-2", "1234567")
        assert a.id != b.id

    def test_lost_insert_race_rereads(self, store, monkeypatch):
        winner = vehicles_mod.find_or_create_vehicle(store, ORG, "1234567", {"model": "Civic"})
        original = store.find_one
        calls = []

        def miss_first(table, order_by=None, **filters):
            calls.append(table)
            if table == "vehicles" and len(calls) == 1:
                return None
            return original(table, order_by=order_by, **filters)

        monkeypatch.setattr(store, "find_one", miss_first)
        resolved = vehicles_mod.find_or_create_vehicle(store, ORG, "12-345-67")
        assert resolved.id == winner.id


class TestRemoveVehicle:
    def test_blocked_by_open_task(self, store):
        manager = members_mod.add_member(store, ORG, "Maya", Role.SUPER_MANAGER)
        task = tasks_mod.create_task(store, manager, "Service", plate="1234567")
        with pytest.raises(ConflictError):
            vehicles_mod.remove_vehicle(store, task.vehicle_id, manager)

        tasks_mod.complete(store, task.id, manager)
        vehicles_mod.remove_vehicle(store, task.vehicle_id, manager)
        assert vehicles_mod.get_vehicle(store, task.vehicle_id) is None
        assert tasks_mod.get_task(store, task.id).vehicle_id is None

    def test_customer_removes_only_own(self, store):
        owner = members_mod.add_member(store, ORG, "Owner", Role.CUSTOMER)
        other = members_mod.add_member(store, ORG, "Other", Role.CUSTOMER)
        vehicle = vehicles_mod.find_or_create_vehicle(store, ORG, "1234567", owner_id=owner.id)
        with pytest.raises(PermissionDeniedError):
            vehicles_mod.remove_vehicle(store, vehicle.id, other)
        vehicles_mod.remove_vehicle(store, vehicle.id, owner)
        assert vehicles_mod.list_vehicles(store, ORG) == []


class TestMembers:
    def test_find_by_phone_ignores_formatting(self, store):
        member = members_mod.add_member(store, ORG, "Cory", Role.CUSTOMER, phone="+972 50-123-4567")
        assert members_mod.find_by_phone(store, ORG, "972501234567").id == member.id
        assert members_mod.find_by_phone(store, ORG, "") is None
        assert members_mod.find_by_phone(store, "garage-2", "972501234567") is None

    def test_roles(self, store):
        members_mod.add_member(store, ORG, "Maya", Role.SUPER_MANAGER)
        members_mod.add_member(store, ORG, "Sam", "STAFF")
        assert [m.full_name for m in members_mod.managers_of(store, ORG)] == ["Maya"]
        assert [m.full_name for m in members_mod.staff_of(store, ORG)] == ["Sam"]
        with pytest.raises(ValidationError):
            members_mod.add_member(store, ORG, "Nobody", "JANITOR")

    def test_require_member(self, store):
        member = members_mod.add_member(store, ORG, "Sam", Role.STAFF, member_id="stf")
        assert members_mod.require_member(store, "stf") == member
        with pytest.raises(NotFoundError):
            members_mod.require_member(store, "ghost")
