"""Tests for appointments and check-ins."""

import tempfile
from datetime import datetime
from pathlib import Path
from types import SimpleNamespace

import pytest

from garage_workflow.core import appointments as appointments_mod
from garage_workflow.core import members as members_mod
from garage_workflow.core import tasks as tasks_mod
from garage_workflow.core.clock import FixedClock
from garage_workflow.db.engine import init_db
from garage_workflow.db.models import AppointmentRequestPayload, AppointmentStatus, CheckInPayload, Role, TaskStatus
from garage_workflow.db.store import Store
from garage_workflow.errors import ConflictError, PermissionDeniedError, ValidationError

ORG = "garage-1"
NOW = datetime(2026, 3, 10, 9, 15)


@pytest.fixture
def store():
    """Create a temporary SQLite-backed store for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield Store(conn, clock=FixedClock(NOW))
        conn.close()


@pytest.fixture
def people(store):
    return SimpleNamespace(
        manager=members_mod.add_member(store, ORG, "Maya Manager", Role.SUPER_MANAGER),
        staff=members_mod.add_member(store, ORG, "Sam Staff", Role.STAFF),
        customer=members_mod.add_member(store, ORG, "Cory Customer", Role.CUSTOMER, phone="050-1234567"),
        other=members_mod.add_member(store, ORG, "Olive Other", Role.CUSTOMER),
    )


def _outbox(store, notice_type):
    return [r["user_id"] for r in store.find("outbox", type=notice_type, order_by="created_at")]


def _book(store, actor, day="2026-03-12", time="10:00", **kwargs):
    return appointments_mod.book_appointment(store, actor, day, time, "Oil change", **kwargs)


class TestBooking:
    def test_customer_books_for_self(self, store, people):
        appt = _book(store, people.customer)
        assert appt.status == AppointmentStatus.PENDING
        assert appt.customer_id == people.customer.id
        assert appt.customer_name == "Cory Customer"
        assert _outbox(store, "NEW_CHECKIN") == [people.manager.id]

    def test_staff_books_walk_in(self, store, people):
        appt = _book(
            store, people.staff,
            customer_name="Walk-in", customer_phone="052-7654321", plate="123-45-678",
        )
        assert appt.customer_id is None
        assert appt.vehicle_plate == "12345678"
        assert appt.vehicle_id is not None
        assert _outbox(store, "NEW_CHECKIN") == []

    def test_time_with_seconds_is_normalized(self, store, people):
        assert _book(store, people.staff, time="08:30:00").appointment_time == "08:30"

    def test_invalid_date_and_time(self, store, people):
        with pytest.raises(ValidationError):
            _book(store, people.staff, day="12/03/2026")
        with pytest.raises(ValidationError):
            _book(store, people.staff, time="8pm")
        assert store.find("appointments") == []


class TestCheckIn:
    def test_check_in_defaults_to_now(self, store, people):
        appt = appointments_mod.submit_check_in(
            store, people.customer, "12-345-67",
            service_types=["BRAKES", "OIL"], vehicle_attrs={"model": "Corolla"}, mileage=82000,
        )
        assert appt.appointment_date == "2026-03-10"
        assert appt.appointment_time == "09:15"
        assert appt.service_type == "BRAKES, OIL"
        assert isinstance(appt.metadata.payload, CheckInPayload)
        assert appt.metadata.payload.mileage == 82000
        assert _outbox(store, "NEW_CHECKIN") == [people.manager.id]

    def test_check_in_refreshes_vehicle(self, store, people):
        appointments_mod.submit_check_in(
            store, people.customer, "1234567", service_types=["OIL"], vehicle_attrs={"model": "Corolla"}
        )
        appointments_mod.submit_check_in(
            store, people.customer, "12-345-67", fault_description="Rattle", vehicle_attrs={"model": "Corolla GLi"}
        )
        rows = store.find("vehicles")
        assert len(rows) == 1
        assert rows[0]["model"] == "Corolla GLi"
        assert rows[0]["owner_id"] == people.customer.id

    def test_check_in_needs_work(self, store, people):
        with pytest.raises(ValidationError):
            appointments_mod.submit_check_in(store, people.customer, "1234567")

    def test_staff_cannot_check_in(self, store, people):
        with pytest.raises(PermissionDeniedError):
            appointments_mod.submit_check_in(store, people.staff, "1234567", service_types=["OIL"])


class TestQueries:
    def test_fetch_pending_ordered(self, store, people):
        late = _book(store, people.customer, day="2026-03-13", time="08:00")
        early = _book(store, people.customer, day="2026-03-12", time="15:00")
        earliest = _book(store, people.customer, day="2026-03-12", time="09:00")
        approved = _book(store, people.customer, day="2026-03-11", time="09:00")
        appointments_mod.approve_appointment(store, approved.id, people.manager)

        pending = appointments_mod.fetch_pending(store, ORG)
        assert [a.id for a in pending] == [earliest.id, early.id, late.id]

    def test_list_by_range(self, store, people):
        _book(store, people.customer, day="2026-03-09")
        inside = _book(store, people.customer, day="2026-03-11")
        found = appointments_mod.list_appointments(store, ORG, "2026-03-10", "2026-03-12")
        assert [a.id for a in found] == [inside.id]


class TestApproval:
    def test_approve_without_task(self, store, people):
        appt = _book(store, people.customer)
        approved, task = appointments_mod.approve_appointment(store, appt.id, people.manager)
        assert approved.status == AppointmentStatus.APPROVED
        assert task is None
        assert _outbox(store, "APPOINTMENT_APPROVED") == [people.customer.id]
        notice = store.find_one("outbox", type="APPOINTMENT_APPROVED")
        assert "2026-03-12" in notice["message"]

    def test_approve_today_message(self, store, people):
        appt = _book(store, people.customer, day="2026-03-10", time="13:00")
        appointments_mod.approve_appointment(store, appt.id, people.manager)
        notice = store.find_one("outbox", type="APPOINTMENT_APPROVED")
        assert "today" in notice["message"]

    def test_approve_and_promote(self, store, people):
        appt = _book(store, people.customer, plate="1234567", description="Noise from the front")
        approved, task = appointments_mod.approve_appointment(store, appt.id, people.manager, create_task_now=True)
        assert approved.task_id == task.id
        assert task.status == TaskStatus.WAITING
        assert task.customer_id == people.customer.id
        assert task.vehicle_id == appt.vehicle_id
        assert task.description == "Noise from the front"
        assert "2026-03-12" in task.title
        payload = task.metadata.payload
        assert isinstance(payload, AppointmentRequestPayload)
        assert payload.source_appointment_id == appt.id
        assert (payload.appointment_date, payload.appointment_time) == ("2026-03-12", "10:00")
        assert _outbox(store, "NEW_TASK") == [people.staff.id]

    def test_only_pending_can_be_approved(self, store, people):
        appt = _book(store, people.customer)
        appointments_mod.approve_appointment(store, appt.id, people.manager)
        with pytest.raises(ConflictError):
            appointments_mod.approve_appointment(store, appt.id, people.manager)

    def test_staff_cannot_approve(self, store, people):
        appt = _book(store, people.customer)
        with pytest.raises(PermissionDeniedError):
            appointments_mod.approve_appointment(store, appt.id, people.staff)


class TestPromotion:
    def test_promote_twice_conflicts(self, store, people):
        appt = _book(store, people.customer)
        appointments_mod.approve_appointment(store, appt.id, people.manager)
        task = appointments_mod.promote_to_task(store, appt.id, people.manager)
        with pytest.raises(ConflictError):
            appointments_mod.promote_to_task(store, appt.id, people.manager)
        assert [r["id"] for r in store.find("tasks")] == [task.id]

    def test_pending_cannot_be_promoted(self, store, people):
        appt = _book(store, people.customer)
        with pytest.raises(ConflictError):
            appointments_mod.promote_to_task(store, appt.id, people.manager)
        assert store.find("tasks") == []

    def test_customer_found_by_phone(self, store, people):
        appt = _book(store, people.staff, customer_name="Cory", customer_phone="0501234567")
        appointments_mod.approve_appointment(store, appt.id, people.manager)
        task = appointments_mod.promote_to_task(store, appt.id, people.manager)
        assert _outbox(store, "APPOINTMENT_APPROVED") == [people.customer.id]
        assert tasks_mod.customer_of(store, task) == people.customer.id


class TestCloseAndReschedule:
    def test_reject_pending_only(self, store, people):
        appt = _book(store, people.customer)
        rejected = appointments_mod.reject_appointment(store, appt.id, people.manager, reason="Closed that day")
        assert rejected.status == AppointmentStatus.REJECTED
        assert _outbox(store, "APPOINTMENT_REJECTED") == [people.customer.id]
        with pytest.raises(ConflictError):
            appointments_mod.cancel_appointment(store, appt.id, people.manager)

    def test_cancel_approved_leaves_task(self, store, people):
        appt = _book(store, people.customer)
        _, task = appointments_mod.approve_appointment(store, appt.id, people.manager, create_task_now=True)
        cancelled = appointments_mod.cancel_appointment(store, appt.id, people.manager)
        assert cancelled.status == AppointmentStatus.CANCELLED
        assert tasks_mod.get_task(store, task.id).status == TaskStatus.WAITING

    def test_customer_cancels_own_pending(self, store, people):
        appt = _book(store, people.customer)
        with pytest.raises(PermissionDeniedError):
            appointments_mod.cancel_appointment(store, appt.id, people.other)
        assert appointments_mod.cancel_appointment(store, appt.id, people.customer).status == AppointmentStatus.CANCELLED

    def test_customer_cannot_cancel_approved(self, store, people):
        appt = _book(store, people.customer)
        appointments_mod.approve_appointment(store, appt.id, people.manager)
        with pytest.raises(ConflictError):
            appointments_mod.cancel_appointment(store, appt.id, people.customer)

    def test_reschedule_moves_linked_task(self, store, people):
        appt = _book(store, people.customer)
        _, task = appointments_mod.approve_appointment(store, appt.id, people.manager, create_task_now=True)
        moved = appointments_mod.reschedule_appointment(store, appt.id, people.manager, "2026-03-14", "16:00")
        assert (moved.appointment_date, moved.appointment_time) == ("2026-03-14", "16:00")
        assert moved.status == AppointmentStatus.APPROVED
        linked = tasks_mod.get_task(store, task.id)
        assert linked.metadata.appointment_date == "2026-03-14"
        assert linked.metadata.appointment_time == "16:00"
        assert linked.status == TaskStatus.WAITING
