"""Appointment requests, check-ins, and their promotion into tasks."""

import logging

from garage_workflow.core import members, notifications, tasks, vehicles
from garage_workflow.core.dates import validate_date, validate_time
from garage_workflow.db.models import (
    Appointment,
    AppointmentRequestPayload,
    AppointmentStatus,
    CheckInPayload,
    Member,
    Role,
    Task,
    TaskMetadata,
    TaskStatus,
    parse_dt,
)
from garage_workflow.db.store import Store
from garage_workflow.errors import ConflictError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)


def book_appointment(
    store: Store,
    actor: Member,
    appointment_date: str,
    appointment_time: str,
    service_type: str,
    description: str | None = None,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    customer_id: str | None = None,
    plate: str | None = None,
    vehicle_attrs: dict | None = None,
    mileage: int | None = None,
) -> Appointment:
    """Book a slot. Customers book for themselves; staff may book for anyone."""
    appointment_date = validate_date(appointment_date)
    appointment_time = validate_time(appointment_time)
    if not (service_type or "").strip():
        raise ValidationError("Service type is required")
    if actor.is_customer:
        customer_id = actor.id
        customer_name = customer_name or actor.full_name
        customer_phone = customer_phone or actor.phone
    if plate:
        vehicles.normalize_plate(plate)

    with store.transaction():
        vehicle = None
        if plate:
            vehicle = vehicles.find_or_create_vehicle(
                store, actor.org_id, plate, vehicle_attrs, owner_id=customer_id
            )
        row = store.insert("appointments", {
            "org_id": actor.org_id,
            "customer_id": customer_id,
            "customer_name": customer_name,
            "customer_phone": customer_phone,
            "vehicle_id": vehicle.id if vehicle else None,
            "vehicle_plate": vehicle.plate if vehicle else None,
            "service_type": service_type.strip(),
            "description": description,
            "appointment_date": appointment_date,
            "appointment_time": appointment_time,
            "mileage": mileage,
            "created_by": actor.id,
        })
        if actor.is_customer:
            notifications.enqueue(
                store,
                actor.org_id,
                [m.id for m in members.managers_of(store, actor.org_id)],
                "New appointment request",
                f"{actor.full_name} asked for {appointment_date} {appointment_time}",
                "NEW_CHECKIN",
                reference_id=row["id"],
                actor_id=actor.id,
            )

    logger.info("Appointment %s booked by %s for %s %s", row["id"], actor.id, appointment_date, appointment_time)
    return _row_to_appointment(row)


def submit_check_in(
    store: Store,
    actor: Member,
    plate: str,
    service_types: list[str] | None = None,
    fault_description: str | None = None,
    vehicle_attrs: dict | None = None,
    owner_name: str | None = None,
    owner_phone: str | None = None,
    owner_email: str | None = None,
    owner_address: str | None = None,
    mileage: int | None = None,
    payment_method: str | None = None,
    appointment_date: str | None = None,
    appointment_time: str | None = None,
) -> Appointment:
    """A customer drops off a vehicle. The check-in waits for a manager."""
    if not actor.is_customer:
        raise PermissionDeniedError("Only customers submit check-ins")
    if not plate:
        raise ValidationError("Licence plate is required")
    service_types = [s for s in (service_types or []) if s]
    if not service_types and not (fault_description or "").strip():
        raise ValidationError("Select at least one service or describe the fault")
    vehicles.normalize_plate(plate)

    now = store.clock.now()
    appointment_date = validate_date(appointment_date) if appointment_date else now.date().isoformat()
    appointment_time = validate_time(appointment_time) if appointment_time else now.strftime("%H:%M")
    payload = CheckInPayload(
        owner_name=owner_name or actor.full_name,
        owner_phone=owner_phone or actor.phone,
        owner_email=owner_email,
        owner_address=owner_address,
        mileage=mileage,
        service_types=service_types,
        fault_description=fault_description,
        payment_method=payment_method,
        appointment_date=appointment_date,
        appointment_time=appointment_time,
        submitted_at=now.isoformat(),
    )

    attrs = dict(vehicle_attrs or {})
    attrs.setdefault("owner_name", payload.owner_name)

    with store.transaction():
        vehicle = vehicles.find_or_create_vehicle(store, actor.org_id, plate, attrs, owner_id=actor.id)
        row = store.insert("appointments", {
            "org_id": actor.org_id,
            "customer_id": actor.id,
            "customer_name": payload.owner_name,
            "customer_phone": payload.owner_phone,
            "vehicle_id": vehicle.id,
            "vehicle_plate": vehicle.plate,
            "service_type": ", ".join(service_types) or "Diagnosis",
            "description": fault_description,
            "appointment_date": appointment_date,
            "appointment_time": appointment_time,
            "mileage": mileage,
            "metadata": TaskMetadata(payload=payload).to_dict(),
            "created_by": actor.id,
        })
        notifications.enqueue(
            store,
            actor.org_id,
            [m.id for m in members.managers_of(store, actor.org_id)],
            "New check-in",
            f"{payload.owner_name} checked in vehicle {vehicles.format_plate(vehicle.plate)}",
            "NEW_CHECKIN",
            reference_id=row["id"],
            actor_id=actor.id,
        )

    logger.info("Check-in %s submitted by %s for plate %s", row["id"], actor.id, vehicle.plate)
    return _row_to_appointment(row)


def get_appointment(store: Store, appointment_id: str) -> Appointment | None:
    row = store.find_one("appointments", id=appointment_id)
    if not row:
        return None
    return _row_to_appointment(row)


def require_appointment(store: Store, appointment_id: str) -> Appointment:
    return _row_to_appointment(store.get("appointments", appointment_id))


def list_appointments(
    store: Store,
    org_id: str,
    date_from: str | None = None,
    date_to: str | None = None,
    status: AppointmentStatus | str | None = None,
    customer_id: str | None = None,
) -> list[Appointment]:
    """List appointments in a date range, earliest first."""
    filters: dict = {"org_id": org_id}
    if date_from:
        filters["appointment_date__gte"] = validate_date(date_from)
    if date_to:
        filters["appointment_date__lte"] = validate_date(date_to)
    if status:
        filters["status"] = AppointmentStatus(status)
    if customer_id:
        filters["customer_id"] = customer_id
    rows = store.find("appointments", order_by=["appointment_date", "appointment_time"], **filters)
    return [_row_to_appointment(r) for r in rows]


def fetch_pending(store: Store, org_id: str) -> list[Appointment]:
    """The manager's approval queue."""
    return list_appointments(store, org_id, status=AppointmentStatus.PENDING)


def approve_appointment(
    store: Store,
    appointment_id: str,
    actor: Member,
    create_task_now: bool = False,
) -> tuple[Appointment, Task | None]:
    """Confirm a pending appointment, optionally opening its task right away."""
    _require_manager(actor, "approve appointments")
    today = store.clock.now().date().isoformat()

    task = None
    with store.transaction():
        appointment = require_appointment(store, appointment_id)
        _check_org(actor, appointment)
        if appointment.status != AppointmentStatus.PENDING:
            raise ConflictError(f"Appointment {appointment.id} is {appointment.status.value}, not pending")
        row = store.update(
            "appointments",
            appointment.id,
            {"status": AppointmentStatus.APPROVED},
            expected_version=appointment.version,
        )
        appointment = _row_to_appointment(row)

        if appointment.appointment_date == today:
            message = f"Your appointment today at {appointment.appointment_time} is confirmed"
        else:
            message = (
                f"Your appointment on {appointment.appointment_date} "
                f"at {appointment.appointment_time} is confirmed"
            )
        notifications.enqueue(
            store,
            appointment.org_id,
            [_customer_of(store, appointment)],
            "Appointment confirmed",
            message,
            "APPOINTMENT_APPROVED",
            reference_id=appointment.id,
            actor_id=actor.id,
        )

        if create_task_now:
            task = _promote(store, appointment, actor)
            appointment = require_appointment(store, appointment.id)

    logger.info("Appointment %s approved by %s (task: %s)", appointment.id, actor.id, task.id if task else None)
    return appointment, task


def promote_to_task(store: Store, appointment_id: str, actor: Member) -> Task:
    """Open the work order for an approved appointment. Only ever once."""
    _require_manager(actor, "promote appointments")
    with store.transaction():
        appointment = require_appointment(store, appointment_id)
        _check_org(actor, appointment)
        task = _promote(store, appointment, actor)
    logger.info("Appointment %s promoted to task %s by %s", appointment.id, task.id, actor.id)
    return task


def reject_appointment(store: Store, appointment_id: str, actor: Member, reason: str | None = None) -> Appointment:
    _require_manager(actor, "reject appointments")
    message = "Your appointment request was declined"
    if reason:
        message += f": {reason}"
    return _close(
        store,
        appointment_id,
        actor,
        AppointmentStatus.REJECTED,
        allowed=(AppointmentStatus.PENDING,),
        title="Appointment declined",
        message=message,
        notice_type="APPOINTMENT_REJECTED",
    )


def cancel_appointment(store: Store, appointment_id: str, actor: Member) -> Appointment:
    """Managers cancel pending or approved slots; customers their own pending ones."""
    if actor.is_staff:
        raise PermissionDeniedError("STAFF may not cancel appointments")
    allowed = (AppointmentStatus.PENDING, AppointmentStatus.APPROVED)
    if actor.is_customer:
        appointment = require_appointment(store, appointment_id)
        if appointment.customer_id != actor.id:
            raise PermissionDeniedError("Customers may only cancel their own appointments")
        allowed = (AppointmentStatus.PENDING,)
    return _close(
        store,
        appointment_id,
        actor,
        AppointmentStatus.CANCELLED,
        allowed=allowed,
        title="Appointment cancelled",
        message="Your appointment was cancelled",
        notice_type="APPOINTMENT_CANCELLED",
    )


def reschedule_appointment(
    store: Store,
    appointment_id: str,
    actor: Member,
    appointment_date: str,
    appointment_time: str,
) -> Appointment:
    """Move an appointment, and its task if it already has one."""
    _require_manager(actor, "reschedule appointments")
    appointment_date = validate_date(appointment_date)
    appointment_time = validate_time(appointment_time)

    with store.transaction():
        appointment = require_appointment(store, appointment_id)
        _check_org(actor, appointment)
        if appointment.is_terminal:
            raise ConflictError(f"Appointment {appointment.id} is {appointment.status.value}")

        patch: dict = {"appointment_date": appointment_date, "appointment_time": appointment_time}
        payload = appointment.metadata.payload
        if payload is not None:
            payload.appointment_date = appointment_date
            payload.appointment_time = appointment_time
            patch["metadata"] = appointment.metadata.to_dict()
        row = store.update("appointments", appointment.id, patch, expected_version=appointment.version)

        if appointment.task_id:
            linked = tasks.get_task(store, appointment.task_id)
            if linked and not linked.is_terminal:
                tasks.reschedule_task(store, linked.id, actor, appointment_date, appointment_time)

    logger.info("Appointment %s moved to %s %s by %s", appointment_id, appointment_date, appointment_time, actor.id)
    return _row_to_appointment(row)


# ── Internals ───────────────────────────────────────────────────────────────


def _promote(store: Store, appointment: Appointment, actor: Member) -> Task:
    """Insert the task, then link it with a version-checked update.

    Runs inside the caller's transaction, so losing a race on the link
    rolls the task insert back too.
    """
    if appointment.status != AppointmentStatus.APPROVED:
        raise ConflictError(f"Appointment {appointment.id} is {appointment.status.value}, not approved")
    if appointment.task_id:
        raise ConflictError(f"Appointment {appointment.id} already has task {appointment.task_id}")

    payload = AppointmentRequestPayload(
        appointment_date=appointment.appointment_date,
        appointment_time=appointment.appointment_time,
        source_appointment_id=appointment.id,
        service_type=appointment.service_type,
        customer_name=appointment.customer_name,
        customer_phone=appointment.customer_phone,
        mileage=appointment.mileage,
    )
    task = tasks.insert_task(
        store,
        actor,
        title=f"Vehicle service (appointment of {appointment.appointment_date})",
        description=appointment.description or "Created from an appointment",
        status=TaskStatus.WAITING,
        metadata=TaskMetadata(payload=payload),
        vehicle_id=appointment.vehicle_id,
        customer_id=appointment.customer_id,
    )
    store.update(
        "appointments",
        appointment.id,
        {"task_id": task.id},
        expected_version=appointment.version,
    )
    notifications.enqueue(
        store,
        task.org_id,
        [m.id for m in members.staff_of(store, task.org_id)],
        "New task",
        task.title,
        "NEW_TASK",
        reference_id=task.id,
        actor_id=actor.id,
    )
    return task


def _close(
    store: Store,
    appointment_id: str,
    actor: Member,
    status: AppointmentStatus,
    allowed: tuple,
    title: str,
    message: str,
    notice_type: str,
) -> Appointment:
    with store.transaction():
        appointment = require_appointment(store, appointment_id)
        _check_org(actor, appointment)
        if appointment.status not in allowed:
            raise ConflictError(
                f"Appointment {appointment.id} is {appointment.status.value} "
                f"and cannot become {status.value}"
            )
        row = store.update(
            "appointments",
            appointment.id,
            {"status": status},
            expected_version=appointment.version,
        )
        notifications.enqueue(
            store,
            appointment.org_id,
            [_customer_of(store, appointment)],
            title,
            message,
            notice_type,
            reference_id=appointment.id,
            actor_id=actor.id,
        )
    logger.info("Appointment %s %s by %s", appointment_id, status.value.lower(), actor.id)
    return _row_to_appointment(row)


def _customer_of(store: Store, appointment: Appointment) -> str | None:
    if appointment.customer_id:
        return appointment.customer_id
    member = members.find_by_phone(store, appointment.org_id, appointment.customer_phone)
    return member.id if member else None


def _require_manager(actor: Member, action: str):
    if actor.role != Role.SUPER_MANAGER:
        raise PermissionDeniedError(f"{actor.role.value} may not {action}")


def _check_org(actor: Member, appointment: Appointment):
    if actor.org_id != appointment.org_id:
        raise PermissionDeniedError("Appointment belongs to another garage")


def _row_to_appointment(row: dict) -> Appointment:
    return Appointment(
        id=row["id"],
        org_id=row["org_id"],
        service_type=row["service_type"],
        appointment_date=row["appointment_date"],
        appointment_time=row["appointment_time"],
        status=AppointmentStatus(row["status"]),
        customer_id=row["customer_id"],
        customer_name=row["customer_name"],
        customer_phone=row["customer_phone"],
        vehicle_id=row["vehicle_id"],
        vehicle_plate=row["vehicle_plate"],
        description=row["description"],
        mileage=row["mileage"],
        task_id=row["task_id"],
        metadata=TaskMetadata.from_dict(row["metadata"]),
        created_by=row["created_by"],
        version=row["version"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
