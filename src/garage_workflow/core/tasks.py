"""Task lifecycle: intake, approval, claiming, hand-over and completion."""

import dataclasses
import enum
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from garage_workflow.core import members, notifications, vehicles
from garage_workflow.core.dates import parse_timestamp, validate_amount, validate_date, validate_time
from garage_workflow.core.notifications import Notice
from garage_workflow.db.models import (
    AppointmentRequestPayload,
    CheckInPayload,
    HandOverPayload,
    Member,
    Priority,
    Role,
    Task,
    TaskEvent,
    TaskMetadata,
    TaskStatus,
    parse_dt,
)
from garage_workflow.db.store import Store
from garage_workflow.errors import (
    ConflictError,
    HandOverRequiredError,
    PermissionDeniedError,
    ValidationError,
    VersionConflict,
)

logger = logging.getLogger(__name__)

CLAIMABLE_STATUSES = frozenset({
    TaskStatus.WAITING,
    TaskStatus.APPROVED,
    TaskStatus.SCHEDULED,
    TaskStatus.IN_PROGRESS,
})

# Statuses on which the work clock is not running.
UNTIMED_STATUSES = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.CANCELLED,
    TaskStatus.CUSTOMER_APPROVAL,
})

PRIORITY_RANK = {Priority.CRITICAL: 0, Priority.URGENT: 1, Priority.NORMAL: 2}

EDITABLE_FIELDS = ("title", "description", "priority", "price", "allotted_time")


class OverdueLevel(str, enum.Enum):
    NONE = "NONE"
    OVERDUE = "OVERDUE"
    CRITICAL = "CRITICAL"


@dataclass
class ApprovalResult:
    task: Task
    target_date: str
    live: bool


@dataclass
class _Change:
    """What one transition writes: a task patch, audit events and notices."""

    patch: dict
    events: list[tuple[str, str | None, str | None]] = field(default_factory=list)
    notices: list[Notice] = field(default_factory=list)


# ── Intake ──────────────────────────────────────────────────────────────────


def create_task(
    store: Store,
    actor: Member,
    title: str,
    description: str = "",
    plate: str | None = None,
    vehicle_attrs: dict | None = None,
    customer_id: str | None = None,
    priority: Priority | str = Priority.NORMAL,
    price: float | None = None,
    allotted_time: int | None = None,
    appointment_date: str | None = None,
    appointment_time: str | None = None,
) -> Task:
    """Manual task entry by staff or a manager."""
    _require_role(actor, Role.STAFF, Role.SUPER_MANAGER, action="create tasks")
    if not (title or "").strip():
        raise ValidationError("Task title is required")
    priority = _validate_priority(priority)
    _validate_price(price)
    _validate_allotted_time(allotted_time)

    metadata = TaskMetadata()
    if appointment_date:
        metadata.payload = AppointmentRequestPayload(
            appointment_date=validate_date(appointment_date),
            appointment_time=validate_time(appointment_time) if appointment_time else None,
        )

    today = _today(store)
    status = TaskStatus.WAITING
    if metadata.appointment_date and metadata.appointment_date > today:
        status = TaskStatus.APPROVED

    with store.transaction():
        vehicle_id = None
        if plate:
            vehicle = vehicles.find_or_create_vehicle(
                store, actor.org_id, plate, vehicle_attrs, owner_id=customer_id
            )
            vehicle_id = vehicle.id

        task = insert_task(
            store,
            actor,
            title=title.strip(),
            description=description or "",
            status=status,
            metadata=metadata,
            vehicle_id=vehicle_id,
            customer_id=customer_id,
            priority=priority,
            price=price,
            allotted_time=allotted_time,
        )

    logger.info("Task %s created by %s as %s", task.id, actor.id, status.value)
    return task


def submit_request(
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
) -> Task:
    """A customer's service request. It waits for a manager's approval."""
    _require_role(actor, Role.CUSTOMER, action="submit service requests")
    service_types = [s for s in (service_types or []) if s]
    if not service_types and not (fault_description or "").strip():
        raise ValidationError("Select at least one service or describe the fault")
    vehicles.normalize_plate(plate)

    payload = CheckInPayload(
        owner_name=owner_name or actor.full_name,
        owner_phone=owner_phone or actor.phone,
        owner_email=owner_email,
        owner_address=owner_address,
        mileage=mileage,
        service_types=service_types,
        fault_description=fault_description,
        payment_method=payment_method,
        appointment_date=validate_date(appointment_date) if appointment_date else None,
        appointment_time=validate_time(appointment_time) if appointment_time else None,
        submitted_at=store.clock.now().isoformat(),
    )
    metadata = TaskMetadata(payload=payload)
    title = f"Check-in {vehicles.format_plate(plate)}"
    description = fault_description or ", ".join(service_types)

    with store.transaction():
        vehicle = vehicles.find_or_create_vehicle(
            store, actor.org_id, plate, vehicle_attrs, owner_id=actor.id
        )
        task = insert_task(
            store,
            actor,
            title=title,
            description=description,
            status=TaskStatus.WAITING_FOR_APPROVAL,
            metadata=metadata,
            vehicle_id=vehicle.id,
            customer_id=actor.id,
        )
        notifications.enqueue(
            store,
            actor.org_id,
            [m.id for m in members.managers_of(store, actor.org_id)],
            "New check-in",
            f"{actor.full_name} checked in vehicle {vehicles.format_plate(plate)}",
            "NEW_CHECKIN",
            reference_id=task.id,
            actor_id=actor.id,
        )

    logger.info("Service request %s submitted by %s", task.id, actor.id)
    return task


def insert_task(
    store: Store,
    actor: Member,
    title: str,
    description: str,
    status: TaskStatus,
    metadata: TaskMetadata,
    **columns,
) -> Task:
    """Write a new task row and its 'created' event. Callers validate first."""
    with store.transaction():
        row = store.insert("tasks", {
            "org_id": actor.org_id,
            "created_by": actor.id,
            "title": title,
            "description": description,
            "status": status,
            "metadata": metadata.to_dict(),
            **_slot_columns(metadata),
            **columns,
        })
        _log_event(store, row["id"], "created", None, status.value, actor.id)
    return _row_to_task(row)


# ── Reads ───────────────────────────────────────────────────────────────────


def get_task(store: Store, task_id: str) -> Task | None:
    """Get a task by ID."""
    row = store.find_one("tasks", id=task_id)
    if not row:
        return None
    return _row_to_task(row)


def require_task(store: Store, task_id: str) -> Task:
    return _row_to_task(store.get("tasks", task_id))


def list_tasks(
    store: Store,
    actor: Member,
    status: TaskStatus | str | None = None,
    assigned_to: str | None = None,
    include_cancelled: bool = False,
) -> list[Task]:
    """List the tasks an actor may see, most urgent first."""
    filters: dict = {"org_id": actor.org_id}
    if status:
        filters["status"] = TaskStatus(status)
    elif not include_cancelled:
        filters["status__ne"] = TaskStatus.CANCELLED
    if assigned_to:
        filters["assigned_to__contains"] = assigned_to

    if actor.is_customer:
        rows = {r["id"]: r for r in store.find("tasks", customer_id=actor.id, **filters)}
        for r in store.find("tasks", created_by=actor.id, **filters):
            rows.setdefault(r["id"], r)
        rows = list(rows.values())
    else:
        rows = store.find("tasks", **filters)

    tasks = [_row_to_task(r) for r in rows]
    tasks.sort(key=lambda t: (PRIORITY_RANK[t.priority], t.created_at or datetime.min))
    return tasks


def list_scheduled(store: Store, org_id: str, date_from: str, date_to: str) -> list[Task]:
    """Tasks with a calendar slot in the date range, cancelled ones excluded."""
    rows = store.find(
        "tasks",
        org_id=org_id,
        slot_date__gte=date_from,
        slot_date__lte=date_to,
        status__ne=TaskStatus.CANCELLED,
        order_by=["slot_date", "slot_time", "created_at"],
    )
    return [_row_to_task(r) for r in rows]


def get_task_events(store: Store, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = store.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY created_at, id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            actor_id=r["actor_id"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def customer_of(store: Store, task: Task) -> str | None:
    """Who the task is for: explicit customer, vehicle owner, or check-in phone."""
    if task.customer_id:
        return task.customer_id
    if task.vehicle_id:
        vehicle = vehicles.get_vehicle(store, task.vehicle_id)
        if vehicle and vehicle.owner_id:
            return vehicle.owner_id
    payload = task.metadata.payload
    phone = None
    if isinstance(payload, CheckInPayload):
        phone = payload.owner_phone
    elif isinstance(payload, AppointmentRequestPayload):
        phone = payload.customer_phone
    member = members.find_by_phone(store, task.org_id, phone)
    return member.id if member else None


# ── Edits ───────────────────────────────────────────────────────────────────


def update_task(store: Store, task_id: str, actor: Member, **changes) -> Task:
    """Edit a task's descriptive fields."""
    _require_role(actor, Role.STAFF, Role.SUPER_MANAGER, action="edit tasks")
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Cannot edit: {', '.join(sorted(unknown))}")
    if "title" in changes and not (changes["title"] or "").strip():
        raise ValidationError("Task title is required")
    if "priority" in changes:
        changes["priority"] = _validate_priority(changes["priority"])
    _validate_price(changes.get("price"))
    _validate_allotted_time(changes.get("allotted_time"))

    def build(task: Task) -> _Change | None:
        _check_org(actor, task)
        if task.is_terminal:
            raise ConflictError(f"Task {task.id} is {task.status.value} and cannot be edited")
        patch = {k: v for k, v in changes.items() if getattr(task, k) != v}
        if not patch:
            return None
        events = [
            (f"{k}_changed", _text(getattr(task, k)), _text(v))
            for k, v in patch.items()
        ]
        return _Change(patch=patch, events=events)

    return _apply(store, task_id, actor.id, build)


def add_to_price(store: Store, task_id: str, amount: float, actor_id: str | None = None) -> Task:
    """Raise the task's price by an accepted extra."""

    def build(task: Task) -> _Change:
        new_price = round((task.price or 0) + amount, 2)
        return _Change(
            patch={"price": new_price},
            events=[("price_changed", _text(task.price), _text(new_price))],
        )

    return _apply(store, task_id, actor_id, build)


# ── Work ────────────────────────────────────────────────────────────────────


def claim(store: Store, task_id: str, actor: Member, retries: int = 5) -> Task:
    """Add the actor to the task's workers and mark it in progress."""
    _require_role(actor, Role.STAFF, Role.SUPER_MANAGER, action="claim tasks")

    def build(task: Task) -> _Change | None:
        _check_org(actor, task)
        if task.status not in CLAIMABLE_STATUSES:
            raise ConflictError(f"Task {task.id} is {task.status.value} and cannot be claimed")
        if actor.id in task.assigned_to and task.status == TaskStatus.IN_PROGRESS:
            return None

        patch: dict = {"status": TaskStatus.IN_PROGRESS}
        if actor.id not in task.assigned_to:
            patch["assigned_to"] = task.assigned_to + [actor.id]
        if task.started_at is None:
            patch["started_at"] = store.clock.now()

        change = _Change(patch=patch, events=[("claimed", None, actor.id)])
        if task.status != TaskStatus.IN_PROGRESS:
            change.events.append(("status_changed", task.status.value, TaskStatus.IN_PROGRESS.value))
            change.notices.append(Notice(
                [m.id for m in members.managers_of(store, task.org_id)],
                "Work started",
                f"{actor.full_name} started work on {task.title}",
                "TASK_STARTED_ADMIN",
                task.id,
            ))
            customer_id = customer_of(store, task)
            if customer_id:
                change.notices.append(Notice(
                    [customer_id],
                    "Your vehicle is being serviced",
                    f"Work on {task.title} has started",
                    "TASK_CLAIMED",
                    task.id,
                ))
        return change

    task = _apply(store, task_id, actor.id, build, retries=retries)
    logger.info("Task %s claimed by %s", task.id, actor.id)
    return task


def release(
    store: Store,
    task_id: str,
    actor: Member,
    hand_over: HandOverPayload | dict | None = None,
    user_id: str | None = None,
    retries: int = 5,
) -> Task:
    """Remove a worker from the task.

    Staff may only release themselves, and the last worker off a task must
    leave hand-over notes. A manager may release anyone via ``user_id``.
    """
    _require_role(actor, Role.STAFF, Role.SUPER_MANAGER, action="release tasks")
    target = user_id or actor.id
    if actor.is_staff and target != actor.id:
        raise PermissionDeniedError("Staff may only release themselves")
    notes = _coerce_hand_over(hand_over)

    def build(task: Task) -> _Change:
        _check_org(actor, task)
        if task.is_terminal:
            raise ConflictError(f"Task {task.id} is {task.status.value}")
        if target not in task.assigned_to:
            raise ConflictError(f"{target} is not assigned to task {task.id}")

        remaining = [u for u in task.assigned_to if u != target]
        if actor.is_staff and not remaining and notes is None:
            raise HandOverRequiredError(
                "Hand-over notes (completed and remaining work) are required "
                "when the last worker leaves a task"
            )

        patch: dict = {"assigned_to": remaining}
        change = _Change(patch=patch, events=[("released", target, None)])
        if not remaining and task.status == TaskStatus.IN_PROGRESS:
            patch["status"] = TaskStatus.WAITING
            change.events.append(("status_changed", task.status.value, TaskStatus.WAITING.value))
        if notes is not None:
            metadata = dataclasses.replace(task.metadata)
            metadata.hand_over = dataclasses.replace(
                notes,
                by=actor.id,
                by_name=actor.full_name,
                at=store.clock.now().isoformat(),
            )
            patch["metadata"] = metadata.to_dict()
            change.events.append(("hand_over", None, notes.remaining))
        return change

    task = _apply(store, task_id, actor.id, build, retries=retries)
    logger.info("Task %s released %s (by %s)", task.id, target, actor.id)
    return task


def complete(store: Store, task_id: str, actor: Member, retries: int = 5) -> Task:
    """Finish the work. Priced tasks wait for the customer's payment."""
    _require_role(actor, Role.STAFF, Role.SUPER_MANAGER, action="complete tasks")

    def build(task: Task) -> _Change:
        _check_org(actor, task)
        if task.status in (
            TaskStatus.COMPLETED,
            TaskStatus.CANCELLED,
            TaskStatus.WAITING_FOR_APPROVAL,
            TaskStatus.CUSTOMER_APPROVAL,
        ):
            raise ConflictError(f"Task {task.id} is {task.status.value} and cannot be completed")

        new_status = TaskStatus.CUSTOMER_APPROVAL if task.price is not None else TaskStatus.COMPLETED
        change = _Change(
            patch={"status": new_status, "completed_at": store.clock.now()},
            events=[("status_changed", task.status.value, new_status.value)],
        )
        customer_id = customer_of(store, task)
        if customer_id:
            message = f"Work on {task.title} is done"
            if new_status == TaskStatus.CUSTOMER_APPROVAL:
                message += f". Amount due: {task.price:.2f}"
            change.notices.append(Notice([customer_id], "Work completed", message, "TASK_COMPLETED", task.id))
        return change

    task = _apply(store, task_id, actor.id, build, retries=retries)
    logger.info("Task %s completed by %s -> %s", task.id, actor.id, task.status.value)
    return task


def confirm_payment(
    store: Store,
    task_id: str,
    actor: Member,
    payment_method: str | None = None,
) -> Task:
    """Record that the customer has paid, closing the task."""

    def build(task: Task) -> _Change:
        _check_org(actor, task)
        if not actor.is_manager and customer_of(store, task) != actor.id:
            raise PermissionDeniedError("Only the customer or a manager can confirm payment")
        if task.status != TaskStatus.CUSTOMER_APPROVAL:
            raise ConflictError(f"Task {task.id} is {task.status.value}, not awaiting payment")

        patch: dict = {"status": TaskStatus.COMPLETED}
        if payment_method:
            metadata = dataclasses.replace(task.metadata, extra=dict(task.metadata.extra))
            metadata.extra["payment_method"] = payment_method
            patch["metadata"] = metadata.to_dict()
        return _Change(
            patch=patch,
            events=[("status_changed", task.status.value, TaskStatus.COMPLETED.value)],
            notices=[Notice(
                [m.id for m in members.managers_of(store, task.org_id)],
                "Payment received",
                f"{task.title} has been paid",
                "TASK_COMPLETED",
                task.id,
            )],
        )

    task = _apply(store, task_id, actor.id, build)
    logger.info("Payment confirmed for task %s by %s", task.id, actor.id)
    return task


# ── Manager decisions ───────────────────────────────────────────────────────


def approve_task(
    store: Store,
    task_id: str,
    actor: Member,
    send_to_team_now: bool = False,
    reminder_at: datetime | str | None = None,
) -> ApprovalResult:
    """Accept a customer's request.

    A request for a future date goes on the calendar as APPROVED. A request
    for today either goes straight to the team, waits for a reminder, or is
    parked as SCHEDULED until someone picks it up.
    """
    _require_role(actor, Role.SUPER_MANAGER, action="approve tasks")
    if reminder_at is not None:
        reminder_at = parse_timestamp(reminder_at)
        if not send_to_team_now and reminder_at <= store.clock.now():
            raise ValidationError("Reminder time must be in the future")

    today = _today(store)
    outcome: dict = {}

    def build(task: Task) -> _Change:
        _check_org(actor, task)
        if task.status != TaskStatus.WAITING_FOR_APPROVAL:
            raise ConflictError(f"Task {task.id} is {task.status.value}, not awaiting approval")

        target_date = max(task.metadata.appointment_date or today, today)
        live = False
        patch: dict = {}
        if target_date > today:
            patch["status"] = TaskStatus.APPROVED
            message = f"Your appointment on {target_date} is confirmed"
        elif send_to_team_now:
            patch["status"] = TaskStatus.WAITING
            live = True
            message = "Your request was approved and passed to the team"
        else:
            patch["status"] = TaskStatus.SCHEDULED
            patch["scheduled_reminder_at"] = reminder_at
            patch["reminder_sent"] = False
            message = "Your request was approved"
        outcome.update(target_date=target_date, live=live)

        change = _Change(
            patch=patch,
            events=[("status_changed", task.status.value, patch["status"].value)],
        )
        if live:
            change.notices.append(Notice(
                [m.id for m in members.staff_of(store, task.org_id)],
                "New task",
                task.title,
                "NEW_TASK",
                task.id,
            ))
        customer_id = customer_of(store, task)
        if customer_id:
            change.notices.append(Notice([customer_id], "Request approved", message, "TASK_APPROVED", task.id))
        return change

    task = _apply(store, task_id, actor.id, build)
    logger.info("Task %s approved by %s -> %s", task.id, actor.id, task.status.value)
    return ApprovalResult(task=task, target_date=outcome["target_date"], live=outcome["live"])


def reject_task(store: Store, task_id: str, actor: Member, reason: str | None = None) -> Task:
    """Turn down a customer's request. Rejection is final."""
    _require_role(actor, Role.SUPER_MANAGER, action="reject tasks")

    def build(task: Task) -> _Change:
        _check_org(actor, task)
        if task.status != TaskStatus.WAITING_FOR_APPROVAL:
            raise ConflictError(f"Task {task.id} is {task.status.value}, not awaiting approval")
        change = _Change(
            patch={"status": TaskStatus.CANCELLED},
            events=[("status_changed", task.status.value, TaskStatus.CANCELLED.value)],
        )
        customer_id = customer_of(store, task)
        if customer_id:
            message = f"Your request for {task.title} was declined"
            if reason:
                message += f": {reason}"
            change.notices.append(Notice([customer_id], "Request declined", message, "TASK_REJECTED", task.id))
        return change

    task = _apply(store, task_id, actor.id, build)
    logger.info("Task %s rejected by %s", task.id, actor.id)
    return task


def cancel_task(store: Store, task_id: str, actor: Member) -> Task:
    _require_role(actor, Role.SUPER_MANAGER, action="cancel tasks")

    def build(task: Task) -> _Change:
        _check_org(actor, task)
        if task.is_terminal:
            raise ConflictError(f"Task {task.id} is already {task.status.value}")
        return _Change(
            patch={"status": TaskStatus.CANCELLED},
            events=[("status_changed", task.status.value, TaskStatus.CANCELLED.value)],
        )

    task = _apply(store, task_id, actor.id, build)
    logger.info("Task %s cancelled by %s", task.id, actor.id)
    return task


def delete_task(store: Store, task_id: str, actor: Member):
    """Delete a task that no proposal refers to."""
    _require_role(actor, Role.SUPER_MANAGER, action="delete tasks")
    with store.transaction():
        task = require_task(store, task_id)
        _check_org(actor, task)
        proposals = store.find("proposals", task_id=task_id)
        if proposals:
            raise ConflictError(f"Task {task_id} has {len(proposals)} proposal(s) and cannot be deleted")
        store.delete("tasks", task_id)
    logger.info("Task %s deleted by %s", task_id, actor.id)


def reschedule_task(store: Store, task_id: str, actor: Member, date: str, time: str) -> Task:
    """Move a task to another slot without touching its status."""
    _require_role(actor, Role.SUPER_MANAGER, action="reschedule tasks")
    date = validate_date(date)
    time = validate_time(time)

    def build(task: Task) -> _Change | None:
        _check_org(actor, task)
        if task.is_terminal:
            raise ConflictError(f"Task {task.id} is {task.status.value} and cannot be rescheduled")
        old = f"{task.metadata.appointment_date} {task.metadata.appointment_time}"
        if task.metadata.appointment_date == date and task.metadata.appointment_time == time:
            return None

        metadata = dataclasses.replace(task.metadata)
        if metadata.payload is None:
            metadata.payload = AppointmentRequestPayload(appointment_date=date, appointment_time=time)
        else:
            metadata.payload = dataclasses.replace(
                metadata.payload, appointment_date=date, appointment_time=time
            )
        return _Change(
            patch={"metadata": metadata.to_dict(), **_slot_columns(metadata)},
            events=[("rescheduled", old, f"{date} {time}")],
        )

    task = _apply(store, task_id, actor.id, build)
    logger.info("Task %s rescheduled to %s %s by %s", task.id, date, time, actor.id)
    return task


# ── Reminders ───────────────────────────────────────────────────────────────


def promote_due_reminders(store: Store, now: datetime | None = None) -> list[Task]:
    """Hand scheduled tasks to the team once their reminder time has come."""
    now = now or store.clock.now()
    due = store.find(
        "tasks",
        status=TaskStatus.SCHEDULED,
        reminder_sent=0,
        scheduled_reminder_at__lte=now,
        order_by="scheduled_reminder_at",
    )

    promoted = []
    for row in due:
        fired: list[str] = []

        def build(task: Task) -> _Change | None:
            if task.status != TaskStatus.SCHEDULED or task.reminder_sent:
                return None
            fired.append(task.id)
            recipients = [m.id for m in members.staff_of(store, task.org_id)]
            recipients += [m.id for m in members.managers_of(store, task.org_id)]
            return _Change(
                patch={"status": TaskStatus.WAITING, "reminder_sent": True},
                events=[("reminder", task.status.value, TaskStatus.WAITING.value)],
                notices=[Notice(recipients, "Task reminder", task.title, "TASK_REMINDER", task.id)],
            )

        task = _apply(store, row["id"], None, build, retries=3)
        if fired and task.status == TaskStatus.WAITING:
            promoted.append(task)
            logger.info("Reminder fired for task %s", task.id)
    return promoted


# ── Deadlines ───────────────────────────────────────────────────────────────


def _deadline(task: Task) -> datetime | None:
    if task.started_at is None or not task.allotted_time or task.status in UNTIMED_STATUSES:
        return None
    return task.started_at + timedelta(minutes=task.allotted_time)


def is_overdue(task: Task, now: datetime) -> bool:
    deadline = _deadline(task)
    return deadline is not None and now > deadline


def time_left(task: Task, now: datetime) -> int | None:
    """Whole minutes until the allotted time runs out (negative once overdue)."""
    deadline = _deadline(task)
    if deadline is None:
        return None
    return math.floor((deadline - now).total_seconds() / 60)


def overdue_level(task: Task, viewer: Member | None, now: datetime) -> OverdueLevel:
    if not is_overdue(task, now):
        return OverdueLevel.NONE
    if viewer is not None and viewer.is_manager:
        return OverdueLevel.CRITICAL
    return OverdueLevel.OVERDUE


# ── Internals ───────────────────────────────────────────────────────────────


def _apply(store: Store, task_id: str, actor_id: str | None, build, retries: int = 1) -> Task:
    """Read the task, let ``build`` decide the change, write it version-checked.

    On a concurrent write the task is re-read and ``build`` runs again, up to
    ``retries`` attempts. ``build`` returning None means nothing to do.
    """
    for attempt in range(1, max(retries, 1) + 1):
        task = require_task(store, task_id)
        change = build(task)
        if change is None:
            return task
        try:
            with store.transaction():
                row = store.update("tasks", task.id, change.patch, expected_version=task.version)
                for event_type, old_value, new_value in change.events:
                    _log_event(store, task.id, event_type, old_value, new_value, actor_id)
                notifications.emit(store, task.org_id, change.notices, actor_id=actor_id)
        except VersionConflict:
            if attempt >= retries:
                raise
            logger.debug("Task %s changed under us (attempt %d/%d), retrying", task.id, attempt, retries)
            continue
        return _row_to_task(row)
    raise AssertionError("unreachable")


def _log_event(
    store: Store,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
    actor_id: str | None = None,
):
    store.execute(
        "INSERT INTO task_events (task_id, event_type, actor_id, old_value, new_value, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (task_id, event_type, actor_id, old_value, new_value, store.clock.now().isoformat()),
    )


def _require_role(actor: Member, *roles: Role, action: str):
    if actor.role not in roles:
        raise PermissionDeniedError(f"{actor.role.value} may not {action}")


def _check_org(actor: Member, task: Task):
    if actor.org_id != task.org_id:
        raise PermissionDeniedError("Task belongs to another garage")


def _coerce_hand_over(hand_over: HandOverPayload | dict | None) -> HandOverPayload | None:
    if hand_over is None:
        return None
    if isinstance(hand_over, dict):
        hand_over = HandOverPayload(
            completed=hand_over.get("completed") or "",
            remaining=hand_over.get("remaining") or "",
        )
    if not hand_over.completed.strip() or not hand_over.remaining.strip():
        raise HandOverRequiredError("Hand-over notes need both completed and remaining work")
    return hand_over


def _validate_priority(priority) -> Priority:
    try:
        return Priority(priority)
    except ValueError:
        raise ValidationError(f"Unknown priority: {priority}") from None


def _validate_price(price):
    validate_amount(price)


def _validate_allotted_time(minutes):
    if minutes is None:
        return
    validate_amount(minutes, "Allotted time")
    if minutes <= 0:
        raise ValidationError("Allotted time must be a positive number of minutes")


def _slot_columns(metadata: TaskMetadata) -> dict:
    return {"slot_date": metadata.appointment_date, "slot_time": metadata.appointment_time}


def _today(store: Store) -> str:
    return store.clock.now().date().isoformat()


def _text(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, enum.Enum):
        return value.value
    return str(value)


def _row_to_task(row: dict) -> Task:
    return Task(
        id=row["id"],
        org_id=row["org_id"],
        title=row["title"],
        created_by=row["created_by"],
        description=row["description"] or "",
        status=TaskStatus(row["status"]),
        priority=Priority(row["priority"]),
        vehicle_id=row["vehicle_id"],
        customer_id=row["customer_id"],
        assigned_to=list(row["assigned_to"] or []),
        price=row["price"],
        allotted_time=row["allotted_time"],
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
        scheduled_reminder_at=parse_dt(row["scheduled_reminder_at"]),
        reminder_sent=bool(row["reminder_sent"]),
        metadata=TaskMetadata.from_dict(row["metadata"]),
        version=row["version"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
