"""Weekly calendar: merges appointments and scheduled tasks into hourly cells.

An appointment that has already become a task is shown once, as the task.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta

from garage_workflow.config import Config
from garage_workflow.core import appointments, tasks
from garage_workflow.core.dates import slot_hour, validate_date
from garage_workflow.db.models import Appointment, Task, TaskStatus
from garage_workflow.db.store import Store


@dataclass
class CellItem:
    kind: str
    id: str
    label: str
    status: str
    time: str


@dataclass
class Cell:
    date: str
    hour: str
    working_day: bool = True
    items: list[CellItem] = field(default_factory=list)

    @property
    def primary(self) -> CellItem | None:
        return self.items[0] if self.items else None

    @property
    def kind(self) -> str:
        if self.items:
            return self.items[0].kind
        return "free" if self.working_day else "closed"

    @property
    def target_id(self) -> str | None:
        return self.items[0].id if self.items else None

    @property
    def overflow(self) -> int:
        return max(len(self.items) - 1, 0)

    @property
    def bookable(self) -> bool:
        return self.kind == "free"

    def booking_defaults(self) -> dict | None:
        """Prefill for a new booking in this slot, if it can take one."""
        if not self.bookable:
            return None
        return {"appointment_date": self.date, "appointment_time": self.hour}

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "hour": self.hour,
            "kind": self.kind,
            "target_id": self.target_id,
            "bookable": self.bookable,
            "overflow": self.overflow,
            "items": [item.__dict__ for item in self.items],
        }


@dataclass
class WeekGrid:
    view_date: str
    days: list[str]
    hours: list[str]
    cells: dict[tuple[str, str], Cell] = field(default_factory=dict)

    def cell(self, day: str, hour: str) -> Cell | None:
        return self.cells.get((day, hour))

    def occupied(self) -> list[Cell]:
        return [c for c in self.cells.values() if c.items]

    def next_week(self) -> str:
        return (date.fromisoformat(self.view_date) + timedelta(days=7)).isoformat()

    def prev_week(self) -> str:
        return (date.fromisoformat(self.view_date) - timedelta(days=7)).isoformat()

    def to_dict(self) -> dict:
        return {
            "view_date": self.view_date,
            "days": self.days,
            "hours": self.hours,
            "next_week": self.next_week(),
            "prev_week": self.prev_week(),
            "cells": [c.to_dict() for c in self.cells.values()],
        }


def working_hours(start: int = 7, end: int = 19) -> list[str]:
    """Hourly slots from ``start`` to ``end``, both inclusive."""
    return [f"{h:02d}:00" for h in range(start, end + 1)]


def week_days(view_date: str | date) -> list[str]:
    """The Sunday-to-Saturday week containing ``view_date``."""
    day = date.fromisoformat(validate_date(view_date))
    sunday = day - timedelta(days=(day.weekday() + 1) % 7)
    return [(sunday + timedelta(days=i)).isoformat() for i in range(7)]


def build_week(store: Store, org_id: str, view_date: str | date, config: Config | None = None) -> WeekGrid:
    config = config or Config()
    view_date = validate_date(view_date)
    days = week_days(view_date)
    hours = working_hours(config.workday_start, config.workday_end)

    grid = WeekGrid(view_date=view_date, days=days, hours=hours)
    for day in days:
        open_day = date.fromisoformat(day).weekday() in config.working_days
        for hour in hours:
            grid.cells[(day, hour)] = Cell(date=day, hour=hour, working_day=open_day)

    linked_appointments: set[str] = set()
    for task in tasks.list_scheduled(store, org_id, days[0], days[-1]):
        if not _on_calendar(task):
            continue
        _place(grid, task.metadata.appointment_date, task.metadata.appointment_time, CellItem(
            kind="task",
            id=task.id,
            label=task.title,
            status=task.status.value,
            time=task.metadata.appointment_time,
        ))
        if task.metadata.source_appointment_id:
            linked_appointments.add(task.metadata.source_appointment_id)

    for appointment in appointments.list_appointments(store, org_id, days[0], days[-1]):
        if appointment.is_terminal:
            continue
        # Once promoted, the task is the booking, wherever it has moved since.
        if appointment.task_id or appointment.id in linked_appointments:
            continue
        _place(grid, appointment.appointment_date, appointment.appointment_time, CellItem(
            kind="appointment",
            id=appointment.id,
            label=_appointment_label(appointment),
            status=appointment.status.value,
            time=appointment.appointment_time,
        ))

    return grid


def _on_calendar(task: Task) -> bool:
    if not task.metadata.appointment_date or not task.metadata.appointment_time:
        return False
    return task.status == TaskStatus.APPROVED or task.metadata.source_appointment_id is not None


def _place(grid: WeekGrid, day: str, time: str, item: CellItem):
    hour = slot_hour(time)
    cell = grid.cells.get((day, hour))
    if cell is None:
        # Outside working hours; kept so it still counts as occupied.
        cell = grid.cells[(day, hour)] = Cell(date=day, hour=hour)
    cell.items.append(item)


def _appointment_label(appointment: Appointment) -> str:
    if appointment.customer_name:
        return f"{appointment.customer_name}: {appointment.service_type}"
    return appointment.service_type
