"""Data models for the garage workflow engine."""

import enum
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime


class Role(str, enum.Enum):
    SUPER_MANAGER = "SUPER_MANAGER"
    STAFF = "STAFF"
    CUSTOMER = "CUSTOMER"


class TaskStatus(str, enum.Enum):
    WAITING_FOR_APPROVAL = "WAITING_FOR_APPROVAL"
    WAITING = "WAITING"
    APPROVED = "APPROVED"
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    CUSTOMER_APPROVAL = "CUSTOMER_APPROVAL"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})


class Priority(str, enum.Enum):
    NORMAL = "NORMAL"
    URGENT = "URGENT"
    CRITICAL = "CRITICAL"


class AppointmentStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class ProposalStatus(str, enum.Enum):
    PENDING_MANAGER = "PENDING_MANAGER"
    PENDING_CUSTOMER = "PENDING_CUSTOMER"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# ── Task metadata payloads ──────────────────────────────────────────────────


@dataclass
class CheckInPayload:
    owner_name: str | None = None
    owner_phone: str | None = None
    owner_email: str | None = None
    owner_address: str | None = None
    mileage: int | None = None
    service_types: list[str] = field(default_factory=list)
    fault_description: str | None = None
    payment_method: str | None = None
    appointment_date: str | None = None
    appointment_time: str | None = None
    submitted_at: str | None = None

    type = "CHECK_IN"


@dataclass
class AppointmentRequestPayload:
    appointment_date: str | None = None
    appointment_time: str | None = None
    source_appointment_id: str | None = None
    service_type: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    mileage: int | None = None

    type = "APPOINTMENT_REQUEST"


@dataclass
class HandOverPayload:
    completed: str
    remaining: str
    by: str | None = None
    by_name: str | None = None
    at: str | None = None

    type = "HAND_OVER"


PAYLOAD_TYPES = {cls.type: cls for cls in (CheckInPayload, AppointmentRequestPayload)}


def _payload_to_dict(payload) -> dict:
    return {"type": payload.type, **asdict(payload)}


def _payload_from_dict(cls, data: dict):
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class TaskMetadata:
    """Tagged union of the intake payload, plus hand-over notes and unknown keys."""

    payload: CheckInPayload | AppointmentRequestPayload | None = None
    hand_over: HandOverPayload | None = None
    extra: dict = field(default_factory=dict)

    @property
    def appointment_date(self) -> str | None:
        return self.payload.appointment_date if self.payload else None

    @property
    def appointment_time(self) -> str | None:
        return self.payload.appointment_time if self.payload else None

    @property
    def source_appointment_id(self) -> str | None:
        if isinstance(self.payload, AppointmentRequestPayload):
            return self.payload.source_appointment_id
        return None

    def to_dict(self) -> dict:
        data: dict = {}
        if self.payload is not None:
            data["payload"] = _payload_to_dict(self.payload)
        if self.hand_over is not None:
            data["hand_over"] = _payload_to_dict(self.hand_over)
        if self.extra:
            data["extra"] = dict(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> "TaskMetadata":
        data = dict(data or {})
        extra = dict(data.pop("extra", None) or {})

        payload = None
        raw_payload = data.pop("payload", None)
        if raw_payload:
            payload_cls = PAYLOAD_TYPES.get(raw_payload.get("type"))
            if payload_cls is None:
                extra["payload"] = raw_payload
            else:
                payload = _payload_from_dict(payload_cls, raw_payload)

        hand_over = None
        raw_hand_over = data.pop("hand_over", None)
        if raw_hand_over:
            hand_over = _payload_from_dict(HandOverPayload, raw_hand_over)

        # Anything left at the top level is an extension we don't know about.
        extra.update(data)
        return cls(payload=payload, hand_over=hand_over, extra=extra)


# ── Entities ────────────────────────────────────────────────────────────────


@dataclass
class Member:
    id: str
    org_id: str
    full_name: str
    role: Role
    phone: str | None = None
    created_at: datetime | None = None

    @property
    def is_manager(self) -> bool:
        return self.role == Role.SUPER_MANAGER

    @property
    def is_staff(self) -> bool:
        return self.role == Role.STAFF

    @property
    def is_customer(self) -> bool:
        return self.role == Role.CUSTOMER


@dataclass
class Vehicle:
    id: str
    org_id: str
    plate: str
    model: str = ""
    year: str | None = None
    color: str | None = None
    vin: str | None = None
    fuel_type: str | None = None
    engine_model: str | None = None
    registration_valid_until: str | None = None
    immobilizer_code: str | None = None
    owner_id: str | None = None
    owner_name: str | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    org_id: str
    title: str
    created_by: str
    description: str = ""
    status: TaskStatus = TaskStatus.WAITING
    priority: Priority = Priority.NORMAL
    vehicle_id: str | None = None
    customer_id: str | None = None
    assigned_to: list[str] = field(default_factory=list)
    price: float | None = None
    allotted_time: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    scheduled_reminder_at: datetime | None = None
    reminder_sent: bool = False
    metadata: TaskMetadata = field(default_factory=TaskMetadata)
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    actor_id: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class Appointment:
    id: str
    org_id: str
    service_type: str
    appointment_date: str
    appointment_time: str
    status: AppointmentStatus = AppointmentStatus.PENDING
    customer_id: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    vehicle_id: str | None = None
    vehicle_plate: str | None = None
    description: str | None = None
    mileage: int | None = None
    task_id: str | None = None
    metadata: TaskMetadata = field(default_factory=TaskMetadata)
    created_by: str | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (AppointmentStatus.REJECTED, AppointmentStatus.CANCELLED)


@dataclass
class Proposal:
    id: str
    org_id: str
    task_id: str
    created_by: str
    description: str
    status: ProposalStatus = ProposalStatus.PENDING_MANAGER
    customer_id: str | None = None
    price: float | None = None
    photo_url: str | None = None
    audio_url: str | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Notification:
    id: str
    org_id: str
    user_id: str
    title: str
    message: str
    type: str
    actor_id: str | None = None
    reference_id: str | None = None
    is_read: bool = False
    created_at: datetime | None = None


def parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
