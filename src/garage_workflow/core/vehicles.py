"""Vehicle resolution: find-or-create by plate within a garage."""

import logging
import re

from garage_workflow.db.models import Member, TERMINAL_TASK_STATUSES, Vehicle, parse_dt
from garage_workflow.db.store import Store
from garage_workflow.errors import ConflictError, IntegrityViolation, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

VEHICLE_FIELDS = (
    "model",
    "year",
    "color",
    "vin",
    "fuel_type",
    "engine_model",
    "registration_valid_until",
    "immobilizer_code",
    "owner_name",
)


def normalize_plate(plate: str) -> str:
    """Strip a licence plate down to its digits."""
    cleaned = re.sub(r"\D", "", plate or "")
    if len(cleaned) < 7:
        raise ValidationError(f"Invalid licence plate: {plate!r}")
    return cleaned


def format_plate(plate: str) -> str:
    """Render a plate the way it is printed: 12-345-67 or 123-45-678."""
    cleaned = re.sub(r"\D", "", plate or "")
    if len(cleaned) == 7:
        return f"{cleaned[:2]}-{cleaned[2:5]}-{cleaned[5:]}"
    if len(cleaned) == 8:
        return f"{cleaned[:3]}-{cleaned[3:5]}-{cleaned[5:]}"
    return plate


def find_or_create_vehicle(
    store: Store,
    org_id: str,
    plate: str,
    attrs: dict | None = None,
    owner_id: str | None = None,
) -> Vehicle:
    """Return the garage's vehicle with this plate, creating it if needed.

    An existing vehicle has the given non-empty fields refreshed in place.
    """
    plate = normalize_plate(plate)
    updates = {k: v for k, v in (attrs or {}).items() if k in VEHICLE_FIELDS and v not in (None, "")}
    if owner_id:
        updates["owner_id"] = owner_id

    existing = store.find_one("vehicles", org_id=org_id, plate=plate)
    if existing is None:
        try:
            with store.transaction():
                row = store.insert("vehicles", {"org_id": org_id, "plate": plate, **updates})
            logger.info("Vehicle %s created in org %s", plate, org_id)
            return _row_to_vehicle(row)
        except IntegrityViolation:
            # Someone else registered the plate between our read and insert.
            existing = store.find_one("vehicles", org_id=org_id, plate=plate)
            if existing is None:
                raise

    if not updates:
        return _row_to_vehicle(existing)
    return _row_to_vehicle(store.update("vehicles", existing["id"], updates))


def get_vehicle(store: Store, vehicle_id: str) -> Vehicle | None:
    row = store.find_one("vehicles", id=vehicle_id)
    if not row:
        return None
    return _row_to_vehicle(row)


def get_vehicle_by_plate(store: Store, org_id: str, plate: str) -> Vehicle | None:
    row = store.find_one("vehicles", org_id=org_id, plate=normalize_plate(plate))
    if not row:
        return None
    return _row_to_vehicle(row)


def list_vehicles(store: Store, org_id: str, owner_id: str | None = None) -> list[Vehicle]:
    filters = {"org_id": org_id}
    if owner_id is not None:
        filters["owner_id"] = owner_id
    rows = store.find("vehicles", order_by="-created_at", **filters)
    return [_row_to_vehicle(r) for r in rows]


def remove_vehicle(store: Store, vehicle_id: str, actor: Member):
    """Delete a vehicle that no open task depends on."""
    vehicle = _row_to_vehicle(store.get("vehicles", vehicle_id))
    if actor.org_id != vehicle.org_id:
        raise PermissionDeniedError("Vehicle belongs to another garage")
    if actor.is_customer and vehicle.owner_id != actor.id:
        raise PermissionDeniedError("Customers may only remove their own vehicles")

    open_tasks = store.find(
        "tasks",
        vehicle_id=vehicle_id,
        status__not_in=list(TERMINAL_TASK_STATUSES),
    )
    if open_tasks:
        raise ConflictError(f"Vehicle {format_plate(vehicle.plate)} has {len(open_tasks)} open task(s)")
    store.delete("vehicles", vehicle_id)
    logger.info("Vehicle %s removed by %s", vehicle.plate, actor.id)


def _row_to_vehicle(row: dict) -> Vehicle:
    return Vehicle(
        id=row["id"],
        org_id=row["org_id"],
        plate=row["plate"],
        model=row["model"] or "",
        year=row["year"],
        color=row["color"],
        vin=row["vin"],
        fuel_type=row["fuel_type"],
        engine_model=row["engine_model"],
        registration_valid_until=row["registration_valid_until"],
        immobilizer_code=row["immobilizer_code"],
        owner_id=row["owner_id"],
        owner_name=row["owner_name"],
        version=row["version"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
