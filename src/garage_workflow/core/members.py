"""Member roster: who belongs to which garage, and in what role."""

import re

from garage_workflow.db.models import Member, Role, parse_dt
from garage_workflow.db.store import Store
from garage_workflow.errors import ValidationError


def add_member(
    store: Store,
    org_id: str,
    full_name: str,
    role: Role | str,
    phone: str | None = None,
    member_id: str | None = None,
) -> Member:
    """Register a member of an organization."""
    if not full_name.strip():
        raise ValidationError("Member name is required")
    try:
        role = Role(role)
    except ValueError:
        raise ValidationError(f"Unknown role: {role}") from None

    record = {"org_id": org_id, "full_name": full_name.strip(), "role": role, "phone": phone}
    if member_id:
        record["id"] = member_id
    return _row_to_member(store.insert("members", record))


def get_member(store: Store, member_id: str) -> Member | None:
    """Get a member by ID."""
    row = store.find_one("members", id=member_id)
    if not row:
        return None
    return _row_to_member(row)


def require_member(store: Store, member_id: str) -> Member:
    return _row_to_member(store.get("members", member_id))


def list_members(store: Store, org_id: str, role: Role | None = None) -> list[Member]:
    filters = {"org_id": org_id}
    if role is not None:
        filters["role"] = role
    rows = store.find("members", order_by="full_name", **filters)
    return [_row_to_member(r) for r in rows]


def managers_of(store: Store, org_id: str) -> list[Member]:
    return list_members(store, org_id, Role.SUPER_MANAGER)


def staff_of(store: Store, org_id: str) -> list[Member]:
    return list_members(store, org_id, Role.STAFF)


def find_by_phone(store: Store, org_id: str, phone: str | None) -> Member | None:
    """Match a phone number against the roster, ignoring formatting."""
    wanted = normalize_phone(phone)
    if not wanted:
        return None
    for member in list_members(store, org_id):
        if normalize_phone(member.phone) == wanted:
            return member
    return None


def normalize_phone(phone: str | None) -> str:
    return re.sub(r"\D", "", phone or "")


def _row_to_member(row: dict) -> Member:
    return Member(
        id=row["id"],
        org_id=row["org_id"],
        full_name=row["full_name"],
        role=Role(row["role"]),
        phone=row["phone"],
        created_at=parse_dt(row["created_at"]),
    )
