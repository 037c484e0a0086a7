"""Extra-work proposals: staff suggest, the manager vets, the customer decides."""

import logging

from garage_workflow.core import members, notifications, tasks
from garage_workflow.core.dates import validate_amount
from garage_workflow.db.models import Member, Proposal, ProposalStatus, Role, Task, parse_dt
from garage_workflow.db.store import Store
from garage_workflow.errors import ConflictError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

# Proposals only ever move forward through this table.
TRANSITIONS = {
    ProposalStatus.PENDING_MANAGER: {ProposalStatus.PENDING_CUSTOMER, ProposalStatus.REJECTED},
    ProposalStatus.PENDING_CUSTOMER: {ProposalStatus.APPROVED, ProposalStatus.REJECTED},
    ProposalStatus.APPROVED: set(),
    ProposalStatus.REJECTED: set(),
}


def create_proposal(
    store: Store,
    task_id: str,
    actor: Member,
    description: str,
    price: float | None = None,
    photo_url: str | None = None,
    audio_url: str | None = None,
) -> Proposal:
    """Suggest additional work on a task.

    A manager's own proposal skips the manager gate and goes straight to the
    customer.
    """
    if actor.role not in (Role.STAFF, Role.SUPER_MANAGER):
        raise PermissionDeniedError(f"{actor.role.value} may not create proposals")
    if not (description or "").strip():
        raise ValidationError("Proposal description is required")
    validate_amount(price)

    with store.transaction():
        task = tasks.require_task(store, task_id)
        _check_org(actor, task.org_id)
        if task.is_terminal:
            raise ConflictError(f"Task {task.id} is {task.status.value}")
        if actor.is_staff and actor.id not in task.assigned_to:
            raise PermissionDeniedError("Only staff assigned to the task can propose work on it")

        customer_id = tasks.customer_of(store, task)
        status = ProposalStatus.PENDING_CUSTOMER if actor.is_manager else ProposalStatus.PENDING_MANAGER
        row = store.insert("proposals", {
            "org_id": task.org_id,
            "task_id": task.id,
            "customer_id": customer_id,
            "created_by": actor.id,
            "description": description.strip(),
            "price": price,
            "photo_url": photo_url,
            "audio_url": audio_url,
            "status": status,
        })
        proposal = _row_to_proposal(row)

        if status == ProposalStatus.PENDING_MANAGER:
            notifications.enqueue(
                store,
                task.org_id,
                [m.id for m in members.managers_of(store, task.org_id)],
                "Proposal awaiting review",
                f"{actor.full_name} proposed: {proposal.description}",
                "PROPOSAL_PENDING",
                reference_id=proposal.id,
                actor_id=actor.id,
            )
        else:
            _notify_customer(store, proposal, actor)

    logger.info("Proposal %s on task %s created by %s as %s", proposal.id, task_id, actor.id, status.value)
    return proposal


def get_proposal(store: Store, proposal_id: str) -> Proposal | None:
    row = store.find_one("proposals", id=proposal_id)
    if not row:
        return None
    return _row_to_proposal(row)


def list_proposals(store: Store, actor: Member, task_id: str | None = None) -> list[Proposal]:
    """Staff and managers see everything; customers only what awaits them."""
    filters: dict = {"org_id": actor.org_id}
    if task_id:
        filters["task_id"] = task_id
    if actor.is_customer:
        filters["status"] = ProposalStatus.PENDING_CUSTOMER
    rows = store.find("proposals", order_by="-created_at", **filters)
    proposals = [_row_to_proposal(r) for r in rows]

    if actor.is_customer:
        visible = []
        for proposal in proposals:
            task = tasks.get_task(store, proposal.task_id)
            if task and tasks.customer_of(store, task) == actor.id:
                visible.append(proposal)
        proposals = visible
    return proposals


def pending_for_manager(store: Store, org_id: str) -> list[Proposal]:
    rows = store.find(
        "proposals",
        org_id=org_id,
        status=ProposalStatus.PENDING_MANAGER,
        order_by="created_at",
    )
    return [_row_to_proposal(r) for r in rows]


def manager_approve(store: Store, proposal_id: str, actor: Member, price: float | None = None) -> Proposal:
    """Pass a proposal on to the customer, optionally setting its price."""
    _require_manager(actor)
    validate_amount(price)

    with store.transaction():
        proposal = _load(store, proposal_id, actor)
        patch = {} if price is None else {"price": price}
        proposal = _advance(store, proposal, ProposalStatus.PENDING_CUSTOMER, patch)
        _notify_customer(store, proposal, actor)

    logger.info("Proposal %s approved by manager %s", proposal.id, actor.id)
    return proposal


def manager_reject(store: Store, proposal_id: str, actor: Member, reason: str | None = None) -> Proposal:
    _require_manager(actor)
    with store.transaction():
        proposal = _load(store, proposal_id, actor)
        if proposal.status != ProposalStatus.PENDING_MANAGER:
            raise ConflictError(f"Proposal {proposal.id} is {proposal.status.value}, not awaiting a manager")
        proposal = _advance(store, proposal, ProposalStatus.REJECTED)

        message = f"Your proposal was not approved: {proposal.description}"
        if reason:
            message += f" ({reason})"
        notifications.enqueue(
            store,
            proposal.org_id,
            [proposal.created_by],
            "Proposal rejected",
            message,
            "PROPOSAL_REJECTED",
            reference_id=proposal.id,
            actor_id=actor.id,
        )

    logger.info("Proposal %s rejected by manager %s", proposal.id, actor.id)
    return proposal


def customer_approve(store: Store, proposal_id: str, actor: Member) -> Proposal:
    """Accept the extra work. Its price is added to the task's price."""
    with store.transaction():
        proposal = _load(store, proposal_id, actor)
        task = _customer_task(store, proposal, actor)
        proposal = _advance(store, proposal, ProposalStatus.APPROVED)

        if proposal.price:
            tasks.add_to_price(store, task.id, proposal.price, actor_id=actor.id)
        _notify_team(store, proposal, task, actor, approved=True)

    logger.info("Proposal %s accepted by customer %s", proposal.id, actor.id)
    return proposal


def customer_reject(store: Store, proposal_id: str, actor: Member) -> Proposal:
    with store.transaction():
        proposal = _load(store, proposal_id, actor)
        task = _customer_task(store, proposal, actor)
        if proposal.status != ProposalStatus.PENDING_CUSTOMER:
            raise ConflictError(f"Proposal {proposal.id} is {proposal.status.value}, not awaiting the customer")
        proposal = _advance(store, proposal, ProposalStatus.REJECTED)
        _notify_team(store, proposal, task, actor, approved=False)

    logger.info("Proposal %s declined by customer %s", proposal.id, actor.id)
    return proposal


# ── Internals ───────────────────────────────────────────────────────────────


def _advance(store: Store, proposal: Proposal, status: ProposalStatus, patch: dict | None = None) -> Proposal:
    if status not in TRANSITIONS[proposal.status]:
        raise ConflictError(f"Proposal {proposal.id} cannot move from {proposal.status.value} to {status.value}")
    row = store.update(
        "proposals",
        proposal.id,
        {**(patch or {}), "status": status},
        expected_version=proposal.version,
    )
    return _row_to_proposal(row)


def _load(store: Store, proposal_id: str, actor: Member) -> Proposal:
    proposal = _row_to_proposal(store.get("proposals", proposal_id))
    _check_org(actor, proposal.org_id)
    return proposal


def _customer_task(store: Store, proposal: Proposal, actor: Member) -> Task:
    task = tasks.require_task(store, proposal.task_id)
    customer_id = proposal.customer_id or tasks.customer_of(store, task)
    if customer_id != actor.id:
        raise PermissionDeniedError("Only the task's customer can decide on this proposal")
    return task


def _notify_customer(store: Store, proposal: Proposal, actor: Member):
    customer_id = proposal.customer_id
    if customer_id is None:
        customer_id = tasks.customer_of(store, tasks.require_task(store, proposal.task_id))
    price = f" ({_money(proposal.price)})" if proposal.price is not None else ""
    notifications.enqueue(
        store,
        proposal.org_id,
        [customer_id],
        "New proposal for your vehicle",
        f"{proposal.description}{price}",
        "PROPOSAL_RECEIVED",
        reference_id=proposal.id,
        actor_id=actor.id,
    )


def _notify_team(store: Store, proposal: Proposal, task: Task, actor: Member, approved: bool):
    recipients = [m.id for m in members.managers_of(store, proposal.org_id)] + task.assigned_to
    verdict = "accepted" if approved else "declined"
    notifications.enqueue(
        store,
        proposal.org_id,
        recipients,
        f"Proposal {verdict}",
        f"{actor.full_name} {verdict}: {proposal.description}",
        "PROPOSAL_UPDATE",
        reference_id=proposal.id,
        actor_id=actor.id,
    )


def _require_manager(actor: Member):
    if not actor.is_manager:
        raise PermissionDeniedError(f"{actor.role.value} may not review proposals")


def _check_org(actor: Member, org_id: str):
    if actor.org_id != org_id:
        raise PermissionDeniedError("Record belongs to another garage")


def _money(value: float | None) -> str | None:
    return None if value is None else f"{value:.2f}"


def _row_to_proposal(row: dict) -> Proposal:
    return Proposal(
        id=row["id"],
        org_id=row["org_id"],
        task_id=row["task_id"],
        created_by=row["created_by"],
        description=row["description"],
        status=ProposalStatus(row["status"]),
        customer_id=row["customer_id"],
        price=row["price"],
        photo_url=row["photo_url"],
        audio_url=row["audio_url"],
        version=row["version"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
