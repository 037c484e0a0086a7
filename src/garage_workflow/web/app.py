"""JSON HTTP API over the workflow engine."""

import contextlib
import functools
import json
import logging

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from garage_workflow.config import Config, get_config
from garage_workflow.core import appointments as appointments_mod
from garage_workflow.core import calendar as calendar_mod
from garage_workflow.core import members as members_mod
from garage_workflow.core import notifications as notifications_mod
from garage_workflow.core import proposals as proposals_mod
from garage_workflow.core import tasks as tasks_mod
from garage_workflow.db.engine import init_db
from garage_workflow.db.store import Store
from garage_workflow.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    StoreError,
    ValidationError,
    WorkflowError,
)
from garage_workflow.monitor import ReminderMonitor

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (ValidationError, 400),
    (PermissionDeniedError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StoreError, 503),
)


class HttpError(Exception):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def endpoint(mutates: bool = False, status_code: int = 200):
    """Wrap a handler with store setup, actor lookup and error mapping.

    Handlers are plain functions ``(request, store, actor, body)`` returning
    JSON-serializable data. After a successful mutation the outbox is
    drained.
    """

    def wrap(handler):
        @functools.wraps(handler)
        async def route(request: Request):
            config: Config = request.app.state.config
            body = {}
            if request.method in ("POST", "PATCH"):
                raw = await request.body()
                if raw:
                    try:
                        body = json.loads(raw)
                    except ValueError:
                        return JSONResponse({"error": "Request body must be JSON"}, status_code=400)
                if not isinstance(body, dict):
                    return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)

            conn = init_db(config.db_path)
            try:
                store = Store(conn, clock=request.app.state.clock)
                actor = _resolve_actor(request, store)
                data = handler(request, store, actor, body)
                if mutates:
                    _drain_outbox(store, config)
                return JSONResponse(data, status_code=status_code)
            except HttpError as e:
                return JSONResponse({"error": e.message}, status_code=e.status_code)
            except WorkflowError as e:
                return JSONResponse({"error": str(e)}, status_code=_status_for(e))
            finally:
                conn.close()

        return route

    return wrap


def _resolve_actor(request: Request, store: Store):
    user_id = request.headers.get("x-user-id")
    if not user_id:
        raise HttpError(401, "Missing X-User-Id header")
    actor = members_mod.get_member(store, user_id)
    if actor is None:
        raise HttpError(401, f"Unknown user: {user_id}")
    return actor


def _status_for(error: WorkflowError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(error, cls):
            return status
    return 500


def _drain_outbox(store: Store, config: Config):
    try:
        notifications_mod.dispatch_pending(store, notifications_mod.build_notifiers(store, config))
    except Exception:
        logger.warning("Outbox drain failed", exc_info=True)


def _pick(body: dict, *keys: str, required: tuple = ()) -> dict:
    missing = [k for k in required if body.get(k) in (None, "")]
    if missing:
        raise HttpError(400, f"Missing field(s): {', '.join(missing)}")
    return {k: body[k] for k in keys if k in body}


# ── Tasks ─────────────────────────────────────────────────────────────────────


@endpoint()
def api_list_tasks(request, store, actor, body):
    params = request.query_params
    tasks = tasks_mod.list_tasks(
        store,
        actor,
        status=params.get("status") or None,
        assigned_to=params.get("assigned_to") or None,
        include_cancelled=params.get("include_cancelled") in ("1", "true"),
    )
    now = store.clock.now()
    return [_task_dict(t, actor, now) for t in tasks]


@endpoint(mutates=True, status_code=201)
def api_create_task(request, store, actor, body):
    if actor.is_customer:
        task = tasks_mod.submit_request(store, actor, **_pick(
            body,
            "plate", "service_types", "fault_description", "vehicle_attrs",
            "owner_name", "owner_phone", "owner_email", "owner_address",
            "mileage", "payment_method", "appointment_date", "appointment_time",
            required=("plate",),
        ))
    else:
        task = tasks_mod.create_task(store, actor, **_pick(
            body,
            "title", "description", "plate", "vehicle_attrs", "customer_id",
            "priority", "price", "allotted_time", "appointment_date", "appointment_time",
            required=("title",),
        ))
    return _task_dict(task, actor, store.clock.now())


@endpoint()
def api_get_task(request, store, actor, body):
    task = tasks_mod.require_task(store, request.path_params["task_id"])
    _check_can_view(store, actor, task)
    td = _task_dict(task, actor, store.clock.now())
    td["events"] = [_event_dict(e) for e in tasks_mod.get_task_events(store, task.id)]
    return td


@endpoint(mutates=True)
def api_update_task(request, store, actor, body):
    task = tasks_mod.update_task(store, request.path_params["task_id"], actor, **_pick(
        body, *tasks_mod.EDITABLE_FIELDS
    ))
    return _task_dict(task, actor, store.clock.now())


@endpoint(mutates=True)
def api_delete_task(request, store, actor, body):
    tasks_mod.delete_task(store, request.path_params["task_id"], actor)
    return {"deleted": request.path_params["task_id"]}


@endpoint(mutates=True)
def api_task_action(request, store, actor, body):
    task_id = request.path_params["task_id"]
    action = request.path_params["action"]
    config: Config = request.app.state.config

    if action == "claim":
        task = tasks_mod.claim(store, task_id, actor, retries=config.claim_retries)
    elif action == "release":
        task = tasks_mod.release(
            store, task_id, actor,
            hand_over=body.get("hand_over"),
            user_id=body.get("user_id"),
            retries=config.claim_retries,
        )
    elif action == "complete":
        task = tasks_mod.complete(store, task_id, actor, retries=config.claim_retries)
    elif action == "payment":
        task = tasks_mod.confirm_payment(store, task_id, actor, body.get("payment_method"))
    elif action == "approve":
        result = tasks_mod.approve_task(
            store, task_id, actor,
            send_to_team_now=bool(body.get("send_to_team_now")),
            reminder_at=body.get("reminder_at"),
        )
        td = _task_dict(result.task, actor, store.clock.now())
        td["target_date"] = result.target_date
        td["live"] = result.live
        return td
    elif action == "reject":
        task = tasks_mod.reject_task(store, task_id, actor, body.get("reason"))
    elif action == "cancel":
        task = tasks_mod.cancel_task(store, task_id, actor)
    elif action == "reschedule":
        task = tasks_mod.reschedule_task(store, task_id, actor, body.get("date"), body.get("time"))
    else:
        raise HttpError(404, f"Unknown task action: {action}")
    return _task_dict(task, actor, store.clock.now())


# ── Proposals ─────────────────────────────────────────────────────────────────


@endpoint(mutates=True, status_code=201)
def api_create_proposal(request, store, actor, body):
    proposal = proposals_mod.create_proposal(
        store,
        request.path_params["task_id"],
        actor,
        **_pick(body, "description", "price", "photo_url", "audio_url", required=("description",)),
    )
    return _proposal_dict(proposal)


@endpoint()
def api_list_proposals(request, store, actor, body):
    proposals = proposals_mod.list_proposals(store, actor, task_id=request.query_params.get("task_id"))
    return [_proposal_dict(p) for p in proposals]


@endpoint(mutates=True)
def api_proposal_action(request, store, actor, body):
    proposal_id = request.path_params["proposal_id"]
    action = request.path_params["action"]

    if action == "manager-approve":
        proposal = proposals_mod.manager_approve(store, proposal_id, actor, price=body.get("price"))
    elif action == "manager-reject":
        proposal = proposals_mod.manager_reject(store, proposal_id, actor, body.get("reason"))
    elif action == "customer-approve":
        proposal = proposals_mod.customer_approve(store, proposal_id, actor)
    elif action == "customer-reject":
        proposal = proposals_mod.customer_reject(store, proposal_id, actor)
    else:
        raise HttpError(404, f"Unknown proposal action: {action}")
    return _proposal_dict(proposal)


# ── Appointments ──────────────────────────────────────────────────────────────


@endpoint()
def api_list_appointments(request, store, actor, body):
    params = request.query_params
    appointments = appointments_mod.list_appointments(
        store,
        actor.org_id,
        date_from=params.get("from") or None,
        date_to=params.get("to") or None,
        status=params.get("status") or None,
        customer_id=actor.id if actor.is_customer else None,
    )
    return [_appointment_dict(a) for a in appointments]


@endpoint()
def api_pending_appointments(request, store, actor, body):
    if actor.is_customer:
        raise PermissionDeniedError("CUSTOMER may not view the approval queue")
    return [_appointment_dict(a) for a in appointments_mod.fetch_pending(store, actor.org_id)]


@endpoint(mutates=True, status_code=201)
def api_book_appointment(request, store, actor, body):
    appointment = appointments_mod.book_appointment(store, actor, **_pick(
        body,
        "appointment_date", "appointment_time", "service_type", "description",
        "customer_name", "customer_phone", "customer_id", "plate", "vehicle_attrs", "mileage",
        required=("appointment_date", "appointment_time", "service_type"),
    ))
    return _appointment_dict(appointment)


@endpoint(mutates=True, status_code=201)
def api_check_in(request, store, actor, body):
    appointment = appointments_mod.submit_check_in(store, actor, **_pick(
        body,
        "plate", "service_types", "fault_description", "vehicle_attrs",
        "owner_name", "owner_phone", "owner_email", "owner_address",
        "mileage", "payment_method", "appointment_date", "appointment_time",
        required=("plate",),
    ))
    return _appointment_dict(appointment)


@endpoint(mutates=True)
def api_appointment_action(request, store, actor, body):
    appointment_id = request.path_params["appointment_id"]
    action = request.path_params["action"]

    if action == "approve":
        appointment, task = appointments_mod.approve_appointment(
            store, appointment_id, actor, create_task_now=bool(body.get("create_task_now"))
        )
        ad = _appointment_dict(appointment)
        ad["task"] = _task_dict(task, actor, store.clock.now()) if task else None
        return ad
    if action == "promote":
        task = appointments_mod.promote_to_task(store, appointment_id, actor)
        return _task_dict(task, actor, store.clock.now())
    if action == "reject":
        appointment = appointments_mod.reject_appointment(store, appointment_id, actor, body.get("reason"))
    elif action == "cancel":
        appointment = appointments_mod.cancel_appointment(store, appointment_id, actor)
    elif action == "reschedule":
        appointment = appointments_mod.reschedule_appointment(
            store, appointment_id, actor, body.get("date"), body.get("time")
        )
    else:
        raise HttpError(404, f"Unknown appointment action: {action}")
    return _appointment_dict(appointment)


# ── Calendar & notifications ──────────────────────────────────────────────────


@endpoint()
def api_calendar(request, store, actor, body):
    view_date = request.query_params.get("date") or store.clock.now().date().isoformat()
    grid = calendar_mod.build_week(store, actor.org_id, view_date, request.app.state.config)
    return grid.to_dict()


@endpoint()
def api_list_notifications(request, store, actor, body):
    unread_only = request.query_params.get("unread") in ("1", "true")
    items = notifications_mod.list_notifications(store, actor.id, unread_only=unread_only)
    return {
        "unread": notifications_mod.unread_count(store, actor.id),
        "items": [_notification_dict(n) for n in items],
    }


@endpoint()
def api_mark_notification_read(request, store, actor, body):
    notification = notifications_mod.mark_read(store, request.path_params["notification_id"], actor.id)
    return _notification_dict(notification)


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _task_dict(t, viewer, now) -> dict:
    return {
        "id": t.id,
        "org_id": t.org_id,
        "title": t.title,
        "description": t.description,
        "status": t.status.value,
        "priority": t.priority.value,
        "vehicle_id": t.vehicle_id,
        "customer_id": t.customer_id,
        "created_by": t.created_by,
        "assigned_to": t.assigned_to,
        "price": t.price,
        "allotted_time": t.allotted_time,
        "started_at": _iso(t.started_at),
        "completed_at": _iso(t.completed_at),
        "scheduled_reminder_at": _iso(t.scheduled_reminder_at),
        "reminder_sent": t.reminder_sent,
        "metadata": t.metadata.to_dict(),
        "is_overdue": tasks_mod.is_overdue(t, now),
        "time_left": tasks_mod.time_left(t, now),
        "overdue_level": tasks_mod.overdue_level(t, viewer, now).value,
        "version": t.version,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "actor_id": e.actor_id,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


def _appointment_dict(a) -> dict:
    return {
        "id": a.id,
        "org_id": a.org_id,
        "status": a.status.value,
        "service_type": a.service_type,
        "description": a.description,
        "appointment_date": a.appointment_date,
        "appointment_time": a.appointment_time,
        "customer_id": a.customer_id,
        "customer_name": a.customer_name,
        "customer_phone": a.customer_phone,
        "vehicle_id": a.vehicle_id,
        "vehicle_plate": a.vehicle_plate,
        "mileage": a.mileage,
        "task_id": a.task_id,
        "metadata": a.metadata.to_dict(),
        "created_at": _iso(a.created_at),
    }


def _proposal_dict(p) -> dict:
    return {
        "id": p.id,
        "task_id": p.task_id,
        "status": p.status.value,
        "description": p.description,
        "price": p.price,
        "photo_url": p.photo_url,
        "audio_url": p.audio_url,
        "created_by": p.created_by,
        "customer_id": p.customer_id,
        "created_at": _iso(p.created_at),
    }


def _notification_dict(n) -> dict:
    return {
        "id": n.id,
        "title": n.title,
        "message": n.message,
        "type": n.type,
        "reference_id": n.reference_id,
        "actor_id": n.actor_id,
        "is_read": n.is_read,
        "created_at": _iso(n.created_at),
    }


def _check_can_view(store: Store, actor, task):
    if actor.org_id != task.org_id:
        raise PermissionDeniedError("Task belongs to another garage")
    if actor.is_customer and actor.id not in (task.created_by, tasks_mod.customer_of(store, task)):
        raise PermissionDeniedError("Customers may only view their own tasks")


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(config: Config | None = None, clock=None, run_monitor: bool = False) -> Starlette:
    config = config or get_config()

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        monitor = None
        if run_monitor:
            monitor = ReminderMonitor(
                config.db_path,
                poll_interval=config.reminder_poll_interval,
                config=config,
                clock=clock,
            )
            monitor.start()
        try:
            yield
        finally:
            if monitor:
                monitor.stop()

    routes = [
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_update_task, methods=["PATCH"]),
        Route("/api/tasks/{task_id}", api_delete_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/proposals", api_create_proposal, methods=["POST"]),
        Route("/api/tasks/{task_id}/{action}", api_task_action, methods=["POST"]),
        Route("/api/proposals", api_list_proposals, methods=["GET"]),
        Route("/api/proposals/{proposal_id}/{action}", api_proposal_action, methods=["POST"]),
        Route("/api/appointments", api_list_appointments, methods=["GET"]),
        Route("/api/appointments", api_book_appointment, methods=["POST"]),
        Route("/api/appointments/pending", api_pending_appointments, methods=["GET"]),
        Route("/api/appointments/{appointment_id}/{action}", api_appointment_action, methods=["POST"]),
        Route("/api/check-ins", api_check_in, methods=["POST"]),
        Route("/api/calendar", api_calendar, methods=["GET"]),
        Route("/api/notifications", api_list_notifications, methods=["GET"]),
        Route("/api/notifications/{notification_id}/read", api_mark_notification_read, methods=["POST"]),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.config = config
    app.state.clock = clock
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(config, run_monitor=True)
    uvicorn.run(app, host=host, port=port)
