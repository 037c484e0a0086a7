"""Notification outbox and delivery.

Workflow transitions never talk to a delivery channel directly. They call
``enqueue`` inside their own transaction, which writes outbox rows; a
dispatcher later drains the outbox into the configured notifiers. Delivery
failures are logged and recorded on the row, never raised to the caller.
"""

import logging
from dataclasses import dataclass
from typing import Protocol

from garage_workflow.db.models import Notification, parse_dt
from garage_workflow.db.store import Store
from garage_workflow.errors import PermissionDeniedError
from garage_workflow.integrations import slack as slack_mod

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(
        self,
        user_ids: list[str],
        title: str,
        message: str,
        type: str,
        reference_id: str | None = None,
        org_id: str | None = None,
        actor_id: str | None = None,
    ) -> None: ...


class InAppNotifier:
    """Delivers notices into the in-app notifications table."""

    def __init__(self, store: Store):
        self.store = store

    def notify(self, user_ids, title, message, type, reference_id=None, org_id=None, actor_id=None):
        with self.store.transaction():
            for user_id in user_ids:
                self.store.insert("notifications", {
                    "org_id": org_id,
                    "user_id": user_id,
                    "actor_id": actor_id,
                    "title": title,
                    "message": message,
                    "type": type,
                    "reference_id": reference_id,
                })


class SlackNotifier:
    """Mirrors notices to a Slack channel."""

    def __init__(self, token: str, channel: str):
        self.token = token
        self.channel = channel

    def notify(self, user_ids, title, message, type, reference_id=None, org_id=None, actor_id=None):
        blocks = slack_mod.format_notice(title, message, type, reference_id, recipients=user_ids)
        slack_mod.send_message(self.token, self.channel, f"{title}: {message}", blocks=blocks)


def build_notifiers(store: Store, config) -> list:
    """The in-app channel, plus Slack when a token and channel are configured."""
    notifiers: list = [InAppNotifier(store)]
    if config.slack_bot_token and config.slack_channel:
        notifiers.append(SlackNotifier(config.slack_bot_token, config.slack_channel))
    return notifiers


# ── Outbox ──────────────────────────────────────────────────────────────────


@dataclass
class Notice:
    """A notice a transition wants sent once it has been committed."""

    user_ids: list[str]
    title: str
    message: str
    type: str
    reference_id: str | None = None


def emit(store: Store, org_id: str, notices: list[Notice], actor_id: str | None = None) -> int:
    queued = 0
    for notice in notices:
        queued += enqueue(
            store,
            org_id,
            notice.user_ids,
            notice.title,
            notice.message,
            notice.type,
            reference_id=notice.reference_id,
            actor_id=actor_id,
        )
    return queued


def enqueue(
    store: Store,
    org_id: str,
    user_ids,
    title: str,
    message: str,
    type: str,
    reference_id: str | None = None,
    actor_id: str | None = None,
) -> int:
    """Queue one notice per distinct recipient. The acting user is skipped."""
    recipients = []
    for user_id in user_ids:
        if user_id and user_id != actor_id and user_id not in recipients:
            recipients.append(user_id)

    with store.transaction():
        for user_id in recipients:
            store.insert("outbox", {
                "org_id": org_id,
                "user_id": user_id,
                "actor_id": actor_id,
                "title": title,
                "message": message,
                "type": type,
                "reference_id": reference_id,
            })
    return len(recipients)


def pending_notices(store: Store, limit: int = 100) -> list[dict]:
    return store.find("outbox", status="PENDING", order_by="created_at", limit=limit)


def dispatch_pending(store: Store, notifiers: list, limit: int = 100) -> int:
    """Deliver queued notices. Returns how many were delivered.

    The first notifier is the channel of record and decides the row's status.
    The rest are mirrors: they run once the row is DELIVERED and their
    failures are only logged.
    """
    if not notifiers:
        return 0
    primary, mirrors = notifiers[0], notifiers[1:]

    delivered = 0
    for row in pending_notices(store, limit):
        try:
            _send(primary, row)
        except Exception as e:
            logger.warning("Notice %s (%s) to %s failed: %s", row["id"], row["type"], row["user_id"], e)
            store.update("outbox", row["id"], {"status": "FAILED", "error": str(e)[:500]})
            continue
        store.update("outbox", row["id"], {
            "status": "DELIVERED",
            "delivered_at": store.clock.now().isoformat(),
        })
        delivered += 1

        for mirror in mirrors:
            try:
                _send(mirror, row)
            except Exception as e:
                logger.warning(
                    "Mirror %s could not relay notice %s: %s", type(mirror).__name__, row["id"], e
                )
    return delivered


def _send(notifier, row: dict):
    notifier.notify(
        [row["user_id"]],
        row["title"],
        row["message"],
        row["type"],
        reference_id=row["reference_id"],
        org_id=row["org_id"],
        actor_id=row["actor_id"],
    )


# ── In-app inbox ────────────────────────────────────────────────────────────


def list_notifications(
    store: Store,
    user_id: str,
    unread_only: bool = False,
    limit: int = 20,
) -> list[Notification]:
    filters = {"user_id": user_id}
    if unread_only:
        filters["is_read"] = 0
    rows = store.find("notifications", order_by="-created_at", limit=limit, **filters)
    return [_row_to_notification(r) for r in rows]


def unread_count(store: Store, user_id: str) -> int:
    row = store.execute(
        "SELECT COUNT(*) AS n FROM notifications WHERE user_id = ? AND is_read = 0",
        (user_id,),
    ).fetchone()
    return row["n"]


def mark_read(store: Store, notification_id: str, user_id: str) -> Notification:
    row = store.get("notifications", notification_id)
    if row["user_id"] != user_id:
        raise PermissionDeniedError("Notification belongs to another user")
    return _row_to_notification(store.update("notifications", notification_id, {"is_read": 1}))


def mark_all_read(store: Store, user_id: str) -> int:
    cursor = store.execute(
        "UPDATE notifications SET is_read = 1, version = version + 1, updated_at = ? "
        "WHERE user_id = ? AND is_read = 0",
        (store.clock.now().isoformat(), user_id),
    )
    return cursor.rowcount


def _row_to_notification(row: dict) -> Notification:
    return Notification(
        id=row["id"],
        org_id=row["org_id"],
        user_id=row["user_id"],
        title=row["title"],
        message=row["message"],
        type=row["type"],
        actor_id=row["actor_id"],
        reference_id=row["reference_id"],
        is_read=bool(row["is_read"]),
        created_at=parse_dt(row["created_at"]),
    )
