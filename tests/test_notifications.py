"""Tests for the notification outbox and delivery channels."""

import tempfile
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from garage_workflow.config import Config
from garage_workflow.core import notifications as notifications_mod
from garage_workflow.core.clock import FixedClock
from garage_workflow.db.engine import init_db
from garage_workflow.db.store import Store
from garage_workflow.errors import PermissionDeniedError
from garage_workflow.integrations import slack as slack_mod

ORG = "garage-1"
NOW = datetime(2026, 3, 10, 9, 0)


@pytest.fixture
def store():
    """Create a temporary SQLite-backed store for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield Store(conn, clock=FixedClock(NOW))
        conn.close()


class ExplodingNotifier:
    def notify(self, user_ids, title, message, type, reference_id=None, org_id=None, actor_id=None):
        raise RuntimeError("channel down")


class TestEnqueue:
    def test_one_row_per_distinct_recipient(self, store):
        queued = notifications_mod.enqueue(
            store, ORG, ["u1", "u2", "u1", None], "Hi", "Body", "NEW_TASK", reference_id="t1"
        )
        assert queued == 2
        assert sorted(r["user_id"] for r in store.find("outbox")) == ["u1", "u2"]

    def test_actor_is_skipped(self, store):
        notifications_mod.enqueue(store, ORG, ["u1", "u2"], "Hi", "Body", "NEW_TASK", actor_id="u1")
        assert [r["user_id"] for r in store.find("outbox")] == ["u2"]


class TestDispatch:
    def test_in_app_delivery(self, store):
        notifications_mod.enqueue(store, ORG, ["u1"], "New task", "Brakes", "NEW_TASK", reference_id="t1")
        delivered = notifications_mod.dispatch_pending(store, [notifications_mod.InAppNotifier(store)])
        assert delivered == 1

        row = store.find_one("outbox")
        assert row["status"] == "DELIVERED"
        assert row["delivered_at"] == NOW.isoformat()

        inbox = notifications_mod.list_notifications(store, "u1")
        assert [(n.title, n.reference_id) for n in inbox] == [("New task", "t1")]
        assert notifications_mod.unread_count(store, "u1") == 1
        assert notifications_mod.dispatch_pending(store, [notifications_mod.InAppNotifier(store)]) == 0

    def test_failure_is_recorded_not_raised(self, store):
        notifications_mod.enqueue(store, ORG, ["u1"], "New task", "Brakes", "NEW_TASK")
        assert notifications_mod.dispatch_pending(store, [ExplodingNotifier()]) == 0
        row = store.find_one("outbox")
        assert row["status"] == "FAILED"
        assert "channel down" in row["error"]

    def test_mirror_failure_keeps_delivery(self, store, caplog):
        notifications_mod.enqueue(store, ORG, ["u1"], "New task", "Brakes", "NEW_TASK")
        notifiers = [notifications_mod.InAppNotifier(store), ExplodingNotifier()]
        with caplog.at_level("WARNING", logger="garage_workflow.core.notifications"):
            assert notifications_mod.dispatch_pending(store, notifiers) == 1

        row = store.find_one("outbox")
        assert row["status"] == "DELIVERED"
        assert row["error"] is None
        assert notifications_mod.unread_count(store, "u1") == 1
        assert "ExplodingNotifier" in caplog.text

    def test_slack_mirror(self, store):
        config = Config(slack_bot_token="xoxb-test", slack_channel="#garage")
        notifiers = notifications_mod.build_notifiers(store, config)
        assert len(notifiers) == 2

        notifications_mod.enqueue(store, ORG, ["u1"], "Proposal", "Rotors", "PROPOSAL_PENDING", reference_id="p1")
        with patch.object(slack_mod, "send_message") as send:
            notifications_mod.dispatch_pending(store, notifiers)

        send.assert_called_once()
        token, channel, text = send.call_args.args
        assert (token, channel) == ("xoxb-test", "#garage")
        assert text == "Proposal: Rotors"
        blocks = send.call_args.kwargs["blocks"]
        assert ":moneybag:" in blocks[0]["text"]["text"]
        assert "`p1`" in blocks[0]["text"]["text"]

    def test_no_slack_without_config(self, store):
        assert len(notifications_mod.build_notifiers(store, Config())) == 1


class TestInbox:
    def _deliver(self, store, *user_ids):
        notifications_mod.enqueue(store, ORG, list(user_ids), "Hello", "World", "NEW_TASK")
        notifications_mod.dispatch_pending(store, [notifications_mod.InAppNotifier(store)])

    def test_mark_read(self, store):
        self._deliver(store, "u1", "u2")
        note = notifications_mod.list_notifications(store, "u1")[0]
        with pytest.raises(PermissionDeniedError):
            notifications_mod.mark_read(store, note.id, "u2")
        assert notifications_mod.mark_read(store, note.id, "u1").is_read is True
        assert notifications_mod.list_notifications(store, "u1", unread_only=True) == []

    def test_mark_all_read(self, store):
        self._deliver(store, "u1")
        self._deliver(store, "u1")
        assert notifications_mod.mark_all_read(store, "u1") == 2
        assert notifications_mod.unread_count(store, "u1") == 0


class TestSlackFormatting:
    def test_unknown_type_gets_bell(self):
        blocks = slack_mod.format_notice("T", "M", "SOMETHING_ELSE", recipients=["u1", "u2"])
        assert blocks[0]["text"]["text"].startswith(":bell: *T*")
        assert "u1, u2" in blocks[1]["elements"][0]["text"]

    def test_send_without_token(self):
        with pytest.raises(slack_mod.SlackError):
            slack_mod.send_message(None, "#garage", "hi")
