"""Background reminder loop."""

import logging
import threading
from pathlib import Path

from garage_workflow.core import notifications, tasks
from garage_workflow.db.engine import get_db
from garage_workflow.db.store import Store

logger = logging.getLogger(__name__)


class ReminderMonitor:
    """Background thread that fires due task reminders and drains the outbox."""

    def __init__(
        self,
        db_path: Path,
        poll_interval: float = 60.0,
        config=None,
        clock=None,
    ):
        self.db_path = db_path
        self.poll_interval = poll_interval
        self.config = config
        self.clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="reminder-monitor", daemon=True)
        self._thread.start()
        logger.info("Reminder monitor polling every %.0fs", self.poll_interval)

    def stop(self, timeout: float = 10.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Reminder monitor did not stop within %.0fs", timeout)
        logger.info("Reminder monitor stopped")

    def _loop(self):
        while not self._stop_event.is_set():
            try:
                self.check_once()
            except Exception:
                logger.exception("Reminder pass failed")
            self._stop_event.wait(self.poll_interval)

    def check_once(self) -> int:
        """One pass: promote due reminders, then deliver queued notices."""
        with get_db(self.db_path) as conn:
            store = Store(conn, clock=self.clock)
            promoted = tasks.promote_due_reminders(store)
            if promoted:
                logger.info("Promoted %d task(s) with due reminders", len(promoted))
            if self.config is not None:
                notifiers = notifications.build_notifiers(store, self.config)
            else:
                notifiers = [notifications.InAppNotifier(store)]
            notifications.dispatch_pending(store, notifiers)
            return len(promoted)
