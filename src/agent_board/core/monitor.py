"""Background watchdog that polls active runs and expires stuck ones."""

import logging
import threading
from pathlib import Path

from agent_board.config import Config, get_config
from agent_board.core import runs as runs_mod
from agent_board.core.lifecycle import LifecycleManager
from agent_board.db.engine import init_db
from agent_board.integrations.agent_runner import AgentRunner

logger = logging.getLogger(__name__)


class RunMonitor:
    """Background thread that reconciles agent runs the webhook may have missed."""

    def __init__(
        self,
        db_path: Path,
        runner: AgentRunner,
        config: Config | None = None,
        poll_interval: float | None = None,
        notifier=None,
    ):
        self.db_path = db_path
        self.runner = runner
        self.config = config or get_config()
        self.poll_interval = poll_interval if poll_interval is not None else self.config.poll_interval
        self.notifier = notifier
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def polling(self) -> bool:
        return self.poll_interval > 0

    def start(self):
        """Start the monitor thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="run-monitor", daemon=True)
        self._thread.start()
        logger.info("Run monitor started (poll every %ss)", self.poll_interval)

    def stop(self):
        """Signal the monitor thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Run monitor stopped")

    def _run(self):
        # The watchdog still ticks once a minute when polling is off
        interval = self.poll_interval if self.polling else 60.0
        while not self._stop_event.is_set():
            try:
                self.check_runs()
            except Exception:
                logger.exception("Error in run monitor loop")
            self._stop_event.wait(interval)

    def check_runs(self) -> int:
        """One monitor pass. Returns the number of runs that changed."""
        db = init_db(self.db_path)
        try:
            manager = LifecycleManager(db, self.runner, self.config, notifier=self.notifier)
            changed = len(manager.expire_stale_runs(self.config.max_run_minutes))
            if not self.polling:
                return changed

            for run in runs_mod.list_agent_runs(db, status="running") + runs_mod.list_agent_runs(
                db, status="creating"
            ):
                before = run.status
                try:
                    updated = manager.poll_run(run)
                except Exception:
                    logger.exception("Polling run #%s failed", run.id)
                    continue
                if updated and updated.status != before:
                    changed += 1
            return changed
        finally:
            db.close()
