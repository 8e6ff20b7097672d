"""Tests for the background run monitor."""

import time

from agent_board.config import Config
from agent_board.core import runs as runs_mod
from agent_board.core import tasks as tasks_mod
from agent_board.core.lifecycle import LifecycleManager
from agent_board.core.monitor import RunMonitor
from agent_board.integrations.agent_runner import RunReport


class TestRunMonitor:
    def test_check_runs_reconciles_polled_status(self, db, db_path, runner, config, manager, agent_task):
        run = manager.request_implementation_run(agent_task.id)
        runner.reports[run.external_run_id] = RunReport(
            run.external_run_id, "finished", pr_url="https://github.com/acme/webapp/pull/5", pr_number=5
        )

        monitor = RunMonitor(db_path, runner, config)
        assert monitor.check_runs() == 1
        assert runs_mod.get_agent_run(db, run.id).status == "finished"
        assert tasks_mod.get_task(db, agent_task.id).status == "in_review"

    def test_unreachable_runs_are_left_alone(self, db, db_path, runner, config, manager, agent_task):
        run = manager.request_planning_run(agent_task.id)
        monitor = RunMonitor(db_path, runner, config)
        assert monitor.check_runs() == 0
        assert runs_mod.get_agent_run(db, run.id).status == "creating"

    def test_watchdog_runs_without_polling(self, db, db_path, runner, agent_task):
        config = Config(db_path=db_path, poll_interval=0, max_run_minutes=10)
        run = LifecycleManager(db, runner, config).request_implementation_run(agent_task.id)
        runner.reports[run.external_run_id] = RunReport(run.external_run_id, "finished")
        db.execute(
            "UPDATE agent_runs SET started_at = datetime('now', '-11 minutes') WHERE id = ?",
            (run.id,),
        )
        db.commit()

        monitor = RunMonitor(db_path, runner, config)
        assert not monitor.polling
        assert monitor.check_runs() == 1
        run = runs_mod.get_agent_run(db, run.id)
        assert run.status == "failed"
        assert run.error_message == "Run exceeded 10 minutes"

    def test_thread_start_stop(self, db, db_path, runner, config, manager, agent_task):
        run = manager.request_implementation_run(agent_task.id)
        runner.reports[run.external_run_id] = RunReport(run.external_run_id, "running")

        monitor = RunMonitor(db_path, runner, config, poll_interval=0.05)
        monitor.start()
        try:
            assert monitor.is_running
            deadline = time.time() + 5
            while time.time() < deadline:
                if runs_mod.get_agent_run(db, run.id).status == "running":
                    break
                time.sleep(0.05)
        finally:
            monitor.stop()

        assert not monitor.is_running
        assert runs_mod.get_agent_run(db, run.id).status == "running"
