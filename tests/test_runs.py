"""Tests for agent run records."""

import pytest

from agent_board.core import runs as runs_mod
from agent_board.core.errors import ConflictError


class TestCanAdvance:
    def test_forward(self):
        assert runs_mod.can_advance("creating", "running")
        assert runs_mod.can_advance("creating", "finished")
        assert runs_mod.can_advance("running", "failed")

    def test_no_repeat_or_regression(self):
        assert not runs_mod.can_advance("running", "running")
        assert not runs_mod.can_advance("running", "creating")
        assert not runs_mod.can_advance("finished", "failed")
        assert not runs_mod.can_advance("failed", "finished")


class TestRunRecords:
    def test_insert_and_attach(self, db, agent_task):
        run = runs_mod.insert_run(db, agent_task.id, "planning", "be brief")
        assert run.status == "creating"
        assert run.is_active
        run = runs_mod.attach_external_id(db, run.id, "bc-123")
        assert runs_mod.get_run_by_external_id(db, "bc-123").id == run.id

    def test_invalid_run_type(self, db, agent_task):
        with pytest.raises(ValueError):
            runs_mod.insert_run(db, agent_task.id, "review")

    def test_one_active_run_per_type(self, db, agent_task):
        runs_mod.insert_run(db, agent_task.id, "planning")
        runs_mod.insert_run(db, agent_task.id, "implementation")
        with pytest.raises(ConflictError):
            runs_mod.insert_run(db, agent_task.id, "planning")

    def test_new_run_allowed_after_terminal(self, db, agent_task):
        first = runs_mod.insert_run(db, agent_task.id, "planning")
        runs_mod.fail_run(db, first.id, "boom")
        db.commit()
        second = runs_mod.insert_run(db, agent_task.id, "planning")
        assert second.id != first.id
        assert runs_mod.get_active_run(db, agent_task.id, "planning").id == second.id

    def test_advance_sets_finished_at_only_when_terminal(self, db, agent_task):
        run = runs_mod.insert_run(db, agent_task.id, "implementation")
        assert runs_mod.advance_run(db, run.id, "running")
        assert runs_mod.get_agent_run(db, run.id).finished_at is None
        assert runs_mod.advance_run(db, run.id, "finished", pr_url="https://x/pull/3", pr_number=3)
        run = runs_mod.get_agent_run(db, run.id)
        assert run.finished_at is not None
        assert run.pr_status == "open"
        assert run.is_terminal

    def test_advance_refuses_regression(self, db, agent_task):
        run = runs_mod.insert_run(db, agent_task.id, "implementation")
        runs_mod.advance_run(db, run.id, "running")
        assert not runs_mod.advance_run(db, run.id, "creating")
        assert runs_mod.get_agent_run(db, run.id).status == "running"

    def test_get_run_by_pr_prefers_latest(self, db, agent_task):
        first = runs_mod.insert_run(db, agent_task.id, "implementation")
        runs_mod.advance_run(db, first.id, "finished", pr_number=9)
        db.commit()
        second = runs_mod.insert_run(db, agent_task.id, "implementation")
        runs_mod.advance_run(db, second.id, "finished", pr_number=9)
        db.commit()
        assert runs_mod.get_run_by_pr(db, "acme/webapp", 9).id == second.id
        assert runs_mod.get_run_by_pr(db, "ACME/WebApp", 9).id == second.id
        assert runs_mod.get_run_by_pr(db, "globex/api", 9) is None

    def test_set_pr_status(self, db, agent_task):
        run = runs_mod.insert_run(db, agent_task.id, "implementation")
        assert runs_mod.set_pr_status(db, run.id, "open")
        assert not runs_mod.set_pr_status(db, run.id, "open")
        with pytest.raises(ValueError):
            runs_mod.set_pr_status(db, run.id, "draft")

    def test_abandon(self, db, agent_task):
        run = runs_mod.insert_run(db, agent_task.id, "planning")
        run = runs_mod.abandon_run(db, run.id, "stuck")
        assert run.status == "failed"
        assert run.error_message == "Run abandoned: stuck"
        assert run.abandoned_at is not None
        assert runs_mod.abandon_run(db, 9999, "nothing") is None

    def test_list_filters(self, db, agent_task):
        runs_mod.insert_run(db, agent_task.id, "planning")
        runs_mod.insert_run(db, agent_task.id, "implementation")
        assert len(runs_mod.list_agent_runs(db, task_id=agent_task.id)) == 2
        assert len(runs_mod.list_agent_runs(db, run_type="planning")) == 1
        assert runs_mod.list_agent_runs(db, status="finished") == []

    def test_stale_runs(self, db, agent_task):
        run = runs_mod.insert_run(db, agent_task.id, "planning")
        assert runs_mod.stale_runs(db, 30) == []
        db.execute(
            "UPDATE agent_runs SET started_at = datetime('now', '-45 minutes') WHERE id = ?",
            (run.id,),
        )
        db.commit()
        assert [r.id for r in runs_mod.stale_runs(db, 30)] == [run.id]
