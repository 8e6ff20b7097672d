"""Tests for task management operations."""

import pytest

from agent_board.core import tasks as tasks_mod
from agent_board.core.errors import InvalidTransitionError
from agent_board.core import runs as runs_mod


class TestSlugify:
    def test_basic(self):
        assert tasks_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert tasks_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_truncation(self):
        assert len(tasks_mod.slugify("a" * 100)) <= 60

    def test_empty_falls_back(self):
        assert tasks_mod.slugify("!!!") == "task"


class TestTaskCRUD:
    def test_create_task(self, db):
        task = tasks_mod.create_task(db, "Build login page", "acme")
        assert task.id == "build-login-page"
        assert task.status == "todo"
        assert task.workspace_id == "acme"
        assert task.assignee is None
        assert task.plan_status is None

    def test_create_duplicate_gets_suffix(self, db):
        t1 = tasks_mod.create_task(db, "Build login page", "acme")
        t2 = tasks_mod.create_task(db, "Build login page", "acme")
        assert t1.id == "build-login-page"
        assert t2.id == "build-login-page-2"

    def test_invalid_status(self, db):
        with pytest.raises(ValueError):
            tasks_mod.create_task(db, "Bad", "acme", status="blocked")

    def test_created_done_has_completed_at(self, db):
        task = tasks_mod.create_task(db, "Already shipped", "acme", status="done")
        assert task.completed_at is not None

    def test_get_nonexistent_task(self, db):
        assert tasks_mod.get_task(db, "nonexistent") is None

    def test_list_tasks_by_status(self, db):
        tasks_mod.create_task(db, "Task A", "acme")
        tasks_mod.create_task(db, "Task B", "acme", status="backlog")
        todos = tasks_mod.list_tasks(db, "acme", status="todo")
        assert [t.id for t in todos] == ["task-a"]

    def test_list_is_ordered_by_column_position(self, db):
        tasks_mod.create_task(db, "First", "acme")
        tasks_mod.create_task(db, "Second", "acme")
        tasks_mod.reorder_task(db, "second", "todo", 0)
        assert [t.id for t in tasks_mod.list_tasks(db, "acme")] == ["second", "first"]

    def test_update_content(self, db):
        tasks_mod.create_task(db, "Draft", "acme")
        task = tasks_mod.update_task_content(db, "draft", description="More detail")
        assert task.title == "Draft"
        assert task.description == "More detail"


class TestStatus:
    def test_any_column_reachable(self, db):
        tasks_mod.create_task(db, "Roam", "acme")
        for status in ("backlog", "in_review", "in_progress", "todo", "done"):
            assert tasks_mod.update_task_status(db, "roam", status).status == status

    def test_unknown_status(self, db):
        tasks_mod.create_task(db, "Roam", "acme")
        with pytest.raises(ValueError):
            tasks_mod.update_task_status(db, "roam", "blocked")

    def test_missing_task(self, db):
        assert tasks_mod.update_task_status(db, "ghost", "done") is None

    def test_done_blocked_by_active_run(self, db, agent_task):
        runs_mod.insert_run(db, agent_task.id, "planning")
        with pytest.raises(InvalidTransitionError):
            tasks_mod.update_task_status(db, agent_task.id, "done")

    def test_status_changes_are_logged(self, db):
        tasks_mod.create_task(db, "Logged", "acme")
        tasks_mod.update_task_status(db, "logged", "in_progress")
        events = tasks_mod.get_task_events(db, "logged")
        assert events[-1].event_type == "status_changed"
        assert (events[-1].old_value, events[-1].new_value) == ("todo", "in_progress")


class TestAssignment:
    def test_assigning_agent_sets_pending_plan(self, db):
        tasks_mod.create_task(db, "Later", "acme")
        task = tasks_mod.assign_task(db, "later", "agent", agent_type="cursor")
        assert task.assignee == "agent"
        assert task.agent_type == "cursor"
        assert task.plan_status == "pending"

    def test_existing_plan_status_kept(self, db, agent_task):
        tasks_mod.store_plan(db, agent_task.id, "Plan")
        db.commit()
        task = tasks_mod.assign_task(db, agent_task.id, "agent")
        assert task.plan_status == "ready"

    def test_invalid_assignee(self, db, agent_task):
        with pytest.raises(ValueError):
            tasks_mod.assign_task(db, agent_task.id, "robot")


class TestSubtasks:
    def test_create_and_archive_subtasks(self, db, agent_task):
        created = tasks_mod.create_subtasks(
            db, agent_task.id, [{"title": "Step one"}, {"title": "Step two", "description": "x"}]
        )
        assert [s.parent_task_id for s in created] == [agent_task.id, agent_task.id]
        assert len(tasks_mod.get_task(db, agent_task.id).subtasks) == 2

        assert tasks_mod.clear_subtasks(db, agent_task.id) == 2
        assert tasks_mod.get_task(db, agent_task.id).subtasks == []

    def test_subtasks_not_listed_at_top_level(self, db, agent_task):
        tasks_mod.create_subtasks(db, agent_task.id, [{"title": "Hidden"}])
        assert [t.id for t in tasks_mod.list_tasks(db, "acme")] == [agent_task.id]

    def test_archive_keeps_row(self, db, agent_task):
        assert tasks_mod.archive_task(db, agent_task.id)
        task = tasks_mod.get_task(db, agent_task.id)
        assert task.archived_at is not None
        assert tasks_mod.list_tasks(db, "acme", include_archived=True)[0].id == agent_task.id


class TestPlan:
    def test_update_plan_marks_ready(self, db, agent_task):
        task = tasks_mod.update_plan(db, agent_task.id, "1. Do the thing")
        assert task.plan == "1. Do the thing"
        assert task.plan_status == "ready"
        assert task.plan_generated_at is not None

    def test_invalid_plan_status(self, db, agent_task):
        with pytest.raises(ValueError):
            tasks_mod.set_plan_status(db, agent_task.id, "thinking")
