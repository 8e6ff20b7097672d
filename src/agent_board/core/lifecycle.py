"""Task agent lifecycle: requesting runs and reconciling their outcomes.

Every operation that changes a task or its runs holds the task's lock, and
run creation is also guarded by the one-active-run index in the database,
so two processes sharing a board file cannot both start the same kind of run.
Run reports can arrive out of order or more than once; they only ever move a
run forward and only the task's current run of a type drives the task.
"""

import logging
import sqlite3

from agent_board.config import Config, get_config
from agent_board.core import comments as comments_mod
from agent_board.core import runs as runs_mod
from agent_board.core import tasks as tasks_mod
from agent_board.core import workspaces as workspaces_mod
from agent_board.core.context import Ranker, assemble_context, render_context
from agent_board.core.errors import (
    ConflictError,
    InvalidTransitionError,
    LifecycleError,
    MissingRepositoryError,
    NotFoundError,
    RunnerUnavailableError,
)
from agent_board.core.locks import task_lock
from agent_board.core.prompts import build_implementation_prompt, build_planning_prompt, plan_steps
from agent_board.db.models import AgentRun, Comment, ContextItem, Task
from agent_board.integrations.agent_runner import (
    AgentRunner,
    RunnerError,
    RunRequest,
    normalize_status,
    pr_number_from_url,
)

logger = logging.getLogger(__name__)

NO_PLAN_ERROR = "No plan returned from agent"
PLANNING_FAILED_ERROR = "Planning failed"
IMPLEMENTATION_FAILED_ERROR = "Agent run failed"


class LifecycleManager:
    """Drives tasks through planning and implementation runs of the agent."""

    def __init__(
        self,
        db: sqlite3.Connection,
        runner: AgentRunner,
        config: Config | None = None,
        ranker: Ranker | None = None,
        notifier=None,
    ):
        self.db = db
        self.runner = runner
        self.config = config or get_config()
        self.ranker = ranker
        self.notifier = notifier

    # ── Tasks ────────────────────────────────────────────────────────────────

    def create_task(
        self,
        workspace_id: str,
        title: str,
        description: str = "",
        prompt: str | None = None,
        status: str = "todo",
        assignee: str | None = None,
        agent_type: str | None = None,
        parent_task_id: str | None = None,
    ) -> Task:
        if not workspaces_mod.get_workspace(self.db, workspace_id):
            raise NotFoundError(f"Workspace not found: {workspace_id}")
        if parent_task_id and not tasks_mod.get_task(self.db, parent_task_id):
            raise NotFoundError(f"Task not found: {parent_task_id}")
        task = tasks_mod.create_task(
            self.db,
            title=title,
            workspace_id=workspace_id,
            description=description,
            prompt=prompt,
            status=status,
            assignee=assignee,
            agent_type=agent_type,
            parent_task_id=parent_task_id,
        )
        logger.info("Created task '%s' in workspace '%s'", task.id, workspace_id)
        return task

    def update_task_status(self, task_id: str, status: str, order_index: int | None = None) -> Task:
        """Move a task to a column, and to a position in it when `order_index` is given."""
        with task_lock(task_id):
            if order_index is None:
                task = tasks_mod.update_task_status(self.db, task_id, status)
            else:
                task = tasks_mod.reorder_task(self.db, task_id, status, order_index)
            if not task:
                raise NotFoundError(f"Task not found: {task_id}")
            return task

    def edit_task(
        self,
        task_id: str,
        title: str | None = None,
        description: str | None = None,
        prompt: str | None = None,
        plan: str | None = None,
    ) -> Task:
        """Edit a task's text fields. A hand-written plan is marked ready."""
        with task_lock(task_id):
            task = tasks_mod.update_task_content(self.db, task_id, title, description, prompt)
            if not task:
                raise NotFoundError(f"Task not found: {task_id}")
            if plan is not None:
                task = tasks_mod.update_plan(self.db, task_id, plan)
            return task

    def assign_task(self, task_id: str, assignee: str | None, agent_type: str | None = None) -> Task:
        """Change the assignee. Taking a task away from the agent abandons its active runs."""
        with task_lock(task_id):
            task = self._require_task(task_id)
            if task.assignee == "agent" and assignee != "agent":
                for run in runs_mod.active_runs(self.db, task_id):
                    self._abandon(run, "agent unassigned")
            return tasks_mod.assign_task(self.db, task_id, assignee, agent_type)

    def archive_task(self, task_id: str) -> Task:
        """Archive a task and its subtasks, abandoning any runs still active."""
        with task_lock(task_id):
            task = self._require_task(task_id)
            for t in [task] + task.subtasks:
                for run in runs_mod.active_runs(self.db, t.id):
                    self._abandon(run, "task archived")
            tasks_mod.archive_task(self.db, task_id)
            logger.info("Archived task '%s'", task_id)
            return tasks_mod.get_task(self.db, task_id)

    def get_context(self, task_id: str) -> list[ContextItem]:
        """Manual references and suggestions that would go into the next prompt."""
        return self._assemble(self._require_task(task_id))

    # ── Requesting runs ──────────────────────────────────────────────────────

    def request_planning_run(self, task_id: str, instructions: str | None = None) -> AgentRun:
        """Ask the agent for a plan. An existing plan is refined with `instructions`."""
        with task_lock(task_id):
            task = self._require_task(task_id)
            run = runs_mod.insert_run(self.db, task_id, "planning", instructions)
            tasks_mod.set_plan_status(self.db, task_id, "generating")
            tasks_mod.set_current_run(self.db, task_id, "planning", run.id)
            self.db.commit()

            workspace = workspaces_mod.get_workspace(self.db, task.workspace_id)
            context = render_context(self.db, self._assemble(task), task.workspace_id)
            prompt = build_planning_prompt(task, workspace, context, instructions)
            run = self._dispatch(task, run, prompt)
            logger.info("Planning run #%s started for task '%s'", run.id, task_id)
            return run

    def request_implementation_run(self, task_id: str, instructions: str | None = None) -> AgentRun:
        """Ask the agent to implement a task and open a pull request.

        The task moves to in_progress once the agent service accepts the run.
        """
        with task_lock(task_id):
            return self._start_implementation(task_id, instructions, move_to_in_progress=True)

    def _start_implementation(
        self,
        task_id: str,
        instructions: str | None,
        move_to_in_progress: bool,
    ) -> AgentRun:
        task = self._require_task(task_id)
        repo = workspaces_mod.get_repository(self.db, task.workspace_id)
        if not repo:
            raise MissingRepositoryError(
                f"Workspace '{task.workspace_id}' has no linked repository"
            )
        if task.status == "done":
            raise InvalidTransitionError(f"Task '{task_id}' is already done")
        if task.assignee != "agent":
            raise InvalidTransitionError(f"Task '{task_id}' is not assigned to the agent")
        if runs_mod.get_active_run(self.db, task_id, "implementation"):
            raise ConflictError(f"Task '{task_id}' already has an active implementation run")

        run = runs_mod.insert_run(self.db, task_id, "implementation", instructions)
        workspace = workspaces_mod.get_workspace(self.db, task.workspace_id)
        context = render_context(self.db, self._assemble(task), task.workspace_id)
        prompt = build_implementation_prompt(task, workspace, context, instructions)
        run = self._dispatch(task, run, prompt, repo)

        tasks_mod.set_current_run(self.db, task_id, "implementation", run.id)
        if move_to_in_progress:
            tasks_mod.set_status(self.db, task_id, "in_progress")
        self.db.commit()
        logger.info("Implementation run #%s started for task '%s'", run.id, task_id)
        return run

    def _dispatch(self, task: Task, run: AgentRun, prompt: str, repo=None) -> AgentRun:
        if repo is None:
            repo = workspaces_mod.get_repository(self.db, task.workspace_id)
        request = RunRequest(task_id=task.id, run_type=run.run_type, prompt=prompt)
        try:
            handle = self.runner.create_run(request, repo)
        except RunnerError as e:
            logger.error("Agent service rejected %s run for task '%s': %s", run.run_type, task.id, e)
            runs_mod.fail_run(self.db, run.id, str(e))
            if run.run_type == "planning":
                tasks_mod.set_plan_status(self.db, task.id, "failed")
            self.db.commit()
            raise RunnerUnavailableError(str(e), run_id=run.id) from e
        return runs_mod.attach_external_id(self.db, run.id, handle.external_run_id)

    # ── Comments ─────────────────────────────────────────────────────────────

    def add_comment(
        self,
        task_id: str,
        content: str,
        author_type: str = "user",
        user: str | None = None,
    ) -> Comment:
        """Add a comment. A user comment mentioning @agent asks the agent to act on it.

        On a task under way or in review the agent gets a new implementation
        run with the comment as instructions; the task keeps its column until
        that run reports back. On a task not started yet the plan is redone.
        """
        with task_lock(task_id):
            task = self._require_task(task_id)
            comment = comments_mod.add_comment(self.db, task_id, content, author_type, user)
            if not comment.mentions_agent:
                return comment

            try:
                if task.status in ("backlog", "todo"):
                    run = self.request_planning_run(task_id, instructions=content)
                else:
                    run = self._start_implementation(task_id, content, move_to_in_progress=False)
            except LifecycleError as e:
                logger.warning("Comment on task '%s' could not start a run: %s", task_id, e)
                comments_mod.add_comment(
                    self.db, task_id, f"Could not start a run: {e}", author_type="agent"
                )
                return comments_mod.get_comment(self.db, comment.id)

            comments_mod.mark_triggered(self.db, comment.id, run.id)
            return comments_mod.get_comment(self.db, comment.id)

    # ── Reconciliation ───────────────────────────────────────────────────────

    def reconcile_run_status(
        self,
        external_run_id: str,
        status: str,
        pr_url: str | None = None,
        pr_number: int | None = None,
        summary: str | None = None,
        error: str | None = None,
    ) -> AgentRun | None:
        """Apply a status report from the agent service.

        Returns the run, or None when the report names an unknown run or
        status. Stale, repeated and out-of-order reports change nothing.
        """
        normalized = normalize_status(status)
        if normalized is None:
            logger.warning("Dropping report for run %s with unknown status %r", external_run_id, status)
            return None
        run = runs_mod.get_run_by_external_id(self.db, external_run_id)
        if not run:
            logger.warning("Dropping report for unknown run %s", external_run_id)
            return None
        if pr_url and pr_number is None:
            pr_number = pr_number_from_url(pr_url)

        with task_lock(run.task_id):
            run = runs_mod.get_agent_run(self.db, run.id)
            return self._apply_report(run, normalized, pr_url, pr_number, summary, error)

    def _apply_report(
        self,
        run: AgentRun,
        status: str,
        pr_url: str | None = None,
        pr_number: int | None = None,
        summary: str | None = None,
        error: str | None = None,
    ) -> AgentRun:
        if run.is_terminal:
            logger.debug("Run #%s already %s, ignoring %s", run.id, run.status, status)
            return run

        if run.run_type == "planning":
            if status == "finished" and not summary:
                error = error or NO_PLAN_ERROR
            elif status == "failed":
                error = error or PLANNING_FAILED_ERROR
        elif status == "failed":
            error = error or IMPLEMENTATION_FAILED_ERROR

        if not runs_mod.advance_run(self.db, run.id, status, pr_url, pr_number, summary, error):
            return run

        task = tasks_mod.get_task(self.db, run.task_id)
        current_id = (
            task.current_planning_run_id if run.run_type == "planning" else task.current_run_id
        )
        if current_id != run.id:
            self.db.commit()
            logger.info("Run #%s of task '%s' was superseded; recorded %s only", run.id, task.id, status)
            return runs_mod.get_agent_run(self.db, run.id)

        plan = None
        if run.run_type == "planning":
            plan = self._apply_planning_result(task, status, summary)
        else:
            self._apply_implementation_result(task, status, bool(pr_url or pr_number))
        self.db.commit()

        run = runs_mod.get_agent_run(self.db, run.id)
        logger.info("Run #%s (%s) of task '%s' is now %s", run.id, run.run_type, task.id, status)
        if plan and self.config.subtasks_from_plan:
            self._subtasks_from_plan(task.id, plan)
        if run.is_terminal:
            self._notify(tasks_mod.get_task(self.db, task.id), run)
        return run

    def _apply_planning_result(self, task: Task, status: str, summary: str | None) -> str | None:
        if status == "finished" and summary:
            tasks_mod.store_plan(self.db, task.id, summary)
            return summary
        if status in ("finished", "failed"):
            tasks_mod.set_plan_status(self.db, task.id, "failed")
        return None

    def _apply_implementation_result(self, task: Task, status: str, has_pr: bool):
        if status == "finished":
            tasks_mod.set_status(self.db, task.id, "in_review" if has_pr else self.config.no_pr_status)
        elif status == "failed":
            tasks_mod.set_status(self.db, task.id, "todo")

    def _subtasks_from_plan(self, task_id: str, plan: str):
        steps = plan_steps(plan)
        if not steps:
            return
        tasks_mod.clear_subtasks(self.db, task_id)
        tasks_mod.create_subtasks(self.db, task_id, [{"title": s[:200]} for s in steps])
        logger.info("Created %d subtasks from the plan of task '%s'", len(steps), task_id)

    def update_pr_status(
        self,
        repository: str,
        pr_number: int,
        pr_status: str,
        closed_status: str | None = None,
    ) -> AgentRun | None:
        """Apply a pull request state change to the run that opened it.

        `repository` is the PR's "owner/repo"; only tasks of a workspace
        linked to it are considered. Merged moves the task to done; closed
        sends it back to work; a re-opened PR puts it back in review.
        """
        run = runs_mod.get_run_by_pr(self.db, repository, pr_number)
        if not run:
            logger.warning("Dropping PR event for unknown PR %s#%s", repository, pr_number)
            return None

        with task_lock(run.task_id):
            if not runs_mod.set_pr_status(self.db, run.id, pr_status):
                return runs_mod.get_agent_run(self.db, run.id)

            task = tasks_mod.get_task(self.db, run.task_id)
            if task.current_run_id == run.id:
                if pr_status == "merged":
                    tasks_mod.set_status(self.db, task.id, "done")
                elif pr_status == "closed":
                    tasks_mod.set_status(self.db, task.id, closed_status or self.config.pr_closed_status)
                elif task.status in ("in_progress", "todo"):
                    tasks_mod.set_status(self.db, task.id, "in_review")
            self.db.commit()
            logger.info("PR #%s of task '%s' is now %s", pr_number, task.id, pr_status)
            return runs_mod.get_agent_run(self.db, run.id)

    # ── Abandoning and polling ───────────────────────────────────────────────

    def abandon_run(self, run_id: int, reason: str) -> AgentRun:
        run = runs_mod.get_agent_run(self.db, run_id)
        if not run:
            raise NotFoundError(f"Run not found: {run_id}")
        with task_lock(run.task_id):
            return self._abandon(runs_mod.get_agent_run(self.db, run_id), reason)

    def _abandon(self, run: AgentRun, reason: str) -> AgentRun:
        if run.is_terminal:
            return run
        run = runs_mod.abandon_run(self.db, run.id, reason)
        task = tasks_mod.get_task(self.db, run.task_id)
        if run.run_type == "planning" and task.current_planning_run_id == run.id:
            tasks_mod.set_plan_status(self.db, task.id, "failed")
        elif run.run_type == "implementation" and task.current_run_id == run.id:
            if task.status == "in_progress":
                tasks_mod.set_status(self.db, task.id, "todo")
        self.db.commit()
        return run

    def poll_run(self, run: AgentRun) -> AgentRun | None:
        """Ask the agent service how a run is doing and reconcile the answer."""
        if not run.external_run_id:
            return None
        try:
            report = self.runner.get_run_status(run.external_run_id)
        except RunnerError as e:
            logger.warning("Could not poll run #%s: %s", run.id, e)
            return None
        return self.reconcile_run_status(
            report.external_run_id,
            report.status,
            pr_url=report.pr_url,
            pr_number=report.pr_number,
            summary=report.summary,
            error=report.error,
        )

    def expire_stale_runs(self, max_minutes: int | None = None) -> list[AgentRun]:
        """Fail runs that have been creating or running for longer than `max_minutes`."""
        max_minutes = max_minutes or self.config.max_run_minutes
        expired = []
        for stale in runs_mod.stale_runs(self.db, max_minutes):
            with task_lock(stale.task_id):
                run = runs_mod.get_agent_run(self.db, stale.id)
                if run.is_terminal:
                    continue
                logger.warning("Run #%s of task '%s' exceeded %d minutes", run.id, run.task_id, max_minutes)
                expired.append(
                    self._apply_report(run, "failed", error=f"Run exceeded {max_minutes} minutes")
                )
        return expired

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _require_task(self, task_id: str) -> Task:
        task = tasks_mod.get_task(self.db, task_id)
        if not task:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def _assemble(self, task: Task) -> list[ContextItem]:
        return assemble_context(
            self.db,
            task,
            self.ranker,
            min_score=self.config.suggest_min_score,
            limit=self.config.suggest_limit,
        )

    def _notify(self, task: Task, run: AgentRun):
        if not self.notifier:
            return
        try:
            self.notifier.notify_run(task, run)
        except Exception:
            logger.exception("Notification for run #%s failed", run.id)
