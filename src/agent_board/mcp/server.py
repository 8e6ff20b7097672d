"""MCP server giving local coding agents access to board tasks and their context."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from agent_board.config import Config, get_config
from agent_board.core import context as context_mod
from agent_board.core import runs as runs_mod
from agent_board.core import tasks as tasks_mod
from agent_board.core import workspaces as workspaces_mod
from agent_board.core.errors import LifecycleError
from agent_board.core.lifecycle import LifecycleManager
from agent_board.core.monitor import RunMonitor
from agent_board.db.engine import init_db
from agent_board.integrations.agent_runner import AgentRunner, runner_from_config
from agent_board.integrations.slack import notifier_from_config


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config
    runner: AgentRunner
    notifier: object = None
    run_monitor: RunMonitor | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the board on startup and watch its runs until shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    runner = runner_from_config(config)
    notifier = notifier_from_config(config)

    monitor = RunMonitor(config.db_path, runner, config, notifier=notifier)
    monitor.start()

    try:
        yield AppContext(db=db, config=config, runner=runner, notifier=notifier, run_monitor=monitor)
    finally:
        monitor.stop()
        db.close()


mcp = FastMCP("agent-board", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _manager(ctx: Context) -> LifecycleManager:
    app = _ctx(ctx)
    return LifecycleManager(app.db, app.runner, app.config, notifier=app.notifier)


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def list_tasks(ctx: Context, workspace: str, status: str | None = None) -> list[dict]:
    """List the tasks of a workspace, optionally filtered by status.

    Statuses: backlog, todo, in_progress, in_review, done.
    """
    app = _ctx(ctx)
    return [_task_to_dict(t) for t in tasks_mod.list_tasks(app.db, workspace, status=status)]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its plan, subtasks and agent runs."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    result = _task_to_dict(task)
    result["subtasks"] = [_task_to_dict(s) for s in task.subtasks]
    result["runs"] = [_run_to_dict(r) for r in runs_mod.list_agent_runs(app.db, task_id=task_id)]
    return result


@mcp.tool()
def get_task_context(ctx: Context, task_id: str) -> dict:
    """Everything needed to work on a task: the task, its workspace, repository and context items."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}

    workspace = workspaces_mod.get_workspace(app.db, task.workspace_id)
    repo = workspaces_mod.get_repository(app.db, task.workspace_id)
    items = _manager(ctx).get_context(task_id)
    rendered = context_mod.render_context(app.db, items, task.workspace_id)
    return {
        "task": _task_to_dict(task),
        "workspace": {
            "id": workspace.id,
            "name": workspace.name,
            "description": workspace.description,
        },
        "repository": {"full_name": repo.full_name, "default_branch": repo.default_branch} if repo else None,
        "context": [
            {"ref_type": i.ref_type, "ref_id": i.ref_id, "title": i.title, "reason": i.reason}
            for i in items
        ],
        "docs": rendered.docs,
        "messages": rendered.messages,
        "links": rendered.links,
    }


@mcp.tool()
def update_task_status(ctx: Context, task_id: str, status: str) -> dict:
    """Move a task to another column: backlog, todo, in_progress, in_review or done."""
    try:
        return _task_to_dict(_manager(ctx).update_task_status(task_id, status))
    except (LifecycleError, ValueError) as e:
        return {"error": str(e)}


@mcp.tool()
def add_comment(ctx: Context, task_id: str, content: str) -> dict:
    """Comment on a task as the agent."""
    try:
        comment = _manager(ctx).add_comment(task_id, content, author_type="agent")
    except (LifecycleError, ValueError) as e:
        return {"error": str(e)}
    return {"id": comment.id, "task_id": comment.task_id, "content": comment.content}


# ── Agent Run Tools ───────────────────────────────────────────────────────────


@mcp.tool()
def request_planning_run(ctx: Context, task_id: str, instructions: str | None = None) -> dict:
    """Ask the cloud agent for an implementation plan for a task."""
    try:
        return _run_to_dict(_manager(ctx).request_planning_run(task_id, instructions))
    except LifecycleError as e:
        return {"error": str(e)}


@mcp.tool()
def request_implementation_run(ctx: Context, task_id: str, instructions: str | None = None) -> dict:
    """Ask the cloud agent to implement a task and open a pull request."""
    try:
        return _run_to_dict(_manager(ctx).request_implementation_run(task_id, instructions))
    except LifecycleError as e:
        return {"error": str(e)}


@mcp.tool()
def list_agent_runs(
    ctx: Context,
    task_id: str | None = None,
    status: str | None = None,
) -> list[dict]:
    """List agent runs, newest first. Statuses: creating, running, finished, failed."""
    app = _ctx(ctx)
    return [_run_to_dict(r) for r in runs_mod.list_agent_runs(app.db, task_id=task_id, status=status)]


# ── Context Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
def search_context(ctx: Context, workspace: str, query: str, limit: int = 10) -> list[dict]:
    """Search a workspace's docs, recent messages and links for a phrase."""
    app = _ctx(ctx)
    candidates = context_mod.workspace_candidates(app.db, workspace)
    ranked = context_mod.LexicalRanker().rank(query, candidates)
    return [
        {
            "ref_type": i.ref_type,
            "ref_id": i.ref_id,
            "title": i.title,
            "relevance_score": i.relevance_score,
            "reason": i.reason,
        }
        for i in ranked[:limit]
    ]


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_to_dict(task) -> dict:
    return {
        "id": task.id,
        "workspace_id": task.workspace_id,
        "title": task.title,
        "description": task.description,
        "status": task.status,
        "assignee": task.assignee,
        "plan": task.plan,
        "plan_status": task.plan_status,
        "parent_task_id": task.parent_task_id,
        "created_at": task.created_at.isoformat() if task.created_at else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }


def _run_to_dict(run) -> dict:
    return {
        "id": run.id,
        "task_id": run.task_id,
        "run_type": run.run_type,
        "external_run_id": run.external_run_id,
        "status": run.status,
        "pr_url": run.pr_url,
        "pr_status": run.pr_status,
        "summary": run.summary,
        "error_message": run.error_message,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
    }
