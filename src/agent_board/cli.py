"""CLI entry point for the agent board."""

import json
import logging
import sys
import time

import click

from agent_board.config import get_config
from agent_board.core import comments as comments_mod
from agent_board.core import context as context_mod
from agent_board.core import runs as runs_mod
from agent_board.core import tasks as tasks_mod
from agent_board.core import workspaces as workspaces_mod
from agent_board.core.errors import LifecycleError
from agent_board.core.lifecycle import LifecycleManager
from agent_board.db.engine import get_db
from agent_board.integrations.agent_runner import runner_from_config
from agent_board.integrations.github import GitHubError, parse_repo_slug
from agent_board.integrations.slack import notifier_from_config

STATUS_ICONS = {
    "backlog": "·",
    "todo": "○",
    "in_progress": "●",
    "in_review": "◐",
    "done": "✓",
}


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _manager(db) -> LifecycleManager:
    config = get_config()
    return LifecycleManager(db, runner_from_config(config), config, notifier=notifier_from_config(config))


def _fail(message: str):
    click.echo(message, err=True)
    sys.exit(1)


@click.group()
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity",
)
def main(log_level):
    """board - agent task board CLI"""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Workspace Commands ────────────────────────────────────────────────────────


@main.group("workspace")
def workspace_group():
    """Manage workspaces."""
    pass


@workspace_group.command("create")
@click.argument("name")
@click.option("--id", "workspace_id", default=None, help="Workspace ID (defaults to a slug of the name)")
@click.option("--description", "-d", default="", help="Workspace description")
def workspace_create(name, workspace_id, description):
    """Create a workspace."""
    workspace_id = workspace_id or tasks_mod.slugify(name)
    with _get_db() as db:
        if workspaces_mod.get_workspace(db, workspace_id):
            _fail(f"Workspace already exists: {workspace_id}")
        ws = workspaces_mod.create_workspace(db, workspace_id, name, description)
        click.echo(f"Workspace created: {ws.id} ({ws.name})")


@workspace_group.command("list")
def workspace_list():
    """List workspaces."""
    with _get_db() as db:
        workspaces = workspaces_mod.list_workspaces(db)
        if not workspaces:
            click.echo("No workspaces found.")
            return
        for ws in workspaces:
            repo = workspaces_mod.get_repository(db, ws.id)
            repo_str = f" [{repo.full_name}]" if repo else ""
            click.echo(f"  {ws.id}: {ws.name}{repo_str}")


@workspace_group.command("link-repo")
@click.argument("workspace_id")
@click.argument("repository")
@click.option("--branch", default="main", help="Default branch")
def workspace_link_repo(workspace_id, repository, branch):
    """Link a GitHub repository (owner/repo or URL) to a workspace."""
    try:
        owner, repo = parse_repo_slug(repository)
    except GitHubError as e:
        _fail(str(e))
    with _get_db() as db:
        try:
            link = workspaces_mod.link_repository(db, workspace_id, owner, repo, branch)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Linked {link.full_name} ({link.default_branch}) to {workspace_id}")


# ── Context Item Commands ─────────────────────────────────────────────────────


def _require_workspace(db, workspace_id):
    if not workspaces_mod.get_workspace(db, workspace_id):
        _fail(f"Workspace not found: {workspace_id}")


@main.group("doc")
def doc_group():
    """Manage workspace documents."""
    pass


@doc_group.command("add")
@click.argument("workspace_id")
@click.argument("title")
@click.option("--content", "-c", default=None, help="Document content (markdown)")
@click.option("--file", "file_", type=click.File("r"), default=None, help="Read content from a file")
def doc_add(workspace_id, title, content, file_):
    """Add a document to a workspace."""
    if file_ is not None:
        content = file_.read()
    with _get_db() as db:
        _require_workspace(db, workspace_id)
        doc = workspaces_mod.add_doc(db, workspace_id, title, content or "")
        click.echo(f"Added doc #{doc.id}: {doc.title}")


@main.group("msg")
def msg_group():
    """Manage workspace messages."""
    pass


@msg_group.command("add")
@click.argument("workspace_id")
@click.argument("content")
@click.option("--author", default=None, help="Message author")
@click.option("--reply-to", type=int, default=None, help="Parent message ID")
def msg_add(workspace_id, content, author, reply_to):
    """Post a message to a workspace."""
    with _get_db() as db:
        _require_workspace(db, workspace_id)
        msg = workspaces_mod.add_message(db, workspace_id, content, author, reply_to)
        click.echo(f"Added message #{msg.id}")


@main.group("link")
def link_group():
    """Manage workspace links."""
    pass


@link_group.command("add")
@click.argument("workspace_id")
@click.argument("url")
@click.argument("title")
@click.option("--type", "link_type", default="other", help="email, spreadsheet, figma, document or other")
@click.option("--description", "-d", default="", help="Link description")
def link_add(workspace_id, url, title, link_type, description):
    """Save a link in a workspace."""
    with _get_db() as db:
        _require_workspace(db, workspace_id)
        try:
            link = workspaces_mod.add_link(db, workspace_id, url, title, link_type, description)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Added link #{link.id}: {link.title}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("workspace_id")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--status", default="todo", help="Initial column")
@click.option("--agent", "assign_agent", is_flag=True, help="Assign the task to the agent")
@click.option("--parent", default=None, help="Parent task ID")
def task_add(workspace_id, title, description, status, assign_agent, parent):
    """Create a new task."""
    with _get_db() as db:
        try:
            task = _manager(db).create_task(
                workspace_id,
                title,
                description=description,
                status=status,
                assignee="agent" if assign_agent else None,
                parent_task_id=parent,
            )
        except (LifecycleError, ValueError) as e:
            _fail(str(e))
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        if task.assignee:
            click.echo(f"  Assignee: {task.assignee}")


@task_group.command("list")
@click.argument("workspace_id")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(workspace_id, status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, workspace_id, status=status)

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        for task in tasks:
            icon = STATUS_ICONS.get(task.status, "?")
            who = " [agent]" if task.assignee == "agent" else ""
            plan = f" [plan: {task.plan_status}]" if task.plan_status else ""
            click.echo(f"  {icon} {task.id}: {task.title} ({task.status}){who}{plan}")

            for sub in tasks_mod.list_tasks(db, workspace_id, parent_task_id=task.id):
                sub_icon = STATUS_ICONS.get(sub.status, "?")
                click.echo(f"    {sub_icon} {sub.id}: {sub.title} ({sub.status})")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Workspace: {task.workspace_id}")
        if task.assignee:
            click.echo(f"  Assignee: {task.assignee}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.plan_status:
            click.echo(f"  Plan: {task.plan_status}")
        if task.plan:
            click.echo("")
            click.echo(task.plan)
        if task.subtasks:
            click.echo("  Subtasks:")
            for sub in task.subtasks:
                click.echo(f"    {STATUS_ICONS.get(sub.status, '?')} {sub.id}: {sub.title}")

        runs = runs_mod.list_agent_runs(db, task_id=task_id)
        if runs:
            click.echo("  Runs:")
            for run in runs:
                pr = f" {run.pr_url} ({run.pr_status})" if run.pr_url else ""
                click.echo(f"    #{run.id} {run.run_type} {run.status}{pr}")

        comments = comments_mod.list_comments(db, task_id)
        if comments:
            click.echo("  Comments:")
            for c in comments:
                author = c.author or c.author_type
                click.echo(f"    [{author}] {c.content}")


@task_group.command("status")
@click.argument("task_id")
@click.argument("status")
def task_status(task_id, status):
    """Move a task to another column."""
    with _get_db() as db:
        try:
            task = _manager(db).update_task_status(task_id, status)
        except (LifecycleError, ValueError) as e:
            _fail(str(e))
        click.echo(f"Task {task.id} is now {task.status}")


@task_group.command("edit")
@click.argument("task_id")
@click.option("--title", default=None, help="New title")
@click.option("--description", "-d", default=None, help="New description")
@click.option("--plan-file", type=click.File("r"), default=None, help="Replace the plan with a file's contents")
def task_edit(task_id, title, description, plan_file):
    """Edit a task's title, description or plan."""
    plan = plan_file.read() if plan_file is not None else None
    with _get_db() as db:
        try:
            task = _manager(db).edit_task(task_id, title=title, description=description, plan=plan)
        except LifecycleError as e:
            _fail(str(e))
        click.echo(f"Updated task: {task.id}")


@task_group.command("assign")
@click.argument("task_id")
@click.argument("assignee", type=click.Choice(["agent", "user", "none"]))
def task_assign(task_id, assignee):
    """Assign a task to the agent, a user, or nobody."""
    with _get_db() as db:
        try:
            task = _manager(db).assign_task(task_id, None if assignee == "none" else assignee)
        except (LifecycleError, ValueError) as e:
            _fail(str(e))
        click.echo(f"Task {task.id} assigned to {task.assignee or 'nobody'}")


@task_group.command("archive")
@click.argument("task_id")
def task_archive(task_id):
    """Archive a task and its subtasks."""
    with _get_db() as db:
        try:
            _manager(db).archive_task(task_id)
        except LifecycleError as e:
            _fail(str(e))
        click.echo(f"Archived task: {task_id}")


@task_group.command("plan")
@click.argument("task_id")
@click.option("--instructions", "-i", default=None, help="Changes to ask for in the plan")
def task_plan(task_id, instructions):
    """Ask the agent for an implementation plan."""
    with _get_db() as db:
        try:
            run = _manager(db).request_planning_run(task_id, instructions)
        except LifecycleError as e:
            _fail(str(e))
        click.echo(f"Planning run #{run.id} started ({run.external_run_id})")


@task_group.command("implement")
@click.argument("task_id")
@click.option("--instructions", "-i", default=None, help="Extra instructions for the agent")
def task_implement(task_id, instructions):
    """Ask the agent to implement a task and open a PR."""
    with _get_db() as db:
        try:
            run = _manager(db).request_implementation_run(task_id, instructions)
        except LifecycleError as e:
            _fail(str(e))
        click.echo(f"Implementation run #{run.id} started ({run.external_run_id})")


@task_group.command("comment")
@click.argument("task_id")
@click.argument("content")
@click.option("--author", default=None, help="Comment author")
def task_comment(task_id, content, author):
    """Comment on a task. Mention @agent to have the agent act on it."""
    with _get_db() as db:
        try:
            comment = _manager(db).add_comment(task_id, content, user=author)
        except (LifecycleError, ValueError) as e:
            _fail(str(e))
        click.echo(f"Added comment #{comment.id}")
        if comment.triggered_run_id:
            click.echo(f"  Started agent run #{comment.triggered_run_id}")
        elif comment.mentions_agent:
            replies = comments_mod.list_comments(db, task_id)
            if replies and replies[-1].author_type == "agent":
                click.echo(f"  {replies[-1].content}")


@task_group.command("context")
@click.argument("task_id")
@click.option("--add", "add_refs", multiple=True, help="Reference to add, as type:id (e.g. doc:3)")
@click.option("--remove", "remove_refs", multiple=True, help="Reference to remove, as type:id")
def task_context(task_id, add_refs, remove_refs):
    """Show or edit the context linked to a task."""
    with _get_db() as db:
        if not tasks_mod.get_task(db, task_id):
            _fail(f"Task not found: {task_id}")
        try:
            for ref in add_refs:
                context_mod.add_context_ref(db, task_id, *_split_ref(ref))
            for ref in remove_refs:
                context_mod.remove_context_ref(db, task_id, *_split_ref(ref))
        except ValueError as e:
            _fail(str(e))

        refs = context_mod.list_context_refs(db, task_id)
        if not refs:
            click.echo("No context linked.")
            return
        for ref in refs:
            item = workspaces_mod.resolve_ref(db, ref.ref_type, ref.ref_id)
            title = getattr(item, "title", None) or (item.content[:60] if item else "(missing)")
            click.echo(f"  {ref.ref_type}:{ref.ref_id} {title}")


@task_group.command("suggest")
@click.argument("task_id")
def task_suggest(task_id):
    """Show the context the agent would get for a task."""
    with _get_db() as db:
        try:
            items = _manager(db).get_context(task_id)
        except LifecycleError as e:
            _fail(str(e))
        if not items:
            click.echo("No relevant context found.")
            return
        for item in items:
            click.echo(f"  {item.relevance_score:5.1f} {item.ref_type}:{item.ref_id} {item.title} - {item.reason}")


def _split_ref(ref: str) -> tuple[str, str]:
    ref_type, sep, ref_id = ref.partition(":")
    if not sep or not ref_id:
        raise ValueError(f"Reference must look like type:id, got {ref!r}")
    return ref_type, ref_id


# ── Run Commands ──────────────────────────────────────────────────────────────


@main.group("run")
def run_group():
    """Inspect and manage agent runs."""
    pass


@run_group.command("list")
@click.option("--task", "task_id", default=None, help="Filter by task")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def run_list(task_id, status, json_output):
    """List agent runs."""
    with _get_db() as db:
        runs = runs_mod.list_agent_runs(db, task_id=task_id, status=status)
        if json_output:
            click.echo(json.dumps([_run_dict(r) for r in runs], indent=2))
            return
        if not runs:
            click.echo("No runs found.")
            return
        for run in runs:
            click.echo(f"  #{run.id} {run.task_id} {run.run_type} {run.status}")


@run_group.command("show")
@click.argument("run_id", type=int)
def run_show(run_id):
    """Show run details."""
    with _get_db() as db:
        run = runs_mod.get_agent_run(db, run_id)
        if not run:
            _fail(f"Run not found: {run_id}")
        click.echo(json.dumps(_run_dict(run), indent=2))


@run_group.command("reconcile")
@click.argument("external_run_id")
@click.argument("status")
@click.option("--pr-url", default=None)
@click.option("--pr-number", type=int, default=None)
@click.option("--summary", default=None)
@click.option("--error", default=None)
def run_reconcile(external_run_id, status, pr_url, pr_number, summary, error):
    """Apply a run status report by hand (as the webhook would)."""
    with _get_db() as db:
        run = _manager(db).reconcile_run_status(
            external_run_id, status, pr_url=pr_url, pr_number=pr_number, summary=summary, error=error
        )
        if not run:
            _fail(f"Report dropped: unknown run or status ({external_run_id}, {status})")
        click.echo(f"Run #{run.id} is {run.status}")


@run_group.command("pr")
@click.argument("repository")
@click.argument("pr_number", type=int)
@click.argument("pr_status", type=click.Choice(["open", "merged", "closed"]))
def run_pr(repository, pr_number, pr_status):
    """Apply a pull request state change by hand (REPOSITORY is owner/repo or a URL)."""
    try:
        owner, repo = parse_repo_slug(repository)
    except GitHubError as e:
        _fail(str(e))
    with _get_db() as db:
        run = _manager(db).update_pr_status(f"{owner}/{repo}", pr_number, pr_status)
        if not run:
            _fail(f"No run found for PR {owner}/{repo}#{pr_number}")
        task = tasks_mod.get_task(db, run.task_id)
        click.echo(f"PR #{pr_number} {pr_status}; task {task.id} is {task.status}")


@run_group.command("abandon")
@click.argument("run_id", type=int)
@click.option("--reason", default="abandoned by user", help="Why the run is abandoned")
def run_abandon(run_id, reason):
    """Give up on an active run."""
    with _get_db() as db:
        try:
            run = _manager(db).abandon_run(run_id, reason)
        except LifecycleError as e:
            _fail(str(e))
        click.echo(f"Run #{run.id} is {run.status}")


# ── Servers ───────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Bind host")
@click.option("--port", default=8787, type=int, help="Bind port")
@click.option("--no-monitor", is_flag=True, help="Do not poll or expire runs in the background")
def serve(host, port, no_monitor):
    """Start the HTTP API and webhook server."""
    from agent_board.core.monitor import RunMonitor
    from agent_board.web.app import run_server

    config = get_config()
    monitor = None
    if not no_monitor:
        monitor = RunMonitor(
            config.db_path, runner_from_config(config), config, notifier=notifier_from_config(config)
        )
        monitor.start()
    click.echo(f"Serving on http://{host}:{port}")
    try:
        run_server(host=host, port=port)
    finally:
        if monitor:
            monitor.stop()


@main.command("mcp")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from agent_board.mcp.server import mcp
    from agent_board.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


@main.command("watch")
@click.option("--once", is_flag=True, help="Run a single pass and exit")
def watch(once):
    """Poll active runs and expire stuck ones."""
    from agent_board.core.monitor import RunMonitor

    config = get_config()
    monitor = RunMonitor(
        config.db_path, runner_from_config(config), config, notifier=notifier_from_config(config)
    )
    if once:
        changed = monitor.check_runs()
        click.echo(f"{changed} run(s) updated")
        return

    click.echo("Watching agent runs (Ctrl-C to stop)")
    monitor.start()
    try:
        while monitor.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        monitor.stop()


# ── Serialization ─────────────────────────────────────────────────────────────


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "workspace_id": t.workspace_id,
        "title": t.title,
        "status": t.status,
        "assignee": t.assignee,
        "plan_status": t.plan_status,
        "parent_task_id": t.parent_task_id,
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "completed_at": t.completed_at.isoformat() if t.completed_at else None,
    }


def _run_dict(r) -> dict:
    return {
        "id": r.id,
        "task_id": r.task_id,
        "run_type": r.run_type,
        "external_run_id": r.external_run_id,
        "status": r.status,
        "pr_url": r.pr_url,
        "pr_number": r.pr_number,
        "pr_status": r.pr_status,
        "summary": r.summary,
        "error_message": r.error_message,
        "started_at": r.started_at.isoformat() if r.started_at else None,
        "finished_at": r.finished_at.isoformat() if r.finished_at else None,
    }


if __name__ == "__main__":
    main()
