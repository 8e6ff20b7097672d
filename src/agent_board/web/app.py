"""HTTP API and webhooks for the agent board."""

import json
import logging
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from agent_board.config import Config, get_config
from agent_board.core import comments as comments_mod
from agent_board.core import context as context_mod
from agent_board.core import runs as runs_mod
from agent_board.core import tasks as tasks_mod
from agent_board.core import workspaces as workspaces_mod
from agent_board.core.errors import (
    ConflictError,
    InvalidTransitionError,
    LifecycleError,
    MissingRepositoryError,
    NotFoundError,
    RunnerUnavailableError,
)
from agent_board.core.lifecycle import LifecycleManager
from agent_board.db.engine import init_db
from agent_board.integrations.agent_runner import parse_runner_payload, runner_from_config
from agent_board.integrations.github import GitHubError, parse_pull_request_event, parse_repo_slug, verify_signature
from agent_board.integrations.slack import notifier_from_config

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    NotFoundError: 404,
    ConflictError: 409,
    InvalidTransitionError: 422,
    MissingRepositoryError: 400,
    RunnerUnavailableError: 503,
}


def _config(request: Request) -> Config:
    return request.app.state.config or get_config()


def _get_db(request: Request):
    return init_db(_config(request).db_path)


def _manager(request: Request, db, runner) -> LifecycleManager:
    config = _config(request)
    state = request.app.state
    notifier = state.notifier if state.notifier is not None else notifier_from_config(config)
    return LifecycleManager(db, runner, config, ranker=state.ranker, notifier=notifier)


async def _managed(request: Request, fn):
    """Run `fn(manager)` on a worker thread with its own database connection.

    Lifecycle calls can block on the agent service, so they stay off the
    event loop. Without a runner from the app lifespan, one is built for
    the call and closed after it.
    """
    def call():
        runner = request.app.state.runner
        owned = None
        if runner is None:
            runner = owned = runner_from_config(_config(request))
        db = _get_db(request)
        try:
            return fn(_manager(request, db, runner))
        finally:
            db.close()
            if owned is not None:
                owned.close()

    return await run_in_threadpool(call)


async def _body(request: Request) -> dict:
    data = await request.json()
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _not_found(what: str) -> JSONResponse:
    return JSONResponse({"error": f"{what} not found"}, status_code=404)


# ── Workspaces ────────────────────────────────────────────────────────────────


async def api_workspaces(request: Request):
    db = _get_db(request)
    try:
        if request.method == "POST":
            data = await _body(request)
            ws_id = data.get("id") or tasks_mod.slugify(data["name"])
            if workspaces_mod.get_workspace(db, ws_id):
                return JSONResponse({"error": f"Workspace '{ws_id}' already exists"}, status_code=409)
            ws = workspaces_mod.create_workspace(db, ws_id, data["name"], data.get("description", ""))
            return JSONResponse(_workspace_dict(db, ws), status_code=201)
        return JSONResponse([_workspace_dict(db, w) for w in workspaces_mod.list_workspaces(db)])
    finally:
        db.close()


async def api_get_workspace(request: Request):
    db = _get_db(request)
    try:
        ws = workspaces_mod.get_workspace(db, request.path_params["workspace_id"])
        if not ws:
            return _not_found("Workspace")
        return JSONResponse(_workspace_dict(db, ws))
    finally:
        db.close()


async def api_link_repository(request: Request):
    workspace_id = request.path_params["workspace_id"]
    db = _get_db(request)
    try:
        if not workspaces_mod.get_workspace(db, workspace_id):
            return _not_found("Workspace")
        if request.method == "DELETE":
            workspaces_mod.unlink_repository(db, workspace_id)
            return JSONResponse({"ok": True})
        data = await _body(request)
        if data.get("repository"):
            owner, repo = parse_repo_slug(data["repository"])
        else:
            owner, repo = data["owner"], data["repo"]
        link = workspaces_mod.link_repository(
            db, workspace_id, owner, repo, data.get("default_branch", "main")
        )
        return JSONResponse(_repo_dict(link))
    finally:
        db.close()


async def api_docs(request: Request):
    workspace_id = request.path_params["workspace_id"]
    db = _get_db(request)
    try:
        if not workspaces_mod.get_workspace(db, workspace_id):
            return _not_found("Workspace")
        if request.method == "POST":
            data = await _body(request)
            doc = workspaces_mod.add_doc(db, workspace_id, data["title"], data.get("content", ""))
            return JSONResponse(_doc_dict(doc), status_code=201)
        return JSONResponse([_doc_dict(d) for d in workspaces_mod.list_docs(db, workspace_id)])
    finally:
        db.close()


async def api_messages(request: Request):
    workspace_id = request.path_params["workspace_id"]
    db = _get_db(request)
    try:
        if not workspaces_mod.get_workspace(db, workspace_id):
            return _not_found("Workspace")
        if request.method == "POST":
            data = await _body(request)
            msg = workspaces_mod.add_message(
                db, workspace_id, data["content"], data.get("author"), data.get("parent_message_id")
            )
            return JSONResponse(_message_dict(msg), status_code=201)
        limit = request.query_params.get("limit")
        messages = workspaces_mod.list_messages(db, workspace_id, int(limit) if limit else None)
        return JSONResponse([_message_dict(m) for m in messages])
    finally:
        db.close()


async def api_links(request: Request):
    workspace_id = request.path_params["workspace_id"]
    db = _get_db(request)
    try:
        if not workspaces_mod.get_workspace(db, workspace_id):
            return _not_found("Workspace")
        if request.method == "POST":
            data = await _body(request)
            link = workspaces_mod.add_link(
                db,
                workspace_id,
                data["url"],
                data["title"],
                data.get("link_type", "other"),
                data.get("description", ""),
            )
            return JSONResponse(_link_dict(link), status_code=201)
        return JSONResponse([_link_dict(lk) for lk in workspaces_mod.list_links(db, workspace_id)])
    finally:
        db.close()


# ── Tasks ─────────────────────────────────────────────────────────────────────


async def api_workspace_tasks(request: Request):
    workspace_id = request.path_params["workspace_id"]
    if request.method == "POST":
        data = await _body(request)
        task = await _managed(request, lambda m: m.create_task(
            workspace_id,
            data["title"],
            description=data.get("description", ""),
            prompt=data.get("prompt"),
            status=data.get("status", "todo"),
            assignee=data.get("assignee"),
            agent_type=data.get("agent_type"),
            parent_task_id=data.get("parent_task_id"),
        ))
        return JSONResponse(_task_dict(task), status_code=201)

    db = _get_db(request)
    try:
        if not workspaces_mod.get_workspace(db, workspace_id):
            return _not_found("Workspace")
        status_filter = request.query_params.get("status")
        result = []
        for task in tasks_mod.list_tasks(db, workspace_id, status=status_filter):
            td = _task_dict(task)
            subs = tasks_mod.list_tasks(db, workspace_id, parent_task_id=task.id)
            if subs:
                td["subtasks"] = [_task_dict(s) for s in subs]
            result.append(td)
        return JSONResponse(result)
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    if request.method == "PATCH":
        data = await _body(request)
        task = await _managed(request, lambda m: m.edit_task(
            task_id,
            title=data.get("title"),
            description=data.get("description"),
            prompt=data.get("prompt"),
            plan=data.get("plan"),
        ))
        return JSONResponse(_task_dict(task))

    db = _get_db(request)
    try:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return _not_found("Task")
        td = _task_dict(task)
        td["events"] = [_event_dict(e) for e in tasks_mod.get_task_events(db, task_id)]
        td["runs"] = [_run_dict(r) for r in runs_mod.list_agent_runs(db, task_id=task_id)]
        td["comments"] = [_comment_dict(c) for c in comments_mod.list_comments(db, task_id)]
        td["context_refs"] = [_ref_dict(r) for r in context_mod.list_context_refs(db, task_id)]
        if task.subtasks:
            td["subtasks"] = [_task_dict(s) for s in task.subtasks]
        return JSONResponse(td)
    finally:
        db.close()


async def api_task_status(request: Request):
    task_id = request.path_params["task_id"]
    data = await _body(request)
    task = await _managed(
        request, lambda m: m.update_task_status(task_id, data["status"], data.get("order_index"))
    )
    return JSONResponse(_task_dict(task))


async def api_task_assign(request: Request):
    task_id = request.path_params["task_id"]
    data = await _body(request)
    task = await _managed(
        request, lambda m: m.assign_task(task_id, data.get("assignee"), data.get("agent_type"))
    )
    return JSONResponse(_task_dict(task))


async def api_task_archive(request: Request):
    task_id = request.path_params["task_id"]
    task = await _managed(request, lambda m: m.archive_task(task_id))
    return JSONResponse(_task_dict(task))


async def api_task_plan(request: Request):
    task_id = request.path_params["task_id"]
    data = await _optional_body(request)
    run = await _managed(request, lambda m: m.request_planning_run(task_id, data.get("instructions")))
    return JSONResponse(_run_dict(run), status_code=201)


async def api_task_implement(request: Request):
    task_id = request.path_params["task_id"]
    data = await _optional_body(request)
    run = await _managed(request, lambda m: m.request_implementation_run(task_id, data.get("instructions")))
    return JSONResponse(_run_dict(run), status_code=201)


async def api_task_comments(request: Request):
    task_id = request.path_params["task_id"]
    if request.method == "POST":
        data = await _body(request)
        comment = await _managed(request, lambda m: m.add_comment(
            task_id, data["content"], data.get("author_type", "user"), data.get("author")
        ))
        return JSONResponse(_comment_dict(comment), status_code=201)

    db = _get_db(request)
    try:
        if not tasks_mod.get_task(db, task_id):
            return _not_found("Task")
        return JSONResponse([_comment_dict(c) for c in comments_mod.list_comments(db, task_id)])
    finally:
        db.close()


async def api_task_context(request: Request):
    """Manual context references. POST adds one, PUT replaces them all."""
    task_id = request.path_params["task_id"]
    db = _get_db(request)
    try:
        if not tasks_mod.get_task(db, task_id):
            return _not_found("Task")
        if request.method == "POST":
            data = await _body(request)
            ref = context_mod.add_context_ref(db, task_id, data["ref_type"], data["ref_id"])
            return JSONResponse(_ref_dict(ref), status_code=201)
        if request.method == "PUT":
            data = await _body(request)
            refs = [(r["ref_type"], r["ref_id"]) for r in data.get("refs", [])]
            return JSONResponse([_ref_dict(r) for r in context_mod.set_context_refs(db, task_id, refs)])
        return JSONResponse([_ref_dict(r) for r in context_mod.list_context_refs(db, task_id)])
    finally:
        db.close()


async def api_remove_context_ref(request: Request):
    p = request.path_params
    db = _get_db(request)
    try:
        removed = context_mod.remove_context_ref(db, p["task_id"], p["ref_type"], p["ref_id"])
        if not removed:
            return _not_found("Context reference")
        return JSONResponse({"ok": True})
    finally:
        db.close()


async def api_task_suggestions(request: Request):
    task_id = request.path_params["task_id"]
    items = await _managed(request, lambda m: m.get_context(task_id))
    return JSONResponse([_context_item_dict(i) for i in items])


# ── Runs ──────────────────────────────────────────────────────────────────────


async def api_list_runs(request: Request):
    q = request.query_params
    db = _get_db(request)
    try:
        runs = runs_mod.list_agent_runs(
            db, task_id=q.get("task_id"), status=q.get("status"), run_type=q.get("run_type")
        )
        return JSONResponse([_run_dict(r) for r in runs])
    finally:
        db.close()


async def api_get_run(request: Request):
    db = _get_db(request)
    try:
        run = runs_mod.get_agent_run(db, int(request.path_params["run_id"]))
        if not run:
            return _not_found("Run")
        return JSONResponse(_run_dict(run))
    finally:
        db.close()


async def api_abandon_run(request: Request):
    run_id = int(request.path_params["run_id"])
    data = await _optional_body(request)
    run = await _managed(request, lambda m: m.abandon_run(run_id, data.get("reason", "abandoned by user")))
    return JSONResponse(_run_dict(run))


# ── Webhooks ──────────────────────────────────────────────────────────────────


async def runner_webhook(request: Request):
    """Status callback from the agent service. Unknown runs are acknowledged and dropped."""
    body = await request.body()
    secret = _config(request).agent_webhook_secret
    signature = request.headers.get("x-runner-signature") or request.headers.get("x-cursor-signature")
    if secret and not verify_signature(secret, body, signature):
        logger.warning("Rejected runner webhook with a bad signature")
        return JSONResponse({"error": "Invalid signature"}, status_code=401)

    try:
        report = parse_runner_payload(json.loads(body))
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    run = await _managed(request, lambda m: m.reconcile_run_status(
        report.external_run_id,
        report.status,
        pr_url=report.pr_url,
        pr_number=report.pr_number,
        summary=report.summary,
        error=report.error,
    ))
    return JSONResponse({"ok": True, "run": _run_dict(run) if run else None})


async def github_webhook(request: Request):
    body = await request.body()
    secret = _config(request).github_webhook_secret
    if secret and not verify_signature(secret, body, request.headers.get("x-hub-signature-256")):
        logger.warning("Rejected GitHub webhook with a bad signature")
        return JSONResponse({"error": "Invalid signature"}, status_code=401)

    try:
        event = parse_pull_request_event(request.headers.get("x-github-event"), json.loads(body))
    except (ValueError, GitHubError) as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    if event is None:
        return JSONResponse({"ok": True, "ignored": True})

    repository, pr_number, pr_status = event
    run = await _managed(request, lambda m: m.update_pr_status(repository, pr_number, pr_status))
    return JSONResponse({"ok": True, "run": _run_dict(run) if run else None})


async def _optional_body(request: Request) -> dict:
    if not await request.body():
        return {}
    return await _body(request)


# ── Error handlers ────────────────────────────────────────────────────────────


async def _lifecycle_error(request: Request, exc: LifecycleError):
    status = next((code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 400)
    body = {"error": str(exc), "type": type(exc).__name__}
    if isinstance(exc, RunnerUnavailableError) and exc.run_id is not None:
        body["run_id"] = exc.run_id
    return JSONResponse(body, status_code=status)


async def _bad_request(request: Request, exc: Exception):
    if isinstance(exc, KeyError):
        message = f"Missing field: {exc.args[0]}"
    else:
        message = str(exc)
    return JSONResponse({"error": message}, status_code=400)


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(dt) -> str | None:
    return dt.isoformat() if dt else None


def _workspace_dict(db, w) -> dict:
    repo = workspaces_mod.get_repository(db, w.id)
    return {
        "id": w.id,
        "name": w.name,
        "description": w.description,
        "repository": _repo_dict(repo) if repo else None,
        "created_at": _iso(w.created_at),
    }


def _repo_dict(r) -> dict:
    return {
        "owner": r.owner,
        "repo": r.repo,
        "full_name": r.full_name,
        "url": r.url,
        "default_branch": r.default_branch,
    }


def _doc_dict(d) -> dict:
    return {"id": d.id, "title": d.title, "content": d.content, "created_at": _iso(d.created_at)}


def _message_dict(m) -> dict:
    return {
        "id": m.id,
        "content": m.content,
        "author": m.author,
        "parent_message_id": m.parent_message_id,
        "created_at": _iso(m.created_at),
    }


def _link_dict(lk) -> dict:
    return {
        "id": lk.id,
        "url": lk.url,
        "title": lk.title,
        "link_type": lk.link_type,
        "description": lk.description,
        "created_at": _iso(lk.created_at),
    }


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "workspace_id": t.workspace_id,
        "title": t.title,
        "description": t.description,
        "prompt": t.prompt,
        "status": t.status,
        "assignee": t.assignee,
        "agent_type": t.agent_type,
        "plan": t.plan,
        "plan_status": t.plan_status,
        "plan_generated_at": _iso(t.plan_generated_at),
        "current_planning_run_id": t.current_planning_run_id,
        "current_run_id": t.current_run_id,
        "parent_task_id": t.parent_task_id,
        "order_index": t.order_index,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
        "completed_at": _iso(t.completed_at),
        "archived_at": _iso(t.archived_at),
    }


def _run_dict(r) -> dict:
    return {
        "id": r.id,
        "task_id": r.task_id,
        "run_type": r.run_type,
        "external_run_id": r.external_run_id,
        "status": r.status,
        "instructions": r.instructions,
        "pr_url": r.pr_url,
        "pr_number": r.pr_number,
        "pr_status": r.pr_status,
        "summary": r.summary,
        "error_message": r.error_message,
        "started_at": _iso(r.started_at),
        "finished_at": _iso(r.finished_at),
        "abandoned_at": _iso(r.abandoned_at),
    }


def _comment_dict(c) -> dict:
    return {
        "id": c.id,
        "content": c.content,
        "author_type": c.author_type,
        "author": c.author,
        "mentions_agent": c.mentions_agent,
        "triggered_run_id": c.triggered_run_id,
        "created_at": _iso(c.created_at),
    }


def _ref_dict(r) -> dict:
    return {"ref_type": r.ref_type, "ref_id": r.ref_id, "created_at": _iso(r.created_at)}


def _context_item_dict(i) -> dict:
    return {
        "ref_type": i.ref_type,
        "ref_id": i.ref_id,
        "title": i.title,
        "relevance_score": i.relevance_score,
        "reason": i.reason,
        "manual": i.manual,
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(runner=None, config: Config | None = None, notifier=None, ranker=None) -> Starlette:
    """Build the API app.

    A runner left as None is built from the config when the server starts
    and closed when it stops. Other collaborators left as None are built
    from the environment per request.
    """
    routes = [
        Route("/api/workspaces", api_workspaces, methods=["GET", "POST"]),
        Route("/api/workspaces/{workspace_id}", api_get_workspace),
        Route("/api/workspaces/{workspace_id}/repository", api_link_repository, methods=["PUT", "DELETE"]),
        Route("/api/workspaces/{workspace_id}/docs", api_docs, methods=["GET", "POST"]),
        Route("/api/workspaces/{workspace_id}/messages", api_messages, methods=["GET", "POST"]),
        Route("/api/workspaces/{workspace_id}/links", api_links, methods=["GET", "POST"]),
        Route("/api/workspaces/{workspace_id}/tasks", api_workspace_tasks, methods=["GET", "POST"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET", "PATCH"]),
        Route("/api/tasks/{task_id}/status", api_task_status, methods=["POST"]),
        Route("/api/tasks/{task_id}/assign", api_task_assign, methods=["POST"]),
        Route("/api/tasks/{task_id}/archive", api_task_archive, methods=["POST"]),
        Route("/api/tasks/{task_id}/plan", api_task_plan, methods=["POST"]),
        Route("/api/tasks/{task_id}/implement", api_task_implement, methods=["POST"]),
        Route("/api/tasks/{task_id}/comments", api_task_comments, methods=["GET", "POST"]),
        Route("/api/tasks/{task_id}/context", api_task_context, methods=["GET", "POST", "PUT"]),
        Route(
            "/api/tasks/{task_id}/context/{ref_type}/{ref_id}",
            api_remove_context_ref,
            methods=["DELETE"],
        ),
        Route("/api/tasks/{task_id}/suggestions", api_task_suggestions),
        Route("/api/runs", api_list_runs),
        Route("/api/runs/{run_id:int}", api_get_run),
        Route("/api/runs/{run_id:int}/abandon", api_abandon_run, methods=["POST"]),
        Route("/webhooks/runner", runner_webhook, methods=["POST"]),
        Route("/webhooks/github", github_webhook, methods=["POST"]),
    ]
    @asynccontextmanager
    async def lifespan(app: Starlette):
        # One agent-service client for the life of the server; a caller's runner is left alone.
        owned = None
        if app.state.runner is None:
            owned = app.state.runner = runner_from_config(app.state.config or get_config())
        try:
            yield
        finally:
            if owned is not None:
                app.state.runner = None
                owned.close()

    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={
            LifecycleError: _lifecycle_error,
            GitHubError: _bad_request,
            ValueError: _bad_request,
            KeyError: _bad_request,
        },
    )
    app.state.runner = runner
    app.state.config = config
    app.state.notifier = notifier
    app.state.ranker = ranker
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787, config: Config | None = None):
    app = create_app(config=config)
    uvicorn.run(app, host=host, port=port)
