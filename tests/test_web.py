"""Tests for the HTTP API and webhooks."""

import asyncio
import hashlib
import hmac
import json

import pytest
from starlette.testclient import TestClient

from agent_board.config import Config
from agent_board.core import runs as runs_mod
from agent_board.core import tasks as tasks_mod
from agent_board.core import workspaces as workspaces_mod
from agent_board.integrations.agent_runner import HttpAgentRunner
from agent_board.web.app import create_app

from conftest import FakeRunner

RUNNER_SECRET = "runner-secret"
GITHUB_SECRET = "github-secret"


def _sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def client(db, db_path, runner):
    config = Config(
        db_path=db_path,
        agent_webhook_secret=RUNNER_SECRET,
        github_webhook_secret=GITHUB_SECRET,
    )
    return TestClient(create_app(runner=runner, config=config))


def _runner_hook(client, payload: dict, secret: str = RUNNER_SECRET):
    body = json.dumps(payload).encode()
    return client.post(
        "/webhooks/runner",
        content=body,
        headers={"X-Runner-Signature": _sign(secret, body), "Content-Type": "application/json"},
    )


def _github_hook(client, event: str, payload: dict, secret: str = GITHUB_SECRET):
    body = json.dumps(payload).encode()
    return client.post(
        "/webhooks/github",
        content=body,
        headers={
            "X-GitHub-Event": event,
            "X-Hub-Signature-256": "sha256=" + _sign(secret, body),
            "Content-Type": "application/json",
        },
    )


class TestWorkspacesAPI:
    def test_list_workspaces(self, client):
        resp = client.get("/api/workspaces")
        assert resp.status_code == 200
        data = resp.json()
        assert data[0]["id"] == "acme"
        assert data[0]["repository"]["full_name"] == "acme/webapp"

    def test_create_workspace(self, client):
        resp = client.post("/api/workspaces", json={"name": "Side Project"})
        assert resp.status_code == 201
        assert resp.json()["id"] == "side-project"
        assert client.post("/api/workspaces", json={"name": "Side Project"}).status_code == 409

    def test_get_missing_workspace(self, client):
        assert client.get("/api/workspaces/nope").status_code == 404

    def test_link_repository_from_url(self, client):
        resp = client.put(
            "/api/workspaces/acme/repository",
            json={"repository": "https://github.com/acme/mobile", "default_branch": "develop"},
        )
        assert resp.status_code == 200
        assert resp.json()["full_name"] == "acme/mobile"

    def test_link_repository_bad_slug(self, client):
        resp = client.put("/api/workspaces/acme/repository", json={"repository": "nonsense"})
        assert resp.status_code == 400

    def test_context_items(self, client):
        assert client.post("/api/workspaces/acme/docs", json={"title": "Spec", "content": "x"}).status_code == 201
        assert client.post("/api/workspaces/acme/messages", json={"content": "hello"}).status_code == 201
        resp = client.post(
            "/api/workspaces/acme/links",
            json={"url": "https://figma.com/f", "title": "Mockups", "link_type": "figma"},
        )
        assert resp.status_code == 201
        assert [d["title"] for d in client.get("/api/workspaces/acme/docs").json()] == ["Spec"]
        assert client.get("/api/workspaces/acme/messages").json()[0]["content"] == "hello"
        assert client.get("/api/workspaces/acme/links").json()[0]["link_type"] == "figma"

    def test_invalid_link_type(self, client):
        resp = client.post(
            "/api/workspaces/acme/links", json={"url": "https://x", "title": "X", "link_type": "video"}
        )
        assert resp.status_code == 400


class TestTasksAPI:
    def test_create_and_list(self, client):
        resp = client.post("/api/workspaces/acme/tasks", json={"title": "Add dark mode", "assignee": "agent"})
        assert resp.status_code == 201
        assert resp.json()["plan_status"] == "pending"
        tasks = client.get("/api/workspaces/acme/tasks").json()
        assert [t["id"] for t in tasks] == ["add-dark-mode"]

    def test_create_in_unknown_workspace(self, client):
        resp = client.post("/api/workspaces/nope/tasks", json={"title": "X"})
        assert resp.status_code == 404

    def test_missing_field(self, client):
        resp = client.post("/api/workspaces/acme/tasks", json={})
        assert resp.status_code == 400
        assert "title" in resp.json()["error"]

    def test_get_task_details(self, client, agent_task):
        client.post(f"/api/tasks/{agent_task.id}/comments", json={"content": "First thoughts"})
        data = client.get(f"/api/tasks/{agent_task.id}").json()
        assert data["title"] == "Add dark mode"
        assert data["events"][0]["event_type"] == "created"
        assert data["comments"][0]["content"] == "First thoughts"
        assert data["runs"] == []

    def test_edit_task(self, client, agent_task):
        resp = client.patch(f"/api/tasks/{agent_task.id}", json={"title": "Add a dark theme", "plan": "1. Tokens"})
        assert resp.status_code == 200
        assert resp.json()["title"] == "Add a dark theme"
        assert resp.json()["plan_status"] == "ready"
        assert client.patch("/api/tasks/nope", json={"title": "X"}).status_code == 404

    def test_get_missing_task(self, client):
        assert client.get("/api/tasks/nope").status_code == 404

    def test_status_change(self, client, agent_task):
        resp = client.post(f"/api/tasks/{agent_task.id}/status", json={"status": "in_review"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "in_review"

    def test_invalid_status(self, client, agent_task):
        resp = client.post(f"/api/tasks/{agent_task.id}/status", json={"status": "blocked"})
        assert resp.status_code == 400

    def test_done_with_active_run_rejected(self, client, agent_task):
        client.post(f"/api/tasks/{agent_task.id}/implement")
        resp = client.post(f"/api/tasks/{agent_task.id}/status", json={"status": "done"})
        assert resp.status_code == 422
        assert resp.json()["type"] == "InvalidTransitionError"

    def test_assign_and_archive(self, client, db):
        tasks_mod.create_task(db, "Manual", "acme")
        resp = client.post("/api/tasks/manual/assign", json={"assignee": "agent"})
        assert resp.json()["assignee"] == "agent"
        resp = client.post("/api/tasks/manual/archive")
        assert resp.json()["archived_at"] is not None
        assert client.get("/api/workspaces/acme/tasks").json() == []

    def test_context_refs_and_suggestions(self, client, db, agent_task):
        doc = workspaces_mod.add_doc(db, "acme", "Dark mode spec")
        other = workspaces_mod.add_doc(db, "acme", "Billing")
        resp = client.post(
            f"/api/tasks/{agent_task.id}/context", json={"ref_type": "doc", "ref_id": str(other.id)}
        )
        assert resp.status_code == 201

        suggestions = client.get(f"/api/tasks/{agent_task.id}/suggestions").json()
        assert {(s["title"], s["manual"]) for s in suggestions} == {
            ("Billing", True),
            ("Dark mode spec", False),
        }

        resp = client.delete(f"/api/tasks/{agent_task.id}/context/doc/{other.id}")
        assert resp.status_code == 200
        assert client.get(f"/api/tasks/{agent_task.id}/context").json() == []

        resp = client.put(
            f"/api/tasks/{agent_task.id}/context", json={"refs": [{"ref_type": "doc", "ref_id": str(doc.id)}]}
        )
        assert [r["ref_id"] for r in resp.json()] == [str(doc.id)]

    def test_context_ref_from_another_workspace(self, client, db, agent_task):
        workspaces_mod.create_workspace(db, "globex", "Globex")
        secret = workspaces_mod.add_doc(db, "globex", "Payroll", "salaries")
        resp = client.post(
            f"/api/tasks/{agent_task.id}/context", json={"ref_type": "doc", "ref_id": str(secret.id)}
        )
        assert resp.status_code == 400
        resp = client.put(
            f"/api/tasks/{agent_task.id}/context",
            json={"refs": [{"ref_type": "doc", "ref_id": str(secret.id)}]},
        )
        assert resp.status_code == 400
        assert client.get(f"/api/tasks/{agent_task.id}/context").json() == []


class TestRunsAPI:
    def test_planning_run(self, client, agent_task):
        resp = client.post(f"/api/tasks/{agent_task.id}/plan", json={"instructions": "Keep it short"})
        assert resp.status_code == 201
        assert resp.json()["run_type"] == "planning"
        assert client.post(f"/api/tasks/{agent_task.id}/plan").status_code == 409

    def test_implementation_without_repository(self, client, db, agent_task):
        workspaces_mod.unlink_repository(db, "acme")
        resp = client.post(f"/api/tasks/{agent_task.id}/implement")
        assert resp.status_code == 400
        assert resp.json()["type"] == "MissingRepositoryError"

    def test_runner_unavailable(self, client, runner, agent_task):
        runner.fail_with = "agent service down"
        resp = client.post(f"/api/tasks/{agent_task.id}/implement")
        assert resp.status_code == 503
        assert resp.json()["run_id"] is not None

    def test_unknown_task(self, client):
        assert client.post("/api/tasks/nope/plan").status_code == 404

    def test_list_get_and_abandon(self, client, agent_task):
        run = client.post(f"/api/tasks/{agent_task.id}/implement").json()
        assert [r["id"] for r in client.get(f"/api/runs?task_id={agent_task.id}").json()] == [run["id"]]
        assert client.get(f"/api/runs/{run['id']}").json()["status"] == "creating"

        resp = client.post(f"/api/runs/{run['id']}/abandon", json={"reason": "stuck"})
        assert resp.json()["status"] == "failed"
        assert resp.json()["error_message"] == "Run abandoned: stuck"
        assert client.post("/api/runs/9999/abandon").status_code == 404

    def test_comment_triggers_run(self, client, agent_task):
        resp = client.post(f"/api/tasks/{agent_task.id}/comments", json={"content": "@agent plan again"})
        assert resp.status_code == 201
        assert resp.json()["triggered_run_id"] is not None


class TestRunnerWebhook:
    def test_full_flow(self, client, db, agent_task):
        run = client.post(f"/api/tasks/{agent_task.id}/implement").json()

        resp = _runner_hook(client, {"id": run["external_run_id"], "status": "RUNNING"})
        assert resp.status_code == 200
        resp = _runner_hook(client, {
            "id": run["external_run_id"],
            "status": "FINISHED",
            "prUrl": "https://github.com/acme/webapp/pull/21",
            "summary": "Added a toggle",
        })
        assert resp.json()["run"]["pr_number"] == 21
        assert tasks_mod.get_task(db, agent_task.id).status == "in_review"

        resp = _github_hook(client, "pull_request", {
            "action": "closed",
            "pull_request": {"number": 21, "merged": True},
            "repository": {"full_name": "acme/webapp"},
        })
        assert resp.status_code == 200
        task = tasks_mod.get_task(db, agent_task.id)
        assert task.status == "done"
        assert task.completed_at is not None

    def test_bad_signature(self, client, agent_task):
        resp = _runner_hook(client, {"id": "ext-1", "status": "RUNNING"}, secret="wrong")
        assert resp.status_code == 401

    def test_unknown_run_acknowledged(self, client):
        resp = _runner_hook(client, {"id": "ext-unknown", "status": "FINISHED"})
        assert resp.status_code == 200
        assert resp.json()["run"] is None

    def test_malformed_payload(self, client):
        assert _runner_hook(client, {"status": "FINISHED"}).status_code == 400

    def test_invalid_json(self, client):
        body = b"not json"
        resp = client.post("/webhooks/runner", content=body, headers={"X-Runner-Signature": _sign(RUNNER_SECRET, body)})
        assert resp.status_code == 400

    def test_signature_optional_without_secret(self, db, db_path, runner, agent_task):
        client = TestClient(create_app(runner=runner, config=Config(db_path=db_path)))
        run = client.post(f"/api/tasks/{agent_task.id}/plan").json()
        resp = client.post(
            "/webhooks/runner",
            json={"id": run["external_run_id"], "status": "completed", "summary": "1. Step"},
        )
        assert resp.status_code == 200
        assert tasks_mod.get_task(db, agent_task.id).plan_status == "ready"


class TestGitHubWebhook:
    def test_bad_signature(self, client):
        resp = _github_hook(client, "pull_request", {"action": "opened"}, secret="wrong")
        assert resp.status_code == 401

    def test_ignored_event(self, client):
        resp = _github_hook(client, "push", {"ref": "refs/heads/main"})
        assert resp.json() == {"ok": True, "ignored": True}

    def test_unknown_pr(self, client):
        resp = _github_hook(client, "pull_request", {
            "action": "closed",
            "pull_request": {"number": 404},
            "repository": {"full_name": "acme/webapp"},
        })
        assert resp.status_code == 200
        assert resp.json()["run"] is None

    def test_closed_pr_returns_task_to_work(self, client, db, manager, agent_task):
        run = manager.request_implementation_run(agent_task.id)
        manager.reconcile_run_status(run.external_run_id, "finished", pr_number=8)
        _github_hook(client, "pull_request", {
            "action": "closed",
            "pull_request": {"number": 8, "merged": False},
            "repository": {"full_name": "acme/webapp"},
        })
        assert tasks_mod.get_task(db, agent_task.id).status == "in_progress"
        assert runs_mod.get_agent_run(db, run.id).pr_status == "closed"

    def test_same_pr_number_in_two_workspaces(self, client, db, manager, agent_task):
        workspaces_mod.create_workspace(db, "globex", "Globex")
        workspaces_mod.link_repository(db, "globex", "globex", "api")
        other = tasks_mod.create_task(db, "Fix login", "globex", assignee="agent")
        acme_run = manager.request_implementation_run(agent_task.id)
        manager.reconcile_run_status(acme_run.external_run_id, "finished", pr_number=1)
        globex_run = manager.request_implementation_run(other.id)
        manager.reconcile_run_status(globex_run.external_run_id, "finished", pr_number=1)

        resp = _github_hook(client, "pull_request", {
            "action": "closed",
            "pull_request": {"number": 1, "merged": True},
            "repository": {"full_name": "acme/webapp"},
        })
        assert resp.json()["run"]["id"] == acme_run.id
        assert tasks_mod.get_task(db, agent_task.id).status == "done"
        assert tasks_mod.get_task(db, other.id).status == "in_review"
        assert runs_mod.get_agent_run(db, globex_run.id).pr_status == "open"

    def test_missing_repository(self, client):
        resp = _github_hook(client, "pull_request", {"action": "closed", "pull_request": {"number": 1}})
        assert resp.status_code == 400


class LoopCheckingRunner(FakeRunner):
    """Notes whether each run was started from a thread running an event loop."""

    def __init__(self):
        super().__init__()
        self.on_event_loop = []

    def create_run(self, request, repo=None):
        try:
            asyncio.get_running_loop()
            self.on_event_loop.append(True)
        except RuntimeError:
            self.on_event_loop.append(False)
        return super().create_run(request, repo)


class TestServerLifecycle:
    def test_runner_calls_leave_the_event_loop(self, db, db_path, agent_task):
        runner = LoopCheckingRunner()
        client = TestClient(create_app(runner=runner, config=Config(db_path=db_path)))
        assert client.post(f"/api/tasks/{agent_task.id}/plan").status_code == 201
        assert runner.on_event_loop == [False]

    def test_runner_built_at_startup_and_closed_at_shutdown(self, db, db_path):
        app = create_app(config=Config(db_path=db_path, agent_api_key="key_123"))
        with TestClient(app) as client:
            runner = app.state.runner
            assert isinstance(runner, HttpAgentRunner)
            assert client.get("/api/workspaces").status_code == 200
            assert app.state.runner is runner
            assert not runner._client.is_closed
        assert runner._client.is_closed
        assert app.state.runner is None

    def test_callers_runner_is_kept(self, db, db_path, runner):
        app = create_app(runner=runner, config=Config(db_path=db_path))
        with TestClient(app):
            assert app.state.runner is runner
        assert app.state.runner is runner
