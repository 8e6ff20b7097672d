"""Shared fixtures: a temporary board database and an in-memory agent service."""

import tempfile
import threading
from pathlib import Path

import pytest

from agent_board.config import Config
from agent_board.core import tasks as tasks_mod
from agent_board.core import workspaces as workspaces_mod
from agent_board.core.lifecycle import LifecycleManager
from agent_board.db.engine import init_db
from agent_board.integrations.agent_runner import AgentRunner, RunHandle, RunnerError


class FakeRunner(AgentRunner):
    """Records requests and hands out ext-1, ext-2, ... as run ids."""

    def __init__(self):
        self.requests = []
        self.reports = {}
        self.fail_with: str | None = None
        self._lock = threading.Lock()
        self._count = 0

    def create_run(self, request, repo=None):
        if self.fail_with:
            raise RunnerError(self.fail_with)
        with self._lock:
            self._count += 1
            self.requests.append((request, repo))
            return RunHandle(external_run_id=f"ext-{self._count}")

    def get_run_status(self, external_run_id):
        if external_run_id not in self.reports:
            raise RunnerError(f"Unknown run {external_run_id}")
        return self.reports[external_run_id]


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"


@pytest.fixture
def db(db_path):
    """Temporary database with a workspace 'acme' linked to acme/webapp."""
    conn = init_db(db_path)
    workspaces_mod.create_workspace(conn, "acme", "Acme")
    workspaces_mod.link_repository(conn, "acme", "acme", "webapp")
    yield conn
    conn.close()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def config(db_path):
    return Config(db_path=db_path)


@pytest.fixture
def manager(db, runner, config):
    return LifecycleManager(db, runner, config)


@pytest.fixture
def agent_task(db):
    """A todo task assigned to the agent."""
    return tasks_mod.create_task(db, "Add dark mode", "acme", assignee="agent")
