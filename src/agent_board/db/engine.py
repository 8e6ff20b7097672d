"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS workspaces (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS workspace_repos (
    workspace_id TEXT PRIMARY KEY REFERENCES workspaces(id),
    owner TEXT NOT NULL,
    repo TEXT NOT NULL,
    default_branch TEXT DEFAULT 'main',
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS workspace_docs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    title TEXT NOT NULL,
    content TEXT DEFAULT '',
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS workspace_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    parent_message_id INTEGER REFERENCES workspace_messages(id),
    content TEXT NOT NULL,
    author TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS workspace_links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    url TEXT NOT NULL,
    title TEXT NOT NULL,
    link_type TEXT DEFAULT 'other'
        CHECK (link_type IN ('email', 'spreadsheet', 'figma', 'document', 'other')),
    description TEXT DEFAULT '',
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id),
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    prompt TEXT,
    plan TEXT,
    plan_generated_at TEXT,
    plan_status TEXT CHECK (plan_status IN ('pending', 'generating', 'ready', 'failed')),
    status TEXT DEFAULT 'todo'
        CHECK (status IN ('backlog', 'todo', 'in_progress', 'in_review', 'done')),
    assignee TEXT CHECK (assignee IN ('user', 'agent')),
    agent_type TEXT,
    current_planning_run_id INTEGER REFERENCES agent_runs(id),
    current_run_id INTEGER REFERENCES agent_runs(id),
    parent_task_id TEXT REFERENCES tasks(id),
    order_index INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    completed_at TEXT,
    archived_at TEXT
);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id),
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS agent_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id),
    run_type TEXT NOT NULL CHECK (run_type IN ('planning', 'implementation')),
    external_run_id TEXT UNIQUE,
    status TEXT DEFAULT 'creating'
        CHECK (status IN ('creating', 'running', 'finished', 'failed')),
    instructions TEXT,
    pr_url TEXT,
    pr_number INTEGER,
    pr_status TEXT CHECK (pr_status IN ('open', 'merged', 'closed')),
    summary TEXT,
    error_message TEXT,
    started_at TEXT DEFAULT (datetime('now')),
    finished_at TEXT,
    abandoned_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS agent_runs_one_active
    ON agent_runs(task_id, run_type)
    WHERE status IN ('creating', 'running');

CREATE INDEX IF NOT EXISTS agent_runs_by_pr ON agent_runs(pr_number);

CREATE TABLE IF NOT EXISTS task_context_refs (
    task_id TEXT NOT NULL REFERENCES tasks(id),
    ref_type TEXT NOT NULL CHECK (ref_type IN ('doc', 'message', 'link')),
    ref_id TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (task_id, ref_type, ref_id)
);

CREATE TABLE IF NOT EXISTS task_comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id),
    content TEXT NOT NULL,
    author_type TEXT NOT NULL CHECK (author_type IN ('user', 'agent')),
    author TEXT,
    mentions_agent INTEGER DEFAULT 0,
    triggered_run_id INTEGER REFERENCES agent_runs(id),
    created_at TEXT DEFAULT (datetime('now'))
);
"""


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    migrations = [
        "ALTER TABLE agent_runs ADD COLUMN abandoned_at TEXT",
        "ALTER TABLE task_comments ADD COLUMN triggered_run_id INTEGER REFERENCES agent_runs(id)",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists

    conn.commit()


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    _run_migrations(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
