"""Agent run records: creation, lookup and status progression.

Runs are never deleted. A task points at its current planning and
implementation run; superseded runs stay behind as history.
"""

import logging
import sqlite3
from datetime import datetime

from agent_board.core.errors import ConflictError
from agent_board.core.tasks import _log_event
from agent_board.db.models import PR_STATUSES, RUN_STATUSES, RUN_TYPES, AgentRun

logger = logging.getLogger(__name__)

# creating -> running -> finished|failed, never backwards
_STATUS_RANK = {"creating": 0, "running": 1, "finished": 2, "failed": 2}


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _row_to_agent_run(row: sqlite3.Row) -> AgentRun:
    return AgentRun(
        id=row["id"],
        task_id=row["task_id"],
        run_type=row["run_type"],
        external_run_id=row["external_run_id"],
        status=row["status"],
        instructions=row["instructions"],
        pr_url=row["pr_url"],
        pr_number=row["pr_number"],
        pr_status=row["pr_status"],
        summary=row["summary"],
        error_message=row["error_message"],
        started_at=_parse_dt(row["started_at"]),
        finished_at=_parse_dt(row["finished_at"]),
        abandoned_at=_parse_dt(row["abandoned_at"]),
    )


def can_advance(current: str, new: str) -> bool:
    """Whether a run may move from `current` to `new` status."""
    return _STATUS_RANK[new] > _STATUS_RANK[current]


# ── Creation ─────────────────────────────────────────────────────────────────


def insert_run(
    db: sqlite3.Connection,
    task_id: str,
    run_type: str,
    instructions: str | None = None,
) -> AgentRun:
    """Record a new run in 'creating' state.

    The partial unique index on (task_id, run_type) for active runs makes
    this a compare-and-set: a second active run of the same type is rejected.
    """
    if run_type not in RUN_TYPES:
        raise ValueError(f"Invalid run type: {run_type}")
    try:
        cur = db.execute(
            """INSERT INTO agent_runs (task_id, run_type, status, instructions)
               VALUES (?, ?, 'creating', ?)""",
            (task_id, run_type, instructions),
        )
    except sqlite3.IntegrityError as e:
        db.rollback()
        raise ConflictError(
            f"Task '{task_id}' already has an active {run_type} run"
        ) from e
    _log_event(db, task_id, "run_created", None, f"{run_type} #{cur.lastrowid}")
    db.commit()
    return get_agent_run(db, cur.lastrowid)


def attach_external_id(db: sqlite3.Connection, run_id: int, external_run_id: str) -> AgentRun:
    db.execute(
        "UPDATE agent_runs SET external_run_id = ? WHERE id = ?",
        (external_run_id, run_id),
    )
    db.commit()
    return get_agent_run(db, run_id)


# ── Queries ──────────────────────────────────────────────────────────────────


def get_agent_run(db: sqlite3.Connection, run_id: int) -> AgentRun | None:
    """Get an agent run by its ID."""
    row = db.execute(
        "SELECT * FROM agent_runs WHERE id = ?", (run_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_agent_run(row)


def get_run_by_external_id(db: sqlite3.Connection, external_run_id: str) -> AgentRun | None:
    """Find the run the agent service knows by `external_run_id`."""
    row = db.execute(
        "SELECT * FROM agent_runs WHERE external_run_id = ?", (external_run_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_agent_run(row)


def get_run_by_pr(db: sqlite3.Connection, repository: str, pr_number: int) -> AgentRun | None:
    """Get the latest run that opened pull request `pr_number` in `repository` ("owner/repo").

    Only runs of tasks whose workspace is linked to that repository match.
    """
    owner, _, repo = repository.partition("/")
    row = db.execute(
        """SELECT r.* FROM agent_runs r
           JOIN tasks t ON t.id = r.task_id
           JOIN workspace_repos w ON w.workspace_id = t.workspace_id
           WHERE r.pr_number = ?
             AND lower(w.owner) = lower(?) AND lower(w.repo) = lower(?)
           ORDER BY r.started_at DESC, r.id DESC LIMIT 1""",
        (pr_number, owner, repo),
    ).fetchone()
    if not row:
        return None
    return _row_to_agent_run(row)


def get_active_run(db: sqlite3.Connection, task_id: str, run_type: str) -> AgentRun | None:
    row = db.execute(
        """SELECT * FROM agent_runs
           WHERE task_id = ? AND run_type = ? AND status IN ('creating', 'running')""",
        (task_id, run_type),
    ).fetchone()
    if not row:
        return None
    return _row_to_agent_run(row)


def active_runs(db: sqlite3.Connection, task_id: str) -> list[AgentRun]:
    rows = db.execute(
        "SELECT * FROM agent_runs WHERE task_id = ? AND status IN ('creating', 'running') ORDER BY id",
        (task_id,),
    ).fetchall()
    return [_row_to_agent_run(r) for r in rows]


def list_agent_runs(
    db: sqlite3.Connection,
    task_id: str | None = None,
    status: str | None = None,
    run_type: str | None = None,
) -> list[AgentRun]:
    """List agent runs, newest first, with optional filters."""
    query = "SELECT * FROM agent_runs WHERE 1=1"
    params: list = []
    if task_id:
        query += " AND task_id = ?"
        params.append(task_id)
    if status:
        query += " AND status = ?"
        params.append(status)
    if run_type:
        query += " AND run_type = ?"
        params.append(run_type)
    query += " ORDER BY started_at DESC, id DESC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_agent_run(r) for r in rows]


def stale_runs(db: sqlite3.Connection, max_minutes: int) -> list[AgentRun]:
    """Active runs started more than `max_minutes` ago."""
    rows = db.execute(
        """SELECT * FROM agent_runs
           WHERE status IN ('creating', 'running')
             AND started_at < datetime('now', ?)
           ORDER BY started_at""",
        (f"-{int(max_minutes)} minutes",),
    ).fetchall()
    return [_row_to_agent_run(r) for r in rows]


# ── Status progression ───────────────────────────────────────────────────────


def advance_run(
    db: sqlite3.Connection,
    run_id: int,
    status: str,
    pr_url: str | None = None,
    pr_number: int | None = None,
    summary: str | None = None,
    error_message: str | None = None,
) -> bool:
    """Move a run forward to `status`, filling in whatever the report carried.

    Returns False without writing anything when the move would not advance
    the run (repeat, regression or already terminal). Caller commits.
    """
    if status not in RUN_STATUSES:
        raise ValueError(f"Invalid run status: {status}")
    run = get_agent_run(db, run_id)
    if not can_advance(run.status, status):
        return False

    updates: dict = {"status": status}
    if pr_url is not None:
        updates["pr_url"] = pr_url
    if pr_number is not None:
        updates["pr_number"] = pr_number
    if summary is not None:
        updates["summary"] = summary
    if error_message is not None:
        updates["error_message"] = error_message
    if status == "finished" and (pr_url or pr_number):
        updates["pr_status"] = "open"

    set_parts = [f"{k} = ?" for k in updates]
    if status in ("finished", "failed"):
        set_parts.append("finished_at = datetime('now')")
    db.execute(
        f"UPDATE agent_runs SET {', '.join(set_parts)} WHERE id = ?",
        list(updates.values()) + [run_id],
    )
    _log_event(db, run.task_id, "run_status_changed", run.status, f"{run.run_type} #{run_id}: {status}")
    return True


def fail_run(db: sqlite3.Connection, run_id: int, error_message: str) -> bool:
    """Mark a run failed with an error message. Caller commits."""
    return advance_run(db, run_id, "failed", error_message=error_message)


def set_pr_status(db: sqlite3.Connection, run_id: int, pr_status: str) -> bool:
    """Record the pull request state of a run. Returns False if unchanged. Caller commits."""
    if pr_status not in PR_STATUSES:
        raise ValueError(f"Invalid PR status: {pr_status}")
    run = get_agent_run(db, run_id)
    if run.pr_status == pr_status:
        return False
    db.execute("UPDATE agent_runs SET pr_status = ? WHERE id = ?", (pr_status, run_id))
    _log_event(db, run.task_id, "pr_status_changed", run.pr_status, pr_status)
    return True


def abandon_run(db: sqlite3.Connection, run_id: int, reason: str) -> AgentRun | None:
    """Give up on an active run. It becomes a failed run and ignores later reports."""
    run = get_agent_run(db, run_id)
    if not run:
        return None
    if run.is_terminal:
        return run

    db.execute(
        """UPDATE agent_runs
           SET status = 'failed', error_message = ?, finished_at = datetime('now'),
               abandoned_at = datetime('now')
           WHERE id = ?""",
        (f"Run abandoned: {reason}", run_id),
    )
    _log_event(db, run.task_id, "run_abandoned", run.status, reason)
    db.commit()
    logger.info("Abandoned %s run #%s for task '%s': %s", run.run_type, run_id, run.task_id, reason)
    return get_agent_run(db, run_id)
