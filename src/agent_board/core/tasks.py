"""Task management operations."""

import re
import sqlite3
from datetime import datetime

from agent_board.core.errors import InvalidTransitionError
from agent_board.db.models import ASSIGNEES, PLAN_STATUSES, TASK_STATUSES, Task, TaskEvent


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60] or "task"


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    existing = db.execute(
        "SELECT id FROM tasks WHERE id = ?", (base_slug,)
    ).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute(
            "SELECT id FROM tasks WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate
        i += 1


def _next_order(db: sqlite3.Connection, workspace_id: str, status: str) -> int:
    row = db.execute(
        "SELECT MAX(order_index) AS max_order FROM tasks WHERE workspace_id = ? AND status = ?",
        (workspace_id, status),
    ).fetchone()
    return (row["max_order"] or 0) + 1


def create_task(
    db: sqlite3.Connection,
    title: str,
    workspace_id: str,
    description: str = "",
    prompt: str | None = None,
    status: str = "todo",
    assignee: str | None = None,
    agent_type: str | None = None,
    parent_task_id: str | None = None,
) -> Task:
    """Create a new task.

    Tasks assigned to the agent start with a pending plan; tasks for people
    have no plan status at all.
    """
    if status not in TASK_STATUSES:
        raise ValueError(f"Invalid status: {status}")
    if assignee is not None and assignee not in ASSIGNEES:
        raise ValueError(f"Invalid assignee: {assignee}")

    task_id = _unique_id(db, slugify(title))
    plan_status = "pending" if assignee == "agent" else None
    completed_at = datetime.now().isoformat() if status == "done" else None

    db.execute(
        """INSERT INTO tasks
           (id, workspace_id, title, description, prompt, status, assignee, agent_type,
            plan_status, parent_task_id, order_index, completed_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            task_id, workspace_id, title, description, prompt, status, assignee,
            agent_type, plan_status, parent_task_id,
            _next_order(db, workspace_id, status), completed_at,
        ),
    )
    _log_event(db, task_id, "created", None, status)
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its subtasks."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None

    task = _row_to_task(row)
    subtasks = db.execute(
        """SELECT * FROM tasks WHERE parent_task_id = ? AND archived_at IS NULL
           ORDER BY order_index ASC, created_at ASC""",
        (task_id,),
    ).fetchall()
    task.subtasks = [_row_to_task(s) for s in subtasks]
    return task


def list_tasks(
    db: sqlite3.Connection,
    workspace_id: str,
    status: str | None = None,
    parent_task_id: str | None = None,
    include_archived: bool = False,
) -> list[Task]:
    """List tasks with optional filters. Only top-level tasks unless a parent is given."""
    query = "SELECT * FROM tasks WHERE workspace_id = ?"
    params: list = [workspace_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    if parent_task_id is not None:
        query += " AND parent_task_id = ?"
        params.append(parent_task_id)
    else:
        query += " AND parent_task_id IS NULL"

    if not include_archived:
        query += " AND archived_at IS NULL"

    query += " ORDER BY order_index ASC, created_at ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def has_active_run(db: sqlite3.Connection, task_id: str) -> bool:
    row = db.execute(
        "SELECT 1 FROM agent_runs WHERE task_id = ? AND status IN ('creating', 'running') LIMIT 1",
        (task_id,),
    ).fetchone()
    return row is not None


def update_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
) -> Task | None:
    """Manually change a task's status (board drag). Returns the updated task.

    Any column can be reached, except that a task cannot be moved to done
    while one of its agent runs is still active.
    """
    if status not in TASK_STATUSES:
        raise ValueError(f"Invalid status: {status}")
    task = get_task(db, task_id)
    if not task:
        return None
    if status == "done" and task.status != "done" and has_active_run(db, task_id):
        raise InvalidTransitionError(
            f"Task '{task_id}' has an active agent run; wait for it to finish or abandon it first"
        )
    set_status(db, task_id, status)
    db.commit()
    return get_task(db, task_id)


def set_status(db: sqlite3.Connection, task_id: str, status: str):
    """Write a status change without transition checks. Caller commits."""
    row = db.execute("SELECT status FROM tasks WHERE id = ?", (task_id,)).fetchone()
    old_status = row["status"]
    if old_status == status:
        return

    updates: dict = {"status": status}
    if status == "done":
        updates["completed_at"] = datetime.now().isoformat()
    elif old_status == "done":
        updates["completed_at"] = None

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    values = list(updates.values()) + [task_id]
    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        values,
    )
    _log_event(db, task_id, "status_changed", old_status, status)


def reorder_task(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
    order_index: int,
) -> Task | None:
    """Move a task to a column and position on the board."""
    task = update_task_status(db, task_id, status)
    if not task:
        return None
    db.execute(
        "UPDATE tasks SET order_index = ?, updated_at = datetime('now') WHERE id = ?",
        (order_index, task_id),
    )
    db.commit()
    return get_task(db, task_id)


def assign_task(
    db: sqlite3.Connection,
    task_id: str,
    assignee: str | None,
    agent_type: str | None = None,
) -> Task | None:
    """Set who works on a task. Assigning the agent starts a pending plan if none exists."""
    if assignee is not None and assignee not in ASSIGNEES:
        raise ValueError(f"Invalid assignee: {assignee}")
    task = get_task(db, task_id)
    if not task:
        return None

    plan_status = task.plan_status
    if assignee == "agent" and plan_status is None:
        plan_status = "pending"

    db.execute(
        """UPDATE tasks SET assignee = ?, agent_type = ?, plan_status = ?,
           updated_at = datetime('now') WHERE id = ?""",
        (assignee, agent_type if assignee == "agent" else None, plan_status, task_id),
    )
    _log_event(db, task_id, "assignee_changed", task.assignee, assignee)
    db.commit()
    return get_task(db, task_id)


def archive_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Archive a task and its subtasks. Rows are kept for history."""
    task = get_task(db, task_id)
    if not task:
        return False

    for subtask in task.subtasks:
        archive_task(db, subtask.id)

    db.execute(
        "UPDATE tasks SET archived_at = datetime('now'), updated_at = datetime('now') WHERE id = ?",
        (task_id,),
    )
    _log_event(db, task_id, "archived", None, None)
    db.commit()
    return True


def update_task_content(
    db: sqlite3.Connection,
    task_id: str,
    title: str | None = None,
    description: str | None = None,
    prompt: str | None = None,
) -> Task | None:
    """Edit a task's title, description or original prompt."""
    task = get_task(db, task_id)
    if not task:
        return None
    updates = {
        k: v
        for k, v in {"title": title, "description": description, "prompt": prompt}.items()
        if v is not None
    }
    if not updates:
        return task
    set_clause = ", ".join(f"{k} = ?" for k in updates)
    db.execute(
        f"UPDATE tasks SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        list(updates.values()) + [task_id],
    )
    _log_event(db, task_id, "content_changed", None, ", ".join(updates))
    db.commit()
    return get_task(db, task_id)


# ── Plan ─────────────────────────────────────────────────────────────────────


def set_plan_status(db: sqlite3.Connection, task_id: str, plan_status: str | None):
    """Write the plan status. Caller commits."""
    if plan_status is not None and plan_status not in PLAN_STATUSES:
        raise ValueError(f"Invalid plan status: {plan_status}")
    row = db.execute("SELECT plan_status FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if row["plan_status"] == plan_status:
        return
    db.execute(
        "UPDATE tasks SET plan_status = ?, updated_at = datetime('now') WHERE id = ?",
        (plan_status, task_id),
    )
    _log_event(db, task_id, "plan_status_changed", row["plan_status"], plan_status)


def store_plan(db: sqlite3.Connection, task_id: str, plan: str):
    """Save a generated plan and mark it ready. Caller commits."""
    db.execute(
        """UPDATE tasks SET plan = ?, plan_generated_at = datetime('now'),
           updated_at = datetime('now') WHERE id = ?""",
        (plan, task_id),
    )
    set_plan_status(db, task_id, "ready")


def update_plan(db: sqlite3.Connection, task_id: str, plan: str) -> Task | None:
    """Replace a task's plan by hand."""
    if not get_task(db, task_id):
        return None
    store_plan(db, task_id, plan)
    db.commit()
    return get_task(db, task_id)


def set_current_run(db: sqlite3.Connection, task_id: str, run_type: str, run_id: int):
    """Point a task at its current run of the given type. Caller commits."""
    column = "current_planning_run_id" if run_type == "planning" else "current_run_id"
    db.execute(
        f"UPDATE tasks SET {column} = ?, updated_at = datetime('now') WHERE id = ?",
        (run_id, task_id),
    )


# ── Subtasks ─────────────────────────────────────────────────────────────────


def create_subtasks(
    db: sqlite3.Connection,
    task_id: str,
    subtasks: list[dict],
) -> list[Task]:
    """Break a task into subtasks. Each dict needs a 'title' and may carry 'description' and 'assignee'."""
    parent = get_task(db, task_id)
    if not parent:
        raise ValueError(f"Task not found: {task_id}")
    created = []
    for sub in subtasks:
        t = create_task(
            db,
            title=sub["title"],
            workspace_id=parent.workspace_id,
            description=sub.get("description", ""),
            assignee=sub.get("assignee"),
            parent_task_id=task_id,
        )
        created.append(t)
    return created


def clear_subtasks(db: sqlite3.Connection, task_id: str) -> int:
    """Archive all subtasks of a task. Returns how many were archived."""
    task = get_task(db, task_id)
    if not task:
        return 0
    for subtask in task.subtasks:
        archive_task(db, subtask.id)
    return len(task.subtasks)


# ── Events ───────────────────────────────────────────────────────────────────


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY created_at, id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        workspace_id=row["workspace_id"],
        title=row["title"],
        description=row["description"] or "",
        prompt=row["prompt"],
        plan=row["plan"],
        plan_generated_at=_parse_dt(row["plan_generated_at"]),
        plan_status=row["plan_status"],
        status=row["status"],
        assignee=row["assignee"],
        agent_type=row["agent_type"],
        current_planning_run_id=row["current_planning_run_id"],
        current_run_id=row["current_run_id"],
        parent_task_id=row["parent_task_id"],
        order_index=row["order_index"] if row["order_index"] is not None else 0,
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        archived_at=_parse_dt(row["archived_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
