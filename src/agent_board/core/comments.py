"""Task comments. Append-only; authored by people or by the agent."""

import re
import sqlite3
from datetime import datetime

from agent_board.core.tasks import _log_event
from agent_board.db.models import Comment

_AGENT_MENTION = re.compile(r"@agent\b", re.IGNORECASE)


def mentions_agent(content: str) -> bool:
    """Whether a comment addresses the agent with an @Agent mention."""
    return bool(_AGENT_MENTION.search(content))


def add_comment(
    db: sqlite3.Connection,
    task_id: str,
    content: str,
    author_type: str = "user",
    author: str | None = None,
) -> Comment:
    """Append a comment to a task. Agent comments never count as mentions."""
    if author_type not in ("user", "agent"):
        raise ValueError(f"Invalid author type: {author_type}")
    if not content.strip():
        raise ValueError("Comment is empty")
    flagged = author_type == "user" and mentions_agent(content)
    cur = db.execute(
        """INSERT INTO task_comments (task_id, content, author_type, author, mentions_agent)
           VALUES (?, ?, ?, ?, ?)""",
        (task_id, content, author_type, author, int(flagged)),
    )
    _log_event(db, task_id, "commented", None, author_type)
    db.commit()
    return get_comment(db, cur.lastrowid)


def get_comment(db: sqlite3.Connection, comment_id: int) -> Comment | None:
    row = db.execute("SELECT * FROM task_comments WHERE id = ?", (comment_id,)).fetchone()
    if not row:
        return None
    return _row_to_comment(row)


def list_comments(db: sqlite3.Connection, task_id: str) -> list[Comment]:
    """Comments of a task in the order they were written."""
    rows = db.execute(
        "SELECT * FROM task_comments WHERE task_id = ? ORDER BY created_at, id",
        (task_id,),
    ).fetchall()
    return [_row_to_comment(r) for r in rows]


def mark_triggered(db: sqlite3.Connection, comment_id: int, run_id: int):
    db.execute(
        "UPDATE task_comments SET triggered_run_id = ? WHERE id = ?",
        (run_id, comment_id),
    )
    db.commit()


def _row_to_comment(row: sqlite3.Row) -> Comment:
    return Comment(
        id=row["id"],
        task_id=row["task_id"],
        content=row["content"],
        author_type=row["author_type"],
        author=row["author"],
        mentions_agent=bool(row["mentions_agent"]),
        triggered_run_id=row["triggered_run_id"],
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
