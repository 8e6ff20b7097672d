"""Workspace management: linked repositories and the docs, messages and links used as agent context."""

import sqlite3
from datetime import datetime

from agent_board.db.models import LINK_TYPES, Doc, Link, Message, RepositoryLink, Workspace


def create_workspace(
    db: sqlite3.Connection,
    workspace_id: str,
    name: str,
    description: str = "",
) -> Workspace:
    """Create a new workspace."""
    db.execute(
        "INSERT INTO workspaces (id, name, description) VALUES (?, ?, ?)",
        (workspace_id, name, description),
    )
    db.commit()
    return get_workspace(db, workspace_id)


def get_workspace(db: sqlite3.Connection, workspace_id: str) -> Workspace | None:
    """Get a workspace by ID."""
    row = db.execute("SELECT * FROM workspaces WHERE id = ?", (workspace_id,)).fetchone()
    if not row:
        return None
    return Workspace(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        created_at=_parse_dt(row["created_at"]),
    )


def list_workspaces(db: sqlite3.Connection) -> list[Workspace]:
    """List all workspaces."""
    rows = db.execute("SELECT id FROM workspaces ORDER BY created_at DESC, id").fetchall()
    return [get_workspace(db, r["id"]) for r in rows]


# ── Repository Link ──────────────────────────────────────────────────────────


def link_repository(
    db: sqlite3.Connection,
    workspace_id: str,
    owner: str,
    repo: str,
    default_branch: str = "main",
) -> RepositoryLink:
    """Link a source repository to a workspace, replacing any existing link."""
    if not get_workspace(db, workspace_id):
        raise ValueError(f"Workspace not found: {workspace_id}")
    db.execute(
        """INSERT INTO workspace_repos (workspace_id, owner, repo, default_branch)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(workspace_id) DO UPDATE SET
               owner = excluded.owner,
               repo = excluded.repo,
               default_branch = excluded.default_branch""",
        (workspace_id, owner, repo, default_branch),
    )
    db.commit()
    return get_repository(db, workspace_id)


def get_repository(db: sqlite3.Connection, workspace_id: str) -> RepositoryLink | None:
    """Resolve the repository linked to a workspace, or None if there is none."""
    row = db.execute(
        "SELECT * FROM workspace_repos WHERE workspace_id = ?", (workspace_id,)
    ).fetchone()
    if not row:
        return None
    return RepositoryLink(
        workspace_id=row["workspace_id"],
        owner=row["owner"],
        repo=row["repo"],
        default_branch=row["default_branch"],
        created_at=_parse_dt(row["created_at"]),
    )


def unlink_repository(db: sqlite3.Connection, workspace_id: str) -> bool:
    result = db.execute("DELETE FROM workspace_repos WHERE workspace_id = ?", (workspace_id,))
    db.commit()
    return result.rowcount > 0


# ── Docs ─────────────────────────────────────────────────────────────────────


def add_doc(db: sqlite3.Connection, workspace_id: str, title: str, content: str = "") -> Doc:
    """Add a markdown document to a workspace."""
    cur = db.execute(
        "INSERT INTO workspace_docs (workspace_id, title, content) VALUES (?, ?, ?)",
        (workspace_id, title, content),
    )
    db.commit()
    return get_doc(db, cur.lastrowid)


def get_doc(db: sqlite3.Connection, doc_id: int) -> Doc | None:
    row = db.execute("SELECT * FROM workspace_docs WHERE id = ?", (doc_id,)).fetchone()
    if not row:
        return None
    return _row_to_doc(row)


def list_docs(db: sqlite3.Connection, workspace_id: str) -> list[Doc]:
    rows = db.execute(
        "SELECT * FROM workspace_docs WHERE workspace_id = ? ORDER BY created_at, id",
        (workspace_id,),
    ).fetchall()
    return [_row_to_doc(r) for r in rows]


# ── Messages ─────────────────────────────────────────────────────────────────


def add_message(
    db: sqlite3.Connection,
    workspace_id: str,
    content: str,
    author: str | None = None,
    parent_message_id: int | None = None,
) -> Message:
    """Post a chat message, optionally as a reply in a thread."""
    cur = db.execute(
        """INSERT INTO workspace_messages (workspace_id, content, author, parent_message_id)
           VALUES (?, ?, ?, ?)""",
        (workspace_id, content, author, parent_message_id),
    )
    db.commit()
    return get_message(db, cur.lastrowid)


def get_message(db: sqlite3.Connection, message_id: int) -> Message | None:
    row = db.execute(
        "SELECT * FROM workspace_messages WHERE id = ?", (message_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_message(row)


def list_messages(
    db: sqlite3.Connection,
    workspace_id: str,
    limit: int | None = None,
) -> list[Message]:
    """List messages newest first."""
    query = "SELECT * FROM workspace_messages WHERE workspace_id = ? ORDER BY created_at DESC, id DESC"
    params: list = [workspace_id]
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_message(r) for r in rows]


# ── Links ────────────────────────────────────────────────────────────────────


def add_link(
    db: sqlite3.Connection,
    workspace_id: str,
    url: str,
    title: str,
    link_type: str = "other",
    description: str = "",
) -> Link:
    """Save an external link (email, spreadsheet, design file, ...)."""
    if link_type not in LINK_TYPES:
        raise ValueError(f"Invalid link type: {link_type}")
    cur = db.execute(
        """INSERT INTO workspace_links (workspace_id, url, title, link_type, description)
           VALUES (?, ?, ?, ?, ?)""",
        (workspace_id, url, title, link_type, description),
    )
    db.commit()
    return get_link(db, cur.lastrowid)


def get_link(db: sqlite3.Connection, link_id: int) -> Link | None:
    row = db.execute("SELECT * FROM workspace_links WHERE id = ?", (link_id,)).fetchone()
    if not row:
        return None
    return _row_to_link(row)


def list_links(db: sqlite3.Connection, workspace_id: str) -> list[Link]:
    rows = db.execute(
        "SELECT * FROM workspace_links WHERE workspace_id = ? ORDER BY created_at, id",
        (workspace_id,),
    ).fetchall()
    return [_row_to_link(r) for r in rows]


def resolve_ref(db: sqlite3.Connection, ref_type: str, ref_id: str) -> Doc | Message | Link | None:
    """Load the workspace item a context reference points at."""
    try:
        item_id = int(ref_id)
    except ValueError:
        return None
    if ref_type == "doc":
        return get_doc(db, item_id)
    if ref_type == "message":
        return get_message(db, item_id)
    if ref_type == "link":
        return get_link(db, item_id)
    raise ValueError(f"Invalid reference type: {ref_type}")


def _row_to_doc(row: sqlite3.Row) -> Doc:
    return Doc(
        id=row["id"],
        workspace_id=row["workspace_id"],
        title=row["title"],
        content=row["content"] or "",
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        workspace_id=row["workspace_id"],
        content=row["content"],
        parent_message_id=row["parent_message_id"],
        author=row["author"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_link(row: sqlite3.Row) -> Link:
    return Link(
        id=row["id"],
        workspace_id=row["workspace_id"],
        url=row["url"],
        title=row["title"],
        link_type=row["link_type"],
        description=row["description"] or "",
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
