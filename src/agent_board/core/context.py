"""Task context: explicit references to workspace items and ranked suggestions.

Context items (docs, messages, links) feed the agent prompt. A task's
manually linked references are always used; the rest of the workspace is
ranked against the task title and the best matches are suggested.
"""

import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from agent_board.core import workspaces as workspaces_mod
from agent_board.core.tasks import _log_event
from agent_board.db.models import REF_TYPES, ContextItem, ContextRef, Doc, Link, Message, Task

logger = logging.getLogger(__name__)

# Most recent messages considered for suggestions
RECENT_MESSAGE_LIMIT = 30

_STOPWORDS = frozenset(
    "a an and are as at be by for from has have in is it its of on or that the this to was "
    "were will with we our you your add fix make use update create new".split()
)


@dataclass
class Candidate:
    """A workspace item offered to a ranker."""
    ref_type: str
    ref_id: str
    title: str
    text: str


# ── References ───────────────────────────────────────────────────────────────


def _check_ref(db: sqlite3.Connection, workspace_id: str, ref_type: str, ref_id: str):
    """Raise ValueError unless the item exists in the task's workspace."""
    if ref_type not in REF_TYPES:
        raise ValueError(f"Invalid reference type: {ref_type}")
    item = workspaces_mod.resolve_ref(db, ref_type, str(ref_id))
    if item is None or item.workspace_id != workspace_id:
        raise ValueError(f"No {ref_type} {ref_id} in workspace '{workspace_id}'")


def _task_workspace(db: sqlite3.Connection, task_id: str) -> str:
    row = db.execute("SELECT workspace_id FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        raise ValueError(f"Task not found: {task_id}")
    return row["workspace_id"]


def add_context_ref(db: sqlite3.Connection, task_id: str, ref_type: str, ref_id: str) -> ContextRef:
    """Link an item of the task's workspace to a task. Adding an existing reference is a no-op."""
    _check_ref(db, _task_workspace(db, task_id), ref_type, ref_id)
    cur = db.execute(
        "INSERT OR IGNORE INTO task_context_refs (task_id, ref_type, ref_id) VALUES (?, ?, ?)",
        (task_id, ref_type, str(ref_id)),
    )
    if cur.rowcount:
        _log_event(db, task_id, "context_added", None, f"{ref_type}:{ref_id}")
    db.commit()
    return _get_ref(db, task_id, ref_type, str(ref_id))


def remove_context_ref(db: sqlite3.Connection, task_id: str, ref_type: str, ref_id: str) -> bool:
    result = db.execute(
        "DELETE FROM task_context_refs WHERE task_id = ? AND ref_type = ? AND ref_id = ?",
        (task_id, ref_type, str(ref_id)),
    )
    if result.rowcount:
        _log_event(db, task_id, "context_removed", f"{ref_type}:{ref_id}", None)
    db.commit()
    return result.rowcount > 0


def set_context_refs(
    db: sqlite3.Connection,
    task_id: str,
    refs: list[tuple[str, str]],
) -> list[ContextRef]:
    """Replace all of a task's references with `refs`. Nothing changes if any ref is invalid."""
    workspace_id = _task_workspace(db, task_id)
    for ref_type, ref_id in refs:
        _check_ref(db, workspace_id, ref_type, ref_id)
    db.execute("DELETE FROM task_context_refs WHERE task_id = ?", (task_id,))
    for ref_type, ref_id in refs:
        db.execute(
            "INSERT OR IGNORE INTO task_context_refs (task_id, ref_type, ref_id) VALUES (?, ?, ?)",
            (task_id, ref_type, str(ref_id)),
        )
    _log_event(db, task_id, "context_replaced", None, str(len(refs)))
    db.commit()
    return list_context_refs(db, task_id)


def list_context_refs(db: sqlite3.Connection, task_id: str) -> list[ContextRef]:
    rows = db.execute(
        "SELECT * FROM task_context_refs WHERE task_id = ? ORDER BY created_at, ref_type, ref_id",
        (task_id,),
    ).fetchall()
    return [_row_to_ref(r) for r in rows]


def _get_ref(db: sqlite3.Connection, task_id: str, ref_type: str, ref_id: str) -> ContextRef:
    row = db.execute(
        "SELECT * FROM task_context_refs WHERE task_id = ? AND ref_type = ? AND ref_id = ?",
        (task_id, ref_type, ref_id),
    ).fetchone()
    return _row_to_ref(row)


def _row_to_ref(row: sqlite3.Row) -> ContextRef:
    return ContextRef(
        task_id=row["task_id"],
        ref_type=row["ref_type"],
        ref_id=row["ref_id"],
        created_at=_parse_dt(row["created_at"]),
    )


# ── Ranking ──────────────────────────────────────────────────────────────────


def tokenize(text: str) -> set[str]:
    words = re.findall(r"[a-z0-9]+", text.lower())
    return {w for w in words if len(w) > 1 and w not in _STOPWORDS}


class Ranker:
    """Scores candidate context items against a task title (0-100)."""

    def rank(self, task_title: str, candidates: list[Candidate]) -> list[ContextItem]:
        raise NotImplementedError


class LexicalRanker(Ranker):
    """Rank by the share of task-title words found in each candidate.

    Title matches count double, so an item named after the feature beats one
    that mentions it in passing.
    """

    def rank(self, task_title: str, candidates: list[Candidate]) -> list[ContextItem]:
        wanted = tokenize(task_title)
        if not wanted:
            return []

        items = []
        for c in candidates:
            in_title = wanted & tokenize(c.title)
            in_text = (wanted & tokenize(c.text)) - in_title
            weight = 2 * len(in_title) + len(in_text)
            if not weight:
                continue
            score = round(100.0 * weight / (2 * len(wanted)), 1)
            matched = sorted(in_title | in_text)
            items.append(
                ContextItem(
                    ref_type=c.ref_type,
                    ref_id=c.ref_id,
                    title=c.title,
                    relevance_score=score,
                    reason=f"Mentions {', '.join(matched)}",
                )
            )
        items.sort(key=lambda i: i.relevance_score, reverse=True)
        return items


def workspace_candidates(db: sqlite3.Connection, workspace_id: str) -> list[Candidate]:
    """All docs, the most recent messages and all links of a workspace."""
    candidates = []
    for doc in workspaces_mod.list_docs(db, workspace_id):
        candidates.append(Candidate("doc", str(doc.id), doc.title, doc.content[:500]))
    for msg in workspaces_mod.list_messages(db, workspace_id, limit=RECENT_MESSAGE_LIMIT):
        candidates.append(Candidate("message", str(msg.id), _message_title(msg), msg.content))
    for link in workspaces_mod.list_links(db, workspace_id):
        candidates.append(
            Candidate("link", str(link.id), link.title, f"{link.description} {link.url}")
        )
    return candidates


def suggest_context(
    db: sqlite3.Connection,
    task: Task,
    ranker: Ranker | None = None,
    min_score: float = 50,
    limit: int = 5,
) -> list[ContextItem]:
    """Rank the workspace against the task title and keep the strongest matches."""
    ranker = ranker or LexicalRanker()
    candidates = workspace_candidates(db, task.workspace_id)
    if not candidates:
        return []
    ranked = ranker.rank(task.title, candidates)
    kept = [i for i in ranked if i.relevance_score >= min_score]
    kept.sort(key=lambda i: i.relevance_score, reverse=True)
    return kept[:limit]


def assemble_context(
    db: sqlite3.Connection,
    task: Task,
    ranker: Ranker | None = None,
    min_score: float = 50,
    limit: int = 5,
) -> list[ContextItem]:
    """Context for a task: manual references plus deduplicated suggestions, best first.

    Manually linked items are kept whatever their score. A ranker failure
    degrades to manual references only.
    """
    manual: dict[tuple[str, str], ContextItem] = {}
    for ref in list_context_refs(db, task.id):
        item = workspaces_mod.resolve_ref(db, ref.ref_type, ref.ref_id)
        if item is None:
            logger.warning("Context %s:%s of task '%s' no longer exists", ref.ref_type, ref.ref_id, task.id)
            continue
        if item.workspace_id != task.workspace_id:
            logger.warning(
                "Context %s:%s of task '%s' belongs to another workspace", ref.ref_type, ref.ref_id, task.id
            )
            continue
        manual[(ref.ref_type, ref.ref_id)] = ContextItem(
            ref_type=ref.ref_type,
            ref_id=ref.ref_id,
            title=_item_title(item),
            relevance_score=100.0,
            reason="Linked manually",
            manual=True,
        )

    try:
        suggested = suggest_context(db, task, ranker, min_score=min_score, limit=limit)
    except Exception:
        logger.exception("Context ranking failed for task '%s'", task.id)
        suggested = []

    items = list(manual.values())
    for item in suggested:
        if item.key in manual:
            continue
        items.append(item)
    items.sort(key=lambda i: i.relevance_score, reverse=True)
    return items


# ── Rendering ────────────────────────────────────────────────────────────────


@dataclass
class RenderedContext:
    docs: str = ""
    messages: str = ""
    links: str = ""


def render_context(
    db: sqlite3.Connection,
    items: list[ContextItem],
    workspace_id: str | None = None,
) -> RenderedContext:
    """Resolve context items into the prompt sections for docs, messages and links.

    With `workspace_id` set, items from other workspaces are left out.
    """
    docs, messages, links = [], [], []
    for ci in items:
        item = workspaces_mod.resolve_ref(db, ci.ref_type, ci.ref_id)
        if item is not None and workspace_id is not None and item.workspace_id != workspace_id:
            logger.warning("Skipping %s:%s from workspace '%s'", ci.ref_type, ci.ref_id, item.workspace_id)
            continue
        if isinstance(item, Doc):
            docs.append(f"## {item.title}\n{item.content}")
        elif isinstance(item, Message):
            messages.append(item.content)
        elif isinstance(item, Link):
            links.append(f"- [{item.title}]({item.url})")
    return RenderedContext(
        docs="\n\n---\n\n".join(docs),
        messages="\n\n".join(messages),
        links="\n".join(links),
    )


def _message_title(msg: Message) -> str:
    first_line = msg.content.strip().splitlines()[0] if msg.content.strip() else ""
    return first_line[:80]


def _item_title(item: Doc | Message | Link) -> str:
    if isinstance(item, Message):
        return _message_title(item)
    return item.title


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
