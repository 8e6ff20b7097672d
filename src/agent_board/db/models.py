"""Data models for agent board."""

from dataclasses import dataclass, field
from datetime import datetime

TASK_STATUSES = ("backlog", "todo", "in_progress", "in_review", "done")
PLAN_STATUSES = ("pending", "generating", "ready", "failed")
ASSIGNEES = ("user", "agent")
RUN_TYPES = ("planning", "implementation")
RUN_STATUSES = ("creating", "running", "finished", "failed")
ACTIVE_RUN_STATUSES = ("creating", "running")
TERMINAL_RUN_STATUSES = ("finished", "failed")
PR_STATUSES = ("open", "merged", "closed")
REF_TYPES = ("doc", "message", "link")
LINK_TYPES = ("email", "spreadsheet", "figma", "document", "other")


@dataclass
class Workspace:
    id: str
    name: str
    description: str = ""
    created_at: datetime | None = None


@dataclass
class RepositoryLink:
    workspace_id: str
    owner: str
    repo: str
    default_branch: str = "main"
    created_at: datetime | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repo}"


@dataclass
class Doc:
    id: int | None = None
    workspace_id: str = ""
    title: str = ""
    content: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Message:
    id: int | None = None
    workspace_id: str = ""
    content: str = ""
    parent_message_id: int | None = None
    author: str | None = None
    created_at: datetime | None = None


@dataclass
class Link:
    id: int | None = None
    workspace_id: str = ""
    url: str = ""
    title: str = ""
    link_type: str = "other"
    description: str = ""
    created_at: datetime | None = None


@dataclass
class Task:
    id: str
    workspace_id: str
    title: str
    description: str = ""
    prompt: str | None = None
    plan: str | None = None
    plan_generated_at: datetime | None = None
    plan_status: str | None = None
    status: str = "todo"
    assignee: str | None = None
    agent_type: str | None = None
    current_planning_run_id: int | None = None
    current_run_id: int | None = None
    parent_task_id: str | None = None
    order_index: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    archived_at: datetime | None = None
    subtasks: list["Task"] = field(default_factory=list)


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class AgentRun:
    id: int | None = None
    task_id: str = ""
    run_type: str = "implementation"
    external_run_id: str | None = None
    status: str = "creating"
    instructions: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    pr_status: str | None = None
    summary: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    abandoned_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


@dataclass
class ContextRef:
    task_id: str
    ref_type: str
    ref_id: str
    created_at: datetime | None = None


@dataclass
class ContextItem:
    ref_type: str
    ref_id: str
    title: str
    relevance_score: float
    reason: str = ""
    manual: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.ref_type, self.ref_id)


@dataclass
class Comment:
    id: int | None = None
    task_id: str = ""
    content: str = ""
    author_type: str = "user"
    author: str | None = None
    mentions_agent: bool = False
    triggered_run_id: int | None = None
    created_at: datetime | None = None
