"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".agent_board" / "board.db")
    agent_api_url: str = "https://api.cursor.com"
    agent_api_key: str | None = None
    agent_webhook_url: str | None = None
    agent_webhook_secret: str | None = None
    github_webhook_secret: str | None = None
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    max_run_minutes: int = 60
    poll_interval: float = 30.0
    no_pr_status: str = "todo"
    pr_closed_status: str = "in_progress"
    suggest_min_score: int = 50
    suggest_limit: int = 5
    subtasks_from_plan: bool = False

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("BOARD_DB_PATH"):
            config.db_path = Path(db)

        if url := os.environ.get("AGENT_API_URL"):
            config.agent_api_url = url.rstrip("/")

        config.agent_api_key = os.environ.get("AGENT_API_KEY")
        config.agent_webhook_url = os.environ.get("AGENT_WEBHOOK_URL")
        config.agent_webhook_secret = os.environ.get("AGENT_WEBHOOK_SECRET")
        config.github_webhook_secret = os.environ.get("GITHUB_WEBHOOK_SECRET")
        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("SLACK_CHANNEL")

        if minutes := os.environ.get("BOARD_MAX_RUN_MINUTES"):
            config.max_run_minutes = int(minutes)

        if interval := os.environ.get("BOARD_POLL_INTERVAL"):
            config.poll_interval = float(interval)

        if no_pr := os.environ.get("BOARD_NO_PR_STATUS"):
            if no_pr not in ("todo", "done"):
                raise ValueError(f"BOARD_NO_PR_STATUS must be 'todo' or 'done', got {no_pr!r}")
            config.no_pr_status = no_pr

        if closed := os.environ.get("BOARD_PR_CLOSED_STATUS"):
            if closed not in ("in_progress", "todo"):
                raise ValueError(
                    f"BOARD_PR_CLOSED_STATUS must be 'in_progress' or 'todo', got {closed!r}"
                )
            config.pr_closed_status = closed

        if min_score := os.environ.get("BOARD_SUGGEST_MIN_SCORE"):
            config.suggest_min_score = int(min_score)

        if limit := os.environ.get("BOARD_SUGGEST_LIMIT"):
            config.suggest_limit = int(limit)

        flag = os.environ.get("BOARD_SUBTASKS_FROM_PLAN", "")
        config.subtasks_from_plan = flag.lower() in ("1", "true", "yes", "on")

        return config


def get_config() -> Config:
    return Config.from_env()
