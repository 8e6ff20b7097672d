"""Slack Web API integration."""

import logging
from dataclasses import dataclass

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from agent_board.db.models import AgentRun, Task

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None) -> WebClient | None:
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
    client: WebClient | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = client or get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response['error']}") from e

    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_run_notification(task: Task, run: AgentRun) -> list[dict]:
    """Format a finished or failed run as Slack blocks."""
    emoji = {
        "finished": ":white_check_mark:",
        "failed": ":red_circle:",
    }.get(run.status, ":large_blue_circle:")
    kind = "Plan" if run.run_type == "planning" else "Implementation"

    text = f"{emoji} *{kind} {run.status}*\n*{task.title}* (`{task.id}`)\nTask status: *{task.status}*"
    if run.error_message:
        text += f"\nError: {run.error_message}"
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


def format_pr_review_request(task: Task, run: AgentRun) -> list[dict]:
    """Format a PR review request as Slack blocks."""
    pr_label = f"PR #{run.pr_number}" if run.pr_number else "Pull Request"
    pr_link = f"\n<{run.pr_url}|View {pr_label}>" if run.pr_url else ""
    summary = f"\n{run.summary[:300]}" if run.summary else ""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f":eyes: *Review Requested*\n*{task.title}* (`{task.id}`){pr_link}{summary}",
            },
        },
    ]


class SlackNotifier:
    """Posts run outcomes to a channel. Failures are logged, never raised."""

    def __init__(self, token: str | None, channel: str | None, client: WebClient | None = None):
        self.token = token
        self.channel = channel
        self.client = client

    @property
    def enabled(self) -> bool:
        return bool(self.channel and (self.client or self.token))

    def notify_run(self, task: Task, run: AgentRun) -> SlackMessage | None:
        if not self.enabled:
            return None
        if run.run_type == "implementation" and run.status == "finished" and run.pr_url:
            blocks = format_pr_review_request(task, run)
            text = f"Review requested: {task.title}"
        else:
            blocks = format_run_notification(task, run)
            text = f"{task.title}: {run.run_type} run {run.status}"
        try:
            return send_message(self.token, self.channel, text, blocks, client=self.client)
        except SlackError as e:
            logger.warning("Slack notification for task '%s' failed: %s", task.id, e)
            return None


def notifier_from_config(config) -> SlackNotifier | None:
    if not (config.slack_bot_token and config.slack_channel):
        return None
    return SlackNotifier(config.slack_bot_token, config.slack_channel)
