"""Client for the external coding-agent service.

The service runs an agent against a repository and reports progress either
through a webhook or when polled. Reports are normalised into `RunReport`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from agent_board.db.models import RepositoryLink

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

_STATUS_ALIASES = {
    "creating": "creating",
    "queued": "creating",
    "pending": "creating",
    "running": "running",
    "in_progress": "running",
    "finished": "finished",
    "completed": "finished",
    "success": "finished",
    "succeeded": "finished",
    "failed": "failed",
    "error": "failed",
    "errored": "failed",
    "cancelled": "failed",
    "expired": "failed",
}


class RunnerError(Exception):
    """Raised when the agent service cannot be reached or rejects a request."""


@dataclass
class RunRequest:
    task_id: str
    run_type: str
    prompt: str


@dataclass
class RunHandle:
    external_run_id: str


@dataclass
class RunReport:
    external_run_id: str
    status: str
    pr_url: str | None = None
    pr_number: int | None = None
    summary: str | None = None
    error: str | None = None


def normalize_status(value: str | None) -> str | None:
    """Map the service's status vocabulary onto creating/running/finished/failed."""
    if not value:
        return None
    return _STATUS_ALIASES.get(value.strip().lower())


def pr_number_from_url(url: str) -> int | None:
    tail = url.rstrip("/").rsplit("/", 1)[-1]
    return int(tail) if tail.isdigit() else None


def parse_runner_payload(payload: dict[str, Any]) -> RunReport:
    """Build a report from a webhook body or status response.

    Raises ValueError when the payload names no run or carries an unknown status.
    """
    if not isinstance(payload, dict):
        raise ValueError("Payload must be a JSON object")

    run_id = payload.get("id") or payload.get("agentId")
    if not run_id:
        raise ValueError("Payload has no run id")

    raw_status = payload.get("status")
    status = normalize_status(raw_status if isinstance(raw_status, str) else None)
    if status is None:
        raise ValueError(f"Unknown run status: {raw_status!r}")

    pr = payload.get("pr") if isinstance(payload.get("pr"), dict) else {}
    pull_request = (
        payload.get("pullRequest") if isinstance(payload.get("pullRequest"), dict) else {}
    )
    result = payload.get("result") if isinstance(payload.get("result"), dict) else {}
    target = payload.get("target") if isinstance(payload.get("target"), dict) else {}

    pr_url = (
        payload.get("prUrl")
        or pr.get("url")
        or pull_request.get("html_url")
        or target.get("prUrl")
    )
    pr_number = payload.get("prNumber") or pr.get("number") or pull_request.get("number")
    if pr_number is None and pr_url:
        pr_number = pr_number_from_url(pr_url)

    summary = (
        payload.get("summary")
        or result.get("summary")
        or payload.get("output")
        or result.get("output")
    )
    error = payload.get("error") or payload.get("errorMessage")
    if isinstance(error, dict):
        error = error.get("message") or str(error)

    return RunReport(
        external_run_id=str(run_id),
        status=status,
        pr_url=pr_url,
        pr_number=int(pr_number) if pr_number is not None else None,
        summary=summary,
        error=error,
    )


class AgentRunner:
    """Interface of the coding-agent service."""

    def create_run(self, request: RunRequest, repo: RepositoryLink | None = None) -> RunHandle:
        raise NotImplementedError

    def get_run_status(self, external_run_id: str) -> RunReport:
        raise NotImplementedError


class HttpAgentRunner(AgentRunner):
    """Agent service reached over its HTTP API (`/v0/agents`)."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        webhook_url: str | None = None,
        webhook_secret: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.webhook_url = webhook_url
        self.webhook_secret = webhook_secret
        self._client = client or httpx.Client(timeout=timeout)

    def _auth(self) -> httpx.BasicAuth:
        if not self.api_key:
            raise RunnerError("Agent service not configured: AGENT_API_KEY not set")
        return httpx.BasicAuth(self.api_key, "")

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = self._client.request(method, url, auth=self._auth(), **kwargs)
        except httpx.HTTPError as e:
            raise RunnerError(f"Agent service unreachable: {e}") from e
        if response.status_code >= 400:
            logger.error("Agent service %s %s -> %s: %s", method, path, response.status_code, response.text[:500])
            raise RunnerError(
                f"Agent service error: {response.status_code} {response.reason_phrase}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise RunnerError("Agent service returned invalid JSON") from e
        if not isinstance(data, dict):
            raise RunnerError(f"Agent service returned a {type(data).__name__}, expected an object")
        return data

    def create_run(self, request: RunRequest, repo: RepositoryLink | None = None) -> RunHandle:
        body: dict[str, Any] = {
            "prompt": {"text": request.prompt},
            "target": {"autoCreatePr": request.run_type == "implementation"},
        }
        if repo:
            body["source"] = {"repository": repo.url, "ref": repo.default_branch}
        if self.webhook_url:
            body["webhook"] = {"url": self.webhook_url}
            if self.webhook_secret:
                body["webhook"]["secret"] = self.webhook_secret

        data = self._request("POST", "/v0/agents", json=body)
        run_id = data.get("id") or data.get("agentId")
        if not run_id:
            raise RunnerError("No run id returned from agent service")
        logger.info("Agent service accepted %s run for task '%s' as %s", request.run_type, request.task_id, run_id)
        return RunHandle(external_run_id=str(run_id))

    def get_run_status(self, external_run_id: str) -> RunReport:
        data = self._request("GET", f"/v0/agents/{external_run_id}")
        data.setdefault("id", external_run_id)
        try:
            return parse_runner_payload(data)
        except ValueError as e:
            raise RunnerError(f"Unexpected status response for {external_run_id}: {e}") from e

    def close(self):
        self._client.close()


def runner_from_config(config) -> HttpAgentRunner:
    """HTTP runner for the agent service named in `config`."""
    return HttpAgentRunner(
        config.agent_api_url,
        config.agent_api_key,
        webhook_url=config.agent_webhook_url,
        webhook_secret=config.agent_webhook_secret,
    )
