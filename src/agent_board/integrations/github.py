"""GitHub webhook helpers: signature checks and pull request events."""

import hashlib
import hmac
import re


class GitHubError(Exception):
    """Raised when a GitHub payload or repository reference is malformed."""


_URL_SLUG = re.compile(r"github\.com[/:]([\w.-]+)/([\w.-]+?)(?:\.git)?/?$")
_PLAIN_SLUG = re.compile(r"^([\w.-]+)/([\w.-]+)$")


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Check an HMAC-SHA256 hex signature, with or without a "sha256=" prefix."""
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def parse_pull_request_event(event: str | None, payload: dict) -> tuple[str, int, str] | None:
    """Return (repository, pr_number, pr_status) for a pull request state change.

    `repository` is the "owner/repo" full name. Other events and actions
    (labels, reviews, synchronize) return None.
    """
    if event != "pull_request":
        return None
    if not isinstance(payload, dict):
        raise GitHubError("Payload must be a JSON object")

    action = payload.get("action")
    pr = payload.get("pull_request")
    if not isinstance(pr, dict):
        raise GitHubError("pull_request event without a pull_request object")
    number = pr.get("number") or payload.get("number")
    if number is None:
        raise GitHubError("pull_request event without a PR number")
    repo = payload.get("repository")
    full_name = repo.get("full_name") if isinstance(repo, dict) else None
    if not full_name:
        raise GitHubError("pull_request event without a repository")

    if action == "closed":
        return full_name, int(number), "merged" if pr.get("merged") else "closed"
    if action in ("opened", "reopened"):
        return full_name, int(number), "open"
    return None


def parse_repo_slug(value: str) -> tuple[str, str]:
    """Split "owner/repo" or a GitHub URL into (owner, repo)."""
    value = value.strip()
    m = _URL_SLUG.search(value) or _PLAIN_SLUG.match(value)
    if not m:
        raise GitHubError(f"Not a GitHub repository: {value!r}")
    return m.group(1), m.group(2)
