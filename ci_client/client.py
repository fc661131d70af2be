import subprocess
from pathlib import Path
from typing import Any

import requests

CI_CONFIG_FILE = ".gitlab-ci.yml"


def _headers(api_key: str | None) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"} if api_key else {}


def read_ci_config(project_dir: Path) -> str | None:
    """Return the CI config of a checkout, or None when it has none."""
    config_path = project_dir / CI_CONFIG_FILE
    if not config_path.exists():
        return None
    return config_path.read_text()


def git_commit_message(project_dir: Path, sha: str = "HEAD") -> str:
    """Message of a commit in the local repository (empty if git fails)."""
    result = subprocess.run(
        ["git", "log", "-1", "--format=%B", sha],
        cwd=project_dir,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip() if result.returncode == 0 else ""


def build_push_event(
    ref: str,
    before: str,
    after: str,
    messages: list[str],
    ci_yaml_file: str | None,
    user_name: str | None = None,
    user_email: str | None = None,
) -> dict[str, Any]:
    """
    Assemble a push event payload.

    Args:
        ref: Full ref name, e.g. "refs/heads/master" or "refs/tags/v1.0"
        before: SHA the ref pointed to before the push
        after: SHA the ref points to now
        messages: Messages of the pushed commits, oldest first
        ci_yaml_file: CI configuration text

    The last message is attributed to the head commit.
    """
    commits = [{"message": message} for message in messages]
    if commits:
        commits[-1]["id"] = after
        commits[-1]["author"] = {"name": user_name, "email": user_email}

    return {
        "ref": ref,
        "before": before,
        "after": after,
        "user_name": user_name,
        "user_email": user_email,
        "commits": commits,
        "total_commits_count": len(commits),
        "ci_yaml_file": ci_yaml_file,
    }


def push_commit(
    project_id: int,
    event: dict[str, Any],
    server_url: str = "http://localhost:8000",
    api_key: str | None = None,
) -> dict[str, Any]:
    """
    Send a push event to the CI server.

    Returns:
        The created commit (with "created": True), or {"created": False, "reason": ...}

    Raises:
        RuntimeError: If the request fails or the server rejects the push
    """
    try:
        response = requests.post(
            f"{server_url}/projects/{project_id}/commits",
            json=event,
            headers=_headers(api_key),
            timeout=30,
        )
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error pushing to CI server: {e}")


def list_commits(
    project_id: int,
    server_url: str = "http://localhost:8000",
    api_key: str | None = None,
) -> list[dict[str, Any]]:
    """
    List a project's commits with their aggregated status.

    Raises:
        RuntimeError: If the request fails
    """
    try:
        response = requests.get(
            f"{server_url}/projects/{project_id}/commits",
            headers=_headers(api_key),
            timeout=30,
        )
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error listing commits: {e}")


def get_commit(
    project_id: int,
    sha: str,
    server_url: str = "http://localhost:8000",
    api_key: str | None = None,
) -> dict[str, Any]:
    try:
        response = requests.get(
            f"{server_url}/projects/{project_id}/commits/{sha}",
            headers=_headers(api_key),
            timeout=30,
        )
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error fetching commit: {e}")


def retry_commit(
    project_id: int,
    sha: str,
    server_url: str = "http://localhost:8000",
    api_key: str | None = None,
) -> dict[str, Any]:
    try:
        response = requests.post(
            f"{server_url}/projects/{project_id}/commits/{sha}/retry",
            headers=_headers(api_key),
            timeout=30,
        )
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error retrying commit: {e}")


def cancel_build(
    build_id: int,
    server_url: str = "http://localhost:8000",
    api_key: str | None = None,
) -> dict[str, Any]:
    try:
        response = requests.post(
            f"{server_url}/builds/{build_id}/cancel",
            headers=_headers(api_key),
            timeout=30,
        )
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error canceling build: {e}")
