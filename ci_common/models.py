"""
Data models for the CI coordinator.

These models represent the domain objects used throughout the application,
independent of the underlying storage mechanism.
"""

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Git reports this SHA as "before" for new branches and "after" for deleted ones
BLANK_SHA = "0" * 40


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class ValidationError(Exception):
    """
    Raised when a model fails validation before persistence.

    Carries field-level messages in the same shape the API reports them.
    """

    def __init__(self, errors: dict[str, list[str]]):
        self.errors = errors
        super().__init__(self.full_messages())

    def full_messages(self) -> str:
        """Join field errors into one human-readable sentence list."""
        return ", ".join(
            f"{name.replace('_', ' ').capitalize()} {message}"
            for name, messages in self.errors.items()
            for message in messages
        )


def _require_present(
    errors: dict[str, list[str]], obj: Any, *names: str
) -> dict[str, list[str]]:
    for name in names:
        value = getattr(obj, name)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.setdefault(name, []).append("can't be blank")
    return errors


@dataclass
class User:
    """
    Represents a user account in the CI system.

    Users own API keys and projects, providing authentication and authorization.
    """

    id: str  # UUID
    name: str  # Display name
    email: str  # Email address (unique)
    created_at: datetime
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Convert user to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "created_at": _isoformat(self.created_at),
            "is_active": self.is_active,
        }


@dataclass
class APIKey:
    """
    Represents an API key for authentication.

    API keys are hashed before storage (SHA-256). The plaintext key is only
    shown once during creation and must be saved by the user.
    """

    id: str  # UUID (internal ID, not the actual key)
    user_id: str  # Owner of this API key
    key_hash: str  # SHA-256 hash of the actual API key
    name: str | None = None  # Optional description (e.g., "Production Key")
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_used_at: datetime | None = None  # Updated on each use
    is_active: bool = True  # For revocation

    def to_dict(self) -> dict[str, Any]:
        """Convert API key to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "created_at": _isoformat(self.created_at),
            "last_used_at": _isoformat(self.last_used_at),
            "is_active": self.is_active,
        }


@dataclass
class Project:
    """
    A mirror of an upstream repository that CI runs for.

    The owner manages the project; public projects can be read by any
    authenticated user.
    """

    name: str
    gitlab_id: int | None
    path: str
    ssh_url_to_repo: str
    default_ref: str = "master"
    token: str | None = None
    owner_id: str | None = None
    public: bool = False
    coverage_regex: str | None = None
    email_recipients: str = ""
    email_add_pusher: bool = True
    id: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @staticmethod
    def path_from_url(url: str) -> str:
        """Derive "namespace/name" from a legacy upstream project URL."""
        return re.sub(r".*/(.*/.*)$", r"\1", url)

    @property
    def coverage_enabled(self) -> bool:
        return bool(self.coverage_regex)

    def can_access(self, user: User) -> bool:
        return self.public or self.owner_id == user.id

    def can_manage(self, user: User) -> bool:
        return self.owner_id == user.id

    def validate(self) -> None:
        """
        Check required attributes.

        Raises:
            ValidationError: If any required attribute is blank
        """
        errors = _require_present(
            {}, self, "name", "gitlab_id", "path", "ssh_url_to_repo", "default_ref"
        )
        if errors:
            raise ValidationError(errors)

    def to_dict(self) -> dict[str, Any]:
        """Convert project to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "name": self.name,
            "gitlab_id": self.gitlab_id,
            "path": self.path,
            "ssh_url_to_repo": self.ssh_url_to_repo,
            "default_ref": self.default_ref,
            "token": self.token,
            "public": self.public,
            "coverage_enabled": self.coverage_enabled,
            "email_recipients": self.email_recipients,
            "email_add_pusher": self.email_add_pusher,
            "created_at": _isoformat(self.created_at),
        }


@dataclass
class WebHook:
    """URL notified about build results of a project."""

    project_id: int
    url: str
    id: int | None = None

    def validate(self) -> None:
        errors = _require_present({}, self, "url")
        if not errors and not re.match(r"^https?://[^\s/]+", self.url):
            errors["url"] = ["is invalid"]
        if errors:
            raise ValidationError(errors)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "project_id": self.project_id, "url": self.url}


@dataclass
class Runner:
    """An execution agent that picks up builds of the projects it is linked to."""

    token: str
    description: str | None = None
    active: bool = True
    id: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "active": self.active,
            "created_at": _isoformat(self.created_at),
        }


@dataclass
class RunnerProject:
    """Link between a runner and a project."""

    runner_id: int
    project_id: int
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "runner_id": self.runner_id,
            "project_id": self.project_id,
        }


@dataclass
class PushCommit:
    """One entry of the "commits" list of a push event."""

    id: str | None = None
    message: str = ""
    timestamp: str | None = None
    url: str | None = None
    author_name: str | None = None
    author_email: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "message": self.message,
            "timestamp": self.timestamp,
            "url": self.url,
            "author": {"name": self.author_name, "email": self.author_email},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PushCommit":
        author = data.get("author") or {}
        return cls(
            id=data.get("id"),
            message=data.get("message") or "",
            timestamp=data.get("timestamp"),
            url=data.get("url"),
            author_name=author.get("name"),
            author_email=author.get("email"),
        )


@dataclass
class PushData:
    """
    Typed push payload stored with a commit.

    Decoded once when the push is ingested (or loaded from storage) rather
    than re-parsed on every access.
    """

    before: str | None = None
    after: str | None = None
    ref: str | None = None
    user_name: str | None = None
    user_email: str | None = None
    repository: dict[str, Any] = field(default_factory=dict)
    commits: list[PushCommit] = field(default_factory=list)
    total_commits_count: int | None = None
    ci_yaml_file: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "before": self.before,
            "after": self.after,
            "ref": self.ref,
            "user_name": self.user_name,
            "user_email": self.user_email,
            "repository": self.repository,
            "commits": [commit.to_dict() for commit in self.commits],
            "total_commits_count": self.total_commits_count,
            "ci_yaml_file": self.ci_yaml_file,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PushData":
        return cls(
            before=data.get("before"),
            after=data.get("after"),
            ref=data.get("ref"),
            user_name=data.get("user_name"),
            user_email=data.get("user_email"),
            repository=data.get("repository") or {},
            commits=[PushCommit.from_dict(c) for c in data.get("commits") or []],
            total_commits_count=data.get("total_commits_count"),
            ci_yaml_file=data.get("ci_yaml_file"),
        )


@dataclass
class Commit:
    """
    One push event of a project, owner of the builds derived from it.

    `ref` holds the short ref name ("master", "v1.0"); `tag` tells whether
    it was pushed as a tag.
    """

    project_id: int
    ref: str | None
    sha: str | None
    before_sha: str | None
    push_data: PushData | None
    tag: bool = False
    id: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @staticmethod
    def truncate_sha(sha: str | None) -> str | None:
        return sha[:8] if sha else sha

    @property
    def short_sha(self) -> str | None:
        return self.truncate_sha(self.sha)

    @property
    def short_before_sha(self) -> str | None:
        return self.truncate_sha(self.before_sha)

    @property
    def new_branch(self) -> bool:
        return self.before_sha == BLANK_SHA

    @property
    def compare(self) -> bool:
        return not self.new_branch

    @property
    def commit_data(self) -> PushCommit | None:
        """The push entry describing the head commit, if the push listed it."""
        if self.push_data is None:
            return None
        for commit in self.push_data.commits:
            if commit.id == self.sha:
                return commit
        return None

    @property
    def git_author_name(self) -> str | None:
        data = self.commit_data
        return data.author_name if data else None

    @property
    def git_author_email(self) -> str | None:
        data = self.commit_data
        return data.author_email if data else None

    @property
    def git_commit_message(self) -> str | None:
        data = self.commit_data
        return data.message if data and data.message else None

    def project_recipients(self, project: Project) -> list[str]:
        """Email addresses notified about this commit, without duplicates."""
        recipients = project.email_recipients.split()
        if project.email_add_pusher and self.push_data and self.push_data.user_email:
            recipients.append(self.push_data.user_email)
        return list(dict.fromkeys(recipients))

    def validate(self) -> None:
        """
        Check required attributes and reject branch removal pushes.

        Raises:
            ValidationError: If ref, sha, before_sha or push_data is missing,
                or sha is the blank SHA
        """
        errors = _require_present({}, self, "ref", "sha", "before_sha", "push_data")
        if self.sha == BLANK_SHA:
            errors.setdefault("sha", []).append("cant be 00000000 (branch removal)")
        if errors:
            raise ValidationError(errors)

    def to_dict(self) -> dict[str, Any]:
        """Convert commit to dictionary format (without derived build state)."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "ref": self.ref,
            "sha": self.sha,
            "short_sha": self.short_sha,
            "before_sha": self.before_sha,
            "tag": self.tag,
            "git_author_name": self.git_author_name,
            "git_author_email": self.git_author_email,
            "git_commit_message": self.git_commit_message,
            "created_at": _isoformat(self.created_at),
        }


@dataclass
class Build:
    """
    One unit of work derived from a CI config job, scoped to a commit.

    Builds progress through states: pending -> running -> success/failed
    Pending and running builds can also be canceled.

    run(), succeed(), drop() and extract_coverage() are driven by runner agents
    reporting progress; the coordinator itself only creates, retries and
    cancels builds.
    """

    project_id: int
    commit_id: int
    name: str
    commands: str
    tag_list: list[str] = field(default_factory=list)
    deploy: bool = False
    status: str = "pending"
    id: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    finished_at: datetime | None = None
    runner_id: int | None = None
    coverage: float | None = None
    trace: str | None = None

    @classmethod
    def retry(cls, build: "Build") -> "Build":
        """Clone a build into a fresh pending attempt, leaving the original intact."""
        return cls(
            project_id=build.project_id,
            commit_id=build.commit_id,
            name=build.name,
            commands=build.commands,
            tag_list=list(build.tag_list),
            deploy=build.deploy,
        )

    @staticmethod
    def extract_coverage(trace: str | None, regex: str | None) -> float | None:
        """
        Pull a coverage percentage out of a build trace.

        Args:
            trace: Build output
            regex: Pattern locating the coverage figure, e.g. r"\\d+\\.\\d+%"

        Returns:
            The first number inside the first match, or None
        """
        if not trace or not regex:
            return None
        match = re.search(regex, trace)
        if match is None:
            return None
        number = re.search(r"\d+(\.\d+)?", match.group(0))
        return float(number.group(0)) if number else None

    @property
    def duration(self) -> float | None:
        """Seconds spent running; measured up to now while still running."""
        if self.started_at is None:
            return None
        end = self.finished_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    def _transition(self, allowed: tuple[str, ...], status: str) -> None:
        if self.status not in allowed:
            raise ValueError(f"Cannot move build {self.id} from {self.status} to {status}")
        self.status = status

    def run(self, now: datetime | None = None) -> None:
        self._transition(("pending",), "running")
        self.started_at = now or datetime.now(UTC)

    def succeed(self, now: datetime | None = None) -> None:
        self._transition(("running",), "success")
        self.finished_at = now or datetime.now(UTC)

    def drop(self, now: datetime | None = None) -> None:
        self._transition(("running",), "failed")
        self.finished_at = now or datetime.now(UTC)

    def cancel(self, now: datetime | None = None) -> None:
        self._transition(("pending", "running"), "canceled")
        self.finished_at = now or datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        """Convert build to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "commit_id": self.commit_id,
            "name": self.name,
            "commands": self.commands,
            "tag_list": self.tag_list,
            "deploy": self.deploy,
            "status": self.status,
            "created_at": _isoformat(self.created_at),
            "started_at": _isoformat(self.started_at),
            "finished_at": _isoformat(self.finished_at),
            "duration": self.duration,
            "runner_id": self.runner_id,
            "coverage": self.coverage,
        }
