"""
Abstract repository interface for CI persistence.

This module defines the contract that any database implementation must follow,
allowing easy swapping between SQLite, PostgreSQL, MySQL, etc.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from .models import APIKey, Build, Commit, Project, Runner, RunnerProject, User, WebHook


class CiRepository(ABC):
    """
    Abstract base class for CI storage operations.

    Implementations must provide async-safe access to the data and handle
    their own connection management. Methods that write several rows do so
    in a single transaction.
    """

    # Project methods

    @abstractmethod
    async def create_project(self, project: Project) -> Project:
        """
        Persist a new project.

        Args:
            project: Project without an id

        Returns:
            The same project with its id assigned
        """
        pass

    @abstractmethod
    async def get_project(self, project_id: int) -> Project | None:
        """
        Retrieve a project by its ID.

        Returns:
            Project object if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_projects(self) -> list[Project]:
        pass

    @abstractmethod
    async def update_project(self, project: Project) -> None:
        """
        Save every attribute of an existing project.

        Raises:
            Exception: If project not found
        """
        pass

    @abstractmethod
    async def delete_project(self, project_id: int) -> None:
        """
        Delete a project together with its commits, builds, webhooks and
        runner links.
        """
        pass

    # WebHook methods

    @abstractmethod
    async def create_web_hook(self, web_hook: WebHook) -> WebHook:
        pass

    @abstractmethod
    async def list_web_hooks(self, project_id: int) -> list[WebHook]:
        pass

    # Runner methods

    @abstractmethod
    async def create_runner(self, runner: Runner) -> Runner:
        pass

    @abstractmethod
    async def get_runner(self, runner_id: int) -> Runner | None:
        pass

    @abstractmethod
    async def list_runners(self) -> list[Runner]:
        pass

    @abstractmethod
    async def create_runner_project(self, runner_project: RunnerProject) -> RunnerProject:
        """
        Link a runner to a project.

        Raises:
            Exception: If the runner is already linked to the project
        """
        pass

    @abstractmethod
    async def get_runner_project(
        self, runner_id: int, project_id: int
    ) -> RunnerProject | None:
        pass

    @abstractmethod
    async def delete_runner_project(self, runner_project_id: int) -> None:
        pass

    @abstractmethod
    async def list_project_runners(self, project_id: int) -> list[Runner]:
        pass

    # Commit methods

    @abstractmethod
    async def create_commit_with_builds(
        self, commit: Commit, builds: list[Build]
    ) -> tuple[Commit, list[Build]]:
        """
        Insert a commit and its builds in one transaction.

        Builds get their commit_id set to the new commit. Nothing is written
        if any insert fails.

        Returns:
            The commit and builds with ids assigned
        """
        pass

    @abstractmethod
    async def get_commit(self, commit_id: int) -> Commit | None:
        pass

    @abstractmethod
    async def get_commit_by_sha(self, project_id: int, sha: str) -> Commit | None:
        """
        Retrieve the most recent commit of a project with the given SHA.

        Returns:
            Commit object if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_commits(self, project_id: int) -> list[Commit]:
        """List a project's commits, newest first."""
        pass

    @abstractmethod
    async def delete_commit(self, commit_id: int) -> None:
        """Delete a commit and all builds it owns in one transaction."""
        pass

    # Build methods

    @abstractmethod
    async def create_builds(self, builds: list[Build]) -> list[Build]:
        """
        Insert several builds in one transaction.

        Returns:
            The builds with ids assigned
        """
        pass

    @abstractmethod
    async def get_build(self, build_id: int) -> Build | None:
        pass

    @abstractmethod
    async def list_builds(self, commit_id: int) -> list[Build]:
        """List a commit's builds ordered by id (oldest attempt first)."""
        pass

    @abstractmethod
    async def update_build(self, build: Build) -> None:
        """
        Save the mutable state of a build (status, timestamps, runner,
        coverage, trace).

        Raises:
            Exception: If build not found
        """
        pass

    # User management methods

    @abstractmethod
    async def create_user(self, user: User) -> None:
        """
        Create a new user in the database.

        Raises:
            Exception: If user with same email already exists
        """
        pass

    @abstractmethod
    async def get_user(self, user_id: str) -> User | None:
        pass

    @abstractmethod
    async def get_user_by_email(self, email: str) -> User | None:
        pass

    @abstractmethod
    async def list_users(self) -> list[User]:
        pass

    @abstractmethod
    async def update_user_active_status(self, user_id: str, is_active: bool) -> None:
        pass

    # API Key management methods

    @abstractmethod
    async def create_api_key(self, api_key: APIKey) -> None:
        pass

    @abstractmethod
    async def get_api_key_by_hash(self, key_hash: str) -> APIKey | None:
        """
        Retrieve an API key by its hash.

        Args:
            key_hash: SHA-256 hash of the API key

        Returns:
            APIKey object if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_user_api_keys(self, user_id: str) -> list[APIKey]:
        pass

    @abstractmethod
    async def revoke_api_key(self, key_id: str) -> None:
        pass

    @abstractmethod
    async def update_api_key_last_used(self, key_id: str, timestamp: datetime) -> None:
        pass

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the database (create tables, etc.).

        Called once at application startup.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        Close database connections and cleanup resources.

        Called at application shutdown.
        """
        pass
