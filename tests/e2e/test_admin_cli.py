"""
End-to-end tests for the CI admin CLI.

Runs ci-admin in a subprocess against a temporary database and checks the
results through the repository.
"""

import asyncio
import json
import os
import re
import subprocess
import sys
import tempfile

import pytest

from ci_common.models import Project, User
from ci_persistence.sqlite_repository import SQLiteCiRepository


@pytest.fixture
def test_db_path():
    """Create a temporary, initialized database file."""
    fd, path = tempfile.mkstemp(suffix=".db", prefix="ci_admin_test_")
    os.close(fd)

    async def init_db():
        repo = SQLiteCiRepository(path)
        await repo.initialize()
        await repo.close()

    asyncio.run(init_db())

    yield path

    if os.path.exists(path):
        os.unlink(path)


def run_admin_command(db_path, *args):
    """Run ci-admin with CI_DB_PATH pointing at the test database."""
    env = os.environ.copy()
    env["CI_DB_PATH"] = db_path

    return subprocess.run(
        [sys.executable, "-m", "ci_admin.cli", *args],
        capture_output=True,
        text=True,
        env=env,
    )


def query(db_path, action):
    """Run an async repository call against the test database."""

    async def run():
        repo = SQLiteCiRepository(db_path)
        await repo.initialize()
        try:
            return await action(repo)
        finally:
            await repo.close()

    return asyncio.run(run())


def create_user(db_path, name="Alice", email="alice@example.com"):
    result = run_admin_command(db_path, "user", "create", "--name", name, "--email", email)
    assert result.returncode == 0, result.stderr
    return re.search(r"[a-f0-9\-]{36}", result.stdout).group(0)


class TestUserManagement:
    """Test suite for user commands."""

    def test_create_user(self, test_db_path):
        user_id = create_user(test_db_path)

        user = query(test_db_path, lambda repo: repo.get_user(user_id))
        assert user.email == "alice@example.com"
        assert user.is_active

    def test_create_user_duplicate_email(self, test_db_path):
        create_user(test_db_path)

        result = run_admin_command(
            test_db_path, "user", "create", "--name", "Clone", "--email", "alice@example.com"
        )

        assert result.returncode == 1
        assert "already exists" in result.stderr.lower()

    def test_invalid_email_format(self, test_db_path):
        result = run_admin_command(
            test_db_path, "user", "create", "--name", "Bad", "--email", "not-an-email"
        )

        assert result.returncode == 1
        assert "invalid email" in result.stderr.lower()

    def test_list_users_json(self, test_db_path):
        create_user(test_db_path)
        create_user(test_db_path, name="Bob", email="bob@example.com")

        result = run_admin_command(test_db_path, "user", "list", "--json")

        assert result.returncode == 0
        emails = {u["email"] for u in json.loads(result.stdout)}
        assert emails == {"alice@example.com", "bob@example.com"}

    def test_get_user_by_email(self, test_db_path):
        user_id = create_user(test_db_path)

        result = run_admin_command(test_db_path, "user", "get", "--email", "alice@example.com")

        assert result.returncode == 0
        assert user_id in result.stdout

    def test_get_nonexistent_user(self, test_db_path):
        result = run_admin_command(test_db_path, "user", "get", "missing-id")

        assert result.returncode == 1
        assert "not found" in result.stderr.lower()

    def test_deactivate_and_activate(self, test_db_path):
        user_id = create_user(test_db_path)

        assert run_admin_command(test_db_path, "user", "deactivate", user_id).returncode == 0
        assert not query(test_db_path, lambda repo: repo.get_user(user_id)).is_active

        assert run_admin_command(test_db_path, "user", "activate", user_id).returncode == 0
        assert query(test_db_path, lambda repo: repo.get_user(user_id)).is_active


class TestAPIKeyManagement:
    """Test suite for API key commands."""

    def test_create_api_key(self, test_db_path):
        create_user(test_db_path)

        result = run_admin_command(
            test_db_path, "key", "create", "--email", "alice@example.com", "--name", "laptop"
        )

        assert result.returncode == 0
        assert re.search(r"ci_[A-Za-z0-9_-]{40}", result.stdout)

    def test_create_key_for_nonexistent_user(self, test_db_path):
        result = run_admin_command(
            test_db_path, "key", "create", "--email", "nobody@example.com", "--name", "x"
        )

        assert result.returncode == 1
        assert "not found" in result.stderr.lower()

    def test_list_and_revoke(self, test_db_path):
        create_user(test_db_path)
        run_admin_command(
            test_db_path, "key", "create", "--email", "alice@example.com", "--name", "laptop"
        )

        result = run_admin_command(
            test_db_path, "key", "list", "--email", "alice@example.com", "--json"
        )
        [api_key] = json.loads(result.stdout)
        assert api_key["name"] == "laptop"
        assert api_key["is_active"] is True

        result = run_admin_command(test_db_path, "key", "revoke", api_key["id"])
        assert result.returncode == 0

        result = run_admin_command(test_db_path, "key", "list", "--json")
        assert json.loads(result.stdout)[0]["is_active"] is False

    def test_revoke_nonexistent_key(self, test_db_path):
        result = run_admin_command(test_db_path, "key", "revoke", "missing-key")

        assert result.returncode == 1


class TestProjectsAndRunners:
    """Test suite for project and runner commands."""

    def test_list_projects(self, test_db_path):
        user_id = create_user(test_db_path)

        async def add_project(repo):
            owner = await repo.get_user(user_id)
            assert isinstance(owner, User)
            return await repo.create_project(
                Project(
                    name="Shell",
                    gitlab_id=3,
                    path="gitlab-org/gitlab-shell",
                    ssh_url_to_repo="git@gitlab.com:gitlab-org/gitlab-shell.git",
                    owner_id=owner.id,
                )
            )

        query(test_db_path, add_project)

        result = run_admin_command(test_db_path, "project", "list")

        assert result.returncode == 0
        assert "gitlab-org/gitlab-shell" in result.stdout
        assert "Private" in result.stdout

    def test_no_projects(self, test_db_path):
        result = run_admin_command(test_db_path, "project", "list")

        assert result.returncode == 0
        assert "No projects found" in result.stdout

    def test_create_and_list_runners(self, test_db_path):
        result = run_admin_command(test_db_path, "runner", "create", "--description", "docker")

        assert result.returncode == 0
        token = re.search(r"Token: ([0-9a-f]{30})", result.stdout).group(1)

        result = run_admin_command(test_db_path, "runner", "list", "--json")
        [runner] = json.loads(result.stdout)
        assert runner["description"] == "docker"
        assert runner["active"] is True

        runners = query(test_db_path, lambda repo: repo.list_runners())
        assert runners[0].token == token
