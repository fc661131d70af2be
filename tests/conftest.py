"""Shared fixtures: a throwaway SQLite database and a CI configuration."""

import os
import tempfile
from datetime import UTC, datetime

import pytest

from ci_common.models import Project, User
from ci_persistence.sqlite_repository import SQLiteCiRepository

GITLAB_CI_YAML = """
before_script:
  - ruby -v
  - which ruby
  - bundle install

jobs:
  - script: "rake spec"
    name: "Rspec"
    runner: "mysql,ruby"
  - script: "rake spinach"
    name: "Spinach"
    runner: "ruby"
    tags: false
  - script: "rake lint"
    branches: false

deploy_jobs:
  - "cap deploy production"
  - script: "cap deploy staging"
    name: "staging"
    refs: "staging"
"""


@pytest.fixture
def gitlab_ci_yaml():
    return GITLAB_CI_YAML


@pytest.fixture
async def temp_db():
    """Create a temporary, initialized database for a test."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    repo = SQLiteCiRepository(path)
    await repo.initialize()

    yield repo

    await repo.close()
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
async def owner(temp_db):
    user = User(
        id="user-1",
        name="Alice",
        email="alice@example.com",
        created_at=datetime.now(UTC),
    )
    await temp_db.create_user(user)
    return user


@pytest.fixture
async def project(temp_db, owner):
    return await temp_db.create_project(
        Project(
            name="GitLab Shell",
            gitlab_id=3,
            path="gitlab-org/gitlab-shell",
            ssh_url_to_repo="git@gitlab.com:gitlab-org/gitlab-shell.git",
            token="secret-token",
            owner_id=owner.id,
            coverage_regex=r"\d+\.\d+%",
            email_recipients="ops@example.com",
        )
    )
