"""
Unit tests for ci_server.services.

Covers push ingestion (CreateCommitService), commit retry and build cancel
against a real temporary database, plus isolated checks with a mocked
repository.
"""

from unittest.mock import AsyncMock

import pytest
import yaml

from ci_common import commit_status
from ci_common.config_processor import CiConfigError
from ci_common.models import BLANK_SHA, ValidationError
from ci_server.services import CommitResult, CreateCommitService, cancel_build, retry_commit, short_ref


def push(ref="refs/heads/master", config=None, **params):
    event = {"ref": ref, "before": "00000000", "after": "31das312", "ci_yaml_file": config}
    event.update(params)
    return event


@pytest.fixture
def service(temp_db):
    return CreateCommitService(temp_db)


class TestExecute:
    """Test suite for CreateCommitService.execute with valid params."""

    @pytest.mark.asyncio
    async def test_creates_commit_and_builds(self, service, temp_db, project, gitlab_ci_yaml):
        result = await service.execute(project, push(config=gitlab_ci_yaml))

        assert result
        assert result.commit.id is not None
        assert result.commit.ref == "master"
        assert result.commit.tag is False
        assert [b.name for b in result.builds] == ["Rspec", "Spinach"]

        [persisted] = await temp_db.list_commits(project.id)
        assert persisted.id == result.commit.id
        builds = await temp_db.list_builds(persisted.id)
        assert [b.name for b in builds] == ["Rspec", "Spinach"]
        assert all(b.status == "pending" for b in builds)
        assert builds[0].tag_list == ["mysql", "ruby"]

    @pytest.mark.asyncio
    async def test_push_payload_is_stored(self, service, temp_db, project, gitlab_ci_yaml):
        commits = [
            {"id": "31das312", "message": "Fix", "author": {"name": "Jane", "email": "j@x.io"}}
        ]
        result = await service.execute(
            project,
            push(config=gitlab_ci_yaml, commits=commits, user_email="pusher@x.io"),
        )

        commit = await temp_db.get_commit(result.commit.id)
        assert commit.push_data.ci_yaml_file == gitlab_ci_yaml
        assert commit.push_data.user_email == "pusher@x.io"
        assert commit.git_author_name == "Jane"

    @pytest.mark.asyncio
    async def test_checkout_sha_wins_over_after(self, service, project, gitlab_ci_yaml):
        result = await service.execute(
            project, push(config=gitlab_ci_yaml, checkout_sha="deadbeef")
        )
        assert result.commit.sha == "deadbeef"

    def test_short_ref(self):
        assert short_ref("refs/heads/feature/x") == "feature/x"
        assert short_ref("refs/tags/v1.0") == "v1.0"
        assert short_ref("master") == "master"


class TestDeployBuilds:
    """Test suite for the deploy build fallback."""

    @pytest.mark.asyncio
    async def test_deploy_builds_when_no_ordinary_build(self, service, project):
        config = yaml.dump({"jobs": [], "deploy_jobs": ["ls"]})

        result = await service.execute(project, push(config=config))

        assert result
        assert [(b.name, b.deploy) for b in result.builds] == [("ls", True)]

    @pytest.mark.asyncio
    async def test_no_deploy_builds_when_ordinary_build_exists(self, service, project):
        config = yaml.dump({"jobs": ["ls"], "deploy_jobs": ["cap deploy"]})

        result = await service.execute(project, push(config=config))

        assert [(b.name, b.deploy) for b in result.builds] == [("ls", False)]

    @pytest.mark.asyncio
    async def test_deploy_job_with_matching_ref(self, service, project):
        config = yaml.dump({"deploy_jobs": [{"script": "ls", "refs": "0_1"}]})

        result = await service.execute(project, push(ref="refs/heads/0_1", config=config))

        assert result
        assert len(result.builds) == 1
        assert result.builds[0].deploy

    @pytest.mark.asyncio
    async def test_deploy_job_with_other_ref(self, service, temp_db, project):
        config = yaml.dump({"deploy_jobs": [{"script": "ls", "refs": "production"}]})

        result = await service.execute(project, push(config=config))

        assert not result
        assert result.reason == "no_builds"
        assert await temp_db.list_commits(project.id) == []


class TestTags:
    """Test suite for tag pushes."""

    @pytest.mark.asyncio
    async def test_creates_commit_if_job_runs_for_tags(self, service, project, gitlab_ci_yaml):
        result = await service.execute(project, push(ref="refs/tags/0_1", config=gitlab_ci_yaml))

        assert result
        assert result.commit.tag is True
        assert result.commit.ref == "0_1"
        assert [b.name for b in result.builds] == ["Rspec", "rake lint"]

    @pytest.mark.asyncio
    async def test_no_commit_without_job_or_deploy_job(self, service, temp_db, project):
        result = await service.execute(project, push(ref="refs/tags/0_1", config=yaml.dump({})))

        assert result == CommitResult(False, reason="no_builds")
        assert not result
        assert await temp_db.list_commits(project.id) == []

    @pytest.mark.asyncio
    async def test_branch_only_job_skips_tag(self, service, project):
        config = yaml.dump({"jobs": [{"script": "ls", "tags": False}]})

        result = await service.execute(project, push(ref="refs/tags/v1", config=config))

        assert not result

    @pytest.mark.parametrize("ref", ["refs/heads/master", "refs/tags/v1", "refs/heads/0_1"])
    @pytest.mark.asyncio
    async def test_empty_config_never_creates_commit(self, service, temp_db, project, ref):
        result = await service.execute(project, push(ref=ref, config=yaml.dump({"jobs": []})))

        assert not result
        assert await temp_db.list_commits(project.id) == []


class TestCiSkip:
    """Test suite for the [ci skip] marker."""

    @pytest.mark.asyncio
    async def test_skips_commit_creation(self, service, temp_db, project, gitlab_ci_yaml):
        commits = [{"message": "some message[ci skip]"}]

        result = await service.execute(
            project, push(ref="refs/tags/0_1", config=gitlab_ci_yaml, commits=commits)
        )

        assert not result
        assert result.reason == "ci_skip"
        assert await temp_db.list_commits(project.id) == []

    @pytest.mark.asyncio
    async def test_marker_in_any_commit(self, service, project, gitlab_ci_yaml):
        commits = [{"message": "wip [ci skip]"}, {"message": "final"}]

        result = await service.execute(project, push(config=gitlab_ci_yaml, commits=commits))

        assert result.reason == "ci_skip"

    @pytest.mark.asyncio
    async def test_does_not_skip_without_marker(self, service, project, gitlab_ci_yaml):
        commits = [{"message": "some message"}]

        result = await service.execute(
            project, push(ref="refs/tags/0_1", config=gitlab_ci_yaml, commits=commits)
        )

        assert result
        assert result.commit.id is not None

    @pytest.mark.asyncio
    async def test_skip_checked_before_config(self, service, project):
        """A skipped push never parses its configuration."""
        result = await service.execute(
            project, push(config="jobs: [broken", commits=[{"message": "[ci skip]"}])
        )
        assert result.reason == "ci_skip"


class TestFailures:
    """Test suite for invalid pushes."""

    @pytest.mark.asyncio
    async def test_branch_removal_is_rejected(self, service, temp_db, project, gitlab_ci_yaml):
        with pytest.raises(ValidationError) as exc_info:
            await service.execute(project, push(config=gitlab_ci_yaml, after=BLANK_SHA))

        assert "sha" in exc_info.value.errors
        assert await temp_db.list_commits(project.id) == []

    @pytest.mark.asyncio
    async def test_missing_before_sha(self, service, temp_db, project, gitlab_ci_yaml):
        with pytest.raises(ValidationError) as exc_info:
            await service.execute(project, push(config=gitlab_ci_yaml, before=None))

        assert "before_sha" in exc_info.value.errors
        assert await temp_db.list_commits(project.id) == []

    @pytest.mark.asyncio
    async def test_broken_config(self, service, temp_db, project):
        with pytest.raises(CiConfigError):
            await service.execute(project, push(config="jobs: [broken"))

        assert await temp_db.list_commits(project.id) == []

    @pytest.mark.asyncio
    async def test_skip_refs(self, service, temp_db, project):
        config = yaml.dump({"skip_refs": "feature/*", "jobs": ["ls"]})

        result = await service.execute(project, push(ref="refs/heads/feature/a", config=config))

        assert result.reason == "skipped_ref"
        assert await temp_db.list_commits(project.id) == []


class TestWithMockRepository:
    """Isolated checks of what the service asks the repository to do."""

    @pytest.fixture
    def mock_repository(self):
        repo = AsyncMock()
        repo.create_commit_with_builds = AsyncMock(
            side_effect=lambda commit, builds: (commit, builds)
        )
        return repo

    @pytest.mark.asyncio
    async def test_no_write_on_skip(self, mock_repository, project, gitlab_ci_yaml):
        service = CreateCommitService(mock_repository)

        await service.execute(
            project, push(config=gitlab_ci_yaml, commits=[{"message": "[ci skip]"}])
        )

        mock_repository.create_commit_with_builds.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_single_write_for_commit_and_builds(self, mock_repository, project):
        service = CreateCommitService(mock_repository)
        config = yaml.dump({"before_script": ["bundle"], "jobs": ["rake", "lint"]})

        await service.execute(project, push(config=config))

        mock_repository.create_commit_with_builds.assert_awaited_once()
        commit, builds = mock_repository.create_commit_with_builds.await_args.args
        assert commit.sha == "31das312"
        assert [b.commands for b in builds] == ["bundle\nrake", "bundle\nlint"]


class TestRetry:
    """Test suite for retry_commit."""

    @pytest.mark.asyncio
    async def test_retry_clones_current_builds(self, service, temp_db, project, gitlab_ci_yaml):
        result = await service.execute(project, push(config=gitlab_ci_yaml))
        originals = await temp_db.list_builds(result.commit.id)
        for build in originals:
            build.run()
            build.drop()
            await temp_db.update_build(build)

        retries = await retry_commit(temp_db, result.commit)

        assert len(retries) == len(originals)
        assert [r.name for r in retries] == [b.name for b in originals]
        assert all(r.status == "pending" for r in retries)

        builds = await temp_db.list_builds(result.commit.id)
        assert len(builds) == 2 * len(originals)
        current = commit_status.builds_without_retry(builds)
        assert {b.id for b in current} == {r.id for r in retries}
        assert commit_status.commit_status(builds) == "pending"

        unchanged = {b.id: b for b in builds}
        for original in originals:
            assert unchanged[original.id].status == "failed"

    @pytest.mark.asyncio
    async def test_retry_twice_only_clones_latest(self, service, temp_db, project):
        result = await service.execute(project, push(config=yaml.dump({"jobs": ["ls"]})))

        await retry_commit(temp_db, result.commit)
        await retry_commit(temp_db, result.commit)

        builds = await temp_db.list_builds(result.commit.id)
        assert len(builds) == 3
        assert len(commit_status.builds_without_retry(builds)) == 1


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending_build(self, service, temp_db, project):
        result = await service.execute(project, push(config=yaml.dump({"jobs": ["ls"]})))
        [build] = result.builds

        await cancel_build(temp_db, build)

        stored = await temp_db.get_build(build.id)
        assert stored.status == "canceled"
        assert stored.finished_at is not None

    @pytest.mark.asyncio
    async def test_cancel_finished_build(self, service, temp_db, project):
        result = await service.execute(project, push(config=yaml.dump({"jobs": ["ls"]})))
        [build] = result.builds
        build.run()
        build.succeed()
        await temp_db.update_build(build)

        with pytest.raises(ValueError):
            await cancel_build(temp_db, build)

        assert (await temp_db.get_build(build.id)).status == "success"
