"""
Commit ingestion, retry and cancel operations.

These are the units of work behind the push, retry and cancel endpoints.
Each one reads and writes through a CiRepository and leaves HTTP concerns
to the caller.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from ci_common.commit_status import builds_without_retry
from ci_common.config_processor import CiConfigProcessor
from ci_common.models import Build, Commit, Project, PushData
from ci_common.repository import CiRepository

logger = logging.getLogger(__name__)

CI_SKIP_MARKER = "[ci skip]"


@dataclass
class CommitResult:
    """
    Outcome of a push ingestion.

    Falsy when no commit was created; `reason` then tells why
    ("ci_skip", "skipped_ref" or "no_builds").
    """

    created: bool
    commit: Commit | None = None
    builds: list[Build] = field(default_factory=list)
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.created


def short_ref(origin_ref: str) -> str:
    return re.sub(r"\Arefs/(tags|heads)/", "", origin_ref)


class CreateCommitService:
    """
    Turns a push event into a commit and its builds.

    Ordinary jobs are selected by the kind of ref pushed. Deploy jobs are a
    fallback considered only when no ordinary job applies. A push that would
    produce no builds creates no commit.
    """

    def __init__(self, repository: CiRepository):
        self.repository = repository

    @staticmethod
    def ci_skip(commits: list[dict[str, Any]] | None) -> bool:
        return any(CI_SKIP_MARKER in (c.get("message") or "") for c in commits or [])

    async def execute(self, project: Project, params: dict[str, Any]) -> CommitResult:
        """
        Ingest a push event for a project.

        Args:
            project: Project the push belongs to
            params: Push payload with ref, before, after (or checkout_sha),
                commits, ci_yaml_file and optional user/repository info

        Returns:
            CommitResult, truthy when a commit was persisted

        Raises:
            CiConfigError: If the CI configuration cannot be parsed
            ValidationError: If the commit is missing ref/SHAs or deletes a branch
        """
        if self.ci_skip(params.get("commits")):
            logger.info(f"Project {project.id}: push skipped by {CI_SKIP_MARKER} marker")
            return CommitResult(False, reason="ci_skip")

        config_processor = CiConfigProcessor(params.get("ci_yaml_file"))

        origin_ref = params.get("ref") or ""
        tag = origin_ref.startswith("refs/tags/")
        ref = short_ref(origin_ref)
        sha = params.get("checkout_sha") or params.get("after")

        if config_processor.skip_ref(ref):
            logger.info(f"Project {project.id}: ref {ref} matches skip_refs")
            return CommitResult(False, reason="skipped_ref")

        push_data = PushData.from_dict(
            {
                "before": params.get("before"),
                "after": sha,
                "ref": ref,
                "user_name": params.get("user_name"),
                "user_email": params.get("user_email"),
                "repository": params.get("repository"),
                "commits": params.get("commits"),
                "total_commits_count": params.get("total_commits_count"),
                "ci_yaml_file": params.get("ci_yaml_file"),
            }
        )
        commit = Commit(
            project_id=project.id,
            ref=ref,
            sha=sha,
            before_sha=params.get("before"),
            tag=tag,
            push_data=push_data,
        )

        builds = [
            Build(
                project_id=project.id,
                commit_id=0,
                name=spec.name,
                commands=spec.commands,
                tag_list=spec.tag_list,
            )
            for spec in config_processor.builds_for_ref(tag)
        ]

        if not builds:
            builds = [
                Build(
                    project_id=project.id,
                    commit_id=0,
                    name=spec.name,
                    commands=spec.commands,
                    deploy=True,
                )
                for spec in config_processor.deploy_builds_for_ref(ref)
            ]

        if not builds:
            logger.info(f"Project {project.id}: no job matches {origin_ref}, commit not created")
            return CommitResult(False, reason="no_builds")

        commit.validate()

        commit, builds = await self.repository.create_commit_with_builds(commit, builds)
        logger.info(
            f"Project {project.id}: created commit {commit.short_sha} on {ref} "
            f"with {len(builds)} build(s)"
        )
        return CommitResult(True, commit=commit, builds=builds)


async def retry_commit(repository: CiRepository, commit: Commit) -> list[Build]:
    """
    Re-run every current build of a commit.

    Each member of builds_without_retry is cloned into a new pending build;
    the previous attempts stay in place as history.

    Returns:
        The newly created builds
    """
    builds = await repository.list_builds(commit.id)
    retries = [Build.retry(build) for build in builds_without_retry(builds)]
    retries = await repository.create_builds(retries)
    logger.info(f"Commit {commit.id}: retried {len(retries)} build(s)")
    return retries


async def cancel_build(repository: CiRepository, build: Build) -> Build:
    """
    Cancel a pending or running build.

    Raises:
        ValueError: If the build already finished
    """
    build.cancel()
    await repository.update_build(build)
    logger.info(f"Build {build.id} canceled")
    return build
