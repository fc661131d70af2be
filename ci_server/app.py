import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Response
from pydantic import BaseModel

from ci_common import commit_status
from ci_common.config_processor import CiConfigError
from ci_common.models import (
    Build,
    Commit,
    Project,
    RunnerProject,
    User,
    ValidationError,
    WebHook,
)
from ci_common.repository import CiRepository
from ci_persistence.sqlite_repository import SQLiteCiRepository

from .auth import create_get_current_user_dependency, generate_token
from .services import CreateCommitService, cancel_build, retry_commit

logger = logging.getLogger(__name__)

# Global instance (initialized at startup)
repository: CiRepository | None = None


def get_database_path() -> str:
    """
    Get the database path from environment or use default.

    Environment variables:
    - CI_DB_PATH: Custom database path (useful for testing)
    """
    return os.environ.get("CI_DB_PATH", "ci_jobs.db")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI app.

    - Startup: Connect to the database and create missing tables
    - Shutdown: Close database connections
    """
    global repository

    db_path = get_database_path()
    repository = SQLiteCiRepository(db_path)
    await repository.initialize()
    logger.info(f"Connected to database {db_path}")

    yield

    if repository:
        await repository.close()
        logger.info("Database connection closed")


app = FastAPI(lifespan=lifespan)


def get_repository() -> CiRepository:
    """
    Get the global repository instance.

    Raises:
        RuntimeError: If repository is not initialized
    """
    if repository is None:
        raise RuntimeError("Repository not initialized")
    return repository


# Create authentication dependency
get_current_user = create_get_current_user_dependency(get_repository)


class ProjectParams(BaseModel):
    name: str | None = None
    gitlab_id: int | None = None
    path: str | None = None
    # accepted instead of path for backward compatibility
    gitlab_url: str | None = None
    ssh_url_to_repo: str | None = None
    default_ref: str | None = None
    public: bool | None = None
    coverage_regex: str | None = None
    email_recipients: str | None = None
    email_add_pusher: bool | None = None


class WebHookParams(BaseModel):
    web_hook: str | None = None


class PushAuthorParams(BaseModel):
    name: str | None = None
    email: str | None = None


class PushCommitParams(BaseModel):
    id: str | None = None
    message: str | None = None
    timestamp: str | None = None
    url: str | None = None
    author: PushAuthorParams | None = None


class PushParams(BaseModel):
    """Push event body; wrongly typed fields are rejected with 422."""

    ref: str | None = None
    before: str | None = None
    after: str | None = None
    checkout_sha: str | None = None
    user_name: str | None = None
    user_email: str | None = None
    repository: dict[str, Any] | None = None
    commits: list[PushCommitParams] | None = None
    total_commits_count: int | None = None
    ci_yaml_file: str | None = None


async def find_project(project_id: int, repo: CiRepository) -> Project:
    project = await repo.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def authorize_access(project: Project, user: User) -> None:
    if not project.can_access(user):
        raise HTTPException(status_code=403, detail="Access denied")


def authorize_manage(project: Project, user: User) -> None:
    if not project.can_manage(user):
        raise HTTPException(status_code=403, detail="Access denied")


async def find_commit(project: Project, sha: str, repo: CiRepository) -> Commit:
    commit = await repo.get_commit_by_sha(project.id, sha)
    if commit is None:
        raise HTTPException(status_code=404, detail="Commit not found")
    return commit


async def find_build(build_id: int, repo: CiRepository) -> tuple[Build, Project]:
    build = await repo.get_build(build_id)
    if build is None:
        raise HTTPException(status_code=404, detail="Build not found")
    return build, await find_project(build.project_id, repo)


def present_commit(commit: Commit, builds: list[Build], project: Project) -> dict[str, Any]:
    """Commit with its build state recomputed from the current builds."""
    finished_at = commit_status.finished_at(builds)
    result = commit.to_dict()
    result.update(
        {
            "status": commit_status.commit_status(builds),
            "duration": commit_status.duration(builds),
            "finished_at": finished_at.isoformat() if finished_at else None,
            "matrix": commit_status.is_matrix(builds),
            "coverage": commit_status.coverage(project, builds),
            "builds": [b.to_dict() for b in commit_status.builds_without_retry(builds)],
            "retried_build_ids": [b.id for b in commit_status.retried_builds(builds)],
            "recipients": commit.project_recipients(project),
        }
    )
    return result


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint (no authentication required)."""
    return {"status": "ok"}


# ============================================================================
# Projects
# ============================================================================


@app.get("/projects")
async def list_projects(
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> list[dict[str, Any]]:
    """List the projects the authenticated user can access."""
    projects = await repo.list_projects()
    return [p.to_dict() for p in projects if p.can_access(user)]


@app.get("/projects/owned")
async def list_owned_projects(
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> list[dict[str, Any]]:
    """List the projects the authenticated user owns."""
    projects = await repo.list_projects()
    return [p.to_dict() for p in projects if p.can_manage(user)]


@app.get("/projects/{project_id}")
async def get_project(
    project_id: int,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Get a project by ID.

    Raises:
        HTTPException: 404 if not found, 403 if the project is private and
            not owned by the user
    """
    project = await find_project(project_id, repo)
    authorize_access(project, user)
    return project.to_dict()


@app.post("/projects", status_code=201)
async def create_project(
    params: ProjectParams,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Create a project owned by the authenticated user.

    Requires name, gitlab_id, ssh_url_to_repo and either path or gitlab_url.
    default_ref defaults to "master".

    Raises:
        HTTPException: 400 if a required attribute is missing
    """
    path = params.path
    if not path and params.gitlab_url:
        path = Project.path_from_url(params.gitlab_url)

    project = Project(
        name=params.name,
        gitlab_id=params.gitlab_id,
        path=path,
        ssh_url_to_repo=params.ssh_url_to_repo,
        default_ref=params.default_ref or "master",
        token=generate_token(),
        owner_id=user.id,
        public=bool(params.public),
        coverage_regex=params.coverage_regex,
        email_recipients=params.email_recipients or "",
        email_add_pusher=params.email_add_pusher is not False,
    )

    try:
        project.validate()
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.full_messages())

    project = await repo.create_project(project)
    logger.info(f"Project {project.id} ({project.path}) created by {user.email}")
    return project.to_dict()


@app.put("/projects/{project_id}")
async def update_project(
    project_id: int,
    params: ProjectParams,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Update the attributes given in the body; omitted attributes keep their value.

    Raises:
        HTTPException: 403 unless owner, 400 if the result fails validation
    """
    project = await find_project(project_id, repo)
    authorize_manage(project, user)

    attrs = params.model_dump(exclude_unset=True)
    gitlab_url = attrs.pop("gitlab_url", None)
    if gitlab_url and not attrs.get("path"):
        attrs["path"] = Project.path_from_url(gitlab_url)

    for name, value in attrs.items():
        setattr(project, name, value)

    try:
        project.validate()
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.full_messages())

    await repo.update_project(project)
    return project.to_dict()


@app.delete("/projects/{project_id}")
async def delete_project(
    project_id: int,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> dict[str, Any]:
    """Delete a project with its commits, builds, webhooks and runner links."""
    project = await find_project(project_id, repo)
    authorize_manage(project, user)

    await repo.delete_project(project.id)
    logger.info(f"Project {project.id} deleted by {user.email}")
    return project.to_dict()


@app.post("/projects/{project_id}/webhooks", status_code=201)
async def create_web_hook(
    project_id: int,
    params: WebHookParams,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Register a URL notified about the project's build results.

    Raises:
        HTTPException: 400 if web_hook is not an http(s) URL
    """
    project = await find_project(project_id, repo)
    authorize_manage(project, user)

    web_hook = WebHook(project_id=project.id, url=params.web_hook)
    try:
        web_hook.validate()
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.full_messages())

    web_hook = await repo.create_web_hook(web_hook)
    return web_hook.to_dict()


@app.get("/projects/{project_id}/webhooks")
async def list_web_hooks(
    project_id: int,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> list[dict[str, Any]]:
    """List the project's webhooks (owner only)."""
    project = await find_project(project_id, repo)
    authorize_manage(project, user)
    return [hook.to_dict() for hook in await repo.list_web_hooks(project.id)]


# ============================================================================
# Runners
# ============================================================================


@app.get("/projects/{project_id}/runners")
async def list_project_runners(
    project_id: int,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> list[dict[str, Any]]:
    """List the runners linked to a project (owner only)."""
    project = await find_project(project_id, repo)
    authorize_manage(project, user)
    return [runner.to_dict() for runner in await repo.list_project_runners(project.id)]


@app.post("/projects/{project_id}/runners/{runner_id}", status_code=201)
async def link_runner(
    project_id: int,
    runner_id: int,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Allow a runner to pick up the project's builds.

    Raises:
        HTTPException: 404 if the project or runner does not exist,
            400 if the runner is already linked
    """
    project = await find_project(project_id, repo)
    runner = await repo.get_runner(runner_id)
    if runner is None:
        raise HTTPException(status_code=404, detail="Runner not found")

    authorize_manage(project, user)

    if await repo.get_runner_project(runner.id, project.id):
        raise HTTPException(status_code=400, detail="Runner is already linked to this project")

    runner_project = await repo.create_runner_project(
        RunnerProject(runner_id=runner.id, project_id=project.id)
    )
    return runner_project.to_dict()


@app.delete("/projects/{project_id}/runners/{runner_id}")
async def unlink_runner(
    project_id: int,
    runner_id: int,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Remove a runner from a project.

    Raises:
        HTTPException: 404 if the runner is not linked to the project
    """
    project = await find_project(project_id, repo)
    runner = await repo.get_runner(runner_id)
    if runner is None:
        raise HTTPException(status_code=404, detail="Runner not found")

    authorize_manage(project, user)

    runner_project = await repo.get_runner_project(runner.id, project.id)
    if runner_project is None:
        raise HTTPException(status_code=404, detail="Runner is not linked to this project")

    await repo.delete_runner_project(runner_project.id)
    return runner_project.to_dict()


# ============================================================================
# Commits and builds
# ============================================================================


@app.post("/projects/{project_id}/commits")
async def push_commit(
    project_id: int,
    response: Response,
    params: PushParams,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Ingest a push event.

    The payload carries ref, before, after, commits (each with a message)
    and ci_yaml_file.

    Returns:
        201 with the created commit, or 200 with {"created": false, "reason": ...}
        when the push was skipped or no job applies to the ref

    Raises:
        HTTPException: 400 on validation errors, 422 on an unreadable CI config
            (FastAPI also answers 422 when a field of the body has the wrong type)
    """
    project = await find_project(project_id, repo)
    authorize_manage(project, user)

    try:
        result = await CreateCommitService(repo).execute(project, params.model_dump())
    except CiConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.full_messages())

    if not result:
        return {"created": False, "reason": result.reason}

    response.status_code = 201
    commit = present_commit(result.commit, result.builds, project)
    commit["created"] = True
    return commit


@app.get("/projects/{project_id}/commits")
async def list_commits(
    project_id: int,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> list[dict[str, Any]]:
    """List a project's commits, newest first, with their aggregated status."""
    project = await find_project(project_id, repo)
    authorize_access(project, user)

    commits = []
    for commit in await repo.list_commits(project.id):
        builds = await repo.list_builds(commit.id)
        commits.append(present_commit(commit, builds, project))
    return commits


@app.get("/projects/{project_id}/commits/{sha}")
async def get_commit(
    project_id: int,
    sha: str,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Get the newest commit with this SHA.

    Status, duration and coverage are recomputed from the current builds;
    superseded attempts are reported in retried_build_ids.
    """
    project = await find_project(project_id, repo)
    authorize_access(project, user)

    commit = await find_commit(project, sha, repo)
    builds = await repo.list_builds(commit.id)
    return present_commit(commit, builds, project)


@app.post("/projects/{project_id}/commits/{sha}/retry", status_code=201)
async def retry_commit_builds(
    project_id: int,
    sha: str,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> dict[str, Any]:
    """Re-run every current build of a commit and return the refreshed commit."""
    project = await find_project(project_id, repo)
    authorize_manage(project, user)

    commit = await find_commit(project, sha, repo)
    await retry_commit(repo, commit)
    builds = await repo.list_builds(commit.id)
    return present_commit(commit, builds, project)


@app.delete("/projects/{project_id}/commits/{sha}")
async def delete_commit(
    project_id: int,
    sha: str,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> dict[str, Any]:
    """Delete a commit and all of its builds."""
    project = await find_project(project_id, repo)
    authorize_manage(project, user)

    commit = await find_commit(project, sha, repo)
    await repo.delete_commit(commit.id)
    return commit.to_dict()


@app.get("/builds/{build_id}")
async def get_build(
    build_id: int,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> dict[str, Any]:
    """Get a single build, including its duration."""
    build, project = await find_build(build_id, repo)
    authorize_access(project, user)
    return build.to_dict()


@app.post("/builds/{build_id}/cancel")
async def cancel(
    build_id: int,
    user: User = Depends(get_current_user),
    repo: CiRepository = Depends(get_repository),
) -> dict[str, Any]:
    """
    Cancel a pending or running build.

    Raises:
        HTTPException: 400 if the build has already finished
    """
    build, project = await find_build(build_id, repo)
    authorize_manage(project, user)

    try:
        build = await cancel_build(repo, build)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return build.to_dict()
