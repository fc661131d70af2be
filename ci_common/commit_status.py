"""
Derived state of a commit, computed from its builds.

Builds change status out of band (runners report on their own schedule),
so nothing here is cached: every function folds over the build list it is
given. Builds with the same name form a retry chain in which only the most
recent attempt (highest id) counts.
"""

from datetime import datetime

from .models import Build, Project


def builds_without_retry(builds: list[Build]) -> list[Build]:
    """Latest build per name, in the order names first appear."""
    latest: dict[str, Build] = {}
    for build in builds:
        current = latest.get(build.name)
        if current is None or (build.id or 0) > (current.id or 0):
            latest[build.name] = build
    return list(latest.values())


def retried_builds(builds: list[Build]) -> list[Build]:
    """Builds superseded by a later attempt with the same name."""
    current = {id(build) for build in builds_without_retry(builds)}
    return [build for build in builds if id(build) not in current]


def last_build(builds: list[Build]) -> Build | None:
    return max(builds, key=lambda b: b.id or 0) if builds else None


def is_success(builds: list[Build]) -> bool:
    return all(b.status == "success" for b in builds_without_retry(builds))


def is_pending(builds: list[Build]) -> bool:
    return all(b.status == "pending" for b in builds_without_retry(builds))


def is_running(builds: list[Build]) -> bool:
    return any(b.status in ("running", "pending") for b in builds_without_retry(builds))


def is_canceled(builds: list[Build]) -> bool:
    return all(b.status == "canceled" for b in builds_without_retry(builds))


def commit_status(builds: list[Build]) -> str:
    """
    Overall status of a commit.

    Checked in order: success, pending, running, canceled; anything else is
    failed. "running" also covers a mix that still has pending builds.
    """
    if is_success(builds):
        return "success"
    elif is_pending(builds):
        return "pending"
    elif is_running(builds):
        return "running"
    elif is_canceled(builds):
        return "canceled"
    else:
        return "failed"


def is_failed(builds: list[Build]) -> bool:
    return commit_status(builds) == "failed"


def duration(builds: list[Build]) -> int:
    """Total seconds spent by current attempts that have started."""
    durations = [b.duration for b in builds_without_retry(builds)]
    return int(sum(d for d in durations if d is not None))


def finished_at(builds: list[Build]) -> datetime | None:
    """Latest finish time across every attempt, retries included."""
    times = [b.finished_at for b in builds if b.finished_at is not None]
    return max(times) if times else None


def is_matrix(builds: list[Build]) -> bool:
    return len(builds_without_retry(builds)) > 1


def coverage(project: Project, builds: list[Build]) -> float | None:
    """Coverage the newest build reported, as filled in by its runner from the trace."""
    if project.coverage_enabled and builds:
        return last_build(builds).coverage
    return None
