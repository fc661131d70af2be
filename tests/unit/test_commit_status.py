"""
Unit tests for ci_common.commit_status.

Covers retry chains (builds_without_retry) and how build statuses fold
into a commit status.
"""

from datetime import UTC, datetime, timedelta

import pytest

from ci_common import commit_status
from ci_common.models import Build, Project

T0 = datetime(2013, 10, 29, 9, 51, 28, tzinfo=UTC)


def build(build_id, name="rspec", status="success", started=None, finished=None, coverage=None):
    return Build(
        id=build_id,
        project_id=1,
        commit_id=1,
        name=name,
        commands="ls -a",
        status=status,
        started_at=started,
        finished_at=finished,
        coverage=coverage,
    )


def builds_with(*statuses):
    return [build(i + 1, name=f"job{i}", status=s) for i, s in enumerate(statuses)]


class TestBuildsWithoutRetry:
    """Test suite for retry chain resolution."""

    def test_latest_attempt_per_name(self):
        first = build(1, name="rspec", status="failed")
        other = build(2, name="lint")
        retry = build(3, name="rspec")

        current = commit_status.builds_without_retry([first, other, retry])

        assert current == [retry, other]
        assert commit_status.retried_builds([first, other, retry]) == [first]

    def test_order_of_input_does_not_matter(self):
        first = build(1, status="failed")
        retry = build(5)

        assert commit_status.builds_without_retry([retry, first]) == [retry]

    def test_last_build(self):
        builds = [build(3, name="a"), build(7, name="b"), build(5, name="c")]
        assert commit_status.last_build(builds).id == 7
        assert commit_status.last_build([]) is None


class TestCommitStatus:
    """Test suite for status aggregation."""

    @pytest.mark.parametrize(
        "statuses, expected",
        [
            (("success", "success"), "success"),
            (("pending", "pending"), "pending"),
            (("running", "success", "success"), "running"),
            (("pending", "success"), "running"),
            (("pending", "failed"), "running"),
            (("canceled", "canceled"), "canceled"),
            (("success", "failed"), "failed"),
            (("canceled", "success"), "failed"),
            (("failed", "canceled"), "failed"),
        ],
    )
    def test_status(self, statuses, expected):
        assert commit_status.commit_status(builds_with(*statuses)) == expected

    def test_no_builds_counts_as_success(self):
        """An empty build set satisfies the "all successful" check first."""
        assert commit_status.commit_status([]) == "success"

    def test_retried_failure_is_ignored(self):
        builds = [build(1, status="failed"), build(2, name="lint"), build(3)]

        assert commit_status.commit_status(builds) == "success"
        assert not commit_status.is_failed(builds)

    def test_failed_retry_fails_commit(self):
        builds = [build(1), build(2, status="failed")]

        assert commit_status.commit_status(builds) == "failed"
        assert commit_status.is_failed(builds)


class TestDerivedValues:
    """Test suite for duration, finish time, matrix and coverage."""

    def test_duration_sums_current_attempts(self):
        builds = [
            build(1, started=T0, finished=T0 + timedelta(seconds=100)),
            build(2, name="lint", started=T0, finished=T0 + timedelta(seconds=20)),
            build(3, started=T0, finished=T0 + timedelta(seconds=30)),
            build(4, name="deploy", status="pending"),
        ]

        assert commit_status.duration(builds) == 50

    def test_finished_at_includes_retried_builds(self):
        latest = T0 + timedelta(hours=1)
        builds = [
            build(1, started=T0, finished=latest),
            build(2, started=T0, finished=T0 + timedelta(minutes=2)),
        ]

        assert commit_status.finished_at(builds) == latest

    def test_finished_at_without_finished_builds(self):
        assert commit_status.finished_at([build(1, status="pending")]) is None

    def test_matrix(self):
        assert not commit_status.is_matrix([build(1), build(2)])
        assert commit_status.is_matrix([build(1), build(2, name="lint")])

    def test_coverage(self):
        project = Project(
            name="p", gitlab_id=1, path="a/p", ssh_url_to_repo="git@x:a/p.git",
            coverage_regex=r"\d+%",
        )
        builds = [build(1, coverage=80.0), build(2, name="lint", coverage=90.0)]

        assert commit_status.coverage(project, builds) == 90.0
        assert commit_status.coverage(project, []) is None

        project.coverage_regex = None
        assert commit_status.coverage(project, builds) is None
