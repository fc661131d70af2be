"""
Parser for the CI configuration document pushed alongside each commit.

The document is YAML with these top-level keys:

    before_script: [list of commands run before every job]
    skip_refs: "comma,separated,fnmatch,patterns"
    jobs:
      - "rake spec"                       # bare script
      - script: "rake spec"
        name: Specs
        runner: "ruby,postgres"           # tags a runner must carry
        branches: true                    # run for branch pushes
        tags: false                       # run for tag pushes
    deploy_jobs:
      - script: "cap deploy"
        refs: "master,production"         # empty means any ref

Ordinary jobs are filtered by the kind of ref pushed; deploy jobs by the
explicit ref list.
"""

from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Any

import yaml


class CiConfigError(Exception):
    """Raised when the CI configuration document cannot be understood."""


@dataclass
class BuildSpec:
    """An ordinary job, ready to become a build."""

    name: str
    commands: str
    tag_list: list[str] = field(default_factory=list)
    branches: bool = True
    tags: bool = True

    def matches(self, tag: bool) -> bool:
        return self.tags if tag else self.branches


@dataclass
class DeploySpec:
    """A deploy job, considered only when no ordinary job applies."""

    name: str
    commands: str
    refs: list[str] = field(default_factory=list)

    def matches(self, ref: str) -> bool:
        return not self.refs or ref in self.refs


def _split_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        items = [str(item) for item in value]
    else:
        items = str(value).split(",")
    return [item.strip() for item in items if item.strip()]


class CiConfigProcessor:
    """
    Normalizes a CI configuration document into build specifications.

    Args:
        config: YAML text; None or an empty document means no jobs

    Raises:
        CiConfigError: If the YAML is malformed or has the wrong shape
    """

    def __init__(self, config: str | None):
        try:
            data = yaml.safe_load(config) if config else None
        except yaml.YAMLError as e:
            raise CiConfigError(f"Invalid CI config YAML: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise CiConfigError("CI config should be a mapping of settings")

        before_script = data.get("before_script") or []
        if isinstance(before_script, str):
            before_script = [before_script]
        self.before_script = [str(line) for line in before_script]
        self.skip_refs = _split_list(data.get("skip_refs"))
        self._jobs = self._expect_list(data, "jobs")
        self._deploy_jobs = self._expect_list(data, "deploy_jobs")

    @staticmethod
    def _expect_list(data: dict[str, Any], key: str) -> list[Any]:
        value = data.get(key)
        if value is None:
            return []
        if not isinstance(value, list):
            raise CiConfigError(f"CI config '{key}' should be a list")
        return value

    @staticmethod
    def _normalize(job: Any, section: str) -> dict[str, Any]:
        if isinstance(job, str):
            job = {"script": job}
        if not isinstance(job, dict) or not job.get("script"):
            raise CiConfigError(f"Every entry of '{section}' needs a script")

        script = job["script"]
        if isinstance(script, list):
            script = "\n".join(str(line) for line in script)
        job = dict(job, script=str(script))
        job["name"] = str(job.get("name") or job["script"][:11].strip())
        return job

    def _commands(self, script: str) -> str:
        return "\n".join([*self.before_script, script])

    def builds(self) -> list[BuildSpec]:
        specs = []
        for job in self._jobs:
            job = self._normalize(job, "jobs")
            specs.append(
                BuildSpec(
                    name=job["name"],
                    commands=self._commands(job["script"]),
                    tag_list=_split_list(job.get("runner")),
                    branches=job.get("branches") is not False,
                    tags=job.get("tags") is not False,
                )
            )
        return specs

    def builds_for_ref(self, tag: bool) -> list[BuildSpec]:
        """Ordinary jobs that apply to a tag push (tag=True) or a branch push."""
        return [spec for spec in self.builds() if spec.matches(tag)]

    def deploy_builds(self) -> list[DeploySpec]:
        specs = []
        for job in self._deploy_jobs:
            job = self._normalize(job, "deploy_jobs")
            specs.append(
                DeploySpec(
                    name=job["name"],
                    commands=self._commands(job["script"]),
                    refs=_split_list(job.get("refs")),
                )
            )
        return specs

    def deploy_builds_for_ref(self, ref: str) -> list[DeploySpec]:
        return [spec for spec in self.deploy_builds() if spec.matches(ref)]

    def skip_ref(self, ref: str) -> bool:
        return any(fnmatch(ref, pattern) for pattern in self.skip_refs)
