import argparse
import json
import os
import sys
from datetime import datetime
from pathlib import Path

from ci_common.models import BLANK_SHA

from .client import (
    build_push_event,
    cancel_build,
    get_commit,
    git_commit_message,
    list_commits,
    push_commit,
    read_ci_config,
    retry_commit,
)


def get_server_url() -> str:
    """
    Get the CI server URL from environment variable or use default.

    Environment variables:
    - CI_SERVER_URL: Custom server URL (useful for testing with different ports)
    """
    return os.environ.get("CI_SERVER_URL", "http://localhost:8000")


def get_api_key(cli_arg: str | None = None) -> str | None:
    """
    Get API key from multiple sources in priority order.

    Priority (highest to lowest):
    1. Command line argument (--api-key)
    2. Environment variable (CI_API_KEY)
    3. Config file (~/.ci/config)

    Config file format (~/.ci/config):
        api_key=ci_abc123...
    """
    if cli_arg:
        return cli_arg

    env_key = os.environ.get("CI_API_KEY")
    if env_key:
        return env_key

    config_path = Path.home() / ".ci" / "config"
    if config_path.exists():
        try:
            for line in config_path.read_text().splitlines():
                line = line.strip()
                if line.startswith("api_key="):
                    return line[8:].strip()
        except OSError:
            pass  # Silently ignore config file read errors

    return None


def report_error(error: Exception) -> None:
    """Print an error, with a hint about credentials for auth failures, and exit."""
    print(f"Error: {error}", file=sys.stderr)
    error_msg = str(error).lower()
    if any(s in error_msg for s in ("401", "403", "unauthorized", "forbidden")):
        print("\nAuthentication required. Please provide an API key using one of:", file=sys.stderr)
        print("  1. Command line flag: --api-key <key>", file=sys.stderr)
        print("  2. Environment variable: CI_API_KEY=<key>", file=sys.stderr)
        print("  3. Config file: ~/.ci/config (format: api_key=<key>)", file=sys.stderr)
    sys.exit(1)


def format_time(time_str: str | None) -> str:
    """Format ISO timestamp to human-readable format."""
    if not time_str:
        return "N/A"
    try:
        dt = datetime.fromisoformat(time_str.replace("Z", "+00:00"))
        return dt.strftime("%Y-%m-%d %H:%M:%S")
    except (ValueError, AttributeError):
        return time_str


def print_commit(commit: dict) -> None:
    print(f"Commit {commit['sha']} on {commit['ref']}: {commit['status']}")
    print(f"  Duration: {commit['duration']}s  Finished: {format_time(commit.get('finished_at'))}")
    if commit.get("coverage") is not None:
        print(f"  Coverage: {commit['coverage']}%")
    print(f"\n{'BUILD':<8} {'NAME':<30} {'STATUS':<10}")
    print("-" * 50)
    for build in commit["builds"]:
        print(f"{build['id']:<8} {build['name']:<30} {build['status']:<10}")


def add_api_key_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--api-key",
        dest="api_key",
        help="API key for authentication (can also use CI_API_KEY env var or ~/.ci/config)",
    )


def main():
    """Main entry point for the CI CLI."""
    parser = argparse.ArgumentParser(description="CI System CLI")
    subparsers = parser.add_subparsers(dest="command")

    # ci push <project_id> --ref REF --after SHA [--before SHA] [--message MSG]...
    push_parser = subparsers.add_parser("push", help="Send a push event for a project")
    push_parser.add_argument("project_id", type=int, help="CI project ID")
    push_parser.add_argument("--ref", required=True, help="Full ref, e.g. refs/heads/master")
    push_parser.add_argument("--after", required=True, help="SHA the ref points to")
    push_parser.add_argument("--before", default=BLANK_SHA, help="SHA before the push")
    push_parser.add_argument(
        "--message",
        dest="messages",
        action="append",
        help="Commit message (repeatable; default: message of --after from git)",
    )
    push_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Directory holding .gitlab-ci.yml (default: current directory)",
    )
    add_api_key_argument(push_parser)

    # ci commits <project_id> [--json]
    commits_parser = subparsers.add_parser("commits", help="List commits of a project")
    commits_parser.add_argument("project_id", type=int, help="CI project ID")
    commits_parser.add_argument("--json", dest="json_mode", action="store_true")
    add_api_key_argument(commits_parser)

    # ci show <project_id> <sha> [--json]
    show_parser = subparsers.add_parser("show", help="Show a commit and its builds")
    show_parser.add_argument("project_id", type=int, help="CI project ID")
    show_parser.add_argument("sha", help="Commit SHA")
    show_parser.add_argument("--json", dest="json_mode", action="store_true")
    add_api_key_argument(show_parser)

    # ci retry <project_id> <sha>
    retry_parser = subparsers.add_parser("retry", help="Re-run the builds of a commit")
    retry_parser.add_argument("project_id", type=int, help="CI project ID")
    retry_parser.add_argument("sha", help="Commit SHA")
    add_api_key_argument(retry_parser)

    # ci cancel <build_id>
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a pending or running build")
    cancel_parser.add_argument("build_id", type=int, help="Build ID")
    add_api_key_argument(cancel_parser)

    args = parser.parse_args()

    server_url = get_server_url()
    api_key = get_api_key(getattr(args, "api_key", None))

    try:
        if args.command == "push":
            project_dir = args.config or Path.cwd()
            messages = args.messages or [git_commit_message(project_dir, args.after)]
            event = build_push_event(
                ref=args.ref,
                before=args.before,
                after=args.after,
                messages=messages,
                ci_yaml_file=read_ci_config(project_dir),
            )
            result = push_commit(args.project_id, event, server_url=server_url, api_key=api_key)
            if result.get("created"):
                print(f"Commit created with {len(result['builds'])} build(s)")
                print_commit(result)
            else:
                print(f"No commit created ({result.get('reason')})")
            sys.exit(0)

        elif args.command == "commits":
            commits = list_commits(args.project_id, server_url=server_url, api_key=api_key)

            if args.json_mode:
                print(json.dumps(commits, indent=2))
                sys.exit(0)

            if not commits:
                print("No commits found.")
                sys.exit(0)

            print(f"{'SHA':<10} {'REF':<25} {'STATUS':<10} {'DURATION':<10} {'FINISHED':<22}")
            print("-" * 80)
            for commit in commits:
                print(
                    f"{commit['short_sha']:<10} {commit['ref']:<25} {commit['status']:<10} "
                    f"{commit['duration']:<10} {format_time(commit.get('finished_at')):<22}"
                )
            sys.exit(0)

        elif args.command == "show":
            commit = get_commit(args.project_id, args.sha, server_url=server_url, api_key=api_key)
            if args.json_mode:
                print(json.dumps(commit, indent=2))
            else:
                print_commit(commit)
            sys.exit(0)

        elif args.command == "retry":
            commit = retry_commit(args.project_id, args.sha, server_url=server_url, api_key=api_key)
            print_commit(commit)
            sys.exit(0)

        elif args.command == "cancel":
            build = cancel_build(args.build_id, server_url=server_url, api_key=api_key)
            print(f"Build {build['id']} ({build['name']}): {build['status']}")
            sys.exit(0)
    except RuntimeError as e:
        report_error(e)

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
