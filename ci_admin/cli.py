"""
Admin CLI for managing the CI coordinator.

Provides commands for users, API keys, projects and runners.
"""

import asyncio
import json
import os
import re
import sys
import uuid
from datetime import UTC, datetime
from pathlib import Path

import click

from ci_common.models import APIKey, Runner, User
from ci_persistence.sqlite_repository import SQLiteCiRepository
from ci_server.auth import generate_api_key, generate_token, hash_api_key


def get_db_path() -> str:
    """Get the database path from environment variable or default."""
    return os.environ.get("CI_DB_PATH", str(Path.home() / ".ci" / "jobs.db"))


def get_repository() -> SQLiteCiRepository:
    return SQLiteCiRepository(get_db_path())


def validate_email(email: str) -> bool:
    pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
    return re.match(pattern, email) is not None


def run_with_repository(action):
    """Open the repository, run an async action against it, always close it."""

    async def run():
        repo = get_repository()
        await repo.initialize()
        try:
            await action(repo)
        finally:
            await repo.close()

    asyncio.run(run())


def fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
def cli():
    """CI Admin - Manage users, API keys, projects and runners."""
    pass


@cli.group()
def user():
    """Manage users."""
    pass


@cli.group()
def key():
    """Manage API keys."""
    pass


@cli.group()
def project():
    """Inspect projects."""
    pass


@cli.group()
def runner():
    """Manage runners."""
    pass


# ============================================================================
# User Commands
# ============================================================================


@user.command("create")
@click.option("--name", required=True, help="User's display name")
@click.option("--email", required=True, help="User's email address")
def user_create(name: str, email: str):
    """Create a new user."""
    if not validate_email(email):
        fail(f"Invalid email format: {email}")

    async def create(repo):
        if await repo.get_user_by_email(email):
            fail(f"User with email {email} already exists")

        user_obj = User(
            id=str(uuid.uuid4()),
            name=name,
            email=email,
            created_at=datetime.now(UTC),
        )
        await repo.create_user(user_obj)

        click.echo("✓ User created successfully")
        click.echo(f"  ID:    {user_obj.id}")
        click.echo(f"  Name:  {user_obj.name}")
        click.echo(f"  Email: {user_obj.email}")

    run_with_repository(create)


@user.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def user_list(json_output: bool):
    """List all users."""

    async def list_users(repo):
        users = await repo.list_users()

        if json_output:
            click.echo(json.dumps([u.to_dict() for u in users], indent=2))
            return

        if not users:
            click.echo("No users found.")
            return

        click.echo(f"\n{'ID':<38} {'Name':<20} {'Email':<30} {'Status':<10}")
        click.echo("-" * 100)
        for u in users:
            status = "Active" if u.is_active else "Inactive"
            click.echo(f"{u.id:<38} {u.name:<20} {u.email:<30} {status:<10}")
        click.echo()

    run_with_repository(list_users)


@user.command("get")
@click.argument("user_id", required=False)
@click.option("--email", help="Get user by email instead of ID")
def user_get(user_id: str | None, email: str | None):
    """Get user details by ID or email."""
    if bool(user_id) == bool(email):
        fail("Provide either USER_ID or --email")

    async def get_user(repo):
        if email:
            user_obj = await repo.get_user_by_email(email)
        else:
            user_obj = await repo.get_user(user_id)

        if not user_obj:
            fail(f"User not found: {email or user_id}")

        click.echo("\nUser Details:")
        click.echo(f"  ID:         {user_obj.id}")
        click.echo(f"  Name:       {user_obj.name}")
        click.echo(f"  Email:      {user_obj.email}")
        click.echo(f"  Created:    {user_obj.created_at.isoformat()}")
        click.echo(f"  Status:     {'Active' if user_obj.is_active else 'Inactive'}")
        click.echo()

    run_with_repository(get_user)


def _set_user_active(user_id: str, is_active: bool) -> None:
    async def update(repo):
        user_obj = await repo.get_user(user_id)
        if not user_obj:
            fail(f"User not found: {user_id}")

        await repo.update_user_active_status(user_id, is_active)
        click.echo(f"✓ User {'activated' if is_active else 'deactivated'}: {user_obj.email}")

    run_with_repository(update)


@user.command("deactivate")
@click.argument("user_id")
def user_deactivate(user_id: str):
    """Deactivate a user."""
    _set_user_active(user_id, False)


@user.command("activate")
@click.argument("user_id")
def user_activate(user_id: str):
    """Activate a user."""
    _set_user_active(user_id, True)


# ============================================================================
# API Key Commands
# ============================================================================


@key.command("create")
@click.option("--user-id", help="User ID (UUID)")
@click.option("--email", help="User email (alternative to --user-id)")
@click.option("--name", required=True, help="Descriptive name for this API key")
def key_create(user_id: str | None, email: str | None, name: str):
    """Create a new API key for a user."""
    if bool(user_id) == bool(email):
        fail("Provide either --user-id or --email")

    async def create(repo):
        if email:
            user_obj = await repo.get_user_by_email(email)
        else:
            user_obj = await repo.get_user(user_id)
        if not user_obj:
            fail(f"User not found: {email or user_id}")

        api_key_plaintext = generate_api_key()
        await repo.create_api_key(
            APIKey(
                id=str(uuid.uuid4()),
                user_id=user_obj.id,
                key_hash=hash_api_key(api_key_plaintext),
                name=name,
                created_at=datetime.now(UTC),
            )
        )

        click.echo("\n✓ API key created successfully")
        click.echo(f"\n  API Key: {api_key_plaintext}")
        click.echo(f"  Name:    {name}")
        click.echo(f"  User:    {user_obj.email}")
        click.echo("\n  ⚠️  IMPORTANT: This is the only time you'll see this key!")
        click.echo("     Save it securely now.\n")

    run_with_repository(create)


@key.command("list")
@click.option("--email", help="Filter by user email")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def key_list(email: str | None, json_output: bool):
    """List API keys (optionally filtered by user)."""

    async def list_keys(repo):
        users = await repo.list_users()
        if email:
            users = [u for u in users if u.email == email]
            if not users:
                fail(f"User not found with email: {email}")

        rows = []
        for u in users:
            for k in await repo.list_user_api_keys(u.id):
                rows.append((k, u))

        if json_output:
            click.echo(json.dumps([k.to_dict() for k, _ in rows], indent=2))
            return

        if not rows:
            click.echo("No API keys found.")
            return

        click.echo(f"\n{'ID':<38} {'Name':<25} {'User':<25} {'Status':<10}")
        click.echo("-" * 100)
        for k, u in rows:
            status = "Active" if k.is_active else "Revoked"
            click.echo(f"{k.id:<38} {k.name or '(unnamed)':<25} {u.email:<25} {status:<10}")
        click.echo()

    run_with_repository(list_keys)


@key.command("revoke")
@click.argument("key_id")
def key_revoke(key_id: str):
    """Revoke an API key."""

    async def revoke(repo):
        found_key = None
        for u in await repo.list_users():
            for k in await repo.list_user_api_keys(u.id):
                if k.id == key_id:
                    found_key = k

        if not found_key:
            fail(f"API key not found: {key_id}")

        await repo.revoke_api_key(key_id)
        click.echo(f"✓ API key revoked: {found_key.name or '(unnamed)'}")

    run_with_repository(revoke)


# ============================================================================
# Project Commands
# ============================================================================


@project.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def project_list(json_output: bool):
    """List all projects."""

    async def list_projects(repo):
        projects = await repo.list_projects()

        if json_output:
            click.echo(json.dumps([p.to_dict() for p in projects], indent=2))
            return

        if not projects:
            click.echo("No projects found.")
            return

        click.echo(f"\n{'ID':<6} {'Path':<35} {'Default ref':<15} {'Visibility':<10}")
        click.echo("-" * 70)
        for p in projects:
            visibility = "Public" if p.public else "Private"
            click.echo(f"{p.id:<6} {p.path:<35} {p.default_ref:<15} {visibility:<10}")
        click.echo()

    run_with_repository(list_projects)


# ============================================================================
# Runner Commands
# ============================================================================


@runner.command("create")
@click.option("--description", default=None, help="What this runner is for")
def runner_create(description: str | None):
    """Register a new runner and print its token."""

    async def create(repo):
        runner_obj = await repo.create_runner(
            Runner(token=generate_token(), description=description)
        )

        click.echo("✓ Runner created successfully")
        click.echo(f"  ID:    {runner_obj.id}")
        click.echo(f"  Token: {runner_obj.token}")

    run_with_repository(create)


@runner.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def runner_list(json_output: bool):
    """List all runners."""

    async def list_runners(repo):
        runners = await repo.list_runners()

        if json_output:
            click.echo(json.dumps([r.to_dict() for r in runners], indent=2))
            return

        if not runners:
            click.echo("No runners found.")
            return

        click.echo(f"\n{'ID':<6} {'Description':<40} {'Status':<10}")
        click.echo("-" * 60)
        for r in runners:
            status = "Active" if r.active else "Paused"
            click.echo(f"{r.id:<6} {r.description or '(none)':<40} {status:<10}")
        click.echo()

    run_with_repository(list_runners)


if __name__ == "__main__":
    cli()
