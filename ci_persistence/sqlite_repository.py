"""
SQLite implementation of the CI repository.

Uses aiosqlite for async operations.
Can be easily replaced with PostgreSQL/MySQL implementations.
"""

import json
from datetime import datetime

import aiosqlite

from ci_common.models import (
    APIKey,
    Build,
    Commit,
    Project,
    PushData,
    Runner,
    RunnerProject,
    User,
    WebHook,
)
from ci_common.repository import CiRepository

PROJECT_COLUMNS = (
    "id, name, gitlab_id, path, ssh_url_to_repo, default_ref, token, owner_id, "
    "public, coverage_regex, email_recipients, email_add_pusher, created_at"
)
COMMIT_COLUMNS = "id, project_id, ref, sha, before_sha, tag, push_data, created_at"
BUILD_COLUMNS = (
    "id, project_id, commit_id, name, commands, tag_list, deploy, status, "
    "created_at, started_at, finished_at, runner_id, coverage, trace"
)
RUNNER_COLUMNS = "id, token, description, active, created_at"
USER_COLUMNS = "id, name, email, created_at, is_active"
API_KEY_COLUMNS = "id, user_id, key_hash, name, created_at, last_used_at, is_active"


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _project_from_row(row) -> Project:
    (
        project_id,
        name,
        gitlab_id,
        path,
        ssh_url_to_repo,
        default_ref,
        token,
        owner_id,
        public,
        coverage_regex,
        email_recipients,
        email_add_pusher,
        created_at_str,
    ) = row
    return Project(
        id=project_id,
        name=name,
        gitlab_id=gitlab_id,
        path=path,
        ssh_url_to_repo=ssh_url_to_repo,
        default_ref=default_ref,
        token=token,
        owner_id=owner_id,
        public=bool(public),
        coverage_regex=coverage_regex,
        email_recipients=email_recipients or "",
        email_add_pusher=bool(email_add_pusher),
        created_at=_from_iso(created_at_str),
    )


def _commit_from_row(row) -> Commit:
    commit_id, project_id, ref, sha, before_sha, tag, push_data_json, created_at_str = row
    return Commit(
        id=commit_id,
        project_id=project_id,
        ref=ref,
        sha=sha,
        before_sha=before_sha,
        tag=bool(tag),
        push_data=PushData.from_dict(json.loads(push_data_json)),
        created_at=_from_iso(created_at_str),
    )


def _build_from_row(row) -> Build:
    (
        build_id,
        project_id,
        commit_id,
        name,
        commands,
        tag_list_json,
        deploy,
        status,
        created_at_str,
        started_at_str,
        finished_at_str,
        runner_id,
        coverage,
        trace,
    ) = row
    return Build(
        id=build_id,
        project_id=project_id,
        commit_id=commit_id,
        name=name,
        commands=commands,
        tag_list=json.loads(tag_list_json) if tag_list_json else [],
        deploy=bool(deploy),
        status=status,
        created_at=_from_iso(created_at_str),
        started_at=_from_iso(started_at_str),
        finished_at=_from_iso(finished_at_str),
        runner_id=runner_id,
        coverage=coverage,
        trace=trace,
    )


def _runner_from_row(row) -> Runner:
    runner_id, token, description, active, created_at_str = row
    return Runner(
        id=runner_id,
        token=token,
        description=description,
        active=bool(active),
        created_at=_from_iso(created_at_str),
    )


def _user_from_row(row) -> User:
    user_id, name, email, created_at_str, is_active = row
    return User(
        id=user_id,
        name=name,
        email=email,
        created_at=datetime.fromisoformat(created_at_str),
        is_active=bool(is_active),
    )


def _api_key_from_row(row) -> APIKey:
    key_id, user_id, key_hash, name, created_at_str, last_used_at_str, is_active = row
    return APIKey(
        id=key_id,
        user_id=user_id,
        key_hash=key_hash,
        name=name,
        created_at=datetime.fromisoformat(created_at_str),
        last_used_at=_from_iso(last_used_at_str),
        is_active=bool(is_active),
    )


class SQLiteCiRepository(CiRepository):
    """
    SQLite-based CI storage implementation.

    Uses a single database file with multiple tables:
    - users, api_keys: Accounts and their hashed API keys
    - projects: Repositories CI runs for, owned by a user
    - web_hooks, runners, runner_projects: Project collaborators
    - commits: Push events of a project
    - builds: Units of work of a commit, cascading with it
    """

    def __init__(self, db_path: str = "ci_jobs.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            # Enable foreign key constraints
            await self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    async def initialize(self) -> None:
        """Create database tables if they don't exist."""
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                created_at TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS api_keys (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                key_hash TEXT UNIQUE NOT NULL,
                name TEXT,
                created_at TEXT NOT NULL,
                last_used_at TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_api_keys_key_hash
            ON api_keys(key_hash)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS projects (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                gitlab_id INTEGER NOT NULL,
                path TEXT NOT NULL,
                ssh_url_to_repo TEXT NOT NULL,
                default_ref TEXT NOT NULL,
                token TEXT,
                owner_id TEXT,
                public INTEGER NOT NULL DEFAULT 0,
                coverage_regex TEXT,
                email_recipients TEXT NOT NULL DEFAULT '',
                email_add_pusher INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                FOREIGN KEY (owner_id) REFERENCES users(id)
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS web_hooks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                url TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS runners (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                token TEXT UNIQUE NOT NULL,
                description TEXT,
                active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS runner_projects (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                runner_id INTEGER NOT NULL,
                project_id INTEGER NOT NULL,
                UNIQUE (runner_id, project_id),
                FOREIGN KEY (runner_id) REFERENCES runners(id) ON DELETE CASCADE,
                FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS commits (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                ref TEXT NOT NULL,
                sha TEXT NOT NULL,
                before_sha TEXT NOT NULL,
                tag INTEGER NOT NULL DEFAULT 0,
                push_data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_commits_project_sha
            ON commits(project_id, sha)
        """)

        # AUTOINCREMENT keeps build ids monotonic, which retry chains rely on
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS builds (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id INTEGER NOT NULL,
                commit_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                commands TEXT NOT NULL,
                tag_list TEXT,
                deploy INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT,
                runner_id INTEGER,
                coverage REAL,
                trace TEXT,
                FOREIGN KEY (commit_id) REFERENCES commits(id) ON DELETE CASCADE,
                FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE,
                FOREIGN KEY (runner_id) REFERENCES runners(id) ON DELETE SET NULL
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_builds_commit_id
            ON builds(commit_id)
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # Project methods

    async def create_project(self, project: Project) -> Project:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            INSERT INTO projects (name, gitlab_id, path, ssh_url_to_repo, default_ref, token,
                                  owner_id, public, coverage_regex, email_recipients,
                                  email_add_pusher, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project.name,
                project.gitlab_id,
                project.path,
                project.ssh_url_to_repo,
                project.default_ref,
                project.token,
                project.owner_id,
                1 if project.public else 0,
                project.coverage_regex,
                project.email_recipients,
                1 if project.email_add_pusher else 0,
                project.created_at.isoformat(),
            ),
        )
        await conn.commit()

        project.id = cursor.lastrowid
        return project

    async def get_project(self, project_id: int) -> Project | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {PROJECT_COLUMNS} FROM projects WHERE id = ?", (project_id,)
        )
        row = await cursor.fetchone()

        return _project_from_row(row) if row else None

    async def list_projects(self) -> list[Project]:
        conn = await self._get_connection()

        cursor = await conn.execute(f"SELECT {PROJECT_COLUMNS} FROM projects ORDER BY id")
        rows = await cursor.fetchall()

        return [_project_from_row(row) for row in rows]

    async def update_project(self, project: Project) -> None:
        conn = await self._get_connection()

        await conn.execute(
            """
            UPDATE projects
            SET name = ?, gitlab_id = ?, path = ?, ssh_url_to_repo = ?, default_ref = ?,
                public = ?, coverage_regex = ?, email_recipients = ?, email_add_pusher = ?
            WHERE id = ?
            """,
            (
                project.name,
                project.gitlab_id,
                project.path,
                project.ssh_url_to_repo,
                project.default_ref,
                1 if project.public else 0,
                project.coverage_regex,
                project.email_recipients,
                1 if project.email_add_pusher else 0,
                project.id,
            ),
        )
        await conn.commit()

    async def delete_project(self, project_id: int) -> None:
        conn = await self._get_connection()

        # Foreign keys cascade to commits, builds, web_hooks and runner_projects
        await conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        await conn.commit()

    # WebHook methods

    async def create_web_hook(self, web_hook: WebHook) -> WebHook:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "INSERT INTO web_hooks (project_id, url) VALUES (?, ?)",
            (web_hook.project_id, web_hook.url),
        )
        await conn.commit()

        web_hook.id = cursor.lastrowid
        return web_hook

    async def list_web_hooks(self, project_id: int) -> list[WebHook]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT id, project_id, url FROM web_hooks WHERE project_id = ? ORDER BY id",
            (project_id,),
        )
        rows = await cursor.fetchall()

        return [
            WebHook(id=hook_id, project_id=project_id, url=url)
            for hook_id, project_id, url in rows
        ]

    # Runner methods

    async def create_runner(self, runner: Runner) -> Runner:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            INSERT INTO runners (token, description, active, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (
                runner.token,
                runner.description,
                1 if runner.active else 0,
                runner.created_at.isoformat(),
            ),
        )
        await conn.commit()

        runner.id = cursor.lastrowid
        return runner

    async def get_runner(self, runner_id: int) -> Runner | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {RUNNER_COLUMNS} FROM runners WHERE id = ?", (runner_id,)
        )
        row = await cursor.fetchone()

        return _runner_from_row(row) if row else None

    async def list_runners(self) -> list[Runner]:
        conn = await self._get_connection()

        cursor = await conn.execute(f"SELECT {RUNNER_COLUMNS} FROM runners ORDER BY id")
        rows = await cursor.fetchall()

        return [_runner_from_row(row) for row in rows]

    async def create_runner_project(self, runner_project: RunnerProject) -> RunnerProject:
        conn = await self._get_connection()

        try:
            cursor = await conn.execute(
                "INSERT INTO runner_projects (runner_id, project_id) VALUES (?, ?)",
                (runner_project.runner_id, runner_project.project_id),
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

        runner_project.id = cursor.lastrowid
        return runner_project

    async def get_runner_project(
        self, runner_id: int, project_id: int
    ) -> RunnerProject | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, runner_id, project_id FROM runner_projects
            WHERE runner_id = ? AND project_id = ?
            """,
            (runner_id, project_id),
        )
        row = await cursor.fetchone()

        if row is None:
            return None

        link_id, runner_id, project_id = row
        return RunnerProject(id=link_id, runner_id=runner_id, project_id=project_id)

    async def delete_runner_project(self, runner_project_id: int) -> None:
        conn = await self._get_connection()

        await conn.execute(
            "DELETE FROM runner_projects WHERE id = ?", (runner_project_id,)
        )
        await conn.commit()

    async def list_project_runners(self, project_id: int) -> list[Runner]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT r.id, r.token, r.description, r.active, r.created_at
            FROM runners r
            JOIN runner_projects rp ON rp.runner_id = r.id
            WHERE rp.project_id = ?
            ORDER BY r.id
            """,
            (project_id,),
        )
        rows = await cursor.fetchall()

        return [_runner_from_row(row) for row in rows]

    # Commit methods

    async def _insert_build(self, conn: aiosqlite.Connection, build: Build) -> None:
        cursor = await conn.execute(
            """
            INSERT INTO builds (project_id, commit_id, name, commands, tag_list, deploy,
                                status, created_at, started_at, finished_at, runner_id,
                                coverage, trace)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                build.project_id,
                build.commit_id,
                build.name,
                build.commands,
                json.dumps(build.tag_list),
                1 if build.deploy else 0,
                build.status,
                build.created_at.isoformat(),
                _to_iso(build.started_at),
                _to_iso(build.finished_at),
                build.runner_id,
                build.coverage,
                build.trace,
            ),
        )
        build.id = cursor.lastrowid

    async def create_commit_with_builds(
        self, commit: Commit, builds: list[Build]
    ) -> tuple[Commit, list[Build]]:
        conn = await self._get_connection()

        try:
            cursor = await conn.execute(
                """
                INSERT INTO commits (project_id, ref, sha, before_sha, tag, push_data, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    commit.project_id,
                    commit.ref,
                    commit.sha,
                    commit.before_sha,
                    1 if commit.tag else 0,
                    json.dumps(commit.push_data.to_dict()),
                    commit.created_at.isoformat(),
                ),
            )
            commit_id = cursor.lastrowid

            for build in builds:
                build.commit_id = commit_id
                await self._insert_build(conn, build)

            await conn.commit()
        except Exception:
            await conn.rollback()
            for build in builds:
                build.id = None
            raise

        commit.id = commit_id
        return commit, builds

    async def get_commit(self, commit_id: int) -> Commit | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {COMMIT_COLUMNS} FROM commits WHERE id = ?", (commit_id,)
        )
        row = await cursor.fetchone()

        return _commit_from_row(row) if row else None

    async def get_commit_by_sha(self, project_id: int, sha: str) -> Commit | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"""
            SELECT {COMMIT_COLUMNS} FROM commits
            WHERE project_id = ? AND sha = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (project_id, sha),
        )
        row = await cursor.fetchone()

        return _commit_from_row(row) if row else None

    async def list_commits(self, project_id: int) -> list[Commit]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {COMMIT_COLUMNS} FROM commits WHERE project_id = ? ORDER BY id DESC",
            (project_id,),
        )
        rows = await cursor.fetchall()

        return [_commit_from_row(row) for row in rows]

    async def delete_commit(self, commit_id: int) -> None:
        conn = await self._get_connection()

        try:
            await conn.execute("DELETE FROM builds WHERE commit_id = ?", (commit_id,))
            await conn.execute("DELETE FROM commits WHERE id = ?", (commit_id,))
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

    # Build methods

    async def create_builds(self, builds: list[Build]) -> list[Build]:
        conn = await self._get_connection()

        try:
            for build in builds:
                await self._insert_build(conn, build)
            await conn.commit()
        except Exception:
            await conn.rollback()
            for build in builds:
                build.id = None
            raise

        return builds

    async def get_build(self, build_id: int) -> Build | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {BUILD_COLUMNS} FROM builds WHERE id = ?", (build_id,)
        )
        row = await cursor.fetchone()

        return _build_from_row(row) if row else None

    async def list_builds(self, commit_id: int) -> list[Build]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {BUILD_COLUMNS} FROM builds WHERE commit_id = ? ORDER BY id",
            (commit_id,),
        )
        rows = await cursor.fetchall()

        return [_build_from_row(row) for row in rows]

    async def update_build(self, build: Build) -> None:
        conn = await self._get_connection()

        await conn.execute(
            """
            UPDATE builds
            SET status = ?, started_at = ?, finished_at = ?, runner_id = ?,
                coverage = ?, trace = ?
            WHERE id = ?
            """,
            (
                build.status,
                _to_iso(build.started_at),
                _to_iso(build.finished_at),
                build.runner_id,
                build.coverage,
                build.trace,
                build.id,
            ),
        )
        await conn.commit()

    # User management methods

    async def create_user(self, user: User) -> None:
        conn = await self._get_connection()

        await conn.execute(
            f"INSERT INTO users ({USER_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
            (
                user.id,
                user.name,
                user.email,
                user.created_at.isoformat(),
                1 if user.is_active else 0,
            ),
        )
        await conn.commit()

    async def get_user(self, user_id: str) -> User | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (user_id,)
        )
        row = await cursor.fetchone()

        return _user_from_row(row) if row else None

    async def get_user_by_email(self, email: str) -> User | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {USER_COLUMNS} FROM users WHERE email = ?", (email,)
        )
        row = await cursor.fetchone()

        return _user_from_row(row) if row else None

    async def list_users(self) -> list[User]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {USER_COLUMNS} FROM users ORDER BY created_at DESC"
        )
        rows = await cursor.fetchall()

        return [_user_from_row(row) for row in rows]

    async def update_user_active_status(self, user_id: str, is_active: bool) -> None:
        conn = await self._get_connection()

        await conn.execute(
            "UPDATE users SET is_active = ? WHERE id = ?",
            (1 if is_active else 0, user_id),
        )
        await conn.commit()

    # API Key management methods

    async def create_api_key(self, api_key: APIKey) -> None:
        conn = await self._get_connection()

        await conn.execute(
            f"INSERT INTO api_keys ({API_KEY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                api_key.id,
                api_key.user_id,
                api_key.key_hash,
                api_key.name,
                api_key.created_at.isoformat(),
                _to_iso(api_key.last_used_at),
                1 if api_key.is_active else 0,
            ),
        )
        await conn.commit()

    async def get_api_key_by_hash(self, key_hash: str) -> APIKey | None:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {API_KEY_COLUMNS} FROM api_keys WHERE key_hash = ?", (key_hash,)
        )
        row = await cursor.fetchone()

        return _api_key_from_row(row) if row else None

    async def list_user_api_keys(self, user_id: str) -> list[APIKey]:
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"""
            SELECT {API_KEY_COLUMNS} FROM api_keys
            WHERE user_id = ?
            ORDER BY created_at DESC
            """,
            (user_id,),
        )
        rows = await cursor.fetchall()

        return [_api_key_from_row(row) for row in rows]

    async def revoke_api_key(self, key_id: str) -> None:
        conn = await self._get_connection()

        await conn.execute("UPDATE api_keys SET is_active = 0 WHERE id = ?", (key_id,))
        await conn.commit()

    async def update_api_key_last_used(self, key_id: str, timestamp: datetime) -> None:
        conn = await self._get_connection()

        await conn.execute(
            "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
            (timestamp.isoformat(), key_id),
        )
        await conn.commit()
