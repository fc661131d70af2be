"""
Authentication utilities for the CI server.

This module provides API key and token generation, hashing, and validation,
as well as the FastAPI dependency for authentication.
"""

import hashlib
import secrets
from datetime import UTC, datetime

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ci_common.models import User
from ci_common.repository import CiRepository

# HTTP Bearer token authentication scheme
security = HTTPBearer()


def generate_api_key() -> str:
    """
    Generate a new API key with format: ci_<40 random chars>.

    The key uses URL-safe base64 encoding with 240 bits of entropy.

    Returns:
        API key string in format "ci_XXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXX"

    Example:
        >>> key = generate_api_key()
        >>> key.startswith("ci_")
        True
        >>> len(key)
        43
    """
    random_part = secrets.token_urlsafe(30)[:40]
    return f"ci_{random_part}"


def generate_token() -> str:
    """
    Generate the token identifying a project or runner to outside callers.

    Returns:
        30 lowercase hex characters (120 bits of entropy)
    """
    return secrets.token_hex(15)


def hash_api_key(api_key: str) -> str:
    """
    Hash an API key using SHA-256 for secure storage.

    Only hashed keys are stored in the database. The plaintext key
    is shown once during creation and must be saved by the user.

    Args:
        api_key: The plaintext API key to hash

    Returns:
        Hex-encoded SHA-256 hash of the API key
    """
    return hashlib.sha256(api_key.encode()).hexdigest()


def create_get_current_user_dependency(
    get_repository_func,  # type: ignore
):
    """
    Create a get_current_user dependency with repository injection.

    The repository getter lives in app.py; taking it as an argument avoids
    a circular import.

    Args:
        get_repository_func: Function that returns the CiRepository instance

    Returns:
        Async function that can be used as a FastAPI dependency

    Example:
        # In app.py:
        get_current_user = create_get_current_user_dependency(get_repository)

        @app.get("/projects")
        async def list_projects(user: User = Depends(get_current_user)):
            ...
    """

    async def get_current_user_with_repo(
        credentials: HTTPAuthorizationCredentials = Security(security),
        repository: CiRepository = Depends(get_repository_func),
    ) -> User:
        """
        Validate API key and return current user.

        Args:
            credentials: HTTP Bearer token from the Authorization header
            repository: CiRepository instance for database access

        Returns:
            The User owning the key; its last_used_at is refreshed

        Raises:
            HTTPException: 401 if the key is unknown or revoked, or the user
                is missing or inactive
        """
        key_hash = hash_api_key(credentials.credentials)
        api_key_obj = await repository.get_api_key_by_hash(key_hash)

        if not api_key_obj or not api_key_obj.is_active:
            raise HTTPException(
                status_code=401,
                detail="Invalid or revoked API key",
                headers={"WWW-Authenticate": "Bearer"},
            )

        user = await repository.get_user(api_key_obj.user_id)

        if not user or not user.is_active:
            raise HTTPException(
                status_code=401,
                detail="User not found or inactive",
                headers={"WWW-Authenticate": "Bearer"},
            )

        await repository.update_api_key_last_used(api_key_obj.id, datetime.now(UTC))

        return user

    return get_current_user_with_repo
