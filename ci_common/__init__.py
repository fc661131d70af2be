"""
CI Common module.

This module contains shared domain models, the CI config processor, commit
status aggregation and the repository interface used across the CI
components (server, persistence, admin).

The common module has no dependencies on other ci_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .config_processor import CiConfigError, CiConfigProcessor
from .models import BLANK_SHA, Build, Commit, Project, PushData, ValidationError
from .repository import CiRepository

__all__ = [
    "BLANK_SHA",
    "Build",
    "CiConfigError",
    "CiConfigProcessor",
    "CiRepository",
    "Commit",
    "Project",
    "PushData",
    "ValidationError",
]
