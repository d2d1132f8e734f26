"""Shared test fixtures for the hearth test suite.

The canonical definitions live in the root ``conftest.py``. This file
re-exports them so imports from either conftest resolve to the same objects.
"""

from __future__ import annotations

from conftest import (  # noqa: F401
    InMemoryCalendarStore,
    InMemoryTaskStore,
    calendar_store,
    docker_available,
    task_store,
)

__all__ = [
    "InMemoryCalendarStore",
    "InMemoryTaskStore",
    "calendar_store",
    "docker_available",
    "task_store",
]
