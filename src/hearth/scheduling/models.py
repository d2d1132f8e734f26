"""Task and user shapes read and written by the scheduler."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TaskPriority(StrEnum):
    URGENT = "URGENT"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


PRIORITY_RANK = {
    TaskPriority.URGENT: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
}


def priority_rank(priority: str) -> int:
    """Sort rank, URGENT first; unknown priorities rank as MEDIUM."""
    try:
        return PRIORITY_RANK[TaskPriority(priority)]
    except ValueError:
        return PRIORITY_RANK[TaskPriority.MEDIUM]


class TaskStatus(StrEnum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    CANCELLED = "CANCELLED"


OPEN_TASK_STATUSES = (TaskStatus.TODO, TaskStatus.IN_PROGRESS)


class UserProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    timezone: str = "UTC"
    preferences: dict[str, Any] = Field(default_factory=dict)


class Task(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: uuid.UUID
    user_id: uuid.UUID
    title: str = ""
    priority: str = TaskPriority.MEDIUM
    status: str = TaskStatus.TODO
    due_date: datetime | None = None
    scheduled_start: datetime | None = None
    scheduled_end: datetime | None = None
    estimated_mins: int | None = None


class Placement(BaseModel):
    """Scheduled slot chosen for one task."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    task_id: uuid.UUID
    scheduled_start: datetime
    scheduled_end: datetime


class TaskShift(BaseModel):
    """New schedule (and possibly due date) for a deferred task."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    task_id: uuid.UUID
    scheduled_start: datetime | None
    scheduled_end: datetime | None
    due_date: datetime | None
