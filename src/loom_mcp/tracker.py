"""Task tracker interface and an in-process implementation."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"


class Task(BaseModel):
    """A unit of work an agent can pick up."""

    id: str = Field(..., description="Stable task identifier.")
    title: str = Field(..., description="Short human readable summary.")
    status: TaskStatus = Field(default=TaskStatus.OPEN)
    priority: int = Field(default=2, description="Lower numbers are picked up first.")
    description: str | None = Field(default=None, description="Full instructions for the agent.")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("id", "title")
    @classmethod
    def _require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Task id and title must not be empty")
        return normalized


class TaskNotFoundError(KeyError):
    """Raised when a tracker is asked about an unknown task id."""


@runtime_checkable
class TaskTracker(Protocol):
    async def list_open(self) -> list[Task]: ...

    async def claim(self, task_id: str) -> bool: ...

    async def complete(self, task_id: str) -> None: ...

    async def reopen(self, task_id: str) -> None: ...


class InMemoryTracker:
    """Keeps tasks in a dict guarded by an asyncio lock.

    ``list_open`` orders tasks by priority, then by insertion order.
    """

    def __init__(self, tasks: list[Task] | None = None) -> None:
        self._tasks: dict[str, Task] = {}
        self._lock = asyncio.Lock()
        for task in tasks or []:
            self._tasks[task.id] = task

    def add_task(self, task: Task) -> Task:
        if task.id in self._tasks:
            raise ValueError(f"Task '{task.id}' already exists")
        self._tasks[task.id] = task
        logger.debug("Task added", extra={"task_id": task.id})
        return task

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError as exc:
            raise TaskNotFoundError(task_id) from exc

    def list_all(self) -> list[Task]:
        return list(self._tasks.values())

    async def list_open(self) -> list[Task]:
        order = {task_id: index for index, task_id in enumerate(self._tasks)}
        open_tasks = [task for task in self._tasks.values() if task.status is TaskStatus.OPEN]
        return sorted(open_tasks, key=lambda task: (task.priority, order[task.id]))

    async def claim(self, task_id: str) -> bool:
        async with self._lock:
            task = self.get(task_id)
            if task.status is not TaskStatus.OPEN:
                return False
            self._set_status(task, TaskStatus.IN_PROGRESS)
            return True

    async def complete(self, task_id: str) -> None:
        async with self._lock:
            self._set_status(self.get(task_id), TaskStatus.DONE)

    async def reopen(self, task_id: str) -> None:
        async with self._lock:
            self._set_status(self.get(task_id), TaskStatus.OPEN)

    def _set_status(self, task: Task, status: TaskStatus) -> None:
        self._tasks[task.id] = task.model_copy(update={"status": status})
        logger.debug("Task status changed", extra={"task_id": task.id, "status": status.value})


__all__ = [
    "InMemoryTracker",
    "Task",
    "TaskNotFoundError",
    "TaskStatus",
    "TaskTracker",
]
