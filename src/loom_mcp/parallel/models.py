"""Data types exchanged between workers, the orchestrator and displays."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from ..engine import EngineEvent
from ..tracker import Task


class WorkerStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class WorkerOutcome(str, Enum):
    """How a worker run ended; independent of the human readable error."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


@dataclass(frozen=True, slots=True)
class WorkerConfig:
    id: str
    task: Task
    worktree_path: Path
    branch_name: str
    cwd: Path


@dataclass(slots=True)
class WorkerDisplayState:
    id: str
    status: WorkerStatus
    task: Task
    current_iteration: int
    max_iterations: int
    last_output: str
    elapsed_ms: int
    commit_sha: str | None
    worktree_path: Path
    branch_name: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "task_id": self.task.id,
            "task_title": self.task.title,
            "current_iteration": self.current_iteration,
            "max_iterations": self.max_iterations,
            "last_output": self.last_output,
            "elapsed_ms": self.elapsed_ms,
            "commit_sha": self.commit_sha,
            "worktree_path": str(self.worktree_path),
            "branch_name": self.branch_name,
        }


@dataclass(slots=True)
class WorkerResult:
    worker_id: str
    task_id: str
    success: bool
    outcome: WorkerOutcome
    task_completed: bool = False
    commit_count: int = 0
    commit_sha: str | None = None
    error: str | None = None
    iterations: int = 0
    duration_ms: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "task_id": self.task_id,
            "success": self.success,
            "outcome": self.outcome.value,
            "task_completed": self.task_completed,
            "commit_count": self.commit_count,
            "commit_sha": self.commit_sha,
            "error": self.error,
            "iterations": self.iterations,
            "duration_ms": self.duration_ms,
        }


class ParallelEventType(str, Enum):
    WORKER_STARTED = "worker:started"
    WORKER_PROGRESS = "worker:progress"
    WORKER_COMPLETED = "worker:completed"
    WORKER_FAILED = "worker:failed"


@dataclass(slots=True)
class ParallelEvent:
    type: ParallelEventType
    worker_id: str
    task_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: WorkerDisplayState | None = None
    result: WorkerResult | None = None
    engine_event: EngineEvent | None = None


@dataclass(slots=True)
class ParallelSummary:
    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    commit_count: int = 0
    results: list[WorkerResult] = field(default_factory=list)
    duration_ms: int = 0

    def record(self, result: WorkerResult) -> None:
        self.total += 1
        self.commit_count += result.commit_count
        self.results.append(result)
        if result.outcome is WorkerOutcome.CANCELLED:
            self.cancelled += 1
        elif result.success and result.task_completed:
            self.completed += 1
        else:
            self.failed += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "commit_count": self.commit_count,
            "duration_ms": self.duration_ms,
            "results": [result.as_dict() for result in self.results],
        }


__all__ = [
    "ParallelEvent",
    "ParallelEventType",
    "ParallelSummary",
    "WorkerConfig",
    "WorkerDisplayState",
    "WorkerOutcome",
    "WorkerResult",
    "WorkerStatus",
]
