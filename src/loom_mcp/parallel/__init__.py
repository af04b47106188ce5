"""Concurrent execution of tasks across isolated worktrees."""

from .models import (
    ParallelEvent,
    ParallelEventType,
    ParallelSummary,
    WorkerConfig,
    WorkerDisplayState,
    WorkerOutcome,
    WorkerResult,
    WorkerStatus,
)
from .orchestrator import ParallelOrchestrator
from .worker import CANCELLED_MESSAGE, Worker, WorkerNotInitializedError

__all__ = [
    "CANCELLED_MESSAGE",
    "ParallelEvent",
    "ParallelEventType",
    "ParallelOrchestrator",
    "ParallelSummary",
    "Worker",
    "WorkerConfig",
    "WorkerDisplayState",
    "WorkerNotInitializedError",
    "WorkerOutcome",
    "WorkerResult",
    "WorkerStatus",
]
