"""Bounded pool of workers draining a task backlog concurrently."""

from __future__ import annotations

import asyncio
import logging
import time
from itertools import count
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from ..agents.base import AgentPlugin
from ..listeners import ListenerRegistry, Unsubscribe
from ..tracker import Task, TaskTracker
from ..vcs import WorktreeError, WorktreeManager
from .models import (
    ParallelEvent,
    ParallelEventType,
    ParallelSummary,
    WorkerConfig,
    WorkerDisplayState,
    WorkerOutcome,
    WorkerResult,
)
from .worker import CANCELLED_MESSAGE, Worker

logger = logging.getLogger(__name__)

PluginFactory = Callable[[], Awaitable[AgentPlugin]]
WorkerFactory = Callable[[WorkerConfig, int], Worker]


class ParallelOrchestrator:
    """Claims tasks, gives each its own worktree and worker, and collects results.

    At most ``max_workers`` workers run at once. A freed slot is refilled from
    the tracker until no unattempted open task remains or :meth:`cancel` is
    called. Each task is attempted at most once per :meth:`run`.
    """

    def __init__(
        self,
        tracker: TaskTracker,
        worktrees: WorktreeManager,
        plugin_factory: PluginFactory,
        *,
        max_workers: int = 3,
        max_iterations: int = 10,
        base_path: str | Path = ".",
        cwd: str | Path | None = None,
        branch_prefix: str = "loom/",
        worker_factory: WorkerFactory = Worker,
        engine_options: Mapping[str, Any] | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._tracker = tracker
        self._worktrees = worktrees
        self._plugin_factory = plugin_factory
        self._max_workers = max_workers
        self._max_iterations = max_iterations
        self._base_path = Path(base_path)
        self._cwd = Path(cwd) if cwd is not None else self._base_path
        self._branch_prefix = branch_prefix
        self._worker_factory = worker_factory
        self._engine_options = dict(engine_options or {})
        self._listeners: ListenerRegistry[ParallelEvent] = ListenerRegistry(
            "Orchestrator listener"
        )
        self._active: dict[asyncio.Task, Worker] = {}
        self._worker_ids = count(1)
        self._cancel_requested = False
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def on(self, listener: Callable[[ParallelEvent], None]) -> Unsubscribe:
        return self._listeners.add(listener)

    def get_display_states(self) -> list[WorkerDisplayState]:
        return [worker.get_display_state() for worker in self._active.values()]

    async def run(self) -> ParallelSummary:
        """Process the backlog and return once every worker has finished."""

        if self._running:
            raise RuntimeError("Orchestrator is already running")
        self._running = True
        self._cancel_requested = False
        started = time.monotonic()
        summary = ParallelSummary()
        attempted: set[str] = set()
        logger.info(
            "Parallel run started",
            extra={"max_workers": self._max_workers, "base_path": str(self._base_path)},
        )

        try:
            while True:
                while not self._cancel_requested and len(self._active) < self._max_workers:
                    worker = await self._launch_next(attempted, summary)
                    if worker is None:
                        break
                    runner = asyncio.create_task(self._run_worker(worker))
                    self._active[runner] = worker

                if not self._active:
                    break

                done, _ = await asyncio.wait(
                    set(self._active), return_when=asyncio.FIRST_COMPLETED
                )
                for runner in done:
                    self._active.pop(runner)
                    summary.record(runner.result())
        finally:
            if self._active:
                # no worker outlives run(), even when run() is cancelled
                for runner in self._active:
                    runner.cancel()
                await asyncio.gather(*self._active, return_exceptions=True)
                self._active.clear()
            self._running = False

        summary.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Parallel run finished",
            extra={
                "total": summary.total,
                "completed": summary.completed,
                "failed": summary.failed,
                "cancelled": summary.cancelled,
            },
        )
        return summary

    async def cancel(self, *, interrupt: bool = False) -> None:
        """Stop claiming new tasks and stop every live worker."""

        self._cancel_requested = True
        workers = list(self._active.values())
        if workers:
            logger.info("Cancelling workers", extra={"count": len(workers)})
            await asyncio.gather(*(worker.stop(interrupt=interrupt) for worker in workers))

    async def _launch_next(self, attempted: set[str], summary: ParallelSummary) -> Worker | None:
        for task in await self._tracker.list_open():
            if self._cancel_requested:
                return None
            if task.id in attempted:
                continue
            attempted.add(task.id)
            if not await self._tracker.claim(task.id):
                continue
            worker = await self._prepare_worker(task, summary)
            if worker is not None:
                return worker
        return None

    async def _prepare_worker(self, task: Task, summary: ParallelSummary) -> Worker | None:
        worker_id = f"worker-{next(self._worker_ids)}"
        branch = f"{self._branch_prefix}{task.id}"
        try:
            worktree = await self._worktrees.create_worktree(branch, self._base_path)
        except WorktreeError as exc:
            await self._abandon(worker_id, task, f"Worktree allocation failed: {exc}", summary)
            return None

        config = WorkerConfig(
            id=worker_id,
            task=task,
            worktree_path=worktree,
            branch_name=branch,
            cwd=self._cwd,
        )
        worker = self._worker_factory(config, self._max_iterations)
        try:
            plugin = await self._plugin_factory()
            await worker.initialize(
                plugin, vcs=self._worktrees, engine_options=self._engine_options
            )
        except Exception as exc:
            await self._abandon(worker_id, task, f"Agent setup failed: {exc}", summary)
            return None
        worker.on(self._listeners.emit)
        return worker

    async def _abandon(
        self, worker_id: str, task: Task, error: str, summary: ParallelSummary
    ) -> None:
        logger.warning("Task abandoned", extra={"task_id": task.id, "error": error})
        await self._release_task(task.id, completed=False)
        result = WorkerResult(
            worker_id=worker_id,
            task_id=task.id,
            success=False,
            outcome=WorkerOutcome.ERRORED,
            error=error,
        )
        summary.record(result)
        self._listeners.emit(
            ParallelEvent(
                type=ParallelEventType.WORKER_FAILED,
                worker_id=worker_id,
                task_id=task.id,
                result=result,
            )
        )

    async def _run_worker(self, worker: Worker) -> WorkerResult:
        task = worker.get_task()
        if self._cancel_requested:
            result = WorkerResult(
                worker_id=worker.id,
                task_id=task.id,
                success=False,
                outcome=WorkerOutcome.CANCELLED,
                error=CANCELLED_MESSAGE,
            )
        else:
            try:
                result = await worker.start()
            except asyncio.CancelledError:
                await self._release_task(task.id, completed=False)
                raise
            except Exception as exc:
                logger.error(
                    "Worker crashed", extra={"worker_id": worker.id, "error": str(exc)}
                )
                result = WorkerResult(
                    worker_id=worker.id,
                    task_id=task.id,
                    success=False,
                    outcome=WorkerOutcome.ERRORED,
                    error=str(exc),
                )

        await self._release_task(task.id, completed=result.task_completed)
        return result

    async def _release_task(self, task_id: str, *, completed: bool) -> None:
        """Hand a claimed task back to the tracker; tracker errors are logged."""

        if completed:
            try:
                await self._tracker.complete(task_id)
                return
            except Exception as exc:
                logger.warning(
                    "Could not mark task complete; reopening it",
                    extra={"task_id": task_id, "error": str(exc)},
                )
        try:
            await self._tracker.reopen(task_id)
        except Exception as exc:
            logger.error(
                "Could not reopen task", extra={"task_id": task_id, "error": str(exc)}
            )


__all__ = ["ParallelOrchestrator", "PluginFactory", "WorkerFactory"]
