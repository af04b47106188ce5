"""A worker drives one execution engine for one task in one worktree."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Mapping, Protocol

from ..agents.base import AgentPlugin
from ..engine import EngineEvent, EngineEventType, EngineState, ExecutionEngine
from ..listeners import ListenerRegistry, Unsubscribe
from ..tracker import Task
from ..vcs import WorktreeManager
from .models import (
    ParallelEvent,
    ParallelEventType,
    WorkerConfig,
    WorkerDisplayState,
    WorkerOutcome,
    WorkerResult,
    WorkerStatus,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Worker was cancelled"
_LAST_OUTPUT_CHARS = 2000


class WorkerNotInitializedError(RuntimeError):
    """Raised when a worker is started before an engine is bound."""


class EngineLike(Protocol):
    """The part of :class:`ExecutionEngine` a worker relies on."""

    def on(self, listener: Callable[[EngineEvent], None]) -> Unsubscribe: ...

    async def start(self) -> None: ...

    async def stop(self, *, interrupt: bool = False) -> None: ...

    def get_state(self) -> EngineState: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...


class Worker:
    def __init__(self, config: WorkerConfig, max_iterations: int) -> None:
        self.config = config
        self._max_iterations = max_iterations
        self._engine: EngineLike | None = None
        self._status = WorkerStatus.IDLE
        self._listeners: ListenerRegistry[ParallelEvent] = ListenerRegistry("Worker listener")
        self._engine_listeners: ListenerRegistry[EngineEvent] = ListenerRegistry(
            "Engine event listener"
        )
        self._cancelled = False
        self._commit_count = 0
        self._commit_sha: str | None = None
        self._current_iteration = 0
        self._last_output = ""
        self._started_at: float | None = None
        self._finished_at: float | None = None

    @property
    def id(self) -> str:
        return self.config.id

    def get_status(self) -> WorkerStatus:
        return self._status

    def get_task(self) -> Task:
        return self.config.task

    async def initialize(
        self,
        plugin: AgentPlugin,
        *,
        vcs: WorktreeManager | None = None,
        engine_options: Mapping[str, Any] | None = None,
    ) -> None:
        """Create an engine bound to ``plugin`` and this worker's worktree."""

        engine = ExecutionEngine(max_iterations=self._max_iterations, **dict(engine_options or {}))
        engine.initialize(plugin, self.config.worktree_path, task=self.config.task, vcs=vcs)
        self.bind_engine(engine)

    def bind_engine(self, engine: EngineLike) -> None:
        if self._status in (WorkerStatus.RUNNING, WorkerStatus.PAUSED):
            raise RuntimeError(f"Worker {self.id} is running; cannot replace its engine")
        self._engine = engine

    def on(self, listener: Callable[[ParallelEvent], None]) -> Unsubscribe:
        return self._listeners.add(listener)

    def on_engine_event(self, listener: Callable[[EngineEvent], None]) -> Unsubscribe:
        return self._engine_listeners.add(listener)

    async def start(self) -> WorkerResult:
        """Run the engine once and report how it went.

        Engine failures and cancellation are returned as an unsuccessful
        result; they do not propagate.
        """

        engine = self._engine
        if engine is None:
            raise WorkerNotInitializedError(
                f"Worker {self.id} not initialized; call initialize() before start()"
            )

        self._commit_count = 0
        self._commit_sha = None
        self._current_iteration = 0
        self._last_output = ""
        self._cancelled = False
        self._started_at = time.monotonic()
        self._finished_at = None
        self._status = WorkerStatus.RUNNING
        unsubscribe = engine.on(self._handle_engine_event)
        self._emit(ParallelEventType.WORKER_STARTED)
        logger.info("Worker started", extra={"worker_id": self.id, "task_id": self.config.task.id})

        try:
            await engine.start()
        except asyncio.CancelledError:
            self._cancelled = True
            self._status = WorkerStatus.CANCELLED
            result = self._build_result(WorkerOutcome.CANCELLED, error=CANCELLED_MESSAGE)
            self._finish(result)
            raise
        except Exception as exc:
            if self._cancelled:
                result = self._build_result(WorkerOutcome.CANCELLED, error=CANCELLED_MESSAGE)
            else:
                self._status = WorkerStatus.ERROR
                result = self._build_result(WorkerOutcome.ERRORED, error=str(exc))
                logger.warning(
                    "Worker engine failed", extra={"worker_id": self.id, "error": str(exc)}
                )
        else:
            if self._cancelled:
                result = self._build_result(WorkerOutcome.CANCELLED, error=CANCELLED_MESSAGE)
            else:
                state = engine.get_state()
                self._current_iteration = max(self._current_iteration, state.current_iteration)
                self._status = WorkerStatus.COMPLETED
                result = self._build_result(
                    WorkerOutcome.COMPLETED, task_completed=state.tasks_completed > 0
                )
        finally:
            unsubscribe()

        self._finish(result)
        return result

    async def stop(self, *, interrupt: bool = False) -> None:
        """Cancel the run; safe before initialization and when repeated."""

        if self._engine is not None and self._status in (
            WorkerStatus.COMPLETED,
            WorkerStatus.ERROR,
        ):
            return
        self._cancelled = True
        self._status = WorkerStatus.CANCELLED
        if self._engine is not None:
            await self._engine.stop(interrupt=interrupt)

    def pause(self) -> None:
        if self._engine is None or self._status is not WorkerStatus.RUNNING:
            return
        self._engine.pause()
        self._status = WorkerStatus.PAUSED

    def resume(self) -> None:
        if self._engine is None or self._status is not WorkerStatus.PAUSED:
            return
        self._engine.resume()
        self._status = WorkerStatus.RUNNING

    def get_display_state(self) -> WorkerDisplayState:
        return WorkerDisplayState(
            id=self.id,
            status=self._status,
            task=self.config.task,
            current_iteration=self._current_iteration,
            max_iterations=self._max_iterations,
            last_output=self._last_output,
            elapsed_ms=self._elapsed_ms(),
            commit_sha=self._commit_sha,
            worktree_path=self.config.worktree_path,
            branch_name=self.config.branch_name,
        )

    def _handle_engine_event(self, event: EngineEvent) -> None:
        if event.type is EngineEventType.ITERATION_STARTED:
            self._current_iteration = event.iteration
        elif event.type is EngineEventType.AGENT_OUTPUT and event.output:
            self._last_output = (self._last_output + event.output)[-_LAST_OUTPUT_CHARS:]
        elif event.type is EngineEventType.TASK_AUTO_COMMITTED:
            self._commit_count += 1
            self._commit_sha = event.commit_sha

        self._engine_listeners.emit(event)
        self._emit(ParallelEventType.WORKER_PROGRESS, engine_event=event)

    def _build_result(
        self, outcome: WorkerOutcome, *, error: str | None = None, task_completed: bool = False
    ) -> WorkerResult:
        return WorkerResult(
            worker_id=self.id,
            task_id=self.config.task.id,
            success=outcome is WorkerOutcome.COMPLETED,
            outcome=outcome,
            task_completed=task_completed,
            commit_count=self._commit_count,
            commit_sha=self._commit_sha,
            error=error,
            iterations=self._current_iteration,
            duration_ms=self._elapsed_ms(),
        )

    def _finish(self, result: WorkerResult) -> None:
        self._finished_at = time.monotonic()
        event_type = (
            ParallelEventType.WORKER_COMPLETED if result.success else ParallelEventType.WORKER_FAILED
        )
        self._emit(event_type, result=result)
        logger.info(
            "Worker finished",
            extra={
                "worker_id": self.id,
                "task_id": result.task_id,
                "outcome": result.outcome.value,
                "commit_count": result.commit_count,
            },
        )

    def _elapsed_ms(self) -> int:
        if self._started_at is None:
            return 0
        end = self._finished_at if self._finished_at is not None else time.monotonic()
        return int((end - self._started_at) * 1000)

    def _emit(self, event_type: ParallelEventType, **fields: Any) -> None:
        self._listeners.emit(
            ParallelEvent(
                type=event_type,
                worker_id=self.id,
                task_id=self.config.task.id,
                state=self.get_display_state(),
                **fields,
            )
        )


__all__ = ["CANCELLED_MESSAGE", "EngineLike", "Worker", "WorkerNotInitializedError"]
