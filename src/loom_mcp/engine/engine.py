"""Iterative agent execution loop for a single task in a single workspace."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable

from ..agents.base import (
    AgentExecuteOptions,
    AgentExecutionHandle,
    AgentExecutionResult,
    AgentPlugin,
)
from ..listeners import ListenerRegistry, Unsubscribe
from ..tracker import Task
from ..vcs import WorktreeError, WorktreeManager
from .prompt import COMPLETION_MARKER, build_prompt

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_MAX_CONSECUTIVE_FAILURES = 3


class EngineNotInitializedError(RuntimeError):
    """Raised when the engine is started without a plugin and workspace."""


class EngineStateError(RuntimeError):
    """Raised for a status transition the engine does not allow."""


class AgentExecutionError(RuntimeError):
    """Raised when the agent keeps failing and the loop gives up."""


class EngineStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSING = "pausing"
    PAUSED = "paused"
    STOPPING = "stopping"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


_TERMINAL = frozenset({EngineStatus.COMPLETED, EngineStatus.CANCELLED, EngineStatus.ERRORED})

_TRANSITIONS: dict[EngineStatus, frozenset[EngineStatus]] = {
    EngineStatus.IDLE: frozenset({EngineStatus.RUNNING}),
    EngineStatus.RUNNING: frozenset(
        {EngineStatus.PAUSING, EngineStatus.STOPPING, EngineStatus.COMPLETED, EngineStatus.ERRORED}
    ),
    EngineStatus.PAUSING: frozenset(
        {
            EngineStatus.PAUSED,
            EngineStatus.RUNNING,
            EngineStatus.STOPPING,
            EngineStatus.COMPLETED,
            EngineStatus.ERRORED,
        }
    ),
    EngineStatus.PAUSED: frozenset({EngineStatus.RUNNING, EngineStatus.STOPPING}),
    EngineStatus.STOPPING: frozenset({EngineStatus.CANCELLED, EngineStatus.ERRORED}),
    EngineStatus.COMPLETED: frozenset({EngineStatus.RUNNING}),
    EngineStatus.CANCELLED: frozenset({EngineStatus.RUNNING}),
    EngineStatus.ERRORED: frozenset({EngineStatus.RUNNING}),
}


def can_transition(current: EngineStatus, target: EngineStatus) -> bool:
    return target in _TRANSITIONS[current]


class EngineEventType(str, Enum):
    ENGINE_STARTED = "engine:started"
    ITERATION_STARTED = "iteration:started"
    AGENT_OUTPUT = "agent:output"
    ITERATION_COMPLETED = "iteration:completed"
    ITERATION_FAILED = "iteration:failed"
    TASK_AUTO_COMMITTED = "task:auto-committed"
    TASK_COMPLETED = "task:completed"
    ENGINE_PAUSED = "engine:paused"
    ENGINE_RESUMED = "engine:resumed"
    ENGINE_ITERATION_LIMIT = "engine:iteration-limit"
    ENGINE_STOPPED = "engine:stopped"
    ENGINE_ERROR = "engine:error"


@dataclass(slots=True)
class EngineEvent:
    type: EngineEventType
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    iteration: int = 0
    output: str = ""
    commit_sha: str | None = None
    error: str | None = None
    task_id: str | None = None


@dataclass(frozen=True, slots=True)
class EngineState:
    status: EngineStatus
    tasks_completed: int
    current_iteration: int


EngineListener = Callable[[EngineEvent], None]


class ExecutionEngine:
    """Runs the invoke, observe, commit loop for one task.

    The loop ends when the agent prints the completion marker, when the
    iteration cap is reached, or when :meth:`stop` is requested. Pause and
    resume take effect between iterations only.
    """

    def __init__(
        self,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
        completion_marker: str = COMPLETION_MARKER,
        timeout: float | None = None,
        auto_commit: bool = True,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")
        self._max_iterations = max_iterations
        self._max_consecutive_failures = max_consecutive_failures
        self._completion_marker = completion_marker
        self._timeout = timeout
        self._auto_commit = auto_commit

        self._plugin: AgentPlugin | None = None
        self._workspace: Path | None = None
        self._task: Task | None = None
        self._vcs: WorktreeManager | None = None

        self._status = EngineStatus.IDLE
        self._listeners: ListenerRegistry[EngineEvent] = ListenerRegistry("Engine listener")
        self._resume = asyncio.Event()
        self._resume.set()
        self._stop_requested = False
        self._interrupt_requested = False
        self._current: AgentExecutionHandle | None = None
        self._runner: asyncio.Task | None = None
        self._done: asyncio.Event | None = None
        self._iteration = 0
        self._tasks_completed = 0
        self._last_output = ""

    @property
    def status(self) -> EngineStatus:
        return self._status

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    def initialize(
        self,
        plugin: AgentPlugin,
        workspace: str | Path,
        *,
        task: Task,
        vcs: WorktreeManager | None = None,
    ) -> None:
        """Bind the plugin, workspace and task this engine drives."""

        if self._status not in (EngineStatus.IDLE, *_TERMINAL):
            raise EngineStateError(f"Cannot initialize engine while {self._status.value}")
        self._plugin = plugin
        self._workspace = Path(workspace)
        self._task = task
        self._vcs = vcs

    def on(self, listener: EngineListener) -> Unsubscribe:
        return self._listeners.add(listener)

    def get_state(self) -> EngineState:
        return EngineState(
            status=self._status,
            tasks_completed=self._tasks_completed,
            current_iteration=self._iteration,
        )

    async def start(self) -> None:
        """Run the loop to completion.

        Raises :class:`AgentExecutionError` after too many consecutive failed
        iterations. A requested stop ends the loop without raising.
        """

        if self._plugin is None or self._workspace is None or self._task is None:
            raise EngineNotInitializedError("Execution engine not initialized")
        self._transition(EngineStatus.RUNNING)
        self._iteration = 0
        self._tasks_completed = 0
        self._last_output = ""
        self._stop_requested = False
        self._interrupt_requested = False
        self._resume = asyncio.Event()
        self._resume.set()
        self._runner = asyncio.current_task()
        self._done = asyncio.Event()
        self._emit(EngineEventType.ENGINE_STARTED)
        logger.info(
            "Engine started",
            extra={"task_id": self._task.id, "workspace": str(self._workspace)},
        )

        try:
            await self._loop()
        except asyncio.CancelledError:
            self._status = EngineStatus.CANCELLED
            self._emit(EngineEventType.ENGINE_STOPPED, error="cancelled")
            raise
        except Exception as exc:
            self._status = EngineStatus.ERRORED
            self._emit(EngineEventType.ENGINE_ERROR, error=str(exc))
            logger.error(
                "Engine failed", extra={"task_id": self._task.id, "error": str(exc)}
            )
            raise
        else:
            if self._stop_requested:
                self._transition(EngineStatus.CANCELLED)
            else:
                self._transition(EngineStatus.COMPLETED)
            self._emit(EngineEventType.ENGINE_STOPPED)
        finally:
            self._current = None
            self._runner = None
            self._done.set()

    async def _loop(self) -> None:
        consecutive_failures = 0
        while True:
            await self._pause_gate()
            if self._stop_requested:
                return
            if self._iteration >= self._max_iterations:
                self._emit(EngineEventType.ENGINE_ITERATION_LIMIT)
                return

            self._iteration += 1
            self._emit(EngineEventType.ITERATION_STARTED)
            result = await self._invoke()

            if self._stop_requested and result.interrupted:
                return

            if not result.success:
                consecutive_failures += 1
                error = result.error or "Agent invocation failed"
                self._emit(EngineEventType.ITERATION_FAILED, error=error)
                if consecutive_failures >= self._max_consecutive_failures:
                    raise AgentExecutionError(
                        f"Agent failed {consecutive_failures} consecutive iterations: {error}"
                    )
                continue

            consecutive_failures = 0
            self._last_output = result.output
            completed = self._completion_marker in result.output
            await self._commit()
            self._emit(EngineEventType.ITERATION_COMPLETED, output=result.output)
            if completed:
                self._tasks_completed += 1
                self._emit(EngineEventType.TASK_COMPLETED)
                return

    async def _invoke(self) -> AgentExecutionResult:
        assert self._plugin is not None and self._task is not None
        prompt = build_prompt(
            self._task,
            iteration=self._iteration,
            max_iterations=self._max_iterations,
            previous_output=self._last_output,
            completion_marker=self._completion_marker,
        )
        options = AgentExecuteOptions(
            cwd=self._workspace,
            timeout=self._timeout,
            on_stdout=lambda text: self._emit(EngineEventType.AGENT_OUTPUT, output=text),
        )
        self._current = await self._plugin.execute(prompt, options=options)
        # an interrupting stop may have arrived while the agent was spawning
        if self._interrupt_requested:
            self._current.interrupt()
        try:
            return await self._current.wait()
        except asyncio.CancelledError:
            self._current.interrupt()
            raise
        finally:
            self._current = None

    async def _commit(self) -> None:
        if not self._auto_commit or self._vcs is None:
            return
        assert self._task is not None and self._workspace is not None
        message = f"{self._task.id}: {self._task.title} (iteration {self._iteration})"
        try:
            sha = await self._vcs.commit_all(self._workspace, message)
        except WorktreeError as exc:
            logger.warning(
                "Auto-commit failed", extra={"task_id": self._task.id, "error": str(exc)}
            )
            return
        if sha:
            self._emit(EngineEventType.TASK_AUTO_COMMITTED, commit_sha=sha)

    async def _pause_gate(self) -> None:
        if self._status is not EngineStatus.PAUSING:
            return
        self._transition(EngineStatus.PAUSED)
        self._emit(EngineEventType.ENGINE_PAUSED)
        await self._resume.wait()

    def pause(self) -> None:
        """Request a pause; it takes effect before the next iteration."""

        self._transition(EngineStatus.PAUSING)
        self._resume.clear()

    def resume(self) -> None:
        if self._status not in (EngineStatus.PAUSING, EngineStatus.PAUSED):
            raise EngineStateError(f"Cannot resume engine while {self._status.value}")
        was_paused = self._status is EngineStatus.PAUSED
        self._transition(EngineStatus.RUNNING)
        self._resume.set()
        if was_paused:
            self._emit(EngineEventType.ENGINE_RESUMED)

    async def stop(self, *, interrupt: bool = False) -> None:
        """Halt the loop and wait for it to finish.

        Without ``interrupt`` the in-flight invocation is allowed to finish.
        Stopping an engine that is not running is a no-op.
        """

        if self._status in (EngineStatus.IDLE, *_TERMINAL):
            return
        if self._status is not EngineStatus.STOPPING:
            self._transition(EngineStatus.STOPPING)
        self._stop_requested = True
        self._interrupt_requested = self._interrupt_requested or interrupt
        self._resume.set()
        if interrupt and self._current is not None:
            self._current.interrupt()
        # the loop may itself be the caller, in which case waiting would deadlock
        if self._done is not None and asyncio.current_task() is not self._runner:
            await self._done.wait()

    def _transition(self, target: EngineStatus) -> None:
        if not can_transition(self._status, target):
            raise EngineStateError(
                f"Illegal engine transition {self._status.value} -> {target.value}"
            )
        self._status = target

    def _emit(self, event_type: EngineEventType, **fields) -> None:
        event = EngineEvent(
            type=event_type,
            iteration=self._iteration,
            task_id=self._task.id if self._task else None,
            **fields,
        )
        self._listeners.emit(event)


__all__ = [
    "AgentExecutionError",
    "EngineEvent",
    "EngineEventType",
    "EngineListener",
    "EngineNotInitializedError",
    "EngineState",
    "EngineStateError",
    "EngineStatus",
    "ExecutionEngine",
    "can_transition",
]
